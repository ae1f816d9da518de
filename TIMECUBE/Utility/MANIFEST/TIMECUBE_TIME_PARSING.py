"""
TIMECUBE_TIME_PARSING
=====================

Time notations accepted by the TIMECUBE command-line tools and found in
instrument file names.

Accepted forms for `parse_time_arg`
-----------------------------------
- ``UTYYYYMMDDTHH:MM:SS.SSS``  absolute UTC (seconds part optional)
- ``+SS.SSS``                  offset in seconds from a reference time
- ``+MM:SS.SSS``               offset in minutes and seconds
- ``+HH:MM:SS.SSS``            offset in hours, minutes and seconds
- ``1718280000.25``            unix seconds

File names carry only the time of day: ``<sname>_HH:MM:SS.sssssssss.txt``.
The date comes from the enclosing ``YYYYMMDD`` directory (see
TIMECUBE_FILE_SCANNER).

All times are handled as float unix seconds (UTC).
"""

from __future__ import annotations

import math
import re
from datetime import datetime, timedelta, timezone
from typing import List, Optional


_UT_RE = re.compile(
    r"^UT(?P<year>\d{4})(?P<month>\d{2})(?P<day>\d{2})"
    r"T(?P<hour>\d{1,2}):(?P<minute>\d{1,2})(?::(?P<second>\d{1,2}(?:\.\d*)?))?$"
)

_FILENAME_TIME_RE = re.compile(r"_(?P<hour>\d{1,2}):(?P<minute>\d{1,2}):(?P<second>\d{1,2}(?:\.\d*)?)")

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def parse_ut_string(text: str) -> float:
    """
    Parse ``UTYYYYMMDDTHH:MM[:SS.SSS]`` into unix seconds.

    Raises
    ------
    ValueError
        If the string does not follow the UT notation or names an invalid date.
    """
    m = _UT_RE.match(text.strip())
    if m is None:
        raise ValueError(f"Not a UT time string: {text!r}")

    seconds = float(m.group("second") or 0.0)
    whole = int(seconds)
    base = datetime(
        int(m.group("year")),
        int(m.group("month")),
        int(m.group("day")),
        int(m.group("hour")),
        int(m.group("minute")),
        whole,
        tzinfo=timezone.utc,
    )
    return (base - _EPOCH).total_seconds() + (seconds - whole)


def _parse_offset(text: str) -> float:
    parts = text.split(":")
    if len(parts) > 3:
        raise ValueError(f"Too many ':' fields in relative time {text!r}")
    try:
        values = [float(p) for p in parts]
    except ValueError as exc:
        raise ValueError(f"Invalid relative time {text!r}") from exc
    offset = 0.0
    for v in values:
        offset = offset * 60.0 + v
    return offset


def parse_time_arg(text: str, relative_to: float = 0.0) -> float:
    """
    Parse any accepted time notation into unix seconds.

    Parameters
    ----------
    text : str
        Time argument (see module docstring).
    relative_to : float
        Reference [unix s] for ``+`` offsets.

    Raises
    ------
    ValueError
        If the argument cannot be parsed or is not finite.
    """
    s = text.strip()
    if s.startswith("UT"):
        return parse_ut_string(s)
    if s.startswith("+"):
        return relative_to + _parse_offset(s[1:])
    try:
        value = float(s)
    except ValueError as exc:
        raise ValueError(f"Unrecognized time argument {text!r}") from exc
    if not math.isfinite(value):
        raise ValueError(f"Time argument is not finite: {text!r}")
    return value


def format_ut(t: float) -> str:
    """Format unix seconds as ``UTYYYYMMDDTHH:MM:SS.mmm``."""
    whole = math.floor(t)
    millis = int(round((t - whole) * 1000.0))
    if millis == 1000:
        whole += 1
        millis = 0
    dt = _EPOCH + timedelta(seconds=whole)
    return f"{dt:UT%Y%m%dT%H:%M:%S}.{millis:03d}"


def day_start(t: float) -> float:
    """Unix seconds of 00:00:00 UTC on the day containing `t`."""
    return float(math.floor(t / 86400.0) * 86400)


def day_directory_name(t: float) -> str:
    """``YYYYMMDD`` of the UTC day containing `t`."""
    return (_EPOCH + timedelta(seconds=day_start(t))).strftime("%Y%m%d")


def parse_filename_time(filename: str) -> Optional[float]:
    """
    Seconds since midnight encoded in ``<sname>_HH:MM:SS.sss.txt``.

    Returns None when the name carries no time of day.
    """
    # The time follows the last underscore.
    idx = filename.rfind("_")
    if idx < 0:
        return None
    m = _FILENAME_TIME_RE.match(filename[idx:])
    if m is None:
        return None
    return int(m.group("hour")) * 3600.0 + int(m.group("minute")) * 60.0 + float(m.group("second"))


def describe_time_range(tstart: float, tend: float) -> List[str]:
    """Report lines: start and end in unix seconds and UT, plus duration."""
    return [
        "Time scan:",
        f"  Start: {tstart:.4f} ({format_ut(tstart)})",
        f"  End:   {tend:.4f} ({format_ut(tend)})",
        f"  Duration: {tend - tstart:.4f} s",
    ]


__all__ = [
    "parse_ut_string",
    "parse_time_arg",
    "format_ut",
    "day_start",
    "day_directory_name",
    "parse_filename_time",
    "describe_time_range",
]

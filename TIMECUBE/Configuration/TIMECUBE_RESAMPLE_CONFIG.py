"""
TIMECUBE_RESAMPLE_CONFIG.py

Resampling / cube-building configuration for TIMECUBE.

This file defines:
    1) The boundary epsilon used when enumerating the output bins a
       manifest record spans.
    2) File naming conventions shared by the scanner, the manifest
       builder and the frame source (timestamp suffix, image suffix,
       compressed image variants, manifest suffix).
    3) A frozen dataclass bundling these knobs, plus a default instance.
    4) A fail-fast validator.

No resampling math is performed here.  Other TIMECUBE utilities import
this module and read the values from `DEFAULT_RESAMPLE_CONFIG` (or from
a caller-supplied `ResampleConfig`).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple


# ---------------------------------------------------------------------------
# Bin enumeration
# ---------------------------------------------------------------------------

# A record spanning [s, e) touches bins floor(s) .. floor(e - eps).
# eps removes the vanishing trailing overlap produced by floating rounding
# when e lands exactly on a bin boundary.
BIN_BOUNDARY_EPSILON = 1e-9


# ---------------------------------------------------------------------------
# File naming conventions
# ---------------------------------------------------------------------------

# Timestamp files produced by the instrument: <sname>_HH:MM:SS.sss.txt
TIMESTAMP_SUFFIX = ".txt"

# Image files holding the raw planes; same stem as the timestamp file.
IMAGE_SUFFIX = ".fits"

# Compressed image variants tried (in order) when the plain image is absent.
COMPRESSED_IMAGE_SUFFIXES: Tuple[str, ...] = (".fits.fz", ".fits.gz")

# Manifest files: <run_name>.resample.txt -> cube <run_name>.fits
MANIFEST_SUFFIX = ".resample.txt"

# Outputs are built at <path>.partial and renamed into place when complete.
PARTIAL_SUFFIX = ".partial"

# Output cube pixel type (FITS BITPIX -32).
CUBE_DTYPE = "float32"


@dataclass(frozen=True)
class ResampleConfig:
    """
    Configuration object for one cube build.

    Fields
    ------
    bin_epsilon : float
        Boundary epsilon for bin enumeration (see BIN_BOUNDARY_EPSILON).
    timestamp_suffix : str
        Suffix of timestamp files named in the manifest.
    image_suffix : str
        Suffix substituted for `timestamp_suffix` to locate the image file.
    compressed_suffixes : tuple[str, ...]
        Fallback image suffixes, tried in order.
    manifest_suffix : str
        Manifest suffix; replaced by `image_suffix` to name the output cube.
    overwrite_output : bool
        Remove an existing cube at the target path before creating it.
        When False an existing cube is a fatal startup error.
    show_progress : bool
        Show a tqdm progress bar over manifest records.
    """

    bin_epsilon: float = BIN_BOUNDARY_EPSILON
    timestamp_suffix: str = TIMESTAMP_SUFFIX
    image_suffix: str = IMAGE_SUFFIX
    compressed_suffixes: Tuple[str, ...] = COMPRESSED_IMAGE_SUFFIXES
    manifest_suffix: str = MANIFEST_SUFFIX
    overwrite_output: bool = True
    show_progress: bool = False


DEFAULT_RESAMPLE_CONFIG = ResampleConfig()


def validate_config(cfg: ResampleConfig) -> None:
    """
    Fail-fast structural validation.

    Raises
    ------
    RuntimeError
        If any field is out of range or inconsistent.
    """
    if not (0.0 <= cfg.bin_epsilon < 1e-3):
        raise RuntimeError(
            "TIMECUBE_RESAMPLE_CONFIG: bin_epsilon must be in [0, 1e-3), "
            f"got {cfg.bin_epsilon!r}."
        )
    for label, suffix in (
        ("timestamp_suffix", cfg.timestamp_suffix),
        ("image_suffix", cfg.image_suffix),
        ("manifest_suffix", cfg.manifest_suffix),
    ):
        if not suffix.startswith("."):
            raise RuntimeError(
                f"TIMECUBE_RESAMPLE_CONFIG: {label} must start with '.', got {suffix!r}."
            )
    for suffix in cfg.compressed_suffixes:
        if not suffix.startswith(cfg.image_suffix):
            raise RuntimeError(
                "TIMECUBE_RESAMPLE_CONFIG: compressed suffix "
                f"{suffix!r} does not extend image_suffix {cfg.image_suffix!r}."
            )


def describe_config(cfg: ResampleConfig = DEFAULT_RESAMPLE_CONFIG) -> str:
    """Human-readable one-line summary (useful for logs)."""
    return (
        f"eps={cfg.bin_epsilon:g} "
        f"names={cfg.timestamp_suffix}->{cfg.image_suffix} "
        f"fallback={list(cfg.compressed_suffixes)} "
        f"overwrite={cfg.overwrite_output}"
    )


validate_config(DEFAULT_RESAMPLE_CONFIG)


__all__ = [
    "BIN_BOUNDARY_EPSILON",
    "TIMESTAMP_SUFFIX",
    "IMAGE_SUFFIX",
    "COMPRESSED_IMAGE_SUFFIXES",
    "MANIFEST_SUFFIX",
    "PARTIAL_SUFFIX",
    "CUBE_DTYPE",
    "ResampleConfig",
    "DEFAULT_RESAMPLE_CONFIG",
    "validate_config",
    "describe_config",
]

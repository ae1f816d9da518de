"""
TIMECUBE_FRAME_SOURCE
=====================

Input frame source for the cube builder.

`InputFrameSource.read_plane(source_name, local_index)` returns the 2-D
pixel plane for one manifest record, read with astropy.io.fits.

- The most recently opened file stays open; consecutive records from the
  same source reuse it and a new file is opened only when the source name
  changes.
- Source names are resolved to files by a resolver callable (default:
  `resolve_image_path`, which maps ``x.txt`` -> ``x.fits`` and falls back
  to compressed variants).
- Inside a file, the first HDU holding image data with two or more axes is
  used.  A 2-D image holds one plane (local index 0); for 3-D images planes
  run along the slowest FITS axis (numpy axis 0).
- Failures (unresolvable name, unreadable file, index out of range, shape
  mismatch against the declared cube frame shape) return None and leave a
  human-readable cause in `last_error`.  The caller decides how to report
  it; a failed read never raises.
"""

from __future__ import annotations

import logging
from functools import partial
from pathlib import Path
from typing import Callable, Optional, Tuple

import numpy as np
from astropy.io import fits

from TIMECUBE.Configuration.TIMECUBE_RESAMPLE_CONFIG import (
    DEFAULT_RESAMPLE_CONFIG,
    ResampleConfig,
)
from TIMECUBE.Utility.MANIFEST.TIMECUBE_FILE_SCANNER import resolve_image_path


SourceResolver = Callable[[str], Optional[Path]]


def default_resolver(config: ResampleConfig = DEFAULT_RESAMPLE_CONFIG) -> SourceResolver:
    """Resolver applying the naming conventions of `config`."""
    return partial(resolve_image_path, config=config)


def _find_image_hdu(hdul: fits.HDUList) -> Tuple[int, Tuple[int, ...]]:
    """Index and numpy shape of the first HDU with >= 2 image axes."""
    for i, hdu in enumerate(hdul):
        if not hdu.is_image:
            continue
        shape = tuple(int(n) for n in (hdu.shape or ()))
        if len(shape) >= 2 and all(n > 0 for n in shape):
            return i, shape
    raise ValueError("no image HDU with at least 2 axes")


class InputFrameSource:
    """
    Cached FITS plane reader.

    Parameters
    ----------
    frame_shape : tuple[int, int], optional
        Declared (height, width). When set, every plane is validated against
        it; leave None only for probing (see `probe_frame_shape`).
    resolver : callable, optional
        Maps a manifest source name to an existing file path, or None.
    config : ResampleConfig
        Naming conventions for the default resolver.
    logger : logging.Logger, optional
        Debug messages for file switches.
    """

    def __init__(
        self,
        frame_shape: Optional[Tuple[int, int]] = None,
        *,
        resolver: Optional[SourceResolver] = None,
        config: ResampleConfig = DEFAULT_RESAMPLE_CONFIG,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.frame_shape = tuple(frame_shape) if frame_shape is not None else None
        self.resolver: SourceResolver = resolver or default_resolver(config)
        self._log = logger or logging.getLogger("TIMECUBE_FRAME_SOURCE")

        self._current_name: Optional[str] = None
        self._current_path: Optional[Path] = None
        self._hdul: Optional[fits.HDUList] = None
        self._hdu_index: int = -1
        self._hdu_shape: Tuple[int, ...] = ()
        self._open_error: Optional[str] = None

        self.last_error: Optional[str] = None
        self.n_opens = 0

    # ------------------------------------------------------------------
    # Context management
    # ------------------------------------------------------------------
    def __enter__(self) -> "InputFrameSource":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        """Release the cached file handle."""
        if self._hdul is not None:
            self._hdul.close()
        self._hdul = None
        self._current_name = None
        self._current_path = None
        self._hdu_index = -1
        self._hdu_shape = ()
        self._open_error = None

    # ------------------------------------------------------------------
    # File switching
    # ------------------------------------------------------------------
    @property
    def current_path(self) -> Optional[Path]:
        return self._current_path

    def _switch_to(self, source_name: str) -> None:
        if source_name == self._current_name:
            return

        self.close()
        self._current_name = source_name

        path = self.resolver(source_name)
        if path is None:
            self._open_error = f"could not resolve source '{source_name}' to an image file"
            return

        try:
            hdul = fits.open(path, mode="readonly", memmap=True)
        except (OSError, ValueError) as exc:
            self._open_error = f"could not open {path}: {exc}"
            return

        try:
            idx, shape = _find_image_hdu(hdul)
        except (OSError, ValueError) as exc:
            hdul.close()
            self._open_error = f"{path}: {exc}"
            return

        self._hdul = hdul
        self._current_path = Path(path)
        self._hdu_index = idx
        self._hdu_shape = shape
        self.n_opens += 1
        self._log.debug("Opened %s (HDU %d, shape %s)", path, idx, shape)

    @property
    def n_planes(self) -> int:
        """Planes available in the currently open file (0 when none is open)."""
        if self._hdul is None:
            return 0
        if len(self._hdu_shape) == 2:
            return 1
        return int(np.prod(self._hdu_shape[:-2]))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def read_plane(self, source_name: str, local_index: int) -> Optional[np.ndarray]:
        """
        Return plane `local_index` of `source_name` as a float32 array.

        Returns None on any failure; `last_error` then holds the cause.
        """
        self.last_error = None
        self._switch_to(source_name)

        if self._hdul is None:
            self.last_error = self._open_error or f"source '{source_name}' is not open"
            return None

        if local_index < 0 or local_index >= self.n_planes:
            self.last_error = (
                f"frame {local_index} out of range for {self._current_path} "
                f"({self.n_planes} plane(s))"
            )
            return None

        plane_shape = self._hdu_shape[-2:]
        if self.frame_shape is not None and plane_shape != self.frame_shape:
            self.last_error = (
                f"{self._current_path}: plane shape {plane_shape} does not match "
                f"cube frame shape {self.frame_shape}"
            )
            return None

        try:
            data = self._hdul[self._hdu_index].data
            if data.ndim == 2:
                plane = data
            else:
                plane = data.reshape((-1,) + plane_shape)[local_index]
            # Copy out of the memory map into native float32.
            return np.array(plane, dtype=np.float32)
        except (OSError, ValueError, TypeError, IndexError) as exc:
            self.last_error = f"error reading frame {local_index} from {self._current_path}: {exc}"
            return None

    def probe_frame_shape(self, source_name: str) -> Tuple[int, int]:
        """
        Return the (height, width) of the planes in `source_name`.

        Raises
        ------
        RuntimeError
            If the source cannot be resolved or opened, or holds no image.
        """
        self._switch_to(source_name)
        if self._hdul is None:
            raise RuntimeError(
                f"TIMECUBE_FRAME_SOURCE: cannot determine frame shape: {self._open_error}"
            )
        height, width = self._hdu_shape[-2:]
        return int(height), int(width)


__all__ = [
    "SourceResolver",
    "default_resolver",
    "InputFrameSource",
]

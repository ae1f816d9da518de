"""
TIMECUBE_CUBE_WRITER
====================

Plane-by-plane writer for the output FITS cube.

The cube is a single primary HDU, BITPIX = -32, with
NAXIS1 = width, NAXIS2 = height, NAXIS3 = n_frames (numpy shape
(n_frames, height, width)).

Creation
--------
1) Any existing file at the target path is removed (or refused, see
   `overwrite`).
2) The cube is built at a sibling `<path>.partial`.  The header is written
   with astropy, then the file is extended with zero bytes to the full
   (2880-byte padded) data size.  Zero bytes decode as float 0.0, so planes
   that are never written read back as zero.
3) The file is reopened in update mode with a memory map; each
   `write_plane` assigns one plane of the mapped array.

Summary cards (TC_NREC, TC_NPLAN, TC_NSKIP) are reserved at creation and
filled in by `finalize`, so the header never has to grow in place.  Only a
successful `finalize` renames the partial file onto the target path;
`abort` deletes it.  A file at the target path is therefore always complete.

Every persistence failure raises `CubeWriteError` with the underlying
cause chained; the driver treats it as fatal.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional, Set, Tuple, Union

import numpy as np
from astropy.io import fits

from TIMECUBE.Configuration.TIMECUBE_RESAMPLE_CONFIG import CUBE_DTYPE, PARTIAL_SUFFIX


FITS_BLOCK = 2880

CUBE_ORIGIN = "TIMECUBE"

# Header keywords (<= 8 chars) describing the time grid and the run.
KW_TSTART = "TC_TSTRT"
KW_DT = "TC_DT"
KW_NRECORDS = "TC_NREC"
KW_NPLANES = "TC_NPLAN"
KW_NSKIPPED = "TC_NSKIP"


class CubeWriteError(RuntimeError):
    """Fatal failure creating, writing or finalizing the output cube."""


def _padded(nbytes: int) -> int:
    return ((nbytes + FITS_BLOCK - 1) // FITS_BLOCK) * FITS_BLOCK


def _build_header(n_frames: int, height: int, width: int, cards: Dict[str, Any]) -> fits.Header:
    header = fits.PrimaryHDU(data=np.zeros((1, 1, 1), dtype=CUBE_DTYPE)).header
    header["NAXIS1"] = width
    header["NAXIS2"] = height
    header["NAXIS3"] = n_frames
    header["ORIGIN"] = (CUBE_ORIGIN, "Time-binned cube")
    for key, value in cards.items():
        header[key] = value
    header[KW_NRECORDS] = (0, "Manifest records applied")
    header[KW_NPLANES] = (0, "Planes written")
    header[KW_NSKIPPED] = (0, "Manifest records skipped")
    return header


class CubeWriter:
    """
    Output cube with one plane per time bin.

    Parameters
    ----------
    path : str or Path
        Output FITS path.
    n_frames, height, width : int
        Cube dimensions.
    tstart, dt : float, optional
        Time grid origin [unix s] and bin width [s], recorded in the header.
    overwrite : bool
        Remove an existing file at `path`. When False an existing file raises.
    logger : logging.Logger, optional
    """

    def __init__(
        self,
        path: Union[str, Path],
        n_frames: int,
        height: int,
        width: int,
        *,
        tstart: Optional[float] = None,
        dt: Optional[float] = None,
        overwrite: bool = True,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if n_frames <= 0 or height <= 0 or width <= 0:
            raise CubeWriteError(
                f"TIMECUBE_CUBE_WRITER: invalid cube dimensions "
                f"{width} x {height} x {n_frames}."
            )
        self.path = Path(path)
        self.partial_path = self.path.with_name(self.path.name + PARTIAL_SUFFIX)
        self.shape: Tuple[int, int, int] = (int(n_frames), int(height), int(width))
        self._log = logger or logging.getLogger("TIMECUBE_CUBE_WRITER")
        self._written: Set[int] = set()
        self._hdul: Optional[fits.HDUList] = None

        cards: Dict[str, Any] = {}
        if tstart is not None:
            cards[KW_TSTART] = (float(tstart), "[unix s] start of bin 0")
        if dt is not None:
            cards[KW_DT] = (float(dt), "[s] bin width")

        self._create(overwrite=overwrite, cards=cards)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------
    def _create(self, *, overwrite: bool, cards: Dict[str, Any]) -> None:
        n_frames, height, width = self.shape
        try:
            if self.path.exists():
                if not overwrite:
                    raise CubeWriteError(
                        f"TIMECUBE_CUBE_WRITER: output exists and overwrite is disabled: {self.path}"
                    )
                self._log.info("Removing existing cube: %s", self.path)
                self.path.unlink()
            self.path.parent.mkdir(parents=True, exist_ok=True)
            if self.partial_path.exists():
                self._log.warning("Removing stale partial cube: %s", self.partial_path)
                self.partial_path.unlink()
        except CubeWriteError:
            raise
        except OSError as exc:
            raise CubeWriteError(f"TIMECUBE_CUBE_WRITER: cannot create {self.path}: {exc}") from exc

        try:
            header = _build_header(n_frames, height, width, cards)
            header.tofile(self.partial_path)

            header_bytes = len(header.tostring())
            data_bytes = n_frames * height * width * np.dtype(CUBE_DTYPE).itemsize
            with self.partial_path.open("rb+") as fobj:
                fobj.seek(header_bytes + _padded(data_bytes) - 1)
                fobj.write(b"\0")

            self._hdul = fits.open(self.partial_path, mode="update", memmap=True)
        except (OSError, ValueError) as exc:
            self.abort()
            raise CubeWriteError(f"TIMECUBE_CUBE_WRITER: cannot create {self.path}: {exc}") from exc

        self._log.info("Created cube %s (%d x %d x %d frames)", self.partial_path, width, height, n_frames)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    @property
    def n_frames(self) -> int:
        return self.shape[0]

    @property
    def written_bins(self) -> Set[int]:
        return set(self._written)

    def write_plane(self, bin_index: int, pixels: np.ndarray) -> None:
        """
        Persist `pixels` as plane `bin_index`.

        Raises
        ------
        CubeWriteError
            Cube closed, bin out of range or already written, wrong plane
            shape, or an I/O error.
        """
        if self._hdul is None:
            raise CubeWriteError(f"TIMECUBE_CUBE_WRITER: cube is closed: {self.path}")
        if not (0 <= bin_index < self.n_frames):
            raise CubeWriteError(
                f"TIMECUBE_CUBE_WRITER: bin {bin_index} outside cube [0, {self.n_frames})."
            )
        if bin_index in self._written:
            raise CubeWriteError(f"TIMECUBE_CUBE_WRITER: bin {bin_index} written twice.")
        if pixels.shape != self.shape[1:]:
            raise CubeWriteError(
                f"TIMECUBE_CUBE_WRITER: plane shape {pixels.shape} != cube frame shape {self.shape[1:]}."
            )

        try:
            self._hdul[0].data[bin_index] = pixels.astype(CUBE_DTYPE, copy=False)
        except (OSError, ValueError) as exc:
            raise CubeWriteError(
                f"TIMECUBE_CUBE_WRITER: failed writing plane {bin_index} to {self.path}: {exc}"
            ) from exc
        self._written.add(bin_index)

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------
    def finalize(self, *, n_records: int = 0, n_skipped: int = 0) -> Path:
        """
        Fill in the summary cards, flush, close and move the cube into place.

        Returns
        -------
        Path
            The final cube path.
        """
        if self._hdul is None:
            raise CubeWriteError(f"TIMECUBE_CUBE_WRITER: cube already finalized: {self.path}")
        try:
            header = self._hdul[0].header
            header[KW_NRECORDS] = int(n_records)
            header[KW_NPLANES] = len(self._written)
            header[KW_NSKIPPED] = int(n_skipped)
            self._hdul.flush()
            self._hdul.close()
            self._hdul = None
            self.partial_path.replace(self.path)
        except (OSError, ValueError) as exc:
            self.abort()
            raise CubeWriteError(f"TIMECUBE_CUBE_WRITER: failed finalizing {self.path}: {exc}") from exc

        self._log.info("Finalized cube %s (%d/%d planes written)", self.path, len(self._written), self.n_frames)
        return self.path

    def abort(self) -> None:
        """Close without finalizing and delete the partial file. No-op after `finalize`."""
        if self._hdul is not None:
            try:
                self._hdul.close()
            except OSError as exc:
                self._log.warning("Error closing partial cube %s: %s", self.partial_path, exc)
            self._hdul = None
        if self.partial_path.exists():
            try:
                self.partial_path.unlink()
            except OSError as exc:
                self._log.warning("Could not remove partial cube %s: %s", self.partial_path, exc)
            else:
                self._log.info("Removed partial cube %s", self.partial_path)


__all__ = [
    "CubeWriteError",
    "CubeWriter",
    "KW_TSTART",
    "KW_DT",
    "KW_NRECORDS",
    "KW_NPLANES",
    "KW_NSKIPPED",
]

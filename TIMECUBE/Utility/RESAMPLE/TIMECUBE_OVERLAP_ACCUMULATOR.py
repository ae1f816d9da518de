"""
TIMECUBE_OVERLAP_ACCUMULATOR
============================

Box-kernel (overlap-weighted) accumulation of input frames into output
time bins, with bounded-memory eviction.

Overlap weights
---------------
An input frame covering [s, e) in output-bin units contributes to bin k
with weight

    w(k) = max(0, min(e, k + 1) - max(s, k))

for k = floor(s) .. floor(e - eps).  The weights of one frame sum to
e - s: no input duration is lost or counted twice.

Active frame set
----------------
`ActiveFrameSet` owns the in-flight output frames (bin index -> buffer).
A buffer is allocated zero-filled on its first contribution and leaves the
set exactly once, when it is flushed to a sink (normally the cube writer).

Because the manifest is non-decreasing in resampled start, once a record
starting in bin k_start is about to be applied no later record can touch a
bin below k_start.  The driver therefore calls ``flush_below(k_start)``
before each record, which keeps the set at most ceil(max_span) + 1 frames
regardless of cube length.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Optional, Tuple

import numpy as np

from TIMECUBE.Configuration.TIMECUBE_RESAMPLE_CONFIG import BIN_BOUNDARY_EPSILON


# Receives (bin_index, pixels) for every evicted frame.
FrameSink = Callable[[int, np.ndarray], None]


# -----------------------------------------------------------------------------
# Overlap weights
# -----------------------------------------------------------------------------
def overlap_weight(start: float, end: float, k: int) -> float:
    """Temporal overlap of [start, end) with bin [k, k + 1), in bin units."""
    return max(0.0, min(end, k + 1.0) - max(start, float(k)))


def iter_bin_weights(
    start: float,
    end: float,
    eps: float = BIN_BOUNDARY_EPSILON,
) -> Iterator[Tuple[int, float]]:
    """
    Yield (k, weight) for every bin a record spanning [start, end) overlaps.

    Bins whose overlap is not strictly positive are not yielded.
    """
    k_start = int(math.floor(start))
    k_end = int(math.floor(end - eps))
    for k in range(k_start, k_end + 1):
        w = overlap_weight(start, end, k)
        if w > 0.0:
            yield k, w


def max_active_frames(max_span: float) -> int:
    """Upper bound on the active set size for records no wider than `max_span` bins."""
    return int(math.ceil(max_span)) + 1


# -----------------------------------------------------------------------------
# Active frame set
# -----------------------------------------------------------------------------
@dataclass
class OutputFrame:
    """
    One in-flight output bin.

    Attributes
    ----------
    bin_index : int
        Output bin (0-based cube plane).
    pixels : np.ndarray
        Accumulator, float32, shape (height, width).
    n_contributions : int
        Number of weighted planes added so far.
    weight_sum : float
        Sum of weights added so far (bin coverage, 1.0 = fully covered).
    """

    bin_index: int
    pixels: np.ndarray
    n_contributions: int = 0
    weight_sum: float = 0.0


class ActiveFrameSet:
    """
    Bounded collection of output frames still accumulating contributions.

    Parameters
    ----------
    shape : tuple[int, int]
        (height, width) of every frame.
    dtype : numpy dtype, optional
        Accumulator type. Defaults to float32 (the cube pixel type).
    logger : logging.Logger, optional
        Debug messages for allocations and flushes.
    """

    def __init__(
        self,
        shape: Tuple[int, int],
        dtype=np.float32,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if len(shape) != 2 or shape[0] <= 0 or shape[1] <= 0:
            raise ValueError(f"ActiveFrameSet: frame shape must be (height, width) > 0, got {shape!r}.")
        self.shape: Tuple[int, int] = (int(shape[0]), int(shape[1]))
        self.dtype = np.dtype(dtype)
        self._frames: Dict[int, OutputFrame] = {}
        self._flushed_through = -1
        self.peak_size = 0
        self.n_flushed = 0
        self._log = logger or logging.getLogger("TIMECUBE_ACCUMULATOR")

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    def __len__(self) -> int:
        return len(self._frames)

    def __contains__(self, bin_index: object) -> bool:
        return bin_index in self._frames

    def bins(self) -> List[int]:
        """Sorted bin indices currently in flight."""
        return sorted(self._frames)

    def get(self, bin_index: int) -> Optional[OutputFrame]:
        return self._frames.get(bin_index)

    @property
    def low_water_mark(self) -> int:
        """Bins strictly below this value have been released by flush_below()."""
        return self._flushed_through + 1

    # ------------------------------------------------------------------
    # Accumulation
    # ------------------------------------------------------------------
    def contribute(self, bin_index: int, plane: np.ndarray, weight: float) -> OutputFrame:
        """
        Add ``plane * weight`` to bin `bin_index`, allocating it on first use.

        Raises
        ------
        ValueError
            If the plane shape does not match the frame shape, or the bin is
            below the low-water mark (already released by flush_below).
        """
        if plane.shape != self.shape:
            raise ValueError(
                f"ActiveFrameSet.contribute: plane shape {plane.shape} != frame shape {self.shape}."
            )
        if bin_index < self.low_water_mark:
            raise ValueError(
                f"ActiveFrameSet.contribute: bin {bin_index} is below the low-water mark "
                f"{self.low_water_mark}; it has already been released."
            )

        frame = self._frames.get(bin_index)
        if frame is None:
            frame = OutputFrame(bin_index=bin_index, pixels=np.zeros(self.shape, dtype=self.dtype))
            self._frames[bin_index] = frame
            self.peak_size = max(self.peak_size, len(self._frames))
            self._log.debug("Allocated output frame %d (active=%d)", bin_index, len(self._frames))

        frame.pixels += plane * weight
        frame.n_contributions += 1
        frame.weight_sum += float(weight)
        return frame

    # ------------------------------------------------------------------
    # Eviction
    # ------------------------------------------------------------------
    def flush_below(self, threshold: int, sink: FrameSink) -> List[int]:
        """
        Evict every frame with ``bin_index < threshold`` in ascending order.

        Each evicted buffer is handed to `sink` and then dropped from the set.
        Returns the evicted bin indices.
        """
        done = sorted(k for k in self._frames if k < threshold)
        for k in done:
            frame = self._frames.pop(k)
            sink(k, frame.pixels)
            self.n_flushed += 1
            self._log.debug(
                "Flushed output frame %d (contributions=%d, coverage=%.6f)",
                k,
                frame.n_contributions,
                frame.weight_sum,
            )
        if threshold - 1 > self._flushed_through:
            self._flushed_through = threshold - 1
        return done

    def flush_all(self, sink: FrameSink) -> List[int]:
        """Evict every remaining frame (terminal flush)."""
        if not self._frames:
            return []
        return self.flush_below(max(self._frames) + 1, sink)


__all__ = [
    "FrameSink",
    "overlap_weight",
    "iter_bin_weights",
    "max_active_frames",
    "OutputFrame",
    "ActiveFrameSet",
]

# Shared fixtures: tiny FITS stacks, manifest files and a logger that
# propagates to pytest's caplog (the TIMECUBE default loggers do not).
import logging
from pathlib import Path

import numpy as np
import pytest
from astropy.io import fits

from TIMECUBE.Utility.RESAMPLE.TIMECUBE_MANIFEST_RECORDS import RECORD_FORMAT


FRAME_SHAPE = (4, 5)


@pytest.fixture
def frame_shape():
    return FRAME_SHAPE


@pytest.fixture
def make_stack(tmp_path):
    """Write a FITS file whose plane i is filled with values[i]."""

    def _make(name, values, shape=FRAME_SHAPE):
        path = Path(name) if Path(name).is_absolute() else tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        data = np.stack([np.full(shape, v, dtype=np.float32) for v in values])
        if data.shape[0] == 1:
            data = data[0]
        fits.PrimaryHDU(data=data).writeto(path, overwrite=True)
        return path

    return _make


@pytest.fixture
def write_manifest_file(tmp_path):
    """
    Write a manifest from (source, local_index, rs, re) tuples or raw strings.
    Interval times are synthesized from the bin coordinates.
    """

    def _write(rows, name="run.resample.txt", header=None):
        path = tmp_path / name
        lines = list(header or [])
        gi = 0
        for row in rows:
            if isinstance(row, str):
                lines.append(row)
                continue
            source, local_index, rs, re = row
            lines.append(RECORD_FORMAT % (gi, 1000.0 + rs, 1000.0 + re, source, local_index, rs, re))
            gi += 1
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return path

    return _write


@pytest.fixture
def test_logger():
    logger = logging.getLogger("timecube.tests")
    logger.setLevel(logging.DEBUG)
    logger.propagate = True
    return logger

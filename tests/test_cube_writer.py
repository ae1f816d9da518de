import numpy as np
import pytest
from astropy.io import fits

from TIMECUBE.Utility.RESAMPLE.TIMECUBE_CUBE_WRITER import (
    KW_DT,
    KW_NPLANES,
    KW_NRECORDS,
    KW_NSKIPPED,
    KW_TSTART,
    CubeWriteError,
    CubeWriter,
)


def test_create_write_finalize(tmp_path):
    out = tmp_path / "cube.fits"
    writer = CubeWriter(out, 3, 2, 4, tstart=1718280600.0, dt=0.5)
    writer.write_plane(1, np.full((2, 4), 2.5, dtype=np.float32))
    assert writer.written_bins == {1}
    assert writer.finalize(n_records=5, n_skipped=1) == out

    with fits.open(out) as hdul:
        data = hdul[0].data
        header = hdul[0].header
        assert data.shape == (3, 2, 4)
        np.testing.assert_array_equal(data[1], 2.5)
        # Planes never written read back as zero.
        np.testing.assert_array_equal(data[0], 0.0)
        np.testing.assert_array_equal(data[2], 0.0)
        assert header["BITPIX"] == -32
        assert header[KW_NRECORDS] == 5
        assert header[KW_NPLANES] == 1
        assert header[KW_NSKIPPED] == 1
        assert header[KW_TSTART] == pytest.approx(1718280600.0)
        assert header[KW_DT] == pytest.approx(0.5)


def test_float64_planes_are_stored_as_float32(tmp_path):
    out = tmp_path / "cube.fits"
    writer = CubeWriter(out, 1, 2, 2)
    writer.write_plane(0, np.array([[1.0, 2.0], [3.0, 4.0]]))
    writer.finalize()
    data = fits.getdata(out)
    assert data.dtype.kind == "f" and data.dtype.itemsize == 4
    np.testing.assert_array_equal(data[0], [[1.0, 2.0], [3.0, 4.0]])


def test_existing_file_is_replaced(tmp_path):
    out = tmp_path / "cube.fits"
    out.write_bytes(b"stale")
    CubeWriter(out, 1, 1, 1).finalize()
    assert fits.getdata(out).shape == (1, 1, 1)


def test_existing_file_refused_without_overwrite(tmp_path):
    out = tmp_path / "cube.fits"
    out.write_bytes(b"stale")
    with pytest.raises(CubeWriteError):
        CubeWriter(out, 1, 1, 1, overwrite=False)


@pytest.mark.parametrize("n_frames,height,width", [(0, 2, 2), (2, 0, 2), (2, 2, -1)])
def test_invalid_dimensions(tmp_path, n_frames, height, width):
    with pytest.raises(CubeWriteError):
        CubeWriter(tmp_path / "c.fits", n_frames, height, width)


def test_write_errors(tmp_path):
    writer = CubeWriter(tmp_path / "cube.fits", 2, 2, 2)
    plane = np.zeros((2, 2), dtype=np.float32)

    with pytest.raises(CubeWriteError):
        writer.write_plane(2, plane)
    with pytest.raises(CubeWriteError):
        writer.write_plane(-1, plane)
    with pytest.raises(CubeWriteError):
        writer.write_plane(0, np.zeros((3, 2), dtype=np.float32))

    writer.write_plane(0, plane)
    with pytest.raises(CubeWriteError):
        writer.write_plane(0, plane)

    writer.finalize()
    with pytest.raises(CubeWriteError):
        writer.write_plane(1, plane)
    with pytest.raises(CubeWriteError):
        writer.finalize()


def test_cube_is_built_beside_target_until_finalized(tmp_path):
    out = tmp_path / "cube.fits"
    writer = CubeWriter(out, 2, 2, 2)
    writer.write_plane(0, np.ones((2, 2), dtype=np.float32))

    assert writer.partial_path == tmp_path / "cube.fits.partial"
    assert writer.partial_path.exists()
    assert not out.exists()

    writer.finalize()
    assert out.exists()
    assert not writer.partial_path.exists()
    # Abort after finalize leaves the finished cube alone.
    writer.abort()
    assert out.exists()


def test_abort_removes_partial_cube(tmp_path):
    out = tmp_path / "cube.fits"
    out.write_bytes(b"stale")
    writer = CubeWriter(out, 2, 2, 2)
    writer.write_plane(0, np.ones((2, 2), dtype=np.float32))
    writer.abort()

    assert not out.exists()
    assert not writer.partial_path.exists()
    with pytest.raises(CubeWriteError):
        writer.write_plane(1, np.ones((2, 2), dtype=np.float32))


def test_stale_partial_is_replaced(tmp_path):
    out = tmp_path / "cube.fits"
    (tmp_path / "cube.fits.partial").write_bytes(b"left over")
    CubeWriter(out, 1, 1, 1).finalize()
    assert fits.getdata(out).shape == (1, 1, 1)
    assert not (tmp_path / "cube.fits.partial").exists()


def test_cube_write_error_is_runtime_error():
    assert issubclass(CubeWriteError, RuntimeError)

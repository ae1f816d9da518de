import logging

import numpy as np
import pytest
from astropy.io import fits

from TIMECUBE.Configuration.TIMECUBE_RESAMPLE_CONFIG import ResampleConfig
from TIMECUBE.Utility.RESAMPLE.TIMECUBE_APPLY_TIMESTAMPS import (
    _main,
    build_cube,
    default_output_path,
)
from TIMECUBE.Utility.RESAMPLE.TIMECUBE_CUBE_WRITER import (
    KW_DT,
    KW_NRECORDS,
    KW_NSKIPPED,
    CubeWriteError,
    CubeWriter,
)


def _cube(path):
    with fits.open(path) as hdul:
        return np.array(hdul[0].data, dtype=np.float32), hdul[0].header.copy()


def test_default_output_path(tmp_path):
    assert default_output_path(tmp_path / "run.resample.txt") == tmp_path / "run.fits"
    assert default_output_path(tmp_path / "run.lst") == tmp_path / "run.lst.fits"


def test_full_bin_frames_copy_through(make_stack, write_manifest_file, test_logger):
    src = str(make_stack("a.fits", [1.0, 2.0, 3.0]))
    manifest = write_manifest_file([(src, 0, 0.0, 1.0), (src, 1, 1.0, 2.0), (src, 2, 2.0, 3.0)])

    result = build_cube(manifest, logger=test_logger)

    data, header = _cube(result.output_path)
    assert result.output_path == manifest.parent / "run.fits"
    assert data.shape == (3, 4, 5)
    for k, v in enumerate([1.0, 2.0, 3.0]):
        np.testing.assert_allclose(data[k], v)
    assert result.n_applied == 3
    assert result.written_bins == {0, 1, 2}
    assert header[KW_NRECORDS] == 3


def test_half_bin_frame_splits_evenly(make_stack, write_manifest_file, test_logger):
    src = str(make_stack("a.fits", [4.0]))
    manifest = write_manifest_file([(src, 0, 0.5, 1.5)])

    result = build_cube(manifest, logger=test_logger)

    data, _ = _cube(result.output_path)
    assert data.shape[0] == 2
    np.testing.assert_allclose(data[0], 2.0)
    np.testing.assert_allclose(data[1], 2.0)


def test_overlapping_frames_are_weighted(make_stack, write_manifest_file, test_logger):
    src = str(make_stack("a.fits", [1.0, 2.0, 3.0, 4.0]))
    manifest = write_manifest_file(
        [(src, 0, 0.0, 0.5), (src, 1, 0.5, 1.0), (src, 2, 1.0, 1.5), (src, 3, 1.5, 2.0)]
    )

    data, _ = _cube(build_cube(manifest, logger=test_logger).output_path)

    np.testing.assert_allclose(data[0], 1.5)
    np.testing.assert_allclose(data[1], 3.5)


def test_malformed_line_is_skipped(make_stack, write_manifest_file, test_logger):
    src = str(make_stack("a.fits", [1.0, 2.0]))
    manifest = write_manifest_file([(src, 0, 0.0, 1.0), "this line is garbage", (src, 1, 1.0, 2.0)])

    result = build_cube(manifest, logger=test_logger)

    data, header = _cube(result.output_path)
    assert result.n_malformed == 1
    assert result.n_applied == 2
    np.testing.assert_allclose(data[1], 2.0)
    assert header[KW_NSKIPPED] == 1


def test_unreadable_source_is_skipped_with_warning(
    make_stack, write_manifest_file, tmp_path, test_logger, caplog
):
    src = str(make_stack("a.fits", [1.0, 2.0]))
    missing = str(tmp_path / "missing.fits")
    manifest = write_manifest_file([(src, 0, 0.0, 1.0), (missing, 0, 1.0, 2.0), (src, 1, 2.0, 3.0)])

    with caplog.at_level(logging.WARNING, logger=test_logger.name):
        result = build_cube(manifest, logger=test_logger)

    data, _ = _cube(result.output_path)
    assert result.n_unreadable == 1
    assert result.n_applied == 2
    assert 1 not in result.written_bins
    np.testing.assert_allclose(data[1], 0.0)
    np.testing.assert_allclose(data[2], 2.0)
    assert any("Skipping record 1" in r.getMessage() for r in caplog.records)


def test_unreadable_record_sharing_a_bin(make_stack, write_manifest_file, tmp_path, test_logger):
    src = str(make_stack("a.fits", [2.0, 4.0]))
    missing = str(tmp_path / "missing.fits")
    manifest = write_manifest_file([(src, 0, 0.0, 0.5), (missing, 0, 0.5, 1.0), (src, 1, 1.0, 2.0)])

    result = build_cube(manifest, logger=test_logger)

    data, _ = _cube(result.output_path)
    assert result.n_unreadable == 1
    assert result.written_bins == {0, 1}
    # Only the readable half of bin 0 contributes.
    np.testing.assert_allclose(data[0], 1.0)
    np.testing.assert_allclose(data[1], 4.0)


def test_untouched_bins_stay_zero_and_unwritten(make_stack, write_manifest_file, test_logger):
    src = str(make_stack("a.fits", [5.0, 6.0]))
    manifest = write_manifest_file([(src, 0, 0.0, 1.0), (src, 1, 3.0, 4.0)])

    result = build_cube(manifest, logger=test_logger)

    data, _ = _cube(result.output_path)
    assert result.written_bins == {0, 3}
    assert result.n_planes_written == 2
    np.testing.assert_allclose(data[1], 0.0)
    np.testing.assert_allclose(data[2], 0.0)
    np.testing.assert_allclose(data[3], 6.0)


def test_active_set_stays_bounded(make_stack, write_manifest_file, test_logger):
    n = 40
    src = str(make_stack("a.fits", [1.0] * n))
    rows = [(src, i, i * 0.5, i * 0.5 + 1.5) for i in range(n)]
    manifest = write_manifest_file(rows)

    result = build_cube(manifest, logger=test_logger)

    assert result.peak_active_frames <= 3
    data, _ = _cube(result.output_path)
    # Every frame contributes 1.5 bins of unit signal.
    assert float(data[:, 0, 0].sum()) == pytest.approx(n * 1.5, rel=1e-5)


def test_out_of_order_record_does_not_rewrite_flushed_bin(
    make_stack, write_manifest_file, test_logger, caplog
):
    src = str(make_stack("a.fits", [1.0, 2.0, 3.0]))
    manifest = write_manifest_file([(src, 0, 0.0, 1.0), (src, 1, 2.0, 3.0), (src, 2, 0.0, 1.0)])

    with caplog.at_level(logging.WARNING, logger=test_logger.name):
        result = build_cube(manifest, logger=test_logger)

    data, _ = _cube(result.output_path)
    np.testing.assert_allclose(data[0], 1.0)
    np.testing.assert_allclose(data[2], 2.0)
    assert any("already written" in r.getMessage() for r in caplog.records)


def test_record_before_grid_origin_is_clipped(make_stack, write_manifest_file, test_logger):
    src = str(make_stack("a.fits", [2.0]))
    manifest = write_manifest_file([(src, 0, -0.5, 0.5)])

    result = build_cube(manifest, logger=test_logger)

    data, _ = _cube(result.output_path)
    assert data.shape[0] == 1
    np.testing.assert_allclose(data[0], 1.0)


def test_grid_metadata_reaches_header(make_stack, write_manifest_file, test_logger):
    src = str(make_stack("a.fits", [1.0]))
    manifest = write_manifest_file([(src, 0, 0.0, 1.0)], header=["# tstart=1000.000000", "# dt=0.25"])

    _, header = _cube(build_cube(manifest, logger=test_logger).output_path)
    assert header[KW_DT] == pytest.approx(0.25)


def test_no_valid_records_is_fatal(write_manifest_file, test_logger):
    manifest = write_manifest_file(["# only comments", "1 2 3"])
    with pytest.raises(RuntimeError, match="no valid records"):
        build_cube(manifest, logger=test_logger)


def test_unreadable_first_source_is_fatal(write_manifest_file, tmp_path, test_logger):
    manifest = write_manifest_file([(str(tmp_path / "gone.fits"), 0, 0.0, 1.0)])
    with pytest.raises(RuntimeError):
        build_cube(manifest, logger=test_logger)


def test_existing_cube_refused_without_overwrite(make_stack, write_manifest_file, test_logger):
    src = str(make_stack("a.fits", [1.0]))
    manifest = write_manifest_file([(src, 0, 0.0, 1.0)])
    build_cube(manifest, logger=test_logger)

    with pytest.raises(RuntimeError):
        build_cube(manifest, config=ResampleConfig(overwrite_output=False), logger=test_logger)


def test_cli_exit_status(make_stack, write_manifest_file, tmp_path):
    src = str(make_stack("a.fits", [1.0]))
    manifest = write_manifest_file([(src, 0, 0.0, 1.0)])
    out = tmp_path / "explicit.fits"

    assert _main([str(manifest), "-o", str(out)]) == 0
    assert out.exists()
    assert _main([str(tmp_path / "absent.resample.txt")]) == 1


def test_write_failure_leaves_no_output(make_stack, write_manifest_file, monkeypatch, test_logger):
    src = str(make_stack("a.fits", [1.0, 2.0, 3.0]))
    manifest = write_manifest_file([(src, 0, 0.0, 1.0), (src, 1, 1.0, 2.0), (src, 2, 2.0, 3.0)])
    out = manifest.parent / "run.fits"
    write_plane = CubeWriter.write_plane

    def failing_write_plane(self, bin_index, pixels):
        if bin_index == 1:
            raise CubeWriteError("disk full")
        write_plane(self, bin_index, pixels)

    monkeypatch.setattr(CubeWriter, "write_plane", failing_write_plane)
    with pytest.raises(CubeWriteError):
        build_cube(manifest, logger=test_logger)

    assert not out.exists()
    assert not (manifest.parent / "run.fits.partial").exists()

import pytest

from TIMECUBE.Utility.RESAMPLE.TIMECUBE_MANIFEST_RECORDS import (
    ManifestRecord,
    format_manifest_header,
    iter_manifest_lines,
    iter_manifest_records,
    parse_manifest_line,
    prescan_manifest,
    read_manifest_metadata,
)


def test_parse_valid_line():
    rec = parse_manifest_line("3 1000.5 1001.0 cam0_12:00:00.txt 7 0.500000 1.500000")
    assert rec == ManifestRecord(3, 1000.5, 1001.0, "cam0_12:00:00.txt", 7, 0.5, 1.5)
    assert rec.span == pytest.approx(1.0)
    assert rec.first_bin() == 0
    assert rec.last_bin() == 1


def test_last_bin_on_exact_boundary():
    rec = parse_manifest_line("0 0 1 a.txt 0 2.0 3.0")
    assert rec.last_bin() == 2


@pytest.mark.parametrize(
    "line",
    [
        "",
        "   ",
        "# comment",
        "1 2 3 a.txt 0 0.5",
        "x 1000 1001 a.txt 0 0.0 1.0",
        "0 1000 1001 a.txt zero 0.0 1.0",
        "0 1000 1001 a.txt 0 1.0 1.0",
        "0 1000 1001 a.txt 0 2.0 1.0",
        "0 1000 1001 a.txt -1 0.0 1.0",
        "0 1000 1001 a.txt 0 nan 1.0",
    ],
)
def test_parse_rejects(line):
    assert parse_manifest_line(line) is None


def test_to_line_round_trip():
    rec = ManifestRecord(5, 1.25, 2.5, "src.txt", 2, 0.125, 0.75)
    assert parse_manifest_line(rec.to_line()) == rec


def test_iter_manifest_lines_flags_malformed():
    lines = ["# k=v", "0 0 1 a.txt 0 0.0 1.0", "bad line", "", "1 1 2 a.txt 1 1.0 2.0"]
    out = list(iter_manifest_lines(lines))
    assert [r is None for _, r in out] == [False, True, False]


def test_prescan(write_manifest_file):
    path = write_manifest_file(
        [
            ("first.txt", 0, 0.0, 1.0),
            "garbage",
            ("second.txt", 0, 1.0, 3.5),
            "0 1 2",
        ],
        header=["# sname=cam0", "# dt=0.5", "# tstart=1000.000000"],
    )
    summary = prescan_manifest(path)

    assert summary.max_bin_index == 3
    assert summary.n_frames == 4
    assert summary.first_source == "first.txt"
    assert summary.n_records == 2
    assert summary.n_malformed == 2
    assert summary.max_span == pytest.approx(2.5)
    assert summary.metadata == {"sname": "cam0", "dt": "0.5", "tstart": "1000.000000"}


def test_prescan_without_records(write_manifest_file):
    summary = prescan_manifest(write_manifest_file(["# nothing here", "1 2"]))
    assert summary.max_bin_index < 0
    assert summary.first_source is None


def test_iter_records_and_metadata(write_manifest_file):
    path = write_manifest_file(
        [("a.txt", 0, 0.0, 1.0), ("a.txt", 1, 1.0, 2.0)],
        header=["# columns are documented elsewhere", "# dt=1"],
    )
    assert [r.local_index for r in iter_manifest_records(path)] == [0, 1]
    assert read_manifest_metadata(path) == {"dt": "1"}


def test_format_manifest_header():
    text = format_manifest_header({"sname": "cam0", "dt": 0.5})
    lines = text.splitlines()
    assert lines[0] == "# sname=cam0"
    assert lines[1] == "# dt=0.5"
    assert lines[2].startswith("# global_index")

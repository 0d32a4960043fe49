from pathlib import Path

import pandas as pd
import pytest

from segreg.table_reader import (
    DelimitedRangeReader,
    FileAccessError,
    InvalidRangeError,
    TableReadError,
    is_url,
    read_remote_table,
)


def make_table(tmp_path: Path, name: str = "data.csv", sep: str = ",") -> Path:
    df = pd.DataFrame({"x": [1, 2, 3, 4, 5], "y": [10.0, 20.0, 30.0, 40.0, 50.0]})
    path = tmp_path / name
    df.to_csv(path, index=False, sep=sep)
    return path


def test_read_full_file(tmp_path: Path):
    with DelimitedRangeReader(make_table(tmp_path)) as reader:
        df = reader.read_range()
    assert list(df.columns) == ["x", "y"]
    assert len(df) == 5


def test_read_range_keeps_header(tmp_path: Path):
    reader = DelimitedRangeReader(make_table(tmp_path))
    df = reader.read_range(start_line=3, end_line=4)
    assert df["x"].tolist() == [3, 4]


def test_end_line_beyond_file_is_truncated(tmp_path: Path):
    reader = DelimitedRangeReader(make_table(tmp_path))
    df = reader.read_range(start_line=4, end_line=100)
    assert df["x"].tolist() == [4, 5]


def test_tab_separated_by_suffix(tmp_path: Path):
    reader = DelimitedRangeReader(make_table(tmp_path, "data.tsv", sep="\t"))
    assert reader.sep == "\t"
    assert reader.read_range()["y"].tolist() == [10.0, 20.0, 30.0, 40.0, 50.0]


@pytest.mark.parametrize(
    "start,end",
    [(0, None), (6, None), (3, 2), (1, -1)],
)
def test_invalid_ranges(tmp_path: Path, start, end):
    reader = DelimitedRangeReader(make_table(tmp_path))
    with pytest.raises(InvalidRangeError):
        reader.read_range(start_line=start, end_line=end)


def test_missing_file_raises(tmp_path: Path):
    with pytest.raises(FileNotFoundError):
        DelimitedRangeReader(tmp_path / "missing.csv")


def test_directory_is_not_a_file(tmp_path: Path):
    with pytest.raises(FileAccessError):
        DelimitedRangeReader(tmp_path)


def test_errors_share_base_class():
    assert issubclass(InvalidRangeError, TableReadError)
    assert issubclass(FileAccessError, TableReadError)


def test_is_url():
    assert is_url("https://example.org/a.csv")
    assert is_url("HTTP://example.org/a.csv")
    assert not is_url("data/a.csv")
    assert not is_url(Path("a.csv"))
    assert not is_url(None)


def test_remote_table_slices_line_range(monkeypatch):
    calls = []

    def fake_read_csv(url, **kwargs):
        calls.append(url)
        return pd.DataFrame({"x": [1, 2, 3, 4, 5], "y": [2, 4, 6, 8, 10]})

    monkeypatch.setattr(pd, "read_csv", fake_read_csv)
    df = read_remote_table("https://example.org/data.csv", start_line=2, end_line=4)

    assert calls == ["https://example.org/data.csv"]
    assert df["x"].tolist() == [2, 3, 4]
    assert df.index.tolist() == [0, 1, 2]


def test_remote_table_read_failure_is_wrapped(monkeypatch):
    def failing_read_csv(url, **kwargs):
        raise OSError("connection refused")

    monkeypatch.setattr(pd, "read_csv", failing_read_csv)
    with pytest.raises(FileAccessError) as exc:
        read_remote_table("https://example.org/data.csv")
    assert "connection refused" in str(exc.value)


def test_remote_table_rejects_bad_range():
    with pytest.raises(InvalidRangeError):
        read_remote_table("https://example.org/data.csv", start_line=0)

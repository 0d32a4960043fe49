"""
Delimited table reader.

Reads a line range of a delimited text file (CSV, TSV or anything pandas can
sniff) into a DataFrame, with explicit errors for bad ranges and unreadable
files. Remote tables (http/https URLs) are read whole through pandas.
"""

import logging
from pathlib import Path
from typing import Dict, Optional, Tuple, Union

import pandas as pd

logger = logging.getLogger(__name__)

# Known suffixes -> delimiter. None lets pandas sniff the delimiter.
SUFFIX_SEPARATORS: Dict[str, Optional[str]] = {
    ".csv": ",",
    ".tsv": "\t",
    ".tab": "\t",
    ".txt": None,
}


class TableReadError(Exception):
    """Base exception for delimited table reading errors."""

    pass


class InvalidRangeError(TableReadError):
    """Raised when invalid line range is provided."""

    pass


class FileAccessError(TableReadError):
    """Raised when file cannot be accessed or read."""

    pass


def is_url(source: Union[str, Path, None]) -> bool:
    return isinstance(source, str) and source.lower().startswith(("http://", "https://"))


def _slice_rows(
    df: pd.DataFrame, start_line: Optional[int], end_line: Optional[int]
) -> pd.DataFrame:
    start = 0 if start_line is None else start_line - 1
    stop = None if end_line is None else end_line
    return df.iloc[start:stop].reset_index(drop=True)


def read_remote_table(
    url: str,
    start_line: Optional[int] = None,
    end_line: Optional[int] = None,
    sep: Optional[str] = ",",
) -> pd.DataFrame:
    """Read a delimited table from an http(s) URL, optionally keeping a 1-based line range."""
    for name, value in (("Start", start_line), ("End", end_line)):
        if value is not None and (not isinstance(value, int) or value <= 0):
            raise InvalidRangeError(
                f"{name} line must be a positive integer or None, got: {value}"
            )
    try:
        df = pd.read_csv(url, sep=sep, engine="python" if sep is None else "c")
    except Exception as e:
        raise FileAccessError(f"Error reading table from {url}: {e}")
    logger.info("Read %d rows from %s", len(df), url)
    return _slice_rows(df, start_line, end_line)


class DelimitedRangeReader:
    """
    Reads specific data-row ranges from a local delimited file.

    Line numbers are 1-based and exclude the header row.
    """

    def __init__(self, file_path: Union[str, Path], sep: Optional[str] = "auto") -> None:
        """
        Args:
            file_path: Path to the delimited file
            sep: Delimiter; "auto" picks one from the file suffix, None sniffs it

        Raises:
            FileNotFoundError: If the specified file does not exist
            FileAccessError: If the path is not a regular file
        """
        self.file_path = Path(file_path)
        if not self.file_path.exists():
            raise FileNotFoundError(f"Data file not found: {self.file_path}")
        if not self.file_path.is_file():
            raise FileAccessError(f"Path is not a file: {self.file_path}")

        suffix = self.file_path.suffix.lower()
        if sep == "auto":
            if suffix not in SUFFIX_SEPARATORS:
                logger.warning(
                    "Unrecognised file extension %r; sniffing the delimiter", suffix
                )
            sep = SUFFIX_SEPARATORS.get(suffix)
        self.sep = sep

    def _read(self, **kwargs) -> pd.DataFrame:
        engine = "python" if self.sep is None else "c"
        return pd.read_csv(self.file_path, sep=self.sep, engine=engine, **kwargs)

    def count_rows(self) -> int:
        """Number of data rows (header excluded)."""
        try:
            total = 0
            for chunk in self._read(chunksize=10000):
                total += len(chunk)
            return total
        except pd.errors.EmptyDataError:
            return 0
        except Exception as e:
            raise FileAccessError(f"Error reading data file: {e}")

    def _validate_line_range(
        self, start_line: Optional[int], end_line: Optional[int] = None
    ) -> Tuple[int, int]:
        """
        Normalize a 1-based inclusive line range against the file length.
        end_line beyond the last row is truncated; start_line beyond it is an error.
        """
        total_lines = self.count_rows()

        if start_line is None:
            start_line = 1
        elif not isinstance(start_line, int) or start_line <= 0:
            raise InvalidRangeError(
                f"Start line must be a positive integer or None, got: {start_line}"
            )

        if end_line is None:
            end_line = total_lines
        elif not isinstance(end_line, int) or end_line <= 0:
            raise InvalidRangeError(
                f"End line must be a positive integer or None, got: {end_line}"
            )

        if start_line > total_lines:
            raise InvalidRangeError(
                f"Start line {start_line} exceeds total data rows {total_lines}"
            )
        if end_line < start_line:
            raise InvalidRangeError(
                f"End line {end_line} must be greater than or equal to start line {start_line}"
            )
        return start_line, min(end_line, total_lines)

    def read_range(
        self,
        start_line: Optional[int] = None,
        end_line: Optional[int] = None,
    ) -> pd.DataFrame:
        """
        Read rows start_line..end_line (inclusive) keeping the header row.

        Raises:
            InvalidRangeError: If the range parameters are invalid
            FileAccessError: If the file cannot be read
        """
        start_line, end_line = self._validate_line_range(start_line, end_line)
        # Keep the header (line 0); skip data rows before the range
        skiprows = None if start_line <= 1 else range(1, start_line)
        try:
            return self._read(
                header=0,
                skiprows=skiprows,
                nrows=end_line - start_line + 1,
            )
        except pd.errors.EmptyDataError:
            return pd.DataFrame()
        except Exception as e:
            raise FileAccessError(f"Error reading data range: {e}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        pass

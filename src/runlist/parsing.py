from __future__ import annotations

import codecs
import csv
import logging
import zipfile
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from typing import Any, Callable, Generator, Iterator

import chardet
import pandas as pd
from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from runlist.data_models import RawRow
from runlist.errors import EmptyFile, InvalidFileFormat

logger = logging.getLogger(__name__)

_XLSX_MAGIC = b"PK\x03\x04"
_XLS_MAGIC = b"\xd0\xcf\x11\xe0"
_CONTROL_BYTES = set(range(0, 9)) | {11, 12} | set(range(14, 32))
_SAMPLE_BYTES = 16384


@dataclass
class ParsedRunlist:
    """Raw header list plus a lazy stream of (row_number, RawRow)."""

    headers: list[str]
    rows: Generator[tuple[int, RawRow], None, None]
    file_format: str
    on_close: Callable[[], None] | None = None

    def close(self) -> None:
        self.rows.close()
        if self.on_close is not None:
            self.on_close()


def _cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float):
        if value != value:  # NaN
            return ""
        return str(int(value)) if value.is_integer() else str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def _is_blank(row: RawRow) -> bool:
    return not any(v.strip() for v in row.values())


def _read_head(path: Path, size: int) -> bytes:
    with path.open("rb") as fh:
        return fh.read(size)


def _sniff_format(path: Path) -> str:
    head = _read_head(path, 1024)
    if head.startswith(_XLSX_MAGIC) or path.suffix.lower() in (".xlsx", ".xlsm"):
        return "xlsx"
    if head.startswith(_XLS_MAGIC) or path.suffix.lower() == ".xls":
        raise InvalidFileFormat("Legacy .xls workbooks are not supported; save as .xlsx or CSV")
    if any(b in _CONTROL_BYTES for b in head):
        raise InvalidFileFormat("File looks binary; expected CSV or XLSX")
    return "csv"


def _detect_encoding(sample: bytes) -> str:
    """UTF-8 (BOM optional) when the sample decodes as such, else chardet's guess."""
    try:
        sample.decode("utf-8")
        return "utf-8-sig"
    except UnicodeDecodeError as exc:
        # A multi-byte character cut off by the sample boundary is still UTF-8.
        if exc.start >= len(sample) - 3 and exc.reason == "unexpected end of data":
            return "utf-8-sig"
    detected = chardet.detect(sample)
    encoding = (detected.get("encoding") or "").lower()
    if not encoding or detected.get("confidence", 0) < 0.5 or encoding in ("ascii", "iso-8859-1"):
        # Windows-1252 is a superset of Latin-1 and the usual export encoding.
        return "cp1252"
    try:
        return codecs.lookup(encoding).name
    except LookupError:
        return "cp1252"


def _sniff_delimiter(sample: str) -> str:
    try:
        return csv.Sniffer().sniff(sample, delimiters=",;\t|").delimiter
    except csv.Error:
        return ","


def _csv_kwargs(sep: str, encoding: str, header_count: int | None = None) -> dict[str, Any]:
    kwargs: dict[str, Any] = {
        "sep": sep,
        "engine": "python",
        "dtype": str,
        "keep_default_na": False,
        "skipinitialspace": True,
        "skip_blank_lines": True,
        "encoding": encoding,
        "encoding_errors": "replace",
    }
    if header_count is not None:
        # Long rows are truncated to the header width instead of failing the file.
        kwargs["on_bad_lines"] = lambda fields: fields[:header_count]
    return kwargs


def _open_csv(path: Path, chunk_size: int) -> ParsedRunlist:
    raw_sample = _read_head(path, _SAMPLE_BYTES)
    encoding = _detect_encoding(raw_sample)
    sep = _sniff_delimiter(raw_sample.decode(encoding, errors="replace"))
    logger.debug("CSV %s: encoding=%s delimiter=%r", path.name, encoding, sep)
    try:
        headers = [str(c) for c in pd.read_csv(path, nrows=0, **_csv_kwargs(sep, encoding)).columns]
    except pd.errors.EmptyDataError as exc:
        raise EmptyFile("File contains no header row") from exc
    except (pd.errors.ParserError, UnicodeDecodeError, ValueError) as exc:
        raise InvalidFileFormat(f"Could not parse CSV: {exc}") from exc

    def rows() -> Iterator[tuple[int, RawRow]]:
        row_number = 0
        try:
            reader = pd.read_csv(path, chunksize=chunk_size, **_csv_kwargs(sep, encoding, len(headers)))
            with reader:
                for chunk in reader:
                    for values in chunk.itertuples(index=False, name=None):
                        row = {h: _cell_text(v) for h, v in zip(headers, values)}
                        row_number += 1
                        if not _is_blank(row):
                            yield row_number, row
        except (pd.errors.ParserError, UnicodeDecodeError) as exc:
            raise InvalidFileFormat(f"Could not parse CSV near data row {row_number + 1}: {exc}") from exc

    return ParsedRunlist(headers=headers, rows=rows(), file_format="csv")


def _open_xlsx(path: Path) -> ParsedRunlist:
    try:
        workbook = load_workbook(path, read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError) as exc:
        raise InvalidFileFormat(f"Could not open workbook: {exc}") from exc

    sheet_rows = workbook.active.iter_rows(values_only=True)
    headers: list[str] | None = None
    for values in sheet_rows:
        cells = [_cell_text(v).strip() for v in values]
        if any(cells):
            headers = [c or f"Column {i + 1}" for i, c in enumerate(cells)]
            break
    if headers is None:
        workbook.close()
        raise EmptyFile("Workbook contains no header row")

    def rows() -> Iterator[tuple[int, RawRow]]:
        try:
            for row_number, values in enumerate(sheet_rows, start=1):
                row = {h: _cell_text(v) for h, v in zip(headers, values)}
                for h in headers[len(row):]:
                    row[h] = ""
                if not _is_blank(row):
                    yield row_number, row
        finally:
            workbook.close()

    return ParsedRunlist(headers=headers, rows=rows(), file_format="xlsx", on_close=workbook.close)


def open_runlist(path: str | Path, chunk_size: int = 1000) -> ParsedRunlist:
    """Open a CSV or XLSX runlist for streaming.

    Raises InvalidFileFormat for unreadable containers and EmptyFile when
    there is not even a header row. Zero data rows is detected by the caller.
    """
    file_path = Path(path)
    try:
        file_format = _sniff_format(file_path)
    except OSError as exc:
        raise InvalidFileFormat(f"Could not read upload: {exc}") from exc
    logger.debug("Opening %s as %s", file_path.name, file_format)
    if file_format == "xlsx":
        return _open_xlsx(file_path)
    return _open_csv(file_path, chunk_size)

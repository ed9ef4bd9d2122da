"""Decode spreadsheet bytes into loosely-typed row mappings."""

from __future__ import annotations

import logging
from io import BytesIO
from pathlib import PurePosixPath
from typing import Any
from urllib.parse import urlparse

import pandas as pd

from app.core.errors import ParseError

logger = logging.getLogger(__name__)

CSV_SUFFIXES = {".csv"}
EXCEL_SUFFIXES = {".xlsx", ".xlsm"}
SUPPORTED_SUFFIXES = CSV_SUFFIXES | EXCEL_SUFFIXES

RawRow = dict[str, Any]


def detect_format(file_name: str | None) -> str:
    """Return "csv" or "excel" from the file name (or URL) extension.

    Unknown or missing extensions are read as Excel workbooks.
    """
    if not file_name:
        return "excel"
    path = urlparse(file_name).path if "://" in file_name else file_name
    suffix = PurePosixPath(path).suffix.lower()
    return "csv" if suffix in CSV_SUFFIXES else "excel"


def _read_frame(content: bytes, fmt: str) -> pd.DataFrame:
    buffer = BytesIO(content)
    if fmt == "csv":
        try:
            return pd.read_csv(
                buffer,
                dtype=object,
                encoding="utf-8-sig",
                keep_default_na=False,
                na_values=[],
            )
        except pd.errors.EmptyDataError:
            return pd.DataFrame()
    # First sheet only, every cell kept as the raw decoded value; text such as
    # "NA" or "null" stays text
    return pd.read_excel(
        buffer,
        sheet_name=0,
        dtype=object,
        engine="openpyxl",
        keep_default_na=False,
        na_values=[],
    )


def _clean_value(value: Any) -> Any:
    if value is None or (isinstance(value, str) and value == ""):
        return None
    try:
        if pd.isna(value):
            return None
    except (TypeError, ValueError):
        # Array-like cells are not expected from a flat sheet; keep them as-is
        return value
    return value


def parse_rows(content: bytes, file_name: str | None = None) -> list[RawRow]:
    """Parse a spreadsheet into an ordered list of ``{header: value}`` rows.

    Blank cells become ``None`` and fully blank rows are skipped. A workbook
    with only a header row (or nothing at all) yields an empty list.

    Raises:
        ParseError: if the bytes are not a readable file of the detected format.
    """
    fmt = detect_format(file_name)
    if not content:
        if fmt == "csv":
            return []
        raise ParseError("Spreadsheet file is empty")

    try:
        frame = _read_frame(content, fmt)
    except ImportError as exc:
        raise ParseError(f"Spreadsheet format not supported: {exc}") from exc
    except UnicodeDecodeError as exc:
        raise ParseError(f"File encoding error: {exc}") from exc
    except Exception as exc:
        logger.warning(f"Failed to parse {fmt} content ({file_name}): {exc}")
        raise ParseError(f"Could not read {fmt} file: {exc}") from exc

    if frame.empty:
        return []

    headers = [str(column).strip() for column in frame.columns]

    rows: list[RawRow] = []
    for values in frame.itertuples(index=False, name=None):
        row = {header: _clean_value(value) for header, value in zip(headers, values)}
        if all(value is None for value in row.values()):
            continue
        rows.append(row)
    logger.debug(f"Parsed {len(rows)} rows from {file_name or 'spreadsheet'}")
    return rows

"""
CSV source for marketplace exports.

Marketplace downloads carry BOMs, stray quotes and ragged rows. The primary
parser is pandas with every cell read as text; when it fails or yields nothing
a plain line-splitting parser takes over.
"""

from __future__ import annotations

import csv
import io
import logging
from typing import Dict, List, Union

import pandas as pd

from exceptions import ParseError

logger = logging.getLogger(__name__)

Row = Dict[str, str]


def decode_content(content: Union[bytes, str]) -> str:
    """Decode upload bytes, dropping a UTF-8 BOM and tolerating legacy encodings."""
    if isinstance(content, str):
        return content.lstrip("\ufeff")
    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError:
        logger.warning("Upload is not valid UTF-8; decoding as latin-1")
        return content.decode("latin-1")


def parse_csv(text: str) -> List[Row]:
    """
    Parse CSV text with pandas.

    All cells are read as strings (order line ids exceed the safe integer range
    and must never be coerced). Malformed rows are skipped.
    """
    frame = pd.read_csv(
        io.StringIO(text),
        dtype=str,
        keep_default_na=False,
        skip_blank_lines=True,
        skipinitialspace=True,
        on_bad_lines="skip",
        engine="python",
    )
    if frame.empty:
        return []
    frame.columns = [str(column).strip() for column in frame.columns]
    frame = frame.fillna("").apply(lambda column: column.str.strip())
    return frame.to_dict(orient="records")


def _split_line(line: str) -> List[str]:
    try:
        values = next(csv.reader([line]))
    except (csv.Error, StopIteration):
        values = line.split(",")
    return [value.strip() for value in values]


def parse_csv_simple(text: str) -> List[Row]:
    """Line-by-line fallback parser honouring double-quoted fields."""
    lines = [line for line in text.splitlines() if line.strip()]
    if not lines:
        return []

    headers = [header.strip().strip('"') for header in lines[0].split(",")]
    records: List[Row] = []
    for line in lines[1:]:
        values = _split_line(line)
        if not values:
            continue
        records.append(
            {
                header: values[index] if index < len(values) else ""
                for index, header in enumerate(headers)
            }
        )
    return records


def read_rows(content: Union[bytes, str]) -> List[Row]:
    """
    Produce row dicts from an upload, falling back to the simple parser.

    Raises ParseError only when the primary parser failed and the fallback
    could not recover any rows either.
    """
    text = decode_content(content)
    primary_error = None

    try:
        rows = parse_csv(text)
        if rows:
            return rows
    except (pd.errors.ParserError, pd.errors.EmptyDataError, csv.Error, ValueError) as exc:
        primary_error = exc
        logger.warning("Primary CSV parser failed, trying simple parser: %s", exc)

    rows = parse_csv_simple(text)
    if not rows and primary_error is not None and text.strip():
        raise ParseError(f"CSV could not be parsed: {primary_error}") from primary_error
    return rows

import csv
import io
import itertools
import json
import logging
from typing import IO, Any, Dict, Iterator, List, Optional, Tuple

import pandas as pd

from autolot.exceptions import FormatError
from autolot.imports.models import FileFormatSettings

logger = logging.getLogger(__name__)

RawRow = Dict[str, Optional[str]]
NumberedRow = Tuple[int, RawRow]

_COMMON_DELIMITERS = (",", ";", "\t", "|")
_RECORD_KEYS = ("records", "items", "data", "vehicles", "inventory")


def parse_rows(stream: IO[bytes], file_format: FileFormatSettings, chunk_size: int = 1000) -> Iterator[NumberedRow]:
    """
    Lazily yields (row_number, raw_row) pairs from a binary stream.
    Row numbers count data records from 1; header lines are not counted.
    """
    text = io.TextIOWrapper(stream, encoding=file_format.encoding, newline="")
    try:
        if file_format.file_kind == "csv":
            yield from _csv_rows(text, file_format)
        elif file_format.file_kind == "fixed_width":
            yield from _fixed_width_rows(text, file_format, chunk_size)
        else:
            yield from _json_rows(text, file_format)
    except UnicodeDecodeError as exc:
        raise FormatError(f"Source is not valid {file_format.encoding} text: {exc.reason}") from exc
    finally:
        text.detach()


def _clean_header(names: List[str]) -> List[str]:
    cleaned = [str(n).strip() for n in names]
    if cleaned:
        cleaned[0] = cleaned[0].lstrip("\ufeff")
    return cleaned


def _check_header(header: List[str], delimiter: str) -> None:
    if len(header) != 1:
        return
    for other in _COMMON_DELIMITERS:
        if other != delimiter and other in header[0]:
            raise FormatError(
                f"Header is not split by the configured delimiter {delimiter!r}; it looks {other!r}-delimited",
                row_number=0,
            )


def _csv_rows(text: IO[str], file_format: FileFormatSettings) -> Iterator[NumberedRow]:
    reader = csv.reader(text, delimiter=file_format.delimiter, strict=True)
    try:
        if file_format.has_header:
            first = next(reader, None)
            if first is None:
                return
            header = _clean_header(first)
            _check_header(header, file_format.delimiter)
        else:
            header = list(file_format.column_names)

        row_number = 0
        for values in reader:
            if not any(v.strip() for v in values):
                continue
            row_number += 1
            if len(values) > len(header):
                surplus = values[len(header):]
                if any(v.strip() for v in surplus):
                    raise FormatError(
                        f"Row has {len(values)} values but the layout defines {len(header)} columns",
                        row_number=row_number,
                    )
                values = values[: len(header)]
            row: RawRow = dict(zip(header, values))
            for name in header[len(values):]:
                row[name] = None
            yield row_number, row
    except csv.Error as exc:
        raise FormatError(f"Malformed CSV near line {reader.line_num}: {exc}") from exc


def _fixed_width_rows(text: IO[str], file_format: FileFormatSettings, chunk_size: int) -> Iterator[NumberedRow]:
    widths = list(file_format.column_widths)
    if file_format.has_header:
        options: Dict[str, Any] = {"header": 0}
    else:
        if len(file_format.column_names) != len(widths):
            raise FormatError(
                f"{len(file_format.column_names)} column names for {len(widths)} fixed-width columns"
            )
        options = {"header": None, "names": list(file_format.column_names)}

    row_number = 0
    try:
        with pd.read_fwf(
            text,
            widths=widths,
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=True,
            chunksize=chunk_size,
            **options,
        ) as reader:
            for chunk in reader:
                chunk.columns = _clean_header(list(chunk.columns))
                for record in chunk.to_dict(orient="records"):
                    row_number += 1
                    yield row_number, {k: (v if v != "" else None) for k, v in record.items()}
    except pd.errors.EmptyDataError:
        return
    except (pd.errors.ParserError, ValueError) as exc:
        if isinstance(exc, UnicodeDecodeError):
            raise
        raise FormatError(f"Malformed fixed-width data: {exc}") from exc


def _stringify(value: Any, multi_value_delimiter: str) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, list):
        return multi_value_delimiter.join(s for s in (_stringify(v, multi_value_delimiter) for v in value) if s)
    if isinstance(value, dict):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def _flatten(obj: Dict[str, Any], file_format: FileFormatSettings, prefix: str = "") -> RawRow:
    row: RawRow = {}
    for key, value in obj.items():
        name = f"{prefix}{key}"
        if isinstance(value, dict):
            row.update(_flatten(value, file_format, f"{name}."))
        else:
            row[name] = _stringify(value, file_format.multi_value_delimiter)
    return row


def _unwrap(document: Any, record_path: Optional[str]) -> List[Any]:
    if record_path:
        node = document
        for part in record_path.split("."):
            if not isinstance(node, dict) or part not in node:
                raise FormatError(f"record_path '{record_path}' not found in JSON document")
            node = node[part]
        if not isinstance(node, list):
            raise FormatError(f"record_path '{record_path}' does not hold an array")
        return node
    if isinstance(document, list):
        return document
    if isinstance(document, dict):
        for key in _RECORD_KEYS:
            records = document.get(key)
            if isinstance(records, list) and all(isinstance(r, dict) for r in records):
                return records
        return [document]
    raise FormatError("JSON document holds neither an object nor an array of records")


def _numbered(records: Iterator[Any], file_format: FileFormatSettings, start: int = 1) -> Iterator[NumberedRow]:
    for row_number, record in enumerate(records, start=start):
        if not isinstance(record, dict):
            raise FormatError("JSON record is not an object", row_number=row_number)
        yield row_number, _flatten(record, file_format)


def _next_content_line(text: IO[str]) -> str:
    for line in text:
        if line.strip():
            return line
    return ""


def _parses(line: str) -> bool:
    try:
        json.loads(line)
    except json.JSONDecodeError:
        return False
    return True


def _json_rows(text: IO[str], file_format: FileFormatSettings) -> Iterator[NumberedRow]:
    first_line = _next_content_line(text)
    if not first_line:
        return

    # A complete JSON value on the first line followed by more content can only be JSON lines.
    second_line = ""
    is_lines = False
    if file_format.record_path is None and _parses(first_line):
        second_line = _next_content_line(text)
        is_lines = bool(second_line)

    if not is_lines:
        try:
            document = json.loads(first_line + second_line + text.read())
        except json.JSONDecodeError as exc:
            raise FormatError(f"Invalid JSON at line {exc.lineno}: {exc.msg}") from exc
        yield from _numbered(iter(_unwrap(document, file_format.record_path)), file_format)
        return

    yield from _numbered(iter([json.loads(first_line)]), file_format)
    row_number = 1
    for line in itertools.chain([second_line], text):
        if not line.strip():
            continue
        row_number += 1
        try:
            obj = json.loads(line)
        except json.JSONDecodeError as exc:
            raise FormatError(f"Invalid JSON line: {exc.msg}", row_number=row_number) from exc
        yield from _numbered(iter([obj]), file_format, start=row_number)

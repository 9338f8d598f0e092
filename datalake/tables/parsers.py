from __future__ import annotations

import csv
from dataclasses import dataclass
from pathlib import Path

_DELIMITED_FORMATS = {
    ".csv": ",",
    ".tsv": "\t",
}
_PLANNED_FORMATS = {".xlsx", ".xls"}


class UnsupportedFormatError(ValueError):
    pass


class ParseError(ValueError):
    pass


@dataclass(frozen=True)
class ParsedTable:
    columns: tuple[str, ...]
    rows: list[tuple[str | None, ...]]

    @property
    def row_count(self) -> int:
        return len(self.rows)

    def as_dicts(self) -> list[dict[str, str | None]]:
        return [dict(zip(self.columns, row)) for row in self.rows]


def normalize_format(format_hint: str) -> str:
    token = format_hint.strip().lower()
    if not token:
        return ""
    return token if token.startswith(".") else f".{token}"


def supported_formats() -> list[str]:
    return sorted(_DELIMITED_FORMATS)


def _normalize_header(raw_header: list[str]) -> tuple[str, ...]:
    columns: list[str] = []
    seen: set[str] = set()
    for index, raw in enumerate(raw_header):
        base = raw.strip() or f"_c{index}"
        name = base
        suffix = index
        # A renamed column must not collide with a header that is already taken.
        while name.lower() in seen:
            name = f"{base}{suffix}"
            suffix += 1
        seen.add(name.lower())
        columns.append(name)
    return tuple(columns)


def _parse_delimited(local_path: Path, delimiter: str) -> ParsedTable:
    try:
        with local_path.open("r", encoding="utf-8-sig", newline="") as handle:
            reader = csv.reader(handle, delimiter=delimiter)
            header: list[str] | None = None
            width = 0
            rows: list[tuple[str | None, ...]] = []
            for record in reader:
                if not record or all(not cell.strip() for cell in record):
                    continue
                if header is None:
                    header = record
                    width = len(header)
                    continue
                cells = [cell if cell != "" else None for cell in record[:width]]
                cells.extend([None] * (width - len(cells)))
                rows.append(tuple(cells))
    except UnicodeDecodeError as exc:
        raise ParseError(f"File is not valid UTF-8 text: {exc}") from exc
    except csv.Error as exc:
        raise ParseError(f"Malformed delimited text: {exc}") from exc

    if header is None:
        raise ParseError("File is empty; a header row is required")
    return ParsedTable(columns=_normalize_header(header), rows=rows)


def parse_file(local_path: Path, format_hint: str | None = None) -> ParsedTable:
    extension = normalize_format(format_hint) if format_hint else local_path.suffix.lower()
    if extension in _PLANNED_FORMATS:
        raise UnsupportedFormatError(
            "XLSX/XLS file processing not yet implemented. Please convert to CSV format."
        )
    delimiter = _DELIMITED_FORMATS.get(extension)
    if delimiter is None:
        raise UnsupportedFormatError(f"Unsupported file type: {extension or '<none>'} ({local_path.name})")
    return _parse_delimited(local_path, delimiter)

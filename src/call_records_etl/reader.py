"""call_records_etl.reader

Lazy CSV row stream with 1-based data-row indices.

rows_from(n) yields every data row after the n-th, which matches the
meaning of SourceFile.last_processed_line.  Each call re-opens the file;
the returned iterator is single pass.
"""

from __future__ import annotations

import csv
from itertools import islice
from pathlib import Path
from typing import Iterable, Iterator

from call_records_etl.shared import normalize_headers


class MissingHeadersError(ValueError):
    """Raised when the CSV header row lacks a required column."""


class CsvStreamReader:
    def __init__(self, required_headers: Iterable[str] = ()) -> None:
        self._required = frozenset(required_headers)
        self._path: Path | None = None
        self.total_rows = 0

    def open(self, path: Path) -> int:
        """Validate headers and count data rows.  Returns the row count."""
        self._path = Path(path)
        with self._path.open(newline="", encoding="utf-8-sig") as fh:
            reader = csv.DictReader(fh)
            headers = {h.strip() for h in (reader.fieldnames or [])}
            missing = self._required - headers
            if missing:
                raise MissingHeadersError(f"missing headers: {sorted(missing)}")
            self.total_rows = sum(1 for _ in reader)
        return self.total_rows

    def rows_from(self, offset: int) -> Iterator[tuple[int, dict[str, str | None]]]:
        if self._path is None:
            raise RuntimeError("CsvStreamReader.open() must be called first")
        offset = max(offset, 0)
        with self._path.open(newline="", encoding="utf-8-sig") as fh:
            reader = csv.DictReader(fh)
            for idx, raw_row in enumerate(islice(reader, offset, None), start=offset + 1):
                yield idx, _null_empty_cells(normalize_headers(raw_row))


def _null_empty_cells(row: dict[str, str | None]) -> dict[str, str | None]:
    return {k: (v if v else None) for k, v in row.items()}

"""Normalization functions for calls-for-service CSV ingestion.

Cell helpers accept str | None and return the appropriate type or a
fallback.  RecordNormalizer turns one CSV row into either an Accepted
CallRecord or a Skipped decision; it never raises on cell content.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from dateutil import parser as date_parser

from call_records_etl.config import PRIORITY_UNKNOWN, IngestionConfig

SENTINEL_TS = "0000-00-00 00:00:00"
_TS_FORMAT = "%Y-%m-%d %H:%M:%S"

SKIP_MISSING_CALL_ID = "missing_call_id"
SKIP_WRONG_YEAR = "wrong_year_or_unparseable"

# Plain decimal or exponent notation; no digit separators, no nan/inf.
_NUMERIC_RE = re.compile(r"[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?")


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CallRecord:
    call_id: str
    call_time: str
    priority: str
    district: str
    description: str
    address: str
    latitude: float
    longitude: float


@dataclass(frozen=True)
class Accepted:
    record: CallRecord


@dataclass(frozen=True)
class Skipped:
    reason: str


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


def clean_cell(value: str | None, null_marker: str = "null") -> str | None:
    """Return the trimmed cell, or None when empty or equal to the null marker."""
    v = trim(value)
    if v is None or v == null_marker:
        return None
    return v


def is_missing(value: str | None, null_marker: str = "null") -> bool:
    """True only for None, '' or the exact null marker; whitespace is content."""
    return value is None or value == "" or value == null_marker


# ---------------------------------------------------------------------------
# Rule 2: call time
# ---------------------------------------------------------------------------

def parse_call_time(value: str | None) -> datetime | None:
    """Parse a free-form date/time string, returning None on failure.

    Zone names and offsets are ignored: the wall-clock fields are kept
    as written, and an unrecognised zone suffix never warns.
    """
    v = trim(value)
    if v is None:
        return None
    try:
        return date_parser.parse(v, ignoretz=True)
    except (ValueError, OverflowError):
        return None


def format_ts(value: datetime) -> str:
    return value.strftime(_TS_FORMAT)


def parse_ts(value: str | None) -> datetime | None:
    """Parse '%Y-%m-%d %H:%M:%S'.  Sentinel '0000-00-00 00:00:00' → None."""
    v = trim(value)
    if v is None or v == SENTINEL_TS:
        return None
    try:
        return datetime.strptime(v, _TS_FORMAT)
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Rule 3: priority
# ---------------------------------------------------------------------------

def map_priority(value: str | None, table: dict[str, str]) -> str:
    """Exact-match lookup; anything unrecognised (or empty) is 'unknown'."""
    if value is None:
        return PRIORITY_UNKNOWN
    return table.get(value, PRIORITY_UNKNOWN)


# ---------------------------------------------------------------------------
# Rule 4: coordinates
# ---------------------------------------------------------------------------

def _parse_float(token: str) -> float | None:
    if not _NUMERIC_RE.fullmatch(token):
        return None
    f = float(token)
    return f if math.isfinite(f) else None


def parse_coordinates(value: str | None) -> tuple[float, float]:
    """Return (latitude, longitude) from '<text> (<lat>, <lon>)'.

    Takes everything after the first '(', drops ')' and spaces, splits on
    ','.  Anything other than exactly two numeric tokens gives (0.0, 0.0).
    """
    v = trim(value)
    if v is None:
        return 0.0, 0.0
    _, paren, after = v.partition("(")
    inner = after if paren else v
    tokens = inner.replace(")", "").replace(" ", "").split(",")
    if len(tokens) != 2:
        return 0.0, 0.0
    lat = _parse_float(tokens[0])
    lon = _parse_float(tokens[1])
    if lat is None or lon is None:
        return 0.0, 0.0
    return lat, lon


# ---------------------------------------------------------------------------
# RecordNormalizer
# ---------------------------------------------------------------------------

class RecordNormalizer:
    """Validate and normalize a CSV row into a CallRecord.

    Decision rules, in order:
      1. call id missing/empty/null          → Skipped('missing_call_id')
      2. call time present but unparseable,
         or not in the current year          → Skipped('wrong_year_or_unparseable')
      3. otherwise                           → Accepted(CallRecord)

    An absent call time is not a parse failure; the record is accepted
    with the sentinel zero timestamp.
    """

    def __init__(
        self,
        config: IngestionConfig,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._config = config
        self._clock = clock
        self._priorities = dict(config.priority_strings)

    def _cell(self, row: dict[str, str | None], column: str) -> str | None:
        return clean_cell(row.get(column), self._config.null_marker)

    def _text(self, row: dict[str, str | None], column: str) -> str:
        # Pass through unmodified; only empty/null cells fall back.
        raw = row.get(column)
        if is_missing(raw, self._config.null_marker):
            return self._config.unknown_string
        return raw  # type: ignore[return-value]

    def normalize(self, row: dict[str, str | None]) -> Accepted | Skipped:
        cols = self._config.columns

        # A blank id is missing; any other id is stored exactly as read.
        call_id = row.get(cols.call_id)
        if self._cell(row, cols.call_id) is None:
            return Skipped(SKIP_MISSING_CALL_ID)

        raw_time = self._cell(row, cols.call_time)
        if raw_time is None:
            call_time = SENTINEL_TS
        else:
            parsed = parse_call_time(raw_time)
            if parsed is None or parsed.year != self._clock().year:
                return Skipped(SKIP_WRONG_YEAR)
            call_time = format_ts(parsed)

        latitude, longitude = parse_coordinates(self._cell(row, cols.location))

        return Accepted(CallRecord(
            call_id=call_id,
            call_time=call_time,
            priority=map_priority(row.get(cols.priority), self._priorities),
            district=self._text(row, cols.district),
            description=self._text(row, cols.description),
            address=self._text(row, cols.address),
            latitude=latitude,
            longitude=longitude,
        ))

"""call_records_etl.engine

Resumable calls-for-service ingestion.

States: idle → locating → (not_found | streaming) → draining → done

Processing order per row (streaming):
  1.  record_count += 1
  2.  normalize                     → Skipped: records_skipped += 1
  3.  duplicate check by call_id    → duplicate: records_skipped += 1
  4.  insert call record
      a.  ok     → records_added += 1; tracker.last_processed_line = row
                   index, tracker.last_processed_call_id = call_id;
                   tracker update + insert committed together
      b.  failed → records_failed_to_add += 1; tracker untouched

The tracker only moves on a committed insert, so rows skipped after the
last insert are re-evaluated (and re-skipped) on the next run.  A tracker
that cannot be saved raises TrackerPersistenceError.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Protocol

from call_records_etl.config import IngestionConfig
from call_records_etl.dedup import DuplicateFilter
from call_records_etl.locator import RecordFileLocator
from call_records_etl.normalize import Accepted, RecordNormalizer
from call_records_etl.reader import CsvStreamReader
from call_records_etl.repository import CallStore, SourceFile, TrackerPersistenceError
from call_records_etl.shared import RejectWriter, RunCounters

log = logging.getLogger(__name__)

STATE_IDLE = "idle"
STATE_LOCATING = "locating"
STATE_NOT_FOUND = "not_found"
STATE_STREAMING = "streaming"
STATE_DRAINING = "draining"
STATE_DONE = "done"

OUTCOME_ADDED = "added"
OUTCOME_SKIPPED = "skipped"
OUTCOME_FAILED = "failed"

SKIP_DUPLICATE = "duplicate_call_id"


# ---------------------------------------------------------------------------
# Summary + listeners
# ---------------------------------------------------------------------------

@dataclass
class IngestSummary:
    found: bool = False
    path: str | None = None
    total_rows: int = 0
    start_offset: int = 0
    last_processed_line: int = 0
    counters: RunCounters = field(default_factory=RunCounters)

    @property
    def caught_up(self) -> bool:
        return self.found and self.last_processed_line == self.total_rows

    def to_dict(self) -> dict[str, Any]:
        return {
            "found": self.found,
            "path": self.path,
            "total_rows": self.total_rows,
            "start_offset": self.start_offset,
            "last_processed_line": self.last_processed_line,
            "caught_up": self.caught_up,
            **self.counters.to_dict(),
        }


class ProgressListener(Protocol):
    def run_started(self, total_rows: int, offset: int) -> None: ...

    def row_processed(self, row_index: int, outcome: str) -> None: ...

    def run_complete(self, summary: IngestSummary) -> None: ...


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class IngestionEngine:
    def __init__(
        self,
        store: CallStore,
        locator: RecordFileLocator,
        normalizer: RecordNormalizer,
        reader: CsvStreamReader,
        listeners: list[ProgressListener] | None = None,
        rejects: RejectWriter | None = None,
    ) -> None:
        self._store = store
        self._locator = locator
        self._normalizer = normalizer
        self._reader = reader
        self._dedup = DuplicateFilter(store)
        self._listeners = list(listeners or [])
        self._rejects = rejects
        self.state = STATE_IDLE

    def subscribe(self, listener: ProgressListener) -> None:
        self._listeners.append(listener)

    def run(self) -> IngestSummary:
        log.info("Processing call records file...")
        summary = IngestSummary()

        self.state = STATE_LOCATING
        located = self._locator.locate()
        if not located.exists:
            self.state = STATE_NOT_FOUND
            log.info("Records file does not exist.")
            self.state = STATE_DONE
            return summary

        source_file = located.source_file
        summary.found = True
        summary.path = str(located.path)
        log.info("Records file located: %s", located.path)

        self.state = STATE_STREAMING
        offset = source_file.last_processed_line or 0
        summary.start_offset = offset
        summary.last_processed_line = offset
        summary.total_rows = self._reader.open(located.path)
        log.info("Starting from last processed line #: %s", offset)
        for listener in self._listeners:
            listener.run_started(summary.total_rows, offset)

        for row_index, row in self._reader.rows_from(offset):
            outcome = self._process_row(row_index, row, source_file, summary)
            for listener in self._listeners:
                listener.row_processed(row_index, outcome)

        self.state = STATE_DRAINING
        self._log_summary(summary)
        for listener in self._listeners:
            listener.run_complete(summary)
        self.state = STATE_DONE
        return summary

    def _process_row(
        self,
        row_index: int,
        row: dict[str, str | None],
        source_file: SourceFile,
        summary: IngestSummary,
    ) -> str:
        counters = summary.counters
        counters.record_count += 1

        decision = self._normalizer.normalize(row)
        if not isinstance(decision, Accepted):
            counters.records_skipped += 1
            self._reject(row, decision.reason, row_index)
            return OUTCOME_SKIPPED

        record = decision.record
        if self._dedup.is_duplicate(record.call_id):
            counters.records_skipped += 1
            self._reject(row, SKIP_DUPLICATE, row_index)
            return OUTCOME_SKIPPED

        result = self._store.insert_call(record)
        if not result.ok:
            counters.records_failed_to_add += 1
            log.warning("Failed to add call %s (row %s): %s", record.call_id, row_index, result.error)
            self._reject(row, f"insert_failed: {result.error}", row_index)
            return OUTCOME_FAILED

        previous = (source_file.last_processed_line, source_file.last_processed_call_id)
        source_file.last_processed_line = row_index
        source_file.last_processed_call_id = record.call_id
        try:
            self._store.update_source_file(source_file)
            self._store.commit()
        except Exception as exc:
            source_file.last_processed_line, source_file.last_processed_call_id = previous
            self._store.rollback()
            log.error("Progress for %s could not be saved at row %s: %s", source_file.uri, row_index, exc)
            if isinstance(exc, TrackerPersistenceError):
                raise
            raise TrackerPersistenceError(
                f"commit failed for {source_file.uri} at row {row_index}: {exc}"
            ) from exc

        counters.records_added += 1
        summary.last_processed_line = row_index
        return OUTCOME_ADDED

    def _reject(self, row: dict[str, str | None], reason: str, row_index: int) -> None:
        if self._rejects is not None:
            self._rejects.write(row, reason, row_index)

    def _log_summary(self, summary: IngestSummary) -> None:
        counters = summary.counters
        if summary.caught_up:
            log.info("Database has the latest call records (line %s of %s).",
                     summary.last_processed_line, summary.total_rows)
        else:
            log.info("Database is not caught up: last processed line %s of %s.",
                     summary.last_processed_line, summary.total_rows)
        log.info("Processing complete.")
        log.info("Record count: %s", counters.record_count)
        log.info("Records added: %s", counters.records_added)
        log.info("Records skipped: %s", counters.records_skipped)
        log.info("Records failed to add: %s", counters.records_failed_to_add)


def build_engine(
    config: IngestionConfig,
    store: CallStore,
    listeners: list[ProgressListener] | None = None,
    rejects: RejectWriter | None = None,
    clock: Callable[[], datetime] | None = None,
) -> IngestionEngine:
    """Wire locator, normalizer and reader for one run."""
    normalizer = RecordNormalizer(config) if clock is None else RecordNormalizer(config, clock=clock)
    return IngestionEngine(
        store=store,
        locator=RecordFileLocator(config, store),
        normalizer=normalizer,
        reader=CsvStreamReader(config.columns.required()),
        listeners=listeners,
        rejects=rejects,
    )

"""call_records_etl.locator

Resolve which calls-for-service file to process and its progress tracker.

local mode       : the fixed sample file under storage_dir; its tracker
                   is created on first sight.
production mode  : the most recently registered tracker; the file at its
                   uri must be present on disk.

A missing tracker or a tracked-but-absent file is reported as
exists=False, never raised.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from call_records_etl.config import IngestionConfig
from call_records_etl.repository import CallStore, SourceFile

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class LocateResult:
    exists: bool
    path: Path | None = None
    source_file: SourceFile | None = None


class RecordFileLocator:
    def __init__(self, config: IngestionConfig, store: CallStore) -> None:
        self._config = config
        self._store = store

    def locate(self) -> LocateResult:
        if self._config.is_local:
            return self._locate_sample()
        return self._locate_latest()

    def _locate_sample(self) -> LocateResult:
        path = self._config.sample_path
        if not path.is_file():
            log.info("Sample call records file %s does not exist.", path)
            return LocateResult(exists=False, path=path)
        uri = str(path)
        source_file = self._store.find_source_file(uri)
        if source_file is None:
            source_file = self._store.create_source_file(uri)
        return LocateResult(exists=True, path=path, source_file=source_file)

    def _locate_latest(self) -> LocateResult:
        log.info("Fetching latest call records file db entry.")
        source_file = self._store.latest_source_file()
        if source_file is None:
            log.info("No db entry found for the latest downloaded call records file.")
            return LocateResult(exists=False)
        log.info("Db entry found for the latest call records file: %s", source_file.uri)
        path = Path(source_file.uri)
        if not path.is_file():
            log.warning("Call records file %s is tracked but missing from disk.", path)
            return LocateResult(exists=False, path=path, source_file=source_file)
        return LocateResult(exists=True, path=path, source_file=source_file)


def register_source_file(store: CallStore, uri: str) -> SourceFile:
    """Record a freshly downloaded file so the next run picks it up.

    Idempotent on uri: an existing tracker (and its progress) is returned
    unchanged.
    """
    existing = store.find_source_file(uri)
    if existing is not None:
        log.info("Call records file %s already registered (id=%s).", uri, existing.id)
        return existing
    source_file = store.create_source_file(uri)
    log.info("Registered call records file %s (id=%s).", uri, source_file.id)
    return source_file

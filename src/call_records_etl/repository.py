"""call_records_etl.repository

Storage for source-file progress trackers and call records.

CallStore is the interface the engine depends on.  PostgresCallStore is
the production implementation (psycopg 3, explicit SQL, caller-driven
commit); InMemoryCallStore mirrors its semantics for unit tests.

Transaction contract:
  - insert_call never raises for constraint violations; it rolls back to
    its own savepoint and returns InsertResult(ok=False, error=...).
  - update_source_file raises TrackerPersistenceError if the tracker row
    cannot be written.
  - commit() makes the insert and the tracker update visible together.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Protocol

import psycopg

from call_records_etl.normalize import CallRecord, parse_ts


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class TrackerPersistenceError(RuntimeError):
    """Raised when progress for a source file cannot be durably saved."""


# ---------------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------------

@dataclass
class SourceFile:
    id: int | None
    uri: str
    last_processed_line: int | None = None
    last_processed_call_id: str | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class InsertResult:
    ok: bool
    error: str | None = None


class CallStore(Protocol):
    def latest_source_file(self) -> SourceFile | None: ...

    def find_source_file(self, uri: str) -> SourceFile | None: ...

    def create_source_file(self, uri: str) -> SourceFile: ...

    def update_source_file(self, source_file: SourceFile) -> None: ...

    def call_exists(self, call_id: str) -> bool: ...

    def insert_call(self, record: CallRecord) -> InsertResult: ...

    def commit(self) -> None: ...

    def rollback(self) -> None: ...


# ---------------------------------------------------------------------------
# PostgreSQL
# ---------------------------------------------------------------------------

_SOURCE_FILE_COLS = "id, uri, last_processed_line, last_processed_call_id, created_at"


def _source_file_from_row(row: tuple) -> SourceFile:
    return SourceFile(
        id=row[0],
        uri=row[1],
        last_processed_line=row[2],
        last_processed_call_id=row[3],
        created_at=row[4],
    )


class PostgresCallStore:
    """CallStore over a psycopg connection opened with autocommit=False."""

    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    @classmethod
    def connect(cls, db_dsn: str) -> PostgresCallStore:
        return cls(psycopg.connect(db_dsn, autocommit=False))

    def close(self) -> None:
        self._conn.close()

    # -- source files ------------------------------------------------------

    def latest_source_file(self) -> SourceFile | None:
        row = self._conn.execute(
            f"SELECT {_SOURCE_FILE_COLS} FROM call_record_file "
            "ORDER BY created_at DESC, id DESC LIMIT 1"
        ).fetchone()
        return _source_file_from_row(row) if row else None

    def find_source_file(self, uri: str) -> SourceFile | None:
        row = self._conn.execute(
            f"SELECT {_SOURCE_FILE_COLS} FROM call_record_file WHERE uri = %s",
            (uri,),
        ).fetchone()
        return _source_file_from_row(row) if row else None

    def create_source_file(self, uri: str) -> SourceFile:
        """Insert a tracker for uri (DO NOTHING on conflict) and commit."""
        self._conn.execute(
            """
            INSERT INTO call_record_file (uri)
            VALUES (%s)
            ON CONFLICT (uri) DO NOTHING
            """,
            (uri,),
        )
        self._conn.commit()
        return self.find_source_file(uri)  # type: ignore[return-value]

    def update_source_file(self, source_file: SourceFile) -> None:
        try:
            cur = self._conn.execute(
                """
                UPDATE call_record_file
                SET last_processed_line = %s,
                    last_processed_call_id = %s,
                    updated_at = now()
                WHERE id = %s
                  AND COALESCE(last_processed_line, 0) <= %s
                """,
                (
                    source_file.last_processed_line,
                    source_file.last_processed_call_id,
                    source_file.id,
                    source_file.last_processed_line,
                ),
            )
        except psycopg.Error as exc:
            raise TrackerPersistenceError(
                f"tracker update failed for {source_file.uri}: {exc}"
            ) from exc
        if cur.rowcount != 1:
            raise TrackerPersistenceError(
                f"tracker update for {source_file.uri} matched {cur.rowcount} rows "
                f"(id={source_file.id}, line={source_file.last_processed_line})"
            )

    # -- call records ------------------------------------------------------

    def call_exists(self, call_id: str) -> bool:
        row = self._conn.execute(
            "SELECT 1 FROM call_record WHERE call_id = %s",
            (call_id,),
        ).fetchone()
        return row is not None

    def insert_call(self, record: CallRecord) -> InsertResult:
        self._conn.execute("SAVEPOINT call_insert")
        try:
            row = self._conn.execute(
                """
                INSERT INTO call_record
                  (call_id, call_time, priority, district, description,
                   address, latitude, longitude)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (call_id) DO NOTHING
                RETURNING id
                """,
                (
                    record.call_id,
                    parse_ts(record.call_time),
                    record.priority,
                    record.district,
                    record.description,
                    record.address,
                    record.latitude,
                    record.longitude,
                ),
            ).fetchone()
        except psycopg.Error as exc:
            self._conn.execute("ROLLBACK TO SAVEPOINT call_insert")
            return InsertResult(ok=False, error=f"db_error: {exc}")
        self._conn.execute("RELEASE SAVEPOINT call_insert")
        if row is None:
            return InsertResult(ok=False, error="duplicate_call_id")
        return InsertResult(ok=True)

    # -- transaction -------------------------------------------------------

    def commit(self) -> None:
        self._conn.commit()

    def rollback(self) -> None:
        self._conn.rollback()


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------

class InMemoryCallStore:
    """Dict-backed CallStore with commit/rollback staging."""

    def __init__(self) -> None:
        self.source_files: dict[int, SourceFile] = {}
        self.calls: dict[str, CallRecord] = {}
        self._pending_files: dict[int, SourceFile] = {}
        self._pending_calls: dict[str, CallRecord] = {}
        self._next_id = 1
        self.commits = 0

    def latest_source_file(self) -> SourceFile | None:
        if not self.source_files:
            return None
        return replace(self.source_files[max(self.source_files)])

    def find_source_file(self, uri: str) -> SourceFile | None:
        for sf in self.source_files.values():
            if sf.uri == uri:
                return replace(sf)
        return None

    def create_source_file(self, uri: str) -> SourceFile:
        existing = self.find_source_file(uri)
        if existing:
            return existing
        sf = SourceFile(id=self._next_id, uri=uri, created_at=datetime.now())
        self.source_files[sf.id] = sf
        self._next_id += 1
        return replace(sf)

    def update_source_file(self, source_file: SourceFile) -> None:
        current = self._pending_files.get(source_file.id) or self.source_files.get(source_file.id)
        if current is None:
            raise TrackerPersistenceError(f"unknown source file id={source_file.id}")
        if (current.last_processed_line or 0) > (source_file.last_processed_line or 0):
            raise TrackerPersistenceError(
                f"tracker for {source_file.uri} would move backwards "
                f"({current.last_processed_line} -> {source_file.last_processed_line})"
            )
        self._pending_files[source_file.id] = replace(source_file)

    def call_exists(self, call_id: str) -> bool:
        return call_id in self.calls

    def insert_call(self, record: CallRecord) -> InsertResult:
        if record.call_id in self.calls or record.call_id in self._pending_calls:
            return InsertResult(ok=False, error="duplicate_call_id")
        self._pending_calls[record.call_id] = record
        return InsertResult(ok=True)

    def commit(self) -> None:
        self.calls.update(self._pending_calls)
        self.source_files.update(self._pending_files)
        self._pending_calls.clear()
        self._pending_files.clear()
        self.commits += 1

    def rollback(self) -> None:
        self._pending_calls.clear()
        self._pending_files.clear()

"""Integration tests for the call records pipeline on PostgreSQL.

These tests run against an ephemeral PostgreSQL database with the schema
applied via the db_conn fixture in conftest.py.
"""

from __future__ import annotations

import csv
from datetime import datetime
from pathlib import Path

import psycopg
import pytest

from call_records_etl.config import IngestionConfig
from call_records_etl.engine import build_engine
from call_records_etl.locator import register_source_file
from call_records_etl.normalize import SENTINEL_TS, CallRecord
from call_records_etl.repository import PostgresCallStore, TrackerPersistenceError

FIXED_NOW = datetime(2026, 6, 1, 12, 0, 0)
FIELDS = [
    "callNumber", "callDateTime", "priority", "district",
    "description", "incidentLocation", "location",
]


def _record(call_id: str, call_time: str = "2026-06-01 08:00:00") -> CallRecord:
    return CallRecord(
        call_id=call_id,
        call_time=call_time,
        priority="high",
        district="ND",
        description="DISORDERLY",
        address="400 N CHARLES ST",
        latitude=39.2951,
        longitude=-76.6155,
    )


def _write_csv(path: Path, rows: list[list[str]]) -> Path:
    with path.open("w", newline="") as fh:
        writer = csv.writer(fh)
        writer.writerow(FIELDS)
        writer.writerows(rows)
    return path


def _row(call_id: str, when: str = "06/01/2026 08:00:00 AM", location: str = "A (39.3, -76.6)"):
    return [call_id, when, "Medium", "ND", "DISORDERLY", "400 N CHARLES ST", location]


def _count_calls(conn) -> int:
    return conn.execute("SELECT count(*) FROM call_record").fetchone()[0]


# ---------------------------------------------------------------------------
# Store: source files
# ---------------------------------------------------------------------------

class TestSourceFiles:
    def test_create_is_idempotent_on_uri(self, db_conn):
        conn, _ = db_conn
        store = PostgresCallStore(conn)
        first = store.create_source_file("storage/app/a.csv")
        second = store.create_source_file("storage/app/a.csv")
        assert first.id == second.id
        assert first.last_processed_line is None

    def test_latest_by_creation_order(self, db_conn):
        conn, _ = db_conn
        store = PostgresCallStore(conn)
        store.create_source_file("storage/app/old.csv")
        store.create_source_file("storage/app/new.csv")
        assert store.latest_source_file().uri == "storage/app/new.csv"

    def test_latest_none_when_empty(self, db_conn):
        conn, _ = db_conn
        assert PostgresCallStore(conn).latest_source_file() is None

    def test_update_and_commit_visible_to_other_connection(self, db_conn):
        conn, dsn = db_conn
        store = PostgresCallStore(conn)
        sf = store.create_source_file("storage/app/a.csv")
        sf.last_processed_line = 5
        sf.last_processed_call_id = "P5"
        store.update_source_file(sf)
        store.commit()

        with psycopg.connect(dsn) as other:
            row = other.execute(
                "SELECT last_processed_line, last_processed_call_id FROM call_record_file WHERE id = %s",
                (sf.id,),
            ).fetchone()
        assert row == (5, "P5")

    def test_update_refuses_to_move_backwards(self, db_conn):
        conn, _ = db_conn
        store = PostgresCallStore(conn)
        sf = store.create_source_file("storage/app/a.csv")
        sf.last_processed_line = 5
        store.update_source_file(sf)
        store.commit()

        sf.last_processed_line = 2
        with pytest.raises(TrackerPersistenceError):
            store.update_source_file(sf)

    def test_update_unknown_id(self, db_conn):
        conn, _ = db_conn
        store = PostgresCallStore(conn)
        sf = store.create_source_file("storage/app/a.csv")
        sf.id = sf.id + 1000
        sf.last_processed_line = 1
        with pytest.raises(TrackerPersistenceError):
            store.update_source_file(sf)

    def test_register_source_file(self, db_conn):
        conn, _ = db_conn
        store = PostgresCallStore(conn)
        sf = register_source_file(store, "storage/app/calls.csv")
        assert register_source_file(store, "storage/app/calls.csv").id == sf.id


# ---------------------------------------------------------------------------
# Store: call records
# ---------------------------------------------------------------------------

class TestCallRecords:
    def test_insert_and_exists(self, db_conn):
        conn, _ = db_conn
        store = PostgresCallStore(conn)
        assert store.insert_call(_record("P1")).ok is True
        store.commit()
        assert store.call_exists("P1") is True
        assert store.call_exists("P2") is False

    def test_duplicate_insert_reports_failure(self, db_conn):
        conn, _ = db_conn
        store = PostgresCallStore(conn)
        assert store.insert_call(_record("P1")).ok is True
        result = store.insert_call(_record("P1"))
        assert result.ok is False
        assert result.error == "duplicate_call_id"
        # Transaction still usable after the rejected insert
        assert store.insert_call(_record("P2")).ok is True
        store.commit()
        assert _count_calls(conn) == 2

    def test_concurrent_writer_wins_race(self, db_conn):
        conn, dsn = db_conn
        store = PostgresCallStore(conn)
        with psycopg.connect(dsn) as other:
            PostgresCallStore(other).insert_call(_record("P1"))
            other.commit()
        result = store.insert_call(_record("P1"))
        assert result.ok is False
        store.commit()
        assert _count_calls(conn) == 1

    def test_constraint_violation_is_not_raised(self, db_conn):
        conn, _ = db_conn
        store = PostgresCallStore(conn)
        bad = CallRecord(
            call_id="P1", call_time="2026-01-01 00:00:00", priority="critical",
            district="ND", description="D", address="A", latitude=0.0, longitude=0.0,
        )
        result = store.insert_call(bad)
        assert result.ok is False
        assert result.error.startswith("db_error:")
        assert store.insert_call(_record("P2")).ok is True

    def test_sentinel_time_stored_as_null(self, db_conn):
        conn, _ = db_conn
        store = PostgresCallStore(conn)
        store.insert_call(_record("P1", call_time=SENTINEL_TS))
        store.commit()
        row = conn.execute("SELECT call_time FROM call_record WHERE call_id = 'P1'").fetchone()
        assert row[0] is None


# ---------------------------------------------------------------------------
# Engine end-to-end
# ---------------------------------------------------------------------------

class TestEngineOnPostgres:
    def _config(self, tmp_path):
        return IngestionConfig(mode="local", storage_dir=tmp_path)

    def test_scenario(self, db_conn, tmp_path):
        conn, _ = db_conn
        _write_csv(tmp_path / "calls_for_service_mini.csv", [
            _row(""),
            _row("P250001", when="12/31/2025 11:00:00 PM"),
            _row("P260001"),
            _row("P260001"),
        ])
        store = PostgresCallStore(conn)
        summary = build_engine(self._config(tmp_path), store, clock=lambda: FIXED_NOW).run()

        c = summary.counters
        assert (c.record_count, c.records_added, c.records_skipped, c.records_failed_to_add) == (4, 1, 3, 0)
        tracker = store.latest_source_file()
        assert tracker.last_processed_line == 3
        assert tracker.last_processed_call_id == "P260001"

        row = conn.execute(
            "SELECT call_time, priority, latitude, longitude FROM call_record WHERE call_id = 'P260001'"
        ).fetchone()
        assert row == (datetime(2026, 6, 1, 8, 0, 0), "medium", 39.3, -76.6)

    def test_rerun_inserts_nothing(self, db_conn, tmp_path):
        conn, _ = db_conn
        _write_csv(tmp_path / "calls_for_service_mini.csv", [
            _row("P1"), _row("P2", location="no coordinates"), _row("P3"),
        ])
        config = self._config(tmp_path)
        first = build_engine(config, PostgresCallStore(conn), clock=lambda: FIXED_NOW).run()
        second = build_engine(config, PostgresCallStore(conn), clock=lambda: FIXED_NOW).run()

        assert first.counters.records_added == 3
        assert first.caught_up is True
        assert second.counters.records_added == 0
        assert second.caught_up is True
        assert _count_calls(conn) == 3

    def test_production_mode_uses_registered_file(self, db_conn, tmp_path):
        conn, _ = db_conn
        path = _write_csv(tmp_path / "calls_for_service.csv", [_row("P1"), _row("P2")])
        store = PostgresCallStore(conn)
        register_source_file(store, str(path))

        summary = build_engine(IngestionConfig(storage_dir=tmp_path), store, clock=lambda: FIXED_NOW).run()
        assert summary.found is True
        assert summary.counters.records_added == 2
        assert store.find_source_file(str(path)).last_processed_line == 2

    def test_production_mode_without_registration(self, db_conn, tmp_path):
        conn, _ = db_conn
        summary = build_engine(
            IngestionConfig(storage_dir=tmp_path), PostgresCallStore(conn), clock=lambda: FIXED_NOW,
        ).run()
        assert summary.found is False
        assert conn.execute("SELECT count(*) FROM call_record_file").fetchone()[0] == 0

"""call_records_etl.process_call_records

CLI entrypoint for calls-for-service ingestion.

Modes (--mode):
  process   : ingest the latest registered call records file (default)
  register  : record a downloaded file so the next process run picks it up

Usage (process):
    python -m call_records_etl.process_call_records \\
        --db-dsn "$DB_DSN" \\
        --env production \\
        --config config/call_records.yml \\
        --rejects-path artifacts/rejects/call_records_rejects.csv \\
        --progress

Usage (register):
    python -m call_records_etl.process_call_records \\
        --mode register \\
        --db-dsn "$DB_DSN" \\
        --uri storage/app/calls_for_service.csv
"""

from __future__ import annotations

import logging
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path

import click

from call_records_etl.config import (
    VALID_MODES,
    ConfigValidationError,
    IngestionConfig,
    load_config,
)
from call_records_etl.engine import IngestSummary, build_engine
from call_records_etl.locator import register_source_file
from call_records_etl.reader import MissingHeadersError
from call_records_etl.repository import PostgresCallStore, TrackerPersistenceError
from call_records_etl.shared import RejectWriter, write_run_report


# ---------------------------------------------------------------------------
# Console progress
# ---------------------------------------------------------------------------

class ClickProgressReporter:
    """Renders engine progress events as a click progress bar."""

    def __init__(self) -> None:
        self._bar = None

    def run_started(self, total_rows: int, offset: int) -> None:
        self._bar = click.progressbar(
            length=max(total_rows - offset, 0),
            label="Processing call records",
        )
        self._bar.__enter__()

    def row_processed(self, row_index: int, outcome: str) -> None:
        if self._bar is not None:
            self._bar.update(1)

    def run_complete(self, summary: IngestSummary) -> None:
        self.close()

    def close(self) -> None:
        """Release the terminal; safe to call after a run that raised."""
        if self._bar is not None:
            self._bar.__exit__(None, None, None)
            self._bar = None


# ---------------------------------------------------------------------------
# Report builder
# ---------------------------------------------------------------------------

def build_ingest_report(summary: IngestSummary) -> str:
    counters = summary.counters
    lines = [
        "=== Call Records Run Report ===",
        f"file                  : {summary.path}",
        f"total_rows            : {summary.total_rows}",
        f"start_offset          : {summary.start_offset}",
        f"last_processed_line   : {summary.last_processed_line}",
        f"caught_up             : {summary.caught_up}",
        "",
        "--- Rows ---",
        f"record_count          : {counters.record_count}",
        f"records_added         : {counters.records_added}",
        f"records_skipped       : {counters.records_skipped}",
        f"records_failed_to_add : {counters.records_failed_to_add}",
    ]
    return "\n".join(lines)


def _load_run_config(config_path: str | None, env: str | None, run_id: str) -> IngestionConfig:
    # --env / CALL_RECORDS_ENV override the file's mode only when given.
    try:
        config = load_config(Path(config_path)) if config_path else IngestionConfig()
        return config.with_mode(env) if env else config
    except (ConfigValidationError, FileNotFoundError) as exc:
        click.echo(f"[{run_id}] FATAL: invalid config: {exc}", err=True)
        sys.exit(1)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

@click.command()
@click.option(
    "--mode",
    type=click.Choice(["process", "register"]),
    default="process",
    show_default=True,
)
@click.option("--db-dsn", required=True, envvar="DB_DSN", help="PostgreSQL DSN")
@click.option(
    "--env",
    type=click.Choice(sorted(VALID_MODES)),
    default=None,
    envvar="CALL_RECORDS_ENV",
    help="Override the config's mode; local targets the bundled sample file",
)
@click.option("--config", "config_path", default=None, type=click.Path(), help="YAML ingestion config")
@click.option("--uri", default=None, help="[register] Path of the downloaded call records file")
@click.option(
    "--rejects-path",
    default="artifacts/rejects/call_records_rejects.csv",
    type=click.Path(),
    show_default=True,
)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option("--progress/--no-progress", default=False, show_default=True)
@click.option("--report/--no-report", default=True, show_default=True, help="Write JSON run report")
@click.option("--log-level", default="INFO", show_default=True)
def main(
    mode: str,
    db_dsn: str,
    env: str | None,
    config_path: str | None,
    uri: str | None,
    rejects_path: str,
    run_id: str | None,
    progress: bool,
    report: bool,
    log_level: str,
) -> None:
    """Calls-for-service ingestion CLI."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.now(timezone.utc).isoformat()
    config = _load_run_config(config_path, env, run_id)

    click.echo(f"[{run_id}] Starting {mode} run (env={config.mode})")

    store = PostgresCallStore.connect(db_dsn)
    try:
        if mode == "register":
            if not uri:
                click.echo(f"[{run_id}] ERROR: --uri is required for --mode register", err=True)
                sys.exit(1)
            source_file = register_source_file(store, uri)
            click.echo(f"[{run_id}] Registered {source_file.uri} (id={source_file.id})")
            return

        rejects = RejectWriter(Path(rejects_path))
        reporter = ClickProgressReporter() if progress else None
        listeners = [reporter] if reporter is not None else []
        engine = build_engine(config, store, listeners=listeners, rejects=rejects)
        try:
            summary = engine.run()
        except MissingHeadersError as exc:
            store.rollback()
            click.echo(f"[{run_id}] FATAL: {exc}", err=True)
            sys.exit(1)
        except TrackerPersistenceError as exc:
            click.echo(f"[{run_id}] FATAL: progress could not be saved: {exc}", err=True)
            sys.exit(1)
        finally:
            if reporter is not None:
                reporter.close()
            rejects.close()

        if not summary.found:
            click.echo(f"[{run_id}] Records file does not exist; nothing processed.")
        else:
            click.echo(build_ingest_report(summary))

        if report:
            report_path = write_run_report(
                run_id, started_at, config.mode,
                {"source_path": summary.path, "rejects_path": rejects_path},
                summary.to_dict(),
            )
            click.echo(f"[{run_id}] Run report: {report_path}")
    finally:
        store.close()


if __name__ == "__main__":
    main()

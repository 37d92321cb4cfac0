"""racehero_etl.import_racehero

CLI entrypoint for RaceHero ingestion.

Configuration comes from the environment (a .env file is honoured); the
options below override it for one run.

Usage (full run, keys from PostgreSQL):
    python -m racehero_etl.import_racehero

Usage (file-cache-only, no database):
    racehero-etl --key-source cache --output-dir data/json

Usage (CSV downloads only):
    racehero-etl --csv-only --csv-dir data/csv
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import sys
import uuid
from datetime import datetime
from pathlib import Path

import click
import psycopg

from racehero_etl.api_client import DEFAULT_PAGE_SIZE, RaceHeroClient
from racehero_etl.batch import DEFAULT_WIDTH
from racehero_etl.cache import ResourceCache
from racehero_etl.config import Settings, load_settings
from racehero_etl.pipeline import CacheKeySource, KeySource, Pipeline, StoreKeySource
from racehero_etl.retry import DEFAULT_ATTEMPT_TIMEOUT, DEFAULT_MAX_ATTEMPTS
from racehero_etl.shared import (
    PipelineError,
    RunCounters,
    build_run_report,
    write_run_report,
)
from racehero_etl.store import ensure_database, ensure_schema


def _apply_overrides(
    settings: Settings,
    output_dir: str | None,
    csv_dir: str | None,
    force_download: bool | None,
) -> Settings:
    overrides: dict = {}
    if output_dir:
        overrides["json_output_dir"] = Path(output_dir)
    if csv_dir:
        overrides["csv_output_dir"] = Path(csv_dir)
    if force_download is not None:
        overrides["force_download"] = force_download
    return dataclasses.replace(settings, **overrides) if overrides else settings


def _open_store(settings: Settings, run_id: str) -> psycopg.Connection:
    if ensure_database(settings):
        click.echo(f"[{run_id}] Created database {settings.db_name}")
    conn = psycopg.connect(settings.database_conninfo(), autocommit=False)
    try:
        ensure_schema(conn)
        conn.commit()
    except Exception:
        conn.close()
        raise
    return conn


def _run(
    settings: Settings,
    counters: RunCounters,
    run_id: str,
    *,
    csv_only: bool,
    key_source: str,
    batch_width: int,
    continue_on_error: bool,
    max_attempts: int,
    attempt_timeout: float,
    page_size: int,
) -> None:
    settings.require("json_output_dir")
    cache = ResourceCache(
        settings.json_output_dir,  # type: ignore[arg-type]
        settings.csv_output_dir,
        force_refresh=settings.force_download,
    )
    conn = _open_store(settings, run_id) if key_source == "db" else None
    try:
        keys: KeySource = (
            StoreKeySource(conn) if conn is not None
            else CacheKeySource(cache, settings.organization)
        )
        with RaceHeroClient.from_settings(
            settings,
            cache,
            max_attempts=max_attempts,
            attempt_timeout=attempt_timeout,
            page_size=page_size,
            max_workers=batch_width,
        ) as client:
            pipeline = Pipeline(
                client,
                cache,
                keys,
                conn=conn,
                counters=counters,
                run_id=run_id,
                batch_width=batch_width,
                continue_on_error=continue_on_error,
            )
            asyncio.run(pipeline.run(csv_only=csv_only))
        if conn is not None:
            conn.commit()
    except Exception:
        if conn is not None and not conn.closed:
            conn.rollback()
        raise
    finally:
        if conn is not None:
            conn.close()


@click.command()
@click.option("--csv-only", is_flag=True, default=False, help="Only download per-run result CSVs")
@click.option(
    "--key-source",
    type=click.Choice(["db", "cache"]),
    default="db",
    show_default=True,
    help="Where later stages read parent ids from: PostgreSQL or the cached all-events JSON",
)
@click.option(
    "--force-download/--no-force-download",
    default=None,
    help="Refetch even when a cached file exists (default: FORCE_DOWNLOAD)",
)
@click.option("--output-dir", default=None, type=click.Path(), help="JSON cache directory (default: JSON_OUTPUT_DIR)")
@click.option("--csv-dir", default=None, type=click.Path(), help="CSV directory (default: CSV_OUTPUT_DIR or ./csv)")
@click.option("--batch-width", default=DEFAULT_WIDTH, type=click.IntRange(min=1), show_default=True)
@click.option(
    "--continue-on-error",
    is_flag=True,
    default=False,
    help="Record failed items and keep going instead of aborting the stage",
)
@click.option("--max-attempts", default=DEFAULT_MAX_ATTEMPTS, type=click.IntRange(min=1), show_default=True)
@click.option("--attempt-timeout", default=DEFAULT_ATTEMPT_TIMEOUT, type=float, show_default=True, help="Seconds per HTTP attempt")
@click.option("--page-size", default=DEFAULT_PAGE_SIZE, type=click.IntRange(min=1), show_default=True, help="Events listing page size")
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option("--report-dir", default="./artifacts/reports", type=click.Path(), show_default=True)
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    show_default=True,
)
def main(
    csv_only: bool,
    key_source: str,
    force_download: bool | None,
    output_dir: str | None,
    csv_dir: str | None,
    batch_width: int,
    continue_on_error: bool,
    max_attempts: int,
    attempt_timeout: float,
    page_size: int,
    run_id: str | None,
    report_dir: str,
    log_level: str,
) -> None:
    """RaceHero events/groups/runs ingestion CLI."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.utcnow().isoformat()
    counters = RunCounters()
    mode = "csv_only" if csv_only else "full"

    click.echo(f"[{run_id}] Starting {mode} run (key_source={key_source})")

    failure: Exception | None = None
    source_paths: dict[str, str] = {}
    try:
        settings = _apply_overrides(load_settings(), output_dir, csv_dir, force_download)
        source_paths = {
            "json_output_dir": str(settings.json_output_dir),
            "csv_output_dir": str(settings.csv_output_dir),
        }
        _run(
            settings,
            counters,
            run_id,
            csv_only=csv_only,
            key_source=key_source,
            batch_width=batch_width,
            continue_on_error=continue_on_error,
            max_attempts=max_attempts,
            attempt_timeout=attempt_timeout,
            page_size=page_size,
        )
    except (PipelineError, psycopg.Error) as exc:
        failure = exc

    click.echo(build_run_report(counters, mode))
    report_path = write_run_report(
        run_id, started_at, mode, source_paths, counters, report_dir=Path(report_dir)
    )
    click.echo(f"[{run_id}] Run report: {report_path}")

    if failure is not None:
        click.echo(f"[{run_id}] FATAL: {failure}", err=True)
        sys.exit(1)
    click.echo(f"[{run_id}] Run complete")


if __name__ == "__main__":
    main()

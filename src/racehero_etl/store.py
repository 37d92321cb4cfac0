"""racehero_etl.store

PostgreSQL sink for RaceHero event documents.

One event document (as returned by /events/{id}?expand=org,venue,groups)
becomes one events row, one event_groups row per embedded group and one
group_runs row per embedded run, written in that order inside a single
transaction.  Re-ingesting a document is safe:

  - events      ON CONFLICT (id) DO UPDATE SET updated_at only; business
                fields are never overwritten by a later fetch
  - event_groups / group_runs  ON CONFLICT (id) DO NOTHING

The store is also the source of parent keys (event ids, event/group pairs,
run CSV targets) for the later pipeline stages.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

import psycopg
from psycopg import sql
from psycopg.types.json import Jsonb

from racehero_etl.config import ADMIN_DATABASE, Settings
from racehero_etl.normalize import (
    as_list,
    parse_api_ts,
    parse_int,
    parse_numeric,
    sub,
    trim,
)
from racehero_etl.shared import RunCounters

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS events (
    id INTEGER PRIMARY KEY,
    name VARCHAR(255),
    started_at TIMESTAMP WITH TIME ZONE,
    ended_at TIMESTAMP WITH TIME ZONE,
    sport_name VARCHAR(50),
    is_live BOOLEAN,
    notes JSON,
    timezone VARCHAR(50),
    meta JSON,
    event_url TEXT,
    created_at TIMESTAMP WITH TIME ZONE,
    updated_at TIMESTAMP WITH TIME ZONE,
    org_id INTEGER,
    org_name VARCHAR(255),
    org_url TEXT,
    org_html_url TEXT,
    org_avatar_url TEXT,
    venue_id INTEGER,
    venue_name VARCHAR(255),
    venue_address TEXT,
    venue_address2 TEXT,
    venue_city VARCHAR(100),
    venue_region VARCHAR(50),
    venue_postal_code VARCHAR(20),
    venue_country VARCHAR(2),
    venue_website_url TEXT,
    venue_lat DECIMAL,
    venue_lng DECIMAL,
    venue_url TEXT,
    venue_html_url TEXT,
    venue_avatar_url TEXT,
    venue_configuration_id INTEGER,
    venue_configuration_name VARCHAR(255),
    venue_configuration_length DECIMAL,
    venue_configuration_units VARCHAR(10),
    venue_configuration_direction VARCHAR(10)
);

CREATE TABLE IF NOT EXISTS event_groups (
    id INTEGER PRIMARY KEY,
    event_id INTEGER NOT NULL REFERENCES events(id),
    name VARCHAR(255)
);

CREATE TABLE IF NOT EXISTS group_runs (
    id INTEGER PRIMARY KEY,
    group_id INTEGER NOT NULL REFERENCES event_groups(id),
    name VARCHAR(255),
    type VARCHAR(50),
    started_at TIMESTAMP WITH TIME ZONE,
    ended_at TIMESTAMP WITH TIME ZONE,
    last_received_data_at TIMESTAMP WITH TIME ZONE,
    status VARCHAR(50),
    total_laps INTEGER,
    has_results BOOLEAN,
    results_url TEXT
);
"""

EVENT_COLUMNS = (
    "id", "name", "started_at", "ended_at", "sport_name", "is_live", "notes",
    "timezone", "meta", "event_url", "created_at", "updated_at",
    "org_id", "org_name", "org_url", "org_html_url", "org_avatar_url",
    "venue_id", "venue_name", "venue_address", "venue_address2", "venue_city",
    "venue_region", "venue_postal_code", "venue_country", "venue_website_url",
    "venue_lat", "venue_lng", "venue_url", "venue_html_url", "venue_avatar_url",
    "venue_configuration_id", "venue_configuration_name",
    "venue_configuration_length", "venue_configuration_units",
    "venue_configuration_direction",
)

GROUP_COLUMNS = ("id", "event_id", "name")

RUN_COLUMNS = (
    "id", "group_id", "name", "type", "started_at", "ended_at",
    "last_received_data_at", "status", "total_laps", "has_results", "results_url",
)


def _insert_sql(table: str, columns: tuple[str, ...], on_conflict: str) -> sql.Composed:
    return sql.SQL("INSERT INTO {table} ({cols}) VALUES ({vals}) ON CONFLICT (id) {action}").format(
        table=sql.Identifier(table),
        cols=sql.SQL(", ").join(map(sql.Identifier, columns)),
        vals=sql.SQL(", ").join(sql.Placeholder(c) for c in columns),
        action=sql.SQL(on_conflict),
    )


UPSERT_EVENT_SQL = _insert_sql(
    "events", EVENT_COLUMNS, "DO UPDATE SET updated_at = EXCLUDED.updated_at"
)
INSERT_GROUP_SQL = _insert_sql("event_groups", GROUP_COLUMNS, "DO NOTHING")
INSERT_RUN_SQL = _insert_sql("group_runs", RUN_COLUMNS, "DO NOTHING")


# ---------------------------------------------------------------------------
# Database bootstrap
# ---------------------------------------------------------------------------

def ensure_database(settings: Settings) -> bool:
    """Create settings.db_name if it does not exist.

    Connects to the administrative database first.  Returns True when the
    database was created.
    """
    settings.require("db_host", "db_user", "db_name")
    with psycopg.connect(
        settings.database_conninfo(dbname=ADMIN_DATABASE), autocommit=True
    ) as admin:
        row = admin.execute(
            "SELECT 1 FROM pg_database WHERE datname = %s", (settings.db_name,)
        ).fetchone()
        if row:
            return False
        admin.execute(
            sql.SQL("CREATE DATABASE {}").format(sql.Identifier(settings.db_name))
        )
    log.info("Database %s created", settings.db_name)
    return True


def ensure_schema(conn: psycopg.Connection) -> None:
    """Apply the create-if-absent DDL."""
    with conn.transaction():
        conn.execute(SCHEMA_SQL)


# ---------------------------------------------------------------------------
# Document flattening
# ---------------------------------------------------------------------------

def _json_or_none(value: Any) -> Jsonb | None:
    return None if value is None else Jsonb(value)


def _timestamp(value: Any) -> datetime | str | None:
    """Parsed timestamp, or the raw text for PostgreSQL to judge.

    A value Python cannot parse is never turned into NULL; PostgreSQL either
    accepts it or rejects the whole document.
    """
    parsed = parse_api_ts(value)
    if parsed is not None:
        return parsed
    raw = trim(value)
    if raw is not None:
        log.warning("Unparsed timestamp %r passed through to PostgreSQL", raw)
    return raw


def event_row(document: dict[str, Any]) -> dict[str, Any]:
    """Flatten an event document (org, venue, venue.configuration inline)."""
    org = sub(document, "org")
    venue = sub(document, "venue")
    conf = sub(venue, "configuration")
    return {
        "id": parse_int(document.get("id")),
        "name": trim(document.get("name")),
        "started_at": _timestamp(document.get("started_at")),
        "ended_at": _timestamp(document.get("ended_at")),
        "sport_name": trim(sub(document, "sport").get("name")),
        "is_live": document.get("is_live"),
        "notes": _json_or_none(document.get("notes")),
        "timezone": trim(document.get("timezone")),
        "meta": _json_or_none(document.get("meta")),
        "event_url": trim(document.get("event_url")),
        "created_at": _timestamp(document.get("created_at")),
        "updated_at": _timestamp(document.get("updated_at")),
        "org_id": parse_int(org.get("id")),
        "org_name": trim(org.get("name")),
        "org_url": trim(org.get("url")),
        "org_html_url": trim(org.get("html_url")),
        "org_avatar_url": trim(org.get("avatar_url")),
        "venue_id": parse_int(venue.get("id")),
        "venue_name": trim(venue.get("name")),
        "venue_address": trim(venue.get("address")),
        "venue_address2": trim(venue.get("address2")),
        "venue_city": trim(venue.get("city")),
        "venue_region": trim(venue.get("region")),
        "venue_postal_code": trim(venue.get("postal_code")),
        "venue_country": trim(venue.get("country")),
        "venue_website_url": trim(venue.get("website_url")),
        "venue_lat": parse_numeric(venue.get("lat")),
        "venue_lng": parse_numeric(venue.get("lng")),
        "venue_url": trim(venue.get("url")),
        "venue_html_url": trim(venue.get("html_url")),
        "venue_avatar_url": trim(venue.get("avatar_url")),
        "venue_configuration_id": parse_int(conf.get("id")),
        "venue_configuration_name": trim(conf.get("name")),
        "venue_configuration_length": parse_numeric(conf.get("length")),
        "venue_configuration_units": trim(conf.get("units")),
        "venue_configuration_direction": trim(conf.get("direction")),
    }


def group_row(event_id: int, group: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": parse_int(group.get("id")),
        "event_id": event_id,
        "name": trim(group.get("name")),
    }


def run_row(group_id: int, run: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": parse_int(run.get("id")),
        "group_id": group_id,
        "name": trim(run.get("name")),
        "type": trim(run.get("type")),
        "started_at": _timestamp(run.get("started_at")),
        "ended_at": _timestamp(run.get("ended_at")),
        "last_received_data_at": _timestamp(run.get("last_received_data_at")),
        "status": trim(run.get("status")),
        "total_laps": parse_int(run.get("total_laps")),
        "has_results": run.get("has_results"),
        "results_url": trim(run.get("results_url")),
    }


# ---------------------------------------------------------------------------
# Upsert
# ---------------------------------------------------------------------------

def upsert_event(
    conn: psycopg.Connection,
    document: dict[str, Any],
    counters: RunCounters | None = None,
) -> None:
    """Upsert one event document with its groups and runs, atomically.

    Any failure rolls back the event and every group/run of the document;
    the error propagates to the caller.
    """
    event = event_row(document)
    event_id = event["id"]
    if event_id is None:
        raise ValueError(f"event document has no usable id: {document.get('id')!r}")

    groups_inserted = groups_skipped = runs_inserted = runs_skipped = 0
    with conn.transaction():
        conn.execute(UPSERT_EVENT_SQL, event)
        for group in as_list(document.get("groups")):
            grow = group_row(event_id, group)
            if conn.execute(INSERT_GROUP_SQL, grow).rowcount:
                groups_inserted += 1
            else:
                groups_skipped += 1
            for run in as_list(group.get("runs")):
                if conn.execute(INSERT_RUN_SQL, run_row(grow["id"], run)).rowcount:
                    runs_inserted += 1
                else:
                    runs_skipped += 1

    if counters is not None:
        counters.events_upserted += 1
        counters.groups_inserted += groups_inserted
        counters.groups_skipped += groups_skipped
        counters.runs_inserted += runs_inserted
        counters.runs_skipped += runs_skipped


# ---------------------------------------------------------------------------
# Read accessors
# ---------------------------------------------------------------------------

def fetch_event_ids(conn: psycopg.Connection) -> list[int]:
    rows = conn.execute("SELECT id FROM events ORDER BY id").fetchall()
    return [row[0] for row in rows]


def fetch_event_group_ids(conn: psycopg.Connection) -> list[tuple[int, int]]:
    rows = conn.execute(
        """
        SELECT e.id AS event_id, g.id AS group_id
        FROM events e
        JOIN event_groups g ON e.id = g.event_id
        ORDER BY e.id, g.id
        """
    ).fetchall()
    return [(row[0], row[1]) for row in rows]


def fetch_run_csv_targets(conn: psycopg.Connection) -> list[tuple[int, str]]:
    """(run_id, results_url) for every run that has a results URL."""
    rows = conn.execute(
        """
        SELECT id, results_url
        FROM group_runs
        WHERE results_url IS NOT NULL AND results_url <> ''
        ORDER BY id
        """
    ).fetchall()
    return [(row[0], row[1]) for row in rows]

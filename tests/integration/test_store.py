"""Integration tests for racehero_etl.store against a real PostgreSQL."""

from __future__ import annotations

import copy
import uuid
from datetime import datetime, timezone

import psycopg
import pytest
from psycopg import sql

from racehero_etl.config import ADMIN_DATABASE, Settings
from racehero_etl.shared import RunCounters
from racehero_etl.store import (
    ensure_database,
    ensure_schema,
    fetch_event_group_ids,
    fetch_event_ids,
    fetch_run_csv_targets,
    upsert_event,
)

DOC = {
    "id": 101,
    "name": "Summer Sprint",
    "started_at": "2024-07-06T13:00:00Z",
    "updated_at": "2024-07-08T09:00:00Z",
    "sport": {"name": "Karting"},
    "notes": [{"text": "Rain delay"}],
    "org": {"id": 5, "name": "Acme Racing"},
    "venue": {"id": 9, "name": "Lakeside", "country": "US", "lat": 43.6591,
              "configuration": {"id": 2, "length": 1.2}},
    "groups": [
        {"id": 11, "name": "Senior", "runs": [
            {"id": 1001, "name": "Heat 1", "total_laps": 10, "has_results": True,
             "results_url": "https://api.example.test/runs/1001/results"},
        ]},
        {"id": 10, "name": "Junior", "runs": [
            {"id": 1000, "name": "Heat 1", "has_results": False},
        ]},
    ],
}


def _count(conn, table):
    return conn.execute(f"SELECT count(*) FROM {table}").fetchone()[0]


def _counts(conn):
    return tuple(_count(conn, t) for t in ("events", "event_groups", "group_runs"))


# ---------------------------------------------------------------------------
# upsert_event
# ---------------------------------------------------------------------------

class TestUpsertEvent:
    def test_end_to_end_counts(self, db_conn):
        conn, _ = db_conn
        counters = RunCounters()
        upsert_event(conn, DOC, counters)
        conn.commit()

        assert _counts(conn) == (1, 2, 2)
        assert counters.events_upserted == 1
        assert counters.groups_inserted == 2
        assert counters.runs_inserted == 2

    def test_reupsert_is_idempotent(self, db_conn):
        conn, _ = db_conn
        upsert_event(conn, DOC)
        counters = RunCounters()
        upsert_event(conn, DOC, counters)
        conn.commit()

        assert _counts(conn) == (1, 2, 2)
        assert counters.groups_skipped == 2
        assert counters.runs_skipped == 2
        assert counters.groups_inserted == 0

    def test_conflict_updates_only_updated_at(self, db_conn):
        conn, _ = db_conn
        upsert_event(conn, DOC)
        changed = copy.deepcopy(DOC)
        changed["name"] = "Renamed"
        changed["updated_at"] = "2024-09-01T00:00:00Z"
        changed["groups"][0]["name"] = "Renamed group"
        upsert_event(conn, changed)
        conn.commit()

        name, updated_at = conn.execute(
            "SELECT name, updated_at FROM events WHERE id = 101"
        ).fetchone()
        assert name == "Summer Sprint"
        assert updated_at == datetime(2024, 9, 1, tzinfo=timezone.utc)
        group_name = conn.execute("SELECT name FROM event_groups WHERE id = 11").fetchone()[0]
        assert group_name == "Senior"

    def test_flattened_columns_stored(self, db_conn):
        conn, _ = db_conn
        upsert_event(conn, DOC)
        conn.commit()
        row = conn.execute(
            "SELECT sport_name, org_name, venue_country, venue_lat, "
            "venue_configuration_length, notes::text FROM events WHERE id = 101"
        ).fetchone()
        assert row[0] == "Karting"
        assert row[1] == "Acme Racing"
        assert row[2] == "US"
        assert float(row[3]) == pytest.approx(43.6591)
        assert float(row[4]) == pytest.approx(1.2)
        assert "Rain delay" in row[5]

    def test_failure_rolls_back_whole_document(self, db_conn):
        conn, _ = db_conn
        bad = copy.deepcopy(DOC)
        bad["groups"][1]["runs"].append({"name": "no id"})
        with pytest.raises(psycopg.errors.NotNullViolation):
            upsert_event(conn, bad)
        conn.rollback()

        assert _counts(conn) == (0, 0, 0)

    def test_counters_untouched_on_failure(self, db_conn):
        conn, _ = db_conn
        bad = copy.deepcopy(DOC)
        bad["groups"].append({"name": "no id"})
        counters = RunCounters()
        with pytest.raises(psycopg.Error):
            upsert_event(conn, bad, counters)
        conn.rollback()
        assert counters.events_upserted == 0
        assert counters.groups_inserted == 0

    def test_document_without_id_rejected(self, db_conn):
        conn, _ = db_conn
        with pytest.raises(ValueError):
            upsert_event(conn, {"name": "nameless"})

    def test_document_without_groups(self, db_conn):
        conn, _ = db_conn
        upsert_event(conn, {"id": 5})
        conn.commit()
        assert _counts(conn) == (1, 0, 0)


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------

class TestTimestamps:
    def test_unparseable_updated_at_never_nulls_stored_value(self, db_conn):
        conn, _ = db_conn
        upsert_event(conn, DOC)
        bad = dict(DOC, updated_at="not a timestamp")
        with pytest.raises(psycopg.Error):
            upsert_event(conn, bad)
        conn.rollback()

        updated_at = conn.execute("SELECT updated_at FROM events WHERE id = 101").fetchone()[0]
        assert updated_at == datetime(2024, 7, 8, 9, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Database bootstrap
# ---------------------------------------------------------------------------

class TestEnsureDatabase:
    def test_creates_missing_database_once(self, postgresql_proc):
        settings = Settings(
            db_host=postgresql_proc.host,
            db_port=postgresql_proc.port,
            db_user=postgresql_proc.user,
            db_password=postgresql_proc.password or None,
            db_name=f"racehero_{uuid.uuid4().hex[:12]}",
        )
        try:
            assert ensure_database(settings) is True
            assert ensure_database(settings) is False
            with psycopg.connect(settings.database_conninfo()) as conn:
                ensure_schema(conn)
                assert fetch_event_ids(conn) == []
        finally:
            with psycopg.connect(
                settings.database_conninfo(dbname=ADMIN_DATABASE), autocommit=True
            ) as admin:
                admin.execute(
                    sql.SQL("DROP DATABASE IF EXISTS {}").format(sql.Identifier(settings.db_name))
                )


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class TestEnsureSchema:
    def test_reapplying_is_harmless(self, db_conn):
        conn, _ = db_conn
        upsert_event(conn, DOC)
        conn.commit()
        ensure_schema(conn)
        conn.commit()
        assert _counts(conn) == (1, 2, 2)


# ---------------------------------------------------------------------------
# Read accessors
# ---------------------------------------------------------------------------

class TestReadAccessors:
    def test_ids_ordered(self, db_conn):
        conn, _ = db_conn
        second = {"id": 50, "groups": [{"id": 3, "runs": []}]}
        upsert_event(conn, DOC)
        upsert_event(conn, second)
        conn.commit()

        assert fetch_event_ids(conn) == [50, 101]
        assert fetch_event_group_ids(conn) == [(50, 3), (101, 10), (101, 11)]

    def test_csv_targets_only_runs_with_url(self, db_conn):
        conn, _ = db_conn
        upsert_event(conn, DOC)
        conn.commit()
        assert fetch_run_csv_targets(conn) == [
            (1001, "https://api.example.test/runs/1001/results"),
        ]

    def test_empty_store(self, db_conn):
        conn, _ = db_conn
        assert fetch_event_ids(conn) == []
        assert fetch_event_group_ids(conn) == []

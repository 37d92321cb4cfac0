"""racehero_etl.pipeline

Stage sequencing for one ingestion run.

Stages run strictly one after another:

  events -> event_details (+ persist) -> group_details -> event_runs
  -> run_results -> run_racers -> run_flags -> run_passings -> csv_downloads

Every "for each child of every parent" stage goes through run_in_windows.
Parent keys for the later stages come from a KeySource: the relational store
(StoreKeySource) or, in file-cache-only mode, the cached all-events listing
(CacheKeySource).  Per-run stages always read the run list of an event from
its cached runs file.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Protocol, Sequence

import click
import psycopg

from racehero_etl.api_client import RaceHeroClient
from racehero_etl.batch import DEFAULT_WIDTH, ItemResult, run_in_windows
from racehero_etl.cache import ResourceCache
from racehero_etl.normalize import as_list, parse_int, trim
from racehero_etl.resources import RUN_CHILD_KINDS, ResourceKind
from racehero_etl.shared import RunCounters, StageError
from racehero_etl.store import (
    fetch_event_group_ids,
    fetch_event_ids,
    fetch_run_csv_targets,
    upsert_event,
)

log = logging.getLogger(__name__)

CSV_STAGE = "csv_downloads"

# per-run stage name -> resource kind
RUN_STAGES = {kind.value: kind for kind in RUN_CHILD_KINDS}

STAGES = (
    "events",
    "event_details",
    "group_details",
    "event_runs",
    *RUN_STAGES,
    CSV_STAGE,
)


# ---------------------------------------------------------------------------
# Key sources
# ---------------------------------------------------------------------------

class KeySource(Protocol):
    """Where the later stages get their parent keys from."""

    def event_ids(self) -> list[int]: ...

    def event_group_ids(self) -> list[tuple[int, int]]: ...

    def run_csv_targets(self) -> list[tuple[int, str]]: ...


class StoreKeySource:
    """Parent keys read back from the events/event_groups/group_runs tables.

    Each read ends its transaction, so the connection is not left idle in
    a transaction while the network-bound stages run.
    """

    def __init__(self, conn: psycopg.Connection) -> None:
        self.conn = conn

    def _read(self, query: Callable[[psycopg.Connection], list]) -> list:
        rows = query(self.conn)
        self.conn.commit()
        return rows

    def event_ids(self) -> list[int]:
        return self._read(fetch_event_ids)

    def event_group_ids(self) -> list[tuple[int, int]]:
        return self._read(fetch_event_group_ids)

    def run_csv_targets(self) -> list[tuple[int, str]]:
        return self._read(fetch_run_csv_targets)


class CacheKeySource:
    """Parent keys derived from cached JSON alone; no database involved.

    The all-events listing names the events.  Where a cached event detail
    file exists it is preferred over the listing entry for groups and runs,
    since it carries the same expand=groups shape and is fetched later.
    """

    def __init__(self, cache: ResourceCache, organization: str | None) -> None:
        self.cache = cache
        self.organization = organization

    def _listed_events(self) -> list[dict[str, Any]]:
        if not self.organization:
            log.warning("No organization configured; cache key source is empty")
            return []
        listing = self.cache.read(ResourceKind.ALL_EVENTS, {"organization": self.organization})
        if listing is None:
            log.warning("No all-events file cached for %s", self.organization)
            return []
        return [
            e for e in as_list(listing)
            if isinstance(e, dict) and parse_int(e.get("id")) is not None
        ]

    def _documents(self) -> list[dict[str, Any]]:
        docs = []
        for event in self._listed_events():
            detail = self.cache.read(
                ResourceKind.EVENT_DETAIL, {"event_id": parse_int(event["id"])}
            )
            docs.append(detail if isinstance(detail, dict) else event)
        return docs

    def event_ids(self) -> list[int]:
        return sorted({parse_int(e["id"]) for e in self._listed_events()})

    def event_group_ids(self) -> list[tuple[int, int]]:
        pairs = set()
        for doc in self._documents():
            event_id = parse_int(doc.get("id"))
            for group in as_list(doc.get("groups")):
                group_id = parse_int(group.get("id")) if isinstance(group, dict) else None
                if event_id is not None and group_id is not None:
                    pairs.add((event_id, group_id))
        return sorted(pairs)

    def run_csv_targets(self) -> list[tuple[int, str]]:
        targets: dict[int, str] = {}
        for doc in self._documents():
            for group in as_list(doc.get("groups")):
                if not isinstance(group, dict):
                    continue
                for run in as_list(group.get("runs")):
                    if not isinstance(run, dict):
                        continue
                    run_id = parse_int(run.get("id"))
                    url = trim(run.get("results_url"))
                    if run_id is not None and url:
                        targets.setdefault(run_id, url)
        return sorted(targets.items())


# ---------------------------------------------------------------------------
# Pipeline driver
# ---------------------------------------------------------------------------

class Pipeline:
    def __init__(
        self,
        client: RaceHeroClient,
        cache: ResourceCache,
        keys: KeySource,
        conn: psycopg.Connection | None = None,
        counters: RunCounters | None = None,
        run_id: str = "-",
        batch_width: int = DEFAULT_WIDTH,
        continue_on_error: bool = False,
    ) -> None:
        self.client = client
        self.cache = cache
        self.keys = keys
        self.conn = conn
        self.counters = counters if counters is not None else RunCounters()
        self.run_id = run_id
        self.batch_width = batch_width
        self.continue_on_error = continue_on_error
        self.events: list[dict[str, Any]] = []

    def _echo(self, message: str, err: bool = False) -> None:
        click.echo(f"[{self.run_id}] {message}", err=err)

    async def run(self, csv_only: bool = False) -> RunCounters:
        """Run every stage in order (only csv_downloads when csv_only).

        The first failing stage raises StageError; stages after it do not run.
        """
        if csv_only:
            plan = [(CSV_STAGE, self._csv_downloads)]
        else:
            plan = [
                ("events", self._events),
                ("event_details", self._event_details),
                ("group_details", self._group_details),
                ("event_runs", self._event_runs),
                *[
                    (name, lambda kind=kind: self._run_children(kind))
                    for name, kind in RUN_STAGES.items()
                ],
                (CSV_STAGE, self._csv_downloads),
            ]
        try:
            for name, stage in plan:
                await self._stage(name, stage)
        finally:
            self._sync_cache_counters()
        return self.counters

    async def _stage(self, name: str, stage: Callable[[], Awaitable[None]]) -> None:
        self._echo(f"Starting {name}...")
        try:
            await stage()
        except Exception as exc:
            self.counters.failed_stage = name
            self._echo(f"Error in {name}: {exc}", err=True)
            raise StageError(name, exc) from exc
        self.counters.stages_completed.append(name)
        self._echo(f"Finished {name}")

    def _sync_cache_counters(self) -> None:
        self.counters.cache_hits = sum(self.cache.hits.values())
        self.counters.cache_misses = sum(self.cache.misses.values())

    async def _batch(
        self,
        label: str,
        keys: Sequence[Any],
        operation: Callable[[Any], Awaitable[Any]],
        on_window: Callable[[list[ItemResult]], Any] | None = None,
    ) -> list[ItemResult]:
        results = await run_in_windows(
            keys,
            operation,
            width=self.batch_width,
            label=label,
            fail_fast=not self.continue_on_error,
            on_window=on_window,
        )
        for failure in (r for r in results if not r.ok):
            self.counters.items_failed += 1
            self.counters.warnings.append(f"{label} key={failure.key!r}: {failure.error}")
        return [r for r in results if r.ok]

    # ------------------------------------------------------------------ #
    # Stages                                                               #
    # ------------------------------------------------------------------ #

    async def _events(self) -> None:
        self.events = [e for e in as_list(await self.client.fetch_all_events()) if isinstance(e, dict)]
        self.counters.events_listed = len(self.events)
        self._echo(f"Found {len(self.events)} events")

    async def _event_details(self) -> None:
        event_ids = [i for i in (parse_int(e.get("id")) for e in self.events) if i is not None]
        persist = self._persist_window if self.conn is not None else None
        ok = await self._batch("event_details", event_ids, self.client.fetch_event_detail, persist)
        self.counters.event_details_fetched += len(ok)

    def _persist_window(self, window: list[ItemResult]) -> None:
        """Upsert a settled window's documents in key order, one commit each."""
        for item in window:
            if not item.ok or not isinstance(item.value, dict):
                continue
            upsert_event(self.conn, item.value, self.counters)
            self.conn.commit()

    async def _group_details(self) -> None:
        pairs = self.keys.event_group_ids()
        self._echo(f"Found {len(pairs)} event groups")
        ok = await self._batch(
            "group_details", pairs, lambda pair: self.client.fetch_group_detail(*pair)
        )
        self.counters.group_details_fetched += len(ok)

    async def _event_runs(self) -> None:
        event_ids = self.keys.event_ids()
        self._echo(f"Found {len(event_ids)} events to process runs for")
        ok = await self._batch("event_runs", event_ids, self.client.fetch_event_runs)
        self.counters.event_runs_fetched += len(ok)

    def _cached_runs(self, event_id: int) -> list[int] | None:
        runs = self.cache.read(ResourceKind.EVENT_RUNS, {"event_id": event_id})
        if runs is None:
            return None
        return [
            run_id for run_id in (
                parse_int(r.get("id")) for r in as_list(runs) if isinstance(r, dict)
            )
            if run_id is not None
        ]

    async def _run_children(self, kind: ResourceKind) -> None:
        for event_id in self.keys.event_ids():
            run_ids = self._cached_runs(event_id)
            if run_ids is None:
                self.counters.runs_files_missing += 1
                self._echo(f"No runs file found for event {event_id}")
                continue
            self._echo(f"Processing {len(run_ids)} runs for event {event_id}")
            ok = await self._batch(
                f"{kind.value} event={event_id}",
                run_ids,
                lambda run_id, event_id=event_id: self.client.fetch(
                    kind, event_id=event_id, run_id=run_id
                ),
            )
            self.counters.run_resources_fetched[kind.value] += len(ok)

    async def _csv_downloads(self) -> None:
        targets = self.keys.run_csv_targets()
        self._echo(f"Processing CSV downloads for {len(targets)} runs")
        ok = await self._batch(
            CSV_STAGE, targets, lambda target: self.client.download_run_csv(*target)
        )
        self.counters.csv_downloaded += len(ok)

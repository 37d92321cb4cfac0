"""racehero_etl.api_client

HTTP client for the RaceHero REST API.

Every resource kind goes through one parameterized operation, fetch():
build the endpoint from the resource catalog, hand the ResourceCache a
closure that performs the retried GET, return the parsed body.  The
requests.Session (with basic auth) is built once from Settings and owned by
the client; blocking calls run in worker threads so that a batch window's
requests overlap.
"""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from typing import Any

import requests

from racehero_etl.batch import DEFAULT_WIDTH
from racehero_etl.cache import ResourceCache
from racehero_etl.config import Settings
from racehero_etl.normalize import as_list, csv_url
from racehero_etl.resources import ResourceKind, spec_for
from racehero_etl.retry import (
    DEFAULT_ATTEMPT_TIMEOUT,
    DEFAULT_MAX_ATTEMPTS,
    execute_with_retry,
)
from racehero_etl.shared import FetchError

log = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 999
USER_AGENT = "racehero-etl/0.1"


class RaceHeroClient:
    """Fetch Client: one GET per resource, cached and retried."""

    def __init__(
        self,
        base_url: str,
        session: requests.Session,
        cache: ResourceCache,
        organization: str | None = None,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        attempt_timeout: float = DEFAULT_ATTEMPT_TIMEOUT,
        page_size: int = DEFAULT_PAGE_SIZE,
        max_workers: int = DEFAULT_WIDTH,
    ) -> None:
        if page_size < 1:
            raise ValueError(f"page_size must be >= 1, got {page_size}")
        if max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {max_workers}")
        self.base_url = base_url.rstrip("/")
        self.session = session
        self.cache = cache
        self.organization = organization
        self.max_attempts = max_attempts
        self.attempt_timeout = attempt_timeout
        self.page_size = page_size
        # one worker per concurrent request of a batch window
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="racehero-http"
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        cache: ResourceCache,
        **kwargs: Any,
    ) -> "RaceHeroClient":
        settings.require("api_base_url", "api_username")
        session = requests.Session()
        session.auth = (settings.api_username, settings.api_password)
        session.headers.update({"Accept": "application/json", "User-Agent": USER_AGENT})
        return cls(
            settings.api_base_url,  # type: ignore[arg-type]
            session,
            cache,
            organization=settings.organization,
            **kwargs,
        )

    def close(self) -> None:
        self._executor.shutdown(wait=False)
        self.session.close()

    def __enter__(self) -> "RaceHeroClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # ------------------------------------------------------------------ #
    # Transport                                                            #
    # ------------------------------------------------------------------ #

    def _url(self, path_or_url: str) -> str:
        if path_or_url.startswith(("http://", "https://")):
            return path_or_url
        return f"{self.base_url}{path_or_url}"

    def _get(self, url: str, params: dict[str, Any] | None, raw: bool) -> Any:
        """Blocking GET; raises requests.HTTPError on non-2xx."""
        resp = self.session.get(url, params=params, timeout=self.attempt_timeout)
        resp.raise_for_status()
        return resp.content if raw else resp.json()

    async def _get_with_retry(
        self,
        url: str,
        params: dict[str, Any] | None = None,
        raw: bool = False,
    ) -> Any:
        log.info("Fetching %s params=%s", url, params or {})
        loop = asyncio.get_running_loop()
        return await execute_with_retry(
            lambda: loop.run_in_executor(self._executor, self._get, url, params, raw),
            self.max_attempts,
            self.attempt_timeout,
            description=f"GET {url}",
        )

    # ------------------------------------------------------------------ #
    # Generic fetch                                                        #
    # ------------------------------------------------------------------ #

    async def fetch(self, kind: ResourceKind | str, **ids: Any) -> Any:
        """Return the body for one resource, from cache or the network.

        Raises FetchError (tagged with kind and ids) once retries are
        exhausted.
        """
        spec = spec_for(kind)
        if spec.kind is ResourceKind.ALL_EVENTS:
            ids.setdefault("organization", self.organization)
        spec.check_ids(ids)

        if spec.kind is ResourceKind.ALL_EVENTS:
            fetch_fn = partial(self._fetch_event_pages, spec.path_for(ids), spec.params)
        elif spec.kind is ResourceKind.RUN_CSV:
            url = csv_url(ids.get("results_url"))
            if url is None:
                raise ValueError(f"run {ids['run_id']} has no results_url")
            fetch_fn = partial(self._get_with_retry, url, raw=True)
        else:
            fetch_fn = partial(
                self._get_with_retry,
                self._url(spec.path_for(ids)),
                dict(spec.params) or None,
            )

        try:
            return await self.cache.get_or_fetch(spec.kind, ids, fetch_fn)
        except (requests.RequestException, TimeoutError, ValueError) as exc:
            tag_ids = {k: v for k, v in ids.items() if k in spec.id_names}
            log.error("Error fetching %s %s: %s", spec.kind, tag_ids, exc)
            raise FetchError(spec.kind.value, tag_ids, exc) from exc

    async def _fetch_event_pages(self, path: str, params: dict[str, str]) -> list[Any]:
        """Walk limit/offset pages until a short page; return all events.

        A full page that brings no event id not already seen also ends the
        walk, so a server that ignores offset cannot keep it going.
        """
        events: list[Any] = []
        seen: set[Any] = set()
        offset = 0
        while True:
            page_params = {"limit": self.page_size, "offset": offset, **params}
            body = await self._get_with_retry(self._url(path), page_params)
            page = as_list(body.get("data") if isinstance(body, dict) else body)

            new_ids = 0
            for event in page:
                event_id = event.get("id") if isinstance(event, dict) else None
                if event_id is not None and event_id in seen:
                    continue
                if event_id is not None:
                    seen.add(event_id)
                    new_ids += 1
                events.append(event)

            if len(page) < self.page_size:
                return events
            if not new_ids:
                log.warning(
                    "Events page at offset %d repeated earlier ids; stopping pagination",
                    offset,
                )
                return events
            offset += self.page_size

    # ------------------------------------------------------------------ #
    # Per-kind conveniences                                                #
    # ------------------------------------------------------------------ #

    async def fetch_all_events(self) -> list[dict[str, Any]]:
        return await self.fetch(ResourceKind.ALL_EVENTS)

    async def fetch_event_detail(self, event_id: int) -> dict[str, Any]:
        return await self.fetch(ResourceKind.EVENT_DETAIL, event_id=event_id)

    async def fetch_group_detail(self, event_id: int, group_id: int) -> dict[str, Any]:
        return await self.fetch(ResourceKind.GROUP_DETAIL, event_id=event_id, group_id=group_id)

    async def fetch_event_runs(self, event_id: int) -> list[dict[str, Any]]:
        return await self.fetch(ResourceKind.EVENT_RUNS, event_id=event_id)

    async def fetch_run_results(self, event_id: int, run_id: int) -> Any:
        return await self.fetch(ResourceKind.RUN_RESULTS, event_id=event_id, run_id=run_id)

    async def fetch_run_racers(self, event_id: int, run_id: int) -> Any:
        return await self.fetch(ResourceKind.RUN_RACERS, event_id=event_id, run_id=run_id)

    async def fetch_run_flags(self, event_id: int, run_id: int) -> Any:
        return await self.fetch(ResourceKind.RUN_FLAGS, event_id=event_id, run_id=run_id)

    async def fetch_run_passings(self, event_id: int, run_id: int) -> Any:
        return await self.fetch(ResourceKind.RUN_PASSINGS, event_id=event_id, run_id=run_id)

    async def download_run_csv(self, run_id: int, results_url: str) -> bytes:
        return await self.fetch(ResourceKind.RUN_CSV, run_id=run_id, results_url=results_url)

"""racehero_etl.cache

File-backed cache of API responses, one file per resource.

A cache file's existence means the resource was already fetched; it is
reused for the rest of the run (and every later run) unless force_refresh
is set.  Writes go to a temp file in the target directory and are moved
into place with os.replace, so readers never see a partial file and
concurrent writers of the same key leave one complete copy.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from collections import Counter
from pathlib import Path
from typing import Any, Awaitable, Callable

from racehero_etl.resources import (
    CSV_NAMESPACE,
    JSON_NAMESPACE,
    ResourceKind,
    spec_for,
)
from racehero_etl.shared import CacheCorruptionError

log = logging.getLogger(__name__)

DEFAULT_COOLDOWN = 1.0  # seconds after each cache miss


class ResourceCache:
    """Maps (kind, ids) to a file and decides fetch-vs-reuse."""

    def __init__(
        self,
        json_dir: Path,
        csv_dir: Path,
        force_refresh: bool = False,
        cooldown: float = DEFAULT_COOLDOWN,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._roots = {JSON_NAMESPACE: Path(json_dir), CSV_NAMESPACE: Path(csv_dir)}
        self.force_refresh = force_refresh
        self.cooldown = cooldown
        self._sleep = sleep
        self.hits: Counter = Counter()
        self.misses: Counter = Counter()

    # ------------------------------------------------------------------ #
    # Paths                                                                #
    # ------------------------------------------------------------------ #

    def path_for(self, kind: ResourceKind | str, ids: dict[str, Any]) -> Path:
        spec = spec_for(kind)
        return self._roots[spec.namespace] / spec.filename_for(ids)

    def exists(self, kind: ResourceKind | str, ids: dict[str, Any]) -> bool:
        return self.path_for(kind, ids).exists()

    # ------------------------------------------------------------------ #
    # Read / write                                                         #
    # ------------------------------------------------------------------ #

    def read(self, kind: ResourceKind | str, ids: dict[str, Any]) -> Any | None:
        """Return the cached value, or None when nothing is cached."""
        path = self.path_for(kind, ids)
        if not path.exists():
            return None
        return self._load(path, spec_for(kind).raw)

    def write(self, kind: ResourceKind | str, ids: dict[str, Any], value: Any) -> Path:
        spec = spec_for(kind)
        path = self.path_for(kind, ids)
        if spec.raw:
            payload = value if isinstance(value, bytes) else str(value).encode("utf-8")
        else:
            payload = json.dumps(value, indent=2, ensure_ascii=False).encode("utf-8")
        _atomic_write(path, payload)
        log.info("Saved %s to %s", spec.kind, path)
        return path

    @staticmethod
    def _load(path: Path, raw: bool) -> Any:
        if raw:
            return path.read_bytes()
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise CacheCorruptionError(path, exc) from exc

    # ------------------------------------------------------------------ #
    # Fetch-or-reuse                                                       #
    # ------------------------------------------------------------------ #

    async def get_or_fetch(
        self,
        kind: ResourceKind | str,
        ids: dict[str, Any],
        fetch_fn: Callable[[], Awaitable[Any]],
    ) -> Any:
        """Return the cached body for (kind, ids), fetching it on a miss.

        A hit never touches the network and never waits.  A miss calls
        fetch_fn, persists the result, then applies the cooldown for kinds
        that have one.
        """
        spec = spec_for(kind)
        path = self.path_for(spec.kind, ids)

        if not self.force_refresh and path.exists():
            log.debug("Using existing file: %s", path)
            self.hits[spec.kind.value] += 1
            return self._load(path, spec.raw)

        value = await fetch_fn()
        self.write(spec.kind, ids, value)
        self.misses[spec.kind.value] += 1

        if spec.cooldown and self.cooldown > 0:
            await self._sleep(self.cooldown)
        return value


def _atomic_write(path: Path, payload: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(payload)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise

"""racehero_etl.shared

Shared pieces used across the fetch, cache, store and pipeline modules.
Includes the exception taxonomy, RunCounters, and report-writing support.
"""

from __future__ import annotations

import json
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class PipelineError(Exception):
    """Base class for errors that abort a pipeline run."""


class ConfigError(PipelineError):
    """Raised when a required configuration value is absent."""


class FetchError(PipelineError):
    """Raised when a resource could not be fetched after all retries."""

    def __init__(self, kind: str, ids: dict[str, Any], cause: BaseException) -> None:
        self.kind = kind
        self.ids = dict(ids)
        self.cause = cause
        id_text = ", ".join(f"{k}={v}" for k, v in self.ids.items()) or "-"
        super().__init__(f"fetch failed: kind={kind} ({id_text}): {cause}")


class CacheCorruptionError(PipelineError):
    """Raised when a cached file exists but cannot be parsed."""

    def __init__(self, path: Path, cause: BaseException) -> None:
        self.path = path
        super().__init__(
            f"cached file {path} is unreadable ({cause}); "
            "re-run with --force-download to refetch it"
        )


class BatchError(PipelineError):
    """Raised when one or more items of a batch window failed."""

    def __init__(self, label: str, failures: list[Any]) -> None:
        self.label = label
        self.failures = failures
        first = failures[0]
        super().__init__(
            f"{label}: {len(failures)} item(s) failed in window; "
            f"first key={first.key!r}: {first.error}"
        )


class StageError(PipelineError):
    """Raised by the pipeline driver when a stage fails."""

    def __init__(self, stage: str, cause: BaseException) -> None:
        self.stage = stage
        self.cause = cause
        super().__init__(f"stage {stage} failed: {cause}")


# ---------------------------------------------------------------------------
# RunCounters
# ---------------------------------------------------------------------------

@dataclass
class RunCounters:
    # Fetch
    events_listed: int = 0
    event_details_fetched: int = 0
    group_details_fetched: int = 0
    event_runs_fetched: int = 0
    run_resources_fetched: Counter = field(default_factory=Counter)
    csv_downloaded: int = 0
    runs_files_missing: int = 0
    items_failed: int = 0
    # Cache
    cache_hits: int = 0
    cache_misses: int = 0
    # Store
    events_upserted: int = 0
    groups_inserted: int = 0
    groups_skipped: int = 0
    runs_inserted: int = 0
    runs_skipped: int = 0
    # Stage tracking
    stages_completed: list[str] = field(default_factory=list)
    failed_stage: str | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["run_resources_fetched"] = dict(self.run_resources_fetched)
        d["stages_completed"] = list(self.stages_completed)
        d["warnings"] = self.warnings[:50]
        return d


# ---------------------------------------------------------------------------
# Report builder
# ---------------------------------------------------------------------------

def build_run_report(counters: RunCounters, mode: str) -> str:
    lines = [
        "=== RaceHero Ingestion Run Report ===",
        f"mode             : {mode}",
        "",
        "--- Fetch ---",
        f"events_listed          : {counters.events_listed}",
        f"event_details_fetched  : {counters.event_details_fetched}",
        f"group_details_fetched  : {counters.group_details_fetched}",
        f"event_runs_fetched     : {counters.event_runs_fetched}",
    ]
    for kind, count in sorted(counters.run_resources_fetched.items()):
        lines.append(f"{kind + '_fetched':<23}: {count}")
    lines += [
        f"csv_downloaded         : {counters.csv_downloaded}",
        f"runs_files_missing     : {counters.runs_files_missing}",
        "",
        "--- Cache ---",
        f"cache_hits       : {counters.cache_hits}",
        f"cache_misses     : {counters.cache_misses}",
        "",
        "--- Store ---",
        f"events_upserted  : {counters.events_upserted}",
        f"groups_inserted  : {counters.groups_inserted}",
        f"groups_skipped   : {counters.groups_skipped}",
        f"runs_inserted    : {counters.runs_inserted}",
        f"runs_skipped     : {counters.runs_skipped}",
        "",
        "--- Stages ---",
        f"completed        : {', '.join(counters.stages_completed) or '-'}",
        f"items_failed     : {counters.items_failed}",
    ]
    if counters.failed_stage:
        lines.append(f"failed_stage     : {counters.failed_stage}")
    if counters.warnings:
        lines += ["", "--- Warnings (first 10) ---"]
        lines += [f"  {w}" for w in counters.warnings[:10]]
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    source_paths: dict[str, str],
    counters: RunCounters,
    report_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.utcnow().isoformat(),
        **source_paths,
        "counters": counters.to_dict(),
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path

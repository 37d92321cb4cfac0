"""racehero_etl.resources

The resource kinds the pipeline knows how to fetch, described as data.

Each ResourceSpec carries everything that differs between kinds: the API
path template, fixed query parameters, the cache filename template and
namespace, whether the body is raw bytes, and whether a network fetch is
followed by the rate-limit cooldown.  Templates are filled from the same
id mapping (organization, event_id, group_id, run_id).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

JSON_NAMESPACE = "json"
CSV_NAMESPACE = "csv"


class ResourceKind(str, Enum):
    ALL_EVENTS = "all_events"
    EVENT_DETAIL = "event_detail"
    GROUP_DETAIL = "group_detail"
    EVENT_RUNS = "event_runs"
    RUN_RESULTS = "run_results"
    RUN_RACERS = "run_racers"
    RUN_FLAGS = "run_flags"
    RUN_PASSINGS = "run_passings"
    RUN_CSV = "run_csv"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class ResourceSpec:
    kind: ResourceKind
    id_names: tuple[str, ...]
    filename: str
    path: str | None = None
    params: dict[str, str] = field(default_factory=dict)
    namespace: str = JSON_NAMESPACE
    raw: bool = False
    cooldown: bool = True

    def check_ids(self, ids: dict[str, Any]) -> None:
        missing = [n for n in self.id_names if ids.get(n) in (None, "")]
        if missing:
            raise ValueError(f"{self.kind}: missing ids {missing}")

    def filename_for(self, ids: dict[str, Any]) -> str:
        self.check_ids(ids)
        return self.filename.format(**ids)

    def path_for(self, ids: dict[str, Any]) -> str:
        self.check_ids(ids)
        if self.path is None:
            raise ValueError(f"{self.kind} has no API path template")
        return self.path.format(**ids)


RUN_ID_NAMES = ("event_id", "run_id")

RESOURCE_SPECS: dict[ResourceKind, ResourceSpec] = {
    spec.kind: spec
    for spec in (
        ResourceSpec(
            kind=ResourceKind.ALL_EVENTS,
            id_names=("organization",),
            filename="{organization}AllEvents.json",
            path="/organizations/{organization}/events",
            params={"expand": "org,venue,groups"},
        ),
        ResourceSpec(
            kind=ResourceKind.EVENT_DETAIL,
            id_names=("event_id",),
            filename="event_{event_id}.json",
            path="/events/{event_id}",
            params={"expand": "org,venue,groups"},
        ),
        ResourceSpec(
            kind=ResourceKind.GROUP_DETAIL,
            id_names=("event_id", "group_id"),
            filename="event_{event_id}_group_{group_id}.json",
            path="/events/{event_id}/groups/{group_id}",
        ),
        ResourceSpec(
            kind=ResourceKind.EVENT_RUNS,
            id_names=("event_id",),
            filename="event_{event_id}_runs.json",
            path="/events/{event_id}/runs",
        ),
        ResourceSpec(
            kind=ResourceKind.RUN_RESULTS,
            id_names=RUN_ID_NAMES,
            filename="event_{event_id}_run_{run_id}_results.json",
            path="/events/{event_id}/runs/{run_id}/results",
            params={"expand": "laps,flags,notes"},
        ),
        ResourceSpec(
            kind=ResourceKind.RUN_RACERS,
            id_names=RUN_ID_NAMES,
            filename="event_{event_id}_run_{run_id}_racers.json",
            path="/events/{event_id}/runs/{run_id}/racers",
        ),
        ResourceSpec(
            kind=ResourceKind.RUN_FLAGS,
            id_names=RUN_ID_NAMES,
            filename="event_{event_id}_run_{run_id}_flags.json",
            path="/events/{event_id}/runs/{run_id}/flags",
        ),
        ResourceSpec(
            kind=ResourceKind.RUN_PASSINGS,
            id_names=RUN_ID_NAMES,
            filename="event_{event_id}_run_{run_id}_passings.json",
            path="/events/{event_id}/runs/{run_id}/passings",
        ),
        # URL comes from the run's results_url, not a template
        ResourceSpec(
            kind=ResourceKind.RUN_CSV,
            id_names=("run_id",),
            filename="{run_id}.csv",
            namespace=CSV_NAMESPACE,
            raw=True,
            cooldown=False,
        ),
    )
}

# Per-run child resources fetched by the per-run pipeline stages, in order.
RUN_CHILD_KINDS = (
    ResourceKind.RUN_RESULTS,
    ResourceKind.RUN_RACERS,
    ResourceKind.RUN_FLAGS,
    ResourceKind.RUN_PASSINGS,
)


def spec_for(kind: ResourceKind | str) -> ResourceSpec:
    return RESOURCE_SPECS[ResourceKind(kind)]

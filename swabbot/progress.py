from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from .roat import PlayerStats
from .store import BaselineStore

TRACKED_METRICS = ("kills", "deaths", "jad_kills", "skotizo_kills")


class StatsSource(Protocol):
    async def fetch_player_stats(
        self, username: str, include_bosses: bool = True
    ) -> PlayerStats: ...


@dataclass(frozen=True)
class MetricProgress:
    baseline: int
    live: int

    @property
    def delta(self) -> int:
        return self.live - self.baseline

    @property
    def formatted(self) -> str:
        return format_delta(self.delta)


@dataclass(frozen=True)
class ProgressReport:
    username: str
    tracked_since: datetime | None
    kills: MetricProgress
    deaths: MetricProgress
    jad_kills: MetricProgress
    skotizo_kills: MetricProgress

    @property
    def kills_delta(self) -> str:
        return self.kills.formatted

    @property
    def deaths_delta(self) -> str:
        return self.deaths.formatted


def format_delta(value: int) -> str:
    return f"+{value}" if value >= 0 else str(value)


def compute_progress(baseline: Any, live: PlayerStats) -> ProgressReport:
    metrics = {
        name: MetricProgress(
            baseline=int(getattr(baseline, name, 0) or 0),
            live=int(getattr(live, name, 0) or 0),
        )
        for name in TRACKED_METRICS
    }
    return ProgressReport(
        username=getattr(baseline, "username", live.username),
        tracked_since=getattr(baseline, "tracked_since", None),
        **metrics,
    )


async def check_progress(
    store: BaselineStore, client: StatsSource, username: str
) -> ProgressReport:
    baseline = store.find(username)
    live = await client.fetch_player_stats(baseline.username)
    return compute_progress(baseline, live)

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Protocol

import discord

from .ledger import WeeklyKillLedger
from .models import (
    BAN_WATERMARK,
    WARFARE_WATERMARK,
    BotModels,
    prune_members,
    read_watermark,
    staff_mentions,
    upsert_member,
    username_key,
    write_watermark,
)
from .notifier import Notifier, SendResult
from .roat import (
    BanRecord,
    PlayerStats,
    RoatError,
    RosterEntry,
    WarfareResult,
    parse_datetime,
)

LOGGER = logging.getLogger(__name__)

EMPTY_BAN_WATERMARK = datetime(1970, 1, 1)
MAX_REASON_LENGTH = 200
EMBED_DESCRIPTION_LIMIT = 4096


class RoatLike(Protocol):
    async def fetch_player_stats(
        self, username: str, include_bosses: bool = True
    ) -> PlayerStats: ...

    async def fetch_ban_list(self) -> List[BanRecord]: ...

    async def fetch_warfare_result(self) -> Optional[WarfareResult]: ...

    async def fetch_clan_roster(self) -> List[RosterEntry]: ...


JobFunc = Callable[[], Awaitable[str]]


@dataclass
class PollingJob:
    name: str
    interval_seconds: float
    run: JobFunc
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    last_summary: str | None = None


class PollingScheduler:
    """Runs each job on its own timer; a tick is skipped while the previous run holds the lock."""

    def __init__(self, jobs: Iterable[PollingJob] = ()):
        self.jobs: Dict[str, PollingJob] = {job.name: job for job in jobs}
        self.tasks: list[asyncio.Task[None]] = []

    def add_job(self, name: str, interval_seconds: float, run: JobFunc) -> PollingJob:
        job = PollingJob(name=name, interval_seconds=interval_seconds, run=run)
        self.jobs[name] = job
        return job

    async def run_job(self, name: str) -> str:
        job = self.jobs[name]
        if job.lock.locked():
            LOGGER.info("Job %s still running; skipping this tick", name)
            return f"{name} already running"
        async with job.lock:
            try:
                summary = await job.run()
            except Exception as exc:
                LOGGER.exception("Job %s failed: %s", name, exc)
                summary = f"{name} failed: {exc}"
        job.last_summary = summary
        LOGGER.debug("Job %s: %s", name, summary)
        return summary

    async def _job_loop(
        self,
        job: PollingJob,
        wait_ready: Callable[[], Awaitable[object]] | None,
        is_closed: Callable[[], bool] | None,
    ):
        if wait_ready:
            await wait_ready()
        while not (is_closed and is_closed()):
            await self.run_job(job.name)
            await asyncio.sleep(job.interval_seconds)

    def start(
        self,
        wait_ready: Callable[[], Awaitable[object]] | None = None,
        is_closed: Callable[[], bool] | None = None,
    ):
        if self.tasks:
            return
        for job in self.jobs.values():
            self.tasks.append(
                asyncio.create_task(
                    self._job_loop(job, wait_ready, is_closed), name=f"poll:{job.name}"
                )
            )

    async def stop(self):
        for task in self.tasks:
            task.cancel()
        for task in self.tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.tasks.clear()


def shorten(text: str, limit: int) -> str:
    text = text.strip()
    if len(text) <= limit:
        return text
    return text[: limit - 1].rstrip() + "…"


def build_ban_embed(
    bans: List[BanRecord], mentions: Dict[str, int], limit: int = 10
) -> discord.Embed:
    shown = bans[:limit]
    lines = []
    for ban in shown:
        line = f"🔨 **{ban.username}**"
        if ban.reason:
            line += f": {shorten(ban.reason, MAX_REASON_LENGTH)}"
        if ban.banned_by:
            staff_id = mentions.get(username_key(ban.banned_by))
            line += f" (by {f'<@{staff_id}>' if staff_id else ban.banned_by})"
        lines.append(line)
    omitted = len(bans) - len(shown)
    if omitted > 0:
        lines.append(f"*...and {omitted} more*")
    suffix = "ban" if len(bans) == 1 else "bans"
    return discord.Embed(
        title=f"🚫 {len(bans)} new {suffix}",
        description=shorten("\n".join(lines), EMBED_DESCRIPTION_LIMIT),
        color=discord.Color.red(),
    )


def build_warfare_embed(result: WarfareResult) -> discord.Embed:
    lines = [f"Winner: **{result.winner_clan}**"]
    if result.loser_clan:
        lines.append(f"Opponent: **{result.loser_clan}**")
    if result.winner_kills is not None and result.loser_kills is not None:
        lines.append(f"Score: **{result.winner_kills}** - **{result.loser_kills}**")
    lines.append(f"Total kills: **{result.total_kills}**")
    ended = int(result.created_at.replace(tzinfo=timezone.utc).timestamp())
    lines.append(f"Finished: <t:{ended}:F>")
    return discord.Embed(
        title="⚔️ Clan warfare result",
        description="\n".join(lines),
        color=discord.Color.gold(),
    )


class ClanPoller:
    def __init__(
        self,
        models: BotModels,
        client: RoatLike,
        notifier: Notifier,
        ledger: WeeklyKillLedger,
        ban_channel_id: int | None = None,
        warfare_channel_id: int | None = None,
        ban_display_limit: int = 10,
    ):
        self.models = models
        self.client = client
        self.notifier = notifier
        self.ledger = ledger
        self.ban_channel_id = ban_channel_id
        self.warfare_channel_id = warfare_channel_id
        self.ban_display_limit = ban_display_limit

    async def check_bans(self) -> str:
        if not self.ban_channel_id:
            return "Ban channel not configured"
        try:
            bans = await self.client.fetch_ban_list()
        except RoatError as exc:
            LOGGER.warning("Ban list fetch failed: %s", exc)
            return "Ban list unavailable"

        stored = read_watermark(self.models, BAN_WATERMARK)
        watermark = parse_datetime(stored) if stored else None
        if watermark is None:
            seed = max((ban.banned_at for ban in bans), default=EMPTY_BAN_WATERMARK)
            write_watermark(self.models, BAN_WATERMARK, seed.isoformat())
            LOGGER.info("Ban watermark seeded at %s (%s bans skipped)", seed, len(bans))
            return "Ban watermark seeded"

        new_bans = sorted(
            (ban for ban in bans if ban.banned_at > watermark),
            key=lambda ban: ban.banned_at,
        )
        if not new_bans:
            return "No new bans"

        embed = build_ban_embed(
            new_bans, staff_mentions(self.models), self.ban_display_limit
        )
        result = await self.notifier.send(self.ban_channel_id, embed=embed)
        if result is SendResult.RETRY:
            LOGGER.warning(
                "Posting %s bans failed; watermark stays at %s", len(new_bans), watermark
            )
            return f"Failed posting {len(new_bans)} bans"
        newest = new_bans[-1].banned_at
        write_watermark(self.models, BAN_WATERMARK, newest.isoformat())
        if result is SendResult.DROPPED:
            LOGGER.warning(
                "Dropped %s bans after a send error; watermark now %s",
                len(new_bans),
                newest,
            )
            return f"Dropped {len(new_bans)} bans"
        LOGGER.info("Posted %s bans; watermark now %s", len(new_bans), newest)
        return f"Posted {len(new_bans)} bans"

    async def check_warfare(self) -> str:
        if not self.warfare_channel_id:
            return "Warfare channel not configured"
        try:
            result = await self.client.fetch_warfare_result()
        except RoatError as exc:
            LOGGER.warning("Warfare fetch failed: %s", exc)
            return "Warfare result unavailable"
        if result is None:
            return "No warfare result"
        if read_watermark(self.models, WARFARE_WATERMARK) == result.key:
            return "No new warfare result"
        sent = await self.notifier.send(
            self.warfare_channel_id, embed=build_warfare_embed(result)
        )
        if sent is not SendResult.SENT:
            LOGGER.warning("Posting warfare result %s failed; will retry", result.key)
            return "Failed posting warfare result"
        write_watermark(self.models, WARFARE_WATERMARK, result.key)
        LOGGER.info("Posted warfare result %s", result.key)
        return "Posted warfare result"

    async def post_latest_warfare(self, channel_id: int) -> str:
        try:
            result = await self.client.fetch_warfare_result()
        except RoatError as exc:
            LOGGER.warning("Warfare fetch failed: %s", exc)
            return "Could not fetch the latest warfare result."
        if result is None:
            return "No warfare result available yet."
        sent = await self.notifier.send(channel_id, embed=build_warfare_embed(result))
        if sent is SendResult.SENT:
            return "Posted the latest warfare result."
        return "Failed posting the warfare result."

    async def refresh_roster(self) -> str:
        try:
            roster = await self.client.fetch_clan_roster()
        except RoatError as exc:
            LOGGER.warning("Clan roster fetch failed: %s", exc)
            return "Roster unavailable"
        processed = 0
        failures = 0
        for entry in roster:
            try:
                stats = await self.client.fetch_player_stats(
                    entry.username, include_bosses=False
                )
            except RoatError as exc:
                failures += 1
                LOGGER.warning("Stats fetch failed for %s: %s", entry.username, exc)
                continue
            try:
                upsert_member(self.models, stats, entry.rank_name)
                self.ledger.apply_live_total(stats.username, stats.kills)
            except Exception as exc:
                failures += 1
                LOGGER.exception("Failed storing member %s: %s", entry.username, exc)
                continue
            processed += 1
        removed = 0
        # an empty roster is treated as an upstream glitch, not a disbanded clan
        if roster:
            removed = prune_members(
                self.models, {username_key(entry.username) for entry in roster}
            )
        summary = (
            f"Refreshed {processed} members, removed: {removed}, failures: {failures}"
        )
        LOGGER.info("Roster refresh: %s", summary)
        return summary

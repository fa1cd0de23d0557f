from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, List, Mapping, Optional, Tuple

from peewee import EXCLUDED

from .models import BotModels, utcnow_naive

LOGGER = logging.getLogger(__name__)

_WEEK_PATTERN = re.compile(r"^(\d{4})-W(\d{2})$")


@dataclass(frozen=True, order=True)
class WeekKey:
    """ISO calendar week, compared by (year, week)."""

    year: int
    week: int

    @classmethod
    def of(cls, when: datetime) -> "WeekKey":
        if when.tzinfo is not None:
            when = when.astimezone(timezone.utc)
        year, week, _ = when.isocalendar()
        return cls(year, week)

    @classmethod
    def parse(cls, text: str) -> "WeekKey":
        match = _WEEK_PATTERN.match(text.strip())
        if not match:
            raise ValueError(f"Invalid week key {text!r}")
        return cls(int(match.group(1)), int(match.group(2)))

    def __str__(self) -> str:
        return f"{self.year}-W{self.week:02d}"


def to_millis(when: datetime) -> int:
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return int(when.timestamp() * 1000)


def project_weekly_ms(stored_ms: int, joined_at: Optional[int], now_ms: int) -> int:
    open_ms = max(now_ms - joined_at, 0) if joined_at is not None else 0
    return stored_ms + open_ms


class VoiceTracker:
    def __init__(self, models: BotModels, ignored_channel_ids: Iterable[int] = ()):
        self.models = models
        self.ignored_channel_ids = set(ignored_channel_ids)

    def is_tracked(self, channel_id: Optional[int]) -> bool:
        return channel_id is not None and channel_id not in self.ignored_channel_ids

    def _ensure_record(
        self, user_id: int, guild_id: int, display_name: str | None = None
    ) -> Any:
        activity = self.models.VoiceActivity
        activity.insert(
            user_id=user_id, guild_id=guild_id, display_name=display_name
        ).on_conflict_ignore().execute()
        record = activity.get(
            (activity.user_id == user_id) & (activity.guild_id == guild_id)
        )
        if display_name and record.display_name != display_name:
            activity.update(display_name=display_name).where(
                activity.id == record.id
            ).execute()
            record.display_name = display_name
        return record

    def _credit(self, user_id: int, guild_id: int, week: WeekKey, elapsed_ms: int):
        voice_week = self.models.VoiceWeek
        voice_week.insert(
            user_id=user_id,
            guild_id=guild_id,
            week_key=str(week),
            milliseconds=elapsed_ms,
        ).on_conflict(
            conflict_target=[voice_week.user_id, voice_week.guild_id, voice_week.week_key],
            update={
                voice_week.milliseconds: voice_week.milliseconds
                + EXCLUDED.milliseconds,
                voice_week.updated_at: utcnow_naive(),
            },
        ).execute()

    def _close(self, record: Any, now: datetime, now_ms: int, credit: bool) -> int:
        activity = self.models.VoiceActivity
        joined_at = record.joined_at
        cleared = (
            activity.update(joined_at=None)
            .where((activity.id == record.id) & (activity.joined_at == joined_at))
            .execute()
        )
        record.joined_at = None
        if not cleared:
            return 0
        if not credit:
            LOGGER.info(
                "Dropped voice session for user %s in guild %s without credit",
                record.user_id,
                record.guild_id,
            )
            return 0
        elapsed = max(now_ms - joined_at, 0)
        if elapsed:
            self._credit(record.user_id, record.guild_id, WeekKey.of(now), elapsed)
        return elapsed

    def _open(self, record: Any, now_ms: int) -> bool:
        activity = self.models.VoiceActivity
        opened = (
            activity.update(joined_at=now_ms)
            .where((activity.id == record.id) & activity.joined_at.is_null())
            .execute()
        )
        if opened:
            record.joined_at = now_ms
        return bool(opened)

    def handle_transition(
        self,
        user_id: int,
        guild_id: int,
        before_channel_id: Optional[int],
        after_channel_id: Optional[int],
        now: datetime | None = None,
        display_name: str | None = None,
    ) -> int:
        """Apply one voice state change and return the milliseconds credited."""
        if before_channel_id == after_channel_id:
            return 0
        now = now or utcnow_naive()
        now_ms = to_millis(now)
        activity = self.models.VoiceActivity
        with self.models.db.atomic():
            record = self._ensure_record(user_id, guild_id, display_name)
            if record.last_event_at is not None and now_ms < record.last_event_at:
                LOGGER.debug(
                    "Ignoring stale voice event for user %s in guild %s",
                    user_id,
                    guild_id,
                )
                return 0
            credited = 0
            if record.joined_at is not None:
                credited = self._close(
                    record, now, now_ms, credit=self.is_tracked(before_channel_id)
                )
            if self.is_tracked(after_channel_id):
                self._open(record, now_ms)
            activity.update(last_event_at=now_ms).where(
                (activity.id == record.id)
                & (activity.last_event_at.is_null() | (activity.last_event_at < now_ms))
            ).execute()
        if credited:
            LOGGER.debug(
                "Credited %sms voice time to user %s in guild %s",
                credited,
                user_id,
                guild_id,
            )
        return credited

    def stored_weekly_ms(self, user_id: int, guild_id: int, week: WeekKey) -> int:
        voice_week = self.models.VoiceWeek
        row = voice_week.get_or_none(
            (voice_week.user_id == user_id)
            & (voice_week.guild_id == guild_id)
            & (voice_week.week_key == str(week))
        )
        return int(row.milliseconds) if row else 0

    def current_weekly_ms(
        self, user_id: int, guild_id: int, now: datetime | None = None
    ) -> int:
        now = now or utcnow_naive()
        activity = self.models.VoiceActivity
        record = activity.get_or_none(
            (activity.user_id == user_id) & (activity.guild_id == guild_id)
        )
        stored = self.stored_weekly_ms(user_id, guild_id, WeekKey.of(now))
        joined_at = record.joined_at if record else None
        return project_weekly_ms(stored, joined_at, to_millis(now))

    def top_voice(
        self, guild_id: int, now: datetime | None = None, limit: int = 10
    ) -> List[Tuple[int, str | None, int]]:
        now = now or utcnow_naive()
        now_ms = to_millis(now)
        week = str(WeekKey.of(now))
        activity = self.models.VoiceActivity
        voice_week = self.models.VoiceWeek

        totals: dict[int, int] = {}
        names: dict[int, str | None] = {}
        for row in voice_week.select().where(
            (voice_week.guild_id == guild_id) & (voice_week.week_key == week)
        ):
            totals[row.user_id] = int(row.milliseconds)
        for record in activity.select().where(activity.guild_id == guild_id):
            names[record.user_id] = record.display_name
            if record.joined_at is not None:
                totals[record.user_id] = project_weekly_ms(
                    totals.get(record.user_id, 0), record.joined_at, now_ms
                )
        ranked = sorted(
            ((uid, names.get(uid), ms) for uid, ms in totals.items() if ms > 0),
            key=lambda item: (-item[2], item[0]),
        )
        return ranked[: max(int(limit), 0)]

    def reconcile(
        self,
        guild_id: int,
        present: Mapping[int, Optional[int]],
        now: datetime | None = None,
    ) -> Tuple[int, int]:
        """Line stored sessions up with who is actually in voice right now.

        ``present`` maps user ids to the channel they currently sit in.
        Sessions of users who left while the bot was offline are dropped
        without credit since the leave time is unknown.
        """
        now = now or utcnow_naive()
        now_ms = to_millis(now)
        activity = self.models.VoiceActivity
        opened = 0
        dropped = 0
        with self.models.db.atomic():
            open_records = list(
                activity.select().where(
                    (activity.guild_id == guild_id) & activity.joined_at.is_null(False)
                )
            )
            for record in open_records:
                if not self.is_tracked(present.get(record.user_id)):
                    self._close(record, now, now_ms, credit=False)
                    dropped += 1
            for user_id, channel_id in present.items():
                if not self.is_tracked(channel_id):
                    continue
                record = self._ensure_record(user_id, guild_id)
                if record.joined_at is None and self._open(record, now_ms):
                    opened += 1
        LOGGER.info(
            "Voice reconcile guild=%s opened=%s dropped=%s", guild_id, opened, dropped
        )
        return opened, dropped

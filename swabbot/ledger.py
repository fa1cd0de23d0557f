from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Tuple

from .models import BotModels, username_key, utcnow_naive

LOGGER = logging.getLogger(__name__)


class WeeklyKillLedger:
    """Kills gained since the last weekly reset, one row per player.

    Only positive movements of the live total are credited. A lower total
    (upstream wipe) or an unchanged one just moves ``last_total_seen`` so the
    next gain is measured from the new value.
    """

    def __init__(self, models: BotModels):
        self.models = models

    def apply_live_total(
        self, username: str, live_total: int, now: datetime | None = None
    ) -> int:
        model = self.models.WeeklyKills
        key = username_key(username)
        now = now or utcnow_naive()
        with self.models.db.atomic():
            record = model.get_or_none(model.username_key == key)
            if record is None:
                model.insert(
                    username=username,
                    username_key=key,
                    weekly_kills=0,
                    last_total_seen=live_total,
                    last_updated=now,
                ).on_conflict_ignore().execute()
                return 0
            credited = (
                model.update(
                    weekly_kills=model.weekly_kills + live_total - model.last_total_seen,
                    last_total_seen=live_total,
                    last_updated=now,
                    updated_at=now,
                )
                .where((model.username_key == key) & (model.last_total_seen < live_total))
                .execute()
            )
            if credited:
                gained = live_total - record.last_total_seen
                LOGGER.debug("Weekly kills for %s +%s", username, gained)
                return gained
            if record.last_total_seen != live_total:
                LOGGER.info(
                    "Live kills for %s dropped from %s to %s; re-baselining",
                    username,
                    record.last_total_seen,
                    live_total,
                )
            model.update(
                last_total_seen=live_total, last_updated=now, updated_at=now
            ).where(
                (model.username_key == key) & (model.last_total_seen != live_total)
            ).execute()
            return 0

    def reset_all(self, now: datetime | None = None) -> int:
        model = self.models.WeeklyKills
        member_model = self.models.ClanMember
        now = now or utcnow_naive()
        changed = 0
        with self.models.db.atomic():
            changed += (
                model.update(weekly_kills=0, last_updated=now, updated_at=now)
                .where(model.weekly_kills != 0)
                .execute()
            )
            for member in member_model.select():
                exists = model.get_or_none(model.username_key == member.username_key)
                if exists is None:
                    model.create(
                        username=member.username,
                        username_key=member.username_key,
                        weekly_kills=0,
                        last_total_seen=member.kills,
                        last_updated=now,
                    )
                    changed += 1
                    continue
                changed += (
                    model.update(
                        last_total_seen=member.kills, last_updated=now, updated_at=now
                    )
                    .where(
                        (model.username_key == member.username_key)
                        & (model.last_total_seen != member.kills)
                    )
                    .execute()
                )
        LOGGER.info("Weekly kills reset; %s rows changed", changed)
        return changed

    def top_n(self, limit: int = 10) -> List[Tuple[str, int]]:
        model = self.models.WeeklyKills
        rows = (
            model.select()
            .order_by(model.weekly_kills.desc(), model.username_key.asc())
            .limit(max(int(limit), 0))
        )
        return [(row.username, row.weekly_kills) for row in rows]

    def get(self, username: str):
        model = self.models.WeeklyKills
        return model.get_or_none(model.username_key == username_key(username))

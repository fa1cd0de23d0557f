from __future__ import annotations

import logging
from typing import Any, Optional

from peewee import IntegrityError

from .models import BotModels, username_key, utcnow_naive
from .roat import PlayerStats

LOGGER = logging.getLogger(__name__)


class BaselineExistsError(Exception):
    def __init__(self, username: str):
        super().__init__(f"{username} is already being tracked.")
        self.username = username


class BaselineNotFoundError(Exception):
    def __init__(self, username: str):
        super().__init__(f"No tracking found for {username}.")
        self.username = username


class BaselineStore:
    """First-write-wins baselines keyed on the lower-cased username."""

    def __init__(self, models: BotModels):
        self.models = models

    def get(self, username: str) -> Optional[Any]:
        model = self.models.TrackedPlayer
        return model.get_or_none(model.username_key == username_key(username))

    def find(self, username: str) -> Any:
        baseline = self.get(username)
        if baseline is None:
            raise BaselineNotFoundError(username)
        return baseline

    def create(self, username: str, stats: PlayerStats, approver: str) -> Any:
        model = self.models.TrackedPlayer
        if self.get(username) is not None:
            raise BaselineExistsError(username)
        try:
            with self.models.db.atomic():
                baseline = model.create(
                    username=username.strip(),
                    username_key=username_key(username),
                    kills=stats.kills,
                    deaths=stats.deaths,
                    elo=stats.elo,
                    jad_kills=stats.jad_kills,
                    skotizo_kills=stats.skotizo_kills,
                    tracked_since=utcnow_naive(),
                    approver=approver,
                )
        except IntegrityError as exc:
            # Lost a concurrent add for the same name.
            raise BaselineExistsError(username) from exc
        LOGGER.info(
            "Tracking started for %s (kills=%s deaths=%s approver=%s)",
            baseline.username,
            baseline.kills,
            baseline.deaths,
            approver,
        )
        return baseline

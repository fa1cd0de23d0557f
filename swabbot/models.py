from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from peewee import (
    AutoField,
    BigIntegerField,
    CharField,
    DateTimeField,
    FloatField,
    IntegerField,
    Model,
    SqliteDatabase,
    TextField,
)

BAN_WATERMARK = "ban_watermark"
WARFARE_WATERMARK = "warfare_key"


def utcnow_naive() -> datetime:
    """Return current UTC time without tzinfo for SQLite storage."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def username_key(username: str) -> str:
    return username.strip().lower()


@dataclass
class BotModels:
    db: SqliteDatabase
    TrackedPlayer: type
    WeeklyKills: type
    VoiceActivity: type
    VoiceWeek: type
    ClanMember: type
    StaffLink: type
    Watermark: type


def _create_models(db: SqliteDatabase) -> BotModels:
    class BaseModel(Model):
        created_at = DateTimeField(default=utcnow_naive)
        updated_at = DateTimeField(default=utcnow_naive)

        def save(self, *args, **kwargs):  # type: ignore[override]
            self.updated_at = utcnow_naive()
            return super().save(*args, **kwargs)

        class Meta:
            database = db

    class TrackedPlayer(BaseModel):
        id = AutoField()
        username = CharField()
        username_key = CharField(unique=True)
        kills = IntegerField()
        deaths = IntegerField()
        elo = FloatField(default=0)
        jad_kills = IntegerField(default=0)
        skotizo_kills = IntegerField(default=0)
        tracked_since = DateTimeField(default=utcnow_naive)
        approver = CharField()

    class WeeklyKills(BaseModel):
        id = AutoField()
        username = CharField()
        username_key = CharField(unique=True)
        weekly_kills = IntegerField(default=0)
        last_total_seen = IntegerField(default=0)
        last_updated = DateTimeField(default=utcnow_naive)

    class VoiceActivity(BaseModel):
        id = AutoField()
        user_id = BigIntegerField()
        guild_id = BigIntegerField()
        display_name = CharField(null=True)
        # epoch milliseconds; NULL while idle
        joined_at = BigIntegerField(null=True)
        last_event_at = BigIntegerField(null=True)

        class Meta:
            indexes = ((("user_id", "guild_id"), True),)

    class VoiceWeek(BaseModel):
        id = AutoField()
        user_id = BigIntegerField()
        guild_id = BigIntegerField()
        week_key = CharField()
        milliseconds = BigIntegerField(default=0)

        class Meta:
            indexes = ((("user_id", "guild_id", "week_key"), True),)

    class ClanMember(BaseModel):
        id = AutoField()
        username = CharField()
        username_key = CharField(unique=True)
        rank_name = CharField(null=True)
        kills = IntegerField(default=0)
        deaths = IntegerField(default=0)
        elo = FloatField(default=0)
        donator_rank = IntegerField(default=0)
        last_seen = CharField(null=True)

    class StaffLink(BaseModel):
        id = AutoField()
        in_game_name = CharField()
        in_game_key = CharField(unique=True)
        discord_user_id = BigIntegerField()

    class Watermark(BaseModel):
        name = CharField(primary_key=True)
        value = TextField()

    return BotModels(
        db=db,
        TrackedPlayer=TrackedPlayer,
        WeeklyKills=WeeklyKills,
        VoiceActivity=VoiceActivity,
        VoiceWeek=VoiceWeek,
        ClanMember=ClanMember,
        StaffLink=StaffLink,
        Watermark=Watermark,
    )


def init_db(path: str) -> BotModels:
    if path != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)
    db = SqliteDatabase(path, pragmas={"journal_mode": "wal"})
    models = _create_models(db)
    db.connect(reuse_if_open=True)
    db.create_tables(
        [
            models.TrackedPlayer,
            models.WeeklyKills,
            models.VoiceActivity,
            models.VoiceWeek,
            models.ClanMember,
            models.StaffLink,
            models.Watermark,
        ]
    )
    return models


def read_watermark(models: BotModels, name: str) -> str | None:
    row = models.Watermark.get_or_none(models.Watermark.name == name)
    return row.value if row else None


def write_watermark(models: BotModels, name: str, value: str):
    now = utcnow_naive()
    models.Watermark.insert(name=name, value=value, updated_at=now).on_conflict(
        conflict_target=[models.Watermark.name],
        update={models.Watermark.value: value, models.Watermark.updated_at: now},
    ).execute()


def link_staff(models: BotModels, discord_user_id: int, in_game_name: str):
    key = username_key(in_game_name)
    now = utcnow_naive()
    models.StaffLink.insert(
        in_game_name=in_game_name.strip(),
        in_game_key=key,
        discord_user_id=discord_user_id,
    ).on_conflict(
        conflict_target=[models.StaffLink.in_game_key],
        update={
            models.StaffLink.in_game_name: in_game_name.strip(),
            models.StaffLink.discord_user_id: discord_user_id,
            models.StaffLink.updated_at: now,
        },
    ).execute()


def unlink_staff(models: BotModels, in_game_name: str) -> bool:
    deleted = (
        models.StaffLink.delete()
        .where(models.StaffLink.in_game_key == username_key(in_game_name))
        .execute()
    )
    return deleted > 0


def staff_mentions(models: BotModels) -> dict[str, int]:
    return {row.in_game_key: row.discord_user_id for row in models.StaffLink.select()}


def upsert_member(models: BotModels, stats, rank_name: str | None = None):
    now = utcnow_naive()
    member = models.ClanMember
    values = {
        member.username: stats.username,
        member.rank_name: rank_name or stats.clan_rank_name,
        member.kills: stats.kills,
        member.deaths: stats.deaths,
        member.elo: stats.elo,
        member.donator_rank: stats.donator_rank,
        member.last_seen: stats.last_seen,
        member.updated_at: now,
    }
    member.insert(
        {**values, member.username_key: username_key(stats.username)}
    ).on_conflict(
        conflict_target=[member.username_key],
        update=values,
    ).execute()


def top_killers(models: BotModels, limit: int = 10) -> list[tuple[str, int]]:
    member = models.ClanMember
    rows = (
        member.select()
        .order_by(member.kills.desc(), member.username_key.asc())
        .limit(max(int(limit), 0))
    )
    return [(row.username, row.kills) for row in rows]


def prune_members(models: BotModels, keep_keys: set[str]) -> int:
    """Drop snapshot and weekly ledger rows of players no longer in the roster."""
    member = models.ClanMember
    weekly = models.WeeklyKills
    with models.db.atomic():
        departed = [
            row.username_key
            for row in member.select(member.username_key)
            if row.username_key not in keep_keys
        ]
        if not departed:
            return 0
        member.delete().where(member.username_key.in_(departed)).execute()
        weekly.delete().where(weekly.username_key.in_(departed)).execute()
    return len(departed)

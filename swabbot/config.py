import os
from dataclasses import dataclass, field
from typing import Any, List

import yaml

CONFIG_ENV_KEY = "CONFIG_PATH"
DEFAULT_CONFIG_PATH = "config.yml"
DEFAULT_API_BASE = "https://api.roatpkz.ps/api/v1"
DEFAULT_HISCORE_BASE = "https://roatpkz.com/hiscore/user"


@dataclass
class BotConfig:
    token: str
    log_level: str = "INFO"
    database_path: str = "swab.db"
    api_key: str = ""
    api_base: str = DEFAULT_API_BASE
    hiscore_base: str = DEFAULT_HISCORE_BASE
    clan_name: str = "Swab"
    ban_channel_id: int | None = None
    warfare_channel_id: int | None = None
    ignored_voice_channel_ids: List[int] = field(default_factory=list)
    ban_check_seconds: int = 60
    warfare_check_seconds: int = 60
    roster_refresh_seconds: int = 300
    request_timeout_seconds: float = 5.0
    notify_max_retries: int = 3
    ban_display_limit: int = 10


def _optional_id(data: dict, key: str) -> int | None:
    value = data.get(key)
    if value in (None, "", 0):
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Config '{key}' must be a channel id, got {value!r}") from exc


def _positive(data: dict, key: str, default: Any, cast=int):
    value = data.get(key)
    if value is None:
        return default
    try:
        parsed = cast(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Config '{key}' must be a number, got {value!r}") from exc
    if parsed <= 0:
        raise ValueError(f"Config '{key}' must be positive, got {parsed}")
    return parsed


def load_config(path: str | None = None) -> BotConfig:
    config_path = path or os.environ.get(CONFIG_ENV_KEY, DEFAULT_CONFIG_PATH)
    with open(config_path, "r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}

    token = str(data.get("token") or "").strip()
    if not token:
        raise ValueError("Config missing 'token'")

    log_level = str(data.get("log_level") or "INFO").upper()
    valid_levels = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}
    if log_level not in valid_levels:
        raise ValueError(
            f"Invalid log_level '{log_level}'. Must be one of {sorted(valid_levels)}"
        )

    database_path = str(data.get("database_path") or "swab.db")

    ignored_raw = data.get("ignored_voice_channel_ids") or []
    if not isinstance(ignored_raw, list):
        raise ValueError("Config 'ignored_voice_channel_ids' must be a list")
    try:
        ignored = [int(cid) for cid in ignored_raw]
    except (TypeError, ValueError) as exc:
        raise ValueError(
            f"Config 'ignored_voice_channel_ids' must contain channel ids: {ignored_raw!r}"
        ) from exc

    return BotConfig(
        token=token,
        log_level=log_level,
        database_path=database_path,
        api_key=str(data.get("api_key") or os.environ.get("ROAT_API_KEY", "")),
        api_base=str(data.get("api_base") or DEFAULT_API_BASE).rstrip("/"),
        hiscore_base=str(data.get("hiscore_base") or DEFAULT_HISCORE_BASE).rstrip("/"),
        clan_name=str(data.get("clan_name") or "Swab"),
        ban_channel_id=_optional_id(data, "ban_channel_id"),
        warfare_channel_id=_optional_id(data, "warfare_channel_id"),
        ignored_voice_channel_ids=ignored,
        ban_check_seconds=_positive(data, "ban_check_seconds", 60),
        warfare_check_seconds=_positive(data, "warfare_check_seconds", 60),
        roster_refresh_seconds=_positive(data, "roster_refresh_seconds", 300),
        request_timeout_seconds=_positive(
            data, "request_timeout_seconds", 5.0, cast=float
        ),
        notify_max_retries=_positive(data, "notify_max_retries", 3),
        ban_display_limit=_positive(data, "ban_display_limit", 10),
    )

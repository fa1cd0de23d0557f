import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import aiohttp
from bs4 import BeautifulSoup

from .config import DEFAULT_API_BASE, DEFAULT_HISCORE_BASE

LOGGER = logging.getLogger(__name__)

JAD_LABEL = "tztok-jad kills"
SKOTIZO_LABEL = "skotizo kills"


class RoatError(Exception):
    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class PlayerNotFoundError(RoatError):
    """The player (or their hiscore entry) does not exist upstream."""


class StatsUnavailableError(RoatError):
    """Timeout, connection problem, rate limit or server error; try next tick."""


@dataclass
class PlayerStats:
    username: str
    kills: int
    deaths: int
    elo: float
    jad_kills: int = 0
    skotizo_kills: int = 0
    display_name: str | None = None
    last_seen: str | None = None
    clan_rank_name: str | None = None
    donator_rank: int = 0
    player_rank: str | None = None
    game_mode: str | None = None

    @property
    def kd_ratio(self) -> float:
        if self.deaths == 0:
            return float(self.kills)
        return round(self.kills / self.deaths, 2)


@dataclass
class BanRecord:
    username: str
    banned_at: datetime
    reason: str | None = None
    banned_by: str | None = None


@dataclass
class WarfareResult:
    created_at: datetime
    winner_clan: str
    loser_clan: str | None
    total_kills: int
    winner_kills: int | None = None
    loser_kills: int | None = None

    @property
    def key(self) -> str:
        return f"{self.created_at.isoformat()}|{self.winner_clan}|{self.total_kills}"


@dataclass
class RosterEntry:
    username: str
    rank_name: str | None = None


def parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e12 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)
    try:
        text = str(value)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
        if dt.tzinfo:
            dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
        return dt
    except ValueError:
        return None


def _safe_int(value: Any, default: int = 0) -> int:
    if value is None or value == "":
        return default
    try:
        return int(str(value).replace(",", "").strip())
    except (TypeError, ValueError):
        try:
            return int(float(value))
        except (TypeError, ValueError):
            return default


def _safe_float(value: Any, default: float = 0.0) -> float:
    if value is None or value == "":
        return default
    try:
        return float(str(value).replace(",", "").strip())
    except (TypeError, ValueError):
        return default


def _unwrap_list(payload: Any) -> List[Dict[str, Any]]:
    if isinstance(payload, list):
        return [item for item in payload if isinstance(item, dict)]
    if isinstance(payload, dict) and "data" in payload:
        return [item for item in payload.get("data") or [] if isinstance(item, dict)]
    return []


def parse_hiscore_counts(html: str) -> Dict[str, int]:
    """Map lower-cased hiscore labels to their numeric value cell."""
    soup = BeautifulSoup(html, "html.parser")
    values = soup.select("td.value")
    if not values:
        raise PlayerNotFoundError("No hiscore entry found")
    counts: Dict[str, int] = {}
    for cell in values:
        label_cell = cell.find_previous_sibling("td")
        if label_cell is None:
            continue
        label = label_cell.get_text(strip=True).lower()
        if label:
            counts[label] = _safe_int(cell.get_text(strip=True))
    return counts


class RoatClient:
    def __init__(
        self,
        api_key: str = "",
        api_base: str = DEFAULT_API_BASE,
        hiscore_base: str = DEFAULT_HISCORE_BASE,
        clan_name: str = "Swab",
        timeout_seconds: float = 5.0,
        session: aiohttp.ClientSession | None = None,
    ):
        self.api_key = api_key
        self.api_base = api_base.rstrip("/")
        self.hiscore_base = hiscore_base.rstrip("/")
        self.clan_name = clan_name
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session = session
        self._owns_session = session is None

    async def close(self):
        if self._owns_session and self._session:
            await self._session.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self._session

    async def _fetch(self, url: str, as_json: bool) -> Any:
        headers = {"x-api-key": self.api_key} if self.api_key and as_json else {}
        try:
            async with self._get_session().get(
                url, headers=headers, timeout=self.timeout
            ) as resp:
                if resp.status == 404:
                    raise PlayerNotFoundError(f"Not found: {url}", status=404)
                if resp.status == 429 or resp.status >= 500:
                    raise StatsUnavailableError(
                        f"Transient error {resp.status} for {url}", status=resp.status
                    )
                if resp.status >= 400:
                    raise StatsUnavailableError(
                        f"Unexpected status {resp.status} for {url}",
                        status=resp.status,
                    )
                if as_json:
                    return await resp.json(content_type=None)
                return await resp.text()
        except RoatError:
            raise
        except asyncio.TimeoutError as exc:
            raise StatsUnavailableError(f"Timed out requesting {url}") from exc
        except (aiohttp.ClientError, ValueError) as exc:
            raise StatsUnavailableError(f"Failed request {url}: {exc}") from exc

    async def _request(self, path: str) -> Any:
        return await self._fetch(f"{self.api_base}{path}", as_json=True)

    async def _request_text(self, url: str) -> str:
        return await self._fetch(url, as_json=False)

    async def fetch_player_stats(
        self, username: str, include_bosses: bool = True
    ) -> PlayerStats:
        payload = await self._request(f"/player/{quote(username)}")
        stats = self.parse_player(payload)
        if stats is None:
            raise PlayerNotFoundError(f"Player {username} not found", status=404)
        if include_bosses:
            try:
                stats.jad_kills, stats.skotizo_kills = await self.fetch_boss_kills(
                    username
                )
            except PlayerNotFoundError:
                LOGGER.debug("No hiscore entry for %s; boss kills default to 0", username)
        return stats

    async def fetch_boss_kills(self, username: str) -> tuple[int, int]:
        url = f"{self.hiscore_base}/{quote(username)}/normal/"
        counts = parse_hiscore_counts(await self._request_text(url))
        return counts.get(JAD_LABEL, 0), counts.get(SKOTIZO_LABEL, 0)

    async def fetch_ban_list(self) -> List[BanRecord]:
        payload = await self._request("/bans")
        bans: List[BanRecord] = []
        for item in _unwrap_list(payload):
            ban = self.parse_ban(item)
            if ban is None:
                LOGGER.debug("Skipping malformed ban entry %s", item)
                continue
            bans.append(ban)
        return bans

    async def fetch_warfare_result(self) -> Optional[WarfareResult]:
        payload = await self._request(f"/clan/{quote(self.clan_name)}/warfare/latest")
        if isinstance(payload, dict) and "data" in payload:
            payload = payload.get("data")
        if isinstance(payload, list):
            payload = payload[0] if payload else None
        if not isinstance(payload, dict):
            return None
        return self.parse_warfare(payload)

    async def fetch_clan_roster(self) -> List[RosterEntry]:
        payload = await self._request(f"/clan/{quote(self.clan_name)}/members")
        roster: List[RosterEntry] = []
        for item in _unwrap_list(payload):
            username = str(item.get("username") or "").strip()
            if not username:
                continue
            rank_name = item.get("rankName") or item.get("rank_name")
            roster.append(RosterEntry(username=username, rank_name=rank_name))
        return roster

    @staticmethod
    def parse_player(payload: Any) -> Optional[PlayerStats]:
        if not isinstance(payload, dict) or not payload.get("username"):
            return None
        clan_info = payload.get("clan_info") or {}
        return PlayerStats(
            username=str(payload["username"]),
            display_name=payload.get("display_name"),
            kills=_safe_int(payload.get("kills")),
            deaths=_safe_int(payload.get("deaths")),
            elo=_safe_float(payload.get("elo")),
            last_seen=payload.get("last_seen"),
            clan_rank_name=clan_info.get("rankName") if isinstance(clan_info, dict) else None,
            donator_rank=_safe_int(payload.get("donator_rank")),
            player_rank=payload.get("player_rank"),
            game_mode=payload.get("game_mode"),
        )

    @staticmethod
    def parse_ban(item: Dict[str, Any]) -> Optional[BanRecord]:
        username = str(item.get("username") or "").strip()
        banned_at = parse_datetime(item.get("banned_at") or item.get("bannedAt"))
        if not username or banned_at is None:
            return None
        return BanRecord(
            username=username,
            banned_at=banned_at,
            reason=item.get("reason"),
            banned_by=item.get("banned_by") or item.get("bannedBy"),
        )

    @staticmethod
    def parse_warfare(item: Dict[str, Any]) -> Optional[WarfareResult]:
        created_at = parse_datetime(item.get("created_at") or item.get("createdAt"))
        winner = item.get("winner") or item.get("winner_clan")
        if created_at is None or not winner:
            return None
        winner_kills = item.get("winner_kills")
        loser_kills = item.get("loser_kills")
        return WarfareResult(
            created_at=created_at,
            winner_clan=str(winner),
            loser_clan=item.get("loser") or item.get("loser_clan"),
            total_kills=_safe_int(item.get("total_kills") or item.get("totalKills")),
            winner_kills=_safe_int(winner_kills) if winner_kills is not None else None,
            loser_kills=_safe_int(loser_kills) if loser_kills is not None else None,
        )

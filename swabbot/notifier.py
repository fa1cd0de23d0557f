from __future__ import annotations

import asyncio
import enum
import logging
from typing import Any, Optional, Protocol

import discord

LOGGER = logging.getLogger(__name__)

FALLBACK_MESSAGE = "Discord is rate limiting this bot right now; please try again later."


class SendResult(enum.Enum):
    SENT = "sent"
    # rate limit exhausted or channel unresolved; safe to send again later
    RETRY = "retry"
    # other send error; the message may have been delivered
    DROPPED = "dropped"


class Notifier(Protocol):
    async def send(
        self,
        channel_id: int,
        content: Optional[str] = None,
        embed: Any | None = None,
    ) -> SendResult: ...


class ChannelResolver(Protocol):
    def get_channel(self, channel_id: int, /) -> Any | None: ...

    async def fetch_channel(self, channel_id: int, /) -> Any: ...


def is_rate_limited(exc: BaseException) -> bool:
    if isinstance(exc, discord.RateLimited):
        return True
    return isinstance(exc, discord.HTTPException) and exc.status == 429


class ChannelNotifier:
    def __init__(
        self,
        resolver: ChannelResolver,
        max_retries: int = 3,
        default_retry_delay: float = 5.0,
    ):
        self.resolver = resolver
        self.max_retries = max_retries
        self.default_retry_delay = default_retry_delay

    async def _resolve(self, channel_id: int) -> Any | None:
        channel = self.resolver.get_channel(channel_id)
        if channel is not None:
            return channel
        try:
            return await self.resolver.fetch_channel(channel_id)
        except Exception as exc:
            LOGGER.warning("Channel %s could not be resolved: %s", channel_id, exc)
            return None

    async def send(
        self,
        channel_id: int,
        content: Optional[str] = None,
        embed: Any | None = None,
    ) -> SendResult:
        channel = await self._resolve(channel_id)
        if channel is None:
            return SendResult.RETRY
        attempts = 0
        while True:
            try:
                if embed is not None:
                    await channel.send(content=content, embed=embed)
                else:
                    await channel.send(content=content)
                return SendResult.SENT
            except Exception as exc:
                if not is_rate_limited(exc):
                    LOGGER.warning(
                        "Send to channel %s failed, dropping message: %s", channel_id, exc
                    )
                    return SendResult.DROPPED
                attempts += 1
                if attempts > self.max_retries:
                    break
                retry_after = getattr(exc, "retry_after", None)
                wait = (
                    float(retry_after)
                    if retry_after is not None
                    else self.default_retry_delay
                )
                LOGGER.warning(
                    "Send to channel %s rate limited (429). Backing off for %ss",
                    channel_id,
                    wait,
                )
                await asyncio.sleep(wait)
        LOGGER.warning(
            "Giving up on channel %s after %s rate limited attempts",
            channel_id,
            attempts,
        )
        try:
            await channel.send(content=FALLBACK_MESSAGE)
        except Exception as exc:
            LOGGER.warning("Fallback message to channel %s failed: %s", channel_id, exc)
        return SendResult.RETRY

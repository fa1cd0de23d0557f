import asyncio
from types import SimpleNamespace

import discord

from swabbot.notifier import (
    FALLBACK_MESSAGE,
    ChannelNotifier,
    SendResult,
    is_rate_limited,
)
from tests.fakes import FakeChannel, FakeResolver


def http_error(status):
    return discord.HTTPException(SimpleNamespace(status=status, reason="error"), "boom")


def make_notifier(channel, max_retries=3, cached=True):
    resolver = FakeResolver({channel.id: channel}, cached=cached)
    return ChannelNotifier(resolver, max_retries=max_retries, default_retry_delay=0), resolver


def test_is_rate_limited():
    assert is_rate_limited(http_error(429))
    assert is_rate_limited(discord.RateLimited(0.0))
    assert not is_rate_limited(http_error(500))
    assert not is_rate_limited(RuntimeError("nope"))


def test_send_delivers_message():
    channel = FakeChannel(id=10)
    notifier, _ = make_notifier(channel)

    assert asyncio.run(notifier.send(10, content="hello")) is SendResult.SENT
    assert channel.sent == [{"content": "hello", "embed": None}]


def test_send_fetches_uncached_channel():
    channel = FakeChannel(id=10)
    notifier, resolver = make_notifier(channel, cached=False)

    assert asyncio.run(notifier.send(10, content="hello")) is SendResult.SENT
    assert resolver.fetched == [10]


def test_send_to_unknown_channel_fails():
    notifier, _ = make_notifier(FakeChannel(id=10))
    assert asyncio.run(notifier.send(11, content="hello")) is SendResult.RETRY


def test_rate_limited_send_is_retried():
    channel = FakeChannel(id=10, failures=[http_error(429), discord.RateLimited(0.0)])
    notifier, _ = make_notifier(channel)

    assert asyncio.run(notifier.send(10, content="hello")) is SendResult.SENT
    assert channel.sent == [{"content": "hello", "embed": None}]


def test_exhausted_retries_send_fallback_once():
    channel = FakeChannel(id=10, failures=[http_error(429) for _ in range(3)])
    notifier, _ = make_notifier(channel, max_retries=2)

    assert asyncio.run(notifier.send(10, content="hello")) is SendResult.RETRY
    assert channel.sent == [{"content": FALLBACK_MESSAGE, "embed": None}]


def test_other_errors_are_not_retried():
    channel = FakeChannel(id=10, failures=[http_error(500)])
    notifier, _ = make_notifier(channel)

    assert asyncio.run(notifier.send(10, content="hello")) is SendResult.DROPPED
    assert channel.sent == []

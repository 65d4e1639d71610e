"""Tests covering the delayed reconnection policy."""

from __future__ import annotations

import asyncio
from typing import List

from peerlink.client.reconnect import ReconnectPolicy


def test_single_pending_attempt() -> None:
    async def scenario() -> None:
        calls: List[int] = []

        async def connect() -> None:
            calls.append(1)

        policy = ReconnectPolicy(connect, lambda: False, delay=0.01)
        policy.schedule()
        policy.schedule()
        policy.schedule()
        assert policy.pending

        await policy.wait()

        assert calls == [1]
        assert policy.attempts == 1
        assert not policy.pending

    asyncio.run(scenario())


def test_attempt_skipped_when_already_connected() -> None:
    async def scenario() -> None:
        calls: List[int] = []

        async def connect() -> None:
            calls.append(1)

        policy = ReconnectPolicy(connect, lambda: True, delay=0)
        policy.schedule()
        await policy.wait()

        assert calls == []
        assert policy.attempts == 0

    asyncio.run(scenario())


def test_cancel_drops_pending_attempt() -> None:
    async def scenario() -> None:
        calls: List[int] = []

        async def connect() -> None:
            calls.append(1)

        policy = ReconnectPolicy(connect, lambda: False, delay=0.05)
        policy.schedule()
        policy.cancel()
        await asyncio.sleep(0.1)

        assert calls == []
        assert not policy.pending

    asyncio.run(scenario())


def test_failed_attempt_is_logged_not_raised() -> None:
    async def scenario() -> None:
        async def connect() -> None:
            raise OSError("refused")

        policy = ReconnectPolicy(connect, lambda: False, delay=0)
        policy.schedule()
        await policy.wait()

        assert policy.attempts == 1

    asyncio.run(scenario())


def test_negative_delay_is_clamped() -> None:
    policy = ReconnectPolicy(lambda: None, lambda: False, delay=-5)  # type: ignore[arg-type, return-value]
    assert policy.delay == 0.0

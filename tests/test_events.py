"""Tests covering the client event bus."""

from __future__ import annotations

from typing import Any, List

import pytest

from peerlink.client.events import CLIENT_EVENTS, EventBus


def test_handlers_receive_data_and_can_unsubscribe() -> None:
    bus = EventBus()
    received: List[Any] = []

    unsubscribe = bus.on("chat", received.append)
    bus.emit("chat", {"message": "hi"})
    unsubscribe()
    bus.emit("chat", {"message": "again"})

    assert received == [{"message": "hi"}]
    assert bus.listener_count("chat") == 0


def test_unknown_event_and_non_callable_are_rejected() -> None:
    bus = EventBus()

    with pytest.raises(ValueError):
        bus.on("nope", lambda _: None)
    with pytest.raises(TypeError):
        bus.on("chat", "not callable")  # type: ignore[arg-type]


def test_failing_handler_does_not_stop_delivery() -> None:
    bus = EventBus()
    received: List[Any] = []

    def broken(_: Any) -> None:
        raise RuntimeError("boom")

    bus.on("error", broken)
    bus.on("error", received.append)
    bus.emit("error", "payload")

    assert received == ["payload"]


def test_clear_and_custom_names() -> None:
    bus = EventBus(names=["ping"])
    bus.on("ping", lambda _: None)
    assert bus.listener_count("ping") == 1

    bus.clear()
    assert bus.listener_count("ping") == 0
    assert "reset" in CLIENT_EVENTS
    with pytest.raises(ValueError):
        bus.on("reset", lambda _: None)

"""Tests covering relay registry announcements and routing."""

from __future__ import annotations

import asyncio
import uuid
from typing import Any, Dict, List

from peerlink.api.schemas import PeerRecord
from peerlink.api.state import Registry, RelayState


class FakeConnection:
    def __init__(self, name: str = "") -> None:
        self.connection_id = name or str(uuid.uuid4())
        self.sent: List[Dict[str, Any]] = []

    async def send(self, payload: Dict[str, Any]) -> None:
        self.sent.append(payload)

    def peer_frames(self) -> List[Dict[str, Any]]:
        return [frame["data"] for frame in self.sent if frame["type"] == "peer"]


class FailingConnection(FakeConnection):
    async def send(self, payload: Dict[str, Any]) -> None:
        raise ConnectionError("socket gone")


def test_new_peer_learns_existing_and_is_announced() -> None:
    async def scenario() -> None:
        registry = Registry()
        alice, bob, carol = FakeConnection("a"), FakeConnection("b"), FakeConnection("c")

        assert await registry.register_or_update(alice, PeerRecord(id="alice", name="Alice"))
        assert await registry.register_or_update(bob, PeerRecord(id="bob", name="Bob"))
        assert await registry.register_or_update(carol, PeerRecord(id="carol", name="Carol"))

        assert alice.peer_frames() == [{"id": "bob", "name": "Bob"}, {"id": "carol", "name": "Carol"}]
        assert bob.peer_frames() == [{"id": "alice", "name": "Alice"}, {"id": "carol", "name": "Carol"}]
        assert sorted(item["id"] for item in carol.peer_frames()) == ["alice", "bob"]
        assert len(registry) == 3

    asyncio.run(scenario())


def test_rename_is_announced_without_resending_existing() -> None:
    async def scenario() -> None:
        registry = Registry()
        alice, bob = FakeConnection("a"), FakeConnection("b")
        await registry.register_or_update(alice, PeerRecord(id="alice", name="Alice"))
        await registry.register_or_update(bob, PeerRecord(id="bob", name="Bob"))
        bob.sent.clear()
        alice.sent.clear()

        is_new = await registry.register_or_update(alice, PeerRecord(id="alice", name="Alicia"))

        assert is_new is False
        assert alice.sent == []
        assert bob.peer_frames() == [{"id": "alice", "name": "Alicia"}]
        assert registry.get(alice) == PeerRecord(id="alice", name="Alicia")

    asyncio.run(scenario())


def test_unregister_broadcasts_removal() -> None:
    async def scenario() -> None:
        registry = Registry()
        alice, bob = FakeConnection("a"), FakeConnection("b")
        await registry.register_or_update(alice, PeerRecord(id="alice", name="Alice"))
        await registry.register_or_update(bob, PeerRecord(id="bob", name="Bob"))
        bob.sent.clear()

        removed = await registry.unregister(alice)

        assert removed == PeerRecord(id="alice", name="Alice")
        assert bob.sent == [{"type": "peer", "data": {"id": "alice", "name": "Alice", "remove": True}}]
        assert alice not in registry
        assert await registry.unregister(alice) is None

    asyncio.run(scenario())


def test_unregister_of_unidentified_connection_is_silent() -> None:
    async def scenario() -> None:
        registry = Registry()
        bob = FakeConnection("b")
        await registry.register_or_update(bob, PeerRecord(id="bob", name="Bob"))
        bob.sent.clear()

        assert await registry.unregister(FakeConnection("x")) is None
        assert bob.sent == []

    asyncio.run(scenario())


def test_route_forwards_unchanged_and_drops_unknown() -> None:
    async def scenario() -> None:
        registry = Registry()
        alice, bob = FakeConnection("a"), FakeConnection("b")
        await registry.register_or_update(alice, PeerRecord(id="alice", name="Alice"))
        await registry.register_or_update(bob, PeerRecord(id="bob", name="Bob"))
        bob.sent.clear()
        alice.sent.clear()

        frame = {"type": "offer", "data": {"target": "bob", "source": "alice", "sdp": "v=0", "type": "offer"}}
        assert await registry.route("bob", frame) is True
        assert bob.sent == [frame]

        assert await registry.route("nobody", {"type": "offer", "data": {"target": "nobody"}}) is False
        assert alice.sent == []

    asyncio.run(scenario())


def test_duplicate_ids_route_to_first_holder() -> None:
    async def scenario() -> None:
        registry = Registry()
        first, second = FakeConnection("1"), FakeConnection("2")
        await registry.register_or_update(first, PeerRecord(id="same", name="One"))
        await registry.register_or_update(second, PeerRecord(id="same", name="Two"))
        first.sent.clear()

        await registry.route("same", {"type": "reject", "data": {"target": "same"}})

        assert first.sent == [{"type": "reject", "data": {"target": "same"}}]
        assert second.peer_frames() == [{"id": "same", "name": "One"}]

    asyncio.run(scenario())


def test_failed_announcement_does_not_block_registration() -> None:
    async def scenario() -> None:
        registry = Registry()
        broken = FailingConnection("broken")
        await registry.register_or_update(broken, PeerRecord(id="broken", name="Broken"))

        newcomer = FakeConnection("n")
        assert await registry.register_or_update(newcomer, PeerRecord(id="new", name="New"))
        assert newcomer in registry
        assert newcomer.peer_frames() == [{"id": "broken", "name": "Broken"}]

    asyncio.run(scenario())


def test_registration_is_committed_after_announcements() -> None:
    async def scenario() -> None:
        registry = Registry()
        observed: List[bool] = []

        class SlowConnection(FakeConnection):
            async def send(self, payload: Dict[str, Any]) -> None:
                await asyncio.sleep(0.01)
                observed.append(newcomer in registry)
                await super().send(payload)

        existing = SlowConnection("e")
        await registry.register_or_update(existing, PeerRecord(id="old", name="Old"))
        newcomer = FakeConnection("n")
        await registry.register_or_update(newcomer, PeerRecord(id="new", name="New"))

        assert observed == [False]
        assert newcomer in registry

    asyncio.run(scenario())


def test_concurrent_joins_see_each_other() -> None:
    async def scenario() -> None:
        registry = Registry()
        conns = [FakeConnection(str(index)) for index in range(5)]
        await asyncio.gather(
            *[
                registry.register_or_update(conn, PeerRecord(id=f"p{index}", name=f"P{index}"))
                for index, conn in enumerate(conns)
            ]
        )

        for index, conn in enumerate(conns):
            seen = {item["id"] for item in conn.peer_frames()}
            assert seen == {f"p{other}" for other in range(5) if other != index}

    asyncio.run(scenario())


def test_relay_state_version_is_stable() -> None:
    state = RelayState()
    assert state.version == state.version
    assert state.version.isdigit()
    assert RelayState(version="42").version == "42"

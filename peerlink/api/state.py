"""
Relay-side state: the peer registry and the per-process version token.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Dict, List, Optional, Protocol

from .schemas import PeerRecord, peer_message

LOG = logging.getLogger(__name__)


class PeerConnection(Protocol):
    """Anything the registry can notify: a live relay connection or a test double."""

    connection_id: str

    def send(self, payload: Dict[str, Any]) -> Awaitable[None]:
        ...


def generate_version() -> str:
    return str(time.time_ns() // 1_000_000)


class Registry:
    """
    Mapping of connection -> :class:`PeerRecord`.

    Every mutation runs under a single :class:`asyncio.Lock`, so readers never
    observe a half-applied update.  Outbound sends are queue puts on the
    connection side and never block, which keeps the critical section short.
    """

    def __init__(self) -> None:
        self._records: Dict[PeerConnection, PeerRecord] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, conn: object) -> bool:
        return conn in self._records

    def get(self, conn: PeerConnection) -> Optional[PeerRecord]:
        return self._records.get(conn)

    async def snapshot(self) -> List[PeerRecord]:
        async with self._lock:
            return list(self._records.values())

    async def register_or_update(self, conn: PeerConnection, record: PeerRecord) -> bool:
        """
        Store ``record`` for ``conn`` after announcing it.

        A new connection first learns about every peer registered before it.
        The record is then announced to every connection presenting a different
        id.  All announcements are joined before the record is committed.
        Returns ``True`` when ``conn`` was not registered before.
        """

        async with self._lock:
            is_new = conn not in self._records
            notifications: List[Awaitable[None]] = []

            if is_new:
                LOG.info("New client %s (%s)", record.id, record.name)
                for existing in self._records.values():
                    notifications.append(self._notify(conn, record, existing))

            for peer_conn, peer in self._records.items():
                if peer.id != record.id:
                    notifications.append(self._notify(peer_conn, peer, record))
                elif peer_conn is not conn:
                    LOG.warning(
                        "Peer id %s is already held by connection %s; routing is ambiguous",
                        record.id,
                        peer_conn.connection_id,
                    )

            results = await asyncio.gather(*notifications, return_exceptions=True)
            for result in results:
                if isinstance(result, BaseException):
                    LOG.warning("Failed to announce %s: %s", record.id, result)

            self._records[conn] = record
        return is_new

    async def route(self, target_id: str, message: Dict[str, Any]) -> bool:
        """
        Forward ``message`` unchanged to the connection registered as ``target_id``.

        Delivery is best effort: an unknown target drops the message and the
        sender is never told.  Returns whether a target was found.
        """

        async with self._lock:
            target = self._find(target_id)

        if target is None:
            LOG.debug("Dropping %s for unknown target %s", message.get("type"), target_id)
            return False

        await target.send(message)
        return True

    async def unregister(self, conn: PeerConnection) -> Optional[PeerRecord]:
        """
        Forget ``conn`` and tell every remaining connection, once, that its
        peer is gone.  The removal is broadcast before the lock is released.
        """

        async with self._lock:
            record = self._records.pop(conn, None)
            if record is None:
                return None

            LOG.debug("%s (%s) disconnected", record.id, record.name)
            results = await asyncio.gather(
                *[self._notify(peer_conn, peer, record, remove=True) for peer_conn, peer in self._records.items()],
                return_exceptions=True,
            )
            for result in results:
                if isinstance(result, BaseException):
                    LOG.warning("Failed to announce removal of %s: %s", record.id, result)
        return record

    def _find(self, peer_id: str) -> Optional[PeerConnection]:
        for conn, record in self._records.items():
            if record.id == peer_id:
                return conn
        return None

    async def _notify(
        self,
        conn: PeerConnection,
        client: PeerRecord,
        other: PeerRecord,
        remove: bool = False,
    ) -> None:
        LOG.debug(
            "Notifying %s (%s) that %s (%s) %s",
            client.id,
            client.name,
            other.id,
            other.name,
            "disconnected" if remove else "became available",
        )
        await conn.send(peer_message(other, remove=remove))


class RelayState:
    """
    State owned by one relay process.

    ``version`` is generated once when the state is created and never changes;
    clients compare it across reconnects to detect a relay restart.
    """

    def __init__(self, version: Optional[str] = None) -> None:
        self._version = version or generate_version()
        self.registry = Registry()

    @property
    def version(self) -> str:
        return self._version

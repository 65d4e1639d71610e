"""
FastAPI signal relay.

Each WebSocket connection gets a :class:`RelayConnection` that owns a bounded
outbound queue and a pair of receive/send loops.  Frames from one connection
are handled strictly in order; different connections run concurrently and
only meet in the :class:`~peerlink.api.state.Registry`.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from typing import Any, Callable, Dict, List, Optional, Union

from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from ..config import RelayConfig
from .schemas import IdentifyMessage, MalformedFrame, PeerRecord, ReadyMessage, parse_relay_frame, to_payload
from .state import RelayState

LOG = logging.getLogger(__name__)

# Close code for upgrade requests on paths the relay does not serve.
POLICY_VIOLATION = 1008


class RelayConnection:
    """Track one client connection and run its send/receive loops."""

    def __init__(self, relay: "SignalRelay", websocket: WebSocket, *, queue_size: int) -> None:
        self.relay = relay
        self.websocket = websocket
        self.connection_id = str(uuid.uuid4())
        self.send_queue: asyncio.Queue[Dict[str, Any]] = asyncio.Queue(maxsize=queue_size)
        self._stop_event = asyncio.Event()
        self._sender: Optional[asyncio.Task] = None
        self._closing = False
        self.logger = LOG.getChild(f"ws.{self.connection_id[:8]}")

    @property
    def is_stopped(self) -> bool:
        return self._stop_event.is_set()

    async def run(self) -> None:
        try:
            await self.websocket.accept()
        except Exception:  # pragma: no cover - handshake failures depend on the ASGI server
            self.logger.exception("Failed to accept WebSocket connection")
            return

        await self.send(to_payload(ReadyMessage(version=self.relay.state.version, id=self.connection_id)))

        try:
            async with asyncio.TaskGroup() as task_group:
                self._sender = task_group.create_task(self._send_loop())
                task_group.create_task(self._recv_loop())
        except asyncio.CancelledError:
            raise
        except Exception:  # pragma: no cover - both loops handle their own errors
            self.logger.exception("Relay connection crashed")
        finally:
            # The ASGI server may cancel the handler as soon as the client is
            # gone; the removal broadcast has to finish regardless.
            finalise = asyncio.ensure_future(self.relay.finalise(self))
            try:
                await asyncio.shield(finalise)
            finally:
                await self.close()

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        if self._closing:
            return
        self._closing = True
        self._stop_event.set()
        with contextlib.suppress(RuntimeError, WebSocketDisconnect):
            await self.websocket.close(code=code, reason=reason)

    async def send(self, payload: Dict[str, Any]) -> None:
        """
        Queue ``payload`` for delivery without waiting for the socket.

        A stopped connection silently ignores the frame; a full queue drops it.
        """

        if self.is_stopped:
            return
        try:
            self.send_queue.put_nowait(dict(payload))
        except asyncio.QueueFull:
            self.logger.warning("Dropping %s frame; outbound queue is full", payload.get("type"))

    async def _recv_loop(self) -> None:
        try:
            while not self.is_stopped:
                try:
                    message = await self.websocket.receive()
                except asyncio.CancelledError:
                    raise
                except WebSocketDisconnect:
                    break
                except Exception:  # pragma: no cover - transport level failure
                    self.logger.exception("Failed to receive frame")
                    break

                if message.get("type") == "websocket.disconnect":
                    break

                raw: Union[str, bytes, None] = message.get("text")
                if raw is None:
                    raw = message.get("bytes")
                if raw is None:
                    continue

                try:
                    await self.relay.handle_frame(self, raw)
                except asyncio.CancelledError:
                    raise
                except Exception:
                    self.logger.exception("Unhandled error while processing frame")
        finally:
            self._stop_event.set()
            # Nothing queued after this point can reach the client
            if self._sender is not None:
                self._sender.cancel()

    async def _send_loop(self) -> None:
        try:
            while not self.is_stopped:
                payload = await self.send_queue.get()
                try:
                    await self.websocket.send_json(payload)
                except asyncio.CancelledError:
                    raise
                except WebSocketDisconnect:
                    break
                except RuntimeError as exc:
                    self.logger.debug("Send after close ignored: %s", exc)
                    break
                except Exception:  # pragma: no cover - transport level failure
                    self.logger.exception("Failed to send frame")
                    break
                finally:
                    self.send_queue.task_done()
        finally:
            self._stop_event.set()


class SignalRelay:
    """Dispatch frames from relay connections to the registry."""

    def __init__(self, state: RelayState, *, queue_size: int = 256) -> None:
        self.state = state
        self.queue_size = max(1, int(queue_size))

    async def run(self, websocket: WebSocket) -> None:
        connection = RelayConnection(self, websocket, queue_size=self.queue_size)
        connection.logger.debug("Client connected")
        await connection.run()

    async def handle_frame(self, connection: RelayConnection, raw: Union[str, bytes, Dict[str, Any]]) -> None:
        try:
            frame = parse_relay_frame(raw)
        except MalformedFrame as exc:
            connection.logger.warning("Dropping malformed frame: %s", exc)
            return

        if isinstance(frame, IdentifyMessage):
            await self.state.registry.register_or_update(connection, frame.data)
            return

        # All other frames are relayed to their target as-is
        await self.state.registry.route(frame.target, frame.payload)

    async def finalise(self, connection: RelayConnection) -> None:
        record = await self.state.registry.unregister(connection)
        if record is not None:
            LOG.info("%s (%s) disconnected", record.id, record.name)
        else:
            connection.logger.debug("Unidentified client disconnected")


def create_app(
    *,
    state: Optional[RelayState] = None,
    config: Optional[RelayConfig] = None,
    lifespan: Optional[Callable[..., object]] = None,
) -> FastAPI:
    relay_state = state or RelayState()
    relay_config = config or RelayConfig()
    relay = SignalRelay(relay_state, queue_size=relay_config.queue_size)

    app = FastAPI(title="peerlink relay", lifespan=lifespan)
    app.state.relay = relay

    @app.websocket(relay_config.path)
    async def rtc_endpoint(websocket: WebSocket) -> None:
        await relay.run(websocket)

    @app.websocket("/{requested_path:path}")
    async def reject_upgrade(websocket: WebSocket, requested_path: str) -> None:
        LOG.warning("Rejecting upgrade request for /%s", requested_path)
        await websocket.close(code=POLICY_VIOLATION)

    @app.get("/healthz")
    async def healthz() -> dict:
        return {
            "status": "ok",
            "version": relay_state.version,
            "peers": len(relay_state.registry),
        }

    @app.get("/peers")
    async def list_peers() -> List[PeerRecord]:
        return await relay_state.registry.snapshot()

    return app

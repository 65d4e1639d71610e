"""
peerlink command line entrypoint.

``peerlink relay`` serves the signal relay through uvicorn; ``peerlink
client`` runs a headless client that logs what it sees and can invite or
answer a peer on its own.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional, Set

from .api.server import create_app
from .api.state import RelayState
from .client import RTCClient, SessionState
from .config import ClientConfig, RelayConfig, load_config
from .rtc.webrtc import MediaStream, TransportOptions
from .utils.logging import configure_logging

LOG = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(state: RelayState) -> AsyncIterator[None]:
    LOG.info("Relay starting (version %s)", state.version)
    try:
        yield
    finally:
        LOG.info("Relay shutting down")


async def serve(config: RelayConfig, log_level: str = "info") -> None:
    """
    Run the relay inside an asyncio loop until SIGINT or SIGTERM.
    """

    import uvicorn

    relay_state = RelayState()

    @asynccontextmanager
    async def app_lifespan(_app) -> AsyncIterator[None]:
        async with lifespan(relay_state):
            yield

    app = create_app(state=relay_state, config=config, lifespan=app_lifespan)
    server_config = uvicorn.Config(
        app=app,
        host=config.host,
        port=config.port,
        log_config=None,
        log_level=log_level.lower(),
        ssl_certfile=config.certfile,
        ssl_keyfile=config.keyfile,
        reload=False,
    )
    server = uvicorn.Server(config=server_config)

    def _handle_signal(signum: int, frame: Optional[object]) -> None:
        LOG.info("Received signal %s, shutting down relay...", signum)
        server.should_exit = True

    for signame in ("SIGINT", "SIGTERM"):
        signal.signal(getattr(signal, signame), _handle_signal)

    scheme = "wss" if config.certfile else "ws"
    LOG.info("Listening on %s://%s:%s%s", scheme, config.host, config.port, config.path)
    await server.serve()


def open_media(path: Optional[str]) -> MediaStream:
    """Build the local stream from a media file or device; no path means no tracks."""

    if not path:
        return MediaStream()

    from aiortc.contrib.media import MediaPlayer

    player = MediaPlayer(path)
    tracks = [track for track in (player.audio, player.video) if track is not None]
    LOG.info("Opened %s with %d track(s)", path, len(tracks))
    return MediaStream(tracks)


async def run_client(
    config: ClientConfig,
    *,
    media: Optional[str] = None,
    invite: Optional[str] = None,
    auto_accept: bool = False,
) -> None:
    """Run a headless client until SIGINT or SIGTERM."""

    client = RTCClient(
        config.name,
        url=config.url,
        reconnect_delay=config.reconnect_delay,
        options=TransportOptions(ice_servers=list(config.ice_servers)),
    )
    stop_event = asyncio.Event()
    tasks: Set[asyncio.Task] = set()

    def _spawn(coro: Any) -> None:
        task = asyncio.ensure_future(coro)
        tasks.add(task)
        task.add_done_callback(_task_done)

    def _task_done(task: asyncio.Task) -> None:
        tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            LOG.warning("%s", task.exception())

    def _maybe_invite(peer) -> None:
        if invite and invite in (peer.id, peer.name) and client.state is SessionState.IDLE:
            LOG.info("Inviting %s (%s)", peer.name, peer.id)
            _spawn(client.invite(peer.id))

    def _on_peer_added(peer) -> None:
        LOG.info("Peer available: %s (%s)", peer.name, peer.id)
        _maybe_invite(peer)

    def _on_offer(offer) -> None:
        if auto_accept:
            LOG.info("Accepting offer from %s", offer.source)
            _spawn(client.accept(offer))
        else:
            LOG.info("Rejecting offer from %s", offer.source)
            _spawn(client.reject(offer))

    client.on("peeradded", _on_peer_added)
    client.on("peerupdated", lambda peer: LOG.info("Peer renamed: %s (%s)", peer.name, peer.id))
    client.on("peerremoved", lambda peer: LOG.info("Peer gone: %s (%s)", peer.name, peer.id))
    client.on("offer", _on_offer)
    client.on("peerconnected", lambda data: LOG.info("Receiving %s from %s", data["track"].kind, data["peer"].name))
    client.on("peerdisconnected", lambda peer_id: LOG.info("Session with %s ended", peer_id))
    client.on("chat", lambda data: LOG.info("<%s> %s", data["peer"].name, data["message"]))
    client.on("connected", lambda _: LOG.info("Connected to relay"))
    client.on("disconnected", lambda _: LOG.info("Disconnected from relay"))
    client.on("reset", lambda _: LOG.warning("Relay restarted; state was reset"))

    loop = asyncio.get_running_loop()
    for signame in ("SIGINT", "SIGTERM"):
        loop.add_signal_handler(getattr(signal, signame), stop_event.set)

    await client.open_stream(open_media(media))
    try:
        await stop_event.wait()
    finally:
        LOG.info("Shutting down client...")
        await client.close()
        for task in list(tasks):
            task.cancel()


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--profile", default="default", help="configuration profile to load")
    common.add_argument("--log-level", default="info", help="logging level (debug, info, warning...)")

    parser = argparse.ArgumentParser(prog="peerlink", description="WebRTC signaling relay and client")
    subparsers = parser.add_subparsers(dest="command", required=True)

    relay = subparsers.add_parser("relay", parents=[common], help="serve the signal relay")
    relay.add_argument("--host", help="bind host")
    relay.add_argument("--port", type=int, help="bind port")
    relay.add_argument("--path", help="WebSocket path to accept")

    client = subparsers.add_parser("client", parents=[common], help="run a headless client")
    client.add_argument("--url", help="relay URL, e.g. ws://127.0.0.1:3000/rtc")
    client.add_argument("--name", help="display name announced to other peers")
    client.add_argument("--media", help="media file or device passed to MediaPlayer")
    client.add_argument("--invite", metavar="NAME_OR_ID", help="invite this peer once it appears")
    client.add_argument("--auto-accept", action="store_true", help="accept incoming offers")
    return parser.parse_args(argv)


def run(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    configure_logging(args.log_level)
    relay_config, client_config = load_config(args.profile)

    try:
        if args.command == "relay":
            if args.host:
                relay_config.host = args.host
            if args.port:
                relay_config.port = args.port
            if args.path:
                relay_config.path = args.path
            asyncio.run(serve(relay_config, log_level=args.log_level))
        else:
            if args.url:
                client_config.url = args.url
            if args.name:
                client_config.name = args.name
            asyncio.run(
                run_client(
                    client_config,
                    media=args.media,
                    invite=args.invite,
                    auto_accept=args.auto_accept,
                )
            )
    except KeyboardInterrupt:
        LOG.info("Interrupted by user.")


if __name__ == "__main__":
    run()

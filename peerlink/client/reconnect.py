"""
Delayed reconnection to the relay.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Awaitable, Callable, Optional

LOG = logging.getLogger(__name__)

DEFAULT_RECONNECT_DELAY = 1.0


class ReconnectPolicy:
    """
    Keep at most one reconnection attempt scheduled.

    :meth:`schedule` replaces any pending attempt.  When the delay elapses the
    attempt is skipped if ``is_connected()`` already reports a connection,
    e.g. because a user-triggered reconnect got there first.
    """

    def __init__(
        self,
        connect: Callable[[], Awaitable[None]],
        is_connected: Callable[[], bool],
        *,
        delay: float = DEFAULT_RECONNECT_DELAY,
    ) -> None:
        self._connect = connect
        self._is_connected = is_connected
        self.delay = max(0.0, float(delay))
        self._task: Optional[asyncio.Task] = None
        self.attempts = 0

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def schedule(self) -> None:
        self.cancel()
        self._task = asyncio.get_running_loop().create_task(self._run())

    def cancel(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def wait(self) -> None:
        """Wait for the pending attempt, if any, to finish."""

        task = self._task
        if task is None:
            return
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _run(self) -> None:
        await asyncio.sleep(self.delay)
        if self._is_connected():
            LOG.debug("Skipping reconnect; already connected")
            return

        self.attempts += 1
        LOG.debug("Attempting reconnect...")
        try:
            await self._connect()
        except asyncio.CancelledError:
            raise
        except Exception:
            LOG.exception("Reconnect attempt failed")

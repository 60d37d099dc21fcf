"""Cooperative cancellation shared by every layer of a run."""

from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import Iterator
from contextlib import contextmanager

logger = logging.getLogger(__name__)


class CancellationToken:
    """One-shot cancellation flag that coroutines can poll or await.

    The same token is handed to the engine, the supervisor and every trial, so
    a single ``cancel()`` reaches all of them.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


@contextmanager
def install_signal_handlers(token: CancellationToken) -> Iterator[None]:
    """Route SIGINT/SIGTERM into ``token`` while the block runs.

    Must be entered from inside a running event loop.
    """

    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []

    def _handler(signum: signal.Signals) -> None:
        logger.warning("Received %s, cancelling run", signum.name)
        token.cancel(reason=signum.name)

    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, _handler, signum)
        except (NotImplementedError, RuntimeError, ValueError):
            # No loop-level signal support here (non-main thread or platform).
            logger.debug("Signal handler for %s not installed", signum.name)
            continue
        installed.append(signum)
    try:
        yield
    finally:
        for signum in installed:
            loop.remove_signal_handler(signum)

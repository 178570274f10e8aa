"""Bounded, cancellable retry loop."""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog

from webext_runner.errors import discovery_timeout_error, user_abort_error

logger = structlog.get_logger()

T = TypeVar("T")


class Poller:
    """Retry a check every ``interval`` seconds until it returns a value.

    Three triggers race each attempt: the check itself, the overall deadline
    and the optional cancel event. The first to settle wins and the other
    pending work is cancelled. Deadline expiry raises DiscoveryTimeoutError,
    the cancel event raises UserAbortError.
    """

    def __init__(
        self,
        interval: float,
        timeout: float,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        self.interval = interval
        self.timeout = timeout
        self.cancel_event = cancel_event or asyncio.Event()

    async def run(
        self,
        check: Callable[[], Awaitable[T | None]],
        operation: str,
        on_attempt: Callable[[int], None] | None = None,
    ) -> T:
        deadline = time.monotonic() + self.timeout
        attempt = 0
        while True:
            attempt += 1
            if on_attempt is not None:
                on_attempt(attempt)
            result = await self._race(check(), deadline, operation)
            if result is not None:
                return result
            await self._race(asyncio.sleep(self.interval), deadline, operation)

    async def _race(self, awaitable: Awaitable[T], deadline: float, operation: str) -> T:
        if self.cancel_event.is_set():
            _close(awaitable)
            raise user_abort_error(operation)
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            _close(awaitable)
            raise discovery_timeout_error(operation, self.timeout)

        work = asyncio.ensure_future(awaitable)
        cancelled = asyncio.ensure_future(self.cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {work, cancelled}, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for task in (work, cancelled):
                if not task.done():
                    task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await task

        if work in done:
            return work.result()
        if cancelled in done:
            logger.debug("poll_cancelled", operation=operation)
            raise user_abort_error(operation)
        raise discovery_timeout_error(operation, self.timeout)


def _close(awaitable: Awaitable[object]) -> None:
    # Avoid "coroutine was never awaited" warnings for work that never started.
    close = getattr(awaitable, "close", None)
    if close is not None:
        close()

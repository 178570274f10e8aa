"""Tests for the Poller retry loop."""

from __future__ import annotations

import asyncio

import pytest

from webext_runner.errors import DiscoveryTimeoutError, UserAbortError
from webext_runner.utils.polling import Poller


@pytest.mark.asyncio
async def test_returns_first_non_none_result() -> None:
    """Should keep polling until the check returns a value."""
    calls = 0
    attempts: list[int] = []

    async def check() -> str | None:
        nonlocal calls
        calls += 1
        return "socket" if calls == 3 else None

    poller = Poller(interval=0, timeout=5)
    result = await poller.run(check, "the socket", on_attempt=attempts.append)

    assert result == "socket"
    assert calls == 3
    assert attempts == [1, 2, 3]


@pytest.mark.asyncio
async def test_timeout() -> None:
    """Should raise DiscoveryTimeoutError once the deadline passes."""

    async def check() -> None:
        return None

    poller = Poller(interval=0.01, timeout=0.05)

    with pytest.raises(DiscoveryTimeoutError) as exc_info:
        await poller.run(check, "the socket")

    assert exc_info.value.code == "ERR_DISCOVERY_TIMEOUT"
    assert exc_info.value.context["timeout_seconds"] == 0.05


@pytest.mark.asyncio
async def test_slow_check_times_out() -> None:
    """Should not wait for a check that outlives the deadline."""

    async def check() -> str:
        await asyncio.sleep(10)
        return "late"

    poller = Poller(interval=0, timeout=0.05)

    with pytest.raises(DiscoveryTimeoutError):
        await asyncio.wait_for(poller.run(check, "the socket"), timeout=2)


@pytest.mark.asyncio
async def test_cancel_before_start() -> None:
    """Should abort at once when the cancel event is already set."""
    cancel = asyncio.Event()
    cancel.set()
    calls = 0

    async def check() -> str:
        nonlocal calls
        calls += 1
        return "socket"

    with pytest.raises(UserAbortError) as exc_info:
        await Poller(interval=0, timeout=5, cancel_event=cancel).run(check, "the socket")

    assert calls == 0
    assert exc_info.value.code == "ERR_USER_ABORT"


@pytest.mark.asyncio
async def test_cancel_while_waiting() -> None:
    """Should abort a pending check when the cancel event fires."""
    cancel = asyncio.Event()

    async def check() -> None:
        return None

    poller = Poller(interval=10, timeout=60, cancel_event=cancel)
    asyncio.get_running_loop().call_later(0.05, cancel.set)

    with pytest.raises(UserAbortError):
        await asyncio.wait_for(poller.run(check, "the socket"), timeout=2)

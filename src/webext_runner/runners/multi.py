"""Composite runner driving several browser targets at once."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

import structlog

from webext_runner.errors import multi_runners_error
from webext_runner.models import ReloadResult
from webext_runner.runners.base import CleanupCallback, ExtensionRunner
from webext_runner.utils.notifier import DesktopNotifier, show_desktop_notification

logger = structlog.get_logger()

RELOAD_ERROR_TITLE = "web-ext run: extension reload error"


class MultiRunner:
    """Fans every runner operation out to its children concurrently."""

    name = "Multi Runner"

    def __init__(
        self,
        runners: Sequence[ExtensionRunner],
        desktop_notifications: DesktopNotifier = show_desktop_notification,
    ) -> None:
        self.runners = list(runners)
        self.desktop_notifications = desktop_notifications

    def get_name(self) -> str:
        return self.name

    async def run(self) -> None:
        await self._fan_out("run", lambda runner: runner.run())

    async def exit(self) -> None:
        await self._fan_out("exit", lambda runner: runner.exit())

    async def _fan_out(
        self, operation: str, call: Callable[[ExtensionRunner], Awaitable[None]]
    ) -> None:
        """Call every child; a single failure is re-raised, several are aggregated."""
        results = await asyncio.gather(
            *(call(runner) for runner in self.runners), return_exceptions=True
        )
        errors: dict[str, BaseException] = {}
        for runner, result in zip(self.runners, results, strict=True):
            if isinstance(result, BaseException):
                logger.debug("runner_failed", runner=runner.get_name(), operation=operation, error=str(result))
                errors[runner.get_name()] = result
        if len(errors) == 1:
            raise next(iter(errors.values()))
        if errors:
            raise multi_runners_error(operation, errors)

    async def reload_all_extensions(self) -> list[ReloadResult]:
        logger.debug("reload_all_extensions")
        return await self._reload("reload_all_extensions", lambda runner: runner.reload_all_extensions())

    async def reload_extension_by_source_dir(self, source_dir: str) -> list[ReloadResult]:
        logger.debug("reload_extension", source_dir=source_dir)
        return await self._reload(
            "reload_extension_by_source_dir",
            lambda runner: runner.reload_extension_by_source_dir(source_dir),
            source_dir,
        )

    async def _reload(
        self,
        operation: str,
        call: Callable[[ExtensionRunner], Awaitable[list[ReloadResult]]],
        source_dir: str | None = None,
    ) -> list[ReloadResult]:
        outcomes = await asyncio.gather(
            *(call(runner) for runner in self.runners), return_exceptions=True
        )
        results: list[ReloadResult] = []
        for runner, outcome in zip(self.runners, outcomes, strict=True):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                results.append(
                    ReloadResult(runner.get_name(), source_dir=source_dir, reload_error=outcome)
                )
            else:
                results.extend(outcome)

        notifications: list[Awaitable[None]] = []
        for result in results:
            if result.reload_error is None:
                continue
            logger.error(
                "extension_reload_failed",
                runner=result.runner_name,
                source_dir=result.source_dir,
                operation=operation,
                error=str(result.reload_error),
            )
            notifications.append(
                asyncio.to_thread(
                    self.desktop_notifications,
                    title=RELOAD_ERROR_TITLE,
                    message=f"on {result.runner_name} - {result.reload_error}",
                )
            )
        # Notifiers block on a subprocess.
        await asyncio.gather(*notifications)
        return results

    def register_cleanup(self, fn: CleanupCallback) -> None:
        """Call fn once every child has run its own cleanups."""
        remaining = len(self.runners)
        if remaining == 0:
            fn()
            return
        state: dict[str, Any] = {"remaining": remaining}

        def child_done() -> None:
            state["remaining"] -= 1
            if state["remaining"] == 0:
                fn()

        for runner in self.runners:
            runner.register_cleanup(child_done)

"""Runner contract shared by every browser target."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import dataclass, fields
from typing import Any, ClassVar, Protocol, TypeVar

import structlog

from webext_runner.errors import multi_extensions_reload_error, runner_already_started_error
from webext_runner.models import Extension, ReloadResult

logger = structlog.get_logger()

CleanupCallback = Callable[[], Any]

P = TypeVar("P", bound="ExtensionRunnerParams")


class Runner(Protocol):
    """What the reload strategy and the run command drive."""

    def get_name(self) -> str: ...

    async def run(self) -> None: ...

    async def reload_all_extensions(self) -> list[ReloadResult]: ...

    async def reload_extension_by_source_dir(self, source_dir: str) -> list[ReloadResult]: ...

    def register_cleanup(self, fn: CleanupCallback) -> None: ...

    async def exit(self) -> None: ...


@dataclass(frozen=True, kw_only=True)
class ExtensionRunnerParams:
    """Options shared by all runners. Immutable for the runner's lifetime."""

    extensions: tuple[Extension, ...]
    profile_path: str | None = None
    keep_profile_changes: bool = False
    start_urls: tuple[str, ...] = ()
    args: tuple[str, ...] = ()

    @classmethod
    def from_options(cls: type[P], options: Mapping[str, Any]) -> P:
        """Build params from merged CLI options, ignoring unknown and None values."""
        values: dict[str, Any] = {}
        for f in fields(cls):
            value = options.get(f.name)
            if value is None:
                continue
            if isinstance(value, list):
                value = tuple(value)
            values[f.name] = value
        return cls(**values)


class ExtensionRunner(ABC):
    """A browser instance hosting one or more extensions.

    Lifecycle is Created -> Running -> Exited. run() may be called once;
    exit() is idempotent and may be called before run() completes.
    Registered cleanup callbacks fire exactly once, after teardown.
    """

    name: ClassVar[str] = "Extension Runner"

    def __init__(self, params: ExtensionRunnerParams) -> None:
        self.params = params
        self._cleanup_callbacks: list[CleanupCallback] = []
        self._cleanups_done = False
        self._setup_task: asyncio.Task[None] | None = None
        self._exit_task: asyncio.Task[None] | None = None
        self._reload_lock = asyncio.Lock()

    def get_name(self) -> str:
        return self.name

    @property
    def exiting(self) -> bool:
        return self._exit_task is not None

    async def run(self) -> None:
        if self._setup_task is not None:
            raise runner_already_started_error(self.name)
        self._setup_task = asyncio.create_task(self._setup(), name=f"{self.name} setup")
        await self._setup_task

    async def reload_all_extensions(self) -> list[ReloadResult]:
        async with self._reload_lock:
            return await self._reload_all()

    async def reload_extension_by_source_dir(self, source_dir: str) -> list[ReloadResult]:
        async with self._reload_lock:
            return await self._reload_by_source_dir(source_dir)

    def register_cleanup(self, fn: CleanupCallback) -> None:
        """Run fn after teardown, or right away when the runner already exited."""
        if self._cleanups_done:
            self._call_cleanup(fn)
            return
        self._cleanup_callbacks.append(fn)

    async def exit(self) -> None:
        if self._exit_task is None:
            self._abort_setup()
            # Exiting from inside setup (e.g. the browser died mid-startup)
            # must not wait on setup itself.
            wait_setup = asyncio.current_task() is not self._setup_task
            self._exit_task = asyncio.create_task(
                self._shutdown(wait_setup), name=f"{self.name} exit"
            )
        await asyncio.shield(self._exit_task)

    async def _shutdown(self, wait_setup: bool) -> None:
        setup = self._setup_task
        if setup is not None:
            if wait_setup and not setup.done():
                await asyncio.wait({setup})
            if setup.done() and not setup.cancelled() and setup.exception() is not None:
                logger.debug(
                    "setup_error_ignored_on_exit", runner=self.name, error=str(setup.exception())
                )
        try:
            await self._teardown()
        finally:
            self._run_cleanups()

    def _run_cleanups(self) -> None:
        if self._cleanups_done:
            return
        self._cleanups_done = True
        for fn in self._cleanup_callbacks:
            self._call_cleanup(fn)

    def _call_cleanup(self, fn: CleanupCallback) -> None:
        try:
            fn()
        except Exception:
            logger.exception("cleanup_callback_failed", runner=self.name)

    async def _reload_all(self) -> list[ReloadResult]:
        """Reload every extension one by one and fold failures into one result."""
        errors: dict[str, BaseException] = {}
        for extension in self.params.extensions:
            for result in await self._reload_by_source_dir(extension.source_dir):
                if result.reload_error is not None:
                    errors[extension.source_dir] = result.reload_error

        if len(errors) == 1:
            source_dir, error = next(iter(errors.items()))
            return [ReloadResult(self.name, source_dir=source_dir, reload_error=error)]
        if errors:
            return [ReloadResult(self.name, reload_error=multi_extensions_reload_error(errors))]
        return [ReloadResult(self.name)]

    def _abort_setup(self) -> None:
        """Ask a setup still in progress to give up early. No-op by default."""

    @abstractmethod
    async def _setup(self) -> None:
        """Start the browser and install the extensions."""

    @abstractmethod
    async def _reload_by_source_dir(self, source_dir: str) -> list[ReloadResult]: ...

    @abstractmethod
    async def _teardown(self) -> None:
        """Stop the browser and release session resources."""

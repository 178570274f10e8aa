"""Wires source changes and keypresses to runner reloads."""

from __future__ import annotations

import asyncio
import os
import signal
import sys
from collections.abc import Callable
from typing import Any, TextIO

import structlog

from webext_runner.build import FileFilter
from webext_runner.runners.base import Runner
from webext_runner.utils.stdin import KEY_CTRL_C, KEY_CTRL_Z, KeypressReader, RawMode, is_tty
from webext_runner.watcher import SourceWatcher, on_source_change

logger = structlog.get_logger()

KEYPRESS_USAGE = "Press R to reload (and Ctrl-C to quit)"

WatcherFactory = Callable[..., SourceWatcher]


class ReloadStrategy:
    """Reload on file changes and, on an interactive terminal, on keypresses.

    R reloads everything, Ctrl-C exits the runner and Ctrl-Z suspends the
    process. The watchers are closed and the terminal restored exactly once,
    through a cleanup registered on the runner.
    """

    def __init__(
        self,
        runner: Runner,
        source_dirs: list[str],
        artifacts_dir: str,
        watch_files: list[str] | None = None,
        watch_ignored: list[str] | None = None,
        no_input: bool = False,
        stdin: TextIO | None = None,
        debounce: float = 1.0,
        watcher_factory: WatcherFactory = on_source_change,
        kill: Callable[[int, int], Any] = os.kill,
    ) -> None:
        self.runner = runner
        self.source_dirs = source_dirs
        self.artifacts_dir = artifacts_dir
        self.watch_files = watch_files or []
        self.watch_ignored = watch_ignored or []
        self.allow_input = not no_input
        self.stdin = stdin if stdin is not None else sys.stdin
        self.debounce = debounce
        self.watcher_factory = watcher_factory
        self.kill = kill

        self.watchers: list[SourceWatcher] = []
        self.raw_mode = RawMode(self.stdin)
        self.keypress_reader: KeypressReader | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._keypress_task: asyncio.Task[None] | None = None
        self._cleaned_up = False

    def start(self) -> None:
        """Start watching and, when possible, reading keypresses."""
        self._loop = asyncio.get_running_loop()
        if not self.allow_input:
            logger.debug("input_disabled")

        for source_dir in self.source_dirs:
            self.watchers.append(self._create_watcher(source_dir))
        self.runner.register_cleanup(self.cleanup)

        if self.allow_input and is_tty(self.stdin):
            self.raw_mode.enable()
            self.keypress_reader = KeypressReader(self.stdin)
            self.keypress_reader.start()
            logger.info("keypress_usage", usage=KEYPRESS_USAGE)
            self._keypress_task = asyncio.create_task(self._keypress_loop())

    def _create_watcher(self, source_dir: str) -> SourceWatcher:
        file_filter = FileFilter(
            source_dir, artifacts_dir=self.artifacts_dir, ignore_files=self.watch_ignored
        )

        def on_change() -> None:
            # Called from the watchdog observer thread.
            assert self._loop is not None
            asyncio.run_coroutine_threadsafe(self.reload_source_dir(source_dir), self._loop)

        return self.watcher_factory(
            source_dir,
            self.artifacts_dir,
            on_change,
            should_watch_file=file_filter.want_file,
            watch_files=self.watch_files or None,
            debounce=self.debounce,
        )

    async def reload_source_dir(self, source_dir: str) -> None:
        try:
            await self.runner.reload_extension_by_source_dir(source_dir)
        except Exception:
            logger.exception("reload_failed", source_dir=source_dir)

    async def reload_all(self) -> None:
        logger.debug("reload_requested_by_user")
        try:
            await self.runner.reload_all_extensions()
        except Exception:
            logger.exception("reload_failed")

    async def handle_keypress(self, key: str) -> bool:
        """Act on one key; False once the user asked to exit."""
        if key == KEY_CTRL_C:
            return False
        if key == KEY_CTRL_Z:
            self.suspend()
        elif key.lower() == "r":
            await self.reload_all()
        return True

    def suspend(self) -> None:
        """Stop the process like a shell would, then resume in raw mode."""
        self.raw_mode.disable()
        logger.info("suspended_on_user_request")
        self.kill(os.getpid(), signal.SIGTSTP)
        # Execution continues here after SIGCONT.
        logger.info("resumed", usage=KEYPRESS_USAGE)
        self.raw_mode.enable()

    async def _keypress_loop(self) -> None:
        assert self.keypress_reader is not None
        async for key in self.keypress_reader:
            if not await self.handle_keypress(key):
                logger.info("exiting_on_user_request")
                await self.runner.exit()
                return

    def cleanup(self) -> None:
        """Close the watchers and give the terminal back. Runs once."""
        if self._cleaned_up:
            return
        self._cleaned_up = True
        for watcher in self.watchers:
            watcher.close()
        if self.keypress_reader is not None:
            self.keypress_reader.pause()
        self.raw_mode.disable()
        task = self._keypress_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

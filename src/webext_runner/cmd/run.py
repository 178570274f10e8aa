"""The run command: start the runners and keep the extensions reloaded."""

from __future__ import annotations

import asyncio
import signal
import sys
from pathlib import Path
from typing import Any, TextIO

import structlog
from pydantic import BaseModel, model_validator

from webext_runner.build import get_validated_manifest
from webext_runner.config import Settings, get_settings
from webext_runner.firefox.preferences import coerce_cli_custom_preference
from webext_runner.models import Extension
from webext_runner.reload_strategy import ReloadStrategy
from webext_runner.runners import create_multi_runner
from webext_runner.runners.multi import MultiRunner
from webext_runner.utils.notifier import DesktopNotifier, show_desktop_notification

logger = structlog.get_logger()


class RunOptions(BaseModel):
    """Options of the run command. None means "use the settings default"."""

    source_dirs: list[str]
    artifacts_dir: str | None = None
    targets: list[str] = []

    # Firefox desktop
    firefox_binary: str | None = None
    firefox_profile: str | None = None
    keep_profile_changes: bool = False
    pre_install: bool = False
    prefs: list[str] = []
    browser_console: bool = False

    # Common
    start_urls: list[str] = []
    args: list[str] = []
    no_reload: bool = False
    no_input: bool = False
    watch_files: list[str] = []
    watch_ignored: list[str] = []

    # Firefox for Android
    adb_host: str | None = None
    adb_port: int | None = None
    adb_device: str | None = None
    adb_discovery_timeout: float | None = None
    adb_remove_old_artifacts: bool = False
    firefox_apk: str | None = None
    firefox_apk_component: str | None = None

    # Chromium
    chromium_binary: str | None = None
    chromium_profile: str | None = None

    @model_validator(mode="after")
    def disable_reload_on_pre_install(self) -> RunOptions:
        """Pre-installed extensions cannot be reloaded."""
        if self.pre_install and not self.no_reload:
            object.__setattr__(self, "no_reload", True)
        return self

    def resolved_artifacts_dir(self) -> str:
        if self.artifacts_dir:
            return str(Path(self.artifacts_dir).resolve())
        return str(Path(self.source_dirs[0]).resolve() / "web-ext-artifacts")


def load_extensions(source_dirs: list[str]) -> tuple[Extension, ...]:
    extensions = []
    for source_dir in source_dirs:
        resolved = str(Path(source_dir).resolve())
        extensions.append(Extension(source_dir=resolved, manifest_data=get_validated_manifest(resolved)))
    return tuple(extensions)


def runner_options(
    options: RunOptions, extensions: tuple[Extension, ...], settings: Settings
) -> dict[str, Any]:
    """Merge CLI options over settings into the mapping the runner params read."""
    return {
        "extensions": extensions,
        "profile_path": options.firefox_profile,
        "keep_profile_changes": options.keep_profile_changes,
        "start_urls": options.start_urls,
        "args": options.args,
        "custom_prefs": coerce_cli_custom_preference(options.prefs),
        "browser_console": options.browser_console,
        "firefox_binary": options.firefox_binary or settings.firefox_binary,
        "pre_install": options.pre_install,
        "rdp_max_retries": settings.rdp_max_retries,
        "rdp_retry_interval": settings.rdp_retry_interval,
        "adb_host": options.adb_host or settings.adb_host,
        "adb_port": options.adb_port or settings.adb_port,
        "adb_device": options.adb_device,
        "adb_discovery_timeout": options.adb_discovery_timeout or settings.adb_discovery_timeout,
        "adb_discovery_interval": settings.adb_discovery_interval,
        "adb_remove_old_artifacts": options.adb_remove_old_artifacts,
        "firefox_apk": options.firefox_apk,
        "firefox_apk_component": options.firefox_apk_component,
        "no_input": options.no_input,
        "chromium_binary": options.chromium_binary or settings.chromium_binary,
        "chromium_profile": options.chromium_profile,
    }


async def run(
    options: RunOptions,
    settings: Settings | None = None,
    desktop_notifications: DesktopNotifier = show_desktop_notification,
    stdin: TextIO | None = None,
    reload_strategy_cls: type[ReloadStrategy] = ReloadStrategy,
) -> MultiRunner:
    """Run the extensions until every runner has exited."""
    settings = settings or get_settings()
    stdin = stdin if stdin is not None else sys.stdin
    logger.info("run_starting", source_dirs=options.source_dirs)
    if options.pre_install:
        logger.info("reload_disabled", reason="--pre-install")

    extensions = load_extensions(options.source_dirs)
    runner = create_multi_runner(
        options.targets,
        runner_options(options, extensions, settings),
        desktop_notifications=desktop_notifications,
        dependencies={"firefox-android": {"stdin": stdin}},
    )

    exited = asyncio.Event()
    runner.register_cleanup(exited.set)

    try:
        await runner.run()
    except BaseException:
        logger.debug("run_failed_exiting_runners")
        await runner.exit()
        raise

    if not options.no_reload:
        strategy = reload_strategy_cls(
            runner,
            source_dirs=[ext.source_dir for ext in extensions],
            artifacts_dir=options.resolved_artifacts_dir(),
            watch_files=options.watch_files,
            watch_ignored=options.watch_ignored,
            no_input=options.no_input,
            stdin=stdin,
            debounce=settings.watch_debounce,
        )
        strategy.start()

    loop = asyncio.get_running_loop()
    installed = _install_exit_signal_handlers(loop, runner)
    try:
        await exited.wait()
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
    logger.info("run_finished")
    return runner


def _install_exit_signal_handlers(
    loop: asyncio.AbstractEventLoop, runner: MultiRunner
) -> list[signal.Signals]:
    installed: list[signal.Signals] = []

    def request_exit(sig: signal.Signals) -> None:
        logger.info("exit_on_signal", signal=sig.name)
        loop.create_task(runner.exit())

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, request_exit, sig)
        except (NotImplementedError, RuntimeError):
            # Not supported by this event loop (e.g. on Windows).
            continue
        installed.append(sig)
    return installed

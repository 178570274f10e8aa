"""Runner for extensions loaded in a Chromium-based browser."""

from __future__ import annotations

import asyncio
import contextlib
import shutil
import sys
import tempfile
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path

import structlog

from webext_runner.chromium.control_channel import ReloadControlServer
from webext_runner.chromium.launcher import DEFAULT_CHROMIUM_FLAGS, ChromiumInstance, launch_chromium
from webext_runner.chromium.reload_manager import (
    RELOAD_ALL_MESSAGE,
    create_reload_manager_extension,
    split_start_urls,
)
from webext_runner.errors import UsageError
from webext_runner.models import ReloadResult
from webext_runner.runners.base import ExtensionRunner, ExtensionRunnerParams

logger = structlog.get_logger()

ChromiumLauncher = Callable[..., Awaitable[ChromiumInstance]]


@dataclass(frozen=True, kw_only=True)
class ChromiumRunnerParams(ExtensionRunnerParams):
    chromium_binary: str | None = None
    chromium_profile: str | None = None


@dataclass(frozen=True)
class ProfilePaths:
    user_data_dir: str | None = None
    profile_dir_name: str | None = None


def is_user_data_dir(path: str | Path) -> bool:
    """A user-data-dir holds a Local State file and a Default profile."""
    path = Path(path)
    return (path / "Local State").is_file() and (path / "Default").is_dir()


def is_profile_dir(path: str | Path) -> bool:
    return (Path(path) / "Secure Preferences").is_file()


def get_profile_paths(chromium_profile: str | None) -> ProfilePaths:
    if not chromium_profile:
        return ProfilePaths()
    if is_profile_dir(chromium_profile) and not is_user_data_dir(chromium_profile):
        profile = Path(chromium_profile)
        return ProfilePaths(user_data_dir=str(profile.parent), profile_dir_name=profile.name)
    return ProfilePaths(user_data_dir=chromium_profile)


class ChromiumRunner(ExtensionRunner):
    """Loads the extensions unpacked next to a reload manager extension.

    Reloads are broadcast over the control channel to the reload manager,
    which toggles every development extension off and on.
    """

    name = "Chromium"

    def __init__(
        self,
        params: ChromiumRunnerParams,
        chromium_launch: ChromiumLauncher | None = None,
        control_server: ReloadControlServer | None = None,
    ) -> None:
        super().__init__(params)
        self.params: ChromiumRunnerParams = params
        self.chromium_launch = chromium_launch or launch_chromium
        self.control_server = control_server or ReloadControlServer()
        self.chromium: ChromiumInstance | None = None
        self.reload_manager_extension: Path | None = None
        self._process_watch: asyncio.Task[None] | None = None

    def _make_temp_dir(self) -> Path:
        path = Path(tempfile.mkdtemp(prefix="tmp-web-ext-"))
        self.register_cleanup(lambda: shutil.rmtree(path, ignore_errors=True))
        return path

    async def _setup(self) -> None:
        await self.control_server.start()

        flags = list(DEFAULT_CHROMIUM_FLAGS)
        regular_urls, special_urls = split_start_urls(list(self.params.start_urls))
        starting_url = regular_urls[0] if regular_urls else None
        flags.extend(regular_urls[1:])

        self.reload_manager_extension = create_reload_manager_extension(
            self._make_temp_dir(), self.control_server.url, special_urls
        )
        extensions = [str(self.reload_manager_extension)]
        extensions.extend(ext.source_dir for ext in self.params.extensions)
        flags.append("--load-extension=" + ",".join(extensions))
        flags.extend(self.params.args)

        profile_paths = get_profile_paths(self.params.chromium_profile)
        user_data_dir = self.prepare_user_data_dir(profile_paths)
        if profile_paths.profile_dir_name:
            flags.append(f"--profile-directory={profile_paths.profile_dir_name}")

        if self.params.chromium_binary:
            logger.debug("chromium_binary", binary=self.params.chromium_binary)
        self.chromium = await self.chromium_launch(
            chromium_binary=self.params.chromium_binary,
            flags=flags,
            user_data_dir=user_data_dir,
            starting_url=starting_url,
        )
        self._process_watch = asyncio.create_task(self._watch_process(self.chromium))

    def prepare_user_data_dir(self, paths: ProfilePaths) -> str:
        """Return the user-data-dir to launch with, copying the profile unless changes are kept."""
        if self.params.keep_profile_changes and paths.user_data_dir:
            if paths.profile_dir_name and not is_user_data_dir(paths.user_data_dir):
                raise UsageError(
                    code="ERR_PROFILE_NOT_IN_USER_DATA_DIR",
                    message="The profile you provided is not in a user-data-dir. "
                    "The changes cannot be kept.",
                    context={"profile": self.params.chromium_profile},
                    remediation="Either remove --keep-profile-changes or use a profile "
                    "in a user-data-dir directory.",
                )
            return paths.user_data_dir

        tmp_dir = self._make_temp_dir()
        if paths.user_data_dir and paths.profile_dir_name:
            shutil.copytree(
                Path(paths.user_data_dir) / paths.profile_dir_name,
                tmp_dir / paths.profile_dir_name,
            )
        elif paths.user_data_dir:
            shutil.copytree(paths.user_data_dir, tmp_dir, dirs_exist_ok=True)
        return str(tmp_dir)

    async def _watch_process(self, chromium: ChromiumInstance) -> None:
        await chromium.wait()
        if not self.exiting:
            logger.info("chromium_exited", runner=self.name)
            await self.exit()

    async def _reload_all(self) -> list[ReloadResult]:
        try:
            await self.control_server.broadcast({"type": RELOAD_ALL_MESSAGE})
        except Exception as exc:
            return [ReloadResult(self.name, reload_error=exc)]
        if sys.stdout.isatty():
            sys.stdout.write(f"\rLast extension reload: {time.strftime('%H:%M:%S')}")
            sys.stdout.flush()
        logger.debug("chromium_extensions_reloaded")
        return [ReloadResult(self.name)]

    async def _reload_by_source_dir(self, source_dir: str) -> list[ReloadResult]:
        # Extension ids are not mapped to source dirs: every development
        # extension gets reloaded.
        return await self._reload_all()

    async def _teardown(self) -> None:
        watch = self._process_watch
        if watch is not None and watch is not asyncio.current_task() and not watch.done():
            watch.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await watch

        if self.chromium is not None:
            await self.chromium.kill()
            self.chromium = None

        await self.control_server.close()

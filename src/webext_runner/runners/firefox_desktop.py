"""Runner for an extension loaded in a Firefox desktop instance."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import structlog

from webext_runner.errors import (
    RemoteTempInstallNotSupported,
    WebExtError,
    extension_not_reloadable_error,
)
from webext_runner.firefox.launcher import FirefoxApp, FirefoxInstance
from webext_runner.firefox.profile import FirefoxProfile
from webext_runner.firefox.remote import FirefoxConnector, RemoteFirefox, connect_with_max_retries
from webext_runner.models import ReloadResult
from webext_runner.runners.base import ExtensionRunner, ExtensionRunnerParams

logger = structlog.get_logger()


@dataclass(frozen=True, kw_only=True)
class FirefoxDesktopRunnerParams(ExtensionRunnerParams):
    custom_prefs: Mapping[str, Any] = field(default_factory=dict)
    browser_console: bool = False
    firefox_binary: str | None = None
    pre_install: bool = False
    rdp_max_retries: int = 250
    rdp_retry_interval: float = 0.12


class FirefoxDesktopRunner(ExtensionRunner):
    """Installs the extensions as temporary add-ons over RDP, or pre-installs them."""

    name = "Firefox Desktop"

    def __init__(
        self,
        params: FirefoxDesktopRunnerParams,
        firefox_app: FirefoxApp | None = None,
        firefox_connector: FirefoxConnector | None = None,
    ) -> None:
        super().__init__(params)
        self.params: FirefoxDesktopRunnerParams = params
        self.firefox_app = firefox_app or FirefoxApp()
        self.firefox_connector = firefox_connector or self._connect
        # source dir -> add-on id assigned by Firefox
        self.reloadable_extensions: dict[str, str] = {}
        self.profile: FirefoxProfile | None = None
        self.firefox: FirefoxInstance | None = None
        self.remote_firefox: RemoteFirefox | None = None
        self._process_watch: asyncio.Task[None] | None = None

    async def _connect(self, port: int) -> RemoteFirefox:
        return await connect_with_max_retries(
            port,
            max_retries=self.params.rdp_max_retries,
            retry_interval=self.params.rdp_retry_interval,
        )

    async def _setup(self) -> None:
        self.setup_profile_dir()
        await self.start_firefox_instance()

    def setup_profile_dir(self) -> None:
        """Create, copy or reuse the profile and pre-install extensions if asked."""
        params = self.params
        custom_prefs = dict(params.custom_prefs)
        if params.profile_path:
            if params.keep_profile_changes:
                logger.debug("profile_use", path=params.profile_path)
                self.profile = self.firefox_app.use_profile(params.profile_path, custom_prefs)
            else:
                logger.debug("profile_copy", path=params.profile_path)
                self.profile = self.firefox_app.copy_profile(params.profile_path, custom_prefs)
        else:
            logger.debug("profile_create")
            self.profile = self.firefox_app.create_profile("firefox", custom_prefs)

        if params.pre_install:
            for extension in params.extensions:
                self.firefox_app.install_extension(self.profile, extension)

    def binary_args(self) -> list[str]:
        args: list[str] = []
        if self.params.browser_console:
            args.append("-jsconsole")
        for url in self.params.start_urls:
            args.extend(["--url", url])
        args.extend(self.params.args)
        return args

    async def start_firefox_instance(self) -> None:
        assert self.profile is not None
        self.firefox = await self.firefox_app.run(
            self.profile,
            firefox_binary=self.params.firefox_binary,
            binary_args=self.binary_args(),
        )
        self._process_watch = asyncio.create_task(self._watch_process(self.firefox))

        if self.params.pre_install:
            return

        self.remote_firefox = await self.firefox_connector(self.firefox.debugger_port)
        for extension in self.params.extensions:
            try:
                addon = await self.remote_firefox.install_temporary_addon(extension.source_dir)
            except RemoteTempInstallNotSupported as exc:
                logger.debug("temp_install_unsupported", error=str(exc))
                raise WebExtError(
                    code="ERR_TEMP_INSTALL_UNSUPPORTED",
                    message="Temporary add-on installation is not supported in this "
                    "version of Firefox (you need Firefox 49 or higher)",
                    context={"source_dir": extension.source_dir},
                    remediation="For older Firefox versions, use --pre-install.",
                ) from exc
            if not addon.id:
                raise WebExtError(
                    code="ERR_MISSING_ADDON_ID",
                    message="Unexpected missing addonId in the installTemporaryAddon result",
                    context={"source_dir": extension.source_dir},
                )
            self.reloadable_extensions[extension.source_dir] = addon.id

    async def _watch_process(self, firefox: FirefoxInstance) -> None:
        await firefox.wait()
        if not self.exiting:
            logger.info("firefox_exited", runner=self.name)
            await self.exit()

    async def _reload_by_source_dir(self, source_dir: str) -> list[ReloadResult]:
        addon_id = self.reloadable_extensions.get(source_dir)
        if not addon_id or self.remote_firefox is None:
            return [
                ReloadResult(
                    self.name,
                    source_dir=source_dir,
                    reload_error=extension_not_reloadable_error(source_dir),
                )
            ]
        try:
            await self.remote_firefox.reload_addon(addon_id)
        except Exception as exc:
            return [ReloadResult(self.name, source_dir=source_dir, reload_error=exc)]
        return [ReloadResult(self.name, source_dir=source_dir)]

    async def _teardown(self) -> None:
        watch = self._process_watch
        if watch is not None and watch is not asyncio.current_task() and not watch.done():
            watch.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await watch

        if self.remote_firefox is not None:
            try:
                await self.remote_firefox.disconnect()
            except (OSError, WebExtError) as exc:
                logger.debug("rdp_disconnect_failed", error=str(exc))
            self.remote_firefox = None

        if self.firefox is not None:
            await self.firefox.kill()
            self.firefox = None

        if self.profile is not None and self.profile.temporary:
            self.profile.remove()

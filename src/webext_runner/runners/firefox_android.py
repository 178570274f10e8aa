"""Runner for an extension loaded in Firefox for Android over adb."""

from __future__ import annotations

import asyncio
import contextlib
import tempfile
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, TextIO

import structlog

from webext_runner.build import build_extension
from webext_runner.device.bridge import DeviceBridge, rdp_socket_forward_spec
from webext_runner.errors import (
    WebExtError,
    device_not_found_error,
    device_not_selected_error,
    extension_not_reloadable_error,
    no_devices_error,
    no_firefox_packages_error,
    package_not_found_error,
    package_not_selected_error,
)
from webext_runner.firefox.launcher import FirefoxApp
from webext_runner.firefox.profile import FirefoxProfile
from webext_runner.firefox.remote import (
    FirefoxConnector,
    RemoteFirefox,
    connect_with_max_retries,
    find_free_tcp_port,
)
from webext_runner.models import BuildResult, ReloadResult
from webext_runner.runners.base import ExtensionRunner, ExtensionRunnerParams
from webext_runner.utils.polling import Poller
from webext_runner.utils.stdin import KEY_CTRL_C, KeypressReader, RawMode, is_tty

logger = structlog.get_logger()

# Runtime permissions needed to run on a temporary profile since Android 6 (API 23).
REQUIRED_PERMISSIONS = [
    "android.permission.READ_EXTERNAL_STORAGE",
    "android.permission.WRITE_EXTERNAL_STORAGE",
]
RUNTIME_PERMISSIONS_API_LEVEL = 23

# param name -> CLI option
IGNORED_PARAMS = {
    "profile_path": "--firefox-profile",
    "keep_profile_changes": "--keep-profile-changes",
    "browser_console": "--browser-console",
    "pre_install": "--pre-install",
    "start_urls": "--start-url",
    "args": "--arg",
}

BuildSourceDir = Callable[[str, str], BuildResult]


@dataclass(frozen=True, kw_only=True)
class FirefoxAndroidRunnerParams(ExtensionRunnerParams):
    custom_prefs: Mapping[str, Any] = field(default_factory=dict)
    # Accepted but unsupported on Android
    browser_console: bool = False
    pre_install: bool = False

    adb_host: str = "127.0.0.1"
    adb_port: int = 5037
    adb_device: str | None = None
    adb_discovery_timeout: float = 180.0
    adb_discovery_interval: float = 3.0
    adb_remove_old_artifacts: bool = False
    firefox_apk: str | None = None
    firefox_apk_component: str | None = None
    rdp_max_retries: int = 250
    rdp_retry_interval: float = 0.12
    no_input: bool = False


class FirefoxAndroidRunner(ExtensionRunner):
    """Pushes a profile and packaged extensions to a device and drives Firefox over RDP."""

    name = "Firefox Android"

    def __init__(
        self,
        params: FirefoxAndroidRunnerParams,
        bridge: DeviceBridge | None = None,
        firefox_app: FirefoxApp | None = None,
        firefox_connector: FirefoxConnector | None = None,
        build_source_dir: BuildSourceDir | None = None,
        stdin: TextIO | None = None,
    ) -> None:
        super().__init__(params)
        self.params: FirefoxAndroidRunnerParams = params
        self.bridge = bridge or DeviceBridge(host=params.adb_host, port=params.adb_port)
        self.firefox_app = firefox_app or FirefoxApp()
        self.firefox_connector = firefox_connector or self._connect
        self.build_source_dir = build_source_dir or _default_build
        self.stdin = stdin

        self.selected_device: str | None = None
        self.selected_apk: str | None = None
        self.selected_artifacts_dir: str | None = None
        self.selected_rdp_socket: str | None = None
        self.selected_tcp_port: int | None = None
        self.local_profile: FirefoxProfile | None = None
        self.remote_firefox: RemoteFirefox | None = None
        # source dir -> pushed xpi path on the device
        self.device_extension_paths: dict[str, str] = {}
        # source dir -> add-on id assigned by Firefox
        self.reloadable_extensions: dict[str, str] = {}
        self._discovery_cancel = asyncio.Event()
        self._rdp_watch: asyncio.Task[None] | None = None

        self.print_ignored_params_warnings()

    def print_ignored_params_warnings(self) -> None:
        for param, option in IGNORED_PARAMS.items():
            if getattr(self.params, param):
                logger.warning("android_option_ignored", option=option, target=self.name)

    async def _connect(self, port: int) -> RemoteFirefox:
        return await connect_with_max_retries(
            port,
            max_retries=self.params.rdp_max_retries,
            retry_interval=self.params.rdp_retry_interval,
        )

    @property
    def device_profile_dir(self) -> str:
        return f"{self.selected_artifacts_dir}/profile"

    def abort_discovery(self) -> None:
        """Make a pending RDP socket discovery fail with UserAbortError."""
        self._discovery_cancel.set()

    def _abort_setup(self) -> None:
        self.abort_discovery()

    async def _setup(self) -> None:
        await self.adb_devices_discovery_and_select()
        await self.apk_packages_discovery_and_select()
        await self.adb_check_runtime_permissions()
        await self.adb_force_stop_selected_package()
        await self.adb_prepare_profile_dir()

        # Independent steps, run concurrently to speed up slow emulators.
        tasks = [
            asyncio.create_task(self.adb_start_selected_package()),
            asyncio.create_task(self.build_and_push_extensions()),
            asyncio.create_task(self.adb_discovery_and_forward_rdp_unix_socket()),
        ]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        await self.rdp_install_extensions()

    async def adb_devices_discovery_and_select(self) -> None:
        devices = await self.bridge.discover_devices()
        if not devices:
            raise no_devices_error()

        adb_device = self.params.adb_device
        if not adb_device:
            logger.info("android_devices_found", devices=devices)
            raise device_not_selected_error(devices)
        if adb_device not in devices:
            raise device_not_found_error(adb_device, devices)

        self.selected_device = adb_device
        logger.info("adb_device_selected", device=adb_device)

    async def apk_packages_discovery_and_select(self) -> None:
        assert self.selected_device is not None
        firefox_apk = self.params.firefox_apk
        packages = await self.bridge.discover_installed_firefox_apks(
            self.selected_device, firefox_apk
        )
        if not packages:
            if firefox_apk:
                raise package_not_found_error(firefox_apk, packages)
            raise no_firefox_packages_error()

        if not firefox_apk:
            logger.info("firefox_packages_found", packages=packages)
            if len(packages) > 1:
                raise package_not_selected_error(packages)
            # A single package is selected even when not named explicitly.
            self.selected_apk = packages[0]
        elif firefox_apk in packages:
            self.selected_apk = firefox_apk
        else:
            raise package_not_found_error(firefox_apk, packages)
        logger.info("firefox_apk_selected", apk=self.selected_apk)

    async def adb_check_runtime_permissions(self) -> None:
        assert self.selected_device is not None and self.selected_apk is not None
        version = await self.bridge.get_android_version_number(self.selected_device)
        logger.debug("android_version", device=self.selected_device, api_level=version)
        if version < RUNTIME_PERMISSIONS_API_LEVEL:
            return
        await self.bridge.ensure_required_apk_runtime_permissions(
            self.selected_device, self.selected_apk, REQUIRED_PERMISSIONS
        )

    async def adb_force_stop_selected_package(self) -> None:
        if self.selected_device is None or self.selected_apk is None:
            return
        logger.info("firefox_apk_stopping", apk=self.selected_apk)
        await self.bridge.am_force_stop_apk(self.selected_device, self.selected_apk)

    async def adb_old_artifacts_dir(self) -> None:
        assert self.selected_device is not None
        remove = self.params.adb_remove_old_artifacts
        found = await self.bridge.detect_or_remove_old_artifacts(self.selected_device, remove)
        if not found:
            return
        if remove:
            logger.info("old_artifacts_removed", device=self.selected_device)
        else:
            logger.warning(
                "old_artifacts_found",
                device=self.selected_device,
                hint="Use --adb-remove-old-artifacts to remove them automatically.",
            )

    async def adb_prepare_profile_dir(self) -> None:
        """Create the fennec profile locally and push its user.js to the device."""
        assert self.selected_device is not None
        logger.debug("android_profile_prepare", apk=self.selected_apk)
        self.local_profile = self.firefox_app.create_profile("fennec", dict(self.params.custom_prefs))

        await self.adb_old_artifacts_dir()
        self.selected_artifacts_dir = await self.bridge.get_or_create_artifacts_dir(
            self.selected_device
        )

        device_profile_dir = self.device_profile_dir
        await self.bridge.run_shell_command(self.selected_device, ["mkdir", "-p", device_profile_dir])
        await self.bridge.push_file(
            self.selected_device,
            str(self.local_profile.user_js),
            f"{device_profile_dir}/user.js",
        )
        logger.debug("android_profile_created", path=device_profile_dir)

    async def adb_start_selected_package(self) -> None:
        assert self.selected_device is not None and self.selected_apk is not None
        logger.info("firefox_apk_starting", apk=self.selected_apk, profile=self.device_profile_dir)
        await self.bridge.start_firefox_apk(
            self.selected_device,
            self.selected_apk,
            self.params.firefox_apk_component,
            self.device_profile_dir,
        )

    async def build_and_push_extension(self, source_dir: str) -> None:
        assert self.selected_device is not None
        with tempfile.TemporaryDirectory(prefix="tmp-web-ext-") as tmp_dir:
            result = await asyncio.to_thread(self.build_source_dir, source_dir, tmp_dir)
            ext_name = Path(result.extension_path).stem
            device_path = self.device_extension_paths.get(source_dir)
            if not device_path:
                device_path = f"{self.selected_artifacts_dir}/{ext_name}.xpi"
            logger.debug("extension_uploading", name=ext_name, dest=device_path)
            await self.bridge.push_file(self.selected_device, result.extension_path, device_path)
        self.device_extension_paths[source_dir] = device_path

    async def build_and_push_extensions(self) -> None:
        for extension in self.params.extensions:
            await self.build_and_push_extension(extension.source_dir)

    async def adb_discovery_and_forward_rdp_unix_socket(self) -> None:
        assert self.selected_device is not None and self.selected_apk is not None
        poller = Poller(
            interval=self.params.adb_discovery_interval,
            timeout=self.params.adb_discovery_timeout,
            cancel_event=self._discovery_cancel,
        )
        logger.info(
            "rdp_server_waiting",
            apk=self.selected_apk,
            hint='Enable "Remote Debugging via USB" from Settings -> Developer Tools '
            "if it is not yet enabled.",
        )

        abort_watch = self._start_abort_keypress_watch()
        try:
            self.selected_rdp_socket = await self.bridge.discover_rdp_unix_socket(
                self.selected_device, self.selected_apk, poller
            )
        finally:
            if abort_watch is not None:
                abort_watch.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await abort_watch
        logger.debug("rdp_socket_selected", socket=self.selected_rdp_socket)

        tcp_port = find_free_tcp_port()
        # The port lets the user attach Firefox DevTools to the device too.
        logger.info("android_rdp_port", port=tcp_port)
        await self.bridge.setup_forward(
            self.selected_device,
            rdp_socket_forward_spec(self.selected_rdp_socket),
            f"tcp:{tcp_port}",
        )
        self.selected_tcp_port = tcp_port

    def _start_abort_keypress_watch(self) -> asyncio.Task[None] | None:
        stream = self.stdin
        if self.params.no_input or stream is None or not is_tty(stream):
            return None
        return asyncio.create_task(self._watch_abort_keypress(stream))

    async def _watch_abort_keypress(self, stream: TextIO) -> None:
        mode = RawMode(stream)
        reader = KeypressReader(stream)
        mode.enable()
        reader.start()
        try:
            async for key in reader:
                if key == KEY_CTRL_C:
                    self.abort_discovery()
                    return
        finally:
            reader.pause()
            mode.disable()

    async def rdp_install_extensions(self) -> None:
        assert self.selected_tcp_port is not None
        remote_firefox = await self.firefox_connector(self.selected_tcp_port)
        self.remote_firefox = remote_firefox
        self._rdp_watch = asyncio.create_task(self._watch_rdp_connection(remote_firefox))

        for extension in self.params.extensions:
            device_path = self.device_extension_paths.get(extension.source_dir)
            if not device_path:
                raise WebExtError(
                    code="ERR_MISSING_DEVICE_PATH",
                    message=f'ADB extension path for "{extension.source_dir}" was unexpectedly empty',
                    context={"source_dir": extension.source_dir},
                )
            addon = await remote_firefox.install_temporary_addon(device_path)
            if not addon.id:
                raise WebExtError(
                    code="ERR_MISSING_ADDON_ID",
                    message="Received an empty addonId from "
                    f'installTemporaryAddon("{device_path}")',
                    context={"source_dir": extension.source_dir},
                )
            self.reloadable_extensions[extension.source_dir] = addon.id

    async def _watch_rdp_connection(self, remote_firefox: RemoteFirefox) -> None:
        await remote_firefox.wait_closed()
        if not self.exiting:
            logger.info("firefox_android_disconnected", device=self.selected_device)
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
            await self.build_and_push_extension(source_dir)
            await self.remote_firefox.reload_addon(addon_id)
        except Exception as exc:
            return [ReloadResult(self.name, source_dir=source_dir, reload_error=exc)]
        return [ReloadResult(self.name, source_dir=source_dir)]

    async def _teardown(self) -> None:
        watch = self._rdp_watch
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

        try:
            await self.adb_force_stop_selected_package()
            if self.selected_device is not None and self.selected_artifacts_dir:
                logger.debug("android_artifacts_cleanup", device=self.selected_device)
                await self.bridge.clear_artifacts_dir(self.selected_device)
        finally:
            if self.local_profile is not None:
                self.local_profile.remove()


def _default_build(source_dir: str, artifacts_dir: str) -> BuildResult:
    return build_extension(source_dir, artifacts_dir)



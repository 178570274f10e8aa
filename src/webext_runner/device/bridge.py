"""Device bridge - the adb operations needed to run Firefox for Android."""

from __future__ import annotations

import asyncio
import stat
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, TypeVar

import structlog

from webext_runner.errors import (
    WebExtError,
    adb_command_error,
    adb_not_found_error,
    artifacts_dir_exists_error,
    permission_not_granted_error,
)
from webext_runner.firefox.packages import DEFAULT_APK_COMPONENTS, PACKAGE_IDENTIFIERS
from webext_runner.utils.polling import Poller

if TYPE_CHECKING:
    from adbutils import AdbClient, AdbDevice

logger = structlog.get_logger()

DEVICE_DIR_BASE = "/data/local/tmp/"
ARTIFACTS_DIR_PREFIX = "web-ext-artifacts-"
RDP_SOCKET_SUFFIX = "firefox-debugger-socket"

T = TypeVar("T")


class DeviceBridge:
    """Wraps an adbutils client; every blocking call runs in a worker thread."""

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 5037,
        client: AdbClient | None = None,
    ) -> None:
        self._host = host
        self._port = port
        self._client = client
        # device id -> artifacts dir created on that device during this run
        self._artifacts_dirs: dict[str, str] = {}

    def _get_client(self) -> AdbClient:
        if self._client is None:
            from adbutils import AdbClient

            self._client = AdbClient(host=self._host, port=self._port)
        return self._client

    def _device(self, device_id: str) -> AdbDevice:
        return self._get_client().device(serial=device_id)

    async def _call(self, description: str, fn: Callable[[], T]) -> T:
        """Run a blocking adb call, mapping failures to actionable errors."""
        from adbutils import AdbError

        try:
            return await asyncio.to_thread(fn)
        except (ConnectionRefusedError, FileNotFoundError) as exc:
            raise adb_not_found_error(str(exc)) from exc
        except AdbError as exc:
            reason = str(exc)
            if "adb" in reason.lower() and "not found" in reason.lower():
                raise adb_not_found_error(reason) from exc
            raise adb_command_error(description, reason) from exc

    async def run_shell_command(self, device_id: str, cmd: str | list[str]) -> str:
        logger.debug("adb_shell", device=device_id, cmd=cmd)

        def _run() -> str:
            result = self._device(device_id).shell(cmd)
            return result if isinstance(result, str) else str(result)

        description = cmd if isinstance(cmd, str) else " ".join(cmd)
        return await self._call(f"shell {description}", _run)

    async def discover_devices(self) -> list[str]:
        logger.debug("adb_list_devices")

        def _list() -> list[str]:
            return [dev.serial for dev in self._get_client().device_list() if dev.serial]

        return await self._call("devices", _list)

    async def discover_installed_firefox_apks(
        self, device_id: str, firefox_apk: str | None = None
    ) -> list[str]:
        """List Firefox-family packages, or only firefox_apk when given."""
        logger.debug("adb_list_firefox_packages", device=device_id)
        output = await self.run_shell_command(device_id, ["pm", "list", "packages"])
        packages: list[str] = []
        for line in output.splitlines():
            package = line.replace("package:", "").strip()
            if not package:
                continue
            if firefox_apk:
                if package == firefox_apk:
                    packages.append(package)
            elif package.startswith(PACKAGE_IDENTIFIERS):
                packages.append(package)
        return packages

    async def get_android_version_number(self, device_id: str) -> int:
        output = (await self.run_shell_command(device_id, ["getprop", "ro.build.version.sdk"])).strip()
        try:
            return int(output)
        except ValueError:
            raise WebExtError(
                code="ERR_ANDROID_VERSION",
                message=f"Unable to discover android version on {device_id}: {output}",
                context={"device": device_id, "output": output},
                remediation="Check the device with 'adb shell getprop ro.build.version.sdk'.",
            ) from None

    async def ensure_required_apk_runtime_permissions(
        self, device_id: str, apk: str, permissions: list[str]
    ) -> None:
        """Raise a UsageError for the first permission not granted to apk."""
        granted = dict.fromkeys(permissions, False)
        output = await self.run_shell_command(device_id, ["pm", "dump", apk])
        for line in output.splitlines():
            for perm in permissions:
                if f"{perm}: granted=true" in line or f"{perm}, granted=true" in line:
                    granted[perm] = True
        for perm in permissions:
            if not granted[perm]:
                raise permission_not_granted_error(apk, perm)

    async def am_force_stop_apk(self, device_id: str, apk: str) -> None:
        await self.run_shell_command(device_id, ["am", "force-stop", apk])

    def get_artifacts_dir(self, device_id: str) -> str | None:
        return self._artifacts_dirs.get(device_id)

    async def get_or_create_artifacts_dir(self, device_id: str) -> str:
        """Create this run's artifacts dir on the device once and cache it."""
        artifacts_dir = self._artifacts_dirs.get(device_id)
        if artifacts_dir:
            return artifacts_dir

        artifacts_dir = f"{DEVICE_DIR_BASE}{ARTIFACTS_DIR_PREFIX}{int(time.time() * 1000)}"
        test_dir_out = (
            await self.run_shell_command(device_id, f"test -d {artifacts_dir} ; echo $?")
        ).strip()
        if test_dir_out != "1":
            raise artifacts_dir_exists_error(artifacts_dir, device_id)

        await self.run_shell_command(device_id, ["mkdir", "-p", artifacts_dir])
        self._artifacts_dirs[device_id] = artifacts_dir
        return artifacts_dir

    async def detect_or_remove_old_artifacts(self, device_id: str, remove: bool = False) -> bool:
        """Look for artifacts dirs left over by earlier runs, removing them if asked."""
        logger.debug("adb_check_old_artifacts", device=device_id)

        def _list_dirs() -> list[str]:
            entries = self._device(device_id).sync.list(DEVICE_DIR_BASE)
            return [
                entry.path
                for entry in entries
                if stat.S_ISDIR(entry.mode) and entry.path.startswith(ARTIFACTS_DIR_PREFIX)
            ]

        names = await self._call(f"ls {DEVICE_DIR_BASE}", _list_dirs)
        if not names or not remove:
            return bool(names)

        for name in names:
            artifacts_dir = f"{DEVICE_DIR_BASE}{name}"
            logger.debug("adb_remove_artifacts_dir", device=device_id, path=artifacts_dir)
            await self.run_shell_command(device_id, ["rm", "-rf", artifacts_dir])
        return True

    async def clear_artifacts_dir(self, device_id: str) -> None:
        artifacts_dir = self._artifacts_dirs.pop(device_id, None)
        if not artifacts_dir:
            return
        logger.debug("adb_clear_artifacts_dir", device=device_id, path=artifacts_dir)
        await self.run_shell_command(device_id, ["rm", "-rf", artifacts_dir])

    async def push_file(self, device_id: str, local_path: str, device_path: str) -> None:
        logger.debug("adb_push", device=device_id, local=local_path, remote=device_path)

        def _push() -> Any:
            return self._device(device_id).sync.push(local_path, device_path)

        await self._call(f"push {local_path} {device_path}", _push)

    async def start_firefox_apk(
        self,
        device_id: str,
        apk: str,
        apk_component: str | None,
        device_profile_dir: str,
    ) -> None:
        """Start apk with the pushed profile (Fenix ignores -profile)."""
        logger.debug("adb_start_firefox", device=device_id, apk=apk)
        component = resolve_apk_component(apk, apk_component)
        base = ["am", "start", "-W", "-n", component, "--es", "args", f"-profile {device_profile_dir}"]

        output = await self.run_shell_command(device_id, [*base, "-a", "android.activity.MAIN"])
        if _am_start_failed(output):
            # Android 13+ requires the launcher action/category.
            logger.debug("adb_start_retry_launcher_intent", output=output)
            output = await self.run_shell_command(
                device_id,
                [*base, "-a", "android.intent.action.MAIN", "-c", "android.intent.category.LAUNCHER"],
            )
            if _am_start_failed(output):
                raise adb_command_error(f"am start {component}", output.strip())

    async def discover_rdp_unix_socket(self, device_id: str, apk: str, poller: Poller) -> str:
        """Poll /proc/net/unix until the Firefox debugger socket for apk shows up."""

        async def _check() -> list[str] | None:
            output = await self.run_shell_command(device_id, ["cat", "/proc/net/unix"])
            sockets = [
                line.strip().split()[-1]
                for line in output.splitlines()
                if line.strip().endswith(f"{apk}/{RDP_SOCKET_SUFFIX}")
            ]
            return sockets or None

        def _on_attempt(attempt: int) -> None:
            logger.debug("rdp_socket_discovery_attempt", apk=apk, attempt=attempt)

        sockets = await poller.run(
            _check, f"the {apk} Remote Debugging socket", on_attempt=_on_attempt
        )
        if len(sockets) > 1:
            raise WebExtError(
                code="ERR_MULTIPLE_RDP_SOCKETS",
                message=f"Unexpected multiple RDP sockets: {sockets}",
                context={"sockets": sockets},
                remediation=f"Stop other instances of {apk} and retry.",
            )
        return sockets[0]

    async def setup_forward(self, device_id: str, remote: str, local: str) -> None:
        logger.debug("adb_forward", device=device_id, remote=remote, local=local)

        def _forward() -> None:
            self._device(device_id).forward(local, remote)

        await self._call(f"forward {local} {remote}", _forward)


def resolve_apk_component(apk: str, apk_component: str | None) -> str:
    """Build the am start component for apk.

    A component starting with '.' is expanded with the matching browser
    package identifier (e.g. org.mozilla.fenix.nightly/org.mozilla.fenix.App).
    """
    if not apk_component:
        apk_component = DEFAULT_APK_COMPONENTS.get(apk, ".App")
    elif "." not in apk_component:
        apk_component = f".{apk_component}"

    if apk_component.startswith("."):
        for browser in PACKAGE_IDENTIFIERS:
            if apk == browser or apk.startswith(f"{browser}."):
                apk_component = browser + apk_component
                break

    return f"{apk}/{apk_component}"


def rdp_socket_forward_spec(socket_file: str) -> str:
    """adb forward spec for a socket listed in /proc/net/unix."""
    if socket_file.startswith("@"):
        return f"localabstract:{socket_file[1:]}"
    return f"localfilesystem:{socket_file}"


def _am_start_failed(output: str) -> bool:
    return "Error:" in output or "Error type" in output

"""Tests for DeviceBridge."""

from __future__ import annotations

import stat
from collections.abc import Callable
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from adbutils import AdbError

from webext_runner.device.bridge import (
    DeviceBridge,
    rdp_socket_forward_spec,
    resolve_apk_component,
)
from webext_runner.errors import UsageError, WebExtError
from webext_runner.utils.polling import Poller

DEVICE = "emulator-5554"


def make_bridge(shell: Callable[[str], str] | None = None) -> tuple[DeviceBridge, MagicMock]:
    """Bridge over a mocked adbutils client; shell maps a joined command to its output."""
    client = MagicMock()
    device = client.device.return_value

    def run_shell(cmd: str | list[str]) -> str:
        joined = cmd if isinstance(cmd, str) else " ".join(cmd)
        return shell(joined) if shell else ""

    device.shell.side_effect = run_shell
    return DeviceBridge(client=client), device


def shell_commands(device: MagicMock) -> list[str]:
    commands = []
    for call in device.shell.call_args_list:
        cmd = call.args[0]
        commands.append(cmd if isinstance(cmd, str) else " ".join(cmd))
    return commands


class TestDiscovery:
    """Tests for device and package discovery."""

    @pytest.mark.asyncio
    async def test_discover_devices(self) -> None:
        """Should list device serials."""
        bridge, _ = make_bridge()
        bridge._get_client().device_list.return_value = [
            SimpleNamespace(serial="emulator-5554"),
            SimpleNamespace(serial="R58M"),
        ]

        assert await bridge.discover_devices() == ["emulator-5554", "R58M"]

    @pytest.mark.asyncio
    async def test_discover_firefox_packages(self) -> None:
        """Should keep only Firefox-family packages."""
        output = (
            "package:com.android.chrome\n"
            "package:org.mozilla.fenix\n"
            "package:org.mozilla.firefox_beta\n"
            "package:org.mozilla.klar\n"
        )
        bridge, _ = make_bridge(lambda cmd: output)

        packages = await bridge.discover_installed_firefox_apks(DEVICE)

        assert packages == ["org.mozilla.fenix", "org.mozilla.firefox_beta"]

    @pytest.mark.asyncio
    async def test_discover_explicit_package(self) -> None:
        """Should match an explicit package name exactly."""
        output = "package:org.mozilla.fenix\npackage:com.example.browser\n"
        bridge, _ = make_bridge(lambda cmd: output)

        assert await bridge.discover_installed_firefox_apks(DEVICE, "com.example.browser") == [
            "com.example.browser"
        ]
        assert await bridge.discover_installed_firefox_apks(DEVICE, "org.mozilla") == []


class TestDeviceState:
    """Tests for version and permission checks."""

    @pytest.mark.asyncio
    async def test_android_version(self) -> None:
        """Should parse the SDK level."""
        bridge, _ = make_bridge(lambda cmd: "33\n")

        assert await bridge.get_android_version_number(DEVICE) == 33

    @pytest.mark.asyncio
    async def test_android_version_not_a_number(self) -> None:
        """Should raise when getprop prints garbage."""
        bridge, _ = make_bridge(lambda cmd: "unknown\n")

        with pytest.raises(WebExtError) as exc_info:
            await bridge.get_android_version_number(DEVICE)

        assert exc_info.value.code == "ERR_ANDROID_VERSION"

    @pytest.mark.asyncio
    async def test_missing_runtime_permission(self) -> None:
        """Should name the first permission not granted."""
        output = (
            "    runtime permissions:\n"
            "      android.permission.READ_EXTERNAL_STORAGE: granted=true\n"
            "      android.permission.WRITE_EXTERNAL_STORAGE: granted=false\n"
        )
        bridge, _ = make_bridge(lambda cmd: output)

        with pytest.raises(UsageError) as exc_info:
            await bridge.ensure_required_apk_runtime_permissions(
                DEVICE,
                "org.mozilla.fenix",
                [
                    "android.permission.READ_EXTERNAL_STORAGE",
                    "android.permission.WRITE_EXTERNAL_STORAGE",
                ],
            )

        assert exc_info.value.code == "ERR_PERMISSION_NOT_GRANTED"
        assert exc_info.value.context["permission"] == "android.permission.WRITE_EXTERNAL_STORAGE"

    @pytest.mark.asyncio
    async def test_granted_runtime_permissions(self) -> None:
        """Should accept both pm dump formats."""
        output = (
            "android.permission.READ_EXTERNAL_STORAGE: granted=true\n"
            "android.permission.WRITE_EXTERNAL_STORAGE, granted=true\n"
        )
        bridge, _ = make_bridge(lambda cmd: output)

        await bridge.ensure_required_apk_runtime_permissions(
            DEVICE,
            "org.mozilla.fenix",
            ["android.permission.READ_EXTERNAL_STORAGE", "android.permission.WRITE_EXTERNAL_STORAGE"],
        )


class TestArtifactsDir:
    """Tests for the device artifacts dir."""

    @pytest.mark.asyncio
    async def test_created_once_and_cached(self) -> None:
        """Should create the dir once per device."""
        bridge, device = make_bridge(lambda cmd: "1\n" if cmd.startswith("test -d") else "")

        first = await bridge.get_or_create_artifacts_dir(DEVICE)
        second = await bridge.get_or_create_artifacts_dir(DEVICE)

        assert first == second
        assert first.startswith("/data/local/tmp/web-ext-artifacts-")
        assert bridge.get_artifacts_dir(DEVICE) == first
        mkdirs = [cmd for cmd in shell_commands(device) if cmd.startswith("mkdir")]
        assert mkdirs == [f"mkdir -p {first}"]

    @pytest.mark.asyncio
    async def test_existing_dir(self) -> None:
        """Should refuse to reuse an existing dir."""
        bridge, _ = make_bridge(lambda cmd: "0\n")

        with pytest.raises(WebExtError) as exc_info:
            await bridge.get_or_create_artifacts_dir(DEVICE)

        assert exc_info.value.code == "ERR_ARTIFACTS_DIR_EXISTS"

    @pytest.mark.asyncio
    async def test_clear_artifacts_dir(self) -> None:
        """Should remove the dir and forget it."""
        bridge, device = make_bridge(lambda cmd: "1\n" if cmd.startswith("test -d") else "")
        artifacts_dir = await bridge.get_or_create_artifacts_dir(DEVICE)

        await bridge.clear_artifacts_dir(DEVICE)
        await bridge.clear_artifacts_dir(DEVICE)

        removals = [cmd for cmd in shell_commands(device) if cmd.startswith("rm")]
        assert removals == [f"rm -rf {artifacts_dir}"]
        assert bridge.get_artifacts_dir(DEVICE) is None

    @pytest.mark.asyncio
    async def test_old_artifacts(self) -> None:
        """Should detect leftover dirs and remove them on request."""
        bridge, device = make_bridge()
        device.sync.list.return_value = [
            SimpleNamespace(path="web-ext-artifacts-1", mode=stat.S_IFDIR | 0o755),
            SimpleNamespace(path="web-ext-artifacts-2.txt", mode=stat.S_IFREG | 0o644),
            SimpleNamespace(path="other", mode=stat.S_IFDIR | 0o755),
        ]

        assert await bridge.detect_or_remove_old_artifacts(DEVICE, remove=False) is True
        assert shell_commands(device) == []

        assert await bridge.detect_or_remove_old_artifacts(DEVICE, remove=True) is True
        assert shell_commands(device) == ["rm -rf /data/local/tmp/web-ext-artifacts-1"]

    @pytest.mark.asyncio
    async def test_no_old_artifacts(self) -> None:
        """Should report nothing to clean."""
        bridge, device = make_bridge()
        device.sync.list.return_value = []

        assert await bridge.detect_or_remove_old_artifacts(DEVICE, remove=True) is False


class TestStartFirefox:
    """Tests for start_firefox_apk."""

    @pytest.mark.asyncio
    async def test_start(self) -> None:
        """Should start the component with the device profile."""
        bridge, device = make_bridge(lambda cmd: "Status: ok\n")

        await bridge.start_firefox_apk(DEVICE, "org.mozilla.fenix", None, "/data/local/tmp/p")

        commands = shell_commands(device)
        assert len(commands) == 1
        assert "-n org.mozilla.fenix/org.mozilla.fenix.App" in commands[0]
        assert "-profile /data/local/tmp/p" in commands[0]

    @pytest.mark.asyncio
    async def test_retry_with_launcher_intent(self) -> None:
        """Should retry with the launcher category when am start fails."""
        outputs = iter(["Error: Activity not started\n", "Status: ok\n"])
        bridge, device = make_bridge(lambda cmd: next(outputs))

        await bridge.start_firefox_apk(DEVICE, "org.mozilla.fenix", None, "/p")

        commands = shell_commands(device)
        assert len(commands) == 2
        assert "android.intent.category.LAUNCHER" in commands[1]

    @pytest.mark.asyncio
    async def test_start_failure(self) -> None:
        """Should raise when both attempts fail."""
        bridge, _ = make_bridge(lambda cmd: "Error type 3\n")

        with pytest.raises(WebExtError) as exc_info:
            await bridge.start_firefox_apk(DEVICE, "org.mozilla.fenix", None, "/p")

        assert exc_info.value.code == "ERR_ADB_COMMAND"


class TestRdpSocket:
    """Tests for RDP socket discovery and forwarding."""

    @pytest.mark.asyncio
    async def test_discover_socket(self) -> None:
        """Should pick the debugger socket of the selected package."""
        output = (
            "Num       RefCount Protocol Flags    Type St Inode Path\n"
            "00000000: 00000002 00000000 00010000 0001 01 1234 @org.mozilla.klar/firefox-debugger-socket\n"
            "00000000: 00000002 00000000 00010000 0001 01 5678 @org.mozilla.fenix/firefox-debugger-socket\n"
        )
        bridge, _ = make_bridge(lambda cmd: output)

        socket = await bridge.discover_rdp_unix_socket(
            DEVICE, "org.mozilla.fenix", Poller(interval=0, timeout=5)
        )

        assert socket == "@org.mozilla.fenix/firefox-debugger-socket"

    @pytest.mark.asyncio
    async def test_socket_appears_on_later_poll(self) -> None:
        """Should keep polling /proc/net/unix until the socket shows up."""
        found = "00000000: 00000002 00000000 00010000 0001 01 5678 @org.mozilla.fenix/firefox-debugger-socket\n"
        outputs = iter(["Num RefCount Protocol Flags Type St Inode Path\n"] * 2 + [found])
        bridge, device = make_bridge(lambda cmd: next(outputs))

        socket = await bridge.discover_rdp_unix_socket(
            DEVICE, "org.mozilla.fenix", Poller(interval=0.01, timeout=5)
        )

        assert socket == "@org.mozilla.fenix/firefox-debugger-socket"
        assert shell_commands(device) == ["cat /proc/net/unix"] * 3

    @pytest.mark.asyncio
    async def test_multiple_sockets(self) -> None:
        """Should refuse to choose between several sockets."""
        line = "00000000: 00000002 00000000 00010000 0001 01 {} @org.mozilla.fenix/firefox-debugger-socket\n"
        bridge, _ = make_bridge(lambda cmd: line.format(1) + line.format(2))

        with pytest.raises(WebExtError) as exc_info:
            await bridge.discover_rdp_unix_socket(
                DEVICE, "org.mozilla.fenix", Poller(interval=0, timeout=5)
            )

        assert exc_info.value.code == "ERR_MULTIPLE_RDP_SOCKETS"

    @pytest.mark.asyncio
    async def test_setup_forward(self) -> None:
        """Should forward the local port to the device socket."""
        bridge, device = make_bridge()

        await bridge.setup_forward(DEVICE, "localabstract:org.mozilla.fenix/s", "tcp:6000")

        device.forward.assert_called_once_with("tcp:6000", "localabstract:org.mozilla.fenix/s")

    def test_forward_spec(self) -> None:
        """Should map abstract and filesystem sockets."""
        assert rdp_socket_forward_spec("@org.mozilla.fenix/s") == "localabstract:org.mozilla.fenix/s"
        assert rdp_socket_forward_spec("/data/s") == "localfilesystem:/data/s"


class TestAdbErrors:
    """Tests for adb failure mapping."""

    @pytest.mark.asyncio
    async def test_server_not_running(self) -> None:
        """Should map a refused connection to ERR_ADB_NOT_FOUND."""
        bridge, _ = make_bridge()
        bridge._get_client().device_list.side_effect = ConnectionRefusedError()

        with pytest.raises(UsageError) as exc_info:
            await bridge.discover_devices()

        assert exc_info.value.code == "ERR_ADB_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_command_failure(self) -> None:
        """Should wrap other adb errors with the command."""
        bridge, device = make_bridge()
        device.shell.side_effect = AdbError("device offline")

        with pytest.raises(WebExtError) as exc_info:
            await bridge.am_force_stop_apk(DEVICE, "org.mozilla.fenix")

        assert exc_info.value.code == "ERR_ADB_COMMAND"
        assert "am force-stop org.mozilla.fenix" in exc_info.value.message


class TestResolveApkComponent:
    """Tests for resolve_apk_component."""

    @pytest.mark.parametrize(
        ("apk", "component", "expected"),
        [
            ("org.mozilla.fenix", None, "org.mozilla.fenix/org.mozilla.fenix.App"),
            ("org.mozilla.fenix.nightly", None, "org.mozilla.fenix.nightly/org.mozilla.fenix.App"),
            (
                "org.mozilla.fenix.debug",
                None,
                "org.mozilla.fenix.debug/org.mozilla.fenix.debug.App",
            ),
            (
                "org.mozilla.reference.browser",
                None,
                "org.mozilla.reference.browser/org.mozilla.reference.browser.BrowserActivity",
            ),
            ("org.mozilla.firefox", "App", "org.mozilla.firefox/org.mozilla.firefox.App"),
            ("com.example.fork", "com.example.Main", "com.example.fork/com.example.Main"),
        ],
    )
    def test_components(self, apk: str, component: str | None, expected: str) -> None:
        """Should expand short components with the browser package."""
        assert resolve_apk_component(apk, component) == expected

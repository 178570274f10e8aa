"""Tests for FirefoxAndroidRunner."""

from __future__ import annotations

import asyncio
import os
import sys
from pathlib import Path
from typing import Any, TextIO

import pytest
from structlog.testing import capture_logs

from webext_runner.errors import UsageError, UserAbortError
from webext_runner.firefox.profile import FirefoxProfile
from webext_runner.firefox.remote import RemoteFirefox
from webext_runner.models import BuildResult, Extension, ReloadResult
from webext_runner.runners.firefox_android import FirefoxAndroidRunner, FirefoxAndroidRunnerParams
from webext_runner.utils.polling import Poller

DEVICE = "emulator-5554"
ARTIFACTS_DIR = "/data/local/tmp/web-ext-artifacts-1"
SOCKET = "@org.mozilla.fenix/firefox-debugger-socket"


class FakeBridge:
    """DeviceBridge stand-in recording every device operation."""

    def __init__(
        self,
        devices: tuple[str, ...] = (DEVICE,),
        packages: tuple[str, ...] = ("org.mozilla.fenix",),
        sdk: int = 33,
        socket: str | None = SOCKET,
    ) -> None:
        self.devices = devices
        self.packages = packages
        self.sdk = sdk
        self.socket = socket
        self.calls: list[tuple[Any, ...]] = []
        self.discovery_started = asyncio.Event()

    async def discover_devices(self) -> list[str]:
        return list(self.devices)

    async def discover_installed_firefox_apks(
        self, device_id: str, firefox_apk: str | None = None
    ) -> list[str]:
        if firefox_apk:
            return [p for p in self.packages if p == firefox_apk]
        return list(self.packages)

    async def get_android_version_number(self, device_id: str) -> int:
        return self.sdk

    async def ensure_required_apk_runtime_permissions(
        self, device_id: str, apk: str, permissions: list[str]
    ) -> None:
        self.calls.append(("permissions", apk))

    async def am_force_stop_apk(self, device_id: str, apk: str) -> None:
        self.calls.append(("force_stop", apk))

    async def detect_or_remove_old_artifacts(self, device_id: str, remove: bool = False) -> bool:
        return False

    async def get_or_create_artifacts_dir(self, device_id: str) -> str:
        return ARTIFACTS_DIR

    async def run_shell_command(self, device_id: str, cmd: str | list[str]) -> str:
        self.calls.append(("shell", cmd))
        return ""

    async def push_file(self, device_id: str, local_path: str, device_path: str) -> None:
        self.calls.append(("push", device_path))

    async def start_firefox_apk(
        self, device_id: str, apk: str, apk_component: str | None, device_profile_dir: str
    ) -> None:
        self.calls.append(("start", apk, device_profile_dir))

    async def discover_rdp_unix_socket(self, device_id: str, apk: str, poller: Poller) -> str:
        self.discovery_started.set()

        async def check() -> str | None:
            return self.socket

        return await poller.run(check, "the socket")

    async def setup_forward(self, device_id: str, remote: str, local: str) -> None:
        self.calls.append(("forward", remote, local))

    async def clear_artifacts_dir(self, device_id: str) -> None:
        self.calls.append(("clear",))

    def calls_named(self, name: str) -> list[tuple[Any, ...]]:
        return [call for call in self.calls if call[0] == name]


class FakeFirefoxApp:
    def __init__(self, tmp_path: Path) -> None:
        self.tmp_path = tmp_path
        self.apps: list[str] = []

    def create_profile(self, app: str = "firefox", custom_prefs: Any = None) -> FirefoxProfile:
        self.apps.append(app)
        return FirefoxProfile(self.tmp_path)


def fake_build(source_dir: str, artifacts_dir: str) -> BuildResult:
    return BuildResult(extension_path=str(Path(artifacts_dir) / "my_ext-1.0.zip"))


def make_runner(
    tmp_path: Path,
    bridge: FakeBridge,
    transport: Any,
    extensions: tuple[Extension, ...],
    stdin: TextIO | None = None,
    **params: Any,
) -> FirefoxAndroidRunner:
    async def connector(port: int) -> RemoteFirefox:
        return RemoteFirefox(transport)

    params.setdefault("adb_device", DEVICE)
    params.setdefault("adb_discovery_interval", 0.01)
    return FirefoxAndroidRunner(
        FirefoxAndroidRunnerParams(extensions=extensions, **params),
        bridge=bridge,  # type: ignore[arg-type]
        firefox_app=FakeFirefoxApp(tmp_path),  # type: ignore[arg-type]
        firefox_connector=connector,
        build_source_dir=fake_build,
        stdin=stdin,
    )


class TestSelection:
    """Tests for device and package selection errors."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("bridge_args", "params", "code"),
        [
            ({"devices": ()}, {}, "ERR_NO_DEVICES"),
            ({}, {"adb_device": None}, "ERR_DEVICE_NOT_SELECTED"),
            ({}, {"adb_device": "R58M"}, "ERR_DEVICE_NOT_FOUND"),
            ({"packages": ()}, {}, "ERR_NO_FIREFOX_PACKAGES"),
            (
                {"packages": ("org.mozilla.fenix", "org.mozilla.firefox")},
                {},
                "ERR_PACKAGE_NOT_SELECTED",
            ),
            ({}, {"firefox_apk": "org.mozilla.firefox"}, "ERR_PACKAGE_NOT_FOUND"),
        ],
    )
    async def test_usage_errors(
        self,
        tmp_path: Path,
        fake_transport: Any,
        extension: Extension,
        bridge_args: dict[str, Any],
        params: dict[str, Any],
        code: str,
    ) -> None:
        """Should stop setup with an actionable usage error."""
        runner = make_runner(
            tmp_path, FakeBridge(**bridge_args), fake_transport, (extension,), **params
        )

        with pytest.raises(UsageError) as exc_info:
            await runner.run()
        await runner.exit()

        assert exc_info.value.code == code

    @pytest.mark.asyncio
    async def test_single_package_selected_implicitly(
        self, tmp_path: Path, fake_transport: Any, extension: Extension
    ) -> None:
        """Should pick the only Firefox package without --firefox-apk."""
        bridge = FakeBridge()
        runner = make_runner(tmp_path, bridge, fake_transport, (extension,))

        await runner.run()
        await runner.exit()

        assert runner.selected_apk == "org.mozilla.fenix"

    @pytest.mark.asyncio
    async def test_permissions_skipped_before_android_6(
        self, tmp_path: Path, fake_transport: Any, extension: Extension
    ) -> None:
        """Should not check runtime permissions below API level 23."""
        bridge = FakeBridge(sdk=21)
        runner = make_runner(tmp_path, bridge, fake_transport, (extension,))

        await runner.run()
        await runner.exit()

        assert bridge.calls_named("permissions") == []


class TestRun:
    """Tests for the full start sequence."""

    @pytest.mark.asyncio
    async def test_start_sequence(
        self, tmp_path: Path, fake_transport: Any, extension: Extension
    ) -> None:
        """Should push the profile and xpi, forward the socket and install."""
        bridge = FakeBridge()
        runner = make_runner(tmp_path, bridge, fake_transport, (extension,))

        await runner.run()
        try:
            pushed = [call[1] for call in bridge.calls_named("push")]
            assert pushed == [
                f"{ARTIFACTS_DIR}/profile/user.js",
                f"{ARTIFACTS_DIR}/my_ext-1.0.xpi",
            ]
            assert bridge.calls_named("start") == [
                ("start", "org.mozilla.fenix", f"{ARTIFACTS_DIR}/profile")
            ]
            (forward,) = bridge.calls_named("forward")
            assert forward[1] == "localabstract:org.mozilla.fenix/firefox-debugger-socket"
            assert forward[2] == f"tcp:{runner.selected_tcp_port}"
            install = fake_transport.requests_of_type("installTemporaryAddon")
            assert install[0]["addonPath"] == f"{ARTIFACTS_DIR}/my_ext-1.0.xpi"
            assert runner.reloadable_extensions == {extension.source_dir: "x"}
            assert runner.firefox_app.apps == ["fennec"]  # type: ignore[attr-defined]
        finally:
            await runner.exit()

    @pytest.mark.asyncio
    async def test_ignored_options_warn(
        self, tmp_path: Path, fake_transport: Any, extension: Extension
    ) -> None:
        """Should warn about options that do not apply on Android."""
        with capture_logs() as logs:
            make_runner(
                tmp_path,
                FakeBridge(),
                fake_transport,
                (extension,),
                start_urls=("https://example.com",),
                browser_console=True,
            )

        options = {log["option"] for log in logs if log["event"] == "android_option_ignored"}
        assert options == {"--start-url", "--browser-console"}


class TestReload:
    """Tests for reloading on Android."""

    @pytest.mark.asyncio
    async def test_reload_rebuilds_and_pushes(
        self, tmp_path: Path, fake_transport: Any, extension: Extension
    ) -> None:
        """Should push a fresh build to the same path before reloading."""
        bridge = FakeBridge()
        runner = make_runner(tmp_path, bridge, fake_transport, (extension,))
        await runner.run()

        results = await runner.reload_extension_by_source_dir(extension.source_dir)
        await runner.exit()

        assert results == [ReloadResult("Firefox Android", source_dir=extension.source_dir)]
        pushed = [call[1] for call in bridge.calls_named("push")]
        assert pushed[-2:] == [f"{ARTIFACTS_DIR}/my_ext-1.0.xpi"] * 2
        assert fake_transport.requests_of_type("reload") == [{"to": "x", "type": "reload"}]


class TestExit:
    """Tests for exit and discovery abort."""

    @pytest.mark.asyncio
    async def test_teardown_cleans_device(
        self, tmp_path: Path, fake_transport: Any, extension: Extension
    ) -> None:
        """Should stop Firefox and remove the artifacts dir on exit."""
        bridge = FakeBridge()
        runner = make_runner(tmp_path, bridge, fake_transport, (extension,))
        await runner.run()
        bridge.calls.clear()

        await runner.exit()

        assert ("force_stop", "org.mozilla.fenix") in bridge.calls
        assert ("clear",) in bridge.calls
        assert fake_transport.disconnected

    @pytest.mark.asyncio
    async def test_abort_discovery(
        self, tmp_path: Path, fake_transport: Any, extension: Extension
    ) -> None:
        """Should fail a pending socket discovery with UserAbortError."""
        bridge = FakeBridge(socket=None)
        runner = make_runner(tmp_path, bridge, fake_transport, (extension,))
        run_task = asyncio.create_task(runner.run())
        await asyncio.wait_for(bridge.discovery_started.wait(), timeout=1)

        runner.abort_discovery()

        with pytest.raises(UserAbortError):
            await asyncio.wait_for(run_task, timeout=1)
        await runner.exit()

    @pytest.mark.asyncio
    @pytest.mark.skipif(sys.platform == "win32", reason="needs a pseudo-terminal")
    async def test_ctrl_c_keypress_aborts_discovery(
        self, tmp_path: Path, fake_transport: Any, extension: Extension
    ) -> None:
        """Should abort discovery on Ctrl-C typed in the terminal and restore it."""
        import termios

        master, slave = os.openpty()
        terminal = os.fdopen(slave, "r")
        original = termios.tcgetattr(slave)
        try:
            bridge = FakeBridge(socket=None)
            runner = make_runner(tmp_path, bridge, fake_transport, (extension,), stdin=terminal)
            run_task = asyncio.create_task(runner.run())
            await asyncio.wait_for(bridge.discovery_started.wait(), timeout=1)

            async def raw_mode_enabled() -> None:
                while termios.tcgetattr(slave)[3] & termios.ISIG:
                    await asyncio.sleep(0.01)

            await asyncio.wait_for(raw_mode_enabled(), timeout=1)
            os.write(master, b"\x03")

            with pytest.raises(UserAbortError):
                await asyncio.wait_for(run_task, timeout=1)
            await runner.exit()

            assert termios.tcgetattr(slave) == original
        finally:
            terminal.close()
            os.close(master)

    @pytest.mark.asyncio
    async def test_exit_during_discovery(
        self, tmp_path: Path, fake_transport: Any, extension: Extension
    ) -> None:
        """Should abort discovery and tear down when exiting mid-setup."""
        bridge = FakeBridge(socket=None)
        runner = make_runner(tmp_path, bridge, fake_transport, (extension,))
        run_task = asyncio.create_task(runner.run())
        await asyncio.wait_for(bridge.discovery_started.wait(), timeout=1)

        await asyncio.wait_for(runner.exit(), timeout=1)

        with pytest.raises(UserAbortError):
            await run_task
        assert ("clear",) in bridge.calls

    @pytest.mark.asyncio
    async def test_exit_when_connection_drops(
        self, tmp_path: Path, fake_transport: Any, extension: Extension
    ) -> None:
        """Should exit by itself when the RDP connection closes."""
        runner = make_runner(tmp_path, FakeBridge(), fake_transport, (extension,))
        exited = asyncio.Event()
        runner.register_cleanup(exited.set)
        await runner.run()

        fake_transport.close_from_remote()

        await asyncio.wait_for(exited.wait(), timeout=1)

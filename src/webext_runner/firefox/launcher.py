"""Firefox desktop process launcher."""

from __future__ import annotations

import asyncio
import contextlib
import os
import shutil
import sys
from pathlib import Path

import structlog

from webext_runner.errors import binary_not_found_error
from webext_runner.firefox import profile as profiles
from webext_runner.firefox.preferences import FirefoxPreferences
from webext_runner.firefox.profile import FirefoxProfile
from webext_runner.firefox.remote import find_free_tcp_port
from webext_runner.models import Extension

logger = structlog.get_logger()

DEFAULT_FIREFOX_ENV = {
    "XPCOM_DEBUG_BREAK": "stack",
    "NS_TRACE_MALLOC_DISABLE_STACKS": "1",
}

OUTPUT_CHUNK_SIZE = 65536

_BINARY_NAMES = ("firefox", "firefox-esr", "firefox-developer-edition", "firefox-nightly")
_PLATFORM_BINARIES = {
    "darwin": (
        "/Applications/Firefox.app/Contents/MacOS/firefox",
        "/Applications/Firefox Developer Edition.app/Contents/MacOS/firefox",
        "/Applications/Firefox Nightly.app/Contents/MacOS/firefox",
    ),
    "win32": (
        r"C:\Program Files\Mozilla Firefox\firefox.exe",
        r"C:\Program Files (x86)\Mozilla Firefox\firefox.exe",
    ),
}


def find_firefox_binary(binary: str | None = None) -> Path:
    """Resolve the Firefox executable from an explicit path/name, PATH or platform defaults."""
    if binary:
        candidate = Path(binary).expanduser()
        if candidate.is_file():
            return candidate
        which = shutil.which(binary)
        if which:
            return Path(which)
        raise binary_not_found_error("Firefox", binary, "--firefox")

    for name in _BINARY_NAMES:
        which = shutil.which(name)
        if which:
            return Path(which)
    for path in _PLATFORM_BINARIES.get(sys.platform, ()):
        if Path(path).is_file():
            return Path(path)
    raise binary_not_found_error("Firefox", None, "--firefox")


class FirefoxInstance:
    """A running Firefox process with its remote debugger port."""

    def __init__(self, process: asyncio.subprocess.Process, debugger_port: int) -> None:
        self.process = process
        self.debugger_port = debugger_port
        self._output_tasks: list[asyncio.Task[None]] = []

    @property
    def is_alive(self) -> bool:
        return self.process.returncode is None

    def start_output_forwarding(self) -> None:
        for stream, name in ((self.process.stdout, "stdout"), (self.process.stderr, "stderr")):
            if stream is not None:
                self._output_tasks.append(asyncio.create_task(self._forward(stream, name)))

    async def _forward(self, stream: asyncio.StreamReader, name: str) -> None:
        # Lines longer than OUTPUT_CHUNK_SIZE are logged in pieces.
        pending = b""
        try:
            while True:
                chunk = await stream.read(OUTPUT_CHUNK_SIZE)
                if not chunk:
                    break
                *lines, pending = (pending + chunk).split(b"\n")
                if len(pending) >= OUTPUT_CHUNK_SIZE:
                    lines.append(pending)
                    pending = b""
                for raw in lines:
                    self._log_line(raw, name)
            self._log_line(pending, name)
        except asyncio.CancelledError:
            return

    @staticmethod
    def _log_line(raw: bytes, name: str) -> None:
        line = raw.decode(errors="replace").rstrip()
        if line:
            logger.debug("firefox_output", stream=name, line=line)

    async def wait(self) -> int:
        return await self.process.wait()

    async def kill(self) -> None:
        """Terminate Firefox, killing it if it does not exit in time."""
        if self.is_alive:
            self.process.terminate()
            try:
                await asyncio.wait_for(self.process.wait(), timeout=5.0)
            except TimeoutError:
                logger.warning("firefox_kill", pid=self.process.pid)
                self.process.kill()
                await self.process.wait()
        for task in self._output_tasks:
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task


class FirefoxApp:
    """Profile preparation and process launching for Firefox desktop."""

    def create_profile(
        self, app: str = "firefox", custom_prefs: FirefoxPreferences | None = None
    ) -> FirefoxProfile:
        return profiles.create_profile(app, custom_prefs)

    def copy_profile(
        self, profile_path: str, custom_prefs: FirefoxPreferences | None = None
    ) -> FirefoxProfile:
        return profiles.copy_profile(profile_path, custom_prefs=custom_prefs)

    def use_profile(
        self, profile_path: str, custom_prefs: FirefoxPreferences | None = None
    ) -> FirefoxProfile:
        return profiles.use_profile(profile_path, custom_prefs=custom_prefs)

    def install_extension(self, profile: FirefoxProfile, extension: Extension) -> None:
        profiles.install_extension(profile, extension, as_proxy=True)

    async def run(
        self,
        profile: FirefoxProfile,
        firefox_binary: str | None = None,
        binary_args: list[str] | None = None,
    ) -> FirefoxInstance:
        """Start Firefox on profile with the remote debugger listening."""
        binary = find_firefox_binary(firefox_binary)
        port = find_free_tcp_port()
        args = [
            "-no-remote",
            "-foreground",
            "-profile",
            str(profile.path),
            "-start-debugger-server",
            str(port),
            *(binary_args or []),
        ]
        logger.info("firefox_starting", binary=str(binary), profile=str(profile.path))
        logger.debug("firefox_args", args=args)
        process = await asyncio.create_subprocess_exec(
            str(binary),
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env={**os.environ, **DEFAULT_FIREFOX_ENV},
        )
        instance = FirefoxInstance(process, port)
        instance.start_output_forwarding()
        logger.info("firefox_started", pid=process.pid, debugger_port=port)
        return instance

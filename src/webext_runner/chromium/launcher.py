"""Chromium process launcher."""

from __future__ import annotations

import asyncio
import contextlib
import os
import shutil
import sys
from pathlib import Path

import structlog

from webext_runner.errors import binary_not_found_error
from webext_runner.firefox.remote import find_free_tcp_port

logger = structlog.get_logger()

_FEATURES_DISABLED = (
    "Translate",
    "OptimizationHints",
    "MediaRouter",
    "DialMediaRouteProvider",
    "CalculateNativeWinOcclusion",
    "InterestFeedContentSuggestions",
    "CertificateTransparencyComponentUpdater",
    "AutofillServerCommunication",
    "PrivacySandboxSettings4",
)

# Usual automation flags for a throwaway browser session.
LAUNCHER_DEFAULT_FLAGS = (
    "--disable-features=" + ",".join(_FEATURES_DISABLED),
    "--disable-component-extensions-with-background-pages",
    "--disable-background-networking",
    "--disable-component-update",
    "--disable-client-side-phishing-detection",
    "--disable-sync",
    "--metrics-recording-only",
    "--disable-default-apps",
    "--mute-audio",
    "--no-default-browser-check",
    "--no-first-run",
    "--disable-backgrounding-occluded-windows",
    "--disable-renderer-backgrounding",
    "--disable-background-timer-throttling",
    "--disable-ipc-flooding-protection",
    "--password-store=basic",
    "--use-mock-keychain",
    "--force-fieldtrials=*BackgroundTracing/default/",
    "--disable-hang-monitor",
    "--disable-prompt-on-repost",
    "--disable-domain-reliability",
    "--propagate-iph-for-testing",
)

# Extensions must stay enabled and audible while developing them.
EXCLUDED_FLAGS = ("--disable-extensions", "--mute-audio", "--disable-component-update")

DEFAULT_CHROMIUM_FLAGS = tuple(flag for flag in LAUNCHER_DEFAULT_FLAGS if flag not in EXCLUDED_FLAGS)

_BINARY_NAMES = (
    "google-chrome",
    "google-chrome-stable",
    "chromium",
    "chromium-browser",
    "chrome",
)
_PLATFORM_BINARIES = {
    "darwin": (
        "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
        "/Applications/Chromium.app/Contents/MacOS/Chromium",
    ),
    "win32": (
        r"C:\Program Files\Google\Chrome\Application\chrome.exe",
        r"C:\Program Files (x86)\Google\Chrome\Application\chrome.exe",
    ),
}


def find_chromium_binary(binary: str | None = None) -> Path:
    """Resolve the Chromium executable from an explicit path, CHROME_PATH, PATH or platform defaults."""
    binary = binary or os.environ.get("CHROME_PATH")
    if binary:
        candidate = Path(binary).expanduser()
        if candidate.is_file():
            return candidate
        which = shutil.which(binary)
        if which:
            return Path(which)
        raise binary_not_found_error("Chromium", binary, "--chromium-binary")

    for name in _BINARY_NAMES:
        which = shutil.which(name)
        if which:
            return Path(which)
    for path in _PLATFORM_BINARIES.get(sys.platform, ()):
        if Path(path).is_file():
            return Path(path)
    raise binary_not_found_error("Chromium", None, "--chromium-binary")


class ChromiumInstance:
    """A running Chromium process."""

    def __init__(self, process: asyncio.subprocess.Process, debugging_port: int) -> None:
        self.process = process
        self.debugging_port = debugging_port

    @property
    def is_alive(self) -> bool:
        return self.process.returncode is None

    async def wait(self) -> int:
        return await self.process.wait()

    async def kill(self) -> None:
        if not self.is_alive:
            return
        self.process.terminate()
        try:
            await asyncio.wait_for(self.process.wait(), timeout=5.0)
        except TimeoutError:
            logger.warning("chromium_kill", pid=self.process.pid)
            with contextlib.suppress(ProcessLookupError):
                self.process.kill()
            await self.process.wait()


async def launch_chromium(
    *,
    chromium_binary: str | None,
    flags: list[str],
    user_data_dir: str,
    starting_url: str | None = None,
) -> ChromiumInstance:
    """Start Chromium with exactly the given flags plus the data dir and debugging port."""
    binary = find_chromium_binary(chromium_binary)
    port = find_free_tcp_port()
    args = [
        *flags,
        f"--remote-debugging-port={port}",
        f"--user-data-dir={user_data_dir}",
        starting_url or "about:blank",
    ]
    logger.info("chromium_starting", binary=str(binary), user_data_dir=user_data_dir)
    logger.debug("chromium_args", args=args)
    process = await asyncio.create_subprocess_exec(
        str(binary),
        *args,
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.DEVNULL,
    )
    logger.info("chromium_started", pid=process.pid)
    return ChromiumInstance(process, port)

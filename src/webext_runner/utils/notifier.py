"""Desktop notifications through the platform's notification command."""

from __future__ import annotations

import json
import shutil
import subprocess
import sys
from collections.abc import Callable

import structlog

logger = structlog.get_logger()

DesktopNotifier = Callable[..., None]


def _notification_command(title: str, message: str, icon: str | None) -> list[str] | None:
    if sys.platform == "darwin":
        osascript = shutil.which("osascript")
        if not osascript:
            return None
        script = f"display notification {json.dumps(message)} with title {json.dumps(title)}"
        return [osascript, "-e", script]

    notify_send = shutil.which("notify-send")
    if not notify_send:
        return None
    cmd = [notify_send, "--app-name=webext-runner"]
    if icon:
        cmd.append(f"--icon={icon}")
    return [*cmd, title, message]


def show_desktop_notification(title: str, message: str, icon: str | None = None) -> None:
    """Show a desktop notification. Failures are logged, never raised."""
    cmd = _notification_command(title, message, icon)
    if cmd is None:
        logger.debug("desktop_notifier_unavailable", title=title, message=message)
        return
    try:
        subprocess.run(cmd, check=True, capture_output=True, timeout=5)
    except (OSError, subprocess.SubprocessError) as exc:
        logger.debug("desktop_notification_failed", error=str(exc))

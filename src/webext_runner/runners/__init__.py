"""Extension runners and the factory keyed by target name."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

from webext_runner.errors import unknown_target_error
from webext_runner.runners.base import ExtensionRunner, ExtensionRunnerParams, Runner
from webext_runner.runners.chromium import ChromiumRunner, ChromiumRunnerParams
from webext_runner.runners.firefox_android import FirefoxAndroidRunner, FirefoxAndroidRunnerParams
from webext_runner.runners.firefox_desktop import FirefoxDesktopRunner, FirefoxDesktopRunnerParams
from webext_runner.runners.multi import MultiRunner
from webext_runner.utils.notifier import DesktopNotifier, show_desktop_notification

DEFAULT_TARGET = "firefox-desktop"

RUNNER_CLASSES: dict[str, tuple[type[ExtensionRunner], type[ExtensionRunnerParams]]] = {
    "firefox-desktop": (FirefoxDesktopRunner, FirefoxDesktopRunnerParams),
    "firefox-android": (FirefoxAndroidRunner, FirefoxAndroidRunnerParams),
    "chromium": (ChromiumRunner, ChromiumRunnerParams),
}


def create_extension_runner(
    target: str, options: Mapping[str, Any], **dependencies: Any
) -> ExtensionRunner:
    """Build the runner for target from merged options."""
    try:
        runner_cls, params_cls = RUNNER_CLASSES[target]
    except KeyError:
        raise unknown_target_error(target, list(RUNNER_CLASSES)) from None
    return runner_cls(params_cls.from_options(options), **dependencies)


def create_multi_runner(
    targets: Sequence[str] | None,
    options: Mapping[str, Any],
    desktop_notifications: DesktopNotifier = show_desktop_notification,
    dependencies: Mapping[str, Mapping[str, Any]] | None = None,
) -> MultiRunner:
    """One runner per distinct target (firefox-desktop when none are given).

    dependencies maps a target name to extra constructor arguments.
    """
    dependencies = dependencies or {}
    runners = [
        create_extension_runner(target, options, **dependencies.get(target, {}))
        for target in dict.fromkeys(targets or [DEFAULT_TARGET])
    ]
    return MultiRunner(runners, desktop_notifications=desktop_notifications)


__all__ = [
    "DEFAULT_TARGET",
    "RUNNER_CLASSES",
    "ChromiumRunner",
    "ExtensionRunner",
    "ExtensionRunnerParams",
    "FirefoxAndroidRunner",
    "FirefoxDesktopRunner",
    "MultiRunner",
    "Runner",
    "create_extension_runner",
    "create_multi_runner",
]

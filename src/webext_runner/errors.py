"""Error model - Actionable errors with remediation hints."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class WebExtError(Exception):
    """
    Base error with context and remediation guidance.

    Operational failures (a single reload failing, a broken RDP connection)
    are raised as WebExtError. Usage problems use the UsageError subclass.
    """

    code: str
    message: str
    context: dict[str, Any] = field(default_factory=dict)
    remediation: str = ""

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "code": self.code,
            "message": self.message,
            "context": self.context,
            "remediation": self.remediation,
        }


@dataclass
class UsageError(WebExtError):
    """Bad or missing input from the user. Always fatal, never retried."""


@dataclass
class InvalidManifest(UsageError):
    """The extension manifest is missing or invalid."""


@dataclass
class RemoteTempInstallNotSupported(WebExtError):
    """The remote Firefox does not provide an add-ons actor."""


@dataclass
class RDPError(WebExtError):
    """Error response or transport failure on the remote debugging protocol."""


@dataclass
class DiscoveryTimeoutError(WebExtError):
    """A polling discovery loop ran past its deadline."""


@dataclass
class UserAbortError(UsageError):
    """A polling discovery loop was cancelled by the user."""


@dataclass
class MultiExtensionsReloadError(WebExtError):
    """More than one extension failed to reload in the same call."""

    errors: dict[str, BaseException] = field(default_factory=dict)


@dataclass
class MultiRunnersError(WebExtError):
    """More than one runner failed in the same run() or exit() call."""

    errors: dict[str, BaseException] = field(default_factory=dict)


# Specific error constructors for common cases


def rdp_error(request_type: str, response: dict[str, Any]) -> RDPError:
    """Create error for an RDP error response."""
    message = f"{request_type} response error: {response.get('error')}"
    if response.get("message"):
        message += f": {response['message']}"
    return RDPError(
        code="ERR_RDP_RESPONSE",
        message=message,
        context={"request": request_type, "response": response},
        remediation="Check the Browser Console of the remote Firefox for details.",
    )


def rdp_connection_closed_error(reason: str = "RDP connection closed") -> RDPError:
    """Create error for a closed RDP connection."""
    return RDPError(
        code="ERR_RDP_CLOSED",
        message=reason,
        context={},
        remediation="Restart the browser and run again.",
    )


def remote_temp_install_not_supported_error() -> RemoteTempInstallNotSupported:
    """Create error for a Firefox without an add-ons actor."""
    return RemoteTempInstallNotSupported(
        code="ERR_TEMP_INSTALL_UNSUPPORTED",
        message="This version of Firefox does not provide an add-ons actor "
        "for remote installation",
        context={},
        remediation="Use Firefox 49 or higher, or run again with --pre-install.",
    )


def reload_unsupported_error(request_types: list[str]) -> UsageError:
    """Create error for a Firefox that cannot reload add-ons."""
    return UsageError(
        code="ERR_RELOAD_UNSUPPORTED",
        message="This Firefox version does not support add-on reloading",
        context={"request_types": request_types},
        remediation="Run again with --pre-install (auto-reload will be disabled).",
    )


def addon_not_installed_error(addon_id: str) -> WebExtError:
    """Create error for an add-on missing from the remote Firefox."""
    return WebExtError(
        code="ERR_ADDON_NOT_INSTALLED",
        message=f"The remote Firefox does not have your extension installed: {addon_id}",
        context={"addon_id": addon_id},
        remediation="Restart the run command to install the extension again.",
    )


def extension_not_reloadable_error(source_dir: str) -> WebExtError:
    """Create error for a source dir with no mapped add-on."""
    return WebExtError(
        code="ERR_NOT_RELOADABLE",
        message=f'Extension not reloadable: no addonId has been mapped to "{source_dir}"',
        context={"source_dir": source_dir},
        remediation="Check that the extension was installed when the runner started.",
    )


def multi_extensions_reload_error(errors: dict[str, BaseException]) -> MultiExtensionsReloadError:
    """Aggregate reload failures by source dir."""
    details = "\n".join(f"Error on extension loaded from {key}: {err}" for key, err in errors.items())
    return MultiExtensionsReloadError(
        code="ERR_MULTI_RELOAD",
        message=f"Reload errors:\n{details}",
        context={"source_dirs": list(errors)},
        errors=errors,
    )


def multi_runners_error(operation: str, errors: dict[str, BaseException]) -> MultiRunnersError:
    """Aggregate run/exit failures by runner name."""
    details = "; ".join(f"{name}: {err}" for name, err in errors.items())
    return MultiRunnersError(
        code="ERR_MULTI_RUNNERS",
        message=f"{operation} failed on {len(errors)} runners: {details}",
        context={"operation": operation, "runners": list(errors)},
        errors=errors,
    )


def unknown_target_error(target: str, known: list[str]) -> UsageError:
    """Create error for an unsupported --target."""
    return UsageError(
        code="ERR_UNKNOWN_TARGET",
        message=f"Unknown extension runner target: {target}",
        context={"target": target, "known": known},
        remediation=f"Use one of: {', '.join(known)}",
    )


def runner_already_started_error(name: str) -> WebExtError:
    """Create error for a second run() on the same runner."""
    return WebExtError(
        code="ERR_ALREADY_RUNNING",
        message=f"{name} runner has already been started",
        context={"runner": name},
        remediation="Create a new runner instance for each run.",
    )


def binary_not_found_error(browser: str, binary: str | None, option: str) -> UsageError:
    """Create error for a missing browser executable."""
    target = binary or browser
    return UsageError(
        code="ERR_BINARY_NOT_FOUND",
        message=f"{browser} executable not found: {target}",
        context={"browser": browser, "binary": binary},
        remediation=f"Install {browser} or pass its path with {option}.",
    )


def adb_not_found_error(reason: str = "") -> UsageError:
    """Create error for an unavailable adb server or binary."""
    return UsageError(
        code="ERR_ADB_NOT_FOUND",
        message="No adb executable or server has been found",
        context={"reason": reason},
        remediation="Install Android platform-tools, or use --adb-host/--adb-port "
        "to configure the adb server manually.",
    )


def adb_command_error(command: str, reason: str) -> WebExtError:
    """Create error for adb command failure."""
    return WebExtError(
        code="ERR_ADB_COMMAND",
        message=f"adb command failed: {command}",
        context={"command": command, "reason": reason},
        remediation="Check adb connection and command arguments, then retry.",
    )


def no_devices_error() -> UsageError:
    """Create error for an empty device list."""
    return UsageError(
        code="ERR_NO_DEVICES",
        message="No Android device found through ADB",
        context={},
        remediation="Make sure the device is connected and USB debugging is enabled.",
    )


def device_not_selected_error(devices: list[str]) -> UsageError:
    """Create error for a missing --adb-device."""
    return UsageError(
        code="ERR_DEVICE_NOT_SELECTED",
        message="Select an android device using --adb-device=<name>",
        context={"devices": devices},
        remediation="Devices found: " + ", ".join(devices),
    )


def device_not_found_error(device: str, devices: list[str]) -> UsageError:
    """Create error for an unknown --adb-device."""
    return UsageError(
        code="ERR_DEVICE_NOT_FOUND",
        message=f"Android device {device} was not found in list: {devices}",
        context={"device": device, "devices": devices},
        remediation="Check connected devices with 'adb devices'.",
    )


def no_firefox_packages_error() -> UsageError:
    """Create error for a device without Firefox packages."""
    return UsageError(
        code="ERR_NO_FIREFOX_PACKAGES",
        message="No Firefox packages were found on the selected Android device",
        context={},
        remediation="Install Firefox for Android (or a GeckoView browser) on the device.",
    )


def package_not_selected_error(packages: list[str]) -> UsageError:
    """Create error for an ambiguous Firefox package."""
    return UsageError(
        code="ERR_PACKAGE_NOT_SELECTED",
        message="Select one of the packages using --firefox-apk",
        context={"packages": packages},
        remediation="Packages found: " + ", ".join(packages),
    )


def package_not_found_error(package: str, packages: list[str]) -> UsageError:
    """Create error for an unknown --firefox-apk."""
    return UsageError(
        code="ERR_PACKAGE_NOT_FOUND",
        message=f"Package {package} was not found in list: {packages}",
        context={"package": package, "packages": packages},
        remediation="Check installed packages with 'adb shell pm list packages'.",
    )


def permission_not_granted_error(package: str, permission: str) -> UsageError:
    """Create error for a missing runtime permission."""
    return UsageError(
        code="ERR_PERMISSION_NOT_GRANTED",
        message=f"Required {permission} has not be granted for {package}",
        context={"package": package, "permission": permission},
        remediation="Grant it from the Android Settings or run: "
        f"adb shell pm grant {package} {permission}",
    )


def artifacts_dir_exists_error(artifacts_dir: str, device: str) -> WebExtError:
    """Create error for an artifacts dir name collision."""
    return WebExtError(
        code="ERR_ARTIFACTS_DIR_EXISTS",
        message=f"Cannot create artifacts directory {artifacts_dir} "
        f"because it exists on {device}",
        context={"artifacts_dir": artifacts_dir, "device": device},
        remediation="Run again with --adb-remove-old-artifacts.",
    )


def discovery_timeout_error(operation: str, timeout: float) -> DiscoveryTimeoutError:
    """Create error for a discovery deadline."""
    return DiscoveryTimeoutError(
        code="ERR_DISCOVERY_TIMEOUT",
        message=f"Timeout while waiting for {operation}",
        context={"operation": operation, "timeout_seconds": timeout},
        remediation="Increase --adb-discovery-timeout or check the device.",
    )


def user_abort_error(operation: str) -> UserAbortError:
    """Create error for a discovery cancelled from the keyboard."""
    return UserAbortError(
        code="ERR_USER_ABORT",
        message=f"Exiting {operation} on user request",
        context={"operation": operation},
        remediation="",
    )

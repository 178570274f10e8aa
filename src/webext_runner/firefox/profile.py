"""Firefox profile management - temporary, copied and reused profiles."""

from __future__ import annotations

import configparser
import json
import shutil
import sys
import tempfile
from pathlib import Path

import structlog

from webext_runner.errors import UsageError, WebExtError
from webext_runner.firefox.preferences import FirefoxPreferences, get_prefs
from webext_runner.models import Extension

logger = structlog.get_logger()

TEMP_PROFILE_PREFIX = "tmp-web-ext-"


class FirefoxProfile:
    """A profile directory plus the preferences written to its user.js."""

    def __init__(self, path: Path, temp_root: Path | None = None) -> None:
        self.path = path
        # Directory to delete on remove(); None for profiles owned by the user.
        self.temp_root = temp_root
        self.preferences: FirefoxPreferences = {}

    @property
    def temporary(self) -> bool:
        return self.temp_root is not None

    @property
    def extensions_dir(self) -> Path:
        return self.path / "extensions"

    @property
    def user_js(self) -> Path:
        return self.path / "user.js"

    def set_preferences(self, prefs: FirefoxPreferences) -> None:
        self.preferences.update(prefs)

    def update_preferences(self) -> None:
        """Write the collected preferences to user.js."""
        lines = [
            f"user_pref({json.dumps(name)}, {json.dumps(value)});"
            for name, value in self.preferences.items()
        ]
        self.user_js.write_text("\n".join(lines) + "\n", encoding="utf-8")

    def remove(self) -> None:
        """Delete the profile directory if this runner created it."""
        if self.temp_root is not None:
            shutil.rmtree(self.temp_root, ignore_errors=True)
            logger.debug("profile_removed", path=str(self.temp_root))


def configure_profile(
    profile: FirefoxProfile,
    app: str = "firefox",
    custom_prefs: FirefoxPreferences | None = None,
) -> FirefoxProfile:
    """Apply the development preferences (then custom ones) to profile."""
    profile.set_preferences(get_prefs(app))
    if custom_prefs:
        profile.set_preferences(custom_prefs)
    profile.update_preferences()
    return profile


def create_profile(
    app: str = "firefox", custom_prefs: FirefoxPreferences | None = None
) -> FirefoxProfile:
    """Create a new temporary profile."""
    path = Path(tempfile.mkdtemp(prefix=TEMP_PROFILE_PREFIX))
    logger.debug("profile_created", path=str(path))
    return configure_profile(FirefoxProfile(path, temp_root=path), app, custom_prefs)


def copy_profile(
    profile_directory: str,
    app: str = "firefox",
    custom_prefs: FirefoxPreferences | None = None,
) -> FirefoxProfile:
    """Copy an existing profile (a directory or a named profile) to a temporary one."""
    source = Path(profile_directory).expanduser()
    if not source.is_dir():
        logger.debug("profile_assumed_named", name=profile_directory)
        found = find_named_profile(profile_directory)
        if found is None:
            raise UsageError(
                code="ERR_PROFILE_NOT_FOUND",
                message=f"Could not copy Firefox profile from {profile_directory}",
                context={"profile": profile_directory},
                remediation="Pass an existing profile directory or a profile name "
                "listed in about:profiles.",
            )
        source = found

    dest = Path(tempfile.mkdtemp(prefix=TEMP_PROFILE_PREFIX)) / "profile"
    try:
        shutil.copytree(source, dest, ignore=shutil.ignore_patterns("lock", ".parentlock", "parent.lock"))
    except OSError as exc:
        shutil.rmtree(dest.parent, ignore_errors=True)
        raise WebExtError(
            code="ERR_PROFILE_COPY",
            message=f"Could not copy Firefox profile from {profile_directory}: {exc}",
            context={"profile": profile_directory},
        ) from exc
    logger.debug("profile_copied", source=str(source), dest=str(dest))
    return configure_profile(FirefoxProfile(dest, temp_root=dest.parent), app, custom_prefs)


def use_profile(
    profile_path: str,
    app: str = "firefox",
    custom_prefs: FirefoxPreferences | None = None,
) -> FirefoxProfile:
    """Use an existing profile in place, keeping any change made while running."""
    path = Path(profile_path).expanduser()
    if not path.is_dir():
        found = find_named_profile(profile_path)
        if found is None:
            raise UsageError(
                code="ERR_PROFILE_NOT_FOUND",
                message=f"Firefox profile not found: {profile_path}",
                context={"profile": profile_path},
                remediation="Pass an existing profile directory or a profile name.",
            )
        path = found
    return configure_profile(FirefoxProfile(path), app, custom_prefs)


def default_profiles_root() -> Path:
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / "Firefox"
    if sys.platform.startswith("win"):
        return Path.home() / "AppData" / "Roaming" / "Mozilla" / "Firefox"
    return Path.home() / ".mozilla" / "firefox"


def find_named_profile(name: str, root: Path | None = None) -> Path | None:
    """Resolve a profile name through profiles.ini."""
    root = root or default_profiles_root()
    ini_path = root / "profiles.ini"
    if not ini_path.is_file():
        return None
    parser = configparser.ConfigParser()
    parser.read(ini_path, encoding="utf-8")
    for section in parser.sections():
        if not section.startswith("Profile") or parser.get(section, "Name", fallback=None) != name:
            continue
        path = Path(parser.get(section, "Path"))
        if parser.get(section, "IsRelative", fallback="1") == "1":
            path = root / path
        return path
    return None


def install_extension(
    profile: FirefoxProfile,
    extension: Extension,
    as_proxy: bool = True,
    extension_path: str | None = None,
) -> Path:
    """Install an extension into the profile's extensions dir.

    As a proxy, a text file containing the source directory is written; otherwise
    the packaged xpi at extension_path is copied.
    """
    addon_id = extension.gecko_id
    if not addon_id:
        raise UsageError(
            code="ERR_MISSING_ADDON_ID",
            message="An explicit extension ID is required when installing to a profile",
            context={"source_dir": extension.source_dir},
            remediation="Set browser_specific_settings.gecko.id in manifest.json.",
        )
    profile.extensions_dir.mkdir(parents=True, exist_ok=True)

    if as_proxy:
        source = Path(extension.source_dir)
        if not source.is_dir():
            raise WebExtError(
                code="ERR_PROXY_INSTALL",
                message=f"proxy install: extensionPath must be the extension source directory; got: {source}",
                context={"source_dir": str(source)},
            )
        dest = profile.extensions_dir / addon_id
        dest.write_text(str(source.resolve()), encoding="utf-8")
        logger.debug("extension_proxy_installed", source=str(source), dest=str(dest))
        return dest

    if not extension_path:
        raise WebExtError(
            code="ERR_MISSING_XPI",
            message="A packaged extension path is required for a non-proxy install",
            context={"source_dir": extension.source_dir},
        )
    dest = profile.extensions_dir / f"{addon_id}.xpi"
    shutil.copyfile(extension_path, dest)
    logger.debug("extension_installed", source=extension_path, dest=str(dest))
    return dest

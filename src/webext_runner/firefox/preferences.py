"""Firefox preferences required for extension development."""

from __future__ import annotations

import re
from typing import Literal

from webext_runner.errors import UsageError, WebExtError

PrefValue = bool | str | int
FirefoxPreferences = dict[str, PrefValue]
PreferencesAppName = Literal["firefox", "fennec"]

_PREF_NAME_RE = re.compile(r"^[\w.\-]+$")

PREFS_COMMON: FirefoxPreferences = {
    # Allow debug output via dump to be printed to the system console
    "browser.dom.window.dump.enabled": True,
    # Warn about possibly incorrect code.
    "javascript.options.strict": True,
    "javascript.options.showInConsole": True,
    # Allow remote connections to the debugger.
    "devtools.debugger.remote-enabled": True,
    # Disable the prompt for allowing connections.
    "devtools.debugger.prompt-connection": False,
    # Turn off platform logging because it is a lot of info.
    "extensions.logging.enabled": False,
    # Disable extension updates and notifications.
    "extensions.checkCompatibility.nightly": False,
    "extensions.update.enabled": False,
    "extensions.update.notifyUser": False,
    # Only load extensions from the application and user profile.
    # AddonManager.SCOPE_PROFILE + AddonManager.SCOPE_APPLICATION
    "extensions.enabledScopes": 5,
    "extensions.getAddons.cache.enabled": False,
    "extensions.installDistroAddons": False,
    # Allow installing extensions dropped into the profile folder.
    "extensions.autoDisableScopes": 10,
    "app.update.enabled": False,
    # Point update checks to a nonexistent local URL for fast failures.
    "extensions.update.url": "http://localhost/extensions-dummy/updateURL",
    "extensions.blocklist.url": "http://localhost/extensions-dummy/blocklistURL",
    "extensions.webservice.discoverURL": "http://localhost/extensions-dummy/discoveryURL",
    # Allow unsigned add-ons.
    "xpinstall.signatures.required": False,
}

PREFS_FENNEC: FirefoxPreferences = {
    "browser.console.showInPanel": True,
    "browser.firstrun.show.uidiscovery": False,
    "devtools.remote.usb.enabled": True,
}

PREFS_FIREFOX: FirefoxPreferences = {
    "browser.startup.homepage": "about:blank",
    "startup.homepage_welcome_url": "about:blank",
    "startup.homepage_welcome_url.additional": "",
    "devtools.errorconsole.enabled": True,
    "devtools.chrome.enabled": True,
    # Make url-classifier updates so rare that they won't affect runs.
    "urlclassifier.updateinterval": 172800,
    "browser.safebrowsing.provider.0.gethashURL": "http://localhost/safebrowsing-dummy/gethash",
    "browser.safebrowsing.provider.0.keyURL": "http://localhost/safebrowsing-dummy/newkey",
    "browser.safebrowsing.provider.0.updateURL": "http://localhost/safebrowsing-dummy/update",
    # Disable self repair/SHIELD
    "browser.selfsupport.url": "https://localhost/selfrepair",
    # Disable Reader Mode UI tour
    "browser.reader.detectedFirstArticle": True,
}

_PREFS_BY_APP: dict[str, FirefoxPreferences] = {
    "fennec": PREFS_FENNEC,
    "firefox": PREFS_FIREFOX,
}


def get_prefs(app: str = "firefox") -> FirefoxPreferences:
    """Return the default development preferences for app."""
    app_prefs = _PREFS_BY_APP.get(app)
    if app_prefs is None:
        raise WebExtError(
            code="ERR_UNSUPPORTED_APP",
            message=f"Unsupported application: {app}",
            context={"app": app},
        )
    return {**PREFS_COMMON, **app_prefs}


def coerce_cli_custom_preference(cli_prefs: list[str]) -> FirefoxPreferences:
    """Parse repeated ``--pref name=value`` options.

    Integer and boolean literals are converted; everything else stays a string.
    """
    custom_prefs: FirefoxPreferences = {}
    for pref in cli_prefs:
        key, sep, raw_value = pref.partition("=")
        if not sep:
            raise UsageError(
                code="ERR_INCOMPLETE_PREF",
                message=f'Incomplete custom preference: "{pref}"',
                context={"pref": pref},
                remediation='Syntax expected: "prefname=prefvalue".',
            )
        if not _PREF_NAME_RE.match(key):
            raise UsageError(
                code="ERR_INVALID_PREF",
                message=f"Invalid custom preference name: {key}",
                context={"pref": pref},
                remediation="Preference names contain only letters, digits, '.', '-' and '_'.",
            )
        if key in ("devtools.debugger.remote-enabled", "devtools.debugger.prompt-connection"):
            raise UsageError(
                code="ERR_RESERVED_PREF",
                message=f"Cannot override a preference required for remote debugging: {key}",
                context={"pref": pref},
                remediation=f"Remove --pref {key}.",
            )

        value: PrefValue = raw_value
        if re.fullmatch(r"-?\d+", raw_value):
            value = int(raw_value)
        elif raw_value in ("true", "false"):
            value = raw_value == "true"
        custom_prefs[key] = value
    return custom_prefs

"""Companion extension that reloads development extensions inside Chromium."""

from __future__ import annotations

import json
import time
from pathlib import Path

import structlog

logger = structlog.get_logger()

RELOAD_ALL_MESSAGE = "webExtReloadAllExtensions"
RELOAD_COMPLETE_MESSAGE = "webExtReloadExtensionComplete"
SPECIAL_URL_PREFIXES = ("chrome://", "chrome-extension://")

MANIFEST = {
    "manifest_version": 2,
    "name": "web-ext Reload Manager Extension",
    "version": "1.0",
    "permissions": ["management", "tabs"],
    "background": {"scripts": ["bg.js"]},
}

_BACKGROUND_SCRIPT = """(function bgPage() {
  async function getAllDevExtensions() {
    const allExtensions = await new Promise(
      r => chrome.management.getAll(r));

    return allExtensions.filter((extension) => {
      return extension.enabled &&
        extension.installType === "development" &&
        extension.id !== chrome.runtime.id;
    });
  }

  const setEnabled = (extensionId, value) =>
    chrome.runtime.id == extensionId ?
    Promise.resolve() :
    new Promise(r => chrome.management.setEnabled(extensionId, value, r));

  async function reloadExtension(extensionId) {
    await setEnabled(extensionId, false);
    await setEnabled(extensionId, true);
  }

  const ws = new window.WebSocket(%(ws_url)s);

  const chromeTabList = %(tab_list)s;
  if (chromeTabList.length > 0) {
    chrome.runtime.onInstalled.addListener(details => {
      if (details.reason === chrome.runtime.OnInstalledReason.INSTALL) {
        chromeTabList.forEach(url => {
          chrome.tabs.create({ url });
        });
      }
    });
  }

  ws.onmessage = async (evt) => {
    const msg = JSON.parse(evt.data);
    if (msg.type === %(reload_all)s) {
      const devExtensions = await getAllDevExtensions();
      await Promise.all(devExtensions.map(ext => reloadExtension(ext.id)));
      ws.send(JSON.stringify({ type: %(reload_complete)s }));
    }
  };
})()
"""


def split_start_urls(start_urls: list[str]) -> tuple[list[str], list[str]]:
    """Separate URLs Chromium refuses on the command line.

    Returns (regular, special): chrome:// and chrome-extension:// URLs are
    special and get opened by the companion extension instead.
    """
    regular: list[str] = []
    special: list[str] = []
    for url in start_urls:
        if url.lower().startswith(SPECIAL_URL_PREFIXES):
            special.append(url)
        else:
            regular.append(url)
    return regular, special


def render_background_script(ws_url: str, special_start_urls: list[str]) -> str:
    return _BACKGROUND_SCRIPT % {
        "ws_url": json.dumps(ws_url),
        "tab_list": json.dumps(special_start_urls),
        "reload_all": json.dumps(RELOAD_ALL_MESSAGE),
        "reload_complete": json.dumps(RELOAD_COMPLETE_MESSAGE),
    }


def create_reload_manager_extension(
    parent_dir: Path, ws_url: str, special_start_urls: list[str] | None = None
) -> Path:
    """Write the companion extension under parent_dir and return its directory."""
    ext_path = parent_dir / f"reload-manager-extension-{int(time.time() * 1000)}"
    logger.debug("reload_manager_create", path=str(ext_path))
    ext_path.mkdir(parents=True, exist_ok=True)
    (ext_path / "manifest.json").write_text(json.dumps(MANIFEST), encoding="utf-8")
    (ext_path / "bg.js").write_text(
        render_background_script(ws_url, special_start_urls or []), encoding="utf-8"
    )
    return ext_path

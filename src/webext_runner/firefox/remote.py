"""High level remote Firefox operations on top of the RDP client."""

from __future__ import annotations

import asyncio
import socket
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

import structlog

from webext_runner.errors import (
    RDPError,
    addon_not_installed_error,
    rdp_error,
    reload_unsupported_error,
    remote_temp_install_not_supported_error,
)
from webext_runner.firefox.rdp_client import connect_to_firefox
from webext_runner.models import RemoteAddon

logger = structlog.get_logger()

# The default port that Firefox's remote debugger will listen on.
REMOTE_PORT = 6005


class RDPTransport(Protocol):
    """What RemoteFirefox needs from an RDP client."""

    async def request(self, request: str | dict[str, Any]) -> dict[str, Any]: ...

    async def disconnect(self) -> None: ...

    async def wait_closed(self) -> None: ...


class RemoteFirefox:
    """Installs and reloads temporary add-ons in a connected Firefox."""

    def __init__(self, client: RDPTransport) -> None:
        self.client = client
        # addon id -> request types its actor accepts
        self._request_types: dict[str, list[str]] = {}

    async def disconnect(self) -> None:
        await self.client.disconnect()

    async def wait_closed(self) -> None:
        await self.client.wait_closed()

    async def addon_request(self, addon: RemoteAddon, request_type: str) -> dict[str, Any]:
        """Send a request to an add-on actor."""
        try:
            return await self.client.request({"to": addon.actor, "type": request_type})
        except RDPError as exc:
            response = exc.context.get("response") or {"error": exc.message}
            raise rdp_error(request_type, response) from exc

    async def get_addons_actor(self) -> str:
        try:
            response = await self.client.request("getRoot")
        except RDPError as exc:
            response = exc.context.get("response") or {"error": exc.message}
            raise rdp_error("getRoot", response) from exc
        addons_actor = response.get("addonsActor")
        if not addons_actor:
            logger.debug("rdp_missing_addons_actor", response=response)
            raise remote_temp_install_not_supported_error()
        return str(addons_actor)

    async def install_temporary_addon(self, addon_path: str) -> RemoteAddon:
        """Install addon_path (a directory or an xpi) for this browser session."""
        addons_actor = await self.get_addons_actor()
        try:
            response = await self.client.request(
                {"to": addons_actor, "type": "installTemporaryAddon", "addonPath": addon_path}
            )
        except RDPError as exc:
            response = exc.context.get("response") or {"error": exc.message}
            raise rdp_error("installTemporaryAddon", response) from exc
        logger.debug("rdp_install_temporary_addon", response=response)
        logger.info("temporary_addon_installed", path=addon_path)
        return RemoteAddon.from_rdp(response.get("addon") or {})

    async def get_installed_addon(self, addon_id: str) -> RemoteAddon:
        try:
            response = await self.client.request("listAddons")
        except RDPError as exc:
            response = exc.context.get("response") or {"error": exc.message}
            raise rdp_error("listAddons", response) from exc
        addons = response.get("addons") or []
        for addon in addons:
            if addon.get("id") == addon_id:
                return RemoteAddon.from_rdp(addon)
        logger.debug("remote_addons", ids=[addon.get("id") for addon in addons])
        raise addon_not_installed_error(addon_id)

    async def check_for_addon_reloading(self, addon: RemoteAddon) -> RemoteAddon:
        """Probe once per add-on whether its actor supports reload."""
        request_types = self._request_types.get(addon.id)
        if request_types is None:
            response = await self.addon_request(addon, "requestTypes")
            request_types = list(response.get("requestTypes") or [])
            self._request_types[addon.id] = request_types
        if "reload" not in request_types:
            logger.debug("remote_request_types", request_types=request_types)
            raise reload_unsupported_error(request_types)
        return addon

    async def reload_addon(self, addon_id: str) -> None:
        addon = await self.get_installed_addon(addon_id)
        await self.check_for_addon_reloading(addon)
        await self.addon_request(addon, "reload")
        logger.info("extension_reloaded", addon_id=addon_id)


FirefoxConnector = Callable[[int], Awaitable[RemoteFirefox]]


async def connect(port: int = REMOTE_PORT) -> RemoteFirefox:
    logger.debug("firefox_connecting", port=port)
    client = await connect_to_firefox(port)
    logger.info("firefox_connected", port=port)
    return RemoteFirefox(client)


async def connect_with_max_retries(
    port: int,
    *,
    max_retries: int = 250,
    retry_interval: float = 0.12,
    connector: FirefoxConnector = connect,
) -> RemoteFirefox:
    """Connect to the remote debugger, retrying while Firefox is starting up."""
    last_error: OSError | None = None
    for attempt in range(max_retries + 1):
        try:
            return await connector(port)
        except ConnectionRefusedError as exc:
            last_error = exc
            logger.debug("firefox_connect_retry", attempt=attempt, port=port)
            await asyncio.sleep(retry_interval)
    logger.debug("firefox_connect_too_many_retries", port=port)
    assert last_error is not None
    raise last_error


def find_free_tcp_port() -> int:
    """Return a TCP port on 127.0.0.1 that is free right now."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return int(sock.getsockname()[1])

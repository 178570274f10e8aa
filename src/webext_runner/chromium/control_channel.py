"""Local WebSocket server the reload manager extension connects back to."""

from __future__ import annotations

import asyncio
import contextlib
import json
from typing import Any

import structlog
import websockets

from webext_runner.chromium.reload_manager import RELOAD_COMPLETE_MESSAGE

logger = structlog.get_logger()


class _PendingBroadcast:
    """Clients still expected to answer one broadcast."""

    def __init__(self, clients: set[Any]) -> None:
        self.clients = clients
        self.done: asyncio.Future[None] = asyncio.get_running_loop().create_future()

    def drop(self, client: Any) -> None:
        self.clients.discard(client)
        if not self.clients:
            self.resolve()

    def resolve(self) -> None:
        if not self.done.done():
            self.done.set_result(None)


class ReloadControlServer:
    """Broadcasts reload requests and waits for the first completion reply.

    Binds 127.0.0.1 on an ephemeral port. A broadcast with no connected
    clients resolves immediately, as does one whose clients all disconnect.
    """

    def __init__(self, host: str = "127.0.0.1", port: int = 0) -> None:
        self.host = host
        self._requested_port = port
        self._server: Any | None = None
        self._clients: set[Any] = set()
        self._pending: list[_PendingBroadcast] = []

    @property
    def port(self) -> int:
        if self._server is None:
            raise RuntimeError("reload control server is not started")
        return int(self._server.sockets[0].getsockname()[1])

    @property
    def url(self) -> str:
        return f"ws://{self.host}:{self.port}"

    @property
    def client_count(self) -> int:
        return len(self._clients)

    @property
    def is_serving(self) -> bool:
        return self._server is not None

    async def start(self) -> None:
        if self._server is not None:
            return
        self._server = await websockets.serve(self._handler, self.host, self._requested_port)
        logger.debug("reload_channel_listening", url=self.url)

    async def _handler(self, ws: Any) -> None:
        self._clients.add(ws)
        logger.debug("reload_channel_client_connected", clients=len(self._clients))
        try:
            async for raw_msg in ws:
                self._on_message(ws, raw_msg)
        except websockets.ConnectionClosed as exc:
            logger.debug("reload_channel_connection_error", error=str(exc))
        finally:
            self._clients.discard(ws)
            for pending in list(self._pending):
                pending.drop(ws)

    def _on_message(self, ws: Any, raw_msg: str | bytes) -> None:
        try:
            msg = json.loads(raw_msg)
        except ValueError:
            logger.debug("reload_channel_bad_message", message=str(raw_msg)[:200])
            return
        if not isinstance(msg, dict) or msg.get("type") != RELOAD_COMPLETE_MESSAGE:
            return
        for pending in list(self._pending):
            if ws in pending.clients:
                pending.resolve()

    async def broadcast(self, data: dict[str, Any]) -> None:
        """Send data to every open client, return once one reports completion."""
        clients = set(self._clients)
        if not clients:
            return

        pending = _PendingBroadcast(clients)
        self._pending.append(pending)
        try:
            payload = json.dumps(data)
            for client in list(clients):
                try:
                    await client.send(payload)
                except websockets.ConnectionClosed as exc:
                    logger.debug("reload_channel_send_failed", error=str(exc))
                    pending.drop(client)
            await pending.done
        finally:
            self._pending.remove(pending)

    async def close(self) -> None:
        """Disconnect all clients and stop listening."""
        server, self._server = self._server, None
        for pending in self._pending:
            pending.resolve()
        if server is None:
            return
        for client in list(self._clients):
            with contextlib.suppress(websockets.ConnectionClosed):
                await client.close()
        server.close()
        await server.wait_closed()
        logger.debug("reload_channel_closed")

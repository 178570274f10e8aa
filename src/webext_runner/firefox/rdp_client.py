"""Minimal Firefox remote debugging protocol (RDP) client over TCP."""

from __future__ import annotations

import asyncio
import contextlib
import json
from dataclasses import dataclass
from typing import Any

import structlog

from webext_runner.errors import RDPError, rdp_connection_closed_error

logger = structlog.get_logger()

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 6000

UNSOLICITED_EVENTS = frozenset(
    {
        "tabNavigated",
        "styleApplied",
        "propertyChange",
        "networkEventUpdate",
        "networkEvent",
        "newMutations",
        "frameUpdate",
        "tabListChanged",
    }
)


@dataclass
class ParseResult:
    """Outcome of parsing one packet from the incoming buffer."""

    data: bytes
    message: dict[str, Any] | None = None
    error: str | None = None
    fatal: bool = False


def parse_rdp_message(data: bytes) -> ParseResult:
    """Parse one ``<byte-length>:<json>`` packet from the head of data.

    Returns the remaining buffer. A packet that is not complete yet is left
    untouched so it can be parsed again once more data arrives.
    """
    sep_idx = data.find(b":")
    if sep_idx < 1:
        return ParseResult(data=data)

    try:
        byte_len = int(data[:sep_idx])
    except ValueError:
        return ParseResult(data=data, error="Error parsing RDP message length", fatal=True)

    if len(data) - (sep_idx + 1) < byte_len:
        return ParseResult(data=data)

    body = data[sep_idx + 1 : sep_idx + 1 + byte_len]
    rest = data[sep_idx + 1 + byte_len :]
    try:
        message = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        return ParseResult(data=rest, error=str(exc))
    return ParseResult(data=rest, message=message)


def encode_rdp_message(request: dict[str, Any]) -> bytes:
    body = json.dumps(request).encode()
    return str(len(body)).encode() + b":" + body


class RDPClient:
    """Request/response client over a persistent RDP connection.

    At most one request is in flight per actor: the protocol correlates a
    reply only by its ``from`` actor. Requests to a busy actor wait in a queue.
    """

    def __init__(self, host: str = DEFAULT_HOST) -> None:
        self._host = host
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._incoming = b""
        self._active: dict[str, asyncio.Future[dict[str, Any]]] = {}
        self._pending: list[tuple[dict[str, Any], asyncio.Future[dict[str, Any]]]] = []
        self._read_task: asyncio.Task[None] | None = None
        self._closed = asyncio.Event()

    @property
    def is_connected(self) -> bool:
        return self._writer is not None and not self._closed.is_set()

    async def connect(self, port: int = DEFAULT_PORT) -> dict[str, Any]:
        """Open the connection and wait for the root actor greeting."""
        self._reader, self._writer = await asyncio.open_connection(self._host, port)
        loop = asyncio.get_running_loop()
        greeting: asyncio.Future[dict[str, Any]] = loop.create_future()
        self._active["root"] = greeting
        self._read_task = asyncio.create_task(self._read_loop())
        logger.debug("rdp_connecting", host=self._host, port=port)
        return await greeting

    async def disconnect(self) -> None:
        """Close the connection and fail every outstanding request."""
        if self._writer is None:
            return
        writer = self._writer
        self._writer = None
        if self._read_task and not self._read_task.done():
            self._read_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._read_task
        writer.close()
        with contextlib.suppress(ConnectionError, OSError):
            await writer.wait_closed()
        self._reject_all(rdp_connection_closed_error())
        self._closed.set()

    async def wait_closed(self) -> None:
        """Suspend until the connection ends, for any reason."""
        await self._closed.wait()

    async def request(self, request: str | dict[str, Any]) -> dict[str, Any]:
        """Send a request and wait for the reply from its target actor.

        A string is shorthand for a request of that type to the root actor.
        Error replies raise RDPError carrying the response.
        """
        if isinstance(request, str):
            request = {"to": "root", "type": request}
        if request.get("to") is None:
            raise ValueError(f"Unexpected RDP request without target actor: {request.get('type')}")
        if not self.is_connected:
            raise rdp_connection_closed_error()

        loop = asyncio.get_running_loop()
        future: asyncio.Future[dict[str, Any]] = loop.create_future()
        self._pending.append((request, future))
        self._flush_pending()
        return await future

    def _flush_pending(self) -> None:
        still_pending = []
        for request, future in self._pending:
            if request["to"] in self._active:
                still_pending.append((request, future))
                continue
            if self._writer is None:
                future.set_exception(rdp_connection_closed_error())
                continue
            try:
                self._writer.write(encode_rdp_message(request))
            except (ConnectionError, OSError, TypeError, ValueError) as exc:
                future.set_exception(exc)
                continue
            self._active[request["to"]] = future
        self._pending = still_pending

    def _handle_message(self, message: dict[str, Any]) -> None:
        sender = message.get("from")
        if sender is None:
            if message.get("error"):
                logger.debug("rdp_error_message", message=message)
            else:
                logger.warning("rdp_message_without_sender", message=message)
            return

        if message.get("type") in UNSOLICITED_EVENTS:
            logger.debug("rdp_unsolicited_event", type=message.get("type"), sender=sender)
            return

        future = self._active.pop(sender, None)
        if future is None:
            logger.warning("rdp_unexpected_message", message=message)
            return
        if not future.done():
            if message.get("error"):
                future.set_exception(
                    RDPError(
                        code="ERR_RDP_RESPONSE",
                        message=f"{message.get('error')}: {message.get('message', '')}",
                        context={"response": message},
                    )
                )
            else:
                future.set_result(message)
        self._flush_pending()

    async def _read_loop(self) -> None:
        assert self._reader is not None
        try:
            while True:
                chunk = await self._reader.read(65536)
                if not chunk:
                    logger.debug("rdp_connection_end")
                    break
                self._incoming += chunk
                if not self._drain_incoming():
                    break
        except asyncio.CancelledError:
            return
        except (ConnectionError, OSError) as exc:
            logger.debug("rdp_connection_error", error=str(exc))
        finally:
            if self._writer is not None:
                self._writer.close()
                self._writer = None
            self._reject_all(rdp_connection_closed_error())
            self._closed.set()

    def _drain_incoming(self) -> bool:
        """Handle every complete packet. Returns False on a fatal parse error."""
        while True:
            result = parse_rdp_message(self._incoming)
            self._incoming = result.data
            if result.error:
                logger.warning("rdp_parse_error", error=result.error, fatal=result.fatal)
                if result.fatal:
                    return False
                continue
            if result.message is None:
                return True
            self._handle_message(result.message)

    def _reject_all(self, error: Exception) -> None:
        for future in self._active.values():
            if not future.done():
                future.set_exception(error)
        self._active.clear()
        for _, future in self._pending:
            if not future.done():
                future.set_exception(error)
        self._pending = []


async def connect_to_firefox(port: int, host: str = DEFAULT_HOST) -> RDPClient:
    client = RDPClient(host)
    await client.connect(port)
    return client

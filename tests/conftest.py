"""Pytest configuration and fixtures."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import pytest
import structlog

from webext_runner.errors import RDPError
from webext_runner.models import Extension


class FakeRDPTransport:
    """In-memory stand-in for an RDP client.

    responses maps a request type to the reply body, a callable building it,
    or an exception to raise.
    """

    def __init__(self, responses: dict[str, Any] | None = None) -> None:
        self.responses = responses or {}
        self.requests: list[dict[str, Any]] = []
        self.disconnected = False
        self._closed = asyncio.Event()

    async def request(self, request: str | dict[str, Any]) -> dict[str, Any]:
        if isinstance(request, str):
            request = {"to": "root", "type": request}
        self.requests.append(request)
        response = self.responses.get(request["type"], {})
        if isinstance(response, BaseException):
            raise response
        if callable(response):
            response = response(request)
        return {"from": request["to"], **response}

    async def disconnect(self) -> None:
        self.disconnected = True
        self._closed.set()

    async def wait_closed(self) -> None:
        await self._closed.wait()

    def close_from_remote(self) -> None:
        self._closed.set()

    def requests_of_type(self, request_type: str) -> list[dict[str, Any]]:
        return [r for r in self.requests if r["type"] == request_type]


def addon_responses(addon_id: str = "x", request_types: list[str] | None = None) -> dict[str, Any]:
    """Replies of a Firefox that installs and reloads one add-on."""
    return {
        "getRoot": {"addonsActor": "server1.conn0.addonsActor1"},
        "installTemporaryAddon": {"addon": {"id": addon_id, "actor": addon_id}},
        "listAddons": {"addons": [{"id": addon_id, "actor": addon_id}]},
        "requestTypes": {"requestTypes": request_types or ["reload", "requestTypes"]},
        "reload": {},
    }


def rdp_error_reply(error: str, message: str = "") -> RDPError:
    response = {"error": error, "message": message}
    return RDPError(code="ERR_RDP_RESPONSE", message=f"{error}: {message}", context={"response": response})


def write_extension(path: Path, name: str = "My Ext", version: str = "1.0", **extra: Any) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    manifest = {"manifest_version": 2, "name": name, "version": version, **extra}
    (path / "manifest.json").write_text(json.dumps(manifest), encoding="utf-8")
    (path / "background.js").write_text("console.log('hi');\n", encoding="utf-8")
    return path


@pytest.fixture(autouse=True)
def _reset_structlog() -> Any:
    """Undo logging configuration done by CLI tests, whose streams get closed."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def extension_dir(tmp_path: Path) -> Path:
    """Unpacked extension source directory."""
    return write_extension(tmp_path / "my-ext")


@pytest.fixture
def extension(extension_dir: Path) -> Extension:
    """Extension loaded from extension_dir."""
    manifest = json.loads((extension_dir / "manifest.json").read_text(encoding="utf-8"))
    return Extension(source_dir=str(extension_dir), manifest_data=manifest)


@pytest.fixture
def fake_transport() -> FakeRDPTransport:
    """RDP transport for a Firefox with one add-on "x"."""
    return FakeRDPTransport(addon_responses())


@pytest.fixture
def make_transport() -> Any:
    """Factory for FakeRDPTransport."""
    return FakeRDPTransport


@pytest.fixture
def firefox_replies() -> Any:
    """Factory for the replies of a Firefox that can install and reload add-ons."""
    return addon_responses


@pytest.fixture
def make_extension_dir() -> Any:
    """Factory writing an extension source directory."""
    return write_extension


@pytest.fixture
def make_rdp_error() -> Any:
    """Factory for an RDP error reply raised by the transport."""
    return rdp_error_reply

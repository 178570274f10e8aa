"""Shared data model for runners."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class Extension:
    """One unpacked extension to load. Runners only read it."""

    source_dir: str
    manifest_data: dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def name(self) -> str:
        return str(self.manifest_data.get("name", ""))

    @property
    def version(self) -> str:
        return str(self.manifest_data.get("version", ""))

    @property
    def gecko_id(self) -> str | None:
        """Explicit Firefox add-on id from the manifest, if any."""
        for key in ("browser_specific_settings", "applications"):
            settings = self.manifest_data.get(key) or {}
            gecko = settings.get("gecko") or {}
            if gecko.get("id"):
                return str(gecko["id"])
        return None


@dataclass
class ReloadResult:
    """Outcome of one reload attempt on one runner.

    No reload_error means success.
    """

    runner_name: str
    source_dir: str | None = None
    reload_error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.reload_error is None


@dataclass(frozen=True)
class RemoteAddon:
    """Temporary add-on handle returned by the remote Firefox.

    The id is stable; the actor is only valid for the current browser session.
    """

    id: str
    actor: str | None = None

    @classmethod
    def from_rdp(cls, data: dict[str, Any]) -> RemoteAddon:
        actor = data.get("actor")
        return cls(id=str(data.get("id") or ""), actor=actor if isinstance(actor, str) else None)


@dataclass(frozen=True)
class BuildResult:
    """Packaged extension produced by the build collaborator."""

    extension_path: str

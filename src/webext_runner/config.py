"""Centralised configuration via Pydantic Settings."""

from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Defaults for the run command, overridable from WEB_EXT_* environment variables.

    Command line options take precedence over these values.
    """

    model_config = {"env_prefix": "WEB_EXT_", "frozen": True}

    verbose: bool = False

    # Browser binaries (None: look them up on PATH / platform defaults)
    firefox_binary: str | None = None
    chromium_binary: str | None = None

    # ADB server
    adb_host: str = "127.0.0.1"
    adb_port: int = 5037

    # Firefox for Android RDP socket discovery (seconds)
    adb_discovery_timeout: float = 180.0
    adb_discovery_interval: float = 3.0

    # Firefox remote debugger connection retries
    rdp_max_retries: int = 250
    rdp_retry_interval: float = 0.12

    # Source watcher
    watch_debounce: float = 1.0


def get_settings() -> Settings:
    """Load settings from the environment."""
    return Settings()

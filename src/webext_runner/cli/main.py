"""CLI entry point using Typer."""

from __future__ import annotations

import asyncio

import typer
from pydantic import ValidationError

from webext_runner.cmd.run import RunOptions
from webext_runner.cmd.run import run as run_extensions
from webext_runner.config import get_settings
from webext_runner.errors import WebExtError
from webext_runner.log import configure_logging

app = typer.Typer(
    name="webext-runner",
    help="Run a browser extension in Firefox, Firefox for Android or Chromium and reload it on changes",
    no_args_is_help=True,
)


@app.command()
def version() -> None:
    """Show version information."""
    from webext_runner import __version__

    typer.echo(f"webext-runner v{__version__}")


@app.command()
def run(
    source_dir: list[str] = typer.Option(
        ["."], "--source-dir", "-s", help="Extension source directory (repeatable)"
    ),
    artifacts_dir: str | None = typer.Option(
        None, "--artifacts-dir", "-a", help="Directory for built artifacts"
    ),
    target: list[str] | None = typer.Option(
        None,
        "--target",
        "-t",
        help="firefox-desktop, firefox-android or chromium (repeatable)",
    ),
    firefox: str | None = typer.Option(
        None, "--firefox", "-f", help="Firefox executable path or name"
    ),
    firefox_profile: str | None = typer.Option(
        None, "--firefox-profile", "-p", help="Firefox profile path or name"
    ),
    keep_profile_changes: bool = typer.Option(
        False, "--keep-profile-changes", help="Run directly in the given profile"
    ),
    pre_install: bool = typer.Option(
        False, "--pre-install", help="Install into the profile before startup (disables reload)"
    ),
    pref: list[str] | None = typer.Option(
        None, "--pref", help="Custom Firefox preference name=value (repeatable)"
    ),
    start_url: list[str] | None = typer.Option(
        None, "--start-url", "-u", help="URL to open at startup (repeatable)"
    ),
    browser_console: bool = typer.Option(
        False, "--browser-console", "--bc", help="Open the Browser Console"
    ),
    arg: list[str] | None = typer.Option(
        None, "--arg", help="Extra browser argument (repeatable)"
    ),
    no_reload: bool = typer.Option(False, "--no-reload", help="Do not reload on changes"),
    no_input: bool = typer.Option(False, "--no-input", help="Disable keypress commands"),
    watch_file: list[str] | None = typer.Option(
        None, "--watch-file", help="Only reload when this file changes (repeatable)"
    ),
    watch_ignored: list[str] | None = typer.Option(
        None, "--watch-ignored", help="Glob pattern of paths to ignore (repeatable)"
    ),
    adb_host: str | None = typer.Option(None, "--adb-host", help="adb server host"),
    adb_port: int | None = typer.Option(None, "--adb-port", help="adb server port"),
    adb_device: str | None = typer.Option(
        None, "--adb-device", "--android-device", help="Android device serial"
    ),
    adb_discovery_timeout: float | None = typer.Option(
        None, "--adb-discovery-timeout", help="Seconds to wait for the Firefox debugger socket"
    ),
    adb_remove_old_artifacts: bool = typer.Option(
        False, "--adb-remove-old-artifacts", help="Remove leftover artifacts on the device"
    ),
    firefox_apk: str | None = typer.Option(
        None, "--firefox-apk", help="Firefox for Android package to run"
    ),
    firefox_apk_component: str | None = typer.Option(
        None, "--firefox-apk-component", help="Activity component of the package"
    ),
    chromium_binary: str | None = typer.Option(
        None, "--chromium-binary", help="Chromium executable path"
    ),
    chromium_profile: str | None = typer.Option(
        None, "--chromium-profile", help="Chromium profile or user-data-dir"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug output"),
) -> None:
    """Run the extension and reload it when its sources change."""
    settings = get_settings()
    configure_logging(verbose or settings.verbose)

    try:
        options = RunOptions(
            source_dirs=source_dir,
            artifacts_dir=artifacts_dir,
            targets=target or [],
            firefox_binary=firefox,
            firefox_profile=firefox_profile,
            keep_profile_changes=keep_profile_changes,
            pre_install=pre_install,
            prefs=pref or [],
            start_urls=start_url or [],
            browser_console=browser_console,
            args=arg or [],
            no_reload=no_reload,
            no_input=no_input,
            watch_files=watch_file or [],
            watch_ignored=watch_ignored or [],
            adb_host=adb_host,
            adb_port=adb_port,
            adb_device=adb_device,
            adb_discovery_timeout=adb_discovery_timeout,
            adb_remove_old_artifacts=adb_remove_old_artifacts,
            firefox_apk=firefox_apk,
            firefox_apk_component=firefox_apk_component,
            chromium_binary=chromium_binary,
            chromium_profile=chromium_profile,
        )
    except ValidationError as exc:
        typer.echo(f"Error: {exc}")
        raise typer.Exit(code=1) from None

    try:
        asyncio.run(run_extensions(options, settings=settings))
    except WebExtError as exc:
        _render_error(exc)
        raise typer.Exit(code=1) from None


def _render_error(exc: WebExtError) -> None:
    typer.echo(f"Error: {exc}", err=True)
    if exc.remediation:
        typer.echo(f"Hint: {exc.remediation}", err=True)


if __name__ == "__main__":
    app()

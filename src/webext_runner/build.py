"""Build collaborator: manifest loading, file filtering and zip packaging."""

from __future__ import annotations

import fnmatch
import json
import re
import zipfile
from pathlib import Path, PurePosixPath
from typing import Any

import structlog

from webext_runner.errors import InvalidManifest
from webext_runner.models import BuildResult

logger = structlog.get_logger()

BASE_IGNORED_PATTERNS = (
    "*.xpi",
    "*.zip",
    ".*",
    "node_modules",
)


def get_validated_manifest(source_dir: str | Path) -> dict[str, Any]:
    """Load manifest.json from source_dir; name and version are required."""
    manifest_file = Path(source_dir) / "manifest.json"
    logger.debug("manifest_load", path=str(manifest_file))
    try:
        raw = manifest_file.read_text(encoding="utf-8-sig")
    except OSError as exc:
        raise InvalidManifest(
            code="ERR_MANIFEST_READ",
            message=f"Could not read manifest.json file at {manifest_file}: {exc}",
            context={"path": str(manifest_file)},
            remediation="Pass the extension directory with --source-dir.",
        ) from exc

    try:
        manifest = json.loads(raw)
    except ValueError as exc:
        raise InvalidManifest(
            code="ERR_MANIFEST_PARSE",
            message=f"Error parsing manifest.json file at {manifest_file}: {exc}",
            context={"path": str(manifest_file)},
            remediation="Fix the JSON syntax of manifest.json.",
        ) from exc

    if not isinstance(manifest, dict):
        manifest = {}
    missing = [prop for prop in ("name", "version") if not manifest.get(prop)]
    if missing:
        raise InvalidManifest(
            code="ERR_MANIFEST_INVALID",
            message=f"Manifest at {manifest_file} is invalid: missing "
            + ", ".join(f'"{prop}"' for prop in missing),
            context={"path": str(manifest_file), "missing": missing},
            remediation="Add the missing properties to manifest.json.",
        )
    return manifest


def _is_sub_path(parent: Path, child: Path) -> bool:
    try:
        relative = child.relative_to(parent)
    except ValueError:
        return False
    return str(relative) not in ("", ".")


class FileFilter:
    """Decides which files belong to the extension.

    Patterns without a slash match any path component; patterns with a
    slash match the path relative to the source dir.
    """

    def __init__(
        self,
        source_dir: str | Path,
        artifacts_dir: str | Path | None = None,
        ignore_files: list[str] | None = None,
        base_ignored_patterns: tuple[str, ...] = BASE_IGNORED_PATTERNS,
    ) -> None:
        self.source_dir = Path(source_dir).resolve()
        self.patterns: list[str] = [*base_ignored_patterns, *(ignore_files or [])]
        self.artifacts_dir: Path | None = None
        if artifacts_dir is not None:
            resolved = Path(artifacts_dir).resolve()
            if _is_sub_path(self.source_dir, resolved):
                logger.debug("file_filter_ignore_artifacts", path=str(resolved))
                self.artifacts_dir = resolved

    def want_file(self, path: str | Path) -> bool:
        resolved = (self.source_dir / path).resolve()
        if self.artifacts_dir is not None and (
            resolved == self.artifacts_dir or _is_sub_path(self.artifacts_dir, resolved)
        ):
            return False
        try:
            relative = PurePosixPath(resolved.relative_to(self.source_dir).as_posix())
        except ValueError:
            relative = PurePosixPath(resolved.as_posix())

        for pattern in self.patterns:
            if "/" in pattern.strip("/"):
                if fnmatch.fnmatch(str(relative), pattern.strip("/")) or fnmatch.fnmatch(
                    resolved.as_posix(), pattern
                ):
                    logger.debug("file_filter_ignore", path=str(relative), pattern=pattern)
                    return False
            elif any(fnmatch.fnmatch(part, pattern.strip("/")) for part in relative.parts):
                logger.debug("file_filter_ignore", path=str(relative), pattern=pattern)
                return False
        return True


def safe_file_name(name: str) -> str:
    return re.sub(r"[^a-z0-9.\-]+", "_", name.lower())


def build_extension(
    source_dir: str | Path,
    artifacts_dir: str | Path,
    manifest_data: dict[str, Any] | None = None,
    file_filter: FileFilter | None = None,
    filename: str | None = None,
) -> BuildResult:
    """Zip source_dir into artifacts_dir and return the archive path."""
    source = Path(source_dir).resolve()
    artifacts = Path(artifacts_dir).resolve()
    manifest = manifest_data or get_validated_manifest(source)
    file_filter = file_filter or FileFilter(source, artifacts_dir=artifacts)

    artifacts.mkdir(parents=True, exist_ok=True)
    name = filename or f"{safe_file_name(str(manifest['name']))}-{manifest['version']}.zip"
    extension_path = artifacts / name

    count = 0
    with zipfile.ZipFile(extension_path, "w", zipfile.ZIP_DEFLATED) as zf:
        for path in sorted(source.rglob("*")):
            if not path.is_file() or not file_filter.want_file(path):
                continue
            zf.write(path, path.relative_to(source).as_posix())
            count += 1

    logger.info("extension_built", path=str(extension_path), files=count)
    return BuildResult(extension_path=str(extension_path))

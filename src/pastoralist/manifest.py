from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from .cache import RunCache, normalize_path
from .runtime import emit
from .types import NPM, PNPM, YARN

MANIFEST_FILENAME = "package.json"

LOCK_FILES = (
    ("bun.lockb", "bun"),
    ("bun.lock", "bun"),
    ("yarn.lock", "yarn"),
    ("pnpm-lock.yaml", "pnpm"),
)

_DIALECT_FOR_PACKAGE_MANAGER = {
    "bun": NPM,
    "npm": NPM,
    "yarn": YARN,
    "pnpm": PNPM,
}


class ManifestWriteError(ValueError):
    pass


def _log(message: str, *, level: str = "debug") -> None:
    emit("manifest", message, level=level)


def _parse_json_file(path: str) -> dict[str, Any] | None:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        _log(f"No manifest at {path}")
        return None
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        _log(f"Invalid JSON at {path}: {exc}", level="error")
        return None
    if not isinstance(data, dict):
        _log(f"Manifest at {path} is not a JSON object", level="error")
        return None
    return data


def load_manifest(
    path: str | os.PathLike[str], cache: RunCache
) -> dict[str, Any] | None:
    if cache.has_manifest(path):
        return cache.get_manifest(path)
    data = _parse_json_file(normalize_path(path))
    cache.store_manifest(path, data)
    return data


def _is_valid_root_content(content: str) -> bool:
    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        return False
    return isinstance(parsed, dict) and bool(parsed.get("name"))


def write_manifest(
    path: str | os.PathLike[str],
    content: str,
    cache: RunCache,
    *,
    root_path: str | os.PathLike[str] | None = None,
) -> None:
    target = normalize_path(path)
    if not target.endswith(".json"):
        raise ManifestWriteError(f"Refusing to write non-JSON target: {target}")
    if root_path is not None and target == normalize_path(root_path):
        if not _is_valid_root_content(content):
            raise ManifestWriteError(
                f"Refusing to write root manifest without a 'name': {target}"
            )
    Path(target).write_text(content, encoding="utf-8")
    cache.invalidate_manifest(target)
    _log(f"Wrote {target}")


def merged_dependencies(manifest: dict[str, Any] | None) -> dict[str, str]:
    if not manifest:
        return {}
    merged: dict[str, str] = {}
    for key in ("dependencies", "devDependencies", "peerDependencies"):
        block = manifest.get(key)
        if isinstance(block, dict):
            merged.update({str(k): str(v) for k, v in block.items()})
    return merged


def detect_dialect(manifest: dict[str, Any] | None) -> str | None:
    """Return the dialect a manifest already uses, preferring resolutions."""
    if not manifest:
        return None
    if manifest.get("resolutions") is not None:
        return YARN
    if manifest.get("overrides") is not None:
        return NPM
    pnpm = manifest.get("pnpm")
    if isinstance(pnpm, dict) and pnpm.get("overrides") is not None:
        return PNPM
    return None


def detect_package_manager(root: str | os.PathLike[str] = ".") -> str:
    for filename, manager in LOCK_FILES:
        if (Path(root) / filename).exists():
            return manager
    return "npm"


def dialect_for_package_manager(manager: str) -> str:
    return _DIALECT_FOR_PACKAGE_MANAGER.get(manager, NPM)


def resolve_dialect(
    manifest: dict[str, Any] | None, root: str | os.PathLike[str] = "."
) -> str:
    existing = detect_dialect(manifest)
    if existing:
        return existing
    return dialect_for_package_manager(detect_package_manager(root))


def consumer_name(manifest: dict[str, Any] | None, path: str, root: str) -> str:
    name = (manifest or {}).get("name")
    if isinstance(name, str) and name:
        return name
    try:
        return Path(path).resolve().relative_to(Path(root).resolve()).as_posix()
    except ValueError:
        return str(path)

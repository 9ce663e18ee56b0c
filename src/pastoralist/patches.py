from __future__ import annotations

from pathlib import Path, PurePosixPath
from typing import Mapping, Sequence

from .files import FileLister, list_files
from .runtime import emit
from .types import Appendix, AppendixEntry, split_appendix_key

PATCH_PATTERNS = [
    "patches/*.patch",
    ".patches/*.patch",
    "*.patch",
    "patches/**/*.patch",
]
PATCH_SUFFIX = ".patch"


def _log(message: str, *, level: str = "debug") -> None:
    emit("patches", message, level=level)


def parse_patch_package(filename: str) -> str | None:
    """
    Map a patch filename to the package it patches.

    `lodash+4.17.21.patch` -> `lodash`, `@babel+core+7.20.0.patch` ->
    `@babel/core`, `lodash.patch` -> `lodash`.
    """
    basename = PurePosixPath(filename.replace("\\", "/")).name
    if not basename.endswith(PATCH_SUFFIX):
        return None
    stem = basename[: -len(PATCH_SUFFIX)]
    if not stem:
        return None
    if "+" not in stem:
        return stem
    parts = stem.split("+")
    if stem.startswith("@") and len(parts) >= 2:
        return f"{parts[0]}/{parts[1]}"
    return parts[0] or None


def build_patch_map(patch_files: Sequence[str]) -> dict[str, list[str]]:
    patch_map: dict[str, list[str]] = {}
    for patch_file in patch_files:
        package = parse_patch_package(patch_file)
        if not package:
            continue
        _log(f"Found patch for {package}: {patch_file}")
        patch_map.setdefault(package, []).append(patch_file)
    return {name: sorted(set(files)) for name, files in patch_map.items()}


def detect_patches(
    root: str = ".", *, lister: FileLister = list_files
) -> dict[str, list[str]]:
    try:
        patch_files = lister(PATCH_PATTERNS, root, [])
    except OSError as exc:
        _log(f"Error detecting patches: {exc}", level="error")
        return {}
    base = Path(root).resolve()
    relative = []
    for path in patch_files:
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = base / candidate
        try:
            relative.append(candidate.resolve().relative_to(base).as_posix())
        except ValueError:
            relative.append(candidate.as_posix())
    return build_patch_map(relative)


def attach_patches(appendix: Appendix, patch_map: Mapping[str, list[str]]) -> Appendix:
    attached: Appendix = {}
    for key, entry in appendix.items():
        package, _ = split_appendix_key(key)
        patches = patch_map.get(package) or []
        if not patches:
            attached[key] = entry
            continue
        attached[key] = AppendixEntry(
            dependents=dict(entry.dependents),
            ledger=entry.ledger,
            patches=list(patches),
            extra=dict(entry.extra),
        )
    return attached


def find_unused_patches(
    patch_map: Mapping[str, list[str]], dependencies: Mapping[str, str]
) -> list[str]:
    unused: list[str] = []
    for package in sorted(patch_map):
        if package in dependencies:
            continue
        _log(f"Found unused patches for {package}: {', '.join(patch_map[package])}")
        unused.extend(patch_map[package])
    return unused

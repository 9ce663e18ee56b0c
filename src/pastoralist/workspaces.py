from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Sequence

from .appendix import AppendixBuilder, LedgerSources, merge_dependents
from .cache import RunCache, normalize_path
from .files import FileLister, list_files
from .manifest import (
    MANIFEST_FILENAME,
    consumer_name,
    load_manifest,
    merged_dependencies,
)
from .overrides import normalize_overrides
from .runtime import emit
from .types import (
    Appendix,
    AppendixEntry,
    OverrideValue,
    appendix_from_dict,
    split_appendix_key,
)

WORKSPACE_KEYWORDS = {"workspace", "workspaces"}


class NoWorkspaceManifestsError(FileNotFoundError):
    pass


def _log(message: str, *, level: str = "debug") -> None:
    emit("workspaces", message, level=level)


@dataclass
class WorkspaceScan:
    appendix: Appendix = field(default_factory=dict)
    dependencies: dict[str, str] = field(default_factory=dict)
    manifests: list[str] = field(default_factory=list)


def _workspace_globs(manifest: Mapping[str, Any]) -> list[str]:
    workspaces = manifest.get("workspaces")
    if isinstance(workspaces, dict):
        workspaces = workspaces.get("packages")
    if not isinstance(workspaces, list):
        return []
    return [
        f"{str(ws).rstrip('/')}/{MANIFEST_FILENAME}"
        for ws in workspaces
        if isinstance(ws, str) and ws
    ]


def resolve_dep_paths(
    config_dep_paths: Any,
    manifest: Mapping[str, Any] | None,
    cli_dep_paths: Sequence[str] | None = None,
) -> list[str] | None:
    """Pick the workspace manifest globs for this run, or None for root-only."""
    if cli_dep_paths:
        return list(cli_dep_paths)
    manifest = manifest or {}
    if isinstance(config_dep_paths, str) and config_dep_paths in WORKSPACE_KEYWORDS:
        return _workspace_globs(manifest) or None
    if isinstance(config_dep_paths, list):
        return [str(p) for p in config_dep_paths if p] or None
    if config_dep_paths is None and manifest.get("workspaces"):
        return _workspace_globs(manifest) or None
    return None


def find_workspace_manifests(
    patterns: Sequence[str],
    root: str = ".",
    ignore: Sequence[str] = (),
    *,
    root_manifest: str | None = None,
    lister: FileLister = list_files,
) -> list[str]:
    if not patterns:
        return []
    _log(f"Searching {', '.join(patterns)} under {root} (ignoring {list(ignore)})")
    files = lister(list(patterns), root, list(ignore))
    if root_manifest is not None:
        excluded = normalize_path(root_manifest)
        files = [f for f in files if normalize_path(f) != excluded]
    if not files:
        raise NoWorkspaceManifestsError(
            f"No {MANIFEST_FILENAME} files found matching patterns: "
            f"{', '.join(patterns)} in directory: {root}"
        )
    _log(f"Found {len(files)} workspace manifests")
    return files


def unify_overrides(
    root_overrides: Mapping[str, OverrideValue],
    workspace_overrides: Mapping[str, OverrideValue] | None,
    *,
    source: str = "workspace",
) -> dict[str, OverrideValue]:
    """Root pins win; a workspace only contributes its dependents."""
    for name, value in (workspace_overrides or {}).items():
        if name not in root_overrides:
            _log(
                f"{source}: override for {name} is not declared in the root; ignored",
                level="warning",
            )
        elif root_overrides[name] != value:
            _log(
                f"{source}: override for {name} differs from the root; "
                "using the root value",
                level="warning",
            )
    return dict(root_overrides)


def aggregate_workspace_dependencies(
    paths: Sequence[str], cache: RunCache
) -> dict[str, str]:
    merged: dict[str, str] = {}
    for path in paths:
        manifest = load_manifest(path, cache)
        if manifest is None:
            continue
        merged.update(merged_dependencies(manifest))
    return merged


def find_missing_in_root(
    overrides: Mapping[str, OverrideValue],
    root_dependencies: Mapping[str, str],
    *,
    has_dep_paths: bool = False,
) -> list[str]:
    missing = [name for name in overrides if name not in root_dependencies]
    if missing and not has_dep_paths:
        _log(
            "Found overrides for packages not in root dependencies: "
            + ", ".join(missing),
            level="info",
        )
        _log(
            "For monorepo support, pass --dep-paths or set pastoralist.depPaths "
            "in package.json",
            level="info",
        )
    return missing


def _override_path_appendices(
    override_paths: Mapping[str, Any] | None,
) -> list[Appendix]:
    if not isinstance(override_paths, Mapping):
        return []
    return [appendix_from_dict(override_paths[path]) for path in sorted(override_paths)]


def tracked_in_override_paths(
    names: Sequence[str], override_paths: Mapping[str, Any] | None
) -> list[str]:
    tracked_names = {
        split_appendix_key(key)[0]
        for path_appendix in _override_path_appendices(override_paths)
        for key in path_appendix
    }
    return [name for name in names if name in tracked_names]


def merge_override_paths(
    appendix: Appendix,
    override_paths: Mapping[str, Any] | None,
    missing_in_root: Sequence[str],
) -> Appendix:
    if not override_paths or not missing_in_root:
        return appendix
    _log("Using overridePaths configuration for monorepo support")
    missing = set(missing_in_root)
    merged: Appendix = dict(appendix)
    for path_appendix in _override_path_appendices(override_paths):
        for key, incoming in path_appendix.items():
            if split_appendix_key(key)[0] not in missing:
                continue
            existing = merged.get(key)
            if existing is None:
                merged[key] = incoming
                continue
            merged[key] = AppendixEntry(
                dependents=merge_dependents(existing.dependents, incoming.dependents),
                ledger=existing.ledger or incoming.ledger,
                patches=sorted(set(existing.patches) | set(incoming.patches)),
                extra=existing.extra,
            )
    return {key: merged[key] for key in sorted(merged)}


def process_workspaces(
    paths: Sequence[str],
    root_overrides: Mapping[str, OverrideValue],
    cache: RunCache,
    *,
    root: str = ".",
    previous: Appendix | None = None,
    sources: LedgerSources | None = None,
) -> WorkspaceScan:
    builder = AppendixBuilder(previous=previous, sources=sources, cache=cache)
    scanned: list[str] = []
    for path in paths:
        manifest = load_manifest(path, cache)
        if manifest is None:
            continue
        consumer = consumer_name(manifest, path, root)
        own = normalize_overrides(manifest, source=str(Path(path)))
        overrides = unify_overrides(
            root_overrides, own.overrides if own else None, source=consumer
        )
        if not overrides:
            continue
        dependencies = merged_dependencies(manifest)
        builder.add_manifest(consumer, dependencies, overrides, only_used=True)
        scanned.append(path)
    _log(f"Processed {len(scanned)} of {len(paths)} workspace manifests")
    return WorkspaceScan(
        appendix=builder.build(),
        dependencies=aggregate_workspace_dependencies(paths, cache),
        manifests=scanned,
    )

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Sequence

from .appendix import AppendixBuilder, LedgerSources, prune_empty_entries
from .cache import RunCache
from .config import PastoralistConfig, load_config
from .deptree import TreeProvider, get_dependency_tree
from .files import FileLister, list_files
from .manifest import (
    MANIFEST_FILENAME,
    ManifestWriteError,
    load_manifest,
    merged_dependencies,
    resolve_dialect,
)
from .nested import partition_overrides
from .orphans import collect_orphans
from .overrides import is_ambiguous, normalize_overrides
from .patches import attach_patches, detect_patches, find_unused_patches
from .runtime import emit
from .security import (
    SecurityProvider,
    create_provider,
    filter_findings,
    security_overrides,
)
from .types import Appendix, OverrideValue, SecurityFinding, appendix_from_dict
from .workspaces import (
    WorkspaceScan,
    find_missing_in_root,
    find_workspace_manifests,
    merge_override_paths,
    process_workspaces,
    resolve_dep_paths,
)
from .writer import WriteOutcome, build_manifest, write_result

ROOT_CONSUMER = "root"


def _log(message: str, *, level: str = "debug") -> None:
    emit("update", message, level=level)


@dataclass
class UpdateOptions:
    path: str = MANIFEST_FILENAME
    root: str = "."
    dep_paths: Sequence[str] = ()
    ignore: Sequence[str] = ()
    dry_run: bool = False
    reason: str | None = None
    manual_reasons: dict[str, str] = field(default_factory=dict)
    security_findings: Sequence[SecurityFinding] | None = None
    security_provider: SecurityProvider | None = None
    check_security: bool | None = None
    apply_security_fixes: bool | None = None
    compact: bool | None = None
    manifest: dict[str, Any] | None = None


@dataclass
class UpdateResult:
    path: str
    manifest: dict[str, Any] | None = None
    dialect: str | None = None
    overrides: dict[str, OverrideValue] = field(default_factory=dict)
    appendix: Appendix = field(default_factory=dict)
    removed: list[str] = field(default_factory=list)
    missing_in_root: list[str] = field(default_factory=list)
    unused_patches: list[str] = field(default_factory=list)
    workspace_manifests: list[str] = field(default_factory=list)
    findings: list[SecurityFinding] = field(default_factory=list)
    security_overrides: dict[str, str] = field(default_factory=dict)
    outcome: WriteOutcome | None = None
    write_error: str | None = None
    skipped: str | None = None

    @property
    def written(self) -> bool:
        return self.outcome is not None and self.outcome.written


def _manifest_path(options: UpdateOptions) -> Path:
    path = Path(options.path)
    if path.is_absolute():
        return path
    return Path(options.root) / path


def _security_findings(
    options: UpdateOptions,
    config: PastoralistConfig,
    dependencies: dict[str, str],
) -> tuple[list[SecurityFinding], str | None]:
    if options.security_findings is not None:
        provider_name = getattr(options.security_provider, "name", None)
        return list(options.security_findings), provider_name

    enabled = (
        options.check_security
        if options.check_security is not None
        else config.security.enabled
    )
    if not enabled:
        return [], None

    provider = options.security_provider
    if provider is None:
        provider = create_provider(config.security.provider_names()[0])
    if provider is None:
        return [], None

    findings = filter_findings(
        provider.check(dependencies),
        exclude=config.security.exclude_packages,
        threshold=config.security.severity_threshold,
    )
    if findings:
        _log(
            f"{len(findings)} security findings from {provider.name}: "
            + ", ".join(f.package_name for f in findings),
            level="info",
        )
    return findings, provider.name


def _scan_workspaces(
    dep_paths: list[str] | None,
    overrides: dict[str, OverrideValue],
    options: UpdateOptions,
    manifest_path: Path,
    cache: RunCache,
    previous: Appendix,
    sources: LedgerSources,
    lister: FileLister,
) -> WorkspaceScan:
    if not dep_paths:
        return WorkspaceScan()
    files = find_workspace_manifests(
        dep_paths,
        options.root,
        options.ignore,
        root_manifest=str(manifest_path),
        lister=lister,
    )
    return process_workspaces(
        files,
        overrides,
        cache,
        root=options.root,
        previous=previous,
        sources=sources,
    )


def update(
    options: UpdateOptions | None = None,
    *,
    cache: RunCache | None = None,
    lister: FileLister = list_files,
    tree_provider: TreeProvider | None = None,
) -> UpdateResult:
    """
    Reconcile the root manifest's overrides with its consumers and persist
    the appendix.

    Raises `NoWorkspaceManifestsError` when workspace globs match nothing.
    A refused write is reported through `UpdateResult.write_error`.
    """
    options = options or UpdateOptions()
    cache = cache if cache is not None else RunCache()
    cache.clear()

    manifest_path = _manifest_path(options)
    result = UpdateResult(path=str(manifest_path))
    manifest = options.manifest
    if manifest is None:
        manifest = load_manifest(manifest_path, cache)
    if manifest is None:
        result.skipped = f"No readable manifest at {manifest_path}"
        _log(result.skipped, level="error")
        return result
    result.manifest = manifest

    config = load_config(options.root, manifest.get("pastoralist"))
    patch_map = detect_patches(options.root, lister=lister)
    if patch_map:
        _log(f"Found patches for packages: {', '.join(sorted(patch_map))}")

    ambiguous = is_ambiguous(manifest)
    override_set = normalize_overrides(manifest, source=str(manifest_path))
    overrides = dict(override_set.overrides) if override_set else {}
    simple, nested = partition_overrides(overrides)
    _log(f"{len(simple)} simple and {len(nested)} nested overrides in the root")
    result.dialect = (
        override_set.kind if override_set else resolve_dialect(manifest, options.root)
    )

    root_dependencies = merged_dependencies(manifest)
    findings, provider_name = _security_findings(options, config, root_dependencies)
    result.findings = findings
    sources = LedgerSources.from_findings(
        findings,
        reason=options.reason,
        provider=provider_name,
        manual_reasons=dict(options.manual_reasons),
    )
    apply_fixes = options.apply_security_fixes
    if apply_fixes is None:
        apply_fixes = config.security.auto_fix
    if apply_fixes and findings:
        result.security_overrides = security_overrides(findings, overrides)
        overrides.update(result.security_overrides)
        if result.security_overrides:
            _log(
                "Pinned security fixes: "
                + ", ".join(f"{k}@{v}" for k, v in result.security_overrides.items()),
                level="info",
            )

    previous = appendix_from_dict(config.appendix)

    dep_paths = resolve_dep_paths(config.dep_paths, manifest, options.dep_paths)
    scan = _scan_workspaces(
        dep_paths,
        overrides,
        options,
        manifest_path,
        cache,
        previous,
        sources,
        lister,
    )
    result.workspace_manifests = scan.manifests
    missing_in_root = find_missing_in_root(
        overrides, root_dependencies, has_dep_paths=bool(dep_paths)
    )
    result.missing_in_root = missing_in_root

    root_name = manifest.get("name") or ROOT_CONSUMER
    builder = AppendixBuilder(previous=previous, sources=sources, cache=cache)
    builder.add_manifest(str(root_name), root_dependencies, overrides)
    builder.merge(scan.appendix)
    appendix = attach_patches(builder.build(), patch_map)
    appendix = merge_override_paths(appendix, config.override_paths, missing_in_root)

    all_dependencies = {**root_dependencies, **scan.dependencies}
    result.unused_patches = find_unused_patches(patch_map, all_dependencies)
    if result.unused_patches:
        _log(
            f"Found {len(result.unused_patches)} potentially unused patch files: "
            + ", ".join(result.unused_patches),
            level="warning",
        )

    orphans = collect_orphans(
        overrides,
        appendix,
        all_dependencies,
        lambda: get_dependency_tree(cache, tree_provider, root=options.root),
        missing_in_root=missing_in_root if dep_paths else (),
        override_paths=config.override_paths,
    )
    result.overrides = orphans.overrides
    result.appendix = prune_empty_entries(orphans.appendix)
    result.removed = orphans.removed

    if ambiguous:
        result.skipped = "ambiguous override configuration; not writing"
        _log(f"{manifest_path}: {result.skipped}", level="error")
        return result

    compact = options.compact
    if compact is None:
        compact = config.compact_appendix
    updated = build_manifest(
        manifest,
        result.appendix,
        result.overrides,
        result.dialect,
        compact=compact,
    )
    try:
        result.outcome = write_result(
            str(manifest_path),
            updated,
            cache,
            dry_run=options.dry_run,
            root_path=str(manifest_path),
        )
    except ManifestWriteError as exc:
        result.write_error = str(exc)
        _log(str(exc), level="error")
    _log(
        f"Appendix has {len(result.appendix)} entries; "
        f"{len(result.overrides)} overrides remain"
    )
    return result

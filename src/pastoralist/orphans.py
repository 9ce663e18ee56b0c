from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Sequence

from .appendix import is_transitive_descriptor
from .nested import is_nested, nested_applies
from .overrides import remove_overrides
from .runtime import emit
from .types import Appendix, OverrideValue, split_appendix_key
from .workspaces import tracked_in_override_paths

TreeLookup = Callable[[], "dict[str, bool] | None"]


def _log(message: str, *, level: str = "debug") -> None:
    emit("orphans", message, level=level)


@dataclass
class OrphanResult:
    overrides: dict[str, OverrideValue]
    appendix: Appendix
    removed: list[str] = field(default_factory=list)
    kept_for_override_paths: list[str] = field(default_factory=list)


def _entries_for(name: str, appendix: Appendix) -> list[str]:
    return [key for key in appendix if split_appendix_key(key)[0] == name]


def has_conclusive_dependents(name: str, appendix: Appendix) -> bool:
    """True when some consumer uses `name` directly or through a nested pin."""
    for key in _entries_for(name, appendix):
        for descriptor in appendix[key].dependents.values():
            if not is_transitive_descriptor(descriptor):
                return True
    return False


def is_unused_nested_override(
    name: str, value: OverrideValue, dependencies: Mapping[str, str]
) -> bool:
    if not is_nested(value) or nested_applies(name, value, dependencies):
        return False
    _log(f"Unused nested override for {name}: parent package not in dependencies")
    return True


def is_unused_simple_override(
    name: str,
    appendix: Appendix,
    dependencies: Mapping[str, str],
    missing_in_root: Sequence[str],
    tree: TreeLookup,
) -> bool:
    if has_conclusive_dependents(name, appendix):
        return False
    if name in dependencies:
        return False
    if name in missing_in_root:
        _log(f"Keeping override for {name}: needed outside the root manifest")
        return False
    if not dependencies:
        _log(f"Unused override for {name}: no dependencies at all")
        return True
    installed = tree()
    if installed is None:
        _log(f"Keeping override for {name}: dependency tree unknown")
        return False
    if installed.get(name):
        _log(f"Keeping override for {name}: found in dependency tree")
        return False
    _log(f"Unused override for {name}: not in dependency tree")
    return True


def find_removable_overrides(
    overrides: Mapping[str, OverrideValue],
    appendix: Appendix,
    dependencies: Mapping[str, str],
    tree: TreeLookup,
    *,
    missing_in_root: Sequence[str] = (),
) -> list[str]:
    removable: list[str] = []
    for name, value in overrides.items():
        if is_nested(value):
            if is_unused_nested_override(name, value, dependencies):
                removable.append(name)
        elif is_unused_simple_override(
            name, appendix, dependencies, missing_in_root, tree
        ):
            removable.append(name)
    return removable


def remove_appendix_entries(appendix: Appendix, names: Sequence[str]) -> Appendix:
    doomed = set(names)
    kept: Appendix = {}
    for key, entry in appendix.items():
        if split_appendix_key(key)[0] in doomed:
            _log(f"Removed appendix entry for {key}")
            continue
        kept[key] = entry
    return kept


def collect_orphans(
    overrides: Mapping[str, OverrideValue],
    appendix: Appendix,
    dependencies: Mapping[str, str],
    tree: TreeLookup,
    *,
    missing_in_root: Sequence[str] = (),
    override_paths: Mapping[str, Any] | None = None,
) -> OrphanResult:
    removable = find_removable_overrides(
        overrides, appendix, dependencies, tree, missing_in_root=missing_in_root
    )
    if not removable:
        return OrphanResult(overrides=dict(overrides), appendix=dict(appendix))

    tracked = tracked_in_override_paths(removable, override_paths)
    actually_removable = [name for name in removable if name not in tracked]
    if tracked:
        _log(
            "Keeping overrides for packages tracked in overridePaths: "
            + ", ".join(tracked),
            level="info",
        )
    if not actually_removable:
        return OrphanResult(
            overrides=dict(overrides),
            appendix=dict(appendix),
            kept_for_override_paths=tracked,
        )

    _log(
        f"Removing {len(actually_removable)} unused overrides: "
        + ", ".join(actually_removable),
        level="info",
    )
    return OrphanResult(
        overrides=remove_overrides(overrides, actually_removable),
        appendix=remove_appendix_entries(appendix, actually_removable),
        removed=actually_removable,
        kept_for_override_paths=tracked,
    )

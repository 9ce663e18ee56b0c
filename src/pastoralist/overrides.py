from __future__ import annotations

from typing import Any, Iterable

from .runtime import emit
from .types import NPM, PNPM, YARN, OverrideSet, OverrideValue


class AmbiguousOverridesError(ValueError):
    pass


def _log(message: str, *, level: str = "debug") -> None:
    emit("overrides", message, level=level)


def _coerce_block(value: Any) -> dict[str, OverrideValue]:
    if not isinstance(value, dict):
        return {}
    block: dict[str, OverrideValue] = {}
    for name, version in value.items():
        if isinstance(version, dict):
            block[str(name)] = {str(k): str(v) for k, v in version.items()}
        elif version is not None:
            block[str(name)] = str(version)
    return block


def raw_override_blocks(
    manifest: dict[str, Any] | None,
) -> dict[str, dict[str, OverrideValue]]:
    if not manifest:
        return {NPM: {}, PNPM: {}, YARN: {}}
    pnpm = manifest.get("pnpm")
    return {
        NPM: _coerce_block(manifest.get("overrides")),
        PNPM: _coerce_block(
            pnpm.get("overrides") if isinstance(pnpm, dict) else None
        ),
        YARN: _coerce_block(manifest.get("resolutions")),
    }


def extract_override_set(manifest: dict[str, Any] | None) -> OverrideSet | None:
    """Strict variant: raise when more than one dialect is populated."""
    populated = [
        (kind, block) for kind, block in raw_override_blocks(manifest).items() if block
    ]
    if not populated:
        return None
    if len(populated) > 1:
        kinds = ", ".join(kind for kind, _ in populated)
        raise AmbiguousOverridesError(
            f"ambiguous override configuration: {kinds} are all populated"
        )
    kind, block = populated[0]
    return OverrideSet(kind=kind, overrides=dict(block))


def normalize_overrides(
    manifest: dict[str, Any] | None, *, source: str = "package.json"
) -> OverrideSet | None:
    try:
        override_set = extract_override_set(manifest)
    except AmbiguousOverridesError as exc:
        _log(f"{source}: {exc}; using no overrides", level="error")
        return None
    if override_set is None:
        _log(f"{source}: no overrides configured")
        return None
    _log(
        f"{source}: {len(override_set.overrides)} overrides in {override_set.label}"
    )
    return override_set


def is_ambiguous(manifest: dict[str, Any] | None) -> bool:
    return sum(1 for block in raw_override_blocks(manifest).values() if block) > 1


def remove_overrides(
    overrides: dict[str, OverrideValue], names: Iterable[str]
) -> dict[str, OverrideValue]:
    removable = set(names)
    return {name: value for name, value in overrides.items() if name not in removable}

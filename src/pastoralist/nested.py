from __future__ import annotations

from typing import Any, Mapping

from .types import OverrideValue


def is_nested(value: Any) -> bool:
    return isinstance(value, Mapping)


def nested_applies(
    name: str, value: OverrideValue, dependencies: Mapping[str, str]
) -> bool:
    """A nested override only counts for manifests that depend on its parent."""
    return is_nested(value) and name in dependencies


def partition_overrides(
    overrides: Mapping[str, OverrideValue],
) -> tuple[dict[str, str], dict[str, dict[str, str]]]:
    simple: dict[str, str] = {}
    nested: dict[str, dict[str, str]] = {}
    for name, value in overrides.items():
        if is_nested(value):
            nested[name] = dict(value)  # type: ignore[arg-type]
        else:
            simple[name] = str(value)
    return simple, nested

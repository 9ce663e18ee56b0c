from __future__ import annotations

import copy
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Mapping

from .cache import RunCache
from .manifest import write_manifest
from .runtime import emit
from .types import (
    NPM,
    PNPM,
    YARN,
    Appendix,
    AppendixEntry,
    OverrideValue,
    appendix_to_dict,
)

RC_FILE_LINE_THRESHOLD = 10
RC_FILE_HINT = (
    "Your pastoralist config is getting long. Consider moving it to a "
    ".pastoralistrc file."
)


def _log(message: str, *, level: str = "debug") -> None:
    emit("writer", message, level=level)


@dataclass
class WriteOutcome:
    content: str
    written: bool
    dry_run: bool
    suggest_rc_file: bool


def _compact_entry(entry: AppendixEntry, today: Callable[[], str]) -> dict[str, Any]:
    has_security = entry.ledger is not None and entry.ledger.has_security_info()
    if has_security or entry.has_patches():
        return entry.to_dict()
    if entry.ledger is not None and entry.ledger.added_date:
        return {"addedDate": entry.ledger.added_date}
    return {"addedDate": today()}


def _today() -> str:
    return datetime.now(timezone.utc).date().isoformat()


def to_compact_appendix(
    appendix: Appendix, today: Callable[[], str] = _today
) -> dict[str, Any]:
    """Keep only `addedDate` for entries without security or patch metadata."""
    return {key: _compact_entry(appendix[key], today) for key in sorted(appendix)}


def _strip_overrides(manifest: dict[str, Any]) -> None:
    manifest.pop("resolutions", None)
    manifest.pop("overrides", None)
    pnpm = manifest.get("pnpm")
    if isinstance(pnpm, dict):
        pnpm.pop("overrides", None)
        if not pnpm:
            manifest.pop("pnpm")


def _apply_overrides(
    manifest: dict[str, Any], overrides: Mapping[str, OverrideValue], dialect: str
) -> None:
    block = copy.deepcopy(dict(overrides))
    if dialect == YARN:
        manifest["resolutions"] = block
    elif dialect == PNPM:
        pnpm = manifest.get("pnpm")
        if not isinstance(pnpm, dict):
            pnpm = {}
        pnpm["overrides"] = block
        manifest["pnpm"] = pnpm
    else:
        manifest["overrides"] = block


def _apply_appendix(manifest: dict[str, Any], appendix_data: dict[str, Any]) -> None:
    existing = manifest.get("pastoralist")
    others = {
        k: v
        for k, v in (existing.items() if isinstance(existing, dict) else [])
        if k != "appendix"
    }
    if appendix_data:
        manifest["pastoralist"] = {"appendix": appendix_data, **others}
    elif others:
        manifest["pastoralist"] = others
    else:
        manifest.pop("pastoralist", None)


def build_manifest(
    manifest: Mapping[str, Any],
    appendix: Appendix,
    overrides: Mapping[str, OverrideValue],
    dialect: str | None,
    *,
    compact: bool = False,
) -> dict[str, Any]:
    """
    Return a copy of `manifest` with the override block and appendix replaced.

    Only the active dialect block and `pastoralist.appendix` are touched;
    other `pastoralist.*` keys survive even when every override is gone.
    """
    updated = copy.deepcopy(dict(manifest))
    if compact:
        appendix_data = to_compact_appendix(appendix)
    else:
        appendix_data = appendix_to_dict(appendix)

    if not overrides:
        _strip_overrides(updated)
    else:
        _apply_overrides(updated, overrides, dialect or NPM)
    _apply_appendix(updated, appendix_data)
    return updated


def render_manifest(manifest: Mapping[str, Any]) -> str:
    return json.dumps(manifest, indent=2, ensure_ascii=False) + "\n"


def count_pastoralist_lines(manifest: Mapping[str, Any]) -> int:
    block = manifest.get("pastoralist")
    if not block:
        return 0
    return len(json.dumps(block, indent=2, ensure_ascii=False).splitlines())


def should_suggest_rc_file(manifest: Mapping[str, Any]) -> bool:
    return count_pastoralist_lines(manifest) > RC_FILE_LINE_THRESHOLD


def write_result(
    path: str,
    manifest: Mapping[str, Any],
    cache: RunCache,
    *,
    dry_run: bool = False,
    root_path: str | None = None,
) -> WriteOutcome:
    content = render_manifest(manifest)
    suggest = should_suggest_rc_file(manifest)
    if suggest:
        _log(RC_FILE_HINT, level="info")
    if dry_run:
        _log(f"Dry run; not writing {path}")
        return WriteOutcome(
            content=content, written=False, dry_run=True, suggest_rc_file=suggest
        )

    write_manifest(path, content, cache, root_path=root_path)
    return WriteOutcome(
        content=content, written=True, dry_run=False, suggest_rc_file=suggest
    )

from __future__ import annotations

import os
from pathlib import Path
from typing import Callable, Iterable, Sequence

from pathspec import PathSpec

FileLister = Callable[[Sequence[str], str, Sequence[str]], list[str]]

DEFAULT_IGNORE_PATTERNS = [
    "node_modules/",
    ".git/",
    ".yarn/cache/",
    ".pnpm-store/",
]


def _anchor(pattern: str) -> str:
    # glob patterns are relative to the root; gitwildmatch floats bare names
    pattern = pattern.strip()
    while pattern.startswith("./"):
        pattern = pattern[2:]
    if pattern.startswith("/") or pattern.startswith("**/"):
        return pattern
    return f"/{pattern}"


def _expand_negations(patterns: Iterable[str]) -> tuple[list[str], list[str]]:
    include: list[str] = []
    exclude: list[str] = []
    for raw in patterns:
        if not raw or not raw.strip():
            continue
        if raw.startswith("!"):
            exclude.append(_anchor(raw[1:]))
        else:
            include.append(_anchor(raw))
    return include, exclude


def list_files(
    patterns: Sequence[str],
    root: str = ".",
    ignore: Sequence[str] = (),
    *,
    absolute: bool = True,
) -> list[str]:
    """
    Return the sorted, de-duplicated files under `root` matching `patterns`.

    Patterns use glob syntax relative to `root`; a leading `!` excludes.
    Directories matching the ignore list are never descended into.
    """
    include, negated = _expand_negations(patterns)
    if not include:
        return []
    include_spec = PathSpec.from_lines("gitwildmatch", include)
    ignore_spec = PathSpec.from_lines(
        "gitwildmatch",
        [*DEFAULT_IGNORE_PATTERNS, *(_anchor(p) for p in ignore if p), *negated],
    )

    root_path = Path(root).resolve()
    matches: set[str] = set()
    for dirpath, dirnames, filenames in os.walk(root_path):
        rel_dir = Path(dirpath).relative_to(root_path).as_posix()
        rel_dir = "" if rel_dir == "." else rel_dir
        kept_dirs = []
        for dirname in dirnames:
            rel = f"{rel_dir}/{dirname}" if rel_dir else dirname
            if ignore_spec.match_file(f"{rel}/"):
                continue
            kept_dirs.append(dirname)
        dirnames[:] = sorted(kept_dirs)
        for filename in filenames:
            rel = f"{rel_dir}/{filename}" if rel_dir else filename
            if not include_spec.match_file(rel) or ignore_spec.match_file(rel):
                continue
            if absolute:
                matches.add(str(root_path / rel))
            else:
                matches.add(rel)
    return sorted(matches)

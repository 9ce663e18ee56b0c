from __future__ import annotations

import json
import subprocess
from typing import Any, Callable

from .cache import RunCache
from .runtime import emit, get_tree_timeout

TreeProvider = Callable[[], "dict[str, bool] | None"]

NPM_LS_ARGS = ["npm", "ls", "--json", "--all"]


def _log(message: str, *, level: str = "debug") -> None:
    emit("deptree", message, level=level)


def parse_npm_ls_output(stdout: str) -> dict[str, bool]:
    tree = json.loads(stdout)
    packages: dict[str, bool] = {}

    def walk(deps: Any) -> None:
        if not isinstance(deps, dict):
            return
        for name, value in deps.items():
            packages[name] = True
            if isinstance(value, dict) and "dependencies" in value:
                walk(value["dependencies"])

    if isinstance(tree, dict):
        walk(tree.get("dependencies"))
    return packages


def run_npm_ls(root: str = ".", timeout: int | None = None) -> str:
    # npm exits 1 on peer/extraneous problems but still prints the tree
    result = subprocess.run(
        NPM_LS_ARGS,
        cwd=root,
        capture_output=True,
        text=True,
        timeout=timeout if timeout is not None else get_tree_timeout(),
    )
    if result.returncode == 0 or (result.returncode == 1 and result.stdout.strip()):
        return result.stdout
    raise subprocess.CalledProcessError(
        result.returncode, NPM_LS_ARGS, output=result.stdout, stderr=result.stderr
    )


def npm_tree_provider(root: str = ".", timeout: int | None = None) -> TreeProvider:
    def provide() -> dict[str, bool] | None:
        try:
            return parse_npm_ls_output(run_npm_ls(root, timeout))
        except subprocess.TimeoutExpired:
            _log("npm ls timed out; treating the tree as unknown", level="warning")
        except (OSError, subprocess.CalledProcessError, json.JSONDecodeError) as exc:
            _log(f"Failed to get dependency tree: {exc}")
        return None

    return provide


def get_dependency_tree(
    cache: RunCache, provider: TreeProvider | None = None, *, root: str = "."
) -> dict[str, bool] | None:
    """Return the installed package set, or None when it cannot be determined."""
    if cache.tree_loaded:
        return cache.dependency_tree
    provide = provider or npm_tree_provider(root)
    tree = provide()
    cache.store_tree(tree)
    if tree is not None:
        _log(f"Dependency tree has {len(tree)} packages")
    return tree

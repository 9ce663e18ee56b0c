from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any

from .types import Ledger


def normalize_path(path: str | os.PathLike[str]) -> str:
    return os.path.normpath(os.path.abspath(os.fspath(path)))


@dataclass
class RunCache:
    """Mutable state scoped to one reconciliation run."""

    manifests: dict[str, Any] = field(default_factory=dict)
    ledgers: dict[str, Ledger] = field(default_factory=dict)
    dependency_tree: dict[str, bool] | None = None
    tree_loaded: bool = False

    def get_manifest(self, path: str | os.PathLike[str]) -> dict[str, Any] | None:
        return self.manifests.get(normalize_path(path))

    def has_manifest(self, path: str | os.PathLike[str]) -> bool:
        return normalize_path(path) in self.manifests

    def store_manifest(
        self, path: str | os.PathLike[str], data: dict[str, Any] | None
    ) -> None:
        self.manifests[normalize_path(path)] = data

    def invalidate_manifest(self, path: str | os.PathLike[str]) -> None:
        self.manifests.pop(normalize_path(path), None)

    def store_tree(self, tree: dict[str, bool] | None) -> None:
        self.dependency_tree = tree
        self.tree_loaded = True

    def clear(self) -> None:
        self.manifests.clear()
        self.ledgers.clear()
        self.dependency_tree = None
        self.tree_loaded = False

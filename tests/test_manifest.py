from __future__ import annotations

import json

import pytest

from pastoralist.cache import RunCache
from pastoralist.manifest import (
    ManifestWriteError,
    consumer_name,
    detect_dialect,
    detect_package_manager,
    dialect_for_package_manager,
    load_manifest,
    merged_dependencies,
    resolve_dialect,
    write_manifest,
)
from pastoralist.types import NPM, PNPM, YARN


def _write_json(path, data) -> None:
    path.write_text(json.dumps(data), encoding="utf-8")


def test_missing_manifest_stays_absent_for_the_run(tmp_path) -> None:
    cache = RunCache()
    path = tmp_path / "package.json"

    assert load_manifest(path, cache) is None
    _write_json(path, {"name": "app"})
    assert load_manifest(path, cache) is None

    cache.clear()
    assert load_manifest(path, cache) == {"name": "app"}


def test_invalid_json_and_non_objects_are_soft_failures(tmp_path, capsys) -> None:
    path = tmp_path / "package.json"
    path.write_text("{not json", encoding="utf-8")
    assert load_manifest(path, RunCache()) is None
    assert "Invalid JSON" in capsys.readouterr().err

    path.write_text("[1, 2]", encoding="utf-8")
    assert load_manifest(path, RunCache()) is None


def test_cache_keys_are_normalized_paths(tmp_path) -> None:
    cache = RunCache()
    path = tmp_path / "package.json"
    _write_json(path, {"name": "app"})

    load_manifest(path, cache)

    assert cache.has_manifest(tmp_path / "sub" / ".." / "package.json")
    assert len(cache.manifests) == 1


def test_write_refuses_non_json_targets(tmp_path) -> None:
    with pytest.raises(ManifestWriteError, match="non-JSON"):
        write_manifest(tmp_path / "package.yaml", "{}", RunCache())
    assert not (tmp_path / "package.yaml").exists()


def test_write_refuses_nameless_root(tmp_path) -> None:
    root = tmp_path / "package.json"
    with pytest.raises(ManifestWriteError, match="name"):
        write_manifest(root, '{"version": "1.0.0"}', RunCache(), root_path=root)
    assert not root.exists()

    workspace = tmp_path / "workspace.json"
    write_manifest(workspace, "{}", RunCache(), root_path=root)
    assert workspace.read_text(encoding="utf-8") == "{}"


def test_write_invalidates_the_cached_manifest(tmp_path) -> None:
    cache = RunCache()
    path = tmp_path / "package.json"
    _write_json(path, {"name": "before"})
    assert load_manifest(path, cache) == {"name": "before"}

    write_manifest(path, json.dumps({"name": "after"}), cache, root_path=path)

    assert not cache.has_manifest(path)
    assert load_manifest(path, cache) == {"name": "after"}


def test_detect_dialect_prefers_resolutions_then_overrides() -> None:
    assert detect_dialect({"overrides": {}, "resolutions": {}}) == YARN
    assert detect_dialect({"overrides": {"a": "1"}, "pnpm": {"overrides": {}}}) == NPM
    assert detect_dialect({"pnpm": {"overrides": {}}}) == PNPM
    assert detect_dialect({"pnpm": {"onlyBuiltDependencies": []}}) is None
    assert detect_dialect(None) is None


@pytest.mark.parametrize(
    "lock_file, manager, dialect",
    [
        ("bun.lockb", "bun", NPM),
        ("bun.lock", "bun", NPM),
        ("yarn.lock", "yarn", YARN),
        ("pnpm-lock.yaml", "pnpm", PNPM),
    ],
)
def test_lock_file_picks_the_dialect(tmp_path, lock_file, manager, dialect) -> None:
    (tmp_path / lock_file).write_text("", encoding="utf-8")

    assert detect_package_manager(tmp_path) == manager
    assert dialect_for_package_manager(manager) == dialect
    assert resolve_dialect({"name": "app"}, tmp_path) == dialect


def test_existing_dialect_beats_lock_file(tmp_path) -> None:
    (tmp_path / "pnpm-lock.yaml").write_text("", encoding="utf-8")
    assert resolve_dialect({"resolutions": {}}, tmp_path) == YARN


def test_package_manager_defaults_to_npm(tmp_path) -> None:
    assert detect_package_manager(tmp_path) == "npm"
    assert resolve_dialect({}, tmp_path) == NPM


def test_merged_dependencies_later_blocks_win() -> None:
    manifest = {
        "dependencies": {"a": "1.0.0"},
        "devDependencies": {"a": "2.0.0", "b": "^1"},
        "peerDependencies": {"c": ">=3"},
        "optionalDependencies": {"d": "1"},
    }
    assert merged_dependencies(manifest) == {"a": "2.0.0", "b": "^1", "c": ">=3"}
    assert merged_dependencies(None) == {}


def test_consumer_name_falls_back_to_relative_path(tmp_path) -> None:
    path = tmp_path / "packages" / "a" / "package.json"

    assert consumer_name({"name": "pkg-a"}, str(path), str(tmp_path)) == "pkg-a"
    assert (
        consumer_name({}, str(path), str(tmp_path)) == "packages/a/package.json"
    )

from __future__ import annotations

import json
from pathlib import Path

import pytest

from pastoralist.security import StaticSecurityProvider
from pastoralist.types import SecurityFinding
from pastoralist.update import UpdateOptions, update
from pastoralist.workspaces import NoWorkspaceManifestsError

OLD_DATE = "2023-05-01T00:00:00.000Z"


def _write_json(path: Path, data) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")


def _read(path: Path):
    return json.loads(path.read_text(encoding="utf-8"))


def _tree_must_not_run():
    raise AssertionError("dependency tree should not be consulted")


def test_update_records_dependents_and_prunes_orphans(tmp_path) -> None:
    root = tmp_path / "package.json"
    _write_json(
        root,
        {
            "name": "app",
            "dependencies": {"lodash": "^4.17.0", "react": "^18.2.0"},
            "overrides": {
                "lodash": "4.17.21",
                "react": {"react-dom": "18.0.0"},
                "left-pad": "1.3.0",
                "vue": {"vue-router": "4.0.0"},
            },
        },
    )

    result = update(
        UpdateOptions(root=str(tmp_path)), tree_provider=lambda: {"lodash": True}
    )

    assert result.written
    assert result.removed == ["left-pad", "vue"]
    written = _read(root)
    assert written["overrides"] == {
        "lodash": "4.17.21",
        "react": {"react-dom": "18.0.0"},
    }
    appendix = written["pastoralist"]["appendix"]
    assert list(appendix) == ["lodash@4.17.21", "react-dom@18.0.0"]
    assert appendix["lodash@4.17.21"]["dependents"] == {"app": "lodash@^4.17.0"}
    assert appendix["react-dom@18.0.0"]["dependents"] == {
        "app": "react@^18.2.0 (nested override)"
    }
    assert appendix["lodash@4.17.21"]["ledger"]["addedDate"].endswith("Z")


def test_second_run_is_byte_identical(tmp_path) -> None:
    root = tmp_path / "package.json"
    _write_json(
        root,
        {
            "name": "app",
            "dependencies": {"lodash": "^4.17.0", "react": "^18.2.0"},
            "resolutions": {"lodash": "4.17.21", "react": {"react-dom": "18.0.0"}},
        },
    )
    options = UpdateOptions(root=str(tmp_path), reason="pinned for CVE-2021-23337")

    update(options, tree_provider=_tree_must_not_run)
    first = root.read_text(encoding="utf-8")
    update(options, tree_provider=_tree_must_not_run)

    assert root.read_text(encoding="utf-8") == first
    assert "overrides" not in _read(root)
    assert _read(root)["resolutions"]["lodash"] == "4.17.21"


def test_workspaces_contribute_dependents_and_keep_ledgers(tmp_path) -> None:
    root = tmp_path / "package.json"
    _write_json(
        root,
        {
            "name": "mono",
            "workspaces": ["packages/*"],
            "devDependencies": {"typescript": "^5.0.0"},
            "overrides": {"lodash": "4.17.21"},
            "pastoralist": {
                "appendix": {
                    "lodash@4.17.21": {
                        "dependents": {"retired": "lodash@^3"},
                        "ledger": {"addedDate": OLD_DATE, "reason": "CVE fix"},
                    }
                }
            },
        },
    )
    _write_json(
        tmp_path / "packages/a/package.json",
        {"name": "pkg-a", "dependencies": {"lodash": "^4.17.0"}},
    )

    first = update(UpdateOptions(root=str(tmp_path)), tree_provider=_tree_must_not_run)

    assert first.workspace_manifests == [
        str(tmp_path.resolve() / "packages/a/package.json")
    ]
    entry = _read(root)["pastoralist"]["appendix"]["lodash@4.17.21"]
    assert entry == {
        "dependents": {
            "mono": "lodash (transitive dependency)",
            "pkg-a": "lodash@^4.17.0",
        },
        "ledger": {"addedDate": OLD_DATE, "reason": "CVE fix"},
    }

    _write_json(
        tmp_path / "packages/b/package.json",
        {"name": "pkg-b", "devDependencies": {"lodash": "4.17.0"}},
    )
    update(UpdateOptions(root=str(tmp_path)), tree_provider=_tree_must_not_run)

    entry = _read(root)["pastoralist"]["appendix"]["lodash@4.17.21"]
    assert entry["dependents"]["pkg-b"] == "lodash@4.17.0"
    assert entry["ledger"] == {"addedDate": OLD_DATE, "reason": "CVE fix"}


def test_workspace_only_overrides_are_not_adopted(tmp_path) -> None:
    _write_json(
        tmp_path / "package.json",
        {
            "name": "mono",
            "workspaces": ["packages/*"],
            "dependencies": {"lodash": "^4"},
            "overrides": {"lodash": "4.17.21"},
        },
    )
    _write_json(
        tmp_path / "packages/a/package.json",
        {
            "name": "pkg-a",
            "dependencies": {"left-pad": "^1.0.0"},
            "overrides": {"left-pad": "1.3.0"},
        },
    )

    result = update(UpdateOptions(root=str(tmp_path)), tree_provider=_tree_must_not_run)

    assert result.overrides == {"lodash": "4.17.21"}
    assert list(result.appendix) == ["lodash@4.17.21"]


def test_unmatched_dep_paths_raise(tmp_path) -> None:
    _write_json(tmp_path / "package.json", {"name": "app"})

    with pytest.raises(NoWorkspaceManifestsError):
        update(UpdateOptions(root=str(tmp_path), dep_paths=["nope/*/package.json"]))


def test_ambiguous_root_is_not_written(tmp_path) -> None:
    root = tmp_path / "package.json"
    _write_json(
        root,
        {
            "name": "app",
            "dependencies": {"lodash": "^4"},
            "overrides": {"lodash": "4.17.21"},
            "resolutions": {"lodash": "4.17.20"},
        },
    )
    before = root.read_text(encoding="utf-8")

    result = update(UpdateOptions(root=str(tmp_path)), tree_provider=lambda: {})

    assert result.skipped is not None
    assert not result.written
    assert root.read_text(encoding="utf-8") == before


def test_nameless_root_is_reported_not_written(tmp_path) -> None:
    root = tmp_path / "package.json"
    _write_json(
        root, {"dependencies": {"lodash": "^4"}, "overrides": {"lodash": "4.17.21"}}
    )
    before = root.read_text(encoding="utf-8")

    result = update(UpdateOptions(root=str(tmp_path)), tree_provider=_tree_must_not_run)

    assert "name" in result.write_error
    assert list(result.appendix) == ["lodash@4.17.21"]
    assert root.read_text(encoding="utf-8") == before


def test_dry_run_returns_content_without_writing(tmp_path) -> None:
    root = tmp_path / "package.json"
    _write_json(
        root,
        {
            "name": "app",
            "dependencies": {"lodash": "^4"},
            "overrides": {"lodash": "4.17.21"},
        },
    )
    before = root.read_text(encoding="utf-8")

    result = update(
        UpdateOptions(root=str(tmp_path), dry_run=True),
        tree_provider=_tree_must_not_run,
    )

    assert not result.written
    assert "lodash@4.17.21" in json.loads(result.outcome.content)["pastoralist"][
        "appendix"
    ]
    assert root.read_text(encoding="utf-8") == before


def test_missing_manifest_is_reported(tmp_path) -> None:
    result = update(UpdateOptions(root=str(tmp_path)))

    assert result.manifest is None
    assert "No readable manifest" in result.skipped


def test_patches_attach_and_unused_ones_are_reported(tmp_path) -> None:
    root = tmp_path / "package.json"
    _write_json(
        root,
        {
            "name": "app",
            "dependencies": {"@babel/core": "^7.0.0"},
            "overrides": {"@babel/core": "7.20.0"},
        },
    )
    (tmp_path / "patches").mkdir()
    (tmp_path / "patches/@babel+core+7.20.0.patch").write_text("")
    (tmp_path / "patches/left-pad+1.3.0.patch").write_text("")

    result = update(UpdateOptions(root=str(tmp_path)), tree_provider=_tree_must_not_run)

    entry = _read(root)["pastoralist"]["appendix"]["@babel/core@7.20.0"]
    assert entry["patches"] == ["patches/@babel+core+7.20.0.patch"]
    assert result.unused_patches == ["patches/left-pad+1.3.0.patch"]


def test_security_findings_fill_new_ledgers(tmp_path) -> None:
    root = tmp_path / "package.json"
    _write_json(
        root,
        {
            "name": "app",
            "dependencies": {"lodash": "^4"},
            "overrides": {"lodash": "4.17.21"},
        },
    )
    finding = SecurityFinding(
        "lodash",
        reason="Security fix: Command Injection in lodash",
        cve="CVE-2021-23337",
        severity="high",
    )

    update(
        UpdateOptions(
            root=str(tmp_path),
            check_security=True,
            security_provider=StaticSecurityProvider([finding], name="ci"),
        ),
        tree_provider=_tree_must_not_run,
    )

    ledger = _read(root)["pastoralist"]["appendix"]["lodash@4.17.21"]["ledger"]
    assert ledger["reason"] == "Security fix: Command Injection in lodash"
    assert ledger["securityChecked"] is True
    assert ledger["securityProvider"] == "ci"
    assert ledger["cve"] == "CVE-2021-23337"
    assert ledger["severity"] == "high"


def test_compact_appendix_from_rc_file_is_stable(tmp_path) -> None:
    root = tmp_path / "package.json"
    _write_json(
        root,
        {
            "name": "app",
            "dependencies": {"lodash": "^4"},
            "overrides": {"lodash": "4.17.21"},
        },
    )
    (tmp_path / ".pastoralistrc.json").write_text('{"compactAppendix": true}')

    update(UpdateOptions(root=str(tmp_path)), tree_provider=_tree_must_not_run)
    first = root.read_text(encoding="utf-8")
    entry = _read(root)["pastoralist"]["appendix"]["lodash@4.17.21"]
    update(UpdateOptions(root=str(tmp_path)), tree_provider=_tree_must_not_run)

    assert list(entry) == ["addedDate"]
    assert root.read_text(encoding="utf-8") == first


def test_compact_date_shared_with_rc_file_is_never_restamped(tmp_path) -> None:
    compact = {"lodash@4.17.21": {"addedDate": "2020-01-01T00:00:00.000Z"}}
    root = tmp_path / "package.json"
    _write_json(
        root,
        {
            "name": "app",
            "dependencies": {"lodash": "^4"},
            "overrides": {"lodash": "4.17.21"},
            "pastoralist": {"appendix": compact},
        },
    )
    _write_json(
        tmp_path / ".pastoralistrc.json",
        {"compactAppendix": True, "appendix": compact},
    )

    update(UpdateOptions(root=str(tmp_path)), tree_provider=_tree_must_not_run)
    first = root.read_text(encoding="utf-8")
    update(UpdateOptions(root=str(tmp_path)), tree_provider=_tree_must_not_run)

    assert _read(root)["pastoralist"]["appendix"] == compact
    assert root.read_text(encoding="utf-8") == first


def test_package_json_ledger_wins_over_rc_file(tmp_path) -> None:
    root = tmp_path / "package.json"
    _write_json(
        root,
        {
            "name": "app",
            "dependencies": {"lodash": "^4"},
            "overrides": {"lodash": "4.17.21"},
            "pastoralist": {
                "appendix": {
                    "lodash@4.17.21": {
                        "dependents": {"app": "lodash@^4"},
                        "ledger": {"addedDate": OLD_DATE, "reason": "local"},
                    }
                }
            },
        },
    )
    _write_json(
        tmp_path / ".pastoralistrc.json",
        {
            "appendix": {
                "lodash@4.17.21": {
                    "dependents": {"other": "lodash@^4"},
                    "ledger": {
                        "addedDate": "2020-01-01T00:00:00.000Z",
                        "reason": "rc",
                    },
                    "owner": "platform-team",
                }
            }
        },
    )

    update(UpdateOptions(root=str(tmp_path)), tree_provider=_tree_must_not_run)

    entry = _read(root)["pastoralist"]["appendix"]["lodash@4.17.21"]
    assert entry["ledger"] == {"addedDate": OLD_DATE, "reason": "local"}
    assert entry["owner"] == "platform-team"
    assert entry["dependents"] == {"app": "lodash@^4"}


def test_security_fixes_pin_vulnerable_packages(tmp_path) -> None:
    root = tmp_path / "package.json"
    _write_json(root, {"name": "app", "dependencies": {"lodash": "4.17.20"}})
    finding = SecurityFinding(
        "lodash",
        reason="Security fix: Command Injection in lodash",
        cve="CVE-2021-23337",
        severity="high",
        fix_version="4.17.21",
    )

    result = update(
        UpdateOptions(
            root=str(tmp_path),
            check_security=True,
            apply_security_fixes=True,
            security_provider=StaticSecurityProvider([finding], name="ci"),
        ),
        tree_provider=_tree_must_not_run,
    )

    assert result.security_overrides == {"lodash": "4.17.21"}
    written = _read(root)
    assert written["overrides"] == {"lodash": "4.17.21"}
    entry = written["pastoralist"]["appendix"]["lodash@4.17.21"]
    assert entry["dependents"] == {"app": "lodash@4.17.20"}
    assert entry["ledger"]["reason"] == "Security fix: Command Injection in lodash"
    assert entry["ledger"]["cve"] == "CVE-2021-23337"


def test_security_fixes_follow_config_and_never_downgrade(tmp_path) -> None:
    root = tmp_path / "package.json"
    _write_json(
        root,
        {
            "name": "app",
            "dependencies": {"lodash": "^4", "qs": "6.5.2"},
            "overrides": {"lodash": "4.17.22"},
            "pastoralist": {"security": {"autoFix": True}},
        },
    )
    findings = [
        SecurityFinding("lodash", fix_version="4.17.21"),
        SecurityFinding("qs", fix_version="6.5.3"),
    ]

    result = update(
        UpdateOptions(root=str(tmp_path), security_findings=findings),
        tree_provider=_tree_must_not_run,
    )

    assert result.security_overrides == {"qs": "6.5.3"}
    assert _read(root)["overrides"] == {"lodash": "4.17.22", "qs": "6.5.3"}


def test_findings_without_fix_flag_leave_overrides_alone(tmp_path) -> None:
    root = tmp_path / "package.json"
    _write_json(root, {"name": "app", "dependencies": {"qs": "6.5.2"}})

    result = update(
        UpdateOptions(
            root=str(tmp_path),
            security_findings=[SecurityFinding("qs", fix_version="6.5.3")],
        ),
        tree_provider=_tree_must_not_run,
    )

    assert result.security_overrides == {}
    assert "overrides" not in _read(root)


def test_override_paths_keep_packages_used_elsewhere(tmp_path) -> None:
    root = tmp_path / "package.json"
    _write_json(
        root,
        {
            "name": "app",
            "dependencies": {"lodash": "^4"},
            "overrides": {"lodash": "4.17.21", "left-pad": "1.3.0"},
            "pastoralist": {
                "overridePaths": {
                    "apps/web/package.json": {
                        "left-pad@1.3.0": {"dependents": {"web": "left-pad@^1.0.0"}}
                    }
                }
            },
        },
    )

    result = update(UpdateOptions(root=str(tmp_path)), tree_provider=lambda: {})

    assert result.removed == []
    written = _read(root)
    assert written["overrides"]["left-pad"] == "1.3.0"
    assert written["pastoralist"]["appendix"]["left-pad@1.3.0"]["dependents"] == {
        "app": "left-pad (transitive dependency)",
        "web": "left-pad@^1.0.0",
    }
    assert "overridePaths" in written["pastoralist"]

from pathlib import Path


def update(
    path: str | Path = "package.json",
    *,
    root: str | Path = ".",
    dep_paths: list[str] | None = None,
    ignore: list[str] | None = None,
    dry_run: bool = False,
    reason: str | None = None,
    compact: bool | None = None,
    check_security: bool | None = None,
    apply_security_fixes: bool | None = None,
):
    from .update import UpdateOptions
    from .update import update as run_update

    return run_update(
        UpdateOptions(
            path=str(path),
            root=str(root),
            dep_paths=list(dep_paths or []),
            ignore=list(ignore or []),
            dry_run=dry_run,
            reason=reason,
            compact=compact,
            check_security=check_security,
            apply_security_fixes=apply_security_fixes,
        )
    )


def unused(
    path: str | Path = "package.json",
    *,
    root: str | Path = ".",
    dep_paths: list[str] | None = None,
) -> dict[str, list[str]]:
    from .update import UpdateOptions
    from .update import update as run_update

    result = run_update(
        UpdateOptions(
            path=str(path),
            root=str(root),
            dep_paths=list(dep_paths or []),
            dry_run=True,
            check_security=False,
        )
    )
    return {"overrides": result.removed, "patches": result.unused_patches}


def normalize(manifest: dict):
    from .overrides import normalize_overrides

    return normalize_overrides(manifest)


__all__ = [
    "update",
    "unused",
    "normalize",
]

import click

from .runtime import load_dotenv_once, reset_verbose_logging, set_verbose_logging
from .update import UpdateOptions, UpdateResult, update


def _split_values(values):
    items = []
    for value in values:
        for part in value.split(","):
            item = part.strip()
            if item:
                items.append(item)
    return items


def _parse_override_reasons(values):
    reasons = {}
    for value in values:
        name, sep, text = value.partition("=")
        if not sep or not name.strip() or not text.strip():
            raise click.BadParameter(
                f"expected NAME=TEXT, got {value!r}", param_hint="--override-reason"
            )
        reasons[name.strip()] = text.strip()
    return reasons


def common_options(func):
    options = [
        click.option(
            "--path",
            default="package.json",
            show_default=True,
            help="Root manifest, relative to --root unless absolute.",
        ),
        click.option(
            "--root",
            default=".",
            show_default=True,
            type=click.Path(exists=True, file_okay=False),
            help="Project root used for globs, lock files and patches.",
        ),
        click.option(
            "--dep-paths",
            multiple=True,
            help="Workspace manifest globs (repeatable or comma-separated).",
        ),
        click.option(
            "--ignore",
            multiple=True,
            help="Glob patterns to skip while searching for manifests.",
        ),
        click.option("--debug", is_flag=True, help="Print debug logging to stderr."),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _run(options: UpdateOptions, debug: bool) -> UpdateResult:
    token = set_verbose_logging(True) if debug else None
    try:
        result = update(options)
    except (ValueError, FileNotFoundError) as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        if token is not None:
            reset_verbose_logging(token)
    if result.manifest is None:
        raise click.ClickException(result.skipped or "No manifest found")
    return result


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
def cli():
    """
    Pastoralist - keep package.json overrides documented and tidy
    """


@cli.command("update")
@common_options
@click.option("--dry-run", is_flag=True, help="Print the result instead of writing.")
@click.option("--reason", default=None, help="Reason recorded for new overrides.")
@click.option(
    "--override-reason",
    "override_reasons",
    multiple=True,
    metavar="NAME=TEXT",
    help="Reason recorded for one package's new override (repeatable).",
)
@click.option(
    "--compact/--no-compact",
    default=None,
    help="Store only addedDate for entries without security or patch data.",
)
@click.option(
    "--security/--no-security",
    "check_security",
    default=None,
    help="Query the configured vulnerability provider for new ledgers.",
)
@click.option(
    "--force-security-refactor/--no-force-security-refactor",
    "apply_security_fixes",
    default=None,
    help="Pin vulnerable packages to the fixed version the provider reports.",
)
def update_cmd(
    path,
    root,
    dep_paths,
    ignore,
    debug,
    dry_run,
    reason,
    override_reasons,
    compact,
    check_security,
    apply_security_fixes,
):
    """
    Rebuild the override appendix and remove overrides nothing needs.
    """
    options = UpdateOptions(
        path=path,
        root=root,
        dep_paths=_split_values(dep_paths),
        ignore=_split_values(ignore),
        dry_run=dry_run,
        reason=reason,
        manual_reasons=_parse_override_reasons(override_reasons),
        check_security=check_security,
        compact=compact,
        apply_security_fixes=apply_security_fixes,
    )
    result = _run(options, debug)
    if result.write_error:
        raise click.ClickException(result.write_error)

    if result.security_overrides:
        pins = ", ".join(f"{k}@{v}" for k, v in result.security_overrides.items())
        click.echo(f"Pinned security fixes: {pins}", err=True)
    if result.removed:
        click.echo(f"Removed unused overrides: {', '.join(result.removed)}", err=True)
    if result.skipped:
        click.echo(f"Skipped writing {result.path}: {result.skipped}", err=True)
    elif dry_run and result.outcome is not None:
        click.echo(result.outcome.content, nl=False)
    elif result.written:
        click.echo(
            f"Updated {result.path} ({len(result.appendix)} appendix entries)",
            err=True,
        )


@cli.command("unused")
@common_options
def unused_cmd(path, root, dep_paths, ignore, debug):
    """
    List overrides and patch files that nothing depends on. Writes nothing.
    """
    options = UpdateOptions(
        path=path,
        root=root,
        dep_paths=_split_values(dep_paths),
        ignore=_split_values(ignore),
        dry_run=True,
        check_security=False,
    )
    result = _run(options, debug)
    if not result.removed and not result.unused_patches:
        click.echo("Nothing unused.", err=True)
        return
    for name in result.removed:
        click.echo(f"override\t{name}")
    for patch in result.unused_patches:
        click.echo(f"patch\t{patch}")


def main():
    load_dotenv_once()
    cli()


if __name__ == "__main__":
    main()

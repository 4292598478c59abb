"""magicstore CLI: inspect and repair the shell tools' JSON stores.

Commands:
    magicstore domains          table of built-in stores (path, records, backups)
    magicstore show KEY         print a store's document
    magicstore check KEY        load with corruption recovery and report
    magicstore backups KEY      list corruption backups of a store
    magicstore lock-name PATH   print the lock name/file derived from PATH
"""

from __future__ import annotations

import dataclasses
import json
import logging
from pathlib import Path

import click

from magicstore.config import StoreSettings, default_config_path, load_settings
from magicstore.domains import DOMAINS, StoreDomain, get_domain, open_domain
from magicstore.errors import StoreError
from magicstore.loader import RecoveryEvent, list_backups
from magicstore.lock import ProcessLock, lock_name
from magicstore.store import json_deserialize

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_settings(config_path: Path | None) -> StoreSettings:
    try:
        settings = load_settings(config_path or default_config_path())
    except Exception as exc:
        raise click.ClickException(f"bad config: {exc}") from exc
    # one-shot process: nothing to keep fresh
    return dataclasses.replace(settings, watch=False)


def _domain(key: str) -> StoreDomain:
    try:
        return get_domain(key)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc


def _peek_records(domain: StoreDomain, path: Path) -> str:
    """Record count without triggering recovery (read-only)."""
    if not path.exists():
        return "-"
    try:
        raw = path.read_bytes()
        if not raw.strip():
            return "0"
        return str(len(domain.records(domain.normalize(json_deserialize(raw)))))
    except (OSError, ValueError, TypeError):
        return "[red]corrupt[/red]"


# ---------------------------------------------------------------------------
# Root group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(package_name="magicstore")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Settings TOML (default: ~/.config/magicstore/magicstore.toml)",
)
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None, verbose: bool) -> None:
    """magicstore: JSON stores for quickjump, templater and unity."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    ctx.obj = _load_settings(config_path)


# ---------------------------------------------------------------------------
# magicstore domains
# ---------------------------------------------------------------------------


@cli.command()
@click.pass_obj
def domains(settings: StoreSettings) -> None:
    """Show every built-in store and the state of its file."""
    from rich.console import Console
    from rich.table import Table

    table = Table(title=f"stores in {settings.data_dir}", show_header=True, header_style="bold")
    table.add_column("Key", no_wrap=True)
    table.add_column("Path", style="dim")
    table.add_column("Records", justify="right")
    table.add_column("Backups", justify="right")

    for key, domain in sorted(DOMAINS.items()):
        path = domain.path(settings)
        n_backups = len(list_backups(path))
        table.add_row(
            key,
            str(path),
            _peek_records(domain, path),
            f"[yellow]{n_backups}[/yellow]" if n_backups else "0",
        )
    Console().print(table)


# ---------------------------------------------------------------------------
# magicstore show / check
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("key")
@click.pass_obj
def show(settings: StoreSettings, key: str) -> None:
    """Print the document stored under KEY."""
    _domain(key)
    try:
        doc = open_domain(key, settings).load()
    except StoreError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(doc, indent=2, ensure_ascii=False))


@cli.command()
@click.argument("key")
@click.pass_obj
def check(settings: StoreSettings, key: str) -> None:
    """Load KEY, repairing it if corrupted, and report what happened."""
    domain = _domain(key)
    events: list[RecoveryEvent] = []
    try:
        doc = open_domain(key, settings, on_corruption=events.append).load()
    except StoreError as exc:
        raise click.ClickException(str(exc)) from exc

    if not events:
        click.echo(f"{key}: ok ({len(domain.records(doc))} records)")
        return
    for event in events:
        click.echo(f"{key}: corrupted ({event.reason})")
        if event.backup is not None:
            click.echo(f"  backup : {event.backup}")
        click.echo(f"  reset  : {'done' if event.reset else 'FAILED'}")
    if not all(e.reset for e in events):
        raise SystemExit(1)


# ---------------------------------------------------------------------------
# magicstore backups / lock-name
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("key")
@click.pass_obj
def backups(settings: StoreSettings, key: str) -> None:
    """List corruption backups of KEY, oldest first."""
    path = _domain(key).path(settings)
    found = list_backups(path)
    if not found:
        click.echo(f"no backups of {path}")
        return
    for backup in found:
        click.echo(str(backup))


@cli.command("lock-name")
@click.argument("path", type=click.Path(path_type=Path))
@click.pass_obj
def lock_name_cmd(settings: StoreSettings, path: Path) -> None:
    """Print the lock name and lock file used for PATH."""
    lock = ProcessLock(settings.lock_dir)
    click.echo(lock_name(path))
    click.echo(str(lock.lock_file(path)))

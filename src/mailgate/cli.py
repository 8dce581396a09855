"""mailgate command-line interface."""

from __future__ import annotations

import csv
import logging
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Annotated, NoReturn, TextIO

import typer

from . import __version__
from .config import Config, ConfigError, load_config, resolve_config_path
from .logging import configure_logging
from .mailbox import ImapMailbox, MailboxConnector, MailboxError
from .orchestrator import CycleReport, Orchestrator
from .pidfile import PidFile, PidFileError
from .reputation import ReputationEntry, ReputationStore
from .rules import RuleSettings, build_rules
from .runtime import PollingDaemon
from .stopwords import StopwordError, build_searcher
from .store import Store, StoreError
from .subjects import SubjectCache
from .whitelist import WhitelistError, WhitelistManager

app = typer.Typer(help="IMAP inbox gatekeeper: keeps known correspondents, bins the rest.")
DEFAULT_PID_NAME = "mailgate.pid"
CSV_COLUMNS = (
    "address",
    "sentCount",
    "inboxCount",
    "sentDate",
    "inboxDate",
    "sentBytes",
    "inboxBytes",
)
LOGGER = logging.getLogger(__name__)


@dataclass
class CLIState:
    """Stores shared CLI options."""

    config_path: Path | None
    dry_run: bool = False


@app.callback()
def _mailgate(
    ctx: typer.Context,
    config: Annotated[
        Path | None,
        typer.Option(
            "-c",
            "--config",
            help="Path to config (env MAILGATE_CONFIG or ~/.config/mailgate/config.yaml).",
        ),
    ] = None,
    dry_run: Annotated[
        bool,
        typer.Option(
            "--dry-run",
            help="Classify and log, but never move messages.",
        ),
    ] = False,
) -> None:
    """Capture global CLI options."""

    resolved = config.expanduser() if config else None
    ctx.obj = CLIState(config_path=resolved, dry_run=dry_run)


@app.command()
def daemon(
    ctx: typer.Context,
    pid_file: Annotated[
        Path | None,
        typer.Option(
            "--pid-file",
            help="Override PID file location (defaults to <root>/mailgate.pid).",
        ),
    ] = None,
) -> None:
    """Poll the Inbox until stopped."""

    state = _state(ctx)
    config = _load_environment(state)
    orchestrator = _build_orchestrator(config, dry_run=state.dry_run)
    runtime = PollingDaemon(orchestrator, interval=config.poll_interval)
    try:
        with PidFile(_pid_file_path(pid_file, config)):
            runtime.run()
    except PidFileError as exc:
        orchestrator.close()
        typer.secho(str(exc), fg=typer.colors.RED, err=True)
        raise typer.Exit(1) from exc


@app.command("run-once")
def run_once(ctx: typer.Context) -> None:
    """Run a single classification cycle and print what happened."""

    state = _state(ctx)
    config = _load_environment(state)
    orchestrator = _build_orchestrator(config, dry_run=state.dry_run)
    try:
        report = orchestrator.run_cycle()
    except (MailboxError, WhitelistError, StoreError) as exc:
        typer.secho(f"Cycle failed: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1) from exc
    finally:
        orchestrator.close()
    _print_report(report, dry_run=state.dry_run)


@app.command()
def regenerate(ctx: typer.Context) -> None:
    """Rebuild the whitelist from the Inbox and Sent folders now."""

    state = _state(ctx)
    config = _load_environment(state)
    whitelist = _build_whitelist(config, Store(config.root_dir))
    try:
        store = whitelist.generate()
    except (MailboxError, StoreError) as exc:
        typer.secho(f"Whitelist regeneration failed: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1) from exc
    typer.echo(f"Whitelist regenerated: {len(store)} address(es).")


@app.command()
def lookup(
    ctx: typer.Context,
    address: Annotated[str, typer.Argument(..., help="Email address to look up.")],
) -> None:
    """Show what the whitelist knows about an address."""

    state = _state(ctx)
    config = _load_config(state.config_path)
    store = _load_reputation(config)
    entry = store.lookup(address)
    if entry is None:
        typer.echo(f"{address.lower()}: unknown")
        raise typer.Exit(1)
    typer.echo(f"{address.lower()}:")
    for key, value in entry.to_json().items():
        typer.echo(f"  {key}: {value}")


@app.command("export-whitelist")
def export_whitelist(
    ctx: typer.Context,
    output: Annotated[
        Path | None,
        typer.Option(
            "-o",
            "--output",
            help="Write CSV to this file instead of stdout.",
        ),
    ] = None,
) -> None:
    """Dump the whitelist as CSV, largest Inbox byte count first."""

    state = _state(ctx)
    config = _load_config(state.config_path)
    store = _load_reputation(config)
    if output is None:
        _write_csv(store, sys.stdout)
        return
    target = output.expanduser()
    with target.open("w", encoding="utf-8", newline="") as handle:
        _write_csv(store, handle)
    typer.echo(f"Exported {len(store)} address(es) to {target}")


@app.command()
def status(
    ctx: typer.Context,
    pid_file: Annotated[
        Path | None,
        typer.Option(
            "--pid-file",
            help="Override PID file location used to detect running daemon.",
        ),
    ] = None,
) -> None:
    """Display configuration, daemon and whitelist state."""

    state = _state(ctx)
    config = _load_config(state.config_path)
    store = Store(config.root_dir)
    running = PidFile(_pid_file_path(pid_file, config)).running_pid()

    typer.echo("→ mailgate status")
    typer.echo(f"Version: {__version__}")
    typer.echo(f"Config path: {resolve_config_path(state.config_path)}")
    typer.echo(f"Root dir: {config.root_dir}")
    daemon_line = f"Daemon: ● Running (PID {running})" if running else "Daemon: ○ Stopped"
    typer.echo(daemon_line)
    typer.echo(f"IMAP: {config.imap.username}@{config.imap.host}:{config.imap.port}")

    modified = store.whitelist.modified_at()
    if modified is None:
        typer.echo("Whitelist: not generated")
    else:
        age = datetime.now(timezone.utc) - modified
        try:
            reputation = ReputationStore.load(store.whitelist)
        except ValueError as exc:
            typer.echo(f"Whitelist: unreadable ({exc})")
        else:
            size = len(reputation) if reputation is not None else 0
            stale = " (stale)" if age > config.freshness else ""
            typer.echo(f"Whitelist: {size} address(es), {_format_age(age.total_seconds())} old{stale}")
    subjects = SubjectCache.load(store.subjects, expiry=config.subject_expiry)
    typer.echo(f"Tracked subjects: {len(subjects)}")


def _state(ctx: typer.Context) -> CLIState:
    state = ctx.obj
    if not isinstance(state, CLIState):
        raise RuntimeError("CLI state missing from context.")
    return state


def _load_environment(state: CLIState) -> Config:
    config = _load_config(state.config_path)
    try:
        configure_logging(config.logging, config.root_dir)
    except ConfigError as exc:
        _config_failure(exc)
    return config


def _load_config(path: Path | None) -> Config:
    try:
        return load_config(path)
    except ConfigError as exc:
        _config_failure(exc)


def _config_failure(exc: ConfigError | StopwordError) -> NoReturn:
    typer.secho(f"Configuration error: {exc}", fg=typer.colors.RED, err=True)
    raise typer.Exit(2) from exc


def _build_whitelist(config: Config, store: Store) -> WhitelistManager:
    return WhitelistManager(
        store.whitelist,
        lambda: ImapMailbox.connect(config.imap),
        inbox_folder=config.folders.inbox,
        sent_folder=config.folders.sent,
        freshness=config.freshness,
    )


def _build_orchestrator(config: Config, *, dry_run: bool) -> Orchestrator:
    try:
        searcher = build_searcher(config.user.languages, config.user.common_words)
    except StopwordError as exc:
        _config_failure(exc)
    store = Store(config.root_dir)
    whitelist = _build_whitelist(config, store)
    rules = build_rules(RuleSettings.from_config(config), whitelist.lookup, searcher)
    LOGGER.debug("Rule chain: %s", ", ".join(rules.names))
    return Orchestrator(
        connector=MailboxConnector(lambda: ImapMailbox.connect(config.imap)),
        whitelist=whitelist,
        rules=rules,
        subjects=SubjectCache.load(store.subjects, expiry=config.subject_expiry),
        trash_folder=config.folders.trash,
        inbox_folder=config.folders.inbox,
        lookback=config.lookback,
        dry_run=dry_run,
    )


def _load_reputation(config: Config) -> ReputationStore:
    document = Store(config.root_dir).whitelist
    try:
        store = ReputationStore.load(document)
    except ValueError as exc:
        typer.secho(f"Whitelist at {document.path} is unreadable: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1) from exc
    if store is None:
        typer.secho(
            f"No whitelist at {document.path}; run 'mailgate regenerate' first.",
            fg=typer.colors.RED,
            err=True,
        )
        raise typer.Exit(1)
    return store


def _write_csv(store: ReputationStore, handle: TextIO) -> None:
    writer = csv.writer(handle)
    writer.writerow(CSV_COLUMNS)
    for address, entry in store.rows():
        writer.writerow(_csv_row(address, entry))


def _csv_row(address: str, entry: ReputationEntry) -> list[object]:
    payload = entry.to_json()
    return [address, *("" if payload.get(key) is None else payload[key] for key in CSV_COLUMNS[1:])]


def _print_report(report: CycleReport, *, dry_run: bool) -> None:
    typer.echo(f"Fetched: {report.fetched} (skipped {report.skipped})")
    typer.echo(f"Allowed: {report.allowed}")
    typer.echo(f"Denied: {report.denied} ({report.duplicates} duplicate subject(s))")
    if report.errors:
        typer.echo(f"Rule errors: {report.errors}")
    verb = "Would move" if dry_run else "Moved"
    typer.echo(f"{verb}: {len(report.moved)}")
    typer.echo(f"Next UID: {report.uid_next}")


def _format_age(seconds: float) -> str:
    if seconds < 3600:
        return f"{int(seconds // 60)}m"
    if seconds < 86400:
        return f"{seconds / 3600:.1f}h"
    return f"{seconds / 86400:.1f}d"


def _pid_file_path(pid_file: Path | None, config: Config) -> Path:
    if pid_file:
        return pid_file.expanduser()
    return (config.root_dir / DEFAULT_PID_NAME).expanduser()


def main() -> None:  # pragma: no cover - delegated to Typer
    app()


__all__ = ["app", "main"]

"""Command-line interface for netcurfew."""

import asyncio
import json
import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from netcurfew.collectors import NeighborCollector, NeighborConfig, OnlineDevices
from netcurfew.config import Config, find_config_file, load_config, merge_cli_options
from netcurfew.daemon import Daemon
from netcurfew.enforcers import DirectiveEmitter, IdListWriter, LoggingSink
from netcurfew.evaluator import Evaluator, EvaluatorConfig
from netcurfew.models import ConfigurationError, PersistenceError, ProviderUnavailable, Rule, TickResult
from netcurfew.policies import WeekdaySet
from netcurfew.storage import StatusWriter, Store, read_status

console = Console()


def build_evaluator(cfg: Config) -> Evaluator:
    return Evaluator(EvaluatorConfig(
        reset_hour=cfg.reset_hour,
        max_elapsed_minutes=cfg.max_elapsed_minutes,
        resolve_ip_targets=cfg.resolve_ip_targets,
    ))


def build_collector(cfg: Config) -> NeighborCollector:
    return NeighborCollector(NeighborConfig(
        arp_path=cfg.arp_path,
        leases_path=cfg.leases_path,
        interfaces=cfg.interfaces,
    ))


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help="Path to config file (default: searches standard locations)",
)
@click.option(
    "--db",
    type=click.Path(path_type=Path),
    default=None,
    help="Path to the DuckDB database file",
)
@click.pass_context
def main(ctx: click.Context, config: Path | None, db: Path | None) -> None:
    """netcurfew - Time-window and daily-quota blocking for network devices."""
    ctx.ensure_object(dict)

    cfg = load_config(config)
    merge_cli_options(cfg, db=db)
    ctx.obj["config"] = cfg

    if str(cfg.db_path) != ":memory:":
        cfg.db_path.parent.mkdir(parents=True, exist_ok=True)
    ctx.obj["db_path"] = cfg.db_path

    config_path = config or find_config_file()
    if config_path:
        ctx.obj["config_path"] = config_path


@main.command()
@click.option("--status-interval", type=float, default=None, help="Seconds between status ticks (default: 5)")
@click.option("--quota-interval", type=float, default=None, help="Seconds between quota accruals (default: 60)")
@click.option("--reset-hour", type=click.IntRange(0, 23), default=None, help="Daily quota reset hour")
@click.option("--chain", type=click.Choice(["forward", "input"]), default=None, help="Firewall chain to control")
@click.option("--idlist", type=click.Path(path_type=Path), default=None, help="Blocked rule id list file")
@click.option("--status-file", type=click.Path(path_type=Path), default=None, help="Status JSON output file")
@click.option("--release-on-exit", is_flag=True, help="Unblock every device when the daemon stops")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.pass_context
def run(
    ctx: click.Context,
    status_interval: float | None,
    quota_interval: float | None,
    reset_hour: int | None,
    chain: str | None,
    idlist: Path | None,
    status_file: Path | None,
    release_on_exit: bool,
    verbose: bool,
) -> None:
    """Run the enforcement daemon.

    Evaluates every rule on each tick, writes the blocked rule id list for
    the firewall layer and keeps the quota ledger up to date.

    Example:
        netcurfew run --status-interval 5 --quota-interval 60
    """
    cfg: Config = ctx.obj["config"]
    merge_cli_options(
        cfg,
        status_interval=status_interval,
        quota_interval=quota_interval,
        reset_hour=reset_hour,
        chain=chain,
        idlist=idlist,
        status_file=status_file,
    )

    log_level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if "config_path" in ctx.obj:
        console.print(f"[dim]Config: {ctx.obj['config_path']}[/dim]")

    store = Store(cfg.db_path)
    try:
        store.connect()
    except Exception as e:
        console.print(f"[red]Cannot open database {cfg.db_path}: {e}[/red]")
        sys.exit(1)

    emitter = DirectiveEmitter([LoggingSink(), IdListWriter(cfg.idlist_path)], chain=cfg.chain)

    notifier = None
    if cfg.slack_enabled and cfg.slack_webhook_url:
        from netcurfew.notifiers.slack import SlackConfig, SlackNotifier

        notifier = SlackNotifier(SlackConfig(
            webhook_url=cfg.slack_webhook_url,
            notify_unblock=cfg.slack_notify_unblock,
        ))

    daemon = Daemon(
        store=store,
        evaluator=build_evaluator(cfg),
        collector=build_collector(cfg),
        emitter=emitter,
        status_writer=StatusWriter(cfg.status_path),
        notifier=notifier,
        status_interval=cfg.status_interval,
        quota_interval=cfg.quota_interval,
    )

    console.print(
        f"[green]Starting netcurfew: status every {cfg.status_interval:g}s, "
        f"quota every {cfg.quota_interval:g}s, reset at {cfg.reset_hour}:00[/green]"
    )
    console.print(f"[cyan]Chain: {cfg.chain}, id list: {cfg.idlist_path}, status: {cfg.status_path}[/cyan]")
    if notifier:
        console.print("[cyan]Slack notifications enabled[/cyan]")
    console.print("[dim]Press Ctrl+C to stop[/dim]")

    try:
        asyncio.run(daemon.run_forever())
    except KeyboardInterrupt:
        daemon.persist()
    finally:
        if release_on_exit:
            released = emitter.release_all()
            console.print(f"[cyan]Released {len(released)} blocked rules[/cyan]")
        store.close()
        console.print(f"[green]netcurfew stopped after {daemon.ticks:,} ticks[/green]")


def _require_db(cfg: Config) -> None:
    if str(cfg.db_path) != ":memory:" and not cfg.db_path.exists():
        console.print(f"[yellow]No database at {cfg.db_path}. Run 'netcurfew rules import' first.[/yellow]")
        sys.exit(1)


@contextmanager
def _writable_store(cfg: Config) -> Iterator[Store]:
    """Open the store for writing, or exit if the daemon holds the lock."""
    store = Store(cfg.db_path)
    try:
        store.connect()
    except PersistenceError as e:
        console.print(f"[red]{e}[/red]")
        console.print("[yellow]Is 'netcurfew run' using this database? Stop the daemon first.[/yellow]")
        sys.exit(1)

    try:
        yield store
    finally:
        store.close()


def _evaluate_snapshot(cfg: Config, store: Store) -> tuple[list[Rule], TickResult]:
    """One-shot evaluation without quota accrual or writes."""
    rules = store.list_rules()
    evaluator = build_evaluator(cfg)
    try:
        evaluator.ledger.load(store.load_ledger())
    except PersistenceError as e:
        console.print(f"[yellow]{e}[/yellow]")

    try:
        online = build_collector(cfg).collect()
    except ProviderUnavailable:
        online = OnlineDevices.unavailable()

    return rules, evaluator.tick(rules, online, accrue=False)


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Print the status snapshot as JSON")
@click.pass_context
def status(ctx: click.Context, as_json: bool) -> None:
    """Show which rules and devices are blocked right now."""
    cfg: Config = ctx.obj["config"]
    _require_db(cfg)

    with Store(cfg.db_path, read_only=True) as store:
        rules, result = _evaluate_snapshot(cfg, store)

    snapshot = result.snapshot
    if as_json:
        click.echo(json.dumps(snapshot.to_dict(), indent=2))
        return

    if not rules:
        console.print("[yellow]No rules configured. Run 'netcurfew rules import' first.[/yellow]")
        return

    table = Table(title="Device Rules")
    table.add_column("ID", justify="right", style="dim")
    table.add_column("Name")
    table.add_column("Target")
    table.add_column("Window")
    table.add_column("Days")
    table.add_column("State")
    table.add_column("Quota left", justify="right")

    for rule in rules:
        outcome = result.outcomes.get(rule.id)
        if not rule.enabled:
            state = "[dim]Disabled[/dim]"
        elif outcome and outcome.error:
            state = f"[yellow]Error: {outcome.error[:40]}[/yellow]"
        elif outcome and outcome.blocked:
            state = f"[red]Blocking ({outcome.reason})[/red]"
        else:
            state = "[green]Active[/green]"

        quota_left = "-"
        if rule.quota_enabled and rule.uid in snapshot.per_uid:
            quota = snapshot.per_uid[rule.uid]
            color = "red" if quota.exhausted else ("yellow" if quota.remaining_minutes <= 5 else "white")
            quota_left = f"[{color}]{quota.remaining_minutes}m[/{color}]"

        table.add_row(
            str(rule.id),
            rule.comment[:20],
            rule.target[:30],
            f"{rule.time_start}-{rule.time_end}",
            _describe_week(rule.week),
            state,
            quota_left,
        )

    console.print(table)
    blocked_color = "red" if snapshot.blocked_count else "green"
    console.print(
        f"Blocked devices: [{blocked_color}]{snapshot.blocked_count}/{snapshot.total_count}[/{blocked_color}]"
    )
    console.print(f"Next quota reset: {snapshot.next_reset_time:%Y-%m-%d %H:%M}")

    daemon_status = read_status(cfg.status_path)
    if daemon_status:
        console.print(f"[dim]Daemon last tick: {daemon_status.get('timestamp', 'unknown')}[/dim]")


def _describe_week(week: str) -> str:
    try:
        return WeekdaySet.parse(week).describe()
    except ConfigurationError:
        return f"invalid ({week})"


@main.group()
def rules() -> None:
    """Manage device rules."""


@rules.command("list")
@click.pass_context
def rules_list(ctx: click.Context) -> None:
    """List stored rules."""
    cfg: Config = ctx.obj["config"]
    _require_db(cfg)

    with Store(cfg.db_path, read_only=True) as store:
        rule_list = store.list_rules()

    if not rule_list:
        console.print("[yellow]No rules stored[/yellow]")
        return

    table = Table(title="Stored Rules")
    table.add_column("ID", justify="right", style="dim")
    table.add_column("Name")
    table.add_column("Enabled")
    table.add_column("Target")
    table.add_column("Window")
    table.add_column("Days")
    table.add_column("Quota", justify="right")
    table.add_column("UID", style="dim")

    for rule in rule_list:
        table.add_row(
            str(rule.id),
            rule.comment,
            "yes" if rule.enabled else "[dim]no[/dim]",
            rule.target,
            f"{rule.time_start}-{rule.time_end}",
            _describe_week(rule.week),
            f"{rule.quota_minutes}m" if rule.quota_enabled else "-",
            rule.uid or "",
        )

    console.print(table)


@rules.command("import")
@click.option("--keep-existing", is_flag=True, help="Keep stored rules that are not in the config file")
@click.pass_context
def rules_import(ctx: click.Context, keep_existing: bool) -> None:
    """Import [[rules]] from the config file into the rule store."""
    cfg: Config = ctx.obj["config"]

    if not cfg.rules:
        console.print("[yellow]No [[rules]] in the config file[/yellow]")
        return

    if cfg.rule_problems:
        console.print("[red]Refusing to import invalid rules:[/red]")
        for rule_id, problems in sorted(cfg.rule_problems.items()):
            for problem in problems:
                console.print(f"  rule {rule_id}: {problem}")
        sys.exit(1)

    with _writable_store(cfg) as store:
        try:
            count = store.import_rules(cfg.rules, replace=not keep_existing)
        except ConfigurationError as e:
            console.print(f"[red]Refusing to import rules: {e}[/red]")
            sys.exit(1)
        store.assign_missing_uids()

    console.print(f"[green]Imported {count} rules[/green]")


@rules.command("delete")
@click.argument("rule_id", type=int)
@click.pass_context
def rules_delete(ctx: click.Context, rule_id: int) -> None:
    """Delete a rule and its quota ledger entry."""
    cfg: Config = ctx.obj["config"]

    with _writable_store(cfg) as store:
        deleted = store.delete_rule(rule_id)

    if not deleted:
        console.print(f"[yellow]No rule with id {rule_id}[/yellow]")
        sys.exit(1)
    console.print(f"[green]Deleted rule {rule_id}[/green]")


@main.group()
def quota() -> None:
    """Inspect and manage the quota ledger."""


@quota.command("reset")
@click.argument("uid", required=False)
@click.pass_context
def quota_reset(ctx: click.Context, uid: str | None) -> None:
    """Give a device (or, without UID, every device) a fresh daily quota."""
    cfg: Config = ctx.obj["config"]

    with _writable_store(cfg) as store:
        evaluator = build_evaluator(cfg)
        evaluator.ledger.load(store.load_ledger())
        count = evaluator.ledger.reset(uid, datetime.now())
        store.save_ledger(evaluator.ledger.dirty_entries())

    if uid and count == 0:
        console.print(f"[yellow]No quota ledger entry for {uid}[/yellow]")
        sys.exit(1)
    console.print(f"[green]Reset {count} quota ledger entries[/green]")


@quota.command("purge")
@click.pass_context
def quota_purge(ctx: click.Context) -> None:
    """Delete ledger entries that no longer belong to any rule."""
    cfg: Config = ctx.obj["config"]

    with _writable_store(cfg) as store:
        count = store.purge_orphaned_ledger()

    console.print(f"[green]Purged {count} orphaned ledger entries[/green]")


if __name__ == "__main__":
    main()

"""
govcore CLI

Commands for inspecting a governance backup file:
- environments: List environments and their scopes
- resolve: Show the effective policy set of a resource
- report: Compliance report over resources
- journal: Show journaled changes
- verify: Check the journal chain and snapshot of a backup

Every command is read-only; a backup is restored in memory, optionally to
a point in time with ``--until``.
"""

import json
import logging
from datetime import datetime
from typing import Optional

import click
import yaml
from rich import box
from rich.console import Console
from rich.table import Table

from govcore.core import GovernanceCore
from govcore.entity import ensure_utc
from govcore.exceptions import GovCoreError
from govcore.journal.backup import read_backup, verify_backup

console = Console()
logger = logging.getLogger(__name__)

_DATETIME = click.DateTime(formats=["%Y-%m-%d", "%Y-%m-%dT%H:%M:%S", "%Y-%m-%dT%H:%M:%S%z"])

_FORMAT_OPTION = click.option(
    "--format", "fmt",
    type=click.Choice(["table", "json", "yaml"]),
    default="table",
    help="Output format (table, json, or yaml).",
)


def _format_datetime(dt: Optional[datetime]) -> str:
    """Format a datetime for display, handling None."""
    if dt is None:
        return "N/A"
    return dt.strftime("%Y-%m-%d %H:%M:%S")


def _output(data: object, fmt: str) -> None:
    if fmt == "json":
        click.echo(json.dumps(data, indent=2, default=str))
    else:
        click.echo(yaml.safe_dump(data, default_flow_style=False, sort_keys=False))


def _load(backup_path: str, until: Optional[datetime]) -> GovernanceCore:
    try:
        return GovernanceCore.from_backup(backup_path, until=ensure_utc(until))
    except GovCoreError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1)


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    help="Logging level for govcore messages.",
)
def cli(log_level: str) -> None:
    """Inspect governance backups: environments, effective policies,
    compliance and the change journal."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command()
@click.argument("backup", type=click.Path(exists=True, dir_okay=False))
@click.option("--until", type=_DATETIME, default=None, help="Restore to this point in time.")
@_FORMAT_OPTION
def environments(backup: str, until: Optional[datetime], fmt: str) -> None:
    """List environments, their tiers and scopes."""
    core = _load(backup, until)
    envs = core.registry.list_environments()

    if fmt in ("json", "yaml"):
        _output([
            {"id": e.id, "name": e.name, "tier": e.tier, "scopes": list(e.scopes), "description": e.description}
            for e in envs
        ], fmt)
        return

    table = Table(box=box.ROUNDED, title="Environments")
    table.add_column("Tier", justify="right")
    table.add_column("Name", style="cyan")
    table.add_column("Id", style="dim")
    table.add_column("Scopes")
    for e in envs:
        table.add_row(str(e.tier), e.name, e.id, "\n".join(e.scopes) or "-")
    console.print(table)
    console.print(f"\n  Total environments: {len(envs)}\n")


@cli.command()
@click.argument("backup", type=click.Path(exists=True, dir_okay=False))
@click.argument("resource")
@click.option("--at", "at", type=_DATETIME, default=None, help="Evaluate exemptions at this time.")
@click.option("--until", type=_DATETIME, default=None, help="Restore to this point in time.")
@_FORMAT_OPTION
def resolve(backup: str, resource: str, at: Optional[datetime], until: Optional[datetime], fmt: str) -> None:
    """Show the effective policy set of RESOURCE.

    RESOURCE is a scope id, e.g. /subscriptions/s1/resourceGroups/rg1.
    """
    core = _load(backup, until)
    result = core.resolver.resolve(resource, at=ensure_utc(at))

    if fmt in ("json", "yaml"):
        _output(result.model_dump(mode="json"), fmt)
        return

    env = result.environment_name or "[red]none[/red]"
    console.print(f"\n[bold blue]Effective policies for {result.resource}[/bold blue]  (environment: {env})\n")
    table = Table(box=box.ROUNDED)
    table.add_column("Assignment", style="cyan")
    table.add_column("Policy")
    table.add_column("Target", style="dim")
    table.add_column("Mode")
    table.add_column("Status")
    for entry in result.entries:
        if entry.suppressed:
            status = f"[yellow]suppressed[/yellow] ({entry.suppression.exemption_id})"
        elif not entry.effective:
            status = f"[dim]overridden by {entry.overridden_by}[/dim]"
        elif entry.reporting_only:
            status = "[blue]audit only[/blue]"
        else:
            status = "[green]effective[/green]"
        table.add_row(
            entry.assignment_name,
            f"{entry.policy_name} v{entry.policy_version}",
            entry.target,
            entry.enforcement_mode.value,
            status,
        )
    console.print(table)
    for gap in result.gaps:
        console.print(f"  [bold red]gap[/bold red] {gap.kind.value}: {gap.message}")
    console.print()


@cli.command()
@click.argument("backup", type=click.Path(exists=True, dir_okay=False))
@click.argument("resources", nargs=-1)
@click.option("--environment", "environment", default=None, help="Environment name or id to report on.")
@click.option("--at", "at", type=_DATETIME, default=None, help="Evaluate at this time.")
@click.option("--until", type=_DATETIME, default=None, help="Restore to this point in time.")
@_FORMAT_OPTION
def report(
    backup: str,
    resources: tuple[str, ...],
    environment: Optional[str],
    at: Optional[datetime],
    until: Optional[datetime],
    fmt: str,
) -> None:
    """Compliance report over RESOURCES (default: every registered scope)."""
    core = _load(backup, until)
    environment_id = None
    if environment is not None:
        env = core.registry.find_environment(environment)
        environment_id = env.id if env is not None else environment
    result = core.compliance.report(
        resources=list(resources) or None,
        environment_id=environment_id,
        at=ensure_utc(at),
    )

    if fmt in ("json", "yaml"):
        _output(result.model_dump(mode="json"), fmt)
        return

    style = "green" if result.coverage_score >= 90 else "yellow" if result.coverage_score >= 60 else "red"
    console.print(f"\n[bold blue]Compliance report {result.report_id}[/bold blue]\n")
    console.print(
        f"  Resources: {result.resources_evaluated}   Governed: {result.resources_governed}   "
        f"Coverage: [{style}]{result.coverage_score:.1f}%[/{style}]\n"
    )
    if result.gaps:
        table = Table(box=box.ROUNDED, title="Gaps")
        table.add_column("Resource", style="cyan")
        table.add_column("Kind")
        table.add_column("Detail")
        for gap in result.gaps:
            table.add_row(gap.resource, f"[red]{gap.kind.value}[/red]", gap.message)
        console.print(table)
    if result.suppressions:
        table = Table(box=box.ROUNDED, title="Suppressions")
        table.add_column("Resource", style="cyan")
        table.add_column("Assignment")
        table.add_column("Exemption")
        table.add_column("Expires", style="dim")
        for s in result.suppressions:
            table.add_row(
                s.resource,
                s.assignment_name + (f" / {s.member_reference_id}" if s.member_reference_id else ""),
                f"{s.exemption_id} ({s.category})",
                _format_datetime(s.expires_at),
            )
        console.print(table)
    for line in result.recommendations:
        console.print(f"  - {line}")
    console.print()


@cli.command()
@click.argument("backup", type=click.Path(exists=True, dir_okay=False))
@click.option("--entity", "entity_id", default=None, help="Only changes to this entity id.")
@click.option("--since", type=_DATETIME, default=None, help="Only changes at or after this time.")
@click.option("--until", type=_DATETIME, default=None, help="Only changes at or before this time.")
@click.option("--limit", type=int, default=None, help="Max number of records (most recent).")
@_FORMAT_OPTION
def journal(
    backup: str,
    entity_id: Optional[str],
    since: Optional[datetime],
    until: Optional[datetime],
    limit: Optional[int],
    fmt: str,
) -> None:
    """Show journaled changes, oldest first."""
    core = _load(backup, None)
    records = core.compliance.change_history(
        entity_id=entity_id, start=ensure_utc(since), end=ensure_utc(until)
    )
    if limit is not None:
        records = records[-limit:]

    if fmt in ("json", "yaml"):
        _output([r.model_dump(mode="json") for r in records], fmt)
        return

    table = Table(box=box.ROUNDED, title="Change journal")
    table.add_column("Seq", justify="right")
    table.add_column("Time", style="dim")
    table.add_column("Actor")
    table.add_column("Operation")
    table.add_column("Entity", style="cyan")
    for r in records:
        table.add_row(
            str(r.sequence),
            _format_datetime(r.timestamp),
            r.actor,
            r.operation.value,
            f"{r.entity_type.value} {r.entity_id}",
        )
    console.print(table)
    console.print(f"\n  Total records: {len(records)}\n")


@cli.command()
@click.argument("backup", type=click.Path(exists=True, dir_okay=False))
def verify(backup: str) -> None:
    """Verify a backup's hash chain and that its journal reproduces its snapshot."""
    try:
        ok, error = verify_backup(read_backup(backup))
    except GovCoreError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1)
    if not ok:
        console.print(f"[bold red]Backup is invalid:[/bold red] {error}")
        raise SystemExit(1)
    console.print("[green]Backup verified: journal chain intact and snapshot reproducible[/green]")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()

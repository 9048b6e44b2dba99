"""Rendering of change sets, apply results and stack outputs."""

import json
import re
from typing import Any, Dict

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from stackweaver.orchestrator.executor import ApplyResult, ResourceOutcome
from stackweaver.orchestrator.planner import ChangeAction, ChangeSet

ACTION_STYLES = {
    ChangeAction.CREATE: "green",
    ChangeAction.UPDATE: "yellow",
    ChangeAction.REPLACE: "magenta",
    ChangeAction.DELETE: "red",
    ChangeAction.NOOP: "dim",
}

OUTCOME_STYLES = {
    ResourceOutcome.CREATED: "green",
    ResourceOutcome.UPDATED: "yellow",
    ResourceOutcome.REPLACED: "magenta",
    ResourceOutcome.DELETED: "red",
    ResourceOutcome.RETAINED: "cyan",
    ResourceOutcome.ORPHANED: "bold yellow",
    ResourceOutcome.FAILED: "bold red",
    ResourceOutcome.SKIPPED_BY_CONDITION: "dim",
    ResourceOutcome.UNCHANGED: "dim",
    ResourceOutcome.ROLLED_BACK: "yellow",
    ResourceOutcome.NOT_STARTED: "dim",
}


def _short(value: Any, limit: int = 60) -> str:
    text = value if isinstance(value, str) else json.dumps(value, default=str)
    return text if len(text) <= limit else text[:limit - 3] + "..."


def print_change_set(console: Console, change_set: ChangeSet, show_noop: bool = False) -> None:
    """Print a change set as a table followed by a summary line."""
    table = Table(show_header=True, header_style="bold", title=f"Change set: {change_set.stack_name}")
    table.add_column("Rank", justify="right", no_wrap=True)
    table.add_column("Action", no_wrap=True)
    # Names and types are never cut; narrow consoles wrap the details instead
    table.add_column("Resource", style="cyan", no_wrap=True)
    table.add_column("Details", overflow="fold")

    for entry in change_set.entries:
        if entry.action == ChangeAction.NOOP and not show_noop:
            continue
        details = [entry.reason] if entry.reason else []
        for diff in entry.diffs:
            marker = " (replace)" if diff.requires_replacement else ""
            via = f" via {diff.via}" if diff.via else ""
            details.append(f"{diff.path}: {_short(diff.old)} -> {_short(diff.new)}{marker}{via}")
        style = ACTION_STYLES[entry.action]
        table.add_row(
            str(entry.rank),
            f"[{style}]{entry.action.value}[/{style}]",
            f"{entry.logical_name}\n[dim]{entry.type_name}[/dim]",
            "\n".join(details),
        )
    for name in change_set.skipped_by_condition:
        table.add_row("-", "[dim]SKIP[/dim]", name, "condition is false")
    for name, pending in change_set.pending_deletes.items():
        ids = ", ".join(item.physical_id for item in pending)
        table.add_row("-", "[red]CLEANUP[/red]", name, f"delete replaced resources: {ids}")

    console.print(table)
    summary = change_set.get_summary()
    console.print(
        f"[green]{summary['create']} to create[/green], "
        f"[yellow]{summary['update']} to update[/yellow], "
        f"[magenta]{summary['replace']} to replace[/magenta], "
        f"[red]{summary['delete']} to delete[/red], "
        f"{summary['noop']} unchanged"
    )


def print_apply_result(console: Console, result: ApplyResult) -> None:
    """Print per-resource outcomes and a closing panel."""
    table = Table(show_header=True, header_style="bold")
    table.add_column("Resource", style="cyan", no_wrap=True)
    table.add_column("Outcome", no_wrap=True)
    table.add_column("Physical ID", overflow="fold")
    table.add_column("Details", overflow="fold")

    for name, item in result.results.items():
        style = OUTCOME_STYLES[item.outcome]
        details = item.detail or ""
        if item.error is not None:
            details = f"{details}\n{item.error}".strip()
        table.add_row(name, f"[{style}]{item.outcome.value}[/{style}]", item.physical_id or "", details)
    console.print(table)

    summary = ", ".join(f"{count} {outcome}" for outcome, count in sorted(result.get_summary().items()))
    if result.success:
        console.print(Panel.fit(
            f"[green]✓ Apply succeeded[/green]\n\n{summary}\nDuration: {result.duration:.2f}s",
            title=f"Stack {result.stack_name}",
            border_style="green"
        ))
    elif result.cancelled:
        console.print(Panel.fit(
            f"[yellow]⚠ Apply cancelled[/yellow]\n\n{summary}",
            title=f"Stack {result.stack_name}",
            border_style="yellow"
        ))
    else:
        message = f"[red]✗ Apply failed[/red]\n\n{summary}"
        if result.rolled_back:
            message += "\nCompleted changes were rolled back"
        console.print(Panel.fit(message, title=f"Stack {result.stack_name}", border_style="red"))


def print_outputs(console: Console, stack_name: str, outputs: Dict[str, Any], fmt: str) -> None:
    """Print outputs as a table, JSON or shell exports."""
    if fmt == "json":
        click.echo(json.dumps(outputs, indent=2, sort_keys=True, default=str))
        return
    if fmt == "env":
        for name, value in sorted(outputs.items()):
            env_name = re.sub(r"[^A-Za-z0-9]", "_", name).upper()
            text = value if isinstance(value, str) else json.dumps(value)
            click.echo(f'export {env_name}="{text}"')
        return

    if not outputs:
        console.print("[dim]No outputs found[/dim]")
        return
    table = Table(show_header=True, header_style="bold", title=f"Stack Outputs - {stack_name}")
    table.add_column("Output Name", style="cyan")
    table.add_column("Value", style="white")
    for name, value in sorted(outputs.items()):
        table.add_row(name, value if isinstance(value, str) else json.dumps(value))
    console.print(table)

"""Main CLI entry point."""

import functools
import json
import signal
import sys
import threading
from typing import Any, Callable, Dict, Optional, Tuple

import click
from rich.console import Console
from rich.panel import Panel

from stackweaver import __version__
from stackweaver.cli.output import print_apply_result, print_change_set, print_outputs
from stackweaver.config import load_settings
from stackweaver.orchestrator import ApplyResult, StackOrchestrator
from stackweaver.template.parameters import load_parameter_file, parse_parameter_overrides
from stackweaver.utils.errors import EngineError
from stackweaver.utils.logging import get_logger, setup_logging

console = Console()
err_console = Console(stderr=True)
logger = get_logger(__name__)

EXIT_FAILED_APPLY = 6
EXIT_CANCELLED = 8
EXIT_UNEXPECTED = 1


def handle_errors(func: Callable) -> Callable:
    """Map engine errors to their exit codes."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except EngineError as e:
            err_console.print(e.to_user_message(), style="red", markup=False, highlight=False)
            logger.debug(f"Error details: {e.to_dict()}")
            sys.exit(e.exit_code)
        except KeyboardInterrupt:
            err_console.print("Interrupted", style="yellow")
            sys.exit(EXIT_CANCELLED)
        except (click.exceptions.Exit, click.exceptions.Abort, click.ClickException):
            raise
        except Exception as e:
            logger.exception("Unexpected error")
            err_console.print(f"Unexpected error: {e}", style="red", markup=False)
            sys.exit(EXIT_UNEXPECTED)
    return wrapper


def template_options(func: Callable) -> Callable:
    """Options shared by commands that take a template."""
    func = click.option('--param', 'param_pairs', multiple=True, metavar='KEY=VALUE',
                        help='Parameter value (repeatable, overrides --params)')(func)
    func = click.option('--params', 'params_file', type=click.Path(exists=True, dir_okay=False),
                        help='YAML or JSON file with parameter values')(func)
    return func


def collect_parameters(params_file: Optional[str], param_pairs: Tuple[str, ...]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    if params_file:
        values.update(load_parameter_file(params_file))
    values.update(parse_parameter_overrides(param_pairs))
    return values


def create_orchestrator(ctx: click.Context) -> StackOrchestrator:
    """Create the orchestrator for a command (tests may pre-seed one in ctx.obj)."""
    orchestrator = ctx.obj.get('orchestrator')
    if orchestrator is None:
        orchestrator = StackOrchestrator(ctx.obj['settings'])
        ctx.obj['orchestrator'] = orchestrator
    return orchestrator


def run_cancellable(func: Callable[[threading.Event], ApplyResult]) -> ApplyResult:
    """Run an apply so that Ctrl-C stops dispatch and rolls back instead of aborting."""
    cancel_event = threading.Event()

    def on_interrupt(signum, frame):
        err_console.print("Cancelling: waiting for in-flight operations, then rolling back...",
                          style="yellow")
        cancel_event.set()

    if threading.current_thread() is not threading.main_thread():
        return func(cancel_event)

    previous = signal.signal(signal.SIGINT, on_interrupt)
    try:
        return func(cancel_event)
    finally:
        signal.signal(signal.SIGINT, previous)


def finish_apply(result: ApplyResult) -> None:
    print_apply_result(console, result)
    if result.cancelled:
        sys.exit(EXIT_CANCELLED)
    if not result.success:
        sys.exit(EXIT_FAILED_APPLY)


@click.group()
@click.version_option(__version__, prog_name='stackweaver')
@click.option('--config', 'config_path', type=click.Path(dir_okay=False),
              help='Settings file (default: ./stackweaver.yaml if present)')
@click.option('--state-dir', help='Directory holding per-stack state files')
@click.option('--region', help='AWS region')
@click.option('--profile', help='AWS profile to use')
@click.option('--log-level', type=click.Choice(['debug', 'info', 'warning', 'error'],
                                               case_sensitive=False))
@click.option('--max-workers', type=click.IntRange(min=1), help='Concurrent provider operations')
@click.option('--timeout', type=click.FloatRange(min=0, min_open=True),
              help='Per-resource deadline in seconds')
@click.pass_context
def cli(ctx, config_path, state_dir, region, profile, log_level, max_workers, timeout):
    """Declarative infrastructure reconciliation engine."""
    ctx.ensure_object(dict)
    if 'settings' not in ctx.obj:
        try:
            ctx.obj['settings'] = load_settings(config_path, overrides={
                'state_dir': state_dir,
                'region': region,
                'profile': profile,
                'log_level': log_level,
                'max_workers': max_workers,
                'operation_timeout': timeout,
            })
        except EngineError as e:
            err_console.print(e.to_user_message(), style="red", markup=False)
            sys.exit(e.exit_code)
    settings = ctx.obj['settings']
    setup_logging(settings.log_level, settings.log_dir)


@cli.command()
@click.argument('template', type=click.Path(exists=True, dir_okay=False))
@template_options
@click.pass_context
@handle_errors
def validate(ctx, template, params_file, param_pairs):
    """Validate a template and its parameters without touching state."""
    orchestrator = create_orchestrator(ctx)
    parsed = orchestrator.load_template(template)
    graph = orchestrator.validate(parsed, collect_parameters(params_file, param_pairs))

    console.print(f"[green]✓[/green] {template} is valid")
    console.print(f"  Resources: {len(graph)}")
    if graph.excluded:
        console.print(f"  Excluded by condition: {', '.join(graph.excluded)}")
    console.print(f"  Outputs: {len(graph.outputs)}")


@cli.command()
@click.argument('template', type=click.Path(exists=True, dir_okay=False))
@click.option('--stack', 'stack_name', required=True, help='Stack name')
@template_options
@click.option('--json', 'as_json', is_flag=True, help='Print the change set as JSON')
@click.option('--show-unchanged', is_flag=True, help='Include NOOP entries in the table')
@click.pass_context
@handle_errors
def plan(ctx, template, stack_name, params_file, param_pairs, as_json, show_unchanged):
    """Show the changes an apply would make."""
    orchestrator = create_orchestrator(ctx)
    parsed = orchestrator.load_template(template)
    change_set = orchestrator.plan(parsed, stack_name, collect_parameters(params_file, param_pairs))

    if as_json:
        click.echo(json.dumps(change_set.to_dict(), indent=2, default=str))
        return
    print_change_set(console, change_set, show_noop=show_unchanged)


@cli.command()
@click.argument('template', type=click.Path(exists=True, dir_okay=False))
@click.option('--stack', 'stack_name', required=True, help='Stack name')
@template_options
@click.option('--yes', '-y', is_flag=True, help='Skip confirmation prompt')
@click.option('--simulate', is_flag=True,
              help='Apply against in-memory providers; nothing is created or persisted')
@click.pass_context
@handle_errors
def apply(ctx, template, stack_name, params_file, param_pairs, yes, simulate):
    """Plan and apply a template to a stack."""
    orchestrator = create_orchestrator(ctx)
    parsed = orchestrator.load_template(template)
    change_set = orchestrator.plan(parsed, stack_name, collect_parameters(params_file, param_pairs),
                                    live=not simulate)

    print_change_set(console, change_set)
    if not change_set.has_changes():
        console.print("[dim]No resource changes; refreshing outputs[/dim]")
    elif not yes and not simulate:
        if not click.confirm('Apply these changes?', default=False):
            console.print("[yellow]Apply aborted[/yellow]")
            return

    if simulate:
        console.print(Panel.fit("Simulated run: in-memory providers, state is not saved",
                                border_style="cyan"))
    result = run_cancellable(lambda event: orchestrator.apply(change_set, event, simulate=simulate))
    finish_apply(result)


@cli.command()
@click.argument('stack_name')
@click.option('--yes', '-y', is_flag=True, help='Skip confirmation prompt')
@click.option('--simulate', is_flag=True, help='Run against in-memory providers')
@click.pass_context
@handle_errors
def destroy(ctx, stack_name, yes, simulate):
    """Delete every resource recorded for a stack."""
    orchestrator = create_orchestrator(ctx)
    change_set = orchestrator.plan_destroy(stack_name)
    if not change_set.entries:
        console.print(f"[yellow]No resources recorded for stack:[/yellow] {stack_name}")
        return

    console.print(Panel.fit(
        f"[bold red]⚠ WARNING: This will destroy resources[/bold red]\n\n"
        f"Stack: {stack_name}\n"
        f"Resources: {len(change_set.entries)} "
        f"({sum(1 for e in change_set.entries if e.is_retained)} retained)",
        title="Destroy",
        border_style="red"
    ))
    print_change_set(console, change_set)
    if not yes and not simulate:
        if not click.confirm('Are you sure you want to destroy this stack?', default=False):
            console.print("[yellow]Destroy aborted[/yellow]")
            return

    result = run_cancellable(lambda event: orchestrator.destroy(
        stack_name, event, simulate=simulate, change_set=change_set
    ))
    finish_apply(result)


@cli.command()
@click.argument('stack_name')
@click.option('--format', 'fmt', type=click.Choice(['table', 'json', 'env']), default='table',
              help='Output format')
@click.pass_context
@handle_errors
def outputs(ctx, stack_name, fmt):
    """Show the resolved outputs of a stack."""
    orchestrator = create_orchestrator(ctx)
    print_outputs(console, stack_name, orchestrator.outputs(stack_name), fmt)


def main():
    """Console script entry point."""
    cli(obj={})


if __name__ == '__main__':
    main()

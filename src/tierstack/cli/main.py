"""Main CLI entry point."""

import sys
import threading
from pathlib import Path
from typing import Dict, Optional

import click
from botocore.exceptions import BotoCoreError, ClientError
from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn
from rich.markup import escape
from rich.table import Table

from tierstack.cli.graph import graph
from tierstack.config.parser import Config, ConfigValidationError, DEFAULT_CONFIG_FILE
from tierstack.orchestrator.engine import ProvisioningEngine, RunResult
from tierstack.orchestrator.reconciler import ExecutionMode
from tierstack.plan.dependency_graph import DependencyGraph
from tierstack.plan.models import Plan
from tierstack.provisioners import InMemoryCloud, build_aws_provisioners, build_memory_provisioners
from tierstack.state.manager import StateError, StateManager, StateNotFoundError
from tierstack.state.models import EntryOutcome, ResourceStatus, RunStatus
from tierstack.utils.aws_client import AWSClientManager
from tierstack.utils.errors import InvalidPlan, TierstackError
from tierstack.utils.logging import get_logger, setup_logging
from tierstack.utils.retry import RetryStrategy

console = Console()
logger = get_logger(__name__)

STATUS_STYLES = {
    ResourceStatus.PENDING: "dim",
    ResourceStatus.CREATING: "cyan",
    ResourceStatus.CREATED: "green",
    ResourceStatus.FAILED: "red",
    ResourceStatus.ROLLING_BACK: "yellow",
    ResourceStatus.ROLLED_BACK: "magenta",
}


@click.group()
@click.option('--profile', help='AWS profile to use')
@click.option('--region', help='AWS region')
@click.option('--log-level', default='info', type=click.Choice(['debug', 'info', 'warning', 'error']))
@click.option('--config', 'config_path', default=DEFAULT_CONFIG_FILE, help='Path to configuration file')
@click.pass_context
def cli(ctx, profile, region, log_level, config_path):
    """tierstack: reconcile a three-tier AWS topology."""
    ctx.ensure_object(dict)
    ctx.obj['profile'] = profile
    ctx.obj['region'] = region
    ctx.obj['log_level'] = log_level
    ctx.obj['config_path'] = config_path

    setup_logging(log_level)


cli.add_command(graph)


def load_config(config_path: str = DEFAULT_CONFIG_FILE) -> Config:
    """Load and validate configuration file."""
    try:
        config = Config(config_path)
        config.load()
        return config
    except FileNotFoundError:
        console.print(f"[red]Error:[/red] Configuration file not found: {config_path}")
        sys.exit(1)
    except ConfigValidationError as e:
        console.print("[red]Configuration validation failed:[/red]\n")
        console.print(str(e), markup=False)
        sys.exit(1)


def get_state_path(config: Config, simulate: bool = False) -> Path:
    """State file of the project environment; simulated runs keep their own."""
    path = Path(config.state_file())
    if simulate:
        return path.with_name(f"{path.stem}.simulated{path.suffix}")
    return path


def create_engine(
    ctx: click.Context,
    config: Config,
    simulate: bool = False,
    mode: Optional[ExecutionMode] = None,
    max_workers: Optional[int] = None,
    progress_callback=None,
) -> ProvisioningEngine:
    """Create the provisioning engine with all dependencies."""
    tag_manager = config.tag_manager()

    if simulate:
        provisioners = build_memory_provisioners(InMemoryCloud())
    else:
        profile = ctx.obj.get('profile') or config.project.profile
        region = ctx.obj.get('region') or config.project.region
        try:
            client_manager = AWSClientManager(
                profile=profile,
                region=region,
                max_workers=max_workers or config.execution.max_workers,
            )
            client_manager.validate_credentials()
        except (BotoCoreError, ClientError) as e:
            console.print(f"[red]Error creating AWS session:[/red] {e}")
            sys.exit(1)
        provisioners = build_aws_provisioners(
            client_manager,
            tag_manager,
            retry=RetryStrategy(),
            wait_timeout=config.execution.wait_timeout,
        )

    return ProvisioningEngine(
        provisioners=provisioners,
        tag_manager=tag_manager,
        mode=mode or ExecutionMode(config.execution.mode),
        max_workers=max_workers or config.execution.max_workers,
        progress_callback=progress_callback,
        state_manager=StateManager(str(get_state_path(config, simulate))),
    )


class RichProgressCallback:
    """Progress callback that displays status changes using Rich."""

    def __init__(self, progress: Progress, task_id):
        self.progress = progress
        self.task_id = task_id
        self.completed = 0
        self._lock = threading.Lock()

    def __call__(self, name: str, status: ResourceStatus, message: Optional[str]):
        """Called on every resource status change, possibly from worker threads."""
        style = STATUS_STYLES.get(status, "white")
        with self._lock:
            if status == ResourceStatus.CREATED:
                self.completed += 1
            self.progress.update(
                self.task_id,
                completed=self.completed,
                description=f"[{style}]{status.value}:[/{style}] {name}",
            )


def _run_interruptible(engine: ProvisioningEngine, plan: Plan) -> RunResult:
    """Run a plan on a worker thread so Ctrl-C cancels instead of killing the run."""
    outcome: Dict[str, object] = {}

    def target():
        try:
            outcome['result'] = engine.run(plan)
        except BaseException as e:
            outcome['error'] = e

    worker = threading.Thread(target=target, name='tierstack-run', daemon=True)
    worker.start()
    try:
        while worker.is_alive():
            worker.join(0.2)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted; cancelling run and rolling back...[/yellow]")
        engine.cancel()
        worker.join()

    if 'error' in outcome:
        raise outcome['error']
    return outcome['result']


def _states_table(states, title: str) -> Table:
    table = Table(title=title, show_header=True, header_style="bold cyan")
    table.add_column("Name", style="cyan")
    table.add_column("Kind", style="magenta")
    table.add_column("Status")
    table.add_column("Identifier", style="green")
    table.add_column("Error", style="red")

    for state in states:
        style = STATUS_STYLES.get(state.status, "white")
        table.add_row(
            state.name,
            state.kind.value,
            f"[{style}]{state.status.value}[/{style}]",
            state.identifier or "-",
            escape(state.last_error or ""),
        )
    return table


@cli.command()
@click.pass_context
def validate(ctx):
    """Validate configuration and plan without contacting AWS."""
    cfg = load_config(ctx.obj['config_path'])
    plan = cfg.build_plan()

    kinds = ", ".join(sorted(kind.value for kind in plan.kinds()))
    console.print(Panel.fit(
        f"[green]✓ Configuration is valid[/green]\n\n"
        f"Project: {cfg.project.name} ({cfg.project.environment})\n"
        f"Region: {cfg.project.region}\n"
        f"Resources: {len(plan)}\n"
        f"Kinds: {kinds}",
        title="Validation",
        border_style="green"
    ))


@cli.command('plan')
@click.pass_context
def show_plan(ctx):
    """Show execution order and the waves that can run concurrently."""
    cfg = load_config(ctx.obj['config_path'])
    plan = cfg.build_plan()

    dependency_graph = DependencyGraph.from_descriptors(plan.descriptors)
    waves = dependency_graph.get_deployment_waves()
    wave_of = {name: index for index, wave in enumerate(waves, 1) for name in wave}

    table = Table(title=f"Plan: {plan.name}", show_header=True, header_style="bold cyan")
    table.add_column("#", justify="right")
    table.add_column("Name", style="cyan")
    table.add_column("Kind", style="magenta")
    table.add_column("Depends on", style="white")
    table.add_column("Wave", justify="right", style="yellow")

    for position, name in enumerate(plan.order, 1):
        descriptor = plan[name]
        table.add_row(
            str(position),
            name,
            descriptor.kind.value,
            ", ".join(descriptor.depends_on) or "-",
            str(wave_of[name]),
        )

    console.print(table)
    console.print(f"\n[bold]{len(plan)}[/bold] resource(s) in [bold]{len(waves)}[/bold] wave(s)")


@cli.command()
@click.option('--concurrent/--sequential', default=None, help='Reconcile independent resources concurrently')
@click.option('--max-workers', type=click.IntRange(min=1), help='Maximum concurrent provider calls')
@click.option('--simulate', is_flag=True, help='Run against an in-memory cloud instead of AWS')
@click.pass_context
def apply(ctx, concurrent, max_workers, simulate):
    """Create or adopt every resource of the plan, rolling back on failure."""
    cfg = load_config(ctx.obj['config_path'])

    mode = None
    if concurrent is not None:
        mode = ExecutionMode.CONCURRENT if concurrent else ExecutionMode.SEQUENTIAL
    effective_mode = mode or ExecutionMode(cfg.execution.mode)

    console.print(Panel.fit(
        f"[bold]Applying {cfg.project.name} ({cfg.project.environment})[/bold]\n"
        f"Region: {ctx.obj.get('region') or cfg.project.region}\n"
        f"Mode: {effective_mode.value}\n"
        f"Target: {'in-memory simulation' if simulate else 'AWS'}",
        title="Apply Configuration",
        border_style="cyan"
    ))

    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            console=console
        ) as progress:
            task_id = progress.add_task("[cyan]Starting...", total=None)
            engine = create_engine(
                ctx, cfg,
                simulate=simulate,
                mode=mode,
                max_workers=max_workers,
                progress_callback=RichProgressCallback(progress, task_id),
            )
            configured = cfg.build_plan()
            plan = engine.load_plan(configured.descriptors, name=configured.name)
            progress.update(task_id, total=len(plan))
            result = _run_interruptible(engine, plan)
    except InvalidPlan as e:
        console.print("[red]Invalid plan:[/red]")
        console.print(str(e), markup=False)
        sys.exit(1)
    except (TierstackError, StateError) as e:
        console.print(f"[red]Apply error:[/red] {e}")
        sys.exit(1)

    console.print()
    console.print(_states_table(result.states, "Resources"))
    console.print()

    adopted = len(result.record.names(EntryOutcome.ADOPTED))
    if result.status == RunStatus.COMPLETED:
        console.print(Panel.fit(
            f"[green]✓ Apply complete[/green]\n\n"
            f"Resources: {len(result.states)}\n"
            f"Created: {len(result.record.created())}\n"
            f"Adopted: {adopted}\n"
            f"Duration: {result.duration:.2f}s",
            title="Apply Complete",
            border_style="green"
        ))
        return

    reason = "cancelled" if result.error is None else f"failed at {result.error.logical_name}"
    if result.status == RunStatus.ABORTED_CLEAN:
        console.print(Panel.fit(
            f"[yellow]⚠ Apply {reason}; rollback was clean[/yellow]\n\n"
            f"Rolled back: {len(result.rollback.torn_down)}\n"
            f"Kept (adopted): {len(result.rollback.kept)}\n"
            f"Duration: {result.duration:.2f}s",
            title="Apply Aborted",
            border_style="yellow"
        ))
    else:
        console.print(Panel.fit(
            f"[red]✗ Apply {reason}; rollback left resources behind[/red]\n\n"
            f"Rolled back: {len(result.rollback.torn_down)}\n"
            f"Left behind: {len(result.leftovers)}\n"
            f"Duration: {result.duration:.2f}s",
            title="Apply Aborted",
            border_style="red"
        ))
        console.print("\n[bold]Manual cleanup required:[/bold]")
        for name, error in result.leftovers.items():
            console.print(f"  [red]✗[/red] {name}: {escape(error)}")

    if result.error is not None:
        console.print("\n[bold]Cause:[/bold]")
        console.print(result.error.to_user_message(), markup=False)
    sys.exit(1)


@cli.command()
@click.option('--yes', '-y', is_flag=True, help='Skip confirmation prompt')
@click.option('--simulate', is_flag=True, help='Run against an in-memory cloud instead of AWS')
@click.pass_context
def destroy(ctx, yes, simulate):
    """Delete every resource of the plan that exists, dependents first."""
    cfg = load_config(ctx.obj['config_path'])
    plan = cfg.build_plan()

    console.print(Panel.fit(
        f"[bold red]⚠ WARNING: This will destroy resources[/bold red]\n\n"
        f"Project: {cfg.project.name}\n"
        f"Environment: {cfg.project.environment}\n"
        f"Resources in plan: {len(plan)}",
        title="Destruction Plan",
        border_style="red"
    ))

    if not yes:
        if not click.confirm("Are you sure you want to destroy these resources?", default=False):
            console.print("[yellow]Destruction cancelled[/yellow]")
            return

    try:
        engine = create_engine(ctx, cfg, simulate=simulate)
        result = engine.destroy(plan)
    except (TierstackError, StateError) as e:
        console.print(f"[red]Destruction error:[/red] {e}")
        sys.exit(1)

    if result.is_clean():
        console.print(Panel.fit(
            f"[green]✓ Destruction successful[/green]\n\n"
            f"Deleted: {len(result.torn_down)}\n"
            f"Already absent: {len(result.absent)}\n"
            f"Duration: {result.duration:.2f}s",
            title="Destruction Complete",
            border_style="green"
        ))
        return

    console.print(Panel.fit(
        f"[red]✗ Destruction incomplete[/red]\n\n"
        f"Deleted: {len(result.torn_down)}\n"
        f"Left behind: {len(result.leftovers)}",
        title="Destruction Incomplete",
        border_style="red"
    ))
    console.print("\n[bold]Failed to Destroy:[/bold]")
    for name, error in result.leftovers.items():
        console.print(f"  [red]✗[/red] {name}: {escape(error)}")
    sys.exit(1)


@cli.command()
@click.option('--simulate', is_flag=True, help='Show the state of the last simulated run')
@click.pass_context
def status(ctx, simulate):
    """Show the persisted state of the last run."""
    cfg = load_config(ctx.obj['config_path'])
    state_manager = StateManager(str(get_state_path(cfg, simulate)))

    try:
        snapshot = state_manager.load()
    except StateNotFoundError:
        console.print(
            f"[yellow]No runs recorded for[/yellow] {cfg.project.name} ({cfg.project.environment})"
        )
        return
    except StateError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    run_status = snapshot.status.value if snapshot.status else "in progress"
    console.print(
        f"\n[bold]{snapshot.operation.capitalize()} of {snapshot.plan_name}[/bold] "
        f"({run_status}, {snapshot.timestamp:%Y-%m-%d %H:%M:%S} UTC)\n"
    )
    console.print(_states_table(snapshot.resources, "Resources"))


def main():
    """Console script entry point."""
    cli(obj={})


if __name__ == '__main__':
    main()

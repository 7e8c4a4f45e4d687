"""Graph command for visualizing resource dependencies."""

from typing import Optional, Set

import click
from rich.console import Console
from rich.panel import Panel
from rich.tree import Tree

from tierstack.config.parser import Config, ConfigValidationError
from tierstack.plan.dependency_graph import DependencyGraph
from tierstack.plan.models import ResourceKind
from tierstack.utils.logging import get_logger

logger = get_logger(__name__)
console = Console()

# Presentation tier, application tier, data tier and shared network
KIND_COLORS = {
    ResourceKind.NETWORK: '#248814',
    ResourceKind.SUBNET: '#248814',
    ResourceKind.GATEWAY: '#248814',
    ResourceKind.ROUTE_TABLE: '#248814',
    ResourceKind.SECURITY_GROUP: '#DD344C',
    ResourceKind.TARGET_GROUP: '#5294CF',
    ResourceKind.LOAD_BALANCER: '#5294CF',
    ResourceKind.LISTENER: '#5294CF',
    ResourceKind.LAUNCH_TEMPLATE: '#FF9900',
    ResourceKind.SCALING_GROUP: '#FF9900',
    ResourceKind.SCALING_POLICY: '#FF9900',
    ResourceKind.DATABASE_SUBNET_GROUP: '#2E73B8',
    ResourceKind.DATABASE_INSTANCE: '#2E73B8',
}


@click.command()
@click.option('--format', 'output_format', type=click.Choice(['tree', 'levels', 'dot']), default='tree',
              help='Output format')
@click.option('--output', help='Output file for dot format (printed if not specified)')
@click.pass_context
def graph(ctx, output_format: str, output: Optional[str]):
    """Visualize resource dependency graph."""
    config_path = ctx.obj['config_path'] if ctx.obj else 'tierstack.yaml'
    try:
        config = Config(config_path).load()
    except FileNotFoundError:
        console.print(f"[red]Error: Configuration file not found: {config_path}[/red]")
        raise SystemExit(1)
    except ConfigValidationError as e:
        console.print("[red]Configuration validation failed:[/red]\n")
        console.print(str(e), markup=False)
        raise SystemExit(1)

    plan = config.build_plan()
    dep_graph = DependencyGraph.from_descriptors(plan.descriptors)

    if output_format == 'tree':
        _output_tree(dep_graph, plan.name)
    elif output_format == 'levels':
        _output_levels(dep_graph, plan.name)
    else:
        dot_content = _generate_dot(dep_graph, plan.name)
        if output:
            with open(output, 'w') as f:
                f.write(dot_content)
            console.print(f"[green]Graph saved to {output}[/green]")
        else:
            click.echo(dot_content)


def _output_tree(dep_graph: DependencyGraph, plan_name: str):
    """Output dependency graph as a tree rooted at resources with no dependencies."""
    console.print(Panel(f"Resource Dependency Graph - {plan_name}", style="bold blue"))
    console.print()

    roots = [name for name in dep_graph.topological_sort() if not dep_graph.get_dependencies(name)]
    for root in roots:
        tree = Tree(_label(dep_graph, root, bold=True))
        _build_tree_recursive(tree, root, dep_graph, set())
        console.print(tree)
        console.print()


def _build_tree_recursive(tree: Tree, name: str, dep_graph: DependencyGraph, visited: Set[str]):
    """Recursively build tree structure."""
    visited.add(name)
    for dependent in sorted(dep_graph.get_dependents(name)):
        if dependent in visited:
            continue
        branch = tree.add(_label(dep_graph, dependent))
        _build_tree_recursive(branch, dependent, dep_graph, visited.copy())


def _label(dep_graph: DependencyGraph, name: str, bold: bool = False) -> str:
    descriptor = dep_graph.get_descriptor(name)
    kind = f" [dim]({descriptor.kind.value})[/dim]" if descriptor else ""
    return f"[bold cyan]{name}[/bold cyan]{kind}" if bold else f"[cyan]{name}[/cyan]{kind}"


def _output_levels(dep_graph: DependencyGraph, plan_name: str):
    """Output dependency graph level by level."""
    console.print(Panel(f"Resource Dependency Graph - {plan_name}", style="bold blue"))
    console.print()

    for level, names in enumerate(dep_graph.get_deployment_waves()):
        console.print(f"[bold]Level {level}:[/bold]")
        for name in names:
            deps = dep_graph.get_dependencies(name)
            if deps:
                console.print(f"  ├─ [cyan]{name}[/cyan] [dim]← depends on: {', '.join(deps)}[/dim]")
            else:
                console.print(f"  ├─ [cyan]{name}[/cyan]")
        console.print()


def _generate_dot(dep_graph: DependencyGraph, plan_name: str) -> str:
    """Generate DOT format graph."""
    lines = [
        'digraph ResourceDependencies {',
        '  rankdir=TB;',
        '  node [shape=box, style=rounded, fontname="Arial"];',
        '  edge [fontname="Arial"];',
        '',
        '  labelloc="t";',
        f'  label="Resource Dependencies\\n{plan_name}";',
        '',
    ]

    order = dep_graph.topological_sort()
    for name in order:
        descriptor = dep_graph.get_descriptor(name)
        color = KIND_COLORS.get(descriptor.kind, '#CCCCCC') if descriptor else '#CCCCCC'
        kind = descriptor.kind.value if descriptor else ''
        lines.append(f'  "{name}" [label="{name}\\n{kind}", fillcolor="{color}", style="filled,rounded"];')

    lines.append('')

    for name in order:
        for dep in dep_graph.get_dependencies(name):
            lines.append(f'  "{dep}" -> "{name}";')

    lines.append('}')

    return '\n'.join(lines)

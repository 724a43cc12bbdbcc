import typer
from pathlib import Path
from typing import Optional
from rich.console import Console
from rich.table import Table

from ..config import Config
from ..modules.kubeadm.config import InstallerConfig
from ..modules.kubeadm.errors import InvalidInventory
from ..modules.kubeadm.inventory import load_inventory
from ..modules.kubeadm.report import RunReport, render_report
from ..modules.kubeadm.state import default_state_path, load_saved_results
from ..utils.kube import list_node_status, load_kubeconfig

app = typer.Typer(help="Show bootstrap progress and cluster health")
console = Console()


@app.command("run")
def status_run(
    inventory_path: Path = typer.Option(
        Config.DEFAULT_INVENTORY, '--inventory', '-i', help='Path to the cluster inventory YAML'
    ),
    config_path: Optional[Path] = typer.Option(None, '--config', '-c', help='Installer configuration file'),
    state_file: Optional[Path] = typer.Option(None, '--state-file', help='Run state file to read'),
):
    """Show what the last bootstrap run achieved, without contacting any host."""
    settings = InstallerConfig.load(config_path)
    try:
        inventory = load_inventory(inventory_path, default_ssh_port=settings.ssh.port)
    except InvalidInventory as e:
        for error in e.errors:
            console.print(f"[red]❌ {error}[/red]")
        raise typer.Exit(1)

    path = state_file or default_state_path(settings.run.state_dir, inventory.spec.name)
    try:
        version, results = load_saved_results(path)
    except (OSError, ValueError) as e:
        console.print(f"[red]❌ Cannot read run state {path}: {e}[/red]")
        raise typer.Exit(1)
    if version is None:
        console.print(f"📡 No bootstrap run recorded for {inventory.spec.name} ({path})")
        return

    console.print(f"📡 Last run for {inventory.spec.name} targeted Kubernetes {version}")
    report = RunReport(
        cluster_name=inventory.spec.name,
        nodes=inventory.nodes,
        results={node.address: results.get(node.address, {}) for node in inventory.nodes},
    )
    render_report(report, console)


@app.command("nodes")
def status_nodes(
    kubeconfig: Optional[str] = typer.Option(None, '--kubeconfig', help='Kubeconfig of the cluster'),
):
    """Show node readiness as reported by the Kubernetes API."""
    try:
        used = load_kubeconfig(kubeconfig)
    except FileNotFoundError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    nodes = list_node_status()
    table = Table(title=f"Nodes ({used})")
    table.add_column("Name", style="bold")
    table.add_column("Ready")
    table.add_column("Roles")
    table.add_column("Version")
    table.add_column("Internal IP")
    for node in nodes:
        style = "green" if node['ready'] == 'True' else "red"
        table.add_row(
            node['name'],
            f"[{style}]{node['ready']}[/{style}]",
            ', '.join(node['roles']),
            node['version'],
            node['internal_ip'],
        )
    console.print(table)

    not_ready = [n['name'] for n in nodes if n['ready'] != 'True']
    if not_ready:
        console.print(f"[yellow]⚠️  Not ready: {', '.join(not_ready)}[/yellow]")
        raise typer.Exit(1)
    console.print(f"[green]✅ All {len(nodes)} node(s) are Ready[/green]")

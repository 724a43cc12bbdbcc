import typer
from pathlib import Path
from rich.console import Console
from rich.table import Table

from ..config import Config
from ..modules.kubeadm.errors import InvalidInventory
from ..modules.kubeadm.inventory import is_version_keyword, load_inventory

app = typer.Typer(help="Validate inventories before bootstrapping")
console = Console()


@app.command("inventory")
def validate_inventory(
    inventory_path: Path = typer.Option(
        Config.DEFAULT_INVENTORY, '--inventory', '-i', help='Path to the cluster inventory YAML'
    ),
):
    """Validate an inventory file without contacting any host."""
    console.print(f"🔍 Validating inventory: {inventory_path}")
    try:
        inventory = load_inventory(inventory_path)
    except InvalidInventory as e:
        for error in e.errors:
            console.print(f"[red]❌ {error}[/red]")
        raise typer.Exit(1)

    spec = inventory.spec
    table = Table(title=f"Cluster {spec.name}")
    table.add_column("Hostname", style="bold")
    table.add_column("Address")
    table.add_column("Role")
    table.add_column("Ordinal", justify="right")
    table.add_column("SSH user")
    for node in inventory.nodes:
        table.add_row(node.hostname, node.address, node.role.value, str(node.ordinal), node.credential.user)
    console.print(table)

    version = spec.version
    if is_version_keyword(version):
        version += " (resolved at deploy time)"
    console.print(f"Kubernetes version: {version}")
    console.print(f"API endpoint: {spec.api_endpoint}")
    if spec.kube_vip:
        console.print(f"kube-vip: {spec.kube_vip.interface} ({spec.kube_vip.image})")
    console.print("[green]✅ Inventory is valid[/green]")

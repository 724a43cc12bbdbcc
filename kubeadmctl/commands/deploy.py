"""Cluster Bootstrap Command.

This module provides the command that bootstraps a kubeadm cluster from an
inventory file: it validates the inventory, resolves the Kubernetes version,
then runs every bootstrap phase over SSH and prints a per-node report.
"""

import dataclasses
import json
import logging
import signal
import threading
from pathlib import Path
from typing import List, Optional, Tuple

import typer
from rich.console import Console
from rich.table import Table

from ..config import Config
from ..logging import configure_logging
from ..modules import RemoteExecutor, get_ssh_pool
from ..modules.kubeadm.config import InstallerConfig, set_config
from ..modules.kubeadm.credentials import JoinCredentialExchange
from ..modules.kubeadm.errors import BootstrapError, InvalidInventory, VersionResolutionError
from ..modules.kubeadm.installer import KubeadmInstaller
from ..modules.kubeadm.installer.deployment import BootstrapOrchestrator
from ..modules.kubeadm.installer.utils import resolve_version
from ..modules.kubeadm.inventory import load_inventory
from ..modules.kubeadm.models import Inventory, Node, Phase
from ..modules.kubeadm.report import render_report
from ..modules.kubeadm.state import RunState, default_state_path
from ..utils import redact_sensitive_data

logger = logging.getLogger("deploy")
console = Console()

app = typer.Typer(help="Cluster bootstrap commands")


def load_settings(config_path: Optional[Path], max_parallel: Optional[int] = None,
                  debug: bool = False) -> InstallerConfig:
    """Load installer settings, apply command-line overrides and set up logging."""
    settings = InstallerConfig.load(config_path)
    if max_parallel is not None:
        settings.run.max_parallel_workers = max_parallel
    set_config(settings)
    configure_logging(
        debug=debug,
        level=settings.logging.level,
        log_file=settings.logging.file,
        max_size_mb=settings.logging.max_size_mb,
        backup_count=settings.logging.backup_count,
    )
    return settings


def load_validated_inventory(path: Path, settings: InstallerConfig) -> Inventory:
    """Load the inventory or exit with every validation error listed."""
    try:
        return load_inventory(path, default_ssh_port=settings.ssh.port)
    except InvalidInventory as e:
        console.print(f"[red]❌ Inventory {path} is invalid:[/red]")
        for error in e.errors:
            console.print(f"  • {error}")
        raise typer.Exit(1)


def print_plan(inventory: Inventory, steps: List[Tuple[Node, Phase]]) -> None:
    spec = inventory.spec
    table = Table(title=f"Bootstrap plan: {spec.name} (Kubernetes {spec.version})")
    table.add_column("#", justify="right")
    table.add_column("Node", style="bold")
    table.add_column("Role")
    table.add_column("Phase")
    for index, (node, phase) in enumerate(steps, 1):
        table.add_row(str(index), str(node), node.role.value, phase.value)
    console.print(table)
    console.print(f"API endpoint: {spec.api_endpoint}")
    console.print(f"Pod network: {spec.pod_network_cidr} ({spec.network_manifest})")
    console.print("[yellow]Dry run: no host was contacted[/yellow]")


def install_interrupt_handler(cancel_event: threading.Event):
    """First Ctrl-C cancels gracefully; a second one aborts immediately."""
    def handler(signum, frame):
        if cancel_event.is_set():
            raise KeyboardInterrupt
        console.print("\n[yellow]⚠️  Cancelling: waiting for in-flight commands to stop...[/yellow]")
        cancel_event.set()

    return signal.signal(signal.SIGINT, handler)


@app.command("cluster")
def deploy_cluster(
    ctx: typer.Context,
    inventory_path: Path = typer.Option(
        Config.DEFAULT_INVENTORY, '--inventory', '-i', help='Path to the cluster inventory YAML'
    ),
    config_path: Optional[Path] = typer.Option(
        None, '--config', '-c', help='Installer configuration file'
    ),
    dry_run: bool = typer.Option(
        False, '--dry-run', help='Show the bootstrap plan without contacting any host'
    ),
    fresh: bool = typer.Option(
        False, '--fresh', help='Ignore results saved by a previous run'
    ),
    state_file: Optional[Path] = typer.Option(
        None, '--state-file', help='Run state file (default: <state_dir>/<cluster>.json)'
    ),
    report_json: Optional[Path] = typer.Option(
        None, '--report-json', help='Also write the run report as JSON'
    ),
    kubeconfig_out: Optional[Path] = typer.Option(
        None, '--kubeconfig-out', help='Download the admin kubeconfig here after a successful run'
    ),
    max_parallel: Optional[int] = typer.Option(
        None, '--max-parallel', min=1, help='Maximum number of workers joined concurrently'
    ),
):
    """Bootstrap a kubeadm cluster described by an inventory file.

    Example:
        kubeadmctl deploy cluster -i cluster_config.yaml
    """
    debug = bool(ctx.obj and ctx.obj.get('debug'))
    settings = load_settings(config_path, max_parallel, debug)
    inventory = load_validated_inventory(inventory_path, settings)
    logger.debug(f"Inventory nodes: {redact_sensitive_data([dataclasses.asdict(n) for n in inventory.nodes])}")

    try:
        spec = resolve_version(inventory.spec, timeout=Config.VERSION_LOOKUP_TIMEOUT)
    except VersionResolutionError as e:
        console.print(f"[red]❌ {e}[/red]")
        raise typer.Exit(1)
    inventory = dataclasses.replace(inventory, spec=spec)

    logger.info(
        f"Discovered {len(inventory.control_planes)} control plane(s) and "
        f"{len(inventory.workers)} worker(s) for cluster {spec.name}"
    )

    cancel_event = threading.Event()
    executor = RemoteExecutor(
        get_ssh_pool(),
        cancel_event=cancel_event,
        command_timeout=settings.ssh.command_timeout,
        connect_timeout=settings.ssh.connect_timeout,
    )
    installer = KubeadmInstaller(executor, settings)
    exchange = JoinCredentialExchange(
        installer, executor, spec,
        handoff_dir=settings.run.handoff_dir,
        remote_dir=settings.run.remote_join_dir,
    )
    state_path = state_file or default_state_path(settings.run.state_dir, spec.name)
    state = RunState(inventory, state_path, fresh=fresh)
    orchestrator = BootstrapOrchestrator(
        inventory, installer, exchange,
        config=settings, state=state, cancel_event=cancel_event,
    )

    if dry_run:
        print_plan(inventory, orchestrator.plan())
        return

    previous_handler = install_interrupt_handler(cancel_event)
    try:
        report = orchestrator.run()
        if kubeconfig_out and report.exit_code == 0:
            try:
                installer.fetch_kubeconfig(inventory.first_control_plane, str(kubeconfig_out))
            except (BootstrapError, OSError) as e:
                logger.error(f"❌ Could not download kubeconfig: {e}")
    finally:
        signal.signal(signal.SIGINT, previous_handler)
        executor.close()

    render_report(report, console)
    console.print(f"Run state saved to {state_path}")

    if report_json:
        report_json.parent.mkdir(parents=True, exist_ok=True)
        with open(report_json, 'w', encoding='utf-8') as f:
            json.dump(report.to_dict(), f, indent=2)
        console.print(f"Report written to {report_json}")

    if report.exit_code == 0:
        console.print("\nIf the hosts run a firewall, open these ports:")
        for line in installer.firewall_guidance(list(inventory.nodes)):
            console.print(f"  {line}")

    raise typer.Exit(report.exit_code)


if __name__ == "__main__":
    app()

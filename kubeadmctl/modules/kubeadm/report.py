"""Run report: per-node, per-phase outcomes and the derived cluster state."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from rich.console import Console
from rich.table import Table

from .models import (
    ROLE_PHASES,
    ClusterState,
    Node,
    NodeRole,
    Phase,
    PhaseResult,
    PhaseStatus,
    node_state,
)

STATUS_STYLES = {
    PhaseStatus.SUCCEEDED: 'green',
    PhaseStatus.SKIPPED: 'cyan',
    PhaseStatus.FAILED: 'red',
    PhaseStatus.TIMED_OUT: 'yellow',
    PhaseStatus.PENDING: 'dim',
}


@dataclass
class RunReport:
    """Outcome of one orchestrator run. Lists every node, attempted or not."""
    cluster_name: str
    nodes: Tuple[Node, ...]
    results: Dict[str, Dict[Phase, PhaseResult]] = field(default_factory=dict)
    fatal_error: Optional[str] = None
    cancelled: bool = False

    def result(self, node: Node, phase: Phase) -> PhaseResult:
        return self.results.get(node.address, {}).get(phase) or PhaseResult(phase)

    def node_state(self, node: Node) -> ClusterState:
        return node_state(node, self.results.get(node.address, {}))

    @property
    def cluster_state(self) -> ClusterState:
        """Aggregate progress across the whole cluster.

        Each level requires every node it concerns to have passed the
        corresponding phase, in bootstrap order.
        """
        first = next((n for n in self.nodes if n.role is NodeRole.CONTROL_PLANE_FIRST), None)
        if first is None:
            return ClusterState.UNPROVISIONED

        def passed(nodes, phase: Phase) -> bool:
            return all(self.result(n, phase).succeeded for n in nodes)

        joins = [n for n in self.nodes if n.role is NodeRole.CONTROL_PLANE_JOIN]
        workers = [n for n in self.nodes if n.role is NodeRole.WORKER]
        ladder = (
            (ClusterState.PREREQUISITES_READY, passed([first], Phase.PREREQUISITES)),
            (ClusterState.CONTROL_PLANE_INITIALIZED, passed([first], Phase.CONTROL_PLANE_INIT)),
            (ClusterState.NETWORK_INSTALLED, passed([first], Phase.NETWORK)),
            (ClusterState.CONTROL_PLANE_QUORATE, passed(joins, Phase.CONTROL_PLANE_JOIN)),
            (ClusterState.WORKERS_JOINED, passed(workers, Phase.WORKER_JOIN)),
            (ClusterState.VERIFIED, passed(self.nodes, Phase.VERIFY)),
        )
        state = ClusterState.UNPROVISIONED
        for level, ok in ladder:
            if not ok:
                break
            state = level
        return state

    @property
    def failed_phases(self) -> List[Tuple[Node, PhaseResult]]:
        failed = []
        for node in self.nodes:
            for phase in ROLE_PHASES[node.role]:
                result = self.result(node, phase)
                if result.failed and not phase.best_effort:
                    failed.append((node, result))
        return failed

    @property
    def exit_code(self) -> int:
        """0 on full success; best-effort verification never changes it."""
        if self.fatal_error or self.cancelled or self.failed_phases:
            return 1
        return 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'cluster': self.cluster_name,
            'cluster_state': self.cluster_state.label,
            'exit_code': self.exit_code,
            'fatal_error': self.fatal_error,
            'cancelled': self.cancelled,
            'nodes': [
                {
                    'hostname': node.hostname,
                    'address': node.address,
                    'role': node.role.value,
                    'state': self.node_state(node).label,
                    'phases': [self.result(node, phase).to_dict() for phase in ROLE_PHASES[node.role]],
                }
                for node in self.nodes
            ],
        }


def render_report(report: RunReport, console: Optional[Console] = None) -> None:
    """Print the report as a rich table followed by a one-line verdict."""
    console = console or Console()
    table = Table(title=f"Bootstrap report: {report.cluster_name}", show_lines=False)
    table.add_column("Node", style="bold")
    table.add_column("Role")
    table.add_column("Phase")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Detail", overflow="fold")

    for node in report.nodes:
        first_row = True
        for phase in ROLE_PHASES[node.role]:
            result = report.result(node, phase)
            style = STATUS_STYLES[result.status]
            detail = result.last_error or result.note or ''
            table.add_row(
                str(node) if first_row else '',
                node.role.value if first_row else '',
                phase.value,
                f"[{style}]{result.status.value}[/{style}]",
                str(result.attempts) if result.attempts else '',
                detail.splitlines()[0] if detail else '',
            )
            first_row = False
        table.add_row('', '', '[italic]node state[/italic]', report.node_state(node).label, '', '',
                      end_section=True)

    console.print(table)
    console.print(f"Cluster state: [bold]{report.cluster_state.label}[/bold]")
    if report.cancelled:
        console.print("[yellow]⚠️  Run was cancelled; partial results were saved[/yellow]")
    if report.fatal_error:
        console.print(f"[red]❌ {report.fatal_error}[/red]")
    elif report.exit_code == 0:
        console.print("[green]✅ Cluster bootstrap complete[/green]")
    else:
        console.print("[red]❌ Some nodes failed; re-run to retry only the incomplete phases[/red]")

"""Per-cluster run state, persisted between runs for resumption."""

import json
import logging
import os
import tempfile
import threading
import time
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

from .models import Inventory, Node, Phase, PhaseResult, PhaseStatus

logger = logging.getLogger("kubeadm.state")

# Phases whose completion in an earlier run is trusted without a remote check
RESUMABLE_PHASES = (
    Phase.PREREQUISITES,
    Phase.CONTROL_PLANE_INIT,
    Phase.NETWORK,
    Phase.CONTROL_PLANE_JOIN,
    Phase.WORKER_JOIN,
)


def default_state_path(state_dir: Union[str, Path], cluster_name: str) -> Path:
    return Path(state_dir).expanduser() / f"{cluster_name}.json"


def load_saved_results(path: Union[str, Path]) -> Tuple[Optional[str], Dict[str, Dict[Phase, PhaseResult]]]:
    """Read a state file, returning its Kubernetes version and results by node address.

    A missing file yields ``(None, {})``. Malformed node entries are skipped.

    Raises:
        OSError: If the file exists but cannot be read
        ValueError: If the file is not valid JSON
    """
    path = Path(path).expanduser()
    if not path.exists():
        return None, {}
    with open(path, 'r', encoding='utf-8') as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError("state file must contain a JSON object")

    previous: Dict[str, Dict[Phase, PhaseResult]] = {}
    for address, phases in (data.get('nodes') or {}).items():
        try:
            previous[address] = {
                Phase(name): PhaseResult.from_dict(result) for name, result in phases.items()
            }
        except (KeyError, ValueError, TypeError, AttributeError) as e:
            logger.warning(f"Ignoring malformed state for {address}: {e}")
    return data.get('kubernetes_version'), previous


class RunState:
    """Phase results of the current run plus what a previous run completed.

    Results are keyed by node address. A saved file is only trusted when it
    was written for the same Kubernetes version.
    """

    def __init__(self, inventory: Inventory, path: Optional[Union[str, Path]] = None, fresh: bool = False):
        self.inventory = inventory
        self.path = Path(path).expanduser() if path else None
        self._lock = threading.Lock()
        # Serialises snapshot and write so an older snapshot never replaces a newer file
        self._save_lock = threading.Lock()
        self._previous: Dict[str, Dict[Phase, PhaseResult]] = {}
        self._results: Dict[str, Dict[Phase, PhaseResult]] = {
            node.address: {} for node in inventory.nodes
        }
        if self.path and not fresh:
            self._previous = self._load_previous()

    def _load_previous(self) -> Dict[str, Dict[Phase, PhaseResult]]:
        try:
            version, previous = load_saved_results(self.path)
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable state file {self.path}: {e}")
            return {}

        if version != self.inventory.spec.version:
            logger.info(
                f"State file {self.path} was written for Kubernetes {version}, "
                f"not {self.inventory.spec.version}; starting from scratch"
            )
            return {}

        logger.debug(f"Loaded previous run state from {self.path}")
        return previous

    def completed_previously(self, node: Node, phase: Phase) -> bool:
        if phase not in RESUMABLE_PHASES:
            return False
        result = self._previous.get(node.address, {}).get(phase)
        return result is not None and result.succeeded

    def record(self, node: Node, result: PhaseResult) -> None:
        with self._lock:
            self._results.setdefault(node.address, {})[result.phase] = result

    def result(self, node: Node, phase: Phase) -> PhaseResult:
        with self._lock:
            return self._results.get(node.address, {}).get(phase) or PhaseResult(phase)

    def results(self, node: Node) -> Dict[Phase, PhaseResult]:
        with self._lock:
            return dict(self._results.get(node.address, {}))

    def previous_results(self, node: Node) -> Dict[Phase, PhaseResult]:
        return dict(self._previous.get(node.address, {}))

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            nodes = {}
            for node in self.inventory.nodes:
                merged = dict(self._previous.get(node.address, {}))
                for phase, result in self._results.get(node.address, {}).items():
                    # A pending result means "not touched this run"; keep the older outcome
                    if result.status is not PhaseStatus.PENDING or phase not in merged:
                        merged[phase] = result
                nodes[node.address] = {phase.value: result.to_dict() for phase, result in merged.items()}
        return {
            'cluster': self.inventory.spec.name,
            'kubernetes_version': self.inventory.spec.version,
            'updated_at': time.strftime('%Y-%m-%dT%H:%M:%SZ', time.gmtime()),
            'nodes': nodes,
        }

    def save(self) -> None:
        """Write the state file atomically. No-op without a path."""
        if not self.path:
            return
        with self._save_lock:
            data = self.to_dict()
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), prefix='.state-')
            try:
                with os.fdopen(fd, 'w', encoding='utf-8') as f:
                    json.dump(data, f, indent=2)
                os.replace(tmp_path, self.path)
            except OSError:
                if os.path.exists(tmp_path):
                    os.remove(tmp_path)
                raise
        logger.debug(f"Saved run state to {self.path}")

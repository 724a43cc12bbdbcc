"""kubeadm cluster bootstrap orchestration.

This module drives a cluster from bare hosts to verified nodes:

1. first control plane: prerequisites, kubeadm init, pod network
2. additional control planes, one at a time: prerequisites, join
3. workers, in parallel: prerequisites, join
4. verification of every node whose init or join succeeded

A phase observed complete (from the saved run state or a remote check) is
never executed again. Failures in the control-plane group are fatal to the
run; a worker failure only affects that worker.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Dict, List, Optional, Tuple

from ..config import InstallerConfig, get_config
from ..credentials import JoinCredentialExchange
from ..errors import (
    BootstrapError,
    Cancelled,
    CredentialUnavailable,
    ExecutionError,
    PhaseFailed,
)
from ..health import PollOutcome, ReadinessPoller
from ..models import (
    ROLE_PHASES,
    Inventory,
    JoinMaterial,
    Node,
    NodeRole,
    Phase,
    PhaseResult,
    PhaseStatus,
)
from ..report import RunReport
from ..retry import RetryPolicy, is_api_not_ready_error, is_transient_error
from ..state import RunState
from .configuration import KUBERNETES_PACKAGES
from .core import KubeadmInstaller

logger = logging.getLogger("kubeadm.installer.deployment")

# Receives an operation and an optional policy, runs it with retries
Attempt = Callable[..., object]


class BootstrapOrchestrator:
    """Runs the bootstrap phases across an inventory."""

    def __init__(
        self,
        inventory: Inventory,
        installer: KubeadmInstaller,
        exchange: JoinCredentialExchange,
        config: Optional[InstallerConfig] = None,
        state: Optional[RunState] = None,
        cancel_event: Optional[threading.Event] = None,
        poller: Optional[ReadinessPoller] = None,
    ):
        self.inventory = inventory
        self.spec = inventory.spec
        self.installer = installer
        self.exchange = exchange
        self.config = config or get_config()
        self.cancel_event = cancel_event or threading.Event()
        self.state = state or RunState(inventory)
        self.poller = poller or ReadinessPoller(
            poll_interval=self.config.polling.interval,
            timeout=self.config.polling.node_ready_timeout,
            cancel_event=self.cancel_event,
        )

        retry = self.config.retry
        self.retry = RetryPolicy(retry.max_attempts, retry.delay, is_transient_error,
                                 self.cancel_event, 'remote operation')
        self.key_retry = self.retry.with_budget(retry.key_download_attempts, retry.key_download_delay,
                                                'repository key download')
        self.network_retry = RetryPolicy(retry.network_attempts, retry.network_delay, is_api_not_ready_error,
                                         self.cancel_event, 'network manifest apply')
        self.join_retry = self.retry.with_budget(retry.join_attempts, retry.join_delay, 'kubeadm join')

        self._material_lock = threading.Lock()
        self._material: Optional[JoinMaterial] = None
        self._material_error: Optional[BootstrapError] = None
        self.overview: Optional[dict] = None

    @property
    def first(self) -> Node:
        return self.inventory.first_control_plane

    def plan(self) -> List[Tuple[Node, Phase]]:
        """Ordered (node, phase) steps a run would go through. Touches no host."""
        steps: List[Tuple[Node, Phase]] = []
        joiners = self.inventory.control_plane_joins + self.inventory.workers
        steps.extend((self.first, phase) for phase in (
            Phase.PREREQUISITES, Phase.CONTROL_PLANE_INIT, Phase.NETWORK))
        if joiners:
            steps.append((self.first, Phase.JOIN_MATERIAL))
        for node in joiners:
            steps.extend((node, phase) for phase in ROLE_PHASES[node.role] if phase is not Phase.VERIFY)
        steps.extend((node, Phase.VERIFY) for node in self.inventory.nodes)
        return steps

    def _record(self, node: Node, result: PhaseResult) -> PhaseResult:
        self.state.record(node, result)
        try:
            self.state.save()
        except OSError as e:
            logger.warning(f"⚠️  Could not save run state to {self.state.path}: {e}")
        return result

    def _run_phase(self, node: Node, phase: Phase, steps: Callable[[Attempt], Optional[str]],
                   is_done: Optional[Callable[[], bool]] = None) -> PhaseResult:
        """Run one phase on one node.

        Args:
            node: Target node
            phase: Phase being run
            steps: Performs the phase; receives ``attempt(op, policy=None)`` which
                runs ``op`` under a retry policy and counts retries. May return a note.
            is_done: Remote check; when it returns True the phase is recorded as
                skipped without any mutating call

        Raises:
            PhaseFailed: If the phase fails; the failure is recorded first
            Cancelled: If the run is cancelled; the phase stays pending
        """
        if self.cancel_event.is_set():
            raise Cancelled(f"cancelled before {phase.value} on {node}")

        if self.state.completed_previously(node, phase):
            logger.info(f"[{node.name}] ⏭️  {phase.value}: completed in a previous run")
            return self._record(node, PhaseResult(phase, PhaseStatus.SKIPPED, note='completed in a previous run'))

        retries = [0]

        def attempt(operation, policy: Optional[RetryPolicy] = None):
            calls = [0]

            def counted():
                calls[0] += 1
                return operation()

            try:
                return (policy or self.retry).call(counted)
            finally:
                retries[0] += max(calls[0] - 1, 0)

        try:
            if is_done is not None and attempt(is_done):
                logger.info(f"[{node.name}] ⏭️  {phase.value}: already in desired state")
                return self._record(node, PhaseResult(phase, PhaseStatus.SKIPPED, note='already in desired state'))
            retries[0] = 0
            logger.info(f"[{node.name}] ▶️  {phase.value}")
            note = steps(attempt)
        except Cancelled:
            raise
        except BootstrapError as e:
            result = PhaseResult(phase, PhaseStatus.FAILED, attempts=1 + retries[0], last_error=str(e))
            self._record(node, result)
            logger.error(f"[{node.name}] ❌ {phase.value} failed: {e}")
            raise PhaseFailed(node, phase, e) from e

        logger.info(f"[{node.name}] ✅ {phase.value}")
        return self._record(node, PhaseResult(phase, PhaseStatus.SUCCEEDED, attempts=1 + retries[0], note=note))

    # Phases

    def _prerequisites(self, node: Node) -> PhaseResult:
        spec = self.spec
        installer = self.installer

        def steps(attempt: Attempt) -> None:
            attempt(lambda: installer.check_operating_system(node))
            attempt(lambda: installer.prepare_host(node))
            attempt(lambda: installer.install_base_packages(node))
            attempt(lambda: installer.add_package_repository(node, spec), self.key_retry)
            attempt(lambda: installer.install_packages(node, KUBERNETES_PACKAGES, spec.package_version))
            attempt(lambda: installer.configure_runtime(node, spec))
            if not attempt(lambda: installer.binaries_present(node, spec)):
                raise ExecutionError(node.address, 'verify kubeadm installation', 1,
                                     stderr=f"kubeadm v{spec.version}, kubelet or kubectl missing after install")

        return self._run_phase(node, Phase.PREREQUISITES, steps,
                               is_done=lambda: installer.prerequisites_satisfied(node, spec))

    def _init_control_plane(self) -> PhaseResult:
        node, spec, installer = self.first, self.spec, self.installer

        def steps(attempt: Attempt) -> str:
            if spec.kube_vip is not None:
                attempt(lambda: installer.deploy_kube_vip(node, spec))
            attempt(lambda: installer.pull_images(node, spec))
            outcome = attempt(lambda: installer.init_control_plane(node, spec))
            return outcome.value

        return self._run_phase(node, Phase.CONTROL_PLANE_INIT, steps,
                               is_done=lambda: installer.cluster_initialized(node))

    def _install_network(self) -> PhaseResult:
        node, manifest, installer = self.first, self.spec.network_manifest, self.installer

        def steps(attempt: Attempt) -> Optional[str]:
            outcome = self.poller.wait_until(
                lambda: installer.api_server_healthy(node),
                f"API server on {node}",
                timeout=self.config.polling.api_timeout,
            )
            if outcome is PollOutcome.TIMED_OUT:
                logger.warning(f"[{node.name}] API server not healthy yet, applying the manifest anyway")
            attempt(lambda: installer.apply_network_manifest(node, manifest), self.network_retry)
            return 'api server wait timed out' if outcome is PollOutcome.TIMED_OUT else None

        return self._run_phase(node, Phase.NETWORK, steps,
                               is_done=lambda: installer.network_installed(node, manifest))

    def _join_material(self, requester: Node) -> JoinMaterial:
        """Issue join material on first use and share it with every joiner."""
        with self._material_lock:
            if self._material is not None:
                return self._material
            if self._material_error is not None:
                raise self._material_error

            issued: List[JoinMaterial] = []

            def steps(attempt: Attempt) -> str:
                issued.append(self.exchange.issue(self.first, with_certificate_key=requester.is_control_plane))
                return f"requested by {requester.name}"

            try:
                self._run_phase(self.first, Phase.JOIN_MATERIAL, steps)
            except PhaseFailed as e:
                self._material_error = e.cause if isinstance(e.cause, CredentialUnavailable) \
                    else CredentialUnavailable(str(e.cause))
                raise self._material_error
            self._material = issued[0]
            return self._material

    def _join(self, node: Node, phase: Phase, join: Callable) -> PhaseResult:
        installer, exchange = self.installer, self.exchange
        # kube-vip goes in after the join: join preflight wants an empty manifests directory
        needs_vip = node.role is NodeRole.CONTROL_PLANE_JOIN and self.spec.kube_vip is not None
        member = [False]

        def is_done() -> bool:
            member[0] = installer.is_member(self.first, node)
            return member[0] and (not needs_vip or installer.kube_vip_deployed(node))

        def join_once(delivery) -> None:
            if installer.has_join_leftovers(node):
                installer.reset_node(node, self.spec)
            join(node, delivery)

        def steps(attempt: Attempt) -> None:
            if not member[0]:
                material = self._join_material(node)
                delivery = attempt(lambda: exchange.deliver(material, node))
                try:
                    attempt(lambda: join_once(delivery), self.join_retry)
                finally:
                    exchange.retract(node)
            if needs_vip:
                attempt(lambda: installer.deploy_kube_vip(node, self.spec))

        return self._run_phase(node, phase, steps, is_done=is_done)

    def _bootstrap_worker(self, node: Node) -> None:
        self._prerequisites(node)
        self._join(node, Phase.WORKER_JOIN, self.installer.join_worker)

    def _verify_node(self, node: Node) -> PhaseResult:
        """Wait for a node to report Ready. Best effort: never raises except on cancellation."""
        try:
            outcome = self.poller.wait_until(
                lambda: self.installer.query_node_ready(self.first, node),
                f"{node} Ready",
                timeout=self.config.polling.node_ready_timeout,
            )
        except Cancelled:
            raise
        except BootstrapError as e:
            logger.warning(f"[{node.name}] ⚠️  verification failed: {e}")
            return self._record(node, PhaseResult(Phase.VERIFY, PhaseStatus.FAILED, attempts=1, last_error=str(e)))

        if outcome is PollOutcome.TIMED_OUT:
            return self._record(node, PhaseResult(
                Phase.VERIFY, PhaseStatus.TIMED_OUT, attempts=1,
                last_error=f"not Ready after {self.config.polling.node_ready_timeout:.0f}s"
            ))

        note = None
        if node.role is NodeRole.CONTROL_PLANE_FIRST and self.config.run.remove_control_plane_taint:
            try:
                if self.retry.call(lambda: self.installer.has_control_plane_taint(self.first, node)):
                    self.retry.call(lambda: self.installer.remove_taint(node))
                    note = 'control-plane taint removed'
            except Cancelled:
                raise
            except BootstrapError as e:
                logger.warning(f"[{node.name}] ⚠️  could not remove control-plane taint: {e}")
                note = f"taint removal failed: {e}"
        return self._record(node, PhaseResult(Phase.VERIFY, PhaseStatus.SUCCEEDED, attempts=1, note=note))

    # Groups

    def _bootstrap_control_plane(self) -> None:
        logger.info(f"🚀 Bootstrapping first control plane {self.first}")
        self._prerequisites(self.first)
        self._init_control_plane()
        self._install_network()

        for node in self.inventory.control_plane_joins:
            logger.info(f"🚀 Adding control plane {node}")
            self._prerequisites(node)
            self._join(node, Phase.CONTROL_PLANE_JOIN, self.installer.join_control_plane)

    def _join_workers(self) -> None:
        workers = self.inventory.workers
        if not workers:
            return

        max_workers = min(self.config.run.max_parallel_workers, len(workers))
        logger.info(f"🚀 Adding {len(workers)} worker(s), {max_workers} at a time")
        cancelled = None
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            future_to_node = {pool.submit(self._bootstrap_worker, node): node for node in workers}
            for future in as_completed(future_to_node):
                node = future_to_node[future]
                try:
                    future.result()
                except PhaseFailed as e:
                    logger.warning(f"Worker {node} failed and was skipped: {e.cause}")
                except Cancelled as e:
                    cancelled = e

        if cancelled is not None:
            raise cancelled
        if self._material_error is not None:
            raise PhaseFailed(self.first, Phase.JOIN_MATERIAL, self._material_error)

    def _close_join_material(self) -> None:
        if self.state.result(self.first, Phase.JOIN_MATERIAL).status is PhaseStatus.PENDING:
            self._record(self.first, PhaseResult(Phase.JOIN_MATERIAL, PhaseStatus.SKIPPED, note='no join pending'))

    def _verifiable(self, node: Node) -> bool:
        phase = {
            NodeRole.CONTROL_PLANE_FIRST: Phase.CONTROL_PLANE_INIT,
            NodeRole.CONTROL_PLANE_JOIN: Phase.CONTROL_PLANE_JOIN,
            NodeRole.WORKER: Phase.WORKER_JOIN,
        }[node.role]
        return self.state.result(node, phase).succeeded

    def _verify(self) -> None:
        nodes = [node for node in self.inventory.nodes if self._verifiable(node)]
        if not nodes:
            return

        logger.info(f"🔍 Verifying {len(nodes)} node(s)")
        max_workers = min(self.config.run.max_parallel_workers, len(nodes))
        cancelled = None
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            futures = [pool.submit(self._verify_node, node) for node in nodes]
            for future in as_completed(futures):
                try:
                    future.result()
                except Cancelled as e:
                    cancelled = e
        if cancelled is not None:
            raise cancelled

        try:
            self.overview = self.installer.describe_cluster(self.first)
        except BootstrapError as e:
            logger.warning(f"Could not collect cluster overview: {e}")
            return
        logger.info(f"Cluster nodes:\n{self.overview['nodes']}")
        for issue in self.overview['issues']:
            logger.warning(f"⚠️  {issue}")

    def run(self) -> RunReport:
        """Bootstrap the cluster and report per-node, per-phase outcomes."""
        fatal_error = None
        cancelled = False
        logger.info(
            f"🚀 Bootstrapping cluster {self.spec.name} (Kubernetes {self.spec.version}) on "
            f"{len(self.inventory.nodes)} node(s)"
        )
        try:
            self._bootstrap_control_plane()
            self._join_workers()
            self._close_join_material()
            self._verify()
        except PhaseFailed as e:
            fatal_error = str(e)
            logger.error(f"❌ Bootstrap aborted: {fatal_error}")
        except Cancelled as e:
            cancelled = True
            logger.warning(f"⚠️  Bootstrap cancelled: {e}")
        finally:
            self.exchange.close()
            try:
                self.state.save()
            except OSError as e:
                logger.error(f"Failed to save run state: {e}")

        return RunReport(
            cluster_name=self.spec.name,
            nodes=self.inventory.nodes,
            results={node.address: self.state.results(node) for node in self.inventory.nodes},
            fatal_error=fatal_error,
            cancelled=cancelled,
        )

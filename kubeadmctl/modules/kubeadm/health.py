"""Readiness polling and cluster health checks."""
import logging
import threading
import time
from enum import Enum
from typing import Callable, Dict, Any, Optional

from .errors import AuthenticationFailed, BootstrapError, Cancelled, MalformedResponse
from .models import Node

logger = logging.getLogger("kubeadm.health")

# Errors that mean the predicate can never become true by waiting longer
FATAL_QUERY_ERRORS = (MalformedResponse, AuthenticationFailed, Cancelled)


class PollOutcome(str, Enum):
    READY = 'ready'
    TIMED_OUT = 'timed_out'


class ReadinessPoller:
    """Evaluates a predicate until it holds or a timeout elapses.

    Query errors count as "not ready yet". Suspension between evaluations
    waits on the cancel event, so a cancelled run stops polling within one
    poll interval.
    """

    def __init__(
        self,
        poll_interval: float = 10.0,
        timeout: float = 300.0,
        cancel_event: Optional[threading.Event] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.cancel_event = cancel_event or threading.Event()
        self.clock = clock

    def wait_until(
        self,
        predicate: Callable[[], bool],
        description: str = 'condition',
        timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
    ) -> PollOutcome:
        timeout = self.timeout if timeout is None else timeout
        poll_interval = self.poll_interval if poll_interval is None else poll_interval
        start = self.clock()
        checks = 0
        last_error = None

        logger.info("⏳ Waiting for %s (timeout: %.0fs)", description, timeout)
        while True:
            if self.cancel_event.is_set():
                raise Cancelled(f"cancelled while waiting for {description}")
            checks += 1
            try:
                if predicate():
                    logger.info("✅ %s", description)
                    return PollOutcome.READY
                last_error = None
            except FATAL_QUERY_ERRORS:
                raise
            except BootstrapError as e:
                last_error = e
                logger.debug("%s not ready yet (check %d): %s", description, checks, e)

            elapsed = self.clock() - start
            if elapsed >= timeout:
                logger.warning(
                    "⚠️  Timed out waiting for %s after %.0fs%s", description, elapsed,
                    f" (last error: {last_error})" if last_error else ''
                )
                return PollOutcome.TIMED_OUT

            if checks % 6 == 0:
                logger.info("⏳ Still waiting for %s (%.0fs elapsed)", description, elapsed)
            if self.cancel_event.wait(min(poll_interval, max(timeout - elapsed, 0))):
                raise Cancelled(f"cancelled while waiting for {description}")


def check_cluster_health(installer, control_plane: Node) -> Dict[str, Any]:
    """Collect a node and kube-system overview from a control-plane node.

    Args:
        installer: KubeadmInstaller instance
        control_plane: node holding the admin kubeconfig

    Returns:
        Dict containing the raw listings and any issues found
    """
    health = {
        'healthy': False,
        'nodes': '',
        'system_pods': '',
        'issues': []
    }

    try:
        health['nodes'] = installer.kubectl(control_plane, "get nodes -o wide")
        if "NotReady" in health['nodes']:
            health['issues'].append("Some nodes are not in Ready state")

        health['system_pods'] = installer.kubectl(control_plane, "get pods -n kube-system -o wide")
        for line in health['system_pods'].splitlines()[1:]:
            if line.strip() and 'Running' not in line and 'Completed' not in line:
                health['issues'].append("Some kube-system pods are not Running")
                break

        health['healthy'] = not health['issues']
    except BootstrapError as e:
        health['issues'].append(f"Health check failed: {e}")

    return health

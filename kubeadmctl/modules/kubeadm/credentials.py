"""Join-credential handoff between the first control plane and joining nodes.

Join material is requested from the first control plane once per run and
delivered to each joining node as a kubeadm JoinConfiguration file readable
only by the SSH user. The exchange keeps track of everything it wrote so the
remote copies and the local handoff file can be removed afterwards.
"""

import logging
import os
import shutil
import tempfile
import threading
from typing import Dict, Optional

from .errors import BootstrapError, Cancelled, CredentialExpired, CredentialUnavailable
from .installer.configuration import ConfigurationError, render_handoff, render_join_configuration
from .models import ClusterSpec, JoinDelivery, JoinMaterial, Node

logger = logging.getLogger("kubeadm.credentials")

HANDOFF_FILENAME = 'join-material.yaml'


class JoinCredentialExchange:
    """Issues join material once and hands it to each joining node."""

    def __init__(self, installer, executor, spec: ClusterSpec,
                 handoff_dir: Optional[str] = None, remote_dir: str = '/tmp'):
        self.installer = installer
        self.executor = executor
        self.spec = spec
        self.remote_dir = remote_dir.rstrip('/') or '/'
        self._handoff_dir = handoff_dir
        self._owns_handoff_dir = handoff_dir is None
        self._lock = threading.Lock()
        self._material: Optional[JoinMaterial] = None
        self._deliveries: Dict[str, JoinDelivery] = {}
        self.issue_count = 0
        self.handoff_path: Optional[str] = None

    @property
    def material(self) -> Optional[JoinMaterial]:
        return self._material

    def issue(self, first_control_plane: Node, with_certificate_key: bool = False,
              renew: bool = False) -> JoinMaterial:
        """Request join material from the first control plane.

        The result is cached for the run; later calls return it without a
        remote request unless ``renew`` is set.

        Raises:
            CredentialUnavailable: If the control plane is not initialised or
                issuance fails
        """
        with self._lock:
            if self._material is not None and not renew:
                return self._material

            try:
                if not self.installer.cluster_initialized(first_control_plane):
                    raise CredentialUnavailable(
                        f"{first_control_plane}: control plane is not initialized, cannot issue join material"
                    )
                material = self.installer.issue_join_token(
                    first_control_plane, self.spec.token_ttl, with_certificate_key
                )
            except (CredentialUnavailable, Cancelled):
                raise
            except BootstrapError as e:
                raise CredentialUnavailable(f"failed to issue join material: {e}") from e
            finally:
                self.issue_count += 1

            self._material = material
            self._deliveries.clear()
            try:
                self._write_handoff(material)
            except OSError as e:
                raise CredentialUnavailable(f"cannot write join material handoff file: {e}") from e
            return material

    def _write_handoff(self, material: JoinMaterial) -> None:
        if self._handoff_dir is None:
            self._handoff_dir = tempfile.mkdtemp(prefix='kubeadmctl-')
        os.makedirs(self._handoff_dir, mode=0o700, exist_ok=True)
        path = os.path.join(self._handoff_dir, HANDOFF_FILENAME)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, 'w') as f:
            f.write(render_handoff(material, self.spec))
        os.chmod(path, 0o600)
        self.handoff_path = path
        logger.info(f"🔐 Join material written to {path} (removed once joins complete)")

    def remote_path(self, node: Node) -> str:
        return f"{self.remote_dir}/kubeadmctl-join-{node.hostname}.yaml"

    def deliver(self, material: JoinMaterial, node: Node) -> JoinDelivery:
        """Place join material on a node as a JoinConfiguration file (mode 0600).

        Each node receives a given material at most once.

        Raises:
            CredentialExpired: If the material's validity window has passed
            CredentialUnavailable: If a control-plane node gets material without
                a certificate key
        """
        if material.is_expired():
            raise CredentialExpired(f"join material expired before delivery to {node}")
        if node.is_control_plane and not material.for_control_plane:
            raise CredentialUnavailable(f"{node}: control-plane join needs material with a certificate key")

        with self._lock:
            delivery = self._deliveries.get(node.address)
            if delivery is not None and delivery.material is material:
                return delivery

        try:
            document = render_join_configuration(material, node, self.spec)
        except ConfigurationError as e:
            raise CredentialUnavailable(str(e)) from e

        remote_path = self.remote_path(node)
        self.executor.write_file(node, document, remote_path, mode=0o600)
        delivery = JoinDelivery(material=material, node=node, remote_path=remote_path)
        with self._lock:
            self._deliveries[node.address] = delivery
        logger.debug(f"Delivered join configuration to {node}:{remote_path}")
        return delivery

    @property
    def delivered(self) -> Dict[str, JoinDelivery]:
        with self._lock:
            return dict(self._deliveries)

    def retract(self, node: Node) -> None:
        """Remove a node's delivered join configuration."""
        try:
            self.executor.run(node, f"rm -f {self.remote_path(node)}", check=False, timeout=30)
        except BootstrapError as e:
            logger.warning(f"Could not remove join configuration from {node}: {e}")

    def close(self) -> None:
        """Remove the local handoff artifact."""
        if self.handoff_path and os.path.exists(self.handoff_path):
            os.remove(self.handoff_path)
            logger.debug(f"Removed {self.handoff_path}")
        if self._owns_handoff_dir and self._handoff_dir and os.path.isdir(self._handoff_dir):
            shutil.rmtree(self._handoff_dir, ignore_errors=True)
        self.handoff_path = None

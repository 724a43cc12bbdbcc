"""Core kubeadm installation logic.

This module contains the KubeadmInstaller class: host preparation, package
and runtime setup, control-plane initialisation, join operations and the
read-only checks the orchestrator uses to decide whether a phase already
holds on a node.
"""

import logging
import os
import time
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from ..config import InstallerConfig, get_config
from ..errors import ExecutionError
from ..health import check_cluster_health
from ..models import ClusterSpec, JoinDelivery, JoinMaterial, Node
from . import configuration as conf
from .utils import parse_certificate_key, parse_duration, parse_join_command, parse_ready_status

logger = logging.getLogger("kubeadm.installer.core")

# Seconds allowed for apt, image pulls, kubeadm init and kubeadm join
LONG_TIMEOUT = 900
# kubeadm deletes the uploaded certificates secret after two hours
CERTIFICATE_KEY_TTL = 2 * 3600


class InitOutcome(str, Enum):
    INITIALIZED = 'initialized'
    ALREADY_INITIALIZED = 'already_initialized'


class KubeadmInstaller:
    """Handles kubeadm installation on cluster nodes.

    Every method performs remote work through the executor and raises the
    executor's typed errors; retries are the caller's concern.
    """

    def __init__(self, executor, config: Optional[InstallerConfig] = None):
        """Initialize the installer.

        Args:
            executor: RemoteExecutor (or compatible) used for every remote call
            config: Installer configuration (global configuration if None)
        """
        self.executor = executor
        self.config = config or get_config()

    def log(self, node: Node, message: str) -> None:
        """Log a message with node context."""
        logger.info("[%s] %s", node.name, message)

    def _run(self, node: Node, command: str, **kwargs) -> str:
        return self.executor.run(node, command, **kwargs).stdout

    def _succeeds(self, node: Node, command: str, **kwargs) -> bool:
        return self.executor.run(node, command, check=False, **kwargs).exit_code == 0

    def kubectl(self, control_plane: Node, arguments: str, **kwargs) -> str:
        """Run kubectl with the admin kubeconfig on a control-plane node."""
        return self._run(control_plane, conf.kubectl_command(arguments), **kwargs)

    # Checks

    def check_operating_system(self, node: Node) -> None:
        """Fail fatally unless the node runs Ubuntu."""
        result = self.executor.run(node, conf.os_check_command(), check=False)
        if result.exit_code != 0:
            raise ExecutionError(
                node.address, 'check operating system', result.exit_code,
                stderr="unsupported operating system: only Ubuntu is supported"
            )

    def binaries_present(self, node: Node, spec: ClusterSpec) -> bool:
        """Pinned kubeadm plus kubelet and kubectl are installed."""
        return self._succeeds(
            node,
            f"[ \"$(kubeadm version -o short 2>/dev/null)\" = v{spec.version} ] && "
            "command -v kubelet >/dev/null && command -v kubectl >/dev/null"
        )

    def prerequisites_satisfied(self, node: Node, spec: ClusterSpec) -> bool:
        """All prerequisites hold: binaries, active runtime, no swap, hostname."""
        if not self.binaries_present(node, spec):
            return False
        return self._succeeds(
            node,
            "systemctl is-active --quiet containerd && "
            f"[ -S {conf.socket_path(spec.cri_socket)} ] && "
            "[ -z \"$(swapon --show --noheadings)\" ] && "
            f"[ \"$(hostname)\" = {node.hostname} ]"
        )

    def cluster_initialized(self, node: Node) -> bool:
        return self._succeeds(node, f"test -f {conf.ADMIN_KUBECONFIG}")

    def api_server_healthy(self, node: Node) -> bool:
        output = self.kubectl(node, "get --raw=/readyz", timeout=30)
        return output.strip() == 'ok'

    def network_installed(self, node: Node, manifest: str) -> bool:
        return self._succeeds(node, conf.kubectl_command(f"get -f {manifest}"), timeout=60)

    def is_member(self, control_plane: Node, node: Node) -> bool:
        """Whether ``node`` is registered in the cluster.

        Raises:
            ExecutionError: If membership cannot be determined (API unavailable)
        """
        result = self.executor.run(
            control_plane, conf.kubectl_command(f"get node {node.hostname} -o name"),
            check=False, timeout=60
        )
        if result.exit_code == 0:
            return True
        if 'notfound' in result.stderr.lower().replace(' ', ''):
            return False
        raise ExecutionError(control_plane.address, f"kubectl get node {node.hostname}",
                             result.exit_code, result.stdout, result.stderr)

    def query_node_ready(self, control_plane: Node, node: Node) -> bool:
        """Read a node's Ready condition.

        Raises:
            MalformedResponse: If the status cannot be interpreted
        """
        output = self.kubectl(
            control_plane,
            f"get node {node.hostname} -o jsonpath='{{.status.conditions[?(@.type==\"Ready\")].status}}'",
            timeout=60,
        )
        return bool(parse_ready_status(output))

    def has_control_plane_taint(self, control_plane: Node, node: Node) -> bool:
        output = self.kubectl(
            control_plane, f"get node {node.hostname} -o jsonpath='{{.spec.taints[*].key}}'", timeout=60
        )
        return conf.CONTROL_PLANE_TAINT.split(':')[0] in output.split()

    # Host and package setup

    def prepare_host(self, node: Node) -> None:
        """Set the hostname, disable swap, load kernel modules and apply sysctl settings."""
        self.log(node, f"🔧 Preparing host as {node.hostname}")
        self._run(node, conf.hostname_command(node))
        self._run(node, conf.swap_off_command())
        self._run(node, conf.kernel_modules_command())
        self._run(node, conf.sysctl_command())

    def install_base_packages(self, node: Node) -> None:
        self.install_packages(node, list(conf.BASE_PACKAGES))

    def add_package_repository(self, node: Node, spec: ClusterSpec) -> None:
        """Add the pkgs.k8s.io repository and signing key for the cluster's minor version."""
        self.log(node, f"📦 Adding Kubernetes {spec.repository_branch} package repository")
        self._run(node, conf.repository_key_command(spec), timeout=120)
        self._run(node, conf.repository_list_command(spec))

    def install_packages(self, node: Node, packages: Sequence[str], version: Optional[str] = None) -> None:
        """Install packages with apt, pinning and holding them when a version is given."""
        packages = list(packages)
        self.log(node, f"📦 Installing {', '.join(packages)}{f' ({version})' if version else ''}")
        self._run(node, conf.install_packages_command(packages, version), timeout=LONG_TIMEOUT)
        if version:
            self._run(node, conf.hold_packages_command(packages))

    def configure_runtime(self, node: Node, spec: ClusterSpec) -> None:
        """Install containerd if missing, enable the systemd cgroup driver and wait for its socket."""
        self.log(node, "🐳 Configuring containerd")
        if not self._succeeds(node, "command -v containerd >/dev/null"):
            self.install_packages(node, ['containerd'])
        self._run(node, conf.containerd_config_command(), timeout=120)
        self._run(node, conf.socket_wait_command(conf.socket_path(spec.cri_socket)), timeout=90)
        self._run(node, "systemctl enable kubelet")

    def pull_images(self, node: Node, spec: ClusterSpec) -> None:
        self.log(node, f"⬇️  Pulling control-plane images for v{spec.version}")
        self._run(node, conf.images_pull_command(spec), timeout=LONG_TIMEOUT)

    def kube_vip_deployed(self, node: Node) -> bool:
        return self._succeeds(node, f"test -s {conf.KUBE_VIP_MANIFEST}")

    def has_join_leftovers(self, node: Node) -> bool:
        """Whether an earlier kubeadm join left files that fail join preflight."""
        return self._succeeds(node, conf.join_leftovers_check_command())

    def reset_node(self, node: Node, spec: ClusterSpec) -> None:
        self.log(node, "🧹 Resetting leftovers of an earlier kubeadm join")
        self._run(node, conf.reset_command(spec), timeout=300)

    def deploy_kube_vip(self, node: Node, spec: ClusterSpec) -> None:
        """Place the kube-vip static pod manifest when a virtual IP is configured."""
        if spec.kube_vip is None:
            return
        if self.kube_vip_deployed(node):
            self.log(node, "kube-vip manifest already present")
            return
        self.log(node, f"🌐 Deploying kube-vip for {spec.endpoint_host}")
        self._run(node, conf.kube_vip_command(spec), timeout=300)

    # Cluster operations

    def copy_user_kubeconfig(self, node: Node) -> None:
        """Give the SSH user a copy of the admin kubeconfig."""
        self._run(node, conf.user_kubeconfig_command(node.credential.needs_sudo), sudo=False)

    def init_control_plane(self, node: Node, spec: ClusterSpec) -> InitOutcome:
        """Run kubeadm init on the first control-plane node unless already initialised."""
        if self.cluster_initialized(node):
            self.log(node, "Cluster already initialized, skipping kubeadm init")
            outcome = InitOutcome.ALREADY_INITIALIZED
        else:
            self.log(node, f"🚀 Running kubeadm init against {spec.api_endpoint}")
            self._run(node, conf.kubeadm_init_command(node, spec), timeout=LONG_TIMEOUT)
            outcome = InitOutcome.INITIALIZED
        self.copy_user_kubeconfig(node)
        return outcome

    def apply_network_manifest(self, node: Node, manifest: str) -> None:
        self.log(node, f"🕸️  Applying pod network manifest {manifest}")
        self.kubectl(node, f"apply -f {manifest}", timeout=120)

    def issue_join_token(self, node: Node, ttl: str, with_certificate_key: bool = False) -> JoinMaterial:
        """Create a bootstrap token and optionally re-upload control-plane certificates.

        Args:
            node: First control-plane node
            ttl: Token lifetime (kubeadm duration, e.g. ``2h``)
            with_certificate_key: Also produce a certificate key for control-plane joins

        Returns:
            JoinMaterial

        Raises:
            MalformedResponse: If kubeadm output cannot be parsed
        """
        issued_at = time.time()
        output = self._run(node, f"kubeadm token create --ttl {ttl} --print-join-command",
                           sensitive=True, timeout=120)
        values = parse_join_command(output)
        lifetime = parse_duration(ttl)

        certificate_key = None
        if with_certificate_key:
            output = self._run(node, "kubeadm init phase upload-certs --upload-certs",
                               sensitive=True, timeout=120)
            certificate_key = parse_certificate_key(output)
            lifetime = min(lifetime, CERTIFICATE_KEY_TTL) if lifetime else CERTIFICATE_KEY_TTL

        self.log(node, f"🔑 Issued join token for {values['api_endpoint']}")
        return JoinMaterial(
            token=values['token'],
            discovery_hash=values['discovery_hash'],
            api_endpoint=values['api_endpoint'],
            certificate_key=certificate_key,
            issued_at=issued_at,
            expires_at=issued_at + lifetime if lifetime else None,
        )

    def join_control_plane(self, node: Node, delivery: JoinDelivery) -> None:
        self.log(node, "🔗 Joining as control-plane node")
        self._run(node, f"kubeadm join --config {delivery.remote_path}", timeout=LONG_TIMEOUT)
        self.copy_user_kubeconfig(node)

    def join_worker(self, node: Node, delivery: JoinDelivery) -> None:
        self.log(node, "🔗 Joining as worker node")
        self._run(node, f"kubeadm join --config {delivery.remote_path}", timeout=LONG_TIMEOUT)

    def remove_taint(self, node: Node) -> None:
        """Allow workloads on a control-plane node."""
        result = self.executor.run(
            node, conf.kubectl_command(f"taint nodes {node.hostname} {conf.CONTROL_PLANE_TAINT}-"),
            check=False, timeout=60
        )
        if result.exit_code != 0 and 'not found' not in result.stderr.lower():
            raise ExecutionError(node.address, "kubectl taint", result.exit_code, result.stdout, result.stderr)
        self.log(node, "Removed control-plane NoSchedule taint")

    def fetch_kubeconfig(self, node: Node, local_path: str) -> str:
        """Download the admin kubeconfig to the operator machine (mode 0600)."""
        local_path = os.path.abspath(os.path.expanduser(local_path))
        os.makedirs(os.path.dirname(local_path), exist_ok=True)
        remote_path = '.kube/config' if node.credential.needs_sudo else conf.ADMIN_KUBECONFIG
        self.executor.download(node, remote_path, local_path)
        os.chmod(local_path, 0o600)
        self.log(node, f"Saved kubeconfig to {local_path}")
        return local_path

    def describe_cluster(self, control_plane: Node) -> Dict[str, Any]:
        return check_cluster_health(self, control_plane)

    def firewall_guidance(self, nodes: List[Node]) -> List[str]:
        """Ports each node must accept, for operators managing host firewalls."""
        lines = []
        for node in nodes:
            role = 'control-plane' if node.is_control_plane else 'worker'
            lines.append(f"{node}: {', '.join(conf.FIREWALL_PORTS[role])}")
        return lines

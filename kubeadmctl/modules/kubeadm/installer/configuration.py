"""kubeadm host and join configuration.

Host preparation is expressed as shell snippets run through the remote
executor. Join configuration is rendered from templates/join-configuration.yaml.j2
with the following context:
- node: the joining Node
- material: JoinMaterial issued by the first control plane
- cri_socket: container runtime socket for nodeRegistration
- control_plane: whether a controlPlane section is emitted
- api_version: kubeadm config API version matching the cluster version
"""

import logging
import os
import shlex
from typing import Any, Dict, List

import yaml
from jinja2 import (
    Environment,
    FileSystemLoader,
    StrictUndefined,
    TemplateNotFound,
    TemplateSyntaxError,
    UndefinedError,
)

from ..models import ClusterSpec, JoinMaterial, Node

logger = logging.getLogger("kubeadm.installer.configuration")

ADMIN_KUBECONFIG = '/etc/kubernetes/admin.conf'
KUBE_VIP_MANIFEST = '/etc/kubernetes/manifests/kube-vip.yaml'
KUBELET_KUBECONFIG = '/etc/kubernetes/kubelet.conf'
# Left behind by a kubeadm join that stopped partway; join preflight refuses to run over them
JOIN_LEFTOVERS = (
    KUBELET_KUBECONFIG,
    '/etc/kubernetes/bootstrap-kubelet.conf',
    '/etc/kubernetes/pki',
    '/etc/kubernetes/manifests/*',
)
KEYRING_PATH = '/etc/apt/keyrings/kubernetes-apt-keyring.gpg'
REPOSITORY_LIST = '/etc/apt/sources.list.d/kubernetes.list'
CONTAINERD_CONFIG = '/etc/containerd/config.toml'
MODULES_LOAD_FILE = '/etc/modules-load.d/containerd.conf'
SYSCTL_FILE = '/etc/sysctl.d/kubernetes.conf'
CONTROL_PLANE_TAINT = 'node-role.kubernetes.io/control-plane:NoSchedule'

KUBERNETES_PACKAGES = ('kubelet', 'kubeadm', 'kubectl')
BASE_PACKAGES = ('apt-transport-https', 'ca-certificates', 'curl', 'gpg')

KERNEL_MODULES = ('overlay', 'br_netfilter')

SYSCTL_SETTINGS = {
    'net.bridge.bridge-nf-call-ip6tables': '1',
    'net.bridge.bridge-nf-call-iptables': '1',
    'net.ipv4.ip_forward': '1',
}

FIREWALL_PORTS = {
    'control-plane': ('6443/tcp', '2379:2380/tcp', '10250/tcp', '10257/tcp', '10259/tcp', '8472/udp'),
    'worker': ('10250/tcp', '30000:32767/tcp', '8472/udp'),
}


class ConfigurationError(Exception):
    """Raised when there is an error generating the configuration."""


def get_template_path() -> str:
    """Get the absolute path to the templates directory."""
    return os.path.join(os.path.dirname(os.path.abspath(__file__)), 'templates')


def kubeadm_api_version(spec: ClusterSpec) -> str:
    """kubeadm config API version understood by the cluster's kubeadm."""
    major, minor, _ = spec.version_tuple
    return 'v1beta4' if (major, minor) >= (1, 31) else 'v1beta3'


def render_join_configuration(material: JoinMaterial, node: Node, spec: ClusterSpec) -> str:
    """Render a kubeadm JoinConfiguration for one node.

    Args:
        material: Join material issued by the first control plane
        node: Node that will run ``kubeadm join --config``
        spec: Cluster spec (CRI socket and kubeadm API version)

    Returns:
        str: Rendered YAML document

    Raises:
        ConfigurationError: If the material does not fit the node's role or the
            template cannot be rendered
    """
    if node.is_control_plane and not material.for_control_plane:
        raise ConfigurationError(f"{node}: control-plane join needs a certificate key")

    env = Environment(
        loader=FileSystemLoader(get_template_path()),
        trim_blocks=True,
        lstrip_blocks=True,
        undefined=StrictUndefined,
    )
    try:
        template = env.get_template('join-configuration.yaml.j2')
        return template.render(
            node=node,
            material=material,
            cri_socket=spec.cri_socket,
            control_plane=node.is_control_plane,
            api_version=kubeadm_api_version(spec),
        )
    except TemplateNotFound as e:
        raise ConfigurationError(f"Join configuration template not found: {e}") from e
    except (TemplateSyntaxError, UndefinedError) as e:
        raise ConfigurationError(f"Failed to render join configuration: {e}") from e


def render_handoff(material: JoinMaterial, spec: ClusterSpec) -> str:
    """Operator-facing summary of the join material, one command per node role."""
    worker_command = join_command(material)
    document: Dict[str, Any] = {
        'cluster': spec.name,
        'api_endpoint': material.api_endpoint,
        'token': material.token,
        'discovery_token_ca_cert_hash': material.discovery_hash,
        'expires_at': material.expires_at,
        'worker_join_command': worker_command,
    }
    if material.certificate_key:
        document['certificate_key'] = material.certificate_key
        document['control_plane_join_command'] = (
            f"{worker_command} --control-plane --certificate-key {material.certificate_key}"
        )
    return yaml.safe_dump(document, default_flow_style=False, sort_keys=False)


def join_command(material: JoinMaterial) -> str:
    return (
        f"kubeadm join {material.api_endpoint} --token {material.token} "
        f"--discovery-token-ca-cert-hash {material.discovery_hash}"
    )


def os_check_command() -> str:
    return "grep -qi ubuntu /etc/os-release"


def hostname_command(node: Node) -> str:
    hostname = shlex.quote(node.hostname)
    return (
        f"[ \"$(hostname)\" = {hostname} ] || hostnamectl set-hostname {hostname}; "
        f"grep -q '[[:space:]]{node.hostname}$' /etc/hosts || "
        f"echo '127.0.1.1 {node.hostname}' >> /etc/hosts"
    )


def swap_off_command() -> str:
    return (
        "if grep -q ' swap ' /etc/fstab; then "
        "sed -i '/ swap / s/^\\([^#].*\\)$/#\\1/g' /etc/fstab; fi; "
        "swapoff -a"
    )


def kernel_modules_command() -> str:
    modules = '\n'.join(KERNEL_MODULES)
    loads = '; '.join(f"modprobe {module}" for module in KERNEL_MODULES)
    return f"{loads}; printf '%s\\n' {shlex.quote(modules)} > {MODULES_LOAD_FILE}"


def sysctl_command() -> str:
    settings = '\n'.join(f"{key} = {value}" for key, value in SYSCTL_SETTINGS.items())
    return f"printf '%s\\n' {shlex.quote(settings)} > {SYSCTL_FILE} && sysctl --system >/dev/null"


def repository_url(spec: ClusterSpec) -> str:
    return f"https://pkgs.k8s.io/core:/stable:/{spec.repository_branch}/deb/"


def repository_key_command(spec: ClusterSpec) -> str:
    return (
        f"mkdir -p -m 755 /etc/apt/keyrings && rm -f {KEYRING_PATH} && "
        f"curl -fsSL {repository_url(spec)}Release.key | gpg --batch --yes --dearmor -o {KEYRING_PATH} && "
        f"chmod 644 {KEYRING_PATH}"
    )


def repository_list_command(spec: ClusterSpec) -> str:
    line = f"deb [signed-by={KEYRING_PATH}] {repository_url(spec)} /"
    return f"echo {shlex.quote(line)} > {REPOSITORY_LIST} && chmod 644 {REPOSITORY_LIST}"


def install_packages_command(packages: List[str], version: str = None) -> str:
    """apt-get install with every package pinned to ``version`` when given."""
    pinned = [f"{package}={version}" if version else package for package in packages]
    return (
        "DEBIAN_FRONTEND=noninteractive apt-get update -y && "
        f"DEBIAN_FRONTEND=noninteractive apt-get install -y --allow-change-held-packages {' '.join(pinned)}"
    )


def hold_packages_command(packages: List[str]) -> str:
    return f"apt-mark hold {' '.join(packages)}"


def containerd_config_command() -> str:
    return (
        "mkdir -p /etc/containerd && "
        f"containerd config default > {CONTAINERD_CONFIG} && "
        f"sed -i 's/SystemdCgroup = false/SystemdCgroup = true/' {CONTAINERD_CONFIG} && "
        "systemctl daemon-reload && systemctl restart containerd && systemctl enable containerd"
    )


def socket_wait_command(socket_path: str, seconds: int = 60) -> str:
    return (
        f"for i in $(seq 1 {seconds}); do [ -S {socket_path} ] && exit 0; sleep 1; done; "
        f"echo 'socket {socket_path} did not appear after {seconds}s' >&2; exit 1"
    )


def socket_path(cri_socket: str) -> str:
    return cri_socket[len('unix://'):] if cri_socket.startswith('unix://') else cri_socket


def images_pull_command(spec: ClusterSpec) -> str:
    return (
        f"kubeadm config images pull --cri-socket {spec.cri_socket} "
        f"--kubernetes-version v{spec.version}"
    )


def kubeadm_init_command(node: Node, spec: ClusterSpec) -> str:
    return (
        "kubeadm init "
        f"--control-plane-endpoint={spec.api_endpoint} "
        f"--apiserver-advertise-address={node.advertise_address} "
        f"--pod-network-cidr={spec.pod_network_cidr} "
        f"--kubernetes-version=v{spec.version} "
        f"--cri-socket={spec.cri_socket} "
        f"--node-name={node.hostname} "
        "--upload-certs"
    )


def join_leftovers_check_command() -> str:
    return f"test -e {KUBELET_KUBECONFIG} || test -e /etc/kubernetes/pki/ca.crt"


def reset_command(spec: ClusterSpec) -> str:
    """Undo a partial kubeadm join so the next attempt passes preflight."""
    return (
        f"kubeadm reset -f --cri-socket {spec.cri_socket} && "
        f"rm -rf {' '.join(JOIN_LEFTOVERS)}"
    )


def user_kubeconfig_command(needs_sudo: bool = True) -> str:
    """Copy the admin kubeconfig into the SSH user's home. Runs as the user itself."""
    sudo = 'sudo -n ' if needs_sudo else ''
    return (
        "mkdir -p \"$HOME/.kube\" && "
        f"{sudo}cp -f {ADMIN_KUBECONFIG} \"$HOME/.kube/config\" && "
        f"{sudo}chown \"$(id -u):$(id -g)\" \"$HOME/.kube/config\" && "
        "chmod 600 \"$HOME/.kube/config\""
    )


def kube_vip_command(spec: ClusterSpec) -> str:
    """Generate the kube-vip static pod manifest with the kube-vip image itself."""
    vip = spec.kube_vip
    image = shlex.quote(vip.image)
    return (
        f"mkdir -p /etc/kubernetes/manifests && ctr image pull {image} >/dev/null && "
        f"ctr run --rm --net-host {image} vip /kube-vip manifest pod "
        f"--interface {shlex.quote(vip.interface)} --address {spec.endpoint_host} "
        "--controlplane --services --arp --leaderElection "
        f"> {KUBE_VIP_MANIFEST}"
    )


def kubectl_command(arguments: str) -> str:
    return f"kubectl --kubeconfig {ADMIN_KUBECONFIG} {arguments}"

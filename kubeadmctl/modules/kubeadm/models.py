"""Data models for kubeadm cluster bootstrap."""

import time
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Dict, Optional, Tuple

DEFAULT_API_PORT = 6443
DEFAULT_POD_NETWORK_CIDR = '10.244.0.0/16'
DEFAULT_NETWORK_MANIFEST = (
    'https://raw.githubusercontent.com/flannel-io/flannel/master/Documentation/kube-flannel.yml'
)
DEFAULT_CRI_SOCKET = 'unix:///run/containerd/containerd.sock'
DEFAULT_KUBE_VIP_IMAGE = 'ghcr.io/kube-vip/kube-vip:latest'


def split_endpoint(endpoint: str) -> Tuple[str, Optional[str]]:
    """Split ``host[:port]`` into host and port (None when absent).

    IPv6 addresses are accepted bare (``fd00::10``) or bracketed with a port
    (``[fd00::10]:6443``).

    Raises:
        ValueError: If a bracketed address is not closed or is followed by junk
    """
    if endpoint.startswith('['):
        host, closed, rest = endpoint[1:].partition(']')
        if not closed or (rest and not rest.startswith(':')):
            raise ValueError(f"malformed endpoint {endpoint}")
        return host, rest[1:] or None
    if endpoint.count(':') > 1:
        return endpoint, None
    host, sep, port = endpoint.rpartition(':')
    return (host, port) if sep else (endpoint, None)


class NodeRole(str, Enum):
    """Node roles in the bootstrap sequence."""
    CONTROL_PLANE_FIRST = 'control-plane-first'
    CONTROL_PLANE_JOIN = 'control-plane-join'
    WORKER = 'worker'

    @property
    def is_control_plane(self) -> bool:
        return self is not NodeRole.WORKER


@dataclass(frozen=True)
class Credential:
    """SSH credential referenced by nodes in the inventory."""
    name: str
    user: str
    key_path: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)
    port: int = 22

    @property
    def needs_sudo(self) -> bool:
        return self.user != 'root'


@dataclass(frozen=True)
class Node:
    """Represents a machine in the cluster."""
    address: str
    hostname: str
    role: NodeRole
    credential: Credential
    ordinal: int
    internal_address: Optional[str] = None

    @property
    def name(self) -> str:
        return self.hostname

    @property
    def advertise_address(self) -> str:
        return self.internal_address or self.address

    @property
    def is_control_plane(self) -> bool:
        return self.role.is_control_plane

    def __str__(self) -> str:
        return f"{self.hostname} ({self.address})"


@dataclass(frozen=True)
class KubeVipSpec:
    """kube-vip static pod settings for the control-plane virtual IP."""
    interface: str = 'eth0'
    image: str = DEFAULT_KUBE_VIP_IMAGE


@dataclass(frozen=True)
class ClusterSpec:
    """Cluster-wide desired state. Read-only after load."""
    name: str
    version: str
    control_plane_endpoint: str
    pod_network_cidr: str = DEFAULT_POD_NETWORK_CIDR
    network_manifest: str = DEFAULT_NETWORK_MANIFEST
    cri_socket: str = DEFAULT_CRI_SOCKET
    token_ttl: str = '2h'
    kube_vip: Optional[KubeVipSpec] = None

    @property
    def version_tuple(self) -> Tuple[int, int, int]:
        major, minor, patch = self.version.split('.')
        return int(major), int(minor), int(patch)

    @property
    def repository_branch(self) -> str:
        major, minor, _ = self.version_tuple
        return f"v{major}.{minor}"

    @property
    def package_version(self) -> str:
        return f"{self.version}-1.1"

    @property
    def endpoint_host(self) -> str:
        return split_endpoint(self.control_plane_endpoint)[0]

    @property
    def api_endpoint(self) -> str:
        host, port = split_endpoint(self.control_plane_endpoint)
        if ':' in host:
            host = f"[{host}]"
        return f"{host}:{port or DEFAULT_API_PORT}"


@dataclass(frozen=True)
class Inventory:
    """Loaded topology: cluster spec plus nodes ordered by role and ordinal."""
    spec: ClusterSpec
    nodes: Tuple[Node, ...]

    @property
    def first_control_plane(self) -> Node:
        return next(n for n in self.nodes if n.role is NodeRole.CONTROL_PLANE_FIRST)

    @property
    def control_plane_joins(self) -> Tuple[Node, ...]:
        return tuple(n for n in self.nodes if n.role is NodeRole.CONTROL_PLANE_JOIN)

    @property
    def workers(self) -> Tuple[Node, ...]:
        return tuple(n for n in self.nodes if n.role is NodeRole.WORKER)

    @property
    def control_planes(self) -> Tuple[Node, ...]:
        return (self.first_control_plane,) + self.control_plane_joins


@dataclass(frozen=True)
class JoinMaterial:
    """Shared credentials allowing new nodes to join the cluster."""
    token: str = field(repr=False)
    discovery_hash: str
    api_endpoint: str
    certificate_key: Optional[str] = field(default=None, repr=False)
    issued_at: float = field(default_factory=time.time)
    expires_at: Optional[float] = None

    @property
    def for_control_plane(self) -> bool:
        return bool(self.certificate_key)

    def is_expired(self, now: Optional[float] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now if now is not None else time.time()) >= self.expires_at


@dataclass(frozen=True)
class JoinDelivery:
    """Join material as delivered to one node."""
    material: JoinMaterial
    node: Node
    remote_path: str


class Phase(str, Enum):
    """Bootstrap phases, in execution order."""
    PREREQUISITES = 'prerequisites'
    CONTROL_PLANE_INIT = 'control_plane_init'
    NETWORK = 'network'
    JOIN_MATERIAL = 'join_material'
    CONTROL_PLANE_JOIN = 'control_plane_join'
    WORKER_JOIN = 'worker_join'
    VERIFY = 'verify'

    @property
    def best_effort(self) -> bool:
        return self is Phase.VERIFY


ROLE_PHASES: Dict[NodeRole, Tuple[Phase, ...]] = {
    NodeRole.CONTROL_PLANE_FIRST: (
        Phase.PREREQUISITES, Phase.CONTROL_PLANE_INIT, Phase.NETWORK,
        Phase.JOIN_MATERIAL, Phase.VERIFY,
    ),
    NodeRole.CONTROL_PLANE_JOIN: (
        Phase.PREREQUISITES, Phase.CONTROL_PLANE_JOIN, Phase.VERIFY,
    ),
    NodeRole.WORKER: (
        Phase.PREREQUISITES, Phase.WORKER_JOIN, Phase.VERIFY,
    ),
}


class PhaseStatus(str, Enum):
    PENDING = 'pending'
    SUCCEEDED = 'succeeded'
    SKIPPED = 'skipped'
    FAILED = 'failed'
    TIMED_OUT = 'timed_out'


@dataclass
class PhaseResult:
    """Per-node, per-phase outcome."""
    phase: Phase
    status: PhaseStatus = PhaseStatus.PENDING
    attempts: int = 0
    last_error: Optional[str] = None
    note: Optional[str] = None

    @property
    def attempted(self) -> bool:
        return self.status is not PhaseStatus.PENDING

    @property
    def succeeded(self) -> bool:
        return self.status in (PhaseStatus.SUCCEEDED, PhaseStatus.SKIPPED)

    @property
    def failed(self) -> bool:
        return self.status is PhaseStatus.FAILED

    def to_dict(self) -> Dict[str, Any]:
        return {
            'phase': self.phase.value,
            'status': self.status.value,
            'attempts': self.attempts,
            'last_error': self.last_error,
            'note': self.note,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PhaseResult':
        return cls(
            phase=Phase(data['phase']),
            status=PhaseStatus(data.get('status', PhaseStatus.PENDING.value)),
            attempts=int(data.get('attempts', 0)),
            last_error=data.get('last_error'),
            note=data.get('note'),
        )


class ClusterState(IntEnum):
    """Derived bootstrap progress. Never stored, only computed from results."""
    UNPROVISIONED = 0
    PREREQUISITES_READY = 1
    CONTROL_PLANE_INITIALIZED = 2
    NETWORK_INSTALLED = 3
    CONTROL_PLANE_QUORATE = 4
    WORKERS_JOINED = 5
    VERIFIED = 6

    @property
    def label(self) -> str:
        return ''.join(part.capitalize() for part in self.name.split('_'))


PHASE_STATES: Dict[Phase, ClusterState] = {
    Phase.PREREQUISITES: ClusterState.PREREQUISITES_READY,
    Phase.CONTROL_PLANE_INIT: ClusterState.CONTROL_PLANE_INITIALIZED,
    Phase.NETWORK: ClusterState.NETWORK_INSTALLED,
    Phase.CONTROL_PLANE_JOIN: ClusterState.CONTROL_PLANE_QUORATE,
    Phase.WORKER_JOIN: ClusterState.WORKERS_JOINED,
    Phase.VERIFY: ClusterState.VERIFIED,
}


def node_state(node: Node, results: Dict[Phase, PhaseResult]) -> ClusterState:
    """Highest state reached by a node along its role's phase chain."""
    state = ClusterState.UNPROVISIONED
    for phase in ROLE_PHASES[node.role]:
        if phase not in PHASE_STATES:
            continue
        result = results.get(phase)
        if result is None or not result.succeeded:
            break
        state = PHASE_STATES[phase]
    return state

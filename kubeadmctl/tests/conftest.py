import threading
import time

import pytest

from kubeadmctl.modules.kubeadm.config import InstallerConfig
from kubeadmctl.modules.kubeadm.credentials import JoinCredentialExchange
from kubeadmctl.modules.kubeadm.errors import ExecutionError
from kubeadmctl.modules.kubeadm.health import ReadinessPoller
from kubeadmctl.modules.kubeadm.installer import InitOutcome
from kubeadmctl.modules.kubeadm.installer.deployment import BootstrapOrchestrator
from kubeadmctl.modules.kubeadm.inventory import load_inventory
from kubeadmctl.modules.kubeadm.models import JoinMaterial
from kubeadmctl.modules.kubeadm.state import RunState
from kubeadmctl.modules.ssh import CommandResult

TOKEN = 'abcdef.0123456789abcdef'
CA_HASH = 'sha256:' + 'a' * 64
CERTIFICATE_KEY = 'b' * 64
LEFTOVER_PREFLIGHT_ERROR = (
    '[ERROR FileAvailable--etc-kubernetes-kubelet.conf]: /etc/kubernetes/kubelet.conf already exists'
)

MUTATING_CALLS = {
    'prepare_host', 'install_base_packages', 'add_package_repository', 'install_packages',
    'configure_runtime', 'deploy_kube_vip', 'pull_images', 'init_control_plane',
    'apply_network_manifest', 'issue_join_token', 'join_control_plane', 'join_worker',
    'reset_node', 'remove_taint',
}


def inventory_document(key_file, masters=1, workers=2, **cluster):
    cluster.setdefault('name', 'test')
    cluster.setdefault('kubernetes_version', '1.30.2')
    return {
        'cluster': cluster,
        'credentials': {'default': {'user': 'ubuntu', 'key_file': str(key_file)}},
        'masters': [{'address': f"10.0.0.{i + 1}"} for i in range(masters)],
        'workers': [{'address': f"10.0.1.{i + 1}"} for i in range(workers)],
    }


@pytest.fixture
def key_file(tmp_path):
    path = tmp_path / 'id_ed25519'
    path.write_text('not a real key\n')
    return path


@pytest.fixture
def make_inventory(key_file):
    def factory(masters=1, workers=2, **cluster):
        return load_inventory(inventory_document(key_file, masters, workers, **cluster))
    return factory


class FakeExecutor:
    """Stands in for RemoteExecutor; answers commands from scripted rules."""

    def __init__(self):
        self.calls = []
        self.files = {}
        self.rules = []
        self.closed = False
        self.lock = threading.Lock()

    def respond(self, fragment, stdout='', stderr='', exit_code=0):
        self.rules.append((fragment, CommandResult(stdout, stderr, exit_code)))

    def commands(self, address=None):
        return [c for op, a, c in self.calls if op == 'run' and (address is None or a == address)]

    @property
    def touched(self):
        return {address for _, address, _ in self.calls}

    def run(self, node, command, timeout=None, check=True, sudo=True, sensitive=False):
        with self.lock:
            self.calls.append(('run', node.address, command))
        result = next((r for fragment, r in self.rules if fragment in command), CommandResult('', '', 0))
        if check and result.exit_code != 0:
            raise ExecutionError(node.address, command, result.exit_code, result.stdout, result.stderr)
        return result

    def write_file(self, node, content, remote_path, mode=0o600):
        with self.lock:
            self.calls.append(('write_file', node.address, remote_path))
            self.files[(node.address, remote_path)] = (content, mode)

    def download(self, node, remote_path, local_path):
        with self.lock:
            self.calls.append(('download', node.address, remote_path))
        with open(local_path, 'w') as f:
            f.write('apiVersion: v1\nkind: Config\n')

    def close(self):
        self.closed = True


class FakeInstaller:
    """In-memory cluster: mutations change what the checks report."""

    def __init__(self):
        self.calls = []
        self.failures = {}
        self.lock = threading.Lock()
        self.installed = set()
        self.runtime = set()
        self.members = set()
        self.leftovers = set()
        self.kube_vip = set()
        self.not_ready = set()
        self.initialized = False
        self.network = False
        self.api_healthy = True
        self.tainted = True

    def fail(self, method, address, error, times=None):
        """Make ``method`` raise ``error`` for ``address``, always or ``times`` times."""
        self.failures[(method, address)] = [error, times]

    def clear(self):
        self.calls = []
        self.failures = {}

    def _call(self, method, node, via=None):
        with self.lock:
            self.calls.append((method, (via or node).address, node.address))
            failure = self.failures.get((method, node.address))
            if failure is None:
                return
            error, times = failure
            if times is not None:
                if times <= 0:
                    return
                failure[1] = times - 1
        raise error

    @property
    def touched(self):
        return {host for _, host, _ in self.calls}

    def called(self, method, address=None):
        return [c for c in self.calls if c[0] == method and (address is None or c[2] == address)]

    @property
    def mutations(self):
        return [c for c in self.calls if c[0] in MUTATING_CALLS]

    def check_operating_system(self, node):
        self._call('check_operating_system', node)

    def prepare_host(self, node):
        self._call('prepare_host', node)

    def install_base_packages(self, node):
        self._call('install_base_packages', node)

    def add_package_repository(self, node, spec):
        self._call('add_package_repository', node)

    def install_packages(self, node, packages, version=None):
        self._call('install_packages', node)
        self.installed.add(node.address)

    def configure_runtime(self, node, spec):
        self._call('configure_runtime', node)
        self.runtime.add(node.address)

    def binaries_present(self, node, spec):
        self._call('binaries_present', node)
        return node.address in self.installed

    def prerequisites_satisfied(self, node, spec):
        self._call('prerequisites_satisfied', node)
        return node.address in self.installed and node.address in self.runtime

    def deploy_kube_vip(self, node, spec):
        self._call('deploy_kube_vip', node)
        self.kube_vip.add(node.address)

    def kube_vip_deployed(self, node):
        self._call('kube_vip_deployed', node)
        return node.address in self.kube_vip

    def pull_images(self, node, spec):
        self._call('pull_images', node)

    def cluster_initialized(self, node):
        self._call('cluster_initialized', node)
        return self.initialized

    def init_control_plane(self, node, spec):
        self._call('init_control_plane', node)
        if self.initialized:
            return InitOutcome.ALREADY_INITIALIZED
        self.initialized = True
        self.members.add(node.address)
        return InitOutcome.INITIALIZED

    def api_server_healthy(self, node):
        self._call('api_server_healthy', node)
        return self.initialized and self.api_healthy

    def network_installed(self, node, manifest):
        self._call('network_installed', node)
        return self.network

    def apply_network_manifest(self, node, manifest):
        self._call('apply_network_manifest', node)
        self.network = True

    def issue_join_token(self, node, ttl, with_certificate_key=False):
        self._call('issue_join_token', node)
        return JoinMaterial(
            token=TOKEN,
            discovery_hash=CA_HASH,
            api_endpoint=f"{node.address}:6443",
            certificate_key=CERTIFICATE_KEY if with_certificate_key else None,
            expires_at=time.time() + 3600,
        )

    def is_member(self, control_plane, node):
        self._call('is_member', node, via=control_plane)
        return node.address in self.members

    def has_join_leftovers(self, node):
        self._call('has_join_leftovers', node)
        return node.address in self.leftovers

    def reset_node(self, node, spec):
        self._call('reset_node', node)
        self.leftovers.discard(node.address)
        self.kube_vip.discard(node.address)

    def _kubeadm_join(self, method, node):
        """A join writes kubelet.conf before it can fail; a later join refuses to run over it."""
        with self.lock:
            stale = node.address in self.leftovers
            self.leftovers.add(node.address)
        if stale:
            with self.lock:
                self.calls.append((method, node.address, node.address))
            raise ExecutionError(node.address, 'kubeadm join', 1, stderr=LEFTOVER_PREFLIGHT_ERROR)
        self._call(method, node)
        self.members.add(node.address)

    def join_control_plane(self, node, delivery):
        self._kubeadm_join('join_control_plane', node)

    def join_worker(self, node, delivery):
        self._kubeadm_join('join_worker', node)

    def query_node_ready(self, control_plane, node):
        self._call('query_node_ready', node, via=control_plane)
        return node.address not in self.not_ready

    def has_control_plane_taint(self, control_plane, node):
        self._call('has_control_plane_taint', node, via=control_plane)
        return self.tainted

    def remove_taint(self, node):
        self._call('remove_taint', node)
        self.tainted = False

    def describe_cluster(self, control_plane):
        self._call('describe_cluster', control_plane)
        return {'healthy': True, 'nodes': 'NAME STATUS', 'system_pods': '', 'issues': []}


@pytest.fixture
def fast_config():
    return InstallerConfig(
        retry={
            'max_attempts': 3, 'delay': 0,
            'key_download_attempts': 3, 'key_download_delay': 0,
            'network_attempts': 3, 'network_delay': 0,
            'join_attempts': 2, 'join_delay': 0,
        },
        polling={'interval': 0.01, 'api_timeout': 0.05, 'node_ready_timeout': 0.05},
        run={'max_parallel_workers': 4, 'state_dir': '/nonexistent/state'},
    )


@pytest.fixture
def fake_installer():
    return FakeInstaller()


@pytest.fixture
def fake_executor():
    return FakeExecutor()


@pytest.fixture
def make_orchestrator(fast_config, fake_installer, fake_executor, tmp_path):
    """Build an orchestrator over the fakes; state persists under tmp_path between calls."""
    def factory(inventory, fresh=False, cancel_event=None, state_path=None):
        cancel_event = cancel_event or threading.Event()
        exchange = JoinCredentialExchange(
            fake_installer, fake_executor, inventory.spec,
            handoff_dir=str(tmp_path / 'handoff'),
        )
        state = RunState(inventory, state_path or tmp_path / 'state.json', fresh=fresh)
        poller = ReadinessPoller(poll_interval=0.01, timeout=0.05, cancel_event=cancel_event)
        return BootstrapOrchestrator(
            inventory, fake_installer, exchange,
            config=fast_config, state=state, cancel_event=cancel_event, poller=poller,
        )
    return factory

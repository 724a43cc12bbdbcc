import shlex
import threading

import pytest

from kubeadmctl.modules import ssh
from kubeadmctl.modules.kubeadm.errors import Cancelled, ExecutionError, NodeConnectionError
from kubeadmctl.modules.kubeadm.models import Credential, Node, NodeRole
from kubeadmctl.modules.ssh import CommandResult, ConnectionPool, RemoteExecutor


def make_node(user='ubuntu', address='10.0.0.1'):
    credential = Credential(name='default', user=user, key_path='/keys/id', port=22)
    return Node(address=address, hostname='master0.1', role=NodeRole.CONTROL_PLANE_FIRST,
                credential=credential, ordinal=1)


class FakeConnection:
    def __init__(self, result=None, error=None):
        self.result = result or CommandResult('ok\n', '', 0)
        self.error = error
        self.commands = []
        self.uploads = []
        self.displays = []

    def execute(self, command, timeout=300, cancel_event=None, display=None):
        self.commands.append(command)
        self.displays.append(display)
        if self.error:
            raise self.error
        return self.result

    def put_content(self, content, remote_path, mode=0o600):
        self.uploads.append((content, remote_path, mode))

    def put(self, local_path, remote_path, mode=0o600):
        if self.error:
            raise self.error
        self.uploads.append((local_path, remote_path, mode))


class FakePool:
    def __init__(self, connection):
        self.connection = connection
        self.requests = []
        self.discarded = []
        self.closed = False

    def get_connection(self, **kwargs):
        self.requests.append(kwargs)
        return self.connection

    def discard(self, host, username, port=22):
        self.discarded.append((host, username, port))

    def close_all(self):
        self.closed = True


def test_wrap_uses_non_interactive_sudo_for_regular_users():
    wrapped = RemoteExecutor.wrap(make_node('ubuntu'), "echo 'a b' | tee /etc/x")
    assert wrapped == "sudo -n bash -o pipefail -c " + shlex.quote("echo 'a b' | tee /etc/x")


def test_wrap_skips_sudo_for_root_and_when_disabled():
    assert RemoteExecutor.wrap(make_node('root'), 'whoami') == "bash -o pipefail -c whoami"
    assert RemoteExecutor.wrap(make_node('ubuntu'), 'whoami', sudo=False) == 'whoami'


def test_run_returns_result_and_passes_credentials():
    connection = FakeConnection()
    pool = FakePool(connection)
    executor = RemoteExecutor(pool, command_timeout=42, connect_timeout=7)

    result = executor.run(make_node(), 'hostname')

    assert result.stdout == 'ok\n'
    assert pool.requests == [{
        'host': '10.0.0.1', 'username': 'ubuntu', 'key_path': '/keys/id',
        'password': None, 'port': 22, 'timeout': 7,
    }]


def test_non_zero_exit_raises_unless_unchecked():
    connection = FakeConnection(CommandResult('', 'E: boom', 100))
    executor = RemoteExecutor(FakePool(connection))

    with pytest.raises(ExecutionError) as exc_info:
        executor.run(make_node(), 'apt-get install -y foo')
    assert exc_info.value.exit_code == 100
    assert 'E: boom' in str(exc_info.value)

    assert executor.run(make_node(), 'false', check=False).exit_code == 100


def test_sensitive_commands_are_redacted_in_errors():
    connection = FakeConnection(CommandResult('', 'failed', 1))
    executor = RemoteExecutor(FakePool(connection))

    with pytest.raises(ExecutionError) as exc_info:
        executor.run(make_node(), 'kubeadm token create --print-join-command', sensitive=True)

    assert 'token create' not in str(exc_info.value)
    assert connection.displays == [ssh.REDACTED]


def test_connection_errors_discard_the_pooled_connection():
    connection = FakeConnection(error=NodeConnectionError('10.0.0.1', 'connection lost'))
    pool = FakePool(connection)

    with pytest.raises(NodeConnectionError):
        RemoteExecutor(pool).run(make_node(), 'hostname')
    assert pool.discarded == [('10.0.0.1', 'ubuntu', 22)]


def test_cancelled_executor_does_not_connect():
    event = threading.Event()
    event.set()
    pool = FakePool(FakeConnection())

    with pytest.raises(Cancelled):
        RemoteExecutor(pool, cancel_event=event).run(make_node(), 'hostname')
    assert pool.requests == []


def test_write_file_uploads_with_mode():
    connection = FakeConnection()
    RemoteExecutor(FakePool(connection)).write_file(make_node(), 'data', '/tmp/x.yaml', mode=0o600)
    assert connection.uploads == [(b'data', '/tmp/x.yaml', 0o600)]


def test_transfer_uploads_local_file_and_discards_on_failure(tmp_path):
    local = tmp_path / 'manifest.yaml'
    local.write_text('kind: List\n')
    connection = FakeConnection()
    RemoteExecutor(FakePool(connection)).transfer(make_node(), str(local), '/tmp/manifest.yaml')
    assert connection.uploads == [(str(local), '/tmp/manifest.yaml', 0o600)]

    pool = FakePool(FakeConnection(error=NodeConnectionError('10.0.0.1', 'connection lost')))
    with pytest.raises(NodeConnectionError):
        RemoteExecutor(pool).transfer(make_node(), str(local), '/tmp/manifest.yaml')
    assert pool.discarded == [('10.0.0.1', 'ubuntu', 22)]


class RecordingConnection:
    created = []

    def __init__(self, host, username, key_path=None, password=None, port=22, timeout=10):
        self.host = host
        self.is_active = True
        self.closed = False
        RecordingConnection.created.append(self)

    def close(self):
        self.closed = True


@pytest.fixture
def recording_connections(monkeypatch):
    RecordingConnection.created = []
    monkeypatch.setattr(ssh, 'SSHConnection', RecordingConnection)
    return RecordingConnection.created


def test_pool_reuses_live_connections(recording_connections):
    pool = ConnectionPool()
    first = pool.get_connection('10.0.0.1', 'ubuntu')
    again = pool.get_connection('10.0.0.1', 'ubuntu')
    other = pool.get_connection('10.0.0.1', 'root')

    assert first is again
    assert other is not first
    assert len(recording_connections) == 2


def test_pool_replaces_stale_connections(recording_connections):
    pool = ConnectionPool()
    first = pool.get_connection('10.0.0.1', 'ubuntu')
    first.is_active = False

    second = pool.get_connection('10.0.0.1', 'ubuntu')

    assert second is not first
    assert first.closed


def test_pool_discard_and_close_all(recording_connections):
    pool = ConnectionPool()
    first = pool.get_connection('10.0.0.1', 'ubuntu')
    second = pool.get_connection('10.0.0.2', 'ubuntu')

    pool.discard('10.0.0.1', 'ubuntu')
    assert first.closed
    assert list(pool.connections) == ['ubuntu@10.0.0.2:22']

    pool.close_all()
    assert second.closed
    assert pool.connections == {}


def in_other_thread(function):
    outcome = []
    thread = threading.Thread(target=lambda: outcome.append(function()))
    thread.start()
    thread.join(timeout=5)
    return outcome[0] if outcome else None


def test_pool_connects_without_holding_the_lock(monkeypatch):
    pool = ConnectionPool()
    lock_free = []

    class SlowConnection(RecordingConnection):
        def __init__(self, *args, **kwargs):
            super().__init__(*args, **kwargs)

            def try_lock():
                acquired = pool.lock.acquire(timeout=1)
                if acquired:
                    pool.lock.release()
                return acquired

            lock_free.append(in_other_thread(try_lock))

    monkeypatch.setattr(ssh, 'SSHConnection', SlowConnection)
    pool.get_connection('10.0.0.1', 'ubuntu')

    assert lock_free == [True]


def test_pool_keeps_the_connection_that_landed_first(recording_connections, monkeypatch):
    pool = ConnectionPool()

    class RacingConnection(RecordingConnection):
        def __init__(self, *args, **kwargs):
            super().__init__(*args, **kwargs)
            if len(recording_connections) == 1:
                in_other_thread(lambda: pool.get_connection('10.0.0.1', 'ubuntu'))

    monkeypatch.setattr(ssh, 'SSHConnection', RacingConnection)
    conn = pool.get_connection('10.0.0.1', 'ubuntu')

    loser, winner = recording_connections
    assert conn is winner
    assert loser.closed
    assert pool.connections == {'ubuntu@10.0.0.1:22': winner}

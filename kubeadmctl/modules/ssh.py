"""
SSH connection management and remote command execution using paramiko.
"""
import os
import shlex
import socket
import threading
import time
import logging
import paramiko
from typing import Dict, Optional, NamedTuple

from kubeadmctl.modules.kubeadm.errors import (
    AuthenticationFailed,
    Cancelled,
    CommandTimeout,
    ExecutionError,
    NodeConnectionError,
)
from kubeadmctl.modules.kubeadm.models import Node

logger = logging.getLogger("ssh")

# Granularity at which in-flight commands notice cancellation and timeouts
POLL_INTERVAL = 0.2
CHUNK_SIZE = 32768
REDACTED = '<redacted>'


class CommandResult(NamedTuple):
    stdout: str
    stderr: str
    exit_code: int


class SSHConnection:
    """A single authenticated SSH session to one host."""

    def __init__(self, host: str, username: str, key_path: str = None, password: str = None,
                 port: int = 22, timeout: int = 10):
        """Initialize and open the SSH connection.

        Args:
            host: Remote host to connect to
            username: Username for authentication
            key_path: Path to SSH private key (optional)
            password: Password for authentication (optional)
            port: SSH port (default: 22)
            timeout: Connection timeout in seconds (default: 10)

        Raises:
            AuthenticationFailed: If the host rejects the credentials
            NodeConnectionError: If the host cannot be reached
        """
        self.host = host
        self.username = username
        self.key_path = os.path.expanduser(key_path) if key_path else None
        self.password = password
        self.port = port
        self.timeout = timeout
        self.client = paramiko.SSHClient()
        self.client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        self._connect()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def _connect(self) -> None:
        logger.debug(f"Opening SSH connection to {self.username}@{self.host}:{self.port}")
        try:
            self.client.connect(
                hostname=self.host,
                port=self.port,
                username=self.username,
                key_filename=self.key_path,
                password=self.password,
                timeout=self.timeout,
                banner_timeout=self.timeout,
                auth_timeout=self.timeout,
                look_for_keys=False,
                allow_agent=self.key_path is None and self.password is None,
            )
        except paramiko.AuthenticationException as e:
            self.client.close()
            raise AuthenticationFailed(self.host, f"authentication failed for {self.username}: {e}")
        except (paramiko.SSHException, socket.timeout, OSError) as e:
            self.client.close()
            raise NodeConnectionError(self.host, f"cannot connect on port {self.port}: {e}")

    @property
    def is_active(self) -> bool:
        transport = self.client.get_transport()
        return transport is not None and transport.is_active()

    def execute(self, command: str, timeout: float = 300,
                cancel_event: Optional[threading.Event] = None,
                display: Optional[str] = None) -> CommandResult:
        """Execute a command and wait for it to finish.

        Args:
            command: Shell command to run
            timeout: Seconds before the command is abandoned
            cancel_event: Event checked while the command runs
            display: Text used in place of the command in errors

        Returns:
            CommandResult with decoded output and the exit status

        Raises:
            NodeConnectionError: If the session cannot be opened or drops
            CommandTimeout: If the command outlives its timeout
            Cancelled: If cancel_event is set while waiting
        """
        display = display or command
        transport = self.client.get_transport()
        if transport is None or not transport.is_active():
            raise NodeConnectionError(self.host, "SSH transport is not active")

        try:
            channel = transport.open_session(timeout=self.timeout)
            channel.exec_command(command)
        except (paramiko.SSHException, OSError) as e:
            raise NodeConnectionError(self.host, f"cannot open session: {e}")

        stdout, stderr = [], []
        deadline = time.monotonic() + timeout
        try:
            while not channel.exit_status_ready():
                while channel.recv_ready():
                    stdout.append(channel.recv(CHUNK_SIZE))
                while channel.recv_stderr_ready():
                    stderr.append(channel.recv_stderr(CHUNK_SIZE))
                if cancel_event is not None and cancel_event.is_set():
                    raise Cancelled(f"{self.host}: cancelled while running: {display}")
                if time.monotonic() >= deadline:
                    raise CommandTimeout(self.host, display, timeout, _decode(stdout), _decode(stderr))
                time.sleep(POLL_INTERVAL)

            channel.settimeout(self.timeout)
            while True:
                chunk = channel.recv(CHUNK_SIZE)
                if not chunk:
                    break
                stdout.append(chunk)
            while True:
                chunk = channel.recv_stderr(CHUNK_SIZE)
                if not chunk:
                    break
                stderr.append(chunk)
            exit_code = channel.recv_exit_status()
        except socket.timeout as e:
            raise NodeConnectionError(self.host, f"connection stalled while reading output: {e}")
        except (paramiko.SSHException, EOFError, OSError) as e:
            raise NodeConnectionError(self.host, f"connection lost: {e}")
        finally:
            channel.close()

        return CommandResult(_decode(stdout), _decode(stderr), exit_code)

    def put_content(self, content: bytes, remote_path: str, mode: int = 0o600) -> None:
        """Write bytes to a remote file, restricting its mode before any data lands."""
        try:
            with self.client.open_sftp() as sftp:
                with sftp.open(remote_path, 'wb') as f:
                    f.chmod(mode)
                    f.write(content)
        except (paramiko.SSHException, OSError) as e:
            raise NodeConnectionError(self.host, f"failed to upload {remote_path}: {e}")

    def put(self, local_path: str, remote_path: str, mode: int = 0o600) -> None:
        """Upload a local file via SFTP and set its mode."""
        try:
            with self.client.open_sftp() as sftp:
                sftp.put(local_path, remote_path)
                sftp.chmod(remote_path, mode)
        except (paramiko.SSHException, OSError) as e:
            raise NodeConnectionError(self.host, f"failed to upload {local_path} to {remote_path}: {e}")

    def get(self, remote_path: str, local_path: str) -> None:
        """Download a remote file via SFTP."""
        try:
            with self.client.open_sftp() as sftp:
                sftp.get(remote_path, local_path)
        except (paramiko.SSHException, OSError) as e:
            raise NodeConnectionError(self.host, f"failed to download {remote_path}: {e}")

    def close(self) -> None:
        try:
            self.client.close()
        except (paramiko.SSHException, OSError) as e:
            logger.debug(f"Error closing connection to {self.host}: {e}")


def _decode(chunks) -> str:
    return b''.join(chunks).decode('utf-8', errors='replace')


class ConnectionPool:
    """Thread-safe pool of SSH connections keyed by user@host:port."""

    def __init__(self):
        self.connections: Dict[str, SSHConnection] = {}
        self.lock = threading.RLock()

    @staticmethod
    def connection_id(host: str, username: str, port: int) -> str:
        return f"{username}@{host}:{port}"

    def get_connection(self, host: str, username: str, key_path: str = None,
                       password: str = None, port: int = 22, timeout: int = 10) -> SSHConnection:
        """Get a live connection from the pool, opening one if needed.

        Args:
            host: SSH host to connect to
            username: SSH username
            key_path: Path to SSH private key
            password: SSH password
            port: SSH port
            timeout: Connection timeout in seconds

        Returns:
            SSHConnection: An active SSH connection
        """
        connection_id = self.connection_id(host, username, port)

        with self.lock:
            conn = self.connections.get(connection_id)
            if conn is not None:
                if conn.is_active:
                    return conn
                logger.debug(f"Dropping stale SSH connection to {connection_id}")
                del self.connections[connection_id]
        if conn is not None:
            conn.close()

        # Connecting never holds the pool lock
        logger.debug(f"Creating new SSH connection to {connection_id}")
        conn = SSHConnection(host=host, username=username, key_path=key_path,
                             password=password, port=port, timeout=timeout)

        with self.lock:
            existing = self.connections.get(connection_id)
            if existing is None or not existing.is_active:
                self.connections[connection_id] = conn
                return conn
        # Another thread connected to the same host first
        conn.close()
        return existing

    def discard(self, host: str, username: str, port: int = 22) -> None:
        """Close and forget a connection, e.g. after it failed mid-command."""
        connection_id = self.connection_id(host, username, port)
        with self.lock:
            conn = self.connections.pop(connection_id, None)
        if conn is not None:
            conn.close()

    def close_all(self) -> None:
        """Close all connections in the pool."""
        with self.lock:
            for conn in self.connections.values():
                conn.close()
            self.connections.clear()


ssh_pool = ConnectionPool()


def get_ssh_pool() -> ConnectionPool:
    """Get the global SSH connection pool."""
    return ssh_pool


class RemoteExecutor:
    """Runs commands and moves files on inventory nodes.

    Every call is a single attempt bounded by a timeout; callers decide
    whether a failure is worth retrying. Commands for non-root users are
    wrapped in non-interactive sudo.
    """

    def __init__(self, pool: Optional[ConnectionPool] = None,
                 cancel_event: Optional[threading.Event] = None,
                 command_timeout: float = 300, connect_timeout: int = 10):
        self.pool = pool or get_ssh_pool()
        self.cancel_event = cancel_event or threading.Event()
        self.command_timeout = command_timeout
        self.connect_timeout = connect_timeout

    def _connection(self, node: Node) -> SSHConnection:
        if self.cancel_event.is_set():
            raise Cancelled(f"{node.address}: cancelled before connecting")
        credential = node.credential
        return self.pool.get_connection(
            host=node.address,
            username=credential.user,
            key_path=credential.key_path,
            password=credential.password,
            port=credential.port,
            timeout=self.connect_timeout,
        )

    def _discard(self, node: Node) -> None:
        self.pool.discard(node.address, node.credential.user, node.credential.port)

    @staticmethod
    def wrap(node: Node, command: str, sudo: bool = True) -> str:
        """Build the remote command line for a node's user."""
        if not sudo:
            return command
        quoted = shlex.quote(command)
        if node.credential.needs_sudo:
            return f"sudo -n bash -o pipefail -c {quoted}"
        return f"bash -o pipefail -c {quoted}"

    def run(self, node: Node, command: str, timeout: Optional[float] = None, check: bool = True,
            sudo: bool = True, sensitive: bool = False) -> CommandResult:
        """Run a command on a node.

        Args:
            node: Target node
            command: Shell command (bash syntax, pipefail enabled)
            timeout: Seconds before the command is abandoned
            check: Raise ExecutionError on a non-zero exit status
            sudo: Run with root privileges
            sensitive: Keep the command text out of logs and errors

        Returns:
            CommandResult
        """
        display = REDACTED if sensitive else command
        timeout = timeout or self.command_timeout
        logger.debug(f"[{node.hostname}] $ {display}")

        conn = self._connection(node)
        try:
            result = conn.execute(self.wrap(node, command, sudo), timeout=timeout,
                                  cancel_event=self.cancel_event, display=display)
        except NodeConnectionError:
            self._discard(node)
            raise

        if result.exit_code != 0:
            logger.debug(f"[{node.hostname}] exit {result.exit_code}: {result.stderr.strip()[:500]}")
            if check:
                raise ExecutionError(node.address, display, result.exit_code, result.stdout, result.stderr)
        return result

    def write_file(self, node: Node, content: str, remote_path: str, mode: int = 0o600) -> None:
        """Create a remote file owned by the SSH user with the given content and mode."""
        logger.debug(f"[{node.hostname}] writing {remote_path} (mode {oct(mode)})")
        conn = self._connection(node)
        try:
            conn.put_content(content.encode('utf-8'), remote_path, mode)
        except NodeConnectionError:
            self._discard(node)
            raise

    def transfer(self, node: Node, local_path: str, remote_path: str, mode: int = 0o600) -> None:
        """Upload a local file to a node."""
        logger.debug(f"[{node.hostname}] uploading {local_path} -> {remote_path}")
        conn = self._connection(node)
        try:
            conn.put(local_path, remote_path, mode)
        except NodeConnectionError:
            self._discard(node)
            raise

    def download(self, node: Node, remote_path: str, local_path: str) -> None:
        """Download a file from a node."""
        logger.debug(f"[{node.hostname}] downloading {remote_path} -> {local_path}")
        conn = self._connection(node)
        try:
            conn.get(remote_path, local_path)
        except NodeConnectionError:
            self._discard(node)
            raise

    def close(self) -> None:
        self.pool.close_all()

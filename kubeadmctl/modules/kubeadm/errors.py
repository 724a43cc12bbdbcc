"""Error taxonomy for cluster bootstrap."""

from typing import List, Optional


class BootstrapError(Exception):
    """Base class for all bootstrap errors."""


class InvalidInventory(BootstrapError):
    """Inventory failed validation. Raised before any remote action."""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("Invalid inventory:\n  - " + "\n  - ".join(self.errors))


class NodeConnectionError(BootstrapError, ConnectionError):
    """Host unreachable or SSH session could not be established."""

    def __init__(self, host: str, message: str):
        self.host = host
        super().__init__(f"{host}: {message}")


class AuthenticationFailed(NodeConnectionError):
    """Credentials rejected by the host. Never retryable."""


class ExecutionError(BootstrapError):
    """Remote command exited with a non-zero status."""

    def __init__(self, host: str, command: str, exit_code: Optional[int],
                 stdout: str = '', stderr: str = ''):
        self.host = host
        self.command = command
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        detail = (stderr or stdout or '').strip()
        message = f"{host}: command exited with status {exit_code}: {command}"
        if detail:
            message += f"\n{detail}"
        super().__init__(message)

    @property
    def output(self) -> str:
        return f"{self.stdout}\n{self.stderr}"


class CommandTimeout(ExecutionError):
    """Remote command did not finish within its timeout."""

    def __init__(self, host: str, command: str, timeout: float,
                 stdout: str = '', stderr: str = ''):
        self.timeout = timeout
        super().__init__(host, command, None, stdout, stderr)
        self.args = (f"{host}: command timed out after {timeout:.0f}s: {command}",)


class MalformedResponse(BootstrapError):
    """A remote query returned output that cannot be interpreted."""


class CredentialUnavailable(BootstrapError):
    """Join material cannot be issued or delivered."""


class CredentialExpired(CredentialUnavailable):
    """Join material passed its validity window before delivery."""


class RetriesExhausted(BootstrapError):
    """A retryable operation kept failing until the attempt budget ran out."""

    def __init__(self, last_error: BaseException, attempts: int):
        self.last_error = last_error
        self.attempts = attempts
        super().__init__(f"gave up after {attempts} attempt(s): {last_error}")


class Cancelled(BootstrapError):
    """The run was cancelled by the operator or a fatal error elsewhere."""


class VersionResolutionError(BootstrapError):
    """The requested Kubernetes version keyword could not be resolved."""


class PhaseFailed(BootstrapError):
    """A node failed a phase. Carries the underlying cause."""

    def __init__(self, node, phase, cause: BaseException):
        self.node = node
        self.phase = phase
        self.cause = cause
        super().__init__(f"{node}: {phase.value} failed: {cause}")

"""Fixed-interval retry policy for remote operations.

Attempts are bounded and spaced by a constant delay so operators get
predictable waits during cluster bring-up. Whether a failure is worth
another attempt is decided by a classifier supplied per operation kind.
"""

import logging
import threading
from enum import Enum
from typing import Callable, Optional, TypeVar

from tenacity import RetryCallState, RetryError, Retrying, retry_if_exception, stop_after_attempt, wait_fixed

from .errors import (
    AuthenticationFailed,
    Cancelled,
    CommandTimeout,
    ExecutionError,
    MalformedResponse,
    NodeConnectionError,
    RetriesExhausted,
)

logger = logging.getLogger("kubeadm.retry")

T = TypeVar('T')

TRANSIENT_MARKERS = (
    'connection reset',
    'connection refused',
    'temporary failure',
    'timed out',
    'no route to host',
    'connection closed',
    'broken pipe',
    'could not resolve',
    'failed to fetch',
    'unable to connect',
    'tls handshake timeout',
    'could not get lock',
    'i/o timeout',
)

FATAL_MARKERS = (
    'was not found',
    'unable to locate package',
    'has no installation candidate',
    'permission denied',
    'unsupported operating system',
)


class ErrorKind(str, Enum):
    SUCCESS = 'success'
    RETRYABLE = 'retryable'
    FATAL = 'fatal'


def is_transient_error(exc: BaseException) -> bool:
    """Default classifier: network blips and not-yet-ready dependencies."""
    if isinstance(exc, (Cancelled, AuthenticationFailed, MalformedResponse)):
        return False
    if isinstance(exc, (NodeConnectionError, CommandTimeout)):
        return True
    if isinstance(exc, ExecutionError):
        output = exc.output.lower()
        if any(marker in output for marker in FATAL_MARKERS):
            return False
        return any(marker in output for marker in TRANSIENT_MARKERS)
    return False


def is_api_not_ready_error(exc: BaseException) -> bool:
    """Classifier for calls made while the API server may still be starting."""
    if isinstance(exc, (Cancelled, AuthenticationFailed, MalformedResponse)):
        return False
    return isinstance(exc, (NodeConnectionError, ExecutionError))


def classify(exc: Optional[BaseException],
             is_retryable: Callable[[BaseException], bool] = is_transient_error) -> ErrorKind:
    if exc is None:
        return ErrorKind.SUCCESS
    return ErrorKind.RETRYABLE if is_retryable(exc) else ErrorKind.FATAL


class RetryPolicy:
    """Bounded, fixed-delay retry of a single operation."""

    def __init__(
        self,
        max_attempts: int = 5,
        delay: float = 10.0,
        is_retryable: Callable[[BaseException], bool] = is_transient_error,
        cancel_event: Optional[threading.Event] = None,
        name: str = 'operation',
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.delay = delay
        self.is_retryable = is_retryable
        self.cancel_event = cancel_event or threading.Event()
        self.name = name

    def with_budget(self, max_attempts: int, delay: float, name: Optional[str] = None) -> 'RetryPolicy':
        return RetryPolicy(max_attempts, delay, self.is_retryable, self.cancel_event, name or self.name)

    def _should_retry(self, exc: BaseException) -> bool:
        if isinstance(exc, Cancelled) or self.cancel_event.is_set():
            return False
        return self.is_retryable(exc)

    def _sleep(self, seconds: float) -> None:
        if self.cancel_event.wait(seconds):
            raise Cancelled(f"{self.name} cancelled while waiting to retry")

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "%s failed (attempt %d/%d): %s. Retrying in %.0fs...",
            self.name, retry_state.attempt_number, self.max_attempts, exc, self.delay
        )

    def call(self, operation: Callable[..., T], *args, **kwargs) -> T:
        """Run ``operation`` until it succeeds, fails fatally or the budget is spent.

        Raises:
            RetriesExhausted: retryable failures on every attempt
            Cancelled: the cancel event was set
            Exception: the first non-retryable error, unchanged
        """
        if self.cancel_event.is_set():
            raise Cancelled(f"{self.name} cancelled before starting")

        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_fixed(self.delay),
            retry=retry_if_exception(self._should_retry),
            sleep=self._sleep,
            before_sleep=self._log_retry,
            reraise=False,
        )
        try:
            return retrying(operation, *args, **kwargs)
        except RetryError as e:
            last_error = e.last_attempt.exception()
            attempts = e.last_attempt.attempt_number
            logger.error("%s gave up after %d attempt(s): %s", self.name, attempts, last_error)
            raise RetriesExhausted(last_error, attempts) from last_error


def with_retry(
    operation: Callable[[], T],
    max_attempts: int,
    delay: float,
    is_retryable: Callable[[BaseException], bool] = is_transient_error,
    cancel_event: Optional[threading.Event] = None,
) -> T:
    """Functional shorthand for ``RetryPolicy(...).call(operation)``."""
    return RetryPolicy(max_attempts, delay, is_retryable, cancel_event).call(operation)


def unwrap(exc: BaseException) -> BaseException:
    """Return the underlying error of a RetriesExhausted, or the error itself."""
    while isinstance(exc, RetriesExhausted):
        exc = exc.last_error
    return exc

import threading
import time

import pytest

from kubeadmctl.modules.kubeadm.errors import (
    AuthenticationFailed,
    Cancelled,
    CommandTimeout,
    ExecutionError,
    MalformedResponse,
    NodeConnectionError,
    RetriesExhausted,
)
from kubeadmctl.modules.kubeadm.retry import (
    ErrorKind,
    RetryPolicy,
    classify,
    is_api_not_ready_error,
    is_transient_error,
    unwrap,
    with_retry,
)


class Flaky:
    def __init__(self, errors, result='done'):
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


def transient():
    return NodeConnectionError('10.0.0.1', 'connection refused')


def test_success_after_transient_failures():
    operation = Flaky([transient(), transient()])
    assert RetryPolicy(max_attempts=3, delay=0).call(operation) == 'done'
    assert operation.calls == 3


def test_gives_up_after_budget():
    operation = Flaky([transient()] * 5)
    with pytest.raises(RetriesExhausted) as exc_info:
        RetryPolicy(max_attempts=3, delay=0).call(operation)
    assert exc_info.value.attempts == 3
    assert isinstance(exc_info.value.last_error, NodeConnectionError)
    assert operation.calls == 3
    assert unwrap(exc_info.value) is exc_info.value.last_error


def test_fatal_error_is_raised_immediately():
    error = AuthenticationFailed('10.0.0.1', 'denied')
    operation = Flaky([error])
    with pytest.raises(AuthenticationFailed):
        RetryPolicy(max_attempts=5, delay=0).call(operation)
    assert operation.calls == 1


def test_cancel_before_start():
    event = threading.Event()
    event.set()
    operation = Flaky([])
    with pytest.raises(Cancelled):
        RetryPolicy(delay=0, cancel_event=event).call(operation)
    assert operation.calls == 0


def test_cancel_during_wait_interrupts_the_delay():
    event = threading.Event()
    timer = threading.Timer(0.05, event.set)
    timer.start()
    started = time.monotonic()
    try:
        with pytest.raises(Cancelled):
            RetryPolicy(max_attempts=5, delay=60, cancel_event=event).call(Flaky([transient()] * 5))
    finally:
        timer.cancel()
    assert time.monotonic() - started < 5


def test_stops_retrying_once_cancelled():
    event = threading.Event()

    def operation():
        event.set()
        raise transient()

    with pytest.raises(NodeConnectionError):
        RetryPolicy(max_attempts=5, delay=0, cancel_event=event).call(operation)


def test_with_retry_shorthand():
    assert with_retry(Flaky([transient()]), max_attempts=2, delay=0) == 'done'


@pytest.mark.parametrize('error, expected', [
    (NodeConnectionError('h', 'no route to host'), True),
    (CommandTimeout('h', 'apt-get update', 300), True),
    (ExecutionError('h', 'apt-get update', 100, stderr='Temporary failure resolving archive.ubuntu.com'), True),
    (ExecutionError('h', 'apt-get install', 100, stderr='E: Could not get lock /var/lib/dpkg/lock'), True),
    (ExecutionError('h', 'apt-get install', 100, stderr='E: Unable to locate package kubeadm'), False),
    (ExecutionError('h', 'apt-get install', 100, stderr="Version '1.99.0-1.1' for 'kubeadm' was not found"), False),
    (ExecutionError('h', 'kubeadm init', 1, stderr='[ERROR Swap]: running with swap on is not supported'), False),
    (AuthenticationFailed('h', 'denied'), False),
    (MalformedResponse('garbage'), False),
    (Cancelled('stop'), False),
    (ValueError('not ours'), False),
])
def test_transient_classifier(error, expected):
    assert is_transient_error(error) is expected


def test_api_not_ready_classifier_retries_any_command_failure():
    assert is_api_not_ready_error(ExecutionError('h', 'kubectl apply', 1, stderr='connection to the server was refused'))
    assert is_api_not_ready_error(ExecutionError('h', 'kubectl apply', 1, stderr='Unauthorized'))
    assert not is_api_not_ready_error(AuthenticationFailed('h', 'denied'))


def test_classify():
    assert classify(None) is ErrorKind.SUCCESS
    assert classify(transient()) is ErrorKind.RETRYABLE
    assert classify(MalformedResponse('x')) is ErrorKind.FATAL


def test_policy_requires_an_attempt():
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)


def test_with_budget_keeps_classifier_and_cancel_event():
    event = threading.Event()
    base = RetryPolicy(5, 10, is_api_not_ready_error, event, 'base')
    derived = base.with_budget(2, 0)
    assert derived.max_attempts == 2
    assert derived.is_retryable is is_api_not_ready_error
    assert derived.cancel_event is event
    assert derived.name == 'base'

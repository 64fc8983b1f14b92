# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Tests for error classification, the backoff controller and the retry loop.
"""

import asyncio
import random

import pytest
from botocore.exceptions import EndpointConnectionError, NoCredentialsError

from fakes import client_error
from s3vault.backoff import (
    BackoffController,
    BackoffPolicy,
    ErrorKind,
    GiveUp,
    Retry,
    call_with_retry,
    classify,
)
from s3vault.exceptions import (
    AuthError,
    CorruptionError,
    NotFoundError,
    RequestError,
    ThrottlingError,
    TransientNetworkError,
)
from s3vault.metrics import MetricsRecorder


class FixedRandom(random.Random):
    def __init__(self, value: float):
        super().__init__()
        self.fixed = value

    def random(self) -> float:
        return self.fixed


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class RecordingSleep:
    def __init__(self) -> None:
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def make_controller(**policy) -> BackoffController:
    return BackoffController(
        policy=BackoffPolicy(**policy),
        rng=random.Random(7),
        sleep=RecordingSleep(),
    )


# ============================================================================
# Classification
# ============================================================================

@pytest.mark.parametrize(
    "code,status,kind,error_type",
    [
        ("SlowDown", 503, ErrorKind.THROTTLED, ThrottlingError),
        ("ThrottlingException", 400, ErrorKind.THROTTLED, ThrottlingError),
        ("InternalError", 500, ErrorKind.TRANSIENT, TransientNetworkError),
        ("SomethingNew", 502, ErrorKind.TRANSIENT, TransientNetworkError),
        ("SomethingNew", 429, ErrorKind.THROTTLED, ThrottlingError),
        ("AccessDenied", 403, ErrorKind.FATAL, AuthError),
        ("ExpiredToken", 400, ErrorKind.FATAL, AuthError),
        ("NoSuchKey", 404, ErrorKind.FATAL, NotFoundError),
        ("404", 404, ErrorKind.FATAL, NotFoundError),
        ("BadDigest", 400, ErrorKind.FATAL, CorruptionError),
        ("InvalidArgument", 400, ErrorKind.FATAL, RequestError),
    ],
)
def test_classify_client_errors(code, status, kind, error_type):
    result_kind, error = classify(client_error(code, status))

    assert result_kind == kind
    assert isinstance(error, error_type)
    assert error.details["code"] == code
    assert error.details["status"] == status


def test_classify_network_and_local_failures():
    assert classify(asyncio.TimeoutError())[0] == ErrorKind.TRANSIENT
    assert classify(EndpointConnectionError(endpoint_url="https://s3.test"))[0] == ErrorKind.TRANSIENT
    assert classify(ConnectionResetError())[0] == ErrorKind.TRANSIENT

    kind, error = classify(NoCredentialsError())
    assert kind == ErrorKind.FATAL
    assert isinstance(error, AuthError)


def test_classify_passes_through_classified_errors():
    original = ThrottlingError("slow down")
    kind, error = classify(original)

    assert kind == ErrorKind.THROTTLED
    assert error is original
    assert classify(CorruptionError("bad"))[0] == ErrorKind.FATAL


# ============================================================================
# Controller
# ============================================================================

def test_throttle_delay_always_exceeds_transient_delay():
    """Smallest jittered throttle delay beats the largest transient delay."""
    policy = BackoffPolicy()
    low = BackoffController(policy=policy, rng=FixedRandom(0.999999))
    high = BackoffController(policy=policy, rng=FixedRandom(0.0))

    for attempt in range(1, 40):
        throttled = low.delay_for(ErrorKind.THROTTLED, attempt)
        transient = high.delay_for(ErrorKind.TRANSIENT, attempt)
        assert throttled > transient, attempt


def test_delays_grow_and_are_capped():
    controller = BackoffController(policy=BackoffPolicy(), rng=FixedRandom(0.0))

    delays = [controller.delay_for(ErrorKind.TRANSIENT, n) for n in range(1, 12)]

    assert delays[0] == pytest.approx(0.2)
    assert delays[1] == pytest.approx(0.4)
    assert delays == sorted(delays)
    assert max(delays) == pytest.approx(8.0)


def test_decide_gives_up_on_fatal_and_exhausted_budget():
    controller = make_controller(max_attempts=3)
    state = controller.new_state()

    assert isinstance(controller.decide(ErrorKind.FATAL, state), GiveUp)

    state.attempts = 2
    assert isinstance(controller.decide(ErrorKind.TRANSIENT, state), Retry)
    state.attempts = 3
    decision = controller.decide(ErrorKind.THROTTLED, state)
    assert isinstance(decision, GiveUp)
    assert decision.last_error == ErrorKind.THROTTLED


def test_decide_respects_elapsed_budget():
    clock = FakeClock()
    controller = BackoffController(
        policy=BackoffPolicy(max_attempts=100, max_elapsed=10.0),
        rng=FixedRandom(0.0),
        clock=clock,
    )
    state = controller.new_state()
    state.attempts = 1

    assert isinstance(controller.decide(ErrorKind.TRANSIENT, state), Retry)

    clock.now += 9.9
    assert isinstance(controller.decide(ErrorKind.TRANSIENT, state), GiveUp)


# ============================================================================
# Retry loop
# ============================================================================

@pytest.mark.asyncio
async def test_call_with_retry_recovers_from_transient_failures():
    controller = make_controller(max_attempts=4)
    metrics = MetricsRecorder()
    failures = [client_error("InternalError", 500), client_error("SlowDown", 503)]

    async def flaky():
        if failures:
            raise failures.pop(0)
        return "ok"

    result = await call_with_retry("put_object", flaky, controller=controller, metrics=metrics)

    assert result == "ok"
    assert len(controller.sleep.delays) == 2
    assert metrics.value("s3vault_retries_total", operation="put_object", kind="transient") == 1
    assert metrics.value("s3vault_retries_total", operation="put_object", kind="throttled") == 1
    assert metrics.value("s3vault_requests_total", operation="put_object", outcome="success") == 1


@pytest.mark.asyncio
async def test_call_with_retry_does_not_retry_fatal_errors():
    controller = make_controller()
    calls = 0

    async def denied():
        nonlocal calls
        calls += 1
        raise client_error("AccessDenied", 403)

    with pytest.raises(AuthError) as exc_info:
        await call_with_retry(
            "get_object", denied, controller=controller, metrics=MetricsRecorder(), key="b/k"
        )

    assert calls == 1
    assert controller.sleep.delays == []
    assert exc_info.value.details["operation"] == "get_object"
    assert exc_info.value.details["key"] == "b/k"
    assert exc_info.value.details["attempts"] == 1


@pytest.mark.asyncio
async def test_call_with_retry_surfaces_last_error_after_budget():
    controller = make_controller(max_attempts=3)

    async def always_throttled():
        raise client_error("SlowDown", 503)

    with pytest.raises(ThrottlingError) as exc_info:
        await call_with_retry(
            "upload_part", always_throttled, controller=controller, metrics=MetricsRecorder()
        )

    assert exc_info.value.details["attempts"] == 3
    assert len(controller.sleep.delays) == 2


@pytest.mark.asyncio
async def test_call_with_retry_times_out_each_attempt():
    controller = make_controller(max_attempts=2)
    attempts = 0

    async def hangs():
        nonlocal attempts
        attempts += 1
        await asyncio.sleep(10)

    with pytest.raises(TransientNetworkError) as exc_info:
        await call_with_retry(
            "get_object", hangs, controller=controller, metrics=MetricsRecorder(), timeout=0.01
        )

    assert attempts == 2
    assert exc_info.value.details["attempts"] == 2

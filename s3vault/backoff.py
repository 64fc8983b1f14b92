# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
s3vault Backoff - Error classification, retry policy and the retry loop.

classify() is the single mapping from raw failures (botocore errors,
store error codes, HTTP statuses, timeouts) to the error taxonomy.
BackoffController turns a classification plus the operation's RetryState
into Retry(delay) or GiveUp. call_with_retry() is the loop every
network-facing component runs its remote calls through.
"""

import asyncio
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Tuple, TypeVar

import structlog
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionError as BotoConnectionError,
    CredentialRetrievalError,
    HTTPClientError,
    IncompleteReadError,
    NoCredentialsError,
    PartialCredentialsError,
)

from s3vault.config import StoreConfig
from s3vault.exceptions import (
    AuthError,
    CorruptionError,
    NotFoundError,
    RequestError,
    S3VaultError,
    ThrottlingError,
    TransientNetworkError,
)
from s3vault.metrics import OUTCOME_SUCCESS, MetricsRecorder

logger = structlog.get_logger()

T = TypeVar("T")


class ErrorKind(str, Enum):
    """Retry classification of a failure."""

    TRANSIENT = "transient"
    THROTTLED = "throttled"
    FATAL = "fatal"


THROTTLE_CODES = frozenset({
    "Throttling",
    "ThrottlingException",
    "ThrottledException",
    "RequestThrottled",
    "RequestThrottledException",
    "SlowDown",
    "TooManyRequestsException",
    "RequestLimitExceeded",
    "ProvisionedThroughputExceededException",
    "LimitExceededException",
})

TRANSIENT_CODES = frozenset({
    "InternalError",
    "InternalFailure",
    "ServiceUnavailable",
    "RequestTimeout",
    "RequestTimeoutException",
    "KMSInternalException",
    "DependencyTimeoutException",
    "IDPCommunicationError",
})

AUTH_CODES = frozenset({
    "AccessDenied",
    "AccessDeniedException",
    "AllAccessDisabled",
    "InvalidAccessKeyId",
    "InvalidClientTokenId",
    "InvalidToken",
    "ExpiredToken",
    "ExpiredTokenException",
    "SignatureDoesNotMatch",
    "UnrecognizedClientException",
    "IncompleteSignature",
    "MalformedPolicyDocument",
    "RegionDisabledException",
    "DisabledException",
    "KMSInvalidStateException",
})

NOT_FOUND_CODES = frozenset({
    "NoSuchKey",
    "NoSuchBucket",
    "NoSuchUpload",
    "NotFound",
    "NotFoundException",
    "404",
})

CORRUPTION_CODES = frozenset({
    "BadDigest",
    "InvalidDigest",
    "InvalidCiphertextException",
    "XAmzContentSHA256Mismatch",
})

_KIND_BY_ERROR = {
    TransientNetworkError: ErrorKind.TRANSIENT,
    ThrottlingError: ErrorKind.THROTTLED,
}


def _client_error_kind(code: str, status: int | None) -> type[S3VaultError]:
    if code in THROTTLE_CODES:
        return ThrottlingError
    if code in TRANSIENT_CODES:
        return TransientNetworkError
    if code in AUTH_CODES:
        return AuthError
    if code in NOT_FOUND_CODES:
        return NotFoundError
    if code in CORRUPTION_CODES:
        return CorruptionError

    if status == 429:
        return ThrottlingError
    if status is not None and status >= 500:
        return TransientNetworkError
    if status in (401, 403):
        return AuthError
    if status == 404:
        return NotFoundError
    return RequestError


def classify(exc: BaseException) -> Tuple[ErrorKind, S3VaultError]:
    """
    Map any failure to (ErrorKind, S3VaultError).

    Already-classified S3VaultErrors are returned as-is.
    """
    if isinstance(exc, S3VaultError):
        return (_KIND_BY_ERROR.get(type(exc), ErrorKind.FATAL), exc)

    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        code = str(error.get("Code", ""))
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        error_type = _client_error_kind(code, status)
        wrapped = error_type(
            error.get("Message") or str(exc),
            details={"code": code, "status": status},
        )
        return (_KIND_BY_ERROR.get(error_type, ErrorKind.FATAL), wrapped)

    if isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
        return (ErrorKind.TRANSIENT, TransientNetworkError("Request timed out"))

    if isinstance(exc, (HTTPClientError, BotoConnectionError, IncompleteReadError, ConnectionError)):
        return (ErrorKind.TRANSIENT, TransientNetworkError(f"Connection failure: {exc}"))

    if isinstance(exc, (NoCredentialsError, PartialCredentialsError, CredentialRetrievalError)):
        return (ErrorKind.FATAL, AuthError(f"Credentials unavailable: {exc}"))

    if isinstance(exc, BotoCoreError):
        return (ErrorKind.FATAL, RequestError(str(exc)))

    return (ErrorKind.FATAL, S3VaultError(f"Unexpected failure: {exc!r}"))


@dataclass(frozen=True)
class Retry:
    delay: float


@dataclass(frozen=True)
class GiveUp:
    last_error: ErrorKind


@dataclass
class RetryState:
    """Retry bookkeeping for one logical operation. Never shared."""

    started_at: float
    attempts: int = 0
    last_error: ErrorKind | None = None

    def elapsed(self, now: float) -> float:
        return max(0.0, now - self.started_at)


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff limits; see StoreConfig for the invariants."""

    max_attempts: int = 4
    base_delay: float = 0.2
    max_delay: float = 8.0
    throttle_base_delay: float = 1.0
    throttle_max_delay: float = 30.0
    jitter: float = 0.5
    max_elapsed: float = 300.0

    @classmethod
    def from_config(cls, config: StoreConfig) -> "BackoffPolicy":
        return cls(
            max_attempts=config.max_attempts,
            base_delay=config.base_delay,
            max_delay=config.max_delay,
            throttle_base_delay=config.throttle_base_delay,
            throttle_max_delay=config.throttle_max_delay,
            jitter=config.backoff_jitter,
            max_elapsed=config.max_elapsed,
        )


@dataclass
class BackoffController:
    """Decides whether and when a failed attempt is retried."""

    policy: BackoffPolicy = field(default_factory=BackoffPolicy)
    rng: random.Random = field(default_factory=random.Random)
    clock: Callable[[], float] = time.monotonic
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep

    def new_state(self) -> RetryState:
        return RetryState(started_at=self.clock())

    def delay_for(self, kind: ErrorKind, attempt: int) -> float:
        """Jittered delay after the given (1-based) failed attempt."""
        exponent = 2 ** min(max(attempt - 1, 0), 32)
        if kind == ErrorKind.THROTTLED:
            ceiling = min(self.policy.throttle_max_delay, self.policy.throttle_base_delay * exponent)
        else:
            ceiling = min(self.policy.max_delay, self.policy.base_delay * exponent)
        return ceiling * (1 - self.policy.jitter * self.rng.random())

    def decide(self, kind: ErrorKind, state: RetryState) -> Retry | GiveUp:
        state.last_error = kind
        if kind == ErrorKind.FATAL:
            return GiveUp(kind)
        if state.attempts >= self.policy.max_attempts:
            return GiveUp(kind)

        delay = self.delay_for(kind, state.attempts)
        if state.elapsed(self.clock()) + delay > self.policy.max_elapsed:
            return GiveUp(kind)
        return Retry(delay)


async def call_with_retry(
    operation: str,
    fn: Callable[[], Awaitable[T]],
    *,
    controller: BackoffController,
    metrics: MetricsRecorder,
    key: str | None = None,
    timeout: float | None = None,
) -> T:
    """
    Run `fn` until it succeeds or the controller gives up.

    Each attempt runs under `timeout`; a timed-out attempt is abandoned
    and counts as a transient failure. The surfaced error carries
    operation, key and attempt count in its details.
    """
    state = controller.new_state()

    while True:
        state.attempts += 1
        started = time.monotonic()
        try:
            if timeout is None:
                result = await fn()
            else:
                async with asyncio.timeout(timeout):
                    result = await fn()
        except Exception as e:
            kind, error = classify(e)
            metrics.record_attempt(operation, kind.value, time.monotonic() - started)

            decision = controller.decide(kind, state)
            if isinstance(decision, GiveUp):
                error.details.update(
                    {"operation": operation, "key": key, "attempts": state.attempts}
                )
                logger.error(
                    "request_failed",
                    operation=operation,
                    key=key,
                    attempts=state.attempts,
                    kind=kind.value,
                    error=error.message,
                )
                if error is e:
                    raise
                raise error from e

            metrics.record_retry(operation, kind.value)
            logger.warning(
                "request_retrying",
                operation=operation,
                key=key,
                attempt=state.attempts,
                kind=kind.value,
                delay=round(decision.delay, 3),
                error=error.message,
            )
            await controller.sleep(decision.delay)
        else:
            metrics.record_attempt(operation, OUTCOME_SUCCESS, time.monotonic() - started)
            return result

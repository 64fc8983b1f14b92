# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
s3vault Exceptions - Error taxonomy for the s3vault package.

Every operation surfaces exactly one of these. Retryable kinds
(TransientNetworkError, ThrottlingError) only escape once the retry
budget is exhausted; everything else is fatal on first sight.
"""


class S3VaultError(Exception):
    """Base exception for all s3vault errors."""

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class TransientNetworkError(S3VaultError):
    """Connection reset, timeout or 5xx response. Retryable."""

    pass


class ThrottlingError(S3VaultError):
    """Store or service rate limit. Retryable with a longer backoff."""

    pass


class AuthError(S3VaultError):
    """Invalid or expired credentials, or a denied role assumption."""

    pass


class NotFoundError(S3VaultError):
    """Object, bucket, key or upload does not exist."""

    pass


class CorruptionError(S3VaultError):
    """Checksum or authentication tag mismatch."""

    pass


class ConfigError(S3VaultError):
    """Raised when configuration or call arguments are invalid."""

    pass


class RequestError(S3VaultError):
    """The store rejected the request as malformed or not allowed."""

    pass


class SessionStateError(S3VaultError):
    """Illegal multipart session transition."""

    pass


class AlreadyCompletedError(SessionStateError):
    """complete() was called on a session that already completed."""

    pass

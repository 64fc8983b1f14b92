# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
s3vault Models - Records passed between the transfer components.
"""

import base64
import binascii
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, UTC
from enum import Enum
from typing import Dict, List, Set

from s3vault.config import MAX_KEY_BYTES, StorageClass
from s3vault.exceptions import ConfigError, CorruptionError, SessionStateError

# User-metadata keys (stored by the store as x-amz-meta-<name>)
META_KEY_ID = "s3vault-key-id"
META_WRAPPED_KEY = "s3vault-wrapped-key"
META_CIPHER = "s3vault-cipher"
META_NONCE = "s3vault-nonce"
META_CHUNK_SIZE = "s3vault-chunk-size"
META_SHA256 = "s3vault-sha256"
META_PART_SIZE = "s3vault-part-size"

_CONTEXT_FIELDS = (META_KEY_ID, META_WRAPPED_KEY, META_CIPHER, META_NONCE, META_CHUNK_SIZE)


@dataclass(frozen=True)
class ObjectKey:
    """Bucket + path (relative to the configured prefix) + optional tier."""

    bucket: str
    path: str
    storage_class: StorageClass | None = None

    def __post_init__(self) -> None:
        if not self.path:
            raise ConfigError("Object path must not be empty", details={"bucket": self.bucket})
        if self.path.startswith("/"):
            raise ConfigError(
                "Object path must not start with '/'",
                details={"bucket": self.bucket, "path": self.path},
            )
        if len(self.path.encode("utf-8")) > MAX_KEY_BYTES:
            raise ConfigError(
                f"Object path exceeds {MAX_KEY_BYTES} bytes",
                details={"bucket": self.bucket, "path": self.path[:64]},
            )

    def __str__(self) -> str:
        return f"{self.bucket}/{self.path}"


@dataclass(frozen=True)
class Credentials:
    """One immutable snapshot of request-signing credentials."""

    access_key_id: str
    secret_access_key: str = field(repr=False)
    session_token: str | None = field(default=None, repr=False)
    expiry: datetime | None = None  # None for long-lived credentials

    def expires_within(self, margin: float, now: datetime | None = None) -> bool:
        """True when expired or expiring within `margin` seconds."""
        if self.expiry is None:
            return False
        now = now or datetime.now(UTC)
        return self.expiry - now <= timedelta(seconds=margin)


@dataclass(frozen=True)
class EncryptionContext:
    """
    Per-object envelope encryption metadata.

    Persisted with the object as user metadata so a later read can unwrap
    the data key through the same key-management service.
    """

    master_key_id: str
    wrapped_key: bytes = field(repr=False)
    algorithm: str
    nonce: bytes
    chunk_size: int

    def to_metadata(self) -> Dict[str, str]:
        return {
            META_KEY_ID: self.master_key_id,
            META_WRAPPED_KEY: base64.b64encode(self.wrapped_key).decode("ascii"),
            META_CIPHER: self.algorithm,
            META_NONCE: base64.b64encode(self.nonce).decode("ascii"),
            META_CHUNK_SIZE: str(self.chunk_size),
        }

    @classmethod
    def from_metadata(cls, metadata: Dict[str, str]) -> "EncryptionContext | None":
        """
        Decode a context from object metadata.

        Returns None for plaintext objects. A partially present or
        undecodable context means the metadata was tampered with.
        """
        present = [name for name in _CONTEXT_FIELDS if name in metadata]
        if not present:
            return None
        if len(present) != len(_CONTEXT_FIELDS):
            raise CorruptionError(
                "Incomplete encryption metadata",
                details={"present": present},
            )
        try:
            return cls(
                master_key_id=metadata[META_KEY_ID],
                wrapped_key=base64.b64decode(metadata[META_WRAPPED_KEY], validate=True),
                algorithm=metadata[META_CIPHER],
                nonce=base64.b64decode(metadata[META_NONCE], validate=True),
                chunk_size=int(metadata[META_CHUNK_SIZE]),
            )
        except (binascii.Error, ValueError) as e:
            raise CorruptionError(f"Malformed encryption metadata: {e}")


@dataclass(frozen=True)
class PartResult:
    """One uploaded part as acknowledged by the store."""

    part_number: int
    etag: str
    checksum: str  # hex MD5 of the uploaded bytes
    size: int


class SessionState(str, Enum):
    """Multipart session lifecycle."""

    OPEN = "open"
    COMPLETING = "completing"
    COMPLETED = "completed"
    ABORTED = "aborted"


@dataclass
class UploadResult:
    """Result of a finished upload."""

    operation_id: str  # ULID
    key: ObjectKey
    etag: str
    size: int  # Bytes stored (ciphertext when encrypted)
    plaintext_size: int
    parts: int  # 0 for single-request puts
    encrypted: bool
    duration_seconds: float


@dataclass
class UploadSession:
    """
    One in-flight multipart upload.

    Owned by the MultipartUploadManager that created it. The data key is
    held only for the session's lifetime.
    """

    upload_id: str
    key: ObjectKey
    operation_id: str
    state: SessionState = SessionState.OPEN
    parts: Dict[int, PartResult] = field(default_factory=dict)
    sealed_parts: Set[int] = field(default_factory=set)  # encrypted sessions only
    context: EncryptionContext | None = None
    data_key: bytes | None = field(default=None, repr=False)
    outstanding: int = 0
    failed: bool = False
    plaintext_size: int = 0
    started_at: float = field(default_factory=time.monotonic)
    result: UploadResult | None = None

    def ordered_parts(self) -> List[PartResult]:
        """Parts in part-number order; raises if any number is missing."""
        numbers = sorted(self.parts)
        if numbers != list(range(1, len(numbers) + 1)):
            raise SessionStateError(
                "Part numbers are not contiguous from 1",
                details={"upload_id": self.upload_id, "parts": numbers},
            )
        return [self.parts[n] for n in numbers]


@dataclass(frozen=True)
class ObjectMetadata:
    """What head() reports about a stored object."""

    key: ObjectKey
    size: int
    etag: str
    last_modified: datetime | None
    storage_class: str | None
    metadata: Dict[str, str]
    context: EncryptionContext | None


@dataclass(frozen=True)
class GetResult:
    """Body and metadata returned by get()."""

    key: ObjectKey
    body: bytes
    metadata: ObjectMetadata

    @property
    def context(self) -> EncryptionContext | None:
        return self.metadata.context


@dataclass(frozen=True)
class ListPage:
    """One page of a listing; pass next_token back to resume."""

    keys: List[ObjectKey]
    next_token: str | None

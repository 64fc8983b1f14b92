# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
s3vault Configuration - Immutable configuration data structures.

All configuration is frozen (immutable) after creation so a single
instance can be shared by every concurrent transfer.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List
import re

KiB = 1024
MiB = 1024 * KiB
GiB = 1024 * MiB

# Store limits for multipart uploads
STORE_MIN_PART_SIZE = 5 * MiB
STORE_MAX_PART_SIZE = 5 * GiB
STORE_MAX_PARTS = 10_000

MAX_KEY_BYTES = 1024


class StorageClass(str, Enum):
    """Object storage class / tier."""

    STANDARD = "STANDARD"
    REDUCED_REDUNDANCY = "REDUCED_REDUNDANCY"
    STANDARD_IA = "STANDARD_IA"
    ONEZONE_IA = "ONEZONE_IA"
    INTELLIGENT_TIERING = "INTELLIGENT_TIERING"
    GLACIER = "GLACIER"
    GLACIER_IR = "GLACIER_IR"
    DEEP_ARCHIVE = "DEEP_ARCHIVE"


class ServerSideEncryption(str, Enum):
    """Server-side encryption applied by the store itself."""

    AES256 = "AES256"
    AWS_KMS = "aws:kms"


class CredentialSource(str, Enum):
    """Where request-signing credentials come from."""

    STATIC = "static"  # Keys from configuration, never expire
    ENVIRONMENT = "environment"  # AWS_ACCESS_KEY_ID & friends
    DEFAULT_CHAIN = "default_chain"  # botocore chain incl. instance metadata
    ASSUME_ROLE = "assume_role"  # STS AssumeRole, auto-refreshing


class CompletionPolicy(str, Enum):
    """How a repeated multipart completion is treated."""

    STRICT = "strict"  # Raise AlreadyCompletedError / surface NoSuchUpload
    DETECT_COMPLETED = "detect_completed"  # Return the completed result


def _validate_bucket_name(bucket: str) -> bool:
    """
    Validate bucket name according to S3 rules.

    Rules:
    - 3-63 characters
    - Lowercase letters, numbers, hyphens
    - Must start and end with letter or number
    - No consecutive periods
    - Not formatted as IP address
    """
    if not bucket or len(bucket) < 3 or len(bucket) > 63:
        return False

    if not re.match(r"^[a-z0-9][a-z0-9.-]*[a-z0-9]$", bucket):
        return False

    if ".." in bucket:
        return False

    if re.match(r"^\d+\.\d+\.\d+\.\d+$", bucket):
        return False

    return True


def _validate_backoff(config: "StoreConfig", errors: List[str]) -> None:
    """Check the retry budget and that throttled delays dominate transient ones."""
    if config.max_attempts < 1:
        errors.append(f"max_attempts must be >= 1, got {config.max_attempts}")
    if config.base_delay < 0 or config.max_delay < 0:
        errors.append("base_delay and max_delay must be >= 0")
    if config.max_delay < config.base_delay:
        errors.append("max_delay must be >= base_delay")
    if config.throttle_max_delay < config.throttle_base_delay:
        errors.append("throttle_max_delay must be >= throttle_base_delay")
    if not 0 <= config.backoff_jitter < 1:
        errors.append(f"backoff_jitter must be in [0, 1), got {config.backoff_jitter}")
        return

    # The smallest jittered throttle delay must still exceed the largest
    # transient delay at every attempt count.
    floor = 1 - config.backoff_jitter
    if config.throttle_base_delay * floor <= config.base_delay:
        errors.append(
            "throttle_base_delay * (1 - backoff_jitter) must be > base_delay"
        )
    if config.throttle_max_delay * floor <= config.max_delay:
        errors.append(
            "throttle_max_delay * (1 - backoff_jitter) must be > max_delay"
        )
    if config.max_elapsed <= 0:
        errors.append(f"max_elapsed must be > 0, got {config.max_elapsed}")


def _validate_transfer(config: "StoreConfig", errors: List[str]) -> None:
    if config.min_part_size < 1:
        errors.append(f"min_part_size must be >= 1, got {config.min_part_size}")
    if config.part_size < config.min_part_size:
        errors.append(
            f"part_size {config.part_size} is below the minimum part size "
            f"{config.min_part_size}"
        )
    if config.part_size > STORE_MAX_PART_SIZE:
        errors.append(f"part_size must be <= {STORE_MAX_PART_SIZE}, got {config.part_size}")
    if not 1 <= config.max_parts <= STORE_MAX_PARTS:
        errors.append(f"max_parts must be 1-{STORE_MAX_PARTS}, got {config.max_parts}")
    if config.upload_concurrency < 1:
        errors.append(
            f"upload_concurrency must be >= 1, got {config.upload_concurrency}"
        )
    if config.cipher_chunk_size < 1:
        errors.append(f"cipher_chunk_size must be >= 1, got {config.cipher_chunk_size}")
    elif config.part_size % config.cipher_chunk_size != 0:
        # Parts are sealed independently, so chunks may never straddle parts
        errors.append(
            f"part_size {config.part_size} must be a multiple of "
            f"cipher_chunk_size {config.cipher_chunk_size}"
        )
    if config.request_timeout <= 0:
        errors.append(f"request_timeout must be > 0, got {config.request_timeout}")
    if not 1 <= config.list_page_size <= 1000:
        errors.append(f"list_page_size must be 1-1000, got {config.list_page_size}")


def _validate_credentials(config: "StoreConfig", errors: List[str]) -> None:
    if config.credential_source == CredentialSource.STATIC:
        if not config.access_key_id or not config.secret_access_key:
            errors.append(
                "access_key_id and secret_access_key required for static credentials"
            )
    if config.credential_source == CredentialSource.ASSUME_ROLE:
        if not config.role_arn:
            from s3vault.errors import explain_missing_role_arn

            errors.append(explain_missing_role_arn())
        if not 900 <= config.role_duration_seconds <= 43200:
            errors.append(
                "role_duration_seconds must be 900-43200, "
                f"got {config.role_duration_seconds}"
            )
    if config.refresh_margin < 0:
        errors.append(f"refresh_margin must be >= 0, got {config.refresh_margin}")


@dataclass(frozen=True)
class StoreConfig:
    """
    Immutable configuration for the encrypted object-store backend.

    Supplied once at startup by the pipeline's configuration loader.
    """

    # Required: bucket holding the backups
    bucket: str

    # Region (default: us-east-1)
    region: str = "us-east-1"

    # Key prefix prepended to every object path
    prefix: str = ""

    # Default storage class for new objects
    storage_class: StorageClass = StorageClass.STANDARD

    # Server-side encryption performed by the store
    server_side_encryption: ServerSideEncryption | None = None
    sse_kms_key_id: str | None = None

    # Client-side envelope encryption
    encrypt_objects: bool = False
    master_key_id: str | None = None
    cipher_chunk_size: int = 64 * KiB

    # Endpoint override for S3-compatible stores
    endpoint_url: str | None = None
    force_path_style: bool = False

    # Multipart transfer
    part_size: int = 64 * MiB
    min_part_size: int = STORE_MIN_PART_SIZE
    max_parts: int = STORE_MAX_PARTS
    upload_concurrency: int = 4

    # Retry budget
    max_attempts: int = 4
    base_delay: float = 0.2
    max_delay: float = 8.0
    throttle_base_delay: float = 1.0
    throttle_max_delay: float = 30.0
    backoff_jitter: float = 0.5
    max_elapsed: float = 300.0

    # Per-request timeout in seconds
    request_timeout: float = 60.0

    # Keys per list request
    list_page_size: int = 1000

    # Credentials
    credential_source: CredentialSource = CredentialSource.DEFAULT_CHAIN
    access_key_id: str | None = None
    secret_access_key: str | None = field(default=None, repr=False)
    session_token: str | None = field(default=None, repr=False)
    role_arn: str | None = None
    role_session_name: str = "s3vault"
    role_duration_seconds: int = 3600
    external_id: str | None = field(default=None, repr=False)
    refresh_margin: float = 60.0

    # Repeated multipart completion handling
    completion_policy: CompletionPolicy = CompletionPolicy.DETECT_COMPLETED

    def __post_init__(self) -> None:
        """Validate configuration after creation."""
        errors: List[str] = []

        if not _validate_bucket_name(self.bucket):
            errors.append(f"Invalid bucket name: {self.bucket}")

        if self.prefix.startswith("/"):
            errors.append(f"prefix must not start with '/': {self.prefix}")

        if self.encrypt_objects and not self.master_key_id:
            from s3vault.errors import explain_missing_master_key

            errors.append(explain_missing_master_key())

        if (
            self.sse_kms_key_id
            and self.server_side_encryption != ServerSideEncryption.AWS_KMS
        ):
            errors.append("sse_kms_key_id requires server_side_encryption='aws:kms'")

        _validate_transfer(self, errors)
        _validate_backoff(self, errors)
        _validate_credentials(self, errors)

        if errors:
            from s3vault.exceptions import ConfigError

            raise ConfigError(
                "Configuration validation failed",
                details={"errors": errors},
            )

    def with_updates(self, **kwargs) -> "StoreConfig":
        """
        Create a new config with updated values.

        Since the config is frozen, this creates a new instance.
        """
        from dataclasses import asdict

        current = asdict(self)
        current.update(kwargs)
        return StoreConfig(**current)

    def object_name(self, path: str) -> str:
        """Full store key for a path, with the configured prefix applied."""
        if not self.prefix:
            return path
        return f"{self.prefix.rstrip('/')}/{path}"

    def strip_prefix(self, name: str) -> str:
        """Inverse of object_name() for keys returned by listings."""
        if not self.prefix:
            return name
        head = f"{self.prefix.rstrip('/')}/"
        return name[len(head):] if name.startswith(head) else name

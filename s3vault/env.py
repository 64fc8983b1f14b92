# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Environment-based configuration helpers and transfer profiles.

These helpers are small, convenient wrappers around create_config() and
StoreConfig.with_updates(). They make it easy to:

- Build a configuration from environment variables
- Apply ready-made transfer profiles
"""

from __future__ import annotations

import os
from typing import Any, Callable, Dict, Mapping

from s3vault.builder import create_config
from s3vault.config import (
    CompletionPolicy,
    CredentialSource,
    MiB,
    ServerSideEncryption,
    StoreConfig,
)
from s3vault.errors import (
    explain_invalid_bool_env,
    explain_invalid_credential_source_env,
    explain_invalid_float_env,
    explain_invalid_int_env,
    explain_invalid_sse_env,
    explain_missing_bucket_env,
)
from s3vault.exceptions import ConfigError

_TRUE = ("1", "true", "yes", "on")
_FALSE = ("0", "false", "no", "off")


def _parse_int(name: str, value: str | None) -> int | None:
    if not value:
        return None
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(explain_invalid_int_env(name, value)) from exc
    if parsed < 1:
        raise ConfigError(explain_invalid_int_env(name, value))
    return parsed


def _parse_float(name: str, value: str | None) -> float | None:
    if not value:
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(explain_invalid_float_env(name, value)) from exc
    if parsed < 0:
        raise ConfigError(explain_invalid_float_env(name, value))
    return parsed


def _parse_bool(name: str, value: str | None) -> bool | None:
    if not value:
        return None
    lowered = value.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ConfigError(explain_invalid_bool_env(name, value))


def _parse_credential_source(value: str | None) -> CredentialSource | None:
    if not value:
        return None
    try:
        return CredentialSource(value.lower())
    except ValueError as exc:
        raise ConfigError(explain_invalid_credential_source_env(value)) from exc


def _parse_sse(value: str | None) -> ServerSideEncryption | None:
    if not value:
        return None
    try:
        return ServerSideEncryption(value)
    except ValueError as exc:
        raise ConfigError(explain_invalid_sse_env(value)) from exc


# (env name, config field, parser)
_ENV_FIELDS: tuple[tuple[str, str, Callable[[str, str | None], Any]], ...] = (
    ("S3VAULT_PART_SIZE", "part_size", _parse_int),
    ("S3VAULT_UPLOAD_CONCURRENCY", "upload_concurrency", _parse_int),
    ("S3VAULT_CIPHER_CHUNK_SIZE", "cipher_chunk_size", _parse_int),
    ("S3VAULT_MAX_ATTEMPTS", "max_attempts", _parse_int),
    ("S3VAULT_MAX_ELAPSED", "max_elapsed", _parse_float),
    ("S3VAULT_REQUEST_TIMEOUT", "request_timeout", _parse_float),
    ("S3VAULT_REFRESH_MARGIN", "refresh_margin", _parse_float),
    ("S3VAULT_ROLE_DURATION", "role_duration_seconds", _parse_int),
    ("S3VAULT_FORCE_PATH_STYLE", "force_path_style", _parse_bool),
)


def create_config_from_env(environ: Mapping[str, str] | None = None) -> StoreConfig:
    """
    Create a StoreConfig from environment variables.

    Required:
        - S3VAULT_BUCKET: Bucket holding the backups

    Optional environment variables:
        - AWS_REGION: AWS region (default: us-east-1)
        - S3VAULT_PREFIX: Key prefix for every object
        - S3VAULT_STORAGE_CLASS: e.g. STANDARD_IA
        - S3VAULT_ENDPOINT_URL: S3-compatible endpoint
        - S3VAULT_FORCE_PATH_STYLE: true/false
        - S3VAULT_SSE: 'AES256' | 'aws:kms'
        - S3VAULT_SSE_KMS_KEY_ID: Key for 'aws:kms'
        - S3VAULT_MASTER_KEY_ID: Enables client-side envelope encryption
        - S3VAULT_CIPHER_CHUNK_SIZE: Cipher chunk size in bytes
        - S3VAULT_PART_SIZE: Multipart part size in bytes
        - S3VAULT_UPLOAD_CONCURRENCY: Parts in flight per upload
        - S3VAULT_MAX_ATTEMPTS / S3VAULT_MAX_ELAPSED: Retry budget
        - S3VAULT_REQUEST_TIMEOUT: Per-request timeout in seconds
        - S3VAULT_CREDENTIAL_SOURCE: static | environment | default_chain | assume_role
        - S3VAULT_ROLE_ARN / S3VAULT_ROLE_SESSION_NAME / S3VAULT_ROLE_DURATION
        - S3VAULT_EXTERNAL_ID: External ID for role assumption
        - S3VAULT_REFRESH_MARGIN: Seconds before expiry to refresh
        - S3VAULT_COMPLETION_POLICY: strict | detect_completed
        - AWS_ACCESS_KEY_ID / AWS_SECRET_ACCESS_KEY / AWS_SESSION_TOKEN:
          used as static keys when the credential source is 'static'
    """
    env = os.environ if environ is None else environ

    bucket = env.get("S3VAULT_BUCKET")
    if not bucket:
        raise ConfigError(explain_missing_bucket_env())

    options: Dict[str, Any] = {}
    for name, field_name, parser in _ENV_FIELDS:
        value = parser(name, env.get(name))
        if value is not None:
            options[field_name] = value

    sse = _parse_sse(env.get("S3VAULT_SSE"))
    if sse is not None:
        options["server_side_encryption"] = sse
        options["sse_kms_key_id"] = env.get("S3VAULT_SSE_KMS_KEY_ID") or None

    if env.get("S3VAULT_ENDPOINT_URL"):
        options["endpoint_url"] = env["S3VAULT_ENDPOINT_URL"]

    source = _parse_credential_source(env.get("S3VAULT_CREDENTIAL_SOURCE"))
    if source is not None:
        options["credential_source"] = source
    if source == CredentialSource.STATIC:
        options["access_key_id"] = env.get("AWS_ACCESS_KEY_ID")
        options["secret_access_key"] = env.get("AWS_SECRET_ACCESS_KEY")
        options["session_token"] = env.get("AWS_SESSION_TOKEN") or None
    if env.get("S3VAULT_ROLE_SESSION_NAME"):
        options["role_session_name"] = env["S3VAULT_ROLE_SESSION_NAME"]
    if env.get("S3VAULT_EXTERNAL_ID"):
        options["external_id"] = env["S3VAULT_EXTERNAL_ID"]

    policy = env.get("S3VAULT_COMPLETION_POLICY")
    if policy:
        try:
            options["completion_policy"] = CompletionPolicy(policy.lower())
        except ValueError as exc:
            raise ConfigError(
                f"Invalid S3VAULT_COMPLETION_POLICY value: {policy!r}. "
                "Expected 'strict' or 'detect_completed'."
            ) from exc

    # An explicit S3VAULT_CREDENTIAL_SOURCE overrides the source implied by a role ARN
    return create_config(
        bucket=bucket,
        region=env.get("AWS_REGION", "us-east-1"),
        prefix=env.get("S3VAULT_PREFIX", ""),
        storage_class=env.get("S3VAULT_STORAGE_CLASS", "STANDARD"),
        master_key_id=env.get("S3VAULT_MASTER_KEY_ID") or None,
        role_arn=env.get("S3VAULT_ROLE_ARN") or None,
        **options,
    )


# ============================================================================
# Profiles
# ============================================================================

def safe_defaults(config: StoreConfig) -> StoreConfig:
    """
    Apply conservative transfer defaults.

    - Strict completion (a repeated completion is reported, not absorbed)
    - At least 5 attempts per request
    - At most 4 parts in flight
    """

    return config.with_updates(
        completion_policy=CompletionPolicy.STRICT,
        max_attempts=max(config.max_attempts, 5),
        upload_concurrency=min(config.upload_concurrency, 4),
    )


def high_throughput(config: StoreConfig) -> StoreConfig:
    """
    Apply a profile for large backups on fast links.

    - Parts of at least 128 MiB
    - At least 16 parts in flight
    - Longer per-request timeout
    """

    part_size = max(config.part_size, 128 * MiB)
    part_size -= part_size % config.cipher_chunk_size
    return config.with_updates(
        part_size=part_size,
        upload_concurrency=max(config.upload_concurrency, 16),
        request_timeout=max(config.request_timeout, 300.0),
    )


def compliance_friendly(config: StoreConfig) -> StoreConfig:
    """
    Apply a compliance-friendly profile.

    - Server-side encryption at rest (AES256 unless aws:kms is already set)
    - Client-side envelope encryption when a master key is configured
    - Strict completion
    """

    return config.with_updates(
        server_side_encryption=config.server_side_encryption or ServerSideEncryption.AES256,
        encrypt_objects=config.encrypt_objects or bool(config.master_key_id),
        completion_policy=CompletionPolicy.STRICT,
    )

# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
s3vault Builder - Functional builder pattern for configuration.

This module provides pure functions for building StoreConfig objects.
Each function takes a config dict and returns a new dict with the
modification applied (immutable updates).
"""

from dataclasses import fields
from typing import Any, Callable, Dict

from s3vault.config import (
    CompletionPolicy,
    CredentialSource,
    ServerSideEncryption,
    StorageClass,
    StoreConfig,
)


# Type alias for builder functions
ConfigDict = Dict[str, Any]
BuilderFunc = Callable[[ConfigDict], ConfigDict]


def create_empty_config() -> ConfigDict:
    """
    Create an initial empty configuration dictionary.

    Returns:
        Dict with default values for all configuration fields
    """
    defaults: ConfigDict = {"bucket": ""}
    for f in fields(StoreConfig):
        if f.name != "bucket":
            defaults[f.name] = f.default
    return defaults


def with_bucket(config: ConfigDict, bucket_name: str) -> ConfigDict:
    """
    Set the bucket name.

    Args:
        config: Current configuration dictionary
        bucket_name: Bucket holding the backups

    Returns:
        New configuration dictionary with bucket set
    """
    return {**config, "bucket": bucket_name}


def with_region(config: ConfigDict, region: str) -> ConfigDict:
    """
    Set the AWS region.

    Args:
        config: Current configuration dictionary
        region: AWS region (e.g., 'us-east-1', 'eu-west-1')

    Returns:
        New configuration dictionary with region set
    """
    return {**config, "region": region}


def with_prefix(config: ConfigDict, prefix: str) -> ConfigDict:
    """Prepend `prefix` to every object path."""
    return {**config, "prefix": prefix}


def with_storage_class(config: ConfigDict, storage_class: StorageClass | str) -> ConfigDict:
    if isinstance(storage_class, str):
        storage_class = StorageClass(storage_class)
    return {**config, "storage_class": storage_class}


def with_endpoint(
    config: ConfigDict,
    endpoint_url: str,
    force_path_style: bool = True,
) -> ConfigDict:
    """
    Point the client at an S3-compatible store.

    Args:
        config: Current configuration dictionary
        endpoint_url: Base URL of the store (e.g., 'http://minio:9000')
        force_path_style: Use path-style addressing

    Returns:
        New configuration dictionary with the endpoint set
    """
    return {**config, "endpoint_url": endpoint_url, "force_path_style": force_path_style}


def with_server_side_encryption(
    config: ConfigDict,
    algorithm: ServerSideEncryption | str,
    kms_key_id: str | None = None,
) -> ConfigDict:
    """
    Ask the store to encrypt objects at rest.

    Args:
        config: Current configuration dictionary
        algorithm: 'AES256' or 'aws:kms'
        kms_key_id: Key for 'aws:kms' (store default key if omitted)

    Returns:
        New configuration dictionary with server-side encryption set
    """
    if isinstance(algorithm, str):
        algorithm = ServerSideEncryption(algorithm)
    return {**config, "server_side_encryption": algorithm, "sse_kms_key_id": kms_key_id}


def with_envelope_encryption(
    config: ConfigDict,
    master_key_id: str,
    chunk_size: int | None = None,
) -> ConfigDict:
    """
    Encrypt objects client-side under data keys wrapped by `master_key_id`.

    Args:
        config: Current configuration dictionary
        master_key_id: Key-management key that wraps data keys
        chunk_size: Cipher chunk size (must divide part_size)

    Returns:
        New configuration dictionary with envelope encryption enabled
    """
    updated = {**config, "encrypt_objects": True, "master_key_id": master_key_id}
    if chunk_size is not None:
        updated["cipher_chunk_size"] = chunk_size
    return updated


def with_part_size(config: ConfigDict, part_size: int) -> ConfigDict:
    """
    Set the multipart part size in bytes.

    Every part except the last has exactly this size.
    """
    if part_size < 1:
        raise ValueError(f"part_size must be >= 1, got {part_size}")
    return {**config, "part_size": part_size}


def with_upload_concurrency(config: ConfigDict, concurrency: int) -> ConfigDict:
    """
    Set the number of parts uploaded in parallel.

    Args:
        config: Current configuration dictionary
        concurrency: Maximum parts in flight per upload

    Returns:
        New configuration dictionary with upload_concurrency set
    """
    if concurrency < 1:
        raise ValueError(f"upload_concurrency must be >= 1, got {concurrency}")
    return {**config, "upload_concurrency": concurrency}


def with_retry_budget(
    config: ConfigDict,
    max_attempts: int | None = None,
    max_elapsed: float | None = None,
    request_timeout: float | None = None,
) -> ConfigDict:
    """
    Bound retries per operation.

    Args:
        config: Current configuration dictionary
        max_attempts: Attempts per operation, including the first
        max_elapsed: Seconds an operation may spend retrying
        request_timeout: Seconds allowed for one attempt

    Returns:
        New configuration dictionary with the retry budget set
    """
    updated = dict(config)
    if max_attempts is not None:
        updated["max_attempts"] = max_attempts
    if max_elapsed is not None:
        updated["max_elapsed"] = max_elapsed
    if request_timeout is not None:
        updated["request_timeout"] = request_timeout
    return updated


def with_static_credentials(
    config: ConfigDict,
    access_key_id: str,
    secret_access_key: str,
    session_token: str | None = None,
) -> ConfigDict:
    """Sign requests with fixed keys."""
    return {
        **config,
        "credential_source": CredentialSource.STATIC,
        "access_key_id": access_key_id,
        "secret_access_key": secret_access_key,
        "session_token": session_token,
    }


def with_environment_credentials(config: ConfigDict) -> ConfigDict:
    """Read keys from AWS_ACCESS_KEY_ID / AWS_SECRET_ACCESS_KEY on each refresh."""
    return {**config, "credential_source": CredentialSource.ENVIRONMENT}


def with_assume_role(
    config: ConfigDict,
    role_arn: str,
    session_name: str = "s3vault",
    duration_seconds: int = 3600,
    external_id: str | None = None,
) -> ConfigDict:
    """
    Obtain temporary credentials by assuming `role_arn`.

    The base credentials for the exchange are the static keys when set,
    otherwise the default provider chain.

    Args:
        config: Current configuration dictionary
        role_arn: Role to assume
        session_name: Role session name
        duration_seconds: Lifetime of issued credentials (900-43200)
        external_id: External ID required by the role's trust policy

    Returns:
        New configuration dictionary with assume-role credentials
    """
    return {
        **config,
        "credential_source": CredentialSource.ASSUME_ROLE,
        "role_arn": role_arn,
        "role_session_name": session_name,
        "role_duration_seconds": duration_seconds,
        "external_id": external_id,
    }


def strict_completion(config: ConfigDict) -> ConfigDict:
    """
    Treat a repeated multipart completion as an error.

    The default accepts it when the stored object matches the session.
    """
    return {**config, "completion_policy": CompletionPolicy.STRICT}


def build_config(config_dict: ConfigDict) -> StoreConfig:
    """
    Validate and build an immutable StoreConfig from a configuration dictionary.

    Args:
        config_dict: Configuration dictionary built using builder functions

    Returns:
        Validated, immutable StoreConfig instance

    Raises:
        ConfigError: If validation fails
    """
    if not config_dict.get("bucket"):
        from s3vault.exceptions import ConfigError

        raise ConfigError("bucket is required")

    return StoreConfig(**config_dict)


def pipe(*funcs: BuilderFunc) -> BuilderFunc:
    """
    Compose multiple builder functions into a single function.

    This allows a more readable pipeline style:

        config = pipe(
            lambda c: with_bucket(c, "backups"),
            lambda c: with_envelope_encryption(c, "alias/backup"),
            strict_completion,
        )(create_empty_config())

    Args:
        *funcs: Builder functions to compose

    Returns:
        A single function that applies all functions in sequence
    """

    def composed(config: ConfigDict) -> ConfigDict:
        result = config
        for func in funcs:
            result = func(result)
        return result

    return composed


def build_from_steps(*steps: BuilderFunc) -> StoreConfig:
    """
    Build config by applying a sequence of builder functions.

    This is a convenience function that combines pipe() and build_config().

    Example:
        config = build_from_steps(
            lambda c: with_bucket(c, "backups"),
            lambda c: with_part_size(c, 128 * MiB),
        )

    Args:
        *steps: Builder functions to apply in sequence

    Returns:
        Validated, immutable StoreConfig instance
    """
    return build_config(pipe(*steps)(create_empty_config()))


def create_config(
    bucket: str,
    *,
    region: str = "us-east-1",
    prefix: str = "",
    storage_class: str | StorageClass = StorageClass.STANDARD,
    master_key_id: str | None = None,
    endpoint_url: str | None = None,
    part_size: int | None = None,
    role_arn: str | None = None,
    **kwargs: Any,
) -> StoreConfig:
    """
    Create configuration from simple parameters.

    This is the recommended user-facing API for creating configurations.
    It's simpler than the builder pattern and easier to understand.

    Args:
        bucket: Bucket name (required)
        region: AWS region (default: "us-east-1")
        prefix: Key prefix for every object (default: "")
        storage_class: Default storage class (default: "STANDARD")
        master_key_id: Enables envelope encryption under this key
        endpoint_url: S3-compatible endpoint (enables path-style addressing)
        part_size: Multipart part size in bytes (default: 64 MiB)
        role_arn: Assume this role for credentials
        **kwargs: Any other StoreConfig field

    Returns:
        Validated, immutable StoreConfig instance

    Example:
        config = create_config(
            bucket="tikv-backups",
            region="eu-west-1",
            prefix="cluster-1/",
            master_key_id="alias/backup",
        )
    """
    config_dict = create_empty_config()
    config_dict = with_bucket(config_dict, bucket)
    config_dict = with_region(config_dict, region)
    config_dict = with_prefix(config_dict, prefix)
    config_dict = with_storage_class(config_dict, storage_class)

    if master_key_id:
        config_dict = with_envelope_encryption(config_dict, master_key_id)

    if endpoint_url:
        config_dict = with_endpoint(config_dict, endpoint_url)

    if part_size is not None:
        config_dict = with_part_size(config_dict, part_size)

    if role_arn:
        config_dict = with_assume_role(config_dict, role_arn)

    # Apply any additional kwargs
    for key, value in kwargs.items():
        if key in config_dict:
            config_dict[key] = value

    return build_config(config_dict)

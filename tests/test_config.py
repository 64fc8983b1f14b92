# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Tests for configuration validation, the functional builder and the
environment helpers.
"""

import pytest

from s3vault.builder import (
    build_from_steps,
    create_config,
    create_empty_config,
    pipe,
    strict_completion,
    with_bucket,
    with_envelope_encryption,
    with_part_size,
    with_server_side_encryption,
    with_static_credentials,
)
from s3vault.config import (
    CompletionPolicy,
    CredentialSource,
    MiB,
    ServerSideEncryption,
    StorageClass,
    StoreConfig,
)
from s3vault.env import (
    compliance_friendly,
    create_config_from_env,
    high_throughput,
    safe_defaults,
)
from s3vault.exceptions import ConfigError
from s3vault.models import ObjectKey


# ============================================================================
# Validation
# ============================================================================

def test_defaults_are_valid():
    config = StoreConfig(bucket="tikv-backups")

    assert config.part_size == 64 * MiB
    assert config.completion_policy == CompletionPolicy.DETECT_COMPLETED
    assert config.credential_source == CredentialSource.DEFAULT_CHAIN


@pytest.mark.parametrize(
    "overrides",
    [
        {"bucket": "Invalid_Bucket"},
        {"bucket": "ab"},
        {"bucket": "192.168.1.1"},
        {"prefix": "/absolute"},
        {"part_size": 1 * MiB},
        {"part_size": 64 * MiB + 1},
        {"max_parts": 0},
        {"upload_concurrency": 0},
        {"encrypt_objects": True},
        {"sse_kms_key_id": "alias/x"},
        {"max_attempts": 0},
        {"backoff_jitter": 1.0},
        {"throttle_base_delay": 0.2},
        {"throttle_max_delay": 10.0},
        {"credential_source": CredentialSource.STATIC},
        {"credential_source": CredentialSource.ASSUME_ROLE},
        {"list_page_size": 5000},
    ],
)
def test_invalid_configs_are_rejected(overrides):
    values = {"bucket": "tikv-backups", **overrides}

    with pytest.raises(ConfigError) as exc_info:
        StoreConfig(**values)

    assert exc_info.value.details["errors"]


def test_all_errors_are_reported_together():
    with pytest.raises(ConfigError) as exc_info:
        StoreConfig(bucket="BAD", max_attempts=0, upload_concurrency=0)

    assert len(exc_info.value.details["errors"]) == 3


def test_with_updates_returns_validated_copy():
    config = StoreConfig(bucket="tikv-backups")
    updated = config.with_updates(region="eu-west-1")

    assert updated.region == "eu-west-1"
    assert config.region == "us-east-1"
    with pytest.raises(ConfigError):
        config.with_updates(upload_concurrency=0)


def test_secrets_are_not_in_repr():
    config = StoreConfig(
        bucket="tikv-backups",
        credential_source=CredentialSource.STATIC,
        access_key_id="AKIA",
        secret_access_key="very-secret",
        session_token="very-token",
    )

    assert "very-secret" not in repr(config)
    assert "very-token" not in repr(config)


def test_prefix_mapping():
    config = StoreConfig(bucket="tikv-backups", prefix="cluster-1/")

    assert config.object_name("a/b") == "cluster-1/a/b"
    assert config.strip_prefix("cluster-1/a/b") == "a/b"


@pytest.mark.parametrize("path", ["", "/leading", "x" * 1025])
def test_invalid_object_keys(path):
    with pytest.raises(ConfigError):
        ObjectKey(bucket="tikv-backups", path=path)


# ============================================================================
# Builder
# ============================================================================

def test_builder_steps():
    config = build_from_steps(
        lambda c: with_bucket(c, "tikv-backups"),
        lambda c: with_part_size(c, 128 * MiB),
        lambda c: with_envelope_encryption(c, "alias/backup"),
        lambda c: with_server_side_encryption(c, "aws:kms", "alias/at-rest"),
        strict_completion,
    )

    assert config.part_size == 128 * MiB
    assert config.encrypt_objects
    assert config.master_key_id == "alias/backup"
    assert config.server_side_encryption == ServerSideEncryption.AWS_KMS
    assert config.completion_policy == CompletionPolicy.STRICT


def test_pipe_does_not_mutate_input():
    base = create_empty_config()
    result = pipe(
        lambda c: with_bucket(c, "tikv-backups"),
        lambda c: with_static_credentials(c, "AKIA", "secret"),
    )(base)

    assert base["bucket"] == ""
    assert result["credential_source"] == CredentialSource.STATIC


def test_create_config():
    config = create_config(
        bucket="tikv-backups",
        region="eu-west-1",
        prefix="cluster-1",
        storage_class="STANDARD_IA",
        master_key_id="alias/backup",
        endpoint_url="http://minio:9000",
        role_arn="arn:aws:iam::123456789012:role/backup",
        upload_concurrency=8,
    )

    assert config.storage_class == StorageClass.STANDARD_IA
    assert config.encrypt_objects
    assert config.force_path_style
    assert config.credential_source == CredentialSource.ASSUME_ROLE
    assert config.upload_concurrency == 8


def test_create_config_requires_bucket():
    with pytest.raises(ConfigError):
        create_config(bucket="")


# ============================================================================
# Environment and profiles
# ============================================================================

def test_config_from_env():
    config = create_config_from_env(
        {
            "S3VAULT_BUCKET": "tikv-backups",
            "AWS_REGION": "ap-southeast-1",
            "S3VAULT_PREFIX": "cluster-1",
            "S3VAULT_PART_SIZE": str(32 * MiB),
            "S3VAULT_UPLOAD_CONCURRENCY": "8",
            "S3VAULT_MAX_ELAPSED": "120",
            "S3VAULT_FORCE_PATH_STYLE": "yes",
            "S3VAULT_SSE": "aws:kms",
            "S3VAULT_SSE_KMS_KEY_ID": "alias/at-rest",
            "S3VAULT_CREDENTIAL_SOURCE": "static",
            "AWS_ACCESS_KEY_ID": "AKIAENV",
            "AWS_SECRET_ACCESS_KEY": "env-secret",
            "S3VAULT_COMPLETION_POLICY": "strict",
        }
    )

    assert config.region == "ap-southeast-1"
    assert config.part_size == 32 * MiB
    assert config.upload_concurrency == 8
    assert config.max_elapsed == 120.0
    assert config.force_path_style
    assert config.sse_kms_key_id == "alias/at-rest"
    assert config.access_key_id == "AKIAENV"
    assert config.completion_policy == CompletionPolicy.STRICT


def test_config_from_env_role_arn_selects_assume_role():
    config = create_config_from_env(
        {
            "S3VAULT_BUCKET": "tikv-backups",
            "S3VAULT_ROLE_ARN": "arn:aws:iam::123456789012:role/backup",
        }
    )

    assert config.credential_source == CredentialSource.ASSUME_ROLE


@pytest.mark.parametrize(
    "env",
    [
        {},
        {"S3VAULT_BUCKET": "tikv-backups", "S3VAULT_PART_SIZE": "big"},
        {"S3VAULT_BUCKET": "tikv-backups", "S3VAULT_MAX_ELAPSED": "-1"},
        {"S3VAULT_BUCKET": "tikv-backups", "S3VAULT_FORCE_PATH_STYLE": "maybe"},
        {"S3VAULT_BUCKET": "tikv-backups", "S3VAULT_SSE": "rot13"},
        {"S3VAULT_BUCKET": "tikv-backups", "S3VAULT_CREDENTIAL_SOURCE": "magic"},
        {"S3VAULT_BUCKET": "tikv-backups", "S3VAULT_COMPLETION_POLICY": "hope"},
    ],
)
def test_config_from_env_rejects_bad_values(env):
    with pytest.raises(ConfigError):
        create_config_from_env(env)


def test_profiles():
    base = StoreConfig(bucket="tikv-backups", master_key_id="alias/backup")

    safe = safe_defaults(base)
    fast = high_throughput(base)
    compliant = compliance_friendly(base)

    assert safe.completion_policy == CompletionPolicy.STRICT
    assert safe.max_attempts >= 5
    assert fast.part_size >= 128 * MiB
    assert fast.upload_concurrency >= 16
    assert compliant.server_side_encryption == ServerSideEncryption.AES256
    assert compliant.encrypt_objects

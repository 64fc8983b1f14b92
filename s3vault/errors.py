# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Human-friendly error message helpers for s3vault.

These helpers centralize wording for common configuration errors so that
all modules present consistent, actionable messages.
"""


def explain_missing_bucket_env() -> str:
    """
    Explain that the bucket environment variable is missing.
    """

    return (
        "Bucket is not configured. "
        "Set the S3VAULT_BUCKET environment variable or pass bucket=... to create_config()."
    )


def explain_missing_master_key() -> str:
    """
    Explain that client-side encryption needs a master key.
    """

    return (
        "encrypt_objects is enabled but no master key was configured. "
        "Set S3VAULT_MASTER_KEY_ID or pass master_key_id=... to create_config()."
    )


def explain_invalid_int_env(name: str, value: str | None) -> str:
    """
    Explain that an integer environment variable could not be parsed.
    """

    return f"Invalid {name} value: {value!r}. It must be a positive integer."


def explain_invalid_float_env(name: str, value: str | None) -> str:
    """
    Explain that a numeric environment variable could not be parsed.
    """

    return f"Invalid {name} value: {value!r}. It must be a non-negative number."


def explain_invalid_bool_env(name: str, value: str | None) -> str:
    """
    Explain that a boolean environment variable could not be parsed.
    """

    return (
        f"Invalid {name} value: {value!r}. "
        "Expected one of: '1', '0', 'true', 'false', 'yes', 'no'."
    )


def explain_invalid_credential_source_env(value: str | None) -> str:
    """
    Explain that S3VAULT_CREDENTIAL_SOURCE is invalid.
    """

    return (
        f"Invalid S3VAULT_CREDENTIAL_SOURCE value: {value!r}. "
        "Expected one of: 'static', 'environment', 'default_chain', 'assume_role'."
    )


def explain_invalid_sse_env(value: str | None) -> str:
    """
    Explain that the server-side encryption env is invalid.
    """

    return (
        f"Invalid S3VAULT_SSE value: {value!r}. "
        "Expected 'AES256' or 'aws:kms', or leave unset to disable server-side encryption."
    )


def explain_missing_role_arn() -> str:
    """
    Explain that role assumption needs a role ARN.
    """

    return (
        "credential_source is 'assume_role' but no role ARN was configured. "
        "Set S3VAULT_ROLE_ARN or pass role_arn=... to create_config()."
    )

# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
s3vault - Encrypted, retrying object-store backend for backup pipelines.

Uploads large backup files as concurrent multipart transfers with
client-side envelope encryption, auto-refreshing credentials, and
error-aware retry/backoff. Package name: s3vault.
"""

__version__ = "0.1.0"

# Configuration creation (user-facing API)
from s3vault.builder import create_config

# Core functions
from s3vault.core import (
    delete_object,
    download_bytes,
    download_file,
    get_status,
    initialize_store_state,
    list_objects,
    shutdown_store_state,
    upload_bytes,
    upload_file,
    upload_stream,
)

# Environment-based configuration and profiles (additional helpers)
from s3vault.env import (
    compliance_friendly,
    create_config_from_env,
    high_throughput,
    safe_defaults,
)

__all__ = [
    # Version
    "__version__",
    # Configuration creation (primary user-facing APIs)
    "create_config",
    "create_config_from_env",
    "safe_defaults",
    "high_throughput",
    "compliance_friendly",
    # Core functions
    "initialize_store_state",
    "shutdown_store_state",
    "upload_bytes",
    "upload_stream",
    "upload_file",
    "download_bytes",
    "download_file",
    "delete_object",
    "list_objects",
    "get_status",
]

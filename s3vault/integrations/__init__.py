# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Framework Integrations - FastAPI admin endpoints and lifespan.
"""

from s3vault.integrations.fastapi import (
    get_s3vault_state,
    register_s3vault_routes,
    s3vault_lifespan,
    verify_api_key,
)

__all__ = [
    "get_s3vault_state",
    "register_s3vault_routes",
    "s3vault_lifespan",
    "verify_api_key",
]

# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
s3vault FastAPI Integration - Admin endpoints for a host application.

This module provides:
- Lifespan management (startup/shutdown)
- Protected admin endpoints (metrics scrape, status, health, config)
"""

import os
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime, UTC

import structlog
from fastapi import Depends, FastAPI, HTTPException, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from prometheus_client import CONTENT_TYPE_LATEST

from s3vault.clients import ClientFactory
from s3vault.config import StoreConfig
from s3vault.core import (
    StoreState,
    describe_config,
    get_status,
    initialize_store_state,
    shutdown_store_state,
)
from s3vault.exceptions import S3VaultError
from s3vault.metrics import MetricsRecorder

logger = structlog.get_logger()

# Security
security = HTTPBearer(auto_error=False)


async def verify_api_key(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> bool:
    """
    Verify API key from Authorization header.

    The API key is read from the S3VAULT_ADMIN_API_KEY environment variable.
    Requests must include: Authorization: Bearer <api_key>

    Raises:
        HTTPException: If API key is missing or invalid
    """
    api_key = os.getenv("S3VAULT_ADMIN_API_KEY")

    if not api_key:
        raise HTTPException(
            status_code=500,
            detail="S3VAULT_ADMIN_API_KEY environment variable not set",
        )

    if not credentials:
        raise HTTPException(
            status_code=401,
            detail="Authorization header required",
        )

    if credentials.credentials != api_key:
        raise HTTPException(
            status_code=403,
            detail="Invalid API key",
        )

    return True


def register_s3vault_routes(
    app: FastAPI,
    config: StoreConfig,
    state: StoreState,
    prefix: str = "/admin/s3vault",
) -> None:
    """
    Register s3vault admin endpoints on a FastAPI app.

    All endpoints require Bearer token authentication.

    Args:
        app: FastAPI application
        config: Backend configuration
        state: Runtime state
        prefix: URL prefix for endpoints (default: /admin/s3vault)
    """

    @app.get(f"{prefix}/metrics", dependencies=[Depends(verify_api_key)])
    async def scrape_metrics() -> Response:
        """Prometheus text exposition of request, retry and transfer metrics."""
        return Response(content=state["metrics"].render(), media_type=CONTENT_TYPE_LATEST)

    @app.get(f"{prefix}/status", dependencies=[Depends(verify_api_key)])
    async def store_status() -> dict:
        """
        Get current transfer counters.

        Returns totals, credential source and the last error seen.
        """
        status = await get_status(state)
        result = asdict(status)
        for name in ("credentials_expiry", "started_at", "last_operation_at"):
            value = result[name]
            result[name] = value.isoformat() if value else None
        return result

    @app.get(f"{prefix}/health", dependencies=[Depends(verify_api_key)])
    async def health_check() -> dict:
        """
        Health check endpoint.

        Verifies credentials can be obtained and the bucket is reachable.
        """
        credentials_ok = False
        bucket_ok = False
        error = None
        try:
            await state["credentials"].current()
            credentials_ok = True
            await state["store"].head_bucket()
            bucket_ok = True
        except S3VaultError as e:
            error = str(e)

        status = "healthy"
        if not bucket_ok:
            status = "degraded" if credentials_ok else "unhealthy"

        return {
            "status": status,
            "credentials_available": credentials_ok,
            "bucket_reachable": bucket_ok,
            "error": error,
            "timestamp": datetime.now(UTC).isoformat(),
        }

    @app.get(f"{prefix}/config", dependencies=[Depends(verify_api_key)])
    async def get_config() -> dict:
        """
        Get current configuration (sensitive values redacted).
        """
        return describe_config(config)


@asynccontextmanager
async def s3vault_lifespan(
    app: FastAPI,
    config: StoreConfig,
    *,
    prefix: str = "/admin/s3vault",
    client_factory: ClientFactory | None = None,
    metrics: MetricsRecorder | None = None,
):
    """
    Lifespan context manager for FastAPI.

        app = FastAPI(lifespan=lambda app: s3vault_lifespan(app, config))

    Args:
        app: FastAPI application
        config: Backend configuration
        prefix: URL prefix for admin endpoints
    """
    logger.info("s3vault_lifespan_starting", bucket=config.bucket)

    state = await initialize_store_state(
        config, client_factory=client_factory, metrics=metrics
    )
    app.state.s3vault_state = state
    app.state.s3vault_config = config

    register_s3vault_routes(app, config, state, prefix)

    logger.info("s3vault_lifespan_started")

    try:
        yield
    finally:
        logger.info("s3vault_lifespan_stopping")
        await shutdown_store_state(state)
        logger.info("s3vault_lifespan_stopped")


def get_s3vault_state(app: FastAPI) -> StoreState:
    """
    Get s3vault state from a FastAPI app.

    Useful for accessing state in custom endpoints.

    Raises:
        RuntimeError: If s3vault is not initialized
    """
    state = getattr(app.state, "s3vault_state", None)
    if not state:
        raise RuntimeError("s3vault not initialized. Use s3vault_lifespan first.")
    return state

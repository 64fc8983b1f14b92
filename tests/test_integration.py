# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Integration Tests for s3vault.

These tests verify the integration between components:
- High-level transfer API over the full component stack
- FastAPI endpoints
"""

import os
from pathlib import Path

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from fakes import byte_stream, client_error
from s3vault.core import (
    delete_object,
    download_bytes,
    download_file,
    get_status,
    list_all_objects,
    list_objects,
    upload_bytes,
    upload_file,
    upload_stream,
)
from s3vault.exceptions import CorruptionError, NotFoundError
from s3vault.integrations.fastapi import register_s3vault_routes

AUTH = {"Authorization": "Bearer test-api-key-12345"}
KiB = 1024


# ============================================================================
# High-level API
# ============================================================================

@pytest.mark.asyncio
async def test_upload_download_delete_cycle(store_state):
    data = os.urandom(150 * KiB)

    result = await upload_stream(store_state, "backup/1/region-7.sst", byte_stream(data))
    assert result.parts == 3
    assert await download_bytes(store_state, "backup/1/region-7.sst") == data

    await delete_object(store_state, "backup/1/region-7.sst")
    with pytest.raises(NotFoundError):
        await download_bytes(store_state, "backup/1/region-7.sst")


@pytest.mark.asyncio
async def test_file_round_trip_with_encryption(encrypted_state, temp_dir: Path):
    source = temp_dir / "in.sst"
    target = temp_dir / "restore" / "out.sst"
    data = os.urandom(100 * KiB + 3)
    source.write_bytes(data)

    result = await upload_file(encrypted_state, "backup/file.sst", source)
    written = await download_file(encrypted_state, "backup/file.sst", target)

    assert result.encrypted
    assert written == target
    assert target.read_bytes() == data
    assert not (temp_dir / "restore" / "out.sst.partial").exists()


@pytest.mark.asyncio
async def test_corrupt_download_leaves_no_file(store_state, fake_s3, temp_dir: Path):
    await upload_bytes(store_state, "meta", b"backup meta")
    fake_s3.corrupt("test-bucket", "meta")
    target = temp_dir / "meta"

    with pytest.raises(CorruptionError):
        await download_file(store_state, "meta", target)

    assert not target.exists()
    assert store_state["last_error"]


@pytest.mark.asyncio
async def test_failed_local_write_removes_partial_file(store_state, temp_dir: Path, monkeypatch):
    await upload_bytes(store_state, "meta", b"backup meta")
    target = temp_dir / "meta"

    def disk_full(self, target):
        raise OSError(28, "No space left on device")

    monkeypatch.setattr(Path, "replace", disk_full)

    with pytest.raises(OSError):
        await download_file(store_state, "meta", target)

    assert not target.exists()
    assert not (temp_dir / "meta.partial").exists()
    assert "No space left" in store_state["last_error"]


@pytest.mark.asyncio
async def test_list_objects(store_state):
    for name in ("a", "b", "c"):
        await upload_bytes(store_state, f"backup/{name}", name.encode())

    keys = [key.path async for key in list_objects(store_state, "backup/")]

    assert keys == ["backup/a", "backup/b", "backup/c"]
    assert len(await list_all_objects(store_state)) == 3


@pytest.mark.asyncio
async def test_status_counters(store_state):
    await upload_bytes(store_state, "one", b"12345")
    await download_bytes(store_state, "one")

    status = await get_status(store_state)

    assert status.total_uploads == 1
    assert status.total_downloads == 1
    assert status.bytes_uploaded == 5
    assert status.credential_source == "static"
    assert status.credential_refreshes == 1
    assert status.last_error is None


# ============================================================================
# FastAPI Integration Tests
# ============================================================================

def make_app(state) -> FastAPI:
    app = FastAPI()
    register_s3vault_routes(app, state["config"], state)
    return app


@pytest.mark.asyncio
async def test_fastapi_metrics_endpoint(store_state):
    await upload_bytes(store_state, "scraped", b"data")
    app = make_app(store_state)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/admin/s3vault/metrics", headers=AUTH)

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert 's3vault_requests_total{operation="put_object",outcome="success"} 1.0' in response.text


@pytest.mark.asyncio
async def test_fastapi_status_endpoint(store_state):
    await upload_bytes(store_state, "one", b"12345")
    app = make_app(store_state)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/admin/s3vault/status", headers=AUTH)

    assert response.status_code == 200
    data = response.json()
    assert data["bucket"] == "test-bucket"
    assert data["total_uploads"] == 1
    assert data["last_operation_at"] is not None


@pytest.mark.asyncio
async def test_fastapi_health_endpoint(store_state, fake_s3):
    app = make_app(store_state)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        healthy = await client.get("/admin/s3vault/health", headers=AUTH)
        fake_s3.fail("head_bucket", client_error("AccessDenied", 403, "HeadBucket"))
        degraded = await client.get("/admin/s3vault/health", headers=AUTH)

    assert healthy.json()["status"] == "healthy"
    assert degraded.json()["status"] == "degraded"
    assert degraded.json()["credentials_available"] is True
    assert degraded.json()["bucket_reachable"] is False


@pytest.mark.asyncio
async def test_fastapi_config_endpoint_redacts_secrets(store_state):
    app = make_app(store_state)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/admin/s3vault/config", headers=AUTH)

    data = response.json()
    assert response.status_code == 200
    assert data["bucket"] == "test-bucket"
    assert data["secret_access_key"] == "***"
    assert data["credential_source"] == "static"
    assert "test-secret" not in response.text


@pytest.mark.asyncio
async def test_fastapi_unauthorized_access(store_state):
    app = make_app(store_state)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        missing = await client.get("/admin/s3vault/status")
        wrong = await client.get(
            "/admin/s3vault/status", headers={"Authorization": "Bearer wrong-key"}
        )

    assert missing.status_code == 401
    assert wrong.status_code == 403

# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Example FastAPI Application with s3vault Integration.

A small backup-receiving service: backup files are streamed into the
bucket with envelope encryption, and the admin endpoints expose metrics
and health.

Run with:
    uvicorn examples.basic_app:app --reload

Environment variables:
    S3VAULT_BUCKET: Bucket holding the backups
    S3VAULT_MASTER_KEY_ID: KMS key wrapping the per-object data keys
    S3VAULT_ROLE_ARN: Role to assume for credentials (optional)
    S3VAULT_ADMIN_API_KEY: API key for admin endpoints
"""

from fastapi import FastAPI, HTTPException, Request

from s3vault.core import download_bytes, upload_stream
from s3vault.env import compliance_friendly, create_config_from_env
from s3vault.exceptions import CorruptionError, NotFoundError
from s3vault.integrations.fastapi import get_s3vault_state, s3vault_lifespan

config = compliance_friendly(create_config_from_env())

app = FastAPI(
    title="Backup receiver with s3vault",
    description="Example application streaming backups into an encrypted bucket",
    version="1.0.0",
    lifespan=lambda app: s3vault_lifespan(app, config),
)


@app.put("/backups/{path:path}")
async def put_backup(path: str, request: Request) -> dict:
    """Stream the request body into the bucket."""
    state = get_s3vault_state(app)
    result = await upload_stream(state, path, request.stream())
    return {
        "operation_id": result.operation_id,
        "etag": result.etag,
        "parts": result.parts,
        "size": result.plaintext_size,
        "encrypted": result.encrypted,
    }


@app.get("/backups/{path:path}")
async def get_backup(path: str) -> dict:
    """Return the size of a verified, decrypted backup file."""
    state = get_s3vault_state(app)
    try:
        data = await download_bytes(state, path)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Backup not found")
    except CorruptionError as e:
        raise HTTPException(status_code=502, detail=e.message)
    return {"path": path, "size": len(data)}

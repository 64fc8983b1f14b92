# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
s3vault Core - Process-wide state and the high-level transfer API.

This module wires the components together (client factory, credential
provider, backoff controller, key management, encryptor, object store,
multipart manager) and exposes the calls the backup pipeline makes.
"""

import time
from dataclasses import dataclass
from datetime import datetime, UTC
from pathlib import Path
from typing import Any, AsyncIterable, AsyncIterator, List, TypedDict

import aiofiles
import structlog

from s3vault.backoff import BackoffController, BackoffPolicy
from s3vault.clients import AioClientFactory, ClientFactory
from s3vault.config import StorageClass, StoreConfig
from s3vault.credentials import CredentialProvider, build_credential_source
from s3vault.crypto import EnvelopeEncryptor
from s3vault.exceptions import ConfigError
from s3vault.faults import FaultHooks, NoFaults
from s3vault.kms import KeyManagementClient
from s3vault.metrics import DIRECTION_DOWNLOAD, MetricsRecorder, get_metrics_recorder
from s3vault.models import ObjectKey, UploadResult
from s3vault.multipart import MultipartUploadManager
from s3vault.objstore import ObjectStoreClient

logger = structlog.get_logger()


@dataclass
class StoreStatus:
    """Snapshot of the backend's runtime counters."""

    bucket: str
    region: str
    credential_source: str
    credentials_expiry: datetime | None
    credential_refreshes: int
    total_uploads: int
    total_downloads: int
    bytes_uploaded: int
    bytes_downloaded: int
    started_at: datetime
    last_operation_at: datetime | None
    last_error: str | None


class StoreState(TypedDict):
    """Runtime state for the object-store backend."""

    config: StoreConfig
    client_factory: ClientFactory
    metrics: MetricsRecorder
    faults: FaultHooks
    controller: BackoffController
    credentials: CredentialProvider
    kms: KeyManagementClient
    encryptor: EnvelopeEncryptor
    store: ObjectStoreClient
    uploads: MultipartUploadManager
    started_at: datetime
    last_operation_at: datetime | None
    total_uploads: int
    total_downloads: int
    bytes_uploaded: int
    bytes_downloaded: int
    last_error: str | None


async def initialize_store_state(
    config: StoreConfig,
    *,
    faults: FaultHooks | None = None,
    client_factory: ClientFactory | None = None,
    metrics: MetricsRecorder | None = None,
) -> StoreState:
    """
    Initialize runtime state for object-store operations.

    No network call is made here; credentials are fetched lazily on the
    first request.

    Args:
        config: Backend configuration
        faults: Fault hooks (tests only)
        client_factory: Wire client factory; aiobotocore by default
        metrics: Metrics recorder; the process-wide one by default

    Returns:
        Initialized StoreState dictionary
    """
    faults = faults or NoFaults()
    client_factory = client_factory or AioClientFactory(config)
    metrics = metrics or get_metrics_recorder()
    controller = BackoffController(policy=BackoffPolicy.from_config(config))

    credentials = CredentialProvider(
        build_credential_source(config, client_factory, faults),
        controller=controller,
        metrics=metrics,
        refresh_margin=config.refresh_margin,
        request_timeout=config.request_timeout,
    )
    kms = KeyManagementClient(
        credentials=credentials,
        client_factory=client_factory,
        controller=controller,
        metrics=metrics,
        faults=faults,
        request_timeout=config.request_timeout,
    )
    encryptor = EnvelopeEncryptor(kms, chunk_size=config.cipher_chunk_size)
    store = ObjectStoreClient(
        config,
        credentials=credentials,
        client_factory=client_factory,
        controller=controller,
        metrics=metrics,
        faults=faults,
    )
    uploads = MultipartUploadManager(
        config,
        store=store,
        metrics=metrics,
        encryptor=encryptor,
    )

    logger.info(
        "store_state_initialized",
        bucket=config.bucket,
        region=config.region,
        credential_source=config.credential_source.value,
        encrypt_objects=config.encrypt_objects,
    )

    return StoreState(
        config=config,
        client_factory=client_factory,
        metrics=metrics,
        faults=faults,
        controller=controller,
        credentials=credentials,
        kms=kms,
        encryptor=encryptor,
        store=store,
        uploads=uploads,
        started_at=datetime.now(UTC),
        last_operation_at=None,
        total_uploads=0,
        total_downloads=0,
        bytes_uploaded=0,
        bytes_downloaded=0,
        last_error=None,
    )


def _key(state: StoreState, path: str, storage_class: StorageClass | None = None) -> ObjectKey:
    return state["store"].object_key(path, storage_class)


def _record_upload(state: StoreState, result: UploadResult) -> UploadResult:
    state["total_uploads"] += 1
    state["bytes_uploaded"] += result.size
    state["last_operation_at"] = datetime.now(UTC)
    return result


def _record_failure(state: StoreState, operation: str, path: str, error: Exception) -> None:
    state["last_error"] = str(error)
    logger.error(f"{operation}_failed", path=path, error=str(error))


async def upload_stream(
    state: StoreState,
    path: str,
    data: AsyncIterable[bytes],
    *,
    storage_class: StorageClass | None = None,
    encrypt: bool | None = None,
) -> UploadResult:
    """
    Upload a byte stream of unknown length.

    Streams larger than one part go through a multipart session; the
    session is aborted if any part fails.
    """
    try:
        result = await state["uploads"].upload(
            _key(state, path, storage_class), data, encrypt=encrypt
        )
    except Exception as e:
        _record_failure(state, "upload", path, e)
        raise
    return _record_upload(state, result)


async def upload_bytes(
    state: StoreState,
    path: str,
    data: bytes,
    *,
    storage_class: StorageClass | None = None,
    encrypt: bool | None = None,
) -> UploadResult:
    """Upload an in-memory object."""
    try:
        result = await state["uploads"].upload(
            _key(state, path, storage_class), data, encrypt=encrypt
        )
    except Exception as e:
        _record_failure(state, "upload", path, e)
        raise
    return _record_upload(state, result)


async def upload_file(
    state: StoreState,
    path: str,
    source: str | Path,
    *,
    storage_class: StorageClass | None = None,
    encrypt: bool | None = None,
) -> UploadResult:
    """Upload a local file, streamed from disk."""
    try:
        result = await state["uploads"].upload_file(
            _key(state, path, storage_class), source, encrypt=encrypt
        )
    except Exception as e:
        _record_failure(state, "upload", path, e)
        raise
    return _record_upload(state, result)


async def download_bytes(state: StoreState, path: str) -> bytes:
    """
    Fetch an object, verify it and decrypt it when it carries an
    encryption context.

    Raises:
        NotFoundError: The object does not exist
        CorruptionError: Checksum or authentication failure
    """
    started = time.monotonic()
    try:
        result = await state["store"].get(_key(state, path))
        data = result.body
        if result.context is not None:
            data = await state["encryptor"].open_bytes(result.body, result.context)
    except Exception as e:
        _record_failure(state, "download", path, e)
        raise

    duration = time.monotonic() - started
    state["metrics"].record_transfer(DIRECTION_DOWNLOAD, duration)
    state["total_downloads"] += 1
    state["bytes_downloaded"] += len(result.body)
    state["last_operation_at"] = datetime.now(UTC)

    logger.info(
        "object_downloaded",
        key=str(result.key),
        size=len(data),
        encrypted=result.context is not None,
        duration=round(duration, 3),
    )
    return data


async def download_file(state: StoreState, path: str, destination: str | Path) -> Path:
    """
    Download an object into a local file.

    The file is written next to the destination and renamed into place
    only after every byte has been verified.
    """
    destination = Path(destination)
    if destination.is_dir():
        raise ConfigError(f"Destination is a directory: {destination}")

    data = await download_bytes(state, path)

    destination.parent.mkdir(parents=True, exist_ok=True)
    partial = destination.with_name(destination.name + ".partial")
    try:
        async with aiofiles.open(partial, "wb") as f:
            await f.write(data)
        partial.replace(destination)
    except OSError as e:
        partial.unlink(missing_ok=True)
        _record_failure(state, "download", path, e)
        raise
    return destination


async def delete_object(state: StoreState, path: str) -> None:
    """Delete an object; deleting a missing object is not an error."""
    try:
        await state["store"].delete(_key(state, path))
    except Exception as e:
        _record_failure(state, "delete", path, e)
        raise
    state["last_operation_at"] = datetime.now(UTC)
    logger.info("object_deleted", path=path)


async def list_objects(
    state: StoreState,
    prefix: str = "",
    *,
    start_token: str | None = None,
) -> AsyncIterator[ObjectKey]:
    """Lazily iterate keys under `prefix` (relative to the configured prefix)."""
    async for key in state["store"].list(prefix, start_token):
        yield key


async def list_all_objects(state: StoreState, prefix: str = "") -> List[ObjectKey]:
    return [key async for key in list_objects(state, prefix)]


async def get_status(state: StoreState) -> StoreStatus:
    """Get current runtime counters."""
    config = state["config"]
    snapshot = state["credentials"].snapshot
    return StoreStatus(
        bucket=config.bucket,
        region=config.region,
        credential_source=state["credentials"].source_name,
        credentials_expiry=snapshot.expiry if snapshot else None,
        credential_refreshes=state["credentials"].refresh_count,
        total_uploads=state["total_uploads"],
        total_downloads=state["total_downloads"],
        bytes_uploaded=state["bytes_uploaded"],
        bytes_downloaded=state["bytes_downloaded"],
        started_at=state["started_at"],
        last_operation_at=state["last_operation_at"],
        last_error=state["last_error"],
    )


async def shutdown_store_state(state: StoreState) -> None:
    """Cleanup resources."""
    state["credentials"].invalidate()
    logger.info(
        "store_state_shutdown_complete",
        uploads=state["total_uploads"],
        downloads=state["total_downloads"],
    )


def describe_config(config: StoreConfig) -> dict[str, Any]:
    """Config as plain values with secrets redacted."""
    from dataclasses import asdict
    from enum import Enum

    redacted = {"secret_access_key", "session_token", "external_id"}
    values: dict[str, Any] = {}
    for name, value in asdict(config).items():
        if name in redacted:
            value = "***" if value else None
        elif isinstance(value, Enum):
            value = value.value
        values[name] = value
    return values

# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
s3vault Multipart Upload Manager - Large-object transfer orchestration.

Session lifecycle:
    OPEN -> (part uploads) -> COMPLETING -> COMPLETED
    OPEN -> ABORTED   (a part gave up, the caller cancelled, or timed out)

upload() cuts the input stream into part_size parts and feeds them to a
fixed pool of workers through a bounded queue, so at most a handful of
parts are held in memory. Each part retries on its own through the
object store's retry path. The first part that gives up aborts the whole
session: the remaining workers are cancelled, one abort call releases the
server-side parts, and the part's error is raised.
"""

import asyncio
import time
from pathlib import Path
from typing import AsyncIterable, AsyncIterator, Tuple

import aiofiles
import structlog
from ulid import ULID

from s3vault.config import CompletionPolicy, MiB, ServerSideEncryption, StoreConfig
from s3vault.crypto import EnvelopeEncryptor, sealed_size
from s3vault.exceptions import (
    AlreadyCompletedError,
    ConfigError,
    NotFoundError,
    S3VaultError,
    SessionStateError,
)
from s3vault.metrics import DIRECTION_UPLOAD, MetricsRecorder
from s3vault.models import (
    META_PART_SIZE,
    ObjectKey,
    PartResult,
    SessionState,
    UploadResult,
    UploadSession,
)
from s3vault.objstore import ObjectStoreClient, composite_etag

logger = structlog.get_logger()

Part = Tuple[int, bytes, bool]  # (part number, data, is last part)

FILE_READ_BLOCK = 1 * MiB


async def as_stream(data: bytes | AsyncIterable[bytes]) -> AsyncIterator[bytes]:
    """Accept raw bytes or an async byte stream."""
    if isinstance(data, (bytes, bytearray, memoryview)):
        yield bytes(data)
        return
    async for block in data:
        yield block


async def iter_file(path: Path, block_size: int = FILE_READ_BLOCK) -> AsyncIterator[bytes]:
    """Stream a local file without loading it whole."""
    async with aiofiles.open(path, "rb") as f:
        while True:
            block = await f.read(block_size)
            if not block:
                return
            yield block


async def iter_parts(stream: AsyncIterable[bytes], part_size: int) -> AsyncIterator[Part]:
    """
    Cut a stream into numbered parts of exactly part_size bytes.

    The last part may be shorter and is flagged; an empty stream yields a
    single empty last part.
    """
    buffer = bytearray()
    number = 1
    async for block in stream:
        buffer.extend(block)
        # A full part is only known not to be last once a byte follows it
        while len(buffer) > part_size:
            yield (number, bytes(buffer[:part_size]), False)
            del buffer[:part_size]
            number += 1
    yield (number, bytes(buffer), True)


def _first_error(group: BaseExceptionGroup) -> BaseException:
    error: BaseException = group
    while isinstance(error, BaseExceptionGroup):
        error = error.exceptions[0]
    return error


class MultipartUploadManager:
    """Creates, drives, completes and aborts multipart upload sessions."""

    def __init__(
        self,
        config: StoreConfig,
        *,
        store: ObjectStoreClient,
        metrics: MetricsRecorder,
        encryptor: EnvelopeEncryptor | None = None,
    ):
        self.config = config
        self._store = store
        self._metrics = metrics
        self._encryptor = encryptor

    # ------------------------------------------------------------------
    # High-level transfer
    # ------------------------------------------------------------------

    async def upload(
        self,
        key: ObjectKey,
        data: bytes | AsyncIterable[bytes],
        *,
        encrypt: bool | None = None,
    ) -> UploadResult:
        """
        Upload a byte stream, multipart when it exceeds one part.

        Args:
            key: Destination object
            data: Bytes or an async iterable of byte blocks
            encrypt: Override config.encrypt_objects for this object

        Returns:
            UploadResult describing the stored object
        """
        encrypt = self._resolve_encrypt(key, encrypt)

        parts = iter_parts(as_stream(data), self.config.part_size)
        try:
            first = await anext(parts)
            if first[2]:
                return await self._put_single(key, first[1], encrypt)

            session = await self.begin(key, encrypt=encrypt)
            try:
                await self._upload_parts(session, first, parts)
                return await self.complete(session)
            except (Exception, asyncio.CancelledError):
                if session.state != SessionState.COMPLETED:
                    # Abort runs to completion even when the caller is cancelled
                    await asyncio.shield(self.abort(session))
                raise
        finally:
            await parts.aclose()

    async def upload_file(
        self,
        key: ObjectKey,
        path: str | Path,
        *,
        encrypt: bool | None = None,
    ) -> UploadResult:
        """Upload a local file, streamed from disk."""
        path = Path(path)
        if not path.is_file():
            raise ConfigError(f"Not a file: {path}", details={"key": str(key)})
        return await self.upload(key, iter_file(path), encrypt=encrypt)

    async def _put_single(self, key: ObjectKey, data: bytes, encrypt: bool) -> UploadResult:
        operation_id = str(ULID())
        started = time.monotonic()

        body, context = data, None
        if encrypt:
            data_key, context = await self._encryptor.new_context(self.config.master_key_id)
            body = await self._encryptor.seal_part(data_key, context, data, first_chunk=0, final=True)
            del data_key

        etag = await self._store.put(key, body, context)
        duration = time.monotonic() - started
        self._metrics.record_transfer(DIRECTION_UPLOAD, duration)

        logger.info(
            "object_uploaded",
            operation_id=operation_id,
            key=str(key),
            size=len(body),
            encrypted=encrypt,
            duration=round(duration, 3),
        )
        return UploadResult(
            operation_id=operation_id,
            key=key,
            etag=etag,
            size=len(body),
            plaintext_size=len(data),
            parts=0,
            encrypted=encrypt,
            duration_seconds=duration,
        )

    async def _upload_parts(
        self,
        session: UploadSession,
        first: Part,
        rest: AsyncIterator[Part],
    ) -> None:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.config.upload_concurrency)

        async def worker() -> None:
            while True:
                item = await queue.get()
                if item is None:
                    return
                number, data, last = item
                await self.upload_part(session, number, data, final=last)

        try:
            async with asyncio.TaskGroup() as group:
                workers = [
                    group.create_task(worker())
                    for _ in range(self.config.upload_concurrency)
                ]
                await queue.put(first)
                async for part in rest:
                    await queue.put(part)
                for _ in workers:
                    await queue.put(None)
        except BaseExceptionGroup as group_error:
            raise _first_error(group_error) from None

    # ------------------------------------------------------------------
    # Session operations
    # ------------------------------------------------------------------

    def _resolve_encrypt(self, key: ObjectKey, encrypt: bool | None) -> bool:
        """Per-object override, else config.encrypt_objects."""
        encrypt = self.config.encrypt_objects if encrypt is None else encrypt
        if encrypt and (self._encryptor is None or not self.config.master_key_id):
            raise ConfigError(
                "Encryption requested but no encryptor/master key is configured",
                details={"key": str(key)},
            )
        return encrypt

    def _stored_part_size(self, session_encrypted: bool, chunk_size: int) -> int:
        if session_encrypted:
            return sealed_size(self.config.part_size, chunk_size)
        return self.config.part_size

    async def begin(self, key: ObjectKey, *, encrypt: bool | None = None) -> UploadSession:
        """
        Open a multipart session (and its data key when encrypting).

        encrypt=None follows config.encrypt_objects.
        """
        encrypt = self._resolve_encrypt(key, encrypt)
        operation_id = str(ULID())
        data_key, context = None, None
        if encrypt:
            data_key, context = await self._encryptor.new_context(self.config.master_key_id)
            if self.config.part_size % context.chunk_size != 0:
                raise ConfigError(
                    "part_size must be a multiple of the cipher chunk size",
                    details={"part_size": self.config.part_size, "chunk_size": context.chunk_size},
                )

        metadata = {
            META_PART_SIZE: str(
                self._stored_part_size(encrypt, context.chunk_size if context else 0)
            )
        }
        if context is not None:
            metadata.update(context.to_metadata())

        upload_id = await self._store.create_multipart_upload(key, metadata)
        session = UploadSession(
            upload_id=upload_id,
            key=key,
            operation_id=operation_id,
            context=context,
            data_key=data_key,
        )
        logger.info(
            "multipart_started",
            operation_id=operation_id,
            key=str(key),
            upload_id=upload_id,
            encrypted=encrypt,
        )
        return session

    async def upload_part(
        self,
        session: UploadSession,
        part_number: int,
        data: bytes,
        *,
        final: bool = False,
    ) -> PartResult:
        """
        Seal (when encrypting) and upload one part.

        Every part but the last must be exactly part_size bytes so cipher
        chunks and checksums line up across parts.
        """
        if session.state != SessionState.OPEN:
            raise SessionStateError(
                f"Cannot upload a part to a {session.state.value} session",
                details={"upload_id": session.upload_id, "part_number": part_number},
            )
        if not 1 <= part_number <= self.config.max_parts:
            raise ConfigError(
                f"Part number must be 1-{self.config.max_parts}, got {part_number}",
                details={"key": str(session.key)},
            )
        if not final and len(data) != self.config.part_size:
            raise ConfigError(
                "Only the last part may differ from part_size",
                details={"part_number": part_number, "size": len(data)},
            )

        if session.context is not None:
            # A nonce range is sealed at most once per data key
            if part_number in session.sealed_parts:
                raise SessionStateError(
                    f"Part {part_number} was already sealed in this encrypted session",
                    details={"upload_id": session.upload_id, "part_number": part_number},
                )
            session.sealed_parts.add(part_number)

        session.outstanding += 1
        try:
            body = data
            if session.context is not None:
                chunks_per_part = self.config.part_size // session.context.chunk_size
                body = await self._encryptor.seal_part(
                    session.data_key,
                    session.context,
                    data,
                    first_chunk=(part_number - 1) * chunks_per_part,
                    final=final,
                )
            result = await self._store.upload_part(
                session.key, session.upload_id, part_number, body
            )
        except (Exception, asyncio.CancelledError):
            session.failed = True
            raise
        finally:
            session.outstanding -= 1

        previous = session.parts.get(part_number)
        if previous is not None:
            session.plaintext_size -= previous.size
        session.parts[part_number] = result
        session.plaintext_size += len(data)
        logger.debug(
            "part_uploaded",
            operation_id=session.operation_id,
            part_number=part_number,
            size=result.size,
        )
        return result

    async def complete(self, session: UploadSession) -> UploadResult:
        """
        Assemble the ordered part list and materialize the object.

        Re-invoking on a completed session returns the recorded result
        under the detect_completed policy and raises AlreadyCompletedError
        under strict.
        """
        if session.state == SessionState.COMPLETED:
            if self.config.completion_policy == CompletionPolicy.DETECT_COMPLETED:
                logger.info(
                    "multipart_already_completed",
                    operation_id=session.operation_id,
                    upload_id=session.upload_id,
                )
                return session.result
            raise AlreadyCompletedError(
                "Multipart session already completed",
                details={"upload_id": session.upload_id, "key": str(session.key)},
            )
        if session.state != SessionState.OPEN:
            raise SessionStateError(
                f"Cannot complete a {session.state.value} session",
                details={"upload_id": session.upload_id, "key": str(session.key)},
            )
        if session.outstanding or session.failed:
            raise SessionStateError(
                "Cannot complete while parts are outstanding or failed",
                details={
                    "upload_id": session.upload_id,
                    "outstanding": session.outstanding,
                    "failed": session.failed,
                },
            )

        parts = session.ordered_parts()
        if not parts:
            raise SessionStateError(
                "Cannot complete a session without parts",
                details={"upload_id": session.upload_id},
            )

        session.state = SessionState.COMPLETING
        expected_etag = composite_etag([part.checksum for part in parts])
        stored_size = sum(part.size for part in parts)
        try:
            etag = await self._store.complete_multipart_upload(
                session.key, session.upload_id, parts
            )
        except NotFoundError as e:
            if (
                e.details.get("code") != "NoSuchUpload"
                or self.config.completion_policy != CompletionPolicy.DETECT_COMPLETED
            ):
                session.state = SessionState.OPEN
                raise
            etag = await self._confirm_completed(session, expected_etag, stored_size, e)
        except (Exception, asyncio.CancelledError):
            session.state = SessionState.OPEN
            raise

        duration = time.monotonic() - session.started_at
        session.state = SessionState.COMPLETED
        session.data_key = None
        session.result = UploadResult(
            operation_id=session.operation_id,
            key=session.key,
            etag=etag,
            size=stored_size,
            plaintext_size=session.plaintext_size,
            parts=len(parts),
            encrypted=session.context is not None,
            duration_seconds=duration,
        )
        self._metrics.record_transfer(DIRECTION_UPLOAD, duration)

        logger.info(
            "multipart_completed",
            operation_id=session.operation_id,
            key=str(session.key),
            parts=len(parts),
            size=stored_size,
            duration=round(duration, 3),
        )
        return session.result

    async def _confirm_completed(
        self,
        session: UploadSession,
        expected_etag: str,
        stored_size: int,
        error: NotFoundError,
    ) -> str:
        """
        NoSuchUpload on completion: a previous attempt may have succeeded.

        Accept the stored object only if it is the one this session built.
        """
        metadata = await self._store.head(session.key)
        if metadata is not None:
            if metadata.etag == expected_etag:
                logger.info(
                    "multipart_completion_confirmed",
                    operation_id=session.operation_id,
                    upload_id=session.upload_id,
                )
                return metadata.etag
            if (
                self.config.server_side_encryption == ServerSideEncryption.AWS_KMS
                and metadata.size == stored_size
            ):
                return metadata.etag

        session.state = SessionState.OPEN
        raise SessionStateError(
            "Upload disappeared and the stored object does not match it",
            details={"upload_id": session.upload_id, "key": str(session.key)},
        ) from error

    async def abort(self, session: UploadSession) -> None:
        """
        Abort a session and release its server-side parts.

        Issues at most one abort call per session; failures of that call
        are logged, not raised, since the caller is already failing.
        """
        if session.state == SessionState.ABORTED:
            return
        if session.state == SessionState.COMPLETED:
            raise SessionStateError(
                "Cannot abort a completed session",
                details={"upload_id": session.upload_id, "key": str(session.key)},
            )

        session.state = SessionState.ABORTED
        session.data_key = None
        try:
            await self._store.abort_multipart_upload(session.key, session.upload_id)
        except S3VaultError as e:
            logger.warning(
                "multipart_abort_failed",
                operation_id=session.operation_id,
                upload_id=session.upload_id,
                error=str(e),
            )
            return

        logger.info(
            "multipart_aborted",
            operation_id=session.operation_id,
            key=str(session.key),
            upload_id=session.upload_id,
            parts_uploaded=len(session.parts),
        )

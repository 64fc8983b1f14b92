# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
s3vault Object Store Client - Single-shot object operations.

Every call takes the current credentials snapshot, passes the
"before-sign" fault point, and runs through call_with_retry() under the
configured per-request timeout. get() verifies the returned bytes before
reporting success; a mismatch is a CorruptionError and is never retried.
"""

import base64
import hashlib
import re
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, TypeVar

import structlog

from s3vault.backoff import BackoffController, call_with_retry
from s3vault.clients import ClientFactory
from s3vault.config import ServerSideEncryption, StorageClass, StoreConfig
from s3vault.credentials import CredentialProvider
from s3vault.exceptions import CorruptionError, NotFoundError
from s3vault.faults import (
    AFTER_UPLOAD_PART,
    BEFORE_COMPLETE,
    BEFORE_SIGN,
    BEFORE_UPLOAD_PART,
    FaultHooks,
    NoFaults,
)
from s3vault.metrics import DIRECTION_DOWNLOAD, DIRECTION_UPLOAD, MetricsRecorder
from s3vault.models import (
    META_PART_SIZE,
    META_SHA256,
    EncryptionContext,
    GetResult,
    ListPage,
    ObjectKey,
    ObjectMetadata,
    PartResult,
)

logger = structlog.get_logger()

T = TypeVar("T")

_MD5_ETAG = re.compile(r"^[0-9a-f]{32}$")
_MULTIPART_ETAG = re.compile(r"^[0-9a-f]{32}-(\d+)$")


def md5_hex(data: bytes) -> str:
    return hashlib.md5(data).hexdigest()


def content_md5(data: bytes) -> str:
    """Base64 MD5 for the Content-MD5 request header."""
    return base64.b64encode(hashlib.md5(data).digest()).decode("ascii")


def composite_etag(part_md5s: List[str]) -> str:
    """ETag the store assigns to a completed multipart object."""
    digest = hashlib.md5(b"".join(bytes.fromhex(h) for h in part_md5s)).hexdigest()
    return f"{digest}-{len(part_md5s)}"


def normalize_etag(etag: str | None) -> str:
    return (etag or "").strip('"').lower()


def _storage_class(value: str | None) -> StorageClass | None:
    try:
        return StorageClass(value) if value else None
    except ValueError:
        return None


class ObjectStoreClient:
    """put / get / head / list / delete plus the multipart wire calls."""

    def __init__(
        self,
        config: StoreConfig,
        *,
        credentials: CredentialProvider,
        client_factory: ClientFactory,
        controller: BackoffController,
        metrics: MetricsRecorder,
        faults: FaultHooks | None = None,
    ):
        self.config = config
        self._credentials = credentials
        self._factory = client_factory
        self._controller = controller
        self._metrics = metrics
        self._faults = faults or NoFaults()

    def object_key(self, path: str, storage_class: StorageClass | None = None) -> ObjectKey:
        return ObjectKey(bucket=self.config.bucket, path=path, storage_class=storage_class)

    async def _call(
        self,
        operation: str,
        key: ObjectKey | None,
        request: Callable[[Any], Awaitable[T]],
    ) -> T:
        key_text = str(key) if key is not None else self.config.bucket

        async def attempt() -> T:
            credentials = await self._credentials.current()
            await self._faults.hit(BEFORE_SIGN, operation=operation, key=key_text)
            async with self._factory.create("s3", credentials) as s3:
                return await request(s3)

        return await call_with_retry(
            operation,
            attempt,
            controller=self._controller,
            metrics=self._metrics,
            key=key_text,
            timeout=self.config.request_timeout,
        )

    def _write_args(self, key: ObjectKey, metadata: Dict[str, str]) -> Dict[str, Any]:
        storage_class = key.storage_class or self.config.storage_class
        args: Dict[str, Any] = {
            "Bucket": key.bucket,
            "Key": self.config.object_name(key.path),
            "Metadata": metadata,
            "StorageClass": storage_class.value,
        }
        if self.config.server_side_encryption is not None:
            args["ServerSideEncryption"] = self.config.server_side_encryption.value
            if self.config.sse_kms_key_id:
                args["SSEKMSKeyId"] = self.config.sse_kms_key_id
        return args

    # ------------------------------------------------------------------
    # Single-shot operations
    # ------------------------------------------------------------------

    async def put(
        self,
        key: ObjectKey,
        data: bytes,
        context: EncryptionContext | None = None,
        metadata: Dict[str, str] | None = None,
    ) -> str:
        """Store `data` in one request; returns the ETag."""
        user_metadata = dict(metadata or {})
        user_metadata[META_SHA256] = hashlib.sha256(data).hexdigest()
        if context is not None:
            user_metadata.update(context.to_metadata())

        args = self._write_args(key, user_metadata)
        args["Body"] = data
        args["ContentMD5"] = content_md5(data)

        async def request(s3: Any) -> str:
            response = await s3.put_object(**args)
            return normalize_etag(response.get("ETag"))

        etag = await self._call("put_object", key, request)
        self._metrics.record_bytes(DIRECTION_UPLOAD, len(data))
        logger.debug("object_put", key=str(key), size=len(data), etag=etag)
        return etag

    async def get(self, key: ObjectKey) -> GetResult:
        """Fetch an object and verify its checksum."""
        name = self.config.object_name(key.path)

        async def request(s3: Any) -> GetResult:
            response = await s3.get_object(Bucket=key.bucket, Key=name)
            async with response["Body"] as stream:
                body = await stream.read()
            metadata = self._metadata_from_response(key, response)
            self._verify_checksum(
                key, body, metadata, response.get("ServerSideEncryption")
            )
            return GetResult(key=key, body=body, metadata=metadata)

        result = await self._call("get_object", key, request)
        self._metrics.record_bytes(DIRECTION_DOWNLOAD, len(result.body))
        return result

    async def head(self, key: ObjectKey) -> ObjectMetadata | None:
        """Metadata of an object, or None when it does not exist."""
        name = self.config.object_name(key.path)

        async def request(s3: Any) -> ObjectMetadata:
            response = await s3.head_object(Bucket=key.bucket, Key=name)
            return self._metadata_from_response(key, response)

        try:
            return await self._call("head_object", key, request)
        except NotFoundError:
            return None

    async def head_bucket(self) -> None:
        """Check the bucket is reachable with the current credentials."""

        async def request(s3: Any) -> None:
            await s3.head_bucket(Bucket=self.config.bucket)

        await self._call("head_bucket", None, request)

    async def delete(self, key: ObjectKey) -> None:
        name = self.config.object_name(key.path)

        async def request(s3: Any) -> None:
            await s3.delete_object(Bucket=key.bucket, Key=name)

        await self._call("delete_object", key, request)
        logger.debug("object_deleted", key=str(key))

    async def list_page(
        self,
        prefix: str = "",
        continuation_token: str | None = None,
    ) -> ListPage:
        """One page of keys under `prefix`, in store order."""
        if prefix:
            full_prefix = self.config.object_name(prefix)
        elif self.config.prefix:
            full_prefix = f"{self.config.prefix.rstrip('/')}/"
        else:
            full_prefix = ""

        args: Dict[str, Any] = {
            "Bucket": self.config.bucket,
            "Prefix": full_prefix,
            "MaxKeys": self.config.list_page_size,
        }
        if continuation_token:
            args["ContinuationToken"] = continuation_token

        async def request(s3: Any) -> Dict[str, Any]:
            return await s3.list_objects_v2(**args)

        response = await self._call("list_objects", None, request)
        keys = []
        for obj in response.get("Contents", []):
            path = self.config.strip_prefix(obj["Key"])
            if not path or path.startswith("/"):
                # Folder markers and keys outside the ObjectKey namespace
                logger.debug("list_key_skipped", key=obj["Key"])
                continue
            keys.append(
                ObjectKey(
                    bucket=self.config.bucket,
                    path=path,
                    storage_class=_storage_class(obj.get("StorageClass")),
                )
            )
        next_token = response.get("NextContinuationToken") if response.get("IsTruncated") else None
        return ListPage(keys=keys, next_token=next_token)

    async def list(
        self,
        prefix: str = "",
        start_token: str | None = None,
    ) -> AsyncIterator[ObjectKey]:
        """
        Lazily iterate every key under `prefix`.

        Pass a ListPage.next_token as `start_token` to resume an
        interrupted listing.
        """
        token = start_token
        while True:
            page = await self.list_page(prefix, token)
            for key in page.keys:
                yield key
            if page.next_token is None:
                return
            token = page.next_token

    # ------------------------------------------------------------------
    # Multipart wire calls
    # ------------------------------------------------------------------

    async def create_multipart_upload(
        self,
        key: ObjectKey,
        metadata: Dict[str, str] | None = None,
    ) -> str:
        args = self._write_args(key, dict(metadata or {}))

        async def request(s3: Any) -> str:
            response = await s3.create_multipart_upload(**args)
            return response["UploadId"]

        return await self._call("create_multipart_upload", key, request)

    async def upload_part(
        self,
        key: ObjectKey,
        upload_id: str,
        part_number: int,
        data: bytes,
    ) -> PartResult:
        name = self.config.object_name(key.path)
        checksum = md5_hex(data)
        header_md5 = content_md5(data)

        async def request(s3: Any) -> PartResult:
            await self._faults.hit(BEFORE_UPLOAD_PART, key=str(key), part_number=part_number)
            response = await s3.upload_part(
                Bucket=key.bucket,
                Key=name,
                UploadId=upload_id,
                PartNumber=part_number,
                Body=data,
                ContentMD5=header_md5,
            )
            await self._faults.hit(AFTER_UPLOAD_PART, key=str(key), part_number=part_number)
            return PartResult(
                part_number=part_number,
                etag=normalize_etag(response.get("ETag")),
                checksum=checksum,
                size=len(data),
            )

        result = await self._call("upload_part", key, request)
        self._metrics.record_bytes(DIRECTION_UPLOAD, len(data))
        return result

    async def complete_multipart_upload(
        self,
        key: ObjectKey,
        upload_id: str,
        parts: List[PartResult],
    ) -> str:
        name = self.config.object_name(key.path)
        manifest = {
            "Parts": [
                {"PartNumber": part.part_number, "ETag": f'"{part.etag}"'}
                for part in parts
            ]
        }

        async def request(s3: Any) -> str:
            await self._faults.hit(BEFORE_COMPLETE, key=str(key), upload_id=upload_id)
            response = await s3.complete_multipart_upload(
                Bucket=key.bucket,
                Key=name,
                UploadId=upload_id,
                MultipartUpload=manifest,
            )
            return normalize_etag(response.get("ETag"))

        return await self._call("complete_multipart_upload", key, request)

    async def abort_multipart_upload(self, key: ObjectKey, upload_id: str) -> None:
        name = self.config.object_name(key.path)

        async def request(s3: Any) -> None:
            await s3.abort_multipart_upload(Bucket=key.bucket, Key=name, UploadId=upload_id)

        await self._call("abort_multipart_upload", key, request)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _metadata_from_response(self, key: ObjectKey, response: Dict[str, Any]) -> ObjectMetadata:
        user_metadata = {k.lower(): v for k, v in (response.get("Metadata") or {}).items()}
        return ObjectMetadata(
            key=key,
            size=int(response.get("ContentLength", 0)),
            etag=normalize_etag(response.get("ETag")),
            last_modified=response.get("LastModified"),
            storage_class=response.get("StorageClass"),
            metadata=user_metadata,
            context=EncryptionContext.from_metadata(user_metadata),
        )

    def _verify_checksum(
        self,
        key: ObjectKey,
        body: bytes,
        metadata: ObjectMetadata,
        sse: str | None,
    ) -> None:
        expected = metadata.metadata.get(META_SHA256)
        if expected:
            actual = hashlib.sha256(body).hexdigest()
            algorithm = "sha256"
        elif sse == ServerSideEncryption.AWS_KMS.value:
            # SSE-KMS ETags are not content hashes
            logger.debug("checksum_unavailable", key=str(key), reason="sse_kms")
            return
        elif _MD5_ETAG.match(metadata.etag):
            expected = metadata.etag
            actual = md5_hex(body)
            algorithm = "md5"
        elif _MULTIPART_ETAG.match(metadata.etag) and META_PART_SIZE in metadata.metadata:
            part_size = int(metadata.metadata[META_PART_SIZE])
            part_md5s = [
                md5_hex(body[offset:offset + part_size])
                for offset in range(0, len(body), part_size)
            ] or [md5_hex(b"")]
            expected = metadata.etag
            actual = composite_etag(part_md5s)
            algorithm = "multipart-md5"
        else:
            logger.debug("checksum_unavailable", key=str(key), etag=metadata.etag)
            return

        if actual != expected:
            raise CorruptionError(
                "Checksum mismatch on download",
                details={
                    "key": str(key),
                    "algorithm": algorithm,
                    "expected": expected,
                    "actual": actual,
                },
            )

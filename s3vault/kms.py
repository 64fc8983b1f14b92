# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Key-management client: wrap and unwrap data keys under a master key.

Only the client side of the protocol lives here. Calls are signed with
the shared CredentialProvider and retried like object-store calls.
"""

import structlog

from s3vault.backoff import BackoffController, call_with_retry
from s3vault.clients import ClientFactory
from s3vault.credentials import CredentialProvider
from s3vault.exceptions import CorruptionError
from s3vault.faults import KMS_CALL, FaultHooks, NoFaults
from s3vault.metrics import MetricsRecorder

logger = structlog.get_logger()


class KeyManagementClient:
    def __init__(
        self,
        *,
        credentials: CredentialProvider,
        client_factory: ClientFactory,
        controller: BackoffController,
        metrics: MetricsRecorder,
        faults: FaultHooks | None = None,
        request_timeout: float | None = None,
    ):
        self._credentials = credentials
        self._factory = client_factory
        self._controller = controller
        self._metrics = metrics
        self._faults = faults or NoFaults()
        self._timeout = request_timeout

    async def wrap_key(self, master_key_id: str, plaintext_key: bytes) -> bytes:
        """Encrypt a data key under `master_key_id`; returns the wrapped blob."""

        async def attempt() -> bytes:
            await self._faults.hit(KMS_CALL, operation="wrap", master_key_id=master_key_id)
            credentials = await self._credentials.current()
            async with self._factory.create("kms", credentials) as kms:
                response = await kms.encrypt(KeyId=master_key_id, Plaintext=plaintext_key)
            return response["CiphertextBlob"]

        wrapped = await call_with_retry(
            "kms_wrap",
            attempt,
            controller=self._controller,
            metrics=self._metrics,
            key=master_key_id,
            timeout=self._timeout,
        )
        logger.debug("data_key_wrapped", master_key_id=master_key_id)
        return wrapped

    async def unwrap_key(
        self, master_key_id: str, wrapped_key: bytes, expected_size: int = 32
    ) -> bytes:
        """Decrypt a wrapped data key previously produced by wrap_key()."""

        async def attempt() -> bytes:
            await self._faults.hit(KMS_CALL, operation="unwrap", master_key_id=master_key_id)
            credentials = await self._credentials.current()
            async with self._factory.create("kms", credentials) as kms:
                response = await kms.decrypt(CiphertextBlob=wrapped_key, KeyId=master_key_id)
            return response["Plaintext"]

        plaintext = await call_with_retry(
            "kms_unwrap",
            attempt,
            controller=self._controller,
            metrics=self._metrics,
            key=master_key_id,
            timeout=self._timeout,
        )
        if len(plaintext) != expected_size:
            raise CorruptionError(
                "Unwrapped data key has the wrong size",
                details={"master_key_id": master_key_id, "size": len(plaintext)},
            )
        return plaintext

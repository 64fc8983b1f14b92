# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
s3vault Envelope Encryption - Chunked AES-256-GCM with KMS-wrapped keys.

Ciphertext layout: the plaintext is cut into `chunk_size` chunks, each
sealed independently as ciphertext || 16-byte tag. Chunk i uses nonce
nonce_prefix(8) || i(4, big-endian), and its associated data binds the
chunk index and whether it is the final chunk, so reordered, dropped,
truncated or modified chunks all fail authentication. Only the last
chunk may be short; an empty plaintext is a single empty final chunk.

Because chunk boundaries are fixed, a part that starts on a chunk
boundary can be sealed on its own given its first chunk index, and the
concatenation of sealed parts equals the sealed whole stream.
"""

import asyncio
import os
import struct
from concurrent.futures import ThreadPoolExecutor
from typing import AsyncIterable, AsyncIterator, List, Tuple

import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from s3vault.exceptions import ConfigError, CorruptionError
from s3vault.kms import KeyManagementClient
from s3vault.models import EncryptionContext

logger = structlog.get_logger()

CIPHER_ALGORITHM = "AES256-GCM-CHUNKED-V1"
DATA_KEY_BYTES = 32
NONCE_PREFIX_BYTES = 8
TAG_BYTES = 16
MAX_CHUNKS = 2**32

DEFAULT_CHUNK_SIZE = 64 * 1024

# Thread pool for sealing/opening large segments
_executor = ThreadPoolExecutor(max_workers=4)


def _chunk_nonce(prefix: bytes, index: int) -> bytes:
    if index >= MAX_CHUNKS:
        raise ConfigError("Object too large for the cipher chunk counter")
    return prefix + index.to_bytes(4, "big")


def _chunk_aad(index: int, final: bool) -> bytes:
    return struct.pack(">IB", index, 1 if final else 0)


def sealed_size(plaintext_size: int, chunk_size: int) -> int:
    """Ciphertext size for a plaintext of the given size."""
    chunks = max(1, -(-plaintext_size // chunk_size))
    return plaintext_size + chunks * TAG_BYTES


def _seal_segment_sync(
    data_key: bytes,
    nonce_prefix: bytes,
    chunk_size: int,
    data: bytes,
    first_chunk: int,
    final: bool,
) -> bytes:
    if not final and len(data) % chunk_size != 0:
        raise ConfigError(
            "Non-final segment must be a whole number of cipher chunks",
            details={"size": len(data), "chunk_size": chunk_size},
        )

    aead = AESGCM(data_key)
    pieces: List[bytes] = []
    offsets = list(range(0, len(data), chunk_size)) or [0]
    for n, offset in enumerate(offsets):
        index = first_chunk + n
        is_final = final and n == len(offsets) - 1
        chunk = data[offset:offset + chunk_size]
        pieces.append(
            aead.encrypt(_chunk_nonce(nonce_prefix, index), chunk, _chunk_aad(index, is_final))
        )
    return b"".join(pieces)


def _open_chunk(aead: AESGCM, nonce_prefix: bytes, index: int, chunk: bytes, final: bool) -> bytes:
    try:
        return aead.decrypt(_chunk_nonce(nonce_prefix, index), chunk, _chunk_aad(index, final))
    except InvalidTag:
        raise CorruptionError(
            "Authentication tag mismatch",
            details={"chunk": index, "final": final},
        ) from None


class EnvelopeEncryptor:
    """Seals and opens object streams under per-object data keys."""

    def __init__(self, kms: KeyManagementClient, chunk_size: int = DEFAULT_CHUNK_SIZE):
        if chunk_size < 1:
            raise ConfigError(f"chunk_size must be >= 1, got {chunk_size}")
        self._kms = kms
        self.chunk_size = chunk_size

    async def new_context(self, master_key_id: str) -> Tuple[bytes, EncryptionContext]:
        """
        Generate a fresh data key locally and wrap it under the master key.

        Returns:
            Tuple of (plaintext data key, EncryptionContext)
        """
        data_key = AESGCM.generate_key(bit_length=DATA_KEY_BYTES * 8)
        nonce_prefix = os.urandom(NONCE_PREFIX_BYTES)
        wrapped = await self._kms.wrap_key(master_key_id, data_key)
        context = EncryptionContext(
            master_key_id=master_key_id,
            wrapped_key=wrapped,
            algorithm=CIPHER_ALGORITHM,
            nonce=nonce_prefix,
            chunk_size=self.chunk_size,
        )
        logger.debug("data_key_generated", master_key_id=master_key_id, chunk_size=self.chunk_size)
        return (data_key, context)

    async def unwrap(self, context: EncryptionContext) -> bytes:
        """Recover the data key for an existing object's context."""
        if context.algorithm != CIPHER_ALGORITHM:
            raise CorruptionError(
                f"Unsupported cipher algorithm: {context.algorithm}",
                details={"master_key_id": context.master_key_id},
            )
        if len(context.nonce) != NONCE_PREFIX_BYTES or context.chunk_size < 1:
            raise CorruptionError("Malformed encryption context")
        return await self._kms.unwrap_key(
            context.master_key_id, context.wrapped_key, expected_size=DATA_KEY_BYTES
        )

    async def seal(
        self,
        plaintext: AsyncIterable[bytes],
        master_key_id: str,
    ) -> Tuple[AsyncIterator[bytes], EncryptionContext]:
        """
        Encrypt a byte stream.

        The key-management call happens before this returns; the returned
        iterator encrypts lazily as it is consumed.
        """
        data_key, context = await self.new_context(master_key_id)
        return (self._seal_stream(plaintext, data_key, context), context)

    async def open(
        self,
        ciphertext: AsyncIterable[bytes],
        context: EncryptionContext,
    ) -> AsyncIterator[bytes]:
        """
        Decrypt a byte stream sealed under `context`.

        Each chunk is verified before its plaintext is yielded; after a
        CorruptionError the iterator yields nothing further.
        """
        data_key = await self.unwrap(context)
        return self._open_stream(ciphertext, data_key, context)

    async def seal_bytes(self, data: bytes, master_key_id: str) -> Tuple[bytes, EncryptionContext]:
        data_key, context = await self.new_context(master_key_id)
        sealed = await self.seal_part(data_key, context, data, first_chunk=0, final=True)
        return (sealed, context)

    async def open_bytes(self, data: bytes, context: EncryptionContext) -> bytes:
        """Decrypt a whole object; nothing is returned unless every chunk verifies."""
        stream = await self.open(_single(data), context)
        return b"".join([chunk async for chunk in stream])

    async def seal_part(
        self,
        data_key: bytes,
        context: EncryptionContext,
        data: bytes,
        *,
        first_chunk: int,
        final: bool,
    ) -> bytes:
        """Seal one chunk-aligned segment (a multipart part) independently."""
        args = (data_key, context.nonce, context.chunk_size, data, first_chunk, final)
        if len(data) > 1024 * 1024:
            loop = asyncio.get_event_loop()
            return await loop.run_in_executor(_executor, _seal_segment_sync, *args)
        return _seal_segment_sync(*args)

    async def _seal_stream(
        self,
        plaintext: AsyncIterable[bytes],
        data_key: bytes,
        context: EncryptionContext,
    ) -> AsyncIterator[bytes]:
        aead = AESGCM(data_key)
        size = context.chunk_size
        buffer = bytearray()
        index = 0

        async for block in plaintext:
            buffer.extend(block)
            # Hold back the last full chunk until we know whether more follows
            while len(buffer) > size:
                chunk = bytes(buffer[:size])
                del buffer[:size]
                yield aead.encrypt(
                    _chunk_nonce(context.nonce, index), chunk, _chunk_aad(index, False)
                )
                index += 1

        yield aead.encrypt(
            _chunk_nonce(context.nonce, index), bytes(buffer), _chunk_aad(index, True)
        )

    async def _open_stream(
        self,
        ciphertext: AsyncIterable[bytes],
        data_key: bytes,
        context: EncryptionContext,
    ) -> AsyncIterator[bytes]:
        aead = AESGCM(data_key)
        sealed_chunk = context.chunk_size + TAG_BYTES
        buffer = bytearray()
        index = 0

        async for block in ciphertext:
            buffer.extend(block)
            while len(buffer) > sealed_chunk:
                chunk = bytes(buffer[:sealed_chunk])
                del buffer[:sealed_chunk]
                yield _open_chunk(aead, context.nonce, index, chunk, False)
                index += 1

        if len(buffer) < TAG_BYTES:
            raise CorruptionError(
                "Ciphertext truncated",
                details={"chunk": index, "remaining": len(buffer)},
            )
        yield _open_chunk(aead, context.nonce, index, bytes(buffer), True)


async def _single(data: bytes) -> AsyncIterator[bytes]:
    yield data

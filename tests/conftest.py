# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Test fixtures for s3vault tests.

Provides fast test configurations, in-memory store fakes and an
initialized StoreState wired to them.
"""

import os
import tempfile
from pathlib import Path
from typing import Generator

import pytest
import pytest_asyncio

from fakes import FakeClientFactory

# Set test environment variables
os.environ["S3VAULT_ADMIN_API_KEY"] = "test-api-key-12345"

KiB = 1024


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def test_config():
    """
    Create a test configuration.

    Sizes are scaled down to KiB and delays to milliseconds so the
    multipart and retry paths run quickly.
    """
    from s3vault.config import CredentialSource, StoreConfig

    return StoreConfig(
        bucket="test-bucket",
        region="us-east-1",
        part_size=64 * KiB,
        min_part_size=1 * KiB,
        cipher_chunk_size=16 * KiB,
        upload_concurrency=4,
        max_attempts=4,
        base_delay=0.001,
        max_delay=0.01,
        throttle_base_delay=0.01,
        throttle_max_delay=0.05,
        backoff_jitter=0.5,
        max_elapsed=30.0,
        request_timeout=5.0,
        credential_source=CredentialSource.STATIC,
        access_key_id="AKIATESTKEY",
        secret_access_key="test-secret",
    )


@pytest.fixture
def encrypted_config(test_config):
    """Test configuration with client-side envelope encryption."""
    return test_config.with_updates(encrypt_objects=True, master_key_id="alias/backup")


@pytest.fixture
def fake_factory() -> FakeClientFactory:
    return FakeClientFactory()


@pytest.fixture
def fake_s3(fake_factory):
    return fake_factory.s3


@pytest.fixture
def metrics():
    """A recorder on its own registry so counts start from zero."""
    from s3vault.metrics import MetricsRecorder

    return MetricsRecorder()


@pytest.fixture
def faults():
    from s3vault.faults import FaultInjector

    return FaultInjector()


async def make_state(config, fake_factory, metrics, faults=None):
    from s3vault.core import initialize_store_state

    return await initialize_store_state(
        config, faults=faults, client_factory=fake_factory, metrics=metrics
    )


@pytest_asyncio.fixture
async def store_state(test_config, fake_factory, metrics, faults):
    """Initialized StoreState over the fakes."""
    from s3vault.core import shutdown_store_state

    state = await make_state(test_config, fake_factory, metrics, faults)
    yield state
    await shutdown_store_state(state)


@pytest_asyncio.fixture
async def encrypted_state(encrypted_config, fake_factory, metrics, faults):
    """Initialized StoreState with envelope encryption enabled."""
    from s3vault.core import shutdown_store_state

    state = await make_state(encrypted_config, fake_factory, metrics, faults)
    yield state
    await shutdown_store_state(state)

# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Tests for credential sources and the auto-refreshing provider.
"""

import asyncio
import random
from datetime import datetime, timedelta, UTC

import pytest

from fakes import FakeClientFactory, FakeSTS, client_error
from s3vault.backoff import BackoffController, BackoffPolicy
from s3vault.config import CredentialSource, StoreConfig
from s3vault.credentials import (
    AssumeRoleCredentialSource,
    CredentialProvider,
    DefaultChainCredentialSource,
    EnvironmentCredentialSource,
    StaticCredentialSource,
    build_credential_source,
)
from s3vault.exceptions import AuthError, TransientNetworkError
from s3vault.faults import STS_CALL, FaultInjector
from s3vault.metrics import MetricsRecorder
from s3vault.models import Credentials


class ManualClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now


class CountingSource:
    """Issues credentials with a scripted lifetime; optionally blocks until released."""

    name = "counting"

    def __init__(self, clock: ManualClock, lifetimes, gate: asyncio.Event | None = None):
        self.clock = clock
        self.lifetimes = list(lifetimes)
        self.gate = gate
        self.fetches = 0

    async def fetch(self) -> Credentials:
        self.fetches += 1
        if self.gate is not None:
            await self.gate.wait()
        lifetime = self.lifetimes.pop(0) if len(self.lifetimes) > 1 else self.lifetimes[0]
        return Credentials(
            access_key_id=f"AKIA{self.fetches}",
            secret_access_key="secret",
            session_token=f"token-{self.fetches}",
            expiry=self.clock() + timedelta(seconds=lifetime),
        )


def fast_controller() -> BackoffController:
    return BackoffController(
        policy=BackoffPolicy(
            max_attempts=3,
            base_delay=0.001,
            max_delay=0.01,
            throttle_base_delay=0.01,
            throttle_max_delay=0.05,
        ),
        rng=random.Random(1),
    )


def make_provider(source, clock=None, margin=60.0) -> CredentialProvider:
    return CredentialProvider(
        source,
        controller=fast_controller(),
        metrics=MetricsRecorder(),
        refresh_margin=margin,
        clock=clock or (lambda: datetime.now(UTC)),
    )


# ============================================================================
# Provider
# ============================================================================

@pytest.mark.asyncio
async def test_concurrent_callers_share_one_refresh():
    clock = ManualClock()
    gate = asyncio.Event()
    source = CountingSource(clock, [3600], gate=gate)
    provider = make_provider(source, clock)

    waiters = [asyncio.create_task(provider.current()) for _ in range(10)]
    await asyncio.sleep(0)
    gate.set()
    results = await asyncio.gather(*waiters)

    assert source.fetches == 1
    assert provider.refresh_count == 1
    assert all(credentials is results[0] for credentials in results)


@pytest.mark.asyncio
async def test_credentials_inside_refresh_margin_are_refreshed_before_use():
    """Credentials expiring in 30s with a 60s margin are replaced on the next request."""
    clock = ManualClock()
    source = CountingSource(clock, [30, 3600])
    provider = make_provider(source, clock, margin=60.0)

    first = await provider.current()
    assert provider.needs_refresh()

    second = await provider.current()
    third = await provider.current()

    assert source.fetches == 2
    assert second is not first
    assert second.session_token == "token-2"
    assert third is second
    assert not provider.needs_refresh()


@pytest.mark.asyncio
async def test_valid_snapshot_is_served_without_refresh():
    clock = ManualClock()
    source = CountingSource(clock, [3600])
    provider = make_provider(source, clock)

    first = await provider.current()
    clock.now += timedelta(seconds=3000)
    assert await provider.current() is first

    clock.now += timedelta(seconds=541)
    assert await provider.current() is not first
    assert source.fetches == 2


@pytest.mark.asyncio
async def test_refresh_failure_is_an_auth_error_and_retried_when_transient():
    class FlakySource:
        name = "flaky"

        def __init__(self):
            self.fetches = 0

        async def fetch(self):
            self.fetches += 1
            raise client_error("ServiceUnavailable", 503)

    source = FlakySource()
    provider = make_provider(source)

    with pytest.raises(AuthError) as exc_info:
        await provider.current()

    assert source.fetches == 3
    assert exc_info.value.details["source"] == "flaky"
    assert provider.snapshot is None


@pytest.mark.asyncio
async def test_hung_refresh_times_out():
    clock = ManualClock()
    source = CountingSource(clock, [3600], gate=asyncio.Event())
    provider = CredentialProvider(
        source,
        controller=fast_controller(),
        metrics=MetricsRecorder(),
        request_timeout=0.05,
        clock=clock,
    )

    with pytest.raises(AuthError) as exc_info:
        await asyncio.wait_for(provider.current(), timeout=5)

    assert source.fetches == 3
    assert exc_info.value.details["attempts"] == 3
    assert provider.snapshot is None


@pytest.mark.asyncio
async def test_invalidate_forces_refresh():
    clock = ManualClock()
    source = CountingSource(clock, [3600])
    provider = make_provider(source, clock)

    await provider.current()
    provider.invalidate()
    await provider.current()

    assert source.fetches == 2


# ============================================================================
# Sources
# ============================================================================

@pytest.mark.asyncio
async def test_environment_source_reads_keys_and_expiry():
    source = EnvironmentCredentialSource(
        {
            "AWS_ACCESS_KEY_ID": "AKIAENV",
            "AWS_SECRET_ACCESS_KEY": "env-secret",
            "AWS_SESSION_TOKEN": "env-token",
            "AWS_CREDENTIAL_EXPIRATION": "2026-06-01T12:00:00Z",
        }
    )

    credentials = await source.fetch()

    assert credentials.access_key_id == "AKIAENV"
    assert credentials.session_token == "env-token"
    assert credentials.expiry == datetime(2026, 6, 1, 12, 0, tzinfo=UTC)


@pytest.mark.asyncio
async def test_environment_source_without_keys_fails():
    with pytest.raises(AuthError):
        await EnvironmentCredentialSource({}).fetch()


@pytest.mark.asyncio
async def test_assume_role_exchanges_base_credentials():
    factory = FakeClientFactory(sts=FakeSTS())
    base = StaticCredentialSource(Credentials("AKIABASE", "base-secret"))
    source = AssumeRoleCredentialSource(
        role_arn="arn:aws:iam::123456789012:role/backup",
        base=base,
        client_factory=factory,
        session_name="tikv-br",
        duration_seconds=900,
        external_id="ext-1",
    )

    credentials = await source.fetch()

    assert credentials.access_key_id.startswith("ASIA")
    assert credentials.session_token == "token-1"
    assert credentials.expiry is not None
    request = factory.sts.requests[0]
    assert request["RoleSessionName"] == "tikv-br"
    assert request["DurationSeconds"] == 900
    assert request["ExternalId"] == "ext-1"
    # The exchange itself is signed with the base credentials
    assert factory.signed_with[0][1].access_key_id == "AKIABASE"


@pytest.mark.asyncio
async def test_assume_role_transient_failure_is_retried_by_provider():
    faults = FaultInjector()
    faults.arm(STS_CALL, error=lambda: TransientNetworkError("reset"), times=1)
    factory = FakeClientFactory()
    source = AssumeRoleCredentialSource(
        role_arn="arn:aws:iam::123456789012:role/backup",
        base=StaticCredentialSource(Credentials("AKIABASE", "base-secret")),
        client_factory=factory,
        faults=faults,
    )
    provider = make_provider(source)

    credentials = await provider.current()

    assert credentials.access_key_id.startswith("ASIA")
    assert faults.fired(STS_CALL) == 1
    assert factory.sts.calls["assume_role"] == 1


@pytest.mark.asyncio
async def test_assume_role_denied_is_not_retried():
    factory = FakeClientFactory()
    factory.sts.fail(client_error("AccessDenied", 403, "AssumeRole"), times=5)
    source = AssumeRoleCredentialSource(
        role_arn="arn:aws:iam::123456789012:role/backup",
        base=StaticCredentialSource(Credentials("AKIABASE", "base-secret")),
        client_factory=factory,
    )
    provider = make_provider(source)

    with pytest.raises(AuthError):
        await provider.current()

    assert factory.sts.calls["assume_role"] == 1


def test_build_credential_source_follows_config():
    factory = FakeClientFactory()
    static = StoreConfig(
        bucket="test-bucket",
        credential_source=CredentialSource.STATIC,
        access_key_id="AKIA",
        secret_access_key="secret",
    )
    role = StoreConfig(
        bucket="test-bucket",
        credential_source=CredentialSource.ASSUME_ROLE,
        role_arn="arn:aws:iam::123456789012:role/backup",
    )
    env = StoreConfig(bucket="test-bucket", credential_source=CredentialSource.ENVIRONMENT)

    assert isinstance(build_credential_source(static, factory), StaticCredentialSource)
    assert isinstance(build_credential_source(role, factory), AssumeRoleCredentialSource)
    assert isinstance(build_credential_source(env, factory), EnvironmentCredentialSource)


@pytest.mark.asyncio
async def test_default_chain_uses_session_credentials():
    class Frozen:
        access_key = "AKIACHAIN"
        secret_key = "chain-secret"
        token = None

    class Resolved:
        _expiry_time = None

        async def get_frozen_credentials(self):
            return Frozen()

    class Session:
        async def get_credentials(self):
            return Resolved()

    credentials = await DefaultChainCredentialSource(session=Session()).fetch()

    assert credentials.access_key_id == "AKIACHAIN"
    assert credentials.expiry is None

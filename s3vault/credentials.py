# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
s3vault Credentials - Credential sources and the auto-refreshing provider.

CredentialProvider holds the only long-lived shared mutable state in the
package: the current Credentials snapshot. Readers get the snapshot
reference; a refresh builds a new snapshot and swaps the reference.
At most one refresh runs at a time and concurrent callers await it.
"""

import asyncio
import os
from datetime import datetime, UTC
from typing import Any, Callable, Protocol

import structlog

from s3vault.backoff import BackoffController, call_with_retry
from s3vault.clients import ClientFactory
from s3vault.config import CredentialSource, StoreConfig
from s3vault.exceptions import AuthError, S3VaultError
from s3vault.faults import STS_CALL, FaultHooks, NoFaults
from s3vault.metrics import MetricsRecorder
from s3vault.models import Credentials

logger = structlog.get_logger()


class CredentialSourceFn(Protocol):
    name: str

    async def fetch(self) -> Credentials: ...


class StaticCredentialSource:
    """Long-lived keys handed over by configuration."""

    name = "static"

    def __init__(self, credentials: Credentials):
        self._credentials = credentials

    async def fetch(self) -> Credentials:
        return self._credentials


def _parse_expiry(value: str) -> datetime:
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class EnvironmentCredentialSource:
    """Reads AWS_ACCESS_KEY_ID / AWS_SECRET_ACCESS_KEY / AWS_SESSION_TOKEN."""

    name = "environment"

    def __init__(self, environ: Any = None):
        self._environ = environ if environ is not None else os.environ

    async def fetch(self) -> Credentials:
        access_key = self._environ.get("AWS_ACCESS_KEY_ID")
        secret_key = self._environ.get("AWS_SECRET_ACCESS_KEY")
        if not access_key or not secret_key:
            raise AuthError(
                "AWS_ACCESS_KEY_ID and AWS_SECRET_ACCESS_KEY must be set",
                details={"source": self.name},
            )

        expiry = None
        expiry_text = self._environ.get("AWS_CREDENTIAL_EXPIRATION")
        if expiry_text:
            try:
                expiry = _parse_expiry(expiry_text)
            except ValueError as e:
                raise AuthError(
                    f"Invalid AWS_CREDENTIAL_EXPIRATION: {expiry_text!r}",
                    details={"source": self.name},
                ) from e

        return Credentials(
            access_key_id=access_key,
            secret_access_key=secret_key,
            session_token=self._environ.get("AWS_SESSION_TOKEN") or None,
            expiry=expiry,
        )


class DefaultChainCredentialSource:
    """
    botocore's default chain through an aiobotocore session.

    Covers shared config files, container credentials and instance
    metadata (host/instance-role credentials).
    """

    name = "default_chain"

    def __init__(self, session: Any = None):
        if session is None:
            from aiobotocore.session import get_session

            session = get_session()
        self._session = session

    async def fetch(self) -> Credentials:
        resolved = await self._session.get_credentials()
        if resolved is None:
            raise AuthError(
                "No credentials found in the default provider chain",
                details={"source": self.name},
            )
        frozen = await resolved.get_frozen_credentials()
        # Refreshable credentials expose their expiry; static ones do not
        expiry = getattr(resolved, "_expiry_time", None)
        return Credentials(
            access_key_id=frozen.access_key,
            secret_access_key=frozen.secret_key,
            session_token=frozen.token,
            expiry=expiry,
        )


class AssumeRoleCredentialSource:
    """Temporary credentials from an STS AssumeRole exchange."""

    name = "assume_role"

    def __init__(
        self,
        *,
        role_arn: str,
        base: CredentialSourceFn,
        client_factory: ClientFactory,
        session_name: str = "s3vault",
        duration_seconds: int = 3600,
        external_id: str | None = None,
        faults: FaultHooks | None = None,
    ):
        self.role_arn = role_arn
        self.session_name = session_name
        self.duration_seconds = duration_seconds
        self._external_id = external_id
        self._base = base
        self._factory = client_factory
        self._faults = faults or NoFaults()

    async def fetch(self) -> Credentials:
        base_credentials = await self._base.fetch()
        await self._faults.hit(STS_CALL, role_arn=self.role_arn)

        request = {
            "RoleArn": self.role_arn,
            "RoleSessionName": self.session_name,
            "DurationSeconds": self.duration_seconds,
        }
        if self._external_id:
            request["ExternalId"] = self._external_id

        async with self._factory.create("sts", base_credentials) as sts:
            response = await sts.assume_role(**request)

        issued = response["Credentials"]
        expiry = issued["Expiration"]
        if isinstance(expiry, str):
            expiry = _parse_expiry(expiry)
        return Credentials(
            access_key_id=issued["AccessKeyId"],
            secret_access_key=issued["SecretAccessKey"],
            session_token=issued["SessionToken"],
            expiry=expiry,
        )


class CredentialProvider:
    """
    Serves the current credentials snapshot and refreshes it on demand.

    current() does not suspend while the snapshot is valid and outside
    the refresh margin. Otherwise all callers share one refresh task.
    """

    def __init__(
        self,
        source: CredentialSourceFn,
        *,
        controller: BackoffController,
        metrics: MetricsRecorder,
        refresh_margin: float = 60.0,
        request_timeout: float | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self._source = source
        self._controller = controller
        self._metrics = metrics
        self.refresh_margin = refresh_margin
        self.request_timeout = request_timeout
        self._clock = clock
        self._snapshot: Credentials | None = None
        self._inflight: asyncio.Future | None = None
        self.refresh_count = 0

    @property
    def snapshot(self) -> Credentials | None:
        return self._snapshot

    @property
    def source_name(self) -> str:
        return self._source.name

    def needs_refresh(self) -> bool:
        snapshot = self._snapshot
        return snapshot is None or snapshot.expires_within(self.refresh_margin, self._clock())

    async def current(self) -> Credentials:
        snapshot = self._snapshot
        if snapshot is not None and not snapshot.expires_within(
            self.refresh_margin, self._clock()
        ):
            return snapshot

        if self._inflight is None:
            self._inflight = asyncio.ensure_future(self._refresh())
        # A cancelled caller leaves the shared refresh running
        return await asyncio.shield(self._inflight)

    def invalidate(self) -> None:
        """Drop the snapshot so the next current() refreshes."""
        self._snapshot = None

    async def _refresh(self) -> Credentials:
        try:
            credentials = await call_with_retry(
                "refresh_credentials",
                self._source.fetch,
                controller=self._controller,
                metrics=self._metrics,
                key=self._source.name,
                timeout=self.request_timeout,
            )
        except AuthError:
            raise
        except S3VaultError as e:
            raise AuthError(
                f"Credential refresh failed: {e.message}",
                details={**e.details, "source": self._source.name},
            ) from e
        finally:
            self._inflight = None

        self._snapshot = credentials
        self.refresh_count += 1
        logger.info(
            "credentials_refreshed",
            source=self._source.name,
            expiry=credentials.expiry.isoformat() if credentials.expiry else None,
        )
        return credentials


def build_credential_source(
    config: StoreConfig,
    client_factory: ClientFactory,
    faults: FaultHooks | None = None,
) -> CredentialSourceFn:
    """Pick the credential source named by config.credential_source."""
    static = None
    if config.access_key_id and config.secret_access_key:
        static = StaticCredentialSource(
            Credentials(
                access_key_id=config.access_key_id,
                secret_access_key=config.secret_access_key,
                session_token=config.session_token,
            )
        )

    if config.credential_source == CredentialSource.STATIC:
        return static
    if config.credential_source == CredentialSource.ENVIRONMENT:
        return EnvironmentCredentialSource()
    if config.credential_source == CredentialSource.ASSUME_ROLE:
        return AssumeRoleCredentialSource(
            role_arn=config.role_arn,
            base=static or DefaultChainCredentialSource(),
            client_factory=client_factory,
            session_name=config.role_session_name,
            duration_seconds=config.role_duration_seconds,
            external_id=config.external_id,
            faults=faults,
        )
    return DefaultChainCredentialSource()

# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Wire clients for S3, KMS and STS.

Components never build clients themselves; they ask a ClientFactory for
an async context manager signed with a given credentials snapshot. The
production factory wraps an aiobotocore session (botocore does the SigV4
signing, including the session token). Tests substitute in-memory fakes.
"""

from typing import Any, AsyncContextManager, Protocol

from s3vault.config import StoreConfig
from s3vault.models import Credentials


class ClientFactory(Protocol):
    def create(self, service: str, credentials: Credentials | None) -> AsyncContextManager[Any]:
        """Return `async with`-able client for `service` ("s3", "kms", "sts")."""
        ...


class AioClientFactory:
    """Creates aiobotocore clients, one per operation via context manager."""

    def __init__(self, config: StoreConfig, session: Any = None):
        from aiobotocore.config import AioConfig
        from aiobotocore.session import get_session

        self.config = config
        self.session = session or get_session()

        s3_options = {"addressing_style": "path"} if config.force_path_style else {}
        self._client_config = AioConfig(
            connect_timeout=config.request_timeout,
            read_timeout=config.request_timeout,
            # Retries are owned by BackoffController, not botocore
            retries={"total_max_attempts": 1, "mode": "standard"},
            s3=s3_options,
        )

    def create(self, service: str, credentials: Credentials | None) -> AsyncContextManager[Any]:
        kwargs: dict = {
            "region_name": self.config.region,
            "config": self._client_config,
        }
        if service == "s3" and self.config.endpoint_url:
            kwargs["endpoint_url"] = self.config.endpoint_url
        if credentials is not None:
            kwargs["aws_access_key_id"] = credentials.access_key_id
            kwargs["aws_secret_access_key"] = credentials.secret_access_key
            kwargs["aws_session_token"] = credentials.session_token

        return self.session.create_client(service, **kwargs)

# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Secrets providers: AWS Secrets Manager and an in-process store."""

import logging
from typing import TYPE_CHECKING, Any

from tenantforge.core.errors import ResourceKind
from tenantforge.infrastructure.providers.aws import call_aws, create_client
from tenantforge.infrastructure.providers.base import ProviderError, SecretsProvider

if TYPE_CHECKING:
    from tenantforge.core.config.settings import SecretsSettings

logger = logging.getLogger(__name__)

NOT_FOUND = frozenset({"ResourceNotFoundException"})


class AwsSecretsProvider(SecretsProvider):
    """Secrets stored in AWS Secrets Manager.

    Deletion skips the recovery window so that a compensated secret name
    can be reused immediately.
    """

    def __init__(self, settings: "SecretsSettings | None" = None, client: Any = None) -> None:
        if client is None:
            client = create_client(
                "secretsmanager",
                region=settings.region if settings else None,
                endpoint_url=settings.endpoint_url if settings else None,
            )
        self._client = client

    async def put(self, name: str, value: str, *, exist_ok: bool = False) -> None:
        try:
            await call_aws(
                self._client.create_secret,
                ResourceKind.SECRET,
                "put",
                Name=name,
                SecretString=value,
            )
        except ProviderError as e:
            if not (exist_ok and e.already_exists):
                raise
            await call_aws(
                self._client.put_secret_value,
                ResourceKind.SECRET,
                "put",
                SecretId=name,
                SecretString=value,
            )
            logger.info("Updated existing secret %s", name)
            return
        logger.info("Created secret %s", name)

    async def get(self, name: str) -> str | None:
        response = await call_aws(
            self._client.get_secret_value,
            ResourceKind.SECRET,
            "get",
            missing_codes=NOT_FOUND,
            SecretId=name,
        )
        if response is None:
            return None
        return response.get("SecretString")

    async def delete(self, name: str) -> None:
        response = await call_aws(
            self._client.delete_secret,
            ResourceKind.SECRET,
            "delete",
            missing_codes=NOT_FOUND,
            SecretId=name,
            ForceDeleteWithoutRecovery=True,
        )
        if response is not None:
            logger.info("Deleted secret %s", name)


class MemorySecretsProvider(SecretsProvider):
    """Secrets kept in a dict for local development and tests.

    Values are lost when the process exits.
    """

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self.secrets: dict[str, str] = dict(initial or {})

    async def put(self, name: str, value: str, *, exist_ok: bool = False) -> None:
        if name in self.secrets and not exist_ok:
            raise ProviderError(
                ResourceKind.SECRET,
                "put",
                f"secret {name} already exists",
                already_exists=True,
            )
        self.secrets[name] = value

    async def get(self, name: str) -> str | None:
        return self.secrets.get(name)

    async def delete(self, name: str) -> None:
        self.secrets.pop(name, None)

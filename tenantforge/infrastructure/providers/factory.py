# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Provider selection from configuration.

Variants are chosen once at startup; the rest of the orchestrator only
sees the capability interfaces.
"""

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from tenantforge.infrastructure.providers.base import (
    QueueProvider,
    SearchProvider,
    SecretsProvider,
    StorageProvider,
)
from tenantforge.infrastructure.providers.queue import SqsQueueProvider
from tenantforge.infrastructure.providers.search import (
    HttpSearchProvider,
    OpenSearchProvider,
    TypesenseProvider,
)
from tenantforge.infrastructure.providers.secrets import (
    AwsSecretsProvider,
    MemorySecretsProvider,
)
from tenantforge.infrastructure.providers.storage import S3StorageProvider

if TYPE_CHECKING:
    from tenantforge.core.config.settings import RootConfig

logger = logging.getLogger(__name__)


@dataclass
class ProviderSet:
    """The provider variants used by one orchestrator instance."""

    secrets: SecretsProvider
    storage: StorageProvider
    search: SearchProvider
    queue: QueueProvider

    async def close(self) -> None:
        """Release provider connections."""
        if isinstance(self.search, HttpSearchProvider):
            await self.search.close()


def create_secrets_provider(config: "RootConfig") -> SecretsProvider:
    if config.secrets.provider == "memory":
        return MemorySecretsProvider()
    return AwsSecretsProvider(config.secrets)


def create_search_provider(config: "RootConfig") -> SearchProvider:
    if config.search.provider == "typesense":
        return TypesenseProvider(config.search)
    return OpenSearchProvider(config.search)


def create_providers(
    config: "RootConfig", secrets: SecretsProvider | None = None
) -> ProviderSet:
    """Build the provider set selected by the configuration.

    Args:
        config: Root configuration.
        secrets: Already constructed secrets provider to reuse, e.g. the
            one used to load the configuration itself.

    Returns:
        ProviderSet with one variant per resource kind.
    """
    providers = ProviderSet(
        secrets=secrets or create_secrets_provider(config),
        storage=S3StorageProvider(config.storage),
        search=create_search_provider(config),
        queue=SqsQueueProvider(config.queue),
    )
    logger.info(
        "Providers selected: secrets=%s storage=%s search=%s queue=%s",
        config.secrets.provider,
        config.storage.provider,
        config.search.provider,
        config.queue.provider,
    )
    return providers

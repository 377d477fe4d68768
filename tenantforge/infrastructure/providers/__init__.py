# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""External resource providers (secrets, storage, search, queues).

Example:
    from tenantforge.infrastructure.providers import create_providers

    providers = create_providers(config)
    await providers.storage.create_bucket("tenant-acme", ["https://acme.example"])
"""

from tenantforge.infrastructure.providers.base import (
    ProviderError,
    QueueProvider,
    SearchProvider,
    SecretsProvider,
    StorageProvider,
)
from tenantforge.infrastructure.providers.factory import (
    ProviderSet,
    create_providers,
    create_search_provider,
    create_secrets_provider,
)
from tenantforge.infrastructure.providers.queue import SqsQueueProvider
from tenantforge.infrastructure.providers.search import (
    OpenSearchProvider,
    TypesenseProvider,
)
from tenantforge.infrastructure.providers.secrets import (
    AwsSecretsProvider,
    MemorySecretsProvider,
)
from tenantforge.infrastructure.providers.storage import S3StorageProvider

__all__ = [
    # Interfaces
    "ProviderError",
    "SecretsProvider",
    "StorageProvider",
    "SearchProvider",
    "QueueProvider",
    # Variants
    "AwsSecretsProvider",
    "MemorySecretsProvider",
    "S3StorageProvider",
    "OpenSearchProvider",
    "TypesenseProvider",
    "SqsQueueProvider",
    # Selection
    "ProviderSet",
    "create_providers",
    "create_secrets_provider",
    "create_search_provider",
]

# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Orchestrator wiring for command-line front ends.

init_orchestrator() builds the providers, resolves the setup user
credentials, opens the registry pool and creates the services. The getters
return the services; close_orchestrator() releases every connection.

Example:
    async with orchestrator(load_root_config(Path("tenantforge.yaml"))):
        await get_root_initializer().initialize()
        record = await get_tenant_provisioner().create_tenant(descriptor)
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from tenantforge.core.config.settings import RootConfig, get_root_config
from tenantforge.domains.migration.service import MigrationRunner
from tenantforge.domains.provisioning.service import TenantProvisioner
from tenantforge.domains.registry.repository import TenantRegistry
from tenantforge.domains.root.initializer import RootInitializer
from tenantforge.infrastructure.database.connection import (
    DatabaseError,
    close_registry_database,
    init_registry_database,
    resolve_setup_credentials,
)
from tenantforge.infrastructure.database.tenant_manager import TenantDatabaseManager
from tenantforge.infrastructure.providers.base import SecretsProvider
from tenantforge.infrastructure.providers.factory import ProviderSet, create_providers
from tenantforge.infrastructure.resilience import RetryPolicy

logger = logging.getLogger(__name__)

_providers: ProviderSet | None = None
_tenant_db_manager: TenantDatabaseManager | None = None
_root_initializer: RootInitializer | None = None
_tenant_provisioner: TenantProvisioner | None = None
_migration_runner: MigrationRunner | None = None


async def init_orchestrator(
    config: RootConfig | None = None,
    secrets: SecretsProvider | None = None,
    providers: ProviderSet | None = None,
) -> RootConfig:
    """Initialize connections and services.

    Args:
        config: Root configuration. Defaults to get_root_config().
        secrets: Secrets provider to reuse, e.g. the one the configuration
            was loaded from.
        providers: Complete provider set to use instead of building one.

    Returns:
        The effective configuration, with resolved setup credentials.
    """
    global _providers, _tenant_db_manager, _root_initializer
    global _tenant_provisioner, _migration_runner

    config = config or get_root_config()

    _providers = providers or create_providers(config, secrets)

    database = await resolve_setup_credentials(config.database, _providers.secrets)
    if database is not config.database:
        config = config.model_copy(update={"database": database})

    await init_registry_database(config)

    registry = TenantRegistry()
    _tenant_db_manager = TenantDatabaseManager(config.database, echo=config.debug)
    _root_initializer = RootInitializer(settings=config.database)
    _tenant_provisioner = TenantProvisioner(
        registry,
        _tenant_db_manager,
        _providers,
        retry_policy=RetryPolicy.from_settings(config.retry),
        concurrency=config.worker.concurrency,
    )
    _migration_runner = MigrationRunner(
        registry,
        _tenant_db_manager,
        retry_policy=RetryPolicy.from_settings(config.retry),
        concurrency=config.worker.concurrency,
        migration_timeout=config.worker.migration_timeout_seconds,
    )

    logger.info("Orchestrator initialized (registry %s)", config.database.root_database)
    return config


async def close_orchestrator() -> None:
    """Close tenant engines, the registry pool and provider clients."""
    global _providers, _tenant_db_manager, _root_initializer
    global _tenant_provisioner, _migration_runner

    if _tenant_db_manager is not None:
        await _tenant_db_manager.close_all()
        _tenant_db_manager = None

    await close_registry_database()

    if _providers is not None:
        await _providers.close()
        _providers = None

    _root_initializer = None
    _tenant_provisioner = None
    _migration_runner = None


@asynccontextmanager
async def orchestrator(
    config: RootConfig | None = None,
    secrets: SecretsProvider | None = None,
    providers: ProviderSet | None = None,
) -> AsyncIterator[RootConfig]:
    """Run a block with the orchestrator initialized.

    Yields:
        The effective configuration.
    """
    effective = await init_orchestrator(config, secrets, providers)
    try:
        yield effective
    finally:
        await close_orchestrator()


def _require(service, name: str):
    if service is None:
        raise DatabaseError(f"{name} not initialized. Call init_orchestrator() first.")
    return service


def get_root_initializer() -> RootInitializer:
    return _require(_root_initializer, "Root initializer")


def get_tenant_provisioner() -> TenantProvisioner:
    return _require(_tenant_provisioner, "Tenant provisioner")


def get_migration_runner() -> MigrationRunner:
    return _require(_migration_runner, "Migration runner")

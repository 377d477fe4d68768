# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Fixtures for unit tests.

The registry and tenant databases are SQLite files under tmp_path. The
external providers are in-memory fakes that record the resources they
hold, so tests can check that nothing is left behind.
"""

from pathlib import Path
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from tenantforge.core.config.settings import (
    DatabaseSettings,
    RetrySettings,
    RootConfig,
    SecretsSettings,
    WorkerSettings,
)
from tenantforge.core.errors import ResourceKind
from tenantforge.domains.registry.repository import TenantRegistry
from tenantforge.domains.root.initializer import RootInitializer
from tenantforge.infrastructure.database.connection import create_database_engine
from tenantforge.infrastructure.database.tenant_manager import TenantDatabaseManager
from tenantforge.infrastructure.providers.base import (
    ProviderError,
    QueueProvider,
    SearchProvider,
    StorageProvider,
)
from tenantforge.infrastructure.providers.factory import ProviderSet
from tenantforge.infrastructure.providers.secrets import MemorySecretsProvider
from tenantforge.infrastructure.resilience import RetryPolicy

# =============================================================================
# Fake Providers
# =============================================================================


class FailureSwitch:
    """Makes selected fake provider operations fail.

    Attributes:
        failing: Operation name mapped to the number of calls that should
            still fail (None for every call).
        transient: Whether the raised errors are flagged transient.
        lost_responses: Operation name mapped to the number of calls that
            take effect and then fail transiently, as if the response was
            lost.
        calls: Operation names in call order.
    """

    def __init__(self, resource_kind: ResourceKind) -> None:
        self._resource_kind = resource_kind
        self.failing: dict[str, int | None] = {}
        self.lost_responses: dict[str, int] = {}
        self.transient = False
        self.calls: list[str] = []

    def fail(self, operation: str, times: int | None = None, transient: bool = False) -> None:
        self.failing[operation] = times
        self.transient = transient

    def check(self, operation: str) -> None:
        self.calls.append(operation)
        if operation not in self.failing:
            return

        remaining = self.failing[operation]
        if remaining is not None:
            if remaining <= 0:
                return
            self.failing[operation] = remaining - 1

        raise ProviderError(
            self._resource_kind,
            operation,
            f"injected {operation} failure",
            transient=self.transient,
        )

    def lose_response(self, operation: str, times: int = 1) -> None:
        self.lost_responses[operation] = times

    def check_response(self, operation: str) -> None:
        remaining = self.lost_responses.get(operation, 0)
        if remaining <= 0:
            return
        self.lost_responses[operation] = remaining - 1
        raise ProviderError(
            self._resource_kind,
            operation,
            f"connection reset after {operation}",
            transient=True,
        )


class FakeSecretsProvider(MemorySecretsProvider):
    def __init__(self, initial: dict[str, str] | None = None) -> None:
        super().__init__(initial)
        self.switch = FailureSwitch(ResourceKind.SECRET)

    async def put(self, name: str, value: str, *, exist_ok: bool = False) -> None:
        self.switch.check("put")
        await super().put(name, value, exist_ok=exist_ok)
        self.switch.check_response("put")

    async def delete(self, name: str) -> None:
        self.switch.check("delete")
        await super().delete(name)


class FakeStorageProvider(StorageProvider):
    def __init__(self) -> None:
        self.buckets: dict[str, dict] = {}
        self.switch = FailureSwitch(ResourceKind.STORAGE_BUCKET)

    async def create_bucket(
        self, name: str, cors_origins: list[str], *, exist_ok: bool = False
    ) -> None:
        self.switch.check("create_bucket")
        if name in self.buckets and not exist_ok:
            raise ProviderError(
                ResourceKind.STORAGE_BUCKET,
                "create_bucket",
                "bucket exists",
                already_exists=True,
            )
        bucket = self.buckets.setdefault(name, {"cors_origins": [], "notifications": []})
        bucket["cors_origins"] = list(cors_origins)
        self.switch.check_response("create_bucket")

    async def delete_bucket(self, name: str) -> None:
        self.switch.check("delete_bucket")
        self.buckets.pop(name, None)

    async def add_bucket_notifications(self, name: str, queue_arn: str) -> None:
        self.switch.check("add_bucket_notifications")
        self.buckets[name]["notifications"].append(queue_arn)


class FakeSearchProvider(SearchProvider):
    def __init__(self) -> None:
        self.indexes: set[str] = set()
        self.switch = FailureSwitch(ResourceKind.SEARCH_INDEX)

    async def create_index(self, name: str, *, exist_ok: bool = False) -> None:
        self.switch.check("create_index")
        if name in self.indexes and not exist_ok:
            raise ProviderError(
                ResourceKind.SEARCH_INDEX,
                "create_index",
                "index exists",
                already_exists=True,
            )
        self.indexes.add(name)
        self.switch.check_response("create_index")

    async def delete_index(self, name: str) -> None:
        self.switch.check("delete_index")
        self.indexes.discard(name)


class FakeQueueProvider(QueueProvider):
    def __init__(self) -> None:
        self.missing: set[str] = set()
        self.switch = FailureSwitch(ResourceKind.QUEUE)

    async def validate(self, reference: str) -> None:
        self.switch.check("validate")
        if reference in self.missing:
            raise ProviderError(ResourceKind.QUEUE, "validate", f"no queue {reference}")


@pytest.fixture
def providers() -> ProviderSet:
    """Provide a set of fake providers with no resources."""
    return ProviderSet(
        secrets=FakeSecretsProvider(),
        storage=FakeStorageProvider(),
        search=FakeSearchProvider(),
        queue=FakeQueueProvider(),
    )


# =============================================================================
# Configuration Fixtures
# =============================================================================


@pytest.fixture
def database_settings(tmp_path: Path) -> DatabaseSettings:
    """Provide SQLite database settings rooted in tmp_path."""
    return DatabaseSettings(
        driver="sqlite+aiosqlite",
        root_database="registry",
        sqlite_directory=str(tmp_path / "databases"),
    )


@pytest.fixture
def root_config(database_settings: DatabaseSettings) -> RootConfig:
    """Provide a development configuration using SQLite and memory secrets."""
    return RootConfig(
        environment="development",
        database=database_settings,
        secrets=SecretsSettings(provider="memory"),
        retry=RetrySettings(max_attempts=2, backoff_ms=0, timeout_seconds=10),
        worker=WorkerSettings(concurrency=4),
    )


@pytest.fixture
def retry_policy() -> RetryPolicy:
    """Provide a retry policy without delays."""
    return RetryPolicy(max_attempts=2, backoff_ms=0, timeout_seconds=10)


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest_asyncio.fixture
async def registry_engine(
    database_settings: DatabaseSettings,
) -> AsyncGenerator[AsyncEngine, None]:
    """Provide an engine on an empty registry database."""
    engine = create_database_engine(database_settings, database_settings.root_database)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def registry(registry_engine: AsyncEngine) -> TenantRegistry:
    """Provide a tenant registry on an initialized registry database."""
    await RootInitializer(registry_engine).initialize()
    session_factory = async_sessionmaker(
        bind=registry_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    return TenantRegistry(session_factory)


@pytest_asyncio.fixture
async def tenant_databases(
    database_settings: DatabaseSettings,
) -> AsyncGenerator[TenantDatabaseManager, None]:
    """Provide a tenant database manager creating SQLite files."""
    manager = TenantDatabaseManager(database_settings)
    yield manager
    await manager.close_all()

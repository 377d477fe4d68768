# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Persistence of tenant records and the migration ledger.

All writes rely on primary keys for atomicity: reserving a tenant id or a
ledger entry is a single INSERT that either succeeds or violates the key.
Every method opens its own short session, so the registry can be shared
by concurrently running tasks.

Example:
    >>> registry = TenantRegistry()
    >>> record = await registry.reserve_tenant(descriptor)
    >>> await registry.set_status(record.id, TenantStatus.ACTIVE)
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantforge.core.errors import ErrorKind, ProvisionError, ResourceKind, TenantForgeError
from tenantforge.domains.registry.schemas import (
    Environment,
    MigrationRecord,
    TenantDescriptor,
    TenantRecord,
    TenantStatus,
)
from tenantforge.infrastructure.database.connection import get_registry_sessionmaker
from tenantforge.infrastructure.database.models import AppliedMigration, Tenant
from tenantforge.utils.datetime import utc_now

logger = logging.getLogger(__name__)


class LedgerEntryExistsError(Exception):
    """Raised when a ledger entry for (tenant, migration) is already present.

    Attributes:
        tenant_id: Tenant of the entry.
        migration_name: Migration of the entry.
    """

    def __init__(self, tenant_id: UUID, migration_name: str) -> None:
        super().__init__(f"Ledger entry exists: {tenant_id}/{migration_name}")
        self.tenant_id = tenant_id
        self.migration_name = migration_name


class TenantRegistry:
    """Reads and writes the registry tables.

    Attributes:
        _session_factory: Sessionmaker bound to the registry database.
    """

    def __init__(
        self, session_factory: async_sessionmaker[AsyncSession] | None = None
    ) -> None:
        """Initialize the registry.

        Args:
            session_factory: Registry sessionmaker. Defaults to the one set
                up by init_registry_database().
        """
        self._session_factory = session_factory or get_registry_sessionmaker()

    # =========================================================================
    # Tenants
    # =========================================================================

    async def reserve_tenant(self, descriptor: TenantDescriptor) -> TenantRecord:
        """Insert a tenant record with status provisioning.

        Args:
            descriptor: Tenant to reserve.

        Returns:
            The new record.

        Raises:
            ProvisionError: DUPLICATE_ID if the id is already registered.
                The existing row is left untouched.
            SQLAlchemyError: If the insert fails for another reason.
        """
        now = utc_now()
        tenant = Tenant(
            id=descriptor.id,
            environment=descriptor.environment.value,
            db_name=descriptor.db_name,
            db_secret_name=descriptor.db_secret_name,
            db_role_name=descriptor.db_role_name,
            storage_bucket_name=descriptor.storage_bucket_name,
            search_index_name=descriptor.search_index_name,
            storage_queue_arn=descriptor.storage_queue_arn,
            event_queue_url=descriptor.event_queue_url,
            cors_origins=list(descriptor.cors_origins),
            status=TenantStatus.PROVISIONING.value,
            failure_reason=None,
            created_at=now,
            updated_at=now,
        )

        async with self._session_factory() as session:
            session.add(tenant)
            try:
                await session.flush()
            except IntegrityError as e:
                await session.rollback()
                if await self.get_tenant(descriptor.id) is not None:
                    raise ProvisionError(
                        ErrorKind.DUPLICATE_ID,
                        f"Tenant {descriptor.id} already exists",
                        tenant_id=descriptor.id,
                        resource_kind=ResourceKind.REGISTRY,
                    ) from e
                raise
            record = TenantRecord.model_validate(tenant)
            await session.commit()

        logger.info("Reserved tenant %s (%s)", descriptor.id, descriptor.environment.value)
        return record

    async def set_status(
        self,
        tenant_id: UUID,
        status: TenantStatus,
        failure_reason: str | None = None,
    ) -> TenantRecord:
        """Move a tenant to a new status.

        Args:
            tenant_id: Tenant to update.
            status: New status.
            failure_reason: Reason stored with a failed status, cleared otherwise.

        Returns:
            The updated record.

        Raises:
            TenantForgeError: TENANT_NOT_FOUND if the tenant does not exist.
        """
        async with self._session_factory() as session:
            result = await session.execute(
                update(Tenant)
                .where(Tenant.id == tenant_id)
                .values(
                    status=status.value,
                    failure_reason=failure_reason,
                    updated_at=utc_now(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise TenantForgeError(
                    ErrorKind.TENANT_NOT_FOUND,
                    f"Tenant {tenant_id} not found",
                    tenant_id=tenant_id,
                    resource_kind=ResourceKind.REGISTRY,
                )

            tenant = await session.get(Tenant, tenant_id)
            record = TenantRecord.model_validate(tenant)
            await session.commit()

        logger.info("Tenant %s is now %s", tenant_id, status.value)
        return record

    async def get_tenant(self, tenant_id: UUID) -> TenantRecord | None:
        """Get a tenant record by id."""
        async with self._session_factory() as session:
            tenant = await session.get(Tenant, tenant_id)
            if tenant is None:
                return None
            return TenantRecord.model_validate(tenant)

    async def list_tenants(
        self,
        environment: Environment | None = None,
        status: TenantStatus | None = None,
        tenant_id: UUID | None = None,
    ) -> list[TenantRecord]:
        """List tenant records in registry order (creation time, then id).

        Args:
            environment: Only tenants of this environment.
            status: Only tenants with this status.
            tenant_id: Only this tenant.

        Returns:
            Matching records.
        """
        query = select(Tenant).order_by(Tenant.created_at, Tenant.id)
        if environment is not None:
            query = query.where(Tenant.environment == environment.value)
        if status is not None:
            query = query.where(Tenant.status == status.value)
        if tenant_id is not None:
            query = query.where(Tenant.id == tenant_id)

        async with self._session_factory() as session:
            result = await session.execute(query)
            return [TenantRecord.model_validate(t) for t in result.scalars().all()]

    # =========================================================================
    # Migration ledger
    # =========================================================================

    async def get_applied_migration(
        self, tenant_id: UUID, migration_name: str
    ) -> MigrationRecord | None:
        """Get the committed ledger entry of a migration on a tenant."""
        async with self._session_factory() as session:
            entry = await session.get(AppliedMigration, (tenant_id, migration_name))
            if entry is None:
                return None
            return MigrationRecord.model_validate(entry)

    async def list_applied_migrations(self, tenant_id: UUID) -> list[MigrationRecord]:
        """List the committed ledger entries of a tenant by migration name."""
        query = (
            select(AppliedMigration)
            .where(AppliedMigration.tenant_id == tenant_id)
            .order_by(AppliedMigration.migration_name)
        )
        async with self._session_factory() as session:
            result = await session.execute(query)
            return [MigrationRecord.model_validate(e) for e in result.scalars().all()]

    @asynccontextmanager
    async def record_migration(
        self, tenant_id: UUID, migration_name: str, checksum: str
    ) -> AsyncIterator[MigrationRecord]:
        """Reserve a ledger entry, committing it only if the block succeeds.

        The entry is inserted in an open registry transaction before the
        block runs. The primary key makes concurrent reservations of the
        same entry fail. The transaction commits after the block returns
        and rolls back if it raises, so readers only ever see entries whose
        block completed.

        Args:
            tenant_id: Tenant the migration is applied to.
            migration_name: Migration name.
            checksum: Checksum of the migration content.

        Yields:
            The pending ledger entry.

        Raises:
            LedgerEntryExistsError: If the entry is already reserved or committed.
        """
        async with self._session_factory() as session:
            entry = AppliedMigration(
                tenant_id=tenant_id,
                migration_name=migration_name,
                checksum=checksum,
                applied_at=utc_now(),
            )
            session.add(entry)
            try:
                await session.flush()
            except IntegrityError as e:
                await session.rollback()
                raise LedgerEntryExistsError(tenant_id, migration_name) from e

            yield MigrationRecord.model_validate(entry)

            await session.commit()

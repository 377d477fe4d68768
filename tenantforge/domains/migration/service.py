# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Tenant migration runner.

Applies SQL migration files to tenant databases, at most once per tenant.
The registry ledger records which migrations each tenant has committed:

1. A ledger entry with the same checksum means the migration is already
   applied; a different checksum is a conflict and nothing is executed.
2. Otherwise a registry transaction reserves the ledger entry, the SQL
   runs in a single tenant-database transaction, the tenant transaction
   commits and only then does the ledger transaction commit.

Tenants are independent: a failure on one tenant never prevents the
others from being migrated. Registry reads and each attempt of the
reserve-run-commit unit are retried on transient connectivity errors; a
failed attempt rolls back both transactions, so retrying it is safe. Errors
raised by the migration SQL itself are never retried.

Example:
    >>> runner = MigrationRunner(registry, databases)
    >>> migration = load_migration_file(Path("migrations/0003_add_tags.sql"))
    >>> report = await runner.apply_migration(
    ...     migration, MigrationFilter(environment=Environment.PRODUCTION)
    ... )
    >>> report.status
    <ReportStatus.SUCCESS: 'success'>
"""

import asyncio
from dataclasses import replace
from pathlib import Path
from typing import Awaitable, Callable, Sequence, TypeVar
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError

from tenantforge.core.errors import ErrorKind, MigrationError, ResourceKind
from tenantforge.domains.migration.schemas import (
    MigrationFile,
    MigrationFilter,
    MigrationOutcome,
    MigrationReport,
    SkipReason,
    TenantMigrationResult,
)
from tenantforge.domains.registry.repository import LedgerEntryExistsError, TenantRegistry
from tenantforge.domains.registry.schemas import MigrationRecord, TenantRecord
from tenantforge.infrastructure.database.connection import (
    classify_database_error,
    is_permission_denied,
    translate_database_error,
)
from tenantforge.infrastructure.database.tenant_manager import TenantDatabaseManager
from tenantforge.infrastructure.resilience import RetryPolicy, retry_async
from tenantforge.utils.logging import bind_context, clear_context, get_logger

logger = get_logger(__name__)

T = TypeVar("T")

MIGRATION_SUFFIX = ".sql"

DEFAULT_MIGRATION_TIMEOUT_SECONDS = 3600.0


class MigrationScriptError(Exception):
    """Raised when the migration SQL fails on a tenant database.

    The driver or SQLAlchemy error is the __cause__.
    """


def load_migration_file(path: Path) -> MigrationFile:
    """Read a migration file. The migration name is the file stem.

    Raises:
        MigrationError: MIGRATION_FAILED if the file cannot be read.
    """
    try:
        sql = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise MigrationError(
            ErrorKind.MIGRATION_FAILED, f"Cannot read migration {path}: {e}"
        ) from e
    return MigrationFile.from_text(path.stem, sql)


def load_migration_series(*directories: Path) -> list[MigrationFile]:
    """Load the *.sql files of one or more directories, sorted by name.

    Raises:
        MigrationError: DUPLICATE_MIGRATION if two files share a name,
            MIGRATION_FAILED if a directory or file cannot be read.
    """
    files: dict[str, MigrationFile] = {}
    for directory in directories:
        if not directory.is_dir():
            raise MigrationError(
                ErrorKind.MIGRATION_FAILED, f"Not a migration directory: {directory}"
            )
        for path in directory.glob(f"*{MIGRATION_SUFFIX}"):
            if not path.is_file():
                continue
            if path.stem in files:
                raise MigrationError(
                    ErrorKind.DUPLICATE_MIGRATION,
                    f"Migration {path.stem} is defined more than once",
                )
            files[path.stem] = load_migration_file(path)

    return [files[name] for name in sorted(files)]


def _ensure_unique_names(files: Sequence[MigrationFile]) -> None:
    seen: set[str] = set()
    for file in files:
        if file.name in seen:
            raise MigrationError(
                ErrorKind.DUPLICATE_MIGRATION,
                f"Migration {file.name} is defined more than once",
            )
        seen.add(file.name)


class MigrationRunner:
    """Applies migrations to tenant databases and maintains the ledger.

    Attributes:
        _registry: Tenant registry holding the ledger.
        _databases: Tenant database manager.
        _retry_policy: Retry policy for registry reads.
        _apply_policy: Retry policy for one reserve-run-commit attempt,
            bounded by the migration timeout instead of the call timeout.
        _concurrency: Maximum number of tenants migrated at the same time.
    """

    def __init__(
        self,
        registry: TenantRegistry,
        databases: TenantDatabaseManager,
        retry_policy: RetryPolicy | None = None,
        concurrency: int = 4,
        migration_timeout: float = DEFAULT_MIGRATION_TIMEOUT_SECONDS,
    ) -> None:
        self._registry = registry
        self._databases = databases
        self._retry_policy = retry_policy or RetryPolicy()
        self._apply_policy = replace(self._retry_policy, timeout_seconds=migration_timeout)
        self._concurrency = max(concurrency, 1)

    async def _call(
        self,
        func: Callable[[], Awaitable[T]],
        operation: str,
        policy: RetryPolicy | None = None,
    ) -> T:
        return await retry_async(
            func, policy=policy or self._retry_policy, operation=operation
        )

    async def apply_migration(
        self,
        file: MigrationFile,
        filter: MigrationFilter | None = None,
        stop: asyncio.Event | None = None,
    ) -> MigrationReport:
        """Apply one migration to every tenant selected by the filter.

        Args:
            file: Migration to apply.
            filter: Target selection. Defaults to every tenant.
            stop: Optional event; once set, tenants not yet started are
                skipped while in-flight ones finish.

        Returns:
            The aggregated report, in registry order.

        Raises:
            MigrationError: TENANT_NOT_FOUND if an explicit tenant id
                matches nothing, CONNECTION_FAILED or PERMISSION_DENIED if
                the registry cannot be read.
        """
        return await self._apply(file, filter or MigrationFilter(), stop, frozenset())

    async def apply_migrations(
        self,
        files: Sequence[MigrationFile],
        filter: MigrationFilter | None = None,
        stop: asyncio.Event | None = None,
    ) -> list[MigrationReport]:
        """Apply a series of migrations in order.

        A tenant that fails one migration is skipped for the remaining
        migrations of the series.

        Returns:
            One report per migration, in order.

        Raises:
            MigrationError: DUPLICATE_MIGRATION if two files share a name,
                or as raised by apply_migration().
        """
        _ensure_unique_names(files)
        filter = filter or MigrationFilter()

        reports: list[MigrationReport] = []
        blocked: set[UUID] = set()
        for file in files:
            report = await self._apply(file, filter, stop, frozenset(blocked))
            reports.append(report)
            blocked.update(
                r.tenant_id
                for r in report.results
                if r.outcome is MigrationOutcome.FAILED
                or r.skip_reason is SkipReason.EARLIER_FAILURE
            )
        return reports

    async def pending_migrations(
        self, files: Sequence[MigrationFile], tenant_id: UUID
    ) -> list[str]:
        """Names of the given migrations not yet recorded for a tenant.

        Raises:
            MigrationError: TENANT_NOT_FOUND if the tenant does not exist.
        """
        try:
            tenant = await self._call(
                lambda: self._registry.get_tenant(tenant_id), "get_tenant"
            )
            if tenant is None:
                raise MigrationError(
                    ErrorKind.TENANT_NOT_FOUND,
                    f"Tenant {tenant_id} not found",
                    tenant_id=tenant_id,
                    resource_kind=ResourceKind.REGISTRY,
                )
            entries = await self._call(
                lambda: self._registry.list_applied_migrations(tenant_id),
                "list_applied_migrations",
            )
            applied = {r.migration_name for r in entries}
        except (SQLAlchemyError, OSError) as e:
            raise translate_database_error(
                e, "Could not read the ledger", error_cls=MigrationError, tenant_id=tenant_id
            ) from e

        return [f.name for f in files if f.name not in applied]

    async def _select_targets(self, filter: MigrationFilter) -> list[TenantRecord]:
        try:
            tenants = await self._call(
                lambda: self._registry.list_tenants(
                    environment=filter.environment, tenant_id=filter.tenant_id
                ),
                "list_tenants",
            )
        except (SQLAlchemyError, OSError) as e:
            raise translate_database_error(
                e, "Could not read the registry", error_cls=MigrationError
            ) from e

        if filter.tenant_id is not None and not tenants:
            raise MigrationError(
                ErrorKind.TENANT_NOT_FOUND,
                f"No tenant {filter.tenant_id} matches the filter",
                tenant_id=filter.tenant_id,
                resource_kind=ResourceKind.REGISTRY,
            )
        return tenants

    async def _apply(
        self,
        file: MigrationFile,
        filter: MigrationFilter,
        stop: asyncio.Event | None,
        blocked: frozenset[UUID],
    ) -> MigrationReport:
        tenants = await self._select_targets(filter)
        semaphore = asyncio.Semaphore(self._concurrency)

        logger.info(
            "Applying migration",
            migration=file.name,
            checksum=file.checksum,
            targets=len(tenants),
        )

        async def run(tenant: TenantRecord) -> TenantMigrationResult:
            if not tenant.is_active:
                return TenantMigrationResult(
                    tenant_id=tenant.id,
                    outcome=MigrationOutcome.SKIPPED,
                    skip_reason=SkipReason.INACTIVE,
                    message=f"Tenant status is {tenant.status.value}",
                )
            if tenant.id in blocked:
                return TenantMigrationResult(
                    tenant_id=tenant.id,
                    outcome=MigrationOutcome.SKIPPED,
                    skip_reason=SkipReason.EARLIER_FAILURE,
                    message="An earlier migration failed on this tenant",
                )
            async with semaphore:
                if stop is not None and stop.is_set():
                    return TenantMigrationResult(
                        tenant_id=tenant.id,
                        outcome=MigrationOutcome.SKIPPED,
                        skip_reason=SkipReason.CANCELLED,
                        message="cancelled",
                    )
                return await self._apply_to_tenant(file, tenant)

        results = await asyncio.gather(*(run(tenant) for tenant in tenants))
        report = MigrationReport(
            migration_name=file.name, checksum=file.checksum, results=list(results)
        )

        logger.info(
            "Migration finished",
            migration=file.name,
            status=report.status.value,
            applied=report.count(MigrationOutcome.APPLIED),
            already_applied=report.count(MigrationOutcome.ALREADY_APPLIED),
            failed=report.count(MigrationOutcome.FAILED),
            skipped=report.count(MigrationOutcome.SKIPPED),
        )
        return report

    async def _apply_to_tenant(
        self, file: MigrationFile, tenant: TenantRecord
    ) -> TenantMigrationResult:
        """Apply a migration to one tenant and classify the outcome.

        Runs in its own task, so the bound logging context stays local.
        """
        bind_context(tenant_id=str(tenant.id), migration=file.name)
        try:
            existing = await self._get_applied(file, tenant)
            if existing is not None:
                return self._classify_existing(existing, file, tenant)

            try:
                await self._call(
                    lambda: self._run_recorded(file, tenant),
                    "apply_migration",
                    self._apply_policy,
                )
            except LedgerEntryExistsError:
                existing = await self._get_applied(file, tenant)
                if existing is None:
                    return self._failed(
                        tenant,
                        ErrorKind.MIGRATION_FAILED,
                        "Migration is being applied concurrently",
                    )
                return self._classify_existing(existing, file, tenant)

            logger.info("Migration applied")
            return TenantMigrationResult(tenant_id=tenant.id, outcome=MigrationOutcome.APPLIED)
        except MigrationScriptError as e:
            cause = e.__cause__ or e
            kind = (
                ErrorKind.PERMISSION_DENIED
                if is_permission_denied(cause)
                else ErrorKind.MIGRATION_FAILED
            )
            logger.error("Migration failed", error=str(cause), error_kind=kind.value)
            return self._failed(tenant, kind, str(cause))
        except Exception as e:
            kind = classify_database_error(e, ErrorKind.MIGRATION_FAILED)
            logger.error("Migration failed", error=str(e), error_kind=kind.value)
            return self._failed(tenant, kind, str(e))
        finally:
            clear_context()

    async def _get_applied(
        self, file: MigrationFile, tenant: TenantRecord
    ) -> MigrationRecord | None:
        return await self._call(
            lambda: self._registry.get_applied_migration(tenant.id, file.name),
            "get_applied_migration",
        )

    async def _run_recorded(self, file: MigrationFile, tenant: TenantRecord) -> None:
        """Reserve the ledger entry, run the SQL and commit both transactions.

        Raises:
            LedgerEntryExistsError: If another run holds the ledger entry.
            MigrationScriptError: If the SQL fails. Both transactions are
                rolled back.
        """
        async with self._registry.record_migration(tenant.id, file.name, file.checksum):
            engine = self._databases.get_engine(tenant.db_name)
            async with engine.begin() as conn:
                try:
                    await self._databases.execute_script(conn, file.sql)
                except Exception as e:
                    raise MigrationScriptError(f"Migration {file.name} failed") from e

    def _classify_existing(
        self, existing: MigrationRecord, file: MigrationFile, tenant: TenantRecord
    ) -> TenantMigrationResult:
        if existing.checksum == file.checksum:
            logger.info("Migration already applied")
            return TenantMigrationResult(
                tenant_id=tenant.id, outcome=MigrationOutcome.ALREADY_APPLIED
            )

        logger.warning(
            "Checksum conflict",
            recorded=existing.checksum,
            current=file.checksum,
        )
        return self._failed(
            tenant,
            ErrorKind.CHECKSUM_CONFLICT,
            f"Recorded checksum {existing.checksum} differs from {file.checksum}",
        )

    def _failed(
        self, tenant: TenantRecord, kind: ErrorKind, message: str
    ) -> TenantMigrationResult:
        return TenantMigrationResult(
            tenant_id=tenant.id,
            outcome=MigrationOutcome.FAILED,
            error_kind=kind,
            message=message,
        )

# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Unit tests for the migration runner.

Tenants are registered directly in a SQLite registry, each with its own
SQLite tenant database.
"""

import asyncio
from pathlib import Path
from typing import Awaitable, Callable
from unittest.mock import AsyncMock, patch
from uuid import uuid4

import pytest
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from tenantforge.core.errors import ErrorKind, MigrationError
from tenantforge.domains.migration.schemas import (
    MigrationFile,
    MigrationFilter,
    MigrationOutcome,
    ReportStatus,
    SkipReason,
    compute_checksum,
)
from tenantforge.domains.migration.service import (
    MigrationRunner,
    load_migration_file,
    load_migration_series,
)
from tenantforge.domains.registry.repository import TenantRegistry
from tenantforge.domains.registry.schemas import (
    Environment,
    TenantDescriptor,
    TenantRecord,
    TenantStatus,
)
from tenantforge.infrastructure.database.tenant_manager import TenantDatabaseManager
from tenantforge.infrastructure.resilience import RetryPolicy

CREATE_TAGS = MigrationFile.from_text(
    "0001_tags",
    "CREATE TABLE tags (id INTEGER PRIMARY KEY, label TEXT NOT NULL);\n"
    "CREATE INDEX ix_tags_label ON tags (label);\n",
)
ADD_TAG = MigrationFile.from_text(
    "0002_seed_tags", "INSERT INTO tags (label) VALUES ('inbox');"
)

TenantFactory = Callable[..., Awaitable[TenantRecord]]


@pytest.fixture
def runner(
    registry: TenantRegistry,
    tenant_databases: TenantDatabaseManager,
    retry_policy: RetryPolicy,
) -> MigrationRunner:
    return MigrationRunner(
        registry, tenant_databases, retry_policy=retry_policy, concurrency=2
    )


@pytest.fixture
def add_tenant(
    registry: TenantRegistry,
    tenant_databases: TenantDatabaseManager,
    make_descriptor: Callable[..., TenantDescriptor],
) -> TenantFactory:
    """Provide a factory registering a tenant with its own database."""

    async def factory(
        slug: str,
        environment: Environment = Environment.DEVELOPMENT,
        status: TenantStatus = TenantStatus.ACTIVE,
    ) -> TenantRecord:
        descriptor = make_descriptor(slug, environment=environment)
        await registry.reserve_tenant(descriptor)
        await tenant_databases.create_tenant_database(
            descriptor.db_name, descriptor.db_role_name, "pw"
        )
        return await registry.set_status(descriptor.id, status)

    return factory


async def tables(databases: TenantDatabaseManager, tenant: TenantRecord) -> set[str]:
    async with databases.get_engine(tenant.db_name).connect() as conn:
        result = await conn.execute(
            text("SELECT name FROM sqlite_master WHERE type='table'")
        )
        return set(result.scalars().all())


class TestApplyMigration:
    """Tests for MigrationRunner.apply_migration."""

    @pytest.mark.asyncio
    async def test_applies_to_every_active_tenant(
        self,
        runner: MigrationRunner,
        registry: TenantRegistry,
        tenant_databases: TenantDatabaseManager,
        add_tenant: TenantFactory,
    ) -> None:
        """Test that each tenant database is migrated and recorded."""
        tenants = [await add_tenant(slug) for slug in ("acme", "globex")]

        report = await runner.apply_migration(CREATE_TAGS)

        assert report.status is ReportStatus.SUCCESS
        assert report.migration_name == "0001_tags"
        assert [r.outcome for r in report.results] == [MigrationOutcome.APPLIED] * 2
        for tenant in tenants:
            assert "tags" in await tables(tenant_databases, tenant)
            entry = await registry.get_applied_migration(tenant.id, "0001_tags")
            assert entry.checksum == CREATE_TAGS.checksum

    @pytest.mark.asyncio
    async def test_second_run_is_already_applied(
        self,
        runner: MigrationRunner,
        add_tenant: TenantFactory,
    ) -> None:
        """Test that re-running a migration executes nothing."""
        await add_tenant("acme")
        await runner.apply_migration(CREATE_TAGS)

        report = await runner.apply_migration(CREATE_TAGS)

        assert report.status is ReportStatus.SUCCESS
        assert [r.outcome for r in report.results] == [MigrationOutcome.ALREADY_APPLIED]

    @pytest.mark.asyncio
    async def test_changed_content_is_a_checksum_conflict(
        self,
        runner: MigrationRunner,
        registry: TenantRegistry,
        tenant_databases: TenantDatabaseManager,
        add_tenant: TenantFactory,
    ) -> None:
        """Test that edited migrations are refused and the ledger is kept."""
        tenant = await add_tenant("acme")
        await runner.apply_migration(CREATE_TAGS)
        edited = MigrationFile.from_text(
            "0001_tags", "CREATE TABLE labels (id INTEGER PRIMARY KEY);"
        )

        report = await runner.apply_migration(edited)

        result = report.result_for(tenant.id)
        assert result.outcome is MigrationOutcome.FAILED
        assert result.error_kind is ErrorKind.CHECKSUM_CONFLICT
        assert report.status is ReportStatus.PARTIAL_FAILURE
        entry = await registry.get_applied_migration(tenant.id, "0001_tags")
        assert entry.checksum == CREATE_TAGS.checksum
        assert "labels" not in await tables(tenant_databases, tenant)

    @pytest.mark.asyncio
    async def test_failing_tenant_does_not_stop_others(
        self,
        runner: MigrationRunner,
        registry: TenantRegistry,
        tenant_databases: TenantDatabaseManager,
        add_tenant: TenantFactory,
    ) -> None:
        """Test that one tenant's SQL failure leaves the others applied."""
        a = await add_tenant("a")
        b = await add_tenant("b")
        c = await add_tenant("c")
        async with tenant_databases.get_engine(b.db_name).begin() as conn:
            await conn.execute(text("CREATE TABLE tags (id INTEGER PRIMARY KEY)"))

        report = await runner.apply_migration(CREATE_TAGS)

        assert [r.tenant_id for r in report.results] == [a.id, b.id, c.id]
        assert [r.outcome for r in report.results] == [
            MigrationOutcome.APPLIED,
            MigrationOutcome.FAILED,
            MigrationOutcome.APPLIED,
        ]
        assert report.result_for(b.id).error_kind is ErrorKind.MIGRATION_FAILED
        assert report.status is ReportStatus.PARTIAL_FAILURE
        assert [f.tenant_id for f in report.failures] == [b.id]
        assert await registry.get_applied_migration(b.id, "0001_tags") is None

    @pytest.mark.asyncio
    async def test_failed_sql_is_rolled_back(
        self,
        runner: MigrationRunner,
        tenant_databases: TenantDatabaseManager,
        add_tenant: TenantFactory,
    ) -> None:
        """Test that a migration is applied completely or not at all."""
        tenant = await add_tenant("acme")
        broken = MigrationFile.from_text(
            "0001_broken",
            "CREATE TABLE notes (id INTEGER PRIMARY KEY);\nINSERT INTO missing VALUES (1);",
        )

        report = await runner.apply_migration(broken)

        assert report.result_for(tenant.id).outcome is MigrationOutcome.FAILED
        assert "notes" not in await tables(tenant_databases, tenant)

    @pytest.mark.asyncio
    async def test_environment_filter_excludes_other_tenants(
        self,
        runner: MigrationRunner,
        add_tenant: TenantFactory,
    ) -> None:
        """Test that filtered-out tenants do not appear in the report."""
        prod = await add_tenant("prod", environment=Environment.PRODUCTION)
        await add_tenant("dev")

        report = await runner.apply_migration(
            CREATE_TAGS, MigrationFilter(environment=Environment.PRODUCTION)
        )

        assert [r.tenant_id for r in report.results] == [prod.id]

    @pytest.mark.asyncio
    async def test_inactive_tenants_are_skipped(
        self,
        runner: MigrationRunner,
        registry: TenantRegistry,
        add_tenant: TenantFactory,
    ) -> None:
        """Test that failed tenants are never migrated."""
        active = await add_tenant("active")
        failed = await add_tenant("failed", status=TenantStatus.FAILED)

        report = await runner.apply_migration(CREATE_TAGS)

        result = report.result_for(failed.id)
        assert result.outcome is MigrationOutcome.SKIPPED
        assert result.skip_reason is SkipReason.INACTIVE
        assert report.result_for(active.id).outcome is MigrationOutcome.APPLIED
        assert report.status is ReportStatus.SUCCESS
        assert await registry.get_applied_migration(failed.id, "0001_tags") is None

    @pytest.mark.asyncio
    async def test_tenant_filter(
        self,
        runner: MigrationRunner,
        add_tenant: TenantFactory,
    ) -> None:
        """Test targeting a single tenant."""
        await add_tenant("acme")
        globex = await add_tenant("globex")

        report = await runner.apply_migration(
            CREATE_TAGS, MigrationFilter(tenant_id=globex.id)
        )

        assert [r.tenant_id for r in report.results] == [globex.id]

    @pytest.mark.asyncio
    async def test_unknown_tenant_raises(
        self,
        runner: MigrationRunner,
        add_tenant: TenantFactory,
    ) -> None:
        """Test that an explicit tenant id must match a tenant."""
        await add_tenant("acme")

        with pytest.raises(MigrationError) as exc_info:
            await runner.apply_migration(CREATE_TAGS, MigrationFilter(tenant_id=uuid4()))

        assert exc_info.value.kind is ErrorKind.TENANT_NOT_FOUND

    @pytest.mark.asyncio
    async def test_tenant_outside_environment_raises(
        self,
        runner: MigrationRunner,
        add_tenant: TenantFactory,
    ) -> None:
        """Test that a tenant id excluded by the environment is not found."""
        dev = await add_tenant("dev")

        with pytest.raises(MigrationError) as exc_info:
            await runner.apply_migration(
                CREATE_TAGS,
                MigrationFilter(environment=Environment.PRODUCTION, tenant_id=dev.id),
            )

        assert exc_info.value.kind is ErrorKind.TENANT_NOT_FOUND

    @pytest.mark.asyncio
    async def test_stop_cancels_pending_tenants(
        self,
        runner: MigrationRunner,
        add_tenant: TenantFactory,
    ) -> None:
        """Test that tenants not yet started are reported cancelled."""
        await add_tenant("acme")
        stop = asyncio.Event()
        stop.set()

        report = await runner.apply_migration(CREATE_TAGS, stop=stop)

        result = report.results[0]
        assert result.skip_reason is SkipReason.CANCELLED
        assert result.message == "cancelled"
        assert report.status is ReportStatus.PARTIAL_FAILURE

    @pytest.mark.asyncio
    async def test_concurrent_runs_apply_once(
        self,
        runner: MigrationRunner,
        registry: TenantRegistry,
        tenant_databases: TenantDatabaseManager,
        add_tenant: TenantFactory,
    ) -> None:
        """Test that two simultaneous runs apply a migration once per tenant."""
        tenants = [await add_tenant(slug) for slug in ("acme", "globex")]
        other = MigrationRunner(registry, tenant_databases, concurrency=2)

        first, second = await asyncio.gather(
            runner.apply_migration(CREATE_TAGS), other.apply_migration(CREATE_TAGS)
        )

        for tenant in tenants:
            outcomes = sorted(
                [first.result_for(tenant.id).outcome, second.result_for(tenant.id).outcome],
                key=lambda o: o.value,
            )
            assert outcomes == [MigrationOutcome.ALREADY_APPLIED, MigrationOutcome.APPLIED]


def connection_reset() -> OperationalError:
    return OperationalError("SELECT 1", {}, ConnectionResetError("connection reset"))


class TestTransientFailures:
    """Tests for retries of transient connectivity errors."""

    @pytest.mark.asyncio
    async def test_ledger_read_is_retried(
        self,
        runner: MigrationRunner,
        registry: TenantRegistry,
        add_tenant: TenantFactory,
    ) -> None:
        """Test that a dropped registry connection does not fail the tenant."""
        tenant = await add_tenant("acme")
        flaky = AsyncMock(side_effect=[connection_reset(), None])

        with patch.object(registry, "get_applied_migration", new=flaky):
            report = await runner.apply_migration(CREATE_TAGS)

        assert report.result_for(tenant.id).outcome is MigrationOutcome.APPLIED
        assert flaky.await_count == 2
        entry = await registry.get_applied_migration(tenant.id, "0001_tags")
        assert entry.checksum == CREATE_TAGS.checksum

    @pytest.mark.asyncio
    async def test_persistent_registry_failure_is_connection_failed(
        self,
        runner: MigrationRunner,
        registry: TenantRegistry,
        add_tenant: TenantFactory,
    ) -> None:
        """Test that exhausted retries classify as a connection failure."""
        tenant = await add_tenant("acme")
        failing = AsyncMock(side_effect=connection_reset())

        with patch.object(registry, "get_applied_migration", new=failing):
            report = await runner.apply_migration(CREATE_TAGS)

        result = report.result_for(tenant.id)
        assert result.outcome is MigrationOutcome.FAILED
        assert result.error_kind is ErrorKind.CONNECTION_FAILED
        assert failing.await_count == 2

    @pytest.mark.asyncio
    async def test_interrupted_attempt_is_retried(
        self,
        runner: MigrationRunner,
        registry: TenantRegistry,
        tenant_databases: TenantDatabaseManager,
        add_tenant: TenantFactory,
    ) -> None:
        """Test that an attempt lost before the SQL ran rolls back and is retried."""
        tenant = await add_tenant("acme")
        engine = tenant_databases.get_engine(tenant.db_name)

        with patch.object(
            tenant_databases, "get_engine", side_effect=[connection_reset(), engine]
        ):
            report = await runner.apply_migration(CREATE_TAGS)

        assert report.result_for(tenant.id).outcome is MigrationOutcome.APPLIED
        assert "tags" in await tables(tenant_databases, tenant)
        entries = await registry.list_applied_migrations(tenant.id)
        assert [e.migration_name for e in entries] == ["0001_tags"]

    @pytest.mark.asyncio
    async def test_sql_errors_are_not_retried(
        self,
        runner: MigrationRunner,
        registry: TenantRegistry,
        tenant_databases: TenantDatabaseManager,
        add_tenant: TenantFactory,
    ) -> None:
        """Test that a failing script runs once and leaves no ledger entry."""
        tenant = await add_tenant("acme")
        script = AsyncMock(side_effect=connection_reset())

        with patch.object(tenant_databases, "execute_script", new=script):
            report = await runner.apply_migration(CREATE_TAGS)

        result = report.result_for(tenant.id)
        assert result.outcome is MigrationOutcome.FAILED
        assert result.error_kind is ErrorKind.MIGRATION_FAILED
        assert script.await_count == 1
        assert await registry.get_applied_migration(tenant.id, "0001_tags") is None


class TestApplyMigrations:
    """Tests for applying a series of migrations."""

    @pytest.mark.asyncio
    async def test_applies_series_in_order(
        self,
        runner: MigrationRunner,
        registry: TenantRegistry,
        add_tenant: TenantFactory,
    ) -> None:
        """Test that later migrations see earlier ones."""
        tenant = await add_tenant("acme")

        reports = await runner.apply_migrations([CREATE_TAGS, ADD_TAG])

        assert [r.status for r in reports] == [ReportStatus.SUCCESS] * 2
        entries = await registry.list_applied_migrations(tenant.id)
        assert [e.migration_name for e in entries] == ["0001_tags", "0002_seed_tags"]

    @pytest.mark.asyncio
    async def test_failed_tenant_skips_rest_of_series(
        self,
        runner: MigrationRunner,
        tenant_databases: TenantDatabaseManager,
        add_tenant: TenantFactory,
    ) -> None:
        """Test that a tenant failing one migration is skipped afterwards."""
        ok = await add_tenant("ok")
        broken = await add_tenant("broken")
        async with tenant_databases.get_engine(broken.db_name).begin() as conn:
            await conn.execute(text("CREATE TABLE tags (id INTEGER PRIMARY KEY)"))

        first, second = await runner.apply_migrations([CREATE_TAGS, ADD_TAG])

        assert first.result_for(broken.id).outcome is MigrationOutcome.FAILED
        assert second.result_for(broken.id).skip_reason is SkipReason.EARLIER_FAILURE
        assert second.result_for(ok.id).outcome is MigrationOutcome.APPLIED

    @pytest.mark.asyncio
    async def test_duplicate_names_are_rejected(self, runner: MigrationRunner) -> None:
        """Test that a series cannot contain the same migration twice."""
        with pytest.raises(MigrationError) as exc_info:
            await runner.apply_migrations([CREATE_TAGS, CREATE_TAGS])

        assert exc_info.value.kind is ErrorKind.DUPLICATE_MIGRATION

    @pytest.mark.asyncio
    async def test_pending_migrations(
        self,
        runner: MigrationRunner,
        add_tenant: TenantFactory,
    ) -> None:
        """Test listing the migrations a tenant has not committed."""
        tenant = await add_tenant("acme")
        await runner.apply_migration(CREATE_TAGS)

        pending = await runner.pending_migrations([CREATE_TAGS, ADD_TAG], tenant.id)

        assert pending == ["0002_seed_tags"]

    @pytest.mark.asyncio
    async def test_pending_for_unknown_tenant(self, runner: MigrationRunner) -> None:
        """Test that pending migrations require an existing tenant."""
        with pytest.raises(MigrationError) as exc_info:
            await runner.pending_migrations([CREATE_TAGS], uuid4())

        assert exc_info.value.kind is ErrorKind.TENANT_NOT_FOUND


class TestLoadMigrations:
    """Tests for reading migration files."""

    def test_name_and_checksum(self, tmp_path: Path) -> None:
        """Test that the name is the file stem and the checksum its content."""
        path = tmp_path / "0001_tags.sql"
        path.write_text("CREATE TABLE tags (id INTEGER);")

        migration = load_migration_file(path)

        assert migration.name == "0001_tags"
        assert migration.checksum == compute_checksum("CREATE TABLE tags (id INTEGER);")

    def test_series_is_sorted_across_directories(self, tmp_path: Path) -> None:
        """Test that files from several directories are ordered by name."""
        base = tmp_path / "base"
        extra = tmp_path / "extra"
        base.mkdir()
        extra.mkdir()
        (base / "0002_b.sql").write_text("SELECT 2;")
        (extra / "0001_a.sql").write_text("SELECT 1;")
        (extra / "notes.txt").write_text("ignored")

        series = load_migration_series(base, extra)

        assert [m.name for m in series] == ["0001_a", "0002_b"]

    def test_duplicate_across_directories(self, tmp_path: Path) -> None:
        """Test that a name defined twice is rejected."""
        for directory in ("base", "extra"):
            (tmp_path / directory).mkdir()
            (tmp_path / directory / "0001_a.sql").write_text("SELECT 1;")

        with pytest.raises(MigrationError) as exc_info:
            load_migration_series(tmp_path / "base", tmp_path / "extra")

        assert exc_info.value.kind is ErrorKind.DUPLICATE_MIGRATION

    def test_missing_file(self, tmp_path: Path) -> None:
        """Test that an unreadable file is a migration failure."""
        with pytest.raises(MigrationError) as exc_info:
            load_migration_file(tmp_path / "0001_missing.sql")

        assert exc_info.value.kind is ErrorKind.MIGRATION_FAILED

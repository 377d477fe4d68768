# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Integration tests against a PostgreSQL server.

These tests need a server where the configured user may create roles and
databases. They run only when TEST_DATABASE_HOST is set, e.g.:

    TEST_DATABASE_HOST=localhost TEST_DATABASE_PASSWORD=postgres pytest -m integration
"""

import os
from uuid import uuid4

import pytest
from sqlalchemy import text

from tenantforge.core.config.settings import DatabaseSettings
from tenantforge.domains.root.initializer import RootInitializer
from tenantforge.infrastructure.database.connection import create_database_engine
from tenantforge.infrastructure.database.tenant_manager import (
    TenantDatabaseError,
    TenantDatabaseManager,
)

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(
        "TEST_DATABASE_HOST" not in os.environ,
        reason="TEST_DATABASE_HOST not set",
    ),
]


@pytest.fixture
def postgres_settings() -> DatabaseSettings:
    return DatabaseSettings(
        host=os.environ.get("TEST_DATABASE_HOST", "localhost"),
        port=int(os.environ.get("TEST_DATABASE_PORT", "5432")),
        user=os.environ.get("TEST_DATABASE_USER", "postgres"),
        password=os.environ.get("TEST_DATABASE_PASSWORD", ""),  # type: ignore[arg-type]
    )


@pytest.fixture
def names() -> tuple[str, str]:
    suffix = uuid4().hex[:8]
    return f"tf_test_{suffix}", f"tf_test_{suffix}_owner"


class TestPostgresTenantDatabases:
    """Tests for tenant databases on PostgreSQL."""

    @pytest.mark.asyncio
    async def test_create_migrate_and_drop(
        self, postgres_settings: DatabaseSettings, names: tuple[str, str]
    ) -> None:
        """Test the full lifecycle of a tenant database."""
        db_name, role_name = names
        manager = TenantDatabaseManager(postgres_settings)

        try:
            info = await manager.create_tenant_database(db_name, role_name, "pw-123")
            assert info.role_name == role_name

            async with manager.get_engine(db_name).begin() as conn:
                await manager.execute_script(
                    conn,
                    "CREATE TABLE tags (id serial PRIMARY KEY, label text);\n"
                    "INSERT INTO tags (label) VALUES ('a'), ('b');",
                )
            async with manager.get_engine(db_name).connect() as conn:
                count = (await conn.execute(text("SELECT count(*) FROM tags"))).scalar()
            assert count == 2

            with pytest.raises(TenantDatabaseError):
                await manager.create_tenant_database(db_name, f"{role_name}_2", "pw")
        finally:
            await manager.drop_tenant_database(db_name, role_name)
            await manager.close_all()

        checker = TenantDatabaseManager(postgres_settings)
        try:
            assert await checker.check_connection(db_name) is False
        finally:
            await checker.close_all()

    @pytest.mark.asyncio
    async def test_failed_script_rolls_back(
        self, postgres_settings: DatabaseSettings, names: tuple[str, str]
    ) -> None:
        """Test that a failing script leaves no partial DDL."""
        db_name, role_name = names
        manager = TenantDatabaseManager(postgres_settings)

        try:
            await manager.create_tenant_database(db_name, role_name, "pw-123")
            with pytest.raises(Exception):
                async with manager.get_engine(db_name).begin() as conn:
                    await manager.execute_script(
                        conn, "CREATE TABLE notes (id int);\nSELECT * FROM missing;"
                    )

            async with manager.get_engine(db_name).connect() as conn:
                exists = (
                    await conn.execute(text("SELECT to_regclass('public.notes')"))
                ).scalar()
            assert exists is None
        finally:
            await manager.drop_tenant_database(db_name, role_name)
            await manager.close_all()


class TestPostgresRootInitializer:
    """Tests for bootstrapping the registry on PostgreSQL."""

    @pytest.mark.asyncio
    async def test_creates_registry_database_and_tables(
        self, postgres_settings: DatabaseSettings, names: tuple[str, str]
    ) -> None:
        """Test that a missing registry database is created with its tables."""
        db_name, role_name = names
        settings = postgres_settings.model_copy(update={"root_database": db_name})
        engine = create_database_engine(settings, db_name)
        manager = TenantDatabaseManager(settings)

        try:
            initializer = RootInitializer(engine, settings)
            assert await initializer.initialize() == ["tenants", "applied_migrations"]
            assert await initializer.ensure_database() is False
            assert await initializer.is_initialized() is True
        finally:
            await engine.dispose()
            await manager.drop_tenant_database(db_name, role_name)
            await manager.close_all()

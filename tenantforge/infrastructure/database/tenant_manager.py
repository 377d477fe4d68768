# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Tenant database management.

Each tenant owns a database and a login role on the shared database
server. The manager creates and drops them with the setup user and keeps
one lazily created async engine per tenant database for migrations.

With the SQLite driver (local development and tests) a tenant database is
a file in the configured directory and roles do not exist.

Example:
    from tenantforge.infrastructure.database import TenantDatabaseManager

    manager = TenantDatabaseManager(config.database)

    await manager.create_tenant_database("tenant_acme", "tenant_acme_role", password)

    async with manager.get_engine("tenant_acme").begin() as conn:
        await manager.execute_script(conn, sql)

    await manager.close_all()
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from tenantforge.infrastructure.database.connection import create_database_engine

if TYPE_CHECKING:
    from tenantforge.core.config.settings import DatabaseSettings

logger = logging.getLogger(__name__)


class TenantDatabaseError(Exception):
    """Raised when a tenant database or role cannot be created or dropped.

    Attributes:
        db_name: The tenant database concerned.
        reason: The reason for the failure.
    """

    def __init__(self, db_name: str, reason: str) -> None:
        super().__init__(f"Tenant database {db_name}: {reason}")
        self.db_name = db_name
        self.reason = reason


@dataclass
class TenantDatabaseInfo:
    """Connection details of a freshly created tenant database.

    Attributes:
        database_name: Name of the database.
        role_name: Login role owning the database (None on SQLite).
        host: Database host.
        port: Database port.
    """

    database_name: str
    role_name: str | None
    host: str
    port: int


def _quote_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


class TenantDatabaseManager:
    """Creates tenant databases and caches one engine per database.

    Attributes:
        settings: Database server settings with the setup user credentials.

    Example:
        manager = TenantDatabaseManager(settings)
        info = await manager.create_tenant_database("tenant_acme", "acme", pw)
        healthy = await manager.check_connection("tenant_acme")
    """

    def __init__(self, settings: "DatabaseSettings", echo: bool = False) -> None:
        self._settings = settings
        self._echo = echo
        self._engines: dict[str, AsyncEngine] = {}

    @property
    def settings(self) -> "DatabaseSettings":
        return self._settings

    def _sqlite_path(self, db_name: str) -> Path:
        return Path(self._settings.sqlite_directory) / f"{db_name}.db"

    def _admin_engine(self) -> AsyncEngine:
        """Engine on the maintenance database, outside transactions.

        CREATE DATABASE and DROP DATABASE cannot run inside a transaction block.
        """
        return create_database_engine(
            self._settings,
            self._settings.maintenance_database,
            echo=self._echo,
            isolation_level="AUTOCOMMIT",
        )

    def _quote(self, engine: AsyncEngine, identifier: str) -> str:
        return engine.dialect.identifier_preparer.quote(identifier)

    async def create_tenant_database(
        self, db_name: str, role_name: str, password: str
    ) -> TenantDatabaseInfo:
        """Create a login role and a database owned by it.

        Pre-existing roles or databases are never adopted: the call fails
        instead, so that compensation never drops something it did not
        create. If the database cannot be created the new role is dropped
        before the error propagates.

        Args:
            db_name: Database to create.
            role_name: Login role to create as database owner.
            password: Password of the new role.

        Returns:
            TenantDatabaseInfo for the new database.

        Raises:
            TenantDatabaseError: If the role or database already exists.
            SQLAlchemyError: If the server rejects a statement.
        """
        if self._settings.is_sqlite:
            return await self._create_sqlite_database(db_name)

        engine = self._admin_engine()
        try:
            async with engine.connect() as conn:
                if await self._exists(conn, "pg_roles", "rolname", role_name):
                    raise TenantDatabaseError(db_name, f"role {role_name} already exists")
                if await self._exists(conn, "pg_database", "datname", db_name):
                    raise TenantDatabaseError(db_name, "database already exists")

                role = self._quote(engine, role_name)
                database = self._quote(engine, db_name)

                await conn.execute(
                    text(f"CREATE ROLE {role} LOGIN PASSWORD {_quote_literal(password)}")
                )
                logger.info("Created role %s", role_name)

                try:
                    await conn.execute(text(f"CREATE DATABASE {database} OWNER {role}"))
                    await conn.execute(
                        text(f"REVOKE ALL ON DATABASE {database} FROM PUBLIC")
                    )
                except SQLAlchemyError:
                    await conn.execute(text(f"DROP ROLE IF EXISTS {role}"))
                    logger.warning("Dropped role %s after database creation failed", role_name)
                    raise

                logger.info("Created database %s owned by %s", db_name, role_name)
        finally:
            await engine.dispose()

        return TenantDatabaseInfo(
            database_name=db_name,
            role_name=role_name,
            host=self._settings.host,
            port=self._settings.port,
        )

    async def _exists(
        self, conn: AsyncConnection, catalog: str, column: str, name: str
    ) -> bool:
        result = await conn.execute(
            text(f"SELECT 1 FROM {catalog} WHERE {column} = :name"), {"name": name}
        )
        return result.scalar() is not None

    async def _create_sqlite_database(self, db_name: str) -> TenantDatabaseInfo:
        path = self._sqlite_path(db_name)
        if path.exists():
            raise TenantDatabaseError(db_name, "database already exists")

        engine = self.get_engine(db_name)
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        logger.info("Created database file %s", path)

        return TenantDatabaseInfo(
            database_name=db_name, role_name=None, host="localhost", port=0
        )

    async def drop_tenant_database(self, db_name: str, role_name: str) -> None:
        """Drop a tenant database and its role.

        Cached connections are closed first. Missing objects are ignored.

        Args:
            db_name: Database to drop.
            role_name: Role to drop after the database.

        Raises:
            SQLAlchemyError: If the server rejects a statement.
        """
        await self._close_engine(db_name)

        if self._settings.is_sqlite:
            self._sqlite_path(db_name).unlink(missing_ok=True)
            logger.info("Removed database file for %s", db_name)
            return

        engine = self._admin_engine()
        try:
            async with engine.connect() as conn:
                database = self._quote(engine, db_name)
                role = self._quote(engine, role_name)
                await conn.execute(
                    text(f"DROP DATABASE IF EXISTS {database} WITH (FORCE)")
                )
                await conn.execute(text(f"DROP ROLE IF EXISTS {role}"))
        finally:
            await engine.dispose()

        logger.info("Dropped database %s and role %s", db_name, role_name)

    def get_engine(self, db_name: str) -> AsyncEngine:
        """Get or create the async engine for a tenant database."""
        if db_name not in self._engines:
            self._engines[db_name] = create_database_engine(
                self._settings, db_name, echo=self._echo
            )
        return self._engines[db_name]

    async def execute_script(self, conn: AsyncConnection, sql: str) -> None:
        """Execute a multi-statement SQL script on an open transaction.

        The script runs verbatim on PostgreSQL. SQLite only accepts one
        statement per call, so the script is split on semicolons there.

        Args:
            conn: Connection with an active transaction.
            sql: Script text.

        Raises:
            Exception: The driver or SQLAlchemy error of the failing
                statement. The caller's transaction context rolls back.
        """
        if conn.dialect.name == "postgresql":
            # Starts the transaction on the driver connection before the raw call.
            await conn.execute(text("SELECT 1"))
            raw = await conn.get_raw_connection()
            await raw.driver_connection.execute(sql)
            return

        for statement in sql.split(";"):
            if statement.strip():
                await conn.exec_driver_sql(statement)

    async def check_connection(self, db_name: str) -> bool:
        """Check if a tenant database is reachable."""
        try:
            engine = self.get_engine(db_name)
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except (SQLAlchemyError, OSError):
            return False

    async def _close_engine(self, db_name: str) -> None:
        engine = self._engines.pop(db_name, None)
        if engine is not None:
            await engine.dispose()

    async def close_all(self) -> None:
        """Dispose every cached tenant engine."""
        for db_name in list(self._engines):
            await self._close_engine(db_name)

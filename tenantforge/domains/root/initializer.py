# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Root registry bootstrap.

Creates the registry database on the server when it is missing, then the
registry tables inside it. Running it again is a no-op. Existing tables
are inspected and never altered: a table missing expected columns is
reported as a schema mismatch for the operator to resolve.

Example:
    >>> initializer = RootInitializer()
    >>> created = await initializer.initialize()
    >>> created
    ['tenants', 'applied_migrations']
"""

import logging
from typing import TYPE_CHECKING

from sqlalchemy import Connection, inspect, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from tenantforge.core.errors import ErrorKind, InitError, ResourceKind
from tenantforge.infrastructure.database.connection import (
    create_database_engine,
    get_registry_engine,
    translate_database_error,
)
from tenantforge.infrastructure.database.models import REGISTRY_TABLES, Base

if TYPE_CHECKING:
    from tenantforge.core.config.settings import DatabaseSettings

logger = logging.getLogger(__name__)


def _existing_columns(conn: Connection) -> dict[str, set[str]]:
    """Map each registry table present in the database to its column names."""
    inspector = inspect(conn)
    existing = set(inspector.get_table_names())
    return {
        table.name: {column["name"] for column in inspector.get_columns(table.name)}
        for table in REGISTRY_TABLES
        if table.name in existing
    }


def _missing_columns(existing: dict[str, set[str]]) -> dict[str, list[str]]:
    mismatches: dict[str, list[str]] = {}
    for table in REGISTRY_TABLES:
        if table.name not in existing:
            continue
        missing = [c.name for c in table.columns if c.name not in existing[table.name]]
        if missing:
            mismatches[table.name] = missing
    return mismatches


class RootInitializer:
    """Creates the registry database and tables when absent.

    Attributes:
        _engine: Engine bound to the registry database.
        _settings: Server settings used to create the registry database.
            Without them the database must already exist.
    """

    def __init__(
        self,
        engine: AsyncEngine | None = None,
        settings: "DatabaseSettings | None" = None,
    ) -> None:
        """Initialize the bootstrapper.

        Args:
            engine: Registry engine. Defaults to the one set up by
                init_registry_database().
            settings: Database server settings naming the registry and
                maintenance databases.
        """
        self._engine = engine or get_registry_engine()
        self._settings = settings

    async def ensure_database(self) -> bool:
        """Create the registry database on the server if it does not exist.

        Runs on the maintenance database outside a transaction. SQLite
        files are created by the first connection, so nothing is done there.

        Returns:
            True if the database was created.

        Raises:
            InitError: CONNECTION_FAILED if the server is unreachable,
                PERMISSION_DENIED if the user may not create databases.
        """
        settings = self._settings
        if settings is None or settings.is_sqlite:
            return False

        name = settings.root_database
        engine = create_database_engine(
            settings, settings.maintenance_database, isolation_level="AUTOCOMMIT"
        )
        try:
            async with engine.connect() as conn:
                result = await conn.execute(
                    text("SELECT 1 FROM pg_database WHERE datname = :name"),
                    {"name": name},
                )
                if result.scalar() is not None:
                    return False

                database = engine.dialect.identifier_preparer.quote(name)
                await conn.execute(text(f"CREATE DATABASE {database}"))
        except (SQLAlchemyError, OSError) as e:
            raise translate_database_error(
                e, "Registry database creation failed", error_cls=InitError
            ) from e
        finally:
            await engine.dispose()

        logger.info("Created registry database %s", name)
        return True

    async def initialize(self) -> list[str]:
        """Create the registry database if needed, then missing registry tables.

        Returns:
            Names of the tables created, in creation order. Empty if the
            registry was already initialized.

        Raises:
            InitError: SCHEMA_MISMATCH if an existing table lacks expected
                columns, CONNECTION_FAILED if the registry is unreachable,
                PERMISSION_DENIED if the user may not create the database
                or tables.
        """
        await self.ensure_database()

        try:
            async with self._engine.begin() as conn:
                existing = await conn.run_sync(_existing_columns)
                self._raise_for_mismatch(existing)

                missing = [t for t in REGISTRY_TABLES if t.name not in existing]
                if missing:
                    await conn.run_sync(
                        lambda sync_conn: Base.metadata.create_all(
                            sync_conn, tables=missing, checkfirst=False
                        )
                    )
        except InitError:
            raise
        except (SQLAlchemyError, OSError) as e:
            raise translate_database_error(
                e, "Registry initialization failed", error_cls=InitError
            ) from e

        created = [t.name for t in missing]
        if created:
            logger.info("Created registry tables: %s", ", ".join(created))
        else:
            logger.info("Registry already initialized")
        return created

    async def is_initialized(self) -> bool:
        """Check whether every registry table exists with the expected columns.

        Raises:
            InitError: CONNECTION_FAILED or PERMISSION_DENIED if the
                registry cannot be inspected.
        """
        try:
            async with self._engine.connect() as conn:
                existing = await conn.run_sync(_existing_columns)
        except (SQLAlchemyError, OSError) as e:
            raise translate_database_error(
                e, "Registry inspection failed", error_cls=InitError
            ) from e

        if len(existing) != len(REGISTRY_TABLES):
            return False
        return not _missing_columns(existing)

    def _raise_for_mismatch(self, existing: dict[str, set[str]]) -> None:
        mismatches = _missing_columns(existing)
        if not mismatches:
            return

        details = "; ".join(
            f"{table} lacks {', '.join(columns)}" for table, columns in mismatches.items()
        )
        raise InitError(
            ErrorKind.SCHEMA_MISMATCH,
            f"Registry schema does not match: {details}",
            resource_kind=ResourceKind.REGISTRY,
        )

# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Registry database connection management using SQLAlchemy async.

The registry (root) database stores the tenant records and the migration
ledger. This module owns its connection pool and provides the engine
factory shared with tenant databases.

Uses SQLAlchemy 2.0 async API with asyncpg driver. SQLite through
aiosqlite is supported for local development and tests.

Example:
    from tenantforge.infrastructure.database.connection import (
        init_registry_database,
        get_registry_sessionmaker,
    )

    await init_registry_database(config)

    async with get_registry_sessionmaker()() as session:
        result = await session.execute(select(Tenant))
        tenants = result.scalars().all()
"""

import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Optional
from uuid import UUID

from sqlalchemy import event, text
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from tenantforge.core.errors import ErrorKind, ResourceKind, TenantForgeError
from tenantforge.infrastructure.providers.base import ProviderError

if TYPE_CHECKING:
    from tenantforge.core.config.settings import DatabaseSettings, RootConfig
    from tenantforge.infrastructure.providers.base import SecretsProvider

logger = logging.getLogger(__name__)

PERMISSION_DENIED_SQLSTATE = "42501"

# Module-level state for the registry database connection
_registry_engine: Optional[AsyncEngine] = None
_registry_sessionmaker: Optional[async_sessionmaker[AsyncSession]] = None


class DatabaseError(Exception):
    """Raised when the registry connection is used before initialization.

    Attributes:
        message: Human-readable error description.
        original_error: The underlying SQLAlchemy or database error.
    """

    def __init__(self, message: str, original_error: Optional[Exception] = None) -> None:
        super().__init__(message)
        self.message = message
        self.original_error = original_error

    def __str__(self) -> str:
        if self.original_error:
            return f"{self.message}: {self.original_error}"
        return self.message


def _sqlstate(exc: BaseException) -> str | None:
    """Extract the SQLSTATE code from a wrapped driver exception."""
    candidates = [exc, getattr(exc, "orig", None)]
    orig = getattr(exc, "orig", None)
    if orig is not None:
        candidates.append(orig.__cause__)

    for candidate in candidates:
        if candidate is None:
            continue
        for attribute in ("sqlstate", "pgcode"):
            code = getattr(candidate, attribute, None)
            if isinstance(code, str):
                return code
    return None


def is_permission_denied(exc: BaseException) -> bool:
    """Check whether a database error is an insufficient-privilege error."""
    return _sqlstate(exc) == PERMISSION_DENIED_SQLSTATE


def classify_database_error(
    exc: BaseException, default_kind: ErrorKind = ErrorKind.CONNECTION_FAILED
) -> ErrorKind:
    """Classify a SQLAlchemy or driver failure.

    Insufficient privilege is PERMISSION_DENIED, connectivity failures are
    CONNECTION_FAILED, and anything else is default_kind.
    """
    if is_permission_denied(exc):
        return ErrorKind.PERMISSION_DENIED
    if isinstance(exc, (OperationalError, InterfaceError, OSError, TimeoutError)):
        return ErrorKind.CONNECTION_FAILED
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return ErrorKind.CONNECTION_FAILED
    return default_kind


def translate_database_error(
    exc: BaseException,
    message: str,
    *,
    default_kind: ErrorKind = ErrorKind.CONNECTION_FAILED,
    error_cls: type[TenantForgeError] = TenantForgeError,
    tenant_id: UUID | None = None,
    resource_kind: ResourceKind = ResourceKind.REGISTRY,
) -> TenantForgeError:
    """Map a SQLAlchemy or driver failure to a structured error.

    The kind is chosen by classify_database_error().

    Args:
        exc: The failure to translate.
        message: Context prefix for the error message.
        default_kind: Kind used for failures that are not about access
            or connectivity.
        error_cls: TenantForgeError subclass to build.
        tenant_id: Tenant the failure concerns.
        resource_kind: Resource the failure concerns.

    Returns:
        The structured error. The caller raises it from exc.
    """
    return error_cls(
        classify_database_error(exc, default_kind),
        f"{message}: {exc}",
        tenant_id=tenant_id,
        resource_kind=resource_kind,
    )


def create_database_engine(
    settings: "DatabaseSettings",
    database: str,
    *,
    echo: bool = False,
    isolation_level: str | None = None,
) -> AsyncEngine:
    """Create an async engine for one database on the configured server.

    SQLite engines use the pysqlite transaction recipe so that BEGIN is
    emitted explicitly and DDL participates in transactions.

    Args:
        settings: Database server settings.
        database: Database name.
        echo: Log SQL statements.
        isolation_level: Optional isolation level, e.g. "AUTOCOMMIT" for
            statements that cannot run inside a transaction.

    Returns:
        A new AsyncEngine. The caller owns it and must dispose it.
    """
    url = settings.url(database)
    options: dict = {"echo": echo}
    if isolation_level is not None:
        options["isolation_level"] = isolation_level

    if settings.is_sqlite:
        Path(settings.sqlite_directory).mkdir(parents=True, exist_ok=True)
        engine = create_async_engine(
            url,
            poolclass=NullPool,
            connect_args={"timeout": settings.connect_timeout},
            **options,
        )

        if isolation_level is None:

            @event.listens_for(engine.sync_engine, "connect")
            def _disable_driver_transactions(dbapi_connection, connection_record):
                dbapi_connection.isolation_level = None

            @event.listens_for(engine.sync_engine, "begin")
            def _emit_begin(conn):
                conn.exec_driver_sql("BEGIN")

        return engine

    return create_async_engine(
        url,
        pool_size=settings.pool_size,
        max_overflow=settings.max_overflow,
        pool_pre_ping=True,
        pool_recycle=1800,
        connect_args={"timeout": settings.connect_timeout},
        **options,
    )


async def resolve_setup_credentials(
    settings: "DatabaseSettings", secrets: "SecretsProvider"
) -> "DatabaseSettings":
    """Load the setup user credentials from a secret when configured.

    Args:
        settings: Database settings, possibly naming a credentials secret.
        secrets: Secrets provider to read from.

    Returns:
        The settings unchanged, or a copy carrying the secret's credentials.

    Raises:
        TenantForgeError: CONNECTION_FAILED if the secret cannot be read,
            is missing or is malformed.
    """
    if not settings.setup_user_secret_name:
        return settings

    name = settings.setup_user_secret_name
    try:
        value = await secrets.get(name)
    except ProviderError as e:
        raise TenantForgeError(
            ErrorKind.CONNECTION_FAILED,
            f"Could not read setup user secret {name}: {e.message}",
            resource_kind=ResourceKind.SECRET,
        ) from e

    if value is None:
        raise TenantForgeError(
            ErrorKind.CONNECTION_FAILED,
            f"Setup user secret not found: {name}",
            resource_kind=ResourceKind.SECRET,
        )

    try:
        data = json.loads(value)
        username, password = data["username"], data["password"]
    except (ValueError, TypeError, KeyError) as e:
        raise TenantForgeError(
            ErrorKind.CONNECTION_FAILED,
            f"Setup user secret {name} must be a JSON object with username and password",
            resource_kind=ResourceKind.SECRET,
        ) from e

    logger.info("Loaded setup user credentials from secret %s", name)
    return settings.with_credentials(username, password)


async def init_registry_database(config: "RootConfig") -> None:
    """Initialize the registry database connection pool.

    Call once at startup, after setup credentials have been resolved.

    Args:
        config: Root configuration.

    Raises:
        DatabaseError: If engine creation fails.
    """
    global _registry_engine, _registry_sessionmaker

    try:
        _registry_engine = create_database_engine(
            config.database,
            config.database.root_database,
            echo=config.debug,
        )

        _registry_sessionmaker = async_sessionmaker(
            bind=_registry_engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
    except SQLAlchemyError as e:
        raise DatabaseError("Failed to initialize registry database connection", e) from e


async def close_registry_database() -> None:
    """Dispose the registry connection pool."""
    global _registry_engine, _registry_sessionmaker

    if _registry_engine is not None:
        await _registry_engine.dispose()
        _registry_engine = None
        _registry_sessionmaker = None


def get_registry_engine() -> AsyncEngine:
    """Get the registry database async engine.

    Raises:
        DatabaseError: If the database has not been initialized.
    """
    if _registry_engine is None:
        raise DatabaseError(
            "Registry database not initialized. Call init_registry_database() first."
        )
    return _registry_engine


def get_registry_sessionmaker() -> async_sessionmaker[AsyncSession]:
    """Get the registry database sessionmaker.

    Raises:
        DatabaseError: If the database has not been initialized.
    """
    if _registry_sessionmaker is None:
        raise DatabaseError(
            "Registry database not initialized. Call init_registry_database() first."
        )
    return _registry_sessionmaker


async def check_registry_connection() -> bool:
    """Check if the registry database is reachable."""
    if _registry_engine is None:
        return False

    try:
        async with _registry_engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except (SQLAlchemyError, OSError):
        return False

# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Database infrastructure for tenantforge.

This package provides:
- Registry database connection management (root registry of tenants)
- Tenant database management (create/drop role and database, engines)
- SQLAlchemy models for the registry tables

Example:
    from tenantforge.infrastructure.database import (
        init_registry_database,
        TenantDatabaseManager,
    )
"""

from tenantforge.infrastructure.database.connection import (
    DatabaseError,
    check_registry_connection,
    classify_database_error,
    close_registry_database,
    create_database_engine,
    get_registry_engine,
    get_registry_sessionmaker,
    init_registry_database,
    is_permission_denied,
    resolve_setup_credentials,
    translate_database_error,
)
from tenantforge.infrastructure.database.tenant_manager import (
    TenantDatabaseError,
    TenantDatabaseInfo,
    TenantDatabaseManager,
)

__all__ = [
    # Registry database
    "DatabaseError",
    "init_registry_database",
    "close_registry_database",
    "get_registry_engine",
    "get_registry_sessionmaker",
    "check_registry_connection",
    "create_database_engine",
    "resolve_setup_credentials",
    "translate_database_error",
    "classify_database_error",
    "is_permission_denied",
    # Tenant databases
    "TenantDatabaseManager",
    "TenantDatabaseError",
    "TenantDatabaseInfo",
]

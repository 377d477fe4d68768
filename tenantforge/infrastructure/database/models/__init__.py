# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""SQLAlchemy models for the root registry database."""

from tenantforge.infrastructure.database.models.base import Base, TimestampMixin
from tenantforge.infrastructure.database.models.registry import (
    REGISTRY_TABLES,
    TENANT_ENVIRONMENTS,
    TENANT_STATUSES,
    AppliedMigration,
    Tenant,
)

__all__ = [
    "Base",
    "TimestampMixin",
    "Tenant",
    "AppliedMigration",
    "REGISTRY_TABLES",
    "TENANT_STATUSES",
    "TENANT_ENVIRONMENTS",
]

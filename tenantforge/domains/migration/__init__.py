# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Tenant database migrations."""

from tenantforge.domains.migration.schemas import (
    MigrationFile,
    MigrationFilter,
    MigrationOutcome,
    MigrationReport,
    ReportStatus,
    SkipReason,
    TenantMigrationResult,
    compute_checksum,
)
from tenantforge.domains.migration.service import (
    MigrationRunner,
    load_migration_file,
    load_migration_series,
)

__all__ = [
    "MigrationRunner",
    "MigrationFile",
    "MigrationFilter",
    "MigrationOutcome",
    "MigrationReport",
    "ReportStatus",
    "SkipReason",
    "TenantMigrationResult",
    "compute_checksum",
    "load_migration_file",
    "load_migration_series",
]

# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Root registry domain: tenant records and the migration ledger."""

from tenantforge.domains.registry.repository import LedgerEntryExistsError, TenantRegistry
from tenantforge.domains.registry.schemas import (
    Environment,
    MigrationRecord,
    TenantDescriptor,
    TenantRecord,
    TenantStatus,
)

__all__ = [
    "TenantRegistry",
    "LedgerEntryExistsError",
    "Environment",
    "TenantStatus",
    "TenantDescriptor",
    "TenantRecord",
    "MigrationRecord",
]

# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Provisioning results."""

from dataclasses import dataclass
from uuid import UUID

from tenantforge.core.errors import ProvisionError
from tenantforge.domains.registry.schemas import TenantRecord


@dataclass
class ProvisionResult:
    """Outcome of one tenant in a batch provisioning run.

    Exactly one of record and error is set unless the tenant was skipped
    because the run was stopped before it started.

    Attributes:
        tenant_id: Descriptor id.
        record: The active tenant record on success.
        error: The provisioning failure.
        skipped: True if the tenant was never started.
    """

    tenant_id: UUID
    record: TenantRecord | None = None
    error: ProvisionError | None = None
    skipped: bool = False

    @property
    def succeeded(self) -> bool:
        return self.record is not None

# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Migration schemas: migration files, target filters and reports."""

import hashlib
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, computed_field

from tenantforge.core.errors import ErrorKind
from tenantforge.domains.registry.schemas import Environment


def compute_checksum(sql: str) -> str:
    """SHA-256 hex digest of the UTF-8 encoded migration text."""
    return hashlib.sha256(sql.encode("utf-8")).hexdigest()


class MigrationFile(BaseModel):
    """A migration: raw SQL text identified by name and checksum.

    Attributes:
        name: Migration name (file stem).
        checksum: SHA-256 hex digest of the SQL text.
        sql: SQL applied verbatim to each tenant database.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    checksum: str
    sql: str

    @classmethod
    def from_text(cls, name: str, sql: str) -> "MigrationFile":
        return cls(name=name, checksum=compute_checksum(sql), sql=sql)


class MigrationFilter(BaseModel):
    """Selects the tenants a migration targets.

    Attributes:
        environment: Only tenants of this environment. Others are left
            out of the report entirely.
        tenant_id: Only this tenant.
    """

    model_config = ConfigDict(frozen=True)

    environment: Environment | None = None
    tenant_id: UUID | None = None


class MigrationOutcome(str, Enum):
    """Per-tenant result of applying a migration."""

    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
    FAILED = "failed"
    SKIPPED = "skipped"


class SkipReason(str, Enum):
    """Why a tenant was not attempted."""

    INACTIVE = "inactive"
    CANCELLED = "cancelled"
    EARLIER_FAILURE = "earlier_failure"


class ReportStatus(str, Enum):
    """Aggregate status of a migration run."""

    SUCCESS = "success"
    PARTIAL_FAILURE = "partial_failure"


class TenantMigrationResult(BaseModel):
    """Result of one migration on one tenant.

    Attributes:
        tenant_id: Target tenant.
        outcome: What happened.
        error_kind: Failure classification when outcome is failed.
        skip_reason: Why the tenant was skipped.
        message: Human-readable detail.
    """

    model_config = ConfigDict(frozen=True)

    tenant_id: UUID
    outcome: MigrationOutcome
    error_kind: ErrorKind | None = None
    skip_reason: SkipReason | None = None
    message: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.outcome in (MigrationOutcome.APPLIED, MigrationOutcome.ALREADY_APPLIED)

    @property
    def counts_as_failure(self) -> bool:
        """Whether this result keeps the run from being a success.

        Tenants skipped for not being active were never targets.
        """
        if self.succeeded:
            return False
        return self.skip_reason is not SkipReason.INACTIVE


class MigrationReport(BaseModel):
    """Aggregated result of one migration across its targets.

    Attributes:
        migration_name: Migration applied.
        checksum: Checksum of the applied content.
        results: Per-tenant results in registry order.
    """

    migration_name: str
    checksum: str
    results: list[TenantMigrationResult] = Field(default_factory=list)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def status(self) -> ReportStatus:
        if any(r.counts_as_failure for r in self.results):
            return ReportStatus.PARTIAL_FAILURE
        return ReportStatus.SUCCESS

    @property
    def failures(self) -> list[TenantMigrationResult]:
        """Results of targets that were neither applied nor already applied."""
        return [r for r in self.results if r.counts_as_failure]

    def result_for(self, tenant_id: UUID) -> TenantMigrationResult | None:
        for result in self.results:
            if result.tenant_id == tenant_id:
                return result
        return None

    def count(self, outcome: MigrationOutcome) -> int:
        return sum(1 for r in self.results if r.outcome is outcome)

# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Root registry tables.

The registry database holds one row per tenant ever provisioned and the
ledger of migrations applied to each tenant database. Both tables rely on
their primary keys for atomic reservation: inserting a tenant id or a
(tenant_id, migration_name) pair either succeeds once or fails with an
integrity error.
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from tenantforge.infrastructure.database.models.base import Base, TimestampMixin
from tenantforge.utils.datetime import utc_now

TENANT_STATUSES = ("provisioning", "active", "failed", "deleted")
TENANT_ENVIRONMENTS = ("development", "production")


class Tenant(Base, TimestampMixin):
    """A provisioned (or partially provisioned) tenant.

    Rows are never deleted, so a tenant id can never be reused.
    """

    __tablename__ = "tenants"
    __table_args__ = (
        CheckConstraint(
            "status IN ('provisioning', 'active', 'failed', 'deleted')",
            name="ck_tenants_status",
        ),
        CheckConstraint(
            "environment IN ('development', 'production')",
            name="ck_tenants_environment",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    environment: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    db_name: Mapped[str] = mapped_column(String(63), nullable=False)
    db_secret_name: Mapped[str] = mapped_column(String(512), nullable=False)
    db_role_name: Mapped[str] = mapped_column(String(63), nullable=False)
    storage_bucket_name: Mapped[str] = mapped_column(String(63), nullable=False)
    search_index_name: Mapped[str] = mapped_column(String(255), nullable=False)
    storage_queue_arn: Mapped[str] = mapped_column(String(1024), nullable=False)
    event_queue_url: Mapped[str] = mapped_column(String(1024), nullable=False)
    cors_origins: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="provisioning", index=True
    )
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<Tenant(id={self.id}, environment={self.environment}, status={self.status})>"


class AppliedMigration(Base):
    """Ledger row: a migration committed on a tenant database.

    Rows are append-only. The composite primary key guarantees at most one
    row per tenant and migration name.
    """

    __tablename__ = "applied_migrations"

    tenant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tenants.id"), primary_key=True
    )
    migration_name: Mapped[str] = mapped_column(String(255), primary_key=True)
    checksum: Mapped[str] = mapped_column(String(64), nullable=False)
    applied_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    def __repr__(self) -> str:
        return (
            f"<AppliedMigration(tenant_id={self.tenant_id}, "
            f"migration_name={self.migration_name})>"
        )


REGISTRY_TABLES = (Tenant.__table__, AppliedMigration.__table__)

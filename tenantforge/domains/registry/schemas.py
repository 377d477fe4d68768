# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Registry schemas: tenant descriptors, tenant records and ledger rows.

TenantDescriptor is the provisioning input. TenantRecord and
MigrationRecord are read-only views of registry rows handed to callers,
detached from any database session.
"""

import re
from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from tenantforge.utils.datetime import ensure_utc

# Letters, digits, "_" or "-", starting with a letter or "_", at most 63 chars
DATABASE_IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_-]{0,62}$")


class Environment(str, Enum):
    """Deployment environment of a tenant."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"

    @classmethod
    def parse(cls, value: "str | Environment") -> "Environment":
        """Parse an environment name, case-insensitively.

        Raises:
            ValueError: If the name is not a known environment.
        """
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            allowed = ", ".join(e.value for e in cls)
            raise ValueError(
                f"Unknown environment {value!r}, expected one of: {allowed}"
            ) from None


class TenantStatus(str, Enum):
    """Lifecycle status of a tenant record."""

    PROVISIONING = "provisioning"
    ACTIVE = "active"
    FAILED = "failed"
    DELETED = "deleted"


class TenantDescriptor(BaseModel):
    """Everything needed to provision a tenant.

    Attributes:
        id: Tenant identifier, unique forever.
        environment: Deployment environment.
        db_name: Tenant database name.
        db_secret_name: Secret receiving the database credentials.
        db_role_name: Login role owning the tenant database.
        storage_bucket_name: Object storage bucket.
        search_index_name: Search index.
        storage_queue_arn: Queue receiving bucket notifications.
        event_queue_url: Queue receiving tenant events.
        cors_origins: Origins allowed to reach the bucket from a browser.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: UUID
    environment: Environment
    db_name: str
    db_secret_name: str = Field(min_length=1)
    db_role_name: str
    storage_bucket_name: str = Field(min_length=1)
    search_index_name: str = Field(min_length=1)
    storage_queue_arn: str = Field(min_length=1)
    event_queue_url: str = Field(min_length=1)
    cors_origins: list[str] = Field(default_factory=list)

    @field_validator("environment", mode="before")
    @classmethod
    def parse_environment(cls, value: object) -> Environment:
        return Environment.parse(value)  # type: ignore[arg-type]

    @field_validator("db_name", "db_role_name")
    @classmethod
    def validate_database_identifier(cls, value: str) -> str:
        if not DATABASE_IDENTIFIER_PATTERN.match(value):
            raise ValueError(
                "must be 1-63 letters, digits, '_' or '-', "
                "starting with a letter or '_'"
            )
        return value


class TenantRecord(BaseModel):
    """A tenant as persisted in the registry."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: UUID
    environment: Environment
    db_name: str
    db_secret_name: str
    db_role_name: str
    storage_bucket_name: str
    search_index_name: str
    storage_queue_arn: str
    event_queue_url: str
    cors_origins: list[str]
    status: TenantStatus
    failure_reason: str | None = None
    created_at: datetime
    updated_at: datetime

    @field_validator("created_at", "updated_at")
    @classmethod
    def attach_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @property
    def is_active(self) -> bool:
        return self.status is TenantStatus.ACTIVE

    def to_descriptor(self) -> TenantDescriptor:
        """Return the descriptor fields of this record."""
        return TenantDescriptor.model_validate(
            self.model_dump(include=set(TenantDescriptor.model_fields))
        )


class MigrationRecord(BaseModel):
    """A ledger row: migration_name committed on tenant_id."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    tenant_id: UUID
    migration_name: str
    checksum: str
    applied_at: datetime

    @field_validator("applied_at")
    @classmethod
    def attach_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

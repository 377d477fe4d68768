# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Structured errors for tenantforge.

Every failure surfaced by the orchestrator carries an ErrorKind plus the
tenant and resource it concerns, so that a caller (usually a CLI) can decide
its exit behavior without parsing messages.

Example:
    >>> try:
    ...     await provisioner.create_tenant(descriptor)
    ... except ProvisionError as e:
    ...     if e.kind is ErrorKind.DUPLICATE_ID:
    ...         ...
"""

from enum import Enum
from typing import Any
from uuid import UUID


class ErrorKind(str, Enum):
    """Classification of orchestrator failures."""

    CONNECTION_FAILED = "connection_failed"
    PERMISSION_DENIED = "permission_denied"
    DUPLICATE_ID = "duplicate_id"
    INVALID_ENVIRONMENT = "invalid_environment"
    INVALID_DESCRIPTOR = "invalid_descriptor"
    RESOURCE_CREATE_FAILED = "resource_create_failed"
    CHECKSUM_CONFLICT = "checksum_conflict"
    SCHEMA_MISMATCH = "schema_mismatch"
    MIGRATION_FAILED = "migration_failed"
    DUPLICATE_MIGRATION = "duplicate_migration"
    TENANT_NOT_FOUND = "tenant_not_found"


class ResourceKind(str, Enum):
    """External resource a failure relates to."""

    REGISTRY = "registry"
    DATABASE = "database"
    SECRET = "secret"
    STORAGE_BUCKET = "storage_bucket"
    SEARCH_INDEX = "search_index"
    QUEUE = "queue"


class TenantForgeError(Exception):
    """Base exception for orchestrator failures.

    Attributes:
        kind: Failure classification.
        message: Human-readable error description.
        tenant_id: Tenant the failure concerns, if any.
        resource_kind: External resource the failure concerns, if any.
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        tenant_id: UUID | None = None,
        resource_kind: ResourceKind | None = None,
    ) -> None:
        """Initialize the error.

        Args:
            kind: Failure classification.
            message: Human-readable error description.
            tenant_id: Tenant the failure concerns.
            resource_kind: External resource the failure concerns.
        """
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.tenant_id = tenant_id
        self.resource_kind = resource_kind

    def __str__(self) -> str:
        """Return string representation of the error."""
        return f"{self.kind.value}: {self.message}"

    def to_dict(self) -> dict[str, Any]:
        """Serialize the error for machine-readable output."""
        return {
            "kind": self.kind.value,
            "message": self.message,
            "tenant_id": str(self.tenant_id) if self.tenant_id else None,
            "resource_kind": self.resource_kind.value if self.resource_kind else None,
        }


class InitError(TenantForgeError):
    """Raised when the root registry cannot be initialized."""

    pass


class ProvisionError(TenantForgeError):
    """Raised when a tenant cannot be provisioned.

    Attributes:
        cleanup_errors: Failures of compensating actions that ran after the
            original error. They never replace the original error.
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        tenant_id: UUID | None = None,
        resource_kind: ResourceKind | None = None,
        cleanup_errors: list[Exception] | None = None,
    ) -> None:
        super().__init__(
            kind, message, tenant_id=tenant_id, resource_kind=resource_kind
        )
        self.cleanup_errors = list(cleanup_errors or [])

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["cleanup_errors"] = [str(e) for e in self.cleanup_errors]
        return data


class MigrationError(TenantForgeError):
    """Raised when a migration cannot be applied or loaded."""

    pass

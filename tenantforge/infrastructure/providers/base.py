# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Capability interfaces for external resource providers.

The orchestrator never talks to a cloud service directly. Each resource
kind is reached through one of these interfaces, and a concrete variant is
selected once at startup by create_providers().

Implementations must be safe to call concurrently from several tasks and
must raise ProviderError for every failure of the remote service.
"""

from abc import ABC, abstractmethod

from tenantforge.core.errors import ResourceKind


class ProviderError(Exception):
    """Raised when an external provider call fails.

    Attributes:
        resource_kind: Resource the call concerned.
        operation: Provider operation that failed (e.g. "create_bucket").
        message: Human-readable error description.
        transient: Whether retrying the same call may succeed.
        already_exists: Whether a create call failed because the resource
            already exists.
    """

    def __init__(
        self,
        resource_kind: ResourceKind,
        operation: str,
        message: str,
        *,
        transient: bool = False,
        already_exists: bool = False,
    ) -> None:
        super().__init__(f"{resource_kind.value}.{operation}: {message}")
        self.resource_kind = resource_kind
        self.operation = operation
        self.message = message
        self.transient = transient
        self.already_exists = already_exists


class SecretsProvider(ABC):
    """Stores string secrets by name."""

    @abstractmethod
    async def put(self, name: str, value: str, *, exist_ok: bool = False) -> None:
        """Create a secret.

        Fails if a secret with this name exists, unless exist_ok is set, in
        which case the existing secret is given the value.
        """

    @abstractmethod
    async def get(self, name: str) -> str | None:
        """Return the secret value, or None if it does not exist."""

    @abstractmethod
    async def delete(self, name: str) -> None:
        """Delete a secret immediately. Deleting a missing secret is a no-op."""


class StorageProvider(ABC):
    """Manages object-storage buckets."""

    @abstractmethod
    async def create_bucket(
        self, name: str, cors_origins: list[str], *, exist_ok: bool = False
    ) -> None:
        """Create a bucket and apply CORS rules for the given origins.

        An empty origin list creates the bucket without CORS rules. With
        exist_ok a bucket already owned by the caller is accepted and gets
        the CORS rules.
        """

    @abstractmethod
    async def delete_bucket(self, name: str) -> None:
        """Delete an empty bucket. Deleting a missing bucket is a no-op."""

    @abstractmethod
    async def add_bucket_notifications(self, name: str, queue_arn: str) -> None:
        """Send object-created notifications of a bucket to a queue."""


class SearchProvider(ABC):
    """Manages search indexes."""

    @abstractmethod
    async def create_index(self, name: str, *, exist_ok: bool = False) -> None:
        """Create an index. Fails if the index exists, unless exist_ok is set."""

    @abstractmethod
    async def delete_index(self, name: str) -> None:
        """Delete an index. Deleting a missing index is a no-op."""


class QueueProvider(ABC):
    """Validates message-queue references."""

    @abstractmethod
    async def validate(self, reference: str) -> None:
        """Check that a queue ARN or URL names a reachable queue.

        Raises:
            ProviderError: If the reference is malformed or the queue
                cannot be reached.
        """

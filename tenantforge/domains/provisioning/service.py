# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Tenant provisioning service.

Creating a tenant touches several independent systems that cannot share
a transaction, so provisioning runs as a saga: each step that creates a
resource registers a compensation, and a failure runs the registered
compensations in reverse order before the tenant is marked failed.

The provisioning flow:
0. Validate the environment
1. Reserve the tenant id in the registry (status=provisioning)
2. Create the database role and database, store its credentials secret
3. Create the storage bucket with CORS rules
4. Create the search index
5. Validate both queues and bind bucket notifications to the storage queue
6. Mark the tenant active

A cancelled provision runs the same compensations before the cancellation
propagates.

Example:
    >>> provisioner = TenantProvisioner(registry, databases, providers)
    >>> record = await provisioner.create_tenant(descriptor)
    >>> record.status
    <TenantStatus.ACTIVE: 'active'>
"""

import asyncio
import json
import logging
import secrets
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Mapping, TypeVar
from uuid import UUID

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from tenantforge.core.config.yaml_loader import YAMLLoadError, load_yaml_directory
from tenantforge.core.errors import (
    ErrorKind,
    ProvisionError,
    ResourceKind,
    TenantForgeError,
)
from tenantforge.domains.provisioning.schemas import ProvisionResult
from tenantforge.domains.registry.repository import TenantRegistry
from tenantforge.domains.registry.schemas import (
    Environment,
    TenantDescriptor,
    TenantRecord,
    TenantStatus,
)
from tenantforge.infrastructure.database.connection import (
    classify_database_error,
    translate_database_error,
)
from tenantforge.infrastructure.database.tenant_manager import TenantDatabaseManager
from tenantforge.infrastructure.providers.factory import ProviderSet
from tenantforge.infrastructure.resilience import (
    RetryPolicy,
    is_transient_error,
    retry_async,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

PASSWORD_BYTES = 32

Compensation = tuple[ResourceKind, str, Callable[[], Awaitable[None]]]


def load_descriptor(data: Mapping[str, Any]) -> TenantDescriptor:
    """Validate a raw descriptor document.

    Args:
        data: Parsed descriptor document.

    Returns:
        The validated descriptor.

    Raises:
        ProvisionError: INVALID_ENVIRONMENT if the environment is unknown,
            INVALID_DESCRIPTOR for any other validation failure.
    """
    try:
        return TenantDescriptor.model_validate(dict(data))
    except ValidationError as e:
        errors = e.errors()
        kind = ErrorKind.INVALID_DESCRIPTOR
        if any(err["loc"] and err["loc"][0] == "environment" for err in errors):
            kind = ErrorKind.INVALID_ENVIRONMENT

        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'descriptor'}: {err['msg']}"
            for err in errors
        )
        raise ProvisionError(kind, f"Invalid tenant descriptor: {details}") from e


def load_descriptors(directory: Path) -> list[TenantDescriptor]:
    """Load every descriptor document of a directory, in file name order.

    Raises:
        ProvisionError: INVALID_DESCRIPTOR if a document cannot be read,
            or as raised by load_descriptor.
    """
    try:
        documents = load_yaml_directory(directory)
    except YAMLLoadError as e:
        raise ProvisionError(ErrorKind.INVALID_DESCRIPTOR, str(e)) from e

    return [load_descriptor(document) for document in documents.values()]


class TenantProvisioner:
    """Creates tenants across the database server and resource providers.

    Attributes:
        _registry: Tenant registry.
        _databases: Tenant database manager.
        _providers: Secrets, storage, search and queue providers.
        _retry_policy: Retry policy for every external call.
        _concurrency: Size of the batch provisioning worker pool.
    """

    def __init__(
        self,
        registry: TenantRegistry,
        databases: TenantDatabaseManager,
        providers: ProviderSet,
        retry_policy: RetryPolicy | None = None,
        concurrency: int = 4,
    ) -> None:
        self._registry = registry
        self._databases = databases
        self._providers = providers
        self._retry_policy = retry_policy or RetryPolicy()
        self._concurrency = max(concurrency, 1)

    async def _call(self, func: Callable[[], Awaitable[T]], operation: str) -> T:
        return await retry_async(func, policy=self._retry_policy, operation=operation)

    # =========================================================================
    # Lookups
    # =========================================================================

    async def get_tenant(self, tenant_id: UUID) -> TenantRecord | None:
        """Get a tenant record by id.

        Raises:
            TenantForgeError: If the registry cannot be reached.
        """
        try:
            return await self._call(
                lambda: self._registry.get_tenant(tenant_id), "get_tenant"
            )
        except (SQLAlchemyError, OSError) as e:
            raise translate_database_error(e, "Tenant lookup failed") from e

    async def list_tenants(
        self,
        environment: Environment | None = None,
        status: TenantStatus | None = None,
    ) -> list[TenantRecord]:
        """List tenant records, optionally filtered.

        Raises:
            TenantForgeError: If the registry cannot be reached.
        """
        try:
            return await self._call(
                lambda: self._registry.list_tenants(environment=environment, status=status),
                "list_tenants",
            )
        except (SQLAlchemyError, OSError) as e:
            raise translate_database_error(e, "Tenant listing failed") from e

    # =========================================================================
    # Provisioning
    # =========================================================================

    async def create_tenant(self, descriptor: TenantDescriptor) -> TenantRecord:
        """Provision a tenant under an all-or-nothing contract.

        Args:
            descriptor: Tenant to create.

        Returns:
            The active tenant record.

        Raises:
            ProvisionError: INVALID_ENVIRONMENT before anything is touched,
                DUPLICATE_ID if the id is taken, RESOURCE_CREATE_FAILED if a
                resource could not be created (the tenant is then marked
                failed and every resource created so far is removed),
                CONNECTION_FAILED or PERMISSION_DENIED if the registry
                cannot be written.
        """
        tenant_id = descriptor.id

        # 0. Validate environment
        try:
            environment = Environment.parse(descriptor.environment)
        except ValueError as e:
            raise ProvisionError(
                ErrorKind.INVALID_ENVIRONMENT, str(e), tenant_id=tenant_id
            ) from e

        # 1. Reserve the id
        try:
            await self._call(
                lambda: self._registry.reserve_tenant(descriptor), "reserve_tenant"
            )
        except ProvisionError:
            raise
        except (SQLAlchemyError, OSError) as e:
            raise translate_database_error(
                e,
                "Could not reserve tenant",
                error_cls=ProvisionError,
                tenant_id=tenant_id,
            ) from e

        logger.info("Provisioning tenant %s in %s", tenant_id, environment.value)

        compensations: list[Compensation] = []
        stage = ResourceKind.DATABASE
        try:
            # 2. Database, role and credentials secret
            password = secrets.token_urlsafe(PASSWORD_BYTES)
            await self._create(
                lambda retrying: self._databases.create_tenant_database(
                    descriptor.db_name, descriptor.db_role_name, password
                ),
                "create_tenant_database",
                (
                    ResourceKind.DATABASE,
                    "drop_tenant_database",
                    lambda: self._databases.drop_tenant_database(
                        descriptor.db_name, descriptor.db_role_name
                    ),
                ),
                compensations,
            )
            logger.info("Database %s created for tenant %s", descriptor.db_name, tenant_id)

            stage = ResourceKind.SECRET
            credentials = json.dumps(
                {
                    "username": descriptor.db_role_name,
                    "password": password,
                    "database": descriptor.db_name,
                }
            )
            await self._create(
                lambda retrying: self._providers.secrets.put(
                    descriptor.db_secret_name, credentials, exist_ok=retrying
                ),
                "put_secret",
                (
                    ResourceKind.SECRET,
                    "delete_secret",
                    lambda: self._providers.secrets.delete(descriptor.db_secret_name),
                ),
                compensations,
            )
            logger.info("Credentials stored in %s", descriptor.db_secret_name)

            # 3. Storage bucket with CORS rules
            stage = ResourceKind.STORAGE_BUCKET
            await self._create(
                lambda retrying: self._providers.storage.create_bucket(
                    descriptor.storage_bucket_name,
                    list(descriptor.cors_origins),
                    exist_ok=retrying,
                ),
                "create_bucket",
                (
                    ResourceKind.STORAGE_BUCKET,
                    "delete_bucket",
                    lambda: self._providers.storage.delete_bucket(
                        descriptor.storage_bucket_name
                    ),
                ),
                compensations,
            )
            logger.info("Bucket %s created", descriptor.storage_bucket_name)

            # 4. Search index
            stage = ResourceKind.SEARCH_INDEX
            await self._create(
                lambda retrying: self._providers.search.create_index(
                    descriptor.search_index_name, exist_ok=retrying
                ),
                "create_index",
                (
                    ResourceKind.SEARCH_INDEX,
                    "delete_index",
                    lambda: self._providers.search.delete_index(
                        descriptor.search_index_name
                    ),
                ),
                compensations,
            )
            logger.info("Search index %s created", descriptor.search_index_name)

            # 5. Queues and bucket notifications
            stage = ResourceKind.QUEUE
            await self._call(
                lambda: self._providers.queue.validate(descriptor.storage_queue_arn),
                "validate_storage_queue",
            )
            await self._call(
                lambda: self._providers.queue.validate(descriptor.event_queue_url),
                "validate_event_queue",
            )

            stage = ResourceKind.STORAGE_BUCKET
            await self._call(
                lambda: self._providers.storage.add_bucket_notifications(
                    descriptor.storage_bucket_name, descriptor.storage_queue_arn
                ),
                "add_bucket_notifications",
            )
            logger.info("Bucket notifications bound to %s", descriptor.storage_queue_arn)
        except asyncio.CancelledError:
            await self._fail_cancelled(tenant_id, compensations, stage)
            raise
        except Exception as e:
            raise await self._fail(
                tenant_id,
                compensations,
                ErrorKind.RESOURCE_CREATE_FAILED,
                f"{stage.value} step failed: {e}",
                stage,
            ) from e

        # 6. Mark active
        try:
            record = await self._call(
                lambda: self._registry.set_status(tenant_id, TenantStatus.ACTIVE),
                "mark_active",
            )
        except asyncio.CancelledError:
            await self._fail_cancelled(tenant_id, compensations, ResourceKind.REGISTRY)
            raise
        except Exception as e:
            kind = ErrorKind.CONNECTION_FAILED
            if isinstance(e, TenantForgeError):
                kind = e.kind
            elif isinstance(e, (SQLAlchemyError, OSError)):
                kind = classify_database_error(e)
            raise await self._fail(
                tenant_id,
                compensations,
                kind,
                f"Could not mark tenant active: {e}",
                ResourceKind.REGISTRY,
            ) from e

        logger.info("Tenant %s provisioned successfully", tenant_id)
        return record

    async def _create(
        self,
        create: Callable[[bool], Awaitable[Any]],
        operation: str,
        compensation: Compensation,
        compensations: list[Compensation],
    ) -> None:
        """Run a create call with retries and register its compensation.

        create receives True on retries: an attempt that failed transiently,
        timed out or was cancelled may have created the resource, so later
        attempts accept an existing resource and complete it. For the same
        reason the compensation is registered even if the call finally
        fails; deleting a missing resource is a no-op.
        """
        attempts = 0

        async def attempt() -> None:
            nonlocal attempts
            attempts += 1
            await create(attempts > 1)

        try:
            await self._call(attempt, operation)
        except (Exception, asyncio.CancelledError) as e:
            if (
                attempts > 1
                or isinstance(e, asyncio.CancelledError)
                or is_transient_error(e)
            ):
                compensations.append(compensation)
            raise
        compensations.append(compensation)

    async def _fail_cancelled(
        self,
        tenant_id: UUID,
        compensations: list[Compensation],
        resource_kind: ResourceKind,
    ) -> None:
        """Compensate a cancelled provision, shielded from further cancellation."""
        logger.warning("Provisioning tenant %s cancelled, cleaning up", tenant_id)
        await asyncio.shield(
            self._fail(
                tenant_id,
                compensations,
                ErrorKind.RESOURCE_CREATE_FAILED,
                f"{resource_kind.value} step cancelled",
                resource_kind,
            )
        )

    async def _fail(
        self,
        tenant_id: UUID,
        compensations: list[Compensation],
        kind: ErrorKind,
        message: str,
        resource_kind: ResourceKind,
    ) -> ProvisionError:
        """Undo created resources, mark the tenant failed, build the error."""
        logger.error("Provisioning tenant %s failed: %s", tenant_id, message)

        cleanup_errors = await self._compensate(tenant_id, compensations)

        try:
            await self._call(
                lambda: self._registry.set_status(
                    tenant_id, TenantStatus.FAILED, failure_reason=message
                ),
                "mark_failed",
            )
        except Exception as e:
            logger.error("Could not mark tenant %s failed: %s", tenant_id, e)
            cleanup_errors.append(e)

        return ProvisionError(
            kind,
            message,
            tenant_id=tenant_id,
            resource_kind=resource_kind,
            cleanup_errors=cleanup_errors,
        )

    async def _compensate(
        self, tenant_id: UUID, compensations: list[Compensation]
    ) -> list[Exception]:
        """Run compensations in reverse order, collecting their failures."""
        errors: list[Exception] = []
        for resource_kind, operation, undo in reversed(compensations):
            try:
                await self._call(undo, operation)
                logger.info("Compensated %s for tenant %s", operation, tenant_id)
            except Exception as e:
                logger.error(
                    "Compensation %s failed for tenant %s, %s left behind: %s",
                    operation,
                    tenant_id,
                    resource_kind.value,
                    e,
                )
                errors.append(e)
        return errors

    async def create_tenants(
        self,
        descriptors: Iterable[TenantDescriptor],
        stop: asyncio.Event | None = None,
    ) -> list[ProvisionResult]:
        """Provision several independent tenants on the worker pool.

        A failing tenant does not affect the others. Once stop is set no
        further tenant is started; tenants already in progress complete.

        Args:
            descriptors: Tenants to create.
            stop: Optional event requesting a graceful stop.

        Returns:
            One result per descriptor, in input order.
        """
        semaphore = asyncio.Semaphore(self._concurrency)

        async def provision(descriptor: TenantDescriptor) -> ProvisionResult:
            async with semaphore:
                if stop is not None and stop.is_set():
                    logger.info("Stop requested, skipping tenant %s", descriptor.id)
                    return ProvisionResult(tenant_id=descriptor.id, skipped=True)
                try:
                    record = await self.create_tenant(descriptor)
                except ProvisionError as e:
                    return ProvisionResult(tenant_id=descriptor.id, error=e)
                except TenantForgeError as e:
                    return ProvisionResult(
                        tenant_id=descriptor.id,
                        error=ProvisionError(
                            e.kind,
                            e.message,
                            tenant_id=descriptor.id,
                            resource_kind=e.resource_kind,
                        ),
                    )
                return ProvisionResult(tenant_id=descriptor.id, record=record)

        return list(await asyncio.gather(*(provision(d) for d in descriptors)))

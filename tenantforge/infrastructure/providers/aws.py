# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Shared boto3 helpers for the AWS-backed providers.

boto3 clients are blocking, so calls run in worker threads through
call_aws(). Botocore failures are converted to ProviderError, flagged
transient for throttling, server-side and connectivity errors.
"""

import asyncio
from functools import partial
from typing import Any, Callable

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionError as BotoConnectionError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from tenantforge.core.errors import ResourceKind
from tenantforge.infrastructure.providers.base import ProviderError

TRANSIENT_ERROR_CODES = frozenset(
    {
        "Throttling",
        "ThrottlingException",
        "TooManyRequestsException",
        "RequestLimitExceeded",
        "RequestThrottled",
        "SlowDown",
        "ServiceUnavailable",
        "InternalError",
        "InternalFailure",
        "InternalServiceError",
        "RequestTimeout",
    }
)

# Codes meaning the caller already owns a resource of that name
ALREADY_EXISTS_CODES = frozenset({"BucketAlreadyOwnedByYou", "ResourceExistsException"})


def create_client(
    service: str,
    *,
    region: str | None = None,
    endpoint_url: str | None = None,
    access_key_id: str | None = None,
    secret_access_key: str | None = None,
    config: Config | None = None,
) -> Any:
    """Create a boto3 client, falling back to the default credential chain."""
    kwargs: dict[str, Any] = {}
    if region:
        kwargs["region_name"] = region
    if endpoint_url:
        kwargs["endpoint_url"] = endpoint_url
    if access_key_id and secret_access_key:
        kwargs["aws_access_key_id"] = access_key_id
        kwargs["aws_secret_access_key"] = secret_access_key
    if config is not None:
        kwargs["config"] = config
    return boto3.client(service, **kwargs)


def error_code(exc: ClientError) -> str:
    """Return the AWS error code of a ClientError."""
    return str(exc.response.get("Error", {}).get("Code", ""))


def to_provider_error(
    exc: Exception, resource_kind: ResourceKind, operation: str
) -> ProviderError:
    """Convert a botocore failure to a ProviderError."""
    if isinstance(exc, ClientError):
        code = error_code(exc)
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
        transient = code in TRANSIENT_ERROR_CODES or (
            isinstance(status, int) and status >= 500
        )
        message = exc.response.get("Error", {}).get("Message") or code
        return ProviderError(
            resource_kind,
            operation,
            f"{code}: {message}",
            transient=transient,
            already_exists=code in ALREADY_EXISTS_CODES,
        )

    transient = isinstance(
        exc,
        (BotoConnectionError, EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError),
    )
    return ProviderError(resource_kind, operation, str(exc), transient=transient)


async def call_aws(
    method: Callable[..., Any],
    resource_kind: ResourceKind,
    operation: str,
    *,
    missing_codes: frozenset[str] = frozenset(),
    **kwargs: Any,
) -> Any:
    """Run a blocking boto3 client method in a worker thread.

    Args:
        method: Bound client method, e.g. client.create_bucket.
        resource_kind: Resource used in the raised ProviderError.
        operation: Operation name used in the raised ProviderError.
        missing_codes: Error codes meaning "does not exist"; they make
            the call return None instead of raising.
        **kwargs: Arguments of the client method.

    Returns:
        The client method's response, or None for a missing_codes error.

    Raises:
        ProviderError: If botocore raises.
    """
    try:
        return await asyncio.to_thread(partial(method, **kwargs))
    except ClientError as e:
        if error_code(e) in missing_codes:
            return None
        raise to_provider_error(e, resource_kind, operation) from e
    except BotoCoreError as e:
        raise to_provider_error(e, resource_kind, operation) from e

# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""SQS queue reference validation."""

import logging
from typing import TYPE_CHECKING, Any

from tenantforge.core.errors import ResourceKind
from tenantforge.infrastructure.providers.aws import call_aws, create_client
from tenantforge.infrastructure.providers.base import ProviderError, QueueProvider

if TYPE_CHECKING:
    from tenantforge.core.config.settings import QueueSettings

logger = logging.getLogger(__name__)


def parse_queue_arn(arn: str) -> tuple[str, str, str]:
    """Split an SQS queue ARN into (region, account_id, queue_name).

    Raises:
        ValueError: If the ARN is not an SQS queue ARN.
    """
    parts = arn.split(":")
    if len(parts) != 6 or parts[0] != "arn" or parts[2] != "sqs":
        raise ValueError(f"not an SQS queue ARN: {arn}")
    _, _, _, region, account_id, queue_name = parts
    if not queue_name:
        raise ValueError(f"SQS queue ARN has no queue name: {arn}")
    return region, account_id, queue_name


class SqsQueueProvider(QueueProvider):
    """Checks that queue ARNs and URLs resolve to existing SQS queues."""

    def __init__(self, settings: "QueueSettings | None" = None, client: Any = None) -> None:
        if client is None:
            client = create_client(
                "sqs",
                region=settings.region if settings else None,
                endpoint_url=settings.endpoint_url if settings else None,
            )
        self._client = client

    async def validate(self, reference: str) -> None:
        if reference.startswith("arn:"):
            try:
                _, account_id, queue_name = parse_queue_arn(reference)
            except ValueError as e:
                raise ProviderError(ResourceKind.QUEUE, "validate", str(e)) from e

            await call_aws(
                self._client.get_queue_url,
                ResourceKind.QUEUE,
                "validate",
                QueueName=queue_name,
                QueueOwnerAWSAccountId=account_id,
            )
        elif reference.startswith(("https://", "http://")):
            await call_aws(
                self._client.get_queue_attributes,
                ResourceKind.QUEUE,
                "validate",
                QueueUrl=reference,
                AttributeNames=["QueueArn"],
            )
        else:
            raise ProviderError(
                ResourceKind.QUEUE,
                "validate",
                f"queue reference must be an ARN or URL: {reference!r}",
            )

        logger.debug("Queue %s is reachable", reference)

# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""S3 (and S3-compatible) bucket provider."""

import logging
from typing import TYPE_CHECKING, Any

from botocore.config import Config

from tenantforge.core.errors import ResourceKind
from tenantforge.infrastructure.providers.aws import call_aws, create_client
from tenantforge.infrastructure.providers.base import ProviderError, StorageProvider

if TYPE_CHECKING:
    from tenantforge.core.config.settings import StorageSettings

logger = logging.getLogger(__name__)

NO_SUCH_BUCKET = frozenset({"NoSuchBucket"})

CORS_ALLOWED_METHODS = ["GET", "PUT", "POST", "HEAD"]
CORS_MAX_AGE_SECONDS = 3000

NOTIFICATION_EVENTS = ["s3:ObjectCreated:*"]


def build_cors_configuration(origins: list[str]) -> dict[str, Any]:
    """Build the CORS rules allowing browser uploads from the given origins."""
    return {
        "CORSRules": [
            {
                "AllowedHeaders": ["*"],
                "AllowedMethods": CORS_ALLOWED_METHODS,
                "AllowedOrigins": list(origins),
                "ExposeHeaders": ["ETag"],
                "MaxAgeSeconds": CORS_MAX_AGE_SECONDS,
            }
        ]
    }


class S3StorageProvider(StorageProvider):
    """Buckets on S3 or an S3-compatible server."""

    def __init__(self, settings: "StorageSettings", client: Any = None) -> None:
        self._region = settings.region
        if client is None:
            client = create_client(
                "s3",
                region=settings.region,
                endpoint_url=settings.endpoint_url,
                access_key_id=settings.access_key_id,
                secret_access_key=(
                    settings.secret_access_key.get_secret_value()
                    if settings.secret_access_key
                    else None
                ),
                config=(
                    Config(s3={"addressing_style": "path"})
                    if settings.force_path_style
                    else None
                ),
            )
        self._client = client

    async def create_bucket(
        self, name: str, cors_origins: list[str], *, exist_ok: bool = False
    ) -> None:
        """Create the bucket, then apply CORS rules.

        If the CORS rules cannot be applied the bucket is deleted again so
        that a failed call leaves nothing behind. With exist_ok, a bucket
        already owned by this account is kept and gets the CORS rules.
        """
        kwargs: dict[str, Any] = {"Bucket": name}
        if self._region and self._region != "us-east-1":
            kwargs["CreateBucketConfiguration"] = {"LocationConstraint": self._region}

        try:
            await call_aws(
                self._client.create_bucket,
                ResourceKind.STORAGE_BUCKET,
                "create_bucket",
                **kwargs,
            )
            logger.info("Created bucket %s", name)
        except ProviderError as e:
            if not (exist_ok and e.already_exists):
                raise
            logger.info("Bucket %s already owned, completing it", name)

        if not cors_origins:
            return

        try:
            await call_aws(
                self._client.put_bucket_cors,
                ResourceKind.STORAGE_BUCKET,
                "put_bucket_cors",
                Bucket=name,
                CORSConfiguration=build_cors_configuration(cors_origins),
            )
        except ProviderError:
            logger.warning("Applying CORS to bucket %s failed, deleting it", name)
            try:
                await self.delete_bucket(name)
            except ProviderError as cleanup_error:
                logger.error("Could not delete bucket %s: %s", name, cleanup_error)
            raise

    async def delete_bucket(self, name: str) -> None:
        response = await call_aws(
            self._client.delete_bucket,
            ResourceKind.STORAGE_BUCKET,
            "delete_bucket",
            missing_codes=NO_SUCH_BUCKET,
            Bucket=name,
        )
        if response is not None:
            logger.info("Deleted bucket %s", name)

    async def add_bucket_notifications(self, name: str, queue_arn: str) -> None:
        await call_aws(
            self._client.put_bucket_notification_configuration,
            ResourceKind.STORAGE_BUCKET,
            "add_bucket_notifications",
            Bucket=name,
            NotificationConfiguration={
                "QueueConfigurations": [
                    {"QueueArn": queue_arn, "Events": NOTIFICATION_EVENTS}
                ]
            },
        )
        logger.info("Bucket %s notifies %s", name, queue_arn)

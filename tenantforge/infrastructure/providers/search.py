# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Search index providers for OpenSearch and Typesense over HTTP.

Both clients share the same error mapping: 429 and 5xx responses as well
as transport failures are transient, everything else is a logical error.
"""

import logging
from abc import abstractmethod
from typing import TYPE_CHECKING

import httpx

from tenantforge.core.errors import ResourceKind
from tenantforge.infrastructure.providers.base import ProviderError, SearchProvider

if TYPE_CHECKING:
    from tenantforge.core.config.settings import SearchSettings

logger = logging.getLogger(__name__)

# Typesense schema matching every field with automatic type detection
TYPESENSE_AUTO_SCHEMA_FIELDS = [{"name": ".*", "type": "auto"}]

OPENSEARCH_EXISTS_ERROR = "resource_already_exists_exception"


def _is_already_exists(status_code: int, detail: object) -> bool:
    """Typesense answers 409, OpenSearch 400 with a typed error."""
    if status_code == 409:
        return True
    if isinstance(detail, dict):
        error = detail.get("error")
        return isinstance(error, dict) and error.get("type") == OPENSEARCH_EXISTS_ERROR
    return False


class HttpSearchProvider(SearchProvider):
    """Common HTTP plumbing of the search providers.

    Attributes:
        base_url: Base URL of the search cluster.
    """

    def __init__(
        self,
        settings: "SearchSettings",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the provider.

        Args:
            settings: Search settings (URL, credentials, timeout).
            transport: Optional httpx transport, used to stub the cluster.
        """
        self._settings = settings
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def base_url(self) -> str:
        return self._settings.url.rstrip("/")

    @abstractmethod
    def _build_client(self) -> httpx.AsyncClient:
        """Create the HTTP client with the engine's authentication."""

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = self._build_client()
        return self._client

    async def _request(
        self, method: str, path: str, operation: str, **kwargs
    ) -> httpx.Response:
        try:
            return await self._get_client().request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise ProviderError(
                ResourceKind.SEARCH_INDEX, operation, str(e) or type(e).__name__, transient=True
            ) from e

    def _raise_for_status(self, response: httpx.Response, operation: str) -> None:
        """Raise ProviderError for an unsuccessful response."""
        if response.is_success:
            return

        try:
            detail = response.json()
        except ValueError:
            detail = response.text

        transient = response.status_code == 429 or response.status_code >= 500
        raise ProviderError(
            ResourceKind.SEARCH_INDEX,
            operation,
            f"HTTP {response.status_code}: {detail}",
            transient=transient,
            already_exists=_is_already_exists(response.status_code, detail),
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class OpenSearchProvider(HttpSearchProvider):
    """Indexes on an OpenSearch (or Elasticsearch) cluster.

    An api_key of the form "user:password" is sent as basic auth.
    """

    def _build_client(self) -> httpx.AsyncClient:
        auth = None
        if self._settings.api_key is not None:
            user, _, password = self._settings.api_key.get_secret_value().partition(":")
            auth = httpx.BasicAuth(user, password)

        return httpx.AsyncClient(
            base_url=self.base_url,
            auth=auth,
            timeout=self._settings.timeout,
            headers={"Content-Type": "application/json"},
            transport=self._transport,
        )

    async def create_index(self, name: str, *, exist_ok: bool = False) -> None:
        response = await self._request("PUT", f"/{name}", "create_index")
        try:
            self._raise_for_status(response, "create_index")
        except ProviderError as e:
            if not (exist_ok and e.already_exists):
                raise
            logger.info("Search index %s already exists", name)
            return
        logger.info("Created search index %s", name)

    async def delete_index(self, name: str) -> None:
        response = await self._request("DELETE", f"/{name}", "delete_index")
        if response.status_code == 404:
            return
        self._raise_for_status(response, "delete_index")
        logger.info("Deleted search index %s", name)


class TypesenseProvider(HttpSearchProvider):
    """Collections on a Typesense server."""

    def _build_client(self) -> httpx.AsyncClient:
        headers = {"Content-Type": "application/json"}
        if self._settings.api_key is not None:
            headers["X-TYPESENSE-API-KEY"] = self._settings.api_key.get_secret_value()

        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self._settings.timeout,
            headers=headers,
            transport=self._transport,
        )

    async def create_index(self, name: str, *, exist_ok: bool = False) -> None:
        response = await self._request(
            "POST",
            "/collections",
            "create_index",
            json={"name": name, "fields": TYPESENSE_AUTO_SCHEMA_FIELDS},
        )
        try:
            self._raise_for_status(response, "create_index")
        except ProviderError as e:
            if not (exist_ok and e.already_exists):
                raise
            logger.info("Search collection %s already exists", name)
            return
        logger.info("Created search collection %s", name)

    async def delete_index(self, name: str) -> None:
        response = await self._request("DELETE", f"/collections/{name}", "delete_index")
        if response.status_code == 404:
            return
        self._raise_for_status(response, "delete_index")
        logger.info("Deleted search collection %s", name)

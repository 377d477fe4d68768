# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Root configuration using Pydantic Settings.

RootConfig carries the registry connection details and the provider
selection for secrets, storage, search and queues. It is immutable and
loaded once at startup, either from environment variables, from a
structured YAML/JSON document, or from a JSON document kept in the
secrets provider.

The RootConfig class is the main entry point and aggregates all subsettings.
A cached instance built from the environment is provided via get_root_config().

Example:
    >>> from tenantforge.core.config.settings import load_root_config
    >>> config = load_root_config(Path("tenantforge.yaml"))
    >>> config.search.provider
    'opensearch'
"""

import json
from functools import lru_cache
from pathlib import Path
from typing import TYPE_CHECKING, Literal, Self

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.engine import URL

from tenantforge.core.config.yaml_loader import deep_merge, load_yaml
from tenantforge.core.errors import ErrorKind, ResourceKind, TenantForgeError
from tenantforge.infrastructure.providers.base import ProviderError

if TYPE_CHECKING:
    from tenantforge.infrastructure.providers.base import SecretsProvider


class DatabaseSettings(BaseSettings):
    """Database server configuration.

    The same server hosts the root registry database and every tenant
    database. The configured user is the setup (admin) user: it needs
    rights to create roles and databases.

    Attributes:
        driver: SQLAlchemy async driver name.
        host: Database host address.
        port: Database port number.
        user: Setup user name.
        password: Setup user password.
        setup_user_secret_name: Optional secret holding the setup user
            credentials as JSON ({"username": ..., "password": ...}).
        root_database: Name of the root registry database.
        maintenance_database: Database the setup user connects to when
            creating or dropping tenant databases.
        sqlite_directory: Directory holding database files when the
            driver is SQLite (local development and tests).
        pool_size: Connection pool size per database.
        max_overflow: Maximum overflow connections per database.
        connect_timeout: Seconds to wait for a new connection.
    """

    model_config = SettingsConfigDict(
        env_prefix="DATABASE_",
        extra="ignore",
        frozen=True,
    )

    driver: str = "postgresql+asyncpg"
    host: str = "localhost"
    port: int = 5432
    user: str = "postgres"
    password: SecretStr = SecretStr("")
    setup_user_secret_name: str | None = None
    root_database: str = "tenantforge_root"
    maintenance_database: str = "postgres"
    sqlite_directory: str = "data"
    pool_size: int = 5
    max_overflow: int = 10
    connect_timeout: float = 10.0

    @property
    def is_sqlite(self) -> bool:
        """Check if databases are SQLite files."""
        return self.driver.startswith("sqlite")

    def url(self, database: str) -> URL:
        """Build the connection URL for a database on this server.

        Args:
            database: Database name. For SQLite this is the file stem
                inside sqlite_directory.

        Returns:
            SQLAlchemy URL using the setup user credentials.
        """
        if self.is_sqlite:
            path = Path(self.sqlite_directory) / f"{database}.db"
            return URL.create(self.driver, database=str(path))

        return URL.create(
            self.driver,
            username=self.user,
            password=self.password.get_secret_value(),
            host=self.host,
            port=self.port,
            database=database,
        )

    def with_credentials(self, username: str, password: str) -> "DatabaseSettings":
        """Return a copy using different setup user credentials."""
        return self.model_copy(
            update={"user": username, "password": SecretStr(password)}
        )


class SecretsSettings(BaseSettings):
    """Secrets provider selection.

    Attributes:
        provider: Secrets backend ("aws" Secrets Manager or in-process "memory").
        region: AWS region override.
        endpoint_url: Custom endpoint (e.g. LocalStack).
    """

    model_config = SettingsConfigDict(
        env_prefix="SECRETS_",
        extra="ignore",
        frozen=True,
    )

    provider: Literal["aws", "memory"] = "aws"
    region: str | None = None
    endpoint_url: str | None = None


class StorageSettings(BaseSettings):
    """Object storage provider selection.

    Attributes:
        provider: Storage backend (S3 or S3-compatible).
        region: Bucket region.
        endpoint_url: Custom endpoint for S3-compatible servers (MinIO etc.).
        access_key_id: Explicit access key; default credential chain if unset.
        secret_access_key: Explicit secret key.
        force_path_style: Use path-style addressing (required by most
            S3-compatible servers).
    """

    model_config = SettingsConfigDict(
        env_prefix="STORAGE_",
        extra="ignore",
        frozen=True,
    )

    provider: Literal["s3"] = "s3"
    region: str | None = None
    endpoint_url: str | None = None
    access_key_id: str | None = None
    secret_access_key: SecretStr | None = None
    force_path_style: bool = False


class SearchSettings(BaseSettings):
    """Search engine provider selection.

    Attributes:
        provider: Search backend.
        url: Base URL of the search cluster.
        api_key: API key (Typesense) or "user:password" basic auth (OpenSearch).
        timeout: Request timeout in seconds.
    """

    model_config = SettingsConfigDict(
        env_prefix="SEARCH_",
        extra="ignore",
        frozen=True,
    )

    provider: Literal["opensearch", "typesense"] = "opensearch"
    url: str = "http://localhost:9200"
    api_key: SecretStr | None = None
    timeout: float = 30.0


class QueueSettings(BaseSettings):
    """Message queue provider selection.

    Attributes:
        provider: Queue backend.
        region: AWS region override.
        endpoint_url: Custom endpoint (e.g. LocalStack).
    """

    model_config = SettingsConfigDict(
        env_prefix="QUEUE_",
        extra="ignore",
        frozen=True,
    )

    provider: Literal["sqs"] = "sqs"
    region: str | None = None
    endpoint_url: str | None = None


class RetrySettings(BaseSettings):
    """Bounded retry policy for transient connectivity errors.

    Attributes:
        max_attempts: Attempts per call, including the first one.
        backoff_ms: Base backoff, doubled after each failed attempt.
        timeout_seconds: Timeout applied to each attempt.
    """

    model_config = SettingsConfigDict(
        env_prefix="RETRY_",
        extra="ignore",
        frozen=True,
    )

    max_attempts: int = Field(default=3, ge=1)
    backoff_ms: int = Field(default=200, ge=0)
    timeout_seconds: float = Field(default=60.0, gt=0)


class WorkerSettings(BaseSettings):
    """Worker pool configuration.

    Attributes:
        concurrency: Maximum number of tenants processed at the same time.
        migration_timeout_seconds: Timeout of one attempt to apply a
            migration to a tenant, SQL and commits included.
    """

    model_config = SettingsConfigDict(
        env_prefix="WORKER_",
        extra="ignore",
        frozen=True,
    )

    concurrency: int = Field(default=4, ge=1)
    migration_timeout_seconds: float = Field(default=3600.0, gt=0)


class RootConfig(BaseSettings):
    """Orchestrator configuration aggregating all subsettings.

    Use get_root_config() for environment-based configuration or
    load_root_config() to read a configuration document.

    Attributes:
        environment: Deployment environment of the orchestrator itself.
        debug: Enable debug mode (console logging, SQL echo).
        log_level: Logging level.
        database: Database server settings.
        secrets: Secrets provider settings.
        storage: Object storage provider settings.
        search: Search provider settings.
        queue: Queue provider settings.
        retry: Transient retry policy.
        worker: Worker pool settings.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
        frozen=True,
    )

    environment: Literal["development", "production"] = "development"
    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    secrets: SecretsSettings = Field(default_factory=SecretsSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    search: SearchSettings = Field(default_factory=SearchSettings)
    queue: QueueSettings = Field(default_factory=QueueSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    worker: WorkerSettings = Field(default_factory=WorkerSettings)

    @model_validator(mode="after")
    def validate_production_settings(self) -> Self:
        """Validate that production settings are properly configured.

        Raises:
            ValueError: If running in production with development-only providers.
        """
        if self.environment == "production":
            if self.secrets.provider == "memory":
                raise ValueError(
                    "The in-memory secrets provider loses tenant credentials on exit "
                    "and cannot be used in production. Set SECRETS_PROVIDER=aws."
                )
            if self.database.is_sqlite:
                raise ValueError(
                    "SQLite databases are for local development only. "
                    "Set DATABASE_DRIVER to a PostgreSQL driver."
                )
        return self

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == "production"


def load_root_config(path: Path, *overrides: Path) -> RootConfig:
    """Load configuration from YAML or JSON documents.

    Override documents are deep-merged over the base document in order,
    so a shared base can be refined per deployment. Values in the
    documents take precedence over environment variables.

    Args:
        path: Path to the base configuration document.
        *overrides: Paths to documents merged over the base.

    Returns:
        RootConfig built from the merged documents.

    Raises:
        YAMLLoadError: If a document cannot be read or parsed.
        pydantic.ValidationError: If the result is not a valid configuration.
    """
    data = load_yaml(path)
    for override in overrides:
        data = deep_merge(data, load_yaml(override))

    return RootConfig(**data)


async def load_root_config_from_secret(
    secrets: "SecretsProvider", name: str
) -> RootConfig:
    """Load configuration from a JSON document stored as a secret.

    Args:
        secrets: Secrets provider holding the document.
        name: Secret name.

    Returns:
        RootConfig built from the secret value.

    Raises:
        TenantForgeError: CONNECTION_FAILED if the secret cannot be read,
            does not exist or is not a JSON object.
        pydantic.ValidationError: If the document is not a valid configuration.
    """
    try:
        value = await secrets.get(name)
    except ProviderError as e:
        raise TenantForgeError(
            ErrorKind.CONNECTION_FAILED,
            f"Could not read configuration secret {name}: {e.message}",
            resource_kind=ResourceKind.SECRET,
        ) from e

    if value is None:
        raise TenantForgeError(
            ErrorKind.CONNECTION_FAILED,
            f"Configuration secret not found: {name}",
            resource_kind=ResourceKind.SECRET,
        )

    try:
        data = json.loads(value)
    except ValueError:
        data = None
    if not isinstance(data, dict):
        raise TenantForgeError(
            ErrorKind.CONNECTION_FAILED,
            f"Configuration secret {name} must hold a JSON object",
            resource_kind=ResourceKind.SECRET,
        )

    return RootConfig(**data)


@lru_cache(maxsize=1)
def get_root_config() -> RootConfig:
    """Get cached configuration built from the environment.

    Call clear_root_config_cache() if you need to reload settings.

    Returns:
        Cached RootConfig instance.
    """
    return RootConfig()


def clear_root_config_cache() -> None:
    """Clear the configuration cache.

    Useful for testing or after changing environment variables.
    """
    get_root_config.cache_clear()

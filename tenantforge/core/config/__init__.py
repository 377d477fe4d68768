# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Configuration package for tenantforge.

This package provides centralized configuration management:
- Settings: Pydantic-based RootConfig loaded from the environment,
  from YAML/JSON documents or from a secret
- YAML loader: Utilities for loading configuration and descriptor documents

Example:
    >>> from tenantforge.core.config import get_root_config
    >>> config = get_root_config()
    >>> print(config.database.root_database)
    'tenantforge_root'
"""

from tenantforge.core.config.settings import (
    DatabaseSettings,
    QueueSettings,
    RetrySettings,
    RootConfig,
    SearchSettings,
    SecretsSettings,
    StorageSettings,
    WorkerSettings,
    clear_root_config_cache,
    get_root_config,
    load_root_config,
    load_root_config_from_secret,
)
from tenantforge.core.config.yaml_loader import (
    YAMLLoadError,
    deep_merge,
    load_yaml,
    load_yaml_directory,
)

__all__ = [
    # Settings
    "RootConfig",
    "get_root_config",
    "clear_root_config_cache",
    "load_root_config",
    "load_root_config_from_secret",
    # Subsettings
    "DatabaseSettings",
    "SecretsSettings",
    "StorageSettings",
    "SearchSettings",
    "QueueSettings",
    "RetrySettings",
    "WorkerSettings",
    # YAML utilities
    "load_yaml",
    "load_yaml_directory",
    "deep_merge",
    "YAMLLoadError",
]

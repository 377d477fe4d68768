# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Structured document loader for configuration and tenant descriptors.

Documents are YAML files. Since YAML is a superset of JSON, JSON documents
load through the same path. A directory of descriptor documents can be
loaded in one call, and layered configuration documents are combined with
deep_merge.

Example:
    >>> from pathlib import Path
    >>> from tenantforge.core.config.yaml_loader import load_yaml, load_yaml_directory
    >>> config = load_yaml(Path("config/root.yaml"))
    >>> descriptors = load_yaml_directory(Path("tenants"))
"""

from pathlib import Path
from typing import Any

import yaml

DOCUMENT_SUFFIXES = (".yaml", ".yml", ".json")


class YAMLLoadError(Exception):
    """Raised when a document cannot be loaded or parsed."""

    def __init__(self, path: Path, reason: str) -> None:
        """Initialize YAMLLoadError.

        Args:
            path: Path to the document that failed to load.
            reason: Description of why the document failed to load.
        """
        self.path = path
        self.reason = reason
        super().__init__(f"Failed to load document '{path}': {reason}")


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a single YAML or JSON document as a dictionary.

    Args:
        path: Path to the document.

    Returns:
        Parsed mapping. Empty dict if the document is empty.

    Raises:
        YAMLLoadError: If the file doesn't exist, cannot be read,
            is not valid YAML/JSON, or its root is not a mapping.
    """
    if not path.exists():
        raise YAMLLoadError(path, "File does not exist")

    if not path.is_file():
        raise YAMLLoadError(path, "Path is not a file")

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise YAMLLoadError(path, f"Cannot read file: {e}") from e

    try:
        parsed = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise YAMLLoadError(path, f"Invalid syntax: {e}") from e

    if parsed is None:
        return {}

    if not isinstance(parsed, dict):
        raise YAMLLoadError(
            path, f"Document root must be a mapping, got {type(parsed).__name__}"
        )

    return parsed


def load_yaml_directory(path: Path) -> dict[str, dict[str, Any]]:
    """Load every document in a directory, keyed by file stem.

    Files with .yaml, .yml or .json suffixes are loaded in name order.

    Args:
        path: Directory containing the documents.

    Returns:
        Mapping of file stem to parsed contents.

    Raises:
        YAMLLoadError: If the path is not a directory, if two files share
            a stem, or if any document fails to load.
    """
    if not path.exists():
        raise YAMLLoadError(path, "Directory does not exist")

    if not path.is_dir():
        raise YAMLLoadError(path, "Path is not a directory")

    result: dict[str, dict[str, Any]] = {}

    documents = sorted(
        p for p in path.iterdir() if p.is_file() and p.suffix in DOCUMENT_SUFFIXES
    )

    for document in documents:
        if document.stem in result:
            raise YAMLLoadError(document, f"Duplicate document name '{document.stem}'")
        result[document.stem] = load_yaml(document)

    return result


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dictionaries, with override taking precedence.

    Nested dictionaries are merged recursively. For non-dict values,
    the override value replaces the base value. Neither input is modified.

    Example:
        >>> base = {"database": {"host": "db", "port": 5432}}
        >>> override = {"database": {"host": "db.prod"}, "debug": False}
        >>> deep_merge(base, override)
        {"database": {"host": "db.prod", "port": 5432}, "debug": False}
    """
    result: dict[str, Any] = base.copy()

    for key, override_value in override.items():
        if (
            key in result
            and isinstance(result[key], dict)
            and isinstance(override_value, dict)
        ):
            result[key] = deep_merge(result[key], override_value)
        else:
            result[key] = override_value

    return result

# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Pytest configuration and shared fixtures.

This module provides fixtures used across all test types:
- Unit tests (SQLite registry and tenant databases, fake providers)
- Integration tests (PostgreSQL server, opt-in)
"""

from collections.abc import Callable, Generator
from typing import Any
from uuid import uuid4

import pytest

from tenantforge.core.config.settings import clear_root_config_cache
from tenantforge.domains.registry.schemas import Environment, TenantDescriptor

# =============================================================================
# Configuration Cache
# =============================================================================


@pytest.fixture(autouse=True)
def reset_root_config_cache() -> Generator[None, None, None]:
    """Drop the cached root configuration around every test."""
    clear_root_config_cache()
    yield
    clear_root_config_cache()


# =============================================================================
# Tenant Descriptor Fixtures
# =============================================================================


def build_descriptor_data(slug: str, **overrides: Any) -> dict[str, Any]:
    """Build a raw descriptor document whose resource names derive from slug."""
    data: dict[str, Any] = {
        "id": str(uuid4()),
        "environment": "development",
        "db_name": f"tenant_{slug}",
        "db_secret_name": f"tenants/{slug}/database",
        "db_role_name": f"tenant_{slug}_owner",
        "storage_bucket_name": f"tenant-{slug}-documents",
        "search_index_name": f"tenant-{slug}-documents",
        "storage_queue_arn": f"arn:aws:sqs:eu-west-1:123456789012:tenant-{slug}-uploads",
        "event_queue_url": f"https://sqs.eu-west-1.amazonaws.com/123456789012/tenant-{slug}-events",
        "cors_origins": [f"https://{slug}.example.com"],
    }
    data.update(overrides)
    return data


@pytest.fixture
def descriptor_data() -> dict[str, Any]:
    """Provide a valid raw descriptor document."""
    return build_descriptor_data("acme")


@pytest.fixture
def make_descriptor() -> Callable[..., TenantDescriptor]:
    """Provide a factory of valid descriptors with distinct resource names."""

    def factory(
        slug: str,
        environment: Environment = Environment.DEVELOPMENT,
        **overrides: Any,
    ) -> TenantDescriptor:
        data = build_descriptor_data(slug, environment=environment.value, **overrides)
        return TenantDescriptor.model_validate(data)

    return factory


# =============================================================================
# Marker Configuration
# =============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "unit: mark test as a unit test"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as an integration test (requires services)"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )

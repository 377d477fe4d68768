# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Tenant provisioning."""

from tenantforge.domains.provisioning.schemas import ProvisionResult
from tenantforge.domains.provisioning.service import (
    TenantProvisioner,
    load_descriptor,
    load_descriptors,
)

__all__ = [
    "TenantProvisioner",
    "ProvisionResult",
    "load_descriptor",
    "load_descriptors",
]

# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Domain services layer for tenantforge.

Each domain module provides services that orchestrate operations
across the registry and external resource providers.

Domains:
    registry: Tenant records and the applied-migration ledger.
    root: Registry schema bootstrap.
    provisioning: Tenant creation with compensating rollback.
    migration: SQL migration fan-out across tenant databases.
"""

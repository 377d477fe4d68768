"""tenantforge.

Provisioning and migration orchestrator for isolated document-management
tenants: root registry bootstrap, saga-style tenant creation across external
resource providers, and exactly-once SQL migrations across tenant databases.

Copyright (C) 2025 Global Digital Labs (gdlabs.io)
SPDX-License-Identifier: LGPL-3.0-or-later
"""

__version__ = "0.1.0"

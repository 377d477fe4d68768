# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Root registry bootstrap."""

from tenantforge.domains.root.initializer import RootInitializer

__all__ = ["RootInitializer"]

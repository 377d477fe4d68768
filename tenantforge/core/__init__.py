# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Core package for tenantforge.

This package contains cross-cutting building blocks:
- config: RootConfig and configuration document loading
- errors: Structured error kinds shared by every component
"""

# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""DateTime utilities for tenantforge.

All registry timestamps are timezone-aware UTC datetimes. Use utc_now as
the default for model columns so that naive and aware values never mix.

Usage:
------
    from tenantforge.utils.datetime import utc_now

    created_at = mapped_column(DateTime(timezone=True), default=utc_now)
"""

from datetime import datetime, timezone


def utc_now() -> datetime:
    """Get current UTC time as timezone-aware datetime.

    Example:
        >>> now = utc_now()
        >>> now.tzinfo
        datetime.timezone.utc
    """
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to a naive datetime read back from the database.

    SQLite does not store offsets, so values come back naive even though
    they were written as UTC.

    Args:
        value: Datetime read from a column.

    Returns:
        The same instant as a timezone-aware UTC datetime.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)

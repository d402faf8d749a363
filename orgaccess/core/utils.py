"""
Shared utility functions for the orgaccess service.

This module contains common utilities used across the codebase.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone


def generate_id(prefix: str = "") -> str:
    """
    Generate a unique ID with optional prefix.
    
    Args:
        prefix: Optional prefix (e.g., "cred", "evt")
        
    Returns:
        A unique ID like "cred_a1b2c3d4e5f6"
    """
    uid = uuid.uuid4().hex[:12]
    return f"{prefix}_{uid}" if prefix else uid


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


def to_timestamp(value: datetime) -> int:
    """Whole seconds since the epoch, as carried in bearer credentials."""
    return int(value.timestamp())


def from_timestamp(value: int | float) -> datetime:
    """UTC datetime for an epoch timestamp."""
    return datetime.fromtimestamp(value, tz=timezone.utc)

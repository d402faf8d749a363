"""
Core module - fundamental data models and infrastructure.

This module contains:
- roles: The role hierarchy
- models: Organizations, memberships, principals
- events: Event system for pub/sub communication
- utils: Shared utility functions
"""

from orgaccess.core.roles import (
    Role,
    ROLE_LEVELS,
    ROLE_CODES,
    LOWEST_ROLE,
    HIGHEST_ROLE,
    level_of,
    at_least,
    role_for_code,
)

from orgaccess.core.models import (
    Organization,
    Membership,
    MembershipRecord,
    Principal,
)

from orgaccess.core.events import (
    Event,
    EventBus,
    get_event_bus,
    reset_event_bus,
    membership_changed,
)

from orgaccess.core.utils import (
    generate_id,
    utc_now,
)

__all__ = [
    # Roles
    "Role",
    "ROLE_LEVELS",
    "ROLE_CODES",
    "LOWEST_ROLE",
    "HIGHEST_ROLE",
    "level_of",
    "at_least",
    "role_for_code",
    # Models
    "Organization",
    "Membership",
    "MembershipRecord",
    "Principal",
    # Events
    "Event",
    "EventBus",
    "get_event_bus",
    "reset_event_bus",
    "membership_changed",
    # Utils
    "generate_id",
    "utc_now",
]

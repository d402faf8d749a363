"""
Storage abstractions.

- MembershipStore → relational database in production, in-memory locally
"""

from orgaccess.storage.base import (
    MembershipStore,
    MembershipError,
    MembershipNotFoundError,
    MembershipRuleError,
)
from orgaccess.storage.local import InMemoryMembershipStore

__all__ = [
    "MembershipStore",
    "MembershipError",
    "MembershipNotFoundError",
    "MembershipRuleError",
    "InMemoryMembershipStore",
]

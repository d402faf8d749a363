"""
Organization roles and their ordering.

This defines WHO outranks whom inside an organization.
The actual access checks happen in orgaccess.auth.decision.
"""

from enum import Enum


class Role(str, Enum):
    """Role a principal holds within a specific organization."""
    
    MEMBER = "MEMBER"          # Basic membership
    MODERATOR = "MODERATOR"    # Content moderation
    ADMIN = "ADMIN"            # Organization administration
    PRESIDENT = "PRESIDENT"    # Full control, one per organization
    
    @property
    def level(self) -> int:
        return ROLE_LEVELS[self]
    
    @property
    def code(self) -> str:
        return ROLE_CODES[self]


# =============================================================================
# Hierarchy
# =============================================================================


ROLE_LEVELS: dict[Role, int] = {
    Role.MEMBER: 1,
    Role.MODERATOR: 2,
    Role.ADMIN: 3,
    Role.PRESIDENT: 4,
}

# Single-character codes used inside compact claims.
# O = mOderator, since M is taken by MEMBER.
ROLE_CODES: dict[Role, str] = {
    Role.PRESIDENT: "P",
    Role.ADMIN: "A",
    Role.MODERATOR: "O",
    Role.MEMBER: "M",
}

CODE_ROLES: dict[str, Role] = {code: role for role, code in ROLE_CODES.items()}

LOWEST_ROLE = Role.MEMBER
HIGHEST_ROLE = Role.PRESIDENT


def level_of(role: Role) -> int:
    """Numeric level of a role (higher = more privileges)."""
    return ROLE_LEVELS[role]


def at_least(role: Role, required_role: Role) -> bool:
    """Check if `role` is the same as or outranks `required_role`."""
    return ROLE_LEVELS[role] >= ROLE_LEVELS[required_role]


def role_for_code(code: str) -> Role | None:
    """Role for a compact claim code, or None if the code is unknown."""
    return CODE_ROLES.get(code)

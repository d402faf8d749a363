# =============================================================================
# Principals
# =============================================================================
#
# A small principal store for the login route: PBKDF2 password hashes and
# the global-access flag. Global access is a property of the principal,
# never of a membership.
#
# =============================================================================

from __future__ import annotations

import asyncio
import hashlib
import secrets

from pydantic import BaseModel, EmailStr, Field

from orgaccess.core.models import Principal
from orgaccess.core.utils import generate_id, utc_now


class PrincipalCreate(BaseModel):
    """Principal registration data."""
    email: EmailStr
    password: str = Field(min_length=8)
    name: str = Field(min_length=1, max_length=100)
    global_access: bool = False


# =============================================================================
# Password Hashing
# =============================================================================

def hash_password(password: str) -> str:
    """
    Hash a password using PBKDF2-SHA256.
    
    Returns: salt:hash format string
    """
    salt = secrets.token_hex(32)
    hash_bytes = hashlib.pbkdf2_hmac(
        'sha256',
        password.encode('utf-8'),
        salt.encode('utf-8'),
        iterations=100_000
    )
    return f"{salt}:{hash_bytes.hex()}"


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a password against its hash."""
    try:
        salt, stored_hash = password_hash.split(':')
        hash_bytes = hashlib.pbkdf2_hmac(
            'sha256',
            password.encode('utf-8'),
            salt.encode('utf-8'),
            iterations=100_000
        )
        return secrets.compare_digest(hash_bytes.hex(), stored_hash)
    except (ValueError, AttributeError):
        return False


# =============================================================================
# Store
# =============================================================================

class UserStore:
    """In-memory principal store."""
    
    def __init__(self):
        self._users: dict[str, Principal] = {}
        self._by_email: dict[str, str] = {}  # email -> principal id
        self._lock = asyncio.Lock()
    
    async def create(self, data: PrincipalCreate) -> Principal:
        """
        Create a principal.
        
        Raises:
            ValueError: email already registered
        """
        email = data.email.lower()
        async with self._lock:
            if email in self._by_email:
                raise ValueError("Email already registered")
            
            principal = Principal(
                id=generate_id("user"),
                email=email,
                name=data.name,
                password_hash=hash_password(data.password),
                global_access=data.global_access,
            )
            self._users[principal.id] = principal
            self._by_email[email] = principal.id
        return principal
    
    async def get(self, principal_id: str) -> Principal | None:
        return self._users.get(principal_id)
    
    async def get_by_email(self, email: str) -> Principal | None:
        principal_id = self._by_email.get(email.lower())
        return self._users.get(principal_id) if principal_id else None
    
    async def authenticate(self, email: str, password: str) -> Principal | None:
        """Authenticate by email and password; None on any mismatch."""
        principal = await self.get_by_email(email)
        if not principal:
            return None
        if not verify_password(password, principal.password_hash):
            return None
        return principal
    
    async def set_global_access(self, principal_id: str, global_access: bool) -> Principal | None:
        principal = self._users.get(principal_id)
        if not principal:
            return None
        principal = principal.model_copy(update={"global_access": global_access, "updated_at": utc_now()})
        self._users[principal_id] = principal
        return principal

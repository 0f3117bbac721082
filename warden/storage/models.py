from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Permission:
    id: int
    name: str
    created_at: datetime = field(default_factory=_utcnow)
    # Names of roles granting this permission; filled by list queries
    roles: List[str] = field(default_factory=list)


@dataclass
class Role:
    id: int
    name: str
    created_at: datetime = field(default_factory=_utcnow)
    permissions: List[Permission] = field(default_factory=list)


@dataclass
class Identity:
    id: int
    name: str
    email: str
    password_hash: str
    salt: str
    password_expires_at: datetime
    mfa_secret: Optional[str] = None
    email_verified_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    # Direct grants; populated only when loaded with grants
    roles: List[Role] = field(default_factory=list)
    permissions: List[Permission] = field(default_factory=list)

    @property
    def mfa_enabled(self) -> bool:
        return bool(self.mfa_secret)

    @property
    def email_verified(self) -> bool:
        return self.email_verified_at is not None

    def public_view(self) -> dict:
        """Identity fields safe to return to clients."""
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "emailVerifiedAt": self.email_verified_at.isoformat()
            if self.email_verified_at
            else None,
            "passwordExpiresAt": self.password_expires_at.isoformat(),
            "mfaEnabled": self.mfa_enabled,
            "roles": [role.name for role in self.roles],
            "permissions": [perm.name for perm in self.permissions],
        }

"""
auth/models.py -- Domain dataclasses and result types for authentication.

Pattern: Data class (pure data container, zero logic beyond trivial
predicates). Stores map rows into these; services return them; the API layer
maps them into Pydantic response models.

Layer rule: no imports from api/, cache/, or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


@dataclass
class User:
    """An identity known to the user directory.

    hashed_password is None for users who only ever signed in without a
    password (magic link or OTP). email is stored normalized (lowercase,
    stripped) and is unique.
    """

    email: str
    role: str = "customer"  # "customer", "admin"
    id: int | None = None
    first_name: str | None = None
    last_name: str | None = None
    hashed_password: str | None = None
    email_verified: bool = False
    last_login: str | None = None
    avatar_url: str | None = None
    created_at: str | None = None
    is_active: bool = True


@dataclass
class UserProfile:
    """User projection safe to hand to clients -- never carries the password hash."""

    id: int
    email: str
    role: str
    email_verified: bool
    first_name: str | None = None
    last_name: str | None = None

    @classmethod
    def from_user(cls, user: User) -> "UserProfile":
        return cls(
            id=user.id,
            email=user.email,
            role=user.role,
            email_verified=user.email_verified,
            first_name=user.first_name,
            last_name=user.last_name,
        )


@dataclass
class DeviceInfo:
    """Best-effort provenance of a request. Every field may be missing."""

    ip: str | None = None
    user_agent: str | None = None
    device_type: str | None = None


@dataclass
class RefreshToken:
    """One issued opaque refresh credential.

    Security design:
    - lookup_hash is HMAC-SHA256(SECRET_KEY, plaintext). Deterministic, so the
      store finds the row in O(1) through a UNIQUE index.
    - token_hash is bcrypt(plaintext). Verified after lookup; a leaked table
      alone does not let anyone confirm a guessed token cheaply.
    - parent_token_id links a rotated token to the one it replaced. Following
      the links back reaches the token issued at login (the "family").
    - is_revoked never goes back to False. Rotation writes a new row.
    """

    user_id: int
    lookup_hash: str
    token_hash: str
    expires_at: datetime
    id: str | None = None
    parent_token_id: str | None = None
    device_info: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    is_revoked: bool = False
    revoked_at: datetime | None = None
    created_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class TokenState(str, Enum):
    """Where a refresh token sits in its lifecycle."""

    ACTIVE = "active"  # unrevoked, unexpired
    EXPIRED = "expired"  # unrevoked, past expires_at
    ROTATED = "rotated"  # revoked, has a child
    REVOKED = "revoked"  # revoked, no child (logout, family kill)
    COMPROMISED = "compromised"  # rotated and presented again


@dataclass
class RefreshSecret:
    """A freshly minted refresh secret with both of its digests."""

    plaintext: str
    lookup_hash: str
    token_hash: str


@dataclass
class IssuedRefreshToken:
    """The plaintext goes to the client once; only the record is kept."""

    plaintext: str
    record: RefreshToken


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    refresh_token_id: str
    expires_in: int  # access token lifetime, seconds


@dataclass
class AccessClaims:
    user_id: int
    role: str
    expires_at: datetime


@dataclass
class PasswordlessCredential:
    """Payload stored in the ephemeral store while a magic link is outstanding."""

    email: str
    type: str  # "magic_link" | "otp"
    user_id: int | None = None

    def to_dict(self) -> dict:
        return {"user_id": self.user_id, "email": self.email, "type": self.type}

    @classmethod
    def from_dict(cls, data: dict) -> "PasswordlessCredential":
        return cls(email=data["email"], type=data["type"], user_id=data.get("user_id"))


@dataclass
class RequestAccepted:
    """Response to a credential request. Identical for new and existing users."""

    success: bool
    message: str


@dataclass
class PasswordlessLogin:
    user: UserProfile
    tokens: TokenPair
    is_new_user: bool


@dataclass
class AuditEvent:
    """A security-relevant event bound for the audit sink."""

    action: str
    user_id: int | None = None
    resource_type: str | None = None
    resource_id: str | None = None
    old_values: Optional[dict[str, Any]] = None
    new_values: Optional[dict[str, Any]] = None
    ip_address: str | None = None
    user_agent: str | None = None
    device_type: str | None = None
    severity: str = "info"  # "info", "high"
    created_at: str | None = None


@dataclass
class MailMessage:
    to: str
    subject: str
    html: str
    text: str | None = None
    tags: list[str] = field(default_factory=list)

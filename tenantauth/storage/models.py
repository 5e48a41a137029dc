"""Persistent record types for tenantauth.

All timestamps are timezone-aware UTC. Enum-typed fields are stored as their
string values (``use_enum_values``), so ``user.role == Role.ADMIN`` and
``user.role == "admin"`` are equivalent.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Global user roles, lowest privilege first."""

    USER = "user"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


class OrganizationRole(str, Enum):
    """Membership-scoped roles."""

    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"


class SessionStatus(str, Enum):
    """Session status values."""

    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"


class User(BaseModel):
    """User account, including its embedded rate-limit state."""

    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    user_id: str = Field(..., description="Unique user identifier")
    email: EmailStr = Field(..., description="User email address")
    name: str = Field(default="", description="Display name")
    password_hash: str = Field(..., description="PBKDF2 password hash")
    role: Role = Field(default=Role.USER, description="Global role")
    is_active: bool = Field(default=True, description="Whether the account may sign in")
    login_attempts: int = Field(default=0, description="Failed attempts in the current window")
    last_failed_attempt: Optional[datetime] = Field(default=None)
    locked_until: Optional[datetime] = Field(default=None, description="Lockout expiry")
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def public(self) -> Dict[str, Any]:
        """Client-facing view without credential material."""
        return self.model_dump(mode="json", exclude={"password_hash"})


class Session(BaseModel):
    """Server-side record backing a session cookie."""

    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    session_id: str = Field(..., description="Unique session identifier")
    user_id: str = Field(..., description="User who owns this session")
    token_hash: str = Field(..., description="SHA-256 of the issued token")
    created_at: datetime = Field(default_factory=utc_now)
    expires_at: datetime = Field(..., description="Session expiration time")
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    status: SessionStatus = Field(default=SessionStatus.ACTIVE)


class Organization(BaseModel):
    """A tenant."""

    organization_id: str = Field(..., description="Unique organization identifier")
    name: str = Field(..., min_length=1, max_length=200)
    slug: str = Field(..., pattern=r"^[a-z0-9][a-z0-9-]{0,62}$")
    description: Optional[str] = None
    website: Optional[str] = None
    logo: Optional[str] = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class OrganizationMember(BaseModel):
    """Membership of one user in one organization."""

    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    member_id: str
    organization_id: str
    user_id: str
    role: OrganizationRole = OrganizationRole.MEMBER
    is_active: bool = True
    joined_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class MemberDetail(OrganizationMember):
    """Membership joined with the member's user record."""

    email: Optional[str] = None
    name: Optional[str] = None


class OrganizationInvite(BaseModel):
    """Pending invitation into an organization."""

    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    invite_id: str
    organization_id: str
    email: EmailStr
    role: OrganizationRole = OrganizationRole.MEMBER
    invited_by: str
    token: str
    expires_at: datetime
    is_accepted: bool = False
    accepted_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utc_now()) >= self.expires_at


class ApiKeyView(BaseModel):
    """API key record as returned to clients. Never carries the hash."""

    key_id: str
    name: str
    user_id: str
    organization_id: Optional[str] = None
    permissions: List[str] = Field(default_factory=list)
    expires_at: Optional[datetime] = None
    is_active: bool = True
    last_used_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class ApiKey(ApiKeyView):
    """Stored API key, including the SHA-256 hash of its secret."""

    hashed_key: str = Field(..., description="SHA-256 hex digest of the plaintext key")

    def view(self) -> ApiKeyView:
        """Redacted copy safe to return to a client."""
        return ApiKeyView(**self.model_dump(exclude={"hashed_key"}))


class TwoFactorAuth(BaseModel):
    """Per-user TOTP enrolment."""

    user_id: str
    secret: Optional[str] = Field(default=None, description="Base32 TOTP secret")
    backup_codes: List[str] = Field(default_factory=list)
    is_enabled: bool = False
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class AuditLogEntry(BaseModel):
    """Append-only audit record."""

    log_id: str
    created_at: datetime = Field(default_factory=utc_now)
    user_id: Optional[str] = None
    organization_id: Optional[str] = None
    action: str
    resource: str
    resource_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

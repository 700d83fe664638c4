"""
HealthTrack State Model

Core identity and authorization records.
Designed with the repository pattern so storage backends can be swapped
(memory -> Redis) without changing business logic.
"""

from datetime import date, datetime, timezone
from typing import Optional
from pydantic import BaseModel, Field, field_validator


NOTIFICATION_CATEGORIES = ("hydration", "workout", "meal", "period")


def default_notification_preferences() -> dict[str, bool]:
    """All reminder categories enabled."""
    return {category: True for category in NOTIFICATION_CATEGORIES}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so they compare against aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ============================================================================
# User Record
# ============================================================================

class UserRecord(BaseModel):
    """
    Local user profile, keyed by the identity provider's user id.

    `email` is always stored lower-case. `username` keeps its original
    casing for display; comparisons against it are case-insensitive.
    """
    id: str
    email: str
    username: str
    full_name: Optional[str] = None
    gender: Optional[str] = None
    date_of_birth: Optional[date] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    notification_preferences: dict[str, bool] = Field(
        default_factory=default_notification_preferences
    )

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return value.strip().lower()

    def matches_email(self, email: str) -> bool:
        return self.email == email.strip().lower()

    def matches_username(self, username: str) -> bool:
        return self.username.lower() == username.strip().lower()


# ============================================================================
# Provider Identity
# ============================================================================

class ProviderIdentity(BaseModel):
    """Identity as reported by the remote identity provider."""
    user_id: str
    email: Optional[str] = None


# ============================================================================
# Access Grants
# ============================================================================

class AccessGrant(BaseModel):
    """
    Delegated read access from a data owner to a healthcare viewer.

    Expiry is evaluated at read time only; expired grants stay stored
    until revoked.
    """
    owner_id: str
    viewer_id: str
    active: bool = False
    expires_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        now = ensure_utc(now or utcnow())
        return now >= ensure_utc(self.expires_at)

    def is_effective(self, now: Optional[datetime] = None) -> bool:
        """Active and not past its expiry."""
        return self.active and not self.is_expired(now)


# ============================================================================
# Session Flags
# ============================================================================

class SessionFlags(BaseModel):
    """Durable, offline-available login signal."""
    is_logged_in: bool = False
    current_user_id: Optional[str] = None


# ============================================================================
# Results
# ============================================================================

class MfaFactor(BaseModel):
    """An enrolled second factor."""
    enrollment_id: str
    display_name: Optional[str] = None
    phone_hint: Optional[str] = None
    enrolled_at: Optional[datetime] = None


class AuthResult(BaseModel):
    """
    Outcome of an identity operation.

    A multi-factor challenge is not a failure: `mfa_required` is set and
    `mfa_pending_id` identifies the challenge to complete.
    """
    success: bool
    message: str
    user: Optional[UserRecord] = None
    mfa_required: bool = False
    mfa_pending_id: Optional[str] = None
    mfa_hint: Optional[str] = None

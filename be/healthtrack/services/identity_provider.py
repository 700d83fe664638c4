"""
Identity Provider Interface

Contract for the remote authentication system of record, plus an
in-memory implementation for development and tests.

Providers raise IdentityProviderError with a ProviderErrorCode; a sign-in
that needs a second factor raises MultiFactorRequired instead.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional
from uuid import uuid4

from shared.schemas.state import MfaFactor, ProviderIdentity, utcnow

from ..core.auth import hash_password, verify_password

logger = logging.getLogger(__name__)


# ============================================================================
# Errors
# ============================================================================

class ProviderErrorCode(str, Enum):
    """Structured provider rejection codes."""
    ALREADY_IN_USE = "already-in-use"
    WEAK_PASSWORD = "weak-password"
    INVALID_EMAIL = "invalid-email"
    INVALID_CREDENTIALS = "invalid-credentials"
    USER_NOT_FOUND = "user-not-found"
    MFA_REQUIRED = "mfa-required"
    INVALID_VERIFICATION_CODE = "invalid-verification-code"
    NOT_AUTHENTICATED = "not-authenticated"
    OTHER = "other"


class IdentityProviderError(Exception):
    """A provider call was rejected."""

    def __init__(self, code: ProviderErrorCode, message: str = ""):
        super().__init__(message or code.value)
        self.code = code
        self.message = message or code.value


class MultiFactorRequired(IdentityProviderError):
    """
    First factor accepted; a second-factor challenge must be completed.

    `pending_id` identifies the challenge for complete_mfa_sign_in.
    """

    def __init__(self, pending_id: str, hint: Optional[str] = None):
        super().__init__(ProviderErrorCode.MFA_REQUIRED, "Multi-factor authentication required")
        self.pending_id = pending_id
        self.hint = hint


# ============================================================================
# Provider Interface
# ============================================================================

class IdentityProvider(ABC):
    """
    Remote authentication service, keyed by an opaque user id and an email.

    Implementations:
    - MemoryIdentityProvider (dev/tests)
    - FirebaseIdentityProvider (Identity Toolkit REST)
    """

    # ---- Accounts & Sessions ----

    @abstractmethod
    async def create_account(self, email: str, password: str) -> ProviderIdentity:
        """Create an account and sign it in."""
        pass

    @abstractmethod
    async def sign_in(self, email: str, password: str) -> ProviderIdentity:
        """Authenticate. May raise MultiFactorRequired."""
        pass

    @abstractmethod
    async def complete_mfa_sign_in(self, pending_id: str, verification_code: str) -> ProviderIdentity:
        """Finish a sign-in that raised MultiFactorRequired."""
        pass

    @abstractmethod
    async def sign_out(self) -> None:
        """Drop the provider's current session."""
        pass

    @abstractmethod
    async def current_identity(self) -> Optional[ProviderIdentity]:
        """Currently authenticated identity, if any."""
        pass

    @abstractmethod
    async def reauthenticate(self, email: str, password: str) -> ProviderIdentity:
        """Confirm the current user's password."""
        pass

    # ---- Password & Account Management ----

    @abstractmethod
    async def send_password_reset(self, email: str) -> None:
        """Send a password reset email."""
        pass

    @abstractmethod
    async def update_password(self, new_password: str) -> None:
        """Change the current user's password."""
        pass

    @abstractmethod
    async def delete_current_account(self) -> None:
        """Delete the current user's account."""
        pass

    # ---- Multi-Factor Enrollment ----

    @abstractmethod
    async def start_mfa_enrollment(self, phone_number: str) -> str:
        """Send an enrollment code; returns the enrollment session info."""
        pass

    @abstractmethod
    async def complete_mfa_enrollment(
        self, session_info: str, verification_code: str, display_name: Optional[str] = None
    ) -> MfaFactor:
        """Verify the enrollment code and enroll the factor."""
        pass

    @abstractmethod
    async def list_mfa_factors(self) -> list[MfaFactor]:
        """Second factors enrolled on the current account."""
        pass

    @abstractmethod
    async def unenroll_mfa_factor(self, enrollment_id: str) -> None:
        """Remove an enrolled second factor."""
        pass


# ============================================================================
# In-Memory Provider
# ============================================================================

MIN_PASSWORD_LENGTH = 6
DEV_VERIFICATION_CODE = "123456"


@dataclass
class _Account:
    user_id: str
    email: str
    password_hash: str
    factors: list[MfaFactor] = field(default_factory=list)


@dataclass
class _PendingChallenge:
    user_id: str
    phone_number: Optional[str] = None


def _mask_phone(phone_number: str) -> str:
    return f"***{phone_number[-4:]}" if len(phone_number) >= 4 else "***"


class MemoryIdentityProvider(IdentityProvider):
    """
    In-process identity provider for development and tests.

    Verification codes are not delivered anywhere: every challenge accepts
    `verification_code` (DEV_VERIFICATION_CODE by default).
    """

    def __init__(self, verification_code: str = DEV_VERIFICATION_CODE):
        self._verification_code = verification_code
        self._accounts: dict[str, _Account] = {}  # email -> account
        self._current: Optional[_Account] = None
        self._pending_sign_ins: dict[str, _PendingChallenge] = {}
        self._pending_enrollments: dict[str, _PendingChallenge] = {}
        self.password_reset_requests: list[str] = []

    @staticmethod
    def _identity(account: _Account) -> ProviderIdentity:
        return ProviderIdentity(user_id=account.user_id, email=account.email)

    def _require_current(self) -> _Account:
        if self._current is None:
            raise IdentityProviderError(ProviderErrorCode.NOT_AUTHENTICATED, "No user signed in")
        return self._current

    def _check_credentials(self, email: str, password: str) -> _Account:
        account = self._accounts.get(email.strip().lower())
        if account is None or not verify_password(password, account.password_hash):
            raise IdentityProviderError(ProviderErrorCode.INVALID_CREDENTIALS, "Invalid credentials")
        return account

    # ---- Accounts & Sessions ----

    async def create_account(self, email: str, password: str) -> ProviderIdentity:
        email = email.strip().lower()
        if "@" not in email:
            raise IdentityProviderError(ProviderErrorCode.INVALID_EMAIL, "Badly formatted email")
        if email in self._accounts:
            raise IdentityProviderError(ProviderErrorCode.ALREADY_IN_USE, "Email already in use")
        if len(password) < MIN_PASSWORD_LENGTH:
            raise IdentityProviderError(ProviderErrorCode.WEAK_PASSWORD, "Password should be at least 6 characters")

        account = _Account(
            user_id=uuid4().hex[:28],
            email=email,
            password_hash=hash_password(password),
        )
        self._accounts[email] = account
        self._current = account
        return self._identity(account)

    async def sign_in(self, email: str, password: str) -> ProviderIdentity:
        account = self._check_credentials(email, password)

        if account.factors:
            pending_id = uuid4().hex
            self._pending_sign_ins[pending_id] = _PendingChallenge(user_id=account.user_id)
            raise MultiFactorRequired(pending_id, hint=account.factors[0].phone_hint)

        self._current = account
        return self._identity(account)

    async def complete_mfa_sign_in(self, pending_id: str, verification_code: str) -> ProviderIdentity:
        pending = self._pending_sign_ins.get(pending_id)
        if pending is None:
            raise IdentityProviderError(ProviderErrorCode.OTHER, "Unknown or expired challenge")
        if verification_code != self._verification_code:
            raise IdentityProviderError(ProviderErrorCode.INVALID_VERIFICATION_CODE, "Invalid verification code")

        del self._pending_sign_ins[pending_id]
        account = next(a for a in self._accounts.values() if a.user_id == pending.user_id)
        self._current = account
        return self._identity(account)

    async def sign_out(self) -> None:
        self._current = None

    async def current_identity(self) -> Optional[ProviderIdentity]:
        return self._identity(self._current) if self._current else None

    async def reauthenticate(self, email: str, password: str) -> ProviderIdentity:
        current = self._require_current()
        account = self._check_credentials(email, password)
        if account.user_id != current.user_id:
            raise IdentityProviderError(ProviderErrorCode.INVALID_CREDENTIALS, "Credentials belong to another user")
        return self._identity(account)

    # ---- Password & Account Management ----

    async def send_password_reset(self, email: str) -> None:
        email = email.strip().lower()
        if email not in self._accounts:
            raise IdentityProviderError(ProviderErrorCode.USER_NOT_FOUND, "No user for this email")
        self.password_reset_requests.append(email)

    async def update_password(self, new_password: str) -> None:
        account = self._require_current()
        if len(new_password) < MIN_PASSWORD_LENGTH:
            raise IdentityProviderError(ProviderErrorCode.WEAK_PASSWORD, "Password should be at least 6 characters")
        account.password_hash = hash_password(new_password)

    async def delete_current_account(self) -> None:
        account = self._require_current()
        del self._accounts[account.email]
        self._current = None

    # ---- Multi-Factor Enrollment ----

    async def start_mfa_enrollment(self, phone_number: str) -> str:
        account = self._require_current()
        session_info = uuid4().hex
        self._pending_enrollments[session_info] = _PendingChallenge(
            user_id=account.user_id, phone_number=phone_number
        )
        return session_info

    async def complete_mfa_enrollment(
        self, session_info: str, verification_code: str, display_name: Optional[str] = None
    ) -> MfaFactor:
        account = self._require_current()
        pending = self._pending_enrollments.get(session_info)
        if pending is None or pending.user_id != account.user_id:
            raise IdentityProviderError(ProviderErrorCode.OTHER, "Unknown enrollment session")
        if verification_code != self._verification_code:
            raise IdentityProviderError(ProviderErrorCode.INVALID_VERIFICATION_CODE, "Invalid verification code")

        del self._pending_enrollments[session_info]
        factor = MfaFactor(
            enrollment_id=uuid4().hex,
            display_name=display_name,
            phone_hint=_mask_phone(pending.phone_number or ""),
            enrolled_at=utcnow(),
        )
        account.factors.append(factor)
        return factor

    async def list_mfa_factors(self) -> list[MfaFactor]:
        return list(self._require_current().factors)

    async def unenroll_mfa_factor(self, enrollment_id: str) -> None:
        account = self._require_current()
        remaining = [f for f in account.factors if f.enrollment_id != enrollment_id]
        if len(remaining) == len(account.factors):
            raise IdentityProviderError(ProviderErrorCode.OTHER, "Unknown enrollment id")
        account.factors = remaining

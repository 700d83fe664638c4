"""
Auth Service - Identity Reconciliation

Orchestrates account creation and login across the identity provider and
the local user record store.

Ordering: the provider is the system of record. Local persistence is only
attempted after the matching provider step succeeded, and a local failure
never turns a provider success into a failed result; it is logged and
published as LOCAL_PERSISTENCE_FAILED instead. The one exception is
logout, which clears the local session flags whatever the provider says.
"""

import logging
from datetime import date, datetime
from typing import Callable, Optional

from shared.schemas.state import AuthResult, MfaFactor, ProviderIdentity, UserRecord, utcnow
from shared.schemas.storage import UserRecordStore

from ..core.event_bus import EventBus, IdentityEventType
from .data_restore import DataRestoreService, NullDataRestoreService
from .identity_provider import (
    IdentityProvider,
    IdentityProviderError,
    MultiFactorRequired,
    ProviderErrorCode,
)
from .session_manager import SessionContext

logger = logging.getLogger(__name__)


# User-facing messages
MSG_ACCOUNT_CREATED = "Account created successfully"
MSG_ACCOUNT_EXISTS = "An account with this email already exists"
MSG_USERNAME_TAKEN = "This username is already taken"
MSG_WEAK_PASSWORD = "Password is too weak"
MSG_SIGNUP_FAILED = "Failed to create account"
MSG_LOGIN_SUCCESS = "Login successful"
MSG_INVALID_LOGIN = "Invalid email/username or password"
MSG_MFA_REQUIRED = "Additional verification required"
MSG_INVALID_CODE = "Invalid verification code"
MSG_MFA_EXPIRED = "Verification session expired. Please log in again"
MSG_NOT_AUTHENTICATED = "Not authenticated"
MSG_WRONG_PASSWORD = "Password is incorrect"
MSG_PASSWORD_UPDATED = "Password updated successfully"
MSG_ACCOUNT_DELETED = "Account deleted successfully"
MSG_RESET_SENT = "Password reset email sent if an account exists for this address"


def _unique_username(base: str, users: list[UserRecord]) -> str:
    """`base`, or `base` with the first free numeric suffix (alice, alice2, ...)."""
    taken = {u.username.lower() for u in users}
    candidate = base
    n = 2
    while candidate.lower() in taken:
        candidate = f"{base}{n}"
        n += 1
    return candidate


class AuthService:
    """
    Signup, login, logout and account management.

    Stateless apart from its collaborators; construct once at startup and
    pass it to consumers.
    """

    def __init__(
        self,
        provider: IdentityProvider,
        users: UserRecordStore,
        session: SessionContext,
        restore: Optional[DataRestoreService] = None,
        event_bus: Optional[EventBus] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._provider = provider
        self._users = users
        self._session = session
        self._restore = restore or NullDataRestoreService()
        self._event_bus = event_bus
        self._clock = clock

    # ---- Internal helpers ----

    async def _emit(self, event_type: IdentityEventType, user_id: Optional[str] = None, **payload) -> None:
        if self._event_bus is not None:
            await self._event_bus.emit(event_type, user_id=user_id, **payload)

    async def _local_failure(self, operation: str, user_id: Optional[str], error: Exception) -> None:
        logger.error(f"Local {operation} failed for {user_id}: {error}")
        await self._emit(
            IdentityEventType.LOCAL_PERSISTENCE_FAILED,
            user_id,
            operation=operation,
            error=str(error),
        )

    async def _load_users(self) -> list[UserRecord]:
        try:
            return await self._users.get_all()
        except Exception as e:
            logger.error(f"Error getting all users from local store: {e}")
            return []

    async def _persist_user(self, user: UserRecord) -> None:
        try:
            await self._users.put(user)
        except Exception as e:
            await self._local_failure("save_user", user.id, e)

    async def _set_session(self, user_id: str) -> None:
        try:
            await self._session.set(user_id)
        except Exception as e:
            await self._local_failure("set_session", user_id, e)

    async def _current_identity(self) -> Optional[ProviderIdentity]:
        try:
            return await self._provider.current_identity()
        except Exception as e:
            logger.warning(f"Could not read provider identity: {e}")
            return None

    async def _require_identity(self, user_id: str) -> ProviderIdentity:
        identity = await self._current_identity()
        if identity is None or identity.user_id != user_id:
            raise IdentityProviderError(ProviderErrorCode.NOT_AUTHENTICATED, MSG_NOT_AUTHENTICATED)
        return identity

    # ---- Sign Up ----

    async def sign_up(
        self,
        email: str,
        password: str,
        username: str,
        full_name: Optional[str] = None,
        gender: Optional[str] = None,
        date_of_birth: Optional[date] = None,
    ) -> AuthResult:
        """Create the remote account, then the local record and session."""
        normalized_email = email.strip().lower()
        username = username.strip()

        existing = await self._load_users()
        if any(u.matches_username(username) for u in existing):
            return AuthResult(success=False, message=MSG_USERNAME_TAKEN)

        try:
            identity = await self._provider.create_account(normalized_email, password)
        except IdentityProviderError as e:
            logger.info(f"Provider rejected signup for {normalized_email}: {e.code.value}")
            if e.code == ProviderErrorCode.ALREADY_IN_USE:
                return AuthResult(success=False, message=MSG_ACCOUNT_EXISTS)
            if e.code == ProviderErrorCode.WEAK_PASSWORD:
                return AuthResult(success=False, message=MSG_WEAK_PASSWORD)
            return AuthResult(success=False, message=MSG_SIGNUP_FAILED)
        except Exception as e:
            logger.error(f"Unexpected error in sign_up: {e}")
            return AuthResult(success=False, message=MSG_SIGNUP_FAILED)

        if identity is None or not identity.user_id:
            logger.error("Provider returned no identity for new account")
            return AuthResult(success=False, message=MSG_SIGNUP_FAILED)

        now = self._clock()
        user = UserRecord(
            id=identity.user_id,
            email=normalized_email,
            username=username,
            full_name=full_name.strip() if full_name else None,
            gender=gender,
            date_of_birth=date_of_birth,
            created_at=now,
            updated_at=now,
        )

        await self._persist_user(user)
        await self._set_session(user.id)

        logger.info(f"Account created for {user.id}")
        await self._emit(IdentityEventType.SIGNED_UP, user.id)
        return AuthResult(success=True, message=MSG_ACCOUNT_CREATED, user=user)

    # ---- Login ----

    async def login(self, identifier: str, password: str) -> AuthResult:
        """
        Log in with an email or a username.

        Usernames only resolve through the local store: no local match
        means an immediate failure without contacting the provider.
        """
        identifier = identifier.strip()
        users = await self._load_users()

        if "@" in identifier:
            login_email = identifier.lower()
            matched = next((u for u in users if u.matches_email(login_email)), None)
        else:
            matched = next((u for u in users if u.matches_username(identifier)), None)
            if matched is None:
                logger.info(f"No local user found for username '{identifier}'")
                return AuthResult(success=False, message=MSG_INVALID_LOGIN)
            login_email = matched.email

        try:
            identity = await self._provider.sign_in(login_email, password)
        except MultiFactorRequired as e:
            logger.info(f"Second factor required for {login_email}")
            await self._emit(IdentityEventType.MFA_CHALLENGE_ISSUED, matched.id if matched else None)
            return AuthResult(
                success=False,
                message=MSG_MFA_REQUIRED,
                mfa_required=True,
                mfa_pending_id=e.pending_id,
                mfa_hint=e.hint,
            )
        except IdentityProviderError as e:
            logger.info(f"Provider rejected login: {e.code.value}")
            return AuthResult(success=False, message=MSG_INVALID_LOGIN)
        except Exception as e:
            logger.error(f"Unexpected error in login: {e}")
            return AuthResult(success=False, message=MSG_INVALID_LOGIN)

        if identity is None or not identity.user_id:
            return AuthResult(success=False, message=MSG_INVALID_LOGIN)

        return await self._finish_login(identity, login_email, matched)

    async def complete_mfa_sign_in(self, pending_id: str, verification_code: str) -> AuthResult:
        """Finish a login that returned `mfa_required`."""
        try:
            identity = await self._provider.complete_mfa_sign_in(pending_id, verification_code.strip())
        except IdentityProviderError as e:
            if e.code == ProviderErrorCode.INVALID_VERIFICATION_CODE:
                return AuthResult(
                    success=False,
                    message=MSG_INVALID_CODE,
                    mfa_required=True,
                    mfa_pending_id=pending_id,
                )
            logger.info(f"Second factor sign-in failed: {e.code.value}")
            return AuthResult(success=False, message=MSG_MFA_EXPIRED)
        except Exception as e:
            logger.error(f"Unexpected error completing second factor: {e}")
            return AuthResult(success=False, message=MSG_INVALID_LOGIN)

        login_email = (identity.email or "").lower()
        users = await self._load_users()
        matched = next((u for u in users if u.id == identity.user_id), None)
        if matched is None and login_email:
            matched = next((u for u in users if u.matches_email(login_email)), None)

        return await self._finish_login(identity, login_email, matched)

    async def _finish_login(
        self,
        identity: ProviderIdentity,
        login_email: str,
        matched: Optional[UserRecord],
    ) -> AuthResult:
        """Reconcile the local record, restore data, set the session."""
        now = self._clock()

        if matched is None:
            logger.info(f"No local user matched {identity.user_id}, creating fallback user")
            email = (identity.email or login_email).strip().lower()
            base = email.split("@", 1)[0] if "@" in email else email
            user = UserRecord(
                id=identity.user_id,
                email=email,
                username=_unique_username(base, await self._load_users()),
                created_at=now,
                updated_at=now,
            )
        elif matched.id != identity.user_id:
            # Stale local record for this email: keep the profile, adopt the provider id.
            logger.warning(f"Local record {matched.id} re-keyed to provider id {identity.user_id}")
            try:
                await self._users.delete(matched.id)
            except Exception as e:
                await self._local_failure("delete_stale_user", matched.id, e)
            user = matched.model_copy(update={"id": identity.user_id, "updated_at": now})
        else:
            user = matched.model_copy(update={"updated_at": now})

        await self._persist_user(user)

        try:
            await self._restore.restore(user.id)
        except Exception as e:
            logger.error(f"Data restore error for {user.id}: {e}")
            await self._emit(IdentityEventType.DATA_RESTORE_FAILED, user.id, error=str(e))

        await self._set_session(user.id)

        logger.info(f"Login successful for {user.id}")
        await self._emit(IdentityEventType.LOGGED_IN, user.id)
        return AuthResult(success=True, message=MSG_LOGIN_SUCCESS, user=user)

    # ---- Logout ----

    async def logout(self) -> None:
        """Sign out remotely if possible; always end the local session."""
        try:
            await self._provider.sign_out()
        except Exception as e:
            logger.warning(f"Error in provider sign_out: {e}")

        try:
            await self._session.clear()
        except Exception as e:
            await self._local_failure("clear_session", None, e)

        await self._emit(IdentityEventType.LOGGED_OUT)

    # ---- Password & Account Management ----

    async def update_password(self, user_id: str, old_password: str, new_password: str) -> AuthResult:
        try:
            identity = await self._require_identity(user_id)
        except IdentityProviderError:
            return AuthResult(success=False, message=MSG_NOT_AUTHENTICATED)

        try:
            if identity.email:
                await self._provider.reauthenticate(identity.email, old_password)
        except IdentityProviderError as e:
            if e.code == ProviderErrorCode.INVALID_CREDENTIALS:
                return AuthResult(success=False, message=MSG_WRONG_PASSWORD)
            return AuthResult(success=False, message=f"Failed to update password: {e.message}")
        except Exception as e:
            logger.error(f"Unexpected error reauthenticating in update_password: {e}")
            return AuthResult(success=False, message=f"Failed to update password: {e}")

        try:
            await self._provider.update_password(new_password)
        except IdentityProviderError as e:
            return AuthResult(success=False, message=f"Failed to update password: {e.message}")
        except Exception as e:
            logger.error(f"Unexpected error in update_password: {e}")
            return AuthResult(success=False, message=f"Failed to update password: {e}")

        logger.info(f"Password updated for {user_id}")
        return AuthResult(success=True, message=MSG_PASSWORD_UPDATED)

    async def delete_account(self, user_id: str, password: str) -> AuthResult:
        """
        Delete the account of the signed-in user.

        The local record and session id go first, then the provider
        account, then a full logout.
        """
        try:
            identity = await self._require_identity(user_id)
        except IdentityProviderError:
            return AuthResult(success=False, message=MSG_NOT_AUTHENTICATED)

        try:
            if identity.email:
                await self._provider.reauthenticate(identity.email, password)
        except IdentityProviderError as e:
            if e.code == ProviderErrorCode.INVALID_CREDENTIALS:
                return AuthResult(success=False, message=MSG_WRONG_PASSWORD)
            return AuthResult(success=False, message=f"Failed to delete account: {e.message}")
        except Exception as e:
            logger.error(f"Unexpected error reauthenticating in delete_account: {e}")
            return AuthResult(success=False, message=f"Failed to delete account: {e}")

        try:
            await self._users.delete(user_id)
            await self._session.clear_user_id()
        except Exception as e:
            await self._local_failure("delete_user", user_id, e)

        try:
            await self._provider.delete_current_account()
        except IdentityProviderError as e:
            return AuthResult(success=False, message=f"Failed to delete account: {e.message}")
        except Exception as e:
            logger.error(f"Unexpected error in delete_account: {e}")
            return AuthResult(success=False, message=f"Failed to delete account: {e}")

        await self.logout()

        logger.info(f"Account deleted for {user_id}")
        await self._emit(IdentityEventType.ACCOUNT_DELETED, user_id)
        return AuthResult(success=True, message=MSG_ACCOUNT_DELETED)

    async def reset_password(self, email: str) -> AuthResult:
        """Same answer whether or not the address has an account."""
        try:
            await self._provider.send_password_reset(email.strip().lower())
        except Exception as e:
            logger.debug(f"Password reset not sent: {e}")
        return AuthResult(success=True, message=MSG_RESET_SENT)

    # ---- Multi-Factor Enrollment ----

    async def start_mfa_enrollment(self, user_id: str, phone_number: str) -> str:
        """Send an enrollment code to `phone_number`. Returns session info."""
        await self._require_identity(user_id)
        return await self._provider.start_mfa_enrollment(phone_number.strip())

    async def complete_mfa_enrollment(
        self,
        user_id: str,
        session_info: str,
        verification_code: str,
        display_name: Optional[str] = None,
    ) -> MfaFactor:
        await self._require_identity(user_id)
        factor = await self._provider.complete_mfa_enrollment(
            session_info, verification_code.strip(), display_name
        )
        logger.info(f"Second factor enrolled for {user_id}")
        return factor

    async def get_enrolled_factors(self, user_id: str) -> list[MfaFactor]:
        try:
            await self._require_identity(user_id)
            return await self._provider.list_mfa_factors()
        except Exception as e:
            logger.warning(f"Unable to query enrolled factors for {user_id}: {e}")
            return []

    async def disable_mfa_factor(self, user_id: str, password: str, enrollment_id: str) -> bool:
        """Remove a second factor after confirming the password."""
        try:
            identity = await self._require_identity(user_id)
            await self._provider.reauthenticate(identity.email or "", password)
        except IdentityProviderError as e:
            logger.info(f"Reauthentication failed, factor not removed: {e.code.value}")
            return False
        except Exception as e:
            logger.error(f"Unexpected error reauthenticating before factor removal: {e}")
            return False

        try:
            await self._provider.unenroll_mfa_factor(enrollment_id)
        except IdentityProviderError as e:
            logger.warning(f"Failed to remove factor {enrollment_id}: {e.message}")
            return False

        logger.info(f"Second factor {enrollment_id} removed for {user_id}")
        return True

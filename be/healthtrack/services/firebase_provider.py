"""
Firebase Identity Provider - Identity Toolkit REST Integration

Email/password accounts, password reset and phone second factors via the
Identity Toolkit REST API. Keeps the signed-in user's tokens in memory,
like the provider SDKs do.
"""

import asyncio
import logging
import ssl
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

import aiohttp
import certifi

from shared.schemas.state import MfaFactor, ProviderIdentity

from ..core.config import settings
from .identity_provider import (
    IdentityProvider,
    IdentityProviderError,
    MultiFactorRequired,
    ProviderErrorCode,
)

logger = logging.getLogger(__name__)


# Identity Toolkit error message -> provider error code
ERROR_CODES: dict[str, ProviderErrorCode] = {
    "EMAIL_EXISTS": ProviderErrorCode.ALREADY_IN_USE,
    "WEAK_PASSWORD": ProviderErrorCode.WEAK_PASSWORD,
    "INVALID_EMAIL": ProviderErrorCode.INVALID_EMAIL,
    "EMAIL_NOT_FOUND": ProviderErrorCode.INVALID_CREDENTIALS,
    "INVALID_PASSWORD": ProviderErrorCode.INVALID_CREDENTIALS,
    "INVALID_LOGIN_CREDENTIALS": ProviderErrorCode.INVALID_CREDENTIALS,
    "USER_DISABLED": ProviderErrorCode.INVALID_CREDENTIALS,
    "INVALID_CODE": ProviderErrorCode.INVALID_VERIFICATION_CODE,
    "INVALID_SESSION_INFO": ProviderErrorCode.INVALID_VERIFICATION_CODE,
    "SESSION_EXPIRED": ProviderErrorCode.INVALID_VERIFICATION_CODE,
    "INVALID_ID_TOKEN": ProviderErrorCode.NOT_AUTHENTICATED,
    "TOKEN_EXPIRED": ProviderErrorCode.NOT_AUTHENTICATED,
    "CREDENTIAL_TOO_OLD_LOGIN_AGAIN": ProviderErrorCode.NOT_AUTHENTICATED,
    "USER_NOT_FOUND": ProviderErrorCode.USER_NOT_FOUND,
}


def map_identity_toolkit_error(message: str) -> ProviderErrorCode:
    """
    Map an Identity Toolkit error message to a ProviderErrorCode.

    Messages look like "EMAIL_EXISTS" or
    "WEAK_PASSWORD : Password should be at least 6 characters".
    """
    key = message.split(":", 1)[0].strip().upper()
    return ERROR_CODES.get(key, ProviderErrorCode.OTHER)


def _parse_enrolled_at(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _factor_from_mfa_info(info: dict[str, Any]) -> MfaFactor:
    return MfaFactor(
        enrollment_id=info.get("mfaEnrollmentId", ""),
        display_name=info.get("displayName"),
        phone_hint=info.get("phoneInfo"),
        enrolled_at=_parse_enrolled_at(info.get("enrolledAt")),
    )


@dataclass
class FirebaseSession:
    """Tokens for the signed-in user."""
    user_id: str
    email: Optional[str]
    id_token: str
    refresh_token: Optional[str] = None


@dataclass
class PendingMfaSignIn:
    """First factor accepted, waiting for the SMS code."""
    mfa_pending_credential: str
    session_info: str


class FirebaseIdentityProvider(IdentityProvider):
    """
    Identity Toolkit REST client.

    Handles:
    - Sign up / sign in / password reset
    - Phone second factor sign-in and enrollment
    - Password update and account deletion for the signed-in user
    """

    def __init__(self, api_key: str = None, base_url: str = None, timeout_seconds: float = None):
        self._api_key = api_key or settings.firebase_api_key
        self._base_url = (base_url or settings.identity_toolkit_url).rstrip("/")
        self._timeout = aiohttp.ClientTimeout(
            total=timeout_seconds or settings.identity_provider_timeout_seconds
        )
        self._client_session: Optional[aiohttp.ClientSession] = None
        self._current: Optional[FirebaseSession] = None
        self._pending: dict[str, PendingMfaSignIn] = {}

        if not self._api_key:
            raise ValueError("Firebase API key is required (HEALTHTRACK_FIREBASE_API_KEY)")

    def _create_ssl_context(self) -> ssl.SSLContext:
        """Create SSL context using certifi certificates."""
        return ssl.create_default_context(cafile=certifi.where())

    async def _get_http_session(self) -> aiohttp.ClientSession:
        """Get or create shared aiohttp session with proper SSL."""
        if self._client_session is None or self._client_session.closed:
            ssl_context = self._create_ssl_context()
            connector = aiohttp.TCPConnector(ssl=ssl_context)
            self._client_session = aiohttp.ClientSession(connector=connector, timeout=self._timeout)
        return self._client_session

    async def close(self) -> None:
        if self._client_session and not self._client_session.closed:
            await self._client_session.close()

    async def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        """POST to Identity Toolkit, raising IdentityProviderError on rejection."""
        url = f"{self._base_url}/{path}"
        session = await self._get_http_session()
        try:
            async with session.post(url, params={"key": self._api_key}, json=body) as resp:
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Identity Toolkit request to {path} failed: {e}")
            raise IdentityProviderError(ProviderErrorCode.OTHER, "Identity provider unreachable") from e
        except ValueError as e:
            logger.error(f"Identity Toolkit returned a non-JSON body for {path}: {e}")
            raise IdentityProviderError(ProviderErrorCode.OTHER, "Malformed identity provider response") from e

        if resp.status >= 400 or (isinstance(data, dict) and "error" in data):
            message = ""
            if isinstance(data, dict):
                message = data.get("error", {}).get("message", "")
            code = map_identity_toolkit_error(message)
            logger.info(f"Identity Toolkit rejected {path}: {message or resp.status}")
            raise IdentityProviderError(code, message or f"HTTP {resp.status}")

        return data or {}

    def _require_current(self) -> FirebaseSession:
        if self._current is None:
            raise IdentityProviderError(ProviderErrorCode.NOT_AUTHENTICATED, "No user signed in")
        return self._current

    async def _lookup(self, id_token: str) -> dict[str, Any]:
        data = await self._post("v1/accounts:lookup", {"idToken": id_token})
        users = data.get("users") or []
        if not users:
            raise IdentityProviderError(ProviderErrorCode.USER_NOT_FOUND, "Account not found")
        return users[0]

    def _remember(self, data: dict[str, Any], email: Optional[str] = None) -> ProviderIdentity:
        if not data.get("localId") or not data.get("idToken"):
            raise IdentityProviderError(ProviderErrorCode.OTHER, "Identity provider returned no user")
        self._current = FirebaseSession(
            user_id=data["localId"],
            email=data.get("email", email),
            id_token=data["idToken"],
            refresh_token=data.get("refreshToken"),
        )
        return ProviderIdentity(user_id=self._current.user_id, email=self._current.email)

    # ---- Accounts & Sessions ----

    async def create_account(self, email: str, password: str) -> ProviderIdentity:
        data = await self._post(
            "v1/accounts:signUp",
            {"email": email, "password": password, "returnSecureToken": True},
        )
        return self._remember(data, email)

    async def sign_in(self, email: str, password: str) -> ProviderIdentity:
        data = await self._post(
            "v1/accounts:signInWithPassword",
            {"email": email, "password": password, "returnSecureToken": True},
        )

        pending_credential = data.get("mfaPendingCredential")
        if pending_credential:
            factor = (data.get("mfaInfo") or [{}])[0]
            started = await self._post(
                "v2/accounts/mfaSignIn:start",
                {
                    "mfaPendingCredential": pending_credential,
                    "mfaEnrollmentId": factor.get("mfaEnrollmentId"),
                    "phoneSignInInfo": {},
                },
            )
            session_info = started.get("phoneResponseInfo", {}).get("sessionInfo", "")
            pending_id = uuid4().hex
            self._pending[pending_id] = PendingMfaSignIn(
                mfa_pending_credential=pending_credential,
                session_info=session_info,
            )
            logger.info("Sign-in requires a second factor")
            raise MultiFactorRequired(pending_id, hint=factor.get("phoneInfo"))

        return self._remember(data, email)

    async def complete_mfa_sign_in(self, pending_id: str, verification_code: str) -> ProviderIdentity:
        pending = self._pending.get(pending_id)
        if pending is None:
            raise IdentityProviderError(ProviderErrorCode.OTHER, "Unknown or expired challenge")

        data = await self._post(
            "v2/accounts/mfaSignIn:finalize",
            {
                "mfaPendingCredential": pending.mfa_pending_credential,
                "phoneVerificationInfo": {
                    "sessionInfo": pending.session_info,
                    "code": verification_code,
                },
            },
        )
        del self._pending[pending_id]
        user = await self._lookup(data.get("idToken", ""))
        return self._remember({**data, "localId": user.get("localId"), "email": user.get("email")})

    async def sign_out(self) -> None:
        # Tokens are bearer credentials; dropping them ends the local provider session.
        self._current = None

    async def current_identity(self) -> Optional[ProviderIdentity]:
        if self._current is None:
            return None
        return ProviderIdentity(user_id=self._current.user_id, email=self._current.email)

    async def reauthenticate(self, email: str, password: str) -> ProviderIdentity:
        current = self._require_current()
        data = await self._post(
            "v1/accounts:signInWithPassword",
            {"email": email, "password": password, "returnSecureToken": True},
        )
        if data.get("mfaPendingCredential"):
            # Password confirmed; second factor not needed to reauthenticate here.
            return ProviderIdentity(user_id=current.user_id, email=current.email)
        if data.get("localId") != current.user_id:
            raise IdentityProviderError(ProviderErrorCode.INVALID_CREDENTIALS, "Credentials belong to another user")
        return self._remember(data, email)

    # ---- Password & Account Management ----

    async def send_password_reset(self, email: str) -> None:
        await self._post(
            "v1/accounts:sendOobCode",
            {"requestType": "PASSWORD_RESET", "email": email},
        )

    async def update_password(self, new_password: str) -> None:
        current = self._require_current()
        data = await self._post(
            "v1/accounts:update",
            {"idToken": current.id_token, "password": new_password, "returnSecureToken": True},
        )
        if data.get("idToken"):
            current.id_token = data["idToken"]
            current.refresh_token = data.get("refreshToken", current.refresh_token)

    async def delete_current_account(self) -> None:
        current = self._require_current()
        await self._post("v1/accounts:delete", {"idToken": current.id_token})
        self._current = None

    # ---- Multi-Factor Enrollment ----

    async def start_mfa_enrollment(self, phone_number: str) -> str:
        current = self._require_current()
        data = await self._post(
            "v2/accounts/mfaEnrollment:start",
            {"idToken": current.id_token, "phoneEnrollmentInfo": {"phoneNumber": phone_number}},
        )
        return data.get("phoneSessionInfo", {}).get("sessionInfo", "")

    async def complete_mfa_enrollment(
        self, session_info: str, verification_code: str, display_name: Optional[str] = None
    ) -> MfaFactor:
        current = self._require_current()
        body: dict[str, Any] = {
            "idToken": current.id_token,
            "phoneVerificationInfo": {"sessionInfo": session_info, "code": verification_code},
        }
        if display_name:
            body["displayName"] = display_name
        data = await self._post("v2/accounts/mfaEnrollment:finalize", body)
        if data.get("idToken"):
            current.id_token = data["idToken"]
            current.refresh_token = data.get("refreshToken", current.refresh_token)

        factors = await self.list_mfa_factors()
        if not factors:
            raise IdentityProviderError(ProviderErrorCode.OTHER, "Enrollment not recorded")
        return factors[-1]

    async def list_mfa_factors(self) -> list[MfaFactor]:
        current = self._require_current()
        user = await self._lookup(current.id_token)
        return [_factor_from_mfa_info(info) for info in user.get("mfaInfo") or []]

    async def unenroll_mfa_factor(self, enrollment_id: str) -> None:
        current = self._require_current()
        data = await self._post(
            "v2/accounts/mfaEnrollment:withdraw",
            {"idToken": current.id_token, "mfaEnrollmentId": enrollment_id},
        )
        if data.get("idToken"):
            current.id_token = data["idToken"]
            current.refresh_token = data.get("refreshToken", current.refresh_token)

"""
REST API Routes

Authentication, multi-factor, consent, role and data-access endpoints.
"""

from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status, Query
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, EmailStr

from shared.schemas.permissions import Permission, Role
from shared.schemas.state import AuthResult, MfaFactor, UserRecord, utcnow
from shared.schemas.storage import HealthTrackStorage

from ..core.auth import create_access_token, decode_token
from ..services.auth_service import AuthService
from ..services.identity_provider import IdentityProviderError
from ..services.rbac_service import RBACService
from ..services.session_manager import SessionManager

router = APIRouter()
security = HTTPBearer(auto_error=False)

# Service instances (set during app startup)
_storage: Optional[HealthTrackStorage] = None
_auth_service: Optional[AuthService] = None
_rbac_service: Optional[RBACService] = None
_session_manager: Optional[SessionManager] = None


def set_services(
    storage: HealthTrackStorage,
    auth_service: AuthService,
    rbac_service: RBACService,
    session_manager: SessionManager,
):
    """Set service instances for dependency injection."""
    global _storage, _auth_service, _rbac_service, _session_manager
    _storage = storage
    _auth_service = auth_service
    _rbac_service = rbac_service
    _session_manager = session_manager


def get_storage() -> HealthTrackStorage:
    if _storage is None:
        raise HTTPException(status_code=500, detail="Storage not initialized")
    return _storage


def get_auth_service() -> AuthService:
    if _auth_service is None:
        raise HTTPException(status_code=500, detail="Auth service not initialized")
    return _auth_service


def get_rbac_service() -> RBACService:
    if _rbac_service is None:
        raise HTTPException(status_code=500, detail="RBAC service not initialized")
    return _rbac_service


def get_session_manager() -> SessionManager:
    if _session_manager is None:
        raise HTTPException(status_code=500, detail="Session manager not initialized")
    return _session_manager


async def get_current_user_id(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> str:
    """Validate the bearer token and return the requester's user id."""
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authentication token"
        )

    token_data = decode_token(credentials.credentials)
    if not token_data:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token"
        )

    return token_data.user_id


async def get_optional_user_id(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Optional[str]:
    """The requester's user id when a valid token is sent, otherwise None."""
    if not credentials:
        return None
    token_data = decode_token(credentials.credentials)
    return token_data.user_id if token_data else None


def require_permission(permission: Permission):
    """
    Dependency factory gating a route on a capability.

    Usage: `user_id: str = Depends(require_permission(Permission.EXPORT_OWN_DATA))`
    """
    async def checker(
        user_id: str = Depends(get_current_user_id),
        rbac: RBACService = Depends(get_rbac_service),
    ) -> str:
        if not await rbac.has_permission(user_id, permission):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing permission: {permission.value}"
            )
        return user_id

    return checker


# ============================================================================
# Request/Response Models
# ============================================================================

class SignupRequest(BaseModel):
    email: EmailStr
    password: str
    username: str
    full_name: Optional[str] = None
    gender: Optional[str] = None
    date_of_birth: Optional[date] = None


class LoginRequest(BaseModel):
    """Email or username plus password."""
    identifier: str
    password: str


class MfaCompleteRequest(BaseModel):
    pending_id: str
    code: str


class AuthResponse(BaseModel):
    """Login/signup outcome. `token` is set only on success."""
    success: bool
    message: str
    token: Optional[str] = None
    user: Optional[UserRecord] = None
    mfa_required: bool = False
    mfa_pending_id: Optional[str] = None
    mfa_hint: Optional[str] = None


class MessageResponse(BaseModel):
    message: str


class SessionResponse(BaseModel):
    is_logged_in: bool
    current_user_id: Optional[str] = None


class PasswordUpdateRequest(BaseModel):
    current_password: str
    new_password: str


class PasswordResetRequest(BaseModel):
    email: EmailStr


class DeleteAccountRequest(BaseModel):
    password: str


class MfaEnrollStartRequest(BaseModel):
    phone_number: str


class MfaEnrollStartResponse(BaseModel):
    session_info: str


class MfaEnrollCompleteRequest(BaseModel):
    session_info: str
    code: str
    display_name: Optional[str] = None


class MfaDisableRequest(BaseModel):
    password: str


class ConsentResponse(BaseModel):
    user_id: str
    consented: bool


class RoleResponse(BaseModel):
    user_id: str
    role: Role
    permissions: list[Permission]


class RoleUpdateRequest(BaseModel):
    role: Role


class GrantRequest(BaseModel):
    viewer_id: str
    expires_at: Optional[datetime] = None


class GrantResponse(BaseModel):
    owner_id: str
    viewer_id: str
    active: bool
    expires_at: Optional[datetime] = None


class AccessResponse(BaseModel):
    requester_id: str
    owner_id: str
    write_access: bool
    allowed: bool


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    storage_connected: bool
    timestamp: datetime


def _auth_response(result: AuthResult) -> AuthResponse:
    token = None
    if result.success and result.user is not None:
        token = create_access_token(result.user.id)
    return AuthResponse(
        success=result.success,
        message=result.message,
        token=token,
        user=result.user,
        mfa_required=result.mfa_required,
        mfa_pending_id=result.mfa_pending_id,
        mfa_hint=result.mfa_hint,
    )


async def _role_response(rbac: RBACService, user_id: str) -> RoleResponse:
    role = await rbac.get_role(user_id)
    permissions = await rbac.get_permissions(user_id)
    return RoleResponse(
        user_id=user_id,
        role=role,
        permissions=sorted(permissions, key=lambda p: p.value),
    )


# ============================================================================
# Auth Endpoints
# ============================================================================

@router.post("/auth/signup", response_model=AuthResponse, tags=["auth"])
async def signup(
    request: SignupRequest,
    auth: AuthService = Depends(get_auth_service)
):
    """Create an account and start a session."""
    result = await auth.sign_up(
        email=request.email,
        password=request.password,
        username=request.username,
        full_name=request.full_name,
        gender=request.gender,
        date_of_birth=request.date_of_birth,
    )
    if not result.success:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=result.message
        )
    return _auth_response(result)


@router.post("/auth/login", response_model=AuthResponse, tags=["auth"])
async def login(
    request: LoginRequest,
    auth: AuthService = Depends(get_auth_service)
):
    """
    Log in with email or username.

    A second-factor challenge is returned with 200 and `mfa_required`;
    finish it with POST /auth/mfa/complete.
    """
    result = await auth.login(request.identifier, request.password)
    if not result.success and not result.mfa_required:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=result.message
        )
    return _auth_response(result)


@router.post("/auth/mfa/complete", response_model=AuthResponse, tags=["auth"])
async def complete_mfa(
    request: MfaCompleteRequest,
    auth: AuthService = Depends(get_auth_service)
):
    """Finish a login with the second-factor code."""
    result = await auth.complete_mfa_sign_in(request.pending_id, request.code)
    if not result.success and not result.mfa_required:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=result.message
        )
    return _auth_response(result)


@router.post("/auth/logout", response_model=MessageResponse, tags=["auth"])
async def logout(
    user_id: str = Depends(get_current_user_id),
    auth: AuthService = Depends(get_auth_service)
):
    """Logout and clear session flags."""
    await auth.logout()
    return MessageResponse(message="Logged out successfully")


@router.get("/auth/session", response_model=SessionResponse, tags=["auth"])
async def get_session(
    user_id: Optional[str] = Depends(get_optional_user_id),
    sessions: SessionManager = Depends(get_session_manager)
):
    """
    Durable login state, as seen at cold start.

    The session user id is only echoed back to that same user.
    """
    current_user_id = await sessions.get_current_user_id()
    return SessionResponse(
        is_logged_in=await sessions.is_logged_in(),
        current_user_id=current_user_id if user_id and user_id == current_user_id else None,
    )


@router.get("/auth/me", response_model=UserRecord, tags=["auth"])
async def get_me(
    user_id: str = Depends(get_current_user_id),
    storage: HealthTrackStorage = Depends(get_storage)
):
    """Get current user's local record."""
    user = await storage.users.get(user_id)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found"
        )
    return user


@router.post("/auth/password", response_model=MessageResponse, tags=["auth"])
async def update_password(
    request: PasswordUpdateRequest,
    user_id: str = Depends(get_current_user_id),
    auth: AuthService = Depends(get_auth_service)
):
    result = await auth.update_password(user_id, request.current_password, request.new_password)
    if not result.success:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=result.message
        )
    return MessageResponse(message=result.message)


@router.post("/auth/password/reset", response_model=MessageResponse, tags=["auth"])
async def reset_password(
    request: PasswordResetRequest,
    auth: AuthService = Depends(get_auth_service)
):
    """Always answers the same way, whether or not the account exists."""
    result = await auth.reset_password(request.email)
    return MessageResponse(message=result.message)


@router.delete("/auth/account", response_model=MessageResponse, tags=["auth"])
async def delete_account(
    request: DeleteAccountRequest,
    user_id: str = Depends(get_current_user_id),
    auth: AuthService = Depends(get_auth_service)
):
    result = await auth.delete_account(user_id, request.password)
    if not result.success:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=result.message
        )
    return MessageResponse(message=result.message)


# ============================================================================
# Multi-Factor Enrollment
# ============================================================================

@router.get("/auth/mfa/factors", response_model=list[MfaFactor], tags=["mfa"])
async def list_factors(
    user_id: str = Depends(get_current_user_id),
    auth: AuthService = Depends(get_auth_service)
):
    return await auth.get_enrolled_factors(user_id)


@router.post("/auth/mfa/factors/start", response_model=MfaEnrollStartResponse, tags=["mfa"])
async def start_enrollment(
    request: MfaEnrollStartRequest,
    user_id: str = Depends(get_current_user_id),
    auth: AuthService = Depends(get_auth_service)
):
    """Send a verification code to the phone being enrolled."""
    try:
        session_info = await auth.start_mfa_enrollment(user_id, request.phone_number)
    except IdentityProviderError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=e.message
        )
    return MfaEnrollStartResponse(session_info=session_info)


@router.post("/auth/mfa/factors/complete", response_model=MfaFactor, tags=["mfa"])
async def complete_enrollment(
    request: MfaEnrollCompleteRequest,
    user_id: str = Depends(get_current_user_id),
    auth: AuthService = Depends(get_auth_service)
):
    try:
        return await auth.complete_mfa_enrollment(
            user_id, request.session_info, request.code, request.display_name
        )
    except IdentityProviderError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=e.message
        )


@router.post("/auth/mfa/factors/{enrollment_id}/disable", response_model=MessageResponse, tags=["mfa"])
async def disable_factor(
    enrollment_id: str,
    request: MfaDisableRequest,
    user_id: str = Depends(get_current_user_id),
    auth: AuthService = Depends(get_auth_service)
):
    """Remove a second factor. The password is confirmed first."""
    if not await auth.disable_mfa_factor(user_id, request.password, enrollment_id):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Failed to disable second factor"
        )
    return MessageResponse(message="Second factor disabled")


# ============================================================================
# Consent
# ============================================================================

@router.get("/consent", response_model=ConsentResponse, tags=["consent"])
async def get_consent(
    user_id: str = Depends(get_current_user_id),
    sessions: SessionManager = Depends(get_session_manager)
):
    return ConsentResponse(user_id=user_id, consented=await sessions.has_consented(user_id))


@router.post("/consent", response_model=ConsentResponse, tags=["consent"])
async def give_consent(
    user_id: str = Depends(get_current_user_id),
    sessions: SessionManager = Depends(get_session_manager)
):
    """Record consent to health data processing."""
    await sessions.record_consent(user_id)
    return ConsentResponse(user_id=user_id, consented=True)


# ============================================================================
# Roles & Permissions
# ============================================================================

@router.get("/rbac/permissions", response_model=RoleResponse, tags=["rbac"])
async def my_permissions(
    user_id: str = Depends(get_current_user_id),
    rbac: RBACService = Depends(get_rbac_service)
):
    """Requester's role and capability set."""
    return await _role_response(rbac, user_id)


@router.get("/rbac/role/{target_user_id}", response_model=RoleResponse, tags=["rbac"])
async def get_role(
    target_user_id: str,
    user_id: str = Depends(get_current_user_id),
    rbac: RBACService = Depends(get_rbac_service)
):
    """Anyone may read their own role; others need manageSystemSettings."""
    if target_user_id != user_id and not await rbac.has_permission(
        user_id, Permission.MANAGE_SYSTEM_SETTINGS
    ):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Missing permission: {Permission.MANAGE_SYSTEM_SETTINGS.value}"
        )
    return await _role_response(rbac, target_user_id)


@router.put("/rbac/role/{target_user_id}", response_model=RoleResponse, tags=["rbac"])
async def set_role(
    target_user_id: str,
    request: RoleUpdateRequest,
    user_id: str = Depends(get_current_user_id),
    rbac: RBACService = Depends(get_rbac_service)
):
    if not await rbac.set_role(target_user_id, request.role, user_id):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Role change not permitted"
        )
    return await _role_response(rbac, target_user_id)


# ============================================================================
# Healthcare Access Grants
# ============================================================================

@router.post("/rbac/grants", response_model=GrantResponse, tags=["rbac"])
async def grant_access(
    request: GrantRequest,
    user_id: str = Depends(require_permission(Permission.SHARE_WITH_HEALTHCARE)),
    rbac: RBACService = Depends(get_rbac_service)
):
    """Share the requester's data with a healthcare viewer."""
    if not await rbac.grant_healthcare_access(user_id, request.viewer_id, request.expires_at):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Access can only be granted to a healthcare viewer"
        )
    return GrantResponse(
        owner_id=user_id,
        viewer_id=request.viewer_id,
        active=True,
        expires_at=request.expires_at,
    )


@router.delete("/rbac/grants/{viewer_id}", response_model=MessageResponse, tags=["rbac"])
async def revoke_access(
    viewer_id: str,
    user_id: str = Depends(get_current_user_id),
    rbac: RBACService = Depends(get_rbac_service)
):
    await rbac.revoke_healthcare_access(user_id, viewer_id)
    return MessageResponse(message="Access revoked")


@router.get("/data/{owner_id}/access", response_model=AccessResponse, tags=["rbac"])
async def check_access(
    owner_id: str,
    write: bool = Query(False),
    user_id: str = Depends(get_current_user_id),
    rbac: RBACService = Depends(get_rbac_service)
):
    """Whether the requester may read (or write) `owner_id`'s health data."""
    allowed = await rbac.can_access_data(user_id, owner_id, write_access=write)
    return AccessResponse(
        requester_id=user_id,
        owner_id=owner_id,
        write_access=write,
        allowed=allowed,
    )


# ============================================================================
# Health Check
# ============================================================================

@router.get("/health", response_model=HealthResponse, tags=["system"])
async def health_check(storage: HealthTrackStorage = Depends(get_storage)):
    """Health check endpoint."""
    storage_ok = await storage.health_check()
    return HealthResponse(
        status="healthy" if storage_ok else "degraded",
        storage_connected=storage_ok,
        timestamp=utcnow()
    )

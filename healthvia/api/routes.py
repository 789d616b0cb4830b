from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException

from healthvia.api.schemas import (
    AdminRegisterRequest,
    AuthResponse,
    BaseRegisterRequest,
    CleanupResponse,
    DoctorRegisterRequest,
    Envelope,
    IdentitySummary,
    LockRequest,
    LockStatusResponse,
    LoginRequest,
    LogoutRequest,
    PasswordChangeRequest,
    PatientRegisterRequest,
    StatusChangeRequest,
    TokenRefreshRequest,
    UserRegisterRequest,
)
from healthvia.logging import get_logger
from healthvia.service.auth import AuthContext, AuthResult
from healthvia.service.registration import RegistrationRequest
from healthvia.service.runtime import get_runtime
from healthvia.storage.models import Identity, Role

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization)


async def get_admin_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization, required_role=Role.ADMIN)


def _auth_envelope(result: AuthResult) -> Envelope:
    return Envelope(status="ok", data=AuthResponse.model_validate(result))


def _lock_status(identity: Identity, locked: bool) -> LockStatusResponse:
    return LockStatusResponse(
        id=identity.id,
        locked=locked,
        lock_until=identity.lock_until if locked else None,
        failed_login_count=identity.failed_login_count,
    )


async def _register(
    role: Role, body: BaseRegisterRequest, *, actor_id: Optional[str] = None
) -> Envelope:
    runtime = get_runtime()
    if not runtime.settings.allow_registration and role != Role.ADMIN:
        raise _http_error("forbidden", "registration is disabled", status_code=403)
    request = RegistrationRequest(
        role=role,
        first_name=body.first_name,
        last_name=body.last_name,
        email=body.email,
        phone=body.phone,
        password=body.password,
        consent=body.consent,
        profile=body.profile_fields(),
    )
    result = await runtime.auth.register(request, actor_id=actor_id)
    return _auth_envelope(result)


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Authenticate by email or phone and issue an access/refresh token pair.

    Raises:
        401: unknown identifier or wrong password (indistinguishable)
        423: account is locked or suspended
    """
    runtime = get_runtime()
    result = await runtime.auth.login(body.identifier, body.password)
    return _auth_envelope(result)


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest):
    runtime = get_runtime()
    result = await runtime.auth.refresh(body.refresh_token)
    return _auth_envelope(result)


@router.post("/auth/register/user", response_model=Envelope, status_code=201, tags=["auth"])
async def register_user(body: UserRegisterRequest):
    return await _register(Role.USER, body)


@router.post("/auth/register/patient", response_model=Envelope, status_code=201, tags=["auth"])
async def register_patient(body: PatientRegisterRequest):
    return await _register(Role.PATIENT, body)


@router.post("/auth/register/doctor", response_model=Envelope, status_code=201, tags=["auth"])
async def register_doctor(body: DoctorRegisterRequest):
    """Register a doctor; verification starts pending and new patients closed."""
    return await _register(Role.DOCTOR, body)


@router.post("/auth/register/admin", response_model=Envelope, status_code=201, tags=["auth"])
async def register_admin(
    body: AdminRegisterRequest, principal: AuthContext = Depends(get_admin_user)
):
    return await _register(Role.ADMIN, body, actor_id=principal.identity_id)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None,
    authorization: Optional[str] = Header(None),
):
    runtime = get_runtime()
    await runtime.auth.authenticate(authorization)
    token = runtime.auth._extract_bearer(authorization)
    revoked = await runtime.auth.logout(token, body.refresh_token if body else None)
    return Envelope(status="ok", data={"logged_out": True, "tokens_revoked": revoked})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    identity = runtime.auth.get_identity(principal.identity_id)
    return Envelope(status="ok", data=IdentitySummary.from_identity(identity))


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    await runtime.auth.change_password(
        principal.identity_id, body.old_password, body.new_password
    )
    return Envelope(status="ok", data={"password_changed": True})


@router.get("/admin/identities/{identity_id}/lock", response_model=Envelope, tags=["admin"])
async def admin_lock_status(
    identity_id: str,
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    identity = runtime.auth.get_identity(identity_id)
    locked = runtime.auth.security.is_locked(identity)
    return Envelope(status="ok", data=_lock_status(identity, locked))


@router.post("/admin/identities/{identity_id}/unlock", response_model=Envelope, tags=["admin"])
async def admin_unlock(
    identity_id: str,
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    identity = runtime.auth.unlock(identity_id, actor_id=principal.identity_id)
    return Envelope(status="ok", data=_lock_status(identity, False))


@router.post("/admin/identities/{identity_id}/lock", response_model=Envelope, tags=["admin"])
async def admin_lock(
    body: LockRequest,
    identity_id: str,
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    if identity_id == principal.identity_id:
        raise _http_error("forbidden", "cannot lock your own account", status_code=403)
    identity = runtime.auth.lock(
        identity_id, body.minutes, reason=body.reason, actor_id=principal.identity_id
    )
    return Envelope(status="ok", data=_lock_status(identity, True))


@router.post("/admin/identities/{identity_id}/status", response_model=Envelope, tags=["admin"])
async def admin_change_status(
    body: StatusChangeRequest,
    identity_id: str,
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    identity = runtime.auth.change_status(
        identity_id, body.status, actor_id=principal.identity_id
    )
    return Envelope(status="ok", data=IdentitySummary.from_identity(identity))


@router.post(
    "/admin/identities/{identity_id}/verify-email", response_model=Envelope, tags=["admin"]
)
async def admin_verify_email(
    identity_id: str,
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    identity = runtime.auth.verify_email(identity_id)
    return Envelope(status="ok", data=IdentitySummary.from_identity(identity))


@router.post(
    "/admin/identities/{identity_id}/verify-phone", response_model=Envelope, tags=["admin"]
)
async def admin_verify_phone(
    identity_id: str,
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    identity = runtime.auth.verify_phone(identity_id)
    return Envelope(status="ok", data=IdentitySummary.from_identity(identity))


@router.delete("/admin/identities/{identity_id}", response_model=Envelope, tags=["admin"])
async def admin_delete_identity(
    identity_id: str,
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    if identity_id == principal.identity_id:
        raise _http_error("forbidden", "cannot delete your own account", status_code=403)
    runtime.auth.mark_deleted(identity_id, actor_id=principal.identity_id)
    return Envelope(status="ok", data={"id": identity_id, "deleted": True})


@router.delete(
    "/admin/identities/{identity_id}/permanent", response_model=Envelope, tags=["admin"]
)
async def admin_permanently_delete_identity(
    identity_id: str,
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    if identity_id == principal.identity_id:
        raise _http_error("forbidden", "cannot delete your own account", status_code=403)
    runtime.auth.permanently_delete(identity_id, actor_id=principal.identity_id)
    return Envelope(status="ok", data={"id": identity_id, "deleted": True, "permanent": True})


@router.get("/admin/locks", response_model=Envelope, tags=["admin"])
async def admin_list_locks(principal: AuthContext = Depends(get_admin_user)):
    runtime = get_runtime()
    locked = runtime.auth.list_locked()
    return Envelope(
        status="ok",
        data={"items": [_lock_status(identity, True) for identity in locked]},
    )


@router.post("/admin/locks/cleanup", response_model=Envelope, tags=["admin"])
async def admin_cleanup_locks(principal: AuthContext = Depends(get_admin_user)):
    runtime = get_runtime()
    cleared = runtime.auth.cleanup_expired_locks()
    logger.info("admin_lock_cleanup", actor_id=principal.identity_id, cleared=cleared)
    return Envelope(status="ok", data=CleanupResponse(cleared=cleared))

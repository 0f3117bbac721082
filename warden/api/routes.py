from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path

from warden.api.schemas import (
    ConfirmMfaActivationRequest,
    Envelope,
    InitLoginRequest,
    PermissionGrantRequest,
    PermissionRequest,
    RegisterRequest,
    RoleGrantRequest,
    RoleRequest,
    RoleUpdateRequest,
    SendVerificationEmailRequest,
    VerifyChallengeRequest,
    VerifyEmailRequest,
    VerifyMfaRequest,
)
from warden.service.auth import AuthContext
from warden.service.runtime import get_runtime
from warden.storage.models import Permission, Role

router = APIRouter()


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


def _permission_view(permission: Permission) -> dict:
    return {
        "id": permission.id,
        "name": permission.name,
        "createdAt": permission.created_at.isoformat(),
        "roles": list(permission.roles),
    }


def _role_view(role: Role) -> dict:
    return {
        "id": role.id,
        "name": role.name,
        "createdAt": role.created_at.isoformat(),
        "permissions": [perm.name for perm in role.permissions],
    }


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(authorization)
    if not ctx:
        raise _http_error("unauthorized", "invalid or expired token", status_code=401)
    return ctx


def require_permission(required: Optional[str] = None):
    """Dependency factory: any one of the comma-delimited permissions grants access.

    Without an argument the configured role administration permission applies.
    """

    async def _dependency(principal: AuthContext = Depends(get_user)) -> AuthContext:
        runtime = get_runtime()
        await runtime.permissions.authorize(
            principal.identity_id, required or runtime.settings.role_admin_permission
        )
        return principal

    return _dependency


def require_role(required: str):
    """Dependency factory: any one of the comma-delimited roles grants access."""

    async def _dependency(principal: AuthContext = Depends(get_user)) -> AuthContext:
        runtime = get_runtime()
        await runtime.permissions.authorize_role(principal.identity_id, required)
        return principal

    return _dependency


# ----------------------------------------------------------------------
# Login handshake
# ----------------------------------------------------------------------


@router.post("/auth/initLogin", response_model=Envelope, tags=["auth"])
async def init_login(body: InitLoginRequest):
    """Start a challenge-response login.

    The response carries the same fields whether or not the username exists.
    """
    runtime = get_runtime()
    challenge = await runtime.auth.init_login(body.username)
    return Envelope(status="ok", data=challenge.to_dict())


@router.post("/auth/verifyChallenge", response_model=Envelope, tags=["auth"])
async def verify_challenge(body: VerifyChallengeRequest):
    """Check the encrypted challenge.

    ``data.code`` is ``LOGGED_IN`` with a token, or one of
    ``EMAIL_NOT_VERIFIED``, ``PASSWORD_EXPIRED`` and ``MFA_REQUIRED``.

    Raises:
        401: WRONG_CHALLENGE for any bad, reused or expired session
    """
    runtime = get_runtime()
    result = await runtime.auth.verify_challenge(
        body.session_id, body.processed_challenge, remember_me=body.remember_me
    )
    return Envelope(status="ok", data=result.to_dict())


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    runtime = get_runtime()
    identity = await runtime.auth.register(body.name, body.email, body.password)
    return Envelope(status="ok", data={"code": "USER_CREATED", "user": identity.public_view()})


@router.post("/auth/sendVerificationEmail", response_model=Envelope, tags=["auth"])
async def send_verification_email(body: SendVerificationEmailRequest):
    runtime = get_runtime()
    code = await runtime.auth.send_verification_email(body.email)
    return Envelope(status="ok", data={"code": code})


@router.post("/auth/verifyEmail", response_model=Envelope, tags=["auth"])
async def verify_email(body: VerifyEmailRequest):
    runtime = get_runtime()
    code = await runtime.auth.verify_email(body.email, body.code)
    return Envelope(status="ok", data={"code": code})


# ----------------------------------------------------------------------
# MFA
# ----------------------------------------------------------------------


@router.post("/auth/askMfaActivation", response_model=Envelope, tags=["mfa"])
async def ask_mfa_activation(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    payload = await runtime.auth.ask_mfa_activation(principal.identity)
    return Envelope(status="ok", data=payload)


@router.post("/auth/confirmMfaActivation", response_model=Envelope, tags=["mfa"])
async def confirm_mfa_activation(
    body: ConfirmMfaActivationRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    code = await runtime.auth.confirm_mfa_activation(principal.identity, body.token)
    return Envelope(status="ok", data={"code": code})


@router.post("/auth/verifyMfa", response_model=Envelope, tags=["mfa"])
async def verify_mfa(body: VerifyMfaRequest):
    runtime = get_runtime()
    result = await runtime.auth.verify_mfa(body.key, body.token, remember_me=body.remember_me)
    return Envelope(status="ok", data=result.to_dict())


@router.post("/auth/removeMfa", response_model=Envelope, tags=["mfa"])
async def remove_mfa(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    code = await runtime.auth.remove_mfa(principal.identity)
    return Envelope(status="ok", data={"code": code})


@router.get("/profile", response_model=Envelope, tags=["auth"])
async def profile(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    resolved = await runtime.permissions.resolve(principal.identity_id)
    data = principal.identity.public_view()
    data["effective"] = resolved.to_dict()
    return Envelope(status="ok", data=data)


# ----------------------------------------------------------------------
# Roles and permissions
# ----------------------------------------------------------------------


@router.get("/roles", response_model=Envelope, tags=["roles"])
async def list_roles(principal: AuthContext = Depends(require_permission())):
    runtime = get_runtime()
    return Envelope(status="ok", data=[_role_view(role) for role in runtime.permissions.list_roles()])


@router.post("/roles", response_model=Envelope, status_code=201, tags=["roles"])
async def create_role(body: RoleRequest, principal: AuthContext = Depends(require_permission())):
    runtime = get_runtime()
    role = await runtime.permissions.create_role(body.name, body.permissions)
    return Envelope(status="ok", data=_role_view(role))


@router.post("/roles/addRoleToUser", response_model=Envelope, tags=["roles"])
async def add_role_to_user(
    body: RoleGrantRequest, principal: AuthContext = Depends(require_permission())
):
    runtime = get_runtime()
    await runtime.permissions.add_role_to_identity(body.user_id, body.role_id)
    return Envelope(status="ok", data={"message": "Role added to user"})


@router.post("/roles/removeRoleFromUser", response_model=Envelope, tags=["roles"])
async def remove_role_from_user(
    body: RoleGrantRequest, principal: AuthContext = Depends(require_permission())
):
    runtime = get_runtime()
    await runtime.permissions.remove_role_from_identity(body.user_id, body.role_id)
    return Envelope(status="ok", data={"message": "Role removed from user"})


@router.put("/roles/{role_id}", response_model=Envelope, tags=["roles"])
async def update_role(
    body: RoleUpdateRequest,
    role_id: int = Path(..., ge=1),
    principal: AuthContext = Depends(require_permission()),
):
    runtime = get_runtime()
    role = await runtime.permissions.update_role(
        role_id, name=body.name, permission_names=body.permissions
    )
    return Envelope(status="ok", data=_role_view(role))


@router.delete("/roles/{role_id}", response_model=Envelope, tags=["roles"])
async def delete_role(
    role_id: int = Path(..., ge=1),
    principal: AuthContext = Depends(require_permission()),
):
    runtime = get_runtime()
    await runtime.permissions.delete_role(role_id)
    return Envelope(status="ok", data={"id": role_id, "deleted": True})


@router.get("/permissions", response_model=Envelope, tags=["permissions"])
async def list_permissions(principal: AuthContext = Depends(require_permission())):
    runtime = get_runtime()
    return Envelope(
        status="ok",
        data=[_permission_view(perm) for perm in runtime.permissions.list_permissions()],
    )


@router.post("/permissions", response_model=Envelope, status_code=201, tags=["permissions"])
async def create_permission(
    body: PermissionRequest, principal: AuthContext = Depends(require_permission())
):
    runtime = get_runtime()
    permission = await runtime.permissions.create_permission(body.name)
    return Envelope(status="ok", data=_permission_view(permission))


@router.post("/permissions/addPermissionToUser", response_model=Envelope, tags=["permissions"])
async def add_permission_to_user(
    body: PermissionGrantRequest, principal: AuthContext = Depends(require_permission())
):
    runtime = get_runtime()
    await runtime.permissions.add_permission_to_identity(body.user_id, body.permission_id)
    return Envelope(status="ok", data={"message": "Permission added to user"})


@router.post(
    "/permissions/removePermissionFromUser", response_model=Envelope, tags=["permissions"]
)
async def remove_permission_from_user(
    body: PermissionGrantRequest, principal: AuthContext = Depends(require_permission())
):
    runtime = get_runtime()
    await runtime.permissions.remove_permission_from_identity(body.user_id, body.permission_id)
    return Envelope(status="ok", data={"message": "Permission removed from user"})

from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Request

from trustgate.api.schemas import (
    AuthResponse,
    Envelope,
    ForgotPasswordRequest,
    ForgotPasswordResponse,
    MFACodeRequest,
    MFARecoveryCodesResponse,
    MFASetupResponse,
    MFAStatusResponse,
    PasswordResetConfirm,
    PrincipalListResponse,
    PrincipalResponse,
    RateLimitConfigResponse,
    RateLimitUpdateRequest,
    SigninRequest,
    SignupRequest,
    StatusUpdateRequest,
)
from trustgate.logging import get_logger
from trustgate.service.auth import AuthContext, LoginResult, extract_bearer
from trustgate.service.errors import MalformedTokenError, NotFoundError
from trustgate.service.runtime import get_runtime

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


async def get_principal(
    request: Request, authorization: Optional[str] = Header(None)
) -> AuthContext:
    runtime = get_runtime()
    return await asyncio.to_thread(runtime.auth.authorize, authorization, request.method)


async def get_admin_principal(
    principal: AuthContext = Depends(get_principal),
) -> AuthContext:
    if not principal.is_admin:
        raise _http_error("forbidden", "admin access required", status_code=403)
    return principal


def _reset_token(authorization: Optional[str]) -> str:
    token = extract_bearer(authorization)
    if not token:
        raise MalformedTokenError("missing reset token")
    return token


def _auth_response(result: LoginResult) -> AuthResponse:
    return AuthResponse(
        user_id=result.principal.id,
        username=result.principal.username,
        roles=sorted(role.value for role in result.principal.roles),
        access_token=result.token,
        expires_at=result.expires_at,
    )


# auth


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest):
    runtime = get_runtime()
    principal = await asyncio.to_thread(
        runtime.auth.signup, body.username, body.email, body.password
    )
    return Envelope(status="ok", data=PrincipalResponse.from_principal(principal))


@router.post("/auth/signin", response_model=Envelope, tags=["auth"])
async def signin(body: SigninRequest):
    """Authenticate with username and password, plus a second factor when enrolled.

    Raises:
        401: bad credentials, missing or invalid MFA code
        403: account blocked or expired
    """
    runtime = get_runtime()
    result = await asyncio.to_thread(
        runtime.auth.authenticate, body.username, body.password, body.mfa_code
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/signout", response_model=Envelope, tags=["auth"])
async def signout(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    await asyncio.to_thread(runtime.auth.logout, principal.token)
    return Envelope(status="ok", data={"message": "session revoked"})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    record = runtime.store.find_by_id(principal.principal_id)
    if not record:
        raise NotFoundError("principal not found")
    return Envelope(status="ok", data=PrincipalResponse.from_principal(record))


# mfa


@router.post("/auth/mfa/setup", response_model=Envelope, tags=["mfa"])
async def mfa_setup(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    setup = await asyncio.to_thread(runtime.auth.setup_mfa, principal.principal_id)
    return Envelope(
        status="ok",
        data=MFASetupResponse(secret=setup.secret, otpauth_uri=setup.otpauth_uri),
    )


@router.post("/auth/mfa/enable", response_model=Envelope, tags=["mfa"])
async def mfa_enable(body: MFACodeRequest, principal: AuthContext = Depends(get_principal)):
    """Confirm a pending secret with a current code. Recovery codes are shown once."""
    runtime = get_runtime()
    codes = await asyncio.to_thread(runtime.auth.enable_mfa, principal.principal_id, body.code)
    return Envelope(status="ok", data=MFARecoveryCodesResponse(recovery_codes=codes))


@router.post("/auth/mfa/disable", response_model=Envelope, tags=["mfa"])
async def mfa_disable(body: MFACodeRequest, principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    await asyncio.to_thread(runtime.auth.disable_mfa, principal.principal_id, body.code)
    return Envelope(status="ok", data={"message": "MFA disabled"})


@router.post("/auth/mfa/recovery-codes", response_model=Envelope, tags=["mfa"])
async def mfa_recovery_codes(
    body: MFACodeRequest, principal: AuthContext = Depends(get_principal)
):
    runtime = get_runtime()
    codes = await asyncio.to_thread(
        runtime.auth.regenerate_recovery_codes, principal.principal_id, body.code
    )
    return Envelope(status="ok", data=MFARecoveryCodesResponse(recovery_codes=codes))


@router.get("/auth/mfa/status", response_model=Envelope, tags=["mfa"])
async def mfa_status(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    status = runtime.auth.mfa_status(principal.principal_id)
    return Envelope(status="ok", data=MFAStatusResponse(**status))


# password reset


@router.post("/auth/forgot-password/verify", response_model=Envelope, tags=["password-reset"])
async def forgot_password(body: ForgotPasswordRequest):
    runtime = get_runtime()
    ticket = await asyncio.to_thread(runtime.auth.forgot_password, body.username)
    return Envelope(
        status="ok",
        data=ForgotPasswordResponse(
            user_id=ticket.principal_id,
            reset_token=ticket.token,
            expires_at=ticket.expires_at,
            mfa_required=ticket.mfa_enabled,
        ),
    )


@router.post(
    "/auth/forgot-password/mfa/verify", response_model=Envelope, tags=["password-reset"]
)
async def forgot_password_mfa(
    body: MFACodeRequest, authorization: Optional[str] = Header(None)
):
    runtime = get_runtime()
    token = _reset_token(authorization)
    await asyncio.to_thread(runtime.auth.verify_reset_mfa, token, body.code)
    return Envelope(status="ok", data={"message": "MFA verified"})


@router.post("/auth/forgot-password/reset", response_model=Envelope, tags=["password-reset"])
async def reset_password(
    body: PasswordResetConfirm, authorization: Optional[str] = Header(None)
):
    runtime = get_runtime()
    token = _reset_token(authorization)
    await asyncio.to_thread(
        runtime.auth.reset_password, token, body.user_id, body.new_password
    )
    return Envelope(status="ok", data={"message": "Password has been reset"})


# admin


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(
    limit: int = Query(100, ge=1, le=1000),
    principal: AuthContext = Depends(get_admin_principal),
):
    runtime = get_runtime()
    principals = runtime.auth.list_principals(limit=limit)
    return Envelope(
        status="ok",
        data=PrincipalListResponse(
            items=[PrincipalResponse.from_principal(p) for p in principals]
        ),
    )


@router.put("/admin/users/{user_id}/status", response_model=Envelope, tags=["admin"])
async def admin_set_status(
    body: StatusUpdateRequest,
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_principal),
):
    runtime = get_runtime()
    updated = await asyncio.to_thread(
        runtime.auth.admin_set_status, principal.roles, user_id, body.status, body.reason
    )
    logger.info(
        "admin_status_update",
        actor_id=principal.principal_id,
        target_id=user_id,
        status=body.status.value,
    )
    return Envelope(status="ok", data=PrincipalResponse.from_principal(updated))


@router.post("/admin/users/{user_id}/unlock", response_model=Envelope, tags=["admin"])
async def admin_unlock(
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_principal),
):
    runtime = get_runtime()
    updated = await asyncio.to_thread(runtime.auth.admin_unlock, user_id)
    logger.info("admin_unlock", actor_id=principal.principal_id, target_id=user_id)
    return Envelope(status="ok", data=PrincipalResponse.from_principal(updated))


@router.get("/admin/rate-limits", response_model=Envelope, tags=["admin"])
async def admin_get_rate_limits(principal: AuthContext = Depends(get_admin_principal)):
    runtime = get_runtime()
    return Envelope(
        status="ok", data=RateLimitConfigResponse(**runtime.auth.rate_limit_config())
    )


@router.put("/admin/rate-limits", response_model=Envelope, tags=["admin"])
async def admin_update_rate_limits(
    body: RateLimitUpdateRequest,
    principal: AuthContext = Depends(get_admin_principal),
):
    runtime = get_runtime()
    config = runtime.auth.update_rate_limits(
        max_requests=body.max_requests,
        window_seconds=body.window_seconds,
        public_max_requests=body.public_max_requests,
    )
    return Envelope(status="ok", data=RateLimitConfigResponse(**config))


@router.post(
    "/admin/rate-limits/whitelist/{client_key}", response_model=Envelope, tags=["admin"]
)
async def admin_whitelist_add(
    client_key: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_admin_principal),
):
    runtime = get_runtime()
    config = runtime.auth.whitelist_client(client_key)
    return Envelope(status="ok", data=RateLimitConfigResponse(**config))


@router.delete(
    "/admin/rate-limits/whitelist/{client_key}", response_model=Envelope, tags=["admin"]
)
async def admin_whitelist_remove(
    client_key: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_admin_principal),
):
    runtime = get_runtime()
    if not runtime.auth.unwhitelist_client(client_key):
        raise NotFoundError("client key is not whitelisted")
    return Envelope(
        status="ok", data=RateLimitConfigResponse(**runtime.auth.rate_limit_config())
    )

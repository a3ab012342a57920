from __future__ import annotations

from fastapi import APIRouter, Depends

from tessera.api.pipeline import (
    RequestContext,
    authenticate,
    authorize,
    pipeline,
    rate_limit,
    resolve_tenant,
)
from tessera.api.schemas import (
    BackupCodesResponse,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    LogoutResponse,
    MessageResponse,
    MfaChallengeRequest,
    MfaEnableRequest,
    MfaSetupRequest,
    MfaSetupResponse,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    RolesResponse,
    SendCodeResponse,
    SendMfaCodeRequest,
    TokenResponse,
    UserResponse,
)
from tessera.service.errors import NotFoundError
from tessera.service.runtime import get_runtime

router = APIRouter(prefix="/v1")

# Login, register and MFA challenge endpoints are throttled inside AuthService
_public = pipeline(resolve_tenant())
_throttled = pipeline(resolve_tenant(), rate_limit("default"))
_authenticated = pipeline(resolve_tenant(), rate_limit("domains"), authenticate())


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, ctx: RequestContext = Depends(_public)):
    runtime = get_runtime()
    user = await runtime.auth.register(
        ctx.domain_id,
        body.email,
        body.password,
        full_name=body.full_name,
        phone=body.phone,
        client_ip=ctx.client_ip,
    )
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, ctx: RequestContext = Depends(_public)):
    """Password login; returns tokens or, when a second factor is configured, an MFA challenge."""
    runtime = get_runtime()
    result = await runtime.auth.login(
        ctx.domain_id,
        body.email,
        body.password,
        client_ip=ctx.client_ip,
        user_agent=ctx.user_agent,
    )
    return Envelope(status="ok", data=LoginResponse(**result.as_dict()))


@router.post("/auth/mfa/challenge", response_model=Envelope, tags=["mfa"])
async def verify_mfa_challenge(body: MfaChallengeRequest, ctx: RequestContext = Depends(_public)):
    runtime = get_runtime()
    result = await runtime.auth.verify_mfa_challenge(
        ctx.domain_id,
        body.mfa_token,
        body.code,
        body.method,
        client_ip=ctx.client_ip,
        user_agent=ctx.user_agent,
    )
    return Envelope(status="ok", data=LoginResponse(**result.as_dict()))


@router.post("/auth/mfa/send-code", response_model=Envelope, tags=["mfa"])
async def send_mfa_code(body: SendMfaCodeRequest, ctx: RequestContext = Depends(_public)):
    runtime = get_runtime()
    destination = await runtime.auth.send_mfa_code(
        ctx.domain_id, body.mfa_token, body.method, client_ip=ctx.client_ip
    )
    return Envelope(status="ok", data=SendCodeResponse(destination=destination))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: RefreshRequest, ctx: RequestContext = Depends(_throttled)):
    runtime = get_runtime()
    tokens = await runtime.auth.refresh_token(
        ctx.domain_id,
        body.refresh_token,
        client_ip=ctx.client_ip,
        user_agent=ctx.user_agent,
    )
    return Envelope(status="ok", data=TokenResponse(**tokens.as_dict()))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: LogoutRequest, ctx: RequestContext = Depends(_authenticated)):
    """Revoke the given refresh token, or every session of the caller when none is given."""
    runtime = get_runtime()
    revoked = await runtime.auth.logout(ctx.domain_id, ctx.user_id, body.refresh_token)
    return Envelope(status="ok", data=LogoutResponse(revoked=revoked))


@router.post("/auth/mfa/setup", response_model=Envelope, tags=["mfa"])
async def setup_mfa(body: MfaSetupRequest, ctx: RequestContext = Depends(_authenticated)):
    runtime = get_runtime()
    setup = await runtime.auth.setup_mfa(ctx.domain_id, ctx.user_id, body.type)
    return Envelope(
        status="ok",
        data=MfaSetupResponse(
            type=setup.mfa_type,
            secret=setup.secret,
            provisioning_uri=setup.provisioning_uri,
            qr_code=setup.qr_code,
            backup_codes=setup.backup_codes,
            delivered_to=setup.delivered_to,
        ),
    )


@router.post("/auth/mfa/enable", response_model=Envelope, tags=["mfa"])
async def enable_mfa(body: MfaEnableRequest, ctx: RequestContext = Depends(_authenticated)):
    runtime = get_runtime()
    user = await runtime.auth.enable_mfa(ctx.domain_id, ctx.user_id, body.code, body.type)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.post("/auth/mfa/disable", response_model=Envelope, tags=["mfa"])
async def disable_mfa(ctx: RequestContext = Depends(_authenticated)):
    runtime = get_runtime()
    user = await runtime.auth.disable_mfa(ctx.domain_id, ctx.user_id)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.post("/auth/mfa/backup-codes", response_model=Envelope, tags=["mfa"])
async def generate_backup_codes(ctx: RequestContext = Depends(_authenticated)):
    runtime = get_runtime()
    codes = await runtime.auth.generate_backup_codes(ctx.domain_id, ctx.user_id)
    return Envelope(status="ok", data=BackupCodesResponse(backup_codes=codes))


@router.post("/auth/password/forgot", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest, ctx: RequestContext = Depends(_throttled)):
    runtime = get_runtime()
    message = await runtime.password_recovery.request_reset(ctx.domain_id, body.email)
    return Envelope(status="ok", data=MessageResponse(message=message))


@router.post("/auth/password/reset", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest, ctx: RequestContext = Depends(_throttled)):
    runtime = get_runtime()
    await runtime.password_recovery.reset_password(ctx.domain_id, body.token, body.new_password)
    return Envelope(status="ok", data=MessageResponse(message="Password has been reset"))


@router.get("/me", response_model=Envelope, tags=["users"])
async def me(ctx: RequestContext = Depends(_authenticated)):
    runtime = get_runtime()
    user = runtime.store.find_user_by_id(ctx.domain_id, ctx.user_id)
    if not user:
        raise NotFoundError("User not found")
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.get("/users/{user_id}/roles", response_model=Envelope, tags=["users"])
async def user_roles(
    user_id: str,
    ctx: RequestContext = Depends(
        pipeline(
            resolve_tenant(),
            rate_limit("domains"),
            authenticate(),
            authorize(permissions=["users:read"], allow_self=True),
        )
    ),
):
    runtime = get_runtime()
    granted = runtime.rbac.get_user_roles_and_permissions(ctx.domain_id, user_id)
    return Envelope(
        status="ok",
        data=RolesResponse(user_id=user_id, roles=granted.roles, permissions=granted.permissions),
    )

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Request

from authcore.api.schemas import (
    BackupCodesResponse,
    EmailVerificationRequest,
    EmailVerificationResend,
    Envelope,
    LockStatusResponse,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    MfaChallengeRequest,
    MfaCodeRequest,
    MfaDisableRequest,
    MfaResendRequest,
    MfaResendResponse,
    MfaSetupResponse,
    MfaStatusResponse,
    PasswordResetConfirm,
    PasswordResetRequest,
    SessionResponse,
    TokenPairResponse,
    TokenRefreshRequest,
    TrustedDeviceResponse,
)
from authcore.logging import get_logger
from authcore.service.errors import AccountLockedError, MfaError, MfaErrorCode, SessionError
from authcore.service.runtime import get_runtime
from authcore.service.tokens import TokenService
from authcore.storage.models import Session, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

_LOGIN_FAILURE_STATUS = {
    "invalid_credentials": 401,
    "email_not_verified": 403,
    "server_error": 500,
}


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


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _user_agent(request: Request) -> Optional[str]:
    return request.headers.get("user-agent")


@dataclass(frozen=True)
class AuthContext:
    user: User
    session: Session
    access_token: str

    @property
    def user_id(self) -> str:
        return self.user.id


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    token = TokenService.extract_from_header(authorization)
    if not token:
        raise _http_error("unauthorized", "authentication required", status_code=401)
    runtime = get_runtime()
    validation = await runtime.sessions.validate(token)
    if not validation.valid or validation.session is None:
        if validation.reason == runtime.sessions.EXPIRED:
            raise _http_error("token_expired", "session expired", status_code=401)
        raise _http_error("unauthorized", "invalid session", status_code=401)
    user = runtime.store.get_user(validation.session.user_id)
    if user is None:
        raise _http_error("unauthorized", "invalid session", status_code=401)
    return AuthContext(user=user, session=validation.session, access_token=token)


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with email and password.

    Returns tokens, or ``requires_mfa`` with a short-lived ``mfa_token`` when a
    second factor is needed.

    Raises:
        401: invalid credentials
        403: email address not verified
        423: account locked
    """
    runtime = get_runtime()
    settings = runtime.settings
    if settings.progressive_delay_enabled and not settings.test_mode:
        delay_ms = await runtime.guard.should_delay_login(body.email)
        if delay_ms:
            logger.info("login_progressive_delay", delay_ms=delay_ms)
            await asyncio.sleep(delay_ms / 1000)

    result = await runtime.login.login(
        body.email,
        body.password,
        remember_me=body.remember_me,
        device_info=body.device_info,
        ip_address=_client_ip(request),
        user_agent=_user_agent(request),
    )
    if result.requires_mfa:
        return Envelope(
            status="ok",
            data=LoginResponse(requires_mfa=True, mfa_token=result.mfa_token),
        )
    if not result.success:
        code = result.error_code or "invalid_credentials"
        if code == AccountLockedError.error_code:
            raise AccountLockedError(result.error, locked_until=result.locked_until)
        raise _http_error(
            code,
            result.error or "Invalid email or password",
            status_code=_LOGIN_FAILURE_STATUS.get(code, 401),
        )
    return Envelope(
        status="ok",
        data=LoginResponse(
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            token_type="bearer",
            user=result.user,
        ),
    )


@router.post("/auth/mfa/challenge", response_model=Envelope, tags=["auth"])
async def mfa_challenge(body: MfaChallengeRequest, request: Request):
    runtime = get_runtime()
    result = await runtime.challenges.verify_challenge(
        body.temp_token,
        body.code,
        is_backup_code=body.is_backup_code,
        trust_device=body.trust_device,
        device_info=body.device_info,
        ip_address=_client_ip(request),
        user_agent=_user_agent(request),
    )
    if result.error is MfaErrorCode.ACCOUNT_LOCKED:
        raise AccountLockedError(result.message, locked_until=result.locked_until)
    if not result.success or result.issued is None:
        raise _http_error(
            result.error.value if result.error else "unauthorized",
            result.message or "verification failed",
            status_code=401,
        )
    return Envelope(
        status="ok",
        data=TokenPairResponse(
            access_token=result.issued.access_token,
            refresh_token=result.issued.refresh_token,
            session_expires_at=result.issued.session.expires_at,
        ),
    )


@router.post("/auth/mfa/resend", response_model=Envelope, tags=["auth"])
async def mfa_resend(body: MfaResendRequest, request: Request):
    runtime = get_runtime()
    result = await runtime.challenges.resend_challenge(
        body.temp_token,
        ip_address=_client_ip(request),
        user_agent=_user_agent(request),
    )
    if not result.success or not result.temp_token or not result.expires_at:
        raise _http_error(
            result.error.value if result.error else "unauthorized",
            result.message or "verification session unavailable",
            status_code=401,
        )
    return Envelope(
        status="ok",
        data=MfaResendResponse(temp_token=result.temp_token, expires_at=result.expires_at),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest):
    runtime = get_runtime()
    issued = await runtime.sessions.refresh(body.refresh_token)
    return Envelope(
        status="ok",
        data=TokenPairResponse(
            access_token=issued.access_token,
            refresh_token=issued.refresh_token,
            session_expires_at=issued.session.expires_at,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(authorization: Optional[str] = Header(None)):
    token = TokenService.extract_from_header(authorization)
    if not token:
        raise _http_error("unauthorized", "authentication required", status_code=401)
    await get_runtime().sessions.delete(token)
    return Envelope(status="ok", data=MessageResponse(message="session revoked"))


@router.post("/auth/mfa/setup", response_model=Envelope, tags=["mfa"])
async def mfa_setup(principal: AuthContext = Depends(get_user)):
    setup = await get_runtime().mfa.setup(principal.user_id, principal.user.email)
    return Envelope(
        status="ok",
        data=MfaSetupResponse(
            secret=setup.secret,
            otpauth_uri=setup.otpauth_uri,
            qr_code=setup.qr_code,
            backup_codes=setup.backup_codes,
        ),
    )


@router.post("/auth/mfa/verify-setup", response_model=Envelope, tags=["mfa"])
async def mfa_verify_setup(body: MfaCodeRequest, principal: AuthContext = Depends(get_user)):
    result = await get_runtime().mfa.verify_setup(principal.user_id, body.code)
    if not result.success:
        raise MfaError(result.error or MfaErrorCode.INVALID_TOKEN)
    return Envelope(
        status="ok", data=MessageResponse(message="Two-factor authentication enabled")
    )


@router.get("/auth/mfa/status", response_model=Envelope, tags=["mfa"])
async def mfa_status(principal: AuthContext = Depends(get_user)):
    status = await get_runtime().mfa.get_status(principal.user_id)
    return Envelope(
        status="ok",
        data=MfaStatusResponse(
            mfa_enabled=status.mfa_enabled,
            has_backup_codes=status.has_backup_codes,
            backup_codes_count=status.backup_codes_count,
        ),
    )


@router.post("/auth/mfa/backup-codes", response_model=Envelope, tags=["mfa"])
async def mfa_regenerate_backup_codes(principal: AuthContext = Depends(get_user)):
    codes = await get_runtime().mfa.regenerate_backup_codes(principal.user_id)
    return Envelope(status="ok", data=BackupCodesResponse(backup_codes=codes))


@router.post("/auth/mfa/disable", response_model=Envelope, tags=["mfa"])
async def mfa_disable(
    body: MfaDisableRequest,
    request: Request,
    principal: AuthContext = Depends(get_user),
):
    await get_runtime().mfa.disable(
        principal.user_id,
        body.password,
        ip_address=_client_ip(request),
        user_agent=_user_agent(request),
    )
    return Envelope(
        status="ok", data=MessageResponse(message="Two-factor authentication disabled")
    )


@router.post("/auth/password-reset/request", response_model=Envelope, tags=["auth"])
async def password_reset_request(body: PasswordResetRequest, request: Request):
    message = await get_runtime().password_reset.request_reset(
        body.email,
        ip_address=_client_ip(request),
        user_agent=_user_agent(request),
    )
    return Envelope(status="ok", data=MessageResponse(message=message))


@router.post("/auth/password-reset/complete", response_model=Envelope, tags=["auth"])
async def password_reset_complete(body: PasswordResetConfirm, request: Request):
    await get_runtime().password_reset.complete_reset(
        body.token,
        body.new_password,
        ip_address=_client_ip(request),
        user_agent=_user_agent(request),
    )
    return Envelope(
        status="ok",
        data=MessageResponse(
            message="Password has been reset. Please sign in with your new password."
        ),
    )


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: EmailVerificationRequest):
    await get_runtime().email_verification.verify(body.token)
    return Envelope(status="ok", data=MessageResponse(message="Email verified"))


@router.post("/auth/verify-email/resend", response_model=Envelope, tags=["auth"])
async def resend_verification(body: EmailVerificationResend):
    message = await get_runtime().email_verification.resend(body.email)
    return Envelope(status="ok", data=MessageResponse(message=message))


@router.get("/account/sessions", response_model=Envelope, tags=["account"])
async def list_sessions(principal: AuthContext = Depends(get_user)):
    views = await get_runtime().sessions.list_for_user(
        principal.user_id, principal.access_token
    )
    return Envelope(
        status="ok",
        data={
            "sessions": [
                SessionResponse(
                    id=view.id,
                    device=view.device,
                    ip_address=view.ip_address,
                    last_activity_at=view.last_activity_at,
                    created_at=view.created_at,
                    expires_at=view.expires_at,
                    is_current=view.is_current,
                )
                for view in views
            ]
        },
    )


@router.delete("/account/sessions/{session_id}", response_model=Envelope, tags=["account"])
async def revoke_session(
    session_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_user),
):
    try:
        await get_runtime().sessions.delete_by_id(session_id, principal.user_id)
    except SessionError as exc:
        raise _http_error("not_found", "session not found", status_code=404) from exc
    return Envelope(status="ok", data=MessageResponse(message="session revoked"))


@router.post("/account/sessions/terminate-all", response_model=Envelope, tags=["account"])
async def revoke_all_sessions(principal: AuthContext = Depends(get_user)):
    count = await get_runtime().sessions.delete_all_for_user(principal.user_id)
    return Envelope(status="ok", data={"revoked": count})


@router.get("/account/trusted-devices", response_model=Envelope, tags=["account"])
async def list_trusted_devices(principal: AuthContext = Depends(get_user)):
    devices = await get_runtime().challenges.list_trusted_devices(principal.user_id)
    return Envelope(
        status="ok",
        data={
            "devices": [
                TrustedDeviceResponse(
                    id=device.id,
                    name=device.name,
                    ip_address=device.ip_address,
                    last_seen_at=device.last_seen_at,
                    expires_at=device.expires_at,
                    created_at=device.created_at,
                )
                for device in devices
            ]
        },
    )


@router.delete(
    "/account/trusted-devices/{device_id}", response_model=Envelope, tags=["account"]
)
async def revoke_trusted_device(
    device_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_user),
):
    removed = await get_runtime().challenges.revoke_trusted_device(
        device_id, principal.user_id
    )
    if not removed:
        raise _http_error("not_found", "trusted device not found", status_code=404)
    return Envelope(status="ok", data=MessageResponse(message="trusted device removed"))


@router.get("/account/lock-status", response_model=Envelope, tags=["account"])
async def lock_status(principal: AuthContext = Depends(get_user)):
    status = await get_runtime().guard.get_account_lock_status(principal.user.email)
    return Envelope(
        status="ok",
        data=LockStatusResponse(
            is_locked=status.is_locked,
            locked_until=status.locked_until,
            failed_attempts=status.failed_attempts,
            remaining_attempts=status.remaining_attempts,
        ),
    )

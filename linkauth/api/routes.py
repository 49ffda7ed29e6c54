from __future__ import annotations

import hmac
from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request

from linkauth.api.error_handling import envelope
from linkauth.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    LogoutRequest,
    QRConfirmRequest,
    QRCreateRequest,
    QRSessionResponse,
    RefreshRequest,
    RegisterRequest,
    SecurityConfigPatch,
    SendOTPRequest,
    VerifyOTPRequest,
)
from linkauth.logging import get_logger
from linkauth.service.auth import public_user
from linkauth.service.errors import AuthenticationError, ForbiddenError
from linkauth.service.runtime import get_runtime
from linkauth.service.session import SessionContext

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


async def get_session(authorization: Optional[str] = Header(None)) -> SessionContext:
    """Resolve the bearer token into a live session or fail the request."""
    return get_runtime().sessions.authenticate(authorization)


async def get_verified_session(
    authorization: Optional[str] = Header(None),
) -> SessionContext:
    return get_runtime().sessions.authenticate(authorization, require_verified=True)


async def require_admin_key(x_admin_key: Optional[str] = Header(None)) -> None:
    expected = get_runtime().settings.admin_api_key
    if not expected:
        raise ForbiddenError("administration is disabled")
    if not x_admin_key:
        raise AuthenticationError("missing admin key")
    if not hmac.compare_digest(x_admin_key.encode(), expected.encode()):
        logger.warning("admin_key_rejected")
        raise ForbiddenError("invalid admin key")


# ----------------------------------------------------------------------
# OTP
# ----------------------------------------------------------------------


@router.post("/auth/otp/send", response_model=Envelope, tags=["auth"])
async def send_otp(body: SendOTPRequest):
    """Issue a one-time code for a phone number.

    Replaces any outstanding challenge for the number. Throttled per phone.

    Raises:
        400: If the phone number is invalid
        429: If the resend cooldown or request limit is in effect
    """
    runtime = get_runtime()
    data = await runtime.auth.send_otp(body.phone_number, body.country_code)
    return envelope("ok", data=data)


@router.post("/auth/otp/resend", response_model=Envelope, tags=["auth"])
async def resend_otp(body: SendOTPRequest):
    runtime = get_runtime()
    data = await runtime.auth.resend_otp(body.phone_number, body.country_code)
    return envelope("ok", data=data)


@router.post("/auth/otp/verify", response_model=Envelope, tags=["auth"])
async def verify_otp(body: VerifyOTPRequest):
    """Check a code without consuming the challenge.

    The challenge stays valid so the follow-up login or register call can
    present the same code. ``is_new_user`` tells the client which one to call.
    """
    runtime = get_runtime()
    data = await runtime.auth.verify_otp(body.phone_number, body.code, body.country_code)
    return envelope("ok", data=data)


@router.get("/auth/otp/status", response_model=Envelope, tags=["auth"])
async def otp_status(
    phone_number: str = Query(..., min_length=7, max_length=32),
    country_code: Optional[str] = Query(None, max_length=5),
):
    runtime = get_runtime()
    data = await runtime.auth.otp_status(phone_number, country_code)
    return envelope("ok", data=data)


@router.delete("/auth/otp", response_model=Envelope, tags=["auth"])
async def cancel_otp(
    phone_number: str = Query(..., min_length=7, max_length=32),
    country_code: Optional[str] = Query(None, max_length=5),
):
    runtime = get_runtime()
    cancelled = await runtime.auth.cancel_otp(phone_number, country_code)
    return envelope("ok", data={"cancelled": cancelled})


# ----------------------------------------------------------------------
# Sign in / registration
# ----------------------------------------------------------------------


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Sign an existing user in with a phone number and one-time code.

    Raises:
        400: If the code is wrong (``attempts_remaining`` in details)
        403: If the account is blocked or suspended
        404: If no account exists for the number
        423: If the account is locked after repeated failures
        429: If the request limit is exceeded
    """
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.phone_number,
        body.code,
        body.device.to_info(request.headers.get("user-agent")),
        country_code=body.country_code,
    )
    return envelope("ok", data=AuthResponse(**result))


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    runtime = get_runtime()
    result = await runtime.auth.register(
        body.phone_number,
        body.code,
        body.device.to_info(request.headers.get("user-agent")),
        display_name=body.display_name,
        country_code=body.country_code,
    )
    return envelope("ok", data=AuthResponse(**result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: RefreshRequest):
    """Exchange a refresh token for a new access token.

    The refresh token itself is not rotated.
    """
    runtime = get_runtime()
    data = await runtime.auth.refresh(body.refresh_token)
    return envelope("ok", data=data)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: LogoutRequest, session: SessionContext = Depends(get_session)):
    runtime = get_runtime()
    data = await runtime.auth.logout(
        session, device_id=body.device_id, all_devices=body.all_devices
    )
    return envelope("ok", data=data)


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(session: SessionContext = Depends(get_session)):
    return envelope(
        "ok", data={"user": public_user(session.user), "device_id": session.device_id}
    )


# ----------------------------------------------------------------------
# QR sign in
# ----------------------------------------------------------------------


@router.post("/auth/qr", response_model=Envelope, status_code=201, tags=["qr"])
async def create_qr_session(request: Request, body: Optional[QRCreateRequest] = None):
    """Start a QR sign-in session for a device that is not signed in.

    The response carries the QR image, the signed token it encodes and a
    ``poll_token``; only polls presenting the poll token receive the new
    device's tokens once another device confirms.
    """
    runtime = get_runtime()
    user_agent = request.headers.get("user-agent")
    device = body.device.to_info(user_agent) if body and body.device else None
    data = await runtime.auth.create_qr_session(
        device, user_agent=user_agent, ip_address=_client_ip(request)
    )
    return envelope("ok", data=QRSessionResponse(**data))


@router.get("/auth/qr/{session_id}", response_model=Envelope, tags=["qr"])
async def poll_qr_session(
    session_id: str = Path(..., max_length=64),
    x_poll_token: Optional[str] = Header(None),
):
    runtime = get_runtime()
    data = await runtime.auth.poll_qr_session(session_id, x_poll_token)
    return envelope("ok", data=data)


@router.post("/auth/qr/confirm", response_model=Envelope, tags=["qr"])
async def confirm_qr_session(
    body: QRConfirmRequest,
    request: Request,
    session: SessionContext = Depends(get_verified_session),
):
    """Admit the waiting device from an already signed-in one.

    Raises:
        401: If the QR token is invalid or expired
        404: If the session does not exist
        409: If the session was already confirmed
        410: If the session expired
    """
    runtime = get_runtime()
    device = body.device.to_info(request.headers.get("user-agent")) if body.device else None
    data = await runtime.auth.confirm_qr_session(
        session, qr_token=body.qr_token, session_id=body.session_id, device=device
    )
    return envelope("ok", data=data)


# ----------------------------------------------------------------------
# Security configuration
# ----------------------------------------------------------------------


@router.get("/auth/config", response_model=Envelope, tags=["config"])
async def public_config():
    runtime = get_runtime()
    return envelope("ok", data=runtime.security_config.public_view())


@router.get(
    "/admin/security-config",
    response_model=Envelope,
    tags=["admin"],
    dependencies=[Depends(require_admin_key)],
)
async def get_security_config():
    runtime = get_runtime()
    return envelope("ok", data=runtime.security_config.get().model_dump())


@router.patch(
    "/admin/security-config",
    response_model=Envelope,
    tags=["admin"],
    dependencies=[Depends(require_admin_key)],
)
async def update_security_config(body: SecurityConfigPatch):
    """Deep-merge a partial configuration, bump its version and apply it."""
    runtime = get_runtime()
    updated = runtime.security_config.update(body.to_patch())
    logger.info("security_config_updated_via_api", version=updated.version)
    return envelope("ok", data=updated.model_dump())


@router.post(
    "/admin/security-config/reload",
    response_model=Envelope,
    tags=["admin"],
    dependencies=[Depends(require_admin_key)],
)
async def reload_security_config():
    runtime = get_runtime()
    reloaded = runtime.security_config.reload()
    return envelope("ok", data={"version": reloaded.version})

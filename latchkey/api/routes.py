from __future__ import annotations

from datetime import timezone
from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Path, Request, Response

from latchkey.api.schemas import (
    DataEnvelope,
    LoginRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    RegisterRequest,
    UserResponse,
)
from latchkey.service.auth import AuthContext
from latchkey.service.runtime import get_runtime
from latchkey.storage.models import Session

SESSION_COOKIE = "session_id"

router = APIRouter(prefix="/api/auth", tags=["auth"])
protected_router = APIRouter(tags=["protected"])


async def require_session(
    request: Request,
    session_id: Optional[str] = Cookie(None, alias=SESSION_COOKIE),
) -> AuthContext:
    """Resolve the session cookie; the context is also left on ``request.state.auth``."""
    ctx = await get_runtime().gate.resolve(session_id)
    request.state.auth = ctx
    return ctx


def _apply_session_cookie(response: Response, session: Session, *, secure: bool) -> None:
    expires_at = session.expiry_date
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    response.set_cookie(
        SESSION_COOKIE,
        session.id,
        httponly=True,
        secure=secure,
        samesite="lax",
        expires=expires_at,
        path="/",
    )


@router.post("/register", status_code=201)
async def register(body: RegisterRequest):
    """Create an unverified account and email a verification link.

    Raises:
        422: If the username or email is taken, or a field is invalid
    """
    await get_runtime().auth.register(body.username, body.email, body.password)
    return Response(status_code=201)


@router.post("/login")
async def login(body: LoginRequest, response: Response):
    """Authenticate with email and password and set the session cookie.

    Raises:
        401: If the password is wrong or the email is not verified
        422: If no account uses the email
    """
    runtime = get_runtime()
    user, session = await runtime.auth.login(body.email, body.password, body.remember)
    _apply_session_cookie(response, session, secure=runtime.settings.cookie_secure)
    user_view = UserResponse.from_user(user).model_dump(mode="json", by_alias=True)
    return DataEnvelope(data=user_view).dump()


@router.get("/verify-email/{token}", status_code=204)
async def verify_email(token: str = Path(..., min_length=1, max_length=128)):
    await get_runtime().auth.verify_email(token)
    return Response(status_code=204)


@router.post("/reset-password", status_code=204)
async def request_password_reset(body: PasswordResetRequest):
    """Email a single-use password reset link to a verified account."""
    await get_runtime().auth.request_password_reset(body.email)
    return Response(status_code=204)


@router.post("/reset-password/{token}", status_code=204)
async def confirm_password_reset(
    body: PasswordResetConfirm,
    token: str = Path(..., min_length=1, max_length=128),
):
    await get_runtime().auth.confirm_password_reset(token, body.password)
    return Response(status_code=204)


@protected_router.get("/protected")
async def protected(ctx: AuthContext = Depends(require_session)):
    return DataEnvelope(data={"authenticated": True, "user_id": ctx.user_id}).dump()

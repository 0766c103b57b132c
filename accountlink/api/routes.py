from __future__ import annotations

from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Header, Query
from fastapi.responses import RedirectResponse

from accountlink.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    OAuthCodeRequest,
    OAuthStartResponse,
    RefreshRequest,
    RegisterRequest,
    SetPasswordRequest,
)
from accountlink.logging import get_logger
from accountlink.service.auth import AuthContext
from accountlink.service.results import AuthResult
from accountlink.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    return get_runtime().auth.authenticate(authorization)


def _auth_envelope(result: AuthResult) -> Envelope:
    return Envelope(status="ok", data=AuthResponse.from_result(result))


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
def register(body: RegisterRequest):
    """Create a local account and sign it in."""
    runtime = get_runtime()
    result = runtime.auth.register(
        email=body.email,
        password=body.password,
        name=body.name,
        profile=body.profile(),
    )
    return _auth_envelope(result)


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
def login(body: LoginRequest):
    """Authenticate with email and password.

    OAuth-only accounts get ``must_link`` and no tokens; the client should send
    the user through Google and then ``/auth/set-password``.
    """
    result = get_runtime().auth.login(body.email, body.password)
    return _auth_envelope(result)


@router.post("/auth/set-password", response_model=Envelope, tags=["auth"])
def set_password(body: SetPasswordRequest, ctx: AuthContext = Depends(get_user)):
    result = get_runtime().auth.set_password(
        ctx.user_id, body.password, body.confirm_password
    )
    return _auth_envelope(result)


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
def refresh(body: RefreshRequest):
    result = get_runtime().auth.refresh(body.refresh_token)
    return _auth_envelope(result)


@router.post("/auth/oauth2/token", response_model=Envelope, tags=["auth"])
async def exchange_oauth_code(body: OAuthCodeRequest):
    """Redeem the one-time code handed to the frontend after the OAuth redirect."""
    result = await get_runtime().auth.exchange_oauth_code(body.code)
    return _auth_envelope(result)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
def logout(ctx: AuthContext = Depends(get_user)):
    get_runtime().auth.logout(ctx.user_id)
    return Envelope(status="ok", data={"message": "logged out"})


@router.get("/auth/oauth/google/start", response_model=Envelope, tags=["auth"])
async def oauth_google_start():
    authorization_url, state = await get_runtime().oauth.start()
    return Envelope(
        status="ok",
        data=OAuthStartResponse(authorization_url=authorization_url, state=state),
    )


@router.get("/auth/oauth/google/callback", tags=["auth"])
async def oauth_google_callback(
    code: str = Query(..., max_length=512, description="Authorization code from Google"),
    state: str = Query(..., max_length=128, description="State issued by the start endpoint"),
):
    """Finish the Google flow and bounce the browser to the frontend.

    Tokens never appear in the redirect URL; the frontend trades the
    one-time code at ``/auth/oauth2/token``.
    """
    runtime = get_runtime()
    identity = await runtime.oauth.exchange(code, state)
    exchange_code = await runtime.auth.complete_oauth_redirect(identity)
    target = (
        f"{runtime.settings.frontend_url.rstrip('/')}/oauth/callback?"
        f"{urlencode({'code': exchange_code})}"
    )
    return RedirectResponse(target, status_code=302)

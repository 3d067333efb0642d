"""
api/routes/v1/auth.py -- Authentication REST endpoints.

Routes:
  POST /api/v1/auth/register                -- email + password signup; sets cookies
  POST /api/v1/auth/login                   -- email + password login; sets cookies
  POST /api/v1/auth/passwordless/request    -- mail a magic link
  POST /api/v1/auth/passwordless/verify     -- redeem a magic link; sets cookies
  POST /api/v1/auth/passwordless/otp/request -- mail a one-time code
  POST /api/v1/auth/passwordless/otp/verify -- redeem a one-time code; sets cookies
  POST /api/v1/auth/token/refresh           -- rotate the refresh token; sets cookies
  POST /api/v1/auth/logout                  -- revoke this session; clears cookies
  POST /api/v1/auth/logout-all              -- revoke every session (requires auth)
  GET  /api/v1/auth/me                      -- current user (requires auth)
  GET  /api/v1/auth/sessions                -- active sessions (requires auth)

Security:
  [H2] Login and credential-request routes are rate-limited per IP (slowapi);
       the passwordless service also limits per email address.
  [C1] PasswordAuthenticator.authenticate() equalizes timing -- use it, never inline.
  [M5] Cache-Control: no-store on every response that carries tokens.
  Invalid, expired, and unknown credentials all get the same 401 per flow.
  Reuse of a rotated refresh token returns 401 with security_alert=true and
  clears the cookies; every session of the user is already revoked.

Route handlers are plain `def`: the stores are synchronous, so FastAPI runs
them in its threadpool.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    AuthResponse,
    EmailRequest,
    ErrorDetail,
    ErrorResponse,
    LoginRequest,
    MagicLinkVerifyRequest,
    MessageResponse,
    OtpVerifyRequest,
    RefreshRequest,
    RegisterRequest,
    SessionResponse,
    TokenResponse,
    UserResponse,
)
from auth.dependencies import device_info, get_current_user, get_services, refresh_token_from
from auth.models import PasswordlessLogin, TokenPair, User, UserProfile

# Auth policy:
# - register, login, passwordless/*, token/refresh, logout: public
# - logout-all, me, sessions: requires auth (get_current_user)
router = APIRouter()


def _no_store(resp: JSONResponse) -> JSONResponse:
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _unauthorized(code: str, message: str) -> JSONResponse:
    return _no_store(
        JSONResponse(
            status_code=401,
            content=ErrorResponse(error=ErrorDetail(code=code, message=message)).model_dump(exclude_none=True),
        )
    )


def _signed_in(request: Request, login: PasswordlessLogin, status_code: int = 200) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=AuthResponse.from_login(login).model_dump())
    get_services(request).issuer.set_auth_cookies(resp, login.tokens)
    return _no_store(resp)


# ---------------------------------------------------------------------------
# Password signup / login
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=AuthResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create a password account and sign it in.

    ValidationError (400) and EmailTakenError (409) propagate to the handlers
    in api/main.py.
    """
    services = get_services(request)
    device = device_info(request)
    user = services.passwords.register(body.email, body.password, body.first_name, body.last_name)
    pair = services.issuer.issue_pair(user, device)
    services.audit.user_signup(user.id, "password", device)
    login = PasswordlessLogin(user=UserProfile.from_user(user), tokens=pair, is_new_user=True)
    return _signed_in(request, login, status_code=201)


@limiter.limit("10/minute")  # [H2] must be ABOVE @router so FastAPI introspects the undecorated handler
@router.post("/auth/login", response_model=AuthResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password.

    Wrong email and wrong password return the same "bad_credentials" error.
    """
    services = get_services(request)
    device = device_info(request)
    user = services.passwords.authenticate(body.email, body.password)
    if user is None:
        services.audit.failed_login("bad_credentials", device)
        return _unauthorized("bad_credentials", "Invalid email or password.")
    pair = services.issuer.issue_pair(user, device)
    services.audit.user_login(user.id, "password", device)
    return _signed_in(request, PasswordlessLogin(user=UserProfile.from_user(user), tokens=pair, is_new_user=False))


# ---------------------------------------------------------------------------
# Passwordless
# ---------------------------------------------------------------------------


@limiter.limit("5/minute")  # [H2]
@router.post("/auth/passwordless/request", response_model=MessageResponse)
def request_magic_link(request: Request, body: EmailRequest) -> MessageResponse:
    """Mail a sign-in link. The response is identical for new and existing addresses."""
    result = get_services(request).passwordless.request_magic_link(body.email, device_info(request))
    return MessageResponse(success=result.success, message=result.message)


@router.post("/auth/passwordless/verify", response_model=AuthResponse)
def verify_magic_link(request: Request, body: MagicLinkVerifyRequest) -> JSONResponse:
    result = get_services(request).passwordless.verify_magic_link(body.token, device_info(request))
    if result is None:
        return _unauthorized("invalid_token", "Invalid or expired sign-in link.")
    return _signed_in(request, result)


@limiter.limit("5/minute")  # [H2]
@router.post("/auth/passwordless/otp/request", response_model=MessageResponse)
def request_otp(request: Request, body: EmailRequest) -> MessageResponse:
    result = get_services(request).passwordless.request_otp(body.email, device_info(request))
    return MessageResponse(success=result.success, message=result.message)


@router.post("/auth/passwordless/otp/verify", response_model=AuthResponse)
def verify_otp(request: Request, body: OtpVerifyRequest) -> JSONResponse:
    result = get_services(request).passwordless.verify_otp(body.email, body.code, device_info(request))
    if result is None:
        return _unauthorized("invalid_code", "Invalid or expired code.")
    return _signed_in(request, result)


# ---------------------------------------------------------------------------
# Session lifecycle
# ---------------------------------------------------------------------------


@router.post("/auth/token/refresh", response_model=TokenResponse)
def refresh(request: Request, body: RefreshRequest | None = None) -> JSONResponse:
    """Rotate the refresh token (cookie first, then body).

    TokenReuseDetected propagates to its handler in api/main.py, which clears
    the cookies and sets security_alert.
    """
    services = get_services(request)
    token = refresh_token_from(request, body.refresh_token if body else None)
    if not token:
        return _unauthorized("refresh_token_required", "Refresh token required.")

    pair: TokenPair | None = services.rotation.rotate(token, device_info(request))
    if pair is None:
        resp = _unauthorized("invalid_refresh_token", "Invalid refresh token.")
        services.issuer.clear_refresh_cookie(resp)
        return resp

    resp = JSONResponse(content=TokenResponse.from_pair(pair).model_dump())
    services.issuer.set_auth_cookies(resp, pair)
    return _no_store(resp)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, body: RefreshRequest | None = None) -> JSONResponse:
    """Revoke the presented refresh token (if any) and clear both cookies.

    Succeeds even without a token: clearing cookies needs no prior auth.
    """
    services = get_services(request)
    token = refresh_token_from(request, body.refresh_token if body else None)
    if token:
        services.rotation.revoke(token, device_info(request))
    resp = JSONResponse(content=MessageResponse(message="Logged out.").model_dump())
    services.issuer.clear_auth_cookies(resp)
    return resp


@router.post("/auth/logout-all", response_model=MessageResponse)
def logout_all(request: Request, current_user: User = Depends(get_current_user)) -> JSONResponse:
    """Revoke every refresh token of the current user.

    Access tokens already issued stay valid until they expire (minutes).
    """
    services = get_services(request)
    revoked = services.rotation.revoke_all(current_user.id, device_info(request))
    resp = JSONResponse(content=MessageResponse(message=f"Logged out of {revoked} session(s).").model_dump())
    services.issuer.clear_auth_cookies(resp)
    return resp


# ---------------------------------------------------------------------------
# Authenticated reads
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=UserResponse)
def me(current_user: User = Depends(get_current_user)) -> UserResponse:
    """Return the profile of the currently authenticated user."""
    return UserResponse.from_profile(UserProfile.from_user(current_user))


@router.get("/auth/sessions", response_model=list[SessionResponse])
def sessions(request: Request, current_user: User = Depends(get_current_user)) -> list[SessionResponse]:
    """Active (unrevoked, unexpired) refresh tokens of the current user, newest first."""
    records = get_services(request).tokens.list_active_for_user(current_user.id)
    return [SessionResponse.from_record(r) for r in records]

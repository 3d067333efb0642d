"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two ways to present an access token, checked in priority order:
  1. JWT cookie ("access_token") -- set by the login and refresh endpoints.
  2. Authorization: Bearer <token> header -- API clients.

Both converge on a User object after verification. Refresh tokens are never
accepted here; they only work on the refresh and logout endpoints.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises HTTP 401 if unauthenticated.

Layer rule: no imports from core/ or cache/.
  auth/dependencies.py may import from fastapi (for Depends/HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import DeviceInfo, User
from auth.services import AuthServices
from auth.tokens import ACCESS_COOKIE, REFRESH_COOKIE


def get_services(request: Request) -> AuthServices:
    return request.app.state.services


def try_get_current_user(request: Request) -> User | None:
    """Authenticate the request via cookie or Bearer header.

    Returns the authenticated User on success, None on any failure.
    Never raises -- callers that need a hard 401 should use get_current_user().
    """
    services = get_services(request)

    token: str | None = request.cookies.get(ACCESS_COOKIE)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
    if not token:
        return None

    claims = services.issuer.verify_access_token(token)
    if claims is None:
        return None
    user = services.users.get_by_id(claims.user_id)
    if user is None or not user.is_active:
        return None
    return user


def get_current_user(request: Request) -> User:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return user


def refresh_token_from(request: Request, body_token: str | None = None) -> str | None:
    """The refresh token from the cookie, falling back to the request body."""
    return request.cookies.get(REFRESH_COOKIE) or body_token or None


def device_info(request: Request) -> DeviceInfo:
    """Best-effort provenance for audit and session records.

    The client address is the socket peer. X-Forwarded-For is read, first hop
    only, when settings.trust_forwarded_for says a proxy in front sets it.
    """
    ip = None
    if get_services(request).settings.trust_forwarded_for:
        forwarded = request.headers.get("X-Forwarded-For", "")
        ip = forwarded.split(",")[0].strip() or None
    if not ip and request.client:
        ip = request.client.host
    user_agent = request.headers.get("User-Agent")
    return DeviceInfo(ip=ip, user_agent=user_agent, device_type=_device_type(user_agent))


def _device_type(user_agent: str | None) -> str | None:
    if not user_agent:
        return None
    ua = user_agent.lower()
    if "ipad" in ua or "tablet" in ua:
        return "tablet"
    if "mobile" in ua or "android" in ua or "iphone" in ua:
        return "mobile"
    return "desktop"

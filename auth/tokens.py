"""
auth/tokens.py -- Access-token (JWT) and refresh-token issuance.

Security design decisions:
  Access tokens: python-jose with HS256, signed with ACCESS_TOKEN_SECRET.
       Claims: sub, user_id, role, type="access", iat, exp, iss, aud. The
       issuer and audience are checked on every decode, so a token minted
       for another service with the same key is still rejected. Verification
       returns None on any failure -- the route layer turns that into a 401.

  Refresh tokens: 32 bytes from secrets (64 hex chars), never a JWT. The
       client receives the plaintext exactly once. The store keeps
       HMAC-SHA256(SECRET_KEY, token) as a lookup index and a bcrypt digest
       as the verification hash (see auth/crypto.py).

  Cookies: httpOnly (no JS access), samesite=strict (never sent on
       cross-site requests), secure when SECURE_COOKIES=true. The refresh
       cookie is scoped to the auth routes so it is not attached to every
       API call.

Layer rule: no imports from api/ or cache/. Import from core/ is allowed --
core/ is the kernel and has no reverse dependencies.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from auth.crypto import generate_secure_token, hash_reusable, lookup_hash
from auth.models import AccessClaims, DeviceInfo, IssuedRefreshToken, RefreshSecret, TokenPair, User
from auth.token_store import RefreshTokenStore
from core.config import Settings

logger = logging.getLogger("tokenward.tokens")

_ALGORITHM = "HS256"

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"
REFRESH_COOKIE_PATH = "/api/v1/auth"


class TokenIssuer:
    """Mints access tokens and refresh tokens for a user.

    Usage:
        issuer = TokenIssuer(settings, token_store)
        pair = issuer.issue_pair(user, device)
        claims = issuer.verify_access_token(pair.access_token)
    """

    def __init__(self, settings: Settings, token_store: RefreshTokenStore) -> None:
        self.settings = settings
        self.token_store = token_store

    # ------------------------------------------------------------------
    # Access tokens
    # ------------------------------------------------------------------

    def issue_access_token(self, user_id: int, role: str) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "sub": str(user_id),
            "user_id": user_id,
            "role": role,
            "type": "access",
            "iat": now,
            "exp": now + timedelta(seconds=self.settings.access_token_expire_seconds),
            "iss": self.settings.access_token_issuer,
            "aud": self.settings.access_token_audience,
        }
        return jwt.encode(payload, self.settings.access_token_secret, algorithm=_ALGORITHM)

    def verify_access_token(self, token: str) -> AccessClaims | None:
        """Decode and verify an access token. Returns None on any failure.

        Returning None (rather than raising) keeps the caller simple: any
        invalid token is treated as unauthenticated.
        """
        if not token:
            return None
        try:
            payload = jwt.decode(
                token,
                self.settings.access_token_secret,
                algorithms=[_ALGORITHM],
                audience=self.settings.access_token_audience,
                issuer=self.settings.access_token_issuer,
            )
        except JWTError:
            return None
        if payload.get("type") != "access" or "user_id" not in payload or "role" not in payload:
            return None
        return AccessClaims(
            user_id=int(payload["user_id"]),
            role=payload["role"],
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def new_refresh_secret(self) -> RefreshSecret:
        plaintext = generate_secure_token(32)
        return RefreshSecret(
            plaintext=plaintext,
            lookup_hash=lookup_hash(plaintext, self.settings.secret_key),
            token_hash=hash_reusable(plaintext, rounds=self.settings.refresh_token_bcrypt_rounds),
        )

    def refresh_expiry(self) -> datetime:
        return datetime.now(timezone.utc) + timedelta(days=self.settings.refresh_token_expire_days)

    def lookup_key(self, plaintext: str) -> str:
        return lookup_hash(plaintext, self.settings.secret_key)

    def issue_refresh_token(
        self, user_id: int, device: DeviceInfo | None = None, parent_token_id: str | None = None
    ) -> IssuedRefreshToken:
        secret = self.new_refresh_secret()
        record = self.token_store.create(
            user_id,
            secret.lookup_hash,
            secret.token_hash,
            self.refresh_expiry(),
            device,
            parent_token_id=parent_token_id,
        )
        return IssuedRefreshToken(plaintext=secret.plaintext, record=record)

    def issue_pair(self, user: User, device: DeviceInfo | None = None) -> TokenPair:
        """Login-time issuance: a fresh access token and the root of a new refresh chain."""
        refresh = self.issue_refresh_token(user.id, device)
        return TokenPair(
            access_token=self.issue_access_token(user.id, user.role),
            refresh_token=refresh.plaintext,
            refresh_token_id=refresh.record.id,
            expires_in=self.settings.access_token_expire_seconds,
        )

    # ------------------------------------------------------------------
    # Cookies
    # ------------------------------------------------------------------

    def set_auth_cookies(self, response, pair: TokenPair) -> None:
        """Write both tokens as httpOnly, samesite=strict cookies."""
        response.set_cookie(
            ACCESS_COOKIE,
            value=pair.access_token,
            httponly=True,
            samesite="strict",
            secure=self.settings.secure_cookies,
            max_age=self.settings.access_token_expire_seconds,
        )
        response.set_cookie(
            REFRESH_COOKIE,
            value=pair.refresh_token,
            httponly=True,
            samesite="strict",
            secure=self.settings.secure_cookies,
            max_age=self.settings.refresh_token_expire_days * 24 * 60 * 60,
            path=REFRESH_COOKIE_PATH,
        )

    def clear_auth_cookies(self, response) -> None:
        response.delete_cookie(ACCESS_COOKIE, httponly=True, samesite="strict", secure=self.settings.secure_cookies)
        self.clear_refresh_cookie(response)

    def clear_refresh_cookie(self, response) -> None:
        response.delete_cookie(
            REFRESH_COOKIE,
            path=REFRESH_COOKIE_PATH,
            httponly=True,
            samesite="strict",
            secure=self.settings.secure_cookies,
        )

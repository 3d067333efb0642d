"""
auth/passwordless.py -- Magic-link and one-time-code sign-in.

Flow per credential:  REQUESTED --verify--> CONSUMED
                          |
                          +--ttl--> EXPIRED (the ephemeral store drops it)

Magic link: 32 random bytes; the store keeps {user_id, email, type} under
    auth:passwordless:<sha256(token)>. Only the mail carries the plaintext.
OTP: {code, expires_at} under auth:otp:<normalized email>. Requesting a new
    code overwrites the old one. Codes are compared as strings in constant
    time, so "045123" never turns into 45123.

Both credentials are consumed with pop() -- an atomic read-and-delete -- so
two concurrent redemptions of the same link or code cannot both log in. A
wrong code puts the popped entry back with its original expiry, unless the
attempt limit burned it or a newer code has taken its place.

Enumeration: request_* returns the same RequestAccepted whether or not the
address was already registered. Creating the unverified user still makes
the request slower for new addresses; see DESIGN.md.

Failure policy:
    invalid / expired / wrong code -> None (one message for all of them)
    malformed email                -> ValidationError
    too many requests for an email -> RateLimitedError
    store or mail transport down   -> DependencyFailure
    welcome mail fails             -> logged, login still succeeds

Layer rule: no imports from api/. From cache/ only the error type is
imported; the store object itself is handed in by auth/services.py.
"""

from __future__ import annotations

import logging
import re
import time

from sqlalchemy.exc import SQLAlchemyError

from auth.audit import AuditLog
from auth.crypto import generate_otp, generate_secure_token, hash_single_use, timing_safe_equal
from auth.errors import DependencyFailure, RateLimitedError, ValidationError
from auth.mailer import MailDeliveryError, redact_email, render_magic_link, render_otp, render_welcome
from auth.models import DeviceInfo, PasswordlessCredential, PasswordlessLogin, RequestAccepted, User, UserProfile
from auth.store import UserStore, normalize_email
from auth.tokens import TokenIssuer
from cache.store import EphemeralStoreError
from core.config import Settings

logger = logging.getLogger("tokenward.passwordless")

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_MAX_EMAIL_LENGTH = 320

MAGIC_LINK_PREFIX = "auth:passwordless:"
OTP_PREFIX = "auth:otp:"
OTP_ATTEMPTS_PREFIX = "auth:otp_attempts:"
RATE_LIMIT_PREFIX = "ratelimit:passwordless:"


def validate_email(email: str) -> str:
    """Return the normalized address or raise ValidationError."""
    if not isinstance(email, str) or not email.strip():
        raise ValidationError("Email is required.")
    normalized = normalize_email(email)
    if len(normalized) > _MAX_EMAIL_LENGTH or not _EMAIL_RE.match(normalized):
        raise ValidationError("Invalid email address.")
    return normalized


class PasswordlessService:
    """Issues and redeems magic links and one-time codes.

    `ephemeral` is any object with the cache/store.py contract (set, add,
    get, pop, delete, increment). `mailer` is anything with send(MailMessage).
    """

    def __init__(
        self,
        user_store: UserStore,
        ephemeral,
        issuer: TokenIssuer,
        mailer,
        audit: AuditLog,
        settings: Settings,
    ) -> None:
        self.users = user_store
        self.ephemeral = ephemeral
        self.issuer = issuer
        self.mailer = mailer
        self.audit = audit
        self.settings = settings

    # ------------------------------------------------------------------
    # Magic link
    # ------------------------------------------------------------------

    def request_magic_link(self, email: str, device: DeviceInfo | None = None) -> RequestAccepted:
        email = validate_email(email)
        with _dependencies("magic link request"):
            self._check_rate_limit(email)
            user, _ = self.users.get_or_create_by_email(email)
            token = generate_secure_token(32)
            key = MAGIC_LINK_PREFIX + hash_single_use(token)
            credential = PasswordlessCredential(email=email, type="magic_link", user_id=user.id)
            self.ephemeral.set(key, credential.to_dict(), self.settings.passwordless_ttl_seconds)
            try:
                self.mailer.send(render_magic_link(self.settings, email, token))
            except MailDeliveryError:
                self.ephemeral.delete(key)
                raise
        self.audit.passwordless_requested(user.id, "magic_link", device)
        return RequestAccepted(success=True, message="If the address can receive mail, a sign-in link is on its way.")

    def verify_magic_link(self, token: str, device: DeviceInfo | None = None) -> PasswordlessLogin | None:
        if not token or not isinstance(token, str):
            self.audit.failed_login("invalid_magic_link", device)
            return None
        with _dependencies("magic link verification"):
            payload = self.ephemeral.pop(MAGIC_LINK_PREFIX + hash_single_use(token))
            if payload is None:
                self.audit.failed_login("invalid_magic_link", device)
                return None
            credential = PasswordlessCredential.from_dict(payload)
            user = self.users.get_by_id(credential.user_id) if credential.user_id is not None else None
            if user is None:
                user = self.users.get_by_email(credential.email)
            return self._complete_login(user, credential.email, "magic_link", device)

    # ------------------------------------------------------------------
    # One-time code
    # ------------------------------------------------------------------

    def request_otp(self, email: str, device: DeviceInfo | None = None) -> RequestAccepted:
        email = validate_email(email)
        with _dependencies("OTP request"):
            self._check_rate_limit(email)
            user, _ = self.users.get_or_create_by_email(email)
            code = generate_otp(self.settings.otp_digits)
            ttl = self.settings.passwordless_ttl_seconds
            self.ephemeral.set(OTP_PREFIX + email, {"code": code, "expires_at": time.time() + ttl}, ttl)
            self.ephemeral.delete(OTP_ATTEMPTS_PREFIX + email)
            try:
                self.mailer.send(render_otp(self.settings, email, code))
            except MailDeliveryError:
                self.ephemeral.delete(OTP_PREFIX + email)
                raise
        self.audit.passwordless_requested(user.id, "otp", device)
        return RequestAccepted(success=True, message="If the address can receive mail, a sign-in code is on its way.")

    def verify_otp(self, email: str, code: str, device: DeviceInfo | None = None) -> PasswordlessLogin | None:
        email = validate_email(email)
        if not code or not isinstance(code, str):
            self.audit.failed_login("invalid_otp", device, email=email)
            return None
        with _dependencies("OTP verification"):
            # Pop before comparing: a check that started before a re-request
            # must not consume the newer code.
            entry = self.ephemeral.pop(OTP_PREFIX + email)
            if entry is None:
                self.audit.failed_login("invalid_otp", device, email=email)
                return None
            if not timing_safe_equal(str(entry["code"]), code):
                if not self._count_failed_attempt(email):
                    self._restore_otp(email, entry)
                self.audit.failed_login("invalid_otp", device, email=email)
                return None
            self.ephemeral.delete(OTP_ATTEMPTS_PREFIX + email)
            return self._complete_login(self.users.get_by_email(email), email, "otp", device)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _check_rate_limit(self, email: str) -> None:
        count = self.ephemeral.increment(RATE_LIMIT_PREFIX + email, self.settings.rate_limit_window_seconds)
        if count > self.settings.passwordless_max_requests:
            logger.warning("Passwordless rate limit hit for %s (%d requests)", redact_email(email), count)
            raise RateLimitedError("Too many sign-in requests. Try again later.")

    def _count_failed_attempt(self, email: str) -> bool:
        """Record a wrong code. Returns True once the code is burned."""
        attempts = self.ephemeral.increment(OTP_ATTEMPTS_PREFIX + email, self.settings.passwordless_ttl_seconds)
        if attempts < self.settings.otp_max_attempts:
            return False
        logger.warning("OTP for %s burned after %d failed attempts", redact_email(email), attempts)
        self.ephemeral.delete(OTP_ATTEMPTS_PREFIX + email)
        return True

    def _restore_otp(self, email: str, entry: dict) -> None:
        # Keeps the original expiry. add() leaves a newer code in place.
        remaining = int(entry["expires_at"] - time.time())
        if remaining > 0:
            self.ephemeral.add(OTP_PREFIX + email, entry, remaining)

    def _complete_login(
        self, user: User | None, email: str, method: str, device: DeviceInfo | None
    ) -> PasswordlessLogin | None:
        if user is None or not user.is_active:
            self.audit.failed_login("user_not_found" if user is None else "user_inactive", device, email=email)
            return None

        is_new_user = not user.email_verified
        self.users.mark_verified_login(user.id)
        user = self.users.get_by_id(user.id)
        tokens = self.issuer.issue_pair(user, device)

        if is_new_user:
            self.audit.user_signup(user.id, "passwordless", device)
            self.audit.email_verified(user.id, device)
            self._send_welcome(user)
        else:
            self.audit.user_login(user.id, method, device)

        return PasswordlessLogin(user=UserProfile.from_user(user), tokens=tokens, is_new_user=is_new_user)

    def _send_welcome(self, user: User) -> None:
        try:
            self.mailer.send(render_welcome(self.settings, user.email, user.first_name))
        except Exception:
            # Best effort: the user is already signed in.
            logger.exception("Welcome mail to user %s failed", user.id)


class _dependencies:
    """Context manager: translate backing-service failures into DependencyFailure."""

    def __init__(self, operation: str) -> None:
        self.operation = operation

    def __enter__(self) -> None:
        return None

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc_type is not None and issubclass(exc_type, (EphemeralStoreError, MailDeliveryError, SQLAlchemyError)):
            logger.error("%s failed: %s: %s", self.operation, exc_type.__name__, exc)
            raise DependencyFailure("Service temporarily unavailable.") from exc
        return False

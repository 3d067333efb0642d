"""
auth/rotation.py -- Refresh-token rotation with reuse detection.

Every refresh token is single-use. Presenting an active token revokes it and
issues its child; presenting it again afterwards means two parties hold the
same secret, so every session of the owner is revoked.

Token states (see TokenState):

    ACTIVE ---rotate---> ROTATED ---presented again---> COMPROMISED
      |                                                    (all sessions
      +--time--> EXPIRED                                    revoked)
      +--logout/kill--> REVOKED

rotate() outcomes:
    unknown, empty, or hash mismatch     -> None
    active, owner active                 -> TokenPair (the only success path)
    active, owner missing or deactivated -> None, nothing written
    expired, never rotated               -> None, nothing written
    revoked, no child (logout)           -> None
    revoked, has child (replay)          -> TokenReuseDetected

Ordering [R1]: revoke the parent, then insert the child, inside one
transaction (RefreshTokenStore.revoke_and_replace). A crash in between
leaves the session logged out, never two valid tokens.

Races [R2]: two requests rotating the same token both issue the conditional
revoke; the database lets one match. The loser gets None back from the store,
re-reads the lineage, finds the winner's child, and takes the reuse branch --
the same outcome as a sequential replay.

Store failures are raised as DependencyFailure and never retried: retrying a
half-known rotation could issue two children.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError

from auth.audit import AuditLog
from auth.crypto import verify_reusable
from auth.errors import DependencyFailure, TokenReuseDetected
from auth.models import DeviceInfo, RefreshToken, TokenPair, TokenState
from auth.store import UserStore
from auth.token_store import RefreshTokenStore
from auth.tokens import TokenIssuer

logger = logging.getLogger("tokenward.rotation")


class RotationEngine:
    """Validates, rotates, inspects, and revokes refresh tokens.

    Usage:
        engine = RotationEngine(token_store, user_store, issuer, audit)
        pair = engine.rotate(plaintext, device)   # TokenPair | None
        engine.revoke(pair.refresh_token)          # logout
    """

    def __init__(
        self,
        token_store: RefreshTokenStore,
        user_store: UserStore,
        issuer: TokenIssuer,
        audit: AuditLog,
    ) -> None:
        self.tokens = token_store
        self.users = user_store
        self.issuer = issuer
        self.audit = audit

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------

    def rotate(self, plaintext: str, device: DeviceInfo | None = None) -> TokenPair | None:
        """Exchange an active refresh token for a new pair.

        Raises TokenReuseDetected when a rotated token is presented again, and
        DependencyFailure when the durable store fails.
        """
        if not plaintext or not isinstance(plaintext, str):
            return None
        try:
            return self._rotate(plaintext, device)
        except SQLAlchemyError as exc:
            logger.error("Token store failure during rotation: %s", exc)
            raise DependencyFailure("Token store unavailable.") from exc

    def _rotate(self, plaintext: str, device: DeviceInfo | None) -> TokenPair | None:
        record = self._locate(plaintext)
        if record is None:
            return None

        if record.is_revoked:
            return self._on_revoked(record, device)

        if record.is_expired(_utcnow()):
            return None

        user = self.users.get_by_id(record.user_id)
        if user is None or not user.is_active:
            logger.info("Refusing rotation for missing or inactive user %s", record.user_id)
            return None

        secret = self.issuer.new_refresh_secret()
        child = self.tokens.revoke_and_replace(
            record, secret.lookup_hash, secret.token_hash, self.issuer.refresh_expiry(), device
        )
        if child is None:
            # Lost the race [R2]. The winner's child is committed by now.
            return self._on_revoked(record, device)

        self.audit.token_refreshed(user.id, record.id, child.id, device)
        return TokenPair(
            access_token=self.issuer.issue_access_token(user.id, user.role),
            refresh_token=secret.plaintext,
            refresh_token_id=child.id,
            expires_in=self.issuer.settings.access_token_expire_seconds,
        )

    def _on_revoked(self, record: RefreshToken, device: DeviceInfo | None) -> None:
        if self.tokens.count_children_of(record.id) == 0:
            return None
        revoked = self.tokens.revoke_all_for_user(record.user_id)
        logger.warning(
            "Refresh token reuse detected: user_id=%s token_id=%s ip=%s -- revoked %d session(s)",
            record.user_id,
            record.id,
            device.ip if device else None,
            revoked,
        )
        self.audit.token_reuse_detected(record.user_id, record.id, revoked, device)
        raise TokenReuseDetected(record.user_id, record.id)

    # ------------------------------------------------------------------
    # Inspection and revocation
    # ------------------------------------------------------------------

    def inspect(self, plaintext: str) -> TokenState | None:
        """Classify a token without changing anything. None if it is not ours.

        A revoked token with a child reports ROTATED: presenting it to
        rotate() is what would make it COMPROMISED.
        """
        if not plaintext or not isinstance(plaintext, str):
            return None
        try:
            record = self._locate(plaintext)
            if record is None:
                return None
            if record.is_revoked:
                return TokenState.ROTATED if self.tokens.count_children_of(record.id) else TokenState.REVOKED
        except SQLAlchemyError as exc:
            raise DependencyFailure("Token store unavailable.") from exc
        if record.is_expired(_utcnow()):
            return TokenState.EXPIRED
        return TokenState.ACTIVE

    def revoke(self, plaintext: str, device: DeviceInfo | None = None) -> bool:
        """Revoke the session behind one refresh token (logout). Idempotent."""
        if not plaintext or not isinstance(plaintext, str):
            return False
        try:
            record = self._locate(plaintext)
            if record is None:
                return False
            changed = self.tokens.revoke(record.id)
        except SQLAlchemyError as exc:
            raise DependencyFailure("Token store unavailable.") from exc
        if changed:
            self.audit.user_logout(record.user_id, device)
        return changed

    def revoke_all(self, user_id: int, device: DeviceInfo | None = None) -> int:
        """Revoke every active session of user_id. Returns the number revoked."""
        try:
            revoked = self.tokens.revoke_all_for_user(user_id)
        except SQLAlchemyError as exc:
            raise DependencyFailure("Token store unavailable.") from exc
        self.audit.user_logout(user_id, device, all_sessions=True)
        return revoked

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _locate(self, plaintext: str) -> RefreshToken | None:
        """HMAC index lookup, then bcrypt verification of the located row."""
        record = self.tokens.find_by_hash(self.issuer.lookup_key(plaintext))
        if record is None:
            return None
        if not verify_reusable(plaintext, record.token_hash):
            logger.warning("Refresh token lookup hit with hash mismatch (token_id=%s)", record.id)
            return None
        return record


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)

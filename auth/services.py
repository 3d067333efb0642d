"""
auth/services.py -- Builds and owns every store and service of the process.

No module-level singletons: the ASGI lifespan (api/main.py) and the CLI
(main.py) each build one AuthServices from Settings, call connect(), and
close() it on the way out. Tests build their own with in-memory databases.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from auth.audit import AuditLog
from auth.mailer import build_mailer
from auth.passwordless import PasswordlessService
from auth.passwords import PasswordAuthenticator
from auth.rotation import RotationEngine
from auth.store import UserStore
from auth.token_store import RefreshTokenStore
from auth.tokens import TokenIssuer
from cache.store import RedisEphemeralStore, SQLiteEphemeralStore
from core.config import Settings

logger = logging.getLogger("tokenward.services")


@dataclass
class AuthServices:
    settings: Settings
    users: UserStore
    tokens: RefreshTokenStore
    audit: AuditLog
    ephemeral: object  # SQLiteEphemeralStore | RedisEphemeralStore
    mailer: object  # LogMailer | SmtpMailer
    issuer: TokenIssuer
    rotation: RotationEngine
    passwordless: PasswordlessService
    passwords: PasswordAuthenticator

    @classmethod
    def from_settings(cls, settings: Settings, *, ephemeral=None, mailer=None) -> "AuthServices":
        """Wire every component from settings. ephemeral and mailer may be overridden."""
        users = UserStore(settings.database_url)
        tokens = RefreshTokenStore(settings.database_url)
        audit = AuditLog(settings.database_url)
        if ephemeral is None:
            if settings.ephemeral_backend == "redis":
                ephemeral = RedisEphemeralStore(settings.redis_url, socket_timeout=settings.redis_socket_timeout)
            else:
                ephemeral = SQLiteEphemeralStore(settings.ephemeral_db_path)
        if mailer is None:
            mailer = build_mailer(settings)
        issuer = TokenIssuer(settings, tokens)
        return cls(
            settings=settings,
            users=users,
            tokens=tokens,
            audit=audit,
            ephemeral=ephemeral,
            mailer=mailer,
            issuer=issuer,
            rotation=RotationEngine(tokens, users, issuer, audit),
            passwordless=PasswordlessService(users, ephemeral, issuer, mailer, audit, settings),
            passwords=PasswordAuthenticator(users, rounds=settings.password_bcrypt_rounds),
        )

    def connect(self) -> None:
        """Open connections that are not opened lazily. Raises EphemeralStoreError."""
        self.ephemeral.connect()
        logger.info(
            "Services ready (ephemeral=%s, mail=%s)", self.settings.ephemeral_backend, self.settings.mail_provider
        )

    def purge_expired(self) -> tuple[int, int]:
        """Sweep expired refresh tokens and ephemeral entries. Returns (tokens, entries)."""
        return self.tokens.purge_expired(), self.ephemeral.purge_expired()

    def health(self) -> dict[str, str]:
        status = {}
        for name, probe in (("database", self.users.ping), ("ephemeral", self.ephemeral.ping)):
            try:
                status[name] = "ok" if probe() else "unavailable"
            except Exception as exc:
                logger.warning("Health probe %s failed: %s", name, exc)
                status[name] = "unavailable"
        return status

    def close(self) -> None:
        self.ephemeral.close()
        self.audit.close()
        self.tokens.close()
        self.users.close()

"""
tests/conftest.py -- Shared test fixtures for tokenward.

This module provides:
  - make_settings(): Settings with fixed secrets, bcrypt at minimum cost,
    rate limits off, and a fresh named in-memory database
  - services: a connected AuthServices wired to those settings, with a
    LogMailer whose outbox the tests read links and codes from
  - api_client: TestClient over create_app(settings, services)
  - read_magic_token() / read_otp(): pull credentials out of the outbox

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because the user, token, and audit stores each open their own engine, and
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each of them. The
named URI format (file:name?mode=memory&cache=shared&uri=true) shares one
in-memory instance across all connections in the same process. A keeper
connection holds each database open for the whole test, so it never
disappears between two pooled connections.

The DEBUG env var is set before any import so that a stray get_settings()
call auto-generates secrets instead of raising ConfigurationError.
"""

from __future__ import annotations

import os
import re
import sqlite3
import uuid
from collections.abc import Generator

os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import create_app
from auth.mailer import LogMailer
from auth.models import User
from auth.services import AuthServices
from core.config import Settings

SECRET_KEY = "k" * 64
ACCESS_SECRET = "a" * 64
TEST_PASSWORD = "Sup3rSecret!"

_MAGIC_TOKEN_RE = re.compile(r"token=([0-9a-f]{64})")
_OTP_RE = re.compile(r"code is (\d+)\.")


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def memory_db_url(prefix: str = "tokenward") -> str:
    return f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


def make_settings(**overrides) -> Settings:
    """Test Settings. Every call gets its own database unless database_url is given."""
    values = {
        "debug": True,
        "secret_key": SECRET_KEY,
        "access_token_secret": ACCESS_SECRET,
        "database_url": memory_db_url(),
        "ephemeral_db_path": ":memory:",
        "refresh_token_bcrypt_rounds": 4,
        "password_bcrypt_rounds": 4,
        "rate_limit_enabled": False,
        "allowed_hosts": ["testserver", "localhost"],
        "frontend_url": "http://app.test",
    }
    values.update(overrides)
    return Settings(**values)


def _keeper(database_url: str) -> sqlite3.Connection:
    """Raw connection that keeps a named in-memory database alive."""
    path = database_url.removeprefix("sqlite:///").replace("&uri=true", "")
    return sqlite3.connect(path, uri=True, check_same_thread=False)


def build_services(settings: Settings | None = None) -> tuple[AuthServices, sqlite3.Connection]:
    settings = settings or make_settings()
    keeper = _keeper(settings.database_url)
    services = AuthServices.from_settings(settings, mailer=LogMailer())
    services.connect()
    return services, keeper


def create_user(services: AuthServices, email: str = "user@example.com", **fields) -> User:
    """Insert a verified customer directly through the user store."""
    fields.setdefault("email_verified", True)
    user_id = services.users.create_user(User(email=email, **fields))
    return services.users.get_by_id(user_id)


def read_magic_token(mailer: LogMailer, email: str) -> str:
    message = mailer.last_to(email)
    assert message is not None, f"no mail sent to {email}"
    match = _MAGIC_TOKEN_RE.search(message.text)
    assert match, f"no magic link in {message.text!r}"
    return match.group(1)


def read_otp(mailer: LogMailer, email: str) -> str:
    message = mailer.last_to(email)
    assert message is not None, f"no mail sent to {email}"
    match = _OTP_RE.search(message.text)
    assert match, f"no code in {message.text!r}"
    return match.group(1)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def services(settings: Settings) -> Generator[AuthServices, None, None]:
    """Connected AuthServices over a private in-memory database."""
    svc, keeper = build_services(settings)
    yield svc
    svc.close()
    keeper.close()


@pytest.fixture
def user(services: AuthServices) -> User:
    return create_user(services)


@pytest.fixture
def api_client(services: AuthServices) -> Generator[TestClient, None, None]:
    """TestClient over the real app and routes, using the test services.

    The injected services are not closed by the app's lifespan; the
    services fixture owns them.
    """
    app = create_app(services.settings, services)
    limiter.reset()
    with TestClient(app) as client:
        yield client

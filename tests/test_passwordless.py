"""Tests for auth/passwordless.py -- magic links and one-time codes.

Covers:
- a magic link signs in exactly once; unknown and expired links return None
- first sign-in creates and verifies the account and sends a welcome mail
- request responses are identical for new and existing addresses
- OTP comparison is exact string comparison (leading zeros matter)
- requesting a new OTP invalidates the old one
- an OTP is burned after too many wrong attempts; a wrong code keeps its
  expiry and never displaces a code issued while it was being checked
- log lines carry redacted addresses
- per-email request limit raises RateLimitedError
- store and mail failures become DependencyFailure; a failed welcome mail does not
"""

import logging
import time

import pytest

from auth.errors import DependencyFailure, RateLimitedError, ValidationError
from auth.mailer import MailDeliveryError
from auth.passwordless import MAGIC_LINK_PREFIX, OTP_PREFIX, validate_email
from cache.store import EphemeralStoreError
from conftest import create_user, read_magic_token, read_otp

NEW_EMAIL = "newcomer@example.com"


@pytest.fixture
def fixed_otp(monkeypatch):
    """Make every generated code 045123."""
    monkeypatch.setattr("auth.passwordless.generate_otp", lambda digits: "045123")
    return "045123"


def _rerequest_on_first_read(services, monkeypatch):
    """Issue a fresh OTP right after the next read of the stored code."""
    store = services.ephemeral
    real = {"get": store.get, "pop": store.pop}

    def wrap(name):
        def read(key):
            value = real[name](key)
            if key == OTP_PREFIX + NEW_EMAIL:
                monkeypatch.setattr(store, "get", real["get"])
                monkeypatch.setattr(store, "pop", real["pop"])
                services.passwordless.request_otp(NEW_EMAIL)
            return value

        return read

    monkeypatch.setattr(store, "get", wrap("get"))
    monkeypatch.setattr(store, "pop", wrap("pop"))


# ---------------------------------------------------------------------------
# Email validation
# ---------------------------------------------------------------------------


def test_validate_email_normalizes():
    assert validate_email("  Someone@Example.COM ") == "someone@example.com"


@pytest.mark.parametrize("bad", ["", "   ", "no-at-sign", "a@b", "two@@example.com", "x" * 320 + "@example.com", None])
def test_validate_email_rejects(bad):
    with pytest.raises(ValidationError):
        validate_email(bad)


def test_request_with_invalid_email_raises(services):
    with pytest.raises(ValidationError):
        services.passwordless.request_magic_link("not-an-email")
    assert len(services.mailer.outbox) == 0


# ---------------------------------------------------------------------------
# Magic link
# ---------------------------------------------------------------------------


class TestMagicLink:
    def test_new_user_signs_in_once(self, services):
        accepted = services.passwordless.request_magic_link(NEW_EMAIL)
        assert accepted.success is True

        created = services.users.get_by_email(NEW_EMAIL)
        assert created is not None
        assert created.email_verified is False

        token = read_magic_token(services.mailer, NEW_EMAIL)
        login = services.passwordless.verify_magic_link(token)

        assert login is not None
        assert login.is_new_user is True
        assert login.user.email == NEW_EMAIL
        assert login.user.email_verified is True
        assert services.users.get_by_email(NEW_EMAIL).last_login is not None
        assert services.issuer.verify_access_token(login.tokens.access_token).user_id == created.id

        # Single use.
        assert services.passwordless.verify_magic_link(token) is None

    def test_welcome_mail_on_first_sign_in(self, services):
        services.passwordless.request_magic_link(NEW_EMAIL)
        services.passwordless.verify_magic_link(read_magic_token(services.mailer, NEW_EMAIL))

        last = services.mailer.last_to(NEW_EMAIL)
        assert last.tags == ["welcome"]
        actions = [e.action for e in services.audit.for_user(services.users.get_by_email(NEW_EMAIL).id)]
        assert "user_signup" in actions
        assert "email_verified" in actions

    def test_existing_user_is_not_new(self, services, user):
        services.passwordless.request_magic_link(user.email)
        login = services.passwordless.verify_magic_link(read_magic_token(services.mailer, user.email))

        assert login.is_new_user is False
        assert login.user.id == user.id
        assert services.mailer.last_to(user.email).tags == ["magic_link"]

    def test_request_response_does_not_reveal_account(self, services, user):
        existing = services.passwordless.request_magic_link(user.email)
        fresh = services.passwordless.request_magic_link(NEW_EMAIL)
        assert existing == fresh

    def test_only_digest_is_stored(self, services, monkeypatch):
        keys = []
        real_set = services.ephemeral.set
        monkeypatch.setattr(services.ephemeral, "set", lambda k, v, ttl: (keys.append(k), real_set(k, v, ttl)))

        services.passwordless.request_magic_link(NEW_EMAIL)
        token = read_magic_token(services.mailer, NEW_EMAIL)

        assert len(keys) == 1
        assert keys[0].startswith(MAGIC_LINK_PREFIX)
        assert token not in keys[0]

    def test_unknown_and_empty_tokens(self, services):
        assert services.passwordless.verify_magic_link("0" * 64) is None
        assert services.passwordless.verify_magic_link("") is None

    def test_expired_link(self, services, monkeypatch):
        services.passwordless.request_magic_link(NEW_EMAIL)
        token = read_magic_token(services.mailer, NEW_EMAIL)

        later = time.time() + services.settings.passwordless_ttl_seconds + 1
        monkeypatch.setattr("cache.store.time.time", lambda: later)
        assert services.passwordless.verify_magic_link(token) is None

    def test_deactivated_user_cannot_sign_in(self, services, user):
        services.passwordless.request_magic_link(user.email)
        token = read_magic_token(services.mailer, user.email)
        services.users.update_user(user.id, is_active=False)

        assert services.passwordless.verify_magic_link(token) is None
        assert services.tokens.list_active_for_user(user.id) == []


# ---------------------------------------------------------------------------
# One-time code
# ---------------------------------------------------------------------------


class TestOtp:
    def test_code_arrives_by_mail(self, services, fixed_otp):
        services.passwordless.request_otp(NEW_EMAIL)
        assert read_otp(services.mailer, NEW_EMAIL) == fixed_otp

    def test_exact_match_required(self, services, fixed_otp):
        services.passwordless.request_otp(NEW_EMAIL)

        assert services.passwordless.verify_otp(NEW_EMAIL, "45123") is None
        assert services.passwordless.verify_otp(NEW_EMAIL, "045124") is None

        login = services.passwordless.verify_otp(NEW_EMAIL, "045123")
        assert login is not None
        assert login.is_new_user is True

        # Consumed.
        assert services.passwordless.verify_otp(NEW_EMAIL, "045123") is None

    def test_email_is_normalized_on_verify(self, services, fixed_otp):
        services.passwordless.request_otp(NEW_EMAIL)
        assert services.passwordless.verify_otp("  NewComer@Example.com", fixed_otp) is not None

    def test_new_request_replaces_old_code(self, services, monkeypatch):
        codes = iter(["111111", "222222"])
        monkeypatch.setattr("auth.passwordless.generate_otp", lambda digits: next(codes))

        services.passwordless.request_otp(NEW_EMAIL)
        services.passwordless.request_otp(NEW_EMAIL)

        assert services.passwordless.verify_otp(NEW_EMAIL, "111111") is None
        assert services.passwordless.verify_otp(NEW_EMAIL, "222222") is not None

    def test_code_burned_after_max_attempts(self, services, fixed_otp):
        services.passwordless.request_otp(NEW_EMAIL)
        for _ in range(services.settings.otp_max_attempts):
            assert services.passwordless.verify_otp(NEW_EMAIL, "999999") is None

        assert services.ephemeral.get(OTP_PREFIX + NEW_EMAIL) is None
        assert services.passwordless.verify_otp(NEW_EMAIL, fixed_otp) is None

    def test_attempts_below_limit_keep_code(self, services, fixed_otp):
        services.passwordless.request_otp(NEW_EMAIL)
        for _ in range(services.settings.otp_max_attempts - 1):
            services.passwordless.verify_otp(NEW_EMAIL, "999999")
        assert services.passwordless.verify_otp(NEW_EMAIL, fixed_otp) is not None

    def test_wrong_code_keeps_original_expiry(self, services, fixed_otp, monkeypatch):
        start = time.time()
        now = [start]
        monkeypatch.setattr("cache.store.time.time", lambda: now[0])
        ttl = services.settings.passwordless_ttl_seconds
        services.passwordless.request_otp(NEW_EMAIL)

        now[0] = start + ttl - 60
        assert services.passwordless.verify_otp(NEW_EMAIL, "999999") is None
        now[0] = start + ttl + 1
        assert services.passwordless.verify_otp(NEW_EMAIL, fixed_otp) is None

    def test_rerequest_during_check_keeps_newer_code(self, services, monkeypatch):
        codes = iter(["111111", "222222"])
        monkeypatch.setattr("auth.passwordless.generate_otp", lambda digits: next(codes))
        services.passwordless.request_otp(NEW_EMAIL)
        _rerequest_on_first_read(services, monkeypatch)

        assert services.passwordless.verify_otp(NEW_EMAIL, "111111") is not None
        assert services.passwordless.verify_otp(NEW_EMAIL, "222222") is not None

    def test_wrong_code_does_not_overwrite_newer_code(self, services, monkeypatch):
        codes = iter(["111111", "222222"])
        monkeypatch.setattr("auth.passwordless.generate_otp", lambda digits: next(codes))
        services.passwordless.request_otp(NEW_EMAIL)
        _rerequest_on_first_read(services, monkeypatch)

        assert services.passwordless.verify_otp(NEW_EMAIL, "999999") is None
        assert services.passwordless.verify_otp(NEW_EMAIL, "222222") is not None

    def test_burn_log_redacts_email(self, services, fixed_otp, caplog):
        services.passwordless.request_otp(NEW_EMAIL)
        with caplog.at_level(logging.WARNING, logger="tokenward.passwordless"):
            for _ in range(services.settings.otp_max_attempts):
                services.passwordless.verify_otp(NEW_EMAIL, "999999")
        messages = [r.getMessage() for r in caplog.records if r.name == "tokenward.passwordless"]
        assert any("burned" in m and "n***@example.com" in m for m in messages)
        assert not any(NEW_EMAIL in m for m in messages)

    def test_verify_without_request(self, services):
        assert services.passwordless.verify_otp(NEW_EMAIL, "123456") is None
        assert services.passwordless.verify_otp(NEW_EMAIL, "") is None

    def test_existing_user_login_is_audited(self, services, user, fixed_otp):
        services.passwordless.request_otp(user.email)
        login = services.passwordless.verify_otp(user.email, fixed_otp)
        assert login.is_new_user is False
        assert "user_login" in [e.action for e in services.audit.for_user(user.id)]


# ---------------------------------------------------------------------------
# Limits and failures
# ---------------------------------------------------------------------------


class TestLimitsAndFailures:
    def test_per_email_rate_limit(self, services):
        limit = services.settings.passwordless_max_requests
        for _ in range(limit):
            services.passwordless.request_magic_link(NEW_EMAIL)

        with pytest.raises(RateLimitedError):
            services.passwordless.request_otp(NEW_EMAIL)
        assert len(services.mailer.outbox) == limit

        # Other addresses are unaffected.
        services.passwordless.request_magic_link("someone.else@example.com")

    def test_rate_limit_log_redacts_email(self, services, caplog):
        for _ in range(services.settings.passwordless_max_requests):
            services.passwordless.request_magic_link(NEW_EMAIL)
        with caplog.at_level(logging.WARNING, logger="tokenward.passwordless"):
            with pytest.raises(RateLimitedError):
                services.passwordless.request_otp(NEW_EMAIL)
        messages = [r.getMessage() for r in caplog.records if r.name == "tokenward.passwordless"]
        assert any("n***@example.com" in m for m in messages)
        assert not any(NEW_EMAIL in m for m in messages)

    def test_mail_failure_is_dependency_failure(self, services, monkeypatch):
        def broken(message):
            raise MailDeliveryError("relay refused")

        monkeypatch.setattr(services.mailer, "send", broken)
        with pytest.raises(DependencyFailure):
            services.passwordless.request_magic_link(NEW_EMAIL)

    def test_failed_otp_mail_leaves_no_code(self, services, monkeypatch, fixed_otp):
        def broken(message):
            raise MailDeliveryError("relay refused")

        monkeypatch.setattr(services.mailer, "send", broken)
        with pytest.raises(DependencyFailure):
            services.passwordless.request_otp(NEW_EMAIL)
        assert services.ephemeral.get(OTP_PREFIX + NEW_EMAIL) is None

    def test_store_failure_is_dependency_failure(self, services, monkeypatch):
        def broken(*args, **kwargs):
            raise EphemeralStoreError("redis down")

        monkeypatch.setattr(services.ephemeral, "increment", broken)
        with pytest.raises(DependencyFailure):
            services.passwordless.request_magic_link(NEW_EMAIL)

        monkeypatch.setattr(services.ephemeral, "pop", broken)
        with pytest.raises(DependencyFailure):
            services.passwordless.verify_magic_link("0" * 64)

    def test_failed_welcome_mail_does_not_block_login(self, services, monkeypatch):
        services.passwordless.request_magic_link(NEW_EMAIL)
        token = read_magic_token(services.mailer, NEW_EMAIL)

        def broken(message):
            raise MailDeliveryError("relay refused")

        monkeypatch.setattr(services.mailer, "send", broken)
        login = services.passwordless.verify_magic_link(token)
        assert login is not None
        assert login.is_new_user is True

    def test_existing_verified_user_keeps_role(self, services):
        admin = create_user(services, "admin@example.com", role="admin")
        services.passwordless.request_magic_link(admin.email)
        login = services.passwordless.verify_magic_link(read_magic_token(services.mailer, admin.email))
        assert login.user.role == "admin"

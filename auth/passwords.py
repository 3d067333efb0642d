"""
auth/passwords.py -- Email + password signup and login.

Passwords are hashed with bcrypt (auth/crypto.py). authenticate() always runs
one bcrypt check, against a dummy hash when the account does not exist or has
no password, so response time does not reveal which addresses are registered
[C1].

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.crypto import hash_reusable, verify_reusable
from auth.errors import DependencyFailure, EmailTakenError, ValidationError
from auth.models import User
from auth.passwordless import validate_email
from auth.store import UserStore

logger = logging.getLogger("tokenward.passwords")

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 72  # bcrypt ignores bytes beyond 72


def validate_password(password: str) -> list[str]:
    """Return a list of policy violations. Empty list means the password is acceptable."""
    problems = []
    if len(password) < MIN_PASSWORD_LENGTH:
        problems.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
    if len(password.encode("utf-8")) > MAX_PASSWORD_LENGTH:
        problems.append(f"Password must be at most {MAX_PASSWORD_LENGTH} bytes.")
    if not any(c.isupper() for c in password):
        problems.append("Password must contain an uppercase letter.")
    if not any(c.islower() for c in password):
        problems.append("Password must contain a lowercase letter.")
    if not any(c.isdigit() for c in password):
        problems.append("Password must contain a digit.")
    return problems


class PasswordAuthenticator:
    def __init__(self, user_store: UserStore, rounds: int = 12) -> None:
        self.users = user_store
        self.rounds = rounds
        # Computed once so the first failed login is not measurably slower [C1].
        self._dummy_hash = hash_reusable("tokenward_timing_dummy", rounds=rounds)

    def register(
        self, email: str, password: str, first_name: str | None = None, last_name: str | None = None
    ) -> User:
        """Create a password account. Any existing user with that email, including
        an unverified passwordless one, makes this an EmailTakenError."""
        email = validate_email(email)
        problems = validate_password(password or "")
        if problems:
            raise ValidationError("Password does not meet requirements.", details=problems)

        hashed = hash_reusable(password, rounds=self.rounds)
        try:
            if self.users.get_by_email(email) is not None:
                raise EmailTakenError("An account with that email already exists.")
            user_id = self.users.create_user(
                User(email=email, hashed_password=hashed, first_name=first_name, last_name=last_name)
            )
        except IntegrityError as exc:
            raise EmailTakenError("An account with that email already exists.") from exc
        except SQLAlchemyError as exc:
            raise DependencyFailure("User directory unavailable.") from exc
        logger.info("Registered user %s", user_id)
        return self.users.get_by_id(user_id)

    def authenticate(self, email: str, password: str) -> User | None:
        """Return the User on a correct password, None on any failure."""
        try:
            user = self.users.get_by_email(email or "")
        except SQLAlchemyError as exc:
            raise DependencyFailure("User directory unavailable.") from exc
        if user is None or user.hashed_password is None:
            # Equalize timing -- do NOT return early before running bcrypt [C1]
            verify_reusable(password or "x", self._dummy_hash)
            return None
        if not password or not verify_reusable(password, user.hashed_password):
            return None
        if not user.is_active:
            return None
        self.users.update_last_login(user.id)
        return user

"""
auth/service.py -- Registration, login, and logout orchestration.

AuthService is the entry point of the core. Each operation is a single
request/response step with no state carried between calls; everything
durable lives in AccountStore and SessionManager, which are handed in at
construction (see from_settings()) rather than looked up globally.

Security design decisions:
  Cheap checks first: register() and login() reject blank or malformed input
  before touching storage or bcrypt, which bounds what a flood of junk
  requests can cost.

  Timing equalization: login() runs a full bcrypt verify whether or not the
  email exists -- against the hasher's decoy record when it does not. Do NOT
  add an early return before the verify.

  One failure for every credential problem: unknown email and wrong password
  both raise InvalidCredentials with the same message.

  Reservation hygiene: once reserve() has succeeded, any failure before the
  account is written releases the reservation before re-raising.

Layer rule: no imports from api/. core.config is allowed for from_settings().
"""

from __future__ import annotations

import logging
import re
from datetime import timedelta

from sqlalchemy.engine import Engine

from auth.errors import InvalidCredentials, StorageUnavailable, ValidationError
from auth.models import Account, LoginResult, Reservation
from auth.passwords import PasswordHasher
from auth.retry import RetryPolicy
from auth.schema import make_engine
from auth.session_store import SqlSessionBackend
from auth.sessions import SessionManager
from auth.store import AccountStore, SqlAccountBackend
from core.config import Settings

logger = logging.getLogger("authsvc.service")

# Identity-framework default: letters, digits and -._@+
_USERNAME_RE = re.compile(r"^[A-Za-z0-9\-._@+]+$")
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

_REQUIRED = "This field is required."


def _blank(value: str | None) -> bool:
    return value is None or not value.strip()


class AuthService:
    """Register / login / logout over PasswordHasher, AccountStore and SessionManager.

    Usage:
        service = AuthService.from_settings(get_settings())
        service.register("alice", "alice@x.com", "+1555", "pw12345")
        result = service.login("alice@x.com", "pw12345")
        service.authenticate(result.token)   # -> Account
        service.logout(result.token)
    """

    def __init__(
        self,
        accounts: AccountStore,
        sessions: SessionManager,
        hasher: PasswordHasher,
        session_ttl: timedelta = timedelta(hours=24),
        password_min_length: int = 6,
    ) -> None:
        self.accounts = accounts
        self.sessions = sessions
        self.hasher = hasher
        self.session_ttl = session_ttl
        self.password_min_length = password_min_length

    @classmethod
    def from_settings(cls, settings: Settings, engine: Engine | None = None) -> AuthService:
        """Wire the full component graph from Settings.

        engine defaults to a new one for settings.database_url; pass one in to
        share it (and dispose of it) from the caller.
        """
        engine = engine if engine is not None else make_engine(settings.database_url)
        retry = RetryPolicy(
            attempts=settings.storage_retry_attempts,
            base_delay=settings.storage_retry_base_delay,
            max_delay=settings.storage_retry_max_delay,
        )
        accounts = AccountStore(
            SqlAccountBackend(engine),
            retry=retry,
            reservation_ttl=timedelta(seconds=settings.reservation_ttl_seconds),
        )
        sessions = SessionManager(
            SqlSessionBackend(engine),
            accounts,
            settings.secret_key,
            retry=retry,
            sliding_expiration=settings.sliding_expiration,
        )
        return cls(
            accounts,
            sessions,
            PasswordHasher(rounds=settings.bcrypt_rounds),
            session_ttl=timedelta(seconds=settings.session_ttl_seconds),
            password_min_length=settings.password_min_length,
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def register(self, username: str, email: str, phone_number: str, password: str) -> Account:
        """Create an account. Raises ValidationError or DuplicateError."""
        fields = {"username": username, "email": email, "phone_number": phone_number, "password": password}
        missing = {name: _REQUIRED for name, value in fields.items() if _blank(value)}
        if missing:
            raise ValidationError(field_errors=missing)
        self._check_shape(username.strip(), email.strip(), password)

        reservation = self.accounts.reserve(username, email)
        try:
            record = self.hasher.hash(password)
            account = self.accounts.create(reservation, record, phone_number)
        except Exception:
            self._release_quietly(reservation)
            raise
        logger.info("Registered account id=%s", account.id)
        return account

    def login(self, email: str, password: str) -> LoginResult:
        """Verify credentials and open a session. Raises InvalidCredentials on any mismatch."""
        missing = {name: _REQUIRED for name, value in (("email", email), ("password", password)) if _blank(value)}
        if missing:
            raise ValidationError("Email and password are required.", field_errors=missing)

        account = self.accounts.find_by_email(email)
        if account is None:
            # Equalize timing -- do NOT return before running bcrypt.
            self.hasher.verify(password, self.hasher.decoy)
            logger.info("Login failed: no matching account")
            raise InvalidCredentials()
        if not self.hasher.verify(password, account.password):
            logger.info("Login failed account_id=%s", account.id)
            raise InvalidCredentials()

        if self.hasher.needs_rehash(account.password):
            self.accounts.update_password(account.id, self.hasher.hash(password))
            logger.info("Rehashed password account_id=%s cost=%d", account.id, self.hasher.rounds)

        token, record = self.sessions.start(account.id, self.session_ttl)
        logger.info("Login succeeded account_id=%s", account.id)
        return LoginResult(token=token, account=account, expires_at=record.expires_at)

    def logout(self, token: str | None) -> None:
        """Revoke the session behind token. Missing, unknown or dead tokens are fine."""
        self.sessions.revoke(token or "")

    def authenticate(self, token: str | None) -> Account:
        """Resolve a presented token to its account. Raises an Unauthenticated subclass."""
        return self.sessions.validate(token or "")

    def run_maintenance(self) -> dict[str, int]:
        """Sweep expired sessions and lapsed reservations. Called by a scheduler."""
        return {
            "sessions": self.sessions.sweep_expired(),
            "reservations": self.accounts.purge_stale_reservations(),
        }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _check_shape(self, username: str, email: str, password: str) -> None:
        problems: dict[str, str] = {}
        if not _USERNAME_RE.match(username):
            problems["username"] = "Username may only contain letters, digits and -._@+"
        if not _EMAIL_RE.match(email):
            problems["email"] = "Email address is not valid."
        if len(password) < self.password_min_length:
            problems["password"] = f"Password must be at least {self.password_min_length} characters."
        if problems:
            raise ValidationError("Invalid registration details.", field_errors=problems)

    def _release_quietly(self, reservation: Reservation) -> None:
        try:
            self.accounts.release(reservation)
        except StorageUnavailable:
            # The reservation lapses on its own after reservation_ttl.
            logger.warning("Could not release reservation %s; it will expire", reservation.id)

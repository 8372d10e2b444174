"""
auth/store.py -- Account persistence and the uniqueness invariants over it.

Pattern: Repository + Data Mapper.
  AccountBackend is the narrow persistence interface (reserve_unique / insert /
  find_by_key ...). SqlAccountBackend implements it on SQLAlchemy Core;
  _row_to_account is the mapper. AccountStore sits on top: it normalizes
  identifiers, time-boxes reservations, and wraps every backend call in the
  storage retry policy.

Registration is two steps so that password hashing (slow) happens between
them without holding a database transaction open:
  reserve()  -- one transaction: purge lapsed reservations for the two keys,
                INSERT both keys. The primary key on identity_keys makes the
                loser of a race get IntegrityError -> DuplicateError.
  create()   -- one transaction: claim the reserved keys (only while
                unexpired), INSERT the account.
If the caller dies in between, the reservation lapses after
reservation_ttl and the next reserve() for the same key, or the maintenance
sweep, removes it. Callers that fail cleanly call release().

Both writes run under the retry policy, so both are idempotent per
reservation id: a repeated reserve_unique() that meets its own rows, or a
repeated insert() that finds the keys already claimed by the same account
id, succeeds without writing again.

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import secrets
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Protocol

from sqlalchemy import func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.errors import DuplicateError, ReservationExpired
from auth.models import Account, CredentialHashRecord, Reservation
from auth.retry import RetryPolicy
from auth.schema import accounts, identity_keys, metadata

logger = logging.getLogger("authsvc.accounts")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize(value: str) -> str:
    """Canonical form used for uniqueness and lookups: trimmed, lowercased."""
    return value.strip().lower()


def username_key(username: str) -> str:
    return f"username:{normalize(username)}"


def email_key(email: str) -> str:
    return f"email:{normalize(email)}"


# ---------------------------------------------------------------------------
# Persistence interface
# ---------------------------------------------------------------------------


class AccountBackend(Protocol):
    """Storage operations AccountStore relies on.

    Implementations must enforce key uniqueness atomically (a unique index or
    equivalent), so the guarantee holds across processes.
    """

    def reserve_unique(self, keys: tuple[str, ...], reservation_id: str, expires_at: float, now: float) -> None:
        """Claim every key or none. Raises DuplicateError if any key is held."""

    def insert(self, account: Account, reservation: Reservation, now: float) -> None:
        """Convert the reservation into the account. Raises ReservationExpired."""

    def find_by_key(self, key: str) -> Account | None: ...

    def get(self, account_id: str) -> Account | None: ...

    def release(self, reservation_id: str) -> int: ...

    def delete_reservations_before(self, now: float) -> int: ...

    def update_password(self, account_id: str, record: CredentialHashRecord) -> bool: ...


# ---------------------------------------------------------------------------
# SQLAlchemy implementation
# ---------------------------------------------------------------------------


class SqlAccountBackend:
    """AccountBackend on SQLAlchemy Core (SQLite in dev and tests, any SQL DB in prod)."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        metadata.create_all(self.engine)

    def reserve_unique(self, keys: tuple[str, ...], reservation_id: str, expires_at: float, now: float) -> None:
        try:
            with self.engine.begin() as conn:
                # The DELETE runs first so SQLite takes the write lock up front.
                conn.execute(
                    identity_keys.delete().where(
                        identity_keys.c.key.in_(keys)
                        & identity_keys.c.account_id.is_(None)
                        & (identity_keys.c.expires_at < now)
                    )
                )
                conn.execute(
                    identity_keys.insert(),
                    [{"key": k, "reservation_id": reservation_id, "account_id": None, "expires_at": expires_at} for k in keys],
                )
        except IntegrityError as exc:
            # A retry after a commit whose acknowledgement was lost collides
            # with its own rows.
            if self._count_keys(keys, identity_keys.c.reservation_id == reservation_id) == len(keys):
                return
            raise DuplicateError() from exc

    def insert(self, account: Account, reservation: Reservation, now: float) -> None:
        with self.engine.begin() as conn:
            claimed = conn.execute(
                identity_keys.update()
                .where(
                    (identity_keys.c.reservation_id == reservation.id)
                    & identity_keys.c.account_id.is_(None)
                    & (identity_keys.c.expires_at >= now)
                )
                .values(account_id=account.id, expires_at=None)
            )
            if claimed.rowcount != len(reservation.keys):
                if claimed.rowcount == 0 and self._count_keys(
                    reservation.keys,
                    (identity_keys.c.reservation_id == reservation.id) & (identity_keys.c.account_id == account.id),
                    conn,
                ) == len(reservation.keys):
                    # Already written by an earlier attempt of this call.
                    return
                raise ReservationExpired()
            try:
                conn.execute(
                    accounts.insert().values(
                        id=account.id,
                        username=account.username,
                        username_key=normalize(account.username),
                        email=account.email,
                        email_key=normalize(account.email),
                        phone_number=account.phone_number,
                        password_algorithm=account.password.algorithm,
                        password_salt=account.password.salt,
                        password_cost=account.password.cost,
                        password_digest=account.password.digest,
                        created_at=account.created_at,
                    )
                )
            except IntegrityError as exc:
                raise DuplicateError() from exc

    def find_by_key(self, key: str) -> Account | None:
        stmt = (
            select(accounts)
            .join(identity_keys, identity_keys.c.account_id == accounts.c.id)
            .where(identity_keys.c.key == key)
        )
        with self.engine.connect() as conn:
            row = conn.execute(stmt).fetchone()
        return _row_to_account(row) if row is not None else None

    def get(self, account_id: str) -> Account | None:
        with self.engine.connect() as conn:
            row = conn.execute(accounts.select().where(accounts.c.id == account_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def release(self, reservation_id: str) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                identity_keys.delete().where(
                    (identity_keys.c.reservation_id == reservation_id) & identity_keys.c.account_id.is_(None)
                )
            )
        return result.rowcount

    def delete_reservations_before(self, now: float) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                identity_keys.delete().where(identity_keys.c.account_id.is_(None) & (identity_keys.c.expires_at < now))
            )
        return result.rowcount

    def update_password(self, account_id: str, record: CredentialHashRecord) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                accounts.update()
                .where(accounts.c.id == account_id)
                .values(
                    password_algorithm=record.algorithm,
                    password_salt=record.salt,
                    password_cost=record.cost,
                    password_digest=record.digest,
                )
            )
        return result.rowcount > 0

    def _count_keys(self, keys: tuple[str, ...], condition, conn=None) -> int:
        stmt = (
            select(func.count())
            .select_from(identity_keys)
            .where(identity_keys.c.key.in_(keys) & condition)
        )
        if conn is not None:
            return conn.execute(stmt).scalar_one()
        with self.engine.connect() as own_conn:
            return own_conn.execute(stmt).scalar_one()

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AccountStore:
    """Owns account creation and lookup. The only writer of accounts and identity_keys.

    Usage:
        store = AccountStore(SqlAccountBackend(make_engine(url)))
        reservation = store.reserve("alice", "alice@x.com")
        try:
            account = store.create(reservation, hasher.hash("pw"), "+1555")
        except Exception:
            store.release(reservation)
            raise
    """

    def __init__(
        self,
        backend: AccountBackend,
        retry: RetryPolicy | None = None,
        reservation_ttl: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.backend = backend
        self.retry = retry or RetryPolicy()
        self.reservation_ttl = reservation_ttl
        self._clock = clock

    def reserve(self, username: str, email: str) -> Reservation:
        """Atomically reserve username and email. Raises DuplicateError if either is taken."""
        now = self._clock()
        reservation = Reservation(
            id=secrets.token_hex(16),
            username=username.strip(),
            email=email.strip(),
            keys=(username_key(username), email_key(email)),
            expires_at=now + self.reservation_ttl,
        )
        self.retry.call(
            "reserve",
            self.backend.reserve_unique,
            reservation.keys,
            reservation.id,
            reservation.expires_at.timestamp(),
            now.timestamp(),
        )
        return reservation

    def create(
        self,
        reservation: Reservation,
        password: CredentialHashRecord,
        phone_number: str | None = None,
    ) -> Account:
        """Finalize an account under a held reservation. Raises ReservationExpired if it lapsed."""
        now = self._clock()
        account = Account(
            id=str(uuid.uuid4()),
            username=reservation.username,
            email=reservation.email,
            password=password,
            phone_number=phone_number,
            created_at=now.isoformat(),
        )
        self.retry.call("create", self.backend.insert, account, reservation, now.timestamp())
        logger.info("Account created id=%s", account.id)
        return account

    def release(self, reservation: Reservation) -> None:
        """Drop whatever part of the reservation is still unclaimed. Idempotent."""
        self.retry.call("release", self.backend.release, reservation.id)

    def find_by_email(self, email: str) -> Account | None:
        """Case-insensitive lookup. Returns None if no account has this email."""
        return self.retry.call("find_by_email", self.backend.find_by_key, email_key(email))

    def find_by_username(self, username: str) -> Account | None:
        return self.retry.call("find_by_username", self.backend.find_by_key, username_key(username))

    def find_by_id(self, account_id: str) -> Account | None:
        return self.retry.call("find_by_id", self.backend.get, account_id)

    def update_password(self, account_id: str, record: CredentialHashRecord) -> bool:
        return self.retry.call("update_password", self.backend.update_password, account_id, record)

    def purge_stale_reservations(self) -> int:
        """Delete reservations past their window that were never claimed."""
        removed = self.retry.call(
            "purge_stale_reservations", self.backend.delete_reservations_before, self._clock().timestamp()
        )
        if removed:
            logger.info("Purged %d stale reservation key(s)", removed)
        return removed


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        username=row.username,
        email=row.email,
        phone_number=row.phone_number,
        password=CredentialHashRecord(
            algorithm=row.password_algorithm,
            salt=row.password_salt,
            cost=row.password_cost,
            digest=row.password_digest,
        ),
        created_at=row.created_at,
    )

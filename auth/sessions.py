"""
auth/sessions.py -- Session token issuance, validation, and revocation.

Security design decisions:
  Tokens: secrets.token_urlsafe(32) gives 256 bits of entropy. The token is
       returned to the caller once and never logged.

  Storage: only HMAC-SHA256(SECRET_KEY, token) is persisted. Somebody who
       can read the sessions table still cannot present a valid token, and
       without SECRET_KEY cannot even test guesses offline. A keyed fast hash
       is enough here: the token is high-entropy, unlike a password.

  Expiry: validate() never moves expires_at unless sliding_expiration is on.
       Expired rows met during validation are deleted on the spot; the rest
       go in sweep_expired(), which an external scheduler (the API lifespan
       loop or `python main.py sweep`) calls periodically.

  Revocation: a flag on the row, so a revoked token reports SessionRevoked
       until the sweep removes it after expiry. Revoking twice is a no-op.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timedelta, timezone

from auth.errors import SessionExpired, SessionNotFound, SessionRevoked
from auth.models import Account, SessionRecord
from auth.retry import RetryPolicy
from auth.session_store import SessionBackend
from auth.store import AccountStore

logger = logging.getLogger("authsvc.sessions")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionManager:
    """Issues, validates, and revokes opaque session tokens.

    Usage:
        manager = SessionManager(SqlSessionBackend(engine), account_store, secret_key)
        token = manager.issue(account.id, timedelta(hours=24))
        manager.validate(token)   # -> Account, or raises Unauthenticated subclass
        manager.revoke(token)
    """

    def __init__(
        self,
        backend: SessionBackend,
        accounts: AccountStore,
        secret_key: str,
        retry: RetryPolicy | None = None,
        sliding_expiration: bool = False,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.backend = backend
        self.accounts = accounts
        self._secret_key = secret_key.encode("utf-8")
        self.retry = retry or RetryPolicy()
        self.sliding_expiration = sliding_expiration
        self._clock = clock

    def hash_token(self, token: str) -> str:
        """Return HMAC-SHA256(SECRET_KEY, token) as a hex string."""
        return hmac.new(self._secret_key, token.encode("utf-8"), hashlib.sha256).hexdigest()

    def issue(self, account_id: str, ttl: timedelta) -> str:
        """Create a session for account_id lasting ttl. Returns the raw token."""
        token, _record = self.start(account_id, ttl)
        return token

    def start(self, account_id: str, ttl: timedelta) -> tuple[str, SessionRecord]:
        """Like issue(), but also return the stored record (for cookie max-age and expiry display)."""
        if ttl <= timedelta(0):
            raise ValueError("Session ttl must be positive.")
        token = secrets.token_urlsafe(32)
        now = self._clock()
        record = SessionRecord(
            token_hash=self.hash_token(token),
            account_id=account_id,
            issued_at=now,
            expires_at=now + ttl,
            ttl_seconds=int(ttl.total_seconds()),
        )
        self.retry.call("issue_session", self.backend.put, record.token_hash, record)
        logger.info("Session issued account_id=%s expires_at=%s", account_id, record.expires_at.isoformat())
        return token, record

    def lookup(self, token: str) -> SessionRecord:
        """Return the live session record for token.

        Raises SessionNotFound, SessionRevoked or SessionExpired.
        """
        if not token:
            raise SessionNotFound()
        token_hash = self.hash_token(token)
        record = self.retry.call("get_session", self.backend.get, token_hash)
        if record is None:
            raise SessionNotFound()
        if record.revoked:
            raise SessionRevoked()
        now = self._clock()
        if record.expires_at <= now:
            self.retry.call("delete_session", self.backend.delete, token_hash)
            raise SessionExpired()
        if self.sliding_expiration:
            new_expiry = now + timedelta(seconds=record.ttl_seconds)
            if not self.retry.call("extend_session", self.backend.extend, token_hash, new_expiry):
                # Revoked or swept between the read and the update.
                raise SessionRevoked()
            record = replace(record, expires_at=new_expiry)
        return record

    def validate(self, token: str) -> Account:
        """Return the account owning token, or raise an Unauthenticated subclass."""
        record = self.lookup(token)
        account = self.accounts.find_by_id(record.account_id)
        if account is None:
            raise SessionNotFound()
        return account

    def revoke(self, token: str) -> None:
        """Mark the session revoked. Unknown or already-revoked tokens are a no-op."""
        if not token:
            return
        if self.retry.call("revoke_session", self.backend.mark_revoked, self.hash_token(token)):
            logger.info("Session revoked")

    def sweep_expired(self) -> int:
        """Delete every session past its expiry. Returns the number removed."""
        removed = self.retry.call("sweep_sessions", self.backend.delete_expired_before, self._clock())
        if removed:
            logger.info("Swept %d expired session(s)", removed)
        return removed

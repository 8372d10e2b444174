"""
auth/session_store.py -- Session record persistence.

SessionBackend is the narrow interface SessionManager talks to; every method
is a single statement, so concurrent issue / validate / revoke / sweep calls
never interleave inside one session row. SqlSessionBackend implements it on
the sessions table from auth/schema.py.

Records are keyed by token_hash only. Nothing in this module ever sees a raw
token.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Protocol

from sqlalchemy.engine import Engine

from auth.models import SessionRecord
from auth.schema import metadata, sessions


class SessionBackend(Protocol):
    def put(self, token_hash: str, record: SessionRecord) -> None: ...

    def get(self, token_hash: str) -> SessionRecord | None: ...

    def delete(self, token_hash: str) -> bool: ...

    def mark_revoked(self, token_hash: str) -> bool: ...

    def extend(self, token_hash: str, expires_at: datetime) -> bool: ...

    def delete_expired_before(self, timestamp: datetime) -> int: ...


class SqlSessionBackend:
    """SessionBackend on SQLAlchemy Core."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        metadata.create_all(self.engine)

    def put(self, token_hash: str, record: SessionRecord) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                sessions.insert().values(
                    token_hash=token_hash,
                    account_id=record.account_id,
                    issued_at=record.issued_at.timestamp(),
                    expires_at=record.expires_at.timestamp(),
                    ttl_seconds=record.ttl_seconds,
                    revoked=1 if record.revoked else 0,
                )
            )

    def get(self, token_hash: str) -> SessionRecord | None:
        with self.engine.connect() as conn:
            row = conn.execute(sessions.select().where(sessions.c.token_hash == token_hash)).fetchone()
        return _row_to_session(row) if row is not None else None

    def delete(self, token_hash: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(sessions.delete().where(sessions.c.token_hash == token_hash))
        return result.rowcount > 0

    def mark_revoked(self, token_hash: str) -> bool:
        """Set the revoked flag. Returns True only if this call flipped it."""
        with self.engine.begin() as conn:
            result = conn.execute(
                sessions.update()
                .where((sessions.c.token_hash == token_hash) & (sessions.c.revoked == 0))
                .values(revoked=1)
            )
        return result.rowcount > 0

    def extend(self, token_hash: str, expires_at: datetime) -> bool:
        """Move expiry forward on a live session. Never resurrects a revoked one."""
        with self.engine.begin() as conn:
            result = conn.execute(
                sessions.update()
                .where((sessions.c.token_hash == token_hash) & (sessions.c.revoked == 0))
                .values(expires_at=expires_at.timestamp())
            )
        return result.rowcount > 0

    def delete_expired_before(self, timestamp: datetime) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(sessions.delete().where(sessions.c.expires_at <= timestamp.timestamp()))
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


def _row_to_session(row) -> SessionRecord:
    return SessionRecord(
        token_hash=row.token_hash,
        account_id=row.account_id,
        issued_at=datetime.fromtimestamp(row.issued_at, timezone.utc),
        expires_at=datetime.fromtimestamp(row.expires_at, timezone.utc),
        ttl_seconds=row.ttl_seconds,
        revoked=bool(row.revoked),
    )

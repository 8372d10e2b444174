"""
auth/schema.py -- SQLAlchemy Core schema and engine factory for the auth store.

Tables:
  accounts       one row per registered account. username_key / email_key are
                 the lowercased identifiers, both UNIQUE.
  identity_keys  the uniqueness ledger. One row per claimed key
                 ("username:<lower>" or "email:<lower>"), PRIMARY KEY on key.
                 A row with account_id NULL is a reservation in flight and
                 carries expires_at; a claimed row has account_id set and
                 expires_at NULL.
  sessions       one row per issued session, keyed by the HMAC of its token.

Uniqueness is the database's job: two processes racing to reserve the same
email both INSERT into identity_keys and the primary key lets exactly one
commit. No application-level check-then-insert is relied on.

Timestamps on identity_keys and sessions are UTC epoch seconds (REAL) so
expiry comparisons are plain numeric WHERE clauses. accounts.created_at is an
ISO 8601 string for display.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from sqlalchemy import Column, Float, Integer, MetaData, String, Table, create_engine, event
from sqlalchemy.engine import Engine

metadata = MetaData()

accounts = Table(
    "accounts",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("username", String(255), nullable=False),
    Column("username_key", String(255), nullable=False, unique=True),
    Column("email", String(320), nullable=False),
    Column("email_key", String(320), nullable=False, unique=True),
    Column("phone_number", String(64)),  # stored verbatim
    Column("password_algorithm", String(32), nullable=False),
    Column("password_salt", String(64), nullable=False),
    Column("password_cost", Integer, nullable=False),
    Column("password_digest", String(128), nullable=False),
    Column("created_at", String(32), nullable=False),
)

identity_keys = Table(
    "identity_keys",
    metadata,
    Column("key", String(600), primary_key=True),
    Column("reservation_id", String(64), nullable=False, index=True),
    Column("account_id", String(36), index=True),  # NULL while reserved
    Column("expires_at", Float, index=True),  # NULL once claimed
)

sessions = Table(
    "sessions",
    metadata,
    Column("token_hash", String(64), primary_key=True),  # HMAC-SHA256 hex
    Column("account_id", String(36), nullable=False, index=True),
    Column("issued_at", Float, nullable=False),
    Column("expires_at", Float, nullable=False, index=True),
    Column("ttl_seconds", Integer, nullable=False),
    Column("revoked", Integer, nullable=False, server_default="0"),
)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. In-memory databases silently keep their
    own journal mode.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def make_engine(db_url: str) -> Engine:
    """Create an Engine for db_url and make sure every table exists.

    For SQLite the connection is shared across FastAPI's worker threads and
    waits up to 15s on a locked database before raising OperationalError,
    which the stores treat as transient.
    """
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = 15
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    metadata.create_all(engine)
    return engine

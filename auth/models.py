"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores own persistence,
PasswordHasher / SessionManager / AuthService do the work.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class CredentialHashRecord:
    """Everything needed to re-derive and check a password hash.

    salt is the 22-char bcrypt-base64 encoding of 16 random bytes. digest is
    the 31-char bcrypt checksum. Neither is ever compared with ==; see
    PasswordHasher.verify().
    """

    algorithm: str  # "bcrypt-sha256"
    salt: str
    cost: int
    digest: str


@dataclass
class Account:
    """A registered user's durable identity record.

    id is an opaque UUID4 string assigned by the store at creation and never
    changed. username and email keep the casing the user registered with;
    uniqueness is checked on their lowercased forms.
    """

    id: str
    username: str
    email: str
    password: CredentialHashRecord
    phone_number: str | None = None
    created_at: str = ""  # ISO 8601, set by store on insert


@dataclass(frozen=True)
class Reservation:
    """A short-lived claim on the uniqueness keys of an account being created.

    keys are the normalized storage keys, e.g. ("username:alice",
    "email:alice@x.com"). Held until claimed by create(), released, or
    expires_at passes.
    """

    id: str
    username: str
    email: str
    keys: tuple[str, ...]
    expires_at: datetime


@dataclass(frozen=True)
class SessionRecord:
    """Stored metadata of one session. The raw token is never part of it.

    token_hash is HMAC-SHA256(SECRET_KEY, token) as hex -- read access to the
    session table is not enough to present a valid token.
    """

    token_hash: str
    account_id: str
    issued_at: datetime
    expires_at: datetime
    ttl_seconds: int
    revoked: bool = False


@dataclass(frozen=True)
class LoginResult:
    """Returned by AuthService.login(). token is shown to the caller once."""

    token: str
    account: Account
    expires_at: datetime

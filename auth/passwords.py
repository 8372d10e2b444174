"""
auth/passwords.py -- Salted adaptive password hashing and timing-safe checks.

Security design decisions:
  bcrypt directly, no passlib wrapper. passlib's wrap-bug detection trips
  bcrypt 4.x, and bcrypt 5.x rejects inputs longer than 72 bytes outright.

  Pre-hash: the plaintext is first reduced to base64(HMAC-SHA256(salt, pw)),
  44 ASCII bytes with no NULs. Every byte of a long passphrase then counts,
  and bcrypt never sees more than its 72-byte window. The HMAC is keyed by
  the per-record salt so identical passwords never share a pre-hash.

  Records keep algorithm, salt, cost and digest as separate fields so
  needs_rehash() can tell when the configured cost has moved on.

  Verification re-derives the digest and compares with hmac.compare_digest.
  bcrypt's fixed work factor dominates the runtime, so the call takes the
  same time wherever the inputs differ.

  decoy is hashed once per PasswordHasher at the configured cost. Callers
  verify against it when the account does not exist so response time does
  not reveal whether an email is registered. After BCRYPT_ROUNDS changes,
  accounts still stored at the old cost verify at a different speed than
  the decoy until their next successful login rehashes them (see
  AuthService.login), so a wrong-password attempt against such an account
  is distinguishable from an unknown email during that window.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import secrets

import bcrypt

from auth.errors import WeakInputError
from auth.models import CredentialHashRecord

logger = logging.getLogger("authsvc.passwords")

ALGORITHM = "bcrypt-sha256"
_BCRYPT_PREFIX = "2b"
# "$2b$12$" is 7 chars; the 22-char salt follows, then the 31-char checksum.
_SETTING_LEN = 7 + 22


class PasswordHasher:
    """Derives and verifies bcrypt-sha256 credential records.

    Usage:
        hasher = PasswordHasher(rounds=12)
        record = hasher.hash("correct horse")
        hasher.verify("correct horse", record)   # True
        hasher.verify("wrong", record)           # False
    """

    def __init__(self, rounds: int = 12) -> None:
        self.rounds = rounds
        self._decoy = self.hash(secrets.token_urlsafe(16))

    @property
    def decoy(self) -> CredentialHashRecord:
        return self._decoy

    def hash(self, plaintext: str) -> CredentialHashRecord:
        """Return a fresh record for plaintext. Raises WeakInputError if it is empty."""
        if not plaintext:
            raise WeakInputError()
        setting = bcrypt.gensalt(rounds=self.rounds, prefix=_BCRYPT_PREFIX.encode("ascii"))
        salt = setting.decode("ascii")[7:]
        full = bcrypt.hashpw(_prehash(plaintext, salt), setting).decode("ascii")
        return CredentialHashRecord(
            algorithm=ALGORITHM,
            salt=salt,
            cost=self.rounds,
            digest=full[_SETTING_LEN:],
        )

    def verify(self, plaintext: str, record: CredentialHashRecord) -> bool:
        """Return True if plaintext matches record. Never raises."""
        if record.algorithm != ALGORITHM:
            logger.warning("Unsupported password algorithm %r", record.algorithm)
            return False
        try:
            setting = f"${_BCRYPT_PREFIX}${record.cost:02d}${record.salt}".encode("ascii")
            full = bcrypt.hashpw(_prehash(plaintext or "", record.salt), setting)
            expected = record.digest.encode("ascii")
        except (ValueError, TypeError):
            # UnicodeEncodeError is a ValueError.
            logger.warning("Malformed password record (cost=%s)", record.cost)
            return False
        return hmac.compare_digest(full[_SETTING_LEN:], expected)

    def needs_rehash(self, record: CredentialHashRecord) -> bool:
        return record.algorithm != ALGORITHM or record.cost != self.rounds


def _prehash(plaintext: str, salt: str) -> bytes:
    mac = hmac.new(salt.encode("ascii"), plaintext.encode("utf-8"), hashlib.sha256).digest()
    return base64.b64encode(mac)

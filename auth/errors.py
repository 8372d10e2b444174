"""
auth/errors.py -- Exception taxonomy for the auth core.

Every failure an operation can report is one of these classes. The core never
builds HTTP responses; api/main.py maps each class to a status code and a
{"message": ...} body in its exception handlers.

  AuthError
    ValidationError        malformed or missing input (400)
      WeakInputError       empty plaintext handed to the password hasher
    DuplicateError         username or email already taken (400)
    ReservationExpired     reservation lapsed before the account was written (409)
    InvalidCredentials     login failed, cause deliberately unspecified (401)
    Unauthenticated        session token unusable (401)
      SessionNotFound
      SessionExpired
      SessionRevoked
    StorageUnavailable     backing store unreachable after retries (503)

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for all auth core failures."""

    message = "Authentication error."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)
        self.message = message or self.message


class ValidationError(AuthError):
    """Input failed a shape check. field_errors maps wire field name -> reason."""

    message = "All fields are required."

    def __init__(self, message: str | None = None, field_errors: dict[str, str] | None = None) -> None:
        super().__init__(message)
        self.field_errors: dict[str, str] = field_errors or {}


class WeakInputError(ValidationError):
    message = "Password must not be empty."


class DuplicateError(AuthError):
    # Generic on purpose: the caller is not told which of the two keys collided.
    message = "Username or email is already in use."


class ReservationExpired(AuthError):
    message = "Registration took too long. Please try again."


class InvalidCredentials(AuthError):
    message = "Invalid email or password."


class Unauthenticated(AuthError):
    message = "Authentication required."


class SessionNotFound(Unauthenticated):
    pass


class SessionExpired(Unauthenticated):
    pass


class SessionRevoked(Unauthenticated):
    pass


class StorageUnavailable(AuthError):
    message = "Service temporarily unavailable."

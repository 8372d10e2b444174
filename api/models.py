"""
API request and response models for the auth service REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Wire names are camelCase (phoneNumber, fieldErrors); Python attributes are
snake_case. populate_by_name lets tests and callers use either.

Request fields are all Optional with no min length: blank and missing values
reach AuthService, which reports them per field in a single ValidationError.
Pydantic only rejects wrong types and oversized values here.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import Account

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /auth/register."""

    model_config = ConfigDict(populate_by_name=True)

    username: Optional[str] = Field(default=None, max_length=255)
    email: Optional[str] = Field(default=None, max_length=320)
    phone_number: Optional[str] = Field(default=None, alias="phoneNumber", max_length=64)
    # Upper bound keeps a single request from feeding megabytes into HMAC.
    password: Optional[str] = Field(default=None, max_length=1024)


class LoginRequest(BaseModel):
    """Request body for POST /auth/login."""

    email: Optional[str] = Field(default=None, max_length=320)
    password: Optional[str] = Field(default=None, max_length=1024)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class MessageResponse(BaseModel):
    message: str


class UserInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    username: str
    email: str
    phone_number: str = Field(default="", alias="phoneNumber")

    @classmethod
    def from_account(cls, account: Account) -> "UserInfo":
        return cls(
            id=account.id,
            username=account.username,
            email=account.email,
            phone_number=account.phone_number or "",
        )


class LoginResponse(BaseModel):
    message: str
    user: UserInfo


class ErrorResponse(BaseModel):
    """Envelope for every non-2xx response."""

    model_config = ConfigDict(populate_by_name=True)

    message: str
    field_errors: Optional[dict[str, str]] = Field(default=None, alias="fieldErrors")


class HealthResponse(BaseModel):
    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)

"""Pydantic schemas for authentication endpoints.

Field names travel camelCased on the wire (``userId``, ``hasPasskey``).
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel

from latchkey.auth.otp import CODE_LENGTH


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SignupCodeRequest(CamelModel):
    """Request body for a signup code."""

    name: str = Field(min_length=1, max_length=100)
    email: EmailStr

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Name must not be blank")
        return v


class LoginCodeRequest(CamelModel):
    """Request body for a login code."""

    email: EmailStr


class CodeVerifyRequest(CamelModel):
    """Request body for redeeming a code."""

    token: str = Field(min_length=1)
    code: str = Field(min_length=CODE_LENGTH, max_length=CODE_LENGTH)

    @field_validator("code")
    @classmethod
    def code_alphanumeric(cls, v: str) -> str:
        if not v.isascii() or not v.isalnum():
            raise ValueError("Code must be letters and digits")
        return v


class PasskeyAuthRequest(CamelModel):
    """Request body to start a passkey sign-in for an address."""

    email: EmailStr


class PasskeyRegisterVerifyRequest(CamelModel):
    """Request body to finish a passkey registration."""

    user_id: int
    token: str = Field(min_length=1)
    response: dict[str, Any]


class PasskeyVerifyRequest(CamelModel):
    """Request body to finish a passkey sign-in."""

    token: str = Field(min_length=1)
    response: dict[str, Any]


class UpdateUserRequest(CamelModel):
    """Request body to rename the current user."""

    name: str = Field(min_length=1, max_length=100)

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Name must not be blank")
        return v


class UserResponse(CamelModel):
    """Response with user info."""

    id: int
    name: str
    email: str
    created_at: datetime | None = None
    has_passkey: bool | None = None


class CodeSentResponse(CamelModel):
    """A code was dispatched; redeem it with this token."""

    success: bool = True
    token: str


class AuthenticatedResponse(CamelModel):
    """The caller is now signed in."""

    success: bool = True
    user: UserResponse


class PasskeyOptionsResponse(CamelModel):
    """WebAuthn options plus the token carrying their challenge."""

    options: dict[str, Any]
    token: str


class SuccessResponse(CamelModel):
    """Generic success response."""

    success: bool = True

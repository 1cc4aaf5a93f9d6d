"""Pydantic schemas for the auth and credits API.

JSON bodies use camelCase on the wire; Python attributes stay snake_case.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from authledger.auth.credits import CreditAction
from authledger.auth.events import UsageDetails
from authledger.models import CreditType


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class RegisterRequest(CamelModel):
    email: str = Field(..., max_length=255)
    password: str = Field(..., max_length=1024)
    name: str | None = Field(default=None, max_length=255)


class LoginRequest(CamelModel):
    email: str = Field(..., max_length=255)
    password: str = Field(..., max_length=1024)


class TokenResponse(CamelModel):
    """Access token returned on login, registration or refresh.

    The refresh token travels only in the HttpOnly cookie.
    """

    access_token: str
    token_type: str = "bearer"
    expires_at: datetime = Field(description="Session expiry")
    expires_in: int = Field(description="Access token lifetime in seconds")


class UserResponse(CamelModel):
    """Public user profile."""

    id: str
    email: str
    name: str | None = None
    avatar_url: str | None = None
    email_verified: bool
    created_at: datetime


class CreditBalanceResponse(CamelModel):
    daily: int
    purchased: int
    total: int


class MeResponse(CamelModel):
    user: UserResponse
    credits: CreditBalanceResponse


class ForgotPasswordRequest(CamelModel):
    email: str = Field(..., max_length=255)


class ResetPasswordRequest(CamelModel):
    token: str
    password: str = Field(..., max_length=1024)


class ChangePasswordRequest(CamelModel):
    current_password: str = Field(..., max_length=1024)
    new_password: str = Field(..., max_length=1024)


class VerifyEmailRequest(CamelModel):
    token: str


class MessageResponse(CamelModel):
    success: bool = True
    message: str
    token: str | None = Field(
        default=None,
        description="One-time token, echoed only in development",
    )


class UsageRecordResponse(CamelModel):
    id: str
    credits_deducted: int
    credit_type_used: CreditType
    action_type: str
    details: dict[str, Any] | None = Field(default=None, serialization_alias="metadata")
    created_at: datetime


class UsageHistoryResponse(CamelModel):
    usage: list[UsageRecordResponse]


class CreditCostsResponse(CamelModel):
    """Maps action names to credit costs."""

    costs: dict[str, int]


class SpendRequest(CamelModel):
    action_type: CreditAction
    details: UsageDetails | None = None

    @model_validator(mode="after")
    def details_match_action(self) -> "SpendRequest":
        if self.details is not None and self.details.kind != self.action_type.value:
            raise ValueError(f"details.kind must be {self.action_type.value}")
        return self


class SpendResponse(CamelModel):
    charged: int
    credits: CreditBalanceResponse


class PurchaseRequest(CamelModel):
    product_id: str


class PurchaseResponse(CamelModel):
    checkout_url: str
    product_id: str
    credits: int
    price_cents: int


class WebhookResponse(CamelModel):
    success: bool = True
    message: str

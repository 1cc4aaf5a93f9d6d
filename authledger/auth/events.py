"""Typed metadata attached to audit events and credit usage.

Each audit event kind has exactly one details model, tagged with a literal
``kind`` equal to the event type value. Credit usage details form a
discriminated union over the metered action kinds.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from authledger.models import AuditEventType


class _Details(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


# --- Audit event details ---


class LoginDetails(_Details):
    kind: Literal["login"] = "login"
    method: Literal["password", "oauth"] = "password"
    provider: str | None = None
    session_id: str | None = None


class LogoutDetails(_Details):
    kind: Literal["logout"] = "logout"
    session_id: str


class RegisterDetails(_Details):
    kind: Literal["register"] = "register"
    method: Literal["password", "oauth"] = "password"
    provider: str | None = None


class PasswordChangeDetails(_Details):
    kind: Literal["password_change"] = "password_change"
    via: Literal["change", "reset"] = "change"
    sessions_invalidated: int = 0


class PasswordResetDetails(_Details):
    """A reset link was requested."""

    kind: Literal["password_reset"] = "password_reset"


class EmailVerifiedDetails(_Details):
    kind: Literal["email_verified"] = "email_verified"


class OAuthLinkedDetails(_Details):
    kind: Literal["oauth_linked"] = "oauth_linked"
    provider: str


class OAuthUnlinkedDetails(_Details):
    kind: Literal["oauth_unlinked"] = "oauth_unlinked"
    provider: str


class CreditsPurchasedDetails(_Details):
    kind: Literal["credits_purchased"] = "credits_purchased"
    payment_id: str
    product_id: str
    credits: int
    amount_cents: int = 0


class CreditsDeductedDetails(_Details):
    kind: Literal["credits_deducted"] = "credits_deducted"
    action_type: str
    amount: int


class AccountDeletedDetails(_Details):
    kind: Literal["account_deleted"] = "account_deleted"
    former_user_id: str


class FailedLoginDetails(_Details):
    kind: Literal["failed_login"] = "failed_login"
    reason: Literal["unknown_user", "invalid_password", "no_password", "oauth_error"]
    provider: str | None = None


class SuspiciousActivityDetails(_Details):
    kind: Literal["suspicious_activity"] = "suspicious_activity"
    reason: str
    failed_attempts: int | None = None


AuditDetails = Union[
    LoginDetails,
    LogoutDetails,
    RegisterDetails,
    PasswordChangeDetails,
    PasswordResetDetails,
    EmailVerifiedDetails,
    OAuthLinkedDetails,
    OAuthUnlinkedDetails,
    CreditsPurchasedDetails,
    CreditsDeductedDetails,
    AccountDeletedDetails,
    FailedLoginDetails,
    SuspiciousActivityDetails,
]

EVENT_DETAILS: dict[AuditEventType, type[_Details]] = {
    AuditEventType.LOGIN: LoginDetails,
    AuditEventType.LOGOUT: LogoutDetails,
    AuditEventType.REGISTER: RegisterDetails,
    AuditEventType.PASSWORD_CHANGE: PasswordChangeDetails,
    AuditEventType.PASSWORD_RESET: PasswordResetDetails,
    AuditEventType.EMAIL_VERIFIED: EmailVerifiedDetails,
    AuditEventType.OAUTH_LINKED: OAuthLinkedDetails,
    AuditEventType.OAUTH_UNLINKED: OAuthUnlinkedDetails,
    AuditEventType.CREDITS_PURCHASED: CreditsPurchasedDetails,
    AuditEventType.CREDITS_DEDUCTED: CreditsDeductedDetails,
    AuditEventType.ACCOUNT_DELETED: AccountDeletedDetails,
    AuditEventType.FAILED_LOGIN: FailedLoginDetails,
    AuditEventType.SUSPICIOUS_ACTIVITY: SuspiciousActivityDetails,
}


def check_event_details(event_type: AuditEventType, details: _Details | None) -> None:
    """Ensure ``details`` is the model registered for ``event_type``.

    Raises:
        TypeError: On a mismatched details model.
    """
    if details is None:
        return
    expected = EVENT_DETAILS[event_type]
    if not isinstance(details, expected):
        raise TypeError(
            f"{event_type.value} events take {expected.__name__}, "
            f"got {type(details).__name__}"
        )


# --- Credit usage details ---


class ChatMessageUsage(_Details):
    kind: Literal["chat_message"] = "chat_message"
    chat_id: str | None = None
    model: str | None = None


class ApiCallUsage(_Details):
    kind: Literal["api_call"] = "api_call"
    endpoint: str | None = None


UsageDetails = Annotated[
    Union[ChatMessageUsage, ApiCallUsage],
    Field(discriminator="kind"),
]

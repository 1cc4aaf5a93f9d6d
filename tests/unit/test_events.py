"""Unit tests for typed audit and usage details."""

import pytest
from pydantic import TypeAdapter, ValidationError

from authledger.auth.events import (
    EVENT_DETAILS,
    ApiCallUsage,
    ChatMessageUsage,
    FailedLoginDetails,
    LoginDetails,
    LogoutDetails,
    UsageDetails,
    check_event_details,
)
from authledger.models import AuditEventType


@pytest.mark.fast
class TestAuditDetails:
    def test_every_event_type_has_a_model(self):
        assert set(EVENT_DETAILS) == set(AuditEventType)

    def test_kind_matches_event_type(self):
        for event_type, model in EVENT_DETAILS.items():
            assert model.model_fields["kind"].default == event_type.value

    def test_to_json_drops_nones(self):
        details = LoginDetails(method="password", session_id="s-1")
        assert details.to_json() == {
            "kind": "login",
            "method": "password",
            "session_id": "s-1",
        }

    def test_unknown_fields_rejected(self):
        with pytest.raises(ValidationError):
            LogoutDetails(session_id="s-1", extra="nope")

    def test_failed_login_reason_is_closed(self):
        with pytest.raises(ValidationError):
            FailedLoginDetails(reason="because")

    def test_check_accepts_matching_model(self):
        check_event_details(AuditEventType.LOGOUT, LogoutDetails(session_id="s-1"))
        check_event_details(AuditEventType.LOGOUT, None)

    def test_check_rejects_mismatched_model(self):
        with pytest.raises(TypeError, match="LogoutDetails"):
            check_event_details(AuditEventType.LOGOUT, LoginDetails())


@pytest.mark.fast
class TestUsageDetails:
    def test_discriminated_by_kind(self):
        adapter = TypeAdapter(UsageDetails)
        chat = adapter.validate_python({"kind": "chat_message", "chat_id": "c-1"})
        api = adapter.validate_python({"kind": "api_call", "endpoint": "/v1/x"})
        assert isinstance(chat, ChatMessageUsage)
        assert isinstance(api, ApiCallUsage)

    def test_unknown_kind_rejected(self):
        with pytest.raises(ValidationError):
            TypeAdapter(UsageDetails).validate_python({"kind": "image"})

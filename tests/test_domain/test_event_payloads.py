"""Tests for event type catalogue and payload validation"""
from datetime import datetime, timezone

import pytest

from followup.domain.events import (
    INGESTIBLE_EVENT_TYPES,
    PAYLOAD_SCHEMAS,
    EventPayloadValidationError,
    EventType,
    ReminderDuePayload,
    parse_event_type,
    read_payload,
    validate_payload,
)

_tz = timezone.utc


class TestCatalogue:
    def test_every_type_has_schema(self):
        assert set(PAYLOAD_SCHEMAS) == set(EventType)

    def test_unknown_type_rejected(self):
        with pytest.raises(EventPayloadValidationError):
            parse_event_type("reminder_exploded")

    def test_internal_types_not_ingestible(self):
        assert EventType.REMINDER_TRIGGERED not in INGESTIBLE_EVENT_TYPES
        assert EventType.EMAIL_OPENED in INGESTIBLE_EVENT_TYPES


class TestValidatePayload:
    def test_datetimes_normalised_to_iso(self):
        data = validate_payload("reminder_due", {
            "intended_fire_time": datetime(2026, 1, 12, 10, 0, tzinfo=_tz),
            "processed_at": datetime(2026, 1, 12, 10, 2, tzinfo=_tz),
        })
        assert set(data) == {"intended_fire_time", "processed_at"}
        assert isinstance(data["intended_fire_time"], str)
        assert datetime.fromisoformat(data["processed_at"]) == datetime(2026, 1, 12, 10, 2, tzinfo=_tz)

    def test_missing_field(self):
        with pytest.raises(EventPayloadValidationError):
            validate_payload(EventType.REMINDER_DUE, {"processed_at": "2026-01-12T10:00:00+00:00"})

    def test_extra_field(self):
        with pytest.raises(EventPayloadValidationError):
            validate_payload(EventType.LINK_CLICKED, {"url": "https://x.test", "colour": "red"})

    def test_none_fields_dropped(self):
        data = validate_payload(EventType.REMINDER_SUPPRESSED, {
            "reason_code": "CATEGORY_DISABLED",
            "intended_fire_time": "2026-01-12T10:00:00+00:00",
            "evaluated_at": "2026-01-12T10:00:00+00:00",
            "next_attempt_time": None,
        })
        assert "next_attempt_time" not in data
        assert data["reason_code"] == "CATEGORY_DISABLED"

    def test_no_reply_needs_positive_days(self):
        with pytest.raises(EventPayloadValidationError):
            validate_payload(EventType.NO_REPLY_AFTER_N_DAYS, {"days_without_reply": 0})

    def test_empty_payload_for_all_optional_schema(self):
        assert validate_payload(EventType.EMAIL_OPENED, None) == {}


class TestReadPayload:
    def test_typed_model_back(self):
        stored = validate_payload(EventType.REMINDER_DUE, {
            "intended_fire_time": "2026-01-12T10:00:00+00:00",
            "processed_at": "2026-01-12T10:02:00+00:00",
        })
        model = read_payload("reminder_due", stored)
        assert isinstance(model, ReminderDuePayload)
        assert model.intended_fire_time == datetime(2026, 1, 12, 10, 0, tzinfo=_tz)

"""Tests for booking policy: slot parsing, transitions and the refund rule."""

from datetime import datetime, timedelta, timezone

import pytest

from casedesk.booking.errors import InvalidStateTransition, ValidationError
from casedesk.booking.policy import (
    SLOT_DURATION_MINUTES,
    RefundStatus,
    business_hours,
    can_transition,
    ensure_transition,
    is_terminal,
    normalize_method,
    parse_slot,
    refund_decision,
    slot_end,
    validate_slot,
)
from casedesk.models.consultation import ConsultationMethod


NOW = datetime(2030, 6, 3, 9, 15, tzinfo=timezone.utc)


class TestParseSlot:
    """Date and time strings from the booking form."""

    def test_valid_slot_is_utc(self):
        slot = parse_slot("2030-06-05", "14:00")
        assert slot == datetime(2030, 6, 5, 14, tzinfo=timezone.utc)

    @pytest.mark.parametrize("value", ["2030-6-05", "05/06/2030", "2030-13-01", "", "tomorrow"])
    def test_bad_date_rejected(self, value):
        with pytest.raises(ValidationError):
            parse_slot(value, "10:00")

    @pytest.mark.parametrize("value", ["9:00", "10:00:00", "25:00", "ten"])
    def test_bad_time_rejected(self, value):
        with pytest.raises(ValidationError):
            parse_slot("2030-06-05", value)

    def test_start_must_be_on_the_hour(self):
        with pytest.raises(ValidationError, match="on the hour"):
            parse_slot("2030-06-05", "10:30")


class TestNormalizeMethod:
    def test_online_alias_maps_to_zoom(self):
        assert normalize_method("online") == ConsultationMethod.ZOOM

    def test_in_person_alias(self):
        assert normalize_method("in_person") == ConsultationMethod.IN_PERSON

    def test_stored_values_accepted_case_insensitively(self):
        assert normalize_method("Phone") == ConsultationMethod.PHONE
        assert normalize_method("google-meet") == ConsultationMethod.GOOGLE_MEET

    @pytest.mark.parametrize("value", ["fax", "", None])
    def test_unknown_method_rejected(self, value):
        with pytest.raises(ValidationError):
            normalize_method(value)


class TestValidateSlot:
    def test_business_hours_cover_ten_slots(self):
        slots = business_hours(NOW.date())
        assert len(slots) == 10
        assert slots[0].hour == 8
        assert slots[-1].hour == 17

    def test_last_slot_of_the_day_allowed(self):
        validate_slot(datetime(2030, 6, 4, 17, tzinfo=timezone.utc), NOW)

    @pytest.mark.parametrize("hour", [7, 18, 22])
    def test_outside_business_hours_rejected(self, hour):
        with pytest.raises(ValidationError):
            validate_slot(datetime(2030, 6, 4, hour, tzinfo=timezone.utc), NOW)

    def test_past_slot_rejected(self):
        with pytest.raises(ValidationError, match="past"):
            validate_slot(datetime(2030, 6, 3, 9, tzinfo=timezone.utc), NOW)

    def test_slot_end_is_one_fixed_duration(self):
        start = datetime(2030, 6, 4, 17, tzinfo=timezone.utc)

        assert SLOT_DURATION_MINUTES == 60
        assert slot_end(start) == datetime(2030, 6, 4, 18, tzinfo=timezone.utc)


class TestTransitions:
    """Consultation status machine."""

    @pytest.mark.parametrize(
        "current,target",
        [
            ("hold", "confirmed"),
            ("hold", "cancelled"),
            ("hold", "rescheduled"),
            ("confirmed", "completed"),
            ("confirmed", "cancelled"),
            ("confirmed", "rescheduled"),
        ],
    )
    def test_allowed(self, current, target):
        assert can_transition(current, target)

    @pytest.mark.parametrize(
        "current,target",
        [
            ("hold", "completed"),
            ("confirmed", "hold"),
            ("completed", "cancelled"),
            ("cancelled", "confirmed"),
            ("rescheduled", "confirmed"),
            ("bogus", "confirmed"),
            ("hold", "bogus"),
        ],
    )
    def test_forbidden(self, current, target):
        assert not can_transition(current, target)

    def test_ensure_transition_raises(self):
        with pytest.raises(InvalidStateTransition):
            ensure_transition("completed", "cancelled")

    def test_terminal_statuses(self):
        assert is_terminal("completed")
        assert is_terminal("cancelled")
        assert is_terminal("rescheduled")
        assert not is_terminal("hold")
        assert not is_terminal("confirmed")


class TestRefundDecision:
    """Refunds apply only more than 24 hours before the slot."""

    START = datetime(2030, 6, 10, 10, tzinfo=timezone.utc)

    def test_refund_48_hours_out(self):
        decision = refund_decision(self.START, self.START - timedelta(hours=48), True)
        assert decision.refundable
        assert decision.status == RefundStatus.REFUND_PROCESSED

    def test_no_refund_2_hours_out(self):
        decision = refund_decision(self.START, self.START - timedelta(hours=2), True)
        assert not decision.refundable
        assert decision.status == RefundStatus.NO_REFUND_WITHIN_WINDOW

    def test_exactly_24_hours_is_not_refunded(self):
        decision = refund_decision(self.START, self.START - timedelta(hours=24), True)
        assert not decision.refundable

    def test_unpaid_is_not_refunded(self):
        decision = refund_decision(self.START, self.START - timedelta(days=5), False)
        assert not decision.refundable
        assert decision.status == RefundStatus.NOT_PAID

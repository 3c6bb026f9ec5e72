"""
Tests for registration eligibility.
"""

import pytest
from datetime import datetime, timezone, timedelta

from app.client.eligibility import (
    RegistrationMessage,
    evaluate_eligibility,
    is_deadline_passed,
    is_event_ended,
    is_event_full,
    parse_datetime,
)
from app.models.registration import EventStatus, RegistrationStatus
from app.schemas.registration import EventResponse

NOW = datetime(2025, 6, 1, 12, 0, 0, tzinfo=timezone.utc)
VIEWER = 42


def open_event(**overrides) -> dict:
    event = {
        "id": 1,
        "title": "Community Meetup",
        "status": "published",
        "start_time": (NOW + timedelta(days=1)).isoformat(),
        "end_time": (NOW + timedelta(days=1, hours=3)).isoformat(),
        "registration_deadline": None,
        "max_attendees": None,
        "is_external_event": False,
    }
    event.update(overrides)
    return event


class TestEligibilityGates:
    """Each gate alone blocks registration."""

    def test_open_event(self):
        result = evaluate_eligibility(open_event(), 0, VIEWER, now=NOW)

        assert result.can_register
        assert result.message == RegistrationMessage.OPEN
        assert result.blockers == ()

    @pytest.mark.parametrize("overrides,count,viewer,existing,message", [
        ({"status": "draft"}, 0, VIEWER, None, RegistrationMessage.NOT_PUBLISHED),
        ({"end_time": (NOW - timedelta(hours=1)).isoformat()}, 0, VIEWER, None, RegistrationMessage.ENDED),
        ({"registration_deadline": (NOW - timedelta(minutes=1)).isoformat()}, 0, VIEWER, None,
         RegistrationMessage.DEADLINE_PASSED),
        ({"max_attendees": 10}, 10, VIEWER, None, RegistrationMessage.FULL),
        ({"is_external_event": True}, 0, VIEWER, None, RegistrationMessage.EXTERNAL_EVENT),
        ({}, 0, VIEWER, {"status": "approved"}, RegistrationMessage.REGISTERED),
        ({}, 0, None, None, RegistrationMessage.LOGIN_REQUIRED),
    ])
    def test_single_gate_blocks(self, overrides, count, viewer, existing, message):
        result = evaluate_eligibility(open_event(**overrides), count, viewer, existing, now=NOW)

        assert not result.can_register
        assert result.message == message
        assert result.blockers == (message,)

    def test_cancelled_registration_does_not_block(self):
        result = evaluate_eligibility(open_event(), 0, VIEWER, {"status": "cancelled"}, now=NOW)

        assert result.can_register
        assert not result.has_active_registration

    @pytest.mark.parametrize("status,message", [
        ("pending", RegistrationMessage.PENDING_APPROVAL),
        ("waitlisted", RegistrationMessage.WAITLISTED),
        ("rejected", RegistrationMessage.REJECTED),
        (RegistrationStatus.PENDING_PAYMENT, RegistrationMessage.PAYMENT_PENDING),
    ])
    def test_existing_registration_message(self, status, message):
        result = evaluate_eligibility(open_event(), 0, VIEWER, {"status": status}, now=NOW)

        assert not result.can_register
        assert result.message == message

    def test_pending_payment_can_resume(self):
        result = evaluate_eligibility(open_event(), 0, VIEWER, {"status": "pending_payment"}, now=NOW)

        assert result.can_resume_payment
        assert not result.can_register


class TestMessagePrecedence:
    """The first matching blocker is shown."""

    def test_identity_first(self):
        event = open_event(status="draft", is_external_event=True, max_attendees=1)

        result = evaluate_eligibility(event, 5, None, now=NOW)

        assert result.message == RegistrationMessage.LOGIN_REQUIRED
        assert RegistrationMessage.NOT_PUBLISHED in result.blockers

    def test_existing_registration_before_ended(self):
        event = open_event(end_time=(NOW - timedelta(days=1)).isoformat())

        result = evaluate_eligibility(event, 0, VIEWER, {"status": "approved"}, now=NOW)

        assert result.message == RegistrationMessage.REGISTERED
        assert result.is_ended

    def test_ended_before_full(self):
        event = open_event(end_time=(NOW - timedelta(days=1)).isoformat(), max_attendees=1)

        result = evaluate_eligibility(event, 1, VIEWER, now=NOW)

        assert result.blockers == (RegistrationMessage.ENDED, RegistrationMessage.FULL)

    def test_blockers_in_order(self):
        event = open_event(
            status="draft",
            end_time=(NOW - timedelta(hours=1)).isoformat(),
            registration_deadline=(NOW - timedelta(hours=2)).isoformat(),
            max_attendees=0,
        )

        result = evaluate_eligibility(event, 0, VIEWER, now=NOW)

        assert result.blockers == (
            RegistrationMessage.ENDED,
            RegistrationMessage.DEADLINE_PASSED,
            RegistrationMessage.FULL,
            RegistrationMessage.NOT_PUBLISHED,
        )


class TestEndedSemantics:
    """Ended is the end time OR the completed status."""

    def test_one_second_around_end(self):
        """Open one second before the end, ended one second after, while still published."""
        end = NOW
        event = open_event(end_time=end.isoformat())

        before = evaluate_eligibility(event, 0, VIEWER, now=end - timedelta(seconds=1))
        after = evaluate_eligibility(event, 0, VIEWER, now=end + timedelta(seconds=1))

        assert before.can_register
        assert not after.can_register
        assert after.message == RegistrationMessage.ENDED

    def test_completed_status_ends_early(self):
        event = open_event(status="completed")

        assert is_event_ended(event, NOW)
        assert evaluate_eligibility(event, 0, VIEWER, now=NOW).message == RegistrationMessage.ENDED

    def test_malformed_dates_count_as_passed(self):
        event = open_event(end_time="not-a-date", registration_deadline="31/02/2025")

        assert is_event_ended(event, NOW)
        assert is_deadline_passed(event, NOW)
        assert not evaluate_eligibility(event, 0, VIEWER, now=NOW).can_register

    def test_missing_deadline_is_open(self):
        assert not is_deadline_passed(open_event(registration_deadline=None), NOW)

    def test_parse_datetime(self):
        assert parse_datetime("2025-06-01T12:00:00Z") == NOW
        assert parse_datetime(datetime(2025, 6, 1, 12, 0, 0)) == NOW
        assert parse_datetime("") is None


class TestCapacity:
    """Full events reopen when a registration is cancelled."""

    def test_full_then_cancel(self):
        event = open_event(max_attendees=3)

        full = evaluate_eligibility(event, 3, VIEWER, now=NOW)
        after_cancel = evaluate_eligibility(event, 2, VIEWER, now=NOW)

        assert not full.can_register
        assert full.is_full
        assert after_cancel.can_register

    def test_works_with_schema(self):
        event = EventResponse(
            id=1,
            title="Meetup",
            status=EventStatus.PUBLISHED,
            end_time=NOW + timedelta(hours=2),
            max_attendees=2,
        )

        assert evaluate_eligibility(event, 1, VIEWER, now=NOW).can_register
        assert evaluate_eligibility(event, 2, VIEWER, now=NOW).message == RegistrationMessage.FULL

    def test_unknown_count_is_not_full(self):
        event = open_event(max_attendees=1)

        assert not is_event_full(event, None)
        assert evaluate_eligibility(event, None, VIEWER, now=NOW).can_register
        assert is_event_full(open_event(max_attendees=0), None)

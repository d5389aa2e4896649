"""
Unit tests for Google Calendar event <-> calendar_events row mapping.
"""

from datetime import UTC, datetime, timedelta, timezone

import pytest

from agent.fsm.sync_state import InvalidSyncStateError
from agent.services.gcal_mapper import (
    GoogleEventV3,
    apply_row_values,
    as_utc,
    build_google_event_payload,
    google_event_to_row_values,
    new_event_row,
    parse_provider_event,
)
from database.models import CalendarEventOrigin, CalendarSyncStatus
from tests.fakes import google_event, make_event


# ============================================================================
# parse_provider_event
# ============================================================================


class TestParseProviderEvent:
    """Tests for provider payload validation."""

    def test_valid_event(self):
        event = parse_provider_event(google_event("evt-1", summary="Soundcheck"))

        assert isinstance(event, GoogleEventV3)
        assert event.id == "evt-1"
        assert event.summary == "Soundcheck"
        assert event.updated == datetime(2025, 3, 1, 11, 0, tzinfo=UTC)

    def test_missing_id_returns_none(self):
        payload = google_event("evt-1")
        del payload["id"]

        assert parse_provider_event(payload) is None

    def test_unknown_kind_returns_none(self):
        assert parse_provider_event(google_event("evt-1", kind="calendar#acl")) is None

    def test_malformed_payload_returns_none(self):
        """A field with the wrong shape drops the item instead of raising."""
        assert parse_provider_event(google_event("evt-1", start="tomorrow")) is None

    def test_non_dict_returns_none(self):
        assert parse_provider_event(["evt-1"]) is None

    def test_kind_defaults_to_event(self):
        payload = google_event("evt-1")
        del payload["kind"]

        assert parse_provider_event(payload).kind == "calendar#event"

    def test_unknown_fields_kept(self):
        event = parse_provider_event(google_event("evt-1", colorId="5"))

        assert event.model_dump(by_alias=True)["colorId"] == "5"


# ============================================================================
# build_google_event_payload
# ============================================================================


class TestBuildGoogleEventPayload:
    """Tests for local row -> events.insert/patch body."""

    def test_timed_event(self, source):
        row = make_event(source, description="Load-in 16:00")

        payload = build_google_event_payload(row)

        assert payload == {
            "summary": "Hold: Venue X",
            "description": "Load-in 16:00",
            "location": "Venue X, London",
            "status": "confirmed",
            "start": {"dateTime": "2025-03-10T20:00:00Z"},
            "end": {"dateTime": "2025-03-10T23:00:00Z"},
        }

    def test_all_day_event_uses_date(self, source):
        row = make_event(source, start_at="2025-04-01", end_at="2025-04-02", is_all_day=True)

        payload = build_google_event_payload(row)

        assert payload["start"] == {"date": "2025-04-01"}
        assert payload["end"] == {"date": "2025-04-02"}

    def test_all_day_flag_truncates_datetime(self, source):
        """is_all_day=True sends a date even when a time component is stored."""
        row = make_event(
            source,
            start_at="2025-04-01T00:00:00Z",
            end_at="2025-04-02T00:00:00Z",
            is_all_day=True,
        )

        assert build_google_event_payload(row)["start"] == {"date": "2025-04-01"}

    def test_date_without_time_is_all_day(self, source):
        row = make_event(source, start_at="2025-04-01", end_at="2025-04-02", is_all_day=False)

        assert build_google_event_payload(row)["end"] == {"date": "2025-04-02"}

    def test_timezone_attached(self, source):
        row = make_event(source, start_at="2025-03-10T20:00:00", timezone="Europe/Madrid")

        assert build_google_event_payload(row)["start"] == {
            "dateTime": "2025-03-10T20:00:00",
            "timeZone": "Europe/Madrid",
        }

    def test_none_fields_omitted(self, source):
        row = make_event(source, location=None, status=None, start_at=None, end_at=None)

        payload = build_google_event_payload(row)

        assert "location" not in payload
        assert "status" not in payload
        assert "start" not in payload
        assert "end" not in payload

    def test_attendees_and_organizer(self, source):
        attendees = [{"email": "promoter@example.com"}]
        organizer = {"email": "manager@example.com"}
        row = make_event(source, attendees=attendees, organizer=organizer)

        payload = build_google_event_payload(row)

        assert payload["attendees"] == attendees
        assert payload["organizer"] == organizer


# ============================================================================
# google_event_to_row_values
# ============================================================================


class TestGoogleEventToRowValues:
    """Tests for provider event -> column values."""

    def test_timed_event(self, source, now):
        event = parse_provider_event(
            google_event(
                "evt-1",
                summary="Festival slot",
                location="Main stage",
                hangoutLink="https://meet.google.com/abc",
                attendees=[{"email": "a@example.com"}],
            )
        )

        values = google_event_to_row_values(event, source, now)

        assert values["user_source_id"] == source.id
        assert values["calendar_id"] == "primary"
        assert values["event_id"] == "evt-1"
        assert values["summary"] == "Festival slot"
        assert values["start_at"] == "2025-03-12T19:00:00Z"
        assert values["end_at"] == "2025-03-12T21:00:00Z"
        assert values["is_all_day"] is False
        assert values["hangout_link"] == "https://meet.google.com/abc"
        assert values["attendees"] == [{"email": "a@example.com"}]
        assert values["google_etag"] == '"etag-evt-1"'
        assert values["sync_status"] == CalendarSyncStatus.SYNCED
        assert values["origin"] == CalendarEventOrigin.GOOGLE
        assert values["pending_action"] is None
        assert values["sync_error"] is None
        assert values["last_synced_at"] == now
        assert values["last_google_updated_at"] == datetime(2025, 3, 1, 11, 0, tzinfo=UTC)
        assert values["last_kazador_updated_at"] is None
        assert values["ignore"] is False
        assert values["raw"]["id"] == "evt-1"

    def test_all_day_event(self, source, now):
        event = parse_provider_event(
            google_event("evt-2", start={"date": "2025-05-01"}, end={"date": "2025-05-02"})
        )

        values = google_event_to_row_values(event, source, now)

        assert values["start_at"] == "2025-05-01"
        assert values["end_at"] == "2025-05-02"
        assert values["is_all_day"] is True

    def test_cancelled_event_marked_deleted_and_ignored(self, source, now):
        event = parse_provider_event(google_event("evt-3", status="cancelled"))

        values = google_event_to_row_values(event, source, now)

        assert values["sync_status"] == CalendarSyncStatus.DELETED
        assert values["ignore"] is True

    def test_timezone_precedence(self, source, now):
        """start.timeZone, then end.timeZone, then the source's timezone."""
        with_start = parse_provider_event(
            google_event(
                "evt-4",
                start={"dateTime": "2025-03-12T19:00:00", "timeZone": "America/New_York"},
                end={"dateTime": "2025-03-12T21:00:00", "timeZone": "Europe/Paris"},
            )
        )
        with_end = parse_provider_event(
            google_event(
                "evt-5",
                end={"dateTime": "2025-03-12T21:00:00", "timeZone": "Europe/Paris"},
            )
        )
        without = parse_provider_event(google_event("evt-6"))

        assert google_event_to_row_values(with_start, source, now)["timezone"] == "America/New_York"
        assert google_event_to_row_values(with_end, source, now)["timezone"] == "Europe/Paris"
        assert google_event_to_row_values(without, source, now)["timezone"] == "Europe/London"

    def test_google_updated_falls_back_to_created_then_now(self, source, now):
        payload = google_event("evt-7")
        del payload["updated"]
        created_only = parse_provider_event(payload)
        del payload["created"]
        no_timestamps = parse_provider_event(payload)

        assert google_event_to_row_values(created_only, source, now)[
            "last_google_updated_at"
        ] == datetime(2025, 2, 20, 9, 0, tzinfo=UTC)
        assert google_event_to_row_values(no_timestamps, source, now)[
            "last_google_updated_at"
        ] == now


class TestRowHelpers:
    def test_apply_row_values_advances_status(self, source, now):
        row = make_event(source, sync_status=CalendarSyncStatus.SYNCED, pending_action=None)

        apply_row_values(row, {"summary": "Renamed", "sync_status": CalendarSyncStatus.DELETED})

        assert row.summary == "Renamed"
        assert row.sync_status == CalendarSyncStatus.DELETED

    def test_apply_row_values_rejects_illegal_transition(self, source):
        row = make_event(source, sync_status=CalendarSyncStatus.SYNCED)

        with pytest.raises(InvalidSyncStateError):
            apply_row_values(row, {"sync_status": CalendarSyncStatus.DELETE_PENDING})

    def test_new_event_row(self, source, now):
        event = parse_provider_event(google_event("evt-8"))

        row = new_event_row(google_event_to_row_values(event, source, now), now)

        assert row.id is not None
        assert row.event_id == "evt-8"
        assert row.created_at == now
        assert row.updated_at == now


class TestAsUtc:
    def test_naive_taken_as_utc(self):
        assert as_utc(datetime(2025, 1, 1, 10, 0)) == datetime(2025, 1, 1, 10, 0, tzinfo=UTC)

    def test_offset_converted(self):
        value = datetime(2025, 1, 1, 12, 0, tzinfo=timezone(timedelta(hours=2)))

        assert as_utc(value) == datetime(2025, 1, 1, 10, 0, tzinfo=UTC)

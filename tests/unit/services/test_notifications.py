"""
Unit tests for practice notification dispatch.
"""

import pytest

from gp_booking.services.models import NotificationOutcome, PracticeRecord
from gp_booking.services.notifications import (
    EmailChannel,
    MeshChannel,
    NotificationChannel,
    NotificationDispatcher,
    SmsChannel,
)

APPOINTMENT = {"resourceType": "Appointment", "id": "appt-1"}


def make_practice(channels):
    return PracticeRecord(
        ods_code="A12345",
        name="Example Medical Centre",
        endpoint="https://gp.example.nhs.uk/gpconnect",
        asid="ABC123456789",
        notification_channels=tuple(channels),
    )


class BrokenChannel(NotificationChannel):
    name = "email"

    async def send(self, practice, appointment):
        raise ConnectionError("SMTP relay unreachable")


class TestNotificationDispatcher:
    """Test fan-out to a practice's enabled channels."""

    @pytest.mark.asyncio
    async def test_default_practice_channels(self):
        dispatcher = NotificationDispatcher()

        outcomes = await dispatcher.dispatch(make_practice(["email", "mesh"]), APPOINTMENT)

        assert [o.channel for o in outcomes] == ["email", "mesh"]
        assert all(o.success for o in outcomes)
        assert outcomes[0].message_id.startswith("email-")
        assert outcomes[1].message_id.startswith("mesh-")

    @pytest.mark.asyncio
    async def test_only_enabled_channels_used(self):
        dispatcher = NotificationDispatcher()

        outcomes = await dispatcher.dispatch(make_practice(["sms"]), APPOINTMENT)

        assert [o.channel for o in outcomes] == ["sms"]

    @pytest.mark.asyncio
    async def test_failing_channel_does_not_stop_others(self):
        dispatcher = NotificationDispatcher([BrokenChannel(), MeshChannel()])

        outcomes = await dispatcher.dispatch(make_practice(["email", "mesh"]), APPOINTMENT)

        assert outcomes[0] == NotificationOutcome(
            channel="email", success=False, error="SMTP relay unreachable"
        )
        assert outcomes[1].success is True

    @pytest.mark.asyncio
    async def test_unregistered_channel_skipped(self):
        dispatcher = NotificationDispatcher([EmailChannel()])

        outcomes = await dispatcher.dispatch(
            make_practice(["fax", "email"]), APPOINTMENT
        )

        assert [o.channel for o in outcomes] == ["email"]

    def test_channels_for_keeps_practice_order(self):
        dispatcher = NotificationDispatcher([SmsChannel(), MeshChannel(), EmailChannel()])

        channels = dispatcher.channels_for(make_practice(["mesh", "sms"]))

        assert [c.name for c in channels] == ["mesh", "sms"]

    def test_outcome_serialization_drops_empty_fields(self):
        outcome = NotificationOutcome(channel="mesh", success=True, message_id="m-1")

        assert outcome.to_dict() == {"channel": "mesh", "success": True, "message_id": "m-1"}

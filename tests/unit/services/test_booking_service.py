"""
Unit tests for the booking orchestrator.

Covers the appointment resource, the pending to booked lifecycle of the
local copy, the failure policies, cancellation and the reconciliation sweep.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, Mock

import pytest
from pydantic import ValidationError as PydanticValidationError

from gp_booking.services.booking import (
    BookingRequest,
    BookingService,
    build_appointment_resource,
    get_patient_identifier,
)
from gp_booking.services.errors import ExternalCallError, NotFoundError, StorageError
from gp_booking.services.models import BookingRecord, BookingStatus
from gp_booking.services.notifications import NotificationDispatcher
from gp_booking.services.practice_directory import PracticeDirectory
from gp_booking.services.storage import InMemoryBookingStore
from gp_booking.settings import ExternalFailurePolicy, Settings

NOW = datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc)


def parse(value):
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def make_request(**overrides):
    values = {
        "patient_nhs_number": "9876543210",
        "practice_ods_code": "A12345",
        "appointment_type": "routine",
        "reason": "Annual health check",
        "urgency": "routine",
        "duration_minutes": 15,
        "booked_by": "patient",
    }
    values.update(overrides)
    return BookingRequest(**values)


class TestBookingRequest:
    """Test request validation."""

    def test_valid_request(self):
        request = make_request()
        assert request.duration_minutes == 15
        assert request.contact_preferences.sms is False

    def test_checksum_failure_rejected(self):
        with pytest.raises(PydanticValidationError):
            make_request(patient_nhs_number="9876543211")

    def test_non_digit_nhs_number_rejected(self):
        with pytest.raises(PydanticValidationError):
            make_request(patient_nhs_number="987654321X")

    @pytest.mark.parametrize("duration", [5, 61])
    def test_duration_bounds(self, duration):
        with pytest.raises(PydanticValidationError):
            make_request(duration_minutes=duration)

    def test_reason_too_short(self):
        with pytest.raises(PydanticValidationError):
            make_request(reason="Cough")

    def test_unknown_appointment_type(self):
        with pytest.raises(PydanticValidationError):
            make_request(appointment_type="home-visit")

    def test_naive_slot_start_rejected(self):
        with pytest.raises(PydanticValidationError):
            make_request(slot_start=datetime(2024, 1, 16, 9, 0))

    def test_invalid_contact_email_rejected(self):
        with pytest.raises(PydanticValidationError):
            make_request(contact_preferences={"email": "not-an-email"})


class TestAppointmentResource:
    """Test the FHIR Appointment built for the practice."""

    def test_duration_matches_request(self):
        resource = build_appointment_resource(make_request(duration_minutes=30), NOW)

        assert parse(resource["end"]) - parse(resource["start"]) == timedelta(minutes=30)
        assert resource["minutesDuration"] == 30
        assert resource["start"] == "2024-01-15T09:00:00Z"

    def test_patient_participant(self):
        resource = build_appointment_resource(make_request(), NOW)

        assert get_patient_identifier(resource) == "9876543210"
        assert resource["participant"][0]["status"] == "accepted"
        assert resource["participant"][0]["actor"]["identifier"]["system"] == (
            "https://fhir.nhs.uk/Id/nhs-number"
        )

    def test_service_type_and_reason(self):
        resource = build_appointment_resource(make_request(), NOW)

        assert resource["resourceType"] == "Appointment"
        assert resource["status"] == "booked"
        assert resource["serviceType"][0]["coding"][0]["code"] == "gp"
        assert resource["reasonCode"] == [{"text": "Annual health check"}]
        assert "slot" not in resource

    def test_chosen_slot_referenced(self):
        resource = build_appointment_resource(make_request(slot_id="slot-9"), NOW)

        assert resource["slot"] == [{"reference": "Slot/slot-9"}]


class TestBookAppointment:
    """Test the booking orchestration."""

    @pytest.fixture
    def settings(self):
        return Settings(
            _env_file=None, environment="development", gp_connect_jwt_key="test-key"
        )

    @pytest.fixture
    def store(self):
        return InMemoryBookingStore()

    @pytest.fixture
    def client(self):
        async def echo(practice, token, resource, trace_id):
            return {**resource, "id": "ext-123"}

        client = Mock()
        client.create_appointment = AsyncMock(side_effect=echo)
        return client

    @pytest.fixture
    def audit(self):
        return Mock()

    def make_service(self, settings, client, store, audit, failure_policy=None):
        assertions = Mock()
        assertions.generate.return_value = "signed-token"
        return BookingService(
            settings,
            PracticeDirectory(settings),
            assertions,
            client,
            store,
            NotificationDispatcher(),
            failure_policy=failure_policy,
            audit=audit,
            clock=lambda: NOW,
        )

    @pytest.mark.asyncio
    async def test_successful_booking(self, settings, client, store, audit):
        service = self.make_service(settings, client, store, audit)

        result = await service.book_appointment(make_request(), trace_id="trace-1")

        assert result.simulated is False
        assert result.trace_id == "trace-1"
        appointment = result.appointment
        assert appointment["id"] == "ext-123"
        assert parse(appointment["end"]) - parse(appointment["start"]) == timedelta(minutes=15)
        assert get_patient_identifier(appointment) == "9876543210"

        practice, token, resource, trace_id = client.create_appointment.call_args.args
        assert practice.ods_code == "A12345"
        assert token == "signed-token"
        assert trace_id == "trace-1"

    @pytest.mark.asyncio
    async def test_practice_notified_on_each_channel(self, settings, client, store, audit):
        service = self.make_service(settings, client, store, audit)

        result = await service.book_appointment(make_request())

        assert [n.channel for n in result.notifications] == ["email", "mesh"]
        assert all(n.success for n in result.notifications)

    @pytest.mark.asyncio
    async def test_local_copy_pending_then_booked(self, settings, store, audit):
        seen_statuses = []

        async def create(practice, token, resource, trace_id):
            pending = await store.list_by_status(BookingStatus.PENDING)
            seen_statuses.extend(record.status for record in pending)
            return {**resource, "id": "ext-456"}

        client = Mock()
        client.create_appointment = AsyncMock(side_effect=create)
        service = self.make_service(settings, client, store, audit)

        result = await service.book_appointment(make_request())

        assert seen_statuses == [BookingStatus.PENDING]
        record = await store.get(result.booking_id)
        assert record.status == BookingStatus.BOOKED
        assert record.external_id == "ext-456"
        assert record.trace_id == result.trace_id
        assert await store.list_by_status(BookingStatus.PENDING) == []

    @pytest.mark.asyncio
    async def test_repeat_requests_are_not_deduplicated(self, settings, client, store, audit):
        service = self.make_service(settings, client, store, audit)

        first = await service.book_appointment(make_request())
        second = await service.book_appointment(make_request())

        assert first.booking_id != second.booking_id
        assert client.create_appointment.await_count == 2
        assert len(await store.list_by_status(BookingStatus.BOOKED)) == 2

    @pytest.mark.asyncio
    async def test_unknown_practice_not_found(self, settings, client, store, audit):
        service = self.make_service(settings, client, store, audit)

        with pytest.raises(NotFoundError):
            await service.book_appointment(make_request(practice_ods_code="Z99999"))

        client.create_appointment.assert_not_called()

    @pytest.mark.asyncio
    async def test_chosen_slot_start_used(self, settings, client, store, audit):
        service = self.make_service(settings, client, store, audit)
        slot_start = datetime(2024, 1, 16, 10, 30, tzinfo=timezone.utc)

        result = await service.book_appointment(
            make_request(slot_id="slot-2", slot_start=slot_start)
        )

        assert parse(result.appointment["start"]) == slot_start
        assert result.appointment["slot"] == [{"reference": "Slot/slot-2"}]

    @pytest.mark.asyncio
    async def test_practice_failure_propagates_by_default(self, settings, store, audit):
        client = Mock()
        client.create_appointment = AsyncMock(
            side_effect=ExternalCallError("GP Connect returned 500", status_code=500)
        )
        service = self.make_service(settings, client, store, audit)

        assert service.failure_policy == ExternalFailurePolicy.PROPAGATE
        with pytest.raises(ExternalCallError):
            await service.book_appointment(make_request())

        failed = await store.list_by_status(BookingStatus.FAILED)
        assert len(failed) == 1
        assert failed[0].external_id is None

    @pytest.mark.asyncio
    async def test_simulated_success_when_enabled(self, settings, store, audit):
        client = Mock()
        client.create_appointment = AsyncMock(side_effect=ExternalCallError("timeout"))
        service = self.make_service(
            settings, client, store, audit,
            failure_policy=ExternalFailurePolicy.FALLBACK_TO_MOCK,
        )

        result = await service.book_appointment(make_request(), trace_id="trace-9")

        assert result.simulated is True
        assert result.trace_id == "trace-9"
        assert parse(result.appointment["end"]) - parse(result.appointment["start"]) == (
            timedelta(minutes=15)
        )
        assert [n.channel for n in result.notifications] == ["email", "mesh"]
        # The local copy records what really happened
        failed = await store.list_by_status(BookingStatus.FAILED)
        assert len(failed) == 1
        assert result.booking_id == failed[0].booking_id
        assert result.appointment["id"] == failed[0].booking_id

    @pytest.mark.asyncio
    async def test_simulated_booking_can_be_cancelled(self, settings, store, audit):
        client = Mock()
        client.create_appointment = AsyncMock(side_effect=ExternalCallError("timeout"))
        service = self.make_service(
            settings, client, store, audit,
            failure_policy=ExternalFailurePolicy.FALLBACK_TO_MOCK,
        )

        result = await service.book_appointment(make_request())
        cancelled = await service.cancel_booking(result.booking_id, reason="Not needed")

        assert cancelled.booking_id == result.booking_id
        assert (await store.get(result.booking_id)).status == BookingStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_storage_failure_does_not_block_booking(self, settings, client, audit):
        store = Mock()
        store.insert = AsyncMock(side_effect=StorageError("redis down"))
        store.update = AsyncMock(side_effect=StorageError("redis down"))
        service = self.make_service(settings, client, store, audit)

        result = await service.book_appointment(make_request())

        assert result.appointment["id"] == "ext-123"
        client.create_appointment.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_audit_events_carry_trace_id(self, settings, client, store, audit):
        service = self.make_service(settings, client, store, audit)

        await service.book_appointment(make_request(), trace_id="trace-5")

        events = [call.args[0] for call in audit.log_booking_event.call_args_list]
        assert events == ["booking_submitted", "booking_confirmed"]
        for call in audit.log_booking_event.call_args_list:
            assert call.kwargs["trace_id"] == "trace-5"


class TestCancellationAndReconciliation:
    """Test cancellation and the pending booking sweep."""

    @pytest.fixture
    def settings(self):
        return Settings(
            _env_file=None, environment="development", pending_booking_max_age_minutes=15
        )

    @pytest.fixture
    def store(self):
        return InMemoryBookingStore()

    @pytest.fixture
    def service(self, settings, store):
        return BookingService(
            settings,
            PracticeDirectory(settings),
            Mock(),
            Mock(),
            store,
            NotificationDispatcher(),
            audit=Mock(),
            clock=lambda: NOW,
        )

    def make_record(self, booking_id, status, created_at):
        return BookingRecord(
            booking_id=booking_id,
            patient_nhs_number="9876543210",
            practice_ods_code="A12345",
            appointment_type="routine",
            appointment_start=created_at,
            appointment_end=created_at + timedelta(minutes=15),
            reason="Annual health check",
            urgency="routine",
            duration_minutes=15,
            booked_by="patient",
            status=status,
            created_at=created_at,
            updated_at=created_at,
        )

    @pytest.mark.asyncio
    async def test_cancel_booking(self, service, store):
        await store.insert(self.make_record("b-1", BookingStatus.BOOKED, NOW))

        record = await service.cancel_booking(
            "b-1", reason="Feeling better", cancelled_by="patient", trace_id="t-1"
        )

        assert record.status == BookingStatus.CANCELLED
        stored = await store.get("b-1")
        assert stored.status == BookingStatus.CANCELLED
        assert stored.cancellation_reason == "Feeling better"
        assert stored.cancelled_at == NOW

    @pytest.mark.asyncio
    async def test_cancel_unknown_booking(self, service):
        with pytest.raises(NotFoundError):
            await service.cancel_booking("missing")

    @pytest.mark.asyncio
    async def test_stale_pending_bookings_orphaned(self, service, store):
        await store.insert(
            self.make_record("stale", BookingStatus.PENDING, NOW - timedelta(minutes=30))
        )
        await store.insert(
            self.make_record("fresh", BookingStatus.PENDING, NOW - timedelta(minutes=5))
        )
        await store.insert(
            self.make_record("done", BookingStatus.BOOKED, NOW - timedelta(hours=2))
        )

        orphaned = await service.reconcile_pending_bookings()

        assert orphaned == ["stale"]
        assert (await store.get("stale")).status == BookingStatus.ORPHANED
        assert (await store.get("fresh")).status == BookingStatus.PENDING
        assert (await store.get("done")).status == BookingStatus.BOOKED

    @pytest.mark.asyncio
    async def test_reconcile_with_explicit_age(self, service, store):
        await store.insert(
            self.make_record("recent", BookingStatus.PENDING, NOW - timedelta(minutes=5))
        )

        orphaned = await service.reconcile_pending_bookings(max_age=timedelta(minutes=1))

        assert orphaned == ["recent"]

"""
GP appointment booking orchestration.

Resolves the practice, signs an assertion, submits a FHIR Appointment to
the practice's GP Connect endpoint, keeps a local copy of the booking and
notifies the practice.

The local copy is written as "pending" before the practice is called and
moved to "booked" once the practice accepts, so a crash between the two
leaves a pending record that the reconciliation sweep will surface.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from ..audit import AuditLogger, audit_logger_instance
from ..settings import ExternalFailurePolicy, Settings
from .assertion import AssertionGenerator
from .errors import ExternalCallError, NotFoundError, StorageError
from .gp_connect import GPConnectClient
from .models import (
    BookingRecord,
    BookingResult,
    BookingStatus,
    NotificationOutcome,
    PracticeRecord,
)
from .nhs_number import is_valid_nhs_number, mask_nhs_number
from .notifications import NotificationDispatcher
from .practice_directory import PracticeDirectory

logger = logging.getLogger(__name__)

NHS_NUMBER_SYSTEM = "https://fhir.nhs.uk/Id/nhs-number"
SERVICE_TYPE_SYSTEM = "http://hl7.org/fhir/service-type"


class ContactPreferences(BaseModel):
    """How the patient would like to be contacted about the booking."""

    model_config = ConfigDict(frozen=True)

    phone: Optional[str] = None
    email: Optional[EmailStr] = None
    sms: bool = False


class BookingRequest(BaseModel):
    """A patient's request to book a GP appointment."""

    model_config = ConfigDict(frozen=True)

    patient_nhs_number: str = Field(..., pattern=r"^\d{10}$")
    practice_ods_code: str = Field(..., min_length=3, max_length=10)
    appointment_type: Literal["routine", "urgent", "emergency", "follow-up"]
    reason: str = Field(..., min_length=10, max_length=500)
    urgency: Literal["routine", "urgent", "emergency"]
    duration_minutes: int = Field(default=15, ge=10, le=60)
    booked_by: str = Field(..., min_length=1)
    contact_preferences: ContactPreferences = Field(default_factory=ContactPreferences)
    slot_id: Optional[str] = None
    slot_start: Optional[datetime] = None

    @field_validator("patient_nhs_number")
    @classmethod
    def validate_nhs_number_checksum(cls, v):
        """Reject NHS numbers whose check digit does not match."""
        if not is_valid_nhs_number(v):
            raise ValueError("Invalid NHS number")
        return v

    @field_validator("slot_start")
    @classmethod
    def validate_slot_start_timezone(cls, v):
        if v is not None and v.tzinfo is None:
            raise ValueError("slot_start must include a timezone offset")
        return v


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _isoformat(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def build_appointment_resource(
    request: BookingRequest, start: datetime
) -> Dict[str, Any]:
    """
    Build the FHIR Appointment resource submitted to the practice.

    Args:
        request: Validated booking request
        start: Appointment start time (timezone aware)

    Returns:
        FHIR Appointment resource dictionary
    """
    end = start + timedelta(minutes=request.duration_minutes)

    resource = {
        "resourceType": "Appointment",
        "status": "booked",
        "serviceType": [
            {
                "coding": [
                    {
                        "system": SERVICE_TYPE_SYSTEM,
                        "code": "gp",
                        "display": "General Practice",
                    }
                ]
            }
        ],
        "reasonCode": [{"text": request.reason}],
        "start": _isoformat(start),
        "end": _isoformat(end),
        "minutesDuration": request.duration_minutes,
        "participant": [
            {
                "actor": {
                    "identifier": {
                        "system": NHS_NUMBER_SYSTEM,
                        "value": request.patient_nhs_number,
                    }
                },
                "status": "accepted",
            }
        ],
    }

    if request.slot_id:
        resource["slot"] = [{"reference": f"Slot/{request.slot_id}"}]

    return resource


def get_patient_identifier(appointment: Dict[str, Any]) -> Optional[str]:
    """Get the NHS number of the first participant identified by one."""
    for participant in appointment.get("participant", []):
        identifier = participant.get("actor", {}).get("identifier", {})
        if identifier.get("system") == NHS_NUMBER_SYSTEM:
            return identifier.get("value")
    return None


class BookingService:
    """Books GP appointments over GP Connect and keeps a local record."""

    def __init__(
        self,
        settings: Settings,
        directory: PracticeDirectory,
        assertions: AssertionGenerator,
        client: GPConnectClient,
        store,
        dispatcher: NotificationDispatcher,
        failure_policy: Optional[ExternalFailurePolicy] = None,
        audit: Optional[AuditLogger] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            settings: Application settings
            directory: Practice directory
            assertions: Assertion generator for outbound calls
            client: GP Connect client
            store: Booking store for local copies
            dispatcher: Practice notification dispatcher
            failure_policy: What to do when the practice call fails
                (defaults to the policy derived from settings)
            audit: Audit logger
            clock: Source of the current UTC time
        """
        self.settings = settings
        self.directory = directory
        self.assertions = assertions
        self.client = client
        self.store = store
        self.dispatcher = dispatcher
        self.failure_policy = failure_policy or settings.booking_failure_policy()
        self.audit = audit or audit_logger_instance
        self._clock = clock or _utc_now

    async def _save(self, record: BookingRecord, insert: bool = False) -> bool:
        """Write the local copy; storage failures are logged, not raised."""
        try:
            if insert:
                await self.store.insert(record)
            else:
                await self.store.update(record)
            return True
        except StorageError as e:
            logger.error(
                f"Failed to persist booking {record.booking_id} "
                f"(status={record.status.value}, trace_id={record.trace_id}): {e}"
            )
            return False

    async def book_appointment(
        self, request: BookingRequest, trace_id: Optional[str] = None
    ) -> BookingResult:
        """
        Book an appointment at the requested practice.

        Args:
            request: Validated booking request
            trace_id: Correlation identifier for logs, audit and Ssp-TraceID

        Returns:
            BookingResult with the appointment resource and notification outcomes

        Raises:
            NotFoundError: If no active practice has the requested code
            ConfigurationError: If the signing key is unusable
            ExternalCallError: If the practice call fails under the propagate policy
        """
        trace_id = trace_id or str(uuid.uuid4())
        masked_patient = mask_nhs_number(request.patient_nhs_number)

        practice = await self.directory.get_practice(request.practice_ods_code)
        if not practice:
            raise NotFoundError(f"GP practice not found: {request.practice_ods_code}")

        token = self.assertions.generate(practice.asid, practice.endpoint)

        now = self._clock()
        start = request.slot_start or now
        resource = build_appointment_resource(request, start)

        record = BookingRecord(
            booking_id=str(uuid.uuid4()),
            patient_nhs_number=request.patient_nhs_number,
            practice_ods_code=request.practice_ods_code,
            appointment_type=request.appointment_type,
            appointment_start=start,
            appointment_end=start + timedelta(minutes=request.duration_minutes),
            reason=request.reason,
            urgency=request.urgency,
            duration_minutes=request.duration_minutes,
            booked_by=request.booked_by,
            status=BookingStatus.PENDING,
            created_at=now,
            updated_at=now,
            trace_id=trace_id,
            slot_id=request.slot_id,
        )
        await self._save(record, insert=True)

        self.audit.log_booking_event(
            "booking_submitted",
            trace_id=trace_id,
            details={
                "booking_id": record.booking_id,
                "patient_nhs_number": request.patient_nhs_number,
                "practice_ods_code": practice.ods_code,
                "duration_minutes": request.duration_minutes,
            },
        )

        try:
            created = await self.client.create_appointment(
                practice, token, resource, trace_id
            )
        except ExternalCallError as e:
            logger.error(
                f"Error booking appointment | booking_id={record.booking_id} "
                f"practice={practice.ods_code} patient={masked_patient} "
                f"trace_id={trace_id} error={e}"
            )
            record.status = BookingStatus.FAILED
            record.updated_at = self._clock()
            await self._save(record)
            self.audit.log_booking_event(
                "booking_failed",
                trace_id=trace_id,
                details={"booking_id": record.booking_id, "error": str(e)},
                result="FAILURE",
            )

            if self.failure_policy == ExternalFailurePolicy.FALLBACK_TO_MOCK:
                logger.warning(
                    f"Returning simulated booking after failure | trace_id={trace_id}"
                )
                return self.simulated_result(
                    request, practice, trace_id, record.booking_id, start
                )
            raise

        appointment = created if created.get("resourceType") == "Appointment" else {}
        appointment = {**resource, **appointment}
        appointment.setdefault("id", record.booking_id)

        record.status = BookingStatus.BOOKED
        record.external_id = created.get("id")
        record.updated_at = self._clock()
        await self._save(record)

        notifications = await self.dispatcher.dispatch(practice, appointment)

        self.audit.log_booking_event(
            "booking_confirmed",
            trace_id=trace_id,
            details={
                "booking_id": record.booking_id,
                "external_id": record.external_id,
                "practice_ods_code": practice.ods_code,
                "notifications_sent": sum(1 for n in notifications if n.success),
            },
        )

        logger.info(
            f"Appointment booked successfully | booking_id={record.booking_id} "
            f"patient={masked_patient} practice={practice.ods_code} trace_id={trace_id}"
        )

        return BookingResult(
            booking_id=record.booking_id,
            appointment=appointment,
            notifications=notifications,
            trace_id=trace_id,
        )

    def simulated_result(
        self,
        request: BookingRequest,
        practice: PracticeRecord,
        trace_id: str,
        booking_id: str,
        start: datetime,
    ) -> BookingResult:
        """
        Canned success returned in place of a failed booking (non-production).

        Carries the id of the local record marked failed, so the caller, the
        store and the audit trail refer to the same booking.
        """
        appointment = build_appointment_resource(request, start)
        appointment["id"] = booking_id

        notifications = [
            NotificationOutcome(
                channel=name, success=True, message_id=f"simulated-{name}-{uuid.uuid4()}"
            )
            for name in practice.notification_channels
        ]
        return BookingResult(
            booking_id=booking_id,
            appointment=appointment,
            notifications=notifications,
            trace_id=trace_id,
            simulated=True,
        )

    async def get_booking(self, booking_id: str) -> BookingRecord:
        record = await self.store.get(booking_id)
        if record is None:
            raise NotFoundError(f"Booking not found: {booking_id}")
        return record

    async def cancel_booking(
        self,
        booking_id: str,
        reason: Optional[str] = None,
        cancelled_by: str = "anonymous",
        trace_id: Optional[str] = None,
    ) -> BookingRecord:
        """
        Mark a local booking as cancelled.

        The practice is not told; GP Connect cancellation is not wired in.

        Raises:
            NotFoundError: If the booking does not exist
            StorageError: If the store is unavailable
        """
        record = await self.get_booking(booking_id)

        now = self._clock()
        record.status = BookingStatus.CANCELLED
        record.cancellation_reason = reason
        record.cancelled_at = now
        record.updated_at = now
        await self.store.update(record)

        self.audit.log_booking_event(
            "booking_cancelled",
            trace_id=trace_id,
            details={
                "booking_id": booking_id,
                "cancelled_by": cancelled_by,
                "has_reason": bool(reason),
            },
        )
        logger.info(
            f"Appointment cancelled | booking_id={booking_id} trace_id={trace_id}"
        )
        return record

    async def reconcile_pending_bookings(
        self, max_age: Optional[timedelta] = None
    ) -> List[str]:
        """
        Mark stale pending bookings as orphaned.

        A booking stays pending only if the process stopped between writing
        the local copy and hearing back from the practice. Such bookings may
        or may not exist at the practice and need manual follow-up.

        Returns:
            Booking ids moved to orphaned
        """
        max_age = max_age or timedelta(
            minutes=self.settings.pending_booking_max_age_minutes
        )
        now = self._clock()
        cutoff = now - max_age

        orphaned = []
        for record in await self.store.list_by_status(BookingStatus.PENDING):
            if record.created_at > cutoff:
                continue
            record.status = BookingStatus.ORPHANED
            record.updated_at = now
            await self.store.update(record)
            orphaned.append(record.booking_id)
            self.audit.log_booking_event(
                "booking_orphaned",
                trace_id=record.trace_id,
                details={
                    "booking_id": record.booking_id,
                    "practice_ods_code": record.practice_ods_code,
                    "pending_since": record.created_at.isoformat(),
                },
                result="FAILURE",
            )

        if orphaned:
            logger.warning(f"Reconciliation marked {len(orphaned)} bookings orphaned")
        return orphaned

"""
Domain records passed between the booking services.

These are plain dataclasses: practice directory entries, slot candidates,
local booking copies and the results handed back to the API layer.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

DEFAULT_NOTIFICATION_CHANNELS: Tuple[str, ...] = ("email", "mesh")


@dataclass(frozen=True)
class PracticeRecord:
    """A GP practice reachable over GP Connect."""

    ods_code: str
    name: str
    endpoint: str
    asid: str
    active: bool = True
    notification_channels: Tuple[str, ...] = DEFAULT_NOTIFICATION_CHANNELS
    id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["notification_channels"] = list(self.notification_channels)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PracticeRecord":
        return cls(
            ods_code=data["ods_code"],
            name=data["name"],
            endpoint=data["endpoint"],
            asid=data["asid"],
            active=bool(data.get("active", True)),
            notification_channels=tuple(
                data.get("notification_channels") or DEFAULT_NOTIFICATION_CHANNELS
            ),
            id=data.get("id"),
        )


@dataclass(frozen=True)
class SlotCandidate:
    """A free slot offered by a practice, as shown to the patient."""

    id: str
    start: str
    end: str
    status: str
    practitioner_reference: str
    practitioner_display: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "start": self.start,
            "end": self.end,
            "status": self.status,
            "practitioner": {
                "reference": self.practitioner_reference,
                "display": self.practitioner_display,
            },
        }


class BookingStatus(str, Enum):
    """Lifecycle of the local copy of a booking."""

    PENDING = "pending"
    BOOKED = "booked"
    FAILED = "failed"
    CANCELLED = "cancelled"
    ORPHANED = "orphaned"


@dataclass
class BookingRecord:
    """Local copy of a booking submitted to a practice."""

    booking_id: str
    patient_nhs_number: str
    practice_ods_code: str
    appointment_type: str
    appointment_start: datetime
    appointment_end: datetime
    reason: str
    urgency: str
    duration_minutes: int
    booked_by: str
    status: BookingStatus
    created_at: datetime
    updated_at: datetime
    trace_id: Optional[str] = None
    slot_id: Optional[str] = None
    external_id: Optional[str] = None
    cancellation_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        for key in ["appointment_start", "appointment_end", "created_at", "updated_at", "cancelled_at"]:
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BookingRecord":
        values = dict(data)
        values["status"] = BookingStatus(values["status"])
        for key in ["appointment_start", "appointment_end", "created_at", "updated_at", "cancelled_at"]:
            if values.get(key) is not None:
                values[key] = datetime.fromisoformat(values[key])
        return cls(**values)


@dataclass(frozen=True)
class NotificationOutcome:
    """Result of notifying a practice through one channel."""

    channel: str
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class BookingResult:
    """What a completed booking returns to the caller."""

    booking_id: str
    appointment: Dict[str, Any]
    notifications: List[NotificationOutcome] = field(default_factory=list)
    trace_id: Optional[str] = None
    simulated: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "booking_id": self.booking_id,
            "appointment": self.appointment,
            "notifications": [n.to_dict() for n in self.notifications],
            "trace_id": self.trace_id,
            "simulated": self.simulated,
        }

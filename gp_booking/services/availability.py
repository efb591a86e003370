"""
Appointment availability search.

Finds free slots at a practice over GP Connect. In demo mode, and when the
practice cannot be reached under the fallback policy, a fixed set of four
mock slots is returned instead.
"""

import logging
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from ..settings import ExternalFailurePolicy, Settings
from .assertion import AssertionGenerator
from .errors import ExternalCallError, NotFoundError, ValidationError
from .gp_connect import GPConnectClient
from .models import SlotCandidate
from .practice_directory import PracticeDirectory

logger = logging.getLogger(__name__)

DEFAULT_SLOT_MINUTES = 15
MIN_DURATION_MINUTES = 10
MAX_DURATION_MINUTES = 60
UNKNOWN_PRACTITIONER_DISPLAY = "GP Practitioner"
SLOT_TEXT_FIELDS = ("id", "start", "end", "status")

# (days from today, hour offset, reference, display)
MOCK_SLOT_TEMPLATE = [
    (1, 9.0, "Practitioner/dr-smith", "Dr. Sarah Smith"),
    (1, 10.5, "Practitioner/dr-wilson", "Dr. James Wilson"),
    (1, 14.0, "Practitioner/dr-johnson", "Dr. Emily Johnson"),
    (2, 11.25, "Practitioner/dr-brown", "Dr. Michael Brown"),
]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def validate_duration(duration: int) -> None:
    """Raise ValidationError unless duration is within the bookable range."""
    if not isinstance(duration, int) or isinstance(duration, bool):
        raise ValidationError("Duration must be a whole number of minutes")
    if not MIN_DURATION_MINUTES <= duration <= MAX_DURATION_MINUTES:
        raise ValidationError(
            f"Duration must be between {MIN_DURATION_MINUTES} and "
            f"{MAX_DURATION_MINUTES} minutes"
        )


def validate_ods_code(ods_code: str) -> None:
    if not isinstance(ods_code, str) or not 3 <= len(ods_code) <= 10:
        raise ValidationError("Practice ODS code must be 3-10 characters")


def _parse_date(value: str, field_name: str) -> date:
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field_name} must be a date in YYYY-MM-DD format")


def build_mock_slots(
    now: datetime, duration: int = DEFAULT_SLOT_MINUTES
) -> List[SlotCandidate]:
    """Build the fixed demo slot list relative to the given time."""
    midnight = datetime(now.year, now.month, now.day, tzinfo=timezone.utc)
    slots = []
    for index, (days, hours, reference, display) in enumerate(MOCK_SLOT_TEMPLATE, 1):
        start = midnight + timedelta(days=days, hours=hours)
        end = start + timedelta(minutes=duration)
        slots.append(
            SlotCandidate(
                id=f"mock-slot-{index}",
                start=start.isoformat(),
                end=end.isoformat(),
                status="free",
                practitioner_reference=reference,
                practitioner_display=display,
            )
        )
    return slots


def _practitioner_name(resource: Dict[str, Any]) -> Optional[str]:
    names = resource.get("name", [])
    if not names:
        return None
    name = names[0]
    if name.get("text"):
        return name["text"]
    prefix = " ".join(name.get("prefix", []))
    given = " ".join(name.get("given", []))
    family = name.get("family", "")
    return " ".join(part for part in [prefix, given, family] if part) or None


def map_slot_bundle(bundle: Dict[str, Any]) -> List[SlotCandidate]:
    """
    Transform a GP Connect slot searchset into slot candidates.

    Practitioner details come from the included Schedule and Practitioner
    resources when the practice returns them.
    """
    entries = bundle.get("entry", []) or []
    resources = [entry.get("resource", {}) for entry in entries]

    practitioners = {}
    schedules = {}
    for resource in resources:
        resource_type = resource.get("resourceType")
        if resource_type == "Practitioner" and resource.get("id"):
            practitioners[f"Practitioner/{resource['id']}"] = resource
        elif resource_type == "Schedule" and resource.get("id"):
            schedules[f"Schedule/{resource['id']}"] = resource

    slots = []
    for resource in resources:
        if resource.get("resourceType") != "Slot":
            continue

        schedule_reference = resource.get("schedule", {}).get("reference", "")
        reference = schedule_reference or "Unknown"
        display = UNKNOWN_PRACTITIONER_DISPLAY

        schedule = schedules.get(schedule_reference)
        if schedule:
            for actor in schedule.get("actor", []):
                actor_reference = actor.get("reference", "")
                if actor_reference.startswith("Practitioner/"):
                    reference = actor_reference
                    practitioner = practitioners.get(actor_reference)
                    display = (
                        actor.get("display")
                        or (practitioner and _practitioner_name(practitioner))
                        or UNKNOWN_PRACTITIONER_DISPLAY
                    )
                    break

        fields = {key: resource.get(key, "") for key in SLOT_TEXT_FIELDS}
        fields["practitioner_reference"] = reference
        fields["practitioner_display"] = display
        for key, value in fields.items():
            if not isinstance(value, str):
                raise TypeError(
                    f"Slot {key} must be a string, got {type(value).__name__}"
                )

        slots.append(SlotCandidate(**fields))
    return slots


class AvailabilityService:
    """Free slot search across GP practices."""

    def __init__(
        self,
        settings: Settings,
        directory: PracticeDirectory,
        assertions: AssertionGenerator,
        client: GPConnectClient,
        failure_policy: Optional[ExternalFailurePolicy] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.settings = settings
        self.directory = directory
        self.assertions = assertions
        self.client = client
        self.failure_policy = failure_policy or settings.availability_failure_policy
        self._clock = clock or _utc_now

    def mock_slots(self, duration: int = DEFAULT_SLOT_MINUTES) -> List[SlotCandidate]:
        return build_mock_slots(self._clock(), duration)

    async def search_slots(
        self,
        ods_code: str,
        from_date: str,
        to_date: str,
        duration: int = DEFAULT_SLOT_MINUTES,
        trace_id: Optional[str] = None,
    ) -> List[SlotCandidate]:
        """
        Search a practice for free appointment slots.

        Args:
            ods_code: Organization code of the practice
            from_date: First day of the window (YYYY-MM-DD)
            to_date: Last day of the window (YYYY-MM-DD)
            duration: Requested appointment length in minutes
            trace_id: Correlation identifier for logs and Ssp-TraceID

        Returns:
            Free slot candidates

        Raises:
            ValidationError: If the search criteria are malformed
            NotFoundError: If no active practice has the code
            ConfigurationError: If the signing key is unusable
            ExternalCallError: Only under the propagate policy
        """
        validate_ods_code(ods_code)
        start = _parse_date(from_date, "from_date")
        end = _parse_date(to_date, "to_date")
        if end < start:
            raise ValidationError("to_date must not be before from_date")
        validate_duration(duration)

        trace_id = trace_id or str(uuid.uuid4())

        practice = await self.directory.get_practice(ods_code)
        if not practice:
            raise NotFoundError(f"GP practice not found: {ods_code}")

        if self.settings.use_mock_availability:
            logger.info(
                f"Returning mock slots for demo mode | ods_code={ods_code} "
                f"from={from_date} to={to_date} duration={duration} trace_id={trace_id}"
            )
            return self.mock_slots(duration)

        token = self.assertions.generate(practice.asid, practice.endpoint)

        try:
            bundle = await self.client.search_free_slots(
                practice, token, from_date, to_date, trace_id
            )
            try:
                slots = map_slot_bundle(bundle)
            except (AttributeError, TypeError) as e:
                raise ExternalCallError(f"Malformed slot bundle: {e}") from e
        except ExternalCallError as e:
            logger.error(
                f"Error searching available slots | ods_code={ods_code} "
                f"trace_id={trace_id} error={e}"
            )
            if self.failure_policy == ExternalFailurePolicy.PROPAGATE:
                raise
            logger.info(f"Returning mock slots due to error | trace_id={trace_id}")
            return self.mock_slots(duration)

        logger.info(
            f"Available slots found | ods_code={ods_code} count={len(slots)} "
            f"trace_id={trace_id}"
        )
        return slots

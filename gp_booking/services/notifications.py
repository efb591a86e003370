"""
Practice notification dispatch.

A booking is announced to the practice through each channel the practice
has enabled: MESH secure messaging, email and SMS. The adapters shipped
here only log; real transports implement the same NotificationChannel
interface and are passed to the dispatcher.
"""

import logging
import uuid
from typing import Any, Dict, Iterable, List

from .models import NotificationOutcome, PracticeRecord

logger = logging.getLogger(__name__)


class NotificationChannel:
    """Interface for one way of telling a practice about a booking."""

    name = "base"

    async def send(
        self, practice: PracticeRecord, appointment: Dict[str, Any]
    ) -> NotificationOutcome:
        raise NotImplementedError


class LoggingChannel(NotificationChannel):
    """Channel adapter that records the dispatch without delivering it."""

    async def send(
        self, practice: PracticeRecord, appointment: Dict[str, Any]
    ) -> NotificationOutcome:
        message_id = f"{self.name}-{uuid.uuid4()}"
        logger.info(
            f"Practice notification sent | channel={self.name} "
            f"practice={practice.ods_code} appointment_id={appointment.get('id')} "
            f"message_id={message_id}"
        )
        return NotificationOutcome(channel=self.name, success=True, message_id=message_id)


class MeshChannel(LoggingChannel):
    """NHS MESH secure messaging."""

    name = "mesh"


class EmailChannel(LoggingChannel):
    name = "email"


class SmsChannel(LoggingChannel):
    name = "sms"


def default_channels() -> List[NotificationChannel]:
    return [MeshChannel(), EmailChannel(), SmsChannel()]


class NotificationDispatcher:
    """Fans a booked appointment out to a practice's enabled channels."""

    def __init__(self, channels: Iterable[NotificationChannel] = None):
        channel_list = list(channels) if channels is not None else default_channels()
        self.channels: Dict[str, NotificationChannel] = {
            channel.name: channel for channel in channel_list
        }

    def channels_for(self, practice: PracticeRecord) -> List[NotificationChannel]:
        """Registered channels the practice has enabled, in the practice's order."""
        selected = []
        for name in practice.notification_channels:
            channel = self.channels.get(name)
            if channel is None:
                logger.warning(
                    f"No adapter registered for notification channel '{name}' "
                    f"(practice {practice.ods_code})"
                )
                continue
            selected.append(channel)
        return selected

    async def dispatch(
        self, practice: PracticeRecord, appointment: Dict[str, Any]
    ) -> List[NotificationOutcome]:
        """
        Notify a practice of a booked appointment.

        A failing channel yields an unsuccessful outcome; it never fails the
        booking itself.
        """
        outcomes = []
        for channel in self.channels_for(practice):
            try:
                outcome = await channel.send(practice, appointment)
            except Exception as e:
                logger.error(
                    f"Error sending practice notification | channel={channel.name} "
                    f"practice={practice.ods_code} error={e}"
                )
                outcome = NotificationOutcome(
                    channel=channel.name, success=False, error=str(e)
                )
            outcomes.append(outcome)
        return outcomes

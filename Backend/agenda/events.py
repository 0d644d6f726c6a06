"""
Appointment events for the notification collaborator.

The engine publishes on an ``EventChannel`` that the caller passes in; there is
no global bus. Delivery is best effort: a failing subscriber is logged and
never breaks the booking that produced the event.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import httpx

from .models import Appointment

logger = logging.getLogger(__name__)


class AppointmentEventKind(str, Enum):
    CREATED = "appointment.created"
    RESCHEDULED = "appointment.rescheduled"
    CANCELLED = "appointment.cancelled"


@dataclass(frozen=True)
class AppointmentEvent:
    kind: AppointmentEventKind
    tenant_id: int
    appointment_id: uuid.UUID
    professional_id: int
    service_id: Optional[int]
    client_id: Optional[int]
    client_name: Optional[str]
    client_phone: Optional[str]
    start_at_utc: datetime
    end_at_utc: Optional[datetime]
    previous_start_at_utc: Optional[datetime] = None
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_appointment(
        cls,
        kind: AppointmentEventKind,
        appointment: Appointment,
        previous_start_at_utc: Optional[datetime] = None,
    ) -> "AppointmentEvent":
        return cls(
            kind=kind,
            tenant_id=appointment.barbershop_id,
            appointment_id=appointment.id,
            professional_id=appointment.professional_id,
            service_id=appointment.service_id,
            client_id=appointment.client_id,
            client_name=appointment.client_name,
            client_phone=appointment.client_phone,
            start_at_utc=appointment.start_at_utc,
            end_at_utc=appointment.end_at_utc,
            previous_start_at_utc=previous_start_at_utc,
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "event": self.kind.value,
            "tenant_id": self.tenant_id,
            "appointment_id": str(self.appointment_id),
            "professional_id": self.professional_id,
            "service_id": self.service_id,
            "client_id": self.client_id,
            "client_name": self.client_name,
            "client_phone": self.client_phone,
            "start_at_utc": self.start_at_utc.isoformat(),
            "end_at_utc": self.end_at_utc.isoformat() if self.end_at_utc else None,
            "previous_start_at_utc": (
                self.previous_start_at_utc.isoformat() if self.previous_start_at_utc else None
            ),
            "occurred_at": self.occurred_at.isoformat(),
        }


Subscriber = Callable[[AppointmentEvent], Awaitable[None]]


class EventChannel:
    """In-process fan-out of appointment events to async subscribers."""

    def __init__(self):
        self._subscribers: list[Subscriber] = []

    def subscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.append(subscriber)

    def unsubscribe(self, subscriber: Subscriber) -> None:
        if subscriber in self._subscribers:
            self._subscribers.remove(subscriber)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def publish(self, event: AppointmentEvent) -> None:
        for subscriber in list(self._subscribers):
            try:
                await subscriber(event)
            except Exception as e:
                logger.exception(
                    f"Subscriber failed for {event.kind.value} of appointment {event.appointment_id}: {e}"
                )


class WebhookNotifier:
    """Subscriber that POSTs each event as JSON to a configured URL."""

    def __init__(self, url: str, timeout: float = 10.0):
        if not url:
            raise ValueError("WebhookNotifier requires a URL")
        self.url = url
        self.timeout = timeout

    async def __call__(self, event: AppointmentEvent) -> None:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.url, json=event.to_payload())
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(f"Notification webhook rejected {event.kind.value}: {e}")
            return
        except httpx.RequestError as e:
            logger.warning(f"Notification webhook unreachable for {event.kind.value}: {e}")
            return
        logger.info(f"Delivered {event.kind.value} for appointment {event.appointment_id}")


def build_event_channel(webhook_url: str = "", timeout: float = 10.0) -> EventChannel:
    """Channel with the webhook subscriber attached when a URL is configured."""
    channel = EventChannel()
    if webhook_url:
        channel.subscribe(WebhookNotifier(webhook_url, timeout=timeout))
    return channel

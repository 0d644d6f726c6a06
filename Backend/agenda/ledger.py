"""
Appointment ledger: booked intervals per professional and the conflict rule.

``find_conflict`` is the only place where overlap between a candidate and the
booked appointments is decided. Slot listing (advisory) and commit
(authoritative, under a row lock, see commit.py) both call it.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .core.config import get_settings
from .models import ACTIVE_APPOINTMENT_STATUSES, Appointment, AppointmentStatus, Service

logger = logging.getLogger(__name__)

# Longest appointment we expect; bounds how far back we look for rows that
# started before a range but may still run into it.
MAX_APPOINTMENT_SPAN = timedelta(hours=24)


@dataclass(frozen=True)
class BookedInterval:
    appointment_id: uuid.UUID
    professional_id: int
    start: datetime
    end: datetime
    status: AppointmentStatus

    @property
    def blocks_calendar(self) -> bool:
        return self.status in ACTIVE_APPOINTMENT_STATUSES


def overlaps(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    """Half-open [start, end) overlap. Touching intervals do not overlap."""
    return start_a < end_b and start_b < end_a


def resolve_end(
    start: datetime,
    end: Optional[datetime],
    service_duration_minutes: Optional[int],
    default_minutes: Optional[int] = None,
) -> datetime:
    """End of an appointment, falling back to the service duration, then the default."""
    if end is not None:
        return end
    if service_duration_minutes:
        return start + timedelta(minutes=service_duration_minutes)
    if default_minutes is None:
        default_minutes = get_settings().default_appointment_minutes
    return start + timedelta(minutes=default_minutes)


def interval_for(
    appointment: Appointment,
    service_duration_minutes: Optional[int] = None,
    default_minutes: Optional[int] = None,
) -> BookedInterval:
    return BookedInterval(
        appointment_id=appointment.id,
        professional_id=appointment.professional_id,
        start=appointment.start_at_utc,
        end=resolve_end(
            appointment.start_at_utc,
            appointment.end_at_utc,
            service_duration_minutes,
            default_minutes,
        ),
        status=appointment.status,
    )


def find_conflict(
    intervals: Iterable[BookedInterval],
    professional_id: int,
    start: datetime,
    end: datetime,
    exclude_id: Optional[uuid.UUID] = None,
) -> Optional[BookedInterval]:
    """
    First pending/confirmed interval of ``professional_id`` overlapping [start, end).

    ``exclude_id`` skips the appointment being rescheduled so it never
    conflicts with its own current slot.
    """
    for interval in intervals:
        if interval.professional_id != professional_id:
            continue
        if not interval.blocks_calendar:
            continue
        if exclude_id is not None and interval.appointment_id == exclude_id:
            continue
        if overlaps(start, end, interval.start, interval.end):
            return interval
    return None


def has_conflict(
    intervals: Iterable[BookedInterval],
    professional_id: int,
    start: datetime,
    end: datetime,
    exclude_id: Optional[uuid.UUID] = None,
) -> bool:
    return find_conflict(intervals, professional_id, start, end, exclude_id) is not None


# ────────────────────────────────────────────────────────────────
# Queries (read-only; the ledger never mutates on read)
# ────────────────────────────────────────────────────────────────

async def list_appointments_in_range(
    session: AsyncSession,
    tenant_id: int,
    professional_id: int,
    range_start: datetime,
    range_end: datetime,
    active_only: bool = False,
) -> list[tuple[Appointment, BookedInterval]]:
    """Appointments of a professional whose interval overlaps [range_start, range_end)."""
    stmt = (
        select(Appointment, Service.duration_minutes)
        .outerjoin(Service, Service.id == Appointment.service_id)
        .where(
            Appointment.barbershop_id == tenant_id,
            Appointment.professional_id == professional_id,
            Appointment.start_at_utc < range_end,
            Appointment.start_at_utc >= range_start - MAX_APPOINTMENT_SPAN,
        )
        .order_by(Appointment.start_at_utc)
    )
    if active_only:
        stmt = stmt.where(Appointment.status.in_(ACTIVE_APPOINTMENT_STATUSES))

    result = await session.execute(stmt)
    default_minutes = get_settings().default_appointment_minutes

    rows = []
    for appointment, duration in result.all():
        interval = interval_for(appointment, duration, default_minutes)
        if overlaps(range_start, range_end, interval.start, interval.end):
            rows.append((appointment, interval))
    return rows


async def load_booked_intervals(
    session: AsyncSession,
    tenant_id: int,
    professional_id: int,
    range_start: datetime,
    range_end: datetime,
) -> list[BookedInterval]:
    """Pending/confirmed intervals overlapping the range, in start order."""
    rows = await list_appointments_in_range(
        session, tenant_id, professional_id, range_start, range_end, active_only=True
    )
    return [interval for _, interval in rows]


async def get_appointment(
    session: AsyncSession,
    tenant_id: int,
    appointment_id: uuid.UUID,
    for_update: bool = False,
) -> Optional[Appointment]:
    stmt = select(Appointment).where(
        Appointment.id == appointment_id,
        Appointment.barbershop_id == tenant_id,
    )
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def find_active_appointment_for_client(
    session: AsyncSession,
    tenant_id: int,
    client_id: int,
    now: datetime,
) -> Optional[Appointment]:
    """Next pending/confirmed appointment of the client starting at or after ``now``."""
    result = await session.execute(
        select(Appointment)
        .where(
            Appointment.barbershop_id == tenant_id,
            Appointment.client_id == client_id,
            Appointment.status.in_(ACTIVE_APPOINTMENT_STATUSES),
            Appointment.start_at_utc >= now,
        )
        .order_by(Appointment.start_at_utc)
        .limit(1)
    )
    return result.scalar_one_or_none()

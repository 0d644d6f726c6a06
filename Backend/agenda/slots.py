"""
Slot generation for one professional, one date and one service duration.

Candidates start at the beginning of the working window and advance by the
tenant's slot step while the whole service still fits before the end of the
window. Unavailable candidates are returned with ``available=False`` and a
reason so the UI can grey them out instead of hiding them.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Sequence
from zoneinfo import ZoneInfo

from sqlalchemy.ext.asyncio import AsyncSession

from .core.errors import ValidationError
from .ledger import BookedInterval, find_conflict, load_booked_intervals, overlaps
from .schedule import WorkingWindow, get_working_window, to_local
from .tenancy.context import TenantContext

logger = logging.getLogger(__name__)

REASON_PAST = "Horário passado"
REASON_BREAK = "Horário de intervalo"
REASON_BUSY = "Horário ocupado"
REASON_OUTSIDE_HOURS = "Fora do horário de trabalho"
REASON_DAY_OFF = "Profissional não trabalha neste dia"
REASON_NOT_OFFERED = "Horário não disponível na agenda"


@dataclass(frozen=True)
class TimeSlot:
    time: str  # "HH:MM", tenant-local
    available: bool
    start_at_utc: datetime
    end_at_utc: datetime
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        data = {"time": self.time, "available": self.available}
        if self.reason:
            data["reason"] = self.reason
        return data


@dataclass(frozen=True)
class SlotCheck:
    available: bool
    reason: Optional[str] = None


def unavailable_reason(
    professional_id: int,
    start: datetime,
    end: datetime,
    break_bounds: Optional[tuple[datetime, datetime]],
    intervals: Sequence[BookedInterval],
    now: datetime,
    exclude_id: Optional[uuid.UUID] = None,
) -> Optional[str]:
    """Why [start, end) cannot be booked inside the working window, or None."""
    if start < now:
        return REASON_PAST
    if break_bounds and overlaps(start, end, break_bounds[0], break_bounds[1]):
        return REASON_BREAK
    if find_conflict(intervals, professional_id, start, end, exclude_id):
        return REASON_BUSY
    return None


def generate_slots(
    professional_id: int,
    day: date,
    duration_minutes: int,
    window: Optional[WorkingWindow],
    intervals: Sequence[BookedInterval],
    now: datetime,
    tz: ZoneInfo,
    step_minutes: int = 30,
    exclude_id: Optional[uuid.UUID] = None,
) -> list[TimeSlot]:
    """Chronological candidate slots for the day. Empty when the professional is off."""
    if duration_minutes <= 0:
        raise ValidationError("A duração do serviço deve ser maior que zero")
    if step_minutes <= 0:
        raise ValidationError("O intervalo entre horários deve ser maior que zero")
    if window is None:
        return []

    day_start, day_end = window.bounds_on(day, tz)
    break_bounds = window.break_bounds_on(day, tz)
    duration = timedelta(minutes=duration_minutes)
    step = timedelta(minutes=step_minutes)

    slots: list[TimeSlot] = []
    cursor = day_start
    while cursor + duration <= day_end:
        slot_start = cursor
        slot_end = cursor + duration
        reason = unavailable_reason(
            professional_id, slot_start, slot_end, break_bounds, intervals, now, exclude_id
        )
        slots.append(
            TimeSlot(
                time=slot_start.strftime("%H:%M"),
                available=reason is None,
                start_at_utc=slot_start.astimezone(timezone.utc),
                end_at_utc=slot_end.astimezone(timezone.utc),
                reason=reason,
            )
        )
        cursor += step

    return slots


def check_slot(
    professional_id: int,
    day: date,
    at: time,
    duration_minutes: int,
    window: Optional[WorkingWindow],
    intervals: Sequence[BookedInterval],
    now: datetime,
    tz: ZoneInfo,
    exclude_id: Optional[uuid.UUID] = None,
) -> SlotCheck:
    """Availability of one specific start time, not necessarily on the slot grid."""
    if window is None:
        return SlotCheck(False, REASON_DAY_OFF)

    start = to_local(day, at, tz)
    end = start + timedelta(minutes=duration_minutes)
    day_start, day_end = window.bounds_on(day, tz)
    if start < day_start or end > day_end:
        return SlotCheck(False, REASON_OUTSIDE_HOURS)

    reason = unavailable_reason(
        professional_id,
        start,
        end,
        window.break_bounds_on(day, tz),
        intervals,
        now,
        exclude_id,
    )
    return SlotCheck(reason is None, reason)


# ────────────────────────────────────────────────────────────────
# Database-backed entry points
# ────────────────────────────────────────────────────────────────

async def _day_intervals(
    session: AsyncSession,
    ctx: TenantContext,
    professional_id: int,
    day: date,
    window: WorkingWindow,
) -> list[BookedInterval]:
    day_start, day_end = window.bounds_on(day, ctx.tz)
    return await load_booked_intervals(
        session,
        ctx.tenant_id,
        professional_id,
        day_start.astimezone(timezone.utc),
        day_end.astimezone(timezone.utc),
    )


async def list_slots(
    session: AsyncSession,
    ctx: TenantContext,
    professional_id: int,
    day: date,
    duration_minutes: int,
    exclude_id: Optional[uuid.UUID] = None,
    now: Optional[datetime] = None,
) -> list[TimeSlot]:
    """Slots for a professional on a date, reading the schedule and the ledger."""
    now = now or datetime.now(timezone.utc)
    window = await get_working_window(session, ctx.tenant_id, professional_id, day)
    if window is None:
        return []

    intervals = await _day_intervals(session, ctx, professional_id, day, window)
    slots = generate_slots(
        professional_id,
        day,
        duration_minutes,
        window,
        intervals,
        now,
        ctx.tz,
        step_minutes=ctx.slot_step_minutes,
        exclude_id=exclude_id,
    )
    logger.debug(
        "Generated %d slots (%d available) for professional %s on %s",
        len(slots),
        sum(1 for s in slots if s.available),
        professional_id,
        day.isoformat(),
    )
    return slots


async def check_slot_availability(
    session: AsyncSession,
    ctx: TenantContext,
    professional_id: int,
    day: date,
    at: time,
    duration_minutes: int,
    exclude_id: Optional[uuid.UUID] = None,
    now: Optional[datetime] = None,
) -> SlotCheck:
    now = now or datetime.now(timezone.utc)
    window = await get_working_window(session, ctx.tenant_id, professional_id, day)
    if window is None:
        return SlotCheck(False, REASON_DAY_OFF)

    intervals = await _day_intervals(session, ctx, professional_id, day, window)
    return check_slot(
        professional_id, day, at, duration_minutes, window, intervals, now, ctx.tz, exclude_id
    )

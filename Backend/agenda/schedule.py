"""
Weekly working-hours template per professional.

One ScheduleDay row per weekday (0=domingo ... 6=sábado). A missing row means
the professional does not work that day.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Optional, Sequence
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .core.config import get_settings
from .core.errors import ValidationError
from .core.responses import ErrorCodes
from .models import ScheduleDay

logger = logging.getLogger(__name__)

# Segunda a sexta
DEFAULT_WORKING_DAYS = frozenset({1, 2, 3, 4, 5})


@dataclass(frozen=True)
class WorkingWindow:
    """Working hours of one professional on one calendar date."""

    start: time
    end: time
    break_start: Optional[time] = None
    break_end: Optional[time] = None

    @property
    def has_break(self) -> bool:
        # A zero-length break never blocks anything.
        return (
            self.break_start is not None
            and self.break_end is not None
            and self.break_start < self.break_end
        )

    def bounds_on(self, day: date, tz: ZoneInfo) -> tuple[datetime, datetime]:
        return to_local(day, self.start, tz), to_local(day, self.end, tz)

    def break_bounds_on(self, day: date, tz: ZoneInfo) -> Optional[tuple[datetime, datetime]]:
        if not self.has_break:
            return None
        return to_local(day, self.break_start, tz), to_local(day, self.break_end, tz)


def day_of_week(day: date) -> int:
    """Weekday number with Sunday as 0."""
    return (day.weekday() + 1) % 7


def to_local(day: date, at: time, tz: ZoneInfo) -> datetime:
    return datetime.combine(day, at, tzinfo=tz)


def parse_hhmm(value: str) -> time:
    try:
        hour, minute = map(int, value.split(":"))
        return time(hour=hour, minute=minute)
    except (ValueError, AttributeError):
        raise ValidationError(
            f"Horário inválido: {value!r}. Use HH:MM.",
            code=ErrorCodes.VALIDATION_ERROR,
        )


def validate_schedule_day(
    day_of_week_value: int,
    is_working: bool,
    start_time: Optional[time],
    end_time: Optional[time],
    break_start: Optional[time] = None,
    break_end: Optional[time] = None,
) -> None:
    """Raise ValidationError unless the row satisfies the schedule invariants."""
    if not 0 <= day_of_week_value <= 6:
        raise ValidationError("day_of_week deve ser 0..6", code=ErrorCodes.INVALID_SCHEDULE)

    if not is_working:
        return

    if start_time is None or end_time is None:
        raise ValidationError(
            "start_time e end_time são obrigatórios quando is_working=true",
            code=ErrorCodes.INVALID_SCHEDULE,
        )
    if not start_time < end_time:
        raise ValidationError("end_time deve ser maior que start_time", code=ErrorCodes.INVALID_SCHEDULE)

    if (break_start is None) != (break_end is None):
        raise ValidationError(
            "break_start e break_end devem ser informados juntos",
            code=ErrorCodes.INVALID_SCHEDULE,
        )
    if break_start is not None and break_start != break_end:
        if not (start_time <= break_start < break_end <= end_time):
            raise ValidationError(
                "O intervalo deve estar dentro do expediente",
                code=ErrorCodes.INVALID_SCHEDULE,
            )


def window_from_row(row: Optional[ScheduleDay]) -> Optional[WorkingWindow]:
    if row is None or not row.is_working:
        return None
    return WorkingWindow(
        start=row.start_time,
        end=row.end_time,
        break_start=row.break_start,
        break_end=row.break_end,
    )


async def get_schedule_day(
    session: AsyncSession,
    tenant_id: int,
    professional_id: int,
    weekday: int,
) -> Optional[ScheduleDay]:
    result = await session.execute(
        select(ScheduleDay).where(
            ScheduleDay.barbershop_id == tenant_id,
            ScheduleDay.professional_id == professional_id,
            ScheduleDay.day_of_week == weekday,
        )
    )
    return result.scalar_one_or_none()


async def get_working_window(
    session: AsyncSession,
    tenant_id: int,
    professional_id: int,
    day: date,
) -> Optional[WorkingWindow]:
    """Working hours for the date, or None when the professional is off."""
    row = await get_schedule_day(session, tenant_id, professional_id, day_of_week(day))
    return window_from_row(row)


async def get_weekly_schedule(
    session: AsyncSession,
    tenant_id: int,
    professional_id: int,
) -> Sequence[ScheduleDay]:
    result = await session.execute(
        select(ScheduleDay)
        .where(
            ScheduleDay.barbershop_id == tenant_id,
            ScheduleDay.professional_id == professional_id,
        )
        .order_by(ScheduleDay.day_of_week)
    )
    return result.scalars().all()


async def working_professional_ids(
    session: AsyncSession,
    tenant_id: int,
    professional_ids: Sequence[int],
    day: date,
) -> set[int]:
    """Which of the given professionals work on ``day``. One query for all of them."""
    if not professional_ids:
        return set()
    result = await session.execute(
        select(ScheduleDay.professional_id).where(
            ScheduleDay.barbershop_id == tenant_id,
            ScheduleDay.professional_id.in_(professional_ids),
            ScheduleDay.day_of_week == day_of_week(day),
            ScheduleDay.is_working.is_(True),
        )
    )
    return set(result.scalars().all())


async def upsert_schedule_day(
    session: AsyncSession,
    tenant_id: int,
    professional_id: int,
    weekday: int,
    is_working: bool,
    start_time: Optional[time],
    end_time: Optional[time],
    break_start: Optional[time] = None,
    break_end: Optional[time] = None,
) -> ScheduleDay:
    """Create or replace the row for one weekday. Does not commit."""
    validate_schedule_day(weekday, is_working, start_time, end_time, break_start, break_end)

    settings = get_settings()
    start_time = start_time or parse_hhmm(settings.default_work_start)
    end_time = end_time or parse_hhmm(settings.default_work_end)

    existing = await get_schedule_day(session, tenant_id, professional_id, weekday)
    if existing:
        existing.is_working = is_working
        existing.start_time = start_time
        existing.end_time = end_time
        existing.break_start = break_start
        existing.break_end = break_end
        return existing

    row = ScheduleDay(
        barbershop_id=tenant_id,
        professional_id=professional_id,
        day_of_week=weekday,
        is_working=is_working,
        start_time=start_time,
        end_time=end_time,
        break_start=break_start,
        break_end=break_end,
    )
    session.add(row)
    await session.flush()
    return row


async def create_default_schedule(
    session: AsyncSession,
    tenant_id: int,
    professional_id: int,
) -> list[ScheduleDay]:
    """
    Seed the seven weekday rows for a new professional.

    Monday to Friday working, weekends off, all using the configured default
    hours. Does nothing if the professional already has any schedule row.
    """
    existing = await get_weekly_schedule(session, tenant_id, professional_id)
    if existing:
        return list(existing)

    settings = get_settings()
    start_time = parse_hhmm(settings.default_work_start)
    end_time = parse_hhmm(settings.default_work_end)

    rows = [
        ScheduleDay(
            barbershop_id=tenant_id,
            professional_id=professional_id,
            day_of_week=weekday,
            is_working=weekday in DEFAULT_WORKING_DAYS,
            start_time=start_time,
            end_time=end_time,
        )
        for weekday in range(7)
    ]
    session.add_all(rows)
    await session.flush()
    logger.info("Created default schedule for professional %s", professional_id)
    return rows

"""
Slot generation tests.

Covers the pure generator (no database) and the database-backed
list_slots / check_slot_availability entry points.

Run with: pytest tests/test_slots.py -v
"""

import uuid
from datetime import time, timedelta, timezone

import pytest

from agenda.core.errors import ValidationError
from agenda.ledger import BookedInterval
from agenda.models import AppointmentStatus
from agenda.schedule import WorkingWindow
from agenda.slots import (
    REASON_BREAK,
    REASON_BUSY,
    REASON_DAY_OFF,
    REASON_OUTSIDE_HOURS,
    REASON_PAST,
    check_slot,
    check_slot_availability,
    generate_slots,
    list_slots,
)

from support import FIXED_NOW, MONDAY, SAO_PAULO, SUNDAY, local_dt

PRO = 7
FULL_DAY = WorkingWindow(start=time(9, 0), end=time(18, 0))
WITH_LUNCH = WorkingWindow(start=time(9, 0), end=time(18, 0), break_start=time(12, 0), break_end=time(13, 0))


def booked(hhmm: str, minutes: int = 30, status=AppointmentStatus.CONFIRMED, professional_id=PRO, appointment_id=None):
    start = local_dt(MONDAY, hhmm).astimezone(timezone.utc)
    return BookedInterval(
        appointment_id=appointment_id or uuid.uuid4(),
        professional_id=professional_id,
        start=start,
        end=start + timedelta(minutes=minutes),
        status=status,
    )


def by_time(slots):
    return {slot.time: slot for slot in slots}


# ────────────────────────────────────────────────────────────────
# Pure generator
# ────────────────────────────────────────────────────────────────

class TestGenerateSlots:
    """Candidate walk over the working window."""

    def test_full_free_day_has_eighteen_half_hour_slots(self):
        """Mon 09:00-18:00, 30 min service, no bookings: 09:00 ... 17:30, all free."""
        slots = generate_slots(PRO, MONDAY, 30, FULL_DAY, [], FIXED_NOW, SAO_PAULO)

        assert len(slots) == 18
        assert slots[0].time == "09:00"
        assert slots[-1].time == "17:30"
        assert all(slot.available for slot in slots)

    def test_booked_slot_is_unavailable_and_neighbours_stay_free(self):
        """A confirmed 10:00-10:30 appointment blocks only the 10:00 slot."""
        slots = by_time(generate_slots(PRO, MONDAY, 30, FULL_DAY, [booked("10:00")], FIXED_NOW, SAO_PAULO))

        assert slots["10:00"].available is False
        assert slots["10:00"].reason == REASON_BUSY
        assert slots["09:30"].available is True
        assert slots["10:30"].available is True

    def test_slot_ending_at_break_start_is_free(self):
        """11:30-12:00 touches the 12:00 break and stays available."""
        slots = by_time(generate_slots(PRO, MONDAY, 30, WITH_LUNCH, [], FIXED_NOW, SAO_PAULO))

        assert slots["11:30"].available is True
        assert slots["12:00"].available is False
        assert slots["12:00"].reason == REASON_BREAK
        assert slots["12:30"].reason == REASON_BREAK
        assert slots["13:00"].available is True

    def test_slot_crossing_break_start_is_blocked(self):
        """On a 15 minute grid, 11:45-12:15 runs into the break."""
        slots = by_time(generate_slots(PRO, MONDAY, 30, WITH_LUNCH, [], FIXED_NOW, SAO_PAULO, step_minutes=15))

        assert slots["11:30"].available is True
        assert slots["11:45"].available is False
        assert slots["11:45"].reason == REASON_BREAK

    def test_excluded_appointment_frees_its_own_slot(self):
        """Rescheduling X (14:00-14:30) shows 14:00 as available again."""
        appointment_id = uuid.uuid4()
        intervals = [booked("14:00", appointment_id=appointment_id)]

        without_exclusion = by_time(generate_slots(PRO, MONDAY, 30, FULL_DAY, intervals, FIXED_NOW, SAO_PAULO))
        with_exclusion = by_time(
            generate_slots(PRO, MONDAY, 30, FULL_DAY, intervals, FIXED_NOW, SAO_PAULO, exclude_id=appointment_id)
        )

        assert without_exclusion["14:00"].available is False
        assert with_exclusion["14:00"].available is True

    def test_no_window_means_no_slots(self):
        """A day off yields an empty list, not a list of unavailable slots."""
        assert generate_slots(PRO, SUNDAY, 30, None, [], FIXED_NOW, SAO_PAULO) == []

    def test_service_longer_than_window_yields_nothing(self):
        short_day = WorkingWindow(start=time(9, 0), end=time(10, 0))
        assert generate_slots(PRO, MONDAY, 90, short_day, [], FIXED_NOW, SAO_PAULO) == []

    def test_last_slot_must_fit_before_end(self):
        """A 60 minute service cannot start at 17:30."""
        slots = generate_slots(PRO, MONDAY, 60, FULL_DAY, [], FIXED_NOW, SAO_PAULO)

        assert slots[-1].time == "17:00"
        assert len(slots) == 17

    def test_past_slots_are_flagged(self):
        """With now at 10:15 local, 10:00 is past and 10:30 is not."""
        now = local_dt(MONDAY, "10:15").astimezone(timezone.utc)
        slots = by_time(generate_slots(PRO, MONDAY, 30, FULL_DAY, [], now, SAO_PAULO))

        assert slots["09:00"].reason == REASON_PAST
        assert slots["10:00"].reason == REASON_PAST
        assert slots["10:30"].available is True

    def test_slot_starting_exactly_now_is_not_past(self):
        now = local_dt(MONDAY, "10:00").astimezone(timezone.utc)
        slots = by_time(generate_slots(PRO, MONDAY, 30, FULL_DAY, [], now, SAO_PAULO))

        assert slots["10:00"].available is True

    def test_past_takes_precedence_over_break_and_busy(self):
        now = local_dt(MONDAY, "17:00").astimezone(timezone.utc)
        slots = by_time(generate_slots(PRO, MONDAY, 30, WITH_LUNCH, [booked("14:00")], now, SAO_PAULO))

        assert slots["12:00"].reason == REASON_PAST
        assert slots["14:00"].reason == REASON_PAST

    def test_adjacent_appointments_do_not_conflict(self):
        """Ends-when-other-starts and starts-when-other-ends are both free."""
        slots = by_time(generate_slots(PRO, MONDAY, 30, FULL_DAY, [booked("10:00", minutes=60)], FIXED_NOW, SAO_PAULO))

        assert slots["09:30"].available is True
        assert slots["10:00"].available is False
        assert slots["10:30"].available is False
        assert slots["11:00"].available is True

    def test_cancelled_and_completed_do_not_block(self):
        intervals = [
            booked("10:00", status=AppointmentStatus.CANCELLED),
            booked("11:00", status=AppointmentStatus.COMPLETED),
            booked("15:00", status=AppointmentStatus.PENDING),
        ]
        slots = by_time(generate_slots(PRO, MONDAY, 30, FULL_DAY, intervals, FIXED_NOW, SAO_PAULO))

        assert slots["10:00"].available is True
        assert slots["11:00"].available is True
        assert slots["15:00"].available is False

    def test_other_professionals_bookings_are_ignored(self):
        intervals = [booked("10:00", professional_id=PRO + 1)]
        slots = by_time(generate_slots(PRO, MONDAY, 30, FULL_DAY, intervals, FIXED_NOW, SAO_PAULO))

        assert slots["10:00"].available is True

    def test_zero_length_break_never_blocks(self):
        window = WorkingWindow(start=time(9, 0), end=time(18, 0), break_start=time(12, 0), break_end=time(12, 0))
        slots = generate_slots(PRO, MONDAY, 30, window, [], FIXED_NOW, SAO_PAULO)

        assert all(slot.available for slot in slots)

    def test_available_slots_never_overlap_break_or_bookings(self):
        """Every available slot avoids the break and every active booking."""
        intervals = [booked("09:30", minutes=45), booked("15:15", minutes=20)]
        slots = generate_slots(PRO, MONDAY, 45, WITH_LUNCH, intervals, FIXED_NOW, SAO_PAULO, step_minutes=15)
        lunch_start = local_dt(MONDAY, "12:00")
        lunch_end = local_dt(MONDAY, "13:00")

        for slot in slots:
            if not slot.available:
                continue
            assert not (slot.start_at_utc < lunch_end and lunch_start < slot.end_at_utc)
            for interval in intervals:
                assert not (slot.start_at_utc < interval.end and interval.start < slot.end_at_utc)
            assert slot.start_at_utc >= FIXED_NOW

    def test_output_is_chronological(self):
        slots = generate_slots(PRO, MONDAY, 30, WITH_LUNCH, [booked("10:00")], FIXED_NOW, SAO_PAULO)
        starts = [slot.start_at_utc for slot in slots]

        assert starts == sorted(starts)

    def test_non_positive_duration_is_rejected(self):
        with pytest.raises(ValidationError):
            generate_slots(PRO, MONDAY, 0, FULL_DAY, [], FIXED_NOW, SAO_PAULO)

    def test_slot_serialization_omits_reason_when_free(self):
        slots = by_time(generate_slots(PRO, MONDAY, 30, FULL_DAY, [booked("10:00")], FIXED_NOW, SAO_PAULO))

        assert slots["09:00"].to_dict() == {"time": "09:00", "available": True}
        assert slots["10:00"].to_dict() == {"time": "10:00", "available": False, "reason": REASON_BUSY}


class TestCheckSlot:
    """Point availability check for an arbitrary start time."""

    def test_day_off(self):
        result = check_slot(PRO, SUNDAY, time(10, 0), 30, None, [], FIXED_NOW, SAO_PAULO)
        assert result.available is False
        assert result.reason == REASON_DAY_OFF

    def test_outside_working_hours(self):
        result = check_slot(PRO, MONDAY, time(17, 45), 30, FULL_DAY, [], FIXED_NOW, SAO_PAULO)
        assert result.available is False
        assert result.reason == REASON_OUTSIDE_HOURS

    def test_off_grid_time_inside_break(self):
        result = check_slot(PRO, MONDAY, time(11, 45), 30, WITH_LUNCH, [], FIXED_NOW, SAO_PAULO)
        assert result.reason == REASON_BREAK

    def test_off_grid_free_time(self):
        result = check_slot(PRO, MONDAY, time(10, 10), 30, FULL_DAY, [booked("10:40")], FIXED_NOW, SAO_PAULO)
        assert result.available is True
        assert result.reason is None


# ────────────────────────────────────────────────────────────────
# Database-backed
# ────────────────────────────────────────────────────────────────

class TestListSlots:
    """list_slots reads the schedule and the ledger."""

    @pytest.mark.asyncio
    async def test_monday_schedule_from_database(self, async_session, ctx, barber):
        slots = await list_slots(async_session, ctx, barber.id, MONDAY, 30, now=FIXED_NOW)

        assert len(slots) == 18
        assert all(slot.available for slot in slots)

    @pytest.mark.asyncio
    async def test_unscheduled_day_is_empty(self, async_session, ctx, barber):
        assert await list_slots(async_session, ctx, barber.id, SUNDAY, 30, now=FIXED_NOW) == []

    @pytest.mark.asyncio
    async def test_existing_booking_blocks_slot(self, async_session, ctx, barber, make_appointment):
        await make_appointment(MONDAY, "10:00")
        slots = by_time(await list_slots(async_session, ctx, barber.id, MONDAY, 30, now=FIXED_NOW))

        assert slots["10:00"].reason == REASON_BUSY
        assert slots["09:30"].available is True
        assert slots["10:30"].available is True

    @pytest.mark.asyncio
    async def test_appointment_without_end_uses_service_duration(
        self, async_session, ctx, barber, make_appointment
    ):
        """The haircut lasts 30 minutes, so a row with no end blocks 10:00 only."""
        await make_appointment(MONDAY, "10:00", with_end=False)
        slots = by_time(await list_slots(async_session, ctx, barber.id, MONDAY, 30, now=FIXED_NOW))

        assert slots["10:00"].available is False
        assert slots["10:30"].available is True

    @pytest.mark.asyncio
    async def test_reschedule_excludes_own_appointment(self, async_session, ctx, barber, make_appointment):
        appointment = await make_appointment(MONDAY, "14:00")
        slots = by_time(
            await list_slots(async_session, ctx, barber.id, MONDAY, 30, exclude_id=appointment.id, now=FIXED_NOW)
        )

        assert slots["14:00"].available is True

    @pytest.mark.asyncio
    async def test_check_slot_availability_reports_busy(self, async_session, ctx, barber, make_appointment):
        await make_appointment(MONDAY, "16:00", minutes=60)
        result = await check_slot_availability(
            async_session, ctx, barber.id, MONDAY, time(16, 30), 30, now=FIXED_NOW
        )

        assert result.available is False
        assert result.reason == REASON_BUSY

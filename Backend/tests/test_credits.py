"""
Subscription credit tests.

Covers the monthly window, the unlimited sentinel, the booking-time policy
(auto record vs. limit decision) and usage reconciliation.
"""

from datetime import date

import pytest
from sqlalchemy import func, select

from agenda.core.errors import UsageAlreadyRecorded, ValidationError
from agenda.credits import (
    UNLIMITED,
    CreditDecision,
    LimitResolution,
    apply_credit_policy,
    build_credit,
    check_service_credit,
    compute_credits,
    month_window,
    record_usage,
    release_usage,
    resolve_limit,
)
from agenda.models import AppointmentStatus, CreditStatus, SubscriptionStatus, UsageRecord

from support import FIXED_NOW, MONDAY, SAO_PAULO, local_dt

JAN_2 = local_dt(date(2030, 1, 2), "10:00")
JAN_3 = local_dt(date(2030, 1, 3), "10:00")


async def usage_count(session) -> int:
    result = await session.execute(select(func.count(UsageRecord.id)))
    return result.scalar_one()


class TestCreditArithmetic:
    def test_remaining_is_limit_minus_used(self):
        credit = build_credit(1, 4, 1)
        assert credit.remaining == 3
        assert not credit.is_exhausted

    def test_remaining_never_negative(self):
        assert build_credit(1, 2, 5).remaining == 0

    @pytest.mark.parametrize("limit", [0, None])
    def test_zero_or_missing_limit_is_unlimited(self, limit):
        credit = build_credit(1, limit, 12)
        assert credit.remaining == UNLIMITED
        assert credit.is_unlimited
        assert credit.to_dict() == {"serviceId": 1, "limit": 0, "used": 12, "remaining": -1}

    def test_month_window_uses_tenant_local_midnight(self):
        start, end = month_window(date(2030, 1, 17), SAO_PAULO)
        assert start == local_dt(date(2030, 1, 1), "00:00")
        assert end == local_dt(date(2030, 2, 1), "00:00")

    def test_month_window_wraps_december(self):
        start, end = month_window(date(2029, 12, 5), SAO_PAULO)
        assert end == local_dt(date(2030, 1, 1), "00:00")


class TestComputeCredits:

    @pytest.mark.asyncio
    async def test_no_subscription_means_no_credits(self, async_session, shop, customer):
        assert await compute_credits(async_session, customer.id, shop.id, MONDAY, SAO_PAULO) == []

    @pytest.mark.asyncio
    async def test_cancelled_subscription_is_ignored(self, async_session, shop, customer, haircut, make_subscription):
        await make_subscription({haircut: 2}, status=SubscriptionStatus.CANCELED)
        assert await compute_credits(async_session, customer.id, shop.id, MONDAY, SAO_PAULO) == []

    @pytest.mark.asyncio
    async def test_counts_only_this_month(self, async_session, shop, customer, haircut, make_subscription, add_usage):
        """A use at 23:30 local on Dec 31 belongs to December even though it is January in UTC."""
        subscription = await make_subscription({haircut: 4})
        await add_usage(subscription, haircut, local_dt(date(2029, 12, 31), "23:30"))
        await add_usage(subscription, haircut, local_dt(date(2030, 1, 1), "00:10"), hhmm="10:00")
        await add_usage(subscription, haircut, JAN_2)

        credits = await compute_credits(async_session, customer.id, shop.id, MONDAY, SAO_PAULO)

        assert [c.to_dict() for c in credits] == [
            {"serviceId": haircut.id, "limit": 4, "used": 2, "remaining": 2}
        ]

    @pytest.mark.asyncio
    async def test_limit_two_used_twice_is_exhausted(
        self, async_session, shop, customer, haircut, beard, make_subscription, add_usage
    ):
        subscription = await make_subscription({haircut: 2, beard: None})
        await add_usage(subscription, haircut, JAN_2)
        await add_usage(subscription, haircut, JAN_3)

        credits = {c.service_id: c for c in await compute_credits(async_session, customer.id, shop.id, MONDAY, SAO_PAULO)}

        assert credits[haircut.id].remaining == 0
        assert credits[beard.id].remaining == UNLIMITED

    @pytest.mark.asyncio
    async def test_compute_is_idempotent(self, async_session, shop, customer, haircut, make_subscription, add_usage):
        subscription = await make_subscription({haircut: 3})
        await add_usage(subscription, haircut, JAN_2)

        first = await compute_credits(async_session, customer.id, shop.id, MONDAY, SAO_PAULO)
        second = await compute_credits(async_session, customer.id, shop.id, MONDAY, SAO_PAULO)

        assert first == second


class TestServiceCreditDecision:

    @pytest.mark.asyncio
    async def test_uncovered_service(self, async_session, shop, customer, haircut, beard, make_subscription):
        await make_subscription({haircut: 2})
        outcome = await check_service_credit(async_session, customer.id, shop.id, beard.id, MONDAY, SAO_PAULO)
        assert outcome.decision == CreditDecision.NOT_COVERED

    @pytest.mark.asyncio
    async def test_unknown_client_is_not_covered(self, async_session, shop, haircut):
        outcome = await check_service_credit(async_session, None, shop.id, haircut.id, MONDAY, SAO_PAULO)
        assert outcome.decision == CreditDecision.NOT_COVERED

    @pytest.mark.asyncio
    async def test_credit_left_auto_records(self, async_session, shop, customer, haircut, make_subscription):
        await make_subscription({haircut: 2})
        outcome = await check_service_credit(async_session, customer.id, shop.id, haircut.id, MONDAY, SAO_PAULO)
        assert outcome.decision == CreditDecision.AUTO_RECORD
        assert outcome.credit.remaining == 2

    @pytest.mark.asyncio
    async def test_exhausted_credit_reaches_limit(
        self, async_session, shop, customer, haircut, make_subscription, add_usage
    ):
        subscription = await make_subscription({haircut: 1})
        await add_usage(subscription, haircut, JAN_2)
        outcome = await check_service_credit(async_session, customer.id, shop.id, haircut.id, MONDAY, SAO_PAULO)
        assert outcome.decision == CreditDecision.LIMIT_REACHED


class TestUsageRecords:

    @pytest.mark.asyncio
    async def test_recording_twice_is_rejected(
        self, async_session, haircut, customer, make_subscription, make_appointment
    ):
        subscription = await make_subscription({haircut: 5})
        appointment = await make_appointment(MONDAY, "10:00", client=customer)

        await record_usage(async_session, subscription.id, haircut.id, appointment.id, used_at=FIXED_NOW)
        with pytest.raises(UsageAlreadyRecorded):
            await record_usage(async_session, subscription.id, haircut.id, appointment.id, used_at=FIXED_NOW)

    @pytest.mark.asyncio
    async def test_release_removes_the_record(
        self, async_session, haircut, customer, make_subscription, make_appointment
    ):
        subscription = await make_subscription({haircut: 5})
        appointment = await make_appointment(MONDAY, "10:00", client=customer)
        await record_usage(async_session, subscription.id, haircut.id, appointment.id, used_at=FIXED_NOW)
        await async_session.commit()

        assert await release_usage(async_session, appointment.id) is True
        assert await release_usage(async_session, appointment.id) is False
        assert await usage_count(async_session) == 0


class TestCreditPolicy:
    """Second phase of a booking: record, defer or ignore."""

    @pytest.mark.asyncio
    async def test_sixth_booking_on_limit_five_defers(
        self, async_session, shop, customer, haircut, make_subscription, add_usage, make_appointment
    ):
        subscription = await make_subscription({haircut: 5})
        for day in range(1, 6):
            await add_usage(subscription, haircut, local_dt(date(2030, 1, day), "10:00"))
        appointment = await make_appointment(
            MONDAY, "15:00", status=AppointmentStatus.PENDING, client=customer
        )

        outcome = await apply_credit_policy(async_session, shop.id, appointment, SAO_PAULO, now=FIXED_NOW)
        await async_session.commit()

        assert outcome.decision == CreditDecision.LIMIT_REACHED
        assert appointment.credit_status == CreditStatus.PENDING_DECISION
        assert await usage_count(async_session) == 5

    @pytest.mark.asyncio
    async def test_available_credit_is_recorded(
        self, async_session, shop, customer, haircut, make_subscription, make_appointment
    ):
        await make_subscription({haircut: 2})
        appointment = await make_appointment(MONDAY, "15:00", status=AppointmentStatus.PENDING, client=customer)

        outcome = await apply_credit_policy(async_session, shop.id, appointment, SAO_PAULO, now=FIXED_NOW)
        await async_session.commit()

        assert outcome.decision == CreditDecision.AUTO_RECORD
        assert appointment.credit_status == CreditStatus.RECORDED
        assert await usage_count(async_session) == 1

    @pytest.mark.asyncio
    async def test_charge_resolution_records_nothing(
        self, async_session, shop, customer, haircut, make_subscription, add_usage, make_appointment
    ):
        subscription = await make_subscription({haircut: 1})
        await add_usage(subscription, haircut, JAN_2)
        appointment = await make_appointment(MONDAY, "15:00", status=AppointmentStatus.PENDING, client=customer)
        await apply_credit_policy(async_session, shop.id, appointment, SAO_PAULO, now=FIXED_NOW)

        await resolve_limit(async_session, shop.id, appointment, LimitResolution.CHARGE)
        await async_session.commit()

        assert appointment.credit_status == CreditStatus.CHARGED
        assert await usage_count(async_session) == 1

    @pytest.mark.asyncio
    async def test_override_resolution_records_beyond_limit(
        self, async_session, shop, customer, haircut, make_subscription, add_usage, make_appointment
    ):
        subscription = await make_subscription({haircut: 1})
        await add_usage(subscription, haircut, JAN_2)
        appointment = await make_appointment(MONDAY, "15:00", status=AppointmentStatus.PENDING, client=customer)
        await apply_credit_policy(async_session, shop.id, appointment, SAO_PAULO, now=FIXED_NOW)

        await resolve_limit(async_session, shop.id, appointment, LimitResolution.OVERRIDE, now=FIXED_NOW)
        await async_session.commit()

        credits = await compute_credits(async_session, customer.id, shop.id, MONDAY, SAO_PAULO)
        assert appointment.credit_status == CreditStatus.RECORDED
        assert credits[0].used == 2
        assert credits[0].remaining == 0

    @pytest.mark.asyncio
    async def test_resolve_requires_pending_decision(
        self, async_session, shop, customer, haircut, make_appointment
    ):
        appointment = await make_appointment(MONDAY, "15:00", status=AppointmentStatus.PENDING, client=customer)
        with pytest.raises(ValidationError):
            await resolve_limit(async_session, shop.id, appointment, LimitResolution.CHARGE)

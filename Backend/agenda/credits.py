"""
Subscription credits: how many uses of each covered service a client has left
this month, and the usage records that consume them.

Credits are always derived from ClientSubscription + PlanItem + UsageRecord on
demand. Nothing here caches them.

Recording usage is the second phase of a booking. The appointment is written
first; then ``apply_credit_policy`` either records usage (credit available),
leaves the appointment waiting for an operator decision (limit reached), or
marks it as not covered. ``resolve_limit`` settles the waiting case.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .core.errors import CapacityError, ValidationError, UsageAlreadyRecorded
from .core.responses import ErrorCodes
from .models import (
    Appointment,
    ClientSubscription,
    CreditStatus,
    PlanItem,
    SubscriptionStatus,
    UsageRecord,
)

logger = logging.getLogger(__name__)

UNLIMITED = -1


class CreditDecision(str, Enum):
    NOT_COVERED = "not_covered"
    AUTO_RECORD = "auto_record"
    LIMIT_REACHED = "limit_reached"


class LimitResolution(str, Enum):
    CHARGE = "charge"
    OVERRIDE = "override"


@dataclass(frozen=True)
class Credit:
    service_id: int
    limit: int  # 0 means unlimited
    used: int
    remaining: int  # UNLIMITED (-1) or max(0, limit - used)

    @property
    def is_unlimited(self) -> bool:
        return self.remaining == UNLIMITED

    @property
    def is_exhausted(self) -> bool:
        return self.remaining == 0

    def to_dict(self) -> dict:
        return {
            "serviceId": self.service_id,
            "limit": self.limit,
            "used": self.used,
            "remaining": self.remaining,
        }


@dataclass(frozen=True)
class ServiceCredit:
    decision: CreditDecision
    subscription_id: Optional[int] = None
    credit: Optional[Credit] = None


def build_credit(service_id: int, quantity_limit: Optional[int], used: int) -> Credit:
    limit = quantity_limit or 0
    if limit <= 0:
        return Credit(service_id=service_id, limit=0, used=used, remaining=UNLIMITED)
    return Credit(service_id=service_id, limit=limit, used=used, remaining=max(0, limit - used))


def month_window(as_of: date, tz: ZoneInfo) -> tuple[datetime, datetime]:
    """UTC bounds of the tenant-local calendar month containing ``as_of``: [start, next start)."""
    first = as_of.replace(day=1)
    if first.month == 12:
        next_first = first.replace(year=first.year + 1, month=1)
    else:
        next_first = first.replace(month=first.month + 1)
    start = datetime.combine(first, time.min, tzinfo=tz)
    end = datetime.combine(next_first, time.min, tzinfo=tz)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


async def get_active_subscription(
    session: AsyncSession,
    tenant_id: int,
    client_id: int,
    for_update: bool = False,
) -> Optional[ClientSubscription]:
    stmt = (
        select(ClientSubscription)
        .where(
            ClientSubscription.barbershop_id == tenant_id,
            ClientSubscription.client_id == client_id,
            ClientSubscription.status == SubscriptionStatus.ACTIVE,
        )
        .order_by(ClientSubscription.id.desc())
        .limit(1)
    )
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def _credits_for_subscription(
    session: AsyncSession,
    subscription: ClientSubscription,
    as_of: date,
    tz: ZoneInfo,
    service_id: Optional[int] = None,
) -> list[Credit]:
    items_stmt = select(PlanItem).where(PlanItem.plan_id == subscription.plan_id)
    if service_id is not None:
        items_stmt = items_stmt.where(PlanItem.service_id == service_id)
    items = (await session.execute(items_stmt.order_by(PlanItem.service_id))).scalars().all()
    if not items:
        return []

    month_start, month_end = month_window(as_of, tz)
    usage_result = await session.execute(
        select(UsageRecord.service_id, func.count(UsageRecord.id))
        .where(
            UsageRecord.subscription_id == subscription.id,
            UsageRecord.service_id.in_([item.service_id for item in items]),
            UsageRecord.used_at_utc >= month_start,
            UsageRecord.used_at_utc < month_end,
        )
        .group_by(UsageRecord.service_id)
    )
    used_by_service = dict(usage_result.all())

    return [
        build_credit(item.service_id, item.quantity_limit, used_by_service.get(item.service_id, 0))
        for item in items
    ]


async def compute_credits(
    session: AsyncSession,
    client_id: int,
    tenant_id: int,
    as_of_month: date,
    tz: ZoneInfo,
) -> list[Credit]:
    """Credits of every service in the client's active plan. Empty without a subscription."""
    subscription = await get_active_subscription(session, tenant_id, client_id)
    if subscription is None:
        return []
    return await _credits_for_subscription(session, subscription, as_of_month, tz)


async def check_service_credit(
    session: AsyncSession,
    client_id: Optional[int],
    tenant_id: int,
    service_id: int,
    as_of: date,
    tz: ZoneInfo,
    for_update: bool = False,
) -> ServiceCredit:
    """What booking ``service_id`` now would do to the client's credits."""
    if client_id is None:
        return ServiceCredit(CreditDecision.NOT_COVERED)

    subscription = await get_active_subscription(session, tenant_id, client_id, for_update=for_update)
    if subscription is None:
        return ServiceCredit(CreditDecision.NOT_COVERED)

    credits = await _credits_for_subscription(session, subscription, as_of, tz, service_id=service_id)
    if not credits:
        return ServiceCredit(CreditDecision.NOT_COVERED, subscription_id=subscription.id)

    credit = credits[0]
    decision = CreditDecision.LIMIT_REACHED if credit.is_exhausted else CreditDecision.AUTO_RECORD
    return ServiceCredit(decision, subscription_id=subscription.id, credit=credit)


# ────────────────────────────────────────────────────────────────
# Usage records (append-only)
# ────────────────────────────────────────────────────────────────

async def get_usage_for_appointment(
    session: AsyncSession,
    appointment_id: uuid.UUID,
) -> Optional[UsageRecord]:
    result = await session.execute(
        select(UsageRecord).where(UsageRecord.appointment_id == appointment_id)
    )
    return result.scalar_one_or_none()


async def record_usage(
    session: AsyncSession,
    subscription_id: int,
    service_id: int,
    appointment_id: uuid.UUID,
    used_at: Optional[datetime] = None,
) -> UsageRecord:
    """
    Append one usage record. Does not commit.

    Raises UsageAlreadyRecorded if the appointment already consumed a credit;
    recording twice is a caller bug, not a no-op.
    """
    existing = await get_usage_for_appointment(session, appointment_id)
    if existing is not None:
        raise UsageAlreadyRecorded(
            "Uso do plano já registrado para este agendamento",
            details={"appointment_id": str(appointment_id)},
        )

    record = UsageRecord(
        subscription_id=subscription_id,
        service_id=service_id,
        appointment_id=appointment_id,
        used_at_utc=used_at or datetime.now(timezone.utc),
    )
    session.add(record)
    await session.flush()
    logger.info(
        "Recorded plan usage: subscription=%s service=%s appointment=%s",
        subscription_id,
        service_id,
        appointment_id,
    )
    return record


async def release_usage(session: AsyncSession, appointment_id: uuid.UUID) -> bool:
    """Remove the usage record of a cancelled appointment. Does not commit."""
    result = await session.execute(
        delete(UsageRecord).where(UsageRecord.appointment_id == appointment_id)
    )
    released = result.rowcount > 0
    if released:
        logger.info("Released plan usage for cancelled appointment %s", appointment_id)
    return released


# ────────────────────────────────────────────────────────────────
# Booking-time policy
# ────────────────────────────────────────────────────────────────

async def apply_credit_policy(
    session: AsyncSession,
    tenant_id: int,
    appointment: Appointment,
    tz: ZoneInfo,
    now: Optional[datetime] = None,
) -> ServiceCredit:
    """
    Second phase of a booking for an appointment that is already persisted.

    Locks the subscription row so two bookings cannot both take the last
    credit. Does not commit.
    """
    now = now or datetime.now(timezone.utc)
    if appointment.service_id is None:
        appointment.credit_status = CreditStatus.NOT_APPLICABLE
        return ServiceCredit(CreditDecision.NOT_COVERED)

    outcome = await check_service_credit(
        session,
        appointment.client_id,
        tenant_id,
        appointment.service_id,
        now.astimezone(tz).date(),
        tz,
        for_update=True,
    )

    if outcome.decision == CreditDecision.AUTO_RECORD:
        await record_usage(
            session, outcome.subscription_id, appointment.service_id, appointment.id, used_at=now
        )
        appointment.credit_status = CreditStatus.RECORDED
    elif outcome.decision == CreditDecision.LIMIT_REACHED:
        appointment.credit_status = CreditStatus.PENDING_DECISION
        logger.info(
            "Plan limit reached: appointment=%s service=%s used=%s limit=%s",
            appointment.id,
            appointment.service_id,
            outcome.credit.used,
            outcome.credit.limit,
        )
    else:
        appointment.credit_status = CreditStatus.NOT_APPLICABLE
    return outcome


def capacity_error_for(outcome: ServiceCredit, service_id: int) -> CapacityError:
    return CapacityError(
        "Limite do plano atingido para este serviço neste mês",
        service_id=service_id,
        limit=outcome.credit.limit if outcome.credit else 0,
        used=outcome.credit.used if outcome.credit else 0,
    )


async def resolve_limit(
    session: AsyncSession,
    tenant_id: int,
    appointment: Appointment,
    resolution: LimitResolution,
    now: Optional[datetime] = None,
) -> Appointment:
    """
    Settle an appointment waiting for the limit decision. Does not commit.

    CHARGE leaves the credits untouched and bills the service normally.
    OVERRIDE records usage beyond the plan limit.
    """
    if appointment.credit_status != CreditStatus.PENDING_DECISION:
        raise ValidationError(
            "Este agendamento não aguarda decisão de limite do plano",
            code=ErrorCodes.INVALID_STEP,
            details={"credit_status": appointment.credit_status.value},
        )

    if resolution == LimitResolution.CHARGE:
        appointment.credit_status = CreditStatus.CHARGED
        logger.info("Plan limit resolved as charge for appointment %s", appointment.id)
        return appointment

    subscription = (
        await get_active_subscription(session, tenant_id, appointment.client_id)
        if appointment.client_id is not None
        else None
    )
    if subscription is None:
        raise ValidationError(
            "Cliente não possui assinatura ativa",
            code=ErrorCodes.VALIDATION_ERROR,
        )

    await record_usage(session, subscription.id, appointment.service_id, appointment.id, used_at=now)
    appointment.credit_status = CreditStatus.RECORDED
    logger.info(
        "Plan limit overridden: appointment=%s subscription=%s service=%s",
        appointment.id,
        subscription.id,
        appointment.service_id,
    )
    return appointment

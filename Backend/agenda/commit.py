"""
Authoritative appointment writes: create, reschedule, cancel.

Slot listings are snapshots. Every write here re-checks the candidate
interval under a row lock on the professional, using the same conflict rule
as slot generation (ledger.find_conflict). The partial unique index on
(professional_id, start_at_utc) for active rows catches anything the lock
cannot, and that IntegrityError surfaces as ConflictError too.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .clients import get_or_create_client, phones_match
from .core.errors import ConflictError, NotFoundError, ValidationError
from .core.responses import ErrorCodes
from .credits import release_usage
from .events import AppointmentEvent, AppointmentEventKind, EventChannel
from .ledger import find_active_appointment_for_client, get_appointment
from .models import Appointment, AppointmentStatus, Client, Professional, Service
from .slots import REASON_BUSY, check_slot_availability
from .tenancy.context import TenantContext
from .tenancy.queries import get_client_by_id, get_service_by_id, professional_offers_service

logger = logging.getLogger(__name__)


class BookingChannel(str, Enum):
    STAFF = "staff"
    PUBLIC = "public"


@dataclass
class CommitRequest:
    professional_id: int
    service_id: int
    start_at: datetime  # timezone-aware
    client_id: Optional[int] = None
    client_name: Optional[str] = None
    client_phone: Optional[str] = None
    client_email: Optional[str] = None
    reschedule_appointment_id: Optional[uuid.UUID] = None
    channel: BookingChannel = BookingChannel.PUBLIC

    @property
    def is_reschedule(self) -> bool:
        return self.reschedule_appointment_id is not None


@dataclass
class CommitResult:
    appointment: Appointment
    created: bool

    @property
    def appointment_id(self) -> uuid.UUID:
        return self.appointment.id


async def _lock_professional(
    session: AsyncSession,
    tenant_id: int,
    professional_id: int,
) -> Professional:
    # Serializes concurrent commits for the same professional (no-op on SQLite).
    result = await session.execute(
        select(Professional)
        .where(Professional.id == professional_id, Professional.barbershop_id == tenant_id)
        .with_for_update()
    )
    professional = result.scalar_one_or_none()
    if professional is None:
        raise NotFoundError("Profissional não encontrado")
    if not (professional.active and professional.is_service_provider):
        raise ValidationError("Profissional indisponível para agendamento")
    return professional


async def _require_service(session: AsyncSession, tenant_id: int, service_id: int) -> Service:
    service = await get_service_by_id(session, tenant_id, service_id)
    if service is None:
        raise NotFoundError("Serviço não encontrado")
    if not service.active:
        raise ValidationError("Serviço indisponível")
    return service


async def _resolve_client(
    session: AsyncSession,
    ctx: TenantContext,
    request: CommitRequest,
) -> Client:
    if request.client_id is not None:
        client = await get_client_by_id(session, ctx.tenant_id, request.client_id)
        if client is None:
            raise NotFoundError("Cliente não encontrado")
        return client
    if not request.client_phone:
        raise ValidationError("Informe o cliente ou nome e telefone", code=ErrorCodes.MISSING_SELECTION)
    return await get_or_create_client(
        session,
        ctx.tenant_id,
        request.client_name or "",
        request.client_phone,
        request.client_email,
    )


async def _verify_interval(
    session: AsyncSession,
    ctx: TenantContext,
    request: CommitRequest,
    service: Service,
    start: datetime,
    now: datetime,
) -> datetime:
    """Re-run the availability check for [start, start + duration). Returns the end."""
    local_start = start.astimezone(ctx.tz)
    end = start + timedelta(minutes=service.duration_minutes)

    check = await check_slot_availability(
        session,
        ctx,
        request.professional_id,
        local_start.date(),
        local_start.time(),
        service.duration_minutes,
        exclude_id=request.reschedule_appointment_id,
        now=now,
    )
    if check.available:
        return end

    if check.reason == REASON_BUSY:
        logger.info(
            "Commit conflict: tenant=%s professional=%s start=%s",
            ctx.tenant_id,
            request.professional_id,
            start.isoformat(),
        )
        raise ConflictError(
            "Este horário acabou de ser reservado. Escolha outro horário.",
            details={"reason": check.reason},
        )
    raise ValidationError(
        check.reason,
        code=ErrorCodes.SLOT_UNAVAILABLE,
        details={"reason": check.reason},
    )


async def _commit_or_conflict(session: AsyncSession, ctx: TenantContext, request: CommitRequest) -> None:
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        logger.info(
            "Commit conflict from unique index: tenant=%s professional=%s: %s",
            ctx.tenant_id,
            request.professional_id,
            exc.orig,
        )
        raise ConflictError("Este horário acabou de ser reservado. Escolha outro horário.")


async def commit_appointment(
    session: AsyncSession,
    ctx: TenantContext,
    request: CommitRequest,
    now: Optional[datetime] = None,
    events: Optional[EventChannel] = None,
) -> CommitResult:
    """
    Create a pending appointment, or move an existing one in place.

    Raises ValidationError for inconsistent input or a slot that is no longer
    bookable, ConflictError when another active appointment overlaps, and
    NotFoundError for references outside the tenant. Commits on success.
    """
    now = now or datetime.now(timezone.utc)
    if request.start_at.tzinfo is None:
        raise ValidationError("start_at deve ter fuso horário")
    start = request.start_at.astimezone(timezone.utc)

    await _lock_professional(session, ctx.tenant_id, request.professional_id)
    service = await _require_service(session, ctx.tenant_id, request.service_id)
    if not await professional_offers_service(
        session, ctx.tenant_id, request.professional_id, request.service_id
    ):
        raise ValidationError("Profissional não realiza este serviço")

    target: Optional[Appointment] = None
    if request.is_reschedule:
        target = await get_appointment(
            session, ctx.tenant_id, request.reschedule_appointment_id, for_update=True
        )
        if target is None:
            raise NotFoundError("Agendamento não encontrado")
        if not target.is_active():
            raise ValidationError("Apenas agendamentos ativos podem ser remarcados")

    end = await _verify_interval(session, ctx, request, service, start, now)

    if target is not None:
        previous_start = target.start_at_utc
        target.professional_id = request.professional_id
        target.service_id = service.id
        target.start_at_utc = start
        target.end_at_utc = end
        await _commit_or_conflict(session, ctx, request)
        logger.info("Rescheduled appointment %s to %s", target.id, start.isoformat())
        if events is not None:
            await events.publish(
                AppointmentEvent.from_appointment(
                    AppointmentEventKind.RESCHEDULED, target, previous_start_at_utc=previous_start
                )
            )
        return CommitResult(appointment=target, created=False)

    client = await _resolve_client(session, ctx, request)
    if request.channel == BookingChannel.PUBLIC:
        active = await find_active_appointment_for_client(session, ctx.tenant_id, client.id, now)
        if active is not None:
            raise ValidationError(
                "Você já possui um agendamento ativo",
                code=ErrorCodes.ACTIVE_APPOINTMENT_EXISTS,
                details={"appointment_id": str(active.id)},
            )

    appointment = Appointment(
        barbershop_id=ctx.tenant_id,
        professional_id=request.professional_id,
        service_id=service.id,
        client_id=client.id,
        client_name=client.name,
        client_phone=client.phone,
        start_at_utc=start,
        end_at_utc=end,
        status=AppointmentStatus.PENDING,
    )
    session.add(appointment)
    await _commit_or_conflict(session, ctx, request)
    logger.info(
        "Created appointment %s: tenant=%s professional=%s start=%s channel=%s",
        appointment.id,
        ctx.tenant_id,
        request.professional_id,
        start.isoformat(),
        request.channel.value,
    )
    if events is not None:
        await events.publish(AppointmentEvent.from_appointment(AppointmentEventKind.CREATED, appointment))
    return CommitResult(appointment=appointment, created=True)


async def _owner_phone(session: AsyncSession, ctx: TenantContext, appointment: Appointment) -> Optional[str]:
    """Current phone of the appointment's client, else the phone captured at booking."""
    if appointment.client_id is not None:
        client = await get_client_by_id(session, ctx.tenant_id, appointment.client_id)
        if client is not None and client.phone:
            return client.phone
    return appointment.client_phone


async def cancel_appointment(
    session: AsyncSession,
    ctx: TenantContext,
    appointment_id: uuid.UUID,
    phone: Optional[str] = None,
    now: Optional[datetime] = None,
    events: Optional[EventChannel] = None,
) -> Appointment:
    """
    Cancel an active appointment and give back its plan credit.

    When ``phone`` is given (public flow) it must belong to the appointment's
    client; a mismatch looks exactly like a missing appointment.
    """
    now = now or datetime.now(timezone.utc)
    appointment = await get_appointment(session, ctx.tenant_id, appointment_id, for_update=True)
    if appointment is None:
        raise NotFoundError("Agendamento não encontrado")

    if phone is not None:
        owner_phone = await _owner_phone(session, ctx, appointment)
        if not phones_match(owner_phone or "", phone):
            logger.info("Cancel refused for appointment %s: phone mismatch", appointment_id)
            raise NotFoundError("Agendamento não encontrado")

    if not appointment.is_active():
        raise ValidationError(
            "Este agendamento não pode mais ser cancelado",
            details={"status": appointment.status.value},
        )
    # Clients cancel only pending appointments; confirmed ones can be rescheduled.
    if phone is not None and appointment.status != AppointmentStatus.PENDING:
        raise ValidationError(
            "Agendamento confirmado não pode ser cancelado pelo cliente. Remarque ou fale com a barbearia.",
            code=ErrorCodes.CANCEL_NOT_ALLOWED,
            details={"status": appointment.status.value},
        )

    appointment.status = AppointmentStatus.CANCELLED
    appointment.cancelled_at = now
    await release_usage(session, appointment.id)
    await session.commit()
    logger.info("Cancelled appointment %s for tenant %s", appointment.id, ctx.tenant_id)

    if events is not None:
        await events.publish(AppointmentEvent.from_appointment(AppointmentEventKind.CANCELLED, appointment))
    return appointment

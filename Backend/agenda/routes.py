"""
HTTP surface of the booking engine.

Every route is tenant-scoped through the ``/s/{slug}`` prefix. The booking
wizard keeps its state in an in-memory session store keyed by an opaque
token; each request rebuilds a BookingOrchestrator around the stored state.
"""

import logging
import secrets
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from .booking import BookingOrchestrator, BookingState, BookingStep
from .clients import resolve_client
from .commit import BookingChannel, cancel_appointment
from .core.config import get_settings
from .core.db import get_session
from .core.errors import NotFoundError, ValidationError
from .core.responses import ErrorCodes, success_response
from .credits import LimitResolution, compute_credits
from .events import EventChannel
from .models import Appointment
from .slots import list_slots
from .tenancy.context import TenantContext, require_tenant_context
from .tenancy.queries import get_client_by_id, get_service_by_id

logger = logging.getLogger(__name__)
settings = get_settings()
router = APIRouter(prefix="/s/{slug}", tags=["booking"])


# ────────────────────────────────────────────────────────────────
# In-Memory Booking Session Store
# ────────────────────────────────────────────────────────────────

class BookingSession:
    def __init__(self, tenant_id: int, state: BookingState, created_at: datetime):
        self.tenant_id = tenant_id
        self.state = state
        self.created_at = created_at
        self.touched_at = created_at

    def is_expired(self, now: datetime) -> bool:
        return now > self.touched_at + timedelta(minutes=settings.booking_session_ttl_minutes)


# {token: BookingSession}
_booking_sessions: dict[str, BookingSession] = {}


def generate_session_token() -> str:
    return secrets.token_urlsafe(24)


def cleanup_expired_sessions() -> None:
    now = datetime.now(timezone.utc)
    expired = [token for token, entry in _booking_sessions.items() if entry.is_expired(now)]
    for token in expired:
        del _booking_sessions[token]
    if expired:
        logger.debug("Expired %d booking sessions", len(expired))


def _get_booking_session(token: str, ctx: TenantContext) -> BookingSession:
    cleanup_expired_sessions()
    entry = _booking_sessions.get(token)
    if entry is None or entry.tenant_id != ctx.tenant_id:
        raise NotFoundError(
            "Sessão de agendamento expirada ou inexistente",
            code=ErrorCodes.BOOKING_SESSION_NOT_FOUND,
        )
    entry.touched_at = datetime.now(timezone.utc)
    return entry


def get_event_channel(request: Request) -> Optional[EventChannel]:
    return getattr(request.app.state, "events", None)


async def get_orchestrator(
    token: str,
    ctx: TenantContext = Depends(require_tenant_context),
    session: AsyncSession = Depends(get_session),
    events: Optional[EventChannel] = Depends(get_event_channel),
) -> BookingOrchestrator:
    entry = _get_booking_session(token, ctx)
    return BookingOrchestrator(session, ctx, state=entry.state, events=events)


def _session_payload(token: str, orchestrator: BookingOrchestrator, **extra) -> dict:
    payload = {"token": token, "state": orchestrator.state.to_dict()}
    payload.update(extra)
    return success_response(payload)


def appointment_to_dict(appointment: Appointment, ctx: TenantContext) -> dict:
    local_start = appointment.start_at_utc.astimezone(ctx.tz)
    return {
        "id": str(appointment.id),
        "professional_id": appointment.professional_id,
        "service_id": appointment.service_id,
        "client_id": appointment.client_id,
        "client_name": appointment.client_name,
        "date": local_start.date().isoformat(),
        "time": local_start.strftime("%H:%M"),
        "start_at_utc": appointment.start_at_utc.isoformat(),
        "end_at_utc": appointment.end_at_utc.isoformat() if appointment.end_at_utc else None,
        "status": appointment.status.value,
        "credit_status": appointment.credit_status.value,
    }


# ────────────────────────────────────────────────────────────────
# Request Models
# ────────────────────────────────────────────────────────────────

class PhoneRequest(BaseModel):
    phone: str = Field(..., min_length=1)


class CancelRequest(BaseModel):
    phone: Optional[str] = None


class StartBookingRequest(BaseModel):
    # client_id and channel=staff skip identification and the one-active rule.
    # Expose them only behind the staff auth layer; anonymous callers get the defaults.
    client_id: Optional[int] = None
    channel: BookingChannel = BookingChannel.PUBLIC


class IdentifyRequest(BaseModel):
    phone: str = Field(..., min_length=1)
    name: Optional[str] = None
    email: Optional[str] = None


class ExistingAppointmentRequest(BaseModel):
    action: Literal["reschedule", "cancel"]


class ServiceSelection(BaseModel):
    service_id: int


class ProfessionalSelection(BaseModel):
    professional_id: int


class TimeSelection(BaseModel):
    date: date
    time: str = Field(..., description="HH:MM, tenant-local")

    @field_validator("time")
    @classmethod
    def validate_time(cls, v: str) -> str:
        try:
            datetime.strptime(v, "%H:%M")
        except ValueError:
            raise ValueError("time must be in HH:MM format")
        return v


class ConfirmRequest(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None


class LimitRequest(BaseModel):
    resolution: LimitResolution


# ────────────────────────────────────────────────────────────────
# Availability, credits, clients
# ────────────────────────────────────────────────────────────────

@router.get("/slots")
async def get_slots(
    professional_id: int,
    service_id: int,
    day: date = Query(..., alias="date"),
    exclude_appointment_id: Optional[uuid.UUID] = None,
    ctx: TenantContext = Depends(require_tenant_context),
    session: AsyncSession = Depends(get_session),
):
    """All candidate slots of the day, unavailable ones included with a reason."""
    service = await get_service_by_id(session, ctx.tenant_id, service_id)
    if service is None:
        raise NotFoundError("Serviço não encontrado")

    slots = await list_slots(
        session,
        ctx,
        professional_id,
        day,
        service.duration_minutes,
        exclude_id=exclude_appointment_id,
    )
    return success_response({"date": day.isoformat(), "slots": [slot.to_dict() for slot in slots]})


def _parse_month(value: Optional[str], ctx: TenantContext) -> date:
    if not value:
        return datetime.now(timezone.utc).astimezone(ctx.tz).date().replace(day=1)
    try:
        return datetime.strptime(value, "%Y-%m").date()
    except ValueError:
        raise ValidationError("Mês inválido. Use YYYY-MM.", details={"month": value})


@router.get("/clients/{client_id}/credits")
async def get_client_credits(
    client_id: int,
    month: Optional[str] = None,
    ctx: TenantContext = Depends(require_tenant_context),
    session: AsyncSession = Depends(get_session),
):
    client = await get_client_by_id(session, ctx.tenant_id, client_id)
    if client is None:
        raise NotFoundError("Cliente não encontrado")

    as_of = _parse_month(month, ctx)
    credits = await compute_credits(session, client.id, ctx.tenant_id, as_of, ctx.tz)
    return success_response({
        "client_id": client.id,
        "month": as_of.strftime("%Y-%m"),
        "credits": [credit.to_dict() for credit in credits],
    })


@router.post("/clients/resolve")
async def resolve_client_by_phone(
    body: PhoneRequest,
    ctx: TenantContext = Depends(require_tenant_context),
    session: AsyncSession = Depends(get_session),
):
    resolution = await resolve_client(session, ctx, body.phone, datetime.now(timezone.utc))
    client = resolution.client
    return success_response({
        "client": {"id": client.id, "name": client.name} if client else None,
        "active_appointment": (
            appointment_to_dict(resolution.active_appointment, ctx)
            if resolution.active_appointment
            else None
        ),
        "degraded": resolution.degraded,
    })


@router.post("/appointments/{appointment_id}/cancel")
async def cancel_appointment_route(
    appointment_id: uuid.UUID,
    body: CancelRequest,
    ctx: TenantContext = Depends(require_tenant_context),
    session: AsyncSession = Depends(get_session),
    events: Optional[EventChannel] = Depends(get_event_channel),
):
    appointment = await cancel_appointment(session, ctx, appointment_id, phone=body.phone, events=events)
    return success_response(appointment_to_dict(appointment, ctx))


# ────────────────────────────────────────────────────────────────
# Booking wizard
# ────────────────────────────────────────────────────────────────

@router.post("/booking")
async def start_booking(
    body: StartBookingRequest,
    ctx: TenantContext = Depends(require_tenant_context),
    session: AsyncSession = Depends(get_session),
    events: Optional[EventChannel] = Depends(get_event_channel),
):
    cleanup_expired_sessions()
    state = BookingState(channel=body.channel)
    orchestrator = BookingOrchestrator(session, ctx, state=state, events=events)
    await orchestrator.start(client_id=body.client_id)

    token = generate_session_token()
    _booking_sessions[token] = BookingSession(ctx.tenant_id, state, datetime.now(timezone.utc))
    logger.info("Started booking session for tenant %s (channel=%s)", ctx.tenant_id, body.channel.value)
    return _session_payload(token, orchestrator)


@router.get("/booking/{token}")
async def get_booking(token: str, orchestrator: BookingOrchestrator = Depends(get_orchestrator)):
    return _session_payload(token, orchestrator)


@router.post("/booking/{token}/identify")
async def identify(
    token: str,
    body: IdentifyRequest,
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
):
    await orchestrator.identify(body.phone, name=body.name, email=body.email)
    existing = None
    if orchestrator.state.step == BookingStep.EXISTING_APPOINTMENT:
        appointment = await orchestrator.existing_appointment()
        if appointment is not None:
            existing = appointment_to_dict(appointment, orchestrator.ctx)
    return _session_payload(token, orchestrator, existing_appointment=existing)


@router.post("/booking/{token}/existing")
async def handle_existing_appointment(
    token: str,
    body: ExistingAppointmentRequest,
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
):
    if body.action == "reschedule":
        await orchestrator.choose_reschedule()
        return _session_payload(token, orchestrator)

    cancelled = await orchestrator.cancel_existing()
    return _session_payload(token, orchestrator, cancelled=appointment_to_dict(cancelled, orchestrator.ctx))


@router.get("/booking/{token}/services")
async def booking_services(token: str, orchestrator: BookingOrchestrator = Depends(get_orchestrator)):
    options = await orchestrator.list_services()
    return _session_payload(token, orchestrator, services=[option.to_dict() for option in options])


@router.post("/booking/{token}/service")
async def select_service(
    token: str,
    body: ServiceSelection,
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
):
    await orchestrator.select_service(body.service_id)
    return _session_payload(token, orchestrator)


@router.get("/booking/{token}/professionals")
async def booking_professionals(
    token: str,
    day: Optional[date] = Query(None, alias="date"),
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
):
    options = await orchestrator.list_professionals(day)
    return _session_payload(token, orchestrator, professionals=[option.to_dict() for option in options])


@router.post("/booking/{token}/professional")
async def select_professional(
    token: str,
    body: ProfessionalSelection,
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
):
    await orchestrator.select_professional(body.professional_id)
    return _session_payload(token, orchestrator)


@router.get("/booking/{token}/slots")
async def booking_slots(
    token: str,
    day: date = Query(..., alias="date"),
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
):
    slots = await orchestrator.list_slots(day)
    return _session_payload(
        token,
        orchestrator,
        date=day.isoformat(),
        slots=[slot.to_dict() for slot in slots],
    )


@router.post("/booking/{token}/time")
async def select_time(
    token: str,
    body: TimeSelection,
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
):
    await orchestrator.select_time(body.date, body.time)
    return _session_payload(token, orchestrator)


@router.post("/booking/{token}/confirm")
async def confirm_booking(
    token: str,
    body: ConfirmRequest,
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
):
    appointment = await orchestrator.confirm(name=body.name, email=body.email)
    return _session_payload(token, orchestrator, appointment=appointment_to_dict(appointment, orchestrator.ctx))


@router.post("/booking/{token}/limit")
async def resolve_credit_limit(
    token: str,
    body: LimitRequest,
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
):
    appointment = await orchestrator.resolve_limit(body.resolution)
    return _session_payload(token, orchestrator, appointment=appointment_to_dict(appointment, orchestrator.ctx))


@router.post("/booking/{token}/back")
async def go_back(token: str, orchestrator: BookingOrchestrator = Depends(get_orchestrator)):
    orchestrator.back()
    return _session_payload(token, orchestrator)

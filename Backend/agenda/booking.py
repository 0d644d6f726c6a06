"""
Booking wizard state machine.

    IDENTIFY_CLIENT -> SELECT_SERVICE -> SELECT_PROFESSIONAL -> SELECT_TIME -> CONFIRM
                                                                    -> COMMITTED | LIMIT_PROMPT

IDENTIFY_CLIENT is skipped when the caller already knows the client (staff
booking). A known client with an upcoming appointment is sent to
EXISTING_APPOINTMENT first, where they choose to reschedule or cancel it.

The orchestrator holds no I/O state of its own. All state lives in
BookingState so the HTTP layer can keep it between requests.
"""

import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import date, datetime, timezone
from enum import Enum
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from .clients import resolve_client, validate_phone
from .commit import BookingChannel, CommitRequest, cancel_appointment, commit_appointment
from .core.errors import ConflictError, NotFoundError, ValidationError
from .core.responses import ErrorCodes
from .credits import (
    Credit,
    CreditDecision,
    LimitResolution,
    apply_credit_policy,
    capacity_error_for,
    compute_credits,
    resolve_limit,
)
from .events import EventChannel
from .ledger import get_appointment
from .models import Appointment, Service
from .schedule import parse_hhmm, to_local, working_professional_ids
from .slots import REASON_NOT_OFFERED, TimeSlot, list_slots
from .tenancy.context import TenantContext
from .tenancy.queries import (
    get_client_by_id,
    get_service_by_id,
    list_professionals_for_service,
    list_services,
)

logger = logging.getLogger(__name__)


class BookingStep(str, Enum):
    IDENTIFY_CLIENT = "identify_client"
    EXISTING_APPOINTMENT = "existing_appointment"
    SELECT_SERVICE = "select_service"
    SELECT_PROFESSIONAL = "select_professional"
    SELECT_TIME = "select_time"
    CONFIRM = "confirm"
    LIMIT_PROMPT = "limit_prompt"
    COMMITTED = "committed"


# Steps that can be revisited with back(), in order.
WIZARD_ORDER = (
    BookingStep.IDENTIFY_CLIENT,
    BookingStep.SELECT_SERVICE,
    BookingStep.SELECT_PROFESSIONAL,
    BookingStep.SELECT_TIME,
    BookingStep.CONFIRM,
)


@dataclass
class BookingState:
    channel: BookingChannel = BookingChannel.PUBLIC
    step: BookingStep = BookingStep.IDENTIFY_CLIENT
    client_preset: bool = False

    client_id: Optional[int] = None
    client_name: Optional[str] = None
    client_phone: Optional[str] = None
    client_email: Optional[str] = None
    lookup_degraded: bool = False

    existing_appointment_id: Optional[uuid.UUID] = None
    reschedule_appointment_id: Optional[uuid.UUID] = None

    service_id: Optional[int] = None
    service_duration_minutes: Optional[int] = None
    professional_id: Optional[int] = None
    day: Optional[date] = None
    time: Optional[str] = None

    appointment_id: Optional[uuid.UUID] = None
    credit_decision: Optional[CreditDecision] = None

    def clear_from(self, step: BookingStep) -> None:
        """Drop everything captured at ``step`` and after it."""
        index = WIZARD_ORDER.index(step)
        if index <= WIZARD_ORDER.index(BookingStep.IDENTIFY_CLIENT):
            self.client_id = None
            self.client_name = None
            self.client_phone = None
            self.client_email = None
            self.lookup_degraded = False
            self.existing_appointment_id = None
            self.reschedule_appointment_id = None
        if index <= WIZARD_ORDER.index(BookingStep.SELECT_SERVICE):
            self.service_id = None
            self.service_duration_minutes = None
        if index <= WIZARD_ORDER.index(BookingStep.SELECT_PROFESSIONAL):
            self.professional_id = None
            self.day = None
        if index <= WIZARD_ORDER.index(BookingStep.SELECT_TIME):
            self.time = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["channel"] = self.channel.value
        data["step"] = self.step.value
        for key in ("existing_appointment_id", "reschedule_appointment_id", "appointment_id"):
            if data[key] is not None:
                data[key] = str(data[key])
        if self.day is not None:
            data["day"] = self.day.isoformat()
        if self.credit_decision is not None:
            data["credit_decision"] = self.credit_decision.value
        return data


@dataclass(frozen=True)
class ServiceOption:
    id: int
    name: str
    duration_minutes: int
    price_cents: int
    credit: Optional[Credit] = None

    @property
    def included_in_plan(self) -> bool:
        return self.credit is not None

    @property
    def free(self) -> bool:
        return self.credit is not None and not self.credit.is_exhausted

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "duration_minutes": self.duration_minutes,
            "price_cents": self.price_cents,
            "included_in_plan": self.included_in_plan,
            "free": self.free,
            "credit": self.credit.to_dict() if self.credit else None,
        }


@dataclass(frozen=True)
class ProfessionalOption:
    id: int
    name: str
    works_on_day: bool

    def to_dict(self) -> dict:
        data = {"id": self.id, "name": self.name, "works_on_day": self.works_on_day}
        if not self.works_on_day:
            data["note"] = "Não trabalha neste dia"
        return data


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class BookingOrchestrator:
    """Drives one booking session. One instance per request; the state outlives it."""

    def __init__(
        self,
        session: AsyncSession,
        ctx: TenantContext,
        state: Optional[BookingState] = None,
        events: Optional[EventChannel] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.session = session
        self.ctx = ctx
        self.state = state or BookingState()
        self.events = events
        self.clock = clock or _utc_now

    # ────────────────────────────────────────────────────────────
    # Helpers
    # ────────────────────────────────────────────────────────────

    def _require_step(self, *steps: BookingStep) -> None:
        if self.state.step not in steps:
            raise ValidationError(
                f"Ação inválida na etapa {self.state.step.value}",
                code=ErrorCodes.INVALID_STEP,
                details={"step": self.state.step.value, "expected": [s.value for s in steps]},
            )

    def _today(self) -> date:
        return self.clock().astimezone(self.ctx.tz).date()

    async def _require_service(self, service_id: int) -> Service:
        service = await get_service_by_id(self.session, self.ctx.tenant_id, service_id)
        if service is None or not service.active:
            raise NotFoundError("Serviço não encontrado")
        return service

    # ────────────────────────────────────────────────────────────
    # Identification
    # ────────────────────────────────────────────────────────────

    async def start(self, client_id: Optional[int] = None) -> BookingState:
        """Begin the flow. A known client skips identification."""
        if client_id is None:
            self.state.step = BookingStep.IDENTIFY_CLIENT
            return self.state

        client = await get_client_by_id(self.session, self.ctx.tenant_id, client_id)
        if client is None:
            raise NotFoundError("Cliente não encontrado")
        self.state.client_preset = True
        self.state.client_id = client.id
        self.state.client_name = client.name
        self.state.client_phone = client.phone
        self.state.client_email = client.email
        self.state.step = BookingStep.SELECT_SERVICE
        return self.state

    async def identify(
        self,
        phone: str,
        name: Optional[str] = None,
        email: Optional[str] = None,
    ) -> BookingState:
        self._require_step(BookingStep.IDENTIFY_CLIENT)
        digits = validate_phone(phone)

        resolution = await resolve_client(self.session, self.ctx, digits, self.clock())
        self.state.client_phone = digits
        self.state.client_name = (name or "").strip() or None
        self.state.client_email = email
        self.state.lookup_degraded = resolution.degraded

        if resolution.client is not None:
            self.state.client_id = resolution.client.id
            self.state.client_name = resolution.client.name or self.state.client_name
            self.state.client_email = resolution.client.email or email

        if resolution.active_appointment is not None:
            self.state.existing_appointment_id = resolution.active_appointment.id
            self.state.step = BookingStep.EXISTING_APPOINTMENT
        else:
            self.state.step = BookingStep.SELECT_SERVICE
        return self.state

    async def existing_appointment(self) -> Optional[Appointment]:
        if self.state.existing_appointment_id is None:
            return None
        return await get_appointment(self.session, self.ctx.tenant_id, self.state.existing_appointment_id)

    async def choose_reschedule(self) -> BookingState:
        self._require_step(BookingStep.EXISTING_APPOINTMENT)
        self.state.reschedule_appointment_id = self.state.existing_appointment_id
        self.state.step = BookingStep.SELECT_SERVICE
        return self.state

    async def cancel_existing(self) -> Appointment:
        self._require_step(BookingStep.EXISTING_APPOINTMENT)
        appointment = await cancel_appointment(
            self.session,
            self.ctx,
            self.state.existing_appointment_id,
            phone=self.state.client_phone,
            now=self.clock(),
            events=self.events,
        )
        self.state.existing_appointment_id = None
        self.state.step = BookingStep.SELECT_SERVICE
        return appointment

    # ────────────────────────────────────────────────────────────
    # Service
    # ────────────────────────────────────────────────────────────

    async def list_services(self) -> list[ServiceOption]:
        """Active services, each annotated with the client's plan credit if covered."""
        services = await list_services(self.session, self.ctx.tenant_id)
        credits_by_service: dict[int, Credit] = {}
        if self.state.client_id is not None:
            credits = await compute_credits(
                self.session, self.state.client_id, self.ctx.tenant_id, self._today(), self.ctx.tz
            )
            credits_by_service = {credit.service_id: credit for credit in credits}

        return [
            ServiceOption(
                id=service.id,
                name=service.name,
                duration_minutes=service.duration_minutes,
                price_cents=service.price_cents,
                credit=credits_by_service.get(service.id),
            )
            for service in services
        ]

    async def select_service(self, service_id: int) -> BookingState:
        self._require_step(
            BookingStep.SELECT_SERVICE,
            BookingStep.SELECT_PROFESSIONAL,
            BookingStep.SELECT_TIME,
            BookingStep.CONFIRM,
        )
        service = await self._require_service(service_id)
        self.state.clear_from(BookingStep.SELECT_SERVICE)
        self.state.service_id = service.id
        self.state.service_duration_minutes = service.duration_minutes
        self.state.step = BookingStep.SELECT_PROFESSIONAL
        return self.state

    # ────────────────────────────────────────────────────────────
    # Professional
    # ────────────────────────────────────────────────────────────

    async def list_professionals(self, day: Optional[date] = None) -> list[ProfessionalOption]:
        """Professionals qualified for the selected service, flagged when off on ``day``."""
        if self.state.service_id is None:
            raise ValidationError("Selecione um serviço", code=ErrorCodes.MISSING_SELECTION)
        day = day or self._today()

        professionals = await list_professionals_for_service(
            self.session, self.ctx.tenant_id, self.state.service_id
        )
        working = await working_professional_ids(
            self.session, self.ctx.tenant_id, [p.id for p in professionals], day
        )
        return [
            ProfessionalOption(id=p.id, name=p.name, works_on_day=p.id in working)
            for p in professionals
        ]

    async def select_professional(self, professional_id: int) -> BookingState:
        self._require_step(BookingStep.SELECT_PROFESSIONAL, BookingStep.SELECT_TIME, BookingStep.CONFIRM)
        qualified = await list_professionals_for_service(
            self.session, self.ctx.tenant_id, self.state.service_id
        )
        if professional_id not in {p.id for p in qualified}:
            raise ValidationError(
                "Profissional não realiza este serviço",
                code=ErrorCodes.VALIDATION_ERROR,
                details={"professional_id": professional_id},
            )
        self.state.clear_from(BookingStep.SELECT_PROFESSIONAL)
        self.state.professional_id = professional_id
        self.state.step = BookingStep.SELECT_TIME
        return self.state

    # ────────────────────────────────────────────────────────────
    # Time
    # ────────────────────────────────────────────────────────────

    async def list_slots(self, day: date) -> list[TimeSlot]:
        if self.state.professional_id is None or self.state.service_duration_minutes is None:
            raise ValidationError("Selecione serviço e profissional", code=ErrorCodes.MISSING_SELECTION)
        return await list_slots(
            self.session,
            self.ctx,
            self.state.professional_id,
            day,
            self.state.service_duration_minutes,
            exclude_id=self.state.reschedule_appointment_id,
            now=self.clock(),
        )

    async def select_time(self, day: date, hhmm: str) -> BookingState:
        self._require_step(BookingStep.SELECT_TIME, BookingStep.CONFIRM)
        if self.state.professional_id is None or self.state.service_duration_minutes is None:
            raise ValidationError("Selecione serviço e profissional", code=ErrorCodes.MISSING_SELECTION)

        wanted = parse_hhmm(hhmm).strftime("%H:%M")
        offered = {slot.time: slot for slot in await self.list_slots(day)}
        slot = offered.get(wanted)
        if slot is None:
            reason = REASON_NOT_OFFERED
        elif not slot.available:
            reason = slot.reason
        else:
            reason = None
        if reason is not None:
            raise ValidationError(
                reason,
                code=ErrorCodes.SLOT_UNAVAILABLE,
                details={"date": day.isoformat(), "time": wanted, "reason": reason},
            )

        self.state.day = day
        self.state.time = wanted
        self.state.step = BookingStep.CONFIRM
        return self.state

    # ────────────────────────────────────────────────────────────
    # Commit
    # ────────────────────────────────────────────────────────────

    def _commit_request(self, name: Optional[str], email: Optional[str]) -> CommitRequest:
        if self.state.service_id is None or self.state.professional_id is None:
            raise ValidationError("Selecione serviço e profissional", code=ErrorCodes.MISSING_SELECTION)
        if self.state.day is None or self.state.time is None:
            raise ValidationError("Selecione um horário", code=ErrorCodes.MISSING_SELECTION)
        if name:
            self.state.client_name = name.strip()
        if email:
            self.state.client_email = email.strip()
        if self.state.client_id is None and not self.state.client_name:
            raise ValidationError("Nome é obrigatório", code=ErrorCodes.MISSING_SELECTION)

        return CommitRequest(
            professional_id=self.state.professional_id,
            service_id=self.state.service_id,
            start_at=to_local(self.state.day, parse_hhmm(self.state.time), self.ctx.tz),
            client_id=self.state.client_id,
            client_name=self.state.client_name,
            client_phone=self.state.client_phone,
            client_email=self.state.client_email,
            reschedule_appointment_id=self.state.reschedule_appointment_id,
            channel=self.state.channel,
        )

    async def confirm(self, name: Optional[str] = None, email: Optional[str] = None) -> Appointment:
        """
        Re-check and write the appointment.

        On a conflict or a slot that became unavailable, the session returns to
        SELECT_TIME and the error is re-raised so the caller can show fresh
        slots. When the plan limit is reached the appointment stays booked,
        the session moves to LIMIT_PROMPT and CapacityError is raised.
        """
        self._require_step(BookingStep.CONFIRM)
        request = self._commit_request(name, email)
        now = self.clock()

        try:
            result = await commit_appointment(self.session, self.ctx, request, now=now, events=self.events)
        except ConflictError:
            await self.session.rollback()
            self.state.time = None
            self.state.step = BookingStep.SELECT_TIME
            raise
        except ValidationError as exc:
            await self.session.rollback()
            if exc.code == ErrorCodes.SLOT_UNAVAILABLE:
                self.state.time = None
                self.state.step = BookingStep.SELECT_TIME
            elif exc.code == ErrorCodes.ACTIVE_APPOINTMENT_EXISTS:
                # Offer reschedule/cancel of the appointment that already exists.
                self.state.existing_appointment_id = uuid.UUID(exc.details["appointment_id"])
                self.state.step = BookingStep.EXISTING_APPOINTMENT
            raise

        appointment = result.appointment
        self.state.appointment_id = appointment.id
        self.state.client_id = appointment.client_id

        if not result.created:
            self.state.step = BookingStep.COMMITTED
            return appointment

        outcome = await apply_credit_policy(self.session, self.ctx.tenant_id, appointment, self.ctx.tz, now=now)
        await self.session.commit()
        self.state.credit_decision = outcome.decision

        if outcome.decision == CreditDecision.LIMIT_REACHED:
            self.state.step = BookingStep.LIMIT_PROMPT
            error = capacity_error_for(outcome, appointment.service_id)
            error.details["appointment_id"] = str(appointment.id)
            raise error

        self.state.step = BookingStep.COMMITTED
        return appointment

    async def resolve_limit(self, resolution: LimitResolution) -> Appointment:
        self._require_step(BookingStep.LIMIT_PROMPT)
        appointment = await get_appointment(
            self.session, self.ctx.tenant_id, self.state.appointment_id, for_update=True
        )
        if appointment is None:
            raise NotFoundError("Agendamento não encontrado")

        await resolve_limit(self.session, self.ctx.tenant_id, appointment, resolution, now=self.clock())
        await self.session.commit()
        self.state.step = BookingStep.COMMITTED
        return appointment

    # ────────────────────────────────────────────────────────────
    # Navigation
    # ────────────────────────────────────────────────────────────

    def back(self) -> BookingState:
        """Return to the previous step, forgetting what was chosen there and after."""
        step = self.state.step
        if step == BookingStep.EXISTING_APPOINTMENT:
            target = BookingStep.IDENTIFY_CLIENT
        elif step in WIZARD_ORDER and step != BookingStep.IDENTIFY_CLIENT:
            target = WIZARD_ORDER[WIZARD_ORDER.index(step) - 1]
        else:
            raise ValidationError(
                "Não é possível voltar a partir desta etapa",
                code=ErrorCodes.INVALID_STEP,
                details={"step": step.value},
            )

        if target == BookingStep.IDENTIFY_CLIENT and self.state.client_preset:
            raise ValidationError(
                "Cliente já identificado",
                code=ErrorCodes.INVALID_STEP,
                details={"step": step.value},
            )

        self.state.clear_from(target)
        self.state.step = target
        return self.state

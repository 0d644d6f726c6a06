"""
Client identification by phone number.

Phones are compared in their national form: digits only, without the
country code. Older rows were stored with or without the "55" prefix, so
a lookup matches either way.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .core.config import get_settings
from .core.errors import LookupDegraded, ValidationError
from .core.responses import ErrorCodes
from .ledger import find_active_appointment_for_client
from .models import Appointment, Client
from .tenancy.context import TenantContext

logger = logging.getLogger(__name__)

# Longest national number (DDD + 9-digit mobile)
NATIONAL_NUMBER_MAX_DIGITS = 11


@dataclass
class ClientResolution:
    client: Optional[Client] = None
    active_appointment: Optional[Appointment] = None
    degraded: bool = False

    @property
    def is_known(self) -> bool:
        return self.client is not None


def normalize_phone(value: Optional[str]) -> str:
    """Digits only."""
    if not value:
        return ""
    return re.sub(r"\D", "", value)


def national_number(phone: str, country_code: Optional[str] = None) -> str:
    """Strip formatting, trunk zeros and a leading country code."""
    if country_code is None:
        country_code = get_settings().phone_country_code
    digits = normalize_phone(phone).lstrip("0")
    if len(digits) > NATIONAL_NUMBER_MAX_DIGITS and digits.startswith(country_code):
        digits = digits[len(country_code):].lstrip("0")
    return digits


def phones_match(a: str, b: str, country_code: Optional[str] = None) -> bool:
    national_a = national_number(a, country_code)
    return bool(national_a) and national_a == national_number(b, country_code)


def validate_phone(value: Optional[str], min_digits: Optional[int] = None) -> str:
    """Return the digits-only phone or raise ValidationError."""
    if min_digits is None:
        min_digits = get_settings().min_phone_digits
    digits = normalize_phone(value)
    if len(digits) < min_digits:
        raise ValidationError("Digite um telefone válido", code=ErrorCodes.INVALID_PHONE)
    return digits


async def find_client_by_phone(
    session: AsyncSession,
    tenant_id: int,
    phone: str,
) -> Optional[Client]:
    national = national_number(phone)
    if not national:
        return None

    result = await session.execute(
        select(Client)
        .where(
            Client.barbershop_id == tenant_id,
            Client.phone.like(f"%{national}"),
        )
        .order_by(Client.id)
    )
    for client in result.scalars().all():
        if phones_match(client.phone or "", national):
            return client
    return None


async def _lookup(
    session: AsyncSession,
    ctx: TenantContext,
    phone: str,
    now: datetime,
) -> ClientResolution:
    try:
        client = await find_client_by_phone(session, ctx.tenant_id, phone)
        if client is None:
            return ClientResolution()
        active = await find_active_appointment_for_client(session, ctx.tenant_id, client.id, now)
    except SQLAlchemyError as exc:
        raise LookupDegraded(f"Client lookup failed: {exc}") from exc
    return ClientResolution(client=client, active_appointment=active)


async def resolve_client(
    session: AsyncSession,
    ctx: TenantContext,
    phone: str,
    now: datetime,
) -> ClientResolution:
    """
    Find the client owning ``phone`` and their upcoming active appointment.

    A failing lookup does not block booking: the caller gets an unknown
    client with ``degraded=True`` and the failure is logged.
    """
    digits = validate_phone(phone)
    try:
        return await _lookup(session, ctx, digits, now)
    except LookupDegraded as exc:
        logger.warning(
            "Client lookup degraded for tenant %s; continuing as new client: %s",
            ctx.tenant_id,
            exc.message,
        )
        try:
            await session.rollback()
        except SQLAlchemyError as rollback_exc:
            logger.error("Rollback after degraded lookup failed: %s", rollback_exc)
        return ClientResolution(degraded=True)


async def get_or_create_client(
    session: AsyncSession,
    tenant_id: int,
    name: str,
    phone: str,
    email: Optional[str] = None,
) -> Client:
    """Client matching ``phone`` in this tenant, created if missing. Does not commit."""
    digits = validate_phone(phone)
    name = (name or "").strip()

    client = await find_client_by_phone(session, tenant_id, digits)
    if client:
        if name and not client.name:
            client.name = name
        if email and not client.email:
            client.email = email.strip().lower()
        return client

    if not name:
        raise ValidationError("Nome é obrigatório", code=ErrorCodes.MISSING_SELECTION)

    client = Client(
        barbershop_id=tenant_id,
        name=name,
        phone=digits,
        email=email.strip().lower() if email else None,
    )
    session.add(client)
    await session.flush()
    logger.info("Created client %s for tenant %s", client.id, tenant_id)
    return client

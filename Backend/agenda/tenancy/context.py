"""
Tenant context for the booking engine.

Every engine operation runs against one barbershop. The context is resolved
once per request (from the ``/s/{slug}/`` path) and passed explicitly; nothing
in the engine reads tenant state from globals.
"""

import logging
from dataclasses import dataclass
from typing import Optional
from zoneinfo import ZoneInfo

from fastapi import Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import get_settings
from ..core.db import get_session
from ..core.errors import NotFoundError
from ..core.responses import ErrorCodes
from ..models import Barbershop


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TenantContext:
    """
    Immutable context representing the barbershop a request acts on.

    Attributes:
        tenant_id: barbershops.id
        slug: URL-safe identifier (e.g., "barbearia-centro")
        name: Human-readable name
        timezone: IANA timezone used for every local date/time computation
        slot_step_minutes: Slot granularity for this tenant
    """

    tenant_id: int
    slug: Optional[str] = None
    name: Optional[str] = None
    timezone: str = "America/Sao_Paulo"
    slot_step_minutes: int = 30

    def __post_init__(self):
        if self.tenant_id <= 0:
            raise ValueError(f"tenant_id must be positive, got {self.tenant_id}")
        if self.slot_step_minutes <= 0:
            raise ValueError(f"slot_step_minutes must be positive, got {self.slot_step_minutes}")

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


def context_for_barbershop(shop: Barbershop) -> TenantContext:
    settings = get_settings()
    return TenantContext(
        tenant_id=shop.id,
        slug=shop.slug,
        name=shop.name,
        timezone=shop.timezone or settings.tenant_timezone,
        slot_step_minutes=shop.slot_step_minutes or settings.slot_step_minutes,
    )


async def resolve_tenant_from_slug(
    session: AsyncSession,
    slug: str,
) -> Optional[TenantContext]:
    """Resolve an active barbershop by slug, or None."""
    result = await session.execute(
        select(Barbershop).where(Barbershop.slug == slug, Barbershop.active.is_(True))
    )
    shop = result.scalar_one_or_none()
    if not shop:
        return None
    return context_for_barbershop(shop)


async def require_tenant_context(
    slug: str,
    session: AsyncSession = Depends(get_session),
) -> TenantContext:
    """FastAPI dependency: resolve the tenant from the ``{slug}`` path parameter."""
    ctx = await resolve_tenant_from_slug(session, slug)
    if ctx is None:
        logger.info("Unknown barbershop slug requested: %s", slug)
        raise NotFoundError("Barbearia não encontrada", code=ErrorCodes.TENANT_NOT_FOUND)
    return ctx

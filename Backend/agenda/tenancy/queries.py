"""
Tenant-scoped query helpers.

ALL queries for tenant data go through these helpers or carry an explicit
``barbershop_id == ctx.tenant_id`` filter.

Usage:
    from agenda.tenancy.queries import get_service_by_id, scoped_select

    service = await get_service_by_id(session, ctx.tenant_id, service_id)
    stmt = scoped_select(Service, ctx.tenant_id).where(Service.is_package.is_(False))
"""

from typing import Optional, Sequence, Type, TypeVar

from sqlalchemy import Select, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import DeclarativeBase

from ..models import Client, Professional, Service, StaffService

T = TypeVar("T", bound=DeclarativeBase)


def scoped_select(model: Type[T], tenant_id: int) -> Select:
    """SELECT pre-filtered by barbershop_id."""
    return select(model).where(model.barbershop_id == tenant_id)


async def require_owned(
    session: AsyncSession,
    model: Type[T],
    entity_id,
    tenant_id: int,
) -> Optional[T]:
    """Fetch an entity by ID, validating tenant ownership. None if not found or wrong tenant."""
    result = await session.execute(
        select(model).where(
            model.id == entity_id,
            model.barbershop_id == tenant_id,
        )
    )
    return result.scalar_one_or_none()


# ────────────────────────────────────────────────────────────────
# Services
# ────────────────────────────────────────────────────────────────

async def get_service_by_id(
    session: AsyncSession,
    tenant_id: int,
    service_id: int,
) -> Optional[Service]:
    return await require_owned(session, Service, service_id, tenant_id)


async def list_services(
    session: AsyncSession,
    tenant_id: int,
    active_only: bool = True,
) -> Sequence[Service]:
    stmt = scoped_select(Service, tenant_id)
    if active_only:
        stmt = stmt.where(Service.active.is_(True))
    result = await session.execute(stmt.order_by(Service.name))
    return result.scalars().all()


# ────────────────────────────────────────────────────────────────
# Professionals
# ────────────────────────────────────────────────────────────────

async def list_professionals_for_service(
    session: AsyncSession,
    tenant_id: int,
    service_id: int,
) -> Sequence[Professional]:
    """Bookable professionals explicitly mapped to the service."""
    result = await session.execute(
        select(Professional)
        .join(StaffService, StaffService.professional_id == Professional.id)
        .where(
            Professional.barbershop_id == tenant_id,
            Professional.active.is_(True),
            Professional.is_service_provider.is_(True),
            StaffService.barbershop_id == tenant_id,
            StaffService.service_id == service_id,
        )
        .order_by(Professional.name)
    )
    return result.scalars().all()


async def professional_offers_service(
    session: AsyncSession,
    tenant_id: int,
    professional_id: int,
    service_id: int,
) -> bool:
    result = await session.execute(
        select(StaffService.id).where(
            StaffService.barbershop_id == tenant_id,
            StaffService.professional_id == professional_id,
            StaffService.service_id == service_id,
        )
    )
    return result.first() is not None


# ────────────────────────────────────────────────────────────────
# Clients
# ────────────────────────────────────────────────────────────────

async def get_client_by_id(
    session: AsyncSession,
    tenant_id: int,
    client_id: int,
) -> Optional[Client]:
    return await require_owned(session, Client, client_id, tenant_id)

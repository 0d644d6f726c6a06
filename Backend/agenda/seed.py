from sqlalchemy import select

from .core.config import get_settings
from .models import (
    Barbershop,
    ClubPlan,
    PackageItem,
    PlanItem,
    Professional,
    ProfessionalRole,
    Service,
    StaffService,
)
from .schedule import create_default_schedule


settings = get_settings()

DEMO_SLUG = "barbearia-demo"


async def seed_demo_data(session) -> Barbershop:
    result = await session.execute(select(Barbershop).where(Barbershop.slug == DEMO_SLUG))
    shop = result.scalar_one_or_none()

    if not shop:
        shop = Barbershop(slug=DEMO_SLUG, name="Barbearia Demo", timezone=settings.tenant_timezone)
        session.add(shop)
        await session.flush()

    # Seed services if missing
    result = await session.execute(select(Service).where(Service.barbershop_id == shop.id))
    services = result.scalars().all()
    if not services:
        haircut = Service(barbershop_id=shop.id, name="Corte", duration_minutes=30, price_cents=4500)
        beard = Service(barbershop_id=shop.id, name="Barba", duration_minutes=30, price_cents=3000)
        combo = Service(
            barbershop_id=shop.id,
            name="Corte + Barba",
            duration_minutes=60,
            price_cents=7000,
            is_package=True,
        )
        session.add_all([haircut, beard, combo])
        await session.flush()
        session.add_all(
            [
                PackageItem(package_id=combo.id, service_id=haircut.id, quantity=1),
                PackageItem(package_id=combo.id, service_id=beard.id, quantity=1),
            ]
        )
        services = [haircut, beard, combo]

    result = await session.execute(select(Professional).where(Professional.barbershop_id == shop.id))
    professionals = result.scalars().all()
    if not professionals:
        professionals = [
            Professional(barbershop_id=shop.id, name="Rafael", role=ProfessionalRole.OWNER),
            Professional(barbershop_id=shop.id, name="Bruno", role=ProfessionalRole.STAFF),
        ]
        session.add_all(professionals)
        await session.flush()
        for professional in professionals:
            await create_default_schedule(session, shop.id, professional.id)
            session.add_all(
                [
                    StaffService(barbershop_id=shop.id, professional_id=professional.id, service_id=svc.id)
                    for svc in services
                ]
            )

    result = await session.execute(select(ClubPlan).where(ClubPlan.barbershop_id == shop.id))
    if result.scalar_one_or_none() is None:
        plan = ClubPlan(barbershop_id=shop.id, name="Clube do Corte", price_cents=9900)
        session.add(plan)
        await session.flush()
        by_name = {svc.name: svc for svc in services}
        session.add_all(
            [
                PlanItem(plan_id=plan.id, service_id=by_name["Corte"].id, quantity_limit=4),
                # unlimited
                PlanItem(plan_id=plan.id, service_id=by_name["Barba"].id, quantity_limit=None),
            ]
        )

    await session.commit()
    return shop

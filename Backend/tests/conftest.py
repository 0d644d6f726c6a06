"""
Pytest configuration and fixtures for async database testing.

Each test gets its own database with a freshly created schema. By default
that is an in-memory SQLite database (aiosqlite); set TEST_DATABASE_URL to
run against a local PostgreSQL test database instead.
"""
import os
from datetime import date, datetime, time, timedelta, timezone

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool

TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", "sqlite+aiosqlite://")

# Verify we're NOT using a production database
if "prod" in TEST_DATABASE_URL.lower() or "neon" in TEST_DATABASE_URL.lower():
    raise RuntimeError(
        f"DANGER: Tests are configured to use a production database!\n"
        f"TEST_DATABASE_URL: {TEST_DATABASE_URL}\n"
        f"Tests must ONLY run against a local test database."
    )

# The application engine is built at import time; keep it off PostgreSQL.
os.environ.setdefault("DATABASE_URL", TEST_DATABASE_URL)

from agenda.core.db import Base  # noqa: E402
from agenda.models import (  # noqa: E402
    Appointment,
    AppointmentStatus,
    Barbershop,
    Client,
    ClientSubscription,
    ClubPlan,
    PlanItem,
    Professional,
    ScheduleDay,
    Service,
    StaffService,
    SubscriptionStatus,
    UsageRecord,
)
from agenda.tenancy.context import context_for_barbershop  # noqa: E402

from support import SAO_PAULO, local_dt  # noqa: E402


@pytest.fixture(scope="function")
async def async_engine():
    """
    Create async SQLAlchemy engine for the test database.

    Engine is created per test, with the schema built from the models.
    """
    options = {"echo": False}
    if TEST_DATABASE_URL.startswith("sqlite"):
        # One shared connection so the in-memory database survives across sessions.
        options.update(poolclass=StaticPool, connect_args={"check_same_thread": False})
    engine = create_async_engine(TEST_DATABASE_URL, **options)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture(scope="function")
async def async_session(async_engine):
    """Async database session. Engine code commits, so isolation comes from the per-test schema."""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    async with async_session_maker() as session:
        yield session


@pytest.fixture(scope="function")
async def client(async_session):
    """
    Create FastAPI AsyncClient with database session override.

    ASGITransport does not run startup events, so the app never touches
    its own engine.
    """
    from agenda.main import app
    from agenda.core.db import get_session

    async def override_get_session():
        yield async_session

    app.dependency_overrides[get_session] = override_get_session

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


# ────────────────────────────────────────────────────────────────
# Tenant data
# ────────────────────────────────────────────────────────────────

@pytest.fixture
async def shop(async_session):
    shop = Barbershop(slug="barbearia-teste", name="Barbearia Teste", timezone="America/Sao_Paulo")
    async_session.add(shop)
    await async_session.commit()
    return shop


@pytest.fixture
async def other_shop(async_session):
    shop = Barbershop(slug="outra-barbearia", name="Outra Barbearia", timezone="America/Sao_Paulo")
    async_session.add(shop)
    await async_session.commit()
    return shop


@pytest.fixture
def ctx(shop):
    return context_for_barbershop(shop)


@pytest.fixture
async def haircut(async_session, shop):
    service = Service(barbershop_id=shop.id, name="Corte", duration_minutes=30, price_cents=4500)
    async_session.add(service)
    await async_session.commit()
    return service


@pytest.fixture
async def beard(async_session, shop):
    service = Service(barbershop_id=shop.id, name="Barba", duration_minutes=30, price_cents=3000)
    async_session.add(service)
    await async_session.commit()
    return service


@pytest.fixture
async def barber(async_session, shop, haircut, beard):
    """Works Monday 09:00-18:00 without a break; offers haircut and beard."""
    professional = Professional(barbershop_id=shop.id, name="Carlos")
    async_session.add(professional)
    await async_session.flush()
    async_session.add_all(
        [
            ScheduleDay(
                barbershop_id=shop.id,
                professional_id=professional.id,
                day_of_week=1,
                is_working=True,
                start_time=time(9, 0),
                end_time=time(18, 0),
            ),
            StaffService(barbershop_id=shop.id, professional_id=professional.id, service_id=haircut.id),
            StaffService(barbershop_id=shop.id, professional_id=professional.id, service_id=beard.id),
        ]
    )
    await async_session.commit()
    return professional


@pytest.fixture
async def customer(async_session, shop):
    client = Client(barbershop_id=shop.id, name="João Silva", phone="11987654321")
    async_session.add(client)
    await async_session.commit()
    return client


@pytest.fixture
def make_appointment(async_session, shop, barber, haircut):
    """Factory: insert an appointment for ``barber`` starting at a local time on a date."""

    async def _make(
        day: date,
        hhmm: str,
        minutes: int = 30,
        status: AppointmentStatus = AppointmentStatus.CONFIRMED,
        client: Client = None,
        with_end: bool = True,
        professional: Professional = None,
    ) -> Appointment:
        start = local_dt(day, hhmm).astimezone(timezone.utc)
        appointment = Appointment(
            barbershop_id=shop.id,
            professional_id=(professional or barber).id,
            service_id=haircut.id,
            client_id=client.id if client else None,
            client_name=client.name if client else "Avulso",
            client_phone=client.phone if client else None,
            start_at_utc=start,
            end_at_utc=start + timedelta(minutes=minutes) if with_end else None,
            status=status,
        )
        async_session.add(appointment)
        await async_session.commit()
        return appointment

    return _make


@pytest.fixture
def make_subscription(async_session, shop, customer):
    """Factory: active plan for ``customer`` with {service: limit} items."""

    async def _make(limits: dict, status: SubscriptionStatus = SubscriptionStatus.ACTIVE) -> ClientSubscription:
        plan = ClubPlan(barbershop_id=shop.id, name="Clube", price_cents=9900)
        async_session.add(plan)
        await async_session.flush()
        async_session.add_all(
            [
                PlanItem(plan_id=plan.id, service_id=service.id, quantity_limit=limit)
                for service, limit in limits.items()
            ]
        )
        subscription = ClientSubscription(
            barbershop_id=shop.id,
            client_id=customer.id,
            plan_id=plan.id,
            status=status,
        )
        async_session.add(subscription)
        await async_session.commit()
        return subscription

    return _make


@pytest.fixture
def add_usage(async_session, make_appointment):
    """Factory: usage record tied to a fresh completed appointment."""

    async def _add(subscription: ClientSubscription, service: Service, used_at: datetime, hhmm: str = "09:00"):
        appointment = await make_appointment(
            used_at.astimezone(SAO_PAULO).date(), hhmm, status=AppointmentStatus.COMPLETED
        )
        record = UsageRecord(
            subscription_id=subscription.id,
            service_id=service.id,
            appointment_id=appointment.id,
            used_at_utc=used_at,
        )
        async_session.add(record)
        await async_session.commit()
        return record

    return _add

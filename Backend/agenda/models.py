import uuid
from datetime import datetime, time
from enum import Enum

from sqlalchemy import (
    Boolean,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Time,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from .core.db import Base, UTCDateTime, utc_now


def _enum_column(enum_cls: type[Enum], name: str) -> SAEnum:
    # Persist the lowercase values, not the member names.
    return SAEnum(enum_cls, name=name, values_callable=lambda members: [m.value for m in members])


class ProfessionalRole(str, Enum):
    OWNER = "owner"
    STAFF = "staff"


class AppointmentStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


ACTIVE_APPOINTMENT_STATUSES = (AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED)


class CreditStatus(str, Enum):
    NOT_APPLICABLE = "not_applicable"
    PENDING_DECISION = "pending_decision"
    RECORDED = "recorded"
    CHARGED = "charged"


class SubscriptionStatus(str, Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    CANCELED = "canceled"
    EXPIRED = "expired"


class Barbershop(Base):
    __tablename__ = "barbershops"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    slug: Mapped[str] = mapped_column(String(120), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="America/Sao_Paulo")
    # Overrides Settings.slot_step_minutes when set
    slot_step_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utc_now, nullable=False)


class Professional(Base):
    __tablename__ = "professionals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    barbershop_id: Mapped[int] = mapped_column(ForeignKey("barbershops.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[ProfessionalRole] = mapped_column(
        _enum_column(ProfessionalRole, "professional_role"),
        default=ProfessionalRole.STAFF,
        nullable=False,
    )
    is_service_provider: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utc_now, nullable=False)


class ScheduleDay(Base):
    __tablename__ = "schedule_days"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    barbershop_id: Mapped[int] = mapped_column(ForeignKey("barbershops.id"), nullable=False, index=True)
    professional_id: Mapped[int] = mapped_column(ForeignKey("professionals.id"), nullable=False, index=True)
    # 0=domingo ... 6=sábado
    day_of_week: Mapped[int] = mapped_column(Integer, nullable=False)
    is_working: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)
    break_start: Mapped[time | None] = mapped_column(Time, nullable=True)
    break_end: Mapped[time | None] = mapped_column(Time, nullable=True)

    __table_args__ = (
        UniqueConstraint("professional_id", "day_of_week", name="uq_schedule_professional_day"),
    )


class Service(Base):
    __tablename__ = "services"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    barbershop_id: Mapped[int] = mapped_column(ForeignKey("barbershops.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    price_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_package: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utc_now, nullable=False)

    __table_args__ = (UniqueConstraint("barbershop_id", "name", name="uq_service_barbershop_name"),)


class PackageItem(Base):
    """Component of a package service. Packages never contain packages."""

    __tablename__ = "package_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    package_id: Mapped[int] = mapped_column(ForeignKey("services.id"), nullable=False, index=True)
    service_id: Mapped[int] = mapped_column(ForeignKey("services.id"), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __table_args__ = (UniqueConstraint("package_id", "service_id", name="uq_package_item"),)


class StaffService(Base):
    __tablename__ = "staff_services"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    barbershop_id: Mapped[int] = mapped_column(ForeignKey("barbershops.id"), nullable=False, index=True)
    professional_id: Mapped[int] = mapped_column(ForeignKey("professionals.id"), nullable=False, index=True)
    service_id: Mapped[int] = mapped_column(ForeignKey("services.id"), nullable=False, index=True)

    __table_args__ = (UniqueConstraint("professional_id", "service_id", name="uq_staff_service"),)


class Client(Base):
    __tablename__ = "clients"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    barbershop_id: Mapped[int] = mapped_column(ForeignKey("barbershops.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    # digits only; older rows may carry the country code
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True, index=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utc_now, nullable=False)


class Appointment(Base):
    __tablename__ = "appointments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    barbershop_id: Mapped[int] = mapped_column(ForeignKey("barbershops.id"), nullable=False, index=True)
    professional_id: Mapped[int] = mapped_column(ForeignKey("professionals.id"), nullable=False, index=True)
    service_id: Mapped[int | None] = mapped_column(
        ForeignKey("services.id", ondelete="SET NULL"), nullable=True, index=True
    )
    client_id: Mapped[int | None] = mapped_column(ForeignKey("clients.id"), nullable=True, index=True)
    client_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    client_phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    start_at_utc: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, index=True)
    end_at_utc: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    status: Mapped[AppointmentStatus] = mapped_column(
        _enum_column(AppointmentStatus, "appointment_status"),
        default=AppointmentStatus.PENDING,
        nullable=False,
        index=True,
    )
    credit_status: Mapped[CreditStatus] = mapped_column(
        _enum_column(CreditStatus, "credit_status"),
        default=CreditStatus.NOT_APPLICABLE,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utc_now, onupdate=utc_now, nullable=False
    )
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (
        Index(
            "uq_appointment_professional_start_active",
            "professional_id",
            "start_at_utc",
            unique=True,
            postgresql_where=text("status IN ('pending', 'confirmed')"),
            sqlite_where=text("status IN ('pending', 'confirmed')"),
        ),
    )

    def is_active(self) -> bool:
        return self.status in ACTIVE_APPOINTMENT_STATUSES


class ClubPlan(Base):
    __tablename__ = "club_plans"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    barbershop_id: Mapped[int] = mapped_column(ForeignKey("barbershops.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    price_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utc_now, nullable=False)


class PlanItem(Base):
    __tablename__ = "plan_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    plan_id: Mapped[int] = mapped_column(ForeignKey("club_plans.id"), nullable=False, index=True)
    service_id: Mapped[int] = mapped_column(ForeignKey("services.id"), nullable=False)
    # 0 or NULL means unlimited
    quantity_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)

    __table_args__ = (UniqueConstraint("plan_id", "service_id", name="uq_plan_item_service"),)


class ClientSubscription(Base):
    __tablename__ = "client_subscriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    barbershop_id: Mapped[int] = mapped_column(ForeignKey("barbershops.id"), nullable=False, index=True)
    client_id: Mapped[int] = mapped_column(ForeignKey("clients.id"), nullable=False, index=True)
    plan_id: Mapped[int] = mapped_column(ForeignKey("club_plans.id"), nullable=False)
    status: Mapped[SubscriptionStatus] = mapped_column(
        _enum_column(SubscriptionStatus, "subscription_status"),
        default=SubscriptionStatus.ACTIVE,
        nullable=False,
        index=True,
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utc_now, nullable=False)

    __table_args__ = (
        Index(
            "uq_subscription_client_active",
            "barbershop_id",
            "client_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )


class UsageRecord(Base):
    """Append-only. Removed only when the appointment it belongs to is cancelled."""

    __tablename__ = "subscription_usage"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subscription_id: Mapped[int] = mapped_column(
        ForeignKey("client_subscriptions.id"), nullable=False, index=True
    )
    service_id: Mapped[int] = mapped_column(ForeignKey("services.id"), nullable=False, index=True)
    appointment_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("appointments.id"), nullable=False, unique=True
    )
    used_at_utc: Mapped[datetime] = mapped_column(UTCDateTime(), default=utc_now, nullable=False, index=True)

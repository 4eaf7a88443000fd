# ruff: noqa: E501
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum as PyEnum
from typing import Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from donor_integrity.database import Base


class Currency(PyEnum):
    USD = "USD"
    ILS = "ILS"
    EUR = "EUR"
    JPY = "JPY"
    GBP = "GBP"
    AUD = "AUD"
    CAD = "CAD"
    ZAR = "ZAR"


SUPPORTED_CURRENCIES = frozenset(c.value for c in Currency)


class PaymentStatus(PyEnum):
    expected = "expected"
    pending = "pending"
    completed = "completed"
    refund = "refund"
    returned = "returned"
    declined = "declined"


class InstallmentStatus(PyEnum):
    pending = "pending"
    paid = "paid"
    overdue = "overdue"
    cancelled = "cancelled"


class PlanStatus(PyEnum):
    active = "active"
    completed = "completed"
    cancelled = "cancelled"
    paused = "paused"
    overdue = "overdue"


def _normalize_currency(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    code = str(value).strip().upper()
    if code not in SUPPORTED_CURRENCIES:
        raise ValueError(f"Unsupported currency: {value}")
    return code


class Contact(Base):
    __tablename__ = "contact"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    first_name: Mapped[str] = mapped_column(Text, nullable=False)
    last_name: Mapped[str] = mapped_column(Text, nullable=False)
    email: Mapped[Optional[str]] = mapped_column(Text, nullable=True, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    pledges: Mapped[list[Pledge]] = relationship("Pledge", back_populates="contact")

    @property
    def display_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip() or "Unknown Contact"


class Pledge(Base):
    __tablename__ = "pledge"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    contact_id: Mapped[int] = mapped_column(
        ForeignKey("contact.id", ondelete="CASCADE"), nullable=False, index=True
    )
    pledge_date: Mapped[date] = mapped_column(Date, nullable=False, default=date.today)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    original_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    # Derived fields, maintained incrementally by the application and audited here.
    total_paid: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    balance: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    original_amount_usd: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    total_paid_usd: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    contact: Mapped[Contact] = relationship("Contact", back_populates="pledges")
    payment_plans: Mapped[list[PaymentPlan]] = relationship("PaymentPlan", back_populates="pledge")

    @validates("currency")
    def _validate_currency(self, key, value):
        return _normalize_currency(value)


class PaymentPlan(Base):
    __tablename__ = "payment_plan"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    pledge_id: Mapped[int] = mapped_column(
        ForeignKey("pledge.id", ondelete="CASCADE"), nullable=False, index=True
    )
    plan_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    total_planned_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    total_planned_amount_usd: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    installment_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    installment_amount_usd: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    number_of_installments: Mapped[int] = mapped_column(Integer, nullable=False)
    exchange_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 6), nullable=True)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    installments_paid: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_paid: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    remaining_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    remaining_amount_usd: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    plan_status: Mapped[str] = mapped_column(String(16), nullable=False, default=PlanStatus.active.value)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    pledge: Mapped[Pledge] = relationship("Pledge", back_populates="payment_plans")
    installments: Mapped[list[InstallmentSchedule]] = relationship(
        "InstallmentSchedule", back_populates="payment_plan"
    )

    @validates("currency")
    def _validate_currency(self, key, value):
        return _normalize_currency(value)


class InstallmentSchedule(Base):
    __tablename__ = "installment_schedule"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    payment_plan_id: Mapped[int] = mapped_column(
        ForeignKey("payment_plan.id", ondelete="CASCADE"), nullable=False, index=True
    )
    installment_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    installment_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    installment_amount_usd: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=InstallmentStatus.pending.value)
    paid_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    payment_plan: Mapped[PaymentPlan] = relationship("PaymentPlan", back_populates="installments")

    @validates("currency")
    def _validate_currency(self, key, value):
        return _normalize_currency(value)


class Payment(Base):
    __tablename__ = "payment"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    pledge_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("pledge.id", ondelete="SET NULL"), nullable=True, index=True
    )
    payment_plan_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("payment_plan.id", ondelete="SET NULL"), nullable=True, index=True
    )
    installment_schedule_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("installment_schedule.id", ondelete="SET NULL"), nullable=True, index=True
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    amount_usd: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    amount_in_pledge_currency: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    amount_in_plan_currency: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    exchange_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 6), nullable=True)
    pledge_currency_exchange_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 6), nullable=True)
    plan_currency_exchange_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 6), nullable=True)
    payment_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    received_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    payment_status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=PaymentStatus.completed.value, index=True
    )
    is_third_party_payment: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    payer_contact_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("contact.id", ondelete="SET NULL"), nullable=True, index=True
    )
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    pledge: Mapped[Optional[Pledge]] = relationship("Pledge")
    payment_plan: Mapped[Optional[PaymentPlan]] = relationship("PaymentPlan")
    allocations: Mapped[list[PaymentAllocation]] = relationship(
        "PaymentAllocation", back_populates="payment", cascade="all, delete-orphan"
    )

    @validates("currency")
    def _validate_currency(self, key, value):
        return _normalize_currency(value)


class PaymentAllocation(Base):
    __tablename__ = "payment_allocations"
    __table_args__ = (
        UniqueConstraint(
            "payment_id",
            "pledge_id",
            "installment_schedule_id",
            name="payment_allocations_unique",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    payment_id: Mapped[int] = mapped_column(
        ForeignKey("payment.id", ondelete="CASCADE"), nullable=False, index=True
    )
    pledge_id: Mapped[int] = mapped_column(
        ForeignKey("pledge.id", ondelete="CASCADE"), nullable=False, index=True
    )
    installment_schedule_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("installment_schedule.id", ondelete="SET NULL"), nullable=True
    )
    allocated_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    allocated_amount_usd: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    allocated_amount_in_pledge_currency: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(10, 2), nullable=True
    )
    payer_contact_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("contact.id", ondelete="SET NULL"), nullable=True
    )
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    payment: Mapped[Payment] = relationship("Payment", back_populates="allocations")
    pledge: Mapped[Pledge] = relationship("Pledge")

    @validates("currency")
    def _validate_currency(self, key, value):
        return _normalize_currency(value)

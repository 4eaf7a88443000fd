from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import Date, DateTime, Integer, Numeric, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from donor_integrity.database import Base


class ExchangeRate(Base):
    """Persisted rate cache: 1 ``base_currency`` = ``rate`` ``target_currency`` on ``rate_date``."""

    __tablename__ = "exchange_rate"
    __table_args__ = (
        UniqueConstraint(
            "base_currency",
            "target_currency",
            "date",
            name="exchange_rate_unique_idx",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    base_currency: Mapped[str] = mapped_column(String(3), nullable=False, index=True, default="USD")
    target_currency: Mapped[str] = mapped_column(String(3), nullable=False, index=True)
    rate: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    rate_date: Mapped[date] = mapped_column("date", Date, nullable=False, index=True)

    # "provider" or "manual"
    source: Mapped[str] = mapped_column(String(32), nullable=False, default="provider")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

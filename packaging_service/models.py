from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class Money(TypeDecorator):
    """Decimal stored as its exact string form; no scale is imposed."""

    impl = String
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return str(Decimal(str(value)))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Decimal(value)


class Base(DeclarativeBase):
    pass


class MarginRule(Base):
    __tablename__ = "margin_rules"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    rule_name: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(String, nullable=True)

    # NULL = wildcard on that dimension
    booking_days_advance: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    season_type: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    package_category: Mapped[str | None] = mapped_column(String, nullable=True, index=True)

    margin_percent: Mapped[Decimal] = mapped_column(Money(), default=Decimal("0"))
    margin_fixed: Mapped[Decimal] = mapped_column(Money(), default=Decimal("0"))

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    priority: Mapped[int] = mapped_column(Integer, default=0, index=True)


class PriceComponent(Base):
    __tablename__ = "price_components"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    itinerary_id: Mapped[str] = mapped_column(String, index=True)
    position: Mapped[int] = mapped_column(Integer, default=0)  # line order within the breakdown
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    component_type: Mapped[str] = mapped_column(String)  # FLIGHT|HOTEL|TRANSFER|MARGIN|TAX
    net_price: Mapped[Decimal] = mapped_column(Money())
    margin_amount: Mapped[Decimal] = mapped_column(Money())
    tax_amount: Mapped[Decimal] = mapped_column(Money())
    total_price: Mapped[Decimal] = mapped_column(Money())
    currency: Mapped[str] = mapped_column(String, default="EUR")

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterable
from uuid import uuid4

from sqlalchemy import and_, delete, or_, select, true
from sqlalchemy.engine import Engine

from . import domain
from .db import session
from .models import MarginRule as MarginRuleRow
from .models import PriceComponent as PriceComponentRow

logger = logging.getLogger(__name__)

_RULE_FIELDS = (
    "rule_name",
    "description",
    "booking_days_advance",
    "season_type",
    "package_category",
    "margin_percent",
    "margin_fixed",
    "is_active",
    "priority",
)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _rule_from_row(row: MarginRuleRow) -> domain.MarginRule:
    return domain.MarginRule(
        id=row.id,
        rule_name=row.rule_name,
        description=row.description,
        booking_days_advance=row.booking_days_advance,
        season_type=row.season_type,
        package_category=row.package_category,
        margin_percent=Decimal(row.margin_percent if row.margin_percent is not None else 0),
        margin_fixed=Decimal(row.margin_fixed if row.margin_fixed is not None else 0),
        is_active=bool(row.is_active),
        priority=int(row.priority or 0),
    )


class MarginRuleRepository:
    """
    Operator-managed margin rules.

    `find_candidates` is the lookup that feeds the calculator; the calculator
    only ranks what it gets back.
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    def create(self, *, rule_name: str, **fields: Any) -> domain.MarginRule:
        now = _now()
        row = MarginRuleRow(
            id=str(uuid4()),
            created_at=now,
            updated_at=now,
            rule_name=rule_name,
            description=fields.get("description"),
            booking_days_advance=fields.get("booking_days_advance"),
            season_type=fields.get("season_type"),
            package_category=fields.get("package_category"),
            margin_percent=Decimal(str(fields.get("margin_percent") or 0)),
            margin_fixed=Decimal(str(fields.get("margin_fixed") or 0)),
            is_active=bool(fields.get("is_active", True)),
            priority=int(fields.get("priority") or 0),
        )
        with session(self.engine) as s:
            s.add(row)
            s.commit()
            return _rule_from_row(row)

    def get(self, rule_id: str) -> domain.MarginRule | None:
        with session(self.engine) as s:
            row = s.get(MarginRuleRow, rule_id)
            return _rule_from_row(row) if row is not None else None

    def list_rules(self, *, active_only: bool = False) -> list[domain.MarginRule]:
        stmt = select(MarginRuleRow)
        if active_only:
            stmt = stmt.where(MarginRuleRow.is_active.is_(True))
        stmt = stmt.order_by(MarginRuleRow.priority.desc(), MarginRuleRow.id)
        with session(self.engine) as s:
            return [_rule_from_row(r) for r in s.scalars(stmt).all()]

    def update(self, rule_id: str, **changes: Any) -> domain.MarginRule | None:
        with session(self.engine) as s:
            row = s.get(MarginRuleRow, rule_id)
            if row is None:
                return None
            for k, v in changes.items():
                if k not in _RULE_FIELDS:
                    raise ValueError(f"Unknown margin rule field: {k}")
                if k in ("margin_percent", "margin_fixed"):
                    v = Decimal(str(v or 0))
                setattr(row, k, v)
            row.updated_at = _now()
            s.add(row)
            s.commit()
            return _rule_from_row(row)

    def delete(self, rule_id: str) -> bool:
        with session(self.engine) as s:
            row = s.get(MarginRuleRow, rule_id)
            if row is None:
                return False
            s.delete(row)
            s.commit()
            return True

    def find_candidates(
        self,
        days_advance: int,
        *,
        category: str | None = None,
        season_type: str | None = None,
    ) -> list[domain.MarginRule]:
        """
        Active rules matching ANY of: advance threshold, category, season, or
        fully-global. A missing category or season matches every active rule
        on that arm. Highest priority first.
        """
        conditions = [
            MarginRuleRow.booking_days_advance >= days_advance,
            (MarginRuleRow.package_category == category) if category else true(),
            (MarginRuleRow.season_type == season_type) if season_type else true(),
            and_(
                MarginRuleRow.booking_days_advance.is_(None),
                MarginRuleRow.package_category.is_(None),
                MarginRuleRow.season_type.is_(None),
            ),
        ]
        stmt = (
            select(MarginRuleRow)
            .where(MarginRuleRow.is_active.is_(True))
            .where(or_(*conditions))
            .order_by(MarginRuleRow.priority.desc(), MarginRuleRow.id)
        )
        with session(self.engine) as s:
            return [_rule_from_row(r) for r in s.scalars(stmt).all()]


class PriceComponentRepository:
    """Stored breakdown lines per itinerary. Writes replace, never merge."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def replace_components(self, itinerary_id: str, components: Iterable[domain.PriceComponent]) -> None:
        key = (itinerary_id or "").strip()
        if not key:
            raise ValueError("itinerary_id is required")

        now = _now()
        with session(self.engine) as s:
            s.execute(delete(PriceComponentRow).where(PriceComponentRow.itinerary_id == key))
            count = 0
            for i, c in enumerate(components):
                s.add(
                    PriceComponentRow(
                        id=str(uuid4()),
                        itinerary_id=key,
                        position=i,
                        created_at=now,
                        component_type=c.component_type,
                        net_price=c.net_price,
                        margin_amount=c.margin_amount,
                        tax_amount=c.tax_amount,
                        total_price=c.total_price,
                        currency=c.currency,
                    )
                )
                count += 1
            s.commit()
        logger.info("Replaced price components for itinerary %s (%d lines)", key, count)

    def load_components(self, itinerary_id: str) -> domain.PriceBreakdown | None:
        stmt = (
            select(PriceComponentRow)
            .where(PriceComponentRow.itinerary_id == (itinerary_id or "").strip())
            .order_by(PriceComponentRow.position)
        )
        with session(self.engine) as s:
            rows = s.scalars(stmt).all()

        return domain.breakdown_from_components(
            domain.PriceComponent(
                id=r.id,
                component_type=r.component_type,  # type: ignore[arg-type]
                net_price=Decimal(r.net_price),
                margin_amount=Decimal(r.margin_amount),
                tax_amount=Decimal(r.tax_amount),
                total_price=Decimal(r.total_price),
                currency=r.currency,
            )
            for r in rows
        )

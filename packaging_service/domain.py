from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Literal

logger = logging.getLogger(__name__)

ComponentType = Literal["FLIGHT", "HOTEL", "TRANSFER", "MARGIN", "TAX"]

NET_COMPONENT_TYPES: tuple[ComponentType, ...] = ("FLIGHT", "HOTEL", "TRANSFER")

DEFAULT_MARGIN_RATE = Decimal("0.10")
# Serbian VAT, applied on base price + margin.
TAX_RATE = Decimal("0.20")

_ZERO = Decimal("0")
_HUNDRED = Decimal("100")


class InvalidInput(ValueError):
    def __init__(self, field_name: str, message: str):
        super().__init__(f"{field_name}: {message}")
        self.field = field_name


@dataclass(frozen=True)
class MarginRule:
    """
    Operator-configured markup policy.

    Predicate fields left as None act as wildcards for rule lookup. The
    calculator itself only ranks by priority and never re-checks them.
    """

    id: str
    rule_name: str
    priority: int = 0
    margin_percent: Decimal = _ZERO
    margin_fixed: Decimal = _ZERO
    booking_days_advance: int | None = None
    season_type: str | None = None
    package_category: str | None = None
    is_active: bool = True
    description: str | None = None


@dataclass(frozen=True)
class PriceComponent:
    id: str
    component_type: ComponentType
    net_price: Decimal
    margin_amount: Decimal
    tax_amount: Decimal
    total_price: Decimal
    currency: str


@dataclass(frozen=True)
class PriceBreakdown:
    components: list[PriceComponent]
    subtotal: Decimal
    total_margin: Decimal
    total_tax: Decimal
    grand_total: Decimal
    currency: str


@dataclass(frozen=True)
class PackageCalculation:
    base_price: Decimal
    margin: Decimal
    tax: Decimal
    total_price: Decimal
    currency: str
    breakdown: PriceBreakdown
    applied_rules: list[MarginRule] = field(default_factory=list)
    opaque_mask: bool = True
    days_advance: int = 0
    price_before_tax: Decimal = _ZERO

    def customer_view(self) -> dict[str, Any]:
        """
        What the storefront may show. Opaque packages hide the itemized lines.

        The HTTP API returns the full calculation to the booking backend; this
        view is for downstream customer-facing callers.
        """
        if self.opaque_mask:
            return {"total_price": self.total_price, "currency": self.currency, "opaque_mask": True}
        return {
            "total_price": self.total_price,
            "currency": self.currency,
            "opaque_mask": False,
            "breakdown": self.breakdown,
        }


def to_money(value: Any, *, field_name: str) -> Decimal:
    """
    Convert a caller-supplied net price to Decimal.

    None means "not part of this package" (zero). Floats go through str() so
    150.1 stays 150.1 instead of its binary expansion.
    """
    if value is None:
        return _ZERO
    if isinstance(value, bool):
        raise InvalidInput(field_name, "must be a number")
    try:
        d = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise InvalidInput(field_name, "must be a number")
    if not d.is_finite():
        raise InvalidInput(field_name, "must be finite")
    if d < 0:
        raise InvalidInput(field_name, "must be >= 0")
    return d


def _as_utc_datetime(value: date | datetime | str | None) -> datetime:
    if value is None:
        raise InvalidInput("check_in_date", "is required")
    if isinstance(value, str):
        raw = value.strip()
        if not raw:
            raise InvalidInput("check_in_date", "is required")
        try:
            # JS toISOString() emits a trailing Z, which 3.10 fromisoformat rejects.
            if raw.endswith(("Z", "z")):
                raw = raw[:-1] + "+00:00"
            value = datetime.fromisoformat(raw)
        except ValueError:
            raise InvalidInput("check_in_date", f"unparseable date {raw!r}")
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    raise InvalidInput("check_in_date", "must be a date")


def days_in_advance(check_in: date | datetime | str | None, now: datetime) -> int:
    """
    Whole days between now and check-in, floor-rounded.

    A check-in 23 hours away is 0 days in advance; a past check-in is negative.
    """
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    # timedelta.days already floors toward negative infinity.
    return (_as_utc_datetime(check_in) - now).days


def select_rule(candidates: Iterable[MarginRule]) -> MarginRule | None:
    """Highest priority wins; on a tie the earlier candidate is kept. Rules never stack."""
    best: MarginRule | None = None
    for r in candidates:
        if not r.is_active:
            continue
        if best is None or int(r.priority) > int(best.priority):
            best = r
    return best


def margin_for_rule(base_price: Decimal, rule: MarginRule) -> Decimal:
    percent = Decimal(str(rule.margin_percent or 0))
    fixed = Decimal(str(rule.margin_fixed or 0))

    margin = _ZERO
    if percent > 0:
        margin += base_price * (percent / _HUNDRED)
    if fixed > 0:
        margin += fixed
    return margin


def build_breakdown(
    *,
    flight_price: Decimal,
    hotel_price: Decimal,
    transfer_price: Decimal,
    total_margin: Decimal,
    tax_amount: Decimal,
    currency: str,
) -> PriceBreakdown:
    components: list[PriceComponent] = []

    for ctype, net in (("FLIGHT", flight_price), ("HOTEL", hotel_price), ("TRANSFER", transfer_price)):
        if net > 0:
            components.append(
                PriceComponent(
                    id=ctype.lower(),
                    component_type=ctype,  # type: ignore[arg-type]
                    net_price=net,
                    margin_amount=_ZERO,
                    tax_amount=_ZERO,
                    total_price=net,
                    currency=currency,
                )
            )

    # MARGIN and TAX lines are always present, even at zero.
    components.append(
        PriceComponent(
            id="margin",
            component_type="MARGIN",
            net_price=_ZERO,
            margin_amount=total_margin,
            tax_amount=_ZERO,
            total_price=total_margin,
            currency=currency,
        )
    )
    components.append(
        PriceComponent(
            id="tax",
            component_type="TAX",
            net_price=_ZERO,
            margin_amount=_ZERO,
            tax_amount=tax_amount,
            total_price=tax_amount,
            currency=currency,
        )
    )

    subtotal = flight_price + hotel_price + transfer_price
    return PriceBreakdown(
        components=components,
        subtotal=subtotal,
        total_margin=total_margin,
        total_tax=tax_amount,
        grand_total=subtotal + total_margin + tax_amount,
        currency=currency,
    )


def breakdown_from_components(components: Iterable[PriceComponent]) -> PriceBreakdown | None:
    """
    Rebuild an aggregate from stored lines.

    Uses the same formulas as build_breakdown so a stored breakdown and a
    freshly computed one agree exactly.
    """
    items = list(components)
    if not items:
        return None

    subtotal = sum((c.net_price for c in items if c.component_type in NET_COMPONENT_TYPES), _ZERO)

    margin_line = next((c for c in items if c.component_type == "MARGIN"), None)
    tax_line = next((c for c in items if c.component_type == "TAX"), None)
    if margin_line is None or tax_line is None:
        logger.warning("Stored breakdown is missing a %s line", "MARGIN" if margin_line is None else "TAX")

    total_margin = margin_line.margin_amount if margin_line is not None else _ZERO
    total_tax = tax_line.tax_amount if tax_line is not None else _ZERO

    return PriceBreakdown(
        components=items,
        subtotal=subtotal,
        total_margin=total_margin,
        total_tax=total_tax,
        grand_total=subtotal + total_margin + total_tax,
        currency=items[0].currency,
    )


def compute_package_price(
    flight_price: Any = 0,
    hotel_price: Any = 0,
    transfer_price: Any = 0,
    *,
    check_in_date: date | datetime | str | None,
    candidate_rules: Iterable[MarginRule] = (),
    category: str | None = None,
    season_type: str | None = None,
    apply_opaque_mask: bool = True,
    currency: str = "EUR",
    now: datetime | None = None,
) -> PackageCalculation:
    flight = to_money(flight_price, field_name="flight_price")
    hotel = to_money(hotel_price, field_name="hotel_price")
    transfer = to_money(transfer_price, field_name="transfer_price")

    # Single clock read per call.
    days_advance = days_in_advance(check_in_date, now or datetime.now(tz=timezone.utc))

    base_price = flight + hotel + transfer

    rule = select_rule(candidate_rules)
    if rule is None:
        logger.debug("No margin rule for category=%s season=%s, using default margin", category, season_type)
        total_margin = base_price * DEFAULT_MARGIN_RATE
        applied: list[MarginRule] = []
    else:
        logger.debug("Applying margin rule %s (priority=%s)", rule.id, rule.priority)
        total_margin = margin_for_rule(base_price, rule)
        applied = [rule]

    price_before_tax = base_price + total_margin
    tax_amount = price_before_tax * TAX_RATE
    total_price = price_before_tax + tax_amount

    breakdown = build_breakdown(
        flight_price=flight,
        hotel_price=hotel,
        transfer_price=transfer,
        total_margin=total_margin,
        tax_amount=tax_amount,
        currency=currency,
    )

    return PackageCalculation(
        base_price=base_price,
        margin=total_margin,
        tax=tax_amount,
        total_price=total_price,
        currency=currency,
        breakdown=breakdown,
        applied_rules=applied,
        opaque_mask=apply_opaque_mask,
        days_advance=days_advance,
        price_before_tax=price_before_tax,
    )

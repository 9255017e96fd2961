from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Annotated

from fastapi import Depends, FastAPI, HTTPException, Response
from pydantic import BaseModel, Field
from sqlalchemy.engine import Engine

from . import domain
from .db import DEFAULT_CURRENCY, engine
from .models import Base
from .persistence import MarginRuleRepository, PriceComponentRepository

app = FastAPI(
    title="Dynamic Packaging Service",
    version="0.1.0",
    description="Package pricing from supplier net prices: margin rules, VAT and itemized breakdowns.",
)

# Create tables on startup
Base.metadata.create_all(engine)


def get_engine() -> Engine:
    return engine


def get_rule_repository(eng: Annotated[Engine, Depends(get_engine)]) -> MarginRuleRepository:
    return MarginRuleRepository(eng)


def get_component_repository(eng: Annotated[Engine, Depends(get_engine)]) -> PriceComponentRepository:
    return PriceComponentRepository(eng)


def _normalize_currency(code: str | None, *, field: str = "currency") -> str:
    c = (code or "").strip().upper()
    if len(c) != 3 or not c.isalpha():
        raise HTTPException(status_code=400, detail=f"{field} must be a 3-letter ISO currency code")
    return c


def _money(x: Decimal) -> float:
    return float(x)


#
# Pydantic Models
#


class PackagePriceIn(BaseModel):
    flight_price: float | None = Field(default=0, description="Net flight price")
    hotel_price: float | None = Field(default=0, description="Net hotel price")
    transfer_price: float | None = Field(default=0, description="Net transfer price")
    check_in_date: str = Field(description="ISO date or datetime of check-in")
    category: str | None = None
    season_type: str | None = None
    apply_opaque_mask: bool = True
    currency: str | None = Field(default=None, description="ISO currency (default from DEFAULT_CURRENCY)")
    itinerary_id: str | None = Field(default=None, description="If set, the breakdown is stored for this itinerary")


class PriceComponentIn(BaseModel):
    component_type: domain.ComponentType
    net_price: float = 0
    margin_amount: float = 0
    tax_amount: float = 0
    currency: str


class PriceComponentOut(BaseModel):
    id: str
    component_type: str
    net_price: float
    margin_amount: float
    tax_amount: float
    total_price: float
    currency: str


class PriceBreakdownOut(BaseModel):
    components: list[PriceComponentOut]
    subtotal: float
    total_margin: float
    total_tax: float
    grand_total: float
    currency: str


class MarginRuleIn(BaseModel):
    rule_name: str = Field(min_length=1)
    description: str | None = None
    booking_days_advance: int | None = Field(default=None, ge=0)
    season_type: str | None = None
    package_category: str | None = None
    margin_percent: float = Field(default=0, ge=0)
    margin_fixed: float = Field(default=0, ge=0)
    is_active: bool = True
    priority: int = 0


class MarginRulePatch(BaseModel):
    rule_name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    booking_days_advance: int | None = Field(default=None, ge=0)
    season_type: str | None = None
    package_category: str | None = None
    margin_percent: float | None = Field(default=None, ge=0)
    margin_fixed: float | None = Field(default=None, ge=0)
    is_active: bool | None = None
    priority: int | None = None


class MarginRuleOut(BaseModel):
    id: str
    rule_name: str
    description: str | None
    booking_days_advance: int | None
    season_type: str | None
    package_category: str | None
    margin_percent: float
    margin_fixed: float
    is_active: bool
    priority: int


class PackageCalculationOut(BaseModel):
    base_price: float
    margin: float
    tax: float
    total_price: float
    currency: str
    days_advance: int
    breakdown: PriceBreakdownOut
    applied_rules: list[MarginRuleOut]
    opaque_mask: bool


def _component_out(c: domain.PriceComponent) -> PriceComponentOut:
    return PriceComponentOut(
        id=c.id,
        component_type=c.component_type,
        net_price=_money(c.net_price),
        margin_amount=_money(c.margin_amount),
        tax_amount=_money(c.tax_amount),
        total_price=_money(c.total_price),
        currency=c.currency,
    )


def _breakdown_out(b: domain.PriceBreakdown) -> PriceBreakdownOut:
    return PriceBreakdownOut(
        components=[_component_out(c) for c in b.components],
        subtotal=_money(b.subtotal),
        total_margin=_money(b.total_margin),
        total_tax=_money(b.total_tax),
        grand_total=_money(b.grand_total),
        currency=b.currency,
    )


def _rule_out(r: domain.MarginRule) -> MarginRuleOut:
    return MarginRuleOut(
        id=r.id,
        rule_name=r.rule_name,
        description=r.description,
        booking_days_advance=r.booking_days_advance,
        season_type=r.season_type,
        package_category=r.package_category,
        margin_percent=_money(r.margin_percent),
        margin_fixed=_money(r.margin_fixed),
        is_active=r.is_active,
        priority=r.priority,
    )


#
# Endpoints
#


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/packages/price", response_model=PackageCalculationOut)
def price_package(
    payload: PackagePriceIn,
    rules: Annotated[MarginRuleRepository, Depends(get_rule_repository)],
    components: Annotated[PriceComponentRepository, Depends(get_component_repository)],
):
    currency = _normalize_currency(payload.currency or DEFAULT_CURRENCY)
    try:
        # Same instant for the rule lookup and the calculation.
        now = datetime.now(tz=timezone.utc)
        days = domain.days_in_advance(payload.check_in_date, now)
        candidates = rules.find_candidates(days, category=payload.category, season_type=payload.season_type)
        calc = domain.compute_package_price(
            payload.flight_price,
            payload.hotel_price,
            payload.transfer_price,
            check_in_date=payload.check_in_date,
            candidate_rules=candidates,
            category=payload.category,
            season_type=payload.season_type,
            apply_opaque_mask=payload.apply_opaque_mask,
            currency=currency,
            now=now,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    itinerary_id = (payload.itinerary_id or "").strip()
    if itinerary_id:
        components.replace_components(itinerary_id, calc.breakdown.components)

    return PackageCalculationOut(
        base_price=_money(calc.base_price),
        margin=_money(calc.margin),
        tax=_money(calc.tax),
        total_price=_money(calc.total_price),
        currency=calc.currency,
        days_advance=calc.days_advance,
        breakdown=_breakdown_out(calc.breakdown),
        applied_rules=[_rule_out(r) for r in calc.applied_rules],
        opaque_mask=calc.opaque_mask,
    )


@app.get("/itineraries/{itinerary_id}/price-breakdown", response_model=PriceBreakdownOut)
def get_price_breakdown(
    itinerary_id: str,
    components: Annotated[PriceComponentRepository, Depends(get_component_repository)],
):
    b = components.load_components(itinerary_id)
    if b is None:
        raise HTTPException(status_code=404, detail="No price components for itinerary")
    return _breakdown_out(b)


@app.put("/itineraries/{itinerary_id}/price-components", response_model=PriceBreakdownOut)
def replace_price_components(
    itinerary_id: str,
    payload: list[PriceComponentIn],
    components: Annotated[PriceComponentRepository, Depends(get_component_repository)],
):
    if not payload:
        raise HTTPException(status_code=400, detail="At least one price component is required")

    rows: list[domain.PriceComponent] = []
    for i, p in enumerate(payload):
        net = Decimal(str(p.net_price))
        margin = Decimal(str(p.margin_amount))
        tax = Decimal(str(p.tax_amount))
        rows.append(
            domain.PriceComponent(
                id=f"{p.component_type.lower()}-{i}",
                component_type=p.component_type,
                net_price=net,
                margin_amount=margin,
                tax_amount=tax,
                total_price=net + margin + tax,
                currency=_normalize_currency(p.currency, field=f"components[{i}].currency"),
            )
        )

    components.replace_components(itinerary_id, rows)
    b = components.load_components(itinerary_id)
    if b is None:
        raise HTTPException(status_code=404, detail="No price components for itinerary")
    return _breakdown_out(b)


@app.get("/margin-rules", response_model=list[MarginRuleOut])
def list_margin_rules(
    rules: Annotated[MarginRuleRepository, Depends(get_rule_repository)],
    active_only: bool = False,
):
    return [_rule_out(r) for r in rules.list_rules(active_only=active_only)]


@app.post("/margin-rules", response_model=MarginRuleOut)
def create_margin_rule(
    payload: MarginRuleIn,
    rules: Annotated[MarginRuleRepository, Depends(get_rule_repository)],
):
    return _rule_out(rules.create(**payload.model_dump()))


@app.get("/margin-rules/{rule_id}", response_model=MarginRuleOut)
def get_margin_rule(
    rule_id: str,
    rules: Annotated[MarginRuleRepository, Depends(get_rule_repository)],
):
    r = rules.get(rule_id)
    if r is None:
        raise HTTPException(status_code=404, detail="Margin rule not found")
    return _rule_out(r)


@app.patch("/margin-rules/{rule_id}", response_model=MarginRuleOut)
def patch_margin_rule(
    rule_id: str,
    payload: MarginRulePatch,
    rules: Annotated[MarginRuleRepository, Depends(get_rule_repository)],
):
    changes = payload.model_dump(exclude_unset=True)
    for k in ("rule_name", "margin_percent", "margin_fixed", "is_active", "priority"):
        if k in changes and changes[k] is None:
            raise HTTPException(status_code=400, detail=f"{k} cannot be null")
    r = rules.update(rule_id, **changes)
    if r is None:
        raise HTTPException(status_code=404, detail="Margin rule not found")
    return _rule_out(r)


@app.delete("/margin-rules/{rule_id}")
def delete_margin_rule(
    rule_id: str,
    rules: Annotated[MarginRuleRepository, Depends(get_rule_repository)],
):
    if not rules.delete(rule_id):
        raise HTTPException(status_code=404, detail="Margin rule not found")
    return Response(status_code=204)

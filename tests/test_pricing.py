from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from packaging_service import domain

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
CHECK_IN = date(2026, 6, 1)


def _rule(rule_id: str, priority: int, percent="0", fixed="0", **kw) -> domain.MarginRule:
    return domain.MarginRule(
        id=rule_id,
        rule_name=rule_id,
        priority=priority,
        margin_percent=Decimal(percent),
        margin_fixed=Decimal(fixed),
        **kw,
    )


def _price(flight=0, hotel=0, transfer=0, rules=(), **kw) -> domain.PackageCalculation:
    return domain.compute_package_price(
        flight,
        hotel,
        transfer,
        check_in_date=kw.pop("check_in_date", CHECK_IN),
        candidate_rules=rules,
        now=kw.pop("now", NOW),
        **kw,
    )


def test_base_price_is_sum_of_net_components():
    calc = _price(flight="123.45", hotel="678.90", transfer="0.05")
    assert calc.base_price == Decimal("802.40")
    assert calc.breakdown.subtotal == calc.base_price


def test_default_margin_when_no_rules():
    calc = _price(hotel=1000)
    assert calc.margin == 100
    assert calc.breakdown.total_margin == 100
    assert calc.applied_rules == []


def test_highest_priority_rule_wins_and_rules_do_not_stack():
    a = _rule("A", priority=1, percent="5")
    b = _rule("B", priority=10, percent="15")

    calc = _price(hotel=1000, rules=[a, b])

    assert calc.margin == 150
    assert calc.applied_rules == [b]


def test_fixed_and_percent_margin_combine():
    calc = _price(hotel=1000, rules=[_rule("R", priority=1, percent="10", fixed="20")])
    assert calc.margin == 120


def test_negative_or_zero_rule_terms_add_nothing():
    calc = _price(hotel=1000, rules=[_rule("R", priority=1, percent="-5", fixed="0")])
    assert calc.margin == 0
    assert calc.tax == 200


def test_tax_end_to_end():
    calc = _price(flight=150, hotel=700, transfer=50)

    assert calc.base_price == 900
    assert calc.margin == 90
    assert calc.price_before_tax == 990
    assert calc.tax == Decimal("198.0")
    assert calc.total_price == Decimal("1188.0")


def test_totals_are_consistent():
    rule = _rule("R", priority=3, percent="7.5", fixed="12.34")
    calc = _price(flight="199.99", hotel="1234.56", transfer="33.33", rules=[rule])
    b = calc.breakdown

    assert b.grand_total == b.subtotal + b.total_margin + b.total_tax
    assert calc.total_price == calc.base_price + calc.margin + calc.tax
    assert b.grand_total == calc.total_price
    for c in b.components:
        assert c.total_price == c.net_price + c.margin_amount + c.tax_amount
    assert sum(c.total_price for c in b.components) == b.grand_total


def test_zero_components_are_omitted_but_margin_and_tax_always_present():
    calc = _price(flight=100, hotel=0, transfer=20, rules=[_rule("R", priority=1)])
    types = [c.component_type for c in calc.breakdown.components]

    assert types == ["FLIGHT", "TRANSFER", "MARGIN", "TAX"]
    margin_line = calc.breakdown.components[2]
    assert margin_line.margin_amount == 0


def test_empty_package_still_has_margin_and_tax_lines():
    calc = _price()
    assert [c.component_type for c in calc.breakdown.components] == ["MARGIN", "TAX"]
    assert calc.total_price == 0


@pytest.mark.parametrize(
    "kwargs",
    [
        {"flight": -1},
        {"hotel": float("nan")},
        {"transfer": float("inf")},
        {"flight": "abc"},
    ],
)
def test_invalid_net_prices_are_rejected(kwargs):
    with pytest.raises(domain.InvalidInput):
        _price(**kwargs)


def test_negative_flight_price_names_the_field():
    with pytest.raises(domain.InvalidInput) as exc:
        _price(flight=-1, hotel=100)
    assert exc.value.field == "flight_price"


def test_missing_or_unparseable_check_in_is_rejected():
    with pytest.raises(domain.InvalidInput):
        _price(hotel=100, check_in_date=None)
    with pytest.raises(domain.InvalidInput):
        _price(hotel=100, check_in_date="next tuesday")


def test_same_inputs_give_identical_results():
    rules = [_rule("A", priority=2, percent="12"), _rule("B", priority=1, fixed="40")]
    first = _price(flight=150, hotel=700, transfer=50, rules=rules, category="FAMILY")
    second = _price(flight=150, hotel=700, transfer=50, rules=rules, category="FAMILY")
    assert first == second


def test_days_in_advance_floors_partial_days():
    assert domain.days_in_advance(NOW + timedelta(hours=23), NOW) == 0
    assert domain.days_in_advance(NOW + timedelta(hours=36), NOW) == 1
    # a date is taken as midnight UTC
    assert domain.days_in_advance(date(2026, 3, 2), NOW) == 0
    assert domain.days_in_advance("2026-03-11", NOW) == 9
    assert domain.days_in_advance(NOW - timedelta(hours=1), NOW) == -1


def test_days_advance_is_reported_on_the_calculation():
    calc = _price(hotel=100, check_in_date=NOW + timedelta(days=45, hours=2))
    assert calc.days_advance == 45


def test_select_rule_skips_inactive_and_keeps_first_on_tie():
    inactive = _rule("X", priority=99, percent="50", is_active=False)
    first = _rule("A", priority=5, percent="10")
    second = _rule("B", priority=5, percent="20")

    assert domain.select_rule([inactive, first, second]) is first
    assert domain.select_rule([inactive]) is None
    assert domain.select_rule([]) is None


def test_opaque_mask_is_passthrough():
    opaque = _price(hotel=500, apply_opaque_mask=True)
    clear = _price(hotel=500, apply_opaque_mask=False)

    assert opaque.total_price == clear.total_price
    assert opaque.opaque_mask is True
    assert "breakdown" not in opaque.customer_view()
    assert clear.customer_view()["breakdown"] == clear.breakdown


def test_currency_is_a_label_only():
    eur = _price(hotel=500)
    rsd = _price(hotel=500, currency="RSD")
    assert eur.currency == "EUR"
    assert rsd.currency == "RSD"
    assert {c.currency for c in rsd.breakdown.components} == {"RSD"}
    assert eur.total_price == rsd.total_price


def test_breakdown_from_components_matches_fresh_breakdown():
    calc = _price(flight="150.10", hotel=700, transfer=50, rules=[_rule("R", priority=1, percent="8", fixed="15")])

    rebuilt = domain.breakdown_from_components(calc.breakdown.components)

    assert rebuilt == calc.breakdown


def test_breakdown_from_no_components_is_none():
    assert domain.breakdown_from_components([]) is None


def test_check_in_with_z_suffix_is_utc():
    assert domain.days_in_advance("2026-03-11T00:00:00.000Z", NOW) == 9
    assert domain.days_in_advance("2026-03-01T23:00:00Z", NOW) == 0


def test_float_rule_fields_use_their_decimal_text():
    rule = domain.MarginRule(id="F", rule_name="F", priority=1, margin_percent=12.3, margin_fixed=0.1)  # type: ignore[arg-type]
    assert domain.margin_for_rule(Decimal("1000"), rule) == Decimal("123.1")

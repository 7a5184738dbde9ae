"""Tests for deterministic price computation."""

from __future__ import annotations

from decimal import Decimal

import pytest

from billing_core.catalog import default_catalog
from billing_core.errors import PolicyError, ValidationError
from billing_core.pricing import PriceCalculator, calculate, quantize


@pytest.fixture()
def calculator() -> PriceCalculator:
    return PriceCalculator(default_catalog())


class TestBasePrice:
    def test_team_two_users(self, calculator: PriceCalculator) -> None:
        breakdown = calculator.calculate("team", [], 2)
        assert breakdown.base_subtotal == Decimal("88.00")
        assert breakdown.total == Decimal("88.00")
        assert breakdown.addon_amounts == {}

    def test_starter_is_free(self, calculator: PriceCalculator) -> None:
        assert calculator.calculate("starter", [], 2).total == Decimal("0.00")

    def test_enterprise_price(self, calculator: PriceCalculator) -> None:
        assert calculator.calculate("enterprise", [], 3).total == Decimal("177.00")


class TestAddons:
    """Add-ons are independent percentages of the base subtotal."""

    def test_both_addons_on_team(self, calculator: PriceCalculator) -> None:
        breakdown = calculator.calculate("team", ["planning", "ai"], 2)
        assert breakdown.base_subtotal == Decimal("88.00")
        assert breakdown.addon_amounts == {"ai": Decimal("15.84"), "planning": Decimal("15.84")}
        assert breakdown.total == Decimal("119.68")

    def test_percentages_do_not_compound(self, calculator: PriceCalculator) -> None:
        single = calculator.calculate("team", ["planning"], 7)
        both = calculator.calculate("team", ["planning", "ai"], 7)
        assert both.addon_amounts["planning"] == single.addon_amounts["planning"]

    def test_total_is_sum_of_parts(self, calculator: PriceCalculator) -> None:
        for users in (1, 3, 17, 250):
            breakdown = calculator.calculate("team", ["planning", "ai"], users)
            assert breakdown.total == breakdown.base_subtotal + sum(breakdown.addon_amounts.values())

    def test_rounding_half_up(self, calculator: PriceCalculator) -> None:
        # 44 * 0.18 = 7.92 exactly; 3 users -> 132 * 0.18 = 23.76.
        assert calculator.addon_amount("team", "ai", 3) == Decimal("23.76")
        assert quantize(Decimal("0.125")) == Decimal("0.13")

    def test_duplicates_collapse(self, calculator: PriceCalculator) -> None:
        breakdown = calculator.calculate("team", ["ai", "ai"], 1)
        assert list(breakdown.addon_amounts) == ["ai"]

    def test_complete_plan_includes_addons(self, calculator: PriceCalculator) -> None:
        breakdown = calculator.calculate("enterprise", ["planning"], 2)
        assert breakdown.included_addons == ("planning",)
        assert breakdown.addon_amounts == {}
        assert breakdown.total == Decimal("118.00")

    def test_basic_plan_rejects_addons(self, calculator: PriceCalculator) -> None:
        with pytest.raises(PolicyError) as exc_info:
            calculator.calculate("starter", ["planning"], 1)
        assert exc_info.value.code == "addons_not_allowed"

    def test_unknown_addon(self, calculator: PriceCalculator) -> None:
        with pytest.raises(ValidationError):
            calculator.calculate("team", ["payroll"], 1)


class TestSerialisation:
    def test_to_dict_uses_strings(self) -> None:
        data = calculate(default_catalog(), "team", ["ai"], 2).to_dict()
        assert data["total"] == "103.84"
        assert data["addon_amounts"] == {"ai": "15.84"}

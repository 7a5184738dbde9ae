"""Deterministic price computation.

Shared by the interactive checkout path and the renewal engine so both
always agree on what a subscription costs.  All arithmetic is Decimal and
every reported amount is quantized to cents with ROUND_HALF_UP.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING, Any

from billing_core.catalog import PlanCatalog
from billing_core.errors import PolicyError

if TYPE_CHECKING:
    from billing_core.state.tables import SubscriptionTable

CENT = Decimal("0.01")


def quantize(amount: Decimal) -> Decimal:
    """Round *amount* to cents using commercial rounding."""
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class PriceBreakdown:
    """Result of a single price calculation."""

    plan: str
    user_count: int
    base_subtotal: Decimal
    addon_amounts: dict[str, Decimal] = field(default_factory=dict)
    included_addons: tuple[str, ...] = ()
    total: Decimal = Decimal("0.00")

    def to_dict(self) -> dict[str, Any]:
        """Serialise with amounts as strings so JSON keeps cent precision."""
        return {
            "plan": self.plan,
            "user_count": self.user_count,
            "base_subtotal": str(self.base_subtotal),
            "addon_amounts": {k: str(v) for k, v in self.addon_amounts.items()},
            "included_addons": list(self.included_addons),
            "total": str(self.total),
        }


class PriceCalculator:
    """Computes prices against a fixed catalog.

    Parameters
    ----------
    catalog:
        The plan catalog to price against.
    """

    def __init__(self, catalog: PlanCatalog) -> None:
        self._catalog = catalog

    @property
    def catalog(self) -> PlanCatalog:
        return self._catalog

    def calculate(self, plan_name: str, addons: Iterable[str], user_count: int) -> PriceBreakdown:
        """Price *plan_name* for *user_count* seats with *addons* active.

        Each add-on is a percentage of the base subtotal, computed
        independently; percentages never compound.

        Raises
        ------
        ValidationError
            If the plan or an add-on is unknown.
        PolicyError
            ``addons_not_allowed`` when add-ons are requested on a basic plan.
        """
        plan = self._catalog.get_plan(plan_name)
        requested = sorted(set(addons))
        for name in requested:
            self._catalog.get_addon(name)

        base_subtotal = quantize(plan.price_per_user * user_count)

        if requested and not plan.addons_allowed:
            raise PolicyError(
                f"Add-ons are not available on the {plan.name} plan",
                code="addons_not_allowed",
                plan=plan.name,
            )

        if plan.is_complete:
            return PriceBreakdown(
                plan=plan.name,
                user_count=user_count,
                base_subtotal=base_subtotal,
                included_addons=tuple(requested),
                total=base_subtotal,
            )

        addon_amounts: dict[str, Decimal] = {}
        for name in requested:
            addon = self._catalog.get_addon(name)
            addon_amounts[name] = quantize(base_subtotal * addon.percentage)

        total = base_subtotal + sum(addon_amounts.values(), Decimal("0"))
        return PriceBreakdown(
            plan=plan.name,
            user_count=user_count,
            base_subtotal=base_subtotal,
            addon_amounts=addon_amounts,
            total=quantize(total),
        )

    def addon_amount(self, plan_name: str, addon: str, user_count: int) -> Decimal:
        """Incremental amount for activating a single add-on."""
        breakdown = self.calculate(plan_name, [addon], user_count)
        return breakdown.addon_amounts.get(addon, Decimal("0.00"))

    def for_subscription(self, subscription: SubscriptionTable) -> PriceBreakdown:
        """Price a subscription's current plan, add-ons and seats."""
        return self.calculate(
            subscription.plan,
            subscription.active_addons or [],
            subscription.user_count,
        )


def calculate(
    catalog: PlanCatalog, plan_name: str, addons: Iterable[str], user_count: int
) -> PriceBreakdown:
    """Functional shortcut for ``PriceCalculator(catalog).calculate(...)``."""
    return PriceCalculator(catalog).calculate(plan_name, addons, user_count)

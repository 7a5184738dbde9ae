"""Plan and add-on catalog.

Three plan kinds shape how add-ons behave:

* **Basic** (``starter``) -- mandatory features only; add-ons forbidden.
* **Standard** (``team``) -- mandatory features plus one bundled feature;
  each optional add-on unlocks one more feature for a percentage surcharge.
* **Complete** (``enterprise``) -- every feature; add-on toggles are no-ops.

The catalog is immutable once built.  It is replaced only by deploying a
new configuration (``BILLING_CATALOG_PATH`` pointing at a YAML file).
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from billing_core.errors import ValidationError

logger = logging.getLogger(__name__)


class Feature(str, Enum):
    """Product modules gated by plan and add-ons."""

    TIMESHEETS = "timesheets"
    EXPENSES = "expenses"
    TRAVELS = "travels"
    PLANNING = "planning"
    AI = "ai"


@dataclass(frozen=True)
class AddonDefinition:
    """An optional feature billed as a fraction of the base subtotal."""

    name: str
    percentage: Decimal
    feature: str
    label: str = ""


@dataclass(frozen=True)
class PlanDefinition:
    """A pricing tier.

    ``rank`` orders plans for upgrade/downgrade direction checks.
    ``max_users`` of ``None`` means the seat count is unbounded.
    """

    name: str
    price_per_user: Decimal
    features: frozenset[str]
    addons_allowed: bool
    is_complete: bool
    rank: int
    addons: tuple[str, ...] = ()
    label: str = ""
    min_users: int = 1
    max_users: int | None = None

    @property
    def is_free(self) -> bool:
        return self.price_per_user == 0

    def offers_addon(self, addon: str) -> bool:
        """Whether *addon* can be priced on this plan."""
        return self.addons_allowed and not self.is_complete and addon in self.addons


@dataclass(frozen=True)
class PlanCatalog:
    """Lookup table of plans and add-ons."""

    plans: Mapping[str, PlanDefinition]
    addons: Mapping[str, AddonDefinition]
    trial_plan: str = "enterprise"
    fallback_plan: str = "starter"
    features: tuple[str, ...] = field(default=())

    def get_plan(self, name: str) -> PlanDefinition:
        """Return the plan called *name* or raise ``ValidationError``."""
        plan = self.plans.get(name)
        if plan is None:
            raise ValidationError(
                f"Unknown plan '{name}'. Must be one of: {', '.join(sorted(self.plans))}",
                code="unknown_plan",
            )
        return plan

    def get_addon(self, name: str) -> AddonDefinition:
        """Return the add-on called *name* or raise ``ValidationError``."""
        addon = self.addons.get(name)
        if addon is None:
            raise ValidationError(
                f"Unknown add-on '{name}'. Must be one of: {', '.join(sorted(self.addons))}",
                code="unknown_addon",
            )
        return addon

    def all_features(self) -> tuple[str, ...]:
        """Every feature named by any plan or add-on, in declaration order."""
        if self.features:
            return self.features
        seen: dict[str, None] = {}
        for plan in self.plans.values():
            for feature in sorted(plan.features):
                seen.setdefault(feature, None)
        for addon in self.addons.values():
            seen.setdefault(addon.feature, None)
        return tuple(seen)

    def ordered_plans(self) -> list[PlanDefinition]:
        """Plans sorted from lowest to highest rank."""
        return sorted(self.plans.values(), key=lambda p: p.rank)


_MANDATORY: frozenset[str] = frozenset({Feature.TIMESHEETS.value, Feature.EXPENSES.value})
_ALL_FEATURES: tuple[str, ...] = tuple(f.value for f in Feature)


def default_catalog() -> PlanCatalog:
    """Return the built-in catalog (EUR prices)."""
    addons = {
        "planning": AddonDefinition(
            name="planning",
            percentage=Decimal("0.18"),
            feature=Feature.PLANNING.value,
            label="Planning",
        ),
        "ai": AddonDefinition(
            name="ai",
            percentage=Decimal("0.18"),
            feature=Feature.AI.value,
            label="AI assistant",
        ),
    }
    plans = {
        "starter": PlanDefinition(
            name="starter",
            label="Starter",
            price_per_user=Decimal("0"),
            features=_MANDATORY,
            addons_allowed=False,
            is_complete=False,
            rank=1,
            min_users=1,
            max_users=2,
        ),
        "team": PlanDefinition(
            name="team",
            label="Team",
            price_per_user=Decimal("44"),
            features=_MANDATORY | {Feature.TRAVELS.value},
            addons_allowed=True,
            is_complete=False,
            rank=2,
            addons=("planning", "ai"),
            max_users=99999,
        ),
        "enterprise": PlanDefinition(
            name="enterprise",
            label="Enterprise",
            price_per_user=Decimal("59"),
            features=frozenset(_ALL_FEATURES),
            addons_allowed=True,
            is_complete=True,
            rank=3,
            max_users=99999,
        ),
    }
    return PlanCatalog(plans=plans, addons=addons, features=_ALL_FEATURES)


def _as_decimal(value: Any, *, where: str) -> Decimal:
    try:
        return Decimal(str(value))
    except ArithmeticError as exc:
        raise ValueError(f"Invalid decimal for {where}: {value!r}") from exc


def _parse_plans(raw: Mapping[str, Any]) -> dict[str, PlanDefinition]:
    plans: dict[str, PlanDefinition] = {}
    for rank, (name, body) in enumerate(raw.items(), start=1):
        body = body or {}
        addons: Iterable[str] = body.get("addons") or ()
        plans[name] = PlanDefinition(
            name=name,
            label=body.get("label", name.title()),
            price_per_user=_as_decimal(body.get("price_per_user", 0), where=f"plans.{name}.price_per_user"),
            features=frozenset(body.get("features") or ()),
            addons_allowed=bool(body.get("addons_allowed", bool(addons))),
            is_complete=bool(body.get("complete", False)),
            rank=int(body.get("rank", rank)),
            addons=tuple(addons),
            min_users=int(body.get("min_users", 1)),
            max_users=body.get("max_users"),
        )
    return plans


def load_catalog(path: str | Path) -> PlanCatalog:
    """Build a catalog from a YAML document.

    Expected shape::

        trial_plan: enterprise
        fallback_plan: starter
        addons:
          planning: {percentage: 0.18, feature: planning}
        plans:
          starter: {price_per_user: 0, features: [timesheets], max_users: 2}
          team: {price_per_user: 44, features: [...], addons: [planning]}
          enterprise: {price_per_user: 59, features: [...], complete: true}

    Raises
    ------
    ValueError
        If the document is malformed or references undefined add-ons.
    """
    text = Path(path).read_text(encoding="utf-8")
    document = yaml.safe_load(text) or {}
    if not isinstance(document, dict) or "plans" not in document:
        raise ValueError(f"Catalog file {path} must define a 'plans' mapping")

    addons = {
        name: AddonDefinition(
            name=name,
            percentage=_as_decimal(body.get("percentage", 0), where=f"addons.{name}.percentage"),
            feature=body.get("feature", name),
            label=body.get("label", name.title()),
        )
        for name, body in (document.get("addons") or {}).items()
    }
    plans = _parse_plans(document["plans"])

    for plan in plans.values():
        missing = [a for a in plan.addons if a not in addons]
        if missing:
            raise ValueError(f"Plan '{plan.name}' references undefined add-ons: {missing}")

    catalog = PlanCatalog(
        plans=plans,
        addons=addons,
        trial_plan=document.get("trial_plan", "enterprise"),
        fallback_plan=document.get("fallback_plan", "starter"),
    )
    for role, name in (("trial_plan", catalog.trial_plan), ("fallback_plan", catalog.fallback_plan)):
        if name not in plans:
            raise ValueError(f"{role} '{name}' is not a defined plan")
    logger.info("Loaded plan catalog from %s (%d plans, %d add-ons)", path, len(plans), len(addons))
    return catalog

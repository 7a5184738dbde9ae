"""Feature entitlements derived from plan and active add-ons.

Flags are recomputed on every call from the subscription's current plan and
add-on set; nothing is cached between calls.
"""

from __future__ import annotations

from billing_core.catalog import PlanCatalog
from billing_core.state.tables import SubscriptionStatus, SubscriptionTable


def get_plan_features(catalog: PlanCatalog, plan_name: str, addons: frozenset[str] = frozenset()) -> frozenset[str]:
    """Return the set of features unlocked by *plan_name* plus *addons*.

    Parameters
    ----------
    catalog:
        The plan catalog.
    plan_name:
        Name of the plan.
    addons:
        Active add-on names.  Ignored on plans that do not offer them.

    Returns
    -------
    frozenset[str]
        Enabled feature names.
    """
    plan = catalog.get_plan(plan_name)
    if plan.is_complete:
        return frozenset(catalog.all_features())
    enabled = set(plan.features)
    for name in addons:
        if plan.offers_addon(name):
            enabled.add(catalog.get_addon(name).feature)
    return frozenset(enabled)


def get_feature_flags_for_plan(subscription: SubscriptionTable, catalog: PlanCatalog) -> dict[str, bool]:
    """Map every known feature to whether *subscription* may use it.

    A canceled subscription has every flag off, whatever its plan and
    add-ons: cancellation is terminal and the tenant keeps no paid
    access.  Trialing, active and past_due subscriptions keep the flags of
    their current plan and active add-ons; a past_due tenant loses them
    only once the grace period expires and the renewal pass cancels it.

    Returns
    -------
    dict
        Every feature named by the catalog, mapped to ``True`` or ``False``.
    """
    if subscription.status == SubscriptionStatus.CANCELED.value:
        return {feature: False for feature in catalog.all_features()}
    enabled = get_plan_features(catalog, subscription.plan, subscription.addon_set)
    return {feature: feature in enabled for feature in catalog.all_features()}


def is_feature_enabled(subscription: SubscriptionTable, catalog: PlanCatalog, feature: str) -> bool:
    """Check a single feature flag."""
    return get_feature_flags_for_plan(subscription, catalog).get(feature, False)

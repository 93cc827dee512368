"""
Plan resolution from billing signals.

Every entry point (checkout completion, subscription events, the provider
lookup on a cache miss) maps price ids to a plan through resolve_plan so the
lifetime-over-monthly tie-break is applied the same way everywhere.
"""

from dataclasses import dataclass
from typing import Iterable, Optional

from licensing.features.entitlements.models import Plan


@dataclass(frozen=True)
class PriceCatalog:
    monthly_price_id: Optional[str]
    lifetime_price_id: Optional[str]

    def plan_for(self, price_id: Optional[str]) -> Optional[Plan]:
        if not price_id:
            return None
        if self.lifetime_price_id and price_id == self.lifetime_price_id:
            return Plan.LIFETIME
        if self.monthly_price_id and price_id == self.monthly_price_id:
            return Plan.MONTHLY
        return None


def resolve_plan(
    price_ids: Iterable[Optional[str]],
    catalog: PriceCatalog,
    declared_plans: Iterable[Optional[str]] = (),
) -> Optional[Plan]:
    """Return the best plan among price ids and explicitly declared plan names, or None."""
    found = set()
    for price_id in price_ids:
        plan = catalog.plan_for(price_id)
        if plan is not None:
            found.add(plan)
    for name in declared_plans:
        if name in (Plan.MONTHLY.value, Plan.LIFETIME.value):
            found.add(Plan(name))

    if Plan.LIFETIME in found:
        return Plan.LIFETIME
    if Plan.MONTHLY in found:
        return Plan.MONTHLY
    return None

"""
Static plan identifier -> (tier, founder flag) table.
"""

from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from shared.errors import ConfigurationError

from ..registry.models import LicenseTier


@dataclass(frozen=True)
class PlanEntitlement:
    tier: LicenseTier
    is_founder: bool = False


PLAN_TABLE: Dict[str, PlanEntitlement] = {
    "pro-monthly": PlanEntitlement(LicenseTier.PRO),
    "pro-annual": PlanEntitlement(LicenseTier.PRO),
    "team-monthly": PlanEntitlement(LicenseTier.TEAM),
    "team-annual": PlanEntitlement(LicenseTier.TEAM),
    "enterprise-annual": PlanEntitlement(LicenseTier.ENTERPRISE),
}


def resolve_plan(plan_id: Optional[str], table: Optional[Mapping[str, PlanEntitlement]] = None) -> PlanEntitlement:
    """Look up a plan identifier.

    An unmapped identifier raises ConfigurationError; it never falls back
    to a default tier.
    """
    plans = PLAN_TABLE if table is None else table
    if not plan_id or plan_id not in plans:
        raise ConfigurationError(
            f"Unmapped plan identifier: {plan_id}",
            details={"plan_id": plan_id, "known_plans": sorted(plans)},
        )
    return plans[plan_id]

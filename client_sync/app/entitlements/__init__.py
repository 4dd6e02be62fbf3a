"""
Entitlements package.

Merges three independently cached billing resources (current plan,
usage counters, plan limits) into one Entitlement and exposes the
feature gate the screens consult.

Modules of interest:
- models: Plan, Usage, Limits, Entitlement and gate enums.
- catalog: Static feature catalog with free-tier flags.
- client: Billing reads and plan change writes over the transport.
- resolver: Subscription-driven merge and gating.
"""

from .catalog import FEATURE_CATALOG, get_feature
from .client import BillingClient
from .models import (
    Entitlement,
    EntitlementStatus,
    Feature,
    GateDecision,
    Limits,
    Plan,
    PlanDetails,
    PlanPayload,
    PlanType,
    Usage,
)
from .resolver import EntitlementResolver, map_plan

__all__ = [
    "FEATURE_CATALOG",
    "get_feature",
    "BillingClient",
    "Entitlement",
    "EntitlementStatus",
    "Feature",
    "GateDecision",
    "Limits",
    "Plan",
    "PlanDetails",
    "PlanPayload",
    "PlanType",
    "Usage",
    "EntitlementResolver",
    "map_plan",
]

"""
Entitlement data models.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator


class PlanType(str, Enum):
    """Subscription plan types."""
    FREE = "FREE"
    PRO = "PRO"


class EntitlementStatus(str, Enum):
    """Overall state of the merged entitlement."""
    LOADING = "loading"
    READY = "ready"
    ERROR = "error"
    UNKNOWN = "unknown"


class GateDecision(str, Enum):
    """Outcome of a feature gate check."""
    UNDETERMINED = "undetermined"
    ALLOWED = "allowed"
    DENIED = "denied"


@dataclass(frozen=True)
class Feature:
    """A gated feature."""
    name: str
    free_tier_allowed: bool = False
    description: Optional[str] = None


class PlanDetails(BaseModel):
    """Localized plan display fields keyed by locale."""
    id: Optional[str] = None
    price: Optional[float] = None
    name: Dict[str, str] = Field(default_factory=dict)
    features: Dict[str, List[str]] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True, extra="ignore")


class PlanPayload(BaseModel):
    """Plan snapshot as returned by the billing API. ``type`` is required."""
    type: PlanType
    id: Optional[str] = None
    price: Optional[float] = None
    features: List[str] = Field(default_factory=list)
    details: Optional[PlanDetails] = None

    model_config = ConfigDict(frozen=True, extra="ignore")


class Plan(BaseModel):
    """Plan resolved for display in one locale."""
    type: PlanType
    name: str
    features: Tuple[str, ...] = ()
    id: Optional[str] = None
    price: float = 0.0

    model_config = ConfigDict(frozen=True)


class Usage(BaseModel):
    """Usage counters. Only the server moves them."""
    leads_used: int = Field(alias="leadsUsed", ge=0)
    services_active: int = Field(alias="servicesActive", ge=0)
    bookings_this_month: int = Field(alias="bookingsThisMonth", ge=0)
    rating: float = 0.0

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")


class Limits(BaseModel):
    """Plan limits. A negative limit means unlimited."""
    max_leads: int = Field(alias="maxLeads")
    max_services: int = Field(alias="maxServices")
    max_bookings: int = Field(alias="maxBookings")

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")


class Entitlement(BaseModel):
    """Merged view of plan, usage and limits used to gate features."""
    plan: Optional[Plan] = None
    is_pro: bool = False
    usage: Optional[Usage] = None
    limits: Optional[Limits] = None
    loading: bool = False
    status: EntitlementStatus = EntitlementStatus.UNKNOWN

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def _is_pro_matches_plan(self) -> "Entitlement":
        expected = self.plan is not None and self.plan.type == PlanType.PRO
        if self.is_pro != expected:
            raise ValueError("is_pro must equal plan.type == PRO")
        return self

    @property
    def leads_remaining(self) -> Optional[int]:
        if self.usage is None or self.limits is None or self.limits.max_leads < 0:
            return None
        return max(0, self.limits.max_leads - self.usage.leads_used)

    @property
    def usage_percentage(self) -> Optional[int]:
        if self.usage is None or self.limits is None or self.limits.max_leads <= 0:
            return None
        return round(self.usage.leads_used / self.limits.max_leads * 100)

    @property
    def can_receive_more_leads(self) -> Optional[bool]:
        if self.usage is None or self.limits is None:
            return None
        if self.limits.max_leads < 0:
            return True
        return self.usage.leads_used < self.limits.max_leads

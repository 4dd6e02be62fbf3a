"""
Entitlement resolver: merges plan, usage and limits into one gate.
"""

import asyncio
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

from shared.errors import SyncLayerException
from shared.logging import get_logger
from shared.metrics import MetricsCollector

from ..caching.keys import QueryKeys
from ..caching.models import CacheEntry, EntryStatus, QueryKey
from ..caching.resource_cache import RemoteResourceCache
from .catalog import get_feature
from .client import BillingClient
from .models import (
    Entitlement,
    EntitlementStatus,
    Feature,
    GateDecision,
    Plan,
    PlanPayload,
    PlanType,
)

EntitlementCallback = Callable[[Entitlement], None]

FALLBACK_LOCALE = "en"


def _localized(values: Mapping[str, Any], locale: str) -> Optional[Any]:
    """Pick ``values[locale]``, falling back to the English value."""
    value = values.get(locale)
    if value:
        return value
    value = values.get(FALLBACK_LOCALE)
    if value:
        return value
    return None


def _first_price(*candidates: Optional[float]) -> float:
    for price in candidates:
        if price is not None:
            return price
    return 0.0


def map_plan(payload: PlanPayload, locale: str) -> Plan:
    """
    Resolve display fields of a plan for ``locale``.

    name: details.name[locale] -> details.name["en"] -> plan type string.
    features: details.features[locale] -> details.features["en"] -> flat features.
    id and price: top level, then details.
    """
    details = payload.details
    names = details.name if details else {}
    features = details.features if details else {}

    name = _localized(names, locale) or payload.type.value
    resolved_features = _localized(features, locale)
    if resolved_features is None:
        resolved_features = payload.features

    return Plan(
        type=payload.type,
        name=name,
        features=tuple(resolved_features),
        id=payload.id or (details.id if details else None),
        price=_first_price(payload.price, details.price if details else None),
    )


class EntitlementResolver:
    """
    Subscribes to the plan, usage and limits cache entries and recomputes a
    single Entitlement whenever any of them changes.

    ``loading`` is only true until all three sources have resolved once;
    background revalidation afterwards never brings it back.
    """

    SOURCES: Dict[str, QueryKey] = {
        "plan": QueryKeys.PLAN_CURRENT,
        "usage": QueryKeys.PLAN_USAGE,
        "limits": QueryKeys.PLAN_LIMITS,
    }

    def __init__(
        self,
        cache: RemoteResourceCache,
        billing: Optional[BillingClient],
        *,
        locale: str = FALLBACK_LOCALE,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.cache = cache
        self.billing = billing
        self.locale = locale
        self.metrics = metrics
        self.logger = get_logger("entitlements.resolver")

        self._unsubscribers: List[Callable[[], None]] = []
        self._subscribers: List[EntitlementCallback] = []
        self._last_values: Dict[str, Any] = {}
        self._settled = False
        self._entitlement = Entitlement()

    # Lifecycle

    def start(self) -> None:
        """Mount the three source resources."""
        if self._unsubscribers:
            return
        if self.billing is None:
            self.logger.warning("Billing collaborator unavailable, entitlement unknown")
            self._recompute()
            return

        fetchers = self._fetchers()
        for name, key in self.SOURCES.items():
            self._unsubscribers.append(
                self.cache.mount(key, fetchers[name], self._on_source_change)
            )
        self._recompute()

    def stop(self) -> None:
        """Unmount the source resources. In-flight fetches keep running."""
        unsubscribers, self._unsubscribers = self._unsubscribers, []
        for unsubscribe in unsubscribers:
            unsubscribe()

    async def load(self) -> Entitlement:
        """Ensure all three sources and return the resulting entitlement."""
        if self.billing is None:
            self._recompute()
            return self._entitlement

        fetchers = self._fetchers()
        await asyncio.gather(*(
            self.cache.ensure(key, fetchers[name]) for name, key in self.SOURCES.items()
        ))
        self._recompute()
        return self._entitlement

    # Reads

    def resolve(self) -> Entitlement:
        """Return the current merged entitlement."""
        return self._entitlement

    def subscribe(self, callback: EntitlementCallback) -> Callable[[], None]:
        """Register ``callback`` for entitlement changes."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def set_locale(self, locale: str) -> None:
        """Re-map display fields for ``locale`` without refetching."""
        if locale == self.locale:
            return
        self.locale = locale
        self._recompute()

    # Gating

    def requires_pro(self, feature: Union[str, Feature]) -> GateDecision:
        """
        Decide whether ``feature`` is available.

        While the plan is unresolved the answer is UNDETERMINED, so the UI
        renders a neutral state rather than an upgrade banner.
        """
        if isinstance(feature, str):
            feature = get_feature(feature)

        entitlement = self._entitlement
        if entitlement.loading or entitlement.plan is None:
            decision = GateDecision.UNDETERMINED
        elif entitlement.is_pro or feature.free_tier_allowed:
            decision = GateDecision.ALLOWED
        else:
            decision = GateDecision.DENIED

        if self.metrics:
            self.metrics.increment_counter("entitlement_gate_checks_total", decision=decision.value)
        return decision

    def is_allowed(self, feature: Union[str, Feature]) -> Optional[bool]:
        """Boolean view of ``requires_pro``; None while undetermined."""
        decision = self.requires_pro(feature)
        if decision == GateDecision.UNDETERMINED:
            return None
        return decision == GateDecision.ALLOWED

    def allowed_features(self, features: Sequence[Union[str, Feature]]) -> List[str]:
        """Names of the features in ``features`` that are currently allowed."""
        allowed = []
        for feature in features:
            resolved = get_feature(feature) if isinstance(feature, str) else feature
            if self.requires_pro(resolved) == GateDecision.ALLOWED:
                allowed.append(resolved.name)
        return allowed

    # Writes

    async def upgrade_to_pro(self) -> Any:
        """Upgrade the current user to PRO and invalidate plan resources."""
        billing = self._require_billing()
        result = await self.cache.mutate(billing.upgrade_to_pro, invalidates=[QueryKeys.PLANS])
        self.logger.info("Plan upgraded", plan=PlanType.PRO.value)
        return result

    async def downgrade_to_free(self) -> Any:
        """Downgrade the current user to FREE and invalidate plan resources."""
        billing = self._require_billing()
        result = await self.cache.mutate(billing.downgrade_to_free, invalidates=[QueryKeys.PLANS])
        self.logger.info("Plan downgraded", plan=PlanType.FREE.value)
        return result

    # Internals

    def _fetchers(self) -> Dict[str, Callable]:
        return {
            "plan": self.billing.get_current_plan,
            "usage": self.billing.get_usage,
            "limits": self.billing.get_limits,
        }

    def _require_billing(self) -> BillingClient:
        if self.billing is None:
            raise SyncLayerException("BILLING_UNAVAILABLE", "Billing collaborator is not configured")
        return self.billing

    def _on_source_change(self, entry: CacheEntry) -> None:
        self._recompute()

    def _recompute(self) -> None:
        entries = {name: self.cache.get(key) for name, key in self.SOURCES.items()}
        for name, entry in entries.items():
            if entry.has_value:
                self._last_values[name] = entry.value

        missing = [name for name in self.SOURCES if name not in self._last_values]
        if not missing and not self._settled:
            self._settled = True
            self.logger.info("Entitlement resolved")

        loading = not self._settled and any(
            entries[name].is_fetching or entries[name].status == EntryStatus.LOADING
            for name in missing
        )

        if not missing:
            status = EntitlementStatus.READY
        elif loading:
            status = EntitlementStatus.LOADING
        elif any(entries[name].error is not None for name in missing):
            status = EntitlementStatus.ERROR
        else:
            status = EntitlementStatus.UNKNOWN

        payload = self._last_values.get("plan")
        plan = map_plan(payload, self.locale) if payload is not None else None
        entitlement = Entitlement(
            plan=plan,
            is_pro=plan is not None and plan.type == PlanType.PRO,
            usage=self._last_values.get("usage"),
            limits=self._last_values.get("limits"),
            loading=loading,
            status=status,
        )

        if entitlement == self._entitlement:
            return
        self._entitlement = entitlement
        for callback in list(self._subscribers):
            try:
                callback(entitlement)
            except Exception as e:
                self.logger.error("Entitlement subscriber failed", error=str(e), exc_info=True)

"""
Query keys and per-resource cache windows.
"""

from typing import Dict, Mapping, Optional

from .models import QueryKey, ResourceOptions


class QueryKeys:
    """Canonical query keys. Tuple prefixes name resource families."""

    PROFILE: QueryKey = ("profile",)
    SERVICES: QueryKey = ("services",)
    CATEGORIES: QueryKey = ("categories",)
    BOOKINGS: QueryKey = ("bookings",)
    REVIEWS: QueryKey = ("reviews",)
    PAYMENT_METHODS: QueryKey = ("payment-methods",)
    TRANSACTIONS: QueryKey = ("transactions",)
    CITIES: QueryKey = ("locations", "cities")

    PLANS: QueryKey = ("plans",)
    PLAN_CURRENT: QueryKey = ("plans", "current")
    PLAN_USAGE: QueryKey = ("plans", "usage")
    PLAN_LIMITS: QueryKey = ("plans", "limits")
    PLAN_CATALOG: QueryKey = ("plans", "catalog")

    @staticmethod
    def service(service_id: str) -> QueryKey:
        return ("services", str(service_id))

    @staticmethod
    def user_services(user_id: str) -> QueryKey:
        return ("services", "user", str(user_id))

    @staticmethod
    def booking(booking_id: str) -> QueryKey:
        return ("bookings", str(booking_id))

    @staticmethod
    def user_bookings(user_id: str) -> QueryKey:
        return ("bookings", "user", str(user_id))

    @staticmethod
    def service_reviews(service_id: str) -> QueryKey:
        return ("reviews", "service", str(service_id))

    @staticmethod
    def user_reviews(user_id: str) -> QueryKey:
        return ("reviews", "user", str(user_id))

    @staticmethod
    def search(query: str) -> QueryKey:
        return ("search", query)


# City lists and the plan catalog are near-static
CITIES_STALE_TIME = 30 * 60
PLAN_CATALOG_STALE_TIME = 10 * 60

RESOURCE_OPTIONS: Dict[QueryKey, ResourceOptions] = {
    QueryKeys.CITIES: ResourceOptions(stale_time=CITIES_STALE_TIME),
    QueryKeys.PLAN_CATALOG: ResourceOptions(stale_time=PLAN_CATALOG_STALE_TIME),
}


def key_matches(key: QueryKey, prefix: QueryKey) -> bool:
    """True when ``prefix`` is a leading slice of ``key``."""
    return tuple(key[: len(prefix)]) == tuple(prefix)


def options_for(key: QueryKey, table: Optional[Mapping[QueryKey, ResourceOptions]] = None) -> ResourceOptions:
    """Return the options of the longest registered prefix of ``key``."""
    table = RESOURCE_OPTIONS if table is None else table
    best: Optional[QueryKey] = None
    for prefix in table:
        if key_matches(key, prefix) and (best is None or len(prefix) > len(best)):
            best = prefix
    return table[best] if best is not None else ResourceOptions()

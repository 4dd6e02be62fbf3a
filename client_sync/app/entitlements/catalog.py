"""Static catalog of gated features."""

from typing import Dict

from .models import Feature


FEATURE_CATALOG: Dict[str, Feature] = {
    feature.name: feature
    for feature in (
        # Available on every plan
        Feature("earnings", free_tier_allowed=True, description="Earnings dashboard"),
        Feature("bookings", free_tier_allowed=True, description="Booking management"),
        Feature("reviews", free_tier_allowed=True, description="Customer reviews"),
        Feature("basic_analytics", free_tier_allowed=True, description="Basic analytics"),
        # PRO only
        Feature("analytics", description="Advanced analytics and conversion tracking"),
        Feature("chat_unlimited", description="Unlimited chat"),
        Feature("verified_badge", description="Verified professional badge"),
        Feature("top_search_priority", description="Top search priority"),
        Feature("multiple_categories", description="Multiple service categories"),
        Feature("priority_support", description="Priority support"),
        Feature("boost_ads", description="Boost/ADS system access"),
        Feature("auto_scheduling", description="Automatic scheduling"),
        Feature("response_templates", description="Custom response templates"),
        Feature("conversation_backup", description="Full conversation backup"),
        Feature("photo_gallery_unlimited", description="Unlimited photo gallery"),
        Feature("video_presentation", description="Video presentation"),
        Feature("weekly_reports", description="Weekly performance reports"),
        Feature("google_calendar", description="Google Calendar sync"),
    )
}


def get_feature(name: str) -> Feature:
    """Return a feature definition, raising if unknown."""

    try:
        return FEATURE_CATALOG[name]
    except KeyError as exc:
        raise KeyError(f"Unknown feature: {name}") from exc

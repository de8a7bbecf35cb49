"""
Subscription tiers and feature gating.

Tiers:
- FREE: stock photo backgrounds only
- PRO: AI backgrounds via Seedream ($9/mo)
- PREMIUM: AI backgrounds via the Gemini image model ($19/mo)
"""

import logging
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class SubscriptionTier(str, Enum):
    FREE = "free"
    PRO = "pro"
    PREMIUM = "premium"


class TierLimits(BaseModel):
    itineraries_per_month: int
    stories_per_week: int
    ai_images_per_month: int


class TierFeatures(BaseModel):
    ai_backgrounds: bool
    image_provider: str  # none, seedream, gemini
    email_export: bool
    pdf_export: str  # watermarked, clean, branded


class TierConfig(BaseModel):
    tier: SubscriptionTier
    name: str
    price: int  # monthly in USD
    limits: TierLimits
    features: TierFeatures


TIER_CONFIGS: Dict[SubscriptionTier, TierConfig] = {
    SubscriptionTier.FREE: TierConfig(
        tier=SubscriptionTier.FREE,
        name="Free",
        price=0,
        limits=TierLimits(itineraries_per_month=3, stories_per_week=1, ai_images_per_month=0),
        features=TierFeatures(ai_backgrounds=False, image_provider="none", email_export=False, pdf_export="watermarked"),
    ),
    SubscriptionTier.PRO: TierConfig(
        tier=SubscriptionTier.PRO,
        name="Pro",
        price=9,
        limits=TierLimits(itineraries_per_month=999, stories_per_week=999, ai_images_per_month=50),
        features=TierFeatures(ai_backgrounds=True, image_provider="seedream", email_export=True, pdf_export="clean"),
    ),
    SubscriptionTier.PREMIUM: TierConfig(
        tier=SubscriptionTier.PREMIUM,
        name="Premium",
        price=19,
        limits=TierLimits(itineraries_per_month=999, stories_per_week=999, ai_images_per_month=200),
        features=TierFeatures(ai_backgrounds=True, image_provider="gemini", email_export=True, pdf_export="branded"),
    ),
}

TIER_ORDER = [SubscriptionTier.FREE, SubscriptionTier.PRO, SubscriptionTier.PREMIUM]


def parse_tier(value: Any) -> SubscriptionTier:
    """Map a stored tier value onto a SubscriptionTier, defaulting to free."""
    if isinstance(value, SubscriptionTier):
        return value
    if isinstance(value, str):
        try:
            return SubscriptionTier(value.strip().lower())
        except ValueError:
            logger.warning(f"Unknown subscription tier '{value}', treating as free")
    return SubscriptionTier.FREE


def get_tier_config(tier: SubscriptionTier) -> TierConfig:
    return TIER_CONFIGS[tier]


def has_feature(tier: SubscriptionTier, feature: str) -> Any:
    return getattr(TIER_CONFIGS[tier].features, feature)


def compare_tiers(tier1: SubscriptionTier, tier2: SubscriptionTier) -> int:
    """Positive if tier1 > tier2, negative if tier1 < tier2, 0 if equal."""
    return TIER_ORDER.index(tier1) - TIER_ORDER.index(tier2)


def needs_upgrade(current_tier: SubscriptionTier, required_tier: SubscriptionTier) -> bool:
    return compare_tiers(current_tier, required_tier) < 0


class EntitlementGate:
    """Decides whether a request may use the paid AI image providers."""

    def can_use_ai(self, tier: SubscriptionTier, prefer_ai: bool) -> bool:
        if not prefer_ai:
            return False
        return bool(has_feature(tier, "ai_backgrounds"))

    def preferred_image_provider(self, tier: SubscriptionTier) -> Optional[str]:
        provider = has_feature(tier, "image_provider")
        return None if provider == "none" else provider

    def describe(self, tier: SubscriptionTier) -> Dict[str, Any]:
        config = get_tier_config(tier)
        return {
            "tier": tier.value,
            "features": config.features.model_dump(),
            "limits": config.limits.model_dump(),
        }

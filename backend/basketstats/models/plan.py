"""
Subscription plan catalog model.

WHY: Plans are the fixed set of tiers a user can pay for. Each plan carries
its price, its billing duration and the feature entitlement map that the
entitlement checks evaluate.

ARCHITECTURE:
- Identity is the plan type (one row per tier, unique)
- Prices are integer minor-currency units
- duration_days == 0 means the plan never expires
- features is a flexible key -> value map (bool flags and numeric limits,
  where None or -1 means unlimited)
"""

import enum
from typing import Any, Dict, Optional

from sqlalchemy import Column, Integer, String, Enum, Boolean, Text, JSON

from basketstats.models.base import Base, TimestampMixin, PrimaryKeyMixin


class PlanType(str, enum.Enum):
    """
    Available subscription tiers.

    Plans:
    - FREE: perpetual, limited features
    - BASIC: entry paid tier
    - PREMIUM: most features, priority listing
    - PROFESSIONAL: unlimited, custom branding and API access
    """

    FREE = "FREE"
    BASIC = "BASIC"
    PREMIUM = "PREMIUM"
    PROFESSIONAL = "PROFESSIONAL"


# Seed data for the catalog
# WHY: initialize_default_plans() upserts these so every environment
# starts with the same tiers. None / -1 limits are unlimited.
DEFAULT_PLANS: Dict[PlanType, Dict[str, Any]] = {
    PlanType.FREE: {
        "name": "Gratuit",
        "description": "Plan gratuit avec fonctionnalités de base",
        "price": 0,
        "duration_days": 0,
        "features": {
            "maxClubs": 1,
            "maxPlayers": 5,
            "posts": 3,
            "canCreateEvents": False,
            "canAccessAdvancedStats": False,
            "canCreateContracts": False,
            "priority": False,
        },
    },
    PlanType.BASIC: {
        "name": "Basique",
        "description": "Plan basique pour les petits clubs",
        "price": 100,
        "duration_days": 30,
        "features": {
            "maxClubs": 3,
            "maxPlayers": 50,
            "posts": 20,
            "canCreateEvents": True,
            "canAccessAdvancedStats": True,
            "canCreateContracts": False,
            "priority": False,
        },
    },
    PlanType.PREMIUM: {
        "name": "Premium",
        "description": "Plan premium pour les clubs établis",
        "price": 500,
        "duration_days": 30,
        "features": {
            "maxClubs": 10,
            "maxPlayers": 200,
            "posts": 100,
            "canCreateEvents": True,
            "canAccessAdvancedStats": True,
            "canCreateContracts": True,
            "priority": True,
        },
    },
    PlanType.PROFESSIONAL: {
        "name": "Professionnel",
        "description": "Plan professionnel pour les organisations",
        "price": 1000,
        "duration_days": 30,
        "features": {
            "maxClubs": None,
            "maxPlayers": None,
            "posts": -1,
            "canCreateEvents": True,
            "canAccessAdvancedStats": True,
            "canCreateContracts": True,
            "priority": True,
            "customBranding": True,
            "apiAccess": True,
        },
    },
}


class Plan(Base, PrimaryKeyMixin, TimestampMixin):
    """
    A subscription tier and its entitlements.

    WHY: Subscriptions reference plans by foreign key and entitlement checks
    read the plan live, so an administrative edit applies to existing
    subscribers immediately.
    """

    __tablename__ = "subscription_plans"

    type = Column(
        Enum(PlanType),
        nullable=False,
        unique=True,
        index=True,
        doc="Tier identity, one row per type",
    )
    name = Column(String(100), nullable=False, doc="Display name")
    description = Column(Text, nullable=True)
    price = Column(
        Integer,
        nullable=False,
        default=0,
        doc="Price in minor currency units",
    )
    currency = Column(String(3), nullable=False, default="XOF")
    duration_days = Column(
        Integer,
        nullable=False,
        default=30,
        doc="Billing period in days, 0 = perpetual",
    )
    features = Column(JSON, nullable=False, default=dict)
    is_active = Column(Boolean, nullable=False, default=True, index=True)

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Plan(id={self.id}, type={self.type.value}, price={self.price})>"

    @property
    def is_free(self) -> bool:
        return self.price == 0

    @property
    def is_perpetual(self) -> bool:
        return not self.duration_days

    def feature_value(self, feature: str) -> Optional[Any]:
        """Raw value of a feature entry, None when absent."""
        return (self.features or {}).get(feature)

"""Static catalog definitions for subscription tiers and seat pricing."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Mapping, Tuple

from .models import BillingInterval, SubscriptionTier

# Additional seats are billed per month in pence on every paid tier.
PER_SEAT_PRICE = 1000

# Annual billing charges ten months for twelve.
ANNUAL_MONTHS_CHARGED = 10


@dataclass(frozen=True)
class SeatLimits:
    """Seat allocation bounds for a tier."""

    included: int
    min: int
    max: int


@dataclass(frozen=True)
class TierDefinition:
    """Describes a subscription tier, its seat bounds and its list prices."""

    key: SubscriptionTier
    display_name: str
    seats: SeatLimits
    price_monthly: int
    price_annual: int
    features: Tuple[str, ...] = ()

    def price_for(self, interval: BillingInterval) -> int:
        if interval == BillingInterval.ANNUAL:
            return self.price_annual
        return self.price_monthly

    @property
    def is_paid(self) -> bool:
        return self.key != SubscriptionTier.FREE


DEFAULT_TIERS: Dict[SubscriptionTier, TierDefinition] = {
    SubscriptionTier.FREE: TierDefinition(
        key=SubscriptionTier.FREE,
        display_name="Free",
        seats=SeatLimits(included=1, min=1, max=1),
        price_monthly=0,
        price_annual=0,
        features=("features:basic",),
    ),
    SubscriptionTier.STARTER: TierDefinition(
        key=SubscriptionTier.STARTER,
        display_name="Starter",
        seats=SeatLimits(included=5, min=5, max=19),
        price_monthly=5000,
        price_annual=50000,
        features=(
            "features:basic",
            "features:analytics",
            "features:api_limited",
            "features:email_support",
        ),
    ),
    SubscriptionTier.PROFESSIONAL: TierDefinition(
        key=SubscriptionTier.PROFESSIONAL,
        display_name="Professional",
        seats=SeatLimits(included=20, min=20, max=40),
        price_monthly=25000,
        price_annual=250000,
        features=(
            "features:basic",
            "features:analytics",
            "features:api_unlimited",
            "features:priority_support",
            "features:sla",
            "features:advanced_reporting",
        ),
    ),
}


@dataclass(frozen=True)
class TierCatalog:
    """Injectable tier table.

    Services receive a catalog at construction time so tests can vary
    seat limits without touching module state.
    """

    tiers: Mapping[SubscriptionTier, TierDefinition] = field(
        default_factory=lambda: dict(DEFAULT_TIERS)
    )
    per_seat_price: int = PER_SEAT_PRICE

    def get(self, tier: SubscriptionTier) -> TierDefinition:
        """Return a tier definition, raising if unsupported."""

        try:
            return self.tiers[tier]
        except KeyError as exc:
            raise KeyError(f"Unknown subscription tier: {tier}") from exc

    def with_tier(self, definition: TierDefinition) -> "TierCatalog":
        tiers = dict(self.tiers)
        tiers[definition.key] = definition
        return TierCatalog(tiers=tiers, per_seat_price=self.per_seat_price)

    def subscription_cost(
        self,
        tier: SubscriptionTier,
        interval: BillingInterval,
        total_seats: int,
    ) -> int:
        """Return the recurring charge in minor units for a seat count."""

        if tier == SubscriptionTier.FREE:
            return 0
        definition = self.get(tier)
        additional_seats = max(0, total_seats - definition.seats.included)
        multiplier = ANNUAL_MONTHS_CHARGED if interval == BillingInterval.ANNUAL else 1
        return definition.price_for(interval) + additional_seats * self.per_seat_price * multiplier


def can_access_tier(user_tier: SubscriptionTier, required_tier: SubscriptionTier) -> bool:
    """Return whether ``user_tier`` ranks at or above ``required_tier``."""

    return user_tier.rank >= required_tier.rank


DEFAULT_CATALOG = TierCatalog()


__all__ = [
    "DEFAULT_CATALOG",
    "DEFAULT_TIERS",
    "PER_SEAT_PRICE",
    "SeatLimits",
    "TierCatalog",
    "TierDefinition",
    "can_access_tier",
]

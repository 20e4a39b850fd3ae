"""Customer loyalty tiers.

A customer's tier is never stored: it is derived from the number of completed
rentals every time it is needed, so it advances automatically as contracts
complete.  The tier table is an immutable :class:`TierPolicy` that callers may
inject; :data:`DEFAULT_TIER_POLICY` is the built-in table.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, Optional

from services.errors import InvalidInputError

logger = logging.getLogger(__name__)

TIER_NOT_APPLICABLE = "N/A"


@dataclass(frozen=True)
class TierDefinition:
    tier_id: str
    name: str
    min_rentals: int
    max_rentals: Optional[int]  # None = unbounded
    overage_rate: Decimal
    discount_pct: Decimal
    distance_bonus_per_day: int = 0
    benefits: tuple[str, ...] = field(default_factory=tuple)

    def contains(self, rentals: int) -> bool:
        if rentals < self.min_rentals:
            return False
        return self.max_rentals is None or rentals <= self.max_rentals

    def to_dict(self) -> dict:
        return {
            "tier": self.tier_id,
            "name": self.name,
            "min_rentals": self.min_rentals,
            "max_rentals": self.max_rentals,
            "overage_rate": float(self.overage_rate),
            "discount_percentage": float(self.discount_pct),
            "km_bonus": self.distance_bonus_per_day,
            "benefits": list(self.benefits),
        }


class TierPolicyError(ValueError):
    """Raised when a tier table does not partition ``[0, inf)``."""


@dataclass(frozen=True)
class TierPolicy:
    """Ordered, validated tier table."""

    tiers: tuple[TierDefinition, ...]

    def __post_init__(self):
        ordered = tuple(sorted(self.tiers, key=lambda t: t.min_rentals))
        object.__setattr__(self, "tiers", ordered)
        problems = self.problems()
        if problems:
            raise TierPolicyError("; ".join(problems))

    def problems(self) -> list[str]:
        problems: list[str] = []
        if not self.tiers:
            return ["tier table is empty"]
        if self.tiers[0].min_rentals != 0:
            problems.append(f"first tier starts at {self.tiers[0].min_rentals}, not 0")
        for current, following in zip(self.tiers, self.tiers[1:]):
            if current.max_rentals is None:
                problems.append(f"tier {current.tier_id} is unbounded but not last")
                continue
            if current.max_rentals < current.min_rentals:
                problems.append(f"tier {current.tier_id} has max below min")
            if following.min_rentals != current.max_rentals + 1:
                problems.append(
                    f"gap or overlap between {current.tier_id} and {following.tier_id}"
                )
        if self.tiers[-1].max_rentals is not None:
            problems.append(f"last tier {self.tiers[-1].tier_id} must be unbounded")
        return problems

    @property
    def base_tier(self) -> TierDefinition:
        return self.tiers[0]

    def next_tier(self, tier: TierDefinition) -> Optional[TierDefinition]:
        index = self.tiers.index(tier)
        if index + 1 < len(self.tiers):
            return self.tiers[index + 1]
        return None

    @classmethod
    def from_config(cls, raw: Iterable[dict]) -> "TierPolicy":
        """Build a policy from a list of mappings (``config.yaml`` ``tiers:``)."""
        tiers = []
        for entry in raw:
            max_rentals = entry.get("max_rentals")
            tiers.append(
                TierDefinition(
                    tier_id=str(entry["tier"]).upper(),
                    name=entry.get("name") or str(entry["tier"]).title(),
                    min_rentals=int(entry["min_rentals"]),
                    max_rentals=None if max_rentals is None else int(max_rentals),
                    overage_rate=Decimal(str(entry["overage_rate"])),
                    discount_pct=Decimal(str(entry.get("discount_percentage", 0))),
                    distance_bonus_per_day=int(entry.get("km_bonus", 0)),
                    benefits=tuple(entry.get("benefits") or ()),
                )
            )
        return cls(tuple(tiers))


DEFAULT_TIER_POLICY = TierPolicy(
    (
        TierDefinition(
            tier_id="NEW",
            name="New Customer",
            min_rentals=0,
            max_rentals=0,
            overage_rate=Decimal("20"),
            discount_pct=Decimal("0"),
        ),
        TierDefinition(
            tier_id="BRONZE",
            name="Bronze",
            min_rentals=1,
            max_rentals=4,
            overage_rate=Decimal("18"),
            discount_pct=Decimal("5"),
            benefits=("5% discount on overage charges", "Priority customer support"),
        ),
        TierDefinition(
            tier_id="SILVER",
            name="Silver",
            min_rentals=5,
            max_rentals=9,
            overage_rate=Decimal("15"),
            discount_pct=Decimal("10"),
            distance_bonus_per_day=50,
            benefits=(
                "10% discount on overage charges",
                "Free vehicle upgrade (subject to availability)",
                "Priority booking",
                "Extended daily km limit (+50km)",
            ),
        ),
        TierDefinition(
            tier_id="GOLD",
            name="Gold",
            min_rentals=10,
            max_rentals=19,
            overage_rate=Decimal("12"),
            discount_pct=Decimal("15"),
            distance_bonus_per_day=100,
            benefits=(
                "15% discount on overage charges",
                "Free premium vehicle upgrade",
                "Priority booking & support",
                "Extended daily km limit (+100km)",
                "Waived deposit on select vehicles",
            ),
        ),
        TierDefinition(
            tier_id="PLATINUM",
            name="Platinum",
            min_rentals=20,
            max_rentals=None,
            overage_rate=Decimal("10"),
            discount_pct=Decimal("20"),
            distance_bonus_per_day=150,
            benefits=(
                "20% discount on overage charges",
                "Complimentary luxury upgrades",
                "VIP priority service",
                "Extended daily km limit (+150km)",
                "Free insurance upgrades",
                "Dedicated account manager",
            ),
        ),
    )
)


def _check_rentals(completed_rentals) -> int:
    if isinstance(completed_rentals, bool) or not isinstance(completed_rentals, int):
        raise InvalidInputError.for_field("completed_rentals", "must be an integer")
    if completed_rentals < 0:
        raise InvalidInputError.for_field("completed_rentals", "must not be negative")
    return completed_rentals


def resolve_tier(completed_rentals: int, policy: TierPolicy = DEFAULT_TIER_POLICY) -> TierDefinition:
    """Return the tier whose range contains *completed_rentals*."""
    rentals = _check_rentals(completed_rentals)
    for tier in policy.tiers:
        if tier.contains(rentals):
            return tier
    # Unreachable for a validated policy.
    logger.error("No tier covers %s rentals; falling back to %s", rentals, policy.base_tier.tier_id)
    return policy.base_tier


def tier_progress(completed_rentals: int, policy: TierPolicy = DEFAULT_TIER_POLICY) -> dict:
    """How far the customer is from the next tier."""
    current = resolve_tier(completed_rentals, policy)
    nxt = policy.next_tier(current)
    if nxt is None:
        return {
            "current_tier": current.tier_id,
            "current_tier_name": current.name,
            "current_rentals": completed_rentals,
            "next_tier": None,
            "rentals_to_next_tier": 0,
            "progress_percentage": 100.0,
            "is_max_tier": True,
        }
    return {
        "current_tier": current.tier_id,
        "current_tier_name": current.name,
        "current_rentals": completed_rentals,
        "next_tier": nxt.tier_id,
        "next_tier_name": nxt.name,
        "rentals_to_next_tier": nxt.min_rentals - completed_rentals,
        "progress_percentage": round(min(100.0, completed_rentals / nxt.min_rentals * 100), 2),
        "is_max_tier": False,
    }


def customer_tier_info(customer, policy: TierPolicy = DEFAULT_TIER_POLICY) -> dict:
    """Tier, benefits, progress and pricing flag for a customer row."""
    rentals = customer.total_rentals or 0
    tier = resolve_tier(rentals, policy)
    info = tier.to_dict()
    info.update(
        {
            "customer_id": customer.id,
            "customer_name": customer.full_name,
            "total_rentals": rentals,
            "lifetime_value": float(customer.lifetime_value or 0),
            "apply_tier_discount": bool(customer.apply_tier_discount),
            "progress": tier_progress(rentals, policy),
        }
    )
    return info

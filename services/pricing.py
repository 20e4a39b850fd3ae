"""Distance allowance, overage and contract total calculations.

All functions here are pure: no database access, no request context.
Monetary values are ``Decimal`` rounded to cents (ROUND_HALF_UP).
"""

from __future__ import annotations

import datetime
import logging
from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Optional

from services.errors import InvalidInputError
from services.tiers import DEFAULT_TIER_POLICY, TIER_NOT_APPLICABLE, TierPolicy, resolve_tier
from utils import to_decimal, to_money

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")


@dataclass(frozen=True)
class AllowanceBreakdown:
    base_daily_limit: int
    bonus_per_day: int
    total_daily_limit: int
    total_days: int
    total_allowed: int
    tier_id: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class OverageBreakdown:
    overage_amount: int
    rate_used: Decimal
    base_charge: Decimal
    discount_pct: Decimal
    discount_amount: Decimal
    final_charge: Decimal
    tier_id: str

    @property
    def has_overage(self) -> bool:
        return self.overage_amount > 0

    def to_dict(self) -> dict:
        return {
            "overage_amount": self.overage_amount,
            "rate_used": float(self.rate_used),
            "base_charge": float(self.base_charge),
            "discount_pct": float(self.discount_pct),
            "discount_amount": float(self.discount_amount),
            "final_charge": float(self.final_charge),
            "tier_id": self.tier_id,
        }


@dataclass(frozen=True)
class ContractTotals:
    total_days: int
    base_amount: Decimal
    subtotal: Decimal
    tax_amount: Decimal
    total_amount: Decimal


NO_OVERAGE = OverageBreakdown(
    overage_amount=0,
    rate_used=ZERO,
    base_charge=ZERO,
    discount_pct=ZERO,
    discount_amount=ZERO,
    final_charge=ZERO,
    tier_id=TIER_NOT_APPLICABLE,
)


def _non_negative_int(name: str, value) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidInputError.for_field(name, "must be an integer")
    if value < 0:
        raise InvalidInputError.for_field(name, "must not be negative")
    return value


def compute_allowance(
    base_daily_limit: int,
    total_days: int,
    completed_rentals: int,
    apply_bonus: bool,
    policy: TierPolicy = DEFAULT_TIER_POLICY,
) -> AllowanceBreakdown:
    """Total distance allowed over the rental, including the tier bonus."""
    _non_negative_int("base_daily_limit", base_daily_limit)
    _non_negative_int("total_days", total_days)
    tier = resolve_tier(completed_rentals, policy)
    bonus = tier.distance_bonus_per_day if apply_bonus else 0
    daily = base_daily_limit + bonus
    return AllowanceBreakdown(
        base_daily_limit=base_daily_limit,
        bonus_per_day=bonus,
        total_daily_limit=daily,
        total_days=total_days,
        total_allowed=daily * total_days,
        tier_id=tier.tier_id,
    )


def compute_overage(
    actual_distance: int,
    allowed_distance: int,
    completed_rentals: int,
    apply_discount: bool,
    explicit_rate=None,
    policy: TierPolicy = DEFAULT_TIER_POLICY,
) -> OverageBreakdown:
    """Charge for the distance driven beyond the allowance.

    Customers who opted out of tier pricing are charged on the base tier's
    terms: its rate and no discount.
    """
    _non_negative_int("actual_distance", actual_distance)
    _non_negative_int("allowed_distance", allowed_distance)

    overage = max(0, actual_distance - allowed_distance)
    if overage == 0:
        return NO_OVERAGE

    tier = resolve_tier(completed_rentals, policy) if apply_discount else policy.base_tier
    if explicit_rate is not None:
        rate = to_decimal(explicit_rate, default=None)
        if rate is None or rate < 0:
            raise InvalidInputError.for_field("overage_rate", "must be a non-negative number")
    else:
        rate = tier.overage_rate

    discount_pct = tier.discount_pct if apply_discount else ZERO
    base_charge = to_money(Decimal(overage) * rate)
    discount_amount = to_money(base_charge * discount_pct / HUNDRED)
    return OverageBreakdown(
        overage_amount=overage,
        rate_used=rate,
        base_charge=base_charge,
        discount_pct=discount_pct,
        discount_amount=discount_amount,
        final_charge=base_charge - discount_amount,
        tier_id=tier.tier_id,
    )


def rental_days(start: datetime.date, end: datetime.date) -> int:
    """Number of billable days; both calendar ends count."""
    if start is None or end is None:
        raise InvalidInputError.for_field("end_date", "start and end dates are required")
    if end < start:
        raise InvalidInputError.for_field("end_date", "must not be before start date")
    return (end - start).days + 1


def calculate_contract_totals(
    start: datetime.date,
    end: datetime.date,
    daily_rate,
    additional_charges=ZERO,
    discount_amount=ZERO,
    tax_rate=Decimal("0.19"),
) -> ContractTotals:
    days = rental_days(start, end)
    rate = to_money(daily_rate)
    if rate < 0:
        raise InvalidInputError.for_field("daily_rate", "must not be negative")
    base = to_money(rate * days)
    subtotal = to_money(base + to_money(additional_charges) - to_money(discount_amount))
    tax = to_money(subtotal * to_decimal(tax_rate))
    return ContractTotals(
        total_days=days,
        base_amount=base,
        subtotal=subtotal,
        tax_amount=tax,
        total_amount=subtotal + tax,
    )


def recompute_amounts(base_amount, additional_charges, discount_amount, tax_rate) -> tuple[Decimal, Decimal]:
    """(tax, total) for already-known base and adjustments."""
    subtotal = to_money(to_money(base_amount) + to_money(additional_charges) - to_money(discount_amount))
    tax = to_money(subtotal * to_decimal(tax_rate))
    return tax, subtotal + tax


def estimate_for_distance(
    actual_distance: int,
    base_daily_limit: int,
    total_days: int,
    completed_rentals: int,
    apply_tier_pricing: bool,
    explicit_rate: Optional[Decimal] = None,
    policy: TierPolicy = DEFAULT_TIER_POLICY,
) -> tuple[AllowanceBreakdown, OverageBreakdown]:
    """Allowance followed by overage, the pair every completion needs."""
    allowance = compute_allowance(
        base_daily_limit, total_days, completed_rentals, apply_tier_pricing, policy
    )
    overage = compute_overage(
        actual_distance,
        allowance.total_allowed,
        completed_rentals,
        apply_tier_pricing,
        explicit_rate,
        policy,
    )
    if overage.has_overage:
        logger.info(
            "Overage assessed: %s km at %s (tier %s, discount %s%%)",
            overage.overage_amount, overage.rate_used, overage.tier_id, overage.discount_pct,
        )
    return allowance, overage

"""Commission rate resolution.

Pure functions over plain value objects: no database, no Flask. The
calculation engine feeds them the vendor's settings, plan, trailing volume
and performance score.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable, Optional, Sequence, Tuple

from config.commission_config import (
    DEFAULT_PERFORMANCE_POLICY,
    PLAN_RECOMMENDATION_THRESHOLDS,
    VENDOR_PLANS,
    PerformancePolicy,
    VendorPlan,
    get_plan,
)
from services.base import ValidationException

CENTS = Decimal("0.01")
ZERO = Decimal("0")
ONE = Decimal("1")


@dataclass(frozen=True)
class TierRate:
    threshold: Decimal
    rate: Decimal


@dataclass(frozen=True)
class CommissionPolicy:
    """Vendor-specific rate configuration: a default rate plus optional volume tiers."""

    default_rate: Decimal
    tiers: Tuple[TierRate, ...] = ()

    @classmethod
    def from_settings(cls, settings) -> "CommissionPolicy":
        return cls(
            default_rate=normalize_rate(settings.default_commission_rate, field="default_commission_rate"),
            tiers=normalize_tier_table(settings.tiered_rates or ()),
        )


@dataclass(frozen=True)
class RateResolution:
    base_commission_rate: Decimal
    transaction_fee: Decimal
    performance_bonus: Decimal


@dataclass
class VendorPerformanceMetrics:
    """Trailing-window figures used for the performance score and plan advice."""

    total_sales: Decimal = ZERO
    order_count: int = 0
    completed_orders: int = 0
    average_rating: Optional[Decimal] = None
    fulfillment_rate: Decimal = ZERO
    return_rate: Decimal = ZERO
    active_products: int = 0
    total_products: int = 0


@dataclass
class PlanRecommendation:
    current_plan: str
    recommended_plan: str
    reasoning: str
    potential_savings: Decimal

    @property
    def should_switch(self) -> bool:
        return self.recommended_plan != self.current_plan


def quantize_money(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def to_decimal(value: Any, field: str = "amount") -> Decimal:
    """Parse ``value`` as a finite Decimal or raise ``ValidationException``."""
    if isinstance(value, bool):
        raise ValidationException(f"{field} must be a number", details={field: value})
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationException(f"{field} must be a number", details={field: value})
    if not result.is_finite():
        raise ValidationException(f"{field} must be finite", details={field: str(value)})
    return result


def normalize_rate(value: Any, field: str = "rate") -> Decimal:
    rate = to_decimal(value, field=field)
    if rate < ZERO or rate > ONE:
        raise ValidationException(f"{field} must be between 0 and 1", details={field: str(rate)})
    return rate


def normalize_tier_table(tiers: Iterable[Any]) -> Tuple[TierRate, ...]:
    """Validate a tier table and return it as ``TierRate`` objects.

    Accepts ``TierRate`` instances, ``{"threshold", "rate"}`` mappings or
    ``(threshold, rate)`` pairs. Thresholds must be non-negative and strictly
    ascending; rates must lie in [0, 1].
    """
    normalized = []
    previous = None
    for index, tier in enumerate(tiers):
        if isinstance(tier, TierRate):
            raw_threshold, raw_rate = tier.threshold, tier.rate
        elif isinstance(tier, dict):
            if "threshold" not in tier or "rate" not in tier:
                raise ValidationException(
                    "Each tier needs a threshold and a rate", details={"tier": index}
                )
            raw_threshold, raw_rate = tier["threshold"], tier["rate"]
        elif isinstance(tier, (list, tuple)) and len(tier) == 2:
            raw_threshold, raw_rate = tier
        else:
            raise ValidationException("Malformed tier entry", details={"tier": index})

        threshold = to_decimal(raw_threshold, field="threshold")
        if threshold < ZERO:
            raise ValidationException(
                "Tier thresholds must not be negative", details={"tier": index, "threshold": str(threshold)}
            )
        if previous is not None and threshold <= previous:
            raise ValidationException(
                "Tier thresholds must be strictly ascending",
                details={"tier": index, "threshold": str(threshold), "previous": str(previous)},
            )
        normalized.append(TierRate(threshold=threshold, rate=normalize_rate(raw_rate, field="rate")))
        previous = threshold
    return tuple(normalized)


def build_performance_policy(steps: Sequence[Tuple[Any, Any]], floor_rate: Any) -> PerformancePolicy:
    """Build a ``PerformancePolicy`` from raw values, rejecting malformed tables."""
    try:
        return PerformancePolicy(
            steps=tuple(
                (to_decimal(score, field="min_score"), to_decimal(rate, field="bonus_rate"))
                for score, rate in steps
            ),
            floor_rate=to_decimal(floor_rate, field="floor_rate"),
        )
    except (ValueError, TypeError) as exc:
        raise ValidationException(f"Invalid performance policy: {exc}")


def resolve_base_rate(policy: CommissionPolicy, trailing_volume: Decimal) -> Decimal:
    """Rate of the last tier whose threshold is <= volume, else the default rate."""
    rate = policy.default_rate
    for tier in policy.tiers:
        if tier.threshold <= trailing_volume:
            rate = tier.rate
        else:
            break
    return rate


def clamp_to_plan(rate: Decimal, plan: VendorPlan) -> Decimal:
    return min(rate, plan.max_commission_rate)


def compute_transaction_fee(plan: VendorPlan, sale_amount: Decimal) -> Decimal:
    if plan.has_flat_fee:
        return quantize_money(plan.transaction_fee)
    return quantize_money(plan.transaction_fee_rate * sale_amount)


def compute_performance_bonus(
    sale_amount: Decimal,
    performance_score: Optional[Decimal],
    performance_policy: PerformancePolicy = DEFAULT_PERFORMANCE_POLICY,
) -> Decimal:
    if performance_score is None:
        return quantize_money(ZERO)
    score = to_decimal(performance_score, field="performance_score")
    if score < ZERO or score > ONE:
        raise ValidationException(
            "performance_score must be between 0 and 1", details={"performance_score": str(score)}
        )
    return quantize_money(performance_policy.bonus_rate(score) * sale_amount)


def resolve_rates(
    sale_amount: Any,
    trailing_volume: Any,
    policy: CommissionPolicy,
    plan: VendorPlan,
    performance_score: Optional[Decimal] = None,
    performance_policy: PerformancePolicy = DEFAULT_PERFORMANCE_POLICY,
) -> RateResolution:
    """Resolve rate, fee and bonus for one sale.

    ``performance_score`` is ``None`` for vendors without a scored history;
    they get neither bonus nor penalty.
    """
    amount = to_decimal(sale_amount, field="sale_amount")
    if amount <= ZERO:
        raise ValidationException(
            "Commissions are only computed for positive sale amounts",
            details={"sale_amount": str(amount)},
        )
    volume = to_decimal(trailing_volume, field="trailing_volume")

    rate = clamp_to_plan(resolve_base_rate(policy, volume), plan)
    return RateResolution(
        base_commission_rate=rate,
        transaction_fee=compute_transaction_fee(plan, amount),
        performance_bonus=compute_performance_bonus(amount, performance_score, performance_policy),
    )


def calculate_performance_score(metrics: VendorPerformanceMetrics) -> Decimal:
    """Weighted score in [0, 1]: rating 40, fulfillment 30, returns 20, volume 10."""
    score = 0
    rating = metrics.average_rating or ZERO

    if rating >= Decimal("4.5"):
        score += 40
    elif rating >= Decimal("4.0"):
        score += 30
    elif rating >= Decimal("3.5"):
        score += 20
    elif rating >= Decimal("3.0"):
        score += 10

    if metrics.fulfillment_rate >= Decimal("0.98"):
        score += 30
    elif metrics.fulfillment_rate >= Decimal("0.95"):
        score += 25
    elif metrics.fulfillment_rate >= Decimal("0.90"):
        score += 20
    elif metrics.fulfillment_rate >= Decimal("0.85"):
        score += 15

    # lower is better
    if metrics.return_rate <= Decimal("0.02"):
        score += 20
    elif metrics.return_rate <= Decimal("0.05"):
        score += 15
    elif metrics.return_rate <= Decimal("0.08"):
        score += 10
    elif metrics.return_rate <= Decimal("0.10"):
        score += 5

    if metrics.total_sales >= 5000:
        score += 10
    elif metrics.total_sales >= 2000:
        score += 8
    elif metrics.total_sales >= 1000:
        score += 6
    elif metrics.total_sales >= 500:
        score += 4

    return (Decimal(min(score, 100)) / Decimal(100)).quantize(CENTS)


def plan_monthly_cost(plan: VendorPlan, metrics: VendorPerformanceMetrics) -> Decimal:
    """What the platform charges a vendor for a month under ``plan``."""
    sales = to_decimal(metrics.total_sales, field="total_sales")
    if plan.has_flat_fee:
        fees = plan.transaction_fee * metrics.order_count
    else:
        fees = plan.transaction_fee_rate * sales
    return quantize_money(plan.monthly_fee + sales * plan.platform_rate + fees)


def recommend_plan(current_plan: Optional[str], metrics: VendorPerformanceMetrics) -> PlanRecommendation:
    """Suggest the cheaper plan once a vendor's volume clears its threshold."""
    plan = get_plan(current_plan)
    current_cost = plan_monthly_cost(plan, metrics)

    for candidate_id, min_sales, min_orders in PLAN_RECOMMENDATION_THRESHOLDS:
        if metrics.total_sales > min_sales and metrics.order_count > min_orders:
            candidate = VENDOR_PLANS[candidate_id]
            candidate_cost = plan_monthly_cost(candidate, metrics)
            if candidate.id != plan.id and candidate_cost < current_cost:
                return PlanRecommendation(
                    current_plan=plan.id,
                    recommended_plan=candidate.id,
                    reasoning=(
                        f"With {metrics.order_count} orders and {quantize_money(metrics.total_sales)} in sales, "
                        f"the {candidate.name} would lower your monthly fees."
                    ),
                    potential_savings=current_cost - candidate_cost,
                )
            break

    return PlanRecommendation(
        current_plan=plan.id,
        recommended_plan=plan.id,
        reasoning=f"Current {plan.id} plan is optimal for your sales volume.",
        potential_savings=quantize_money(ZERO),
    )

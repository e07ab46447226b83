"""
Commission policy tables for Uniqverse vendors.

Plans and the performance step function. The calculation code in
``services.commission_rates`` only reads these tables.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional, Tuple


@dataclass(frozen=True)
class VendorPlan:
    """Subscription plan a vendor sells under.

    A plan charges either a flat ``transaction_fee`` per order item or a
    ``transaction_fee_rate`` on the sale amount, never both.

    ``commission_rate`` is the vendor's baseline share of a sale and
    ``max_commission_rate`` caps how favorable a vendor override may be; the
    platform keeps the complement (``platform_rate``).
    """

    id: str
    name: str
    monthly_fee: Decimal
    commission_rate: Decimal
    max_commission_rate: Decimal
    transaction_fee: Optional[Decimal] = None
    transaction_fee_rate: Optional[Decimal] = None
    max_products: Optional[int] = None
    analytics_level: str = 'basic'
    benefits: Tuple[str, ...] = ()

    def __post_init__(self):
        if (self.transaction_fee is None) == (self.transaction_fee_rate is None):
            raise ValueError(
                f"Plan {self.id} must define exactly one of transaction_fee or transaction_fee_rate"
            )
        if not (Decimal('0') <= self.commission_rate <= self.max_commission_rate <= Decimal('1')):
            raise ValueError(f"Plan {self.id} has inconsistent commission rates")

    @property
    def platform_rate(self) -> Decimal:
        return Decimal('1') - self.commission_rate

    @property
    def has_flat_fee(self) -> bool:
        return self.transaction_fee is not None

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'name': self.name,
            'monthly_fee': self.monthly_fee,
            'commission_rate': self.commission_rate,
            'max_commission_rate': self.max_commission_rate,
            'transaction_fee': self.transaction_fee,
            'transaction_fee_rate': self.transaction_fee_rate,
            'max_products': self.max_products,
            'analytics_level': self.analytics_level,
            'benefits': list(self.benefits),
        }


@dataclass(frozen=True)
class PerformancePolicy:
    """Monotonic step function from performance score to bonus rate.

    ``steps`` is ordered by descending ``min_score``; the first step whose
    ``min_score`` is <= the score wins. Scores below every step get
    ``floor_rate`` (a penalty when negative).
    """

    steps: Tuple[Tuple[Decimal, Decimal], ...]
    floor_rate: Decimal

    def __post_init__(self):
        previous_score = None
        previous_rate = None
        for min_score, rate in self.steps:
            if not (Decimal('0') <= min_score <= Decimal('1')):
                raise ValueError("Performance step scores must be within [0, 1]")
            if previous_score is not None and min_score >= previous_score:
                raise ValueError("Performance steps must be ordered by descending score")
            if previous_rate is not None and rate > previous_rate:
                raise ValueError("Performance bonus must not grow as the score drops")
            previous_score, previous_rate = min_score, rate
        if previous_rate is not None and self.floor_rate > previous_rate:
            raise ValueError("Performance floor rate must not exceed the lowest step")

    def bonus_rate(self, score: Decimal) -> Decimal:
        for min_score, rate in self.steps:
            if score >= min_score:
                return rate
        return self.floor_rate


# ============================================
# VENDOR PLANS
# ============================================

STARTER = 'STARTER'
PROFESSIONAL = 'PROFESSIONAL'
ENTERPRISE = 'ENTERPRISE'

DEFAULT_PLAN = STARTER

VENDOR_PLANS: Dict[str, VendorPlan] = {
    STARTER: VendorPlan(
        id=STARTER,
        name='Starter Plan',
        monthly_fee=Decimal('0.00'),
        transaction_fee=Decimal('0.30'),
        commission_rate=Decimal('0.92'),
        max_commission_rate=Decimal('0.95'),
        max_products=50,
        analytics_level='basic',
        benefits=(
            'Up to 50 products',
            'Basic analytics',
            'Standard support',
        ),
    ),
    PROFESSIONAL: VendorPlan(
        id=PROFESSIONAL,
        name='Professional Plan',
        monthly_fee=Decimal('39.99'),
        transaction_fee=Decimal('0.20'),
        commission_rate=Decimal('0.95'),
        max_commission_rate=Decimal('0.97'),
        max_products=500,
        analytics_level='advanced',
        benefits=(
            'Up to 500 products',
            'Advanced analytics & reports',
            'Priority customer support',
            'Bulk product management',
        ),
    ),
    ENTERPRISE: VendorPlan(
        id=ENTERPRISE,
        name='Enterprise Plan',
        monthly_fee=Decimal('99.99'),
        transaction_fee=Decimal('0.15'),
        commission_rate=Decimal('0.97'),
        max_commission_rate=Decimal('0.98'),
        max_products=None,
        analytics_level='premium',
        benefits=(
            'Unlimited products',
            'Premium analytics',
            'Dedicated account manager',
            'API access',
        ),
    ),
}


def get_plan(plan_type: Optional[str]) -> VendorPlan:
    """Return the plan for ``plan_type``; unknown or empty values fall back to Starter."""
    return VENDOR_PLANS.get((plan_type or DEFAULT_PLAN).upper(), VENDOR_PLANS[DEFAULT_PLAN])


# Upgrade hints: minimum (sales, orders) in the trailing month before a plan is suggested
PLAN_RECOMMENDATION_THRESHOLDS = (
    (ENTERPRISE, Decimal('10000'), 100),
    (PROFESSIONAL, Decimal('2000'), 20),
)


# ============================================
# PERFORMANCE
# ============================================

DEFAULT_PERFORMANCE_POLICY = PerformancePolicy(
    steps=(
        (Decimal('0.95'), Decimal('0.015')),
        (Decimal('0.50'), Decimal('0')),
    ),
    floor_rate=Decimal('-0.01'),
)

# Days of history used for performance metrics and plan recommendations
PERFORMANCE_LOOKBACK_DAYS = 30

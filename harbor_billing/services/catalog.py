"""Subscription plan catalog.

Plans are static; processor price references can be overridden per
environment so the same build runs against test and live processor accounts.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal

from harbor_billing.models.billing import BillingCycle, ProcessorType

BASIC_PLAN_ID = "basic"


@dataclass(frozen=True)
class PlanPricing:
    monthly: Decimal
    yearly: Decimal
    currency: str = "USD"

    def for_cycle(self, cycle: BillingCycle | str) -> Decimal:
        if BillingCycle(cycle) == BillingCycle.yearly:
            return self.yearly
        return self.monthly


@dataclass(frozen=True)
class PlanLimits:
    max_listings: int = 5  # -1 means unlimited
    max_images: int = 10
    priority_placement: bool = False
    featured_listings: int = 0
    analytics_access: bool = False
    bulk_operations: bool = False
    advanced_search: bool = False
    premium_support: bool = False


@dataclass(frozen=True)
class SubscriptionPlan:
    plan_id: str
    name: str
    type: str  # "individual" or "dealer"
    is_premium: bool
    features: tuple[str, ...]
    pricing: PlanPricing
    price_refs: dict[str, dict[str, str]] = field(default_factory=dict)
    trial_days: int = 0
    active: bool = True


def _price_ref(env_key: str, default: str) -> str:
    return os.getenv(env_key) or default


_PREMIUM_FEATURES = (
    "unlimited_listings",
    "priority_placement",
    "advanced_analytics",
    "premium_support",
    "featured_listings",
    "enhanced_photos",
)

PLANS: dict[str, SubscriptionPlan] = {
    plan.plan_id: plan
    for plan in (
        SubscriptionPlan(
            plan_id=BASIC_PLAN_ID,
            name="Basic",
            type="individual",
            is_premium=False,
            features=("basic_listing_creation", "standard_search", "basic_support"),
            pricing=PlanPricing(Decimal("0.00"), Decimal("0.00")),
        ),
        SubscriptionPlan(
            plan_id="premium_individual",
            name="Premium Individual",
            type="individual",
            is_premium=True,
            features=_PREMIUM_FEATURES,
            pricing=PlanPricing(Decimal("29.99"), Decimal("299.99")),
            price_refs={
                ProcessorType.stripe.value: {
                    "monthly": _price_ref(
                        "STRIPE_PREMIUM_INDIVIDUAL_MONTHLY_PRICE_ID",
                        "price_premium_individual_monthly",
                    ),
                    "yearly": _price_ref(
                        "STRIPE_PREMIUM_INDIVIDUAL_YEARLY_PRICE_ID",
                        "price_premium_individual_yearly",
                    ),
                },
                ProcessorType.paypal.value: {
                    "monthly": _price_ref(
                        "PAYPAL_PREMIUM_INDIVIDUAL_MONTHLY_PLAN_ID",
                        "plan_premium_individual_monthly",
                    ),
                    "yearly": _price_ref(
                        "PAYPAL_PREMIUM_INDIVIDUAL_YEARLY_PLAN_ID",
                        "plan_premium_individual_yearly",
                    ),
                },
            },
            trial_days=14,
        ),
        SubscriptionPlan(
            plan_id="premium_dealer",
            name="Premium Dealer",
            type="dealer",
            is_premium=True,
            features=_PREMIUM_FEATURES
            + (
                "bulk_operations",
                "dealer_badge",
                "inventory_management",
                "lead_management",
                "custom_branding",
            ),
            pricing=PlanPricing(Decimal("99.99"), Decimal("999.99")),
            price_refs={
                ProcessorType.stripe.value: {
                    "monthly": _price_ref(
                        "STRIPE_PREMIUM_DEALER_MONTHLY_PRICE_ID",
                        "price_premium_dealer_monthly",
                    ),
                    "yearly": _price_ref(
                        "STRIPE_PREMIUM_DEALER_YEARLY_PRICE_ID",
                        "price_premium_dealer_yearly",
                    ),
                },
                ProcessorType.paypal.value: {
                    "monthly": _price_ref(
                        "PAYPAL_PREMIUM_DEALER_MONTHLY_PLAN_ID",
                        "plan_premium_dealer_monthly",
                    ),
                    "yearly": _price_ref(
                        "PAYPAL_PREMIUM_DEALER_YEARLY_PLAN_ID",
                        "plan_premium_dealer_yearly",
                    ),
                },
            },
            trial_days=14,
        ),
    )
}

_PLAN_LIMITS: dict[str, PlanLimits] = {
    "premium_individual": PlanLimits(
        max_listings=-1,
        max_images=50,
        priority_placement=True,
        featured_listings=3,
        analytics_access=True,
        advanced_search=True,
        premium_support=True,
    ),
    "premium_dealer": PlanLimits(
        max_listings=-1,
        max_images=100,
        priority_placement=True,
        featured_listings=10,
        analytics_access=True,
        bulk_operations=True,
        advanced_search=True,
        premium_support=True,
    ),
}


class SubscriptionCatalog:
    def __init__(self, plans: dict[str, SubscriptionPlan] | None = None) -> None:
        self._plans = dict(PLANS if plans is None else plans)

    def get_plan(self, plan_id: str | None) -> SubscriptionPlan | None:
        if not plan_id:
            return None
        return self._plans.get(plan_id)

    def active_plans(self) -> list[SubscriptionPlan]:
        return [plan for plan in self._plans.values() if plan.active]

    def price_ref(
        self,
        plan: SubscriptionPlan,
        processor_type: ProcessorType | str,
        cycle: BillingCycle | str,
    ) -> str | None:
        refs = plan.price_refs.get(ProcessorType(processor_type).value, {})
        return refs.get(BillingCycle(cycle).value)

    def plan_limits(self, plan_id: str | None) -> PlanLimits:
        return _PLAN_LIMITS.get(plan_id or BASIC_PLAN_ID, PlanLimits())


subscription_catalog = SubscriptionCatalog()

"""Keeps the user's membership fields in step with their billing account."""
from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import datetime

from harbor_billing.models.billing import BillingCycle
from harbor_billing.models.user import User, UserType
from harbor_billing.services.catalog import (
    BASIC_PLAN_ID,
    SubscriptionCatalog,
    SubscriptionPlan,
    subscription_catalog,
)

logger = logging.getLogger(__name__)


def _membership(
    catalog: SubscriptionCatalog,
    plan: SubscriptionPlan,
    expires_at: datetime | None,
    billing_cycle: BillingCycle | str | None,
    auto_renew: bool,
) -> dict:
    return {
        "plan": plan.plan_id,
        "features": list(plan.features),
        "limits": asdict(catalog.plan_limits(plan.plan_id)),
        "expires_at": expires_at.isoformat() if expires_at else None,
        "auto_renew": auto_renew,
        "billing_cycle": BillingCycle(billing_cycle).value if billing_cycle else None,
    }


def apply_plan(
    user: User,
    plan: SubscriptionPlan,
    billing_cycle: BillingCycle | str,
    expires_at: datetime | None,
    catalog: SubscriptionCatalog = subscription_catalog,
) -> None:
    if plan.is_premium:
        user.user_type = (
            UserType.premium_dealer if plan.type == "dealer" else UserType.premium_individual
        )
    user.premium_active = plan.is_premium
    user.premium_plan = plan.plan_id if plan.is_premium else None
    user.premium_expires_at = expires_at if plan.is_premium else None
    user.membership_details = _membership(catalog, plan, expires_at, billing_cycle, True)
    logger.info("Applied plan %s to user %s", plan.plan_id, user.id)


def extend(user: User, expires_at: datetime | None) -> None:
    user.premium_active = True
    user.premium_expires_at = expires_at
    details = dict(user.membership_details or {})
    details.pop("suspended", None)
    details["expires_at"] = expires_at.isoformat() if expires_at else None
    user.membership_details = details


def end_at_period(user: User, access_until: datetime | None) -> None:
    """Stop auto-renewal but keep premium until ``access_until``."""
    user.premium_expires_at = access_until
    details = dict(user.membership_details or {})
    details["auto_renew"] = False
    details["expires_at"] = access_until.isoformat() if access_until else None
    user.membership_details = details


def suspend(user: User) -> None:
    user.premium_active = False
    details = dict(user.membership_details or {})
    details["suspended"] = True
    user.membership_details = details
    logger.info("Suspended premium access for user %s", user.id)


def downgrade(user: User, catalog: SubscriptionCatalog = subscription_catalog) -> None:
    basic = catalog.get_plan(BASIC_PLAN_ID)
    user.user_type = UserType.dealer if user.is_dealer else UserType.individual
    user.premium_active = False
    user.premium_plan = None
    user.premium_expires_at = None
    if basic is not None:
        user.membership_details = _membership(catalog, basic, None, None, False)
    logger.info("Downgraded user %s to the basic plan", user.id)

"""Subscription lifecycle: create, change, cancel and renew."""
from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy.orm.exc import StaleDataError

from harbor_billing.errors import (
    BillingAccountNotFound,
    BillingError,
    ConflictError,
    PlanNotFound,
    ProcessorError,
    UserNotFound,
    ValidationError,
)
from harbor_billing.metrics import RENEWALS
from harbor_billing.models.billing import (
    BillingAccount,
    BillingAccountStatus,
    BillingCycle,
    ResolutionMethod,
    TransactionStatus,
    TransactionType,
)
from harbor_billing.services.billing import membership
from harbor_billing.services.billing.charges import Charges
from harbor_billing.services.billing.payment_failures import PaymentFailureHandler
from harbor_billing.services.catalog import (
    BASIC_PLAN_ID,
    SubscriptionCatalog,
    SubscriptionPlan,
    subscription_catalog,
)
from harbor_billing.services.common import (
    advance_billing_date,
    as_utc,
    to_money,
    utcnow,
)
from harbor_billing.services.processors import (
    PaymentProcessor,
    PaymentStatus,
    SubscriptionPatch,
    map_failure_reason,
)
from harbor_billing.services.store import ACCOUNT_TRANSITIONS, BillingStore

logger = logging.getLogger(__name__)

DAYS_IN_CYCLE = {BillingCycle.monthly: 30, BillingCycle.yearly: 365}


@dataclass(frozen=True)
class ProrationResult:
    amount: Decimal
    days_remaining: int
    days_in_cycle: int
    old_price: Decimal
    new_price: Decimal

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        for key in ("amount", "old_price", "new_price"):
            data[key] = str(data[key])
        return data


def calculate_proration(
    old_price: Decimal,
    new_price: Decimal,
    cycle: BillingCycle | str,
    next_billing_date: datetime | None,
    now: datetime,
) -> ProrationResult:
    """Charge (positive) or credit (negative) for the rest of the current cycle."""
    days_in_cycle = DAYS_IN_CYCLE[BillingCycle(cycle)]
    next_billing = as_utc(next_billing_date)
    remaining = 0
    if next_billing is not None:
        seconds = (next_billing - now).total_seconds()
        remaining = min(max(math.ceil(seconds / 86400), 0), days_in_cycle)
    amount = to_money(
        Decimal(remaining) * (Decimal(new_price) - Decimal(old_price)) / Decimal(days_in_cycle)
    )
    return ProrationResult(
        amount=amount,
        days_remaining=remaining,
        days_in_cycle=days_in_cycle,
        old_price=to_money(old_price),
        new_price=to_money(new_price),
    )


class SubscriptionManager:
    def __init__(
        self,
        store: BillingStore,
        processor: PaymentProcessor,
        catalog: SubscriptionCatalog | None = None,
        failure_handler: PaymentFailureHandler | None = None,
    ) -> None:
        self.store = store
        self.processor = processor
        self.catalog = catalog or subscription_catalog
        self.failure_handler = failure_handler or PaymentFailureHandler(store, processor)
        self.charges = Charges(store, processor)

    # ── Catalog ──────────────────────────────────────────

    def get_subscription_plan(self, plan_id: str | None) -> SubscriptionPlan | None:
        return self.catalog.get_plan(plan_id)

    def get_active_subscription_plans(self) -> list[SubscriptionPlan]:
        return self.catalog.active_plans()

    def _premium_plan(self, plan_id: str) -> SubscriptionPlan:
        plan = self.catalog.get_plan(plan_id)
        if plan is None or not plan.active:
            raise PlanNotFound(f"Plan {plan_id} not found")
        if plan.plan_id == BASIC_PLAN_ID or not plan.is_premium:
            raise ValidationError("The basic plan does not need a subscription")
        return plan

    def _price_ref(
        self, plan: SubscriptionPlan, account: BillingAccount, cycle: BillingCycle
    ) -> str:
        ref = self.catalog.price_ref(plan, account.processor_type, cycle)
        if not ref:
            raise ValidationError(
                f"Plan {plan.plan_id} has no {cycle.value} price for {account.processor_type.value}"
            )
        return ref

    def _account_for_subscription(self, subscription_id: str) -> BillingAccount:
        account = self.store.get_account_by_subscription(subscription_id)
        if account is None:
            raise BillingAccountNotFound(f"Subscription {subscription_id} not found")
        return account

    # ── User-initiated lifecycle ─────────────────────────

    def create_subscription(
        self,
        user_id: Any,
        plan_id: str,
        billing_cycle: BillingCycle | str,
        trial_days: int | None = None,
        metadata: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        plan = self._premium_plan(plan_id)
        cycle = BillingCycle(billing_cycle)
        user = self.store.get_user(user_id)
        if user is None:
            raise UserNotFound("User not found")
        account = self.store.get_open_account_for_user(user.id)
        if account is None:
            raise BillingAccountNotFound("Set up a billing account first")
        if account.subscription_id and account.status != BillingAccountStatus.incomplete:
            raise ConflictError(
                "Billing account already has a subscription", code="SUBSCRIPTION_EXISTS"
            )

        trial = plan.trial_days if trial_days is None else trial_days
        price_ref = self._price_ref(plan, account, cycle)
        result = self.processor.create_subscription(
            account.customer_id,
            price_ref,
            account.payment_method_id,
            {
                "user_id": str(user.id),
                "plan_id": plan.plan_id,
                "billing_cycle": cycle.value,
                **(metadata or {}),
            },
            trial_days=trial or None,
        )

        now = utcnow()
        trial_end = as_utc(result.trial_end)
        if trial_end is None and trial:
            trial_end = now + timedelta(days=trial)
        status = (
            BillingAccountStatus.active
            if result.status == "active"
            else BillingAccountStatus.trialing
        )
        next_billing = trial_end if status == BillingAccountStatus.trialing and trial_end else None
        if next_billing is None:
            next_billing = advance_billing_date(now, cycle)

        self.store.transition_account(account, status)
        account.subscription_id = result.subscription_id
        account.plan = plan.plan_id
        account.billing_cycle = cycle
        account.amount = plan.pricing.for_cycle(cycle)
        account.currency = plan.pricing.currency
        account.trial_ends_at = trial_end if status == BillingAccountStatus.trialing else None
        account.next_billing_date = next_billing
        account.canceled_at = None
        account.cancel_at_period_end = False
        account.metadata_ = {**(account.metadata_ or {}), **(metadata or {})}
        membership.apply_plan(user, plan, cycle, next_billing, self.catalog)
        try:
            self.store.commit()
        except (BillingError, StaleDataError):
            # the processor subscription exists but nothing local does
            self._compensate_cancel(result.subscription_id)
            raise
        logger.info(
            "Created subscription %s on plan %s (%s)",
            result.subscription_id,
            plan.plan_id,
            status.value,
            extra={"billing_account_id": str(account.id), "subscription_id": result.subscription_id},
        )
        return {
            "subscription_id": result.subscription_id,
            "status": status.value,
            "trial_end": trial_end if status == BillingAccountStatus.trialing else None,
            "next_billing_date": next_billing,
        }

    def _compensate_cancel(self, subscription_id: str) -> None:
        try:
            self.processor.cancel_subscription(subscription_id)
        except ProcessorError:
            logger.exception("Could not cancel orphaned subscription %s", subscription_id)

    def update_subscription(
        self,
        subscription_id: str,
        plan_id: str | None = None,
        billing_cycle: BillingCycle | str | None = None,
        cancel_at_period_end: bool | None = None,
        metadata: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        account = self._account_for_subscription(subscription_id)
        if account.status == BillingAccountStatus.canceled:
            raise ValidationError("Subscription is canceled")
        now = utcnow()

        current_cycle = BillingCycle(account.billing_cycle or BillingCycle.monthly)
        new_cycle = BillingCycle(billing_cycle) if billing_cycle else current_cycle
        current_plan_id = account.plan
        new_plan = self._premium_plan(plan_id) if plan_id else None
        changing = new_plan is not None and (
            new_plan.plan_id != current_plan_id or new_cycle != current_cycle
        )
        if new_plan is None and new_cycle != current_cycle:
            new_plan = self._premium_plan(current_plan_id or "")
            changing = True

        proration = None
        proration_txn = None
        if changing and new_plan is not None:
            new_price = new_plan.pricing.for_cycle(new_cycle)
            new_ref = self._price_ref(new_plan, account, new_cycle)
            if account.status != BillingAccountStatus.trialing:
                proration = calculate_proration(
                    Decimal(account.amount),
                    new_price,
                    current_cycle,
                    account.next_billing_date,
                    now,
                )
            if proration is not None and proration.amount > 0:
                proration_txn, result = self.charges.charge(
                    account,
                    proration.amount,
                    TransactionType.payment,
                    f"Proration for {current_plan_id} to {new_plan.plan_id}",
                    metadata={"proration": "true"},
                    idempotency_key=(
                        f"proration-{account.id}-{new_plan.plan_id}-{new_cycle.value}-"
                        f"{int(now.timestamp())}"
                    ),
                )
                if result.status == PaymentStatus.failed or (
                    result.status == PaymentStatus.pending and result.failure_code
                ):
                    self.store.commit()
                    raise ProcessorError(
                        result.failure_message or "Proration charge failed",
                        code="PRORATION_FAILED",
                    )

            try:
                self.processor.update_subscription(
                    subscription_id,
                    SubscriptionPatch(
                        price_ref=new_ref,
                        metadata=metadata,
                    ),
                )
            except ProcessorError:
                if (
                    proration_txn is not None
                    and proration_txn.status == TransactionStatus.completed
                ):
                    self.charges.refund(proration_txn, reason="plan_change_failed")
                self.store.commit()
                raise

            if proration is not None and proration.amount < 0:
                self._credit_proration(account, -proration.amount)

            account.plan = new_plan.plan_id
            account.billing_cycle = new_cycle
            account.amount = new_price
            account.currency = new_plan.pricing.currency
            if account.user is not None:
                membership.apply_plan(
                    account.user, new_plan, new_cycle, account.next_billing_date, self.catalog
                )
            # the processor already bills the new price
            self.store.commit()

        if cancel_at_period_end:
            self.processor.update_subscription(
                subscription_id, SubscriptionPatch(cancel_at_period_end=True)
            )
            self._mark_canceled_at_period_end(account, now)
        if metadata:
            account.metadata_ = {**(account.metadata_ or {}), **metadata}

        self.store.commit()
        logger.info(
            "Updated subscription %s",
            subscription_id,
            extra={"billing_account_id": str(account.id), "subscription_id": subscription_id},
        )
        return {
            "subscription_id": subscription_id,
            "status": BillingAccountStatus(account.status).value,
            "plan": account.plan,
            "billing_cycle": BillingCycle(account.billing_cycle).value
            if account.billing_cycle
            else None,
            "cancel_at_period_end": account.cancel_at_period_end,
            "next_billing_date": account.next_billing_date,
            "proration": proration.to_dict() if proration else None,
        }

    def _credit_proration(self, account: BillingAccount, credit: Decimal) -> None:
        charge = self.store.latest_completed_charge(account.id)
        if charge is None:
            logger.warning(
                "No completed charge to credit %s against",
                credit,
                extra={"billing_account_id": str(account.id)},
            )
            return
        refundable = Decimal(charge.amount) - self.store.refunded_total(charge.transaction_id)
        credit = min(credit, to_money(refundable))
        if credit <= 0:
            return
        try:
            self.charges.refund(charge, credit, reason="proration_credit")
        except BillingError:
            # the plan change stands; the credit is settled by support
            logger.exception(
                "Proration credit of %s failed",
                credit,
                extra={"billing_account_id": str(account.id)},
            )

    def _mark_canceled_at_period_end(self, account: BillingAccount, now: datetime) -> None:
        self.store.transition_account(account, BillingAccountStatus.canceled)
        account.canceled_at = now
        account.cancel_at_period_end = True
        if account.user is not None:
            membership.end_at_period(account.user, account.next_billing_date)

    def cancel_subscription(self, subscription_id: str, immediate: bool = False) -> dict[str, Any]:
        account = self._account_for_subscription(subscription_id)
        if account.status == BillingAccountStatus.canceled and not (
            immediate and account.cancel_at_period_end
        ):
            raise ValidationError("Subscription is already canceled")
        now = utcnow()
        if immediate:
            self.processor.cancel_subscription(subscription_id)
            self.store.transition_account(account, BillingAccountStatus.canceled)
            account.canceled_at = now
            account.cancel_at_period_end = False
            if account.user is not None:
                membership.downgrade(account.user, self.catalog)
        else:
            self.processor.update_subscription(
                subscription_id, SubscriptionPatch(cancel_at_period_end=True)
            )
            self._mark_canceled_at_period_end(account, now)
        self.store.commit()
        logger.info(
            "Canceled subscription %s (%s)",
            subscription_id,
            "immediately" if immediate else "at period end",
            extra={"billing_account_id": str(account.id), "subscription_id": subscription_id},
        )
        return {
            "subscription_id": subscription_id,
            "status": BillingAccountStatus.canceled.value,
            "canceled_at": account.canceled_at,
            "cancel_at_period_end": account.cancel_at_period_end,
            "access_until": None if immediate else account.next_billing_date,
        }

    # ── Renewal sweep ────────────────────────────────────

    def process_automatic_renewals(self, now: datetime | None = None) -> dict[str, int]:
        now = now or utcnow()
        summary = {"processed": 0, "renewed": 0, "failed": 0, "skipped": 0, "errors": 0}
        for account_id in self.store.billing_account_ids_due_for_renewal(
            now, self.processor.processor_type
        ):
            summary["processed"] += 1
            try:
                outcome = self._renew_account(account_id, now)
            except StaleDataError:
                self.store.rollback()
                logger.warning("Billing account %s changed concurrently; skipping", account_id)
                outcome = "skipped"
            except Exception:
                self.store.rollback()
                logger.exception(
                    "Renewal failed for billing account %s",
                    account_id,
                    extra={"billing_account_id": str(account_id)},
                )
                outcome = "errors"
            RENEWALS.labels(outcome).inc()
            summary[outcome] += 1
        logger.info("Renewal sweep finished: %s", summary)
        return summary

    def _renew_account(self, account_id: Any, now: datetime) -> str:
        account = self.store.lock_billing_account(account_id)
        if account is None or not self.store.is_due_for_renewal(account, now):
            self.store.rollback()
            return "skipped"
        previous = as_utc(account.next_billing_date)
        txn, result = self.charges.charge(
            account,
            Decimal(account.amount),
            TransactionType.subscription_renewal,
            f"{account.plan} {BillingCycle(account.billing_cycle).value} renewal",
            idempotency_key=f"renewal-{account.id}-{int(previous.timestamp())}",
        )
        if result.status == PaymentStatus.succeeded:
            account.next_billing_date = advance_billing_date(previous, account.billing_cycle)
            account.trial_ends_at = None
            self.store.transition_account(account, BillingAccountStatus.active)
            if account.user is not None:
                membership.extend(account.user, account.next_billing_date)
            self.store.commit()
            logger.info(
                "Renewed subscription %s until %s",
                account.subscription_id,
                account.next_billing_date,
                extra={"billing_account_id": str(account.id), "transaction_id": txn.transaction_id},
            )
            return "renewed"

        self.failure_handler.open_failure(
            account,
            txn.transaction_id,
            map_failure_reason(result.failure_code),
            result.failure_message,
            amount=txn.amount,
        )
        self.store.commit()
        return "failed"

    # ── Processor-side reconciliation (staged, committed by the caller) ──

    def sync_processor_subscription(
        self,
        subscription_id: str,
        status: BillingAccountStatus | None,
        current_period_end: datetime | None = None,
        cancel_at_period_end: bool | None = None,
    ) -> BillingAccount | None:
        account = self.store.get_account_by_subscription(subscription_id)
        if account is None:
            logger.info("Ignoring update for unknown subscription %s", subscription_id)
            return None
        current = BillingAccountStatus(account.status)
        if current_period_end is not None and current != BillingAccountStatus.canceled:
            account.next_billing_date = current_period_end
        if status == BillingAccountStatus.canceled and current != BillingAccountStatus.canceled:
            if cancel_at_period_end:
                self._mark_canceled_at_period_end(account, utcnow())
            else:
                return self.handle_processor_cancellation(subscription_id)
        elif status is not None and status != current:
            if status in ACCOUNT_TRANSITIONS[current]:
                self.store.transition_account(account, status)
            else:
                logger.info(
                    "Ignoring processor status %s for subscription %s in %s",
                    status.value,
                    subscription_id,
                    current.value,
                )
        if cancel_at_period_end and account.status != BillingAccountStatus.canceled:
            self._mark_canceled_at_period_end(account, utcnow())
        return account

    def record_processor_renewal(
        self, subscription_id: str, period_end: datetime | None = None
    ) -> BillingAccount | None:
        account = self.store.get_account_by_subscription(subscription_id)
        if account is None:
            logger.info("Ignoring renewal for unknown subscription %s", subscription_id)
            return None
        if account.status == BillingAccountStatus.canceled:
            return account
        now = utcnow()
        current = as_utc(account.next_billing_date)
        period_end = as_utc(period_end)
        if period_end is not None:
            account.next_billing_date = max(current, period_end) if current else period_end
        elif current is not None and current <= now and account.billing_cycle:
            account.next_billing_date = advance_billing_date(current, account.billing_cycle)
        self.store.transition_account(account, BillingAccountStatus.active)
        account.trial_ends_at = None
        self.failure_handler.resolve_open_failures(account, ResolutionMethod.retry_success)
        if account.user is not None:
            membership.extend(account.user, account.next_billing_date)
        return account

    def handle_processor_cancellation(
        self, subscription_id: str, canceled_at: datetime | None = None
    ) -> BillingAccount | None:
        account = self.store.get_account_by_subscription(subscription_id)
        if account is None:
            logger.info("Ignoring cancellation for unknown subscription %s", subscription_id)
            return None
        self.store.transition_account(account, BillingAccountStatus.canceled)
        account.canceled_at = as_utc(account.canceled_at) or canceled_at or utcnow()
        account.cancel_at_period_end = False
        self.failure_handler.resolve_open_failures(account, ResolutionMethod.cancellation)
        if account.user is not None:
            membership.downgrade(account.user, self.catalog)
        return account

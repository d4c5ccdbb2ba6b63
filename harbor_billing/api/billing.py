"""Billing API: accounts, subscriptions, refunds, disputes and sweeps."""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status

from harbor_billing.api.deps import (
    get_processor_factory,
    get_store,
    get_sweep_processors,
    require_job_token,
    require_role,
    require_user_auth,
)
from harbor_billing.errors import (
    BillingAccountNotFound,
    PaymentFailureNotFound,
    TransactionNotFound,
)
from harbor_billing.models.billing import BillingAccount, ResolutionMethod
from harbor_billing.schemas.billing import (
    BillingAccountCreate,
    BillingAccountRead,
    DisputeCreate,
    DisputeEvidenceCreate,
    DisputeRead,
    PaymentFailureRead,
    PlanRead,
    RefundCreate,
    SubscriptionCanceled,
    SubscriptionCreate,
    SubscriptionCreated,
    SubscriptionUpdate,
    SubscriptionUpdated,
    SweepSummary,
    TransactionRead,
)
from harbor_billing.services.billing import (
    BillingAccounts,
    PaymentFailureHandler,
    SubscriptionManager,
    Transactions,
)
from harbor_billing.services.catalog import subscription_catalog
from harbor_billing.services.store import BillingStore

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/billing", tags=["billing"])


def _owned_account(store: BillingStore, subscription_id: str, auth: dict) -> BillingAccount:
    account = store.get_account_by_subscription(subscription_id)
    if account is None:
        raise BillingAccountNotFound(f"Subscription {subscription_id} not found")
    if str(account.user_id) != auth["user_id"] and "admin" not in auth["roles"]:
        raise HTTPException(
            status_code=403,
            detail={"code": "FORBIDDEN", "message": "Subscription belongs to another user"},
        )
    return account


def _sweep_total(summaries: list[dict[str, int]]) -> dict[str, int]:
    total: dict[str, int] = {"processed": 0, "errors": 0}
    for summary in summaries:
        for key, value in summary.items():
            total[key] = total.get(key, 0) + value
    return total


# ── Plans ────────────────────────────────────────────────


@router.get("/plans", response_model=list[PlanRead])
def list_plans():
    return subscription_catalog.active_plans()


# ── Billing accounts ─────────────────────────────────────


@router.post(
    "/accounts", response_model=BillingAccountRead, status_code=status.HTTP_201_CREATED
)
def create_billing_account(
    payload: BillingAccountCreate,
    auth=Depends(require_user_auth),
    store: BillingStore = Depends(get_store),
    processors=Depends(get_processor_factory),
):
    accounts = BillingAccounts(store, processors(payload.processor))
    return accounts.create(
        auth["user_id"], payload.payment_method, email=payload.email, name=payload.name
    )


@router.get("/accounts/me", response_model=BillingAccountRead)
def get_my_billing_account(
    auth=Depends(require_user_auth),
    store: BillingStore = Depends(get_store),
):
    account = store.get_open_account_for_user(auth["user_id"])
    if account is None:
        raise BillingAccountNotFound("Billing account not found")
    return account


# ── Subscriptions ────────────────────────────────────────


@router.post(
    "/subscriptions",
    response_model=SubscriptionCreated,
    status_code=status.HTTP_201_CREATED,
)
def create_subscription(
    payload: SubscriptionCreate,
    auth=Depends(require_user_auth),
    store: BillingStore = Depends(get_store),
    processors=Depends(get_processor_factory),
):
    account = store.get_open_account_for_user(auth["user_id"])
    processor = processors(account.processor_type if account else None)
    manager = SubscriptionManager(store, processor)
    return manager.create_subscription(
        auth["user_id"],
        payload.plan_id,
        payload.billing_cycle,
        trial_days=payload.trial_days,
        metadata=payload.metadata,
    )


@router.put("/subscriptions/{subscription_id}", response_model=SubscriptionUpdated)
def update_subscription(
    subscription_id: str,
    payload: SubscriptionUpdate,
    auth=Depends(require_user_auth),
    store: BillingStore = Depends(get_store),
    processors=Depends(get_processor_factory),
):
    account = _owned_account(store, subscription_id, auth)
    manager = SubscriptionManager(store, processors(account.processor_type))
    return manager.update_subscription(
        subscription_id,
        plan_id=payload.plan_id,
        billing_cycle=payload.billing_cycle,
        cancel_at_period_end=payload.cancel_at_period_end,
        metadata=payload.metadata,
    )


@router.delete("/subscriptions/{subscription_id}", response_model=SubscriptionCanceled)
def cancel_subscription(
    subscription_id: str,
    immediate: bool = Query(default=False),
    auth=Depends(require_user_auth),
    store: BillingStore = Depends(get_store),
    processors=Depends(get_processor_factory),
):
    account = _owned_account(store, subscription_id, auth)
    manager = SubscriptionManager(store, processors(account.processor_type))
    return manager.cancel_subscription(subscription_id, immediate=immediate)


# ── Refunds & disputes (admin) ───────────────────────────


@router.post("/refunds", response_model=TransactionRead)
def create_refund(
    payload: RefundCreate,
    auth=Depends(require_role("admin")),
    store: BillingStore = Depends(get_store),
    processors=Depends(get_processor_factory),
):
    txn = store.find_transaction(payload.transaction_id)
    if txn is None:
        raise TransactionNotFound(f"Transaction {payload.transaction_id} not found")
    account = store.get_billing_account(txn.billing_account_id)
    processor = processors(account.processor_type if account else None)
    logger.info("Refund of %s requested by %s", txn.transaction_id, auth["user_id"])
    return Transactions(store, processor).refund(
        txn.transaction_id, payload.amount, payload.reason
    )


@router.post(
    "/disputes", response_model=DisputeRead, status_code=status.HTTP_201_CREATED
)
def create_dispute(
    payload: DisputeCreate,
    auth=Depends(require_role("admin")),
    store: BillingStore = Depends(get_store),
    processors=Depends(get_processor_factory),
):
    handler = PaymentFailureHandler(store, processors(None))
    return handler.create_dispute_case(
        payload.transaction_id,
        payload.dispute_type,
        payload.dispute_amount,
        payload.evidence,
        payload.evidence_due_by,
        payload.processor_dispute_id,
    )


@router.post("/disputes/{dispute_id}/evidence", response_model=DisputeRead)
def submit_dispute_evidence(
    dispute_id: UUID,
    payload: DisputeEvidenceCreate,
    auth=Depends(require_role("admin")),
    store: BillingStore = Depends(get_store),
    processors=Depends(get_processor_factory),
):
    handler = PaymentFailureHandler(store, processors(None))
    return handler.submit_dispute_evidence(
        dispute_id,
        payload.evidence_type,
        payload.description,
        file_url=payload.file_url,
        submitted_by=auth["user_id"],
    )


# ── Payment failures (admin) ─────────────────────────────


def _failure_handler(
    store: BillingStore, processors, failure_id: UUID
) -> PaymentFailureHandler:
    failure = store.get_payment_failure(failure_id)
    if failure is None:
        raise PaymentFailureNotFound("Payment failure not found")
    account = store.get_billing_account(failure.billing_account_id)
    processor = processors(account.processor_type if account else None)
    return PaymentFailureHandler(store, processor)


@router.post("/failures/{failure_id}/cancel", response_model=PaymentFailureRead)
def escalate_payment_failure(
    failure_id: UUID,
    auth=Depends(require_role("admin")),
    store: BillingStore = Depends(get_store),
    processors=Depends(get_processor_factory),
):
    handler = _failure_handler(store, processors, failure_id)
    return handler.escalate_to_cancellation(failure_id)


@router.post("/failures/{failure_id}/resolve", response_model=PaymentFailureRead)
def resolve_payment_failure(
    failure_id: UUID,
    method: ResolutionMethod = Query(default=ResolutionMethod.manual_payment),
    auth=Depends(require_role("admin")),
    store: BillingStore = Depends(get_store),
    processors=Depends(get_processor_factory),
):
    handler = _failure_handler(store, processors, failure_id)
    return handler.resolve_payment_failure(failure_id, method)


# ── Sweeps (scheduler) ───────────────────────────────────


@router.post("/renewals/process", response_model=SweepSummary)
def process_renewals(
    auth=Depends(require_job_token),
    store: BillingStore = Depends(get_store),
    processors=Depends(get_sweep_processors),
):
    return _sweep_total(
        [SubscriptionManager(store, p).process_automatic_renewals() for p in processors]
    )


@router.post("/failures/retry", response_model=SweepSummary)
def retry_payment_failures(
    auth=Depends(require_job_token),
    store: BillingStore = Depends(get_store),
    processors=Depends(get_sweep_processors),
):
    return _sweep_total(
        [PaymentFailureHandler(store, p).process_retry_attempts() for p in processors]
    )

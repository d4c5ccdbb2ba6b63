from datetime import datetime
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from harbor_billing.models.billing import (
    BillingAccountStatus,
    BillingCycle,
    DisputePriority,
    DisputeStatus,
    DisputeType,
    PaymentFailureReason,
    ProcessorType,
    ResolutionMethod,
    TransactionStatus,
    TransactionType,
)

# ── Plans ────────────────────────────────────────────────


class PlanPricingRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    monthly: Decimal
    yearly: Decimal
    currency: str


class PlanRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)
    plan_id: str = Field(serialization_alias="planId")
    name: str
    type: Literal["individual", "dealer"]
    is_premium: bool = Field(serialization_alias="isPremium")
    features: list[str]
    pricing: PlanPricingRead
    trial_days: int = Field(serialization_alias="trialDays")


# ── Billing accounts ─────────────────────────────────────


class BillingAccountCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    email: str | None = Field(default=None, max_length=255)
    name: str | None = Field(default=None, max_length=255)
    processor: Literal["stripe", "paypal"] | None = None
    payment_method: dict[str, Any] = Field(alias="paymentMethod")


class BillingAccountRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)
    id: UUID
    user_id: UUID = Field(serialization_alias="userId")
    customer_id: str = Field(serialization_alias="customerId")
    payment_method_id: str | None = Field(default=None, serialization_alias="paymentMethodId")
    processor_type: ProcessorType = Field(serialization_alias="processorType")
    plan: str | None = None
    billing_cycle: BillingCycle | None = Field(default=None, serialization_alias="billingCycle")
    amount: Decimal
    currency: str
    status: BillingAccountStatus
    subscription_id: str | None = Field(default=None, serialization_alias="subscriptionId")
    next_billing_date: datetime | None = Field(
        default=None, serialization_alias="nextBillingDate"
    )
    trial_ends_at: datetime | None = Field(default=None, serialization_alias="trialEndsAt")
    canceled_at: datetime | None = Field(default=None, serialization_alias="canceledAt")
    cancel_at_period_end: bool = Field(
        default=False, serialization_alias="cancelAtPeriodEnd"
    )
    created_at: datetime = Field(serialization_alias="createdAt")


# ── Subscriptions ────────────────────────────────────────


class SubscriptionCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    plan_id: str = Field(alias="planId", min_length=1, max_length=80)
    billing_cycle: Literal["monthly", "yearly"] = Field(alias="billingCycle")
    trial_days: int | None = Field(default=None, alias="trialDays", ge=0, le=90)
    metadata: dict[str, str] | None = None


class SubscriptionUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    plan_id: str | None = Field(default=None, alias="planId", max_length=80)
    billing_cycle: Literal["monthly", "yearly"] | None = Field(
        default=None, alias="billingCycle"
    )
    cancel_at_period_end: bool | None = Field(default=None, alias="cancelAtPeriodEnd")
    metadata: dict[str, str] | None = None


class SubscriptionCreated(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    subscription_id: str = Field(serialization_alias="subscriptionId")
    status: str
    trial_end: datetime | None = Field(default=None, serialization_alias="trialEnd")
    next_billing_date: datetime | None = Field(
        default=None, serialization_alias="nextBillingDate"
    )


class ProrationRead(BaseModel):
    amount: Decimal
    days_remaining: int = Field(serialization_alias="daysRemaining")
    days_in_cycle: int = Field(serialization_alias="daysInCycle")
    old_price: Decimal = Field(serialization_alias="oldPrice")
    new_price: Decimal = Field(serialization_alias="newPrice")


class SubscriptionUpdated(BaseModel):
    subscription_id: str = Field(serialization_alias="subscriptionId")
    status: str
    plan: str | None = None
    billing_cycle: str | None = Field(default=None, serialization_alias="billingCycle")
    cancel_at_period_end: bool = Field(serialization_alias="cancelAtPeriodEnd")
    next_billing_date: datetime | None = Field(
        default=None, serialization_alias="nextBillingDate"
    )
    proration: ProrationRead | None = None


class SubscriptionCanceled(BaseModel):
    subscription_id: str = Field(serialization_alias="subscriptionId")
    status: str
    canceled_at: datetime | None = Field(default=None, serialization_alias="canceledAt")
    cancel_at_period_end: bool = Field(serialization_alias="cancelAtPeriodEnd")
    access_until: datetime | None = Field(default=None, serialization_alias="accessUntil")


# ── Transactions & refunds ───────────────────────────────


class RefundCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    transaction_id: str = Field(alias="transactionId", min_length=1)
    amount: Decimal | None = Field(default=None, gt=0)
    reason: str = Field(min_length=1, max_length=255)


class TransactionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)
    transaction_id: str = Field(serialization_alias="transactionId")
    type: TransactionType
    amount: Decimal
    currency: str
    status: TransactionStatus
    processor_transaction_id: str | None = Field(
        default=None, serialization_alias="processorTransactionId"
    )
    original_transaction_id: str | None = Field(
        default=None, serialization_alias="originalTransactionId"
    )
    fees: Decimal
    net_amount: Decimal = Field(serialization_alias="netAmount")
    created_at: datetime = Field(serialization_alias="createdAt")


# ── Payment failures & disputes ──────────────────────────


class PaymentFailureRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)
    id: UUID
    transaction_id: str = Field(serialization_alias="transactionId")
    billing_account_id: UUID = Field(serialization_alias="billingAccountId")
    amount: Decimal
    reason: PaymentFailureReason
    attempt_number: int = Field(serialization_alias="attemptNumber")
    max_attempts: int = Field(serialization_alias="maxAttempts")
    next_retry_at: datetime | None = Field(default=None, serialization_alias="nextRetryAt")
    resolved: bool
    resolution_method: ResolutionMethod | None = Field(
        default=None, serialization_alias="resolutionMethod"
    )


class DisputeCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    transaction_id: str = Field(alias="transactionId", min_length=1)
    dispute_type: Literal[
        "chargeback", "inquiry", "fraud", "authorization", "processing_error"
    ] = Field(alias="disputeType")
    dispute_amount: Decimal = Field(alias="disputeAmount", gt=0)
    evidence: list[str] | None = None
    evidence_due_by: datetime | None = Field(default=None, alias="evidenceDueBy")
    processor_dispute_id: str | None = Field(default=None, alias="processorDisputeId")


class DisputeEvidenceCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    evidence_type: str = Field(alias="evidenceType", min_length=1, max_length=80)
    description: str = Field(min_length=1)
    file_url: str | None = Field(default=None, alias="fileUrl")


class DisputeRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)
    id: UUID
    case_number: str = Field(serialization_alias="caseNumber")
    transaction_id: str = Field(serialization_alias="transactionId")
    dispute_type: DisputeType = Field(serialization_alias="disputeType")
    dispute_amount: Decimal = Field(serialization_alias="disputeAmount")
    currency: str
    evidence: list[str] | None = None
    evidence_submissions: list[dict] | None = Field(
        default=None, serialization_alias="evidenceSubmissions"
    )
    evidence_due_by: datetime = Field(serialization_alias="evidenceDueBy")
    status: DisputeStatus
    priority: DisputePriority
    processor_dispute_id: str | None = Field(
        default=None, serialization_alias="processorDisputeId"
    )


# ── Sweeps ───────────────────────────────────────────────


class SweepSummary(BaseModel):
    model_config = ConfigDict(extra="allow")
    processed: int
    errors: int

import enum
import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from harbor_billing.db import Base, TimestampMixin

# ── Enums ────────────────────────────────────────────────


class ProcessorType(str, enum.Enum):
    stripe = "stripe"
    paypal = "paypal"


class BillingCycle(str, enum.Enum):
    monthly = "monthly"
    yearly = "yearly"


class BillingAccountStatus(str, enum.Enum):
    incomplete = "incomplete"
    trialing = "trialing"
    active = "active"
    past_due = "past_due"
    canceled = "canceled"


class TransactionType(str, enum.Enum):
    payment = "payment"
    refund = "refund"
    subscription_renewal = "subscription_renewal"


class TransactionStatus(str, enum.Enum):
    pending = "pending"
    completed = "completed"
    failed = "failed"
    refunded = "refunded"


class PaymentFailureReason(str, enum.Enum):
    insufficient_funds = "insufficient_funds"
    card_declined = "card_declined"
    expired_card = "expired_card"
    invalid_card = "invalid_card"
    processing_error = "processing_error"
    fraud_suspected = "fraud_suspected"
    authentication_required = "authentication_required"
    network_error = "network_error"
    unknown = "unknown"


class ResolutionMethod(str, enum.Enum):
    retry_success = "retry_success"
    manual_payment = "manual_payment"
    plan_change = "plan_change"
    cancellation = "cancellation"


class DisputeType(str, enum.Enum):
    chargeback = "chargeback"
    inquiry = "inquiry"
    fraud = "fraud"
    authorization = "authorization"
    processing_error = "processing_error"


class DisputeStatus(str, enum.Enum):
    open = "open"
    under_review = "under_review"
    won = "won"
    lost = "lost"
    closed = "closed"


class DisputePriority(str, enum.Enum):
    low = "low"
    medium = "medium"
    high = "high"


class WorkflowStatus(str, enum.Enum):
    pending = "pending"
    in_progress = "in_progress"
    completed = "completed"


# ── Billing account ──────────────────────────────────────


class BillingAccount(TimestampMixin, Base):
    __tablename__ = "billing_accounts"
    __table_args__ = (
        UniqueConstraint("subscription_id", name="uq_billing_accounts_subscription_id"),
        Index(
            "uq_billing_accounts_user_open",
            "user_id",
            unique=True,
            postgresql_where=text("status != 'canceled'"),
            sqlite_where=text("status != 'canceled'"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True
    )
    customer_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    payment_method_id: Mapped[str | None] = mapped_column(String(255))
    processor_type: Mapped[ProcessorType] = mapped_column(
        Enum(ProcessorType), nullable=False
    )
    plan: Mapped[str | None] = mapped_column(String(80))
    billing_cycle: Mapped[BillingCycle | None] = mapped_column(Enum(BillingCycle))
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    status: Mapped[BillingAccountStatus] = mapped_column(
        Enum(BillingAccountStatus), default=BillingAccountStatus.incomplete
    )
    subscription_id: Mapped[str | None] = mapped_column(String(255))
    next_billing_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), index=True
    )
    trial_ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    canceled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False)
    payment_history: Mapped[list | None] = mapped_column(JSON, default=list)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSON)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    user = relationship("User")
    transactions = relationship("Transaction", back_populates="billing_account")

    def has_access(self, at: datetime) -> bool:
        """Whether premium features remain usable at ``at``.

        Accounts canceled at period end keep access until next_billing_date.
        """
        if self.status in (
            BillingAccountStatus.trialing,
            BillingAccountStatus.active,
            BillingAccountStatus.past_due,
        ):
            return True
        if self.status == BillingAccountStatus.canceled and self.cancel_at_period_end:
            cutoff = self.next_billing_date
            if cutoff is None:
                return False
            if cutoff.tzinfo is None:
                cutoff = cutoff.replace(tzinfo=UTC)
            return at < cutoff
        return False


# ── Transactions ─────────────────────────────────────────


class Transaction(TimestampMixin, Base):
    __tablename__ = "billing_transactions"
    __table_args__ = (
        UniqueConstraint("transaction_id", name="uq_billing_transactions_transaction_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    transaction_id: Mapped[str] = mapped_column(String(80), nullable=False)
    type: Mapped[TransactionType] = mapped_column(Enum(TransactionType), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    status: Mapped[TransactionStatus] = mapped_column(
        Enum(TransactionStatus), default=TransactionStatus.pending
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True
    )
    billing_account_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("billing_accounts.id"), index=True
    )
    processor_transaction_id: Mapped[str | None] = mapped_column(
        String(255), index=True
    )
    original_transaction_id: Mapped[str | None] = mapped_column(String(80))
    fees: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    net_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), default=Decimal("0.00")
    )
    description: Mapped[str | None] = mapped_column(Text)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSON)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    billing_account = relationship("BillingAccount", back_populates="transactions")


# ── Dunning ──────────────────────────────────────────────


class PaymentFailure(TimestampMixin, Base):
    __tablename__ = "payment_failures"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    transaction_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    billing_account_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("billing_accounts.id"), nullable=False, index=True
    )
    subscription_id: Mapped[str | None] = mapped_column(String(255))
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id"), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    reason: Mapped[PaymentFailureReason] = mapped_column(
        Enum(PaymentFailureReason), default=PaymentFailureReason.unknown
    )
    reason_details: Mapped[str | None] = mapped_column(Text)
    attempt_number: Mapped[int] = mapped_column(Integer, default=1)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3)
    next_retry_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), index=True
    )
    grace_period_ends: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    resolved: Mapped[bool] = mapped_column(Boolean, default=False)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    resolution_method: Mapped[ResolutionMethod | None] = mapped_column(
        Enum(ResolutionMethod)
    )
    dunning_campaign: Mapped[str | None] = mapped_column(String(80))


# ── Disputes ─────────────────────────────────────────────


class DisputeCase(TimestampMixin, Base):
    __tablename__ = "dispute_cases"
    __table_args__ = (
        UniqueConstraint("case_number", name="uq_dispute_cases_case_number"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    case_number: Mapped[str] = mapped_column(String(40), nullable=False)
    transaction_id: Mapped[str] = mapped_column(String(80), nullable=False, index=True)
    billing_account_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("billing_accounts.id")
    )
    dispute_type: Mapped[DisputeType] = mapped_column(Enum(DisputeType), nullable=False)
    dispute_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    evidence: Mapped[list | None] = mapped_column(JSON, default=list)
    evidence_submissions: Mapped[list | None] = mapped_column(JSON, default=list)
    evidence_due_by: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    status: Mapped[DisputeStatus] = mapped_column(
        Enum(DisputeStatus), default=DisputeStatus.open
    )
    priority: Mapped[DisputePriority] = mapped_column(
        Enum(DisputePriority), default=DisputePriority.low
    )
    processor_dispute_id: Mapped[str | None] = mapped_column(String(255), index=True)

    workflow = relationship("DisputeWorkflow", back_populates="dispute", uselist=False)


class DisputeWorkflow(TimestampMixin, Base):
    __tablename__ = "dispute_workflows"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    dispute_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("dispute_cases.id"), nullable=False, index=True
    )
    steps: Mapped[list | None] = mapped_column(JSON, default=list)
    current_step: Mapped[str] = mapped_column(String(80), nullable=False)
    status: Mapped[WorkflowStatus] = mapped_column(
        Enum(WorkflowStatus), default=WorkflowStatus.pending
    )
    due_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    dispute = relationship("DisputeCase", back_populates="workflow")


# ── Webhook idempotency ledger ───────────────────────────


class ProcessedWebhookEvent(Base):
    __tablename__ = "processed_webhook_events"
    __table_args__ = (
        UniqueConstraint(
            "processor_type", "event_id", name="uq_processed_webhook_events_event"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    processor_type: Mapped[str] = mapped_column(String(40), nullable=False)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str] = mapped_column(String(120), nullable=False)
    processed: Mapped[bool] = mapped_column(Boolean, default=False)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    error: Mapped[str | None] = mapped_column(Text)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, default=3)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )

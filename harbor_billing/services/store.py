"""SQLAlchemy-backed billing store.

The store is the only component that talks to the session. Services stage
changes through it and decide when a unit of work is committed.
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import exists, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from harbor_billing.errors import StorageError, ValidationError
from harbor_billing.models.billing import (
    BillingAccount,
    BillingAccountStatus,
    DisputeCase,
    PaymentFailure,
    ProcessedWebhookEvent,
    ProcessorType,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from harbor_billing.models.user import User
from harbor_billing.services.common import as_utc, coerce_uuid, utcnow

logger = logging.getLogger(__name__)

ACCOUNT_TRANSITIONS: dict[BillingAccountStatus, set[BillingAccountStatus]] = {
    BillingAccountStatus.incomplete: {
        BillingAccountStatus.trialing,
        BillingAccountStatus.active,
        BillingAccountStatus.canceled,
    },
    BillingAccountStatus.trialing: {
        BillingAccountStatus.active,
        BillingAccountStatus.past_due,
        BillingAccountStatus.canceled,
    },
    BillingAccountStatus.active: {
        BillingAccountStatus.active,
        BillingAccountStatus.past_due,
        BillingAccountStatus.canceled,
    },
    BillingAccountStatus.past_due: {
        BillingAccountStatus.active,
        BillingAccountStatus.past_due,
        BillingAccountStatus.canceled,
    },
    BillingAccountStatus.canceled: {BillingAccountStatus.canceled},
}

TRANSACTION_TRANSITIONS: dict[TransactionStatus, set[TransactionStatus]] = {
    TransactionStatus.pending: {TransactionStatus.completed, TransactionStatus.failed},
    TransactionStatus.completed: {TransactionStatus.refunded},
    TransactionStatus.failed: set(),
    TransactionStatus.refunded: set(),
}

RENEWABLE_STATUSES = (
    BillingAccountStatus.trialing,
    BillingAccountStatus.active,
    BillingAccountStatus.past_due,
)


def _open_failure_exists():
    return exists().where(
        PaymentFailure.billing_account_id == BillingAccount.id,
        PaymentFailure.resolved.is_(False),
    )


class BillingStore:
    def __init__(self, db: Session) -> None:
        self.db = db

    # ── Unit of work ─────────────────────────────────────

    def add(self, item: Any) -> None:
        self.db.add(item)

    def flush(self) -> None:
        try:
            self.db.flush()
        except StaleDataError:
            raise
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StorageError("Failed to write billing records") from exc

    def commit(self) -> None:
        """Commit staged changes.

        StaleDataError is re-raised untouched so callers can tell a lost
        optimistic-concurrency race from a storage outage.
        """
        try:
            self.db.commit()
        except StaleDataError:
            self.db.rollback()
            raise
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Billing commit failed")
            raise StorageError("Failed to persist billing records") from exc

    def rollback(self) -> None:
        self.db.rollback()

    def refresh(self, item: Any) -> None:
        self.db.refresh(item)

    # ── Users ────────────────────────────────────────────

    def get_user(self, user_id: Any) -> User | None:
        try:
            return self.db.get(User, coerce_uuid(user_id))
        except ValueError:
            return None

    # ── Billing accounts ─────────────────────────────────

    def get_billing_account(self, account_id: Any) -> BillingAccount | None:
        try:
            return self.db.get(BillingAccount, coerce_uuid(account_id))
        except ValueError:
            return None

    def get_open_account_for_user(self, user_id: Any) -> BillingAccount | None:
        try:
            user_uuid = coerce_uuid(user_id)
        except ValueError:
            return None
        return self.db.scalars(
            select(BillingAccount)
            .where(BillingAccount.user_id == user_uuid)
            .where(BillingAccount.status != BillingAccountStatus.canceled)
            .order_by(BillingAccount.created_at.desc())
        ).first()

    def get_account_by_subscription(self, subscription_id: str | None) -> BillingAccount | None:
        if not subscription_id:
            return None
        return self.db.scalars(
            select(BillingAccount).where(BillingAccount.subscription_id == subscription_id)
        ).first()

    def get_account_by_customer(self, customer_id: str | None) -> BillingAccount | None:
        if not customer_id:
            return None
        return self.db.scalars(
            select(BillingAccount)
            .where(BillingAccount.customer_id == customer_id)
            .order_by(BillingAccount.created_at.desc())
        ).first()

    def lock_billing_account(self, account_id: Any) -> BillingAccount | None:
        """Load the account row with SELECT ... FOR UPDATE and fresh column values."""
        return self.db.scalars(
            select(BillingAccount)
            .where(BillingAccount.id == coerce_uuid(account_id))
            .with_for_update()
            .execution_options(populate_existing=True)
        ).first()

    def billing_account_ids_due_for_renewal(
        self,
        now: datetime,
        processor_type: ProcessorType | None = None,
        limit: int | None = None,
    ) -> list[uuid.UUID]:
        stmt = (
            select(BillingAccount.id)
            .where(BillingAccount.next_billing_date.is_not(None))
            .where(BillingAccount.next_billing_date <= now)
            .where(BillingAccount.status.in_(RENEWABLE_STATUSES))
            .where(BillingAccount.subscription_id.is_not(None))
            .where(~_open_failure_exists())
            .order_by(BillingAccount.next_billing_date.asc())
        )
        if processor_type is not None:
            stmt = stmt.where(BillingAccount.processor_type == processor_type)
        if limit:
            stmt = stmt.limit(limit)
        return list(self.db.scalars(stmt).all())

    def is_due_for_renewal(self, account: BillingAccount, now: datetime) -> bool:
        next_billing = as_utc(account.next_billing_date)
        return (
            account.status in RENEWABLE_STATUSES
            and account.subscription_id is not None
            and next_billing is not None
            and next_billing <= now
            and self.open_failure_for_account(account.id) is None
        )

    def transition_account(
        self, account: BillingAccount, target: BillingAccountStatus
    ) -> None:
        current = BillingAccountStatus(account.status)
        if target not in ACCOUNT_TRANSITIONS.get(current, set()):
            raise ValidationError(
                f"Cannot move billing account from {current.value} to {target.value}",
                code="INVALID_STATUS_TRANSITION",
            )
        account.status = target

    def append_payment_history(self, account: BillingAccount, transaction_id: str) -> None:
        # reassign so the JSON column is flagged dirty
        account.payment_history = [*(account.payment_history or []), transaction_id]

    # ── Transactions ─────────────────────────────────────

    def get_transaction(self, transaction_id: str | None) -> Transaction | None:
        if not transaction_id:
            return None
        return self.db.scalars(
            select(Transaction).where(Transaction.transaction_id == transaction_id)
        ).first()

    def get_transaction_by_processor_id(
        self, processor_transaction_id: str | None
    ) -> Transaction | None:
        if not processor_transaction_id:
            return None
        return self.db.scalars(
            select(Transaction)
            .where(Transaction.processor_transaction_id == processor_transaction_id)
            .where(Transaction.type != TransactionType.refund)
        ).first()

    def find_transaction(self, reference: str | None) -> Transaction | None:
        """Look a transaction up by public id, then by processor id."""
        return self.get_transaction(reference) or self.get_transaction_by_processor_id(
            reference
        )

    def latest_completed_charge(self, account_id: Any) -> Transaction | None:
        return self.db.scalars(
            select(Transaction)
            .where(Transaction.billing_account_id == coerce_uuid(account_id))
            .where(Transaction.status == TransactionStatus.completed)
            .where(Transaction.type != TransactionType.refund)
            .order_by(Transaction.created_at.desc())
        ).first()

    def refunded_total(self, transaction_id: str) -> Decimal:
        refunds = self.db.scalars(
            select(Transaction.amount)
            .where(Transaction.original_transaction_id == transaction_id)
            .where(Transaction.type == TransactionType.refund)
            .where(Transaction.status != TransactionStatus.failed)
        ).all()
        return sum((Decimal(amount) for amount in refunds), Decimal("0.00"))

    def transition_transaction(
        self, transaction: Transaction, target: TransactionStatus
    ) -> bool:
        """Apply a transaction status move. Returns False for a no-op repeat."""
        current = TransactionStatus(transaction.status)
        if current == target:
            return False
        if target not in TRANSACTION_TRANSITIONS[current]:
            raise ValidationError(
                f"Cannot move transaction from {current.value} to {target.value}",
                code="INVALID_STATUS_TRANSITION",
            )
        transaction.status = target
        if target in (TransactionStatus.completed, TransactionStatus.failed):
            transaction.completed_at = utcnow()
        return True

    # ── Payment failures ─────────────────────────────────

    def get_payment_failure(self, failure_id: Any) -> PaymentFailure | None:
        try:
            return self.db.get(PaymentFailure, coerce_uuid(failure_id))
        except ValueError:
            return None

    def open_failure_for_transaction(self, transaction_id: str) -> PaymentFailure | None:
        return self.db.scalars(
            select(PaymentFailure)
            .where(PaymentFailure.transaction_id == transaction_id)
            .where(PaymentFailure.resolved.is_(False))
        ).first()

    def open_failure_for_account(self, account_id: Any) -> PaymentFailure | None:
        return self.db.scalars(
            select(PaymentFailure)
            .where(PaymentFailure.billing_account_id == coerce_uuid(account_id))
            .where(PaymentFailure.resolved.is_(False))
            .order_by(PaymentFailure.created_at.desc())
        ).first()

    def open_failures_for_account(self, account_id: Any) -> list[PaymentFailure]:
        return list(
            self.db.scalars(
                select(PaymentFailure)
                .where(PaymentFailure.billing_account_id == coerce_uuid(account_id))
                .where(PaymentFailure.resolved.is_(False))
            ).all()
        )

    def failure_ids_due_for_retry(
        self,
        now: datetime,
        processor_type: ProcessorType | None = None,
        limit: int | None = None,
    ) -> list[uuid.UUID]:
        stmt = (
            select(PaymentFailure.id)
            .where(PaymentFailure.resolved.is_(False))
            .where(PaymentFailure.next_retry_at.is_not(None))
            .where(PaymentFailure.next_retry_at <= now)
            .order_by(PaymentFailure.next_retry_at.asc())
        )
        if processor_type is not None:
            stmt = stmt.join(
                BillingAccount, BillingAccount.id == PaymentFailure.billing_account_id
            ).where(BillingAccount.processor_type == processor_type)
        if limit:
            stmt = stmt.limit(limit)
        return list(self.db.scalars(stmt).all())

    def failures_past_grace(self, now: datetime) -> list[PaymentFailure]:
        return list(
            self.db.scalars(
                select(PaymentFailure)
                .where(PaymentFailure.resolved.is_(False))
                .where(PaymentFailure.grace_period_ends.is_not(None))
                .where(PaymentFailure.grace_period_ends <= now)
            ).all()
        )

    # ── Disputes ─────────────────────────────────────────

    def get_dispute(self, dispute_id: Any) -> DisputeCase | None:
        try:
            return self.db.get(DisputeCase, coerce_uuid(dispute_id))
        except ValueError:
            return None

    def get_dispute_by_processor_id(self, processor_dispute_id: str | None) -> DisputeCase | None:
        if not processor_dispute_id:
            return None
        return self.db.scalars(
            select(DisputeCase).where(DisputeCase.processor_dispute_id == processor_dispute_id)
        ).first()

    # ── Webhook ledger ───────────────────────────────────

    def get_processed_event(
        self, processor_type: str, event_id: str
    ) -> ProcessedWebhookEvent | None:
        return self.db.scalars(
            select(ProcessedWebhookEvent)
            .where(ProcessedWebhookEvent.processor_type == processor_type)
            .where(ProcessedWebhookEvent.event_id == event_id)
        ).first()

    def record_processed_event(
        self,
        processor_type: str,
        event_id: str,
        event_type: str,
        error: str | None = None,
    ) -> ProcessedWebhookEvent:
        """Stage the ledger row for an event.

        The row marks the event processed even when handling failed, so a
        redelivery is a no-op; ``error`` keeps the failure text for ops.
        """
        record = ProcessedWebhookEvent(
            processor_type=processor_type,
            event_id=event_id,
            event_type=event_type,
            processed=True,
            processed_at=utcnow(),
            error=error,
            retry_count=0,
        )
        self.db.add(record)
        return record

    def note_redelivery(self, record: ProcessedWebhookEvent) -> None:
        """Count a redelivery of an event whose handling failed."""
        record.retry_count = (record.retry_count or 0) + 1
        self.db.add(record)

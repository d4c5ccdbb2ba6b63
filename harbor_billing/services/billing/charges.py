"""Charge and refund bookkeeping around processor calls.

Every charge is written as a pending Transaction before the processor is
called and only moves once the processor has answered.
"""
from __future__ import annotations

import logging
from decimal import Decimal

import httpx

from harbor_billing.config import settings
from harbor_billing.errors import ProcessorError, ValidationError
from harbor_billing.models.billing import (
    BillingAccount,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from harbor_billing.services.common import generate_public_id, to_money
from harbor_billing.services.processors import (
    PaymentProcessor,
    PaymentResult,
    PaymentStatus,
)
from harbor_billing.services.store import BillingStore

logger = logging.getLogger(__name__)


def compute_fees(amount: Decimal) -> tuple[Decimal, Decimal]:
    """Return (fees, net) for a charge of ``amount``."""
    percent = Decimal(settings.processor_fee_percent)
    fixed = Decimal(settings.processor_fee_fixed)
    fees = to_money(amount * percent / Decimal(100) + fixed)
    return fees, to_money(amount - fees)


def _unknown_outcome_code(exc: ProcessorError) -> str:
    if isinstance(exc.__cause__, httpx.TransportError):
        return "network_error"
    return "processing_error"


class Charges:
    def __init__(self, store: BillingStore, processor: PaymentProcessor) -> None:
        self.store = store
        self.processor = processor

    def charge(
        self,
        account: BillingAccount,
        amount: Decimal,
        type_: TransactionType,
        description: str,
        *,
        metadata: dict[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> tuple[Transaction, PaymentResult]:
        """Charge the account's payment method.

        A transport failure or processor error leaves the transaction pending
        and is reported as a pending result carrying a failure code, because
        the outcome at the processor is unknown.
        """
        amount = to_money(amount)
        fees, net = compute_fees(amount)
        txn = Transaction(
            transaction_id=generate_public_id("txn"),
            type=type_,
            amount=amount,
            currency=account.currency,
            status=TransactionStatus.pending,
            user_id=account.user_id,
            billing_account_id=account.id,
            fees=fees,
            net_amount=net,
            description=description,
            metadata_=dict(metadata or {}),
        )
        self.store.add(txn)
        self.store.append_payment_history(account, txn.transaction_id)
        self.store.flush()

        processor_metadata = {
            "type": type_.value,
            "transaction_id": txn.transaction_id,
            "billing_account_id": str(account.id),
            "subscription_id": account.subscription_id or "",
            "customer_id": account.customer_id,
            **(metadata or {}),
        }
        try:
            result = self.processor.process_payment(
                amount,
                account.currency,
                account.payment_method_id,
                processor_metadata,
                idempotency_key=idempotency_key or txn.transaction_id,
            )
        except ProcessorError as exc:
            logger.warning(
                "Charge %s outcome unknown: %s",
                txn.transaction_id,
                exc,
                extra={"billing_account_id": str(account.id)},
            )
            txn.metadata_ = {**(txn.metadata_ or {}), "processor_error": str(exc)}
            return txn, PaymentResult(
                transaction_id="",
                status=PaymentStatus.pending,
                failure_code=_unknown_outcome_code(exc),
                failure_message=str(exc),
            )

        txn.processor_transaction_id = result.transaction_id or None
        if result.status == PaymentStatus.succeeded:
            self.store.transition_transaction(txn, TransactionStatus.completed)
        elif result.status == PaymentStatus.failed:
            self.store.transition_transaction(txn, TransactionStatus.failed)
            txn.metadata_ = {
                **(txn.metadata_ or {}),
                "failure_code": result.failure_code,
                "failure_message": result.failure_message,
            }
        logger.info(
            "Charge %s for %s %s: %s",
            txn.transaction_id,
            amount,
            account.currency,
            result.status.value,
            extra={"billing_account_id": str(account.id)},
        )
        return txn, result

    def refund(
        self,
        original: Transaction,
        amount: Decimal | None = None,
        reason: str | None = None,
    ) -> Transaction:
        """Refund all or part of a completed charge."""
        if original.type == TransactionType.refund:
            raise ValidationError("Refund transactions cannot be refunded")
        if original.status != TransactionStatus.completed:
            raise ValidationError(
                "Only completed transactions can be refunded",
                code="INVALID_REFUND_AMOUNT",
            )
        if not original.processor_transaction_id:
            raise ValidationError("Transaction has no processor reference")
        already_refunded = self.store.refunded_total(original.transaction_id)
        refundable = to_money(Decimal(original.amount) - already_refunded)
        amount = refundable if amount is None else to_money(amount)
        if amount <= 0 or amount > refundable:
            raise ValidationError(
                f"Refund amount must be between 0.01 and {refundable}",
                code="INVALID_REFUND_AMOUNT",
            )

        result = self.processor.process_refund(
            original.processor_transaction_id,
            amount,
            reason,
            currency=original.currency,
        )
        refund = Transaction(
            transaction_id=generate_public_id("rfd"),
            type=TransactionType.refund,
            amount=amount,
            currency=original.currency,
            status=TransactionStatus.pending,
            user_id=original.user_id,
            billing_account_id=original.billing_account_id,
            processor_transaction_id=result.refund_id,
            original_transaction_id=original.transaction_id,
            fees=Decimal("0.00"),
            net_amount=amount,
            description=f"Refund of {original.transaction_id}",
            metadata_={"reason": reason, "processor_status": result.status},
        )
        if result.status != "failed":
            self.store.transition_transaction(refund, TransactionStatus.completed)
        else:
            self.store.transition_transaction(refund, TransactionStatus.failed)
        self.store.add(refund)
        if result.status != "failed" and amount == refundable:
            self.store.transition_transaction(original, TransactionStatus.refunded)
        logger.info(
            "Refunded %s %s of %s (%s)",
            amount,
            original.currency,
            original.transaction_id,
            result.refund_id,
        )
        return refund

"""Processor webhook intake.

Every verified event is recorded in the processed-events ledger in the same
database transaction as the business changes it causes, so a redelivered
event id is answered as a duplicate without touching billing state.
"""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

from sqlalchemy.orm.exc import StaleDataError

from harbor_billing.errors import SignatureError, StorageError, ValidationError
from harbor_billing.metrics import WEBHOOK_EVENTS
from harbor_billing.models.billing import (
    BillingAccount,
    ProcessedWebhookEvent,
    ResolutionMethod,
    Transaction,
    TransactionStatus,
)
from harbor_billing.services.billing.payment_failures import (
    DEFAULT_EVIDENCE_TAGS,
    PaymentFailureHandler,
)
from harbor_billing.services.billing.subscriptions import SubscriptionManager
from harbor_billing.services.common import to_money
from harbor_billing.services.processors import (
    PaymentProcessor,
    WebhookAction,
    WebhookEvent,
    WebhookResult,
    map_failure_reason,
)
from harbor_billing.services.store import BillingStore

logger = logging.getLogger(__name__)

_STALE_ATTEMPTS = 2


def _error(status: int, code: str, message: str) -> tuple[int, dict[str, Any]]:
    return status, {"code": code, "message": message}


class WebhookHandler:
    def __init__(
        self,
        store: BillingStore,
        processor: PaymentProcessor,
        subscription_manager: SubscriptionManager | None = None,
        failure_handler: PaymentFailureHandler | None = None,
    ) -> None:
        self.store = store
        self.processor = processor
        self.failure_handler = failure_handler or PaymentFailureHandler(store, processor)
        self.subscription_manager = subscription_manager or SubscriptionManager(
            store, processor, failure_handler=self.failure_handler
        )

    @property
    def processor_type(self) -> str:
        return self.processor.processor_type.value

    def handle_webhook(
        self,
        processor_type: str,
        raw_body: bytes | None,
        signature: str | None,
    ) -> tuple[int, dict[str, Any]]:
        """Verify, de-duplicate and apply one webhook delivery.

        Returns ``(status_code, body)``.
        """
        if processor_type != self.processor_type:
            return _error(400, "INVALID_WEBHOOK", f"Unexpected processor {processor_type}")
        if not raw_body or not signature:
            WEBHOOK_EVENTS.labels(processor_type, "invalid").inc()
            return _error(400, "INVALID_WEBHOOK", "Missing webhook body or signature")
        try:
            event = self.processor.construct_webhook_event(raw_body, signature)
        except SignatureError as exc:
            WEBHOOK_EVENTS.labels(processor_type, "invalid_signature").inc()
            logger.warning("Rejected %s webhook: %s", processor_type, exc)
            return _error(401, "INVALID_SIGNATURE", str(exc))
        except ValidationError as exc:
            WEBHOOK_EVENTS.labels(processor_type, "invalid").inc()
            logger.warning("Malformed %s webhook: %s", processor_type, exc)
            return _error(400, exc.code, str(exc))

        existing = self.store.get_processed_event(processor_type, event.id)
        if existing is not None:
            return self._duplicate(processor_type, event, existing)

        for attempt in range(1, _STALE_ATTEMPTS + 1):
            result, error = self._apply(event)
            try:
                self.store.record_processed_event(
                    processor_type, event.id, event.type, error=error
                )
                self.store.commit()
                break
            except StaleDataError:
                logger.warning(
                    "Webhook %s lost a concurrent update (attempt %d)",
                    event.id,
                    attempt,
                    extra={"event_id": event.id},
                )
            except StorageError:
                return self._ledger_failure(processor_type, event)
        else:
            # the account kept changing underneath; keep the event for ops
            error = "Billing account was updated concurrently"
            try:
                self.store.record_processed_event(
                    processor_type, event.id, event.type, error=error
                )
                self.store.commit()
            except (StaleDataError, StorageError):
                return self._ledger_failure(processor_type, event)

        processed = error is None and result.handled
        outcome = "error" if error else ("processed" if result.handled else "ignored")
        WEBHOOK_EVENTS.labels(processor_type, outcome).inc()
        logger.info(
            "Webhook %s %s: %s",
            event.id,
            event.type,
            outcome,
            extra={"event_id": event.id},
        )
        return 200, {"received": True, "processed": processed, "action": result.action.value}

    def _apply(self, event: WebhookEvent) -> tuple[WebhookResult, str | None]:
        """Normalize and dispatch one event; failures roll back and return the error."""
        result = WebhookResult(False)
        try:
            result = self.processor.handle_webhook_event(event)
            if result.handled:
                self._dispatch(result)
        except Exception as exc:
            self.store.rollback()
            logger.exception(
                "Failed to apply %s webhook %s (%s)",
                self.processor_type,
                event.id,
                event.type,
                extra={"event_id": event.id},
            )
            return result, str(exc) or exc.__class__.__name__
        return result, None

    def _duplicate(
        self, processor_type: str, event: WebhookEvent, record: ProcessedWebhookEvent
    ) -> tuple[int, dict[str, Any]]:
        if record.error:
            self.store.note_redelivery(record)
            self.store.commit()
        WEBHOOK_EVENTS.labels(processor_type, "duplicate").inc()
        logger.info(
            "Duplicate %s webhook %s", processor_type, event.id, extra={"event_id": event.id}
        )
        return 200, {"received": True, "duplicate": True}

    def _ledger_failure(
        self, processor_type: str, event: WebhookEvent
    ) -> tuple[int, dict[str, Any]]:
        # a concurrent delivery of the same event won the unique constraint
        winner = self.store.get_processed_event(processor_type, event.id)
        if winner is not None:
            WEBHOOK_EVENTS.labels(processor_type, "duplicate").inc()
            return 200, {"received": True, "duplicate": True}
        WEBHOOK_EVENTS.labels(processor_type, "error").inc()
        logger.error("Could not record %s webhook %s", processor_type, event.id)
        return _error(500, "WEBHOOK_ERROR", "Failed to record webhook event")

    # ── Dispatch ─────────────────────────────────────────

    def _dispatch(self, result: WebhookResult) -> None:
        data = result.data
        match result.action:
            case WebhookAction.payment_succeeded:
                self._payment_succeeded(data)
            case WebhookAction.payment_failed:
                self._payment_failed(data)
            case WebhookAction.invoice_payment_succeeded:
                self.subscription_manager.record_processor_renewal(
                    data.get("subscription_id"), data.get("period_end")
                )
            case WebhookAction.invoice_payment_failed:
                self._invoice_payment_failed(data)
            case WebhookAction.subscription_created | WebhookAction.subscription_updated:
                self.subscription_manager.sync_processor_subscription(
                    data.get("subscription_id"),
                    data.get("status"),
                    data.get("current_period_end"),
                    data.get("cancel_at_period_end"),
                )
            case WebhookAction.subscription_deleted:
                self.subscription_manager.handle_processor_cancellation(
                    data.get("subscription_id"), data.get("canceled_at")
                )
            case WebhookAction.dispute_created:
                self._dispute_created(data)
            case _:
                logger.debug("No handler for webhook action %s", result.action.value)

    def _find_transaction(self, data: dict[str, Any]) -> Transaction | None:
        txn = self.store.get_transaction_by_processor_id(data.get("processor_transaction_id"))
        if txn is None:
            txn = self.store.get_transaction((data.get("metadata") or {}).get("transaction_id"))
        return txn

    def _account_for(
        self, data: dict[str, Any], txn: Transaction | None = None
    ) -> BillingAccount | None:
        if txn is not None and txn.billing_account_id:
            return self.store.get_billing_account(txn.billing_account_id)
        metadata = data.get("metadata") or {}
        return (
            self.store.get_billing_account(metadata.get("billing_account_id"))
            or self.store.get_account_by_subscription(data.get("subscription_id"))
            or self.store.get_account_by_customer(data.get("customer_id"))
        )

    def _payment_succeeded(self, data: dict[str, Any]) -> None:
        txn = self._find_transaction(data)
        if txn is None:
            logger.info(
                "Payment %s has no local transaction", data.get("processor_transaction_id")
            )
            return
        if not txn.processor_transaction_id:
            txn.processor_transaction_id = data.get("processor_transaction_id")
        self.store.transition_transaction(txn, TransactionStatus.completed)

        failure = self.store.open_failure_for_transaction(txn.transaction_id)
        if failure is None:
            failure = self.store.get_payment_failure(
                (txn.metadata_ or {}).get("payment_failure_id")
            )
        if failure is not None and not failure.resolved:
            self.failure_handler.resolve_failure(failure, ResolutionMethod.retry_success)

    def _payment_failed(self, data: dict[str, Any]) -> None:
        txn = self._find_transaction(data)
        if txn is None:
            logger.info(
                "Failed payment %s has no local transaction",
                data.get("processor_transaction_id"),
            )
            return
        if not txn.processor_transaction_id:
            txn.processor_transaction_id = data.get("processor_transaction_id")
        self.store.transition_transaction(txn, TransactionStatus.failed)
        account = self._account_for(data, txn)
        if account is None:
            return
        if (txn.metadata_ or {}).get("payment_failure_id"):
            # retry charges are rescheduled by the retry sweep
            return
        self.failure_handler.open_failure(
            account,
            txn.transaction_id,
            map_failure_reason(data.get("failure_code")),
            data.get("failure_message"),
            amount=txn.amount,
        )

    def _invoice_payment_failed(self, data: dict[str, Any]) -> None:
        account = self._account_for(data)
        if account is None:
            logger.info("Invoice %s has no billing account", data.get("invoice_id"))
            return
        amount = data.get("amount")
        self.failure_handler.open_failure(
            account,
            f"invoice_{data.get('invoice_id')}",
            map_failure_reason(data.get("failure_code")),
            data.get("failure_message"),
            amount=to_money(amount) if amount is not None else None,
        )

    def _dispute_created(self, data: dict[str, Any]) -> None:
        self.failure_handler.open_dispute_case(
            data.get("processor_transaction_id"),
            data.get("dispute_type"),
            Decimal(str(data.get("amount") or "0")),
            list(DEFAULT_EVIDENCE_TAGS),
            data.get("evidence_due_by"),
            data.get("processor_dispute_id"),
        )

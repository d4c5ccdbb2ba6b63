"""Payment failure handling: dunning, retry scheduling and disputes."""
from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy.orm.exc import StaleDataError

from harbor_billing.config import parse_retry_delays, settings
from harbor_billing.errors import (
    BillingAccountNotFound,
    DisputeNotFound,
    PaymentFailureNotFound,
    TransactionNotFound,
    ValidationError,
)
from harbor_billing.metrics import PAYMENT_RETRIES
from harbor_billing.models.billing import (
    BillingAccount,
    BillingAccountStatus,
    DisputeCase,
    DisputePriority,
    DisputeStatus,
    DisputeType,
    DisputeWorkflow,
    PaymentFailure,
    PaymentFailureReason,
    ResolutionMethod,
    TransactionType,
    WorkflowStatus,
)
from harbor_billing.services.billing import membership
from harbor_billing.services.billing.charges import Charges
from harbor_billing.services.common import (
    advance_billing_date,
    as_utc,
    to_money,
    utcnow,
)
from harbor_billing.services.processors import (
    PaymentProcessor,
    PaymentStatus,
)
from harbor_billing.services.processors import (
    map_failure_reason as map_processor_failure_reason,
)
from harbor_billing.services.store import BillingStore

logger = logging.getLogger(__name__)

DUNNING_CAMPAIGNS: dict[str, dict[str, Any]] = {
    "standard_dunning": {
        "reasons": {
            PaymentFailureReason.insufficient_funds,
            PaymentFailureReason.card_declined,
            PaymentFailureReason.expired_card,
        },
        "steps": [
            {"delay_hours": 0, "action": "email", "template": "payment_failed_immediate"},
            {"delay_hours": 24, "action": "email", "template": "payment_failed_reminder"},
            {"delay_hours": 72, "action": "email", "template": "payment_failed_urgent"},
            {"delay_hours": 168, "action": "suspend_premium", "template": "premium_suspended"},
        ],
    },
    "fraud_dunning": {
        "reasons": {PaymentFailureReason.fraud_suspected},
        "steps": [
            {"delay_hours": 0, "action": "suspend_premium", "template": "account_security_review"},
            {"delay_hours": 0, "action": "email", "template": "fraud_detected"},
        ],
    },
}

DEFAULT_EVIDENCE_TAGS = ("receipt", "communication", "shipping")

_REACTIVATING_RESOLUTIONS = (
    ResolutionMethod.retry_success,
    ResolutionMethod.manual_payment,
)


def campaign_for(reason: PaymentFailureReason) -> str | None:
    for name, campaign in DUNNING_CAMPAIGNS.items():
        if reason in campaign["reasons"]:
            return name
    return None


def dispute_priority(amount: Decimal) -> DisputePriority:
    if amount > 1000:
        return DisputePriority.high
    if amount > 500:
        return DisputePriority.medium
    return DisputePriority.low


def _case_number(now: datetime) -> str:
    return f"DISP-{int(now.timestamp() * 1000)}-{secrets.token_hex(3).upper()}"


class PaymentFailureHandler:
    def __init__(
        self,
        store: BillingStore,
        processor: PaymentProcessor,
        max_attempts: int | None = None,
        retry_delays_days: tuple[int, ...] | None = None,
        grace_period_days: int | None = None,
    ) -> None:
        delays = retry_delays_days or parse_retry_delays(settings.dunning_retry_delays_days)
        if any(delay <= 0 for delay in delays):
            raise ValueError("Retry delays must be positive")
        if any(later <= earlier for earlier, later in zip(delays, delays[1:])):
            raise ValueError("Retry delays must be strictly increasing")
        self.store = store
        self.processor = processor
        self.charges = Charges(store, processor)
        self.max_attempts = max_attempts or settings.dunning_max_attempts
        self.retry_delays_days = tuple(delays)
        self.grace_period_days = (
            settings.dunning_grace_period_days if grace_period_days is None else grace_period_days
        )

    @staticmethod
    def map_failure_reason(code: str | None) -> PaymentFailureReason:
        return map_processor_failure_reason(code)

    def retry_delay(self, attempt_number: int) -> timedelta:
        """Delay before the retry that follows ``attempt_number``.

        Beyond the configured list the last delay doubles per extra attempt.
        """
        delays = self.retry_delays_days
        if attempt_number <= len(delays):
            days = delays[max(attempt_number, 1) - 1]
        else:
            days = delays[-1] * 2 ** (attempt_number - len(delays))
        return timedelta(days=days)

    # ── Failure intake ───────────────────────────────────

    def open_failure(
        self,
        account: BillingAccount,
        transaction_id: str,
        reason: PaymentFailureReason,
        message: str | None = None,
        amount: Decimal | None = None,
    ) -> PaymentFailure:
        """Stage a failure record and start dunning. Does not commit."""
        existing = self.store.open_failure_for_transaction(transaction_id)
        if existing is not None:
            return existing

        now = utcnow()
        failure = PaymentFailure(
            transaction_id=transaction_id,
            billing_account_id=account.id,
            subscription_id=account.subscription_id,
            user_id=account.user_id,
            amount=to_money(account.amount if amount is None else amount),
            currency=account.currency,
            reason=reason,
            reason_details=message,
            attempt_number=1,
            max_attempts=self.max_attempts,
            next_retry_at=now + self.retry_delay(1),
            grace_period_ends=now + timedelta(days=self.grace_period_days),
            resolved=False,
            dunning_campaign=campaign_for(reason),
        )
        self.store.add(failure)
        if account.status != BillingAccountStatus.canceled:
            self.store.transition_account(account, BillingAccountStatus.past_due)
        self._start_dunning(account, failure)
        self.store.flush()
        logger.warning(
            "Payment failure recorded for %s: %s",
            transaction_id,
            reason.value,
            extra={
                "billing_account_id": str(account.id),
                "transaction_id": transaction_id,
            },
        )
        return failure

    def _start_dunning(self, account: BillingAccount, failure: PaymentFailure) -> None:
        if not failure.dunning_campaign:
            return
        for step in DUNNING_CAMPAIGNS[failure.dunning_campaign]["steps"]:
            if step["delay_hours"]:
                continue
            if step["action"] == "suspend_premium":
                if account.user is not None:
                    membership.suspend(account.user)
            else:
                logger.info(
                    "Dunning %s for user %s: %s",
                    step["action"],
                    account.user_id,
                    step["template"],
                    extra={"billing_account_id": str(account.id)},
                )

    def handle_payment_failure(
        self,
        transaction_id: str,
        billing_account_id: Any,
        reason: PaymentFailureReason | str,
        message: str | None = None,
    ) -> PaymentFailure:
        account = self.store.get_billing_account(billing_account_id)
        if account is None:
            raise BillingAccountNotFound("Billing account not found")
        failure = self.open_failure(
            account, transaction_id, PaymentFailureReason(reason), message
        )
        self.store.commit()
        return failure

    # ── Retries ──────────────────────────────────────────

    def process_retry_attempts(self, now: datetime | None = None) -> dict[str, int]:
        now = now or utcnow()
        summary = {
            "processed": 0,
            "recovered": 0,
            "rescheduled": 0,
            "exhausted": 0,
            "skipped": 0,
            "errors": 0,
        }
        for failure_id in self.store.failure_ids_due_for_retry(
            now, self.processor.processor_type
        ):
            summary["processed"] += 1
            try:
                outcome = self._retry_failure(failure_id, now)
            except StaleDataError:
                self.store.rollback()
                logger.warning("Payment failure %s changed concurrently; skipping", failure_id)
                outcome = "skipped"
            except Exception:
                self.store.rollback()
                logger.exception("Retry of payment failure %s failed", failure_id)
                outcome = "error"
            PAYMENT_RETRIES.labels(outcome).inc()
            if outcome == "error":
                summary["errors"] += 1
            else:
                summary[outcome] += 1
        summary["suspended"] = self._suspend_past_grace(now)
        logger.info("Payment retry sweep finished: %s", summary)
        return summary

    def _retry_failure(self, failure_id: Any, now: datetime) -> str:
        failure = self.store.get_payment_failure(failure_id)
        if failure is None or failure.resolved:
            return "skipped"
        next_retry = as_utc(failure.next_retry_at)
        if next_retry is None or next_retry > now:
            return "skipped"
        account = self.store.lock_billing_account(failure.billing_account_id)
        if account is None:
            raise BillingAccountNotFound("Billing account not found")
        if account.status == BillingAccountStatus.canceled:
            self._resolve(failure, ResolutionMethod.cancellation, now)
            self.store.commit()
            return "skipped"

        attempt = failure.attempt_number
        txn, result = self.charges.charge(
            account,
            failure.amount,
            TransactionType.subscription_renewal,
            f"Payment retry {attempt} for {failure.transaction_id}",
            metadata={"payment_failure_id": str(failure.id), "retry_attempt": str(attempt)},
            idempotency_key=f"retry-{failure.id}-{attempt}",
        )
        if result.status == PaymentStatus.succeeded:
            self._resolve(failure, ResolutionMethod.retry_success, now)
            self._reactivate(account, now)
            self.store.commit()
            logger.info(
                "Payment retry recovered %s",
                failure.transaction_id,
                extra={"billing_account_id": str(account.id), "transaction_id": txn.transaction_id},
            )
            return "recovered"

        if failure.attempt_number < failure.max_attempts:
            failure.attempt_number += 1
            failure.next_retry_at = now + self.retry_delay(failure.attempt_number)
            outcome = "rescheduled"
        else:
            failure.next_retry_at = None
            outcome = "exhausted"
        if result.failure_code:
            failure.reason_details = result.failure_message or result.failure_code
        self.store.commit()
        logger.warning(
            "Payment retry for %s %s (attempt %s of %s)",
            failure.transaction_id,
            outcome,
            failure.attempt_number,
            failure.max_attempts,
            extra={"billing_account_id": str(account.id)},
        )
        return outcome

    def _suspend_past_grace(self, now: datetime) -> int:
        suspended = 0
        for failure in self.store.failures_past_grace(now):
            user = self.store.get_user(failure.user_id)
            if user is None or not user.premium_active:
                continue
            membership.suspend(user)
            suspended += 1
        if suspended:
            self.store.commit()
        return suspended

    def _reactivate(self, account: BillingAccount, now: datetime) -> None:
        if account.status == BillingAccountStatus.past_due:
            self.store.transition_account(account, BillingAccountStatus.active)
        next_billing = as_utc(account.next_billing_date)
        if next_billing is not None and next_billing <= now and account.billing_cycle:
            account.next_billing_date = advance_billing_date(next_billing, account.billing_cycle)
        if account.user is not None:
            membership.extend(account.user, account.next_billing_date)

    # ── Resolution ───────────────────────────────────────

    def _resolve(
        self, failure: PaymentFailure, method: ResolutionMethod, now: datetime | None = None
    ) -> None:
        failure.resolved = True
        failure.resolved_at = now or utcnow()
        failure.resolution_method = method
        failure.next_retry_at = None

    def resolve_open_failures(
        self, account: BillingAccount, method: ResolutionMethod
    ) -> list[PaymentFailure]:
        """Resolve every open failure on the account. Does not commit."""
        failures = self.store.open_failures_for_account(account.id)
        for failure in failures:
            self._resolve(failure, method)
        return failures

    def resolve_failure(
        self, failure: PaymentFailure, method: ResolutionMethod
    ) -> None:
        """Resolve one failure and reactivate its account. Does not commit."""
        self._resolve(failure, method)
        if method not in _REACTIVATING_RESOLUTIONS:
            return
        account = self.store.get_billing_account(failure.billing_account_id)
        if account is not None and account.status == BillingAccountStatus.past_due:
            self._reactivate(account, utcnow())

    def resolve_payment_failure(
        self, failure_id: Any, resolution_method: ResolutionMethod | str
    ) -> PaymentFailure:
        failure = self.store.get_payment_failure(failure_id)
        if failure is None:
            raise PaymentFailureNotFound("Payment failure not found")
        if failure.resolved:
            return failure
        self.resolve_failure(failure, ResolutionMethod(resolution_method))
        self.store.commit()
        return failure

    def escalate_to_cancellation(self, failure_id: Any) -> PaymentFailure:
        failure = self.store.get_payment_failure(failure_id)
        if failure is None:
            raise PaymentFailureNotFound("Payment failure not found")
        account = self.store.get_billing_account(failure.billing_account_id)
        if account is None:
            raise BillingAccountNotFound("Billing account not found")
        if account.subscription_id and account.status != BillingAccountStatus.canceled:
            self.processor.cancel_subscription(account.subscription_id)
        now = utcnow()
        self.store.transition_account(account, BillingAccountStatus.canceled)
        account.canceled_at = account.canceled_at or now
        account.cancel_at_period_end = False
        self._resolve(failure, ResolutionMethod.cancellation, now)
        if account.user is not None:
            membership.downgrade(account.user)
        self.store.commit()
        logger.warning(
            "Escalated payment failure %s to cancellation",
            failure.id,
            extra={"billing_account_id": str(account.id)},
        )
        return failure

    # ── Disputes ─────────────────────────────────────────

    def open_dispute_case(
        self,
        transaction_id: str,
        dispute_type: DisputeType | str,
        dispute_amount: Decimal,
        evidence_tags: list[str] | tuple[str, ...] | None = None,
        evidence_due_by: datetime | None = None,
        processor_dispute_id: str | None = None,
    ) -> DisputeCase:
        """Stage a dispute case with its workflow. Does not commit."""
        existing = self.store.get_dispute_by_processor_id(processor_dispute_id)
        if existing is not None:
            return existing
        txn = self.store.find_transaction(transaction_id)
        if txn is None:
            raise TransactionNotFound(f"Transaction {transaction_id} not found")

        now = utcnow()
        due = as_utc(evidence_due_by) or now + timedelta(days=7)
        amount = to_money(dispute_amount)
        case = DisputeCase(
            case_number=_case_number(now),
            transaction_id=txn.transaction_id,
            billing_account_id=txn.billing_account_id,
            dispute_type=DisputeType(dispute_type),
            dispute_amount=amount,
            currency=txn.currency,
            evidence=list(evidence_tags or DEFAULT_EVIDENCE_TAGS),
            evidence_submissions=[],
            evidence_due_by=due,
            status=DisputeStatus.open,
            priority=dispute_priority(amount),
            processor_dispute_id=processor_dispute_id,
        )
        case.workflow = DisputeWorkflow(
            steps=[
                {
                    "step": "evidence_collection",
                    "due_date": (due - timedelta(hours=24)).isoformat(),
                    "status": "pending",
                },
                {
                    "step": "evidence_review",
                    "due_date": (due - timedelta(hours=12)).isoformat(),
                    "status": "pending",
                },
                {
                    "step": "evidence_submission",
                    "due_date": due.isoformat(),
                    "status": "pending",
                },
            ],
            current_step="evidence_collection",
            status=WorkflowStatus.pending,
            due_date=due,
        )
        self.store.add(case)
        self.store.flush()
        logger.warning(
            "Dispute %s opened for %s (%s %s)",
            case.case_number,
            txn.transaction_id,
            amount,
            case.currency,
            extra={"transaction_id": txn.transaction_id},
        )
        return case

    def create_dispute_case(
        self,
        transaction_id: str,
        dispute_type: DisputeType | str,
        dispute_amount: Decimal,
        evidence_tags: list[str] | tuple[str, ...] | None = None,
        evidence_due_by: datetime | None = None,
        processor_dispute_id: str | None = None,
    ) -> DisputeCase:
        case = self.open_dispute_case(
            transaction_id,
            dispute_type,
            dispute_amount,
            evidence_tags,
            evidence_due_by,
            processor_dispute_id,
        )
        self.store.commit()
        return case

    def submit_dispute_evidence(
        self,
        dispute_id: Any,
        evidence_type: str,
        description: str,
        file_url: str | None = None,
        submitted_by: str = "system",
    ) -> DisputeCase:
        case = self.store.get_dispute(dispute_id)
        if case is None:
            raise DisputeNotFound("Dispute case not found")
        if case.status in (DisputeStatus.won, DisputeStatus.lost, DisputeStatus.closed):
            raise ValidationError(f"Dispute {case.case_number} is {case.status.value}")
        entry = {
            "type": evidence_type,
            "description": description,
            "file_url": file_url,
            "submitted_by": submitted_by,
            "submitted_at": utcnow().isoformat(),
        }
        case.evidence_submissions = [*(case.evidence_submissions or []), entry]
        case.status = DisputeStatus.under_review
        if case.workflow is not None:
            steps = [dict(step) for step in case.workflow.steps or []]
            for step in steps:
                if step.get("step") == "evidence_collection":
                    step["status"] = "completed"
            case.workflow.steps = steps
            case.workflow.current_step = "evidence_review"
            case.workflow.status = WorkflowStatus.in_progress
        self.store.commit()
        logger.info("Evidence %s submitted for dispute %s", evidence_type, case.case_number)
        return case

"""Scheduled billing sweeps."""

import logging

from harbor_billing.celery_app import celery_app
from harbor_billing.db import SessionLocal
from harbor_billing.services.billing import PaymentFailureHandler, SubscriptionManager
from harbor_billing.services.processors import configured_processors
from harbor_billing.services.store import BillingStore

logger = logging.getLogger(__name__)


def _merge(total: dict[str, int], summary: dict[str, int]) -> None:
    for key, value in summary.items():
        total[key] = total.get(key, 0) + value


@celery_app.task(name="harbor_billing.tasks.process_renewals")
def process_renewals() -> dict[str, int]:
    total: dict[str, int] = {}
    session = SessionLocal()
    try:
        store = BillingStore(session)
        for processor in configured_processors():
            _merge(total, SubscriptionManager(store, processor).process_automatic_renewals())
    finally:
        session.close()
    logger.info("Renewal task finished: %s", total)
    return total


@celery_app.task(name="harbor_billing.tasks.process_payment_retries")
def process_payment_retries() -> dict[str, int]:
    total: dict[str, int] = {}
    session = SessionLocal()
    try:
        store = BillingStore(session)
        for processor in configured_processors():
            _merge(total, PaymentFailureHandler(store, processor).process_retry_attempts())
    finally:
        session.close()
    logger.info("Payment retry task finished: %s", total)
    return total

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

from harbor_billing.errors import (
    BillingAccountNotFound,
    ConflictError,
    TransactionNotFound,
    UserNotFound,
)
from harbor_billing.models.billing import (
    BillingAccount,
    BillingAccountStatus,
    Transaction,
)
from harbor_billing.services.billing.charges import Charges
from harbor_billing.services.processors import PaymentProcessor
from harbor_billing.services.store import BillingStore

logger = logging.getLogger(__name__)


class BillingAccounts:
    def __init__(self, store: BillingStore, processor: PaymentProcessor) -> None:
        self.store = store
        self.processor = processor

    def create(
        self,
        user_id: Any,
        payment_method: dict[str, Any],
        email: str | None = None,
        name: str | None = None,
    ) -> BillingAccount:
        """Register the user with the processor and store their payment method."""
        user = self.store.get_user(user_id)
        if user is None:
            raise UserNotFound("User not found")
        if self.store.get_open_account_for_user(user.id) is not None:
            raise ConflictError(
                "User already has a billing account", code="BILLING_ACCOUNT_EXISTS"
            )

        customer = self.processor.create_customer(
            email or user.email,
            name or user.name,
            {"user_id": str(user.id)},
        )
        method = self.processor.create_payment_method(customer.customer_id, payment_method)
        account = BillingAccount(
            user_id=user.id,
            customer_id=customer.customer_id,
            payment_method_id=method.payment_method_id,
            processor_type=self.processor.processor_type,
            status=BillingAccountStatus.incomplete,
            payment_history=[],
            metadata_={},
        )
        self.store.add(account)
        self.store.commit()
        self.store.refresh(account)
        logger.info(
            "Created %s billing account for user %s",
            self.processor.processor_type.value,
            user.id,
            extra={"billing_account_id": str(account.id)},
        )
        return account

    def get_for_user(self, user_id: Any) -> BillingAccount:
        account = self.store.get_open_account_for_user(user_id)
        if account is None:
            raise BillingAccountNotFound("Billing account not found")
        return account


class Transactions:
    def __init__(self, store: BillingStore, processor: PaymentProcessor) -> None:
        self.store = store
        self.charges = Charges(store, processor)

    def get(self, transaction_id: str) -> Transaction:
        txn = self.store.find_transaction(transaction_id)
        if txn is None:
            raise TransactionNotFound(f"Transaction {transaction_id} not found")
        return txn

    def refund(
        self,
        transaction_id: str,
        amount: Decimal | None = None,
        reason: str | None = None,
    ) -> Transaction:
        refund = self.charges.refund(self.get(transaction_id), amount, reason)
        self.store.commit()
        return refund

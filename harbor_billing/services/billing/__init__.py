from harbor_billing.services.billing.accounts import BillingAccounts, Transactions
from harbor_billing.services.billing.charges import Charges, compute_fees
from harbor_billing.services.billing.payment_failures import (
    DEFAULT_EVIDENCE_TAGS,
    DUNNING_CAMPAIGNS,
    PaymentFailureHandler,
)
from harbor_billing.services.billing.subscriptions import (
    ProrationResult,
    SubscriptionManager,
    calculate_proration,
)
from harbor_billing.services.billing.webhooks import WebhookHandler

__all__ = [
    "DEFAULT_EVIDENCE_TAGS",
    "DUNNING_CAMPAIGNS",
    "BillingAccounts",
    "Charges",
    "PaymentFailureHandler",
    "ProrationResult",
    "SubscriptionManager",
    "Transactions",
    "WebhookHandler",
    "calculate_proration",
    "compute_fees",
]

from harbor_billing.models.user import User, UserType  # noqa: F401
from harbor_billing.models.billing import (  # noqa: F401
    BillingAccount,
    BillingAccountStatus,
    BillingCycle,
    DisputeCase,
    DisputePriority,
    DisputeStatus,
    DisputeType,
    DisputeWorkflow,
    PaymentFailure,
    PaymentFailureReason,
    ProcessedWebhookEvent,
    ProcessorType,
    ResolutionMethod,
    Transaction,
    TransactionStatus,
    TransactionType,
    WorkflowStatus,
)

"""billing engine schema

Revision ID: 001_billing_engine
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from alembic import op
import sqlalchemy as sa

revision = "001_billing_engine"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Users
    op.create_table(
        "users",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column(
            "user_type",
            sa.Enum(
                "individual",
                "dealer",
                "premium_individual",
                "premium_dealer",
                name="usertype",
            ),
            nullable=False,
        ),
        sa.Column("premium_active", sa.Boolean(), nullable=False),
        sa.Column("premium_plan", sa.String(length=80), nullable=True),
        sa.Column("premium_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("membership_details", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email", name="uq_users_email"),
    )

    # Billing accounts
    op.create_table(
        "billing_accounts",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("user_id", sa.UUID(), nullable=False),
        sa.Column("customer_id", sa.String(length=255), nullable=False),
        sa.Column("payment_method_id", sa.String(length=255), nullable=True),
        sa.Column(
            "processor_type",
            sa.Enum("stripe", "paypal", name="processortype"),
            nullable=False,
        ),
        sa.Column("plan", sa.String(length=80), nullable=True),
        sa.Column(
            "billing_cycle",
            sa.Enum("monthly", "yearly", name="billingcycle"),
            nullable=True,
        ),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column(
            "status",
            sa.Enum(
                "incomplete",
                "trialing",
                "active",
                "past_due",
                "canceled",
                name="billingaccountstatus",
            ),
            nullable=False,
        ),
        sa.Column("subscription_id", sa.String(length=255), nullable=True),
        sa.Column("next_billing_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False),
        sa.Column("payment_history", sa.JSON(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "subscription_id", name="uq_billing_accounts_subscription_id"
        ),
    )
    op.create_index("ix_billing_accounts_user_id", "billing_accounts", ["user_id"])
    op.create_index(
        "ix_billing_accounts_customer_id", "billing_accounts", ["customer_id"]
    )
    op.create_index(
        "ix_billing_accounts_next_billing_date",
        "billing_accounts",
        ["next_billing_date"],
    )
    op.create_index(
        "uq_billing_accounts_user_open",
        "billing_accounts",
        ["user_id"],
        unique=True,
        postgresql_where=sa.text("status != 'canceled'"),
    )

    # Transactions
    op.create_table(
        "billing_transactions",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("transaction_id", sa.String(length=80), nullable=False),
        sa.Column(
            "type",
            sa.Enum(
                "payment", "refund", "subscription_renewal", name="transactiontype"
            ),
            nullable=False,
        ),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column(
            "status",
            sa.Enum(
                "pending", "completed", "failed", "refunded", name="transactionstatus"
            ),
            nullable=False,
        ),
        sa.Column("user_id", sa.UUID(), nullable=False),
        sa.Column("billing_account_id", sa.UUID(), nullable=True),
        sa.Column("processor_transaction_id", sa.String(length=255), nullable=True),
        sa.Column("original_transaction_id", sa.String(length=80), nullable=True),
        sa.Column("fees", sa.Numeric(12, 2), nullable=False),
        sa.Column("net_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["billing_account_id"], ["billing_accounts.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "transaction_id", name="uq_billing_transactions_transaction_id"
        ),
    )
    op.create_index(
        "ix_billing_transactions_user_id", "billing_transactions", ["user_id"]
    )
    op.create_index(
        "ix_billing_transactions_billing_account_id",
        "billing_transactions",
        ["billing_account_id"],
    )
    op.create_index(
        "ix_billing_transactions_processor_transaction_id",
        "billing_transactions",
        ["processor_transaction_id"],
    )

    # Payment failures
    op.create_table(
        "payment_failures",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("transaction_id", sa.String(length=255), nullable=False),
        sa.Column("billing_account_id", sa.UUID(), nullable=False),
        sa.Column("subscription_id", sa.String(length=255), nullable=True),
        sa.Column("user_id", sa.UUID(), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column(
            "reason",
            sa.Enum(
                "insufficient_funds",
                "card_declined",
                "expired_card",
                "invalid_card",
                "processing_error",
                "fraud_suspected",
                "authentication_required",
                "network_error",
                "unknown",
                name="paymentfailurereason",
            ),
            nullable=False,
        ),
        sa.Column("reason_details", sa.Text(), nullable=True),
        sa.Column("attempt_number", sa.Integer(), nullable=False),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("grace_period_ends", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved", sa.Boolean(), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "resolution_method",
            sa.Enum(
                "retry_success",
                "manual_payment",
                "plan_change",
                "cancellation",
                name="resolutionmethod",
            ),
            nullable=True,
        ),
        sa.Column("dunning_campaign", sa.String(length=80), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["billing_account_id"], ["billing_accounts.id"]),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_payment_failures_transaction_id", "payment_failures", ["transaction_id"]
    )
    op.create_index(
        "ix_payment_failures_billing_account_id",
        "payment_failures",
        ["billing_account_id"],
    )
    op.create_index(
        "ix_payment_failures_next_retry_at", "payment_failures", ["next_retry_at"]
    )

    # Disputes
    op.create_table(
        "dispute_cases",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("case_number", sa.String(length=40), nullable=False),
        sa.Column("transaction_id", sa.String(length=80), nullable=False),
        sa.Column("billing_account_id", sa.UUID(), nullable=True),
        sa.Column(
            "dispute_type",
            sa.Enum(
                "chargeback",
                "inquiry",
                "fraud",
                "authorization",
                "processing_error",
                name="disputetype",
            ),
            nullable=False,
        ),
        sa.Column("dispute_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("evidence", sa.JSON(), nullable=True),
        sa.Column("evidence_submissions", sa.JSON(), nullable=True),
        sa.Column("evidence_due_by", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "status",
            sa.Enum(
                "open", "under_review", "won", "lost", "closed", name="disputestatus"
            ),
            nullable=False,
        ),
        sa.Column(
            "priority",
            sa.Enum("low", "medium", "high", name="disputepriority"),
            nullable=False,
        ),
        sa.Column("processor_dispute_id", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["billing_account_id"], ["billing_accounts.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("case_number", name="uq_dispute_cases_case_number"),
    )
    op.create_index(
        "ix_dispute_cases_transaction_id", "dispute_cases", ["transaction_id"]
    )
    op.create_index(
        "ix_dispute_cases_processor_dispute_id",
        "dispute_cases",
        ["processor_dispute_id"],
    )

    op.create_table(
        "dispute_workflows",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("dispute_id", sa.UUID(), nullable=False),
        sa.Column("steps", sa.JSON(), nullable=True),
        sa.Column("current_step", sa.String(length=80), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "in_progress", "completed", name="workflowstatus"),
            nullable=False,
        ),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["dispute_id"], ["dispute_cases.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_dispute_workflows_dispute_id", "dispute_workflows", ["dispute_id"]
    )

    # Webhook idempotency ledger
    op.create_table(
        "processed_webhook_events",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("processor_type", sa.String(length=40), nullable=False),
        sa.Column("event_id", sa.String(length=255), nullable=False),
        sa.Column("event_type", sa.String(length=120), nullable=False),
        sa.Column("processed", sa.Boolean(), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False),
        sa.Column("max_retries", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "processor_type", "event_id", name="uq_processed_webhook_events_event"
        ),
    )


def downgrade() -> None:
    op.drop_table("processed_webhook_events")
    op.drop_index("ix_dispute_workflows_dispute_id", table_name="dispute_workflows")
    op.drop_table("dispute_workflows")
    op.drop_index("ix_dispute_cases_processor_dispute_id", table_name="dispute_cases")
    op.drop_index("ix_dispute_cases_transaction_id", table_name="dispute_cases")
    op.drop_table("dispute_cases")
    op.drop_index("ix_payment_failures_next_retry_at", table_name="payment_failures")
    op.drop_index(
        "ix_payment_failures_billing_account_id", table_name="payment_failures"
    )
    op.drop_index("ix_payment_failures_transaction_id", table_name="payment_failures")
    op.drop_table("payment_failures")
    op.drop_index(
        "ix_billing_transactions_processor_transaction_id",
        table_name="billing_transactions",
    )
    op.drop_index(
        "ix_billing_transactions_billing_account_id",
        table_name="billing_transactions",
    )
    op.drop_index(
        "ix_billing_transactions_user_id", table_name="billing_transactions"
    )
    op.drop_table("billing_transactions")
    op.drop_index("uq_billing_accounts_user_open", table_name="billing_accounts")
    op.drop_index(
        "ix_billing_accounts_next_billing_date", table_name="billing_accounts"
    )
    op.drop_index("ix_billing_accounts_customer_id", table_name="billing_accounts")
    op.drop_index("ix_billing_accounts_user_id", table_name="billing_accounts")
    op.drop_table("billing_accounts")
    op.drop_table("users")
    for enum_name in (
        "workflowstatus",
        "disputepriority",
        "disputestatus",
        "disputetype",
        "resolutionmethod",
        "paymentfailurereason",
        "transactionstatus",
        "transactiontype",
        "billingaccountstatus",
        "billingcycle",
        "processortype",
        "usertype",
    ):
        sa.Enum(name=enum_name).drop(op.get_bind(), checkfirst=True)

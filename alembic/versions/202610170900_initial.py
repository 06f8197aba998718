"""initial schema

Revision ID: 202610170900
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610170900"
down_revision = None
branch_labels = None
depends_on = None

TRANSACTION_TYPE = sa.Enum("INCOME", "EXPENSE", name="transactiontype")
TRANSACTION_STATUS = sa.Enum("PENDING", "COMPLETED", "FAILED", name="transactionstatus")
RECURRING_INTERVAL = sa.Enum(
    "DAILY", "WEEKLY", "MONTHLY", "YEARLY", name="recurringinterval"
)
ACCOUNT_TYPE = sa.Enum("CURRENT", "SAVINGS", name="accounttype")
JOB_KIND = sa.Enum("process_recurring", "send_email", name="jobkind")
JOB_STATUS = sa.Enum("PENDING", "DONE", "FAILED", name="jobstatus")


def upgrade():
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("auth_subject", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=120)),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("auth_subject"),
    )

    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("type", ACCOUNT_TYPE, nullable=False),
        sa.Column("balance_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_accounts_user_default", "accounts", ["user_id", "is_default"])

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "account_id",
            sa.Integer(),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("type", TRANSACTION_TYPE, nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("category", sa.String(length=60), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("receipt_url", sa.String(length=500)),
        sa.Column("status", TRANSACTION_STATUS, nullable=False),
        sa.Column("is_recurring", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("recurring_interval", RECURRING_INTERVAL),
        sa.Column("next_recurring_date", sa.Date()),
        sa.Column("last_processed", sa.DateTime()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
        sa.CheckConstraint(
            "(is_recurring AND recurring_interval IS NOT NULL)"
            " OR (NOT is_recurring AND recurring_interval IS NULL)",
            name="ck_transactions_recurring_interval",
        ),
    )
    op.create_index("ix_transactions_user_date", "transactions", ["user_id", "date"])
    op.create_index(
        "ix_transactions_account_type_date",
        "transactions",
        ["account_id", "type", "date"],
    )
    op.create_index(
        "ix_transactions_recurring_due",
        "transactions",
        ["is_recurring", "status", "next_recurring_date"],
    )

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("last_alert_sent", sa.DateTime()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("user_id"),
        sa.CheckConstraint("amount_cents > 0", name="ck_budget_amount_positive"),
    )

    op.create_table(
        "jobs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("kind", JOB_KIND, nullable=False),
        sa.Column("user_id", sa.Integer()),
        sa.Column("payload", sa.Text(), nullable=False),
        sa.Column("status", JOB_STATUS, nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("available_at", sa.DateTime(), nullable=False),
        sa.Column("started_at", sa.DateTime()),
        sa.Column("finished_at", sa.DateTime()),
        sa.Column("last_error", sa.Text()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_jobs_status_available", "jobs", ["status", "available_at"])
    op.create_index(
        "ix_jobs_kind_user_started", "jobs", ["kind", "user_id", "started_at"]
    )


def downgrade():
    op.drop_index("ix_jobs_kind_user_started", table_name="jobs")
    op.drop_index("ix_jobs_status_available", table_name="jobs")
    op.drop_table("jobs")
    op.drop_table("budgets")
    op.drop_index("ix_transactions_recurring_due", table_name="transactions")
    op.drop_index("ix_transactions_account_type_date", table_name="transactions")
    op.drop_index("ix_transactions_user_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_accounts_user_default", table_name="accounts")
    op.drop_table("accounts")
    op.drop_table("users")

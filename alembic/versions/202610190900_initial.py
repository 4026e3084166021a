"""initial household planning schema

Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "202610190900"
down_revision = None
branch_labels = None
depends_on = None


FREQUENCY = ("one-time", "weekly", "biweekly", "monthly", "quarterly", "annual")


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "families",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "budget_categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "family_id",
            sa.Integer(),
            sa.ForeignKey("families.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("target_percentage", sa.Numeric(5, 2), nullable=False),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.UniqueConstraint("family_id", "name", name="uq_budget_category_family_name"),
        sa.CheckConstraint(
            "target_percentage >= 0 AND target_percentage <= 100",
            name="ck_budget_category_percentage_range",
        ),
    )

    op.create_table(
        "spending_categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "family_id",
            sa.Integer(),
            sa.ForeignKey("families.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column(
            "budget_category_id",
            sa.Integer(),
            sa.ForeignKey("budget_categories.id", ondelete="SET NULL"),
        ),
        *_timestamps(),
    )

    op.create_table(
        "income_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "family_id",
            sa.Integer(),
            sa.ForeignKey("families.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("source", sa.String(length=255)),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("scheduled_date", sa.Date(), nullable=False),
        sa.Column("actual_date", sa.Date()),
        sa.Column("actual_amount", sa.Numeric(12, 2)),
        sa.Column(
            "frequency", sa.Enum(*FREQUENCY, name="eventfrequency"), nullable=False
        ),
        sa.Column("next_occurrence", sa.Date()),
        sa.Column(
            "status",
            sa.Enum("scheduled", "received", "cancelled", name="incomestatus"),
            nullable=False,
        ),
        sa.Column("notes", sa.Text()),
        *_timestamps(),
        sa.CheckConstraint("amount >= 0", name="ck_income_amount_positive"),
    )
    op.create_index(
        "ix_income_family_scheduled", "income_events", ["family_id", "scheduled_date"]
    )
    op.create_index(
        "ix_income_family_actual",
        "income_events",
        ["family_id", "status", "actual_date"],
    )

    op.create_table(
        "payments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "family_id",
            sa.Integer(),
            sa.ForeignKey("families.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("payee", sa.String(length=255), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("paid_date", sa.Date()),
        sa.Column("paid_amount", sa.Numeric(12, 2)),
        sa.Column(
            "payment_type",
            sa.Enum("once", "recurring", "variable", name="paymenttype"),
            nullable=False,
        ),
        sa.Column(
            "frequency", sa.Enum(*FREQUENCY, name="eventfrequency"), nullable=False
        ),
        sa.Column("next_due_date", sa.Date()),
        sa.Column("cancelled_at", sa.DateTime()),
        sa.Column(
            "spending_category_id",
            sa.Integer(),
            sa.ForeignKey("spending_categories.id", ondelete="SET NULL"),
        ),
        sa.Column("notes", sa.Text()),
        *_timestamps(),
        sa.CheckConstraint("amount >= 0", name="ck_payment_amount_positive"),
    )
    op.create_index("ix_payment_family_due", "payments", ["family_id", "due_date"])

    op.create_table(
        "attributions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "payment_id",
            sa.Integer(),
            sa.ForeignKey("payments.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "income_event_id",
            sa.Integer(),
            sa.ForeignKey("income_events.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column(
            "attribution_type",
            sa.Enum("manual", "automatic", name="attributiontype"),
            nullable=False,
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount > 0", name="ck_attribution_amount_positive"),
    )
    op.create_index("ix_attribution_payment", "attributions", ["payment_id"])
    op.create_index("ix_attribution_income", "attributions", ["income_event_id"])

    op.create_table(
        "budget_allocations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "income_event_id",
            sa.Integer(),
            sa.ForeignKey("income_events.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "budget_category_id",
            sa.Integer(),
            sa.ForeignKey("budget_categories.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("percentage", sa.Numeric(5, 2), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "income_event_id",
            "budget_category_id",
            name="uq_budget_allocation_income_category",
        ),
    )

    op.create_table(
        "bank_accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "family_id",
            sa.Integer(),
            sa.ForeignKey("families.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("institution_name", sa.String(length=255), nullable=False),
        sa.Column("account_name", sa.String(length=255), nullable=False),
        sa.Column(
            "account_type",
            sa.Enum("checking", "savings", "credit", "loan", name="accounttype"),
            nullable=False,
        ),
        sa.Column(
            "current_balance", sa.Numeric(12, 2), nullable=False, server_default="0"
        ),
        sa.Column("deleted_at", sa.DateTime()),
        *_timestamps(),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "bank_account_id",
            sa.Integer(),
            sa.ForeignKey("bank_accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("merchant_name", sa.String(length=255)),
        sa.Column(
            "spending_category_id",
            sa.Integer(),
            sa.ForeignKey("spending_categories.id", ondelete="SET NULL"),
        ),
        *_timestamps(),
    )
    op.create_index(
        "ix_transactions_account_date", "transactions", ["bank_account_id", "date"]
    )

    op.create_table(
        "scheduled_reports",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "family_id",
            sa.Integer(),
            sa.ForeignKey("families.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column(
            "report_type",
            sa.Enum(
                "cash_flow",
                "spending_analysis",
                "budget_performance",
                "income_analysis",
                "net_worth",
                "savings_rate",
                "monthly_summary",
                "annual_summary",
                name="reporttype",
            ),
            nullable=False,
        ),
        sa.Column(
            "frequency",
            sa.Enum("weekly", "monthly", "quarterly", "annual", name="reportfrequency"),
            nullable=False,
        ),
        sa.Column("recipients", sa.JSON(), nullable=False),
        sa.Column("parameters", sa.JSON(), nullable=False),
        sa.Column("delivery_day", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("delivery_hour", sa.Integer(), nullable=False, server_default="9"),
        sa.Column("timezone", sa.String(length=64), nullable=False, server_default="UTC"),
        sa.Column(
            "status",
            sa.Enum("active", "paused", "error", "completed", name="schedulestatus"),
            nullable=False,
        ),
        sa.Column("next_execution", sa.DateTime(), nullable=False),
        sa.Column("last_execution", sa.DateTime()),
        sa.Column("claimed_at", sa.DateTime()),
        *_timestamps(),
        sa.CheckConstraint(
            "delivery_hour >= 0 AND delivery_hour <= 23",
            name="ck_scheduled_report_hour_range",
        ),
    )
    op.create_index(
        "ix_scheduled_reports_due", "scheduled_reports", ["status", "next_execution"]
    )
    op.create_index("ix_scheduled_reports_family", "scheduled_reports", ["family_id"])

    op.create_table(
        "scheduled_report_executions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "scheduled_report_id",
            sa.Integer(),
            sa.ForeignKey("scheduled_reports.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("executed_at", sa.DateTime(), nullable=False),
        sa.Column("completed_at", sa.DateTime()),
        sa.Column(
            "status",
            sa.Enum(
                "pending", "running", "completed", "failed", name="executionstatus"
            ),
            nullable=False,
        ),
        sa.Column("report_data", sa.JSON()),
        sa.Column("error", sa.Text()),
        sa.Column(
            "delivery_status",
            sa.Enum("pending", "sent", "failed", name="deliverystatus"),
            nullable=False,
        ),
        sa.Column("delivery_error", sa.Text()),
    )
    op.create_index(
        "ix_executions_report_executed",
        "scheduled_report_executions",
        ["scheduled_report_id", "executed_at"],
    )


def downgrade() -> None:
    op.drop_index(
        "ix_executions_report_executed", table_name="scheduled_report_executions"
    )
    op.drop_table("scheduled_report_executions")
    op.drop_index("ix_scheduled_reports_family", table_name="scheduled_reports")
    op.drop_index("ix_scheduled_reports_due", table_name="scheduled_reports")
    op.drop_table("scheduled_reports")
    op.drop_index("ix_transactions_account_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("bank_accounts")
    op.drop_table("budget_allocations")
    op.drop_index("ix_attribution_income", table_name="attributions")
    op.drop_index("ix_attribution_payment", table_name="attributions")
    op.drop_table("attributions")
    op.drop_index("ix_payment_family_due", table_name="payments")
    op.drop_table("payments")
    op.drop_index("ix_income_family_actual", table_name="income_events")
    op.drop_index("ix_income_family_scheduled", table_name="income_events")
    op.drop_table("income_events")
    op.drop_table("spending_categories")
    op.drop_table("budget_categories")
    op.drop_table("families")

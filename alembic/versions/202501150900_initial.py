"""initial schema: spaces, transactions, budgets, recurring transactions

Revision ID: 202501150900
Revises:
Create Date: 2025-01-15 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202501150900"
down_revision = None
branch_labels = None
depends_on = None

TRANSACTION_TYPE = sa.Enum("income", "expense", name="transactiontype")
FREQUENCY = sa.Enum("weekly", "monthly", "yearly", name="frequency")
RECURRING_SOURCE = sa.Enum(
    "dedicated", "regular_transaction", name="recurringsource"
)


def upgrade() -> None:
    op.create_table(
        "spaces",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("space_id", sa.String(length=36), nullable=False, unique=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "space_id",
            sa.String(length=36),
            sa.ForeignKey("spaces.space_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("type", TRANSACTION_TYPE, nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("category", sa.String(length=100), nullable=False),
        sa.Column("subcategory", sa.String(length=100)),
        sa.Column("description", sa.Text()),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column(
            "is_recurring", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("recurrence_frequency", FREQUENCY),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount > 0", name="ck_transactions_amount_positive"),
    )
    op.create_index(
        "ix_transactions_space_date",
        "transactions",
        ["space_id", "date", "created_at"],
    )
    op.create_index("ix_transactions_space_type", "transactions", ["space_id", "type"])

    op.create_table(
        "budgets",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "space_id",
            sa.String(length=36),
            sa.ForeignKey("spaces.space_id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("monthly_budget", sa.Numeric(12, 2), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("monthly_budget > 0", name="ck_budget_amount_positive"),
    )

    op.create_table(
        "recurring_transactions",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column(
            "space_id",
            sa.String(length=36),
            sa.ForeignKey("spaces.space_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("type", TRANSACTION_TYPE, nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("category", sa.String(length=100), nullable=False),
        sa.Column("subcategory", sa.String(length=100)),
        sa.Column("description", sa.Text()),
        sa.Column("frequency", FREQUENCY, nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("next_due_date", sa.Date(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_processed", sa.Date()),
        sa.Column(
            "source",
            RECURRING_SOURCE,
            nullable=False,
            server_default="dedicated",
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount > 0", name="ck_recurring_amount_positive"),
    )
    op.create_index(
        "ix_recurring_space_active_due",
        "recurring_transactions",
        ["space_id", "is_active", "next_due_date"],
    )


def downgrade() -> None:
    op.drop_index("ix_recurring_space_active_due", table_name="recurring_transactions")
    op.drop_table("recurring_transactions")
    op.drop_table("budgets")
    op.drop_index("ix_transactions_space_type", table_name="transactions")
    op.drop_index("ix_transactions_space_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("spaces")

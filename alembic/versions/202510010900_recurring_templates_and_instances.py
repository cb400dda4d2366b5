"""recurring templates and monthly expense instances

Revision ID: 202510010900
Revises:
Create Date: 2025-10-01 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202510010900"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "recurring_templates",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("category", sa.String(length=60), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("day_of_month", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount_cents >= 0", name="ck_template_amount_positive"),
        sa.CheckConstraint(
            "day_of_month BETWEEN 1 AND 31", name="ck_template_day_of_month"
        ),
    )
    op.create_index(
        "ix_recurring_templates_user_active",
        "recurring_templates",
        ["user_id", "active"],
    )

    op.create_table(
        "expense_instances",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column(
            "template_id", sa.Integer(), sa.ForeignKey("recurring_templates.id")
        ),
        sa.Column("year_month", sa.String(length=7), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("category", sa.String(length=60), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "paid", name="instancestatus"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("paid_at", sa.DateTime()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "user_id",
            "template_id",
            "year_month",
            name="uq_instance_template_month",
        ),
        sa.CheckConstraint("amount_cents >= 0", name="ck_instance_amount_positive"),
    )
    op.create_index(
        "ix_expense_instances_user_month",
        "expense_instances",
        ["user_id", "year_month"],
    )
    op.create_index(
        "ix_expense_instances_user_status",
        "expense_instances",
        ["user_id", "status"],
    )


def downgrade():
    op.drop_index("ix_expense_instances_user_status", table_name="expense_instances")
    op.drop_index("ix_expense_instances_user_month", table_name="expense_instances")
    op.drop_table("expense_instances")
    op.drop_index(
        "ix_recurring_templates_user_active", table_name="recurring_templates"
    )
    op.drop_table("recurring_templates")

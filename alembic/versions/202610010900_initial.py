"""initial schema

Revision ID: 202610010900
Revises:
Create Date: 2026-10-01 09:00:00.000000

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "202610010900"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_categories_user_name", "categories", ["user_id", "name"])

    op.create_table(
        "trips",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("starts_at", sa.DateTime(), nullable=False),
        sa.Column("ends_at", sa.DateTime(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("ends_at > starts_at", name="ck_trips_end_after_start"),
    )
    op.create_index(
        "ix_trips_user_span", "trips", ["user_id", "starts_at", "ends_at"]
    )

    op.create_table(
        "expenses",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column(
            "kind",
            sa.Enum("expense", "borrowed", "lended", name="expensekind"),
            nullable=False,
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("categories.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("original_text", sa.Text(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(), nullable=False),
        sa.Column("trip_id", sa.Integer(), sa.ForeignKey("trips.id"), nullable=True),
        sa.Column("provenance_json", sa.Text(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("amount_cents >= 0", name="ck_expenses_amount_positive"),
    )
    op.create_index(
        "ix_expenses_user_trip_occurred",
        "expenses",
        ["user_id", "trip_id", "occurred_at"],
    )
    op.create_index(
        "ix_expenses_user_category", "expenses", ["user_id", "category_id"]
    )

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("trip_id", sa.Integer(), sa.ForeignKey("trips.id"), nullable=True),
        sa.Column("month_year", sa.String(length=7), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("amount_cents >= 0", name="ck_budgets_amount_positive"),
    )
    op.create_index(
        "ix_budgets_user_trip_month", "budgets", ["user_id", "trip_id", "month_year"]
    )


def downgrade() -> None:
    op.drop_index("ix_budgets_user_trip_month", table_name="budgets")
    op.drop_table("budgets")
    op.drop_index("ix_expenses_user_category", table_name="expenses")
    op.drop_index("ix_expenses_user_trip_occurred", table_name="expenses")
    op.drop_table("expenses")
    op.drop_index("ix_trips_user_span", table_name="trips")
    op.drop_table("trips")
    op.drop_index("ix_categories_user_name", table_name="categories")
    op.drop_table("categories")

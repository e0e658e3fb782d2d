import json
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class ExpenseKind(str, Enum):
    expense = "expense"
    borrowed = "borrowed"
    lended = "lended"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)

    expenses: Mapped[list["Expense"]] = relationship(
        "Expense", back_populates="category"
    )

    __table_args__ = (Index("ix_categories_user_name", "user_id", "name"),)


class Trip(Base, TimestampMixin):
    __tablename__ = "trips"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    starts_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    ends_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        CheckConstraint("ends_at > starts_at", name="ck_trips_end_after_start"),
        Index("ix_trips_user_span", "user_id", "starts_at", "ends_at"),
    )


class Expense(Base, TimestampMixin):
    __tablename__ = "expenses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    kind: Mapped[ExpenseKind] = mapped_column(
        SAEnum(ExpenseKind), nullable=False, default=ExpenseKind.expense
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("categories.id", ondelete="SET NULL")
    )
    note: Mapped[Optional[str]] = mapped_column(Text)
    original_text: Mapped[Optional[str]] = mapped_column(Text)
    occurred_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    trip_id: Mapped[Optional[int]] = mapped_column(ForeignKey("trips.id"))
    provenance_json: Mapped[Optional[str]] = mapped_column(Text)

    category: Mapped[Optional["Category"]] = relationship(
        "Category", back_populates="expenses"
    )

    __table_args__ = (
        Index("ix_expenses_user_trip_occurred", "user_id", "trip_id", "occurred_at"),
        Index("ix_expenses_user_category", "user_id", "category_id"),
        CheckConstraint("amount_cents >= 0", name="ck_expenses_amount_positive"),
    )

    @property
    def provenance(self) -> dict[str, object]:
        if not self.provenance_json:
            return {}
        return json.loads(self.provenance_json)

    def to_row(self) -> dict[str, object]:
        """Flat record as carried by change notifications and live views."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "kind": ExpenseKind(self.kind).value,
            "amount_cents": self.amount_cents,
            "category_id": self.category_id,
            "note": self.note,
            "original_text": self.original_text,
            "occurred_at": self.occurred_at,
            "trip_id": self.trip_id,
            "provenance": self.provenance,
        }


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    trip_id: Mapped[Optional[int]] = mapped_column(ForeignKey("trips.id"))
    month_year: Mapped[str] = mapped_column(String(7), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_budgets_amount_positive"),
        Index("ix_budgets_user_trip_month", "user_id", "trip_id", "month_year"),
    )

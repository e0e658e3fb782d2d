from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterator, Optional, Sequence

from rapidfuzz import fuzz
from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from aggregation import Aggregate, BudgetSummary, aggregate_expenses, summarize_budget
from categorizer import CategorizationResolver
from expense_parser import parse_expense_text
from models import Budget, Category, Expense, ExpenseKind, Trip
from periods import DateRange, ViewContext, span_range, trip_overlaps
from realtime import ChangeBus, ChangeOperation, change_bus
from schemas import CategoryIn, ExpenseIn, ExpenseUpdate, SearchFilters, TripIn

logger = logging.getLogger(__name__)

EXPENSES_TABLE = "expenses"
FUZZY_SEARCH_THRESHOLD = 85


class NotFound(ValueError):
    pass


class StoreOperationFailed(RuntimeError):
    def __init__(self, operation: str, message: Optional[str] = None) -> None:
        super().__init__(message or f"Store operation failed: {operation}")
        self.operation = operation


class CascadeDeletePartialFailure(StoreOperationFailed):
    def __init__(self, trip_id: int, step: str) -> None:
        super().__init__(
            "delete_trip",
            f"Deleting trip {trip_id} stopped at step '{step}'",
        )
        self.trip_id = trip_id
        self.step = step


@contextmanager
def store_operation(session: Session, operation: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as exc:
        session.rollback()
        logger.error(f"store_failed: operation={operation} error={exc}")
        raise StoreOperationFailed(operation) from exc


class CategoryService:
    def __init__(
        self,
        session: Session,
        user_id: str,
        bus: Optional[ChangeBus] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.bus = bus or change_bus

    def list_all(self) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.name, Category.id)
        )
        with store_operation(self.session, "select_categories"):
            return self.session.scalars(stmt).all()

    def lookup(self) -> dict[int, str]:
        return {c.id: c.name for c in self.list_all()}

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise NotFound("Category not found")
        return category

    def find_by_name(self, name: str) -> Optional[Category]:
        stmt = select(Category).where(
            Category.user_id == self.user_id,
            func.lower(Category.name) == name.strip().lower(),
        )
        return self.session.scalars(stmt).first()

    def create(self, data: CategoryIn) -> Category:
        clean_name = data.name.strip()
        if not clean_name:
            raise ValueError("Category name cannot be empty")
        if self.find_by_name(clean_name):
            raise ValueError("Category with this name already exists")
        category = Category(user_id=self.user_id, name=clean_name)
        with store_operation(self.session, "insert_category"):
            self.session.add(category)
            self.session.commit()
            self.session.refresh(category)
        return category

    def delete(self, category_id: int) -> int:
        """Delete a category, moving its expenses to "Other" (or to none).

        Returns the number of expenses that were reassigned.
        """
        category = self.get(category_id)
        fallback = self.find_by_name("Other")
        fallback_id = (
            fallback.id if fallback is not None and fallback.id != category.id else None
        )
        expenses = self.session.scalars(
            select(Expense).where(
                Expense.user_id == self.user_id, Expense.category_id == category.id
            )
        ).all()
        with store_operation(self.session, "delete_category"):
            for expense in expenses:
                expense.category_id = fallback_id
            self.session.flush()
            self.session.expire(category, ["expenses"])
            self.session.delete(category)
            self.session.commit()
        self.bus.publish_rows(
            EXPENSES_TABLE, ChangeOperation.update, [e.to_row() for e in expenses]
        )
        logger.info(
            f"category_deleted: id={category_id} reassigned={len(expenses)} "
            f"fallback={fallback_id}"
        )
        return len(expenses)


class ExpenseService:
    def __init__(
        self,
        session: Session,
        user_id: str,
        bus: Optional[ChangeBus] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.bus = bus or change_bus

    def _check_refs(self, category_id: Optional[int], trip_id: Optional[int]) -> None:
        if category_id is not None:
            CategoryService(self.session, self.user_id, self.bus).get(category_id)
        if trip_id is not None:
            TripService(self.session, self.user_id, self.bus).get(trip_id)

    def create(self, data: ExpenseIn) -> Expense:
        self._check_refs(data.category_id, data.trip_id)
        expense = Expense(
            user_id=self.user_id,
            kind=data.kind,
            amount_cents=data.amount_cents,
            category_id=data.category_id,
            note=data.note,
            original_text=data.original_text,
            occurred_at=data.occurred_at,
            trip_id=data.trip_id,
            provenance_json=json.dumps(data.provenance) if data.provenance else None,
        )
        with store_operation(self.session, "insert_expense"):
            self.session.add(expense)
            self.session.commit()
            self.session.refresh(expense)
        self.bus.publish_rows(EXPENSES_TABLE, ChangeOperation.insert, [expense.to_row()])
        return expense

    def create_from_text(
        self,
        text: str,
        view: ViewContext,
        resolver: CategorizationResolver,
        *,
        occurred_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> Expense:
        if view.trip_id is not None:
            TripService(self.session, self.user_id, self.bus).get(view.trip_id)
        categories = CategoryService(self.session, self.user_id, self.bus).list_all()
        parsed = parse_expense_text(
            text, categories, view, resolver, now=now, occurred_at=occurred_at
        )
        result = parsed.categorization
        logger.info(
            f"expense_parsed: amount={parsed.amount} kind={parsed.kind.value} "
            f"category={parsed.category_name} source={result.source} "
            f"confidence={result.confidence}"
        )
        return self.create(
            ExpenseIn(
                kind=parsed.kind,
                amount_cents=parsed.amount_cents,
                category_id=parsed.category_id,
                note=parsed.note,
                original_text=text,
                occurred_at=parsed.occurred_at,
                trip_id=view.trip_id,
                provenance={
                    "parsed_from": "text",
                    "categorized_by": result.source,
                    "context": view.tag,
                    "confidence": result.confidence,
                    "reasoning": result.reasoning,
                },
            )
        )

    def get(self, expense_id: int) -> Expense:
        expense = self.session.get(Expense, expense_id)
        if not expense or expense.user_id != self.user_id:
            raise NotFound("Expense not found")
        return expense

    def update(self, expense_id: int, data: ExpenseUpdate) -> Expense:
        expense = self.get(expense_id)
        fields = data.model_dump(include=data.model_fields_set)
        if "category_id" in fields:
            self._check_refs(fields["category_id"], None)
        if fields.get("amount_cents") is None:
            fields.pop("amount_cents", None)
        if fields.get("occurred_at") is None:
            fields.pop("occurred_at", None)
        with store_operation(self.session, "update_expense"):
            for name, value in fields.items():
                setattr(expense, name, value)
            self.session.commit()
            self.session.refresh(expense)
        self.bus.publish_rows(EXPENSES_TABLE, ChangeOperation.update, [expense.to_row()])
        return expense

    def delete(self, expense_id: int) -> None:
        expense = self.get(expense_id)
        row = expense.to_row()
        with store_operation(self.session, "delete_expense"):
            self.session.delete(expense)
            self.session.commit()
        self.bus.publish_rows(EXPENSES_TABLE, ChangeOperation.delete, [row])

    def _delete_where(self, operation: str, *criteria) -> int:
        expenses = self.session.scalars(
            select(Expense).where(Expense.user_id == self.user_id, *criteria)
        ).all()
        if not expenses:
            return 0
        rows = [e.to_row() for e in expenses]
        with store_operation(self.session, operation):
            self.session.execute(
                delete(Expense).where(Expense.id.in_([e.id for e in expenses]))
            )
            self.session.commit()
        self.bus.publish_rows(EXPENSES_TABLE, ChangeOperation.delete, rows)
        return len(rows)

    def delete_many(self, expense_ids: Sequence[int]) -> int:
        return self._delete_where("delete_expenses", Expense.id.in_(list(expense_ids)))

    def delete_for_trip_category(self, trip_id: int, category_id: Optional[int]) -> int:
        TripService(self.session, self.user_id, self.bus).get(trip_id)
        category_clause = (
            Expense.category_id.is_(None)
            if category_id is None
            else Expense.category_id == category_id
        )
        return self._delete_where(
            "delete_trip_category_expenses", Expense.trip_id == trip_id, category_clause
        )

    def list_for_view(self, view: ViewContext, limit: int = 1000) -> list[Expense]:
        if view.user_id != self.user_id:
            return []
        trip_clause = (
            Expense.trip_id.is_(None)
            if view.trip_id is None
            else Expense.trip_id == view.trip_id
        )
        stmt = (
            select(Expense)
            .where(
                Expense.user_id == self.user_id,
                trip_clause,
                Expense.occurred_at >= view.period.start_at,
                Expense.occurred_at <= view.period.end_at,
            )
            .order_by(Expense.occurred_at.desc(), Expense.id.desc())
            .limit(limit)
        )
        with store_operation(self.session, "select_expenses"):
            return self.session.scalars(stmt).all()

    def rows_for_view(self, view: ViewContext) -> list[dict[str, object]]:
        return [e.to_row() for e in self.list_for_view(view)]

    def search(self, period: DateRange, filters: SearchFilters) -> list[Expense]:
        stmt = (
            select(Expense)
            .where(
                Expense.user_id == self.user_id,
                Expense.occurred_at >= period.start_at,
                Expense.occurred_at <= period.end_at,
            )
            .order_by(Expense.occurred_at.desc(), Expense.id.desc())
        )
        if filters.contexts == {"casual"}:
            stmt = stmt.where(Expense.trip_id.is_(None))
        elif filters.contexts == {"special"}:
            stmt = stmt.where(Expense.trip_id.is_not(None))
        if filters.kinds:
            stmt = stmt.where(Expense.kind.in_(list(filters.kinds)))
        with store_operation(self.session, "search_expenses"):
            results = self.session.scalars(stmt).all()

        if filters.category_ids:
            results = [
                e
                for e in results
                if (str(e.category_id) if e.category_id is not None else "uncategorized")
                in filters.category_ids
            ]
        keyword = (filters.query or "").strip().lower()
        if keyword:
            results = [e for e in results if _keyword_matches(keyword, e)]
        return results


def _keyword_matches(keyword: str, expense: Expense) -> bool:
    for text in (expense.note or "", expense.original_text or ""):
        lowered = text.lower()
        if keyword in lowered:
            return True
        if len(keyword) >= 4 and fuzz.partial_ratio(keyword, lowered) >= FUZZY_SEARCH_THRESHOLD:
            return True
    return False


@dataclass(frozen=True)
class TripSummary:
    trip: Trip
    budget: BudgetSummary


class TripService:
    def __init__(
        self,
        session: Session,
        user_id: str,
        bus: Optional[ChangeBus] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.bus = bus or change_bus

    def list_all(self) -> list[Trip]:
        stmt = (
            select(Trip)
            .where(Trip.user_id == self.user_id)
            .order_by(Trip.starts_at.desc(), Trip.id.desc())
        )
        with store_operation(self.session, "select_trips"):
            return self.session.scalars(stmt).all()

    def get(self, trip_id: int) -> Trip:
        trip = self.session.get(Trip, trip_id)
        if not trip or trip.user_id != self.user_id:
            raise NotFound("Trip not found")
        return trip

    def create(self, data: TripIn) -> Trip:
        if data.ends_at <= data.starts_at:
            raise ValueError("End date must be after start date")
        trip = Trip(
            user_id=self.user_id,
            name=data.name.strip(),
            starts_at=data.starts_at,
            ends_at=data.ends_at,
        )
        with store_operation(self.session, "insert_trip"):
            self.session.add(trip)
            self.session.commit()
            self.session.refresh(trip)
        return trip

    def list_overlapping(self, period: DateRange) -> list[Trip]:
        return [
            t for t in self.list_all() if trip_overlaps(t.starts_at, t.ends_at, period)
        ]

    def count_overlapping(self, period: DateRange) -> int:
        stmt = select(func.count(Trip.id)).where(
            Trip.user_id == self.user_id,
            Trip.starts_at <= period.end_at,
            Trip.ends_at >= period.start_at,
        )
        with store_operation(self.session, "count_trips"):
            return int(self.session.execute(stmt).scalar_one() or 0)

    def summaries(self, period: DateRange) -> list[TripSummary]:
        trips = self.list_overlapping(period)
        if not trips:
            return []
        trip_ids = [t.id for t in trips]
        spent_stmt = (
            select(Expense.trip_id, func.coalesce(func.sum(Expense.amount_cents), 0))
            .where(
                Expense.user_id == self.user_id,
                Expense.trip_id.in_(trip_ids),
                Expense.kind == ExpenseKind.expense,
                Expense.occurred_at >= period.start_at,
                Expense.occurred_at <= period.end_at,
            )
            .group_by(Expense.trip_id)
        )
        budget_stmt = (
            select(Budget.trip_id, func.coalesce(func.sum(Budget.amount_cents), 0))
            .where(Budget.user_id == self.user_id, Budget.trip_id.in_(trip_ids))
            .group_by(Budget.trip_id)
        )
        with store_operation(self.session, "select_trip_summaries"):
            spent = {tid: int(total) for tid, total in self.session.execute(spent_stmt)}
            budgets = {tid: int(total) for tid, total in self.session.execute(budget_stmt)}
        return [
            TripSummary(
                trip=t,
                budget=summarize_budget(budgets.get(t.id, 0), spent.get(t.id, 0)),
            )
            for t in trips
        ]

    def delete(self, trip_id: int) -> None:
        """Delete a trip after its expenses and budgets.

        Each step commits on its own; the first failing step stops the
        cascade, so the trip row outlives any partial cleanup.
        """
        trip = self.get(trip_id)
        steps: list[tuple[str, Callable[[], None]]] = [
            ("expenses", lambda: self._delete_expenses(trip.id)),
            ("budgets", lambda: self._delete_budgets(trip.id)),
            ("trip", lambda: self._delete_trip_row(trip)),
        ]
        for step, run in steps:
            try:
                run()
            except (SQLAlchemyError, StoreOperationFailed) as exc:
                self.session.rollback()
                logger.error(f"trip_delete_failed: trip={trip_id} step={step} error={exc}")
                raise CascadeDeletePartialFailure(trip_id, step) from exc
        logger.info(f"trip_deleted: id={trip_id}")

    def _delete_expenses(self, trip_id: int) -> None:
        ExpenseService(self.session, self.user_id, self.bus)._delete_where(
            "delete_trip_expenses", Expense.trip_id == trip_id
        )

    def _delete_budgets(self, trip_id: int) -> None:
        self.session.execute(
            delete(Budget).where(Budget.user_id == self.user_id, Budget.trip_id == trip_id)
        )
        self.session.commit()

    def _delete_trip_row(self, trip: Trip) -> None:
        self.session.delete(trip)
        self.session.commit()


class BudgetService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def _context_clause(self, trip_id: Optional[int]):
        return Budget.trip_id.is_(None) if trip_id is None else Budget.trip_id == trip_id

    def months_for(self, view: ViewContext) -> list[str]:
        """Budget months of a view.

        A trip budget always spans the whole trip; a casual budget spans
        only the months of the active range.
        """
        if view.trip_id is None:
            return view.period.months()
        trip = TripService(self.session, self.user_id).get(view.trip_id)
        return span_range(trip.starts_at, trip.ends_at).months()

    def period_budget(self, trip_id: Optional[int], months: Sequence[str]) -> int:
        if not months:
            return 0
        stmt = select(func.coalesce(func.sum(Budget.amount_cents), 0)).where(
            Budget.user_id == self.user_id,
            self._context_clause(trip_id),
            Budget.month_year.in_(list(months)),
        )
        with store_operation(self.session, "select_budgets"):
            return int(self.session.execute(stmt).scalar_one() or 0)

    def set_budget(
        self, trip_id: Optional[int], months: Sequence[str], amount_cents: int
    ) -> list[Budget]:
        """Replace the rows of ``months`` with one row of ``amount_cents`` each."""
        if amount_cents < 0:
            raise ValueError("Budget must not be negative")
        if trip_id is not None:
            TripService(self.session, self.user_id).get(trip_id)
        rows = [
            Budget(
                user_id=self.user_id,
                trip_id=trip_id,
                month_year=month,
                amount_cents=amount_cents,
            )
            for month in dict.fromkeys(months)
        ]
        with store_operation(self.session, "replace_budgets"):
            self.session.execute(
                delete(Budget).where(
                    Budget.user_id == self.user_id,
                    self._context_clause(trip_id),
                    Budget.month_year.in_(list(months)),
                )
            )
            self.session.add_all(rows)
            self.session.commit()
        logger.info(
            f"budget_set: trip={trip_id} months={len(rows)} amount_cents={amount_cents}"
        )
        return rows

    def for_view(self, view: ViewContext) -> tuple[list[str], int]:
        months = self.months_for(view)
        return months, self.period_budget(view.trip_id, months)

    def set_for_view(self, view: ViewContext, amount_cents: int) -> list[Budget]:
        return self.set_budget(view.trip_id, self.months_for(view), amount_cents)


@dataclass(frozen=True)
class Dashboard:
    view: ViewContext
    expenses: list[Expense]
    aggregate: Aggregate
    months: list[str]
    budget: BudgetSummary


class DashboardService:
    def __init__(
        self,
        session: Session,
        user_id: str,
        bus: Optional[ChangeBus] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.bus = bus or change_bus

    def build(self, view: ViewContext) -> Dashboard:
        expenses = ExpenseService(self.session, self.user_id, self.bus).list_for_view(view)
        categories = CategoryService(self.session, self.user_id, self.bus).lookup()
        aggregate = aggregate_expenses([e.to_row() for e in expenses], categories)
        months, budget_cents = BudgetService(self.session, self.user_id).for_view(view)
        return Dashboard(
            view=view,
            expenses=expenses,
            aggregate=aggregate,
            months=months,
            budget=summarize_budget(budget_cents, aggregate.spent_cents),
        )

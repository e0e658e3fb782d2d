from datetime import datetime

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from categorizer import CategorizationResolver, CategorizationResult
from database import Base
from models import Budget, Expense, ExpenseKind, Trip
from periods import ViewContext, build_range
from realtime import ChangeBus
from schemas import CategoryIn, ExpenseIn, ExpenseUpdate, SearchFilters, TripIn
from services import (
    BudgetService,
    CascadeDeletePartialFailure,
    CategoryService,
    DashboardService,
    ExpenseService,
    NotFound,
    TripService,
)

MARCH = build_range("2025-03-01", "2025-03-31")


def _session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def _expense(service, amount, when, **kwargs) -> Expense:
    return service.create(
        ExpenseIn(amount_cents=amount, occurred_at=when, note="seed", **kwargs)
    )


def test_budget_replace_keeps_one_row_per_month() -> None:
    with _session() as session:
        budgets = BudgetService(session, "u1")
        months = ["2025-03", "2025-04"]

        budgets.set_budget(None, months, 10_000)
        budgets.set_budget(None, months, 25_000)
        budgets.set_budget(None, months, 25_000)

        rows = session.scalars(select(Budget)).all()
        assert sorted(r.month_year for r in rows) == months
        assert {r.amount_cents for r in rows} == {25_000}
        assert budgets.period_budget(None, months) == 50_000
        assert budgets.period_budget(None, ["2025-03"]) == 25_000


def test_budget_replace_over_overlapping_months() -> None:
    with _session() as session:
        budgets = BudgetService(session, "u1")
        all_months = ["2025-03", "2025-04", "2025-05"]

        budgets.set_budget(None, ["2025-03", "2025-04"], 10_000)
        assert budgets.period_budget(None, ["2025-03", "2025-04"]) == 20_000

        budgets.set_budget(None, ["2025-04", "2025-05"], 3_000)

        assert budgets.period_budget(None, all_months) == 10_000 + 2 * 3_000
        assert budgets.period_budget(None, ["2025-03"]) == 10_000
        assert budgets.period_budget(None, ["2025-04"]) == 3_000
        assert len(session.scalars(select(Budget)).all()) == 3


def test_budget_scopes_are_independent() -> None:
    with _session() as session:
        trip = TripService(session, "u1").create(
            TripIn(
                name="Lisbon",
                starts_at=datetime(2025, 3, 15),
                ends_at=datetime(2025, 4, 10),
            )
        )
        budgets = BudgetService(session, "u1")
        budgets.set_budget(None, ["2025-03"], 10_000)
        budgets.set_for_view(ViewContext("u1", trip.id, MARCH), 3_000)

        assert budgets.period_budget(None, ["2025-03"]) == 10_000
        months, total = budgets.for_view(ViewContext("u1", trip.id, MARCH))
        assert months == ["2025-03", "2025-04"]
        assert total == 6_000
        assert BudgetService(session, "u2").period_budget(None, ["2025-03"]) == 0


def test_negative_budget_is_rejected() -> None:
    with _session() as session:
        with pytest.raises(ValueError):
            BudgetService(session, "u1").set_budget(None, ["2025-03"], -1)


def test_dashboard_reports_overspent_budget() -> None:
    with _session() as session:
        food = CategoryService(session, "u1").create(CategoryIn(name="Food"))
        expenses = ExpenseService(session, "u1", ChangeBus())
        _expense(expenses, 70_000, datetime(2025, 3, 3), category_id=food.id)
        _expense(expenses, 50_000, datetime(2025, 3, 31, 23, 59, 59, 999000))
        _expense(expenses, 9_000, datetime(2025, 3, 5), kind=ExpenseKind.lended)
        _expense(expenses, 1_000, datetime(2025, 4, 1))
        view = ViewContext("u1", None, MARCH)
        BudgetService(session, "u1").set_for_view(view, 100_000)

        board = DashboardService(session, "u1").build(view)

        assert len(board.expenses) == 3
        assert board.months == ["2025-03"]
        assert board.aggregate.lended_cents == 9_000
        assert board.budget.balance_cents == -20_000
        assert board.budget.usage_percent == 120
        assert board.budget.progress_percent == 100


def test_views_are_scoped_by_owner_and_trip() -> None:
    with _session() as session:
        trip = TripService(session, "u1").create(
            TripIn(name="Rome", starts_at=datetime(2025, 3, 1), ends_at=datetime(2025, 3, 9))
        )
        _expense(ExpenseService(session, "u1"), 100, datetime(2025, 3, 2))
        _expense(ExpenseService(session, "u1"), 200, datetime(2025, 3, 2), trip_id=trip.id)
        _expense(ExpenseService(session, "u2"), 300, datetime(2025, 3, 2))

        casual = ExpenseService(session, "u1").list_for_view(ViewContext("u1", None, MARCH))
        special = ExpenseService(session, "u1").list_for_view(
            ViewContext("u1", trip.id, MARCH)
        )
        foreign = ExpenseService(session, "u1").list_for_view(ViewContext("u2", None, MARCH))

        assert [e.amount_cents for e in casual] == [100]
        assert [e.amount_cents for e in special] == [200]
        assert foreign == []
        with pytest.raises(NotFound):
            ExpenseService(session, "u2").get(casual[0].id)


def test_create_from_text_records_provenance() -> None:
    def backend(text, names, context):
        return CategorizationResult("Food", 0.92, "meal out", "llm")

    with _session() as session:
        CategoryService(session, "u1").create(CategoryIn(name="Food"))
        view = ViewContext("u1", None, MARCH)

        expense = ExpenseService(session, "u1").create_from_text(
            "250 lunch with friends",
            view,
            CategorizationResolver(backend),
            now=datetime(2025, 3, 10, 13, 0),
        )

        assert expense.amount_cents == 25_000
        assert expense.kind == ExpenseKind.expense
        assert expense.category.name == "Food"
        assert expense.note == "lunch with friends"
        assert expense.original_text == "250 lunch with friends"
        assert expense.provenance == {
            "parsed_from": "text",
            "categorized_by": "llm",
            "context": "casual",
            "confidence": 0.92,
            "reasoning": "meal out",
        }


def test_create_rejects_foreign_category() -> None:
    with _session() as session:
        other_users = CategoryService(session, "u2").create(CategoryIn(name="Food"))
        with pytest.raises(NotFound):
            _expense(
                ExpenseService(session, "u1"),
                100,
                datetime(2025, 3, 2),
                category_id=other_users.id,
            )


def test_update_changes_only_given_fields() -> None:
    with _session() as session:
        expenses = ExpenseService(session, "u1")
        expense = _expense(expenses, 100, datetime(2025, 3, 2))

        updated = expenses.update(expense.id, ExpenseUpdate(note="dinner"))

        assert updated.note == "dinner"
        assert updated.amount_cents == 100
        assert updated.occurred_at == datetime(2025, 3, 2)


def test_duplicate_category_names_are_rejected() -> None:
    with _session() as session:
        categories = CategoryService(session, "u1")
        categories.create(CategoryIn(name="Food"))
        with pytest.raises(ValueError):
            categories.create(CategoryIn(name=" food "))
        assert CategoryService(session, "u2").create(CategoryIn(name="Food"))


def test_deleting_category_moves_expenses_to_other() -> None:
    with _session() as session:
        categories = CategoryService(session, "u1")
        food = categories.create(CategoryIn(name="Food"))
        other = categories.create(CategoryIn(name="Other"))
        expenses = ExpenseService(session, "u1")
        first = _expense(expenses, 100, datetime(2025, 3, 2), category_id=food.id)
        second = _expense(expenses, 200, datetime(2025, 3, 3), category_id=food.id)

        assert categories.delete(food.id) == 2
        assert expenses.get(first.id).category_id == other.id
        assert expenses.get(second.id).category_id == other.id

        assert categories.delete(other.id) == 2
        assert expenses.get(first.id).category_id is None
        assert [c.name for c in categories.list_all()] == []


def test_trip_delete_cascades() -> None:
    with _session() as session:
        trips = TripService(session, "u1")
        trip = trips.create(
            TripIn(name="Oslo", starts_at=datetime(2025, 3, 1), ends_at=datetime(2025, 3, 5))
        )
        expenses = ExpenseService(session, "u1")
        _expense(expenses, 100, datetime(2025, 3, 2), trip_id=trip.id)
        kept = _expense(expenses, 200, datetime(2025, 3, 2))
        BudgetService(session, "u1").set_budget(trip.id, ["2025-03"], 5_000)

        trips.delete(trip.id)

        assert session.scalars(select(Trip)).all() == []
        assert session.scalars(select(Budget)).all() == []
        assert [e.id for e in session.scalars(select(Expense))] == [kept.id]


def test_trip_delete_reports_failed_step(monkeypatch) -> None:
    with _session() as session:
        trips = TripService(session, "u1")
        trip = trips.create(
            TripIn(name="Oslo", starts_at=datetime(2025, 3, 1), ends_at=datetime(2025, 3, 5))
        )
        _expense(ExpenseService(session, "u1"), 100, datetime(2025, 3, 2), trip_id=trip.id)

        def fail(trip_id):
            raise OperationalError("DELETE FROM budgets", {}, Exception("locked"))

        monkeypatch.setattr(trips, "_delete_budgets", fail)

        with pytest.raises(CascadeDeletePartialFailure) as excinfo:
            trips.delete(trip.id)

        assert excinfo.value.step == "budgets"
        assert excinfo.value.operation == "delete_trip"
        assert session.scalars(select(Expense)).all() == []
        assert trips.get(trip.id).name == "Oslo"


def test_trip_membership_and_summaries() -> None:
    with _session() as session:
        trips = TripService(session, "u1")
        a = trips.create(
            TripIn(name="A", starts_at=datetime(2025, 3, 15), ends_at=datetime(2025, 4, 10))
        )
        trips.create(
            TripIn(name="B", starts_at=datetime(2025, 1, 1), ends_at=datetime(2025, 2, 15))
        )
        _expense(ExpenseService(session, "u1"), 4_000, datetime(2025, 3, 20), trip_id=a.id)
        BudgetService(session, "u1").set_budget(a.id, ["2025-03", "2025-04"], 5_000)

        assert [t.name for t in trips.list_overlapping(MARCH)] == ["A"]
        assert trips.count_overlapping(MARCH) == 1

        (summary,) = trips.summaries(MARCH)
        assert summary.trip.id == a.id
        assert summary.budget.spent_cents == 4_000
        assert summary.budget.budget_cents == 10_000
        assert summary.budget.progress_percent == 40


def test_search_filters_and_fuzzy_keyword() -> None:
    with _session() as session:
        food = CategoryService(session, "u1").create(CategoryIn(name="Food"))
        expenses = ExpenseService(session, "u1")
        coffee = expenses.create(
            ExpenseIn(
                amount_cents=450,
                occurred_at=datetime(2025, 3, 4),
                category_id=food.id,
                note="coffee at the station",
            )
        )
        lent = expenses.create(
            ExpenseIn(
                amount_cents=2_000,
                occurred_at=datetime(2025, 3, 5),
                kind=ExpenseKind.lended,
                note="lent to Sam",
            )
        )

        def ids(**kwargs):
            return [e.id for e in expenses.search(MARCH, SearchFilters(**kwargs))]

        assert ids() == [lent.id, coffee.id]
        assert ids(query="cofffee") == [coffee.id]
        assert ids(query="zebra") == []
        assert ids(kinds={ExpenseKind.lended}) == [lent.id]
        assert ids(category_ids={"uncategorized"}) == [lent.id]
        assert ids(category_ids={str(food.id)}) == [coffee.id]
        assert ids(contexts={"special"}) == []


def test_bulk_delete_only_touches_own_rows() -> None:
    with _session() as session:
        mine = _expense(ExpenseService(session, "u1"), 100, datetime(2025, 3, 2))
        theirs = _expense(ExpenseService(session, "u2"), 100, datetime(2025, 3, 2))

        assert ExpenseService(session, "u1").delete_many([mine.id, theirs.id]) == 1
        assert [e.id for e in session.scalars(select(Expense))] == [theirs.id]

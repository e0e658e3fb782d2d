from aggregation import (
    COLOR_PALETTE,
    UNCATEGORIZED,
    aggregate_expenses,
    summarize_budget,
    usage_percent,
)


def _row(id_, amount, category_id=None, kind="expense"):
    return {"id": id_, "amount_cents": amount, "category_id": category_id, "kind": kind}


def test_every_expense_lands_in_exactly_one_group() -> None:
    rows = [
        _row(1, 1000, 1),
        _row(2, 500, 1),
        _row(3, 700, None),
        _row(4, 300, 99),
        _row(5, 2000, 1, kind="lended"),
        _row(6, 400, None, kind="borrowed"),
    ]
    result = aggregate_expenses(rows, {1: "Food", 2: "Transport"})

    grouped_ids = sorted(r["id"] for g in result.groups.values() for r in g.rows)
    assert grouped_ids == [1, 2, 3, 4]
    assert result.groups[1].total_cents == 1500
    assert result.groups[UNCATEGORIZED].name == "Uncategorized"
    assert result.groups[UNCATEGORIZED].total_cents == 700
    assert result.groups[99].name == "Unknown"
    assert result.lended_cents == 2000
    assert result.borrowed_cents == 400
    assert result.spent_cents == 2500


def test_known_categories_without_expenses_get_zero_groups() -> None:
    result = aggregate_expenses([], {1: "Food", 2: "Transport"})

    assert set(result.groups) == {1, 2}
    assert all(g.total_cents == 0 for g in result.groups.values())
    assert result.ranked_groups() == []
    assert [g.key for g in result.ranked_groups(include_empty=True)] == [1, 2]


def test_ranked_groups_sorted_by_total() -> None:
    rows = [_row(1, 100, 1), _row(2, 900, 2), _row(3, 100, 3)]
    result = aggregate_expenses(rows, {1: "b", 2: "c", 3: "a"})
    assert [g.key for g in result.ranked_groups()] == [2, 3, 1]


def test_colors_follow_name_order_and_wrap() -> None:
    categories = {i: f"cat{i:02d}" for i in range(12)}
    result = aggregate_expenses([], categories)

    assert result.groups[0].color == COLOR_PALETTE[0]
    assert result.groups[9].color == COLOR_PALETTE[9]
    assert result.groups[10].color == COLOR_PALETTE[0]
    again = aggregate_expenses([], dict(reversed(list(categories.items()))))
    assert {k: g.color for k, g in again.groups.items()} == {
        k: g.color for k, g in result.groups.items()
    }


def test_overspent_budget_keeps_uncapped_usage() -> None:
    summary = summarize_budget(100_000, 120_000)

    assert summary.balance_cents == -20_000
    assert summary.usage_percent == 120
    assert summary.progress_percent == 100
    assert summary.over_budget


def test_zero_budget_reports_zero_usage() -> None:
    assert usage_percent(5_000, 0) == 0
    summary = summarize_budget(0, 5_000)
    assert summary.balance_cents == -5_000
    assert summary.progress_percent == 0

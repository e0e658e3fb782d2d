from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Mapping, Optional, Union

from models import ExpenseKind

UNCATEGORIZED = "uncategorized"
UNCATEGORIZED_LABEL = "Uncategorized"
UNKNOWN_LABEL = "Unknown"

COLOR_PALETTE = (
    "#ff6b6b",
    "#4ecdc4",
    "#45b7d1",
    "#96ceb4",
    "#feca57",
    "#ff9ff3",
    "#54a0ff",
    "#5f27cd",
    "#00d2d3",
    "#ff9f43",
)

GroupKey = Union[int, str]
Row = Mapping[str, object]


@dataclass
class CategoryGroup:
    key: GroupKey
    name: str
    total_cents: int = 0
    rows: list[Row] = field(default_factory=list)
    color: Optional[str] = None


@dataclass
class Aggregate:
    groups: dict[GroupKey, CategoryGroup]
    lended_cents: int
    borrowed_cents: int

    @property
    def spent_cents(self) -> int:
        return sum(group.total_cents for group in self.groups.values())

    def ranked_groups(self, include_empty: bool = False) -> list[CategoryGroup]:
        """Groups by descending total, then name; empty ones only on request."""
        return sorted(
            (g for g in self.groups.values() if include_empty or g.total_cents > 0),
            key=lambda g: (-g.total_cents, g.name.lower()),
        )


@dataclass(frozen=True)
class BudgetSummary:
    budget_cents: int
    spent_cents: int
    balance_cents: int
    usage_percent: float
    progress_percent: float

    @property
    def over_budget(self) -> bool:
        return self.usage_percent > 100


def aggregate_expenses(
    rows: Iterable[Row], categories: Mapping[int, str]
) -> Aggregate:
    """Group ``expense`` rows by category and total lent/borrowed apart.

    Every known category is present in the result, with a zero total when
    nothing matched it. Colors are assigned once all groups exist.
    """
    groups: dict[GroupKey, CategoryGroup] = {}
    lended = 0
    borrowed = 0

    for row in rows:
        amount = int(row.get("amount_cents") or 0)
        kind = row.get("kind")
        if kind == ExpenseKind.lended:
            lended += amount
            continue
        if kind == ExpenseKind.borrowed:
            borrowed += amount
            continue

        category_id = row.get("category_id")
        if category_id is None:
            key: GroupKey = UNCATEGORIZED
            name = UNCATEGORIZED_LABEL
        else:
            key = int(category_id)
            name = categories.get(key, UNKNOWN_LABEL)
        group = groups.get(key)
        if group is None:
            group = groups[key] = CategoryGroup(key=key, name=name)
        group.rows.append(row)
        group.total_cents += amount

    for category_id, name in categories.items():
        if category_id not in groups:
            groups[category_id] = CategoryGroup(key=category_id, name=name)

    assign_colors(groups.values())
    return Aggregate(groups=groups, lended_cents=lended, borrowed_cents=borrowed)


def assign_colors(groups: Iterable[CategoryGroup]) -> None:
    # Stable only for a fixed group set; adding a group can shift colors.
    ordered = sorted(groups, key=lambda g: (g.name.lower(), str(g.key)))
    for index, group in enumerate(ordered):
        group.color = COLOR_PALETTE[index % len(COLOR_PALETTE)]


def usage_percent(spent_cents: int, budget_cents: int) -> float:
    if budget_cents <= 0:
        return 0.0
    return spent_cents / budget_cents * 100


def summarize_budget(budget_cents: int, spent_cents: int) -> BudgetSummary:
    usage = usage_percent(spent_cents, budget_cents)
    return BudgetSummary(
        budget_cents=budget_cents,
        spent_cents=spent_cents,
        balance_cents=budget_cents - spent_cents,
        usage_percent=usage,
        progress_percent=min(100.0, usage),
    )

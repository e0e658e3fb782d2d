import re
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Optional, Protocol, Sequence

from categorizer import OTHER, CategorizationResolver, CategorizationResult
from models import ExpenseKind
from periods import ViewContext

AMOUNT_RE = re.compile(r"(\d+(?:\.\d{2})?)")

BORROW_MARKERS = ("borr",)
LEND_MARKERS = ("lend", "lent")


class MissingAmount(ValueError):
    pass


class InvalidAmount(ValueError):
    pass


class DateOutOfRange(ValueError):
    pass


class NamedCategory(Protocol):
    id: int
    name: str


@dataclass(frozen=True)
class ParsedExpense:
    amount: Decimal
    kind: ExpenseKind
    category_name: str
    category_id: Optional[int]
    note: str
    occurred_at: datetime
    categorization: CategorizationResult

    @property
    def amount_cents(self) -> int:
        return int((self.amount * 100).quantize(Decimal("1")))


def extract_amount(text: str) -> tuple[Decimal, re.Match[str]]:
    match = AMOUNT_RE.search(text)
    if not match:
        raise MissingAmount(
            'Please include an amount in your expense (e.g., "100 facewash")'
        )
    try:
        amount = Decimal(match.group(1))
    except InvalidOperation as exc:
        raise InvalidAmount("Amount must be a positive number.") from exc
    if amount <= 0:
        raise InvalidAmount("Amount must be a positive number.")
    return amount, match


def infer_kind(text: str) -> ExpenseKind:
    lowered = text.lower()
    if any(marker in lowered for marker in BORROW_MARKERS):
        return ExpenseKind.borrowed
    if any(marker in lowered for marker in LEND_MARKERS):
        return ExpenseKind.lended
    return ExpenseKind.expense


def extract_note(text: str, amount_match: re.Match[str], fallback: str) -> str:
    """Text after a leading amount token; an amount elsewhere stays in the note."""
    remainder = text
    if not text[: amount_match.start()].strip():
        remainder = text[amount_match.end() :]
    remainder = " ".join(remainder.split())
    return remainder or fallback


def resolve_category_id(
    name: Optional[str], categories: Sequence[NamedCategory]
) -> Optional[int]:
    if not name or not name.strip():
        return None
    target = name.strip().lower()
    for category in categories:
        if category.name and category.name.lower() == target:
            return category.id
    for category in categories:
        if category.name and target in category.name.lower():
            return category.id
    for category in categories:
        if category.name and category.name.lower() == OTHER.lower():
            return category.id
    return None


def resolve_occurred_at(
    view: ViewContext, now: datetime, explicit: Optional[datetime] = None
) -> datetime:
    if explicit is not None:
        if not view.period.contains(explicit):
            raise DateOutOfRange(
                f"Date {explicit.isoformat()} is outside "
                f"{view.period.start.isoformat()}..{view.period.end.isoformat()}"
            )
        return explicit
    if view.period.contains(now):
        return now
    raise DateOutOfRange(
        "The selected range does not include today; pick a date inside it"
    )


def parse_expense_text(
    text: str,
    categories: Sequence[NamedCategory],
    view: ViewContext,
    resolver: CategorizationResolver,
    *,
    now: Optional[datetime] = None,
    occurred_at: Optional[datetime] = None,
) -> ParsedExpense:
    """Turn free text into an unsaved expense for ``view``.

    Amount and date are validated before the categorization backend is
    consulted so bad input never costs a remote call.
    """
    clean = (text or "").strip()
    amount, match = extract_amount(clean)
    when = resolve_occurred_at(view, now or datetime.utcnow(), occurred_at)
    kind = infer_kind(clean)

    result = resolver.resolve(clean, [c.name for c in categories], view.tag)
    category_name = result.category or OTHER
    return ParsedExpense(
        amount=amount,
        kind=kind,
        category_name=category_name,
        category_id=resolve_category_id(category_name, categories),
        note=extract_note(clean, match, category_name),
        occurred_at=when,
        categorization=result,
    )

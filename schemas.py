from datetime import date, datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models import ExpenseKind
from periods import to_utc_naive


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str


class TripIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    starts_at: datetime
    ends_at: datetime

    @model_validator(mode="after")
    def _end_after_start(self) -> "TripIn":
        if to_utc_naive(self.ends_at) <= to_utc_naive(self.starts_at):
            raise ValueError("End date must be after start date")
        return self


class TripOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    starts_at: datetime
    ends_at: datetime


class TripSummaryOut(TripOut):
    spent_cents: int
    budget_cents: int
    balance_cents: int
    spent_percent: float


class ExpenseTextIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    text: str = Field(..., min_length=1, max_length=500)
    start: str
    end: str
    trip_id: Optional[int] = None
    occurred_at: Optional[datetime] = None


class ExpenseIn(BaseModel):
    kind: ExpenseKind = ExpenseKind.expense
    amount_cents: int = Field(..., ge=0)
    category_id: Optional[int] = None
    note: Optional[str] = Field(default=None, max_length=500)
    original_text: Optional[str] = Field(default=None, max_length=500)
    occurred_at: datetime
    trip_id: Optional[int] = None
    provenance: dict[str, object] = Field(default_factory=dict)


class ExpenseUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount_cents: Optional[int] = Field(default=None, ge=0)
    category_id: Optional[int] = None
    note: Optional[str] = Field(default=None, max_length=500)
    occurred_at: Optional[datetime] = None


class ExpenseOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    kind: ExpenseKind
    amount_cents: int
    category_id: Optional[int]
    note: Optional[str]
    original_text: Optional[str]
    occurred_at: datetime
    trip_id: Optional[int]
    provenance: dict[str, object] = Field(default_factory=dict)


class BulkDeleteIn(BaseModel):
    ids: list[int] = Field(..., min_length=1)


class BudgetIn(BaseModel):
    amount_cents: int = Field(..., ge=0)
    start: str
    end: str
    trip_id: Optional[int] = None


class GroupOut(BaseModel):
    key: str
    name: str
    total_cents: int
    color: Optional[str]
    expense_ids: list[int]


class BudgetSummaryOut(BaseModel):
    months: list[str]
    budget_cents: int
    spent_cents: int
    balance_cents: int
    usage_percent: float
    progress_percent: float


class DashboardOut(BaseModel):
    start: date
    end: date
    trip_id: Optional[int]
    expenses: list[ExpenseOut]
    groups: list[GroupOut]
    lended_cents: int
    borrowed_cents: int
    budget: BudgetSummaryOut


class SearchFilters(BaseModel):
    query: Optional[str] = None
    contexts: set[Literal["casual", "special"]] = Field(default_factory=set)
    category_ids: set[str] = Field(default_factory=set)
    kinds: set[ExpenseKind] = Field(default_factory=set)

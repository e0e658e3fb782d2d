import asyncio
import logging
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from aggregation import Aggregate, BudgetSummary, summarize_budget
from auth import bearer_token, resolve_session_token
from categorizer import CategorizationResolver
from database import get_db, session_scope
from models import ExpenseKind
from periods import (
    DateRange,
    InvalidDateRange,
    ViewContext,
    resolve_period,
    span_range,
    to_utc_naive,
)
from realtime import LiveExpenseView, ViewSession, ViewSnapshot, live_feeds
from schemas import (
    BudgetIn,
    BudgetSummaryOut,
    BulkDeleteIn,
    CategoryIn,
    CategoryOut,
    DashboardOut,
    ExpenseOut,
    ExpenseTextIn,
    ExpenseUpdate,
    GroupOut,
    SearchFilters,
    TripIn,
    TripOut,
    TripSummaryOut,
)
from services import (
    BudgetService,
    CascadeDeletePartialFailure,
    CategoryService,
    DashboardService,
    ExpenseService,
    NotFound,
    StoreOperationFailed,
    TripService,
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(title="Spendtrail")

_resolver: Optional[CategorizationResolver] = None


def get_resolver() -> CategorizationResolver:
    global _resolver
    if _resolver is None:
        _resolver = CategorizationResolver()
    return _resolver


def current_user_id(request: Request) -> Optional[str]:
    token = bearer_token(request.headers.get("Authorization"))
    return resolve_session_token(token or request.cookies.get("session"))


def require_user_id(user_id: Optional[str] = Depends(current_user_id)) -> str:
    if not user_id:
        raise HTTPException(status_code=401, detail="Sign in required")
    return user_id


@app.exception_handler(StoreOperationFailed)
async def store_failure_handler(request: Request, exc: StoreOperationFailed):
    logger.error(f"store_unavailable: path={request.url.path} operation={exc.operation}")
    content: dict[str, object] = {"detail": str(exc), "operation": exc.operation}
    if isinstance(exc, CascadeDeletePartialFailure):
        content["step"] = exc.step
    return JSONResponse(status_code=503, content=content)


def _client_error(exc: ValueError) -> HTTPException:
    status = 404 if isinstance(exc, NotFound) else 400
    return HTTPException(status_code=status, detail=str(exc))


def period_from_request(request: Request) -> DateRange:
    params = request.query_params
    try:
        return resolve_period(params.get("period"), params.get("start"), params.get("end"))
    except InvalidDateRange as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def trip_id_from_request(request: Request) -> Optional[int]:
    raw = request.query_params.get("trip_id")
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid trip id") from exc


def view_for(
    db: Session,
    user_id: str,
    trip_id: Optional[int],
    start: Optional[str],
    end: Optional[str],
    period: Optional[str] = None,
) -> ViewContext:
    """View context of a request; a trip view without dates covers the trip."""
    try:
        if trip_id is not None and not (start or end or period):
            trip = TripService(db, user_id).get(trip_id)
            return ViewContext(user_id, trip_id, span_range(trip.starts_at, trip.ends_at))
        return ViewContext(user_id, trip_id, resolve_period(period, start, end))
    except ValueError as exc:
        raise _client_error(exc) from exc


def view_from_request(request: Request, db: Session, user_id: str) -> ViewContext:
    params = request.query_params
    return view_for(
        db,
        user_id,
        trip_id_from_request(request),
        params.get("start"),
        params.get("end"),
        params.get("period"),
    )


def serialize_groups(aggregate: Aggregate) -> list[GroupOut]:
    return [
        GroupOut(
            key=str(g.key),
            name=g.name,
            total_cents=g.total_cents,
            color=g.color,
            expense_ids=[int(r["id"]) for r in g.rows],
        )
        for g in aggregate.ranked_groups(include_empty=True)
    ]


def serialize_budget(months: list[str], summary: BudgetSummary) -> BudgetSummaryOut:
    return BudgetSummaryOut(
        months=months,
        budget_cents=summary.budget_cents,
        spent_cents=summary.spent_cents,
        balance_cents=summary.balance_cents,
        usage_percent=summary.usage_percent,
        progress_percent=summary.progress_percent,
    )


def empty_dashboard(period: DateRange, trip_id: Optional[int]) -> DashboardOut:
    return DashboardOut(
        start=period.start,
        end=period.end,
        trip_id=trip_id,
        expenses=[],
        groups=[],
        lended_cents=0,
        borrowed_cents=0,
        budget=serialize_budget(period.months(), summarize_budget(0, 0)),
    )


@app.get("/api/categories", response_model=list[CategoryOut])
def list_categories(
    db: Session = Depends(get_db), user_id: Optional[str] = Depends(current_user_id)
):
    if not user_id:
        return []
    return CategoryService(db, user_id).list_all()


@app.post("/api/categories", response_model=CategoryOut, status_code=201)
def create_category(
    data: CategoryIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(require_user_id),
):
    try:
        return CategoryService(db, user_id).create(data)
    except ValueError as exc:
        raise _client_error(exc) from exc


@app.delete("/api/categories/{category_id}")
def delete_category(
    category_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(require_user_id),
):
    try:
        reassigned = CategoryService(db, user_id).delete(category_id)
    except ValueError as exc:
        raise _client_error(exc) from exc
    return {"deleted": category_id, "reassigned": reassigned}


@app.get("/api/dashboard", response_model=DashboardOut)
def dashboard(
    request: Request,
    db: Session = Depends(get_db),
    user_id: Optional[str] = Depends(current_user_id),
):
    if not user_id:
        return empty_dashboard(period_from_request(request), trip_id_from_request(request))
    view = view_from_request(request, db, user_id)
    try:
        board = DashboardService(db, user_id).build(view)
    except ValueError as exc:
        raise _client_error(exc) from exc
    return DashboardOut(
        start=view.period.start,
        end=view.period.end,
        trip_id=view.trip_id,
        expenses=[ExpenseOut.model_validate(e) for e in board.expenses],
        groups=serialize_groups(board.aggregate),
        lended_cents=board.aggregate.lended_cents,
        borrowed_cents=board.aggregate.borrowed_cents,
        budget=serialize_budget(board.months, board.budget),
    )


@app.post("/api/expenses", response_model=ExpenseOut, status_code=201)
def create_expense(
    data: ExpenseTextIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(require_user_id),
    resolver: CategorizationResolver = Depends(get_resolver),
):
    view = view_for(db, user_id, data.trip_id, data.start, data.end)
    occurred_at = to_utc_naive(data.occurred_at) if data.occurred_at else None
    try:
        expense = ExpenseService(db, user_id).create_from_text(
            data.text, view, resolver, occurred_at=occurred_at
        )
    except ValueError as exc:
        raise _client_error(exc) from exc
    live_feeds.offer_local(user_id, expense.to_row())
    return expense


@app.patch("/api/expenses/{expense_id}", response_model=ExpenseOut)
def update_expense(
    expense_id: int,
    data: ExpenseUpdate,
    db: Session = Depends(get_db),
    user_id: str = Depends(require_user_id),
):
    if data.occurred_at is not None:
        data.occurred_at = to_utc_naive(data.occurred_at)
    try:
        return ExpenseService(db, user_id).update(expense_id, data)
    except ValueError as exc:
        raise _client_error(exc) from exc


@app.delete("/api/expenses/{expense_id}", status_code=204)
def delete_expense(
    expense_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(require_user_id),
):
    try:
        ExpenseService(db, user_id).delete(expense_id)
    except ValueError as exc:
        raise _client_error(exc) from exc
    return Response(status_code=204)


@app.post("/api/expenses/bulk-delete")
def bulk_delete_expenses(
    data: BulkDeleteIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(require_user_id),
):
    deleted = ExpenseService(db, user_id).delete_many(data.ids)
    return {"deleted": deleted}


@app.get("/api/search", response_model=list[ExpenseOut])
def search_expenses(
    request: Request,
    db: Session = Depends(get_db),
    user_id: Optional[str] = Depends(current_user_id),
):
    period = period_from_request(request)
    if not user_id:
        return []
    params = request.query_params
    try:
        filters = SearchFilters(
            query=params.get("q"),
            contexts=set(params.getlist("context")),
            category_ids=set(params.getlist("category")),
            kinds={ExpenseKind(k) for k in params.getlist("kind")},
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return ExpenseService(db, user_id).search(period, filters)


@app.get("/api/trips", response_model=list[TripSummaryOut])
def list_trips(
    request: Request,
    db: Session = Depends(get_db),
    user_id: Optional[str] = Depends(current_user_id),
):
    period = period_from_request(request)
    if not user_id:
        return []
    return [
        TripSummaryOut(
            id=s.trip.id,
            name=s.trip.name,
            starts_at=s.trip.starts_at,
            ends_at=s.trip.ends_at,
            spent_cents=s.budget.spent_cents,
            budget_cents=s.budget.budget_cents,
            balance_cents=s.budget.balance_cents,
            spent_percent=s.budget.progress_percent,
        )
        for s in TripService(db, user_id).summaries(period)
    ]


@app.get("/api/trips/active")
def active_trips(
    request: Request,
    db: Session = Depends(get_db),
    user_id: Optional[str] = Depends(current_user_id),
):
    period = period_from_request(request)
    count = TripService(db, user_id).count_overlapping(period) if user_id else 0
    return {"has_trips": count > 0, "count": count}


@app.post("/api/trips", response_model=TripOut, status_code=201)
def create_trip(
    data: TripIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(require_user_id),
):
    data.starts_at = to_utc_naive(data.starts_at)
    data.ends_at = to_utc_naive(data.ends_at)
    try:
        return TripService(db, user_id).create(data)
    except ValueError as exc:
        raise _client_error(exc) from exc


@app.delete("/api/trips/{trip_id}", status_code=204)
def delete_trip(
    trip_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(require_user_id),
):
    try:
        TripService(db, user_id).delete(trip_id)
    except ValueError as exc:
        raise _client_error(exc) from exc
    return Response(status_code=204)


@app.delete("/api/trips/{trip_id}/categories/{category_key}")
def delete_trip_category_expenses(
    trip_id: int,
    category_key: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(require_user_id),
):
    try:
        category_id = None if category_key == "uncategorized" else int(category_key)
        deleted = ExpenseService(db, user_id).delete_for_trip_category(
            trip_id, category_id
        )
    except ValueError as exc:
        raise _client_error(exc) from exc
    return {"deleted": deleted}


@app.get("/api/budget", response_model=BudgetSummaryOut)
def get_budget(
    request: Request,
    db: Session = Depends(get_db),
    user_id: Optional[str] = Depends(current_user_id),
):
    if not user_id:
        return serialize_budget(
            period_from_request(request).months(), summarize_budget(0, 0)
        )
    view = view_from_request(request, db, user_id)
    try:
        board = DashboardService(db, user_id).build(view)
    except ValueError as exc:
        raise _client_error(exc) from exc
    return serialize_budget(board.months, board.budget)


@app.put("/api/budget", response_model=BudgetSummaryOut)
def set_budget(
    data: BudgetIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(require_user_id),
):
    view = view_for(db, user_id, data.trip_id, data.start, data.end)
    try:
        BudgetService(db, user_id).set_for_view(view, data.amount_cents)
        board = DashboardService(db, user_id).build(view)
    except ValueError as exc:
        raise _client_error(exc) from exc
    return serialize_budget(board.months, board.budget)


def _load_rows(context: ViewContext) -> list[dict[str, object]]:
    with session_scope() as db:
        return ExpenseService(db, context.user_id).rows_for_view(context)


def _view_context(user_id: str, params: dict) -> ViewContext:
    raw_trip = params.get("trip_id")
    trip_id = int(raw_trip) if raw_trip not in (None, "") else None
    with session_scope() as db:
        return view_for(
            db, user_id, trip_id, params.get("start"), params.get("end"), params.get("period")
        )


def _snapshot(snapshot: ViewSnapshot) -> dict[str, object]:
    context = snapshot.context
    with session_scope() as db:
        categories = CategoryService(db, context.user_id).lookup()
        months, budget_cents = BudgetService(db, context.user_id).for_view(context)
    aggregate = snapshot.aggregate(categories)
    return jsonable_encoder(
        {
            "start": context.period.start,
            "end": context.period.end,
            "trip_id": context.trip_id,
            "loading": snapshot.loading,
            "error": snapshot.error,
            "expenses": [ExpenseOut.model_validate(r) for r in snapshot.rows],
            "groups": serialize_groups(aggregate),
            "lended_cents": aggregate.lended_cents,
            "borrowed_cents": aggregate.borrowed_cents,
            "budget": serialize_budget(
                months, summarize_budget(budget_cents, aggregate.spent_cents)
            ),
        }
    )


@app.websocket("/ws/expenses")
async def expenses_feed(websocket: WebSocket):
    user_id = resolve_session_token(websocket.query_params.get("token"))
    if not user_id:
        await websocket.close(code=4401)
        return
    await websocket.accept()

    send_lock = asyncio.Lock()

    async def load(context: ViewContext) -> list[dict[str, object]]:
        return await run_in_threadpool(_load_rows, context)

    async def push(view: LiveExpenseView) -> None:
        payload = await run_in_threadpool(_snapshot, view.snapshot())
        async with send_lock:
            await websocket.send_json(payload)

    async def switch(params: dict) -> None:
        try:
            context = await run_in_threadpool(_view_context, user_id, params)
            view = await feed.switch(context)
        except (HTTPException, ValueError, StoreOperationFailed) as exc:
            detail = exc.detail if isinstance(exc, HTTPException) else str(exc)
            async with send_lock:
                await websocket.send_json({"error": detail})
            return
        await push(view)

    feed = ViewSession(load)
    live_feeds.add(user_id, feed)
    runner = asyncio.create_task(feed.run(push))
    try:
        await switch(dict(websocket.query_params))
        while True:
            message = await websocket.receive_json()
            if isinstance(message, dict):
                await switch(message)
    except WebSocketDisconnect:
        logger.info(f"feed_disconnected: user={user_id}")
    finally:
        live_feeds.discard(user_id, feed)
        feed.close()
        runner.cancel()


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()

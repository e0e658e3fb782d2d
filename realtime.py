"""Change notifications for expenses and the live, per-view record set.

``ChangeBus`` plays the record store's change channel: services publish
one event per committed row change, subscribers receive the events that
match their owner and trip filter. ``LiveExpenseView`` folds a bulk
load, optimistic local inserts and pushed events into one collection,
keyed by record id. ``ViewSession`` ties a view to its subscription and
rebuilds both whenever the view context changes; ``FeedRegistry`` routes
acknowledged inserts to the open sessions of their owner.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Mapping, Optional

from aggregation import Aggregate, aggregate_expenses
from periods import ViewContext

logger = logging.getLogger(__name__)

Row = dict[str, object]
Fingerprint = tuple


class ChangeOperation(str, Enum):
    insert = "insert"
    update = "update"
    delete = "delete"


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    operation: ChangeOperation
    row: Row
    local: bool = False


_CLOSED = object()


class Subscription:
    def __init__(
        self,
        bus: "ChangeBus",
        table: str,
        user_id: str,
        trip_id: Optional[int],
        fingerprint: Optional[Fingerprint] = None,
    ) -> None:
        self.bus = bus
        self.table = table
        self.user_id = user_id
        self.trip_id = trip_id
        self.fingerprint = fingerprint
        self.closed = False
        self._loop = asyncio.get_running_loop()
        self._queue: asyncio.Queue = asyncio.Queue()

    def wants(self, event: ChangeEvent) -> bool:
        return (
            not self.closed
            and event.table == self.table
            and event.row.get("user_id") == self.user_id
            and event.row.get("trip_id") == self.trip_id
        )

    def deliver(self, item: object) -> None:
        self._loop.call_soon_threadsafe(self._queue.put_nowait, item)

    async def get(self) -> Optional[ChangeEvent]:
        """Next event, or ``None`` once the subscription is closed."""
        if self.closed and self._queue.empty():
            return None
        item = await self._queue.get()
        if item is _CLOSED:
            return None
        return item

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.bus.unsubscribe(self)
        try:
            self.deliver(_CLOSED)
        except RuntimeError:
            pass

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ChangeEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


class ChangeBus:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscriptions: list[Subscription] = []

    def subscribe(
        self,
        table: str,
        user_id: str,
        trip_id: Optional[int],
        *,
        fingerprint: Optional[Fingerprint] = None,
    ) -> Subscription:
        sub = Subscription(self, table, user_id, trip_id, fingerprint)
        with self._lock:
            self._subscriptions.append(sub)
        logger.debug(f"subscribe: table={table} user={user_id} trip={trip_id}")
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)

    def publish(self, event: ChangeEvent) -> int:
        with self._lock:
            targets = [s for s in self._subscriptions if s.wants(event)]
        delivered = 0
        for sub in targets:
            try:
                sub.deliver(event)
                delivered += 1
            except RuntimeError:
                # event loop of the subscriber is gone
                self.unsubscribe(sub)
        return delivered

    def publish_rows(
        self, table: str, operation: ChangeOperation, rows: list[Row]
    ) -> None:
        for row in rows:
            self.publish(ChangeEvent(table, operation, row))

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)


change_bus = ChangeBus()


def _occurred_at(row: Mapping[str, object]) -> datetime:
    value = row.get("occurred_at")
    return value if isinstance(value, datetime) else datetime.min


@dataclass(frozen=True)
class ViewSnapshot:
    """Copy of a view's state, safe to read off the event loop."""

    context: ViewContext
    rows: tuple[Row, ...]
    loading: bool
    error: Optional[str]

    def aggregate(self, categories: Mapping[int, str]) -> Aggregate:
        return aggregate_expenses(self.rows, categories)


class LiveExpenseView:
    """In-memory expense records of one view context, newest first.

    Per record the only transitions are absent -> present (insert that
    belongs to the view), present -> absent (delete, or an update that
    leaves the range) and present -> present (in-range update, fields
    merged). Every mutator runs to completion without awaiting.

    Changes that arrive while the bulk load is outstanding are held back
    and replayed on top of the loaded rows, so a load never erases them.
    """

    def __init__(self, context: ViewContext) -> None:
        self.context = context
        self.rows: list[Row] = []
        self.loading = True
        self.error: Optional[str] = None
        self._pending: list[ChangeEvent] = []

    @property
    def fingerprint(self) -> Fingerprint:
        return self.context.fingerprint

    def _is_current(self, fingerprint: Optional[Fingerprint]) -> bool:
        return fingerprint is None or fingerprint == self.fingerprint

    def _index_of(self, record_id: object) -> int:
        for idx, row in enumerate(self.rows):
            if row.get("id") == record_id:
                return idx
        return -1

    def reset(self, context: ViewContext) -> None:
        self.context = context
        self.rows = []
        self.loading = True
        self.error = None
        self._pending = []

    def snapshot(self) -> ViewSnapshot:
        return ViewSnapshot(self.context, tuple(self.rows), self.loading, self.error)

    def load(self, rows: list[Row], fingerprint: Optional[Fingerprint] = None) -> bool:
        if not self._is_current(fingerprint):
            logger.info(f"live_view_stale_load: fingerprint={fingerprint}")
            return False
        deduped: dict[object, Row] = {}
        for row in rows:
            deduped[row.get("id")] = dict(row)
        self.rows = sorted(deduped.values(), key=_occurred_at, reverse=True)
        self.loading = False
        self.error = None
        pending, self._pending = self._pending, []
        for event in pending:
            self._apply(event)
        return True

    def load_failed(
        self, error: str, fingerprint: Optional[Fingerprint] = None
    ) -> bool:
        if not self._is_current(fingerprint):
            return False
        self.rows = []
        self.loading = False
        self.error = error
        self._pending = []
        return True

    def add_local(self, row: Row) -> bool:
        """Optimistic insert of a row the store has just acknowledged."""
        if not self.context.matches(row):
            return False
        if self.loading:
            self._pending.append(
                ChangeEvent("expenses", ChangeOperation.insert, dict(row), local=True)
            )
            return False
        return self._add_local(row)

    def _add_local(self, row: Row) -> bool:
        if self._index_of(row.get("id")) != -1:
            return False
        self.rows.insert(0, dict(row))
        return True

    def apply(self, event: ChangeEvent, fingerprint: Optional[Fingerprint] = None) -> bool:
        """Apply a pushed change; returns whether the collection changed."""
        if not self._is_current(fingerprint):
            return False
        if self.loading:
            self._pending.append(event)
            return False
        return self._apply(event)

    def _apply(self, event: ChangeEvent) -> bool:
        row = event.row
        if event.local:
            return self.context.matches(row) and self._add_local(row)

        record_id = row.get("id")
        idx = self._index_of(record_id)

        if event.operation == ChangeOperation.delete:
            if idx == -1:
                return False
            del self.rows[idx]
            return True

        if event.operation == ChangeOperation.insert:
            if not self.context.matches(row):
                return False
            if idx == -1:
                self.rows.insert(0, dict(row))
                return True
            # pushed fields win over the optimistic copy
            merged = {**self.rows[idx], **row}
            if merged == self.rows[idx]:
                return False
            self.rows[idx] = merged
            return True

        if idx == -1:
            return False
        merged = {**self.rows[idx], **row}
        if not self.context.matches(merged):
            del self.rows[idx]
            return True
        if merged == self.rows[idx]:
            return False
        self.rows[idx] = merged
        return True


Loader = Callable[[ViewContext], Awaitable[list[Row]]]


class ViewSession:
    """Live view plus its change subscription for one connected client.

    ``switch`` tears down the previous subscription before subscribing for
    the new context, then bulk-loads. Loads and events that arrive for an
    older context are dropped by fingerprint.
    """

    def __init__(self, loader: Loader, bus: Optional[ChangeBus] = None) -> None:
        self.loader = loader
        self.bus = bus or change_bus
        self.view: Optional[LiveExpenseView] = None
        self.subscription: Optional[Subscription] = None
        self._switched = asyncio.Event()
        self._closed = False

    async def switch(self, context: ViewContext) -> LiveExpenseView:
        if self.subscription is not None:
            self.subscription.close()
        if self.view is None:
            self.view = LiveExpenseView(context)
        else:
            self.view.reset(context)
        fingerprint = context.fingerprint
        self.subscription = self.bus.subscribe(
            "expenses", context.user_id, context.trip_id, fingerprint=fingerprint
        )
        self._switched.set()
        try:
            rows = await self.loader(context)
        except Exception as exc:
            logger.error(f"live_view_load_failed: context={fingerprint} error={exc}")
            self.view.load_failed(str(exc), fingerprint)
            raise
        self.view.load(rows, fingerprint)
        return self.view

    async def run(self, on_change: Callable[[LiveExpenseView], Awaitable[None]]) -> None:
        while not self._closed:
            sub = self.subscription
            if sub is None:
                await self._switched.wait()
                self._switched.clear()
                continue
            event = await sub.get()
            if event is None:
                if sub is self.subscription:
                    # closed without a replacement
                    break
                continue
            if self.view is not None and self.view.apply(event, sub.fingerprint):
                await on_change(self.view)

    def offer_local(self, row: Row) -> bool:
        """Hand an acknowledged insert to this session from any thread.

        The row travels through the current subscription's queue, so it is
        applied on the session's loop like every other change.
        """
        sub = self.subscription
        if sub is None or sub.closed:
            return False
        event = ChangeEvent("expenses", ChangeOperation.insert, dict(row), local=True)
        if not sub.wants(event):
            return False
        try:
            sub.deliver(event)
        except RuntimeError:
            return False
        return True

    def close(self) -> None:
        self._closed = True
        if self.subscription is not None:
            self.subscription.close()
        self._switched.set()


class FeedRegistry:
    """Open view sessions per user, for routing optimistic inserts."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: dict[str, set[ViewSession]] = {}

    def add(self, user_id: str, session: ViewSession) -> None:
        with self._lock:
            self._sessions.setdefault(user_id, set()).add(session)

    def discard(self, user_id: str, session: ViewSession) -> None:
        with self._lock:
            sessions = self._sessions.get(user_id)
            if sessions is None:
                return
            sessions.discard(session)
            if not sessions:
                del self._sessions[user_id]

    def offer_local(self, user_id: str, row: Row) -> int:
        with self._lock:
            sessions = list(self._sessions.get(user_id, ()))
        return sum(1 for session in sessions if session.offer_local(row))


live_feeds = FeedRegistry()

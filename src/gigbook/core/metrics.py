"""Derived metrics: project progress and ledger balances.

Everything here is a read. Progress blends elapsed time with completed
deliverables; balances fold ledger entries with exact decimal arithmetic.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from gigbook.events.bus import EventBus
from gigbook.events.types import METRIC_EVENTS, EventType
from gigbook.models.base import as_utc, utcnow
from gigbook.models.deliverable import Deliverable
from gigbook.models.ledger import EntryKind, LedgerEntry
from gigbook.models.project import Project, ProjectStatus
from gigbook.storage.base import Collection, DocumentReader

logger = logging.getLogger(__name__)

DEFAULT_WEIGHTS = (Decimal("0.4"), Decimal("0.6"))
_CENT = Decimal("0.01")
_ZERO = Decimal("0")


def _micros(delta: timedelta) -> int:
    return (delta.days * 86_400 + delta.seconds) * 1_000_000 + delta.microseconds


def time_fraction(project: Project, *, now: datetime) -> Decimal:
    """Elapsed share of the project span, clamped to [0, 1].

    Open-ended projects and projects that have not started yet report 0.
    """
    now = as_utc(now)
    if project.end_date is None or now < project.start_date:
        return _ZERO
    if now >= project.end_date:
        return Decimal(1)
    total = _micros(project.end_date - project.start_date)
    if total <= 0:
        return Decimal(1)
    return Decimal(_micros(now - project.start_date)) / Decimal(total)


def deliverable_fraction(deliverables: Sequence[Deliverable]) -> Decimal | None:
    """Share of deliverables delivered or approved; None when there are none."""
    if not deliverables:
        return None
    done = sum(1 for d in deliverables if d.is_completed)
    return Decimal(done) / Decimal(len(deliverables))


def compute_progress(
    project: Project,
    deliverables: Sequence[Deliverable],
    *,
    now: datetime,
    weights: tuple[Decimal, Decimal] = DEFAULT_WEIGHTS,
) -> int:
    """Progress percentage (0-100) of a project.

    Finished projects are always 100. Cancelled projects keep the progress
    stored when they were cancelled. Without deliverables the time component
    carries the full weight.
    """
    if project.status == ProjectStatus.FINISHED:
        return 100
    if project.status == ProjectStatus.CANCELLED:
        return project.progress

    elapsed = time_fraction(project, now=now)
    completed = deliverable_fraction(deliverables)
    if completed is None:
        blended = elapsed
    else:
        time_weight, deliverable_weight = weights
        blended = (elapsed * time_weight + completed * deliverable_weight) / (
            time_weight + deliverable_weight
        )

    percent = (blended * 100).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    return max(0, min(100, int(percent)))


@dataclass(frozen=True)
class BalanceScope:
    """Which ledger entries a balance covers. All fields are optional filters."""

    project_id: str | None = None
    client_id: str | None = None
    start: datetime | None = None
    end: datetime | None = None

    def includes_date(self, moment: datetime) -> bool:
        moment = as_utc(moment)
        if self.start is not None and moment < as_utc(self.start):
            return False
        return self.end is None or moment <= as_utc(self.end)

    def to_response(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            "client_id": self.client_id,
            "start": self.start.isoformat() if self.start else None,
            "end": self.end.isoformat() if self.end else None,
        }


@dataclass(frozen=True)
class Balance:
    income: Decimal = _ZERO
    expense: Decimal = _ZERO

    @property
    def balance(self) -> Decimal:
        return self.income - self.expense

    def add(self, entry: LedgerEntry) -> Balance:
        if entry.kind == EntryKind.INCOME:
            return Balance(self.income + entry.amount, self.expense)
        return Balance(self.income, self.expense + entry.amount)

    def to_response(self) -> dict[str, Any]:
        return {
            "_v": "1.0",
            "income": str(self.income.quantize(_CENT)),
            "expense": str(self.expense.quantize(_CENT)),
            "balance": str(self.balance.quantize(_CENT)),
        }


def fold_balance(entries: Iterable[LedgerEntry]) -> Balance:
    total = Balance()
    for entry in entries:
        total = total.add(entry)
    return total


def monthly_balance(entries: Iterable[LedgerEntry]) -> dict[str, Balance]:
    """Balance per calendar month (``YYYY-MM``), oldest month first."""
    months: dict[str, Balance] = {}
    for entry in entries:
        key = f"{entry.date:%Y-%m}"
        months[key] = months.get(key, Balance()).add(entry)
    return dict(sorted(months.items()))


class MetricsAggregator:
    """Loads the inputs of each metric from a store and folds them."""

    def __init__(
        self,
        store: DocumentReader,
        *,
        weights: tuple[Decimal, Decimal] = DEFAULT_WEIGHTS,
    ) -> None:
        self.store = store
        self.weights = weights

    async def deliverables_of(
        self, project_id: str, *, reader: DocumentReader | None = None
    ) -> list[Deliverable]:
        docs = await (reader or self.store).find(
            Collection.DELIVERABLES, {"project_id": project_id}, order_by="position"
        )
        return [Deliverable.model_validate(d) for d in docs]

    async def progress(
        self,
        project: Project,
        *,
        now: datetime,
        reader: DocumentReader | None = None,
    ) -> int:
        deliverables = await self.deliverables_of(project.id, reader=reader)
        return compute_progress(project, deliverables, now=now, weights=self.weights)

    async def entries(self, scope: BalanceScope | None = None) -> list[LedgerEntry]:
        """Ledger entries in ``scope``, ordered by date."""
        scope = scope or BalanceScope()
        filters: dict[str, Any] = {}
        if scope.project_id is not None:
            filters["project_id"] = scope.project_id
        if scope.client_id is not None:
            projects = await self.store.find(Collection.PROJECTS, {"client_id": scope.client_id})
            project_ids = [p["id"] for p in projects]
            if scope.project_id is not None:
                project_ids = [pid for pid in project_ids if pid == scope.project_id]
            if not project_ids:
                return []
            filters["project_id"] = project_ids

        docs = await self.store.find(Collection.LEDGER, filters, order_by="date")
        entries = [LedgerEntry.model_validate(d) for d in docs]
        return [e for e in entries if scope.includes_date(e.date)]

    async def balance(self, scope: BalanceScope | None = None) -> Balance:
        return fold_balance(await self.entries(scope))

    async def monthly(self, scope: BalanceScope | None = None) -> dict[str, Balance]:
        return monthly_balance(await self.entries(scope))


class MetricsCache:
    """Memoized progress and balance reads.

    Every entry is dropped when a metric input changes on the bus. Progress
    also drifts with time, so entries older than ``max_age`` are recomputed.
    """

    def __init__(
        self,
        aggregator: MetricsAggregator,
        *,
        clock: Callable[[], datetime] = utcnow,
        max_age: timedelta = timedelta(minutes=1),
    ) -> None:
        self.aggregator = aggregator
        self.clock = clock
        self.max_age = max_age
        self._entries: dict[tuple[str, Any], tuple[datetime, Any]] = {}

    def attach(self, event_bus: EventBus) -> None:
        for event_type in METRIC_EVENTS:
            event_bus.on(event_type, self._on_change)

    async def _on_change(self, event_type: EventType, data: dict[str, Any]) -> None:
        if self._entries:
            logger.debug("Invalidating %d cached metric(s) on %s", len(self._entries), event_type)
        self.invalidate()

    def invalidate(self) -> None:
        self._entries.clear()

    def _lookup(self, key: tuple[str, Any], now: datetime) -> Any | None:
        hit = self._entries.get(key)
        if hit is None:
            return None
        computed_at, value = hit
        if now - computed_at > self.max_age:
            del self._entries[key]
            return None
        return value

    async def progress(self, project: Project) -> int:
        now = as_utc(self.clock())
        key = ("progress", project.id)
        cached = self._lookup(key, now)
        if cached is not None:
            return cached
        value = await self.aggregator.progress(project, now=now)
        self._entries[key] = (now, value)
        return value

    async def balance(self, scope: BalanceScope | None = None) -> Balance:
        now = as_utc(self.clock())
        key = ("balance", scope or BalanceScope())
        cached = self._lookup(key, now)
        if cached is not None:
            return cached
        value = await self.aggregator.balance(scope)
        self._entries[key] = (now, value)
        return value

"""Tests for progress and balance metrics."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from gigbook.core.metrics import (
    Balance,
    BalanceScope,
    MetricsAggregator,
    MetricsCache,
    compute_progress,
    deliverable_fraction,
    fold_balance,
    monthly_balance,
    time_fraction,
)
from gigbook.events.bus import EventBus
from gigbook.events.types import EventType
from gigbook.models import Deliverable, LedgerEntry, Project
from gigbook.storage.base import Collection

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


def _project(start: datetime, end: datetime | None, **kwargs) -> Project:
    data = {"code": "PRJ-1", "client_id": "c1", "name": "Shop", "value": Decimal("1000")}
    data.update(kwargs)
    return Project(start_date=start, end_date=end, **data)


def _deliverables(project: Project, statuses: list[str]) -> list[Deliverable]:
    return [
        Deliverable(
            project_id=project.id,
            title=f"Item {i}",
            description="work",
            due_date=project.start_date,
            status=status,
            position=i + 1,
        )
        for i, status in enumerate(statuses)
    ]


def _entry(kind: str, amount: str, *, date: datetime = NOW, project_id: str | None = None):
    return LedgerEntry(
        kind=kind, description="entry", amount=Decimal(amount), date=date, project_id=project_id
    )


# --- Progress ---


def test_time_fraction_bounds():
    project = _project(NOW, NOW + timedelta(days=10))
    assert time_fraction(project, now=NOW - timedelta(days=1)) == 0
    assert time_fraction(project, now=NOW + timedelta(days=5)) == Decimal("0.5")
    assert time_fraction(project, now=NOW + timedelta(days=10)) == 1
    assert time_fraction(project, now=NOW + timedelta(days=99)) == 1
    assert time_fraction(_project(NOW, None), now=NOW + timedelta(days=5)) == 0


def test_deliverable_fraction_counts_delivered_and_approved():
    project = _project(NOW, None)
    items = _deliverables(project, ["approved", "delivered", "in_progress", "rejected"])
    assert deliverable_fraction(items) == Decimal("0.5")
    assert deliverable_fraction([]) is None


def test_progress_time_only_when_no_deliverables():
    project = _project(NOW - timedelta(days=5), NOW + timedelta(days=5))
    assert compute_progress(project, [], now=NOW) == 50


def test_progress_blends_time_and_deliverables():
    project = _project(NOW - timedelta(days=5), NOW + timedelta(days=15))
    items = _deliverables(project, ["approved", "approved", "pending", "in_progress"])
    # round(2/4 * 100 * 0.6 + 25 * 0.4)
    assert compute_progress(project, items, now=NOW) == 40


def test_progress_rounds_half_up():
    project = _project(NOW - timedelta(days=1), NOW + timedelta(days=39))
    assert compute_progress(project, [], now=NOW) == 3


def test_progress_is_monotonic_in_time():
    project = _project(NOW, NOW + timedelta(days=10))
    items = _deliverables(project, ["approved", "pending"])
    values = [
        compute_progress(project, items, now=NOW + timedelta(days=d)) for d in range(0, 12)
    ]
    assert values == sorted(values)
    assert values[-1] == 70  # time maxed out, half the deliverables done


def test_progress_custom_weights():
    project = _project(NOW - timedelta(days=5), NOW + timedelta(days=5))
    items = _deliverables(project, ["approved", "pending"])
    weights = (Decimal("0"), Decimal("1"))
    assert compute_progress(project, items, now=NOW, weights=weights) == 50
    assert compute_progress(project, [], now=NOW, weights=weights) == 50


def test_finished_project_is_complete():
    project = _project(NOW, NOW + timedelta(days=10), status="finished")
    assert compute_progress(project, [], now=NOW) == 100


def test_cancelled_project_keeps_stored_progress():
    project = _project(
        NOW - timedelta(days=9), NOW + timedelta(days=1), status="cancelled", progress=37
    )
    assert compute_progress(project, [], now=NOW + timedelta(days=30)) == 37


# --- Balance ---


def test_balance_income_minus_expense():
    balance = fold_balance([_entry("income", "500"), _entry("expense", "200")])
    assert balance == Balance(income=Decimal("500"), expense=Decimal("200"))
    assert balance.balance == Decimal("300")
    assert balance.to_response() == {
        "_v": "1.0",
        "income": "500.00",
        "expense": "200.00",
        "balance": "300.00",
    }


def test_balance_is_exact():
    entries = [_entry("income", "0.10") for _ in range(3)]
    assert fold_balance(entries).income == Decimal("0.30")


def test_empty_balance():
    assert fold_balance([]).to_response()["balance"] == "0.00"


def test_monthly_balance_groups_by_calendar_month():
    entries = [
        _entry("income", "100", date=datetime(2026, 2, 3, tzinfo=UTC)),
        _entry("expense", "40", date=datetime(2026, 2, 20, tzinfo=UTC)),
        _entry("income", "10", date=datetime(2026, 1, 31, tzinfo=UTC)),
    ]
    months = monthly_balance(entries)
    assert list(months) == ["2026-01", "2026-02"]
    assert months["2026-02"].balance == Decimal("60")
    assert months["2026-01"].income == Decimal("10")


def test_scope_date_range_is_inclusive():
    scope = BalanceScope(start=NOW, end=NOW + timedelta(days=1))
    assert scope.includes_date(NOW)
    assert scope.includes_date(NOW + timedelta(days=1))
    assert not scope.includes_date(NOW - timedelta(seconds=1))


# --- Aggregator and cache ---


async def test_aggregator_client_scope(memory_store):
    for project_id, client_id in (("p1", "c1"), ("p2", "c1"), ("p3", "c2")):
        project = _project(NOW, None, client_id=client_id).model_copy(update={"id": project_id})
        await memory_store.insert(Collection.PROJECTS, project.to_storage())
    for project_id, amount in (("p1", "100"), ("p2", "50"), ("p3", "999")):
        await memory_store.insert(
            Collection.LEDGER, _entry("income", amount, project_id=project_id).to_storage()
        )
    await memory_store.insert(Collection.LEDGER, _entry("expense", "5").to_storage())

    aggregator = MetricsAggregator(memory_store)
    assert (await aggregator.balance(BalanceScope(client_id="c1"))).income == Decimal("150")
    assert (await aggregator.balance(BalanceScope(project_id="p3"))).income == Decimal("999")
    overall = await aggregator.balance()
    assert overall.income == Decimal("1149")
    assert overall.expense == Decimal("5")
    assert await aggregator.balance(BalanceScope(client_id="nobody")) == Balance()


async def test_cache_invalidated_by_metric_events(memory_store):
    aggregator = MetricsAggregator(memory_store)
    cache = MetricsCache(aggregator, clock=lambda: NOW)
    bus = EventBus()
    cache.attach(bus)

    await memory_store.insert(Collection.LEDGER, _entry("income", "100").to_storage())
    assert (await cache.balance()).income == Decimal("100")

    await memory_store.insert(Collection.LEDGER, _entry("income", "20").to_storage())
    assert (await cache.balance()).income == Decimal("100")

    await bus.emit(EventType.LEDGER_ENTRY_RECORDED, {})
    assert (await cache.balance()).income == Decimal("120")


async def test_cache_entries_expire(memory_store):
    now = [NOW]
    aggregator = MetricsAggregator(memory_store)
    cache = MetricsCache(aggregator, clock=lambda: now[0], max_age=timedelta(minutes=1))
    project = _project(NOW, NOW + timedelta(days=10))

    assert await cache.progress(project) == 0
    now[0] = NOW + timedelta(days=5)
    assert await cache.progress(project) == 50


@pytest.mark.parametrize("event_type", [EventType.CLIENT_CREATED, EventType.PROPOSAL_CREATED])
async def test_cache_ignores_unrelated_events(memory_store, event_type):
    aggregator = MetricsAggregator(memory_store)
    cache = MetricsCache(aggregator, clock=lambda: NOW)
    bus = EventBus()
    cache.attach(bus)

    await cache.balance()
    await memory_store.insert(Collection.LEDGER, _entry("income", "7").to_storage())
    await bus.emit(event_type, {})
    assert (await cache.balance()).income == Decimal("0")

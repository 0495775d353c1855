"""Tests for the Engagement Lifecycle Engine."""

from __future__ import annotations

import asyncio
import re
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from gigbook.core import lifecycle as lifecycle_module
from gigbook.core.lifecycle import LifecycleOrchestrator
from gigbook.core.metrics import BalanceScope
from gigbook.errors import (
    ConcurrencyConflictError,
    InvalidTransitionError,
    InvariantViolationError,
    NotFoundError,
    ValidationError,
)
from gigbook.events.types import EventType
from gigbook.models import (
    ContractStatus,
    DeliverableStatus,
    ProjectStatus,
    ProposalStatus,
)
from gigbook.storage.base import Collection, StorageError, WriteConflictError
from gigbook.storage.memory_store import MemoryStore

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


async def _project(engine, customer, *, days_before=0, days_after=30, **extra):
    return await engine.create_project(
        {
            "client_id": customer.id,
            "name": "Landing page",
            "description": "Marketing site",
            "value": "800.00",
            "start_date": NOW - timedelta(days=days_before),
            "end_date": NOW + timedelta(days=days_after),
            **extra,
        }
    )


async def _deliverable(engine, project, title="Mockups", days=1):
    return await engine.create_deliverable(
        project.id,
        {
            "title": title,
            "description": f"{title} for review",
            "due_date": NOW + timedelta(days=days),
        },
    )


def _record_events(bus):
    events = []

    async def handler(event_type, data):
        events.append((event_type, data))

    bus.on_all(handler)
    return events


# --- Clients ---


async def test_create_client(engine, customer, bus):
    stored = await engine.get_client(customer.id)
    assert stored.email == "ana@torres.dev"
    assert stored.registered_at == NOW
    assert [c.id for c in await engine.list_clients()] == [customer.id]


async def test_client_email_is_unique(engine, customer):
    with pytest.raises(ValidationError) as exc_info:
        await engine.create_client(
            {"name": "Other", "email": "ana@torres.dev", "phone": "5500000000", "company": "Y"}
        )
    assert exc_info.value.violations[0].field == "email"
    assert exc_info.value.violations[0].rule == "unique"


async def test_client_invalid_payload_lists_all_problems(engine):
    with pytest.raises(ValidationError) as exc_info:
        await engine.create_client({"name": "X", "email": "bad", "phone": "12"})
    assert exc_info.value.fields == {"email", "phone", "company"}


async def test_referenced_client_only_changes_contact_fields(engine, customer, proposal):
    updated = await engine.update_client(customer.id, {"phone": "5587654321"})
    assert updated.phone == "5587654321"
    assert updated.updated_at == NOW

    with pytest.raises(ValidationError) as exc_info:
        await engine.update_client(customer.id, {"name": "Renamed", "email": "new@torres.dev"})
    assert exc_info.value.fields == {"name"}
    assert (await engine.get_client(customer.id)).name == "Ana Torres"


async def test_unreferenced_client_is_fully_editable(engine, customer):
    updated = await engine.update_client(customer.id, {"name": "Ana T.", "company": "Studio"})
    assert updated.name == "Ana T."
    with pytest.raises(ValidationError):
        await engine.update_client(customer.id, {"registered_at": NOW})


async def test_missing_client(engine):
    with pytest.raises(NotFoundError) as exc_info:
        await engine.get_client("nope")
    assert exc_info.value.to_response()["code"] == "NOT_FOUND"
    assert exc_info.value.entity == "client"


# --- Proposals ---


async def test_create_proposal(engine, proposal, customer):
    assert proposal.status == ProposalStatus.PENDING
    assert re.fullmatch(r"PROP-20260302-090000-[0-9A-Z]{4}", proposal.number)
    assert (await engine.get_proposal(proposal.id)).client_id == customer.id


async def test_proposal_for_unknown_client(engine):
    with pytest.raises(NotFoundError):
        await engine.create_proposal(
            {
                "client_id": "ghost",
                "title": "Shop",
                "description": "d",
                "price": "10",
                "terms": "t",
                "deadline": NOW + timedelta(days=1),
            }
        )


async def test_proposal_deadline_must_be_future(engine, customer):
    with pytest.raises(ValidationError) as exc_info:
        await engine.create_proposal(
            {
                "client_id": customer.id,
                "title": "Shop",
                "description": "d",
                "price": "-1",
                "terms": "t",
                "deadline": NOW,
            }
        )
    assert "price" in exc_info.value.fields


async def test_accept_proposal_creates_project(engine, proposal):
    result = await engine.accept_proposal(proposal.id)
    project = result.project

    assert result.proposal.status == ProposalStatus.ACCEPTED
    assert result.proposal.decided_at == NOW
    assert project.value == Decimal("1000.00")
    assert project.status == ProjectStatus.ACTIVE
    assert project.end_date == proposal.deadline
    assert project.name == proposal.title
    assert project.description == proposal.description

    stored_proposal = await engine.get_proposal(proposal.id)
    stored_projects = await engine.list_projects()
    assert [p.id for p in stored_projects] == [project.id]
    assert stored_projects[0].proposal_id == proposal.id
    assert stored_proposal.project_id == project.id


async def test_accept_with_overrides(engine, proposal):
    start = NOW + timedelta(days=2)
    result = await engine.create_project_from_proposal(
        proposal.id, {"name": "Shop v1", "start_date": start}
    )
    assert result.project.name == "Shop v1"
    assert result.project.start_date == start

    with pytest.raises(ValidationError):
        await engine.create_project_from_proposal(proposal.id, {"value": "1"})


async def test_failed_project_leaves_proposal_pending(engine, proposal):
    # starting after the deadline makes the derived project invalid
    with pytest.raises(ValidationError):
        await engine.create_project_from_proposal(
            proposal.id, {"start_date": NOW + timedelta(days=60)}
        )
    assert (await engine.get_proposal(proposal.id)).status == ProposalStatus.PENDING
    assert await engine.list_projects() == []


async def test_terminal_proposals_are_final(engine, proposal):
    await engine.reject_proposal(proposal.id)
    with pytest.raises(InvalidTransitionError):
        await engine.reject_proposal(proposal.id)
    with pytest.raises(InvalidTransitionError):
        await engine.accept_proposal(proposal.id)
    assert await engine.list_projects() == []


async def test_accepted_proposal_cannot_be_rejected(engine, proposal):
    await engine.accept_proposal(proposal.id)
    with pytest.raises(InvalidTransitionError) as exc_info:
        await engine.reject_proposal(proposal.id)
    assert exc_info.value.from_state == "accepted"
    assert exc_info.value.to_state == "rejected"


async def test_accept_emits_events_after_commit(engine, proposal, bus):
    events = _record_events(bus)
    result = await engine.accept_proposal(proposal.id)
    assert [e for e, _ in events] == [EventType.PROPOSAL_ACCEPTED, EventType.PROJECT_CREATED]
    assert events[0][1] == {"proposal_id": proposal.id, "project_id": result.project.id}

    events.clear()
    with pytest.raises(InvalidTransitionError):
        await engine.accept_proposal(proposal.id)
    assert events == []


async def test_list_proposals_filters(engine, proposal, customer):
    other = await engine.create_proposal(
        {
            "client_id": customer.id,
            "title": "App",
            "description": "Mobile app",
            "price": "5000",
            "terms": "Monthly",
            "deadline": NOW + timedelta(days=10),
        }
    )
    await engine.reject_proposal(other.id)

    assert [p.id for p in await engine.list_proposals(status="pending")] == [proposal.id]
    assert [p.id for p in await engine.list_proposals(status="rejected")] == [other.id]
    assert len(await engine.list_proposals(client_id=customer.id)) == 2
    with pytest.raises(ValidationError):
        await engine.list_proposals(status="Pendiente")


async def test_identifier_collision_draws_again(engine, customer, monkeypatch):
    numbers = iter(["PROP-TAKEN", "PROP-TAKEN", "PROP-DRAFT", "PROP-TAKEN", "PROP-FRESH"])
    monkeypatch.setattr(lifecycle_module, "make_identifier", lambda prefix, now: next(numbers))
    payload = {
        "client_id": customer.id,
        "title": "Shop",
        "description": "d",
        "price": "10",
        "terms": "t",
        "deadline": NOW + timedelta(days=1),
    }
    first = await engine.create_proposal(payload)
    second = await engine.create_proposal(payload)
    assert first.number == "PROP-TAKEN"
    assert second.number == "PROP-FRESH"


# --- Projects ---


async def test_create_project(engine, customer):
    project = await _project(engine, customer)
    assert project.status == ProjectStatus.ACTIVE
    assert project.proposal_id is None
    assert project.code.startswith("PRJ-20260302-")
    assert project.progress == 0

    with pytest.raises(NotFoundError):
        await engine.create_project({"client_id": "x", "name": "Orphan", "value": "10"})


async def test_get_project_merges_live_progress(engine, customer, clock):
    project = await _project(engine, customer, days_after=10)
    clock.advance(days=5)
    assert (await engine.get_project(project.id)).progress == 50


async def test_progress_scenario_with_deliverables(engine, customer, clock):
    project = await _project(engine, customer, days_before=5, days_after=15)
    items = [await _deliverable(engine, project, f"Item {i}", days=i) for i in range(1, 5)]
    for item in items[:2]:
        for target in ("in_progress", "delivered", "approved"):
            await engine.change_deliverable_status(item.id, target)

    # round(2/4 * 100 * 0.6 + 25 * 0.4)
    assert (await engine.get_project(project.id)).progress == 40
    stored = await engine.list_projects()
    assert stored[0].progress == 40


async def test_deliverable_status_writes_project_progress(engine, customer, bus):
    project = await _project(engine, customer)
    first = await _deliverable(engine, project)
    await _deliverable(engine, project, "Copy")

    events = _record_events(bus)
    await engine.change_deliverable_status(first.id, "in_progress")
    delivered = await engine.change_deliverable_status(first.id, "delivered", note="v1 sent")

    assert delivered.delivered_at == NOW
    assert delivered.history[-1].note == "v1 sent"
    assert events[-1][0] == EventType.DELIVERABLE_STATUS_CHANGED
    assert events[-1][1]["progress"] == 30
    assert (await engine.list_projects())[0].progress == 30


async def test_approved_deliverable_is_frozen(engine, customer):
    project = await _project(engine, customer)
    item = await _deliverable(engine, project)
    for target in ("in_progress", "delivered", "approved"):
        item = await engine.change_deliverable_status(item.id, target)

    for target in DeliverableStatus:
        with pytest.raises(InvalidTransitionError):
            await engine.change_deliverable_status(item.id, target.value)
    assert (await engine.get_deliverable(item.id)).status == DeliverableStatus.APPROVED


async def test_rejected_deliverable_rework(engine, customer):
    project = await _project(engine, customer)
    item = await _deliverable(engine, project)
    await engine.change_deliverable_status(item.id, "rejected", note="wrong brief")
    reworked = await engine.change_deliverable_status(item.id, "in_progress")
    assert reworked.status == DeliverableStatus.IN_PROGRESS
    assert len(reworked.history) == 2


async def test_deliverable_positions_and_span(engine, customer):
    project = await _project(engine, customer, days_after=10)
    items = [await _deliverable(engine, project, f"Item {i}") for i in range(3)]
    assert [d.position for d in items] == [1, 2, 3]
    assert [d.id for d in await engine.list_deliverables(project.id)] == [d.id for d in items]

    with pytest.raises(ValidationError) as exc_info:
        await _deliverable(engine, project, "Late", days=11)
    assert exc_info.value.violations[0].rule == "within_project_span"


async def test_deliverable_stats_count_overdue(engine, customer, clock):
    project = await _project(engine, customer)
    late = await _deliverable(engine, project, "Mockups", days=1)
    sent = await _deliverable(engine, project, "Copy", days=2)
    upcoming = await _deliverable(engine, project, "Launch", days=5)
    other = await _deliverable(engine, await _project(engine, customer), "Audit", days=1)
    for target in ("in_progress", "delivered"):
        await engine.change_deliverable_status(sent.id, target)

    clock.advance(days=3)
    assert await engine.deliverable_stats(project.id) == {
        "pending": 2,
        "in_progress": 0,
        "delivered": 1,
        "approved": 0,
        "rejected": 0,
        "overdue": 1,
        "total": 3,
    }
    overdue = await engine.list_deliverables(project.id, overdue=True)
    assert [d.id for d in overdue] == [late.id]
    assert upcoming.id in [d.id for d in await engine.list_deliverables(project.id)]

    everything = await engine.deliverable_stats()
    assert (everything["total"], everything["overdue"]) == (4, 2)
    await engine.change_deliverable_status(other.id, "rejected")
    assert (await engine.deliverable_stats())["overdue"] == 2
    assert (await engine.deliverable_stats("ghost"))["total"] == 0


async def test_deliverables_refused_on_closed_project(engine, customer):
    project = await _project(engine, customer)
    await engine.change_project_status(project.id, "finished")
    with pytest.raises(InvariantViolationError):
        await _deliverable(engine, project)


async def test_project_status_changes(engine, customer):
    project = await _project(engine, customer)
    paused = await engine.change_project_status(project.id, "paused")
    assert paused.status == ProjectStatus.PAUSED
    await engine.change_project_status(project.id, "active")
    finished = await engine.change_project_status(project.id, "finished")
    assert finished.progress == 100
    with pytest.raises(InvalidTransitionError):
        await engine.change_project_status(project.id, "active")


async def test_cancelled_project_freezes_progress(engine, customer, clock):
    project = await _project(engine, customer, days_after=10)
    clock.advance(days=5)
    cancelled = await engine.change_project_status(project.id, "cancelled")
    assert cancelled.progress == 50

    clock.advance(days=3)
    assert (await engine.get_project(project.id)).progress == 50
    with pytest.raises(InvalidTransitionError):
        await engine.change_project_status(project.id, "active")


async def test_update_project(engine, customer, bus):
    project = await _project(engine, customer)
    events = _record_events(bus)
    updated = await engine.update_project(
        project.id, {"name": "Landing v2", "end_date": NOW + timedelta(days=60)}
    )
    assert updated.name == "Landing v2"
    assert updated.updated_at == NOW
    assert events == [
        (EventType.PROJECT_UPDATED, {"project_id": project.id, "fields": ["end_date", "name"]})
    ]

    with pytest.raises(ValidationError):
        await engine.update_project(project.id, {"end_date": NOW - timedelta(days=1)})
    with pytest.raises(ValidationError):
        await engine.update_project(project.id, {"status": "finished"})


async def test_log_advance(engine, customer):
    project = await _project(engine, customer)
    await engine.log_advance(project.id, "Kickoff call done")
    updated = await engine.log_advance(project.id, "Wireframes shared")
    assert [a.note for a in updated.advances] == ["Kickoff call done", "Wireframes shared"]
    assert [a.note for a in (await engine.get_project(project.id)).advances] == [
        "Kickoff call done",
        "Wireframes shared",
    ]
    with pytest.raises(ValidationError):
        await engine.log_advance(project.id, "   ")


async def test_delete_project(engine, customer):
    project = await _project(engine, customer)
    await _deliverable(engine, project)
    await engine.generate_contract(
        project.id, {"conditions": "Scope as agreed", "payment_terms": "Net 30"}
    )

    await engine.delete_project(project.id)
    assert await engine.list_projects() == []
    assert await engine.list_deliverables(project.id) == []
    counts = await engine.counts()
    assert counts["contracts"] == 0
    with pytest.raises(NotFoundError):
        await engine.get_project(project.id)


async def test_delete_project_guards(engine, customer, proposal):
    derived = (await engine.accept_proposal(proposal.id)).project
    with pytest.raises(InvariantViolationError) as exc_info:
        await engine.delete_project(derived.id)
    assert exc_info.value.rule == "proposal_keeps_project"

    project = await _project(engine, customer)
    item = await _deliverable(engine, project)
    for target in ("in_progress", "delivered", "approved"):
        await engine.change_deliverable_status(item.id, target)
    with pytest.raises(InvariantViolationError) as exc_info:
        await engine.delete_project(project.id)
    assert exc_info.value.rule == "approved_deliverable"
    assert await engine.list_deliverables(project.id) != []


# --- Contracts ---


async def test_contract_lifecycle(engine, customer):
    project = await _project(engine, customer)
    contract = await engine.generate_contract(
        project.id, {"conditions": "Scope as agreed", "payment_terms": "Net 30"}
    )
    assert contract.status == ContractStatus.DRAFT
    assert contract.start_date == project.start_date
    assert contract.end_date == project.end_date
    assert contract.total_value == project.value
    assert re.fullmatch(r"CTR-\d{8}-\d{6}-[0-9A-Z]{4}", contract.number)
    assert (await engine.get_project(project.id)).contract_id == contract.id

    signed = await engine.sign_contract(contract.id)
    assert signed.status == ContractStatus.SIGNED
    assert signed.signed_at == NOW
    with pytest.raises(InvalidTransitionError):
        await engine.sign_contract(contract.id)
    with pytest.raises(InvalidTransitionError):
        await engine.cancel_contract(contract.id)


async def test_contract_dates_within_project(engine, customer):
    project = await _project(engine, customer, days_after=10)
    with pytest.raises(ValidationError) as exc_info:
        await engine.generate_contract(
            project.id,
            {
                "conditions": "Scope as agreed",
                "payment_terms": "Net 30",
                "end_date": NOW + timedelta(days=11),
            },
        )
    assert exc_info.value.fields == {"end_date"}
    assert (await engine.counts())["contracts"] == 0


async def test_one_open_contract_per_project(engine, customer):
    project = await _project(engine, customer)
    terms = {"conditions": "Scope as agreed", "payment_terms": "Net 30"}
    first = await engine.generate_contract(project.id, terms)
    with pytest.raises(InvariantViolationError):
        await engine.generate_contract(project.id, terms)

    await engine.cancel_contract(first.id)
    assert (await engine.get_project(project.id)).contract_id is None
    second = await engine.generate_contract(project.id, terms)
    assert (await engine.get_project(project.id)).contract_id == second.id


async def test_signed_contract_pins_project_span(engine, customer):
    project = await _project(engine, customer, days_after=30)
    contract = await engine.generate_contract(
        project.id,
        {
            "conditions": "Scope as agreed",
            "payment_terms": "Net 30",
            "end_date": NOW + timedelta(days=20),
        },
    )
    await engine.sign_contract(contract.id)

    # narrowing that still covers the contract is fine
    await engine.update_project(project.id, {"end_date": NOW + timedelta(days=25)})
    with pytest.raises(InvariantViolationError) as exc_info:
        await engine.update_project(project.id, {"end_date": NOW + timedelta(days=15)})
    assert exc_info.value.rule == "signed_contract_within_span"
    assert (await engine.get_project(project.id)).end_date == NOW + timedelta(days=25)


async def test_signing_rechecks_drifted_dates(engine, customer):
    project = await _project(engine, customer, days_after=30)
    contract = await engine.generate_contract(
        project.id, {"conditions": "Scope as agreed", "payment_terms": "Net 30"}
    )
    # draft contracts do not pin the span, so the project can shrink under it
    await engine.update_project(project.id, {"end_date": NOW + timedelta(days=10)})

    with pytest.raises(InvariantViolationError) as exc_info:
        await engine.sign_contract(contract.id)
    assert exc_info.value.code == "INVARIANT_VIOLATION"
    assert (await engine.get_contract(contract.id)).status == ContractStatus.DRAFT


async def test_drifted_draft_is_edited_back_into_span(engine, customer, bus):
    project = await _project(engine, customer, days_after=30)
    contract = await engine.generate_contract(
        project.id, {"conditions": "Scope as agreed", "payment_terms": "Net 30"}
    )
    await engine.update_project(project.id, {"end_date": NOW + timedelta(days=10)})

    events = _record_events(bus)
    updated = await engine.update_contract(
        contract.id, {"end_date": NOW + timedelta(days=10), "payment_terms": "Net 15"}
    )
    assert updated.end_date == NOW + timedelta(days=10)
    assert updated.payment_terms == "Net 15"
    assert updated.updated_at == NOW
    assert events == [
        (
            EventType.CONTRACT_UPDATED,
            {
                "contract_id": contract.id,
                "project_id": project.id,
                "fields": ["end_date", "payment_terms"],
            },
        )
    ]

    signed = await engine.sign_contract(contract.id)
    assert signed.status == ContractStatus.SIGNED
    assert signed.end_date == NOW + timedelta(days=10)


async def test_drifted_draft_can_be_cancelled_and_regenerated(engine, customer):
    project = await _project(engine, customer, days_after=30)
    terms = {"conditions": "Scope as agreed", "payment_terms": "Net 30"}
    contract = await engine.generate_contract(project.id, terms)
    await engine.update_project(project.id, {"end_date": NOW + timedelta(days=10)})

    cancelled = await engine.cancel_contract(contract.id)
    assert cancelled.status == ContractStatus.CANCELLED
    assert cancelled.cancelled_at == NOW

    fresh = await engine.generate_contract(project.id, terms)
    assert fresh.end_date == NOW + timedelta(days=10)
    assert (await engine.get_project(project.id)).contract_id == fresh.id


async def test_contract_update_checks_project_span(engine, customer):
    project = await _project(engine, customer, days_after=10)
    contract = await engine.generate_contract(
        project.id, {"conditions": "Scope as agreed", "payment_terms": "Net 30"}
    )
    with pytest.raises(ValidationError) as exc_info:
        await engine.update_contract(contract.id, {"end_date": NOW + timedelta(days=11)})
    assert exc_info.value.fields == {"end_date"}
    assert exc_info.value.violations[0].rule == "within_project_span"

    with pytest.raises(ValidationError) as exc_info:
        await engine.update_contract(contract.id, {"status": "signed"})
    assert exc_info.value.violations[0].rule == "not_editable"
    assert (await engine.get_contract(contract.id)) == contract


async def test_only_draft_contracts_are_editable(engine, customer):
    project = await _project(engine, customer)
    contract = await engine.generate_contract(
        project.id, {"conditions": "Scope as agreed", "payment_terms": "Net 30"}
    )
    await engine.sign_contract(contract.id)

    with pytest.raises(InvalidTransitionError) as exc_info:
        await engine.update_contract(contract.id, {"payment_terms": "Net 60"})
    assert exc_info.value.from_state == "signed"
    assert (await engine.get_contract(contract.id)).payment_terms == "Net 30"
    with pytest.raises(NotFoundError):
        await engine.update_contract("ghost", {"payment_terms": "Net 60"})


async def test_list_contracts_and_project_lookup(engine, customer, clock):
    first = await _project(engine, customer)
    second = await _project(engine, customer)
    terms = {"conditions": "Scope as agreed", "payment_terms": "Net 30"}

    dropped = await engine.generate_contract(first.id, terms)
    await engine.cancel_contract(dropped.id)
    clock.advance(minutes=1)
    current = await engine.generate_contract(first.id, terms)
    clock.advance(minutes=1)
    other = await engine.generate_contract(second.id, terms)
    await engine.sign_contract(other.id)

    assert [c.id for c in await engine.list_contracts()] == [dropped.id, current.id, other.id]
    assert [c.id for c in await engine.list_contracts(project_id=first.id)] == [
        dropped.id,
        current.id,
    ]
    assert [c.id for c in await engine.list_contracts(status="signed")] == [other.id]
    assert await engine.list_contracts(status="cancelled", project_id=second.id) == []
    with pytest.raises(ValidationError):
        await engine.list_contracts(status="void")

    assert (await engine.contract_for_project(first.id)).id == current.id
    assert (await engine.contract_for_project(second.id)).id == other.id
    third = await _project(engine, customer)
    assert await engine.contract_for_project(third.id) is None
    with pytest.raises(NotFoundError):
        await engine.contract_for_project("ghost")


async def test_contract_refused_on_closed_project(engine, customer):
    project = await _project(engine, customer)
    await engine.change_project_status(project.id, "cancelled")
    with pytest.raises(InvariantViolationError):
        await engine.generate_contract(
            project.id, {"conditions": "Scope as agreed", "payment_terms": "Net 30"}
        )


# --- Ledger ---


async def test_project_balance(engine, customer):
    project = await _project(engine, customer)
    await engine.record_ledger_entry(
        {"project_id": project.id, "kind": "income", "description": "Deposit", "amount": "500"}
    )
    await engine.record_ledger_entry(
        {"project_id": project.id, "kind": "expense", "description": "Fonts", "amount": "200"}
    )
    balance = await engine.get_balance(BalanceScope(project_id=project.id))
    assert (balance.income, balance.expense, balance.balance) == (
        Decimal("500"),
        Decimal("200"),
        Decimal("300"),
    )


async def test_balance_cache_sees_new_entries(engine):
    assert (await engine.get_balance()).income == 0
    await engine.record_ledger_entry({"kind": "income", "description": "Tip", "amount": "12.50"})
    assert (await engine.get_balance()).income == Decimal("12.50")


async def test_client_and_date_scopes(engine, customer, clock):
    first = await _project(engine, customer)
    second = await _project(engine, customer)
    for project, amount in ((first, "100"), (second, "40")):
        await engine.record_ledger_entry(
            {"project_id": project.id, "kind": "income", "description": "Fee", "amount": amount}
        )
    await engine.record_ledger_entry(
        {
            "kind": "expense",
            "description": "Laptop",
            "amount": "60",
            "date": NOW + timedelta(days=40),
            "category": "equipment",
        }
    )

    by_client = await engine.get_balance(BalanceScope(client_id=customer.id))
    assert by_client.income == Decimal("140")
    assert by_client.expense == 0

    march = BalanceScope(start=NOW - timedelta(days=1), end=NOW + timedelta(days=1))
    assert (await engine.get_balance(march)).balance == Decimal("140")
    entries = await engine.list_ledger_entries()
    assert [e.category for e in entries] == ["other", "other", "equipment"]

    months = await engine.monthly_balance()
    assert list(months) == ["2026-03", "2026-04"]
    assert months["2026-04"].expense == Decimal("60")


async def test_entries_within_one_second_keep_date_order(engine):
    later = await engine.record_ledger_entry(
        {
            "kind": "income",
            "description": "Second half",
            "amount": "10",
            "date": NOW + timedelta(microseconds=500_000),
        }
    )
    earlier = await engine.record_ledger_entry(
        {"kind": "income", "description": "First half", "amount": "10", "date": NOW}
    )
    entries = await engine.list_ledger_entries()
    assert [e.id for e in entries] == [earlier.id, later.id]


async def test_ledger_entry_validation(engine):
    with pytest.raises(ValidationError) as exc_info:
        await engine.record_ledger_entry({"kind": "gift", "description": "", "amount": "0"})
    assert exc_info.value.fields == {"kind", "description", "amount"}
    with pytest.raises(NotFoundError):
        await engine.record_ledger_entry(
            {"project_id": "ghost", "kind": "income", "description": "Fee", "amount": "1"}
        )


# --- Atomicity and concurrency ---


class _HookedTransaction:
    """Transaction proxy that runs the store hook before every update."""

    def __init__(self, tx, store):
        self._tx = tx
        self._store = store

    def __getattr__(self, name):
        return getattr(self._tx, name)

    async def update(self, collection, doc_id, updates, *, expected=None):
        if self._store.hook is not None:
            await self._store.hook(collection)
        return await self._tx.update(collection, doc_id, updates, expected=expected)


class HookedStore(MemoryStore):
    def __init__(self):
        super().__init__(lock_timeout=2.0)
        self.hook = None

    @asynccontextmanager
    async def transaction(self):
        async with super().transaction() as tx:
            yield _HookedTransaction(tx, self)


@pytest.fixture
async def hooked(bus, config, clock):
    store = HookedStore()
    await store.initialize()
    engine = LifecycleOrchestrator(store, bus, config=config, clock=clock)
    client = await engine.create_client(
        {"name": "Ana", "email": "ana@torres.dev", "phone": "5512345678", "company": "X"}
    )
    proposal = await engine.create_proposal(
        {
            "client_id": client.id,
            "title": "Shop",
            "description": "Storefront",
            "price": "1000",
            "terms": "Net 30",
            "deadline": NOW + timedelta(days=30),
        }
    )
    return store, engine, proposal


async def test_concurrent_accepts_create_one_project(engine, proposal):
    results = await asyncio.gather(
        engine.accept_proposal(proposal.id),
        engine.accept_proposal(proposal.id),
        return_exceptions=True,
    )
    accepted = [r for r in results if not isinstance(r, Exception)]
    refused = [r for r in results if isinstance(r, InvalidTransitionError)]
    assert len(accepted) == 1
    assert len(refused) == 1
    assert len(await engine.list_projects()) == 1


async def test_storage_failure_rolls_back_accept(hooked, bus):
    store, engine, proposal = hooked
    events = _record_events(bus)

    async def fail_on_proposals(collection):
        if collection == Collection.PROPOSALS:
            raise StorageError("disk unavailable")

    store.hook = fail_on_proposals
    with pytest.raises(ConcurrencyConflictError) as exc_info:
        await engine.accept_proposal(proposal.id)
    assert exc_info.value.code == "CONCURRENCY_CONFLICT"

    store.hook = None
    assert await engine.list_projects() == []
    assert (await engine.get_proposal(proposal.id)).status == ProposalStatus.PENDING
    assert events == []


async def test_persistent_conflicts_exhaust_retries(hooked):
    store, engine, proposal = hooked
    calls = []

    async def always_conflict(collection):
        calls.append(collection)
        raise WriteConflictError("someone else won")

    store.hook = always_conflict
    with pytest.raises(ConcurrencyConflictError) as exc_info:
        await engine.reject_proposal(proposal.id)
    assert exc_info.value.attempts == 3
    assert len(calls) == 3

    store.hook = None
    assert (await engine.get_proposal(proposal.id)).status == ProposalStatus.PENDING


async def test_transient_conflict_is_retried(hooked):
    store, engine, proposal = hooked
    calls = []

    async def conflict_once(collection):
        calls.append(collection)
        if len(calls) == 1:
            raise WriteConflictError("someone else won")

    store.hook = conflict_once
    result = await engine.accept_proposal(proposal.id)
    assert result.proposal.status == ProposalStatus.ACCEPTED
    assert len(await engine.list_projects()) == 1


async def test_cancelled_accept_writes_nothing(hooked):
    store, engine, proposal = hooked
    reached = asyncio.Event()

    async def stall(collection):
        reached.set()
        await asyncio.Event().wait()

    store.hook = stall
    task = asyncio.create_task(engine.accept_proposal(proposal.id))
    await reached.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    store.hook = None
    assert await engine.list_projects() == []
    assert (await engine.get_proposal(proposal.id)).status == ProposalStatus.PENDING
    # the proposal can still be accepted afterwards
    assert (await engine.accept_proposal(proposal.id)).project.value == Decimal("1000")

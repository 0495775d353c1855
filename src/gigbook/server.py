"""FastMCP server — 6 consolidated tools, 1 resource."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Annotated, Any, Literal

from fastmcp import FastMCP
from pydantic import Field

from gigbook.config import Config
from gigbook.core.lifecycle import LifecycleOrchestrator
from gigbook.core.metrics import BalanceScope
from gigbook.errors import GigbookError
from gigbook.events.bus import EventBus
from gigbook.storage.sqlite_store import SQLiteStore

logger = logging.getLogger(__name__)


def _json(data: dict[str, Any]) -> str:
    return json.dumps(data, default=str)


def _ok(data: dict[str, Any]) -> str:
    """Return a versioned JSON success response."""
    return _json({**data, "_v": "1.0"})


def _err(msg: str) -> str:
    """Return a versioned JSON error response."""
    return _json({"_v": "1.0", "error": msg})


def _fail(error: GigbookError) -> str:
    """Return a structured error response: code, entity and offending rules."""
    return _json(error.to_response())


def _payload(**fields: Any) -> dict[str, Any]:
    return {k: v for k, v in fields.items() if v is not None}


def _date(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def create_server(db_path: str, config: Config | None = None) -> FastMCP:
    """Create FastMCP server with 6 consolidated tools."""
    mcp = FastMCP("gigbook", version="0.1.0")
    config = config or Config()

    state: dict[str, Any] = {}
    _lock = asyncio.Lock()

    async def _init() -> LifecycleOrchestrator:
        async with _lock:
            if "init_failed" in state:
                raise RuntimeError(f"Gigbook init previously failed for {db_path}")
            if "engine" not in state:
                try:
                    store = SQLiteStore(
                        Path(db_path), wal_mode=config.wal_mode, lock_timeout=config.lock_timeout
                    )
                    await store.initialize()
                except Exception as e:
                    state["init_failed"] = True
                    logger.error("Failed to initialize database: %s", e)
                    raise RuntimeError(f"Gigbook init failed: {db_path}") from e
                state["store"] = store
                state["engine"] = LifecycleOrchestrator(store, EventBus(), config=config)
        return state["engine"]

    # ── gb_client ─────────────────────────────────────────────

    @mcp.tool()
    async def gb_client(
        action: Annotated[
            Literal["create", "update", "get", "list"],
            Field(description="create | update | get | list"),
        ],
        client_id: Annotated[
            str | None,
            Field(description="Client ID (update, get)"),
        ] = None,
        name: Annotated[str | None, Field(description="Client name (create, update)")] = None,
        email: Annotated[str | None, Field(description="Unique email (create, update)")] = None,
        phone: Annotated[str | None, Field(description="10-digit phone (create, update)")] = None,
        company: Annotated[str | None, Field(description="Company (create, update)")] = None,
    ) -> str:
        """Register and look up clients. Once a proposal or project references a client only email and phone can change."""  # noqa: E501
        engine = await _init()
        fields = _payload(name=name, email=email, phone=phone, company=company)
        try:
            if action == "create":
                client = await engine.create_client(fields)
                return _ok(client.to_response(detail="full"))

            if action == "list":
                clients = await engine.list_clients()
                return _ok({"count": len(clients), "clients": [c.to_response() for c in clients]})

            if not client_id:
                return _err(f"client_id is required for {action}")
            if action == "update":
                if not fields:
                    return _err("Provide at least one field to update")
                client = await engine.update_client(client_id, fields)
            else:
                client = await engine.get_client(client_id)
            return _ok(client.to_response(detail="full"))
        except GigbookError as e:
            return _fail(e)

    # ── gb_proposal ───────────────────────────────────────────

    @mcp.tool()
    async def gb_proposal(
        action: Annotated[
            Literal["create", "accept", "reject", "get", "list"],
            Field(description="create | accept | reject | get | list"),
        ],
        proposal_id: Annotated[
            str | None,
            Field(description="Proposal ID (accept, reject, get)"),
        ] = None,
        client_id: Annotated[
            str | None,
            Field(description="Client ID (create; list: filter)"),
        ] = None,
        title: Annotated[str | None, Field(description="Title (create)")] = None,
        description: Annotated[
            str | None,
            Field(description="Description (create; accept: project description override)"),
        ] = None,
        price: Annotated[
            str | None,
            Field(description="Price as a decimal string, e.g. '1500.00' (create)"),
        ] = None,
        terms: Annotated[str | None, Field(description="Terms and conditions (create)")] = None,
        deadline: Annotated[
            str | None,
            Field(description="Response deadline, ISO 8601, must be in the future (create)"),
        ] = None,
        name: Annotated[
            str | None,
            Field(description="Project name override (accept)"),
        ] = None,
        start_date: Annotated[
            str | None,
            Field(description="Project start date override, ISO 8601 (accept)"),
        ] = None,
        status: Annotated[
            str | None,
            Field(description="Filter: pending|accepted|rejected (list)"),
        ] = None,
        detail: Annotated[
            str,
            Field(description="summary or full (list, default: summary)"),
        ] = "summary",
    ) -> str:
        """Priced offers to clients. Accepting a proposal creates its project in the same atomic step; accepted and rejected proposals are final.

Actions: create, accept (optionally override project name/description/start_date), reject, get, list."""  # noqa: E501
        engine = await _init()
        try:
            if action == "create":
                proposal = await engine.create_proposal(
                    _payload(
                        client_id=client_id,
                        title=title,
                        description=description,
                        price=price,
                        terms=terms,
                        deadline=deadline,
                    )
                )
                return _ok(proposal.to_response(detail="full"))

            if action == "list":
                proposals = await engine.list_proposals(status=status, client_id=client_id)
                items = [p.to_response(detail=detail) for p in proposals]
                return _ok({"count": len(items), "proposals": items})

            if not proposal_id:
                return _err(f"proposal_id is required for {action}")
            if action == "accept":
                overrides = _payload(name=name, description=description, start_date=start_date)
                result = await engine.create_project_from_proposal(proposal_id, overrides)
                return _ok(result.to_response())
            if action == "reject":
                proposal = await engine.reject_proposal(proposal_id)
            else:
                proposal = await engine.get_proposal(proposal_id)
            return _ok(proposal.to_response(detail="full"))
        except GigbookError as e:
            return _fail(e)

    # ── gb_project ────────────────────────────────────────────

    @mcp.tool()
    async def gb_project(
        action: Annotated[
            Literal["create", "get", "list", "update", "status", "advance", "delete"],
            Field(description="create | get | list | update | status | advance | delete"),
        ],
        project_id: Annotated[
            str | None,
            Field(description="Project ID (all but create, list)"),
        ] = None,
        client_id: Annotated[
            str | None,
            Field(description="Client ID (create; list: filter)"),
        ] = None,
        name: Annotated[str | None, Field(description="Name (create, update)")] = None,
        description: Annotated[
            str | None, Field(description="Description (create, update)")
        ] = None,
        start_date: Annotated[
            str | None, Field(description="Start date, ISO 8601 (create, update)")
        ] = None,
        end_date: Annotated[
            str | None, Field(description="End date, ISO 8601 (create, update)")
        ] = None,
        value: Annotated[
            str | None, Field(description="Value as a decimal string (create, update)")
        ] = None,
        status: Annotated[
            str | None,
            Field(description="Target: active|paused|finished|cancelled (status; list: filter)"),
        ] = None,
        note: Annotated[str | None, Field(description="Progress note (advance)")] = None,
        detail: Annotated[
            str,
            Field(description="summary or full (get, list; default: summary)"),
        ] = "summary",
    ) -> str:
        """Projects: units of engaged work with computed progress.

Actions: create, get (with live progress), list, update (dates may not exclude a signed contract), status (change status), advance (log a progress note), delete."""  # noqa: E501
        engine = await _init()
        fields = _payload(
            name=name,
            description=description,
            start_date=start_date,
            end_date=end_date,
            value=value,
        )
        try:
            if action == "create":
                project = await engine.create_project({**fields, **_payload(client_id=client_id)})
                return _ok(project.to_response(detail="full"))

            if action == "list":
                projects = await engine.list_projects(client_id=client_id, status=status)
                items = [p.to_response(detail=detail) for p in projects]
                return _ok({"count": len(items), "projects": items})

            if not project_id:
                return _err(f"project_id is required for {action}")

            if action == "get":
                project = await engine.get_project(project_id)
                return _ok(project.to_response(detail=detail))
            if action == "update":
                if not fields:
                    return _err("Provide at least one field to update")
                project = await engine.update_project(project_id, fields)
            elif action == "status":
                if not status:
                    return _err("status is required for status")
                project = await engine.change_project_status(project_id, status)
            elif action == "advance":
                if not note:
                    return _err("note is required for advance")
                project = await engine.log_advance(project_id, note)
            else:
                project = await engine.delete_project(project_id)
                return _ok({"deleted": "project", "id": project.id, "code": project.code})
            return _ok(project.to_response(detail="full"))
        except GigbookError as e:
            return _fail(e)

    # ── gb_contract ───────────────────────────────────────────

    @mcp.tool()
    async def gb_contract(
        action: Annotated[
            Literal["generate", "update", "sign", "cancel", "get", "list"],
            Field(description="generate | update | sign | cancel | get | list"),
        ],
        contract_id: Annotated[
            str | None, Field(description="Contract ID (update, sign, cancel, get)")
        ] = None,
        project_id: Annotated[
            str | None,
            Field(description="Project ID (generate; get: its current contract; list: filter)"),
        ] = None,
        status: Annotated[
            str | None, Field(description="Filter: draft|signed|cancelled (list)")
        ] = None,
        conditions: Annotated[
            str | None, Field(description="Conditions, at least 10 characters (generate, update)")
        ] = None,
        payment_terms: Annotated[
            str | None,
            Field(description="Payment terms, at least 5 characters (generate, update)"),
        ] = None,
        start_date: Annotated[
            str | None,
            Field(description="Start date, ISO 8601; defaults to the project's (generate, update)"),
        ] = None,
        end_date: Annotated[
            str | None,
            Field(description="End date, ISO 8601; defaults to the project's (generate, update)"),
        ] = None,
        total_value: Annotated[
            str | None,
            Field(description="Total value as a decimal string; defaults to the project's"),
        ] = None,
    ) -> str:
        """Contracts bound to one project. Dates must stay inside the project span; only drafts are edited, signing re-checks dates."""  # noqa: E501
        engine = await _init()
        try:
            fields = _payload(
                conditions=conditions,
                payment_terms=payment_terms,
                start_date=start_date,
                end_date=end_date,
                total_value=total_value,
            )
            if action == "generate":
                if not project_id:
                    return _err("project_id is required for generate")
                contract = await engine.generate_contract(project_id, fields)
                return _ok(contract.to_response(detail="full"))

            if action == "list":
                contracts = await engine.list_contracts(status=status, project_id=project_id)
                items = [c.to_response() for c in contracts]
                return _ok({"count": len(items), "contracts": items})

            if action == "get" and not contract_id and project_id:
                current = await engine.contract_for_project(project_id)
                if current is None:
                    return _ok({"project_id": project_id, "contract": None})
                return _ok(current.to_response(detail="full"))

            if not contract_id:
                return _err(f"contract_id is required for {action}")
            if action == "update":
                if not fields:
                    return _err("Provide at least one field to update")
                contract = await engine.update_contract(contract_id, fields)
            elif action == "sign":
                contract = await engine.sign_contract(contract_id)
            elif action == "cancel":
                contract = await engine.cancel_contract(contract_id)
            else:
                contract = await engine.get_contract(contract_id)
            return _ok(contract.to_response(detail="full"))
        except GigbookError as e:
            return _fail(e)

    # ── gb_deliverable ────────────────────────────────────────

    @mcp.tool()
    async def gb_deliverable(
        action: Annotated[
            Literal["create", "status", "get", "list", "stats"],
            Field(description="create | status | get | list | stats"),
        ],
        deliverable_id: Annotated[
            str | None, Field(description="Deliverable ID (status, get)")
        ] = None,
        project_id: Annotated[
            str | None, Field(description="Project ID (create, list; stats: scope)")
        ] = None,
        title: Annotated[str | None, Field(description="Title (create)")] = None,
        description: Annotated[str | None, Field(description="Description (create)")] = None,
        due_date: Annotated[
            str | None,
            Field(description="Due date inside the project span, ISO 8601 (create)"),
        ] = None,
        status: Annotated[
            str | None,
            Field(description="Target: in_progress|delivered|approved|rejected (status)"),
        ] = None,
        note: Annotated[str | None, Field(description="Note kept in history (status)")] = None,
        overdue: Annotated[
            bool, Field(description="Only past-due items not yet delivered (list)")
        ] = False,
    ) -> str:
        """Deliverables inside a project. Status changes update project progress atomically; approved is final."""  # noqa: E501
        engine = await _init()
        try:
            if action == "create":
                if not project_id:
                    return _err("project_id is required for create")
                deliverable = await engine.create_deliverable(
                    project_id,
                    _payload(title=title, description=description, due_date=due_date),
                )
                return _ok(deliverable.to_response(detail="full"))

            if action == "list":
                if not project_id:
                    return _err("project_id is required for list")
                deliverables = await engine.list_deliverables(project_id, overdue=overdue)
                items = [d.to_response() for d in deliverables]
                return _ok({"count": len(items), "deliverables": items})

            if action == "stats":
                stats = await engine.deliverable_stats(project_id)
                return _ok({"project_id": project_id, "counts": stats})

            if not deliverable_id:
                return _err(f"deliverable_id is required for {action}")
            if action == "status":
                if not status:
                    return _err("status is required for status")
                deliverable = await engine.change_deliverable_status(
                    deliverable_id, status, note=note
                )
            else:
                deliverable = await engine.get_deliverable(deliverable_id)
            return _ok(deliverable.to_response(detail="full"))
        except GigbookError as e:
            return _fail(e)

    # ── gb_ledger ─────────────────────────────────────────────

    @mcp.tool()
    async def gb_ledger(
        action: Annotated[
            Literal["record", "list", "balance", "monthly"],
            Field(description="record | list | balance | monthly"),
        ],
        project_id: Annotated[
            str | None,
            Field(description="Project ID (record; list/balance/monthly: scope)"),
        ] = None,
        client_id: Annotated[
            str | None, Field(description="Client ID scope (list, balance, monthly)")
        ] = None,
        kind: Annotated[str | None, Field(description="income or expense (record)")] = None,
        description: Annotated[str | None, Field(description="Description (record)")] = None,
        amount: Annotated[
            str | None, Field(description="Amount as a decimal string (record)")
        ] = None,
        date: Annotated[
            str | None, Field(description="Entry date, ISO 8601; defaults to now (record)")
        ] = None,
        category: Annotated[
            str | None, Field(description="Category, defaults to 'other' (record)")
        ] = None,
        start: Annotated[
            str | None, Field(description="Range start, ISO 8601 (list, balance, monthly)")
        ] = None,
        end: Annotated[
            str | None, Field(description="Range end, ISO 8601 (list, balance, monthly)")
        ] = None,
    ) -> str:
        """Immutable income and expense entries, and balances scoped to a project, a client or everything."""  # noqa: E501
        engine = await _init()
        try:
            if action == "record":
                entry = await engine.record_ledger_entry(
                    _payload(
                        project_id=project_id,
                        kind=kind,
                        description=description,
                        amount=amount,
                        date=date,
                        category=category,
                    )
                )
                return _ok(entry.to_response())

            try:
                scope = BalanceScope(
                    project_id=project_id,
                    client_id=client_id,
                    start=_date(start),
                    end=_date(end),
                )
            except ValueError as e:
                return _err(f"Invalid date range: {e}")

            if action == "list":
                entries = await engine.list_ledger_entries(scope)
                items = [e.to_response() for e in entries]
                return _ok({"count": len(items), "entries": items})
            if action == "balance":
                balance = await engine.get_balance(scope)
                return _ok({**balance.to_response(), "scope": scope.to_response()})
            months = await engine.monthly_balance(scope)
            return _ok({"months": {k: v.to_response() for k, v in months.items()}})
        except GigbookError as e:
            return _fail(e)

    # ── Resources ─────────────────────────────────────────────

    @mcp.resource("gb://status")
    async def gb_resource_status() -> str:
        """Record counts per collection."""
        engine = await _init()
        return _ok({"counts": await engine.counts()})

    return mcp

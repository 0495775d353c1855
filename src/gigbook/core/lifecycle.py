"""Engagement Lifecycle Engine.

Runs every lifecycle command as one atomic unit of work. Each command
re-reads the state it validates inside the transaction, asks the transition
engine whether the change is legal, writes the entity together with its
derived writes (the project spawned by an accepted proposal, the project
progress behind a deliverable) and emits events once the writes are committed.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any, TypeVar

from gigbook.config import Config
from gigbook.core.identifiers import (
    CONTRACT_PREFIX,
    PROJECT_PREFIX,
    PROPOSAL_PREFIX,
    allocate,
    make_identifier,
)
from gigbook.core.metrics import Balance, BalanceScope, MetricsAggregator, MetricsCache
from gigbook.core.transitions import SideEffect, attempt_transition, parse_status
from gigbook.core.unit_of_work import TransactionRunner
from gigbook.errors import (
    InvalidTransitionError,
    InvariantViolationError,
    NotFoundError,
    ValidationError,
    Violation,
)
from gigbook.events.bus import EventBus, Outbox
from gigbook.events.types import EventType
from gigbook.models import client as client_model
from gigbook.models import project as project_model
from gigbook.models.base import Record, as_utc, utcnow, validate_record
from gigbook.models.client import CONTACT_FIELDS, Client, validate_client
from gigbook.models.contract import (
    Contract,
    ContractStatus,
    contract_span_violations,
    validate_contract,
)
from gigbook.models.deliverable import Deliverable, DeliverableStatus, validate_deliverable
from gigbook.models.ledger import LedgerEntry, validate_ledger_entry
from gigbook.models.project import Advance, Project, validate_project
from gigbook.models.proposal import Proposal, ProposalStatus, validate_proposal
from gigbook.storage.base import Collection, DocumentReader, DocumentWriter, StorageBackend

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=Record)

# Payload keys each command accepts
PROPOSAL_FIELDS = frozenset({"client_id", "title", "description", "price", "terms", "deadline"})
PROJECT_FIELDS = frozenset(
    {"client_id", "name", "description", "start_date", "end_date", "value"}
)
PROJECT_OVERRIDES = frozenset({"start_date", "name", "description"})
CONTRACT_FIELDS = frozenset(
    {"conditions", "payment_terms", "start_date", "end_date", "total_value"}
)
DELIVERABLE_FIELDS = frozenset({"title", "description", "due_date"})
LEDGER_FIELDS = frozenset({"project_id", "kind", "description", "amount", "date", "category"})

_STORED_AS: dict[type[Record], tuple[Collection, str]] = {
    Client: (Collection.CLIENTS, "client"),
    Proposal: (Collection.PROPOSALS, "proposal"),
    Project: (Collection.PROJECTS, "project"),
    Contract: (Collection.CONTRACTS, "contract"),
    Deliverable: (Collection.DELIVERABLES, "deliverable"),
    LedgerEntry: (Collection.LEDGER, "ledger_entry"),
}


@dataclass(frozen=True)
class AcceptedProposal:
    """An accepted proposal and the project created with it."""

    proposal: Proposal
    project: Project

    def to_response(self) -> dict[str, Any]:
        return {
            "_v": "1.0",
            "proposal": self.proposal.to_response(detail="full"),
            "project": self.project.to_response(detail="full"),
        }


def _reject_unknown(entity: str, data: Mapping[str, Any], allowed: Iterable[str]) -> None:
    unknown = sorted(set(data) - set(allowed))
    if unknown:
        raise ValidationError(
            entity, [Violation(key, "not_editable", "cannot be set here") for key in unknown]
        )


def _pick(data: Mapping[str, Any], fields: Iterable[str]) -> dict[str, Any]:
    return {key: data[key] for key in fields if key in data}


class LifecycleOrchestrator:
    """Entry point for every lifecycle command and query."""

    def __init__(
        self,
        store: StorageBackend,
        event_bus: EventBus,
        *,
        config: Config | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            store: Storage backend offering atomic transactions
            event_bus: Event bus receiving committed lifecycle events
            config: Retry budget, identifier attempts and progress weights
            clock: Source of "now"; defaults to the current UTC time
        """
        self._store = store
        self._event_bus = event_bus
        self._config = config or Config()
        self._clock = clock or utcnow
        self._runner = TransactionRunner(store, event_bus, self._config)
        self._aggregator = MetricsAggregator(store, weights=self._config.progress_weights)
        self.metrics = MetricsCache(self._aggregator, clock=self._now)
        self.metrics.attach(event_bus)

    def _now(self) -> datetime:
        return as_utc(self._clock())

    def _new_identifier(self, prefix: str, now: datetime) -> Callable[[], str]:
        return lambda: make_identifier(prefix, now)

    async def _load(self, reader: DocumentReader, model: type[M], entity_id: str) -> M:
        collection, entity = _STORED_AS[model]
        doc = await reader.get(collection, entity_id)
        if doc is None:
            raise NotFoundError(entity, entity_id)
        return model.model_validate(doc)

    async def _find(
        self, reader: DocumentReader, model: type[M], filters: Mapping[str, Any], **kwargs: Any
    ) -> list[M]:
        collection, _ = _STORED_AS[model]
        docs = await reader.find(collection, filters, **kwargs)
        return [model.model_validate(d) for d in docs]

    @staticmethod
    def _ensure_open(project: Project, action: str) -> None:
        if project.is_closed:
            logger.warning("Refused to %s on %s project %s", action, project.status, project.id)
            raise InvariantViolationError(
                "project",
                project.id,
                "project_open",
                f"Project {project.code} is {project.status.value}; cannot {action}",
            )

    # --- Clients ---

    async def create_client(self, data: Mapping[str, Any]) -> Client:
        """Register a client. The email must not belong to another client."""
        fields = _pick(data, client_model.EDITABLE_FIELDS)
        client = validate_client({**fields, "registered_at": self._now()}).unwrap()

        async def work(tx: DocumentWriter, outbox: Outbox) -> Client:
            await tx.insert(Collection.CLIENTS, client.to_storage())
            outbox.add(EventType.CLIENT_CREATED, {"client_id": client.id})
            return client

        created = await self._runner.run(work, entity="client")
        logger.info("Created client %s (%s)", created.id, created.email)
        return created

    async def update_client(self, client_id: str, updates: Mapping[str, Any]) -> Client:
        """Edit a client.

        Once a proposal or project references the client only the contact
        fields (email, phone) may change.
        """
        _reject_unknown("client", updates, client_model.EDITABLE_FIELDS)
        now = self._now()

        async def work(tx: DocumentWriter, outbox: Outbox) -> Client:
            client = await self._load(tx, Client, client_id)
            locked = sorted(set(updates) - CONTACT_FIELDS)
            if locked and await self._client_referenced(tx, client_id):
                raise ValidationError(
                    "client",
                    [
                        Violation(
                            key,
                            "immutable_once_referenced",
                            "only contact fields can change once the client is referenced",
                        )
                        for key in locked
                    ],
                )
            updated = validate_client(
                {**client.model_dump(), **updates, "updated_at": now}
            ).unwrap()
            await tx.update(Collection.CLIENTS, client_id, updated.to_storage())
            outbox.add(
                EventType.CLIENT_UPDATED, {"client_id": client_id, "fields": sorted(updates)}
            )
            return updated

        updated = await self._runner.run(work, entity="client")
        logger.info("Updated client %s: %s", client_id, ", ".join(sorted(updates)))
        return updated

    async def _client_referenced(self, reader: DocumentReader, client_id: str) -> bool:
        for collection in (Collection.PROPOSALS, Collection.PROJECTS):
            if await reader.find(collection, {"client_id": client_id}, limit=1):
                return True
        return False

    async def get_client(self, client_id: str) -> Client:
        return await self._load(self._store, Client, client_id)

    async def list_clients(self) -> list[Client]:
        return await self._find(self._store, Client, {}, order_by="name")

    # --- Proposals ---

    async def create_proposal(self, data: Mapping[str, Any]) -> Proposal:
        """Create a pending proposal for an existing client.

        Args:
            data: client_id, title, description, price, terms and deadline

        Returns:
            The stored proposal, carrying its generated number

        Raises:
            ValidationError: If any field is malformed or the deadline is not in the future
            NotFoundError: If the client does not exist
        """
        now = self._now()
        number = self._new_identifier(PROPOSAL_PREFIX, now)
        draft = validate_proposal(
            {**_pick(data, PROPOSAL_FIELDS), "number": number(), "created_at": now}, now=now
        ).unwrap()

        async def work(tx: DocumentWriter, outbox: Outbox) -> Proposal:
            await self._load(tx, Client, draft.client_id)
            proposal = draft.model_copy(
                update={
                    "number": await allocate(
                        tx,
                        Collection.PROPOSALS,
                        "number",
                        number,
                        attempts=self._config.identifier_attempts,
                    )
                }
            )
            await tx.insert(Collection.PROPOSALS, proposal.to_storage())
            outbox.add(
                EventType.PROPOSAL_CREATED,
                {"proposal_id": proposal.id, "client_id": proposal.client_id},
            )
            return proposal

        proposal = await self._runner.run(work, entity="proposal")
        logger.info("Created proposal %s for client %s", proposal.number, proposal.client_id)
        return proposal

    async def accept_proposal(self, proposal_id: str) -> AcceptedProposal:
        """Accept a pending proposal and create its project in the same unit of work."""
        return await self.create_project_from_proposal(proposal_id)

    async def create_project_from_proposal(
        self, proposal_id: str, overrides: Mapping[str, Any] | None = None
    ) -> AcceptedProposal:
        """Accept a proposal and spawn its project atomically.

        The project inherits title, description, price and deadline from the
        proposal. ``overrides`` may replace start_date, name or description.
        Either the proposal ends up accepted and back-linked to a new project,
        or nothing is written.
        """
        overrides = dict(overrides or {})
        _reject_unknown("project", overrides, PROJECT_OVERRIDES)
        now = self._now()
        code = self._new_identifier(PROJECT_PREFIX, now)

        async def work(tx: DocumentWriter, outbox: Outbox) -> AcceptedProposal:
            proposal = await self._load(tx, Proposal, proposal_id)
            transition = attempt_transition(proposal, ProposalStatus.ACCEPTED, now=now)

            project = validate_project(
                {
                    "code": await allocate(
                        tx,
                        Collection.PROJECTS,
                        "code",
                        code,
                        attempts=self._config.identifier_attempts,
                    ),
                    "client_id": proposal.client_id,
                    "proposal_id": proposal.id,
                    "name": proposal.title,
                    "description": proposal.description,
                    "value": proposal.price,
                    "start_date": now,
                    "end_date": proposal.deadline,
                    "created_at": now,
                    **overrides,
                }
            ).unwrap()
            progress = await self._aggregator.progress(project, now=now, reader=tx)
            project = project.model_copy(update={"progress": progress})
            await tx.insert(Collection.PROJECTS, project.to_storage())

            accepted = transition.entity.model_copy(update={"project_id": project.id})
            await tx.update(
                Collection.PROPOSALS,
                proposal.id,
                accepted.to_storage(),
                expected={"status": transition.previous.value},
            )

            outbox.add(
                EventType.PROPOSAL_ACCEPTED,
                {"proposal_id": accepted.id, "project_id": project.id},
            )
            outbox.add(
                EventType.PROJECT_CREATED,
                {"project_id": project.id, "client_id": project.client_id},
            )
            return AcceptedProposal(proposal=accepted, project=project)

        result = await self._runner.run(work, entity="proposal")
        logger.info(
            "Accepted proposal %s, created project %s",
            result.proposal.number,
            result.project.code,
        )
        return result

    async def reject_proposal(self, proposal_id: str) -> Proposal:
        now = self._now()

        async def work(tx: DocumentWriter, outbox: Outbox) -> Proposal:
            proposal = await self._load(tx, Proposal, proposal_id)
            transition = attempt_transition(proposal, ProposalStatus.REJECTED, now=now)
            await tx.update(
                Collection.PROPOSALS,
                proposal_id,
                transition.entity.to_storage(),
                expected={"status": transition.previous.value},
            )
            outbox.add(EventType.PROPOSAL_REJECTED, {"proposal_id": proposal_id})
            return transition.entity

        rejected = await self._runner.run(work, entity="proposal")
        logger.info("Rejected proposal %s", rejected.number)
        return rejected

    async def get_proposal(self, proposal_id: str) -> Proposal:
        return await self._load(self._store, Proposal, proposal_id)

    async def list_proposals(
        self, *, status: str | None = None, client_id: str | None = None
    ) -> list[Proposal]:
        filters: dict[str, Any] = {}
        if status is not None:
            filters["status"] = parse_status(Proposal, status).value
        if client_id is not None:
            filters["client_id"] = client_id
        return await self._find(self._store, Proposal, filters, order_by="created_at")

    # --- Projects ---

    async def create_project(self, data: Mapping[str, Any]) -> Project:
        """Create a standalone project for an existing client."""
        now = self._now()
        code = self._new_identifier(PROJECT_PREFIX, now)
        draft = validate_project(
            {"start_date": now, **_pick(data, PROJECT_FIELDS), "code": code(), "created_at": now}
        ).unwrap()

        async def work(tx: DocumentWriter, outbox: Outbox) -> Project:
            await self._load(tx, Client, draft.client_id)
            project = draft.model_copy(
                update={
                    "code": await allocate(
                        tx,
                        Collection.PROJECTS,
                        "code",
                        code,
                        attempts=self._config.identifier_attempts,
                    ),
                    "progress": await self._aggregator.progress(draft, now=now, reader=tx),
                }
            )
            await tx.insert(Collection.PROJECTS, project.to_storage())
            outbox.add(
                EventType.PROJECT_CREATED,
                {"project_id": project.id, "client_id": project.client_id},
            )
            return project

        project = await self._runner.run(work, entity="project")
        logger.info("Created project %s (%s)", project.code, project.name)
        return project

    async def get_project(self, project_id: str) -> Project:
        """Get a project merged with its freshly computed progress."""
        project = await self._load(self._store, Project, project_id)
        progress = await self.metrics.progress(project)
        return project.model_copy(update={"progress": progress})

    async def list_projects(
        self, *, client_id: str | None = None, status: str | None = None
    ) -> list[Project]:
        filters: dict[str, Any] = {}
        if client_id is not None:
            filters["client_id"] = client_id
        if status is not None:
            filters["status"] = parse_status(Project, status).value
        return await self._find(self._store, Project, filters, order_by="created_at")

    async def update_project(self, project_id: str, updates: Mapping[str, Any]) -> Project:
        """Edit name, description, dates or value of an open project.

        Raises:
            InvariantViolationError: If the new dates would leave a signed
                contract outside the project span, or the project is closed
        """
        _reject_unknown("project", updates, project_model.EDITABLE_FIELDS)
        now = self._now()

        async def work(tx: DocumentWriter, outbox: Outbox) -> Project:
            project = await self._load(tx, Project, project_id)
            self._ensure_open(project, "edit it")
            updated = validate_project(
                {**project.model_dump(), **updates, "updated_at": now}
            ).unwrap()

            signed = await self._find(
                tx,
                Contract,
                {"project_id": project_id, "status": ContractStatus.SIGNED.value},
            )
            for contract in signed:
                if contract_span_violations(contract, updated):
                    logger.warning(
                        "Refused to move project %s dates outside signed contract %s",
                        project.code,
                        contract.number,
                    )
                    raise InvariantViolationError(
                        "project",
                        project_id,
                        "signed_contract_within_span",
                        f"Signed contract {contract.number} would fall outside the project dates",
                    )

            progress = await self._aggregator.progress(updated, now=now, reader=tx)
            updated = updated.model_copy(update={"progress": progress})
            await tx.update(Collection.PROJECTS, project_id, updated.to_storage())
            outbox.add(
                EventType.PROJECT_UPDATED, {"project_id": project_id, "fields": sorted(updates)}
            )
            return updated

        updated = await self._runner.run(work, entity="project")
        logger.info("Updated project %s: %s", updated.code, ", ".join(sorted(updates)))
        return updated

    async def change_project_status(self, project_id: str, target: str) -> Project:
        """Move a project along its status table.

        Finishing stores progress 100; cancelling stores the progress computed
        at that instant, which is then frozen.
        """
        now = self._now()

        async def work(tx: DocumentWriter, outbox: Outbox) -> Project:
            project = await self._load(tx, Project, project_id)
            transition = attempt_transition(project, target, now=now)
            # a frozen value is taken from the state before cancellation
            frozen = transition.requires(SideEffect.FREEZE_PROGRESS)
            basis = project if frozen else transition.entity
            progress = await self._aggregator.progress(basis, now=now, reader=tx)
            updated = transition.entity.model_copy(update={"progress": progress})
            await tx.update(
                Collection.PROJECTS,
                project_id,
                updated.to_storage(),
                expected={"status": transition.previous.value},
            )
            outbox.add(
                EventType.PROJECT_STATUS_CHANGED,
                {
                    "project_id": project_id,
                    "from": transition.previous.value,
                    "to": updated.status.value,
                },
            )
            return updated

        updated = await self._runner.run(work, entity="project")
        logger.info("Project %s is now %s", updated.code, updated.status)
        return updated

    async def log_advance(self, project_id: str, note: str) -> Project:
        now = self._now()
        advance = validate_record(Advance, {"note": note, "at": now}, entity="advance").unwrap()

        async def work(tx: DocumentWriter, outbox: Outbox) -> Project:
            project = await self._load(tx, Project, project_id)
            self._ensure_open(project, "log an advance")
            updated = project.model_copy(
                update={"advances": [*project.advances, advance], "updated_at": now}
            )
            await tx.update(Collection.PROJECTS, project_id, updated.to_storage())
            outbox.add(EventType.ADVANCE_LOGGED, {"project_id": project_id})
            return updated

        return await self._runner.run(work, entity="project")

    async def delete_project(self, project_id: str) -> Project:
        """Delete a project with its deliverables and unsigned contracts.

        Refused while a signed contract or an approved deliverable references
        the project, and for projects spawned by a proposal.
        """
        async def work(tx: DocumentWriter, outbox: Outbox) -> Project:
            project = await self._load(tx, Project, project_id)
            if project.proposal_id:
                raise InvariantViolationError(
                    "project",
                    project_id,
                    "proposal_keeps_project",
                    f"Project {project.code} belongs to accepted proposal {project.proposal_id}",
                )
            checks = (
                (Collection.CONTRACTS, ContractStatus.SIGNED.value, "signed_contract"),
                (Collection.DELIVERABLES, DeliverableStatus.APPROVED.value, "approved_deliverable"),
            )
            for collection, status, rule in checks:
                if await tx.find(collection, {"project_id": project_id, "status": status}, limit=1):
                    logger.warning("Refused to delete project %s: %s", project.code, rule)
                    raise InvariantViolationError(
                        "project",
                        project_id,
                        rule,
                        f"Project {project.code} is referenced by a {rule.replace('_', ' ')}",
                    )

            for collection in (Collection.DELIVERABLES, Collection.CONTRACTS):
                for doc in await tx.find(collection, {"project_id": project_id}):
                    await tx.delete(collection, doc["id"])
            await tx.delete(Collection.PROJECTS, project_id)
            outbox.add(EventType.PROJECT_DELETED, {"project_id": project_id})
            return project

        deleted = await self._runner.run(work, entity="project")
        logger.info("Deleted project %s", deleted.code)
        return deleted

    # --- Contracts ---

    async def generate_contract(self, project_id: str, data: Mapping[str, Any]) -> Contract:
        """Draft the contract of an open project.

        Dates and total value default to the project's own. A project holds
        at most one contract that is not cancelled.
        """
        fields = _pick(data, CONTRACT_FIELDS)
        now = self._now()
        number = self._new_identifier(CONTRACT_PREFIX, now)

        async def work(tx: DocumentWriter, outbox: Outbox) -> Contract:
            project = await self._load(tx, Project, project_id)
            self._ensure_open(project, "generate a contract")
            current = await tx.find(
                Collection.CONTRACTS,
                {
                    "project_id": project_id,
                    "status": [ContractStatus.DRAFT.value, ContractStatus.SIGNED.value],
                },
                limit=1,
            )
            if current:
                raise InvariantViolationError(
                    "contract",
                    current[0]["id"],
                    "one_contract_per_project",
                    f"Project {project.code} already has contract {current[0]['number']}",
                )

            contract = validate_contract(
                {
                    "start_date": project.start_date,
                    "end_date": project.end_date,
                    "total_value": project.value,
                    **fields,
                    "number": await allocate(
                        tx,
                        Collection.CONTRACTS,
                        "number",
                        number,
                        attempts=self._config.identifier_attempts,
                    ),
                    "project_id": project_id,
                    "created_at": now,
                },
                project=project,
            ).unwrap()
            await tx.insert(Collection.CONTRACTS, contract.to_storage())
            linked = project.model_copy(update={"contract_id": contract.id, "updated_at": now})
            await tx.update(Collection.PROJECTS, project_id, linked.to_storage())
            outbox.add(
                EventType.CONTRACT_GENERATED,
                {"contract_id": contract.id, "project_id": project_id},
            )
            return contract

        contract = await self._runner.run(work, entity="contract")
        logger.info("Generated contract %s for project %s", contract.number, project_id)
        return contract

    async def update_contract(self, contract_id: str, updates: Mapping[str, Any]) -> Contract:
        """Edit the terms, dates or value of a draft contract.

        Dates are validated against the project span as it is now, which is
        how a draft left behind by a project edit is brought back in line.

        Raises:
            InvalidTransitionError: If the contract is no longer a draft
        """
        _reject_unknown("contract", updates, CONTRACT_FIELDS)
        now = self._now()

        async def work(tx: DocumentWriter, outbox: Outbox) -> Contract:
            contract = await self._load(tx, Contract, contract_id)
            if contract.status != ContractStatus.DRAFT:
                # only drafts are editable; the status itself does not move
                raise InvalidTransitionError(
                    "contract", contract_id, contract.status.value, contract.status.value
                )
            project = await self._load(tx, Project, contract.project_id)
            updated = validate_contract(
                {**contract.model_dump(), **updates, "updated_at": now}, project=project
            ).unwrap()
            await tx.update(
                Collection.CONTRACTS,
                contract_id,
                updated.to_storage(),
                expected={"status": ContractStatus.DRAFT.value},
            )
            outbox.add(
                EventType.CONTRACT_UPDATED,
                {
                    "contract_id": contract_id,
                    "project_id": contract.project_id,
                    "fields": sorted(updates),
                },
            )
            return updated

        updated = await self._runner.run(work, entity="contract")
        logger.info("Updated contract %s: %s", updated.number, ", ".join(sorted(updates)))
        return updated

    def _check_contract_span(self, contract: Contract, project: Project) -> None:
        violations = contract_span_violations(contract, project)
        if violations:
            logger.warning(
                "Contract %s dates drifted outside project %s", contract.number, project.code
            )
            raise InvariantViolationError(
                "contract",
                contract.id,
                "within_project_span",
                f"Contract {contract.number} dates are outside project {project.code}: "
                + "; ".join(f"{v.field} {v.message}" for v in violations),
            )

    async def sign_contract(self, contract_id: str) -> Contract:
        """Sign a draft contract; its dates are re-checked against the current project span."""
        now = self._now()

        async def work(tx: DocumentWriter, outbox: Outbox) -> Contract:
            contract = await self._load(tx, Contract, contract_id)
            transition = attempt_transition(contract, ContractStatus.SIGNED, now=now)
            project = await self._load(tx, Project, contract.project_id)
            self._check_contract_span(contract, project)
            await tx.update(
                Collection.CONTRACTS,
                contract_id,
                transition.entity.to_storage(),
                expected={"status": transition.previous.value},
            )
            outbox.add(
                EventType.CONTRACT_SIGNED,
                {"contract_id": contract_id, "project_id": contract.project_id},
            )
            return transition.entity

        signed = await self._runner.run(work, entity="contract")
        logger.info("Signed contract %s", signed.number)
        return signed

    async def cancel_contract(self, contract_id: str) -> Contract:
        """Cancel a draft contract and unlink it from its project."""
        now = self._now()

        async def work(tx: DocumentWriter, outbox: Outbox) -> Contract:
            contract = await self._load(tx, Contract, contract_id)
            transition = attempt_transition(contract, ContractStatus.CANCELLED, now=now)
            project = await self._load(tx, Project, contract.project_id)
            await tx.update(
                Collection.CONTRACTS,
                contract_id,
                transition.entity.to_storage(),
                expected={"status": transition.previous.value},
            )
            if project.contract_id == contract_id:
                unlinked = project.model_copy(update={"contract_id": None, "updated_at": now})
                await tx.update(Collection.PROJECTS, project.id, unlinked.to_storage())
            outbox.add(
                EventType.CONTRACT_CANCELLED,
                {"contract_id": contract_id, "project_id": contract.project_id},
            )
            return transition.entity

        cancelled = await self._runner.run(work, entity="contract")
        logger.info("Cancelled contract %s", cancelled.number)
        return cancelled

    async def get_contract(self, contract_id: str) -> Contract:
        return await self._load(self._store, Contract, contract_id)

    async def list_contracts(
        self, *, status: str | None = None, project_id: str | None = None
    ) -> list[Contract]:
        filters: dict[str, Any] = {}
        if status is not None:
            filters["status"] = parse_status(Contract, status).value
        if project_id is not None:
            filters["project_id"] = project_id
        return await self._find(self._store, Contract, filters, order_by="created_at")

    async def contract_for_project(self, project_id: str) -> Contract | None:
        """The project's contract that is not cancelled, if it has one."""
        await self._load(self._store, Project, project_id)
        current = await self._find(
            self._store,
            Contract,
            {
                "project_id": project_id,
                "status": [ContractStatus.DRAFT.value, ContractStatus.SIGNED.value],
            },
            limit=1,
        )
        return current[0] if current else None

    # --- Deliverables ---

    async def create_deliverable(self, project_id: str, data: Mapping[str, Any]) -> Deliverable:
        """Add a deliverable at the end of an open project's list.

        The due date must lie within the project span. The project's cached
        progress is refreshed in the same unit of work.
        """
        fields = _pick(data, DELIVERABLE_FIELDS)
        now = self._now()

        async def work(tx: DocumentWriter, outbox: Outbox) -> Deliverable:
            project = await self._load(tx, Project, project_id)
            self._ensure_open(project, "add a deliverable")
            last = await tx.find(
                Collection.DELIVERABLES,
                {"project_id": project_id},
                order_by="-position",
                limit=1,
            )
            position = last[0]["position"] + 1 if last else 1
            deliverable = validate_deliverable(
                {**fields, "project_id": project_id, "position": position, "created_at": now},
                project=project,
            ).unwrap()
            await tx.insert(Collection.DELIVERABLES, deliverable.to_storage())

            progress = await self._aggregator.progress(project, now=now, reader=tx)
            if progress != project.progress:
                await tx.update(Collection.PROJECTS, project_id, {"progress": progress})
            outbox.add(
                EventType.DELIVERABLE_CREATED,
                {"deliverable_id": deliverable.id, "project_id": project_id},
            )
            return deliverable

        deliverable = await self._runner.run(work, entity="deliverable")
        logger.info("Created deliverable #%d for project %s", deliverable.position, project_id)
        return deliverable

    async def change_deliverable_status(
        self, deliverable_id: str, target: str, note: str | None = None
    ) -> Deliverable:
        """Move a deliverable along its status table.

        The owning project's progress is recomputed and written in the same
        unit of work, so it is never stale relative to the deliverable.
        """
        now = self._now()

        async def work(tx: DocumentWriter, outbox: Outbox) -> Deliverable:
            deliverable = await self._load(tx, Deliverable, deliverable_id)
            transition = attempt_transition(deliverable, target, now=now, note=note)
            await tx.update(
                Collection.DELIVERABLES,
                deliverable_id,
                transition.entity.to_storage(),
                expected={"status": transition.previous.value},
            )

            project = await self._load(tx, Project, deliverable.project_id)
            progress = await self._aggregator.progress(project, now=now, reader=tx)
            await tx.update(Collection.PROJECTS, project.id, {"progress": progress})

            outbox.add(
                EventType.DELIVERABLE_STATUS_CHANGED,
                {
                    "deliverable_id": deliverable_id,
                    "project_id": project.id,
                    "from": transition.previous.value,
                    "to": transition.target.value,
                    "progress": progress,
                },
            )
            return transition.entity

        changed = await self._runner.run(work, entity="deliverable")
        logger.info("Deliverable %s is now %s", deliverable_id, changed.status)
        return changed

    async def get_deliverable(self, deliverable_id: str) -> Deliverable:
        return await self._load(self._store, Deliverable, deliverable_id)

    async def list_deliverables(
        self, project_id: str, *, overdue: bool = False
    ) -> list[Deliverable]:
        deliverables = await self._aggregator.deliverables_of(project_id)
        if overdue:
            now = self._now()
            deliverables = [d for d in deliverables if d.is_overdue(now)]
        return deliverables

    async def deliverable_stats(self, project_id: str | None = None) -> dict[str, int]:
        """Count deliverables per status, plus how many are overdue.

        Overdue means past the due date and neither delivered nor approved.
        Without ``project_id`` every project is counted.
        """
        filters = {"project_id": project_id} if project_id is not None else {}
        deliverables = await self._find(self._store, Deliverable, filters)
        now = self._now()
        stats = {status.value: 0 for status in DeliverableStatus}
        for deliverable in deliverables:
            stats[deliverable.status.value] += 1
        stats["overdue"] = sum(1 for d in deliverables if d.is_overdue(now))
        stats["total"] = len(deliverables)
        return stats

    # --- Ledger ---

    async def record_ledger_entry(self, data: Mapping[str, Any]) -> LedgerEntry:
        """Record an income or expense. Entries are never edited afterwards."""
        now = self._now()
        entry = validate_ledger_entry(
            {
                "date": now,
                "category": self._config.default_ledger_category,
                **_pick(data, LEDGER_FIELDS),
                "created_at": now,
            }
        ).unwrap()

        async def work(tx: DocumentWriter, outbox: Outbox) -> LedgerEntry:
            if entry.project_id is not None:
                await self._load(tx, Project, entry.project_id)
            await tx.insert(Collection.LEDGER, entry.to_storage())
            outbox.add(
                EventType.LEDGER_ENTRY_RECORDED,
                {"entry_id": entry.id, "project_id": entry.project_id, "kind": entry.kind.value},
            )
            return entry

        recorded = await self._runner.run(work, entity="ledger_entry")
        logger.info("Recorded %s of %s (%s)", recorded.kind, recorded.amount, recorded.category)
        return recorded

    async def list_ledger_entries(self, scope: BalanceScope | None = None) -> list[LedgerEntry]:
        return await self._aggregator.entries(scope)

    async def get_balance(self, scope: BalanceScope | None = None) -> Balance:
        return await self.metrics.balance(scope)

    async def monthly_balance(self, scope: BalanceScope | None = None) -> dict[str, Balance]:
        return await self._aggregator.monthly(scope)

    # --- Overview ---

    async def counts(self) -> dict[str, int]:
        return {str(c): await self._store.count(c) for c in Collection}

"""Gigbook data models."""

from gigbook.models.base import Validated
from gigbook.models.client import Client, validate_client
from gigbook.models.contract import Contract, ContractStatus, validate_contract
from gigbook.models.deliverable import Deliverable, DeliverableStatus, validate_deliverable
from gigbook.models.ledger import EntryKind, LedgerEntry, validate_ledger_entry
from gigbook.models.project import Advance, Project, ProjectStatus, validate_project
from gigbook.models.proposal import Proposal, ProposalStatus, validate_proposal

__all__ = [
    "Advance",
    "Client",
    "Contract",
    "ContractStatus",
    "Deliverable",
    "DeliverableStatus",
    "EntryKind",
    "LedgerEntry",
    "Project",
    "ProjectStatus",
    "Proposal",
    "ProposalStatus",
    "Validated",
    "validate_client",
    "validate_contract",
    "validate_deliverable",
    "validate_ledger_entry",
    "validate_project",
    "validate_proposal",
]

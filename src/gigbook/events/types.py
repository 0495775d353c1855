"""Event type constants for gigbook."""

from enum import StrEnum


class EventType(StrEnum):
    CLIENT_CREATED = "client.created"
    CLIENT_UPDATED = "client.updated"

    PROPOSAL_CREATED = "proposal.created"
    PROPOSAL_ACCEPTED = "proposal.accepted"
    PROPOSAL_REJECTED = "proposal.rejected"

    PROJECT_CREATED = "project.created"
    PROJECT_UPDATED = "project.updated"
    PROJECT_STATUS_CHANGED = "project.status_changed"
    PROJECT_DELETED = "project.deleted"
    ADVANCE_LOGGED = "project.advance_logged"

    CONTRACT_GENERATED = "contract.generated"
    CONTRACT_UPDATED = "contract.updated"
    CONTRACT_SIGNED = "contract.signed"
    CONTRACT_CANCELLED = "contract.cancelled"

    DELIVERABLE_CREATED = "deliverable.created"
    DELIVERABLE_STATUS_CHANGED = "deliverable.status_changed"

    LEDGER_ENTRY_RECORDED = "ledger.recorded"


# Events after which cached progress or balance figures are stale
METRIC_EVENTS = frozenset(
    {
        EventType.PROJECT_CREATED,
        EventType.PROJECT_UPDATED,
        EventType.PROJECT_STATUS_CHANGED,
        EventType.PROJECT_DELETED,
        EventType.PROPOSAL_ACCEPTED,
        EventType.DELIVERABLE_CREATED,
        EventType.DELIVERABLE_STATUS_CHANGED,
        EventType.LEDGER_ENTRY_RECORDED,
    }
)

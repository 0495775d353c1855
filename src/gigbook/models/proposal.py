"""Proposal model: a priced offer awaiting the client's decision."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from enum import StrEnum
from typing import Any, ClassVar

from pydantic import Field

from gigbook.errors import Violation
from gigbook.models.base import (
    Money,
    StatefulRecord,
    Text,
    UtcDatetime,
    Validated,
    as_utc,
    utcnow,
    validate_record,
)


class ProposalStatus(StrEnum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class Proposal(StatefulRecord):
    kind: ClassVar[str] = "proposal"
    status_enum: ClassVar[type[StrEnum]] = ProposalStatus
    transitions: ClassVar[dict[StrEnum, frozenset[StrEnum]]] = {
        ProposalStatus.PENDING: frozenset({ProposalStatus.ACCEPTED, ProposalStatus.REJECTED}),
        ProposalStatus.ACCEPTED: frozenset(),
        ProposalStatus.REJECTED: frozenset(),
    }

    number: Text
    client_id: Text
    title: Text
    description: Text
    price: Money
    terms: Text
    deadline: UtcDatetime
    status: ProposalStatus = ProposalStatus.PENDING
    project_id: str | None = None
    created_at: UtcDatetime = Field(default_factory=utcnow)
    updated_at: UtcDatetime | None = None
    decided_at: UtcDatetime | None = None

    def to_response(self, *, detail: str = "summary") -> dict[str, Any]:
        data: dict[str, Any] = {
            "_v": "1.0",
            "id": self.id,
            "number": self.number,
            "title": self.title,
            "price": str(self.price),
            "status": self.status.value,
        }
        if detail != "summary":
            data.update(
                {
                    "client_id": self.client_id,
                    "description": self.description,
                    "terms": self.terms,
                    "deadline": self.deadline.isoformat(),
                    "project_id": self.project_id,
                    "created_at": self.created_at.isoformat(),
                    "decided_at": self.decided_at.isoformat() if self.decided_at else None,
                }
            )
        return data


def validate_proposal(data: Mapping[str, Any], *, now: datetime) -> Validated[Proposal]:
    """Validate a new proposal; the deadline must be strictly after ``now``."""

    def deadline_in_future(proposal: Proposal) -> list[Violation]:
        if proposal.deadline <= as_utc(now):
            return [Violation("deadline", "future_date", "must be a future date")]
        return []

    return validate_record(Proposal, data, deadline_in_future)

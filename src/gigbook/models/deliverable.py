"""Deliverable model."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from enum import StrEnum
from typing import Any, ClassVar

from pydantic import BaseModel, Field

from gigbook.errors import Violation
from gigbook.models.base import (
    StatefulRecord,
    Text,
    UtcDatetime,
    Validated,
    span_violations,
    utcnow,
    validate_record,
)
from gigbook.models.project import Project


class DeliverableStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    DELIVERED = "delivered"
    APPROVED = "approved"
    REJECTED = "rejected"


# Statuses counted as done for project progress
COMPLETED_STATUSES = frozenset({DeliverableStatus.DELIVERED, DeliverableStatus.APPROVED})


class StatusChange(BaseModel):
    at: UtcDatetime = Field(default_factory=utcnow)
    from_status: DeliverableStatus
    to_status: DeliverableStatus
    note: str | None = None


class Deliverable(StatefulRecord):
    """A trackable work item inside a project."""

    kind: ClassVar[str] = "deliverable"
    status_enum: ClassVar[type[StrEnum]] = DeliverableStatus
    transitions: ClassVar[dict[StrEnum, frozenset[StrEnum]]] = {
        DeliverableStatus.PENDING: frozenset(
            {DeliverableStatus.IN_PROGRESS, DeliverableStatus.REJECTED}
        ),
        DeliverableStatus.IN_PROGRESS: frozenset(
            {DeliverableStatus.DELIVERED, DeliverableStatus.REJECTED}
        ),
        DeliverableStatus.DELIVERED: frozenset(
            {DeliverableStatus.APPROVED, DeliverableStatus.REJECTED}
        ),
        DeliverableStatus.APPROVED: frozenset(),
        # rework after a rejection
        DeliverableStatus.REJECTED: frozenset({DeliverableStatus.IN_PROGRESS}),
    }

    project_id: Text
    title: Text
    description: Text
    due_date: UtcDatetime
    status: DeliverableStatus = DeliverableStatus.PENDING
    delivered_at: UtcDatetime | None = None
    position: int = Field(default=1, ge=1)
    history: list[StatusChange] = Field(default_factory=list)
    created_at: UtcDatetime = Field(default_factory=utcnow)
    updated_at: UtcDatetime | None = None

    @property
    def is_completed(self) -> bool:
        return self.status in COMPLETED_STATUSES

    def is_overdue(self, at: datetime) -> bool:
        return not self.is_completed and self.due_date < at

    def to_response(self, *, detail: str = "summary") -> dict[str, Any]:
        data: dict[str, Any] = {
            "_v": "1.0",
            "id": self.id,
            "project_id": self.project_id,
            "title": self.title,
            "status": self.status.value,
            "position": self.position,
        }
        if detail != "summary":
            data.update(
                {
                    "description": self.description,
                    "due_date": self.due_date.isoformat(),
                    "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
                    "history": [change.model_dump(mode="json") for change in self.history],
                }
            )
        return data


def validate_deliverable(data: Mapping[str, Any], *, project: Project) -> Validated[Deliverable]:
    def due_within_project(deliverable: Deliverable) -> list[Violation]:
        return span_violations(
            deliverable.due_date,
            None,
            span_start=project.start_date,
            span_end=project.end_date,
            start_field="due_date",
        )

    return validate_record(Deliverable, data, due_within_project)

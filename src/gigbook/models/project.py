"""Project and advance models."""

from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum
from typing import Any, ClassVar

from pydantic import BaseModel, Field

from gigbook.errors import Violation
from gigbook.models.base import (
    Money,
    StatefulRecord,
    Text,
    UtcDatetime,
    Validated,
    utcnow,
    validate_record,
)

# Fields update_project may change directly
EDITABLE_FIELDS = frozenset({"name", "description", "start_date", "end_date", "value"})


class ProjectStatus(StrEnum):
    ACTIVE = "active"
    PAUSED = "paused"
    FINISHED = "finished"
    CANCELLED = "cancelled"


CLOSED_STATUSES = frozenset({ProjectStatus.FINISHED, ProjectStatus.CANCELLED})


class Advance(BaseModel):
    """A timestamped progress note."""

    at: UtcDatetime = Field(default_factory=utcnow)
    note: Text


class Project(StatefulRecord):
    """A unit of engaged work for a client."""

    kind: ClassVar[str] = "project"
    status_enum: ClassVar[type[StrEnum]] = ProjectStatus
    transitions: ClassVar[dict[StrEnum, frozenset[StrEnum]]] = {
        ProjectStatus.ACTIVE: frozenset(
            {ProjectStatus.PAUSED, ProjectStatus.FINISHED, ProjectStatus.CANCELLED}
        ),
        ProjectStatus.PAUSED: frozenset(
            {ProjectStatus.ACTIVE, ProjectStatus.FINISHED, ProjectStatus.CANCELLED}
        ),
        ProjectStatus.FINISHED: frozenset({ProjectStatus.CANCELLED}),
        ProjectStatus.CANCELLED: frozenset(),
    }

    code: Text
    client_id: Text
    proposal_id: str | None = None
    contract_id: str | None = None
    name: Text
    description: str = ""
    start_date: UtcDatetime = Field(default_factory=utcnow)
    end_date: UtcDatetime | None = None
    value: Money
    status: ProjectStatus = ProjectStatus.ACTIVE
    progress: int = Field(default=0, ge=0, le=100)
    advances: list[Advance] = Field(default_factory=list)
    created_at: UtcDatetime = Field(default_factory=utcnow)
    updated_at: UtcDatetime | None = None

    @property
    def is_closed(self) -> bool:
        return self.status in CLOSED_STATUSES

    def to_response(self, *, detail: str = "summary") -> dict[str, Any]:
        data: dict[str, Any] = {
            "_v": "1.0",
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "status": self.status.value,
            "progress": self.progress,
        }
        if detail != "summary":
            data.update(
                {
                    "client_id": self.client_id,
                    "proposal_id": self.proposal_id,
                    "contract_id": self.contract_id,
                    "description": self.description,
                    "start_date": self.start_date.isoformat(),
                    "end_date": self.end_date.isoformat() if self.end_date else None,
                    "value": str(self.value),
                    "advances": [
                        {"at": a.at.isoformat(), "note": a.note} for a in self.advances
                    ],
                    "created_at": self.created_at.isoformat(),
                    "updated_at": self.updated_at.isoformat() if self.updated_at else None,
                }
            )
        return data


def _end_after_start(project: Project) -> list[Violation]:
    if project.end_date is not None and project.end_date <= project.start_date:
        return [Violation("end_date", "after_start_date", "must be after the start date")]
    return []


def validate_project(data: Mapping[str, Any]) -> Validated[Project]:
    return validate_record(Project, data, _end_after_start)

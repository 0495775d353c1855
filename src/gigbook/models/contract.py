"""Contract model: the formal agreement bound to one project."""

from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum
from typing import Annotated, Any, ClassVar

from pydantic import Field, StringConstraints

from gigbook.errors import Violation
from gigbook.models.base import (
    Money,
    StatefulRecord,
    Text,
    UtcDatetime,
    Validated,
    span_violations,
    utcnow,
    validate_record,
)
from gigbook.models.project import Project


class ContractStatus(StrEnum):
    DRAFT = "draft"
    SIGNED = "signed"
    CANCELLED = "cancelled"


class Contract(StatefulRecord):
    kind: ClassVar[str] = "contract"
    status_enum: ClassVar[type[StrEnum]] = ContractStatus
    transitions: ClassVar[dict[StrEnum, frozenset[StrEnum]]] = {
        ContractStatus.DRAFT: frozenset({ContractStatus.SIGNED, ContractStatus.CANCELLED}),
        ContractStatus.SIGNED: frozenset(),
        ContractStatus.CANCELLED: frozenset(),
    }

    number: Text
    project_id: Text
    conditions: Annotated[str, StringConstraints(strip_whitespace=True, min_length=10)]
    payment_terms: Annotated[str, StringConstraints(strip_whitespace=True, min_length=5)]
    start_date: UtcDatetime
    end_date: UtcDatetime
    total_value: Money
    status: ContractStatus = ContractStatus.DRAFT
    signed_at: UtcDatetime | None = None
    cancelled_at: UtcDatetime | None = None
    created_at: UtcDatetime = Field(default_factory=utcnow)
    updated_at: UtcDatetime | None = None

    def to_response(self, *, detail: str = "summary") -> dict[str, Any]:
        data: dict[str, Any] = {
            "_v": "1.0",
            "id": self.id,
            "number": self.number,
            "project_id": self.project_id,
            "status": self.status.value,
        }
        if detail != "summary":
            data.update(
                {
                    "conditions": self.conditions,
                    "payment_terms": self.payment_terms,
                    "start_date": self.start_date.isoformat(),
                    "end_date": self.end_date.isoformat(),
                    "total_value": str(self.total_value),
                    "signed_at": self.signed_at.isoformat() if self.signed_at else None,
                    "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
                }
            )
        return data


def contract_span_violations(contract: Contract, project: Project) -> list[Violation]:
    """Contract dates must sit inside the project's current span."""
    return span_violations(
        contract.start_date,
        contract.end_date,
        span_start=project.start_date,
        span_end=project.end_date,
        start_field="start_date",
        end_field="end_date",
    )


def validate_contract(data: Mapping[str, Any], *, project: Project) -> Validated[Contract]:
    def start_before_end(contract: Contract) -> list[Violation]:
        if contract.start_date >= contract.end_date:
            return [Violation("end_date", "after_start_date", "must be after the start date")]
        return []

    def within_project(contract: Contract) -> list[Violation]:
        return contract_span_violations(contract, project)

    return validate_record(Contract, data, start_before_end, within_project)

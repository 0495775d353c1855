"""Ledger entry model: an immutable income or expense fact."""

from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum
from typing import Any

from pydantic import ConfigDict, Field

from gigbook.models.base import Money, Record, Text, UtcDatetime, Validated, utcnow, validate_record

DEFAULT_CATEGORY = "other"


class EntryKind(StrEnum):
    INCOME = "income"
    EXPENSE = "expense"


class LedgerEntry(Record):
    model_config = ConfigDict(frozen=True)

    project_id: str | None = None
    kind: EntryKind
    description: Text
    amount: Money
    date: UtcDatetime = Field(default_factory=utcnow)
    category: Text = DEFAULT_CATEGORY
    created_at: UtcDatetime = Field(default_factory=utcnow)

    def to_response(self) -> dict[str, Any]:
        return {
            "_v": "1.0",
            "id": self.id,
            "project_id": self.project_id,
            "kind": self.kind.value,
            "description": self.description,
            "amount": str(self.amount),
            "date": self.date.isoformat(),
            "category": self.category,
        }


def validate_ledger_entry(data: Mapping[str, Any]) -> Validated[LedgerEntry]:
    return validate_record(LedgerEntry, data)

"""Client model."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Annotated, Any

from pydantic import Field, StringConstraints

from gigbook.models.base import Record, Text, UtcDatetime, Validated, utcnow, validate_record

EMAIL_PATTERN = r"^[\w.-]+@([\w-]+\.)+[\w-]{2,4}$"
PHONE_PATTERN = r"^\d{10}$"

# Fields that stay editable after a proposal or project references the client
CONTACT_FIELDS = frozenset({"email", "phone"})
EDITABLE_FIELDS = frozenset({"name", "email", "phone", "company"})


class Client(Record):
    """A person or company the freelancer works for."""

    name: Text
    email: Annotated[str, StringConstraints(strip_whitespace=True, pattern=EMAIL_PATTERN)]
    phone: Annotated[str, StringConstraints(strip_whitespace=True, pattern=PHONE_PATTERN)]
    company: Text
    registered_at: UtcDatetime = Field(default_factory=utcnow)
    updated_at: UtcDatetime | None = None

    def to_response(self, *, detail: str = "summary") -> dict[str, Any]:
        data: dict[str, Any] = {
            "_v": "1.0",
            "id": self.id,
            "name": self.name,
            "email": self.email,
        }
        if detail != "summary":
            data.update(
                {
                    "phone": self.phone,
                    "company": self.company,
                    "registered_at": self.registered_at.isoformat(),
                    "updated_at": self.updated_at.isoformat() if self.updated_at else None,
                }
            )
        return data


def validate_client(data: Mapping[str, Any]) -> Validated[Client]:
    return validate_record(Client, data)

"""Typed errors surfaced by the lifecycle engine.

Every error carries a machine-readable ``code`` and structured ``details`` so
callers can render an actionable message without parsing strings.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import asdict, dataclass
from typing import Any


@dataclass(frozen=True)
class Violation:
    """A single broken field rule."""

    field: str
    rule: str
    message: str

    def to_response(self) -> dict[str, str]:
        return asdict(self)


class GigbookError(Exception):
    """Base class for every error the engine reports."""

    code = "GIGBOOK_ERROR"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_response(self) -> dict[str, Any]:
        return {"_v": "1.0", "error": self.message, "code": self.code, **self.details}


class ValidationError(GigbookError):
    """Malformed input; carries every violated rule at once."""

    code = "VALIDATION_FAILED"

    def __init__(self, entity: str, violations: Iterable[Violation]) -> None:
        self.entity = entity
        self.violations = tuple(violations)
        summary = "; ".join(f"{v.field}: {v.message}" for v in self.violations)
        super().__init__(
            f"Invalid {entity}: {summary}",
            entity=entity,
            violations=[v.to_response() for v in self.violations],
        )

    @property
    def fields(self) -> set[str]:
        return {v.field for v in self.violations}


class NotFoundError(GigbookError):
    code = "NOT_FOUND"

    def __init__(self, entity: str, entity_id: str) -> None:
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found: {entity_id}", entity=entity, entity_id=entity_id)


class InvalidTransitionError(GigbookError):
    """Requested status change is not in the entity's transition table."""

    code = "INVALID_TRANSITION"

    def __init__(self, entity: str, entity_id: str, from_state: str, to_state: str) -> None:
        self.entity = entity
        self.entity_id = entity_id
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Invalid {entity} transition '{from_state}' -> '{to_state}' ({entity_id})",
            entity=entity,
            entity_id=entity_id,
            from_state=str(from_state),
            to_state=str(to_state),
        )


class ConcurrencyConflictError(GigbookError):
    """The write could not be committed within the retry budget."""

    code = "CONCURRENCY_CONFLICT"

    def __init__(self, entity: str, attempts: int, reason: str = "") -> None:
        self.entity = entity
        self.attempts = attempts
        message = f"Could not commit {entity} change after {attempts} attempt(s)"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, entity=entity, attempts=attempts)


class InvariantViolationError(GigbookError):
    """A cross-entity rule failed at commit time."""

    code = "INVARIANT_VIOLATION"

    def __init__(self, entity: str, entity_id: str, rule: str, message: str) -> None:
        self.entity = entity
        self.entity_id = entity_id
        self.rule = rule
        super().__init__(message, entity=entity, entity_id=entity_id, rule=rule)

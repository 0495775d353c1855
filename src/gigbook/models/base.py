"""Shared field types, record base classes and the validation result type."""

from __future__ import annotations

import uuid
from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from enum import StrEnum
from typing import Annotated, Any, ClassVar, Generic, TypeVar

from pydantic import AfterValidator, BaseModel, Field, PlainSerializer, StringConstraints
from pydantic import ValidationError as PydanticValidationError

from gigbook.errors import ValidationError, Violation


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return str(uuid.uuid4())


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def format_utc(value: datetime) -> str:
    """Fixed-width ISO 8601 so stored timestamps sort as strings."""
    return as_utc(value).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


UtcDatetime = Annotated[
    datetime, AfterValidator(as_utc), PlainSerializer(format_utc, when_used="json")
]
Money = Annotated[Decimal, Field(gt=0, max_digits=14, decimal_places=2)]
Text = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


class Record(BaseModel):
    """A persisted document with a generated id."""

    id: str = Field(default_factory=new_id)

    def to_storage(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class StatefulRecord(Record):
    """A record whose ``status`` follows a fixed transition table."""

    kind: ClassVar[str] = "record"
    status_enum: ClassVar[type[StrEnum]]
    transitions: ClassVar[Mapping[StrEnum, frozenset[StrEnum]]] = {}

    @classmethod
    def valid_transitions_from(cls, state: str) -> frozenset[StrEnum]:
        """Statuses reachable from ``state`` in one step."""
        return cls.transitions.get(cls.status_enum(state), frozenset())

    @classmethod
    def is_terminal(cls, state: str) -> bool:
        return not cls.valid_transitions_from(state)


T = TypeVar("T", bound=BaseModel)
Rule = Callable[[T], Iterable[Violation]]


@dataclass(frozen=True)
class Validated(Generic[T]):
    """Either a valid entity or every rule it broke."""

    entity: str
    value: T | None = None
    violations: tuple[Violation, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.violations and self.value is not None

    def unwrap(self) -> T:
        if not self.ok:
            raise ValidationError(self.entity, self.violations)
        return self.value  # type: ignore[return-value]


def validate_record(
    model: type[T],
    data: Mapping[str, Any],
    *rules: Rule,
    entity: str | None = None,
) -> Validated[T]:
    """Build ``model`` from ``data`` and apply cross-field ``rules``.

    Field-level problems are reported together; cross-field rules only run
    once every field parsed.
    """
    name = entity or model.__name__.lower()
    try:
        value = model.model_validate(dict(data))
    except PydanticValidationError as exc:
        return Validated(name, violations=tuple(_from_pydantic(exc)))

    violations = tuple(v for rule in rules for v in rule(value))
    if violations:
        return Validated(name, violations=violations)
    return Validated(name, value=value)


def _from_pydantic(exc: PydanticValidationError) -> Iterator[Violation]:
    for error in exc.errors():
        field = ".".join(str(part) for part in error["loc"]) or "__root__"
        yield Violation(field=field, rule=error["type"], message=error["msg"])


def span_violations(
    start: datetime,
    end: datetime | None,
    *,
    span_start: datetime,
    span_end: datetime | None,
    start_field: str,
    end_field: str | None = None,
) -> list[Violation]:
    """Check that ``[start, end]`` lies within ``[span_start, span_end or +inf]``."""
    violations = []
    if start < span_start:
        violations.append(
            Violation(start_field, "within_project_span", "must not be before the project start")
        )
    if span_end is not None and start > span_end:
        violations.append(
            Violation(start_field, "within_project_span", "must not be after the project end")
        )
    if end is not None and end_field is not None and span_end is not None and end > span_end:
        violations.append(
            Violation(end_field, "within_project_span", "must not be after the project end")
        )
    return violations

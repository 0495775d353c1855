"""Status transition engine.

Pure functions only: given an entity snapshot and a requested status, either
reject the request or return the new snapshot together with the side effects
the orchestrator has to carry out inside its unit of work.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any, Generic, TypeVar

from gigbook.errors import InvalidTransitionError, ValidationError, Violation
from gigbook.models.base import StatefulRecord, as_utc, utcnow
from gigbook.models.contract import ContractStatus
from gigbook.models.deliverable import Deliverable, DeliverableStatus, StatusChange
from gigbook.models.project import ProjectStatus
from gigbook.models.proposal import ProposalStatus

E = TypeVar("E", bound=StatefulRecord)


class SideEffect(StrEnum):
    CREATE_PROJECT = "create_project"
    STAMP_DECISION_DATE = "stamp_decision_date"
    STAMP_SIGNATURE_DATE = "stamp_signature_date"
    STAMP_CANCELLATION_DATE = "stamp_cancellation_date"
    STAMP_DELIVERY_DATE = "stamp_delivery_date"
    RECOMPUTE_PROGRESS = "recompute_progress"
    FREEZE_PROGRESS = "freeze_progress"


# (entity kind, target status) -> side effects, in execution order
SIDE_EFFECTS: dict[tuple[str, StrEnum], tuple[SideEffect, ...]] = {
    ("proposal", ProposalStatus.ACCEPTED): (
        SideEffect.STAMP_DECISION_DATE,
        SideEffect.CREATE_PROJECT,
    ),
    ("proposal", ProposalStatus.REJECTED): (SideEffect.STAMP_DECISION_DATE,),
    ("contract", ContractStatus.SIGNED): (SideEffect.STAMP_SIGNATURE_DATE,),
    ("contract", ContractStatus.CANCELLED): (SideEffect.STAMP_CANCELLATION_DATE,),
    ("deliverable", DeliverableStatus.IN_PROGRESS): (SideEffect.RECOMPUTE_PROGRESS,),
    ("deliverable", DeliverableStatus.DELIVERED): (
        SideEffect.STAMP_DELIVERY_DATE,
        SideEffect.RECOMPUTE_PROGRESS,
    ),
    ("deliverable", DeliverableStatus.APPROVED): (
        SideEffect.STAMP_DELIVERY_DATE,
        SideEffect.RECOMPUTE_PROGRESS,
    ),
    ("deliverable", DeliverableStatus.REJECTED): (SideEffect.RECOMPUTE_PROGRESS,),
    ("project", ProjectStatus.ACTIVE): (SideEffect.RECOMPUTE_PROGRESS,),
    ("project", ProjectStatus.PAUSED): (SideEffect.RECOMPUTE_PROGRESS,),
    ("project", ProjectStatus.FINISHED): (SideEffect.RECOMPUTE_PROGRESS,),
    ("project", ProjectStatus.CANCELLED): (SideEffect.FREEZE_PROGRESS,),
}

# Side effect -> timestamp field it stamps
_STAMPS: dict[SideEffect, str] = {
    SideEffect.STAMP_DECISION_DATE: "decided_at",
    SideEffect.STAMP_SIGNATURE_DATE: "signed_at",
    SideEffect.STAMP_CANCELLATION_DATE: "cancelled_at",
    SideEffect.STAMP_DELIVERY_DATE: "delivered_at",
}


@dataclass(frozen=True)
class Transition(Generic[E]):
    """Outcome of a legal transition request."""

    entity: E
    previous: StrEnum
    side_effects: tuple[SideEffect, ...] = ()

    @property
    def target(self) -> StrEnum:
        return self.entity.status  # type: ignore[attr-defined]

    def requires(self, effect: SideEffect) -> bool:
        return effect in self.side_effects


def parse_status(model: type[StatefulRecord], value: str) -> StrEnum:
    """Coerce a raw status string into the model's enum."""
    try:
        return model.status_enum(value)
    except ValueError:
        allowed = ", ".join(s.value for s in model.status_enum)
        raise ValidationError(
            model.kind,
            [Violation("status", "enum", f"must be one of: {allowed}")],
        ) from None


def attempt_transition(
    entity: E,
    target: str,
    *,
    now: datetime | None = None,
    note: str | None = None,
) -> Transition[E]:
    """Validate ``entity.status -> target`` and build the resulting snapshot.

    Raises InvalidTransitionError when the target is not reachable from the
    current status in one step; requesting the current status is rejected
    the same way.
    """
    model = type(entity)
    target_status = parse_status(model, target)
    current = model.status_enum(entity.status)  # type: ignore[attr-defined]

    if target_status not in model.valid_transitions_from(current):
        raise InvalidTransitionError(model.kind, entity.id, current.value, target_status.value)

    at = as_utc(now) if now else utcnow()
    effects = SIDE_EFFECTS.get((model.kind, target_status), ())
    updates: dict[str, Any] = {"status": target_status, "updated_at": at}

    for effect in effects:
        stamp = _STAMPS.get(effect)
        if stamp is None:
            continue
        # delivery date keeps the first delivery when a delivered item is approved
        if effect is SideEffect.STAMP_DELIVERY_DATE and getattr(entity, stamp, None) is not None:
            continue
        updates[stamp] = at

    if isinstance(entity, Deliverable):
        change = StatusChange(
            at=at,
            from_status=DeliverableStatus(current),
            to_status=DeliverableStatus(target_status),
            note=note,
        )
        updates["history"] = [*entity.history, change]

    return Transition(
        entity=entity.model_copy(update=updates),
        previous=current,
        side_effects=effects,
    )

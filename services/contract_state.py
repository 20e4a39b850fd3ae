"""Contract lifecycle state machine.

The table below is the only place that decides which events a contract in a
given status accepts.  ``transition()`` returns the target status together
with the ordered side effects the caller must apply; it never touches the
database.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass

from services.errors import InvalidTransitionError


class ContractStatus(str, enum.Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ContractEvent(str, enum.Enum):
    COMPLETE = "complete"
    CANCEL = "cancel"
    EXTEND = "extend"
    UPDATE = "update"


class Effect(str, enum.Enum):
    RECORD_RETURN = "record_return"
    ASSESS_OVERAGE = "assess_overage"
    CHECK_AVAILABILITY = "check_availability"
    RECOMPUTE_TOTALS = "recompute_totals"
    RECORD_REASON = "record_reason"
    APPEND_NOTE = "append_note"
    RELEASE_VEHICLE = "release_vehicle"
    CREDIT_CUSTOMER = "credit_customer"


@dataclass(frozen=True)
class Transition:
    source: ContractStatus
    event: ContractEvent
    target: ContractStatus
    effects: tuple[Effect, ...]

    @property
    def changes_status(self) -> bool:
        return self.source is not self.target


_TRANSITIONS: dict[tuple[ContractStatus, ContractEvent], Transition] = {}


def _define(source, event, target, *effects):
    _TRANSITIONS[(source, event)] = Transition(source, event, target, tuple(effects))


_define(
    ContractStatus.ACTIVE, ContractEvent.COMPLETE, ContractStatus.COMPLETED,
    Effect.RECORD_RETURN,
    Effect.ASSESS_OVERAGE,
    Effect.RECOMPUTE_TOTALS,
    Effect.APPEND_NOTE,
    Effect.RELEASE_VEHICLE,
    Effect.CREDIT_CUSTOMER,
)
_define(
    ContractStatus.ACTIVE, ContractEvent.CANCEL, ContractStatus.CANCELLED,
    Effect.RECORD_REASON,
    Effect.RELEASE_VEHICLE,
)
_define(
    ContractStatus.ACTIVE, ContractEvent.EXTEND, ContractStatus.ACTIVE,
    Effect.CHECK_AVAILABILITY,
    Effect.RECOMPUTE_TOTALS,
    Effect.APPEND_NOTE,
)
_define(
    ContractStatus.ACTIVE, ContractEvent.UPDATE, ContractStatus.ACTIVE,
    Effect.RECOMPUTE_TOTALS,
)


def transition(current, event) -> Transition:
    """Look up the transition for ``(current, event)``.

    Raises :class:`InvalidTransitionError` for any pair not in the table,
    including unknown status strings.
    """
    try:
        event = ContractEvent(event)
        status = ContractStatus(current)
    except ValueError:
        raise InvalidTransitionError(
            str(getattr(current, "value", current)), str(getattr(event, "value", event))
        ) from None
    found = _TRANSITIONS.get((status, event))
    if found is None:
        raise InvalidTransitionError(status.value, event.value)
    return found


def allowed_events(current) -> list[ContractEvent]:
    status = ContractStatus(current)
    return [event for (source, event) in _TRANSITIONS if source is status]

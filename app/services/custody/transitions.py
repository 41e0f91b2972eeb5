# app/services/custody/transitions.py
from typing import Dict, FrozenSet, Set
from app.core.exceptions import InvalidTransitionError
from app.models.shared.enums import TransferStatus

ALLOWED_TRANSITIONS: Dict[TransferStatus, FrozenSet[TransferStatus]] = {
    TransferStatus.PENDING: frozenset({
        TransferStatus.CONFIRMED,
        TransferStatus.DISCREPANCY_REPORTED,
        TransferStatus.REJECTED,
    }),
    TransferStatus.DISCREPANCY_REPORTED: frozenset({TransferStatus.RESOLVED}),
    TransferStatus.CONFIRMED: frozenset(),
    TransferStatus.RESOLVED: frozenset(),
    TransferStatus.REJECTED: frozenset(),
}

# Still in flight: blocks any further transfer request for the batch
OPEN_STATUSES: FrozenSet[TransferStatus] = frozenset({
    TransferStatus.PENDING,
    TransferStatus.DISCREPANCY_REPORTED,
})

# Finalized rows that hand custody to the receiver
CUSTODY_STATUSES: FrozenSet[TransferStatus] = frozenset({
    TransferStatus.CONFIRMED,
    TransferStatus.RESOLVED,
})


def is_terminal(status: TransferStatus) -> bool:
    return not ALLOWED_TRANSITIONS[status]


def eligible_sources(new_status: TransferStatus) -> Set[TransferStatus]:
    """Statuses a row may be in for a move to ``new_status`` to be legal."""
    return {source for source, targets in ALLOWED_TRANSITIONS.items() if new_status in targets}


def assert_transition(current: TransferStatus, new_status: TransferStatus) -> TransferStatus:
    if new_status not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(
            f"Cannot move transfer from {current.value} to {new_status.value}",
            context={"current_status": current.value, "requested_status": new_status.value},
        )
    return new_status

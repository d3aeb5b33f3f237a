from dataclasses import dataclass
from datetime import datetime

from ..models import OPEN_STATUSES, ReservationStatus
from .errors import InvalidRangeError, InvalidStateError, SpotInactiveError
from .time_range import TimeRange

_ALLOWED_TRANSITIONS: dict[ReservationStatus, frozenset[ReservationStatus]] = {
    ReservationStatus.PENDING: frozenset({ReservationStatus.ACTIVE, ReservationStatus.CANCELLED}),
    ReservationStatus.ACTIVE: frozenset({ReservationStatus.COMPLETED, ReservationStatus.CANCELLED}),
    ReservationStatus.COMPLETED: frozenset(),
    ReservationStatus.CANCELLED: frozenset(),
}


@dataclass(frozen=True)
class SpotSnapshot:
    spot_id: int
    is_active: bool
    total_slots: int


def validate_admission(
    snapshot: SpotSnapshot,
    *,
    time_range: TimeRange,
    slots_requested: int,
    now: datetime,
) -> None:
    """
    Pure validation of everything except capacity: spot is bookable, request is sane.
    Capacity is checked against the ledger by the caller while holding the spot lock.
    """
    if not snapshot.is_active:
        raise SpotInactiveError(f"spot {snapshot.spot_id} is not accepting reservations")
    if slots_requested < 1:
        raise InvalidRangeError("slots_requested must be >= 1")
    if time_range.end <= now:
        raise InvalidRangeError("requested range has already elapsed")


def ensure_transition(current: ReservationStatus, target: ReservationStatus) -> None:
    if target not in _ALLOWED_TRANSITIONS[ReservationStatus(current)]:
        raise InvalidStateError(f"cannot move reservation from {current} to {target}")


def ensure_open(status: ReservationStatus) -> None:
    if status not in OPEN_STATUSES:
        raise InvalidStateError(f"reservation is {status}")


def clock_target(status: ReservationStatus, time_range: TimeRange, now: datetime) -> ReservationStatus:
    """Status a reservation should have at `now` if only the clock moved it."""
    if status not in OPEN_STATUSES:
        return status
    if now >= time_range.end:
        return ReservationStatus.COMPLETED
    if status == ReservationStatus.PENDING and now >= time_range.start:
        return ReservationStatus.ACTIVE
    return status

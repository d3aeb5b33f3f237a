from datetime import datetime
from typing import Any, Optional

from fastapi import HTTPException, status

from ..domain.errors import (
    CapacityExceededError,
    DomainError,
    InvalidRangeError,
    InvalidStateError,
    NotFoundError,
    SpotInactiveError,
    VersionConflictError,
)
from ..domain.time_range import TimeRange
from ..models import Reservation, ReservationStatus
from ..utils.audit_log import emit_audit_log
from ..utils.time import to_utc_naive, utc_naive_to_local


def to_http_exception(exc: DomainError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, InvalidRangeError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if isinstance(exc, CapacityExceededError):
        detail: dict[str, Any] = {"message": "no availability in that window"}
        if exc.conflict is not None:
            detail["conflict_start"] = utc_naive_to_local(exc.conflict.start).isoformat()
            detail["conflict_end"] = utc_naive_to_local(exc.conflict.end).isoformat()
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=detail)
    if isinstance(exc, VersionConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail="version mismatch")
    if isinstance(exc, SpotInactiveError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail="spot is not accepting reservations")
    if isinstance(exc, InvalidStateError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


def audit_failure() -> HTTPException:
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="failed to record audit log")


def audit(**fields: Any) -> None:
    try:
        emit_audit_log(**fields)
    except RuntimeError as exc:
        raise audit_failure() from exc


def require_aware(*values: Optional[datetime]) -> None:
    for value in values:
        if value is not None and value.tzinfo is None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="datetimes must have timezone")


def parse_range(start: datetime, end: datetime) -> TimeRange:
    require_aware(start, end)
    try:
        return TimeRange(to_utc_naive(start), to_utc_naive(end))
    except InvalidRangeError as exc:
        raise to_http_exception(exc) from exc


def parse_optional_range(start: Optional[datetime], end: Optional[datetime]) -> Optional[TimeRange]:
    if start is None and end is None:
        return None
    if start is None or end is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="start and end must be given together")
    return parse_range(start, end)


def clock_change_audits(changes: list[tuple[Reservation, ReservationStatus]]) -> list[dict[str, Any]]:
    """Audit fields for reservations moved by the clock sweep."""
    return [
        {
            "action": "reservation.completed"
            if reservation.status == ReservationStatus.COMPLETED
            else "reservation.activated",
            "initiator": "system",
            "reservation_id": reservation.id,
            "spot_id": reservation.spot_id,
            "user_id": reservation.renter_id,
            "slots": reservation.slots_requested,
            "status_from": status_from,
            "status_to": reservation.status,
            "version": reservation.version,
        }
        for reservation, status_from in changes
    ]

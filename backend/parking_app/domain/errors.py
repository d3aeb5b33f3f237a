from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .time_range import TimeRange


class DomainError(Exception):
    """Base class for errors raised by the availability engine."""


class InvalidRangeError(DomainError, ValueError):
    pass


class CapacityExceededError(DomainError):
    """Admission would push occupancy above the spot's capacity somewhere in `conflict`."""

    def __init__(
        self,
        message: str,
        *,
        conflict: Optional["TimeRange"] = None,
        peak_occupancy: Optional[int] = None,
        total_slots: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.conflict = conflict
        self.peak_occupancy = peak_occupancy
        self.total_slots = total_slots

    @property
    def conflict_start(self) -> Optional[datetime]:
        return self.conflict.start if self.conflict is not None else None

    @property
    def conflict_end(self) -> Optional[datetime]:
        return self.conflict.end if self.conflict is not None else None


class InvalidStateError(DomainError):
    pass


class SpotInactiveError(DomainError):
    pass


class NotFoundError(DomainError, LookupError):
    pass


class VersionConflictError(DomainError):
    pass

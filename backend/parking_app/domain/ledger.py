from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Protocol

from ..models import OPEN_STATUSES, ReservationStatus
from .errors import CapacityExceededError, NotFoundError
from .time_range import TimeRange


class _ReservationLike(Protocol):
    id: int
    starts_at: datetime
    ends_at: datetime
    slots_requested: int
    status: ReservationStatus


@dataclass(frozen=True)
class LedgerEntry:
    reservation_id: int
    range: TimeRange
    slots: int = 1


@dataclass(frozen=True)
class OccupancySegment:
    range: TimeRange
    occupancy: int


class SlotLedger:
    """Capacity and open reservations of a single parking spot.

    Occupancy is never stored; every figure is recomputed from the entries,
    so an entry that leaves the ledger releases its slots for its whole range
    at once. `insert` and `replace_range` refuse any change that would make
    occupancy exceed `total_slots` at some instant.
    """

    def __init__(self, spot_id: int, total_slots: int, entries: Iterable[LedgerEntry] = ()) -> None:
        if total_slots < 1:
            raise ValueError("total_slots must be >= 1")
        self.spot_id = spot_id
        self.total_slots = total_slots
        self._entries: dict[int, LedgerEntry] = {entry.reservation_id: entry for entry in entries}

    @classmethod
    def from_reservations(
        cls,
        spot_id: int,
        total_slots: int,
        reservations: Iterable[_ReservationLike],
    ) -> "SlotLedger":
        entries = [
            LedgerEntry(
                reservation_id=res.id,
                range=TimeRange(res.starts_at, res.ends_at),
                slots=res.slots_requested,
            )
            for res in reservations
            if res.status in OPEN_STATUSES
        ]
        return cls(spot_id, total_slots, entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, reservation_id: object) -> bool:
        return reservation_id in self._entries

    @property
    def entries(self) -> list[LedgerEntry]:
        return sorted(self._entries.values(), key=lambda e: (e.range.start, e.reservation_id))

    def get(self, reservation_id: int) -> LedgerEntry:
        try:
            return self._entries[reservation_id]
        except KeyError:
            raise NotFoundError(f"reservation {reservation_id} is not in the ledger of spot {self.spot_id}") from None

    # -- reads -------------------------------------------------------------

    def occupancy_at(self, instant: datetime) -> int:
        return sum(e.slots for e in self._entries.values() if e.range.contains(instant))

    def occupancy_profile(self, time_range: TimeRange, *, exclude: Optional[int] = None) -> list[OccupancySegment]:
        """Piecewise-constant occupancy over `time_range`, in chronological order.

        Sweep over the clipped reservation endpoints: each start adds the
        entry's slots, each end removes them. Deltas landing on the same
        instant are netted before the segment that begins there, so an entry
        ending at `t` and another starting at `t` never count together.
        """
        deltas: dict[datetime, int] = defaultdict(int)
        for entry in self._entries.values():
            if entry.reservation_id == exclude:
                continue
            clipped = entry.range.intersection(time_range)
            if clipped is None:
                continue
            deltas[clipped.start] += entry.slots
            deltas[clipped.end] -= entry.slots

        boundaries = sorted(set(deltas) | {time_range.start, time_range.end})
        segments: list[OccupancySegment] = []
        running = 0
        for left, right in zip(boundaries, boundaries[1:]):
            running += deltas.get(left, 0)
            segments.append(OccupancySegment(TimeRange(left, right), running))
        return segments

    def max_occupancy_over_range(self, time_range: TimeRange, *, exclude: Optional[int] = None) -> int:
        return max(seg.occupancy for seg in self.occupancy_profile(time_range, exclude=exclude))

    def available_slots(self, time_range: TimeRange) -> int:
        return max(self.total_slots - self.max_occupancy_over_range(time_range), 0)

    def first_conflict(
        self,
        time_range: TimeRange,
        slots_requested: int = 1,
        *,
        exclude: Optional[int] = None,
    ) -> Optional[TimeRange]:
        """First maximal sub-range of `time_range` that cannot take `slots_requested` more."""
        limit = self.total_slots - slots_requested
        return _first_run_above(self.occupancy_profile(time_range, exclude=exclude), limit)

    def check_capacity(
        self,
        time_range: TimeRange,
        slots_requested: int = 1,
        *,
        exclude: Optional[int] = None,
    ) -> None:
        conflict = self.first_conflict(time_range, slots_requested, exclude=exclude)
        if conflict is None:
            return
        peak = self.max_occupancy_over_range(conflict, exclude=exclude)
        raise CapacityExceededError(
            f"spot {self.spot_id} has no capacity for {slots_requested} slot(s) "
            f"between {conflict.start.isoformat()} and {conflict.end.isoformat()}",
            conflict=conflict,
            peak_occupancy=peak + slots_requested,
            total_slots=self.total_slots,
        )

    def next_free_instant(self, from_instant: datetime, slots_requested: int = 1) -> Optional[datetime]:
        """Earliest instant >= `from_instant` at which `slots_requested` slots are free.

        Occupancy only drops at reservation ends, so those are the only
        candidates after `from_instant` itself. None when the request is
        larger than the spot.
        """
        if slots_requested > self.total_slots:
            return None
        ends = sorted({e.range.end for e in self._entries.values() if e.range.end > from_instant})
        for candidate in [from_instant, *ends]:
            if self.occupancy_at(candidate) + slots_requested <= self.total_slots:
                return candidate
        return None  # pragma: no cover - the last end always has room

    # -- mutations ---------------------------------------------------------

    def insert(self, entry: LedgerEntry) -> None:
        if entry.reservation_id in self._entries:
            raise ValueError(f"reservation {entry.reservation_id} is already in the ledger")
        if entry.slots < 1:
            raise ValueError("slots must be >= 1")
        self.check_capacity(entry.range, entry.slots)
        self._entries[entry.reservation_id] = entry

    def remove(self, reservation_id: int) -> LedgerEntry:
        entry = self.get(reservation_id)
        del self._entries[reservation_id]
        return entry

    def replace_range(self, reservation_id: int, new_range: TimeRange) -> LedgerEntry:
        entry = self.get(reservation_id)
        self.check_capacity(new_range, entry.slots, exclude=reservation_id)
        updated = LedgerEntry(reservation_id=reservation_id, range=new_range, slots=entry.slots)
        self._entries[reservation_id] = updated
        return updated

    def resize(self, total_slots: int, *, since: datetime) -> None:
        """Change capacity, refusing if open reservations after `since` would no longer fit."""
        if total_slots < 1:
            raise ValueError("total_slots must be >= 1")
        horizon = max((e.range.end for e in self._entries.values()), default=None)
        if horizon is not None and horizon > since:
            window = TimeRange(since, horizon)
            conflict = _first_run_above(self.occupancy_profile(window), total_slots)
            if conflict is not None:
                raise CapacityExceededError(
                    f"spot {self.spot_id} already holds more than {total_slots} slot(s) "
                    f"between {conflict.start.isoformat()} and {conflict.end.isoformat()}",
                    conflict=conflict,
                    peak_occupancy=self.max_occupancy_over_range(conflict),
                    total_slots=total_slots,
                )
        self.total_slots = total_slots


def _first_run_above(segments: list[OccupancySegment], limit: int) -> Optional[TimeRange]:
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    for seg in segments:
        if seg.occupancy > limit:
            if start is None:
                start = seg.range.start
            end = seg.range.end
        elif start is not None:
            break
    if start is None or end is None:
        return None
    return TimeRange(start, end)

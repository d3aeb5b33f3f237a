from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from ..domain.errors import NotFoundError
from ..domain.ledger import SlotLedger
from ..domain.repositories import ReservationRepository, SpotRepository
from ..domain.time_range import TimeRange
from ..models import ParkingSpot, PriceType, Reservation
from ..utils.time import utc_now_naive


@dataclass(frozen=True)
class SpotAvailability:
    spot: ParkingSpot
    total_slots: int
    available_slots: int
    next_free_at: Optional[datetime]


async def load_ledger(
    spot_repo: SpotRepository,
    res_repo: ReservationRepository,
    *,
    spot_id: int,
) -> SlotLedger:
    spot = await spot_repo.get(spot_id)
    if spot is None:
        raise NotFoundError("spot not found")
    rows = await res_repo.list_open_for_spots([spot.id])
    return SlotLedger.from_reservations(spot.id, spot.total_slots, rows)


async def available_slots(
    spot_repo: SpotRepository,
    res_repo: ReservationRepository,
    *,
    spot_id: int,
    time_range: TimeRange,
) -> int:
    ledger = await load_ledger(spot_repo, res_repo, spot_id=spot_id)
    return ledger.available_slots(time_range)


async def is_available(
    spot_repo: SpotRepository,
    res_repo: ReservationRepository,
    *,
    spot_id: int,
    time_range: TimeRange,
    slots_requested: int = 1,
) -> bool:
    free = await available_slots(spot_repo, res_repo, spot_id=spot_id, time_range=time_range)
    return free >= slots_requested


async def next_free_instant(
    spot_repo: SpotRepository,
    res_repo: ReservationRepository,
    *,
    spot_id: int,
    from_instant: datetime,
    slots_requested: int = 1,
) -> Optional[datetime]:
    ledger = await load_ledger(spot_repo, res_repo, spot_id=spot_id)
    return ledger.next_free_instant(from_instant, slots_requested)


async def spot_availability(
    spot_repo: SpotRepository,
    res_repo: ReservationRepository,
    *,
    spot_id: int,
    time_range: Optional[TimeRange] = None,
    slots_requested: int = 1,
    now: Optional[datetime] = None,
) -> SpotAvailability:
    """Snapshot behind the "X/Y slots available" badge of the spot detail page."""
    now = now or utc_now_naive()
    spot = await spot_repo.get(spot_id)
    if spot is None:
        raise NotFoundError("spot not found")
    rows = await res_repo.list_open_for_spots([spot.id])
    ledger = SlotLedger.from_reservations(spot.id, spot.total_slots, rows)
    return _snapshot(spot, ledger, time_range=time_range, slots_requested=slots_requested, now=now)


async def search_spots(
    spot_repo: SpotRepository,
    res_repo: ReservationRepository,
    *,
    time_range: Optional[TimeRange] = None,
    max_price: Optional[Decimal] = None,
    price_type: Optional[PriceType] = None,
    slots_requested: int = 1,
    now: Optional[datetime] = None,
) -> list[SpotAvailability]:
    """Active spots matching the filters; with a range, only those that can take the request."""
    now = now or utc_now_naive()
    spots = await spot_repo.search(max_price=max_price, price_type=price_type)
    if not spots:
        return []

    by_spot: dict[int, list[Reservation]] = defaultdict(list)
    for row in await res_repo.list_open_for_spots([spot.id for spot in spots]):
        by_spot[row.spot_id].append(row)

    results: list[SpotAvailability] = []
    for spot in spots:
        ledger = SlotLedger.from_reservations(spot.id, spot.total_slots, by_spot[spot.id])
        snapshot = _snapshot(spot, ledger, time_range=time_range, slots_requested=slots_requested, now=now)
        if time_range is not None and snapshot.available_slots < slots_requested:
            continue
        results.append(snapshot)
    return results


def _snapshot(
    spot: ParkingSpot,
    ledger: SlotLedger,
    *,
    time_range: Optional[TimeRange],
    slots_requested: int,
    now: datetime,
) -> SpotAvailability:
    if time_range is None:
        free = max(ledger.total_slots - ledger.occupancy_at(now), 0)
        start = now
    else:
        free = ledger.available_slots(time_range)
        start = time_range.start
    return SpotAvailability(
        spot=spot,
        total_slots=ledger.total_slots,
        available_slots=free,
        next_free_at=ledger.next_free_instant(start, slots_requested),
    )

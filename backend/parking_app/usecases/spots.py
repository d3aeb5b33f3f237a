from datetime import datetime
from decimal import Decimal
from typing import Optional

from ..domain.errors import NotFoundError
from ..domain.ledger import SlotLedger
from ..domain.repositories import ReservationRepository, SpotRepository
from ..models import ParkingSpot, PriceType
from ..utils.locks import spot_locks
from ..utils.time import utc_now_naive


async def create_spot(
    spot_repo: SpotRepository,
    *,
    owner_id: int,
    name: str,
    address: str,
    price: Decimal,
    price_type: PriceType,
    total_slots: int,
) -> ParkingSpot:
    if total_slots < 1:
        raise ValueError("total_slots must be >= 1")
    if price < 0:
        raise ValueError("price must not be negative")
    return await spot_repo.create(
        owner_id=owner_id,
        name=name,
        address=address,
        price=price,
        price_type=price_type,
        total_slots=total_slots,
    )


async def get_spot(spot_repo: SpotRepository, *, spot_id: int) -> ParkingSpot:
    spot = await spot_repo.get(spot_id)
    if spot is None:
        raise NotFoundError("spot not found")
    return spot


async def update_capacity(
    spot_repo: SpotRepository,
    res_repo: ReservationRepository,
    *,
    spot_id: int,
    owner_id: int,
    total_slots: int,
    now: Optional[datetime] = None,
) -> tuple[ParkingSpot, int]:
    """Change a spot's capacity. Returns the spot and its previous capacity.

    Lowering capacity below what open reservations already hold from `now`
    on is refused with CapacityExceededError.
    """
    now = now or utc_now_naive()
    async with spot_locks.hold(spot_id):
        spot = await get_owned_spot_for_update(spot_repo, spot_id=spot_id, owner_id=owner_id)
        previous = spot.total_slots
        rows = await res_repo.list_open_for_spots([spot.id])
        ledger = SlotLedger.from_reservations(spot.id, spot.total_slots, rows)
        ledger.resize(total_slots, since=now)

        spot.total_slots = ledger.total_slots
        spot.updated_at = utc_now_naive()
        saved = await spot_repo.save(spot)
    return saved, previous


async def set_spot_active(
    spot_repo: SpotRepository,
    *,
    spot_id: int,
    owner_id: int,
    is_active: bool,
) -> ParkingSpot:
    """Deactivation hides the spot and blocks new admissions; open reservations are left alone."""
    async with spot_locks.hold(spot_id):
        spot = await get_owned_spot_for_update(spot_repo, spot_id=spot_id, owner_id=owner_id)
        if spot.is_active == is_active:
            return spot
        spot.is_active = is_active
        spot.updated_at = utc_now_naive()
        return await spot_repo.save(spot)


async def get_owned_spot_for_update(spot_repo: SpotRepository, *, spot_id: int, owner_id: int) -> ParkingSpot:
    spot = await spot_repo.get_for_update(spot_id)
    if spot is None or spot.owner_id != owner_id:
        raise NotFoundError("spot not found")
    return spot

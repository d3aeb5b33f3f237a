import asyncio
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable, List, Optional

import pytest
from parking_app.models import OPEN_STATUSES, ParkingSpot, PriceType, Reservation, ReservationStatus

OWNER_ID = 1
RENTER_ID = 2
OTHER_RENTER_ID = 3

DAY = datetime(2030, 1, 15)


def at(hour: int, minute: int = 0) -> datetime:
    """Naive UTC instant on the fixed test day."""
    return DAY + timedelta(hours=hour, minutes=minute)


class FakeSpotRepo:
    def __init__(self) -> None:
        self.spots: dict[int, ParkingSpot] = {}
        self.locked: List[int] = []
        self._next_id = 1

    def add(
        self,
        *,
        total_slots: int = 1,
        owner_id: int = OWNER_ID,
        is_active: bool = True,
        price: Decimal = Decimal("2.50"),
        price_type: PriceType = PriceType.HOUR,
    ) -> ParkingSpot:
        spot = ParkingSpot(
            id=self._next_id,
            owner_id=owner_id,
            name=f"Spot {self._next_id}",
            address="1 Main St",
            price=price,
            price_type=price_type,
            total_slots=total_slots,
            is_active=is_active,
            created_at=DAY,
            updated_at=DAY,
        )
        self.spots[spot.id] = spot
        self._next_id += 1
        return spot

    async def get(self, spot_id: int) -> Optional[ParkingSpot]:
        return self.spots.get(spot_id)

    async def get_for_update(self, spot_id: int) -> Optional[ParkingSpot]:
        self.locked.append(spot_id)
        return self.spots.get(spot_id)

    async def create(
        self,
        *,
        owner_id: int,
        name: str,
        address: str,
        price: Decimal,
        price_type: PriceType,
        total_slots: int,
    ) -> ParkingSpot:
        spot = self.add(total_slots=total_slots, owner_id=owner_id, price=price, price_type=price_type)
        spot.name = name
        spot.address = address
        return spot

    async def save(self, spot: ParkingSpot) -> ParkingSpot:
        self.spots[spot.id] = spot
        return spot

    async def search(
        self,
        *,
        max_price: Optional[Decimal] = None,
        price_type: Optional[PriceType] = None,
    ) -> List[ParkingSpot]:
        return [
            spot
            for spot in self.spots.values()
            if spot.is_active
            and (max_price is None or spot.price <= max_price)
            and (price_type is None or spot.price_type == price_type)
        ]


class FakeReservationRepo:
    """In-memory reservations. With `interleave=True` every read and write yields to the event loop."""

    def __init__(self, *, interleave: bool = False) -> None:
        self.reservations: dict[int, Reservation] = {}
        self.saved: List[int] = []
        self.interleave = interleave
        self._next_id = 1

    async def _yield(self) -> None:
        if self.interleave:
            await asyncio.sleep(0)

    def add(
        self,
        *,
        spot_id: int,
        starts_at: datetime,
        ends_at: datetime,
        renter_id: int = RENTER_ID,
        slots_requested: int = 1,
        status: ReservationStatus = ReservationStatus.PENDING,
        pin: Optional[str] = None,
    ) -> Reservation:
        reservation = Reservation(
            id=self._next_id,
            spot_id=spot_id,
            renter_id=renter_id,
            starts_at=starts_at,
            ends_at=ends_at,
            slots_requested=slots_requested,
            status=status,
            total_cost=Decimal("0.00"),
            qr_code=f"qr-{self._next_id}",
            pin=pin or str(1000 + self._next_id),
            version=1,
            checked_in_at=None,
            checked_out_at=None,
            created_at=DAY,
            updated_at=DAY,
        )
        self.reservations[reservation.id] = reservation
        self._next_id += 1
        return reservation

    async def get_for_update(self, reservation_id: int) -> Optional[Reservation]:
        return self.reservations.get(reservation_id)

    async def get_for_user(self, reservation_id: int, user_id: int) -> Optional[Reservation]:
        reservation = self.reservations.get(reservation_id)
        if reservation is None or reservation.renter_id != user_id:
            return None
        return reservation

    async def find_open_by_code(self, spot_id: int, code: str) -> Optional[Reservation]:
        for reservation in sorted(self.reservations.values(), key=lambda r: r.starts_at):
            if (
                reservation.spot_id == spot_id
                and reservation.status in OPEN_STATUSES
                and code in (reservation.qr_code, reservation.pin)
            ):
                return reservation
        return None

    async def list_open_for_spots(self, spot_ids: Iterable[int]) -> List[Reservation]:
        await self._yield()
        wanted = set(spot_ids)
        return [r for r in self.reservations.values() if r.spot_id in wanted and r.status in OPEN_STATUSES]

    async def list_by_user(self, user_id: int, status: Optional[ReservationStatus] = None) -> List[Reservation]:
        return [
            r
            for r in self.reservations.values()
            if r.renter_id == user_id and (status is None or r.status == status)
        ]

    async def list_by_spot(self, spot_id: int) -> List[Reservation]:
        return [r for r in self.reservations.values() if r.spot_id == spot_id]

    async def list_due_for_transition(
        self,
        now: datetime,
        *,
        spot_id: Optional[int] = None,
        renter_id: Optional[int] = None,
    ) -> List[Reservation]:
        return [
            r
            for r in self.reservations.values()
            if (spot_id is None or r.spot_id == spot_id)
            and (renter_id is None or r.renter_id == renter_id)
            and (
                (r.status == ReservationStatus.PENDING and r.starts_at <= now)
                or (r.status in OPEN_STATUSES and r.ends_at <= now)
            )
        ]

    async def create(
        self,
        *,
        spot_id: int,
        renter_id: int,
        starts_at: datetime,
        ends_at: datetime,
        slots_requested: int,
        total_cost: Decimal,
        qr_code: str,
        pin: str,
        status: ReservationStatus,
    ) -> Reservation:
        await self._yield()
        reservation = self.add(
            spot_id=spot_id,
            renter_id=renter_id,
            starts_at=starts_at,
            ends_at=ends_at,
            slots_requested=slots_requested,
            status=status,
            pin=pin,
        )
        reservation.total_cost = total_cost
        reservation.qr_code = qr_code
        return reservation

    async def save(self, reservation: Reservation) -> Reservation:
        self.saved.append(reservation.id)
        self.reservations[reservation.id] = reservation
        return reservation


@pytest.fixture
def spot_repo() -> FakeSpotRepo:
    return FakeSpotRepo()


@pytest.fixture
def res_repo() -> FakeReservationRepo:
    return FakeReservationRepo()

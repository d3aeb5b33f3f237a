from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Iterable, Protocol

from ..models import ParkingSpot, PriceType, Reservation, ReservationStatus


class SpotRepository(Protocol):
    async def get(self, spot_id: int) -> ParkingSpot | None: ...

    async def get_for_update(self, spot_id: int) -> ParkingSpot | None: ...

    async def create(
        self,
        *,
        owner_id: int,
        name: str,
        address: str,
        price: Decimal,
        price_type: PriceType,
        total_slots: int,
    ) -> ParkingSpot: ...

    async def save(self, spot: ParkingSpot) -> ParkingSpot: ...

    async def search(
        self,
        *,
        max_price: Decimal | None = None,
        price_type: PriceType | None = None,
    ) -> list[ParkingSpot]: ...


class ReservationRepository(Protocol):
    async def get_for_update(self, reservation_id: int) -> Reservation | None: ...

    async def get_for_user(self, reservation_id: int, user_id: int) -> Reservation | None: ...

    async def find_open_by_code(self, spot_id: int, code: str) -> Reservation | None: ...

    async def list_open_for_spots(self, spot_ids: Iterable[int]) -> list[Reservation]: ...

    async def list_by_user(
        self,
        user_id: int,
        status: ReservationStatus | None = None,
    ) -> list[Reservation]: ...

    async def list_by_spot(self, spot_id: int) -> list[Reservation]: ...

    async def list_due_for_transition(
        self,
        now: datetime,
        *,
        spot_id: int | None = None,
        renter_id: int | None = None,
    ) -> list[Reservation]: ...

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
    ) -> Reservation: ...

    async def save(self, reservation: Reservation) -> Reservation: ...

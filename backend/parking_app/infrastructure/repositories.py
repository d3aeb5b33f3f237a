from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional

from sqlalchemy import Select, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..domain.repositories import ReservationRepository, SpotRepository
from ..models import OPEN_STATUSES, ParkingSpot, PriceType, Reservation, ReservationStatus
from ..utils.time import utc_now_naive


class SqlAlchemySpotRepository(SpotRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, spot_id: int) -> ParkingSpot | None:
        result = await self.session.scalar(select(ParkingSpot).where(ParkingSpot.id == spot_id))
        return result if isinstance(result, ParkingSpot) else None

    async def get_for_update(self, spot_id: int) -> ParkingSpot | None:
        # Row lock on the spot serializes admissions per spot across processes.
        stmt = (
            select(ParkingSpot)
            .where(ParkingSpot.id == spot_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.session.scalar(stmt)
        return result if isinstance(result, ParkingSpot) else None

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
        now = utc_now_naive()
        spot = ParkingSpot(
            owner_id=owner_id,
            name=name,
            address=address,
            price=price,
            price_type=price_type,
            total_slots=total_slots,
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        self.session.add(spot)
        await self.session.flush()
        return spot

    async def save(self, spot: ParkingSpot) -> ParkingSpot:
        self.session.add(spot)
        await self.session.flush()
        return spot

    async def search(
        self,
        *,
        max_price: Decimal | None = None,
        price_type: PriceType | None = None,
    ) -> List[ParkingSpot]:
        stmt: Select[tuple[ParkingSpot]] = (
            select(ParkingSpot).where(ParkingSpot.is_active.is_(True)).order_by(ParkingSpot.id)
        )
        if max_price is not None:
            stmt = stmt.where(ParkingSpot.price <= max_price)
        if price_type is not None:
            stmt = stmt.where(ParkingSpot.price_type == price_type)
        return list((await self.session.scalars(stmt)).all())


class SqlAlchemyReservationRepository(ReservationRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_for_update(self, reservation_id: int) -> Optional[Reservation]:
        stmt = (
            select(Reservation)
            .where(Reservation.id == reservation_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.session.scalar(stmt)
        return result if isinstance(result, Reservation) else None

    async def get_for_user(self, reservation_id: int, user_id: int) -> Optional[Reservation]:
        stmt = select(Reservation).where(Reservation.id == reservation_id, Reservation.renter_id == user_id)
        result = await self.session.scalar(stmt)
        return result if isinstance(result, Reservation) else None

    async def find_open_by_code(self, spot_id: int, code: str) -> Optional[Reservation]:
        stmt = (
            select(Reservation)
            .where(
                Reservation.spot_id == spot_id,
                Reservation.status.in_(OPEN_STATUSES),
                or_(Reservation.qr_code == code, Reservation.pin == code),
            )
            .order_by(Reservation.starts_at)
            .with_for_update()
        )
        result = await self.session.scalar(stmt)
        return result if isinstance(result, Reservation) else None

    async def list_open_for_spots(self, spot_ids: Iterable[int]) -> List[Reservation]:
        ids = list(spot_ids)
        if not ids:
            return []
        stmt = select(Reservation).where(
            Reservation.spot_id.in_(ids),
            Reservation.status.in_(OPEN_STATUSES),
        )
        return list((await self.session.scalars(stmt)).all())

    async def list_by_user(
        self,
        user_id: int,
        status: ReservationStatus | None = None,
    ) -> List[Reservation]:
        stmt = select(Reservation).where(Reservation.renter_id == user_id).order_by(Reservation.starts_at.desc())
        if status is not None:
            stmt = stmt.where(Reservation.status == status)
        return list((await self.session.scalars(stmt)).all())

    async def list_by_spot(self, spot_id: int) -> List[Reservation]:
        stmt = select(Reservation).where(Reservation.spot_id == spot_id).order_by(Reservation.starts_at)
        return list((await self.session.scalars(stmt)).all())

    async def list_due_for_transition(
        self,
        now: datetime,
        *,
        spot_id: int | None = None,
        renter_id: int | None = None,
    ) -> List[Reservation]:
        stmt = (
            select(Reservation)
            .where(
                or_(
                    (Reservation.status == ReservationStatus.PENDING) & (Reservation.starts_at <= now),
                    Reservation.status.in_(OPEN_STATUSES) & (Reservation.ends_at <= now),
                )
            )
            .with_for_update(skip_locked=True)
        )
        if spot_id is not None:
            stmt = stmt.where(Reservation.spot_id == spot_id)
        if renter_id is not None:
            stmt = stmt.where(Reservation.renter_id == renter_id)
        return list((await self.session.scalars(stmt)).all())

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
        now = utc_now_naive()
        reservation = Reservation(
            spot_id=spot_id,
            renter_id=renter_id,
            starts_at=starts_at,
            ends_at=ends_at,
            slots_requested=slots_requested,
            total_cost=total_cost,
            qr_code=qr_code,
            pin=pin,
            status=status,
            version=1,
            created_at=now,
            updated_at=now,
        )
        self.session.add(reservation)
        await self.session.flush()
        return reservation

    async def save(self, reservation: Reservation) -> Reservation:
        self.session.add(reservation)
        await self.session.flush()
        return reservation

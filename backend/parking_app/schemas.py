from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field, field_serializer

from .models import ParkingSpot, PriceType, Reservation, ReservationStatus
from .usecases.availability import SpotAvailability
from .utils.time import display_tz, utc_naive_to_local


def _local(dt: Optional[datetime]) -> Optional[datetime]:
    return utc_naive_to_local(dt) if dt is not None else None


class SpotCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    address: str = Field(min_length=1, max_length=512)
    price: Decimal = Field(ge=0, max_digits=10, decimal_places=2)
    price_type: PriceType = PriceType.HOUR
    total_slots: int = Field(ge=1)


class SpotCapacityUpdate(BaseModel):
    total_slots: int = Field(ge=1)


class SpotRead(BaseModel):
    spot_id: int
    owner_id: int
    name: str
    address: str
    price: Decimal
    price_type: PriceType
    total_slots: int
    is_active: bool

    @classmethod
    def from_db(cls, *, spot: ParkingSpot) -> "SpotRead":
        return cls(
            spot_id=spot.id,
            owner_id=spot.owner_id,
            name=spot.name,
            address=spot.address,
            price=spot.price,
            price_type=spot.price_type,
            total_slots=spot.total_slots,
            is_active=spot.is_active,
        )


class SpotAvailabilityRead(BaseModel):
    spot: SpotRead
    total_slots: int
    available_slots: int
    next_free_at: Optional[datetime]
    summary: str

    @field_serializer("next_free_at")
    def _ser_datetime(self, dt: Optional[datetime]) -> Optional[str]:
        return dt.astimezone(display_tz()).isoformat() if dt is not None else None

    @classmethod
    def from_snapshot(cls, snapshot: SpotAvailability) -> "SpotAvailabilityRead":
        return cls(
            spot=SpotRead.from_db(spot=snapshot.spot),
            total_slots=snapshot.total_slots,
            available_slots=snapshot.available_slots,
            next_free_at=_local(snapshot.next_free_at),
            summary=f"{snapshot.available_slots}/{snapshot.total_slots} slots available",
        )


class NextFreeRead(BaseModel):
    spot_id: int
    slots_requested: int
    next_free_at: Optional[datetime]

    @field_serializer("next_free_at")
    def _ser_datetime(self, dt: Optional[datetime]) -> Optional[str]:
        return dt.astimezone(display_tz()).isoformat() if dt is not None else None


class ReservationCreate(BaseModel):
    spot_id: int = Field(ge=1)
    starts_at: datetime
    ends_at: datetime
    slots_requested: int = Field(default=1, ge=1)


class ReservationExtend(BaseModel):
    ends_at: datetime
    version: Optional[int] = Field(default=None, ge=1)


class ReservationCancel(BaseModel):
    version: Optional[int] = Field(default=None, ge=1)


class CheckInRequest(BaseModel):
    code: str = Field(min_length=4, max_length=64)


class ReservationRead(BaseModel):
    reservation_id: int
    spot_id: int
    renter_id: int
    starts_at: datetime
    ends_at: datetime
    slots_requested: int
    status: ReservationStatus
    total_cost: Decimal
    version: int
    checked_in_at: Optional[datetime] = None
    checked_out_at: Optional[datetime] = None
    qr_code: Optional[str] = None
    pin: Optional[str] = None

    @field_serializer("starts_at", "ends_at", "checked_in_at", "checked_out_at")
    def _ser_datetime(self, dt: Optional[datetime]) -> Optional[str]:
        return dt.astimezone(display_tz()).isoformat() if dt is not None else None

    @classmethod
    def from_db(cls, *, reservation: Reservation, include_codes: bool = True) -> "ReservationRead":
        return cls(
            reservation_id=reservation.id,
            spot_id=reservation.spot_id,
            renter_id=reservation.renter_id,
            starts_at=utc_naive_to_local(reservation.starts_at),
            ends_at=utc_naive_to_local(reservation.ends_at),
            slots_requested=reservation.slots_requested,
            status=reservation.status,
            total_cost=reservation.total_cost,
            version=reservation.version,
            checked_in_at=_local(reservation.checked_in_at),
            checked_out_at=_local(reservation.checked_out_at),
            qr_code=reservation.qr_code if include_codes else None,
            pin=reservation.pin if include_codes else None,
        )

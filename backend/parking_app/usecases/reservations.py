from __future__ import annotations

import secrets
from datetime import datetime
from typing import Optional

from ..domain.errors import (
    InvalidRangeError,
    InvalidStateError,
    NotFoundError,
    SpotInactiveError,
    VersionConflictError,
)
from ..domain.ledger import SlotLedger
from ..domain.pricing import compute_total_cost
from ..domain.repositories import ReservationRepository, SpotRepository
from ..domain.services import (
    SpotSnapshot,
    clock_target,
    ensure_open,
    ensure_transition,
    validate_admission,
)
from ..domain.time_range import TimeRange
from ..models import OPEN_STATUSES, ParkingSpot, Reservation, ReservationStatus
from ..utils.locks import spot_locks
from ..utils.time import utc_now_naive
from .spots import get_owned_spot_for_update

_PIN_SPACE = 9000


async def request_reservation(
    spot_repo: SpotRepository,
    res_repo: ReservationRepository,
    *,
    spot_id: int,
    renter_id: int,
    time_range: TimeRange,
    slots_requested: int = 1,
    now: Optional[datetime] = None,
) -> tuple[Reservation, ParkingSpot]:
    now = now or utc_now_naive()
    async with spot_locks.hold(spot_id):
        spot = await spot_repo.get_for_update(spot_id)
        if spot is None:
            raise NotFoundError("spot not found")
        validate_admission(
            SpotSnapshot(spot_id=spot.id, is_active=spot.is_active, total_slots=spot.total_slots),
            time_range=time_range,
            slots_requested=slots_requested,
            now=now,
        )

        open_rows = await res_repo.list_open_for_spots([spot.id])
        ledger = SlotLedger.from_reservations(spot.id, spot.total_slots, open_rows)
        ledger.check_capacity(time_range, slots_requested)

        reservation = await res_repo.create(
            spot_id=spot.id,
            renter_id=renter_id,
            starts_at=time_range.start,
            ends_at=time_range.end,
            slots_requested=slots_requested,
            total_cost=compute_total_cost(time_range, price=spot.price, price_type=spot.price_type),
            qr_code=_new_qr_code(),
            pin=_new_pin({row.pin for row in open_rows}),
            status=ReservationStatus.PENDING,
        )
    return reservation, spot


async def request_extension(
    spot_repo: SpotRepository,
    res_repo: ReservationRepository,
    *,
    reservation_id: int,
    renter_id: int,
    new_end: datetime,
    version: int,
    now: Optional[datetime] = None,
) -> tuple[Reservation, ParkingSpot, datetime]:
    """Grow a reservation's end. Returns the updated row, its spot and the previous end."""
    now = now or utc_now_naive()
    owned = await res_repo.get_for_user(reservation_id, renter_id)
    if owned is None:
        raise NotFoundError("reservation not found")

    async with spot_locks.hold(owned.spot_id):
        spot = await spot_repo.get_for_update(owned.spot_id)
        reservation = await res_repo.get_for_update(reservation_id)
        if spot is None or reservation is None:
            raise NotFoundError("reservation not found")
        current = TimeRange(reservation.starts_at, reservation.ends_at)
        ensure_open(reservation.status)
        _ensure_not_elapsed(reservation, now)
        if reservation.version != version:
            raise VersionConflictError("version mismatch")
        if new_end <= current.end:
            raise InvalidRangeError("new end must be later than the current end")
        if not spot.is_active:
            raise SpotInactiveError(f"spot {spot.id} is not accepting reservations")

        open_rows = await res_repo.list_open_for_spots([spot.id])
        ledger = SlotLedger.from_reservations(spot.id, spot.total_slots, open_rows)
        # The reservation already owns [start, end); only the new tail needs room.
        ledger.check_capacity(
            TimeRange(current.end, new_end),
            reservation.slots_requested,
            exclude=reservation.id,
        )
        extended = ledger.replace_range(reservation.id, current.with_end(new_end)).range

        reservation.ends_at = extended.end
        reservation.total_cost = compute_total_cost(extended, price=spot.price, price_type=spot.price_type)
        _bump(reservation)
        updated = await res_repo.save(reservation)
    return updated, spot, current.end


async def cancel_reservation(
    res_repo: ReservationRepository,
    *,
    reservation_id: int,
    renter_id: int,
    version: int,
    now: Optional[datetime] = None,
) -> tuple[Reservation, ReservationStatus]:
    now = now or utc_now_naive()
    owned = await res_repo.get_for_user(reservation_id, renter_id)
    if owned is None:
        raise NotFoundError("reservation not found")

    async with spot_locks.hold(owned.spot_id):
        reservation = await res_repo.get_for_update(reservation_id)
        if reservation is None:
            raise NotFoundError("reservation not found")
        status_from = reservation.status
        ensure_transition(status_from, ReservationStatus.CANCELLED)
        _ensure_not_elapsed(reservation, now)
        if reservation.version != version:
            raise VersionConflictError("version mismatch")

        reservation.status = ReservationStatus.CANCELLED
        _bump(reservation)
        updated = await res_repo.save(reservation)
    return updated, status_from


async def check_in(
    spot_repo: SpotRepository,
    res_repo: ReservationRepository,
    *,
    spot_id: int,
    owner_id: int,
    code: str,
    now: Optional[datetime] = None,
) -> tuple[Reservation, ReservationStatus]:
    """Owner-side check-in with the renter's QR token or 4-digit PIN."""
    now = now or utc_now_naive()
    async with spot_locks.hold(spot_id):
        spot = await get_owned_spot_for_update(spot_repo, spot_id=spot_id, owner_id=owner_id)
        reservation = await res_repo.find_open_by_code(spot.id, code.strip())
        if reservation is None:
            raise NotFoundError("no open reservation matches this code")
        if now >= reservation.ends_at:
            raise InvalidStateError("reservation has already ended")
        status_from = reservation.status
        if status_from == ReservationStatus.ACTIVE and reservation.checked_in_at is not None:
            raise InvalidStateError("reservation is already checked in")
        if status_from != ReservationStatus.ACTIVE:
            ensure_transition(status_from, ReservationStatus.ACTIVE)

        reservation.status = ReservationStatus.ACTIVE
        reservation.checked_in_at = now
        _bump(reservation)
        updated = await res_repo.save(reservation)
    return updated, status_from


async def check_out(
    spot_repo: SpotRepository,
    res_repo: ReservationRepository,
    *,
    spot_id: int,
    reservation_id: int,
    owner_id: int,
    now: Optional[datetime] = None,
) -> tuple[Reservation, ReservationStatus]:
    now = now or utc_now_naive()
    async with spot_locks.hold(spot_id):
        spot = await get_owned_spot_for_update(spot_repo, spot_id=spot_id, owner_id=owner_id)
        reservation = await res_repo.get_for_update(reservation_id)
        if reservation is None or reservation.spot_id != spot.id:
            raise NotFoundError("reservation not found")
        status_from = reservation.status
        # The range having started counts as active even if no sweep has run yet.
        effective = clock_target(status_from, TimeRange(reservation.starts_at, reservation.ends_at), now)
        if effective == ReservationStatus.COMPLETED and status_from in OPEN_STATUSES:
            effective = ReservationStatus.ACTIVE
        ensure_transition(effective, ReservationStatus.COMPLETED)

        reservation.status = ReservationStatus.COMPLETED
        reservation.checked_out_at = now
        _bump(reservation)
        updated = await res_repo.save(reservation)
    return updated, status_from


async def transition_on_clock(
    res_repo: ReservationRepository,
    *,
    now: datetime,
    spot_id: Optional[int] = None,
    renter_id: Optional[int] = None,
) -> list[tuple[Reservation, ReservationStatus]]:
    """
    Move reservations whose range boundaries have been crossed by `now`.
    A pending reservation whose whole range lies in the past goes straight to completed.
    Running it again with the same `now` changes nothing.
    """
    changed: list[tuple[Reservation, ReservationStatus]] = []
    for reservation in await res_repo.list_due_for_transition(now, spot_id=spot_id, renter_id=renter_id):
        target = clock_target(reservation.status, TimeRange(reservation.starts_at, reservation.ends_at), now)
        if target == reservation.status:
            continue
        status_from = reservation.status
        reservation.status = target
        _bump(reservation)
        await res_repo.save(reservation)
        changed.append((reservation, status_from))
    return changed


async def list_user_reservations(
    res_repo: ReservationRepository,
    *,
    user_id: int,
    status: Optional[ReservationStatus] = None,
) -> list[Reservation]:
    return await res_repo.list_by_user(user_id, status)


async def get_user_reservation(
    res_repo: ReservationRepository,
    *,
    reservation_id: int,
    user_id: int,
) -> Reservation | None:
    return await res_repo.get_for_user(reservation_id, user_id)


async def list_spot_reservations(
    spot_repo: SpotRepository,
    res_repo: ReservationRepository,
    *,
    spot_id: int,
    owner_id: int,
) -> list[Reservation]:
    spot = await spot_repo.get(spot_id)
    if spot is None or spot.owner_id != owner_id:
        raise NotFoundError("spot not found")
    return await res_repo.list_by_spot(spot.id)


def _ensure_not_elapsed(reservation: Reservation, now: datetime) -> None:
    elapsed = clock_target(reservation.status, TimeRange(reservation.starts_at, reservation.ends_at), now)
    if elapsed == ReservationStatus.COMPLETED:
        raise InvalidStateError(f"reservation is {reservation.status} and its range has elapsed")


def _bump(reservation: Reservation) -> None:
    reservation.version += 1
    reservation.updated_at = utc_now_naive()


def _new_qr_code() -> str:
    return secrets.token_urlsafe(24)


def _new_pin(in_use: set[str]) -> str:
    if len(in_use) >= _PIN_SPACE:
        raise RuntimeError("no free PIN left for this spot")
    while True:
        pin = str(1000 + secrets.randbelow(_PIN_SPACE))
        if pin not in in_use:
            return pin

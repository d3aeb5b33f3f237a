from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..deps import get_current_user_id, get_session
from ..domain.errors import DomainError
from ..infrastructure.repositories import SqlAlchemyReservationRepository, SqlAlchemySpotRepository
from ..models import PriceType
from ..schemas import (
    CheckInRequest,
    NextFreeRead,
    ReservationRead,
    SpotAvailabilityRead,
    SpotCapacityUpdate,
    SpotCreate,
    SpotRead,
)
from ..usecases import availability as availability_usecase
from ..usecases import reservations as reservation_usecase
from ..usecases import spots as spot_usecase
from ..utils.time import to_utc_naive, utc_naive_to_local, utc_now_naive
from .common import audit, clock_change_audits, parse_optional_range, require_aware, to_http_exception

router = APIRouter(prefix="/spots", tags=["spots"], dependencies=[Depends(get_current_user_id)])


@router.post("", response_model=SpotRead, status_code=status.HTTP_201_CREATED)
async def create_spot(
    payload: SpotCreate,
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
) -> SpotRead:
    spot_repo = SqlAlchemySpotRepository(session)
    async with session.begin():
        try:
            spot = await spot_usecase.create_spot(
                spot_repo,
                owner_id=user_id,
                name=payload.name,
                address=payload.address,
                price=payload.price,
                price_type=payload.price_type,
                total_slots=payload.total_slots,
            )
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        audit(
            action="spot.created",
            initiator="owner",
            spot_id=spot.id,
            user_id=user_id,
            slots=spot.total_slots,
        )
    return SpotRead.from_db(spot=spot)


@router.get("", response_model=List[SpotAvailabilityRead])
async def search_spots(
    start: Optional[datetime] = Query(default=None, description="start of the wanted window (ISO 8601 with offset)"),
    end: Optional[datetime] = Query(default=None, description="end of the wanted window (ISO 8601 with offset)"),
    max_price: Optional[Decimal] = Query(default=None, ge=0),
    price_type: Optional[PriceType] = Query(default=None),
    slots: int = Query(default=1, ge=1),
    session: AsyncSession = Depends(get_session),
) -> list[SpotAvailabilityRead]:
    time_range = parse_optional_range(start, end)
    rows = await availability_usecase.search_spots(
        SqlAlchemySpotRepository(session),
        SqlAlchemyReservationRepository(session),
        time_range=time_range,
        max_price=max_price,
        price_type=price_type,
        slots_requested=slots,
    )
    return [SpotAvailabilityRead.from_snapshot(row) for row in rows]


@router.get("/{spot_id}", response_model=SpotRead)
async def get_spot(
    spot_id: int = Path(..., ge=1),
    session: AsyncSession = Depends(get_session),
) -> SpotRead:
    try:
        spot = await spot_usecase.get_spot(SqlAlchemySpotRepository(session), spot_id=spot_id)
    except DomainError as exc:
        raise to_http_exception(exc) from exc
    return SpotRead.from_db(spot=spot)


@router.get("/{spot_id}/availability", response_model=SpotAvailabilityRead)
async def get_availability(
    spot_id: int = Path(..., ge=1),
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    slots: int = Query(default=1, ge=1),
    session: AsyncSession = Depends(get_session),
) -> SpotAvailabilityRead:
    time_range = parse_optional_range(start, end)
    try:
        snapshot = await availability_usecase.spot_availability(
            SqlAlchemySpotRepository(session),
            SqlAlchemyReservationRepository(session),
            spot_id=spot_id,
            time_range=time_range,
            slots_requested=slots,
        )
    except DomainError as exc:
        raise to_http_exception(exc) from exc
    return SpotAvailabilityRead.from_snapshot(snapshot)


@router.get("/{spot_id}/next-free", response_model=NextFreeRead)
async def get_next_free(
    spot_id: int = Path(..., ge=1),
    from_: Optional[datetime] = Query(default=None, alias="from"),
    slots: int = Query(default=1, ge=1),
    session: AsyncSession = Depends(get_session),
) -> NextFreeRead:
    require_aware(from_)
    from_instant = to_utc_naive(from_) if from_ is not None else utc_now_naive()
    try:
        found = await availability_usecase.next_free_instant(
            SqlAlchemySpotRepository(session),
            SqlAlchemyReservationRepository(session),
            spot_id=spot_id,
            from_instant=from_instant,
            slots_requested=slots,
        )
    except DomainError as exc:
        raise to_http_exception(exc) from exc
    return NextFreeRead(
        spot_id=spot_id,
        slots_requested=slots,
        next_free_at=utc_naive_to_local(found) if found is not None else None,
    )


@router.patch("/{spot_id}/capacity", response_model=SpotRead)
async def update_capacity(
    payload: SpotCapacityUpdate,
    spot_id: int = Path(..., ge=1),
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
) -> SpotRead:
    spot_repo = SqlAlchemySpotRepository(session)
    res_repo = SqlAlchemyReservationRepository(session)
    async with session.begin():
        try:
            spot, previous = await spot_usecase.update_capacity(
                spot_repo,
                res_repo,
                spot_id=spot_id,
                owner_id=user_id,
                total_slots=payload.total_slots,
            )
        except DomainError as exc:
            raise to_http_exception(exc) from exc
        audit(
            action="spot.capacity_changed",
            initiator="owner",
            spot_id=spot.id,
            user_id=user_id,
            slots=spot.total_slots,
            extra={"total_slots_from": previous},
        )
    return SpotRead.from_db(spot=spot)


@router.post("/{spot_id}/deactivate", response_model=SpotRead)
async def deactivate_spot(
    spot_id: int = Path(..., ge=1),
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
) -> SpotRead:
    return await _set_active(session, spot_id=spot_id, owner_id=user_id, is_active=False)


@router.post("/{spot_id}/activate", response_model=SpotRead)
async def activate_spot(
    spot_id: int = Path(..., ge=1),
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
) -> SpotRead:
    return await _set_active(session, spot_id=spot_id, owner_id=user_id, is_active=True)


@router.get("/{spot_id}/reservations", response_model=List[ReservationRead])
async def list_spot_reservations(
    spot_id: int = Path(..., ge=1),
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
) -> list[ReservationRead]:
    spot_repo = SqlAlchemySpotRepository(session)
    res_repo = SqlAlchemyReservationRepository(session)
    async with session.begin():
        try:
            rows = await reservation_usecase.list_spot_reservations(
                spot_repo, res_repo, spot_id=spot_id, owner_id=user_id
            )
        except DomainError as exc:
            raise to_http_exception(exc) from exc
        changes = await reservation_usecase.transition_on_clock(res_repo, now=utc_now_naive(), spot_id=spot_id)
        for fields in clock_change_audits(changes):
            audit(**fields)
    return [ReservationRead.from_db(reservation=res, include_codes=False) for res in rows]


@router.post("/{spot_id}/check-in", response_model=ReservationRead)
async def check_in(
    payload: CheckInRequest,
    spot_id: int = Path(..., ge=1),
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
) -> ReservationRead:
    spot_repo = SqlAlchemySpotRepository(session)
    res_repo = SqlAlchemyReservationRepository(session)
    async with session.begin():
        try:
            updated, status_from = await reservation_usecase.check_in(
                spot_repo,
                res_repo,
                spot_id=spot_id,
                owner_id=user_id,
                code=payload.code,
            )
        except DomainError as exc:
            raise to_http_exception(exc) from exc
        audit(
            action="reservation.checked_in",
            initiator="owner",
            reservation_id=updated.id,
            spot_id=spot_id,
            user_id=updated.renter_id,
            slots=updated.slots_requested,
            status_from=status_from,
            status_to=updated.status,
            version=updated.version,
        )
    return ReservationRead.from_db(reservation=updated, include_codes=False)


@router.post("/{spot_id}/reservations/{reservation_id}/check-out", response_model=ReservationRead)
async def check_out(
    spot_id: int = Path(..., ge=1),
    reservation_id: int = Path(..., ge=1),
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
) -> ReservationRead:
    spot_repo = SqlAlchemySpotRepository(session)
    res_repo = SqlAlchemyReservationRepository(session)
    async with session.begin():
        try:
            updated, status_from = await reservation_usecase.check_out(
                spot_repo,
                res_repo,
                spot_id=spot_id,
                reservation_id=reservation_id,
                owner_id=user_id,
            )
        except DomainError as exc:
            raise to_http_exception(exc) from exc
        audit(
            action="reservation.checked_out",
            initiator="owner",
            reservation_id=updated.id,
            spot_id=spot_id,
            user_id=updated.renter_id,
            slots=updated.slots_requested,
            status_from=status_from,
            status_to=updated.status,
            version=updated.version,
        )
    return ReservationRead.from_db(reservation=updated, include_codes=False)


async def _set_active(session: AsyncSession, *, spot_id: int, owner_id: int, is_active: bool) -> SpotRead:
    spot_repo = SqlAlchemySpotRepository(session)
    async with session.begin():
        try:
            spot = await spot_usecase.set_spot_active(
                spot_repo, spot_id=spot_id, owner_id=owner_id, is_active=is_active
            )
        except DomainError as exc:
            raise to_http_exception(exc) from exc
        audit(
            action="spot.activated" if is_active else "spot.deactivated",
            initiator="owner",
            spot_id=spot.id,
            user_id=owner_id,
        )
    return SpotRead.from_db(spot=spot)

import re
from typing import Any, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..deps import get_current_user_id, get_session
from ..domain.errors import DomainError
from ..infrastructure.repositories import SqlAlchemyReservationRepository, SqlAlchemySpotRepository
from ..models import ReservationStatus
from ..schemas import ReservationCancel, ReservationCreate, ReservationExtend, ReservationRead
from ..usecases import reservations as reservation_usecase
from ..utils.time import to_utc_naive, utc_now_naive
from .common import audit, clock_change_audits, parse_range, require_aware, to_http_exception

router = APIRouter(prefix="", tags=["reservations"])

_IF_MATCH = re.compile(r'^(?:W/)?"?(\d+)"?$')


def _extract_version(if_match: Optional[str], payload: Optional[Any]) -> int:
    """If-Match wins over the body's `version`; one of them is required."""
    if if_match is not None:
        match = _IF_MATCH.match(if_match.strip())
        if match is None or int(match.group(1)) < 1:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid If-Match header")
        return int(match.group(1))
    version = getattr(payload, "version", None)
    if version is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="version required (If-Match or body)")
    if version < 1:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="version must be >= 1")
    return int(version)


@router.post("/reservations", response_model=ReservationRead, status_code=status.HTTP_201_CREATED)
async def create_reservation(
    payload: ReservationCreate,
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
) -> ReservationRead:
    time_range = parse_range(payload.starts_at, payload.ends_at)
    spot_repo = SqlAlchemySpotRepository(session)
    res_repo = SqlAlchemyReservationRepository(session)
    async with session.begin():
        try:
            reservation, spot = await reservation_usecase.request_reservation(
                spot_repo,
                res_repo,
                spot_id=payload.spot_id,
                renter_id=user_id,
                time_range=time_range,
                slots_requested=payload.slots_requested,
            )
        except DomainError as exc:
            raise to_http_exception(exc) from exc
        audit(
            action="reservation.created",
            initiator="renter",
            reservation_id=reservation.id,
            spot_id=spot.id,
            user_id=user_id,
            slots=reservation.slots_requested,
            status_from=None,
            status_to=reservation.status,
            version=reservation.version,
            extra={"starts_at": reservation.starts_at, "ends_at": reservation.ends_at},
        )

    return ReservationRead.from_db(reservation=reservation)


@router.get("/me/reservations", response_model=List[ReservationRead])
async def list_my_reservations(
    status_filter: Optional[ReservationStatus] = Query(default=None, alias="status"),
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
) -> list[ReservationRead]:
    res_repo = SqlAlchemyReservationRepository(session)
    async with session.begin():
        changes = await reservation_usecase.transition_on_clock(res_repo, now=utc_now_naive(), renter_id=user_id)
        for fields in clock_change_audits(changes):
            audit(**fields)
        rows = await reservation_usecase.list_user_reservations(res_repo, user_id=user_id, status=status_filter)
    return [ReservationRead.from_db(reservation=res) for res in rows]


@router.get("/me/reservations/{reservation_id}", response_model=ReservationRead)
async def get_my_reservation(
    reservation_id: int = Path(..., ge=1),
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
) -> ReservationRead:
    res_repo = SqlAlchemyReservationRepository(session)
    async with session.begin():
        changes = await reservation_usecase.transition_on_clock(res_repo, now=utc_now_naive(), renter_id=user_id)
        for fields in clock_change_audits(changes):
            audit(**fields)
        reservation = await reservation_usecase.get_user_reservation(
            res_repo, reservation_id=reservation_id, user_id=user_id
        )
    if reservation is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="reservation not found")
    return ReservationRead.from_db(reservation=reservation)


@router.post("/me/reservations/{reservation_id}/extend", response_model=ReservationRead)
async def extend_reservation(
    payload: ReservationExtend,
    reservation_id: int = Path(..., ge=1),
    if_match: Optional[str] = Header(default=None, alias="If-Match"),
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
) -> ReservationRead:
    require_aware(payload.ends_at)
    version = _extract_version(if_match, payload)
    spot_repo = SqlAlchemySpotRepository(session)
    res_repo = SqlAlchemyReservationRepository(session)
    async with session.begin():
        try:
            updated, spot, previous_end = await reservation_usecase.request_extension(
                spot_repo,
                res_repo,
                reservation_id=reservation_id,
                renter_id=user_id,
                new_end=to_utc_naive(payload.ends_at),
                version=version,
            )
        except DomainError as exc:
            raise to_http_exception(exc) from exc
        audit(
            action="reservation.extended",
            initiator="renter",
            reservation_id=updated.id,
            spot_id=spot.id,
            user_id=user_id,
            slots=updated.slots_requested,
            status_from=updated.status,
            status_to=updated.status,
            version=updated.version,
            extra={"ends_at_from": previous_end, "ends_at_to": updated.ends_at, "total_cost": updated.total_cost},
        )

    return ReservationRead.from_db(reservation=updated)


@router.post("/me/reservations/{reservation_id}/cancel", response_model=ReservationRead)
async def cancel_reservation(
    reservation_id: int = Path(..., ge=1),
    payload: Optional[ReservationCancel] = None,
    if_match: Optional[str] = Header(default=None, alias="If-Match"),
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
) -> ReservationRead:
    version = _extract_version(if_match, payload)
    res_repo = SqlAlchemyReservationRepository(session)
    async with session.begin():
        try:
            updated, status_from = await reservation_usecase.cancel_reservation(
                res_repo,
                reservation_id=reservation_id,
                renter_id=user_id,
                version=version,
            )
        except DomainError as exc:
            raise to_http_exception(exc) from exc
        audit(
            action="reservation.cancelled",
            initiator="renter",
            reservation_id=updated.id,
            spot_id=updated.spot_id,
            user_id=user_id,
            slots=updated.slots_requested,
            status_from=status_from,
            status_to=updated.status,
            version=updated.version,
        )

    return ReservationRead.from_db(reservation=updated)

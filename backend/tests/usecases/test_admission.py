from datetime import datetime

import pytest
from conftest import OTHER_RENTER_ID, OWNER_ID, RENTER_ID, FakeReservationRepo, FakeSpotRepo, at
from parking_app.domain.errors import (
    CapacityExceededError,
    InvalidRangeError,
    InvalidStateError,
    NotFoundError,
    SpotInactiveError,
    VersionConflictError,
)
from parking_app.domain.time_range import TimeRange
from parking_app.models import ReservationStatus
from parking_app.usecases import reservations as uc

NOW = at(8)


async def _book(
    spot_repo: FakeSpotRepo,
    res_repo: FakeReservationRepo,
    spot_id: int,
    start: datetime,
    end: datetime,
    slots: int = 1,
    renter_id: int = RENTER_ID,
):
    reservation, _ = await uc.request_reservation(
        spot_repo,
        res_repo,
        spot_id=spot_id,
        renter_id=renter_id,
        time_range=TimeRange(start, end),
        slots_requested=slots,
        now=NOW,
    )
    return reservation


@pytest.mark.asyncio
async def test_admits_touching_ranges_on_single_slot(spot_repo: FakeSpotRepo, res_repo: FakeReservationRepo) -> None:
    spot = spot_repo.add(total_slots=1)
    first = await _book(spot_repo, res_repo, spot.id, at(10), at(11))
    second = await _book(spot_repo, res_repo, spot.id, at(11), at(12))
    assert first.status == ReservationStatus.PENDING
    assert second.status == ReservationStatus.PENDING
    assert spot_repo.locked == [spot.id, spot.id]


@pytest.mark.asyncio
async def test_rejects_overlap_on_single_slot(spot_repo: FakeSpotRepo, res_repo: FakeReservationRepo) -> None:
    spot = spot_repo.add(total_slots=1)
    await _book(spot_repo, res_repo, spot.id, at(10), at(11))
    with pytest.raises(CapacityExceededError) as excinfo:
        await _book(spot_repo, res_repo, spot.id, at(10, 30), at(11, 30), renter_id=OTHER_RENTER_ID)
    assert excinfo.value.conflict == TimeRange(at(10, 30), at(11))
    assert len(res_repo.reservations) == 1


@pytest.mark.asyncio
async def test_two_slots_take_two_overlaps_and_refuse_the_third(
    spot_repo: FakeSpotRepo, res_repo: FakeReservationRepo
) -> None:
    spot = spot_repo.add(total_slots=2)
    await _book(spot_repo, res_repo, spot.id, at(9), at(11))
    await _book(spot_repo, res_repo, spot.id, at(10), at(12))
    with pytest.raises(CapacityExceededError) as excinfo:
        await _book(spot_repo, res_repo, spot.id, at(10, 30), at(10, 45))
    assert excinfo.value.total_slots == 2
    # outside the double-booked stretch one slot is still free
    await _book(spot_repo, res_repo, spot.id, at(11), at(13))


@pytest.mark.asyncio
async def test_multi_slot_request_counts_every_slot(spot_repo: FakeSpotRepo, res_repo: FakeReservationRepo) -> None:
    spot = spot_repo.add(total_slots=3)
    await _book(spot_repo, res_repo, spot.id, at(10), at(11), slots=2)
    with pytest.raises(CapacityExceededError):
        await _book(spot_repo, res_repo, spot.id, at(10), at(11), slots=2)
    await _book(spot_repo, res_repo, spot.id, at(10), at(11), slots=1)


@pytest.mark.asyncio
async def test_new_reservation_gets_cost_and_codes(spot_repo: FakeSpotRepo, res_repo: FakeReservationRepo) -> None:
    spot = spot_repo.add(total_slots=1)
    reservation = await _book(spot_repo, res_repo, spot.id, at(10), at(11, 30))
    assert str(reservation.total_cost) == "5.00"
    assert len(reservation.pin) == 4 and reservation.pin.isdigit()
    assert reservation.qr_code
    assert reservation.version == 1


@pytest.mark.asyncio
async def test_unknown_spot(spot_repo: FakeSpotRepo, res_repo: FakeReservationRepo) -> None:
    with pytest.raises(NotFoundError):
        await _book(spot_repo, res_repo, 99, at(10), at(11))


@pytest.mark.asyncio
async def test_inactive_spot(spot_repo: FakeSpotRepo, res_repo: FakeReservationRepo) -> None:
    spot = spot_repo.add(is_active=False)
    with pytest.raises(SpotInactiveError):
        await _book(spot_repo, res_repo, spot.id, at(10), at(11))


@pytest.mark.asyncio
async def test_elapsed_range(spot_repo: FakeSpotRepo, res_repo: FakeReservationRepo) -> None:
    spot = spot_repo.add()
    with pytest.raises(InvalidRangeError):
        await _book(spot_repo, res_repo, spot.id, at(6), at(7))


@pytest.mark.asyncio
async def test_cancel_frees_capacity(spot_repo: FakeSpotRepo, res_repo: FakeReservationRepo) -> None:
    spot = spot_repo.add(total_slots=1)
    reservation = await _book(spot_repo, res_repo, spot.id, at(10), at(11))

    updated, status_from = await uc.cancel_reservation(
        res_repo, reservation_id=reservation.id, renter_id=RENTER_ID, version=1, now=NOW
    )
    assert status_from == ReservationStatus.PENDING
    assert updated.status == ReservationStatus.CANCELLED
    assert updated.version == 2

    await _book(spot_repo, res_repo, spot.id, at(10), at(11), renter_id=OTHER_RENTER_ID)


@pytest.mark.asyncio
async def test_cancel_twice_is_rejected(spot_repo: FakeSpotRepo, res_repo: FakeReservationRepo) -> None:
    spot = spot_repo.add()
    reservation = await _book(spot_repo, res_repo, spot.id, at(10), at(11))
    await uc.cancel_reservation(res_repo, reservation_id=reservation.id, renter_id=RENTER_ID, version=1, now=NOW)
    with pytest.raises(InvalidStateError):
        await uc.cancel_reservation(res_repo, reservation_id=reservation.id, renter_id=RENTER_ID, version=2, now=NOW)


@pytest.mark.asyncio
async def test_cancel_with_stale_version(spot_repo: FakeSpotRepo, res_repo: FakeReservationRepo) -> None:
    spot = spot_repo.add()
    reservation = await _book(spot_repo, res_repo, spot.id, at(10), at(11))
    with pytest.raises(VersionConflictError):
        await uc.cancel_reservation(res_repo, reservation_id=reservation.id, renter_id=RENTER_ID, version=5, now=NOW)
    assert res_repo.saved == []


@pytest.mark.asyncio
async def test_cancel_someone_elses_reservation(spot_repo: FakeSpotRepo, res_repo: FakeReservationRepo) -> None:
    spot = spot_repo.add()
    reservation = await _book(spot_repo, res_repo, spot.id, at(10), at(11))
    with pytest.raises(NotFoundError):
        await uc.cancel_reservation(
            res_repo, reservation_id=reservation.id, renter_id=OTHER_RENTER_ID, version=1, now=NOW
        )


@pytest.mark.asyncio
async def test_cancel_after_range_elapsed(spot_repo: FakeSpotRepo, res_repo: FakeReservationRepo) -> None:
    spot = spot_repo.add()
    reservation = res_repo.add(spot_id=spot.id, starts_at=at(10), ends_at=at(11))
    with pytest.raises(InvalidStateError):
        await uc.cancel_reservation(
            res_repo, reservation_id=reservation.id, renter_id=RENTER_ID, version=1, now=at(12)
        )


@pytest.mark.asyncio
async def test_extension_into_free_time(spot_repo: FakeSpotRepo, res_repo: FakeReservationRepo) -> None:
    spot = spot_repo.add(total_slots=1)
    reservation = await _book(spot_repo, res_repo, spot.id, at(10), at(11))
    await _book(spot_repo, res_repo, spot.id, at(13), at(14))

    updated, _, previous_end = await uc.request_extension(
        spot_repo,
        res_repo,
        reservation_id=reservation.id,
        renter_id=RENTER_ID,
        new_end=at(13),
        version=1,
        now=NOW,
    )
    assert previous_end == at(11)
    assert updated.ends_at == at(13)
    assert str(updated.total_cost) == "7.50"
    assert updated.version == 2


@pytest.mark.asyncio
async def test_extension_blocked_by_later_booking(spot_repo: FakeSpotRepo, res_repo: FakeReservationRepo) -> None:
    spot = spot_repo.add(total_slots=1)
    reservation = await _book(spot_repo, res_repo, spot.id, at(10), at(11))
    await _book(spot_repo, res_repo, spot.id, at(12), at(13), renter_id=OTHER_RENTER_ID)

    with pytest.raises(CapacityExceededError) as excinfo:
        await uc.request_extension(
            spot_repo,
            res_repo,
            reservation_id=reservation.id,
            renter_id=RENTER_ID,
            new_end=at(12, 30),
            version=1,
            now=NOW,
        )
    assert excinfo.value.conflict == TimeRange(at(12), at(12, 30))
    assert res_repo.reservations[reservation.id].ends_at == at(11)
    assert res_repo.reservations[reservation.id].version == 1


@pytest.mark.asyncio
async def test_extension_ignores_bookings_on_other_spots(
    spot_repo: FakeSpotRepo, res_repo: FakeReservationRepo
) -> None:
    spot = spot_repo.add(total_slots=1)
    other = spot_repo.add(total_slots=1)
    reservation = await _book(spot_repo, res_repo, spot.id, at(10), at(11))
    await _book(spot_repo, res_repo, other.id, at(11), at(12), renter_id=OTHER_RENTER_ID)

    updated, extended_spot, _ = await uc.request_extension(
        spot_repo,
        res_repo,
        reservation_id=reservation.id,
        renter_id=RENTER_ID,
        new_end=at(12),
        version=1,
        now=NOW,
    )
    assert extended_spot.id == spot.id
    assert updated.ends_at == at(12)


@pytest.mark.asyncio
async def test_extension_must_move_end_forward(spot_repo: FakeSpotRepo, res_repo: FakeReservationRepo) -> None:
    spot = spot_repo.add()
    reservation = await _book(spot_repo, res_repo, spot.id, at(10), at(11))
    with pytest.raises(InvalidRangeError):
        await uc.request_extension(
            spot_repo,
            res_repo,
            reservation_id=reservation.id,
            renter_id=RENTER_ID,
            new_end=at(11),
            version=1,
            now=NOW,
        )


@pytest.mark.asyncio
async def test_extension_with_stale_version(spot_repo: FakeSpotRepo, res_repo: FakeReservationRepo) -> None:
    spot = spot_repo.add()
    reservation = await _book(spot_repo, res_repo, spot.id, at(10), at(11))
    with pytest.raises(VersionConflictError):
        await uc.request_extension(
            spot_repo,
            res_repo,
            reservation_id=reservation.id,
            renter_id=RENTER_ID,
            new_end=at(12),
            version=2,
            now=NOW,
        )


@pytest.mark.asyncio
async def test_extension_on_deactivated_spot(spot_repo: FakeSpotRepo, res_repo: FakeReservationRepo) -> None:
    spot = spot_repo.add()
    reservation = await _book(spot_repo, res_repo, spot.id, at(10), at(11))
    spot.is_active = False
    with pytest.raises(SpotInactiveError):
        await uc.request_extension(
            spot_repo,
            res_repo,
            reservation_id=reservation.id,
            renter_id=RENTER_ID,
            new_end=at(12),
            version=1,
            now=NOW,
        )


@pytest.mark.asyncio
async def test_clock_transitions_are_idempotent(spot_repo: FakeSpotRepo, res_repo: FakeReservationRepo) -> None:
    spot = spot_repo.add(total_slots=3)
    starting = res_repo.add(spot_id=spot.id, starts_at=at(10), ends_at=at(12))
    ending = res_repo.add(spot_id=spot.id, starts_at=at(8), ends_at=at(10), status=ReservationStatus.ACTIVE)
    missed = res_repo.add(spot_id=spot.id, starts_at=at(8), ends_at=at(9))
    later = res_repo.add(spot_id=spot.id, starts_at=at(11), ends_at=at(12))

    changes = await uc.transition_on_clock(res_repo, now=at(10))
    moved = {res.id: (status_from, res.status) for res, status_from in changes}
    assert moved == {
        starting.id: (ReservationStatus.PENDING, ReservationStatus.ACTIVE),
        ending.id: (ReservationStatus.ACTIVE, ReservationStatus.COMPLETED),
        missed.id: (ReservationStatus.PENDING, ReservationStatus.COMPLETED),
    }
    assert later.status == ReservationStatus.PENDING

    assert await uc.transition_on_clock(res_repo, now=at(10)) == []


@pytest.mark.asyncio
async def test_clock_transitions_scoped_to_renter(spot_repo: FakeSpotRepo, res_repo: FakeReservationRepo) -> None:
    spot = spot_repo.add(total_slots=2)
    mine = res_repo.add(spot_id=spot.id, starts_at=at(9), ends_at=at(11))
    theirs = res_repo.add(spot_id=spot.id, starts_at=at(9), ends_at=at(11), renter_id=OTHER_RENTER_ID)

    changes = await uc.transition_on_clock(res_repo, now=at(10), renter_id=RENTER_ID)
    assert [res.id for res, _ in changes] == [mine.id]
    assert theirs.status == ReservationStatus.PENDING


@pytest.mark.asyncio
async def test_check_in_by_pin_then_check_out(spot_repo: FakeSpotRepo, res_repo: FakeReservationRepo) -> None:
    spot = spot_repo.add()
    reservation = res_repo.add(spot_id=spot.id, starts_at=at(10), ends_at=at(11), pin="4321")

    checked_in, status_from = await uc.check_in(
        spot_repo, res_repo, spot_id=spot.id, owner_id=OWNER_ID, code=" 4321 ", now=at(9, 50)
    )
    assert status_from == ReservationStatus.PENDING
    assert checked_in.status == ReservationStatus.ACTIVE
    assert checked_in.checked_in_at == at(9, 50)

    with pytest.raises(InvalidStateError):
        await uc.check_in(spot_repo, res_repo, spot_id=spot.id, owner_id=OWNER_ID, code="4321", now=at(10))

    checked_out, status_from = await uc.check_out(
        spot_repo, res_repo, spot_id=spot.id, reservation_id=reservation.id, owner_id=OWNER_ID, now=at(10, 40)
    )
    assert status_from == ReservationStatus.ACTIVE
    assert checked_out.status == ReservationStatus.COMPLETED
    assert checked_out.checked_out_at == at(10, 40)
    assert checked_out.version == 3


@pytest.mark.asyncio
async def test_check_in_by_qr_code_after_clock_activation(
    spot_repo: FakeSpotRepo, res_repo: FakeReservationRepo
) -> None:
    spot = spot_repo.add()
    reservation = res_repo.add(spot_id=spot.id, starts_at=at(10), ends_at=at(11), status=ReservationStatus.ACTIVE)

    checked_in, status_from = await uc.check_in(
        spot_repo, res_repo, spot_id=spot.id, owner_id=OWNER_ID, code=reservation.qr_code, now=at(10, 5)
    )
    assert status_from == ReservationStatus.ACTIVE
    assert checked_in.checked_in_at == at(10, 5)


@pytest.mark.asyncio
async def test_check_in_rejects_unknown_code_and_foreign_owner(
    spot_repo: FakeSpotRepo, res_repo: FakeReservationRepo
) -> None:
    spot = spot_repo.add()
    res_repo.add(spot_id=spot.id, starts_at=at(10), ends_at=at(11), pin="4321")
    with pytest.raises(NotFoundError):
        await uc.check_in(spot_repo, res_repo, spot_id=spot.id, owner_id=OWNER_ID, code="0000", now=at(10))
    with pytest.raises(NotFoundError):
        await uc.check_in(spot_repo, res_repo, spot_id=spot.id, owner_id=RENTER_ID, code="4321", now=at(10))


@pytest.mark.asyncio
async def test_check_in_after_end(spot_repo: FakeSpotRepo, res_repo: FakeReservationRepo) -> None:
    spot = spot_repo.add()
    res_repo.add(spot_id=spot.id, starts_at=at(10), ends_at=at(11), pin="4321")
    with pytest.raises(InvalidStateError):
        await uc.check_in(spot_repo, res_repo, spot_id=spot.id, owner_id=OWNER_ID, code="4321", now=at(11))


@pytest.mark.asyncio
async def test_check_out_requires_active(spot_repo: FakeSpotRepo, res_repo: FakeReservationRepo) -> None:
    spot = spot_repo.add()
    reservation = res_repo.add(spot_id=spot.id, starts_at=at(10), ends_at=at(11))
    with pytest.raises(InvalidStateError):
        await uc.check_out(
            spot_repo, res_repo, spot_id=spot.id, reservation_id=reservation.id, owner_id=OWNER_ID, now=at(9)
        )


@pytest.mark.asyncio
async def test_check_out_of_started_pending_reservation(
    spot_repo: FakeSpotRepo, res_repo: FakeReservationRepo
) -> None:
    spot = spot_repo.add()
    reservation = res_repo.add(spot_id=spot.id, starts_at=at(10), ends_at=at(11))

    checked_out, status_from = await uc.check_out(
        spot_repo, res_repo, spot_id=spot.id, reservation_id=reservation.id, owner_id=OWNER_ID, now=at(10, 30)
    )
    assert status_from == ReservationStatus.PENDING
    assert checked_out.status == ReservationStatus.COMPLETED
    assert checked_out.checked_out_at == at(10, 30)

    # the slot is released for the rest of the range
    await _book(spot_repo, res_repo, spot.id, at(10, 30), at(11), renter_id=OTHER_RENTER_ID)


@pytest.mark.asyncio
async def test_pin_avoids_codes_in_use(
    spot_repo: FakeSpotRepo, res_repo: FakeReservationRepo, monkeypatch: pytest.MonkeyPatch
) -> None:
    spot = spot_repo.add(total_slots=2)
    res_repo.add(spot_id=spot.id, starts_at=at(10), ends_at=at(11), pin="1000")
    draws = iter([0, 0, 7])
    monkeypatch.setattr(uc.secrets, "randbelow", lambda _n: next(draws))

    reservation = await _book(spot_repo, res_repo, spot.id, at(10), at(11))
    assert reservation.pin == "1007"


@pytest.mark.asyncio
async def test_list_spot_reservations_is_owner_only(spot_repo: FakeSpotRepo, res_repo: FakeReservationRepo) -> None:
    spot = spot_repo.add()
    res_repo.add(spot_id=spot.id, starts_at=at(10), ends_at=at(11))
    rows = await uc.list_spot_reservations(spot_repo, res_repo, spot_id=spot.id, owner_id=OWNER_ID)
    assert len(rows) == 1
    with pytest.raises(NotFoundError):
        await uc.list_spot_reservations(spot_repo, res_repo, spot_id=spot.id, owner_id=RENTER_ID)

from __future__ import annotations

import pytest

from datetime import date, datetime, time, timezone
from labres.modules import errors
from labres.modules import events


from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from collections.abc import Callable
    from labres.db.models import Resource
    from labres.db.scheduler import Scheduler
    from labres.modules.auth import Actor

    from .conftest import RecordingEmitter


MORNING = (time(9), time(12))


def test_reserve(
    scheduler: Scheduler,
    resource: Resource,
    alice: Actor,
    emitter: RecordingEmitter
) -> None:

    created = []
    events.on_reservation_created.append(
        lambda context, reservation: created.append(reservation.id)
    )

    reservation = scheduler.reserve(
        alice, resource.id, (date(2024, 6, 1), date(2024, 6, 3)), MORNING,
        'Training a model', data={'gpu_memory': 16}
    )

    assert reservation.status == 'pending'
    assert reservation.owner == 'alice'
    assert reservation.date_range == (date(2024, 6, 1), date(2024, 6, 3))
    assert reservation.window == MORNING
    assert reservation.timezone == 'Europe/Zurich'
    assert reservation.data == {'gpu_memory': 16}

    assert created == [reservation.id]
    assert emitter.kinds('alice') == ['reservation_created']
    assert scheduler.reservations_by_owner('alice') == [reservation]


def test_reserve_single_date(
    scheduler: Scheduler,
    resource: Resource,
    alice: Actor
) -> None:

    reservation = scheduler.reserve(
        alice, resource.id, date(2024, 6, 4), MORNING, 'Rendering'
    )

    assert reservation.start_date == reservation.end_date == date(2024, 6, 4)


def test_reserve_invalid_range(
    scheduler: Scheduler,
    resource: Resource,
    alice: Actor,
    emitter: RecordingEmitter
) -> None:

    with pytest.raises(errors.ValidationError):
        scheduler.reserve(
            alice, resource.id, (date(2024, 6, 5), date(2024, 6, 1)),
            MORNING, 'Training a model'
        )

    with pytest.raises(errors.InvalidTimeWindow):
        scheduler.reserve(
            alice, resource.id, date(2024, 6, 5), (time(12), time(9)),
            'Training a model'
        )

    with pytest.raises(errors.InvalidTimeWindow):
        scheduler.reserve(
            alice, resource.id, date(2024, 6, 5), (time(9), time(9)),
            'Training a model'
        )

    with pytest.raises(errors.ReasonRequired):
        scheduler.reserve(alice, resource.id, date(2024, 6, 5), MORNING, ' ')

    assert scheduler.reservations_by_resource(resource.id) == []
    assert scheduler.managed_reservations().count() == 0
    assert emitter.records == []


def test_reserve_unknown_resource(
    scheduler: Scheduler,
    alice: Actor
) -> None:

    with pytest.raises(errors.UnknownResource):
        scheduler.reserve(alice, 12345, date(2024, 6, 5), MORNING, 'Test')


def test_reserve_foreign_resource(
    scheduler: Scheduler,
    resource: Resource,
    alice: Actor
) -> None:

    other = scheduler.clone()
    other.name = 'another lab'

    with pytest.raises(errors.NotFoundError):
        other.reserve(alice, resource.id, date(2024, 6, 5), MORNING, 'Test')


def test_reserve_under_maintenance(
    scheduler: Scheduler,
    resource: Resource,
    admin: Actor,
    alice: Actor
) -> None:

    scheduler.resources.set_maintenance(admin, resource.id)

    with pytest.raises(errors.ResourceUnderMaintenance):
        scheduler.reserve(alice, resource.id, date(2024, 6, 5), MORNING, 'X')

    scheduler.resources.set_maintenance(admin, resource.id, False)
    scheduler.reserve(alice, resource.id, date(2024, 6, 5), MORNING, 'X')


def test_pending_reservations_may_overlap(
    scheduler: Scheduler,
    resource: Resource,
    alice: Actor,
    bob: Actor
) -> None:

    a = scheduler.reserve(alice, resource.id, date(2024, 6, 5), MORNING, 'A')
    b = scheduler.reserve(bob, resource.id, date(2024, 6, 5), MORNING, 'B')

    assert a.status == b.status == 'pending'
    assert scheduler.reservations_by_resource(resource.id) == [a, b]


def test_approve_conflict(
    scheduler: Scheduler,
    resource: Resource,
    admin: Actor,
    alice: Actor,
    bob: Actor
) -> None:

    r1 = scheduler.reserve(
        alice, resource.id, (date(2024, 6, 1), date(2024, 6, 3)), MORNING,
        'Training a model'
    )
    scheduler.approve_reservation(admin, r1.id)
    assert r1.status == 'approved'

    r2 = scheduler.reserve(
        bob, resource.id, date(2024, 6, 2), (time(10), time(11)),
        'Benchmarks'
    )

    with pytest.raises(errors.ConflictError) as e:
        scheduler.approve_reservation(admin, r2.id)

    assert e.value.reservation_id == r1.id
    assert e.value.existing.id == r1.id
    assert scheduler.reservation_by_id(r2.id).status == 'pending'


def test_approve_adjacent_windows(
    scheduler: Scheduler,
    resource: Resource,
    admin: Actor,
    alice: Actor,
    bob: Actor
) -> None:

    r1 = scheduler.reserve(alice, resource.id, date(2024, 6, 3), MORNING, 'A')
    r2 = scheduler.reserve(
        bob, resource.id, date(2024, 6, 3), (time(12), time(15)), 'B'
    )
    r3 = scheduler.reserve(
        bob, resource.id, date(2024, 6, 4), MORNING, 'C'
    )

    for reservation in (r1, r2, r3):
        scheduler.approve_reservation(admin, reservation.id)

    approved = scheduler.reservations_by_resource(resource.id, 'approved')
    assert approved == [r1, r2, r3]


def test_approve_requires_admin(
    scheduler: Scheduler,
    resource: Resource,
    alice: Actor
) -> None:

    reservation = scheduler.reserve(
        alice, resource.id, date(2024, 6, 3), MORNING, 'A'
    )

    with pytest.raises(errors.AuthorizationError):
        scheduler.approve_reservation(alice, reservation.id)

    assert scheduler.reservation_by_id(reservation.id).status == 'pending'


def test_approve_twice(
    scheduler: Scheduler,
    resource: Resource,
    admin: Actor,
    alice: Actor
) -> None:

    reservation = scheduler.reserve(
        alice, resource.id, date(2024, 6, 3), MORNING, 'A'
    )
    scheduler.approve_reservation(admin, reservation.id)

    with pytest.raises(errors.IllegalStateTransitionError) as e:
        scheduler.approve_reservation(admin, reservation.id)

    assert e.value.current == 'approved'


def test_approve_unknown_reservation(
    scheduler: Scheduler,
    admin: Actor
) -> None:

    with pytest.raises(errors.UnknownReservation):
        scheduler.approve_reservation(admin, 12345)


def test_reject(
    scheduler: Scheduler,
    resource: Resource,
    admin: Actor,
    alice: Actor,
    emitter: RecordingEmitter
) -> None:

    r1 = scheduler.reserve(
        alice, resource.id, (date(2024, 6, 1), date(2024, 6, 3)), MORNING,
        'Training a model'
    )
    emitter.records.clear()

    with pytest.raises(errors.ValidationError):
        scheduler.reject_reservation(admin, r1.id, '')

    assert scheduler.reservation_by_id(r1.id).status == 'pending'
    assert emitter.records == []

    scheduler.reject_reservation(
        admin, r1.id, 'Resource needed for maintenance'
    )

    assert r1.status == 'rejected'
    assert r1.status_reason == 'Resource needed for maintenance'

    assert len(emitter.records) == 1
    assert emitter.records[0].user == 'alice'
    assert emitter.records[0].kind == 'reservation_status_changed'
    assert 'Resource needed for maintenance' in emitter.records[0].message

    # rejecting twice fails and changes nothing
    with pytest.raises(errors.IllegalStateTransitionError):
        scheduler.reject_reservation(admin, r1.id, 'Another reason')

    r1 = scheduler.reservation_by_id(r1.id)
    assert r1.status == 'rejected'
    assert r1.status_reason == 'Resource needed for maintenance'
    assert len(emitter.records) == 1


def test_reject_approved(
    scheduler: Scheduler,
    resource: Resource,
    admin: Actor,
    alice: Actor
) -> None:

    r1 = scheduler.reserve(alice, resource.id, date(2024, 6, 3), MORNING, 'A')
    scheduler.approve_reservation(admin, r1.id)

    with pytest.raises(errors.IllegalStateTransitionError):
        scheduler.reject_reservation(admin, r1.id, 'Too late')


def test_cancel_by_owner(
    scheduler: Scheduler,
    resource: Resource,
    admin: Actor,
    alice: Actor,
    bob: Actor
) -> None:

    r1 = scheduler.reserve(alice, resource.id, date(2024, 6, 3), MORNING, 'A')
    r2 = scheduler.reserve(bob, resource.id, date(2024, 6, 3), MORNING, 'B')
    scheduler.approve_reservation(admin, r1.id)

    with pytest.raises(errors.AuthorizationError):
        scheduler.cancel_reservation(bob, r1.id)

    with pytest.raises(errors.ConflictError):
        scheduler.approve_reservation(admin, r2.id)

    scheduler.cancel_reservation(alice, r1.id)
    assert r1.status == 'cancelled'

    # the slot is free again
    scheduler.approve_reservation(admin, r2.id)
    assert r2.status == 'approved'

    with pytest.raises(errors.IllegalStateTransitionError):
        scheduler.cancel_reservation(alice, r1.id)


def test_cancel_pending(
    scheduler: Scheduler,
    resource: Resource,
    alice: Actor
) -> None:

    r1 = scheduler.reserve(alice, resource.id, date(2024, 6, 3), MORNING, 'A')
    scheduler.cancel_reservation(alice, r1.id)

    assert r1.status == 'cancelled'
    assert r1.status_reason is None


def test_revoke(
    scheduler: Scheduler,
    resource: Resource,
    admin: Actor,
    alice: Actor,
    emitter: RecordingEmitter
) -> None:

    cancelled = []
    events.on_reservation_cancelled.append(
        lambda context, reservation: cancelled.append(reservation.id)
    )

    r1 = scheduler.reserve(alice, resource.id, date(2024, 6, 3), MORNING, 'A')
    scheduler.approve_reservation(admin, r1.id)

    with pytest.raises(errors.ReasonRequired):
        scheduler.cancel_reservation(admin, r1.id)

    assert scheduler.reservation_by_id(r1.id).status == 'approved'

    scheduler.cancel_reservation(admin, r1.id, 'Hardware failure')

    assert r1.status == 'cancelled'
    assert r1.status_reason == 'Hardware failure'
    assert cancelled == [r1.id]
    assert 'revoked' in emitter.records[-1].message


def test_completed(
    scheduler: Scheduler,
    resource: Resource,
    admin: Actor,
    alice: Actor,
    travel_to: Callable[[datetime], None]
) -> None:

    r1 = scheduler.reserve(
        alice, resource.id, (date(2024, 6, 3), date(2024, 6, 4)), MORNING,
        'A'
    )
    scheduler.approve_reservation(admin, r1.id)

    # 11:00 in Zurich on the last day
    travel_to(datetime(2024, 6, 4, 9, 0, tzinfo=timezone.utc))
    assert r1.display_status(scheduler.clock.now()) == 'approved'
    assert scheduler.reservations_by_resource(resource.id, 'completed') == []

    # 12:00 in Zurich on the last day
    travel_to(datetime(2024, 6, 4, 10, 0, tzinfo=timezone.utc))
    assert r1.display_status(scheduler.clock.now()) == 'completed'
    assert r1.status == 'approved'

    assert scheduler.reservations_by_resource(resource.id, 'completed') == [
        r1
    ]
    assert scheduler.reservations_by_resource(resource.id, 'approved') == []
    assert scheduler.reservations_by_owner('alice', 'completed') == [r1]

    # completed reservations are final
    with pytest.raises(errors.IllegalStateTransitionError) as e:
        scheduler.cancel_reservation(alice, r1.id)

    assert e.value.current == 'completed'

    with pytest.raises(errors.IllegalStateTransitionError):
        scheduler.extend_reservation(admin, r1.id, date(2024, 6, 5))


def test_extend_dates(
    scheduler: Scheduler,
    resource: Resource,
    admin: Actor,
    alice: Actor,
    bob: Actor
) -> None:

    extended = []

    def on_extended(context, reservation, old_end, new_end):  # type: ignore
        extended.append((reservation.id, old_end, new_end))

    events.on_reservation_extended.append(on_extended)

    r1 = scheduler.reserve(
        alice, resource.id, (date(2024, 6, 3), date(2024, 6, 4)), MORNING,
        'A'
    )
    r2 = scheduler.reserve(
        bob, resource.id, date(2024, 6, 7), (time(11), time(13)), 'B'
    )
    scheduler.approve_reservation(admin, r1.id)
    scheduler.approve_reservation(admin, r2.id)

    r1_id = r1.id
    scheduler.extend_reservation(admin, r1.id, date(2024, 6, 6))

    assert r1.id == r1_id
    assert r1.date_range == (date(2024, 6, 3), date(2024, 6, 6))
    assert extended == [(
        r1.id, (date(2024, 6, 4), time(12)), (date(2024, 6, 6), time(12))
    )]

    # june 7th is taken by bob from 11:00
    with pytest.raises(errors.ConflictError) as e:
        scheduler.extend_reservation(admin, r1.id, date(2024, 6, 7))

    assert e.value.reservation_id == r2.id
    assert scheduler.reservation_by_id(r1.id).end_date == date(2024, 6, 6)


def test_extend_window(
    scheduler: Scheduler,
    resource: Resource,
    admin: Actor,
    alice: Actor,
    bob: Actor
) -> None:

    r1 = scheduler.reserve(
        alice, resource.id, (date(2024, 6, 3), date(2024, 6, 5)), MORNING,
        'A'
    )
    r2 = scheduler.reserve(
        bob, resource.id, date(2024, 6, 4), (time(13), time(15)), 'B'
    )
    scheduler.approve_reservation(admin, r1.id)
    scheduler.approve_reservation(admin, r2.id)

    scheduler.extend_reservation(admin, r1.id, new_end_time=time(13))
    assert r1.window == (time(9), time(13))

    with pytest.raises(errors.ConflictError) as e:
        scheduler.extend_reservation(admin, r1.id, new_end_time=time(14))

    assert e.value.reservation_id == r2.id
    assert scheduler.reservation_by_id(r1.id).end_time == time(13)


def test_extend_monotonic(
    scheduler: Scheduler,
    resource: Resource,
    admin: Actor,
    alice: Actor
) -> None:

    r1 = scheduler.reserve(
        alice, resource.id, (date(2024, 6, 3), date(2024, 6, 5)), MORNING,
        'A'
    )

    with pytest.raises(errors.IllegalStateTransitionError):
        scheduler.extend_reservation(admin, r1.id, date(2024, 6, 6))

    scheduler.approve_reservation(admin, r1.id)

    with pytest.raises(errors.ValidationError):
        scheduler.extend_reservation(admin, r1.id, date(2024, 6, 4))

    with pytest.raises(errors.InvalidExtension):
        scheduler.extend_reservation(admin, r1.id, new_end_time=time(11))

    with pytest.raises(errors.InvalidExtension):
        scheduler.extend_reservation(admin, r1.id)

    with pytest.raises(errors.AuthorizationError):
        scheduler.extend_reservation(alice, r1.id, date(2024, 6, 6))

    r1 = scheduler.reservation_by_id(r1.id)
    assert r1.date_range == (date(2024, 6, 3), date(2024, 6, 5))
    assert r1.window == MORNING


def test_no_double_booking(
    scheduler: Scheduler,
    resource: Resource,
    admin: Actor,
    alice: Actor,
    bob: Actor
) -> None:

    requests = [
        (alice, (date(2024, 6, 3), date(2024, 6, 7)), (time(9), time(12))),
        (bob, (date(2024, 6, 5), date(2024, 6, 5)), (time(8), time(10))),
        (bob, (date(2024, 6, 3), date(2024, 6, 4)), (time(12), time(14))),
        (alice, (date(2024, 6, 7), date(2024, 6, 9)), (time(13), time(16))),
        (bob, (date(2024, 6, 9), date(2024, 6, 10)), (time(15), time(17))),
        (alice, (date(2024, 6, 10), date(2024, 6, 10)), (time(7), time(8))),
    ]

    for actor, dates, times in requests:
        reservation = scheduler.reserve(actor, resource.id, dates, times, 'X')
        try:
            scheduler.approve_reservation(admin, reservation.id)
        except errors.ConflictError:
            pass

    approved = scheduler.reservations_by_resource(resource.id, 'approved')
    assert len(approved) == 4

    slots = set()
    for reservation in approved:
        for day in reservation.occupied_dates():
            for minute in range(24 * 60):
                at = time(minute // 60, minute % 60)
                if reservation.start_time <= at < reservation.end_time:
                    assert (day, at) not in slots
                    slots.add((day, at))

from __future__ import annotations

import pytest

from datetime import date, datetime, time, timezone
from labres.context.settings import apply_lab_policy
from labres.modules import errors


from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from collections.abc import Callable
    from labres.db.models import Resource
    from labres.db.scheduler import Scheduler
    from labres.modules.auth import Actor


def test_add_resource(
    scheduler: Scheduler,
    admin: Actor,
    alice: Actor
) -> None:

    resource = scheduler.resources.add_resource(
        admin, ' PC-07 ', 'Room 101', 'AMD EPYC, 2x A100',
        data={'os': 'Rocky Linux 9'}
    )

    assert resource.name == 'PC-07'
    assert resource.status == 'available'
    assert resource.lab == scheduler.lab
    assert scheduler.resource_by_id(resource.id) is resource

    with pytest.raises(errors.AuthorizationError):
        scheduler.resources.add_resource(alice, 'PC-08', 'Room 101')

    with pytest.raises(errors.ValidationError):
        scheduler.resources.add_resource(admin, 'PC-07', 'Room 102')

    with pytest.raises(errors.ValidationError):
        scheduler.resources.add_resource(admin, '', 'Room 102')

    with pytest.raises(errors.ValidationError):
        scheduler.resources.add_resource(admin, 'PC-08', '')

    assert [r.name for r in scheduler.resources.resources()] == ['PC-07']


def test_resources_are_per_lab(
    scheduler: Scheduler,
    resource: Resource,
    admin: Actor
) -> None:

    other = scheduler.clone()
    other.name = 'physics lab'

    # the same name may be used in another lab
    copy = other.resources.add_resource(admin, 'PC-01', 'Room 201')

    try:
        assert [r.id for r in scheduler.resources.resources()] == [
            resource.id
        ]
        assert [r.id for r in other.resources.resources()] == [copy.id]

        with pytest.raises(errors.UnknownResource):
            other.resource_by_id(resource.id)
    finally:
        other.extinguish_managed_records()
        other.commit()


def test_update_resource(
    scheduler: Scheduler,
    resource: Resource,
    admin: Actor
) -> None:

    scheduler.resources.update_resource(
        admin, resource.id, location='Room 202', data={'ram': '128 GB'}
    )

    assert resource.location == 'Room 202'
    assert resource.data == {'ram': '128 GB'}

    with pytest.raises(errors.ValidationError):
        scheduler.resources.update_resource(admin, resource.id, status='x')

    with pytest.raises(errors.ValidationError):
        scheduler.resources.update_resource(admin, resource.id, name=' ')

    with pytest.raises(errors.UnknownResource):
        scheduler.resources.update_resource(admin, 12345, name='PC-99')


def test_search(scheduler: Scheduler, admin: Actor) -> None:

    scheduler.resources.add_resource(admin, 'PC-01', 'Room 101', 'RTX 4090')
    scheduler.resources.add_resource(admin, 'PC-02', 'Room 102', 'A100')

    assert [r.name for r in scheduler.resources.search('rtx')] == ['PC-01']
    assert [r.name for r in scheduler.resources.search('room')] == [
        'PC-01', 'PC-02'
    ]
    assert scheduler.resources.search('mac') == []


def test_remove_resource(
    scheduler: Scheduler,
    resource: Resource,
    admin: Actor,
    alice: Actor,
    travel_to: Callable[[datetime], None]
) -> None:

    reservation = scheduler.reserve(
        alice, resource.id, date(2024, 6, 3), (time(9), time(12)), 'A'
    )
    scheduler.approve_reservation(admin, reservation.id)
    scheduler.create_release(alice, reservation.id, [date(2024, 6, 3)], 'X')

    with pytest.raises(errors.AuthorizationError):
        scheduler.resources.remove_resource(alice, resource.id)

    with pytest.raises(errors.ConflictError) as e:
        scheduler.resources.remove_resource(admin, resource.id)

    assert e.value.reservation_id == reservation.id

    travel_to(datetime(2024, 6, 4, tzinfo=timezone.utc))

    resource_id = resource.id
    scheduler.resources.remove_resource(admin, resource_id)

    with pytest.raises(errors.UnknownResource):
        scheduler.resource_by_id(resource_id)

    assert scheduler.managed_reservations().count() == 0
    assert scheduler.managed_releases().count() == 0


def test_availability(
    scheduler: Scheduler,
    admin: Actor,
    alice: Actor,
    travel_to: Callable[[datetime], None]
) -> None:

    apply_lab_policy(scheduler.context)
    scheduler.clear_cache()

    busy = scheduler.resources.add_resource(admin, 'PC-01', 'Room 101')
    free = scheduler.resources.add_resource(admin, 'PC-02', 'Room 101')
    broken = scheduler.resources.add_resource(admin, 'PC-03', 'Room 101')

    reservation = scheduler.reserve(
        alice, busy.id, date(2024, 5, 27), (time(8, 30), time(12)), 'Early'
    )
    scheduler.approve_reservation(admin, reservation.id)
    scheduler.resources.set_maintenance(admin, broken.id)

    # monday, 10:00 in Zurich
    travel_to(datetime(2024, 5, 27, 8, 0, tzinfo=timezone.utc))

    availability = {
        a.resource.id: a for a in scheduler.resources.availability()
    }

    assert availability[busy.id].status == 'booked'
    assert availability[busy.id].next_window == (
        date(2024, 5, 27), time(12), time(17, 30)
    )

    assert availability[free.id].status == 'available'
    assert availability[free.id].next_window == (
        date(2024, 5, 27), time(10), time(17, 30)
    )

    assert availability[broken.id].status == 'maintenance'
    assert availability[broken.id].next_window is None

    # back in service, existing reservations are untouched
    scheduler.resources.set_maintenance(admin, broken.id, False)
    assert broken.status == 'available'
    assert reservation.status == 'approved'

    # after the reservation ended the resource is free again
    travel_to(datetime(2024, 5, 27, 10, 0, tzinfo=timezone.utc))

    availability = {
        a.resource.id: a for a in scheduler.resources_with_availability()
    }
    assert availability[busy.id].status == 'available'
    assert availability[broken.id].status == 'available'


def test_next_window_skips_closed_and_booked_days(
    scheduler: Scheduler,
    resource: Resource,
    admin: Actor,
    alice: Actor,
    travel_to: Callable[[datetime], None]
) -> None:

    apply_lab_policy(scheduler.context)
    scheduler.clear_cache()

    reservation = scheduler.reserve(
        alice, resource.id, date(2024, 6, 3), (time(8, 30), time(17, 30)),
        'All day'
    )
    scheduler.approve_reservation(admin, reservation.id)

    # saturday, 16:45 in Zurich, too late for the minimum duration
    travel_to(datetime(2024, 6, 1, 14, 45, tzinfo=timezone.utc))

    [availability] = scheduler.resources.availability()

    # sunday is closed and monday is taken
    assert availability.status == 'available'
    assert availability.next_window == (
        date(2024, 6, 4), time(8, 30), time(17, 30)
    )

    # a released day becomes available again
    scheduler.create_release(alice, reservation.id, [date(2024, 6, 3)], 'Ill')

    [availability] = scheduler.resources.availability()
    assert availability.next_window == (
        date(2024, 6, 3), time(8, 30), time(17, 30)
    )


def test_maintenance_refuses_reservations(
    scheduler: Scheduler,
    resource: Resource,
    admin: Actor,
    alice: Actor
) -> None:

    with pytest.raises(errors.AuthorizationError):
        scheduler.resources.set_maintenance(alice, resource.id)

    scheduler.resources.set_maintenance(admin, resource.id)

    with pytest.raises(errors.ResourceUnderMaintenance):
        scheduler.reserve(
            alice, resource.id, date(2024, 6, 3), (time(9), time(12)), 'A'
        )

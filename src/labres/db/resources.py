from __future__ import annotations

import logging
import sedate

from datetime import time, timedelta
from sqlalchemy import func
from sqlalchemy.sql import or_

from labres.context.core import ContextServicesMixin
from labres.db.models import Reservation, Resource
from labres.db.queries import Queries
from labres.modules import errors
from labres.modules import utils
from labres.modules.auth import require_admin


from typing import Any
from typing import Literal
from typing import NamedTuple
from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from collections.abc import Sequence
    from datetime import date, datetime
    from sqlalchemy.orm import Query
    from typing_extensions import TypeAlias

    from labres.db.models.resource import ResourceStatus
    from labres.db.scheduler import Scheduler
    from labres.modules.auth import Actor


log = logging.getLogger('labres')

CompositeStatus: TypeAlias = Literal['available', 'maintenance', 'booked']

# the fields which may be changed through update_resource
EDITABLE_FIELDS = ('name', 'location', 'specification', 'data')


class Window(NamedTuple):
    day: date
    start: time
    end: time


class ResourceAvailability(NamedTuple):
    """ The state of a resource as shown to users.

    The status combines the operational status of the resource with the
    reservations occupying it right now, it is never stored.

    """

    resource: Resource
    status: CompositeStatus
    next_window: Window | None


class ResourceRegistry(ContextServicesMixin):
    """ Manages the computers of a lab. Changes are restricted to
    administrators.

    """

    def __init__(self, scheduler: Scheduler):
        self.scheduler = scheduler
        self.context = scheduler.context
        self.queries = Queries(scheduler.context)

    def managed_resources(self) -> Query[Resource]:
        """ The resources managed by this scheduler / lab. """
        query = self.session.query(Resource)
        query = query.filter(Resource.lab == self.scheduler.lab)

        return query

    def resource_by_id(self, id: int) -> Resource:
        query = self.managed_resources().filter(Resource.id == id)
        resource = query.one_or_none()

        if resource is None:
            raise errors.UnknownResource(f'Unknown resource {id}')

        return resource

    def resources(self) -> list[Resource]:
        return self.managed_resources().order_by(Resource.name).all()

    def assert_unique_name(self, name: str, id: int | None = None) -> None:
        query = self.managed_resources().filter(Resource.name == name)

        if id is not None:
            query = query.filter(Resource.id != id)

        if self.session.query(query.exists()).scalar():
            raise errors.ValidationError(
                f'A resource named {name!r} already exists'
            )

    def add_resource(
        self,
        actor: Actor,
        name: str,
        location: str,
        specification: str = '',
        data: dict[str, Any] | None = None,
        status: ResourceStatus = 'available'
    ) -> Resource:
        """ Adds a computer to the lab. """

        require_admin(actor)

        name = (name or '').strip()
        location = (location or '').strip()

        if not name:
            raise errors.ValidationError('A resource needs a name')

        if not location:
            raise errors.ValidationError('A resource needs a location')

        if status not in ('available', 'maintenance'):
            raise errors.ValidationError(f'Invalid status {status!r}')

        self.assert_unique_name(name)

        resource = Resource()
        resource.lab = self.scheduler.lab
        resource.name = name
        resource.location = location
        resource.specification = specification or ''
        resource.status = status
        resource.data = data or {}

        self.session.add(resource)
        self.session.flush()
        self.commit()

        log.info('Added resource %s (%s)', resource.id, name)

        return resource

    def update_resource(
        self,
        actor: Actor,
        id: int,
        **fields: Any
    ) -> Resource:
        """ Changes the given fields (name, location, specification, data)
        of a resource.

        """

        require_admin(actor)

        unknown = set(fields) - set(EDITABLE_FIELDS)
        if unknown:
            raise errors.ValidationError(
                f'Cannot change {", ".join(sorted(unknown))}'
            )

        for field in ('name', 'location'):
            if field in fields:
                fields[field] = (fields[field] or '').strip()
                if not fields[field]:
                    raise errors.ValidationError(f'A resource needs a {field}')

        with self.scheduler.serialized(id) as operation:
            resource = operation.resource

            if 'name' in fields:
                self.assert_unique_name(fields['name'], id)

            for field, value in fields.items():
                setattr(resource, field, value)

        return resource

    def set_maintenance(
        self,
        actor: Actor,
        id: int,
        maintenance: bool = True
    ) -> Resource:
        """ Puts a resource under maintenance (or back into service).

        Existing reservations are left untouched, new ones are refused
        while the resource is under maintenance.

        """

        require_admin(actor)

        with self.scheduler.serialized(id) as operation:
            resource = operation.resource
            resource.status = 'maintenance' if maintenance else 'available'

        log.info('Resource %s is now %s', id, resource.status)

        return resource

    def remove_resource(self, actor: Actor, id: int) -> None:
        """ Removes a resource together with its past reservations.

        Refused with :class:`labres.modules.errors.ResourceInUse` as long as
        a pending or a not yet completed approved reservation exists.

        """

        require_admin(actor)

        with self.scheduler.serialized(id) as operation:
            resource = operation.resource
            now = self.clock.now()

            query = self.session.query(Reservation)
            query = query.filter(Reservation.resource_id == id)
            query = query.filter(
                Reservation.status.in_(('pending', 'approved'))
            )

            for reservation in query.order_by(Reservation.start_date):
                if not reservation.is_completed(now):
                    raise errors.ResourceInUse(
                        reservation,
                        f'Resource {id} is still used by reservation '
                        f'{reservation.id}'
                    )

            # the past reservations go with the resource
            self.session.delete(resource)

        log.info('Removed resource %s', id)

    def availability(
        self,
        now: datetime | None = None
    ) -> list[ResourceAvailability]:
        """ Returns the composite status and the next available window of
        each resource, ordered by name.

        The next window is searched from now on for the number of days
        given by the ``availability_horizon`` setting, within the opening
        hours and skipping the closed weekdays. It is the first free gap
        which is at least as long as the ``min_booking_duration``.

        """

        now = now or self.clock.now()
        timezone = self.scheduler.timezone
        local = sedate.to_timezone(now, timezone)
        today = local.date()
        current = local.time().replace(second=0, microsecond=0)

        horizon = self.context.get_setting('availability_horizon', 0)
        last = today + timedelta(days=horizon)

        resources = self.resources()

        query = self.session.query(Reservation)
        query = query.filter(Reservation.status == 'approved')
        query = query.filter(
            Reservation.resource_id.in_([r.id for r in resources])
        )
        query = self.queries.reservations_in_range(query, today, last)
        query = self.queries.with_releases(query)

        by_resource: dict[int, list[Reservation]] = {}
        for reservation in query:
            by_resource.setdefault(reservation.resource_id, []).append(
                reservation
            )

        result = []
        for resource in resources:
            if resource.under_maintenance:
                result.append(
                    ResourceAvailability(resource, 'maintenance', None)
                )
                continue

            reservations = by_resource.get(resource.id, [])
            booked = any(
                today in r.occupied_dates()
                and r.start_time <= current < r.end_time
                for r in reservations
            )

            result.append(ResourceAvailability(
                resource,
                'booked' if booked else 'available',
                self.next_window(reservations, today, last, current)
            ))

        return result

    def next_window(
        self,
        reservations: Sequence[Reservation],
        first: date,
        last: date,
        current: time
    ) -> Window | None:

        opening = self.context.get_setting('opening_time', time(0, 0))
        closing = self.context.get_setting('closing_time', time(23, 59))
        closed = self.context.get_setting('closed_weekdays', ())
        minimum = self.context.get_setting('min_booking_duration', 1)

        for day in utils.daterange(first, last):
            if day.weekday() in closed:
                continue

            start = max(opening, current) if day == first else opening

            occupied = [
                r.window for r in reservations
                if day in r.occupied_dates()
            ]

            for gap_start, gap_end in utils.free_windows(
                occupied, start, closing
            ):
                if utils.window_minutes(gap_start, gap_end) >= minimum:
                    return Window(day, gap_start, gap_end)

        return None

    def search(self, term: str) -> list[Resource]:
        """ Finds resources by name, location or specification. """
        term = f'%{term.lower()}%'

        query = self.managed_resources().filter(or_(
            func.lower(Resource.name).like(term),
            func.lower(Resource.location).like(term),
            func.lower(Resource.specification).like(term)
        ))

        return query.order_by(Resource.name).all()

from __future__ import annotations

import logging

from contextlib import contextmanager
from datetime import date, timedelta

from labres.context.core import ContextServicesMixin
from labres.db.conflicts import ConflictChecker
from labres.db.models import ORMBase, Notification, Release, ReleasedDay
from labres.db.models import Reservation, Resource
from labres.db.notifications import Notifications
from labres.db.queries import Queries
from labres.db.releases import ReleaseManager
from labres.db.resources import ResourceRegistry
from labres.modules import errors
from labres.modules import events
from labres.modules import utils
from labres.modules.auth import assert_valid_actor
from labres.modules.auth import require_admin
from labres.modules.auth import require_owner_or_admin
from labres.modules.policy import Candidate


from typing import Any
from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from collections.abc import Callable
    from collections.abc import Iterable
    from collections.abc import Iterator
    from datetime import time
    from sqlalchemy.orm import Query
    from typing_extensions import Self
    from uuid import UUID

    from labres.context.core import Context
    from labres.db.models.notification import NotificationKind
    from labres.db.models.release import ReleaseStatus
    from labres.db.models.reservation import DisplayStatus
    from labres.db.releases import ReleasedSlot
    from labres.db.resources import ResourceAvailability
    from labres.modules.auth import Actor


log = logging.getLogger('labres')


def describe(reservation: Reservation) -> str:
    """ Describes when a reservation takes place, for notifications. """

    window = f'{reservation.start_time:%H:%M}-{reservation.end_time:%H:%M}'

    if reservation.start_date == reservation.end_date:
        dates = f'on {reservation.start_date:%Y-%m-%d}'
    else:
        dates = (
            f'from {reservation.start_date:%Y-%m-%d} '
            f'to {reservation.end_date:%Y-%m-%d}'
        )

    return f'{reservation.resource.name} {dates}, {window}'


class Operation:
    """ A change made under the lock of a resource, see
    :meth:`Scheduler.serialized`.

    Collects the notifications written and the events to fire once the
    change has been committed.

    """

    def __init__(self, scheduler: Scheduler, resource: Resource):
        self.scheduler = scheduler
        self.resource = resource
        self.notifications: list[Notification] = []
        self.callbacks: list[
            tuple[Callable[..., object], tuple[Any, ...], dict[str, Any]]
        ] = []

    def notify(
        self,
        kind: NotificationKind,
        user: str,
        message: str,
        reservation: Reservation | None = None,
        release: Release | None = None
    ) -> Notification:
        notification = self.scheduler.notifications.record(
            kind, user, message, reservation=reservation, release=release
        )
        self.notifications.append(notification)

        return notification

    def after_commit(
        self,
        callback: Callable[..., object],
        *args: Any,
        **kwargs: Any
    ) -> None:
        self.callbacks.append((callback, args, kwargs))


class Scheduler(ContextServicesMixin):
    """ The Scheduler manages the computers of a lab and their reservations.
    It is the main part of the API.

    Every change is committed by the method making it. A method either
    completes and commits, or raises and leaves the database untouched.

    """

    def __init__(
        self,
        context: Context,
        name: str,
        timezone: str,
        reservation_cls: type[Reservation] = Reservation
    ):
        """ Initializeds a new Scheduler instance.

        :context:
            The :class:`labres.context.core.Context` this scheduler should
            operate on. Acquire a context by using
            :func:`labres.context.registry.Registry.register_context`.

        :name:
            The name of the lab. The context name and the name of the
            scheduler are used to generate the lab uuid in the database.
            To access the data you generated with a scheduler use the same
            context name and scheduler name together.

        :timezone:
            The timezone of the lab. Dates and times of reservations are
            local to the lab, this timezone decides when a reservation is
            completed and which dates lie in the past.

            This timezone cannot change after reservations have been
            created, the existing reservations keep the timezone they were
            created with.
        """

        assert isinstance(timezone, str)

        self.context = context
        self.queries = Queries(context)

        self.name = name
        self.timezone = timezone

        self.reservation_cls = reservation_cls

        self.conflicts = ConflictChecker(context)
        self.notifications = Notifications(context)
        self.resources = ResourceRegistry(self)
        self.releases = ReleaseManager(self)

    def clone(self) -> Self:
        """ Clones the scheduler. The result will be a new scheduler using the
        same context, name, settings and attributes.

        """

        return self.__class__(
            self.context,
            self.name,
            self.timezone,
            self.reservation_cls
        )

    def clear_cache(self) -> None:
        super().clear_cache()

        for component in (
            self.queries,
            self.conflicts,
            self.notifications,
            self.resources,
            self.releases
        ):
            component.clear_cache()

    @property
    def lab(self) -> UUID:
        """ The lab that belongs to this scheduler. The lab is a uuid
        created from the name and context of this scheduler, based on the
        namespace uuid defined in :ref:`settings.uuid_namespace`

        """
        return self.generate_uuid(self.name)

    def setup_database(self) -> None:
        """ Creates the tables and indices required for labres. This needs
        to be called once per database. Multiple invocations won't hurt but
        they are unnecessary.

        """
        ORMBase.metadata.create_all(self.session.bind)
        self.commit()

    def managed_resources(self) -> Query[Resource]:
        """ The resources managed by this scheduler / lab. """
        return self.resources.managed_resources()

    def managed_reservations(self) -> Query[Reservation]:
        """ The reservations managed by this scheduler / lab. """
        ids = self.managed_resources().with_entities(Resource.id)

        query = self.session.query(self.reservation_cls)
        query = query.filter(self.reservation_cls.resource_id.in_(ids))

        return query

    def managed_releases(self) -> Query[Release]:
        """ The releases managed by this scheduler / lab. """
        return self.releases.managed_releases()

    def managed_notifications(self) -> Query[Notification]:
        """ The notifications about reservations of this lab. """
        ids = self.managed_reservations().with_entities(Reservation.id)

        query = self.session.query(Notification)
        query = query.filter(Notification.reservation_id.in_(ids))

        return query

    def extinguish_managed_records(self) -> None:
        """ WARNING:
        Completely removes any trace of the records managed by this scheduler.
        That means all notifications, releases, reservations and resources!

        """
        releases = self.managed_releases().with_entities(Release.id)

        self.managed_notifications().delete('fetch')
        self.session.query(ReleasedDay).filter(
            ReleasedDay.release_id.in_(releases)
        ).delete('fetch')
        self.session.query(Release).filter(
            Release.id.in_(releases)
        ).delete('fetch')
        self.managed_reservations().delete('fetch')
        self.managed_resources().delete('fetch')

    @contextmanager
    def serialized(self, resource_id: int) -> Iterator[Operation]:
        """ Runs a change of the given resource, or its reservations, in
        isolation from other changes of the same resource.

        Within this process, a lock per resource is acquired. Across
        processes, the resource row is locked (SELECT ... FOR UPDATE on
        PostgreSQL). The change is committed before the lock is released,
        so the next operation on the resource sees it. Any error rolls the
        change back.

        Once committed, the recorded notifications are handed to the
        emitter and the collected events are fired::

            with scheduler.serialized(resource.id) as operation:
                ...
                operation.notify('reservation_created', owner, message)

        """

        with self.resource_locks.lock(resource_id):
            try:
                operation = Operation(self, self.lock_resource(resource_id))
                yield operation
                self.session.flush()
                self.commit()
            except Exception:
                self.rollback()
                raise

        self.notifications.dispatch(operation.notifications)

        for callback, args, kwargs in operation.callbacks:
            callback(*args, **kwargs)

    def lock_resource(self, resource_id: int) -> Resource:
        query = self.managed_resources().filter(Resource.id == resource_id)
        query = query.execution_options(populate_existing=True)
        resource = query.with_for_update().one_or_none()

        if resource is None:
            raise errors.UnknownResource(f'Unknown resource {resource_id}')

        return resource

    def _prepare_range(
        self,
        dates: date | tuple[date, date]
    ) -> tuple[date, date]:
        if isinstance(dates, date):
            start = end = dates
        else:
            start, end = dates

        if start > end:
            raise errors.InvalidDateRange(
                'The start date must not be after the end date'
            )

        return start, end

    def _prepare_window(self, times: tuple[time, time]) -> tuple[time, time]:
        start, end = times

        if start >= end:
            raise errors.InvalidTimeWindow(
                'The start time must be before the end time'
            )

        return start, end

    def _check_policy(self, candidate: Candidate) -> None:
        self.policy.check(candidate, self.clock.today(self.timezone))

    def resource_by_id(self, id: int) -> Resource:
        return self.resources.resource_by_id(id)

    def reservation_by_id(self, id: int) -> Reservation:
        query = self.managed_reservations()
        query = query.filter(self.reservation_cls.id == id)
        reservation = query.one_or_none()

        if reservation is None:
            raise errors.UnknownReservation(f'Unknown reservation {id}')

        return reservation

    def release_by_id(self, id: int) -> Release:
        return self.releases.release_by_id(id)

    def check_conflict(
        self,
        resource_id: int,
        dates: date | tuple[date, date],
        times: tuple[time, time],
        owner: str | None = None
    ) -> Reservation | None:
        """ Returns the approved reservation which would prevent a
        reservation of the resource with the given dates and times, or None.

        """
        self.resource_by_id(resource_id)

        return self.conflicts.check_conflict(
            resource_id,
            self._prepare_range(dates),
            self._prepare_window(times),
            owner=owner
        )

    def reserve(
        self,
        actor: Actor,
        resource_id: int,
        dates: date | tuple[date, date],
        times: tuple[time, time],
        reason: str,
        data: dict[str, Any] | None = None
    ) -> Reservation:
        """ Requests a reservation of a computer. The reservation is pending
        until an administrator approves it.

        :actor:
            The :class:`labres.modules.auth.Actor` requesting the
            reservation, who will own it.

        :resource_id:
            The id of the computer to reserve.

        :dates:
            A single date or a tuple with the first and the last date
            (inclusive).

        :times:
            A tuple with the start and the end time of the daily window.
            The window applies to each date of the reservation.

        :reason:
            What the computer is needed for, required.

        :data:
            Any data to store with the reservation, e.g. the required
            memory. Has to be JSON serializable.

        Pending reservations are not checked against each other. Several
        users may request the same computer at the same time, the
        first one approved wins.

        """

        assert_valid_actor(actor)

        start_date, end_date = self._prepare_range(dates)
        start_time, end_time = self._prepare_window(times)

        reason = (reason or '').strip()
        if not reason:
            raise errors.ReasonRequired('A reservation needs a reason')

        with self.serialized(resource_id) as operation:
            resource = operation.resource

            if resource.under_maintenance:
                raise errors.ResourceUnderMaintenance(
                    f'{resource.name} is under maintenance'
                )

            self._check_policy(
                Candidate(start_date, end_date, start_time, end_time)
            )

            reservation = self.reservation_cls()
            reservation.owner = actor.id
            reservation.resource = resource
            reservation.start_date = start_date
            reservation.end_date = end_date
            reservation.start_time = start_time
            reservation.end_time = end_time
            reservation.timezone = self.timezone
            reservation.reason = reason
            reservation.status = 'pending'
            reservation.data = data or {}

            self.session.add(reservation)
            self.session.flush()

            operation.notify(
                'reservation_created',
                reservation.owner,
                f'Your reservation of {describe(reservation)} has been '
                f'requested and awaits approval.',
                reservation=reservation
            )
            operation.after_commit(
                events.on_reservation_created, self.context, reservation
            )

        log.info(
            'Reservation %s requested by %s', reservation.id, actor.id
        )

        return reservation

    def approve_reservation(
        self,
        actor: Actor,
        reservation_id: int
    ) -> Reservation:
        """ Approves a pending reservation.

        Raises a :class:`labres.modules.errors.ConflictError` if an approved
        reservation occupies the same computer at the same time. Dates
        released by other users are taken over by the approved reservation
        (see :meth:`labres.db.releases.ReleaseManager.reclaim`).

        """

        require_admin(actor)

        reservation = self.reservation_by_id(reservation_id)

        with self.serialized(reservation.resource_id) as operation:
            self.session.refresh(reservation)

            if reservation.status != 'pending':
                raise errors.IllegalStateTransitionError(
                    reservation.status, 'approved'
                )

            self.conflicts.check(
                reservation.resource_id,
                list(reservation.dates()),
                reservation.window,
                exclude=reservation.id,
                owner=reservation.owner
            )

            reservation.status = 'approved'
            reservation.status_reason = None

            self.releases.reclaim(reservation, operation)

            operation.notify(
                'reservation_status_changed',
                reservation.owner,
                f'Your reservation of {describe(reservation)} has been '
                f'approved.',
                reservation=reservation
            )
            operation.after_commit(
                events.on_reservation_approved, self.context, reservation
            )

        log.info('Reservation %s approved by %s', reservation.id, actor.id)

        return reservation

    def reject_reservation(
        self,
        actor: Actor,
        reservation_id: int,
        reason: str
    ) -> Reservation:
        """ Rejects a pending reservation, telling the owner why. """

        require_admin(actor)

        reason = (reason or '').strip()
        if not reason:
            raise errors.ReasonRequired('A rejection needs a reason')

        reservation = self.reservation_by_id(reservation_id)

        with self.serialized(reservation.resource_id) as operation:
            self.session.refresh(reservation)

            if reservation.status != 'pending':
                raise errors.IllegalStateTransitionError(
                    reservation.status, 'rejected'
                )

            reservation.status = 'rejected'
            reservation.status_reason = reason

            operation.notify(
                'reservation_status_changed',
                reservation.owner,
                f'Your reservation of {describe(reservation)} has been '
                f'rejected. Reason: {reason}',
                reservation=reservation
            )
            operation.after_commit(
                events.on_reservation_rejected, self.context, reservation
            )

        log.info('Reservation %s rejected by %s', reservation.id, actor.id)

        return reservation

    def cancel_reservation(
        self,
        actor: Actor,
        reservation_id: int,
        reason: str | None = None
    ) -> Reservation:
        """ Cancels a pending or approved reservation.

        The owner may cancel without giving a reason. An administrator
        cancelling the reservation of someone else revokes it and has to
        give a reason. Open releases of the reservation are cancelled
        as well.

        """

        assert_valid_actor(actor)

        reservation = self.reservation_by_id(reservation_id)
        require_owner_or_admin(actor, reservation.owner)

        reason = (reason or '').strip() or None
        revoke = not actor.owns(reservation.owner)

        if revoke and not reason:
            raise errors.ReasonRequired(
                'A reason is required to revoke a reservation'
            )

        with self.serialized(reservation.resource_id) as operation:
            self.session.refresh(reservation)

            now = self.clock.now()
            if reservation.status not in ('pending', 'approved') or (
                reservation.is_completed(now)
            ):
                raise errors.IllegalStateTransitionError(
                    reservation.display_status(now), 'cancelled'
                )

            reservation.status = 'cancelled'
            reservation.status_reason = reason

            for release in reservation.releases:
                if release.is_open:
                    self.releases.close(
                        release, 'The reservation was cancelled', operation
                    )

            if revoke:
                message = (
                    f'Your reservation of {describe(reservation)} has been '
                    f'revoked. Reason: {reason}'
                )
            else:
                message = (
                    f'Your reservation of {describe(reservation)} has been '
                    f'cancelled.'
                )

            operation.notify(
                'reservation_status_changed',
                reservation.owner,
                message,
                reservation=reservation
            )
            operation.after_commit(
                events.on_reservation_cancelled, self.context, reservation
            )

        log.info(
            'Reservation %s %s by %s',
            reservation.id, revoke and 'revoked' or 'cancelled', actor.id
        )

        return reservation

    def extend_reservation(
        self,
        actor: Actor,
        reservation_id: int,
        new_end_date: date | None = None,
        new_end_time: time | None = None
    ) -> Reservation:
        """ Moves the end of an approved reservation forward.

        Either the last date, the end of the daily window, or both may be
        moved. Neither may move backwards. Only what is added is checked
        for conflicts: the new dates with the whole window and, if the
        window grows, the added part of the window on the existing dates.

        The reservation keeps its id.

        """

        require_admin(actor)

        if new_end_date is None and new_end_time is None:
            raise errors.InvalidExtension('Nothing to extend')

        reservation = self.reservation_by_id(reservation_id)

        with self.serialized(reservation.resource_id) as operation:
            self.session.refresh(reservation)

            now = self.clock.now()
            if reservation.status != 'approved' or (
                reservation.is_completed(now)
            ):
                raise errors.IllegalStateTransitionError(
                    reservation.display_status(now), 'approved'
                )

            old_end_date = reservation.end_date
            old_end_time = reservation.end_time
            if new_end_date is None:
                new_end_date = old_end_date
            if new_end_time is None:
                new_end_time = old_end_time

            if new_end_date < old_end_date or new_end_time < old_end_time:
                raise errors.InvalidExtension(
                    'A reservation cannot be shortened'
                )

            if (new_end_date, new_end_time) == (old_end_date, old_end_time):
                return reservation

            self._check_policy(Candidate(
                reservation.start_date,
                new_end_date,
                reservation.start_time,
                new_end_time
            ))

            added_dates = list(utils.daterange(
                old_end_date + timedelta(days=1), new_end_date
            ))
            self.conflicts.check(
                reservation.resource_id,
                added_dates,
                (reservation.start_time, new_end_time),
                exclude=reservation.id,
                owner=reservation.owner
            )

            # released dates return to the reservation if their release
            # is cancelled, so they get the added slice as well
            if new_end_time > old_end_time:
                self.conflicts.check(
                    reservation.resource_id,
                    reservation.occupied_dates()
                    | reservation.released_dates(),
                    (old_end_time, new_end_time),
                    exclude=reservation.id,
                    owner=reservation.owner
                )

            reservation.end_date = new_end_date
            reservation.end_time = new_end_time

            operation.notify(
                'reservation_extended',
                reservation.owner,
                f'Your reservation has been extended to '
                f'{describe(reservation)}.',
                reservation=reservation
            )
            operation.after_commit(
                events.on_reservation_extended,
                self.context,
                reservation,
                old_end=(old_end_date, old_end_time),
                new_end=(new_end_date, new_end_time)
            )

        log.info(
            'Reservation %s extended to %s %s by %s',
            reservation.id, new_end_date, new_end_time, actor.id
        )

        return reservation

    def reservations_by_owner(
        self,
        owner: str,
        status: DisplayStatus | None = None
    ) -> list[Reservation]:
        query = self.managed_reservations()
        query = query.filter(self.reservation_cls.owner == owner)
        query = query.order_by(
            self.reservation_cls.start_date, self.reservation_cls.id
        )

        return self._with_display_status(query, status)

    def reservations_by_resource(
        self,
        resource_id: int,
        status: DisplayStatus | None = None
    ) -> list[Reservation]:
        """ Returns the reservations of the resource, ordered by date.

        The status is the status as displayed, approved reservations which
        are over are found with ``'completed'``, not with ``'approved'``.

        """
        query = self.managed_reservations()
        query = query.filter(self.reservation_cls.resource_id == resource_id)
        query = query.order_by(
            self.reservation_cls.start_date, self.reservation_cls.id
        )

        return self._with_display_status(query, status)

    def _with_display_status(
        self,
        query: Query[Reservation],
        status: DisplayStatus | None
    ) -> list[Reservation]:

        if status is None:
            return query.all()

        stored = 'approved' if status == 'completed' else status
        query = query.filter(self.reservation_cls.status == stored)

        now = self.clock.now()
        return [r for r in query if r.display_status(now) == status]

    def reservations_in_range(
        self,
        resource_id: int,
        start: date,
        end: date
    ) -> Query[Reservation]:
        """ The reservations of the resource touching the given dates. """
        query = self.managed_reservations()
        query = query.filter(self.reservation_cls.resource_id == resource_id)
        query = self.queries.reservations_in_range(query, start, end)

        return query.order_by(self.reservation_cls.start_date)

    def resources_with_availability(self) -> list[ResourceAvailability]:
        return self.resources.availability()

    def releases_by_resource(
        self,
        resource_id: int,
        status: ReleaseStatus | None = None
    ) -> list[Release]:
        return self.releases.releases_by_resource(resource_id, status).all()

    def releases_by_reservation(self, reservation_id: int) -> list[Release]:
        return self.releases.releases_by_reservation(reservation_id).all()

    def releases_by_owner(self, owner: str) -> list[Release]:
        return self.releases.releases_by_owner(owner).all()

    def available_released_days(
        self,
        resource_id: int,
        start: date,
        end: date
    ) -> list[ReleasedSlot]:
        return self.releases.available_days(resource_id, start, end)

    def create_release(
        self,
        actor: Actor,
        reservation_id: int,
        dates: Iterable[date | str],
        reason: str
    ) -> Release:
        return self.releases.create_release(
            actor, reservation_id, dates, reason
        )

    def cancel_release(
        self,
        actor: Actor,
        release_id: int,
        reason: str | None = None
    ) -> Release:
        return self.releases.cancel_release(actor, release_id, reason)

    def notifications_by_user(self, user: str) -> list[Notification]:
        return self.notifications.by_user(user).all()

    def undelivered_notifications(self) -> list[Notification]:
        return self.notifications.undelivered().all()

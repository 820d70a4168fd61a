from __future__ import annotations

import logging

from datetime import date
from sqlalchemy import func

from labres.context.core import ContextServicesMixin
from labres.db.models import Release, ReleasedDay, Reservation, Resource
from labres.db.queries import Queries
from labres.modules import errors
from labres.modules import events
from labres.modules.auth import assert_valid_actor
from labres.modules.auth import require_owner
from labres.modules.auth import require_owner_or_admin


from typing import NamedTuple
from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from collections.abc import Iterable
    from datetime import time
    from sqlalchemy.orm import Query

    from labres.db.models.release import ReleaseStatus
    from labres.db.scheduler import Operation, Scheduler
    from labres.modules.auth import Actor


log = logging.getLogger('labres')


class ReleasedSlot(NamedTuple):
    """ A date given back by the owner of a reservation and still bookable
    by others, with the daily window of that reservation.

    """

    day: date
    start_time: time
    end_time: time
    reservation_id: int
    release_id: int


def parse_dates(dates: Iterable[date | str]) -> set[date]:
    result = set()

    for value in dates:
        if isinstance(value, str):
            try:
                value = date.fromisoformat(value)
            except ValueError as e:
                raise errors.InvalidReleaseDates(
                    f'Invalid date {value!r}'
                ) from e

        result.add(value)

    return result


def format_dates(dates: Iterable[date]) -> str:
    return ', '.join(f'{d:%Y-%m-%d}' for d in sorted(dates))


class ReleaseManager(ContextServicesMixin):
    """ Lets the owner of an approved reservation give back some of its
    dates, so others may book the computer on these dates.

    The released dates stay with the reservation until another reservation
    is approved on them. From then on they belong to that reservation for
    good, see :meth:`reclaim`.

    """

    def __init__(self, scheduler: Scheduler):
        self.scheduler = scheduler
        self.context = scheduler.context
        self.queries = Queries(scheduler.context)

    def managed_releases(self) -> Query[Release]:
        """ The releases managed by this scheduler / lab. """
        query = self.session.query(Release)
        query = query.join(
            Reservation, Release.reservation_id == Reservation.id
        )
        query = query.join(Resource, Reservation.resource_id == Resource.id)
        query = query.filter(Resource.lab == self.scheduler.lab)

        return query

    def release_by_id(self, id: int) -> Release:
        query = self.managed_releases().filter(Release.id == id)
        release = query.one_or_none()

        if release is None:
            raise errors.UnknownRelease(f'Unknown release {id}')

        return release

    def releases_by_reservation(self, reservation_id: int) -> Query[Release]:
        query = self.managed_releases()
        query = query.filter(Release.reservation_id == reservation_id)

        return query.order_by(Release.number)

    def releases_by_resource(
        self,
        resource_id: int,
        status: ReleaseStatus | None = None
    ) -> Query[Release]:
        query = self.managed_releases()
        query = query.filter(Reservation.resource_id == resource_id)

        if status is not None:
            query = query.filter(Release.status == status)

        return query.order_by(Reservation.start_date, Release.number)

    def releases_by_owner(self, owner: str) -> Query[Release]:
        query = self.managed_releases()
        query = query.filter(Release.owner == owner)

        return query.order_by(Release.created, Release.id)

    def available_days(
        self,
        resource_id: int,
        start: date,
        end: date
    ) -> list[ReleasedSlot]:
        """ Returns the released days of the resource which may be booked
        by others, ordered by date.

        """
        query = self.queries.open_released_days(resource_id, start, end)
        query = query.add_entity(Reservation)

        return [
            ReleasedSlot(
                released.day,
                reservation.start_time,
                reservation.end_time,
                reservation.id,
                released.release_id
            ) for released, reservation in query
        ]

    def next_number(self, reservation: Reservation) -> int:
        query = self.session.query(func.max(Release.number))
        query = query.filter(Release.reservation_id == reservation.id)

        return (query.scalar() or 0) + 1

    def create_release(
        self,
        actor: Actor,
        reservation_id: int,
        dates: Iterable[date | str],
        reason: str
    ) -> Release:
        """ Gives back the given dates of an approved reservation.

        :dates:
            The dates to give back. They must lie within the reservation,
            must not be in the past and must not be part of another release
            of the same reservation.

        :reason:
            Why the dates are given back, required.

        """

        assert_valid_actor(actor)

        reason = (reason or '').strip()
        if not reason:
            raise errors.ReasonRequired('A release needs a reason')

        requested = parse_dates(dates)
        if not requested:
            raise errors.InvalidReleaseDates('No dates to release')

        reservation = self.scheduler.reservation_by_id(reservation_id)
        require_owner(actor, reservation.owner)

        with self.scheduler.serialized(reservation.resource_id) as operation:
            self.session.refresh(reservation)

            now = self.clock.now()
            if reservation.status != 'approved' or (
                reservation.is_completed(now)
            ):
                raise errors.IllegalStateTransitionError(
                    reservation.display_status(now), 'released'
                )

            outside = {d for d in requested if not reservation.includes(d)}
            if outside:
                raise errors.InvalidReleaseDates(
                    f'Not part of the reservation: {format_dates(outside)}'
                )

            today = self.clock.today(reservation.timezone)
            past = {d for d in requested if d < today}
            if past:
                raise errors.InvalidReleaseDates(
                    f'Cannot release past dates: {format_dates(past)}'
                )

            taken = requested & reservation.given_away_dates()
            if taken:
                raise errors.InvalidReleaseDates(
                    f'Already released: {format_dates(taken)}'
                )

            release = Release()
            release.owner = reservation.owner
            release.number = self.next_number(reservation)
            release.reason = reason
            release.status = 'active'
            release.days = [ReleasedDay(d) for d in sorted(requested)]

            reservation.releases.append(release)
            self.session.flush()

            operation.notify(
                'release_created',
                release.owner,
                f'Release #{release.number} of {reservation.title!r} on '
                f'{reservation.resource.name}: the dates '
                f'{format_dates(requested)} are open to others.',
                release=release
            )
            operation.after_commit(
                events.on_release_created, self.context, release
            )

        log.info(
            'Reservation %s released %s',
            reservation.id, format_dates(requested)
        )

        return release

    def cancel_release(
        self,
        actor: Actor,
        release_id: int,
        reason: str | None = None
    ) -> Release:
        """ Cancels a release. The dates nobody reclaimed go back to the
        reservation, the reclaimed dates stay with their new reservation.

        An administrator cancelling the release of someone else has to give
        a reason.

        """

        assert_valid_actor(actor)

        release = self.release_by_id(release_id)
        require_owner_or_admin(actor, release.owner)

        reason = (reason or '').strip() or None
        if not actor.owns(release.owner) and not reason:
            raise errors.ReasonRequired(
                'A reason is required to cancel the release of someone else'
            )

        reservation = release.reservation

        with self.scheduler.serialized(reservation.resource_id) as operation:
            self.session.refresh(release)

            if release.status == 'cancelled':
                raise errors.IllegalStateTransitionError(
                    release.status, 'cancelled'
                )

            self.close(release, reason, operation)

        log.info('Release %s cancelled', release.id)

        return release

    def close(
        self,
        release: Release,
        reason: str | None,
        operation: Operation
    ) -> None:
        """ Cancels an open release within the given operation. """

        assert release.is_open

        release.status = 'cancelled'
        release.status_reason = reason

        message = (
            f'Release #{release.number} of {release.reservation.title!r} '
            f'has been cancelled.'
        )
        if reason:
            message = f'{message} Reason: {reason}'

        operation.notify(
            'release_cancelled', release.owner, message, release=release
        )
        operation.after_commit(
            events.on_release_cancelled, self.context, release
        )

    def reclaim(
        self,
        reservation: Reservation,
        operation: Operation
    ) -> list[Release]:
        """ Hands the released dates of other users, overlapping with the
        given (just approved) reservation, over to it.

        Returns the releases which lost dates.

        """

        query = self.queries.open_released_days(
            reservation.resource_id,
            reservation.start_date,
            reservation.end_date,
            exclude_owner=reservation.owner
        )
        query = self.queries.reservations_in_window(
            query, reservation.start_time, reservation.end_time
        )

        now = self.clock.now()
        reclaimed: dict[Release, list[date]] = {}

        for released in query:
            released.reclaimed_by_id = reservation.id
            released.reclaimed_at = now
            reclaimed.setdefault(released.release, []).append(released.day)

        for release, dates in reclaimed.items():
            release.update_status()

            operation.notify(
                'release_reclaimed',
                release.owner,
                f'The released dates {format_dates(dates)} of '
                f'{release.reservation.title!r} have been booked by '
                f'someone else.',
                release=release
            )
            operation.after_commit(
                events.on_release_reclaimed,
                self.context,
                release,
                reservation,
                sorted(dates)
            )

            log.info(
                'Reservation %s reclaimed %s of release %s',
                reservation.id, format_dates(dates), release.id
            )

        return list(reclaimed)

from __future__ import annotations

import logging

from labres.context.core import ContextServicesMixin
from labres.db.models import Notification, Release, ReleasedDay, Reservation
from sqlalchemy.orm import selectinload
from sqlalchemy.sql import and_


from typing import TypeVar
from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from collections.abc import Collection
    from datetime import date, time
    from sqlalchemy.orm import Query

    from labres.context.core import Context

_T = TypeVar('_T')


log = logging.getLogger('labres')


class Queries(ContextServicesMixin):
    """ Contains helper methods independent of the lab (as owned by
    :class:`.scheduler.Scheduler`)

    Some contained methods require the current context (for the session).
    Some contained methods do not require any context, they are marked
    as staticmethods.

    """

    def __init__(self, context: Context):
        self.context = context

    @staticmethod
    def reservations_in_range(
        query: Query[_T],
        start: date,
        end: date
    ) -> Query[_T]:
        """ Takes a reservation query and limits it to the reservations
        whose date range intersects with start and end (inclusive).

        """
        return query.filter(
            and_(
                Reservation.start_date <= end,
                start <= Reservation.end_date
            )
        )

    @staticmethod
    def reservations_in_window(
        query: Query[_T],
        start: time,
        end: time
    ) -> Query[_T]:
        """ Takes a reservation query and limits it to the reservations
        whose daily window intersects with [start, end).

        """
        return query.filter(
            and_(
                Reservation.start_time < end,
                start < Reservation.end_time
            )
        )

    @staticmethod
    def with_releases(query: Query[_T]) -> Query[_T]:
        """ Eagerly loads the releases (and their days) of the reservations
        returned by the query, replacing stale copies in the session.

        """
        query = query.options(
            selectinload(Reservation.releases).selectinload(Release.days)
        )
        return query.execution_options(populate_existing=True)

    def approved_reservations(
        self,
        resource_id: int,
        start: date,
        end: date,
        start_time: time | None = None,
        end_time: time | None = None
    ) -> Query[Reservation]:
        """ Returns the approved reservations of the resource in the given
        date range and, if given, the given daily window.

        """
        query = self.session.query(Reservation)
        query = query.filter(Reservation.resource_id == resource_id)
        query = query.filter(Reservation.status == 'approved')
        query = self.reservations_in_range(query, start, end)

        if start_time is not None and end_time is not None:
            query = self.reservations_in_window(query, start_time, end_time)

        query = self.with_releases(query)
        return query.order_by(Reservation.start_date, Reservation.id)

    def open_released_days(
        self,
        resource_id: int,
        start: date,
        end: date,
        exclude_owner: str | None = None
    ) -> Query[ReleasedDay]:
        """ Returns the released days of approved reservations of the
        resource, which have not been reclaimed yet.

        """
        query = self.session.query(ReleasedDay)
        query = query.join(Release, ReleasedDay.release_id == Release.id)
        query = query.join(
            Reservation, Release.reservation_id == Reservation.id
        )
        query = query.filter(Reservation.resource_id == resource_id)
        query = query.filter(Reservation.status == 'approved')
        query = query.filter(Release.status != 'cancelled')
        query = query.filter(ReleasedDay.reclaimed_by_id.is_(None))
        query = query.filter(ReleasedDay.day >= start)
        query = query.filter(ReleasedDay.day <= end)

        if exclude_owner is not None:
            query = query.filter(Release.owner != exclude_owner)

        return query.order_by(ReleasedDay.day, Release.id)

    def notifications_by_user(self, user: str) -> Query[Notification]:
        query = self.session.query(Notification)
        query = query.filter(Notification.user == user)
        return query.order_by(Notification.created)

    def undelivered_notifications(
        self,
        reservation_ids: Collection[int] | None = None
    ) -> Query[Notification]:
        """ Returns the notifications which have not been handed to the
        emitter successfully yet, oldest first.

        """
        query = self.session.query(Notification)
        query = query.filter(Notification.delivered.is_(None))

        if reservation_ids is not None:
            if not reservation_ids:
                log.warning('empty list of reservation ids')

            query = query.filter(
                Notification.reservation_id.in_(reservation_ids)
            )

        return query.order_by(Notification.created)

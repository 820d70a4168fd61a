from __future__ import annotations

import logging

from labres.context.core import ContextServicesMixin
from labres.db.models import Reservation
from labres.db.queries import Queries
from labres.modules import errors
from labres.modules import utils


from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from collections.abc import Collection
    from collections.abc import Iterator
    from datetime import date, time

    from labres.context.core import Context


log = logging.getLogger('labres')


class ConflictChecker(ContextServicesMixin):
    """ Decides whether a set of dates with a daily window may be booked on a
    resource.

    Only approved reservations block. An approved reservation blocks a date
    if it occupies the date (see
    :meth:`labres.db.models.Reservation.occupied_dates`) and its window
    overlaps the requested one. Windows touching at the boundary do not
    overlap.

    Dates released by the owner of a reservation are open to everyone
    except that owner, who keeps being blocked by the reservation.

    The checker reads, it does not lock. Callers have to hold the resource
    lock (see :meth:`labres.db.scheduler.Scheduler.serialized`) between
    checking and writing.

    """

    def __init__(self, context: Context):
        self.context = context
        self.queries = Queries(context)

    def blockers(
        self,
        resource_id: int,
        dates: Collection[date],
        window: tuple[time, time],
        exclude: int | None = None,
        owner: str | None = None
    ) -> Iterator[Reservation]:
        """ Yields the approved reservations blocking any of the given
        dates within the given window, ordered by their start date.

        """
        if not dates:
            return

        query = self.queries.approved_reservations(
            resource_id, min(dates), max(dates), *window
        )

        if exclude is not None:
            query = query.filter(Reservation.id != exclude)

        requested = set(dates)

        for reservation in query:
            occupied = reservation.occupied_dates()

            if owner is not None and reservation.owner == owner:
                occupied |= reservation.released_dates()

            if occupied & requested:
                yield reservation

    def find_conflict(
        self,
        resource_id: int,
        dates: Collection[date],
        window: tuple[time, time],
        exclude: int | None = None,
        owner: str | None = None
    ) -> Reservation | None:
        """ Returns the first blocking reservation or None. """
        for reservation in self.blockers(
            resource_id, dates, window, exclude, owner
        ):
            return reservation

        return None

    def check(
        self,
        resource_id: int,
        dates: Collection[date],
        window: tuple[time, time],
        exclude: int | None = None,
        owner: str | None = None
    ) -> None:
        """ Raises a :class:`labres.modules.errors.ConflictError` naming the
        first blocking reservation, if any.

        :exclude:
            The id of a reservation to ignore (the one being approved or
            extended).

        :owner:
            The user who would hold the dates. Released dates stay blocked
            for the user who released them.

        """
        existing = self.find_conflict(
            resource_id, dates, window, exclude, owner
        )

        if existing is not None:
            log.info(
                'Reservation %s conflicts with %s on resource %s',
                exclude, existing.id, resource_id
            )
            raise errors.ConflictError(existing)

    def check_conflict(
        self,
        resource_id: int,
        date_range: tuple[date, date],
        window: tuple[time, time],
        exclude: int | None = None,
        owner: str | None = None
    ) -> Reservation | None:
        """ Returns the approved reservation blocking the given date range
        and window, or None if the range is free.

        """
        start, end = date_range

        if start > end:
            raise errors.InvalidDateRange(
                'The start date must not be after the end date'
            )

        if window[0] >= window[1]:
            raise errors.InvalidTimeWindow(
                'The start time must be before the end time'
            )

        return self.find_conflict(
            resource_id,
            list(utils.daterange(start, end)),
            window,
            exclude,
            owner
        )

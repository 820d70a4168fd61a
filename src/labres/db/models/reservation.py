from __future__ import annotations

from datetime import date, datetime, time

from sqlalchemy import types
from sqlalchemy.orm import mapped_column
from sqlalchemy.orm import relationship
from sqlalchemy.orm import Mapped
from sqlalchemy.schema import ForeignKey
from sqlalchemy.schema import Index

from labres.db.models.base import ORMBase
from labres.db.models.timestamp import TimestampMixin
from labres.modules import utils


from typing import Any
from typing import Literal
from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from collections.abc import Iterator

    from labres.db.models import Release, Resource


ReservationStatus = Literal['pending', 'approved', 'rejected', 'cancelled']
DisplayStatus = Literal[
    'pending', 'approved', 'rejected', 'cancelled', 'completed'
]
RESERVATION_STATUSES = ('pending', 'approved', 'rejected', 'cancelled')


class Reservation(TimestampMixin, ORMBase):
    """Describes a pending or approved reservation of a resource.

    A reservation covers the dates from ``start_date`` to ``end_date``
    (inclusive) and on each of these dates the window from ``start_time``
    to ``end_time`` (exclusive).

    Completed reservations are not stored as such. An approved reservation
    whose last window lies in the past is reported as completed, see
    :meth:`display_status`.

    """

    __tablename__ = 'reservations'

    id: Mapped[int] = mapped_column(
        primary_key=True,
        autoincrement=True
    )

    owner: Mapped[str] = mapped_column(types.Unicode(254))

    resource_id: Mapped[int] = mapped_column(
        ForeignKey('resources.id'),
        index=True
    )

    start_date: Mapped[date]

    end_date: Mapped[date]

    start_time: Mapped[time]

    end_time: Mapped[time]

    timezone: Mapped[str]

    reason: Mapped[str] = mapped_column(types.Text())

    status: Mapped[ReservationStatus] = mapped_column(
        types.Enum(
            *RESERVATION_STATUSES,
            name='reservation_status'
        ),
        default='pending'
    )

    #: the reason given when rejecting or cancelling
    status_reason: Mapped[str | None] = mapped_column(types.Text())

    #: opaque payload, e.g. the required accelerator memory
    data: Mapped[dict[str, Any]] = mapped_column(nullable=True)

    resource: Mapped[Resource] = relationship(back_populates='reservations')

    releases: Mapped[list[Release]] = relationship(
        back_populates='reservation',
        order_by='Release.number',
        cascade='all, delete-orphan'
    )

    __table_args__ = (
        Index(
            'reservation_resource_status_ix',
            'resource_id', 'status', 'start_date', 'end_date'
        ),
        Index('reservation_owner_ix', 'owner', 'id'),
    )

    def __init__(self) -> None:
        # NOTE: Avoid auto-generated __init__, the mypy plugin is
        #       deprecated and cannot be used with newer versions.
        pass

    def __repr__(self) -> str:
        return (
            f'<Reservation {self.id} {self.status} '
            f'{self.start_date}/{self.end_date} '
            f'{self.start_time:%H:%M}-{self.end_time:%H:%M}>'
        )

    @property
    def window(self) -> tuple[time, time]:
        return self.start_time, self.end_time

    @property
    def date_range(self) -> tuple[date, date]:
        return self.start_date, self.end_date

    def dates(self) -> Iterator[date]:
        """ Yields all dates of the reservation. """
        return utils.daterange(self.start_date, self.end_date)

    def includes(self, day: date) -> bool:
        return self.start_date <= day <= self.end_date

    def display_start(self) -> datetime:
        return utils.localize(self.start_date, self.start_time, self.timezone)

    def display_end(self) -> datetime:
        """ The end of the last window of the reservation. """
        return utils.localize(self.end_date, self.end_time, self.timezone)

    def is_completed(self, now: datetime) -> bool:
        return self.status == 'approved' and self.display_end() <= now

    def display_status(self, now: datetime) -> DisplayStatus:
        if self.is_completed(now):
            return 'completed'
        return self.status

    def given_away_dates(self) -> set[date]:
        """ Returns the dates this reservation no longer occupies.

        These are the dates of its releases, unless the release has been
        cancelled. Dates that have been reclaimed by another reservation
        stay with that reservation, even if their release is cancelled.

        """
        return {
            released.day
            for release in self.releases
            for released in release.days
            if release.status != 'cancelled' or released.is_reclaimed
        }

    def released_dates(self) -> set[date]:
        """ Returns the dates which are currently bookable by others. """
        return {
            day
            for release in self.releases
            if release.status != 'cancelled'
            for day in release.active_dates
        }

    def occupied_dates(self) -> set[date]:
        """ Returns the dates this reservation effectively occupies. """
        return set(self.dates()) - self.given_away_dates()

    @property
    def title(self) -> str:
        return self.reason

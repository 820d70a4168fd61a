from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import types
from sqlalchemy.orm import mapped_column
from sqlalchemy.orm import relationship
from sqlalchemy.orm import Mapped
from sqlalchemy.schema import ForeignKey
from sqlalchemy.schema import Index

from labres.db.models.base import ORMBase
from labres.db.models.timestamp import TimestampMixin


from typing import Literal
from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from labres.db.models import Reservation


ReleaseStatus = Literal['active', 'partially_booked', 'cancelled']
RELEASE_STATUSES = ('active', 'partially_booked', 'cancelled')


class Release(TimestampMixin, ORMBase):
    """ Dates given back by the owner of an approved reservation.

    The release keeps all the dates originally given back as
    :class:`ReleasedDay` records. Once another reservation is approved on
    one of these dates, the day is marked as reclaimed by it. The dates
    still open to others are the original dates minus the reclaimed ones,
    see :attr:`active_dates`.

    """

    __tablename__ = 'releases'

    id: Mapped[int] = mapped_column(
        primary_key=True,
        autoincrement=True
    )

    reservation_id: Mapped[int] = mapped_column(
        ForeignKey('reservations.id')
    )

    owner: Mapped[str] = mapped_column(types.Unicode(254))

    #: the releases of a reservation are numbered, starting at 1
    number: Mapped[int] = mapped_column(default=1)

    reason: Mapped[str] = mapped_column(types.Text())

    status: Mapped[ReleaseStatus] = mapped_column(
        types.Enum(
            *RELEASE_STATUSES,
            name='release_status'
        ),
        default='active'
    )

    status_reason: Mapped[str | None] = mapped_column(types.Text())

    reservation: Mapped[Reservation] = relationship(
        back_populates='releases'
    )

    days: Mapped[list[ReleasedDay]] = relationship(
        back_populates='release',
        order_by='ReleasedDay.day',
        cascade='all, delete-orphan'
    )

    __table_args__ = (
        Index('release_reservation_ix', 'reservation_id', 'number'),
        Index('release_owner_status_ix', 'owner', 'status'),
    )

    def __init__(self) -> None:
        # NOTE: Avoid auto-generated __init__, the mypy plugin is
        #       deprecated and cannot be used with newer versions.
        pass

    def __repr__(self) -> str:
        return f'<Release {self.id} #{self.number} {self.status}>'

    @property
    def dates(self) -> list[date]:
        """ All dates originally given back. """
        return [released.day for released in self.days]

    @property
    def reclaimed_dates(self) -> list[date]:
        return [
            released.day for released in self.days
            if released.is_reclaimed
        ]

    @property
    def active_dates(self) -> list[date]:
        """ The dates still bookable by others. """
        if self.status == 'cancelled':
            return []
        return [
            released.day for released in self.days
            if not released.is_reclaimed
        ]

    @property
    def is_open(self) -> bool:
        return self.status != 'cancelled'

    def update_status(self) -> None:
        """ Derives the status from the reclaimed days. Cancelled releases
        stay cancelled.

        """
        if self.status == 'cancelled':
            return

        # the release is used up once no date is left to others
        if self.days and not self.active_dates:
            self.status = 'partially_booked'
        else:
            self.status = 'active'


class ReleasedDay(ORMBase):
    """ A single date of a release. """

    __tablename__ = 'released_days'

    release_id: Mapped[int] = mapped_column(
        ForeignKey('releases.id'),
        primary_key=True
    )

    day: Mapped[date] = mapped_column(types.Date(), primary_key=True)

    #: the reservation which took this date, if any
    reclaimed_by_id: Mapped[int | None] = mapped_column(
        ForeignKey('reservations.id'),
        index=True
    )

    reclaimed_at: Mapped[datetime | None]

    release: Mapped[Release] = relationship(back_populates='days')

    reclaimed_by: Mapped[Reservation | None] = relationship()

    __table_args__ = (
        Index('released_day_date_ix', 'day'),
    )

    def __init__(self, day: date) -> None:
        self.day = day

    def __repr__(self) -> str:
        return f'<ReleasedDay {self.day} of release {self.release_id}>'

    @property
    def is_reclaimed(self) -> bool:
        return self.reclaimed_by_id is not None

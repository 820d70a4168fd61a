from __future__ import annotations

from uuid import UUID

from sqlalchemy import types
from sqlalchemy.orm import mapped_column
from sqlalchemy.orm import relationship
from sqlalchemy.orm import Mapped
from sqlalchemy.schema import UniqueConstraint

from labres.db.models.base import ORMBase
from labres.db.models.timestamp import TimestampMixin


from typing import Any
from typing import Literal
from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from labres.db.models import Reservation


ResourceStatus = Literal['available', 'maintenance']
RESOURCE_STATUSES = ('available', 'maintenance')


class Resource(TimestampMixin, ORMBase):
    """ A bookable lab computer.

    The status is the operational state set by an administrator. It says
    nothing about reservations: an available computer may well be reserved
    all week. See
    :meth:`labres.db.resources.ResourceRegistry.availability` for the
    combined view.

    """

    __tablename__ = 'resources'

    id: Mapped[int] = mapped_column(
        primary_key=True,
        autoincrement=True
    )

    #: the lab (scheduler) the resource belongs to
    lab: Mapped[UUID] = mapped_column(index=True)

    name: Mapped[str] = mapped_column(types.Unicode(254))

    location: Mapped[str] = mapped_column(types.Unicode(254))

    specification: Mapped[str] = mapped_column(types.Text(), default='')

    status: Mapped[ResourceStatus] = mapped_column(
        types.Enum(
            *RESOURCE_STATUSES,
            name='resource_status'
        ),
        default='available'
    )

    #: opaque payload, e.g. the operating system or the installed software
    data: Mapped[dict[str, Any]] = mapped_column(nullable=True)

    reservations: Mapped[list[Reservation]] = relationship(
        back_populates='resource',
        order_by='Reservation.start_date',
        cascade='all, delete-orphan'
    )

    __table_args__ = (
        UniqueConstraint('lab', 'name', name='resource_name_uq'),
    )

    def __init__(self) -> None:
        # NOTE: Avoid auto-generated __init__, the mypy plugin is
        #       deprecated and cannot be used with newer versions.
        pass

    def __repr__(self) -> str:
        return f'<Resource {self.id} {self.name!r} ({self.status})>'

    @property
    def under_maintenance(self) -> bool:
        return self.status == 'maintenance'

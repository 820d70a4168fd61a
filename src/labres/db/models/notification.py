from __future__ import annotations

import sedate

from datetime import datetime
from uuid import UUID, uuid4 as new_uuid

from sqlalchemy import types
from sqlalchemy.orm import mapped_column
from sqlalchemy.orm import Mapped
from sqlalchemy.schema import Index

from labres.db.models.base import ORMBase


from typing import Literal
from typing import NamedTuple


NotificationKind = Literal[
    'reservation_created',
    'reservation_status_changed',
    'reservation_extended',
    'release_created',
    'release_cancelled',
    'release_reclaimed',
]
NOTIFICATION_KINDS = (
    'reservation_created',
    'reservation_status_changed',
    'reservation_extended',
    'release_created',
    'release_cancelled',
    'release_reclaimed',
)


class NotificationRecord(NamedTuple):
    """ The immutable copy of a notification handed to the emitter. """

    id: UUID
    kind: NotificationKind
    user: str
    reservation_id: int | None
    release_id: int | None
    created: datetime
    message: str


class Notification(ORMBase):
    """ A fact worth telling a user about, written in the same transaction
    as the change it describes.

    Notifications form an outbox. They are handed to the emitter once the
    transaction is committed and stay undelivered if that fails, so a
    worker can retry them later. The id is stable, consumers use it to
    ignore duplicates.

    """

    __tablename__ = 'notifications'

    id: Mapped[UUID] = mapped_column(primary_key=True, default=new_uuid)

    kind: Mapped[NotificationKind] = mapped_column(
        types.Enum(
            *NOTIFICATION_KINDS,
            name='notification_kind'
        )
    )

    #: the user to notify
    user: Mapped[str] = mapped_column(types.Unicode(254))

    reservation_id: Mapped[int | None]

    release_id: Mapped[int | None]

    created: Mapped[datetime] = mapped_column(default=sedate.utcnow)

    message: Mapped[str] = mapped_column(types.Text())

    delivered: Mapped[datetime | None]

    attempts: Mapped[int] = mapped_column(default=0)

    __table_args__ = (
        Index('notification_user_ix', 'user', 'created'),
        Index('notification_delivered_ix', 'delivered', 'created'),
    )

    def __init__(self) -> None:
        # NOTE: Avoid auto-generated __init__, the mypy plugin is
        #       deprecated and cannot be used with newer versions.
        pass

    def __repr__(self) -> str:
        return f'<Notification {self.kind} for {self.user}>'

    @property
    def is_delivered(self) -> bool:
        return self.delivered is not None

    def as_record(self) -> NotificationRecord:
        return NotificationRecord(
            id=self.id,
            kind=self.kind,
            user=self.user,
            reservation_id=self.reservation_id,
            release_id=self.release_id,
            created=self.created,
            message=self.message
        )

from __future__ import annotations

import sedate

from datetime import datetime
from sqlalchemy.orm import declared_attr
from sqlalchemy.orm import mapped_column
from sqlalchemy.orm import Mapped

from labres.db.models.types import UTCDateTime


class TimestampMixin:
    """ Mixin providing created/modified timestamps for all records.

    The columns are deferred loaded as this is primarily for logging and future
    forensics.

    """

    @staticmethod
    def timestamp() -> datetime:
        return sedate.utcnow()

    @declared_attr
    def created(cls) -> Mapped[datetime]:
        return mapped_column(
            UTCDateTime(),
            default=cls.timestamp,
            nullable=False,
            deferred=True
        )

    @declared_attr
    def modified(cls) -> Mapped[datetime | None]:
        return mapped_column(
            UTCDateTime(),
            onupdate=cls.timestamp,
            nullable=True,
            deferred=True
        )

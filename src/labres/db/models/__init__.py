from labres.db.models.base import ORMBase
from labres.db.models.resource import Resource
from labres.db.models.reservation import Reservation
from labres.db.models.release import Release, ReleasedDay
from labres.db.models.notification import Notification


__all__ = (
    'ORMBase',
    'Resource',
    'Reservation',
    'Release',
    'ReleasedDay',
    'Notification',
)

""" The notification outbox.

Every state change worth telling a user about is written as
:class:`labres.db.models.Notification` in the same transaction as the change
itself. Once that transaction is committed, the scheduler hands the new
notifications to the emitter (the ``notification_emitter`` service).

Emitting is fire-and-forget: if the emitter raises, the error is logged and
the notification stays undelivered. It never undoes the committed change.
Undelivered notifications may be retried out of band::

    scheduler.notifications.retry_undelivered()

Emitters receive a :class:`labres.db.models.notification.NotificationRecord`
and may be called more than once for the same record. The record id is
stable, use it to discard duplicates.

"""
from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError
from uuid import uuid4 as new_uuid

from labres.context.core import ContextServicesMixin
from labres.db.models import Notification
from labres.db.queries import Queries
from labres.modules import events


from typing import Protocol
from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from collections.abc import Iterable
    from sqlalchemy.orm import Query

    from labres.context.core import Context
    from labres.db.models import Release, Reservation
    from labres.db.models.notification import NotificationKind
    from labres.db.models.notification import NotificationRecord


log = logging.getLogger('labres')


class Emitter(Protocol):
    def emit(self, notification: NotificationRecord) -> None: ...


class LogEmitter:
    """ The default emitter, writes the notifications to the log. """

    def emit(self, notification: NotificationRecord) -> None:
        log.info(
            'Notification %s (%s) for %s: %s',
            notification.id,
            notification.kind,
            notification.user,
            notification.message
        )


class Notifications(ContextServicesMixin):

    def __init__(self, context: Context):
        self.context = context
        self.queries = Queries(context)

    def record(
        self,
        kind: NotificationKind,
        user: str,
        message: str,
        reservation: Reservation | None = None,
        release: Release | None = None
    ) -> Notification:
        """ Adds a notification to the current transaction. The related
        records have to be flushed already, their ids are stored.

        """
        notification = Notification()
        notification.id = new_uuid()
        notification.kind = kind
        notification.user = user
        notification.message = message
        notification.attempts = 0

        if release is not None:
            notification.release_id = release.id
            notification.reservation_id = release.reservation_id

        if reservation is not None:
            notification.reservation_id = reservation.id

        self.session.add(notification)

        return notification

    def deliver(self, notification: Notification) -> bool:
        """ Hands a single notification to the emitter. Returns True if
        the emitter accepted it.

        """
        notification.attempts += 1

        try:
            self.emitter.emit(notification.as_record())
        except Exception as e:
            log.exception(
                'Failed to emit notification %s (%s) for %s',
                notification.id,
                notification.kind,
                notification.user
            )
            try:
                events.on_notification_failed(self.context, notification, e)
            except Exception:
                log.exception(
                    'Failed to handle the failure of notification %s',
                    notification.id
                )
            return False

        notification.delivered = self.clock.now()
        return True

    def dispatch(self, notifications: Iterable[Notification]) -> int:
        """ Delivers the given notifications and stores the outcome.

        Called after the transaction which wrote the notifications has been
        committed. Returns the number of delivered notifications.

        """
        notifications = list(notifications)

        if not notifications:
            return 0

        delivered = sum(1 for n in notifications if self.deliver(n))

        try:
            self.commit()
        except SQLAlchemyError:
            # the notifications stay undelivered and will be sent again
            log.exception('Failed to update the notification outbox')
            self.rollback()

        return delivered

    def by_user(self, user: str) -> Query[Notification]:
        return self.queries.notifications_by_user(user)

    def undelivered(self) -> Query[Notification]:
        return self.queries.undelivered_notifications()

    def retry_undelivered(self, limit: int | None = None) -> int:
        """ Tries to deliver the undelivered notifications again, oldest
        first. Returns the number of delivered notifications.

        """
        query = self.undelivered()

        if limit is not None:
            query = query.limit(limit)

        return self.dispatch(query.all())

""" Events are called by the :class:`labres.db.scheduler.Scheduler` whenever
something interesting occurs. They are called after the change has been
committed.

The implementation is very simple:

To add an event::

    from labres.modules import events

    def on_reservation_approved(context, reservation):
        pass

    events.on_reservation_approved.append(on_reservation_approved)

To remove the same event::

    events.on_reservation_approved.remove(on_reservation_approved)

Events are called in the order they were added.

Events are meant for in-process extensions (caches, metrics, ...). Users are
informed through the notifications written to the outbox, see
:class:`labres.db.notifications.Notifications`.
"""
from __future__ import annotations


from typing import overload
from typing import Protocol
from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from collections.abc import Callable
    from collections.abc import Sequence
    from datetime import date, time
    from typing_extensions import ParamSpec

    from labres.context.core import Context
    from labres.db.models import Notification, Release, Reservation

    _P = ParamSpec('_P')


class Event(list['Callable[_P, object]']):
    """Event subscription. By http://stackoverflow.com/a/2022629

    A list of callable objects. Calling an instance of this will cause a
    call to each item in the list in ascending order by index.

    """
    # NOTE: This is only used for binding the correct `ParamSpec` for callback
    #       protocols, otherwise we have to define a pseudo-type, that doesn't
    #       look like an instance of `Event`...
    @overload
    def __init__(self, f: type[Callable[_P, object]]) -> None: ...
    @overload
    def __init__(self) -> None: ...

    def __init__(self, f: object = None) -> None:
        return

    def __call__(self, *args: _P.args, **kwargs: _P.kwargs) -> None:
        for f in self:
            f(*args, **kwargs)


on_reservation_created: Event[Context, Reservation] = Event()
""" Called when a reservation is requested, with the following arguments:

    :context:
        The :class:`labres.context.core.Context` used when creating the
        reservation.

    :reservation:
        The pending :class:`labres.db.models.Reservation`.

"""

on_reservation_approved: Event[Context, Reservation] = Event()
""" Called when a reservation is approved, with the following arguments:

    :context:
        The :class:`labres.context.core.Context` used when approving the
        reservation.

    :reservation:
        The approved :class:`labres.db.models.Reservation`.

"""

on_reservation_rejected: Event[Context, Reservation] = Event()
""" Called when a reservation is rejected, with the following arguments:

    :context:
        The :class:`labres.context.core.Context` used when rejecting the
        reservation.

    :reservation:
        The rejected :class:`labres.db.models.Reservation`, the reason is
        found in ``reservation.status_reason``.

"""

on_reservation_cancelled: Event[Context, Reservation] = Event()
""" Called when a reservation is cancelled or revoked, with the following
arguments:

    :context:
        The :class:`labres.context.core.Context` used when cancelling the
        reservation.

    :reservation:
        The cancelled :class:`labres.db.models.Reservation`.

"""


# NOTE: old_end/new_end are passed by name, like the time change event
#       of the allocation based scheduler this evolved from
class _OnReservationExtendedCallback(Protocol):
    def __call__(
        self,
        context: Context,
        reservation: Reservation,
        /,
        old_end: tuple[date, time],
        new_end: tuple[date, time]
    ) -> None: ...


on_reservation_extended = Event(_OnReservationExtendedCallback)
""" Called when an approved reservation is extended, with the following
arguments:

    :context:
        The :class:`labres.context.core.Context` used when extending the
        reservation.

    :reservation:
        The extended :class:`labres.db.models.Reservation`.

    :old_end:
        A tuple with the previous end date and end time.

    :new_end:
        A tuple with the new end date and end time.

"""

on_release_created: Event[Context, Release] = Event()
""" Called when the owner of a reservation gives back some of its dates,
with the following arguments:

    :context:
        The :class:`labres.context.core.Context` used.

    :release:
        The new :class:`labres.db.models.Release`.

"""

on_release_cancelled: Event[Context, Release] = Event()
""" Called when a release is cancelled, with the following arguments:

    :context:
        The :class:`labres.context.core.Context` used.

    :release:
        The cancelled :class:`labres.db.models.Release`.

"""

on_release_reclaimed: Event[Context, Release, Reservation, Sequence[date]]
on_release_reclaimed = Event()
""" Called when released dates are taken by a newly approved reservation,
with the following arguments:

    :context:
        The :class:`labres.context.core.Context` used.

    :release:
        The :class:`labres.db.models.Release` losing the dates.

    :reservation:
        The approved :class:`labres.db.models.Reservation` taking them.

    :dates:
        The reclaimed dates.

"""

on_notification_failed: Event[Context, Notification, Exception] = Event()
""" Called when the notification emitter raised, with the following
arguments:

    :context:
        The :class:`labres.context.core.Context` used.

    :notification:
        The :class:`labres.db.models.Notification` which stays in the
        outbox to be retried.

    :exception:
        The exception raised by the emitter.

"""

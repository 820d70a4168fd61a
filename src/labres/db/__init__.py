from __future__ import annotations

from labres.db.scheduler import Scheduler


from typing import Any
from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from labres.context.core import Context


def new_scheduler(
    context: Context,
    name: str,
    timezone: str,
    **kwargs: Any
) -> Scheduler:
    """ Returns a scheduler for the lab with the given name, see
    :class:`labres.db.scheduler.Scheduler`.

    """
    return Scheduler(context, name, timezone, **kwargs)


__all__ = (
    'new_scheduler',
    'Scheduler',
)

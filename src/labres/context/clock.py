from __future__ import annotations

import sedate


from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from datetime import date, datetime
    from sedate.types import TzInfoOrName


class Clock:
    """ The source of the current time. Replace the ``clock`` service to
    travel in time (mostly in tests).

    """

    def now(self) -> datetime:
        """ Returns the current time in UTC (timezone-aware). """
        return sedate.utcnow()

    def today(self, timezone: TzInfoOrName) -> date:
        return sedate.to_timezone(self.now(), timezone).date()


class FixedClock(Clock):
    """ A clock that always returns the same time. """

    def __init__(self, now: datetime) -> None:
        assert now.tzinfo is not None, 'Use a timezone-aware datetime'
        self.fixed = now

    def now(self) -> datetime:
        return self.fixed

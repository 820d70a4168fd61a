""" Booking policy, as a set of pluggable predicates.

Labs differ in when and for how long their computers may be reserved. Instead
of hard-coding these limits, each rule is a callable which is given the
candidate reservation and the current date and raises a
:class:`~labres.modules.errors.PolicyViolation` if the candidate is not
acceptable.

The default policy is built from the context settings (see
:mod:`labres.context.settings`), a custom one may be registered as
``policy`` service::

    def weekdays_only(candidate, today):
        ...

    context.set_service('policy', lambda ctx: BookingPolicy([weekdays_only]))

"""
from __future__ import annotations

from labres.modules import errors
from labres.modules.utils import daterange, window_minutes


from typing import NamedTuple
from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from collections.abc import Callable
    from collections.abc import Collection
    from collections.abc import Iterable
    from datetime import date, time
    from typing_extensions import TypeAlias

    from labres.context.core import Context

    Rule: TypeAlias = Callable[['Candidate', date], None]


WEEKDAY_NAMES = (
    'Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday', 'Saturday',
    'Sunday'
)


class Candidate(NamedTuple):
    start_date: date
    end_date: date
    start_time: time
    end_time: time

    @property
    def days(self) -> int:
        return (self.end_date - self.start_date).days + 1


def closed_days(weekdays: Collection[int], mode: str = 'any') -> Rule:
    """ Refuses reservations touching a closed weekday (0 = Monday).

    :mode:
        ``'any'`` checks every date in the range, ``'endpoints'`` only
        the first and the last date.

    """
    if mode not in ('any', 'endpoints'):
        raise ValueError(f'Unknown closed day rule {mode!r}')

    def rule(candidate: Candidate, today: date) -> None:
        if mode == 'any':
            dates = daterange(candidate.start_date, candidate.end_date)
        else:
            dates = iter((candidate.start_date, candidate.end_date))

        for day in dates:
            if day.weekday() in weekdays:
                raise errors.PolicyViolation(
                    'closed_days',
                    f'The lab is closed on {WEEKDAY_NAMES[day.weekday()]}s'
                )

    return rule


def opening_hours(opening: time, closing: time) -> Rule:
    def rule(candidate: Candidate, today: date) -> None:
        if candidate.start_time < opening or closing < candidate.end_time:
            raise errors.PolicyViolation(
                'opening_hours',
                f'The lab is open from {opening:%H:%M} to {closing:%H:%M}'
            )

    return rule


def max_days(limit: int) -> Rule:
    def rule(candidate: Candidate, today: date) -> None:
        if candidate.days > limit:
            raise errors.PolicyViolation(
                'max_booking_days',
                f'Reservations may span at most {limit} days'
            )

    return rule


def daily_duration(
    minimum: int | None = None,
    maximum: int | None = None
) -> Rule:
    """ Limits the length of the daily window, in minutes. """

    def rule(candidate: Candidate, today: date) -> None:
        minutes = window_minutes(candidate.start_time, candidate.end_time)

        if minimum is not None and minutes < minimum:
            raise errors.PolicyViolation(
                'min_booking_duration',
                f'Reservations must last at least {minimum} minutes'
            )

        if maximum is not None and minutes > maximum:
            raise errors.PolicyViolation(
                'max_booking_duration',
                f'Reservations may last at most {maximum} minutes'
            )

    return rule


def days_ahead(limit: int) -> Rule:
    def rule(candidate: Candidate, today: date) -> None:
        if (candidate.start_date - today).days > limit:
            raise errors.PolicyViolation(
                'max_days_ahead',
                f'Reservations may start at most {limit} days ahead'
            )

    return rule


class BookingPolicy:
    """ Holds the rules which apply when creating or extending
    reservations.

    """

    def __init__(self, rules: Iterable[Rule] = ()):
        self.rules = list(rules)

    def __len__(self) -> int:
        return len(self.rules)

    def check(self, candidate: Candidate, today: date) -> None:
        for rule in self.rules:
            rule(candidate, today)


def policy_from_settings(context: Context) -> BookingPolicy:
    rules: list[Rule] = []

    weekdays = context.get_setting('closed_weekdays')
    if weekdays:
        rule = context.get_setting('closed_day_rule', 'any')
        rules.append(closed_days(weekdays, rule))

    opening = context.get_setting('opening_time')
    closing = context.get_setting('closing_time')
    if opening is not None and closing is not None:
        rules.append(opening_hours(opening, closing))

    limit = context.get_setting('max_booking_days')
    if limit:
        rules.append(max_days(limit))

    minimum = context.get_setting('min_booking_duration')
    maximum = context.get_setting('max_booking_duration')
    if minimum is not None or maximum is not None:
        rules.append(daily_duration(minimum, maximum))

    ahead = context.get_setting('max_days_ahead')
    if ahead is not None:
        rules.append(days_ahead(ahead))

    return BookingPolicy(rules)

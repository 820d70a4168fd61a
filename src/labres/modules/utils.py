from __future__ import annotations

import sedate

from datetime import date, datetime, time, timedelta


from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from collections.abc import Iterable
    from collections.abc import Iterator
    from sedate.types import TzInfoOrName


def daterange(start: date, end: date) -> Iterator[date]:
    """ Yields all dates between start and end (both inclusive). """
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


def dates_intersection(
    a: tuple[date, date],
    b: tuple[date, date]
) -> tuple[date, date] | None:
    """ Returns the common part of two inclusive date ranges, or None. """
    start = max(a[0], b[0])
    end = min(a[1], b[1])
    return (start, end) if start <= end else None


def windows_overlap(
    a: tuple[time, time],
    b: tuple[time, time]
) -> bool:
    """ True if the half-open daily windows [start, end) intersect. """
    return max(a[0], b[0]) < min(a[1], b[1])


def window_minutes(start: time, end: time) -> int:
    return (end.hour * 60 + end.minute) - (start.hour * 60 + start.minute)


def localize(day: date, at: time, timezone: TzInfoOrName) -> datetime:
    """ Combines the date and time into a timezone-aware datetime. """
    return sedate.replace_timezone(datetime.combine(day, at), timezone)


def merge_windows(
    windows: Iterable[tuple[time, time]]
) -> list[tuple[time, time]]:
    """ Merges overlapping or touching windows into an ordered list. """
    merged: list[tuple[time, time]] = []

    for start, end in sorted(windows):
        if merged and start <= merged[-1][1]:
            merged[-1] = (merged[-1][0], max(merged[-1][1], end))
        else:
            merged.append((start, end))

    return merged


def free_windows(
    occupied: Iterable[tuple[time, time]],
    opening: time,
    closing: time
) -> Iterator[tuple[time, time]]:
    """ Yields the gaps between the occupied windows within opening and
    closing time.

    """
    cursor = opening
    for start, end in merge_windows(occupied):
        if end <= cursor:
            continue
        if start >= closing:
            break
        if cursor < start:
            yield cursor, start
        cursor = max(cursor, end)

    if cursor < closing:
        yield cursor, closing

from datetime import date, datetime
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

# Monthly calendar helpers for the time series charts. GROUP BY month only
# returns months that have rows, the charts need every month in the window.


def month_start(day: date) -> date:
    if isinstance(day, datetime):
        day = day.date()
    return day.replace(day=1)


def add_months(day: date, months: int) -> date:
    """First day of the month ``months`` away from ``day``'s month.

    Clamped to ``date.min`` / ``date.max`` at the ends of the calendar.
    """
    index = day.year * 12 + (day.month - 1) + months
    if index < date.min.year * 12:
        return date.min
    if index > date.max.year * 12 + 11:
        return date.max
    return date(index // 12, index % 12 + 1, 1)


def month_starts(start: date, end_exclusive: date) -> Iterator[date]:
    current = month_start(start)
    while current < end_exclusive:
        yield current
        current = add_months(current, 1)


def count_months(start: date, end_exclusive: date) -> int:
    span = (end_exclusive.year - start.year) * 12 + (end_exclusive.month - start.month)
    return max(span, 0)


def default_window(anchor: date, months: int = 12) -> Tuple[date, date]:
    """The ``months`` calendar months ending with the anchor's month."""
    return add_months(anchor, 1 - months), add_months(anchor, 1)


def resolve_window(
    anchor: date,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    months: int = 12,
) -> Tuple[date, date]:
    """Pick the bucket window for an optional, possibly one-sided date filter.

    The missing side comes from the default window around ``anchor``. An
    inverted range gives an empty window rather than swapping the bounds.
    """
    if start_date is None and end_date is None:
        return default_window(anchor, months)

    last = end_date if end_date is not None else anchor
    end_exclusive = add_months(last, 1)

    if start_date is not None:
        start = month_start(start_date)
    else:
        start = add_months(last, 1 - months)

    if start_date is not None and end_date is not None and start_date > end_date:
        return start, start
    if start > end_exclusive:
        return start, start
    return start, end_exclusive


def densify(
    start: date,
    end_exclusive: date,
    values: Mapping[date, Any],
    default: Any = None,
) -> List[Tuple[date, Any]]:
    """One ``(month, value)`` per calendar month in ``[start, end_exclusive)``.

    Months missing from ``values`` get ``default``; keys outside the window
    are ignored.
    """
    lookup: Dict[date, Any] = {month_start(key): value for key, value in values.items()}
    return [(month, lookup.get(month, default)) for month in month_starts(start, end_exclusive)]

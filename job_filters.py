from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Optional, Tuple
import logging
import math

# Turns the dashboard filter bar (search box, date picker, dropdowns, salary
# inputs) into one parameterized WHERE body shared by every endpoint.

logger = logging.getLogger("job_filters")

# Value the dropdowns send for "All Locations" / "All Schedules"
ALL_SENTINEL = "__all__"

TITLE_COLUMN = "job_title"
COMPANY_COLUMN = "company_name"
POSTED_COLUMN = "job_posted_date"
LOCATION_COLUMN = "job_location"
SCHEDULE_COLUMN = "job_schedule_type"
SALARY_COLUMN = "salary_year_avg"


@dataclass(frozen=True)
class Predicate:
    """AND-conjunction of SQL clauses, each carrying its own %s parameters.

    An empty predicate renders as ``TRUE`` so it can always follow ``WHERE``.
    """

    clauses: Tuple[Tuple[str, Tuple[Any, ...]], ...] = ()

    def and_(self, clause: str, *params: Any) -> "Predicate":
        return Predicate(self.clauses + ((clause, params),))

    @property
    def sql(self) -> str:
        if not self.clauses:
            return "TRUE"
        return " AND ".join(f"({clause})" for clause, _ in self.clauses)

    @property
    def params(self) -> Tuple[Any, ...]:
        return tuple(p for _, params in self.clauses for p in params)

    def __len__(self) -> int:
        return len(self.clauses)


@dataclass(frozen=True)
class FilterCriteria:
    search: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    location: Optional[str] = None
    schedule: Optional[str] = None
    min_salary: Optional[float] = None
    max_salary: Optional[float] = None

    @classmethod
    def from_query(
        cls,
        search: Optional[str] = None,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        location: Optional[str] = None,
        schedule: Optional[str] = None,
        min_salary: Optional[str] = None,
        max_salary: Optional[str] = None,
    ) -> "FilterCriteria":
        """Build criteria from raw query-string values.

        Malformed values never raise: a bad date drops the whole date range
        (with a warning) and a non-numeric salary bound drops that bound only.
        """
        start, end = parse_date_range(_clean(start_date), _clean(end_date))
        return cls(
            search=_clean(search),
            start_date=start,
            end_date=end,
            location=_clean(location),
            schedule=_clean(schedule),
            min_salary=parse_salary(_clean(min_salary), "minSalary"),
            max_salary=parse_salary(_clean(max_salary), "maxSalary"),
        )

    @property
    def has_date_range(self) -> bool:
        return self.start_date is not None or self.end_date is not None


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        value = str(value)
    if value.strip() == "" or value == ALL_SENTINEL:
        return None
    return value


# accepts "2024-03-01" as well as the picker's "2024-03-01T05:00:00.000Z"
def parse_date(value: Optional[str]) -> Optional[date]:
    if value is None:
        return None
    try:
        return datetime.fromisoformat(value.strip()).date()
    except ValueError:
        return None


def parse_date_range(
    start_raw: Optional[str], end_raw: Optional[str]
) -> Tuple[Optional[date], Optional[date]]:
    start = parse_date(start_raw)
    end = parse_date(end_raw)

    if (start_raw is not None and start is None) or (end_raw is not None and end is None):
        logger.warning(
            "Ignoring date filter, could not parse startDate=%r endDate=%r",
            start_raw,
            end_raw,
        )
        return None, None
    return start, end


def parse_salary(value: Optional[str], name: str = "salary") -> Optional[float]:
    if value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        logger.debug("Ignoring non-numeric %s=%r", name, value)
        return None
    if not math.isfinite(number):
        logger.debug("Ignoring non-finite %s=%r", name, value)
        return None
    return number


def build_predicate(criteria: Optional[FilterCriteria] = None) -> Predicate:
    """Fold every present criterion into an always-true base predicate."""
    predicate = Predicate()
    if criteria is None:
        return predicate

    if criteria.search:
        pattern = f"%{criteria.search}%"
        predicate = predicate.and_(
            f"{TITLE_COLUMN} ILIKE %s OR {COMPANY_COLUMN} ILIKE %s", pattern, pattern
        )

    # end bound is inclusive of the whole day even if the column carries a time
    if criteria.start_date is not None:
        predicate = predicate.and_(f"{POSTED_COLUMN} >= %s", criteria.start_date)
    if criteria.end_date == date.max:
        predicate = predicate.and_(f"{POSTED_COLUMN}::date <= %s", criteria.end_date)
    elif criteria.end_date is not None:
        predicate = predicate.and_(
            f"{POSTED_COLUMN} < %s", criteria.end_date + timedelta(days=1)
        )

    if criteria.location:
        predicate = predicate.and_(f"{LOCATION_COLUMN} = %s", criteria.location)
    if criteria.schedule:
        predicate = predicate.and_(f"{SCHEDULE_COLUMN} = %s", criteria.schedule)

    if criteria.min_salary is not None:
        predicate = predicate.and_(f"{SALARY_COLUMN} >= %s", criteria.min_salary)
    if criteria.max_salary is not None:
        predicate = predicate.and_(f"{SALARY_COLUMN} <= %s", criteria.max_salary)

    return predicate

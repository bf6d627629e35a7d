from typing import Optional, List, Dict, Any, Callable, Iterator, Tuple
from contextlib import contextmanager
from datetime import date, datetime, timezone
from decimal import Decimal
import asyncio
import logging
import math

import numpy as np
import pandas as pd
import psycopg2
import psycopg2.extras
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

import config
from job_filters import (
    COMPANY_COLUMN,
    LOCATION_COLUMN,
    POSTED_COLUMN,
    SALARY_COLUMN,
    SCHEDULE_COLUMN,
    FilterCriteria,
    Predicate,
    build_predicate,
)
from time_buckets import densify, resolve_window

config.setup_logging()
logger = logging.getLogger("dashboard_api")

TABLE = config.JOBS_TABLE

WFH_COLUMN = "job_work_from_home"
NO_DEGREE_COLUMN = "job_no_degree_mention"
HEALTH_INSURANCE_COLUMN = "job_health_insurance"
SALARY_RATE_COLUMN = "salary_rate"
TITLE_SHORT_COLUMN = "job_title_short"

CHART_COLORS = [f"hsl(var(--chart-{i}))" for i in range(1, 7)]

app = FastAPI(title="Data Jobs Dashboard API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["*"],
)


# the catch-all 500 handler runs outside CORSMiddleware, so it applies the origin policy itself
def cors_headers(request: Request) -> Dict[str, str]:
    origin = request.headers.get("origin")
    if "*" in config.CORS_ORIGINS:
        allowed = "*"
    elif origin in config.CORS_ORIGINS:
        allowed = origin
    else:
        return {}
    return {
        "Access-Control-Allow-Origin": allowed,
        "Access-Control-Allow-Methods": "*",
        "Access-Control-Allow-Headers": "*",
        "Vary": "Origin",
    }


class DashboardQueryError(Exception):
    """A query behind an endpoint failed; carries the message shown to clients."""

    def __init__(self, message: str, details: str = ""):
        super().__init__(message)
        self.message = message
        self.details = details


@contextmanager
def query_errors(message: str) -> Iterator[None]:
    try:
        yield
    except Exception as exc:
        logger.exception(message)
        raise DashboardQueryError(message, str(exc)) from exc


@app.exception_handler(DashboardQueryError)
async def dashboard_query_error_handler(request: Request, exc: DashboardQueryError):
    return JSONResponse(
        status_code=500,
        content={"error": exc.message, "details": exc.details},
        headers=cors_headers(request),
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


# anything not wrapped by query_errors still comes back as json with cors headers
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error("Unhandled error on %s: %s", request.url.path, exc, exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "details": str(exc)},
        headers=cors_headers(request),
    )


# quick check to see if the api is running
@app.get("/health")
async def health_check():
    return {"status": "ok", "cors": "enabled"}


# get postgresql connection
def get_conn():
    return psycopg2.connect(config.database_url())


# execute query and return pandas dataframe
def query_to_df(sql: str, params: tuple = None) -> pd.DataFrame:
    conn = get_conn()
    try:
        return pd.read_sql(sql, conn, params=params or None)
    finally:
        conn.close()


# execute query and return results as list of dicts
def query_db(sql: str, params: tuple = None) -> List[Dict[str, Any]]:
    conn = get_conn()
    cursor = conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
    try:
        cursor.execute(sql, params or None)
        return [dict(row) for row in cursor.fetchall()]
    finally:
        cursor.close()
        conn.close()


def df_to_records(df: pd.DataFrame) -> List[Dict[str, Any]]:
    """Convert DataFrame rows to JSON-safe records (no NaN/inf/Decimal)."""
    df = df.replace({pd.NA: None, pd.NaT: None, np.nan: None, np.inf: None, -np.inf: None})
    df = df.where(pd.notnull(df), None)

    records = df.to_dict(orient="records")

    def clean_value(value: Any):
        if value is None:
            return None
        if isinstance(value, Decimal):
            value = float(value)
        if isinstance(value, (datetime, date)):
            return value.isoformat()
        if isinstance(value, (float, int, np.floating)):
            return value if math.isfinite(float(value)) else None
        if isinstance(value, str) and value.lower() in {"nan", "inf", "-inf"}:
            return None
        return value

    for record in records:
        for key, value in list(record.items()):
            record[key] = clean_value(value)

    return records


def to_float(value: Any) -> Optional[float]:
    """Numeric aggregate (Decimal, text, float) to float; None stays None."""
    if value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def to_int(value: Any) -> int:
    number = to_float(value)
    return int(number) if number is not None else 0


def as_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def iso_datetime(day: date) -> str:
    return datetime(day.year, day.month, day.day, tzinfo=timezone.utc).isoformat()


def filter_criteria(
    search: Optional[str] = None,
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    location: Optional[str] = None,
    schedule: Optional[str] = None,
    min_salary: Optional[str] = Query(None, alias="minSalary"),
    max_salary: Optional[str] = Query(None, alias="maxSalary"),
) -> FilterCriteria:
    return FilterCriteria.from_query(
        search=search,
        start_date=start_date,
        end_date=end_date,
        location=location,
        schedule=schedule,
        min_salary=min_salary,
        max_salary=max_salary,
    )


# aggregation shapes shared by the endpoints below


def count_where(predicate: Predicate) -> int:
    sql = f"SELECT COUNT(*) AS count FROM {TABLE} WHERE {predicate.sql};"
    rows = query_db(sql, predicate.params)
    return to_int(rows[0].get("count")) if rows else 0


def average_where(column: str, predicate: Predicate) -> Optional[float]:
    predicate = predicate.and_(f"{column} IS NOT NULL")
    sql = f"SELECT AVG({column}) AS average FROM {TABLE} WHERE {predicate.sql};"
    rows = query_db(sql, predicate.params)
    return to_float(rows[0].get("average")) if rows else None


def group_count(
    columns: List[str], predicate: Predicate, limit: Optional[int] = None
) -> List[Dict[str, Any]]:
    """COUNT(*) per distinct value of ``columns``, largest groups first."""
    select = ", ".join(columns)
    sql = f"""
    SELECT
        {select},
        COUNT(*) AS count
    FROM {TABLE}
    WHERE {predicate.sql}
    GROUP BY {select}
    ORDER BY count DESC
    """
    params = predicate.params
    if limit is not None:
        sql += " LIMIT %s"
        params = params + (limit,)
    df = query_to_df(sql + ";", params)
    return df_to_records(df)


def latest_posting_date() -> date:
    """Anchor for default windows; the dataset is static so wall clock is not used."""
    rows = query_db(f"SELECT MAX({POSTED_COLUMN}) AS max_date FROM {TABLE};")
    latest = rows[0].get("max_date") if rows else None
    if latest is None:
        return date.today()
    return as_date(latest)


def monthly_series(
    predicate: Predicate,
    start: date,
    end_exclusive: date,
    value_sql: str,
    cast: Callable[[Any], Any],
    default: Any,
) -> List[Tuple[date, Any]]:
    if start >= end_exclusive:
        return []

    windowed = predicate.and_(f"{POSTED_COLUMN} >= %s", start).and_(
        f"{POSTED_COLUMN} < %s", end_exclusive
    )
    sql = f"""
    SELECT
        DATE_TRUNC('month', {POSTED_COLUMN})::date AS month,
        {value_sql} AS value
    FROM {TABLE}
    WHERE {windowed.sql}
    GROUP BY 1
    ORDER BY 1;
    """
    rows = query_db(sql, windowed.params)
    values = {as_date(row["month"]): cast(row.get("value")) for row in rows}
    return densify(start, end_exclusive, values, default)


def labelled_split(
    column: str,
    predicate: Predicate,
    label_for: Callable[[Any], str],
    colors: Dict[str, str],
    required: List[str],
) -> List[Dict[str, Any]]:
    totals: Dict[str, int] = {}
    for row in group_count([column], predicate):
        name = label_for(row.get(column))
        totals[name] = totals.get(name, 0) + to_int(row.get("count"))
    for name in required:
        totals.setdefault(name, 0)

    chart = [
        {"name": name, "value": value, "fill": colors.get(name, CHART_COLORS[-1])}
        for name, value in totals.items()
    ]
    return sorted(chart, key=lambda item: item["value"], reverse=True)


def palette_chart(column: str, predicate: Predicate, colors: List[str]) -> List[Dict[str, Any]]:
    rows = group_count([column], predicate.and_(f"{column} IS NOT NULL"))
    return [
        {
            "name": row.get(column) or "Unknown",
            "value": to_int(row.get("count")),
            "fill": colors[index % len(colors)],
        }
        for index, row in enumerate(rows)
    ]


# summary cards: total, remote, average salary, posted in the last week
@app.get("/api/cards")
async def cards(criteria: FilterCriteria = Depends(filter_criteria)):
    predicate = build_predicate(criteria)
    recent = predicate.and_(
        f"{POSTED_COLUMN} >= (SELECT MAX({POSTED_COLUMN}) FROM {TABLE}) - INTERVAL '7 days'"
    )

    with query_errors("Failed to fetch card data"):
        total_jobs, remote_jobs, avg_salary, new_jobs = await asyncio.gather(
            run_in_threadpool(count_where, predicate),
            run_in_threadpool(count_where, predicate.and_(f"{WFH_COLUMN} = TRUE")),
            run_in_threadpool(average_where, SALARY_COLUMN, predicate),
            run_in_threadpool(count_where, recent),
        )

    return {
        "totalJobs": {
            "value": total_jobs,
            "trend": None,
            "description": "Total job postings recorded.",
        },
        "remoteJobs": {
            "value": remote_jobs,
            "trend": None,
            "description": "Jobs available for remote work.",
        },
        "avgYearlySalary": {
            "value": f"${avg_salary:,.0f}" if avg_salary is not None else "N/A",
            "rawValue": avg_salary,
            "trend": None,
            "description": "Average yearly salary (where available).",
        },
        "newJobsLast7Days": {
            "value": new_jobs,
            "trend": None,
            "description": "Jobs posted in the 7 days up to the latest posting.",
        },
    }


# monthly job counts, every month in the window present even with no postings
@app.get("/api/chart")
def chart(criteria: FilterCriteria = Depends(filter_criteria)):
    predicate = build_predicate(criteria)

    with query_errors("Failed to fetch chart data"):
        anchor = latest_posting_date()
        start, end_exclusive = resolve_window(
            anchor, criteria.start_date, criteria.end_date, config.DEFAULT_WINDOW_MONTHS
        )
        series = monthly_series(predicate, start, end_exclusive, "COUNT(*)", to_int, 0)

    return {
        "data": [{"date": month.isoformat(), "jobs": jobs} for month, jobs in series],
        "range": {
            "start": iso_datetime(start),
            "end": iso_datetime(criteria.end_date or anchor),
        },
    }


# monthly average yearly salary, null for months without salary data
@app.get("/api/charts/avg-salary-trend")
def avg_salary_trend(criteria: FilterCriteria = Depends(filter_criteria)):
    predicate = build_predicate(criteria).and_(f"{SALARY_COLUMN} IS NOT NULL")

    with query_errors("Failed to fetch average salary trend data"):
        anchor = latest_posting_date()
        start, end_exclusive = resolve_window(
            anchor, criteria.start_date, criteria.end_date, config.DEFAULT_WINDOW_MONTHS
        )
        series = monthly_series(
            predicate, start, end_exclusive, f"AVG({SALARY_COLUMN})", to_float, None
        )

    return [{"date": month.isoformat(), "avg_salary": value} for month, value in series]


@app.get("/api/charts/health-insurance")
def health_insurance(criteria: FilterCriteria = Depends(filter_criteria)):
    def label_for(value):
        if value is None:
            return "Unknown"
        return "Yes" if value else "No"

    colors = {"Yes": CHART_COLORS[0], "No": CHART_COLORS[1], "Unknown": CHART_COLORS[2]}
    with query_errors("Failed to fetch health insurance data"):
        return labelled_split(
            HEALTH_INSURANCE_COLUMN, build_predicate(criteria), label_for, colors, ["Yes", "No"]
        )


@app.get("/api/charts/no-degree")
def no_degree(criteria: FilterCriteria = Depends(filter_criteria)):
    colors = {"Yes": CHART_COLORS[0], "No": CHART_COLORS[1]}
    with query_errors("Failed to fetch no degree mention data"):
        return labelled_split(
            NO_DEGREE_COLUMN,
            build_predicate(criteria),
            lambda value: "Yes" if value else "No",
            colors,
            ["Yes", "No"],
        )


@app.get("/api/charts/wfh-distribution")
def wfh_distribution(criteria: FilterCriteria = Depends(filter_criteria)):
    colors = {"Remote": CHART_COLORS[0], "Office": CHART_COLORS[1]}
    with query_errors("Failed to fetch WFH distribution data"):
        return labelled_split(
            WFH_COLUMN,
            build_predicate(criteria),
            lambda value: "Remote" if value else "Office",
            colors,
            ["Remote", "Office"],
        )


@app.get("/api/charts/salary-rate")
def salary_rate(criteria: FilterCriteria = Depends(filter_criteria)):
    with query_errors("Failed to fetch salary rate data"):
        return palette_chart(SALARY_RATE_COLUMN, build_predicate(criteria), CHART_COLORS[:5])


@app.get("/api/charts/schedule-types")
def schedule_types(criteria: FilterCriteria = Depends(filter_criteria)):
    with query_errors("Failed to fetch schedule type data"):
        return palette_chart(SCHEDULE_COLUMN, build_predicate(criteria), CHART_COLORS)


# remote vs office counts per schedule type
@app.get("/api/charts/schedule-wfh-split")
def schedule_wfh_split(criteria: FilterCriteria = Depends(filter_criteria)):
    predicate = build_predicate(criteria).and_(f"{SCHEDULE_COLUMN} IS NOT NULL")

    with query_errors("Failed to fetch schedule/wfh split data"):
        rows = group_count([SCHEDULE_COLUMN, WFH_COLUMN], predicate)

    pivoted: Dict[str, Dict[str, int]] = {}
    for row in rows:
        schedule = row.get(SCHEDULE_COLUMN) or "Unknown"
        counts = pivoted.setdefault(schedule, {"remote": 0, "office": 0})
        key = "remote" if row.get(WFH_COLUMN) else "office"
        counts[key] += to_int(row.get("count"))

    split = [
        {"schedule_type": schedule, "remote": counts["remote"], "office": counts["office"]}
        for schedule, counts in pivoted.items()
    ]
    return sorted(split, key=lambda item: item["remote"] + item["office"], reverse=True)


@app.get("/api/charts/top-companies")
def top_companies(criteria: FilterCriteria = Depends(filter_criteria)):
    predicate = build_predicate(criteria).and_(
        f"{COMPANY_COLUMN} IS NOT NULL AND {COMPANY_COLUMN} <> ''"
    )
    with query_errors("Failed to fetch top companies data"):
        rows = group_count([COMPANY_COLUMN], predicate, limit=5)
    return [{"company": row[COMPANY_COLUMN], "count": to_int(row["count"])} for row in rows]


@app.get("/api/charts/top-locations")
def top_locations(criteria: FilterCriteria = Depends(filter_criteria)):
    predicate = build_predicate(criteria).and_(f"{LOCATION_COLUMN} IS NOT NULL")
    with query_errors("Failed to fetch top locations data"):
        rows = group_count([LOCATION_COLUMN], predicate, limit=10)
    return [{"location": row[LOCATION_COLUMN], "count": to_int(row["count"])} for row in rows]


@app.get("/api/charts/top-titles-short")
def top_titles_short(criteria: FilterCriteria = Depends(filter_criteria)):
    predicate = build_predicate(criteria).and_(f"{TITLE_SHORT_COLUMN} IS NOT NULL")
    with query_errors("Failed to fetch top titles data"):
        rows = group_count([TITLE_SHORT_COLUMN], predicate, limit=5)
    return [{"title": row[TITLE_SHORT_COLUMN], "count": to_int(row["count"])} for row in rows]


def parse_positive_int(value: Optional[str], default: int) -> Optional[int]:
    if value is None:
        return default
    try:
        number = int(value)
    except ValueError:
        return None
    return number if number >= 1 else None


# raw rows for the data grid, one page at a time
@app.get("/api/datatable")
async def datatable(
    page: Optional[str] = None,
    limit: Optional[str] = None,
    criteria: FilterCriteria = Depends(filter_criteria),
):
    page_number = parse_positive_int(page, 1)
    page_size = parse_positive_int(limit, 10)
    if page_number is None or page_size is None or page_size > config.MAX_PAGE_SIZE:
        raise HTTPException(status_code=400, detail="Invalid page or limit parameter")

    predicate = build_predicate(criteria)
    offset = (page_number - 1) * page_size
    sql = f"""
    SELECT *
    FROM {TABLE}
    WHERE {predicate.sql}
    ORDER BY id
    LIMIT %s
    OFFSET %s;
    """

    with query_errors("Failed to fetch data"):
        df, total_count = await asyncio.gather(
            run_in_threadpool(query_to_df, sql, predicate.params + (page_size, offset)),
            run_in_threadpool(count_where, predicate),
        )
        rows = df_to_records(df)

    return {
        "data": rows,
        "pagination": {
            "page": page_number,
            "limit": page_size,
            "totalCount": total_count,
            "totalPages": math.ceil(total_count / page_size),
        },
    }


# get unique locations for the location dropdown
@app.get("/api/filters/locations")
def get_locations():
    sql = f"""
    SELECT DISTINCT {LOCATION_COLUMN} AS location
    FROM {TABLE}
    WHERE {LOCATION_COLUMN} IS NOT NULL
    ORDER BY location;
    """
    with query_errors("Failed to fetch locations"):
        df = query_to_df(sql)
    return df_to_records(df)


# get unique schedule types for the schedule dropdown
@app.get("/api/filters/schedules")
def get_schedules():
    sql = f"""
    SELECT DISTINCT {SCHEDULE_COLUMN} AS schedule
    FROM {TABLE}
    WHERE {SCHEDULE_COLUMN} IS NOT NULL
    ORDER BY schedule;
    """
    with query_errors("Failed to fetch schedule types"):
        df = query_to_df(sql)
    return df_to_records(df)


# list all available endpoints
@app.get("/")
async def root():
    return {
        "message": "Data Jobs Dashboard API",
        "endpoints": [
            "/api/cards",
            "/api/chart",
            "/api/charts/avg-salary-trend",
            "/api/charts/health-insurance",
            "/api/charts/no-degree",
            "/api/charts/wfh-distribution",
            "/api/charts/salary-rate",
            "/api/charts/schedule-types",
            "/api/charts/schedule-wfh-split",
            "/api/charts/top-companies",
            "/api/charts/top-locations",
            "/api/charts/top-titles-short",
            "/api/datatable",
            "/api/filters/locations",
            "/api/filters/schedules",
        ],
    }

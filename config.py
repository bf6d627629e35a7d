# config.py
import logging
import os

from dotenv import load_dotenv

load_dotenv()

# Table the dashboard reads from; populated by an external loader
JOBS_TABLE = os.getenv("JOBS_TABLE", "data_jobs")

# Comma separated list, "*" allows any website to call the api
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Months shown by the time series charts when no date filter is applied
DEFAULT_WINDOW_MONTHS = 12

# Largest page the data grid may request from /api/datatable
MAX_PAGE_SIZE = int(os.getenv("MAX_PAGE_SIZE", "100"))


def database_url() -> str:
    url = os.getenv("DATABASE_URL", "").strip()
    if url:
        return url

    supabase_pwd = os.getenv("SUPABASE_PWD")
    if not supabase_pwd:
        raise RuntimeError("DATABASE_URL or SUPABASE_PWD environment variable not set")

    user = os.getenv("SUPABASE_USER", "postgres")
    host = os.getenv("SUPABASE_HOST", "localhost")
    port = os.getenv("SUPABASE_PORT", "5432")
    name = os.getenv("SUPABASE_DB", "postgres")
    return f"postgresql://{user}:{supabase_pwd}@{host}:{port}/{name}"


def setup_logging() -> None:
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
    )

from __future__ import annotations

import os
from dataclasses import dataclass
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from dotenv import load_dotenv

load_dotenv()


def normalize_database_url(database_url: str) -> str:
    value = database_url.strip().strip('"').strip("'")
    if value.startswith("postgres://"):
        value = value.replace("postgres://", "postgresql://", 1)
    if value.startswith("postgresql://"):
        value = value.replace("postgresql://", "postgresql+psycopg2://", 1)

    # Local URLs stay as they are; hosted Postgres gets sslmode=require unless set.
    parsed = urlparse(value)
    if not parsed.scheme.startswith("postgresql"):
        return value
    hostname = (parsed.hostname or "").lower()
    is_local = hostname in {"localhost", "127.0.0.1", ""}
    query = dict(parse_qsl(parsed.query, keep_blank_values=True))
    if not is_local and "sslmode" not in query:
        query["sslmode"] = "require"
        value = urlunparse(parsed._replace(query=urlencode(query)))
    return value


@dataclass(frozen=True)
class Settings:
    database_url: str | None
    min_credits_floor: int
    default_grade_scale: str
    log_level: str


def get_settings() -> Settings:
    database_url = os.getenv("DATABASE_URL")
    return Settings(
        database_url=normalize_database_url(database_url) if database_url else None,
        min_credits_floor=int(os.getenv("ADMISSIONS_MIN_CREDITS_FLOOR", "4")),
        default_grade_scale=os.getenv("ADMISSIONS_DEFAULT_GRADE_SCALE", "IGCSE").strip().upper(),
        log_level=os.getenv("ADMISSIONS_LOG_LEVEL", "INFO").strip().upper(),
    )

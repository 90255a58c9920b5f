from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional


_MAX_PAGE_SIZE_ENV = "STH_MAX_PAGE_SIZE"
_WORKER_COUNT_ENV = "STH_QUERY_WORKER_COUNT"
_DEFAULT_SERVICE_ENV = "STH_DEFAULT_SERVICE"
_DEFAULT_SERVICE_PATH_ENV = "STH_DEFAULT_SERVICE_PATH"
_DATA_PATH_ENV = "STH_DATA_PATH"
_LOG_LEVEL_ENV = "LOG_LEVEL"


@dataclass(frozen=True)
class Settings:
    max_page_size: int
    query_workers: int
    default_service: str
    default_service_path: str
    data_path: Optional[str]
    log_level: str


def _read_str_env(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    return candidate or default


def _read_optional_env(name: str, default: Optional[str]) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    return candidate or None


def _read_positive_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    try:
        parsed = int(candidate)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _read_log_level(default: str) -> str:
    value = os.getenv(_LOG_LEVEL_ENV)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    return candidate.upper()


@lru_cache
def get_settings() -> Settings:
    return Settings(
        max_page_size=_read_positive_int(_MAX_PAGE_SIZE_ENV, 100),
        query_workers=_read_positive_int(_WORKER_COUNT_ENV, 4),
        default_service=_read_str_env(_DEFAULT_SERVICE_ENV, "testservice"),
        default_service_path=_read_str_env(_DEFAULT_SERVICE_PATH_ENV, "/testservicepath"),
        data_path=_read_optional_env(_DATA_PATH_ENV, None),
        log_level=_read_log_level("INFO"),
    )

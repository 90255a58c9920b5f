from __future__ import annotations

import json
from typing import Iterable

from datastore.mock_history import build_default_store
from services.history import build_default_history_service
from settings import get_settings


def _clear_caches(caches: Iterable) -> None:
    for cache in caches:
        cache.cache_clear()


def test_environment_overrides_apply(monkeypatch, tmp_path) -> None:
    data_path = tmp_path / "history.json"
    data_path.write_text(json.dumps({"collections": []}))

    monkeypatch.setenv("STH_MAX_PAGE_SIZE", "250")
    monkeypatch.setenv("STH_QUERY_WORKER_COUNT", "2")
    monkeypatch.setenv("STH_DEFAULT_SERVICE", "smartcity")
    monkeypatch.setenv("STH_DATA_PATH", str(data_path))
    monkeypatch.setenv("LOG_LEVEL", "debug")

    caches = (
        get_settings,
        build_default_store,
        build_default_history_service,
    )
    _clear_caches(caches)

    settings = get_settings()
    store = build_default_store()
    service = build_default_history_service()

    try:
        assert settings.default_service == "smartcity"
        assert settings.default_service_path == "/testservicepath"
        assert settings.log_level == "DEBUG"
        assert store.persistence_path == data_path
        assert service.planner.max_page_size == 250
        assert service.executor._max_workers == 2
    finally:
        service.shutdown()
        _clear_caches(caches)


def test_invalid_numbers_fall_back_to_defaults(monkeypatch) -> None:
    monkeypatch.setenv("STH_MAX_PAGE_SIZE", "-5")
    monkeypatch.setenv("STH_QUERY_WORKER_COUNT", "many")
    monkeypatch.delenv("STH_DATA_PATH", raising=False)
    get_settings.cache_clear()

    try:
        settings = get_settings()
        assert settings.max_page_size == 100
        assert settings.query_workers == 4
        assert settings.data_path is None
    finally:
        get_settings.cache_clear()

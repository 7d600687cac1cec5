from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date
from typing import Any

import redis

from farmtrack.errors import CACHE_INVALIDATION_FAILED
from farmtrack.settings import get_settings

logger = logging.getLogger("farmtrack.cache")


def dashboard_overview_key(farm_id: int) -> str:
    return f"page:dashboard:overview:{farm_id}"


def return_logs_key(farm_id: int, local_day: date) -> str:
    return f"page:return-logs:{farm_id}:{local_day.isoformat()}"


def notifications_key(farm_id: int) -> str:
    return f"page:notifications:{farm_id}"


def night_check_cache_keys(farm_id: int, local_day: date) -> frozenset[str]:
    """Views made stale by a new night-return alert for one farm and day."""
    return frozenset(
        {
            dashboard_overview_key(farm_id),
            return_logs_key(farm_id, local_day),
            notifications_key(farm_id),
        }
    )


def return_record_cache_keys(farm_id: int, local_day: date) -> frozenset[str]:
    return frozenset({dashboard_overview_key(farm_id), return_logs_key(farm_id, local_day)})


@dataclass(frozen=True, slots=True)
class CacheInvalidationResult:
    keys: tuple[str, ...]
    deleted: tuple[str, ...] = ()
    failed: tuple[str, ...] = ()
    error: str | None = None

    @property
    def ok(self) -> bool:
        return not self.failed

    @property
    def error_kind(self) -> str | None:
        return None if self.ok else CACHE_INVALIDATION_FAILED

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "keys": list(self.keys),
            "deleted": list(self.deleted),
            "failed": list(self.failed),
            "error": self.error,
        }


class DashboardCache:
    """Deletes tenant-scoped read-through entries; never flushes the whole cache."""

    def __init__(self, client: Any | None = None) -> None:
        self._client = client
        self._client_lock = threading.Lock()

    def _get_client(self) -> Any:
        if self._client is not None:
            return self._client
        with self._client_lock:
            if self._client is None:
                settings = get_settings()
                self._client = redis.Redis.from_url(
                    settings.redis_url,
                    socket_timeout=settings.redis_socket_timeout_seconds,
                    socket_connect_timeout=settings.redis_socket_timeout_seconds,
                    decode_responses=True,
                )
        return self._client

    def invalidate(self, keys: Iterable[str]) -> CacheInvalidationResult:
        ordered_keys = tuple(sorted({key for key in keys if key}))
        if not ordered_keys:
            return CacheInvalidationResult(keys=())

        deleted: list[str] = []
        failed: list[str] = []
        last_error: str | None = None
        try:
            client = self._get_client()
        except Exception as exc:
            logger.warning(
                "cache_client_unavailable",
                extra={"keys": list(ordered_keys), "error": str(exc)[:500]},
            )
            return CacheInvalidationResult(keys=ordered_keys, failed=ordered_keys, error=str(exc)[:500])

        for key in ordered_keys:
            try:
                client.delete(key)
            except Exception as exc:
                failed.append(key)
                last_error = str(exc)[:500]
                logger.warning("cache_invalidation_failed", extra={"key": key, "error": last_error})
                continue
            deleted.append(key)

        return CacheInvalidationResult(
            keys=ordered_keys,
            deleted=tuple(deleted),
            failed=tuple(failed),
            error=last_error,
        )

    def health(self) -> dict[str, Any]:
        try:
            return {"ok": bool(self._get_client().ping())}
        except Exception as exc:
            return {"ok": False, "error": str(exc)[:200]}


_default_cache: DashboardCache | None = None
_default_cache_lock = threading.Lock()


def get_dashboard_cache() -> DashboardCache:
    global _default_cache
    with _default_cache_lock:
        if _default_cache is None:
            _default_cache = DashboardCache()
        return _default_cache

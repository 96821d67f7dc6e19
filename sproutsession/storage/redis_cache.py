from __future__ import annotations

import threading
from typing import Any, List, Optional

from redis import Redis
from redis.exceptions import RedisError

from sproutsession.logging import get_logger
from sproutsession.storage.common import StoreListener
from sproutsession.storage.errors import StorageError

logger = get_logger(__name__)


class RedisStore:
    """Key-value store backed by Redis, for sessions shared across processes.

    Each operation is one Redis command on one key, so writes stay full
    overwrites. Listeners only see writes made through this instance.
    """

    # Default operation timeout for Redis commands
    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str,
        *,
        key_prefix: str = "sprout:kv:",
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Any = None,
    ):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._listeners: List[StoreListener] = []
        self._listener_lock = threading.Lock()

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before the store is used."""
        try:
            self.client.ping()
        except RedisError as exc:
            raise StorageError(
                "redis unavailable", detail={"error": str(exc)}
            ) from exc

    def close(self) -> None:
        self.client.close()

    def _notify(self, key: str, old: Optional[str], new: Optional[str]) -> None:
        with self._listener_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(key, old, new)
            except Exception as exc:
                logger.error(
                    "store_listener_failed",
                    key=key,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )

    def get_item(self, key: str) -> Optional[str]:
        try:
            return self.client.get(self._key(key))
        except RedisError as exc:
            raise StorageError("redis read failed", detail={"key": key}) from exc

    def set_item(self, key: str, value: str) -> None:
        if not isinstance(value, str):
            raise StorageError("store values must be strings", detail={"key": key})
        try:
            # SET ... GET keeps the write and the previous value atomic for listeners
            old = self.client.set(self._key(key), value, get=True)
        except RedisError as exc:
            raise StorageError("redis write failed", detail={"key": key}) from exc
        if old != value:
            self._notify(key, old, value)

    def remove_item(self, key: str) -> None:
        try:
            old = self.client.getdel(self._key(key))
        except RedisError as exc:
            raise StorageError("redis delete failed", detail={"key": key}) from exc
        if old is not None:
            self._notify(key, old, None)

    def keys(self) -> list[str]:
        try:
            raw_keys = list(self.client.scan_iter(match=f"{self.key_prefix}*"))
        except RedisError as exc:
            raise StorageError("redis scan failed") from exc
        return [k[len(self.key_prefix):] for k in raw_keys]

    def clear(self) -> None:
        for key in self.keys():
            self.remove_item(key)

    def add_listener(self, listener: StoreListener) -> None:
        with self._listener_lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def remove_listener(self, listener: StoreListener) -> None:
        with self._listener_lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

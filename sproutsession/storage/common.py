"""Persisted key names and helpers shared by every store backend and service.

All values are strings; structured values are JSON-encoded. Writes are always
full overwrites of a single key so concurrent tick jobs converge.
"""

from __future__ import annotations

import json
from typing import Any, Optional, Protocol

from sproutsession.logging import get_logger

logger = get_logger(__name__)

AUTH_TOKEN_KEY = "authToken"
UNLOCK_TIME_KEY = "unlockTime"
CARETAKER_ID_KEY = "caretakerId"
IDLE_TIME_KEY = "idleTimeSeconds"
AUTH_LIFE_KEY = "authLifeSeconds"
ACCOUNT_USER_KEY = "accountUser"
SELECTED_FAMILY_KEY = "selectedFamily"
ATTEMPTS_KEY = "attempts"
LOCKOUT_TIME_KEY = "lockoutTime"
SELECTED_BABY_PREFIX = "selectedBaby"
SLEEPING_BABIES_PREFIX = "sleepingBabies"

# Keys a logout always removes, whatever else fails
LOGOUT_KEYS = (
    AUTH_TOKEN_KEY,
    UNLOCK_TIME_KEY,
    CARETAKER_ID_KEY,
    ACCOUNT_USER_KEY,
    ATTEMPTS_KEY,
    LOCKOUT_TIME_KEY,
)

# Cached server policy, dropped together with the session
POLICY_KEYS = (IDLE_TIME_KEY, AUTH_LIFE_KEY)


class StoreListener(Protocol):
    def __call__(self, key: str, old: Optional[str], new: Optional[str]) -> None: ...


class KeyValueStore(Protocol):
    def get_item(self, key: str) -> Optional[str]: ...

    def set_item(self, key: str, value: str) -> None: ...

    def remove_item(self, key: str) -> None: ...

    def keys(self) -> list[str]: ...

    def clear(self) -> None: ...

    def add_listener(self, listener: StoreListener) -> None: ...

    def remove_listener(self, listener: StoreListener) -> None: ...


def family_key(base_key: str, family_id: Optional[str]) -> str:
    """Suffix ``base_key`` with the tenant id; generic key when no tenant."""
    if family_id:
        return f"{base_key}_{family_id}"
    return base_key


def read_json(store: KeyValueStore, key: str) -> Optional[Any]:
    """Read and parse a JSON value; unparsable values are logged and ignored."""
    raw = store.get_item(key)
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except (TypeError, ValueError) as exc:
        logger.warning("store_json_parse_failed", key=key, error=str(exc))
        return None


def write_json(store: KeyValueStore, key: str, value: Any) -> None:
    store.set_item(key, json.dumps(value, separators=(",", ":")))


def read_int(store: KeyValueStore, key: str) -> Optional[int]:
    raw = store.get_item(key)
    if raw is None or raw == "":
        return None
    try:
        return int(float(raw))
    except (TypeError, ValueError):
        logger.warning("store_int_parse_failed", key=key)
        return None

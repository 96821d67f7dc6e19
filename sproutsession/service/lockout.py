from __future__ import annotations

import math
from typing import TYPE_CHECKING, Callable, List

from sproutsession.api.schemas import LockoutStatus
from sproutsession.logging import get_logger
from sproutsession.service.errors import LockoutError, NetworkError
from sproutsession.service.scheduler import Clock
from sproutsession.storage.common import (
    ATTEMPTS_KEY,
    LOCKOUT_TIME_KEY,
    KeyValueStore,
    read_int,
)
from sproutsession.storage.models import LockoutState

if TYPE_CHECKING:
    from sproutsession.api.client import SproutApiClient

logger = get_logger(__name__)


def format_countdown(remaining_ms: int) -> str:
    """``M:SS`` with seconds rounded up, e.g. 125000 -> ``2:05``."""
    remaining = max(0, math.ceil(remaining_ms / 1000))
    minutes, seconds = divmod(remaining, 60)
    return f"{minutes}:{seconds:02d}"


def lockout_message(remaining_ms: int) -> str:
    minutes = max(1, math.ceil(remaining_ms / 60000))
    plural = "s" if minutes > 1 else ""
    return f"Too many failed attempts. Try again in {minutes} minute{plural}."


class LockoutTracker:
    """Client-side mirror of the server's per-IP lockout.

    The server stays authoritative: this only drives the countdown and keeps
    the login form disabled until ``unlock_at_epoch_ms``, then clears itself.
    """

    def __init__(
        self,
        store: KeyValueStore,
        clock: Clock,
        *,
        default_lockout_ms: int = 5 * 60 * 1000,
    ) -> None:
        self.store = store
        self.clock = clock
        self.default_lockout_ms = default_lockout_ms
        self.state = LockoutState()
        self._listeners: List[Callable[[LockoutState], None]] = []
        persisted = read_int(store, LOCKOUT_TIME_KEY)
        if persisted and persisted > clock.now_ms():
            self.state = LockoutState(is_locked=True, unlock_at_epoch_ms=persisted)

    def add_listener(self, listener: Callable[[LockoutState], None]) -> None:
        self._listeners.append(listener)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self.state)
            except Exception as exc:
                logger.error(
                    "lockout_listener_failed", error_type=type(exc).__name__, error=str(exc)
                )

    @property
    def is_locked(self) -> bool:
        return self.state.is_locked

    def remaining_ms(self) -> int:
        return self.state.remaining_ms(self.clock.now_ms())

    def countdown(self) -> str:
        return format_countdown(self.remaining_ms())

    def message(self) -> str:
        if not self.is_locked:
            return ""
        return lockout_message(self.remaining_ms())

    def lock_for(self, remaining_ms: int) -> None:
        unlock_at = self.clock.now_ms() + remaining_ms
        self.state = LockoutState(is_locked=True, unlock_at_epoch_ms=unlock_at)
        self.store.set_item(LOCKOUT_TIME_KEY, str(unlock_at))
        logger.info("lockout_started", remaining_ms=remaining_ms)
        self._notify()

    def apply_status(self, status: LockoutStatus) -> bool:
        """Adopt a server lockout answer; returns whether the client is locked."""
        if not status.locked:
            return self.is_locked
        self.lock_for(status.remaining_time or self.default_lockout_ms)
        return True

    async def refresh(self, api: "SproutApiClient") -> bool:
        """Ask the server; a failed request leaves the current state untouched."""
        try:
            status = await api.check_ip_lockout()
        except NetworkError as exc:
            logger.warning("lockout_check_failed", error=exc.message)
            return self.is_locked
        return self.apply_status(status)

    def raise_if_locked(self) -> None:
        if self.is_locked and self.remaining_ms() > 0:
            raise LockoutError(self.remaining_ms(), user_message=self.message())

    def clear(self) -> None:
        was_locked = self.is_locked
        self.state = LockoutState()
        self.store.remove_item(LOCKOUT_TIME_KEY)
        self.store.remove_item(ATTEMPTS_KEY)
        if was_locked:
            logger.info("lockout_cleared")
            self._notify()

    def tick(self) -> None:
        """Countdown job: clears the lockout once it has run out."""
        if self.is_locked and self.remaining_ms() <= 0:
            self.clear()

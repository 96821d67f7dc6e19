from __future__ import annotations

from typing import Optional

from sproutsession.logging import get_logger
from sproutsession.service.scheduler import Clock

logger = get_logger(__name__)


class AdminGestureDetector:
    """Counts presses of a disabled submit button.

    Every press restarts a reset timer of ``window_ms``; if the timer runs out
    the count drops to zero. Reaching ``threshold`` presses before that
    switches to admin mode. The timer is evaluated lazily against the clock so
    the detector needs no scheduler of its own.
    """

    def __init__(self, clock: Clock, *, threshold: int = 10, window_ms: int = 5000) -> None:
        self.clock = clock
        self.threshold = threshold
        self.window_ms = window_ms
        self.clicks = 0
        self._reset_at: Optional[int] = None
        self.admin_mode = False
        self.admin_password = ""

    def _expire(self, now_ms: int) -> None:
        if self._reset_at is not None and now_ms >= self._reset_at:
            self.clicks = 0
            self._reset_at = None

    def register_click(self) -> bool:
        """Record one press; returns True when this press unlocked admin mode."""
        if self.admin_mode:
            return False
        now = self.clock.now_ms()
        self._expire(now)
        self.clicks += 1
        self._reset_at = now + self.window_ms
        if self.clicks >= self.threshold:
            self.admin_mode = True
            self.clicks = 0
            self._reset_at = None
            logger.info("admin_mode_entered")
            return True
        return False

    def pending_clicks(self) -> int:
        self._expire(self.clock.now_ms())
        return self.clicks

    def set_admin_password(self, value: str) -> None:
        if self.admin_mode:
            self.admin_password = value

    def exit_admin_mode(self) -> None:
        self.admin_mode = False
        self.admin_password = ""
        self.clicks = 0
        self._reset_at = None

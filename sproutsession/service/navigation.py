from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, List, Optional
from urllib.parse import urlsplit

from sproutsession.logging import get_logger

logger = get_logger(__name__)

FAMILY_CHANGED = "family_changed"
CARETAKER_CHANGED = "caretaker_changed"


class EventBus:
    """Synchronous publish/subscribe for in-session notifications."""

    def __init__(self) -> None:
        self._handlers: Dict[str, List[Callable[..., None]]] = {}

    def subscribe(self, event: str, handler: Callable[..., None]) -> Callable[[], None]:
        self._handlers.setdefault(event, []).append(handler)

        def _unsubscribe() -> None:
            handlers = self._handlers.get(event, [])
            if handler in handlers:
                handlers.remove(handler)

        return _unsubscribe

    def emit(self, event: str, **payload: Any) -> int:
        delivered = 0
        for handler in list(self._handlers.get(event, [])):
            try:
                handler(**payload)
                delivered += 1
            except Exception as exc:
                logger.error(
                    "event_handler_failed",
                    event_name=event,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
        return delivered


class Navigator:
    """Current location plus history, standing in for the browser router.

    ``push`` changes the location and ``pop`` walks history back; both notify
    the location listeners.
    """

    def __init__(
        self,
        initial_path: str = "/",
        *,
        reserved_segments: Iterable[str] = (),
    ) -> None:
        self.location = initial_path or "/"
        self.history: List[str] = [self.location]
        self.reserved_segments = frozenset(reserved_segments)
        self._listeners: List[Callable[[str], None]] = []

    @property
    def pathname(self) -> str:
        return urlsplit(self.location).path or "/"

    def segments(self) -> List[str]:
        return [part for part in self.pathname.split("/") if part]

    def family_slug(self) -> Optional[str]:
        """First path segment, unless it names an application route."""
        parts = self.segments()
        if not parts or parts[0] in self.reserved_segments:
            return None
        return parts[0]

    def sub_path(self) -> str:
        """Path below the family slug, without leading slash."""
        return "/".join(self.segments()[1:])

    def is_family_root(self) -> bool:
        slug = self.family_slug()
        return bool(slug) and self.pathname in {f"/{slug}", f"/{slug}/"}

    def in_app_shell(self) -> bool:
        """True while the location is a family page other than its login page."""
        slug = self.family_slug()
        if not slug:
            return False
        sub = self.segments()[1:]
        return not (sub and sub[0] == "login")

    def add_listener(self, listener: Callable[[str], None]) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[str], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self.location)
            except Exception as exc:
                logger.error(
                    "navigation_listener_failed",
                    error_type=type(exc).__name__,
                    error=str(exc),
                )

    def push(self, path: str) -> bool:
        """Navigate to ``path``; pushing the current location is a no-op."""
        if path == self.location:
            return False
        logger.info("navigate", from_path=self.pathname, to_path=path)
        self.location = path
        self.history.append(path)
        self._notify()
        return True

    def pop(self) -> Optional[str]:
        if len(self.history) < 2:
            return None
        self.history.pop()
        self.location = self.history[-1]
        self._notify()
        return self.location

    def login_route(self, family_slug: Optional[str] = None) -> str:
        slug = family_slug if family_slug is not None else self.family_slug()
        return f"/{slug}/login" if slug else "/login"

from __future__ import annotations

from typing import Optional

from sproutsession.api.client import SproutApiClient
from sproutsession.logging import get_logger
from sproutsession.service.errors import NetworkError
from sproutsession.service.lockout import LockoutTracker
from sproutsession.service.navigation import (
    CARETAKER_CHANGED,
    FAMILY_CHANGED,
    EventBus,
    Navigator,
)
from sproutsession.service.tokens import read_claims
from sproutsession.storage.common import (
    AUTH_TOKEN_KEY,
    CARETAKER_ID_KEY,
    LOGOUT_KEYS,
    POLICY_KEYS,
    SELECTED_BABY_PREFIX,
    SLEEPING_BABIES_PREFIX,
    KeyValueStore,
)
from sproutsession.storage.errors import StorageError

logger = get_logger(__name__)

# Selection markers that were never namespaced by tenant
GENERIC_SELECTION_KEYS = (SELECTED_BABY_PREFIX, SLEEPING_BABIES_PREFIX)


class LogoutCoordinator:
    """The only place a session is destroyed.

    Local state is cleared before the server is told, so a slow or failing
    logout request never leaves credentials behind.
    """

    def __init__(
        self,
        *,
        api: SproutApiClient,
        store: KeyValueStore,
        navigator: Navigator,
        events: EventBus,
        lockout: Optional[LockoutTracker] = None,
    ) -> None:
        self.api = api
        self.store = store
        self.navigator = navigator
        self.events = events
        self.lockout = lockout
        self._in_progress = False

    def clear_local_state(self) -> None:
        for key in LOGOUT_KEYS + POLICY_KEYS + GENERIC_SELECTION_KEYS:
            try:
                self.store.remove_item(key)
            except StorageError as exc:
                # Keep going: every other key must still be removed
                logger.error(
                    "logout_key_clear_failed",
                    key=key,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
        if self.lockout is not None:
            self.lockout.clear()

    async def _notify_server(self, token: Optional[str]) -> bool:
        if not token:
            return False
        try:
            return await self.api.logout(token)
        except NetworkError as exc:
            logger.warning("logout_request_failed", error=exc.message)
            return False

    async def logout(self, reason: str = "user") -> Optional[str]:
        """End the session and return the route navigated to.

        Returns None when a logout is already running.
        """
        if self._in_progress:
            return None
        self._in_progress = True
        try:
            token = self.store.get_item(AUTH_TOKEN_KEY)
            claims = read_claims(token, context="logout") if token else None
            is_account = bool(claims and claims.is_account_auth)
            caretaker_id = self.store.get_item(CARETAKER_ID_KEY)
            family_slug = self.navigator.family_slug() or (claims.family_slug if claims else None)

            self.clear_local_state()
            if caretaker_id:
                self.events.emit(CARETAKER_CHANGED, caretaker_id=None)
            self.events.emit(FAMILY_CHANGED, family_slug=family_slug, reason="logout")

            route = "/" if is_account else self.navigator.login_route(family_slug)
            self.navigator.push(route)

            # The user is already out; the server is told last
            server_ack = await self._notify_server(token)
            logger.info(
                "logout_completed",
                reason=reason,
                account_session=is_account,
                server_ack=server_ack,
                route=route,
            )
            return route
        finally:
            self._in_progress = False

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Dict, Optional

from sproutsession.api.client import SproutApiClient
from sproutsession.config import Settings
from sproutsession.logging import get_logger
from sproutsession.service.errors import NetworkError
from sproutsession.service.logout import LogoutCoordinator
from sproutsession.service.navigation import Navigator
from sproutsession.service.scheduler import Clock, TickScheduler
from sproutsession.service.session import SessionSnapshot, refresh_activity
from sproutsession.storage.common import (
    AUTH_TOKEN_KEY,
    CARETAKER_ID_KEY,
    KeyValueStore,
)
from sproutsession.storage.errors import StorageError
from sproutsession.storage.models import Family

if TYPE_CHECKING:
    from sproutsession.service.family_scope import FamilyScopeStore

logger = get_logger(__name__)

AUTH_CHECK_JOB = "auth_check"
DISPLAY_REFRESH_JOB = "display_refresh"

OWNER_ROLE = "OWNER"
ADMIN_ROLE = "ADMIN"


class MonitorAction(str, Enum):
    NONE = "none"
    REDIRECT_LOGIN = "redirect_login"
    LOGOUT_EXPIRED = "logout_expired"
    CORRECT_DRIFT = "correct_drift"
    LANDING = "landing"
    LOGOUT_IDLE = "logout_idle"


@dataclass
class DisplayState:
    """UI hints derived from the latest claims; never an authorization input."""

    unlocked: bool = False
    display_name: str = ""
    is_admin: bool = False
    is_account_auth: bool = False
    caretaker_id: Optional[str] = None


class SessionMonitor:
    """Polls the stored session once per tick and corrects the route.

    Two independent jobs: ``auth_check_tick`` enforces validity, tenant and
    landing route; ``display_tick`` recomputes display-only state. Both read
    the store fresh every time.
    """

    def __init__(
        self,
        *,
        store: KeyValueStore,
        clock: Clock,
        navigator: Navigator,
        logout: LogoutCoordinator,
        api: SproutApiClient,
        settings: Settings,
        family_scope: Optional["FamilyScopeStore"] = None,
    ) -> None:
        self.store = store
        self.clock = clock
        self.navigator = navigator
        self.logout = logout
        self.api = api
        self.settings = settings
        self.family_scope = family_scope
        self.display = DisplayState()
        self._validated: Dict[str, Family] = {}
        self._caretaker_names: Dict[str, str] = {}

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot.load(
            self.store,
            default_idle=self.settings.default_idle_time_seconds,
            default_auth_life=self.settings.default_auth_life_seconds,
        )

    async def auth_check_tick(self) -> MonitorAction:
        if not self.navigator.in_app_shell():
            return MonitorAction.NONE
        now = self.clock.now_ms()
        url_slug = self.navigator.family_slug()
        try:
            session = self.snapshot()
        except StorageError as exc:
            # An unreadable session is no session
            logger.error("session_store_unreadable", job=AUTH_CHECK_JOB, error=exc.message)
            self.navigator.push(self.navigator.login_route(url_slug))
            return MonitorAction.REDIRECT_LOGIN

        claims = session.claims
        if claims is None or not session.has_credentials:
            self.navigator.push(self.navigator.login_route(url_slug))
            return MonitorAction.REDIRECT_LOGIN

        if claims.expired(now):
            logger.info("session_expired", reason="token")
            await self.logout.logout(reason="token_expired")
            return MonitorAction.LOGOUT_EXPIRED

        if claims.family_slug and claims.family_slug != url_slug:
            target = f"/{claims.family_slug}/{self.navigator.sub_path() or self.settings.landing_subpath}"
            logger.warning(
                "family_slug_drift_corrected",
                claim_family_slug=claims.family_slug,
                url_family_slug=url_slug,
            )
            self.navigator.push(target)
            return MonitorAction.CORRECT_DRIFT

        if self.navigator.is_family_root():
            self.navigator.push(f"/{url_slug}/{self.settings.landing_subpath}")
            return MonitorAction.LANDING

        if session.idle_exceeded(now):
            logger.info("session_expired", reason="idle")
            await self.logout.logout(reason="idle")
            return MonitorAction.LOGOUT_IDLE

        return MonitorAction.NONE

    async def display_tick(self) -> DisplayState:
        try:
            session = self.snapshot()
            caretaker_id = self.store.get_item(CARETAKER_ID_KEY)
        except StorageError as exc:
            logger.error("session_store_unreadable", job=DISPLAY_REFRESH_JOB, error=exc.message)
            self.display = DisplayState()
            return self.display
        claims = session.claims
        state = DisplayState(
            unlocked=session.has_credentials,
            is_account_auth=session.is_account_auth,
            caretaker_id=caretaker_id,
        )
        if claims is not None:
            state.is_admin = (
                (claims.is_account_auth and claims.role == OWNER_ROLE)
                or claims.role == ADMIN_ROLE
                or claims.is_sys_admin
            )
            if claims.name:
                state.display_name = claims.name
            elif state.caretaker_id and not state.is_account_auth:
                state.display_name = await self._caretaker_name(state.caretaker_id, session.token)
        self.display = state
        return state

    async def _caretaker_name(self, caretaker_id: str, token: Optional[str]) -> str:
        if caretaker_id in self._caretaker_names:
            return self._caretaker_names[caretaker_id]
        name = ""
        try:
            caretaker = await self.api.get_caretaker(caretaker_id, token)
            if caretaker is not None:
                name = caretaker.name or ""
        except NetworkError as exc:
            logger.warning("caretaker_lookup_failed", caretaker_id=caretaker_id, error=exc.message)
            return ""
        self._caretaker_names[caretaker_id] = name
        return name

    def record_interaction(self, kind: str = "click") -> bool:
        """Any click, keypress, pointer move or touch slides the idle window."""
        try:
            if self.store.get_item(AUTH_TOKEN_KEY) is None:
                return False
            return refresh_activity(self.store, self.clock.now_ms())
        except StorageError as exc:
            logger.error("activity_refresh_failed", kind=kind, error=exc.message)
            return False

    async def validate_family_slug(self) -> Optional[Family]:
        """Confirm the URL tenant exists, once per slug; unknown slugs go home."""
        slug = self.navigator.family_slug()
        if not slug:
            return None
        if slug in self._validated:
            return self._validated[slug]
        try:
            data = await self.api.get_family_by_slug(slug)
        except NetworkError as exc:
            logger.warning("family_lookup_failed", family_slug=slug, error=exc.message)
            data = None
        if data is None:
            logger.warning("family_slug_unknown", family_slug=slug)
            self.navigator.push("/")
            return None
        family = Family(id=str(data.id), slug=data.slug, name=data.name, is_active=data.is_active)
        self._validated[slug] = family
        if self.family_scope is not None:
            self.family_scope.remember_family(family)
        return family

    def attach(self, scheduler: TickScheduler) -> None:
        interval = self.settings.tick_interval_ms
        scheduler.every(AUTH_CHECK_JOB, interval, self.auth_check_tick)
        scheduler.every(DISPLAY_REFRESH_JOB, interval, self.display_tick)

    def detach(self, scheduler: TickScheduler) -> None:
        scheduler.cancel(AUTH_CHECK_JOB)
        scheduler.cancel(DISPLAY_REFRESH_JOB)

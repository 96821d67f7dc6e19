"""Active tenant and its per-tenant selection.

The tenant comes from the first URL segment, paired with the ``selectedFamily``
marker that carries its id. Everything selected under a tenant is persisted
under keys suffixed with that tenant's id, and nothing from another tenant is
ever written there.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Callable, Coroutine, List, Optional, Set

from sproutsession.api.schemas import AccountStatusData
from sproutsession.logging import get_logger
from sproutsession.service.errors import CrossTenantViolation, SessionError
from sproutsession.service.navigation import FAMILY_CHANGED, EventBus, Navigator
from sproutsession.service.tokens import is_account_token
from sproutsession.storage.common import (
    AUTH_TOKEN_KEY,
    SELECTED_BABY_PREFIX,
    SELECTED_FAMILY_KEY,
    SLEEPING_BABIES_PREFIX,
    KeyValueStore,
    family_key,
    read_json,
    write_json,
)
from sproutsession.storage.models import Baby, Family, FamilySelection

if TYPE_CHECKING:
    from sproutsession.api.client import SproutApiClient

logger = get_logger(__name__)

COMING_SOON_ROUTE = "/coming-soon"
# Routes a verified account without a family may stay on
NO_FAMILY_ROUTES = frozenset({COMING_SOON_ROUTE, "/account/family-setup", "/setup"})


class FamilyScopeStore:
    def __init__(
        self,
        *,
        store: KeyValueStore,
        navigator: Navigator,
        events: EventBus,
        api: Optional["SproutApiClient"] = None,
    ) -> None:
        self.store = store
        self.navigator = navigator
        self.events = events
        self.api = api
        self.account_status: Optional[AccountStatusData] = None
        self.is_checking_account_status = False
        self._pending: Set[asyncio.Task] = set()
        self.family: Optional[Family] = None
        self.selection = FamilySelection()
        self.is_account_auth = is_account_token(store.get_item(AUTH_TOKEN_KEY))
        self._unsubscribers: List[Callable[[], None]] = []
        self._attached = False

    def attach(self) -> None:
        """Start following navigation, store writes and tenant-change events."""
        if self._attached:
            return
        self.navigator.add_listener(self._on_navigation)
        self.store.add_listener(self._on_storage)
        self._unsubscribers.append(self.events.subscribe(FAMILY_CHANGED, self._on_family_changed))
        self._attached = True
        self.refresh()
        if self.is_account_auth:
            self._spawn(self.check_account_status())

    def detach(self) -> None:
        if not self._attached:
            return
        self.navigator.remove_listener(self._on_navigation)
        self.store.remove_listener(self._on_storage)
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        self._attached = False

    async def aclose(self) -> None:
        self.detach()
        pending = list(self._pending)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def settle(self) -> None:
        """Wait for background account-status checks to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _spawn(self, coro: Coroutine) -> Optional[asyncio.Task]:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop yet: the owner runs the check once it has one
            coro.close()
            logger.debug("account_status_check_deferred")
            return None
        task = loop.create_task(coro, name="account_status")
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def check_account_status(self) -> Optional[AccountStatusData]:
        """Re-derive account auth from the stored token and fetch its status.

        A verified account without a family is sent to the coming-soon page
        unless it is already on a page meant for that state.
        """
        token = self.store.get_item(AUTH_TOKEN_KEY)
        self.is_account_auth = is_account_token(token)
        if not token or not self.is_account_auth or self.api is None:
            self.account_status = None
            return None
        self.is_checking_account_status = True
        try:
            status = await self.api.account_status(token)
        except SessionError as exc:
            logger.warning("account_status_check_failed", error=exc.message)
            status = None
        finally:
            self.is_checking_account_status = False
        self.account_status = status
        if status is None:
            return None
        if (
            status.verified
            and not status.has_family
            and self.navigator.pathname not in NO_FAMILY_ROUTES
        ):
            logger.info("account_without_family_redirected", from_path=self.navigator.pathname)
            self.navigator.push(COMING_SOON_ROUTE)
        else:
            self.refresh()
        return status

    def _send_account_home(self) -> bool:
        """Move an account that has a family off the account-only pages."""
        status = self.account_status
        if status is None or not status.has_family or not status.family_slug:
            return False
        path = self.navigator.pathname
        if path != COMING_SOON_ROUTE and not path.startswith("/account/"):
            return False
        logger.info("account_sent_to_family", from_path=path, family_slug=status.family_slug)
        self.navigator.push(f"/{status.family_slug}")
        return True

    @property
    def family_id(self) -> Optional[str]:
        return self.family.id if self.family else None

    @property
    def selected_baby(self) -> Optional[Baby]:
        return self.selection.selected_baby

    @property
    def sleeping_baby_ids(self) -> Set[str]:
        return set(self.selection.sleeping_baby_ids)

    def resolve_family(self) -> Optional[Family]:
        slug = self.navigator.family_slug()
        if not slug:
            return None
        marker = read_json(self.store, SELECTED_FAMILY_KEY)
        if not isinstance(marker, dict) or marker.get("slug") != slug or not marker.get("id"):
            return None
        return Family(id=str(marker["id"]), slug=slug, name=marker.get("name"))

    def remember_family(self, family: Family) -> None:
        """Record ``family`` as the tenant behind its slug and re-resolve."""
        write_json(self.store, SELECTED_FAMILY_KEY, family.to_marker())
        self.refresh()

    def refresh(self, *, force: bool = False) -> Optional[Family]:
        family = self.resolve_family()
        if family is None:
            if self._send_account_home():
                return self.family
            if self.family is not None or self.selection.selected_baby is not None:
                logger.info("family_scope_cleared", previous_family_id=self.family_id)
            self.family = None
            self.selection = FamilySelection()
            return None
        if force or self.family is None or family.id != self.family.id:
            self.family = family
            self.selection = self._load_selection(family.id)
            logger.info(
                "family_scope_changed",
                family_id=family.id,
                family_slug=family.slug,
                has_selected_baby=self.selection.selected_baby is not None,
            )
        return self.family

    def _load_selection(self, family_id: str) -> FamilySelection:
        selection = FamilySelection()
        baby_key = family_key(SELECTED_BABY_PREFIX, family_id)
        stored = read_json(self.store, baby_key)
        if isinstance(stored, dict):
            try:
                baby = Baby.from_dict(stored)
            except (KeyError, TypeError):
                baby = None
                logger.warning("stored_selection_unreadable", key=baby_key)
            if baby is None or baby.family_id != family_id:
                # Stale entry from another tenant: drop it rather than show it
                self.store.remove_item(baby_key)
                logger.warning(
                    "stale_selection_discarded",
                    family_id=family_id,
                    stored_family_id=baby.family_id if baby else None,
                )
            else:
                selection.selected_baby = baby
        elif stored is not None:
            self.store.remove_item(baby_key)

        sleeping = read_json(self.store, family_key(SLEEPING_BABIES_PREFIX, family_id))
        if isinstance(sleeping, list):
            selection.sleeping_baby_ids = {str(item) for item in sleeping if item is not None}
        return selection

    def _check_scope(self, baby: Baby) -> str:
        if self.family is None:
            raise CrossTenantViolation(baby.family_id, "")
        if baby.family_id != self.family.id:
            raise CrossTenantViolation(baby.family_id, self.family.id)
        return self.family.id

    def set_selected_baby(self, baby: Optional[Baby]) -> bool:
        """Select ``baby`` under the active tenant; returns whether it was stored."""
        if baby is None:
            self.selection.selected_baby = None
            if self.family is not None:
                self.store.remove_item(family_key(SELECTED_BABY_PREFIX, self.family.id))
            return True
        try:
            family_id = self._check_scope(baby)
        except CrossTenantViolation as exc:
            logger.warning(
                "cross_tenant_selection_rejected",
                baby_id=baby.id,
                entity_family_id=exc.entity_family_id,
                active_family_id=exc.active_family_id or None,
            )
            return False
        self.selection.selected_baby = baby
        write_json(self.store, family_key(SELECTED_BABY_PREFIX, family_id), baby.to_dict())
        return True

    def set_sleeping(self, baby_id: str, sleeping: bool) -> bool:
        if self.family is None:
            logger.warning("sleeping_state_without_family", baby_id=baby_id)
            return False
        ids = set(self.selection.sleeping_baby_ids)
        if sleeping:
            ids.add(str(baby_id))
        else:
            ids.discard(str(baby_id))
        self.selection.sleeping_baby_ids = ids
        write_json(
            self.store,
            family_key(SLEEPING_BABIES_PREFIX, self.family.id),
            sorted(ids),
        )
        return True

    def _on_navigation(self, location: str) -> None:
        self.refresh()

    def _on_storage(self, key: str, old: Optional[str], new: Optional[str]) -> None:
        if key != AUTH_TOKEN_KEY:
            return
        self.is_account_auth = is_account_token(new)
        if self.is_account_auth:
            self._spawn(self.check_account_status())
        else:
            self.account_status = None

    def _on_family_changed(self, **payload) -> None:
        self.refresh(force=True)

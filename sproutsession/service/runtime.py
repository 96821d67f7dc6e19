from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import urlparse, urlunparse

import httpx

from sproutsession.api.client import SproutApiClient
from sproutsession.config import Settings, StoreBackend, get_settings
from sproutsession.logging import get_logger
from sproutsession.service.family_scope import FamilyScopeStore
from sproutsession.service.lockout import LockoutTracker
from sproutsession.service.login import AccountLoginFlow, PinLoginFlow
from sproutsession.service.logout import LogoutCoordinator
from sproutsession.service.navigation import EventBus, Navigator
from sproutsession.service.scheduler import Clock, SystemClock, TickScheduler
from sproutsession.service.session_monitor import SessionMonitor
from sproutsession.storage.common import KeyValueStore
from sproutsession.storage.errors import StorageError
from sproutsession.storage.memory import MemoryStore
from sproutsession.storage.redis_cache import RedisStore

logger = get_logger(__name__)

LOCKOUT_COUNTDOWN_JOB = "lockout_countdown"


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in ``url`` with ``***`` for logging.

    Example: redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def build_store(settings: Settings) -> KeyValueStore:
    backend = settings.store_backend
    if backend == StoreBackend.FILE:
        store: KeyValueStore = MemoryStore(
            fs_root=settings.state_dir, encryption_key=settings.store_encryption_key
        )
        logger.info(
            "runtime_store_initialized",
            store_type="file",
            encrypted=bool(settings.store_encryption_key),
        )
        return store
    if backend == StoreBackend.REDIS:
        redis_store = RedisStore(settings.redis_url, key_prefix=settings.redis_key_prefix)
        try:
            redis_store.verify_connection()
        except StorageError as exc:
            if not settings.allow_store_fallback:
                logger.error(
                    "runtime_store_init_failed",
                    store_type="redis",
                    redis_url=_mask_url_password(settings.redis_url),
                    error=str(exc),
                )
                raise
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(settings.redis_url),
                error=str(exc),
                message="Running without Redis; session state is in-memory only.",
            )
            return MemoryStore()
        logger.info("runtime_store_initialized", store_type="redis")
        return redis_store
    logger.info("runtime_store_initialized", store_type="memory")
    return MemoryStore()


@dataclass
class Runtime:
    """Everything one client session needs, owned by a single scheduler.

    Components receive their collaborators explicitly; there is no module-level
    session state.
    """

    settings: Settings
    store: KeyValueStore
    clock: Clock
    scheduler: TickScheduler
    api: SproutApiClient
    navigator: Navigator
    events: EventBus
    lockout: LockoutTracker
    logout: LogoutCoordinator
    family_scope: FamilyScopeStore
    monitor: SessionMonitor
    _driver: Optional[asyncio.Task] = field(default=None, repr=False)

    def pin_flow(self, family_slug: Optional[str] = None) -> PinLoginFlow:
        return PinLoginFlow(
            family_slug=family_slug if family_slug is not None else self.navigator.family_slug(),
            api=self.api,
            store=self.store,
            lockout=self.lockout,
            navigator=self.navigator,
            events=self.events,
            settings=self.settings,
        )

    def account_flow(self) -> AccountLoginFlow:
        return AccountLoginFlow(
            scheduler=self.scheduler,
            api=self.api,
            store=self.store,
            lockout=self.lockout,
            navigator=self.navigator,
            events=self.events,
            settings=self.settings,
        )

    def start(self) -> None:
        """Begin ticking; with a ManualClock the caller drives ``scheduler.advance``."""
        self.family_scope.attach()
        self.scheduler.start()
        logger.info("runtime_started", jobs=sorted(self.scheduler.jobs))

    def run_in_background(self) -> asyncio.Task:
        self.family_scope.attach()
        self._driver = asyncio.create_task(self.scheduler.run())
        return self._driver

    async def aclose(self) -> None:
        self.scheduler.stop()
        if self._driver is not None:
            await self._driver
            self._driver = None
        await self.scheduler.cancel_in_flight()
        await self.family_scope.aclose()
        await self.api.aclose()
        close = getattr(self.store, "close", None)
        if callable(close):
            close()
        logger.info("runtime_stopped")


def build_runtime(
    settings: Optional[Settings] = None,
    *,
    store: Optional[KeyValueStore] = None,
    clock: Optional[Clock] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    initial_path: str = "/",
) -> Runtime:
    settings = settings or get_settings()
    clock = clock or SystemClock()
    store = store if store is not None else build_store(settings)
    scheduler = TickScheduler(clock)
    api = SproutApiClient(
        settings.api_base_url,
        timeout=settings.request_timeout_seconds,
        transport=transport,
    )
    navigator = Navigator(initial_path, reserved_segments=settings.reserved_root_segments)
    events = EventBus()
    lockout = LockoutTracker(store, clock, default_lockout_ms=settings.default_lockout_ms)
    logout = LogoutCoordinator(
        api=api, store=store, navigator=navigator, events=events, lockout=lockout
    )
    family_scope = FamilyScopeStore(store=store, navigator=navigator, events=events, api=api)
    monitor = SessionMonitor(
        store=store,
        clock=clock,
        navigator=navigator,
        logout=logout,
        api=api,
        settings=settings,
        family_scope=family_scope,
    )
    monitor.attach(scheduler)
    scheduler.every(LOCKOUT_COUNTDOWN_JOB, settings.tick_interval_ms, lockout.tick)
    logger.info(
        "runtime_built",
        api_base_url=settings.api_base_url,
        store_backend=settings.store_backend.value,
        tick_interval_ms=settings.tick_interval_ms,
    )
    return Runtime(
        settings=settings,
        store=store,
        clock=clock,
        scheduler=scheduler,
        api=api,
        navigator=navigator,
        events=events,
        lockout=lockout,
        logout=logout,
        family_scope=family_scope,
        monitor=monitor,
    )

"""Session validity, derived fresh from the store on every tick.

There is no stored session object. A session is valid iff a token exists,
the token is account-authenticated or an unlock timestamp exists, the token's
``exp`` lies in the future, and (when an unlock timestamp exists) the idle
window has not been exceeded.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from sproutsession.logging import get_logger
from sproutsession.service.errors import ExpiredSession
from sproutsession.service.tokens import read_claims
from sproutsession.storage.common import (
    AUTH_LIFE_KEY,
    AUTH_TOKEN_KEY,
    IDLE_TIME_KEY,
    UNLOCK_TIME_KEY,
    KeyValueStore,
    read_int,
)
from sproutsession.storage.models import TokenClaims

logger = get_logger(__name__)


@dataclass(frozen=True)
class SessionPolicy:
    idle_timeout_seconds: int
    absolute_lifetime_seconds: int

    @classmethod
    def load(
        cls, store: KeyValueStore, *, default_idle: int, default_auth_life: int
    ) -> "SessionPolicy":
        idle = read_int(store, IDLE_TIME_KEY)
        life = read_int(store, AUTH_LIFE_KEY)
        return cls(
            idle_timeout_seconds=idle if idle and idle > 0 else default_idle,
            absolute_lifetime_seconds=life if life and life > 0 else default_auth_life,
        )


@dataclass(frozen=True)
class SessionSnapshot:
    token: Optional[str]
    claims: Optional[TokenClaims]
    unlock_timestamp: Optional[int]
    policy: SessionPolicy

    @classmethod
    def load(
        cls, store: KeyValueStore, *, default_idle: int, default_auth_life: int
    ) -> "SessionSnapshot":
        token = store.get_item(AUTH_TOKEN_KEY)
        return cls(
            token=token,
            claims=read_claims(token, context="snapshot") if token else None,
            unlock_timestamp=read_int(store, UNLOCK_TIME_KEY),
            policy=SessionPolicy.load(
                store, default_idle=default_idle, default_auth_life=default_auth_life
            ),
        )

    @property
    def is_account_auth(self) -> bool:
        return bool(self.claims and self.claims.is_account_auth)

    @property
    def has_credentials(self) -> bool:
        """Token decodes and is either account-authenticated or unlocked."""
        return self.claims is not None and (
            self.is_account_auth or self.unlock_timestamp is not None
        )

    def idle_exceeded(self, now_ms: int) -> bool:
        if self.unlock_timestamp is None:
            return False
        return now_ms - self.unlock_timestamp > self.policy.idle_timeout_seconds * 1000

    def expiry_reason(self, now_ms: int) -> Optional[str]:
        """``"token"`` or ``"idle"`` when the session has lapsed, else None."""
        if self.claims is not None and self.claims.expired(now_ms):
            return "token"
        if self.idle_exceeded(now_ms):
            return "idle"
        return None

    def ensure_valid(self, now_ms: int) -> TokenClaims:
        claims = self.claims
        if claims is None or not self.has_credentials:
            raise ExpiredSession("missing")
        reason = self.expiry_reason(now_ms)
        if reason:
            raise ExpiredSession(reason)
        return claims


def is_session_valid(snapshot: SessionSnapshot, now_ms: int) -> bool:
    return snapshot.has_credentials and snapshot.expiry_reason(now_ms) is None


def refresh_activity(store: KeyValueStore, now_ms: int) -> bool:
    """Slide the idle window to ``now_ms``.

    Only touches a session that already has an unlock timestamp; account
    sessions without one are left alone. Refreshing twice at the same instant
    writes the same value.
    """
    if store.get_item(UNLOCK_TIME_KEY) is None:
        return False
    store.set_item(UNLOCK_TIME_KEY, str(int(now_ms)))
    return True


def format_token_remaining(claims: Optional[TokenClaims], now_ms: int) -> str:
    if claims is None or claims.exp is None:
        return "Unknown"
    diff = int(claims.exp * 1000) - now_ms
    if diff <= 0:
        return "Expired"
    hours, rest = divmod(diff // 1000, 3600)
    minutes, seconds = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


def format_idle(seconds: int) -> str:
    minutes, secs = divmod(max(0, seconds), 60)
    return f"{minutes:02d}:{secs:02d}"


@dataclass(frozen=True)
class SessionTimingReport:
    token_remaining: str
    idle_elapsed: str
    idle_timeout_seconds: int
    absolute_lifetime_seconds: int


def timing_report(snapshot: SessionSnapshot, now_ms: int) -> SessionTimingReport:
    idle_seconds = 0
    if snapshot.unlock_timestamp is not None:
        idle_seconds = max(0, (now_ms - snapshot.unlock_timestamp) // 1000)
    return SessionTimingReport(
        token_remaining=format_token_remaining(snapshot.claims, now_ms),
        idle_elapsed=format_idle(idle_seconds),
        idle_timeout_seconds=snapshot.policy.idle_timeout_seconds,
        absolute_lifetime_seconds=snapshot.policy.absolute_lifetime_seconds,
    )

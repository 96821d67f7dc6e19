"""First-factor login flows.

Two flows converge on the same contract: acquire a token, write it together
with an unlock timestamp, cache the server's session policy, then hand control
to navigation. The PIN flow also hosts the hidden admin-password sub-mode.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from sproutsession.api.client import SproutApiClient
from sproutsession.config import Settings
from sproutsession.logging import get_logger, set_correlation_id
from sproutsession.service.admin_gesture import AdminGestureDetector
from sproutsession.service.errors import (
    FormValidationError,
    InvalidCredentials,
    LockoutError,
    NetworkError,
    SessionError,
)
from sproutsession.service.lockout import LockoutTracker
from sproutsession.service.navigation import CARETAKER_CHANGED, EventBus, Navigator
from sproutsession.service.scheduler import TickScheduler
from sproutsession.service.tokens import read_claims
from sproutsession.storage.common import (
    ACCOUNT_USER_KEY,
    AUTH_LIFE_KEY,
    AUTH_TOKEN_KEY,
    CARETAKER_ID_KEY,
    IDLE_TIME_KEY,
    UNLOCK_TIME_KEY,
    KeyValueStore,
    read_json,
    write_json,
)
from sproutsession.storage.models import AccountUser

logger = get_logger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

LOGIN_ID_LENGTH = 2
PIN_MIN_LENGTH = 6
PIN_MAX_LENGTH = 10
SYSADMIN_CARETAKER_ID = "sysadmin"

RESET_CONFIRMATION_MESSAGE = (
    "If an account exists for that email, we sent instructions to reset the password."
)


def validate_email(email: str) -> bool:
    """Shape check only; the server decides whether the address is real."""
    return bool(EMAIL_PATTERN.match(email or ""))


class LoginState(str, Enum):
    IDLE = "idle"
    SUBMITTING = "submitting"
    SUCCESS = "success"
    FAILED = "failed"


class AuthType(str, Enum):
    SYSTEM = "SYSTEM"
    CARETAKER = "CARETAKER"


class PinInput(str, Enum):
    LOGIN_ID = "loginId"
    PIN = "pin"


class AccountMode(str, Enum):
    LOGIN = "login"
    FORGOT_PASSWORD = "forgot-password"


@dataclass
class LoginOutcome:
    state: LoginState
    error: str = ""
    failure: Optional[str] = None
    redirect_to: Optional[str] = None
    caretaker_id: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.state == LoginState.SUCCESS


class _LoginFlowBase:
    def __init__(
        self,
        *,
        api: SproutApiClient,
        store: KeyValueStore,
        lockout: LockoutTracker,
        navigator: Navigator,
        events: EventBus,
        settings: Settings,
    ) -> None:
        self.api = api
        self.store = store
        self.lockout = lockout
        self.clock = lockout.clock
        self.navigator = navigator
        self.events = events
        self.settings = settings
        self.state = LoginState.IDLE
        self._error = ""
        lockout.add_listener(self._on_lockout_change)

    def _on_lockout_change(self, state) -> None:
        if not state.is_locked:
            self._error = ""

    @property
    def error(self) -> str:
        if self.lockout.is_locked:
            return self.lockout.message()
        return self._error

    def clear_error(self) -> None:
        self._error = ""

    @property
    def form_disabled(self) -> bool:
        return self.state == LoginState.SUBMITTING or self.lockout.is_locked

    async def start(self) -> None:
        """Check lockout once so a locked client opens already counting down."""
        await self.lockout.refresh(self.api)

    async def _abort_if_locked(self) -> None:
        await self.lockout.refresh(self.api)
        self.lockout.raise_if_locked()

    async def _cache_policy(self, token: str) -> None:
        for key, fetch in (
            (AUTH_LIFE_KEY, self.api.fetch_auth_life),
            (IDLE_TIME_KEY, self.api.fetch_idle_time),
        ):
            try:
                value = await fetch(token)
            except NetworkError as exc:
                logger.warning("session_policy_fetch_failed", key=key, error=exc.message)
                continue
            if value is not None:
                self.store.set_item(key, str(value))

    def _store_unlock(self, token: str) -> None:
        self.store.set_item(UNLOCK_TIME_KEY, str(self.clock.now_ms()))
        self.store.set_item(AUTH_TOKEN_KEY, token)

    async def _fail(self, failure: str, message: str) -> LoginOutcome:
        if failure == "invalid":
            # The rejected attempt may itself have tripped the lockout
            await self.lockout.refresh(self.api)
        self._error = message
        self.state = LoginState.IDLE
        logger.info("login_failed", failure=failure, locked=self.lockout.is_locked)
        return LoginOutcome(state=LoginState.FAILED, error=self.error, failure=failure)

    def _succeed(self, redirect_to: str, caretaker_id: Optional[str] = None) -> LoginOutcome:
        self.state = LoginState.SUCCESS
        self._error = ""
        self.navigator.push(redirect_to)
        logger.info("login_succeeded", redirect_to=redirect_to)
        return LoginOutcome(
            state=LoginState.SUCCESS, redirect_to=redirect_to, caretaker_id=caretaker_id
        )


class PinLoginFlow(_LoginFlowBase):
    """Numeric login id + PIN, with the admin-password escape hatch."""

    def __init__(self, *, family_slug: Optional[str] = None, **kwargs) -> None:
        super().__init__(**kwargs)
        self.family_slug = family_slug
        self.auth_type = AuthType.SYSTEM
        self.login_id = ""
        self.pin = ""
        self.active_input = PinInput.LOGIN_ID
        self.gesture = AdminGestureDetector(
            self.clock,
            threshold=self.settings.admin_gesture_clicks,
            window_ms=self.settings.admin_gesture_window_ms,
        )

    @property
    def admin_mode(self) -> bool:
        return self.gesture.admin_mode

    async def start(self) -> None:
        self.login_id = ""
        self.pin = ""
        self._error = ""
        await super().start()
        await self.load_auth_settings()

    async def load_auth_settings(self) -> AuthType:
        try:
            data = await self.api.caretaker_exists(self.family_slug)
        except NetworkError as exc:
            logger.warning("auth_settings_check_failed", error=exc.message)
            return self.auth_type
        if data is not None:
            if data.auth_type:
                self.auth_type = AuthType(data.auth_type)
            else:
                self.auth_type = AuthType.CARETAKER if data.exists else AuthType.SYSTEM
        self.active_input = (
            PinInput.LOGIN_ID if self.auth_type == AuthType.CARETAKER else PinInput.PIN
        )
        return self.auth_type

    def focus(self, target: PinInput) -> None:
        self.active_input = target

    def enter_digit(self, digit: str) -> None:
        if self.lockout.is_locked or not (len(digit) == 1 and digit.isdigit()):
            return
        if self.active_input == PinInput.LOGIN_ID and self.auth_type == AuthType.CARETAKER:
            if len(self.login_id) < LOGIN_ID_LENGTH:
                self.login_id += digit
                self._error = ""
            if len(self.login_id) == LOGIN_ID_LENGTH:
                self.active_input = PinInput.PIN
            return
        if len(self.pin) < PIN_MAX_LENGTH:
            self.pin += digit
            self._error = ""

    def delete(self) -> None:
        if self.lockout.is_locked:
            return
        if self.active_input == PinInput.PIN and self.pin:
            self.pin = self.pin[:-1]
        elif self.active_input == PinInput.LOGIN_ID and self.login_id:
            self.login_id = self.login_id[:-1]
        elif self.active_input == PinInput.PIN and not self.pin and self.login_id:
            self.active_input = PinInput.LOGIN_ID
        self._error = ""

    def set_admin_password(self, value: str) -> None:
        self.gesture.set_admin_password(value)
        self._error = ""

    def exit_admin_mode(self) -> None:
        self.gesture.exit_admin_mode()
        self._error = ""

    @property
    def submit_disabled(self) -> bool:
        if self.lockout.is_locked:
            return True
        if self.admin_mode:
            return not self.gesture.admin_password.strip()
        if self.auth_type == AuthType.CARETAKER and len(self.login_id) != LOGIN_ID_LENGTH:
            return True
        return len(self.pin) < PIN_MIN_LENGTH

    async def press_go(self) -> Optional[LoginOutcome]:
        """Submit when enabled; otherwise the press only feeds the gesture."""
        if not self.submit_disabled:
            return await self.submit()
        if self.gesture.register_click():
            self._error = ""
        return None

    def _validate(self) -> None:
        if self.admin_mode:
            if not self.gesture.admin_password.strip():
                raise FormValidationError(
                    "admin password missing", user_message="Admin password is required"
                )
            return
        if self.auth_type == AuthType.CARETAKER and len(self.login_id) != LOGIN_ID_LENGTH:
            self.active_input = PinInput.LOGIN_ID
            raise FormValidationError(
                "login id incomplete",
                user_message=f"Enter a valid login ID ({LOGIN_ID_LENGTH} digits)",
            )
        if len(self.pin) < PIN_MIN_LENGTH:
            self.active_input = PinInput.PIN
            raise FormValidationError(
                "pin too short",
                user_message=f"Enter a PIN of at least {PIN_MIN_LENGTH} digits",
            )

    def _landing_route(self) -> str:
        landing = self.settings.landing_subpath
        if self.family_slug:
            return f"/{self.family_slug}/{landing}"
        return f"/{landing}"

    async def submit(self) -> LoginOutcome:
        if self.state == LoginState.SUBMITTING:
            return LoginOutcome(state=LoginState.SUBMITTING)
        set_correlation_id()
        try:
            self._validate()
        except FormValidationError as exc:
            self._error = exc.user_message
            return LoginOutcome(state=LoginState.FAILED, error=self._error, failure="validation")

        admin = self.admin_mode
        self.state = LoginState.SUBMITTING
        try:
            await self._abort_if_locked()
            if admin:
                data = await self.api.authenticate(admin_password=self.gesture.admin_password)
                if not data.is_sys_admin:
                    raise InvalidCredentials("not a system administrator")
            else:
                data = await self.api.authenticate(
                    login_id=self.login_id if self.auth_type == AuthType.CARETAKER else None,
                    security_pin=self.pin,
                    family_slug=self.family_slug,
                )
        except LockoutError as exc:
            self.state = LoginState.IDLE
            logger.info("login_blocked_by_lockout", remaining_ms=exc.remaining_ms)
            return LoginOutcome(state=LoginState.FAILED, error=self.error, failure="lockout")
        except InvalidCredentials:
            self._clear_secret(admin)
            message = "Invalid admin password" if admin else InvalidCredentials.user_message
            return await self._fail("invalid", message)
        except NetworkError as exc:
            self._clear_secret(admin)
            logger.warning("login_network_error", error=exc.message)
            return await self._fail("network", "Authentication failed. Please try again.")

        self._store_unlock(data.token)
        if admin:
            self.store.remove_item(CARETAKER_ID_KEY)
            caretaker_id = SYSADMIN_CARETAKER_ID
        else:
            caretaker_id = data.id
            if caretaker_id:
                self.store.set_item(CARETAKER_ID_KEY, caretaker_id)
        await self._cache_policy(data.token)
        self.events.emit(CARETAKER_CHANGED, caretaker_id=caretaker_id)
        self.login_id = ""
        self.pin = ""
        if admin:
            self.gesture.exit_admin_mode()
        return self._succeed(self._landing_route(), caretaker_id=caretaker_id)

    def _clear_secret(self, admin: bool) -> None:
        if admin:
            self.gesture.admin_password = ""
        else:
            self.pin = ""


class AccountLoginFlow(_LoginFlowBase):
    """Email + password login for account families, plus password reset."""

    def __init__(self, *, scheduler: Optional[TickScheduler] = None, **kwargs) -> None:
        super().__init__(**kwargs)
        self.scheduler = scheduler
        self.mode = AccountMode.LOGIN
        self.email = ""
        self.password = ""
        self.show_reset_confirmation = False

    def show_forgot_password(self) -> None:
        self.mode = AccountMode.FORGOT_PASSWORD
        self._error = ""
        self.show_reset_confirmation = False

    def show_login(self) -> None:
        self.mode = AccountMode.LOGIN
        self._error = ""
        self.show_reset_confirmation = False

    def set_email(self, value: str) -> None:
        self.email = value
        self._error = ""

    def set_password(self, value: str) -> None:
        self.password = value
        self._error = ""

    async def submit(self) -> LoginOutcome:
        if self.state == LoginState.SUBMITTING:
            return LoginOutcome(state=LoginState.SUBMITTING)
        set_correlation_id()
        email = self.email.strip()
        if not validate_email(email):
            self._error = "Please enter a valid email"
            return LoginOutcome(state=LoginState.FAILED, error=self._error, failure="validation")
        if self.mode == AccountMode.FORGOT_PASSWORD:
            return await self._request_reset(email)
        if not self.password:
            self._error = "Password is required"
            return LoginOutcome(state=LoginState.FAILED, error=self._error, failure="validation")

        self.state = LoginState.SUBMITTING
        self._error = ""
        try:
            data = await self.api.account_login(email, self.password)
        except InvalidCredentials as exc:
            return await self._fail("invalid", exc.user_message)
        except NetworkError as exc:
            logger.warning("account_login_network_error", error=exc.message)
            return await self._fail("network", NetworkError.user_message)

        self._store_unlock(data.token)
        user = AccountUser(
            first_name=data.user.first_name,
            email=data.user.email,
            family_slug=data.user.family_slug,
        )
        write_json(self.store, ACCOUNT_USER_KEY, user.to_dict())
        await self._cache_policy(data.token)
        self.email = ""
        self.password = ""
        target = f"/{user.family_slug}" if user.family_slug else "/setup"
        return self._succeed(target)

    async def _request_reset(self, email: str) -> LoginOutcome:
        self.state = LoginState.SUBMITTING
        self._error = ""
        try:
            await self.api.forgot_password(email)
        except NetworkError as exc:
            logger.warning("forgot_password_network_error", error=exc.message)
            return await self._fail("network", NetworkError.user_message)
        except SessionError as exc:
            return await self._fail("rejected", exc.user_message)
        # Same answer whether or not the address has an account
        self.state = LoginState.IDLE
        self.show_reset_confirmation = True
        self.email = ""
        self.password = ""
        if self.scheduler is not None:
            self.scheduler.call_later(
                "reset_confirmation", self.settings.reset_confirmation_ms, self.show_login
            )
        logger.info("password_reset_requested")
        return LoginOutcome(state=LoginState.SUCCESS, error="")

    async def refresh_after_onboarding(self) -> Optional[str]:
        """Swap in a fresh account token once family setup has finished.

        Returns the family slug the new token is bound to.
        """
        token = self.store.get_item(AUTH_TOKEN_KEY)
        claims = read_claims(token, context="refresh")
        if not token or claims is None or not claims.is_account_auth:
            return None
        try:
            data = await self.api.refresh_token(token)
        except SessionError as exc:
            # The current token stays valid; the next login picks up the family
            logger.warning(
                "account_token_refresh_failed",
                error_type=type(exc).__name__,
                error=exc.message,
            )
            return None
        self.store.set_item(AUTH_TOKEN_KEY, data.token)
        stored = read_json(self.store, ACCOUNT_USER_KEY)
        if isinstance(stored, dict):
            user = AccountUser.from_dict(stored)
            user.family_slug = data.family_slug
            write_json(self.store, ACCOUNT_USER_KEY, user.to_dict())
        logger.info("account_token_refreshed", has_family=bool(data.family_slug))
        return data.family_slug

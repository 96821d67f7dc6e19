import asyncio
import base64
import inspect
import json
import os
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set

os.environ.setdefault("SPROUT_LOG_LEVEL", "WARNING")

import httpx  # noqa: E402
import pytest  # noqa: E402
from fastapi import FastAPI, Request  # noqa: E402
from fastapi.responses import JSONResponse  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from sproutsession.config import Settings, reset_settings_cache  # noqa: E402
from sproutsession.service.runtime import build_runtime  # noqa: E402
from sproutsession.service.scheduler import ManualClock  # noqa: E402
from sproutsession.service.tokens import read_claims  # noqa: E402
from sproutsession.storage.memory import MemoryStore  # noqa: E402

START_MS = 1_700_000_000_000


def _segment(obj: Dict[str, Any]) -> str:
    return base64.urlsafe_b64encode(json.dumps(obj).encode()).rstrip(b"=").decode()


def encode_token(claims: Dict[str, Any]) -> str:
    """Unsigned three-segment bearer token carrying ``claims``."""
    return f"{_segment({'alg': 'HS256', 'typ': 'JWT'})}.{_segment(claims)}.test-signature"


class FakeBackend:
    """In-process stand-in for the family server, served through ASGITransport."""

    def __init__(self, clock: ManualClock) -> None:
        self.clock = clock
        self.auth_type = "CARETAKER"
        self.system_pin = "123456"
        self.admin_password = "admin-secret"
        self.admin_is_sysadmin = True
        self.caretakers: Dict[str, Dict[str, Any]] = {
            "01": {"id": "ct-1", "pin": "111111", "name": "Alice", "role": "USER"},
            "02": {"id": "ct-2", "pin": "222222", "name": "Bo", "role": "ADMIN"},
        }
        self.accounts: Dict[str, Dict[str, Any]] = {
            "parent@example.com": {
                "id": "acct-1",
                "password": "hunter22",
                "firstName": "Pat",
                "familySlug": "acme",
                "verified": True,
            },
        }
        self.families: Dict[str, Dict[str, Any]] = {
            "acme": {"id": "fam-acme", "slug": "acme", "name": "Acme", "isActive": True},
            "other": {"id": "fam-other", "slug": "other", "name": "Other", "isActive": True},
        }
        self.auth_life_seconds = 3600
        self.idle_time_seconds = 600
        self.token_carries_name = True
        self.max_attempts = 3
        self.lockout_ms = 5 * 60 * 1000
        self.failed_attempts = 0
        self.locked_until = 0
        self.auth_requests: List[Dict[str, Any]] = []
        self.account_login_requests: List[str] = []
        self.reset_requests: List[str] = []
        self.logout_calls: List[Optional[str]] = []
        self.logout_status = 200
        self.logout_hook: Optional[Callable[[], None]] = None
        self.caretaker_gate: Optional[asyncio.Event] = None
        self.status_requests = 0
        self.app = self._build_app()

    def issue_token(self, **claims: Any) -> str:
        payload = {"exp": self.clock.now_ms() // 1000 + self.auth_life_seconds}
        payload.update(claims)
        return encode_token(payload)

    def lock(self, remaining_ms: int) -> None:
        self.locked_until = self.clock.now_ms() + remaining_ms

    def remaining_lock_ms(self) -> int:
        return max(0, self.locked_until - self.clock.now_ms())

    def account_for(self, request: Request) -> Optional[Dict[str, Any]]:
        bearer = (request.headers.get("authorization") or "").removeprefix("Bearer ")
        claims = read_claims(bearer)
        if claims is None or not claims.is_account_auth:
            return None
        return next((a for a in self.accounts.values() if a["id"] == claims.subject_id), None)

    def _record_failure(self) -> JSONResponse:
        self.failed_attempts += 1
        if self.failed_attempts >= self.max_attempts:
            self.failed_attempts = 0
            self.lock(self.lockout_ms)
        return JSONResponse({"success": False, "error": "Invalid credentials"}, status_code=401)

    def _build_app(self) -> FastAPI:
        app = FastAPI()
        backend = self

        @app.get("/api/auth/ip-lockout")
        async def ip_lockout():
            remaining = backend.remaining_lock_ms()
            return {"success": True, "data": {"locked": remaining > 0, "remainingTime": remaining}}

        @app.get("/api/auth/caretaker-exists")
        async def caretaker_exists():
            return {
                "success": True,
                "data": {"exists": bool(backend.caretakers), "authType": backend.auth_type},
            }

        @app.post("/api/auth")
        async def authenticate(request: Request):
            body = await request.json()
            backend.auth_requests.append(body)
            if backend.remaining_lock_ms() > 0:
                return JSONResponse(
                    {"success": False, "error": "Too many failed attempts"}, status_code=429
                )
            if "adminPassword" in body:
                if body["adminPassword"] != backend.admin_password:
                    return backend._record_failure()
                token = backend.issue_token(
                    id="sysadmin", isSysAdmin=backend.admin_is_sysadmin, name="System Admin"
                )
                return {
                    "success": True,
                    "data": {"id": "sysadmin", "token": token, "isSysAdmin": backend.admin_is_sysadmin},
                }
            slug = body.get("familySlug") or "acme"
            family = backend.families.get(slug, {})
            if backend.auth_type == "CARETAKER":
                caretaker = backend.caretakers.get(body.get("loginId") or "")
                if caretaker is None or caretaker["pin"] != body.get("securityPin"):
                    return backend._record_failure()
            else:
                if body.get("securityPin") != backend.system_pin:
                    return backend._record_failure()
                caretaker = {"id": "system", "name": "System", "role": "ADMIN"}
            claims = {
                "id": caretaker["id"],
                "role": caretaker["role"],
                "familySlug": slug,
                "familyId": family.get("id"),
            }
            if backend.token_carries_name:
                claims["name"] = caretaker["name"]
            backend.failed_attempts = 0
            return {
                "success": True,
                "data": {"id": caretaker["id"], "token": backend.issue_token(**claims)},
            }

        @app.post("/api/auth/logout")
        async def logout(request: Request):
            backend.logout_calls.append(request.headers.get("authorization"))
            if backend.logout_hook is not None:
                backend.logout_hook()
            if backend.logout_status >= 400:
                return JSONResponse({"success": False, "error": "boom"}, status_code=backend.logout_status)
            return {"success": True}

        @app.post("/api/accounts/login")
        async def account_login(request: Request):
            body = await request.json()
            backend.account_login_requests.append(body.get("email"))
            account = backend.accounts.get(body.get("email"))
            if account is None or account["password"] != body.get("password"):
                return JSONResponse(
                    {"success": False, "error": "Invalid email or password"}, status_code=401
                )
            token = backend.issue_token(
                accountId=account["id"],
                isAccountAuth=True,
                role="OWNER",
                name=account["firstName"],
                familySlug=account["familySlug"],
            )
            return {
                "success": True,
                "data": {
                    "token": token,
                    "user": {
                        "firstName": account["firstName"],
                        "email": body["email"],
                        "familySlug": account["familySlug"],
                    },
                },
            }

        @app.post("/api/accounts/forgot-password")
        async def forgot_password(request: Request):
            body = await request.json()
            backend.reset_requests.append(body.get("email"))
            return {"success": True, "data": None}

        @app.post("/api/auth/refresh-token")
        async def refresh_token(request: Request):
            account = backend.account_for(request)
            if account is None:
                return JSONResponse({"success": False, "error": "Unauthorized"}, status_code=401)
            token = backend.issue_token(
                accountId=account["id"],
                isAccountAuth=True,
                role="OWNER",
                name=account["firstName"],
                familySlug=account["familySlug"],
            )
            return {"success": True, "data": {"token": token, "familySlug": account["familySlug"]}}

        @app.get("/api/accounts/status")
        async def account_status(request: Request):
            backend.status_requests += 1
            account = backend.account_for(request)
            if account is None:
                return JSONResponse({"success": False, "error": "Unauthorized"}, status_code=401)
            family = backend.families.get(account["familySlug"] or "")
            return {
                "success": True,
                "data": {
                    "accountId": account["id"],
                    "email": next(e for e, a in backend.accounts.items() if a is account),
                    "firstName": account["firstName"],
                    "verified": account["verified"],
                    "hasFamily": family is not None,
                    "familySlug": family["slug"] if family else None,
                    "familyName": family["name"] if family else None,
                },
            }

        @app.get("/api/settings/auth-life")
        async def auth_life():
            return {"success": True, "data": backend.auth_life_seconds}

        @app.get("/api/settings/idle-time")
        async def idle_time():
            return {"success": True, "data": backend.idle_time_seconds}

        @app.get("/api/family/by-slug/{slug}")
        async def family_by_slug(slug: str):
            family = backend.families.get(slug)
            if family is None:
                return JSONResponse({"success": False, "error": "Family not found"}, status_code=404)
            return {"success": True, "data": family}

        @app.get("/api/caretaker")
        async def caretaker(id: str):
            if backend.caretaker_gate is not None:
                await backend.caretaker_gate.wait()
            for record in backend.caretakers.values():
                if record["id"] == id:
                    return {"success": True, "data": {"id": record["id"], "name": record["name"]}}
            return JSONResponse({"success": False, "error": "Not found"}, status_code=404)

        return app


class FlakyTransport(httpx.AsyncBaseTransport):
    """Wraps the ASGI transport and fails chosen paths like a dropped network."""

    def __init__(self, inner: httpx.AsyncBaseTransport) -> None:
        self.inner = inner
        self.down_paths: Set[str] = set()
        self.timeout_paths: Set[str] = set()
        self.all_down = False

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if self.all_down or path in self.down_paths:
            raise httpx.ConnectError("connection refused", request=request)
        if path in self.timeout_paths:
            raise httpx.ReadTimeout("timed out", request=request)
        return await self.inner.handle_async_request(request)


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def make_token():
    return encode_token


@pytest.fixture
def clock():
    return ManualClock(START_MS)


@pytest.fixture
def backend(clock):
    return FakeBackend(clock)


@pytest.fixture
def transport(backend):
    return FlakyTransport(httpx.ASGITransport(app=backend.app))


@pytest.fixture
def settings():
    return Settings(api_base_url="http://sprout.test")


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def runtime(settings, store, clock, transport):
    rt = build_runtime(
        settings, store=store, clock=clock, transport=transport, initial_path="/acme/login"
    )
    rt.start()
    yield rt
    rt.scheduler.stop()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")

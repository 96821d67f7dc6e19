from __future__ import annotations

from typing import Any, Optional, Type, TypeVar
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ValidationError

from sproutsession.api.schemas import (
    AccountLoginData,
    AccountStatusData,
    ApiEnvelope,
    CaretakerData,
    CaretakerExistsData,
    FamilyData,
    LockoutStatus,
    PinAuthData,
    RefreshTokenData,
)
from sproutsession.logging import get_logger
from sproutsession.service.errors import InvalidCredentials, NetworkError, SessionError

logger = get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class SproutApiClient:
    """Async client for the endpoints the session layer depends on.

    Transport failures, timeouts and unreadable bodies all surface as
    ``NetworkError``. A well-formed ``success: false`` answer is not a network
    failure; each method decides what it means.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            follow_redirects=False,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "SproutApiClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[dict] = None,
        params: Optional[dict] = None,
        token: Optional[str] = None,
    ) -> tuple[int, ApiEnvelope]:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        try:
            response = await self._client.request(
                method, path, json=json, params=params, headers=headers
            )
        except httpx.HTTPError as exc:
            logger.warning(
                "api_request_failed",
                method=method,
                path=path,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise NetworkError(f"{method} {path} failed", detail={"error": str(exc)}) from exc
        try:
            body = response.json()
        except ValueError as exc:
            logger.warning(
                "api_response_not_json", method=method, path=path, status=response.status_code
            )
            raise NetworkError(
                f"{method} {path} returned a non-JSON body",
                detail={"status": response.status_code},
            ) from exc
        try:
            envelope = ApiEnvelope.model_validate(body)
        except ValidationError as exc:
            raise NetworkError(
                f"{method} {path} returned an unexpected body",
                detail={"status": response.status_code},
            ) from exc
        return response.status_code, envelope

    @staticmethod
    def _parse(model: Type[ModelT], data: Any, path: str) -> ModelT:
        try:
            return model.model_validate(data)
        except ValidationError as exc:
            logger.warning("api_payload_invalid", path=path, errors=exc.error_count())
            raise NetworkError(f"{path} returned an unexpected payload") from exc

    async def check_ip_lockout(self) -> LockoutStatus:
        path = "/api/auth/ip-lockout"
        _, envelope = await self._request("GET", path)
        if not envelope.success or envelope.data is None:
            return LockoutStatus()
        return self._parse(LockoutStatus, envelope.data, path)

    async def authenticate(
        self,
        *,
        login_id: Optional[str] = None,
        security_pin: Optional[str] = None,
        family_slug: Optional[str] = None,
        admin_password: Optional[str] = None,
    ) -> PinAuthData:
        path = "/api/auth"
        if admin_password is not None:
            body: dict[str, Any] = {"adminPassword": admin_password}
        else:
            body = {"securityPin": security_pin}
            if login_id is not None:
                body["loginId"] = login_id
            if family_slug:
                body["familySlug"] = family_slug
        _, envelope = await self._request("POST", path, json=body)
        if not envelope.success or not envelope.data:
            raise InvalidCredentials("authentication rejected", detail={"error": envelope.error})
        return self._parse(PinAuthData, envelope.data, path)

    async def account_login(self, email: str, password: str) -> AccountLoginData:
        path = "/api/accounts/login"
        status, envelope = await self._request(
            "POST", path, json={"email": email, "password": password}
        )
        if status >= 400 or not envelope.success or not envelope.data:
            raise InvalidCredentials(
                "account login rejected",
                detail={"status": status},
                user_message=envelope.error or "Login failed. Please try again.",
            )
        return self._parse(AccountLoginData, envelope.data, path)

    async def forgot_password(self, email: str) -> None:
        status, envelope = await self._request(
            "POST", "/api/accounts/forgot-password", json={"email": email}
        )
        if status >= 400 or not envelope.success:
            raise SessionError(
                "password reset request rejected",
                detail={"status": status},
                user_message=envelope.error or "Failed to send reset email. Please try again.",
            )

    async def _fetch_seconds(self, path: str, token: Optional[str]) -> Optional[int]:
        _, envelope = await self._request("GET", path, token=token)
        if not envelope.success:
            return None
        try:
            return int(envelope.data)
        except (TypeError, ValueError):
            logger.warning("api_policy_value_invalid", path=path)
            return None

    async def fetch_auth_life(self, token: Optional[str] = None) -> Optional[int]:
        return await self._fetch_seconds("/api/settings/auth-life", token)

    async def fetch_idle_time(self, token: Optional[str] = None) -> Optional[int]:
        return await self._fetch_seconds("/api/settings/idle-time", token)

    async def logout(self, token: Optional[str]) -> bool:
        status, envelope = await self._request("POST", "/api/auth/logout", token=token)
        return status < 400 and envelope.success

    async def get_family_by_slug(self, slug: str) -> Optional[FamilyData]:
        path = f"/api/family/by-slug/{quote(slug, safe='')}"
        _, envelope = await self._request("GET", path)
        if not envelope.success or not envelope.data:
            return None
        return self._parse(FamilyData, envelope.data, "/api/family/by-slug")

    async def get_caretaker(
        self, caretaker_id: str, token: Optional[str] = None
    ) -> Optional[CaretakerData]:
        path = "/api/caretaker"
        _, envelope = await self._request(
            "GET", path, params={"id": caretaker_id}, token=token
        )
        if not envelope.success or not envelope.data:
            return None
        return self._parse(CaretakerData, envelope.data, path)

    async def caretaker_exists(self, family_slug: Optional[str] = None) -> Optional[CaretakerExistsData]:
        path = "/api/auth/caretaker-exists"
        params = {"familySlug": family_slug} if family_slug else None
        _, envelope = await self._request("GET", path, params=params)
        if not envelope.success or envelope.data is None:
            return None
        return self._parse(CaretakerExistsData, envelope.data, path)

    async def refresh_token(self, token: str) -> RefreshTokenData:
        path = "/api/auth/refresh-token"
        status, envelope = await self._request("POST", path, token=token)
        if status >= 400 or not envelope.success or not envelope.data:
            raise InvalidCredentials(
                "token refresh rejected",
                detail={"status": status},
                user_message=envelope.error or "Session refresh failed.",
            )
        return self._parse(RefreshTokenData, envelope.data, path)

    async def account_status(self, token: str) -> Optional[AccountStatusData]:
        """Verification and family state of the account behind ``token``."""
        path = "/api/accounts/status"
        status, envelope = await self._request("GET", path, token=token)
        if status >= 400 or not envelope.success or not envelope.data:
            return None
        return self._parse(AccountStatusData, envelope.data, path)

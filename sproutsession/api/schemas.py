from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class _Wire(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ApiEnvelope(_Wire):
    """``{success, data?, error?}`` wrapper every endpoint responds with."""

    success: bool = False
    data: Any = None
    error: Optional[str] = None


class LockoutStatus(_Wire):
    locked: bool = False
    remaining_time: int = Field(0, alias="remainingTime")

    @field_validator("remaining_time", mode="before")
    @classmethod
    def _coerce_remaining(cls, value: Any) -> int:
        if value is None:
            return 0
        return max(0, int(value))


class PinAuthData(_Wire):
    id: Optional[str] = None
    token: str
    is_sys_admin: bool = Field(False, alias="isSysAdmin")

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> Optional[str]:
        return None if value is None else str(value)


class AccountUserPayload(_Wire):
    first_name: Optional[str] = Field(None, alias="firstName")
    email: str
    family_slug: Optional[str] = Field(None, alias="familySlug")


class AccountLoginData(_Wire):
    token: str
    user: AccountUserPayload


class CaretakerExistsData(_Wire):
    exists: bool = False
    auth_type: Optional[Literal["SYSTEM", "CARETAKER"]] = Field(None, alias="authType")


class FamilyData(_Wire):
    id: str
    slug: str
    name: Optional[str] = None
    is_active: bool = Field(True, alias="isActive")

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> Any:
        return value if value is None else str(value)


class CaretakerData(_Wire):
    id: str
    name: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> Any:
        return value if value is None else str(value)


class RefreshTokenData(_Wire):
    token: str
    family_slug: Optional[str] = Field(None, alias="familySlug")


class AccountStatusData(_Wire):
    account_id: Optional[str] = Field(None, alias="accountId")
    email: Optional[str] = None
    first_name: Optional[str] = Field(None, alias="firstName")
    verified: bool = False
    has_family: bool = Field(False, alias="hasFamily")
    family_slug: Optional[str] = Field(None, alias="familySlug")
    family_name: Optional[str] = Field(None, alias="familyName")

    @field_validator("account_id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> Any:
        return value if value is None else str(value)

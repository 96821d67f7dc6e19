from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Set


@dataclass
class TokenClaims:
    """Decoded, unverified payload of a bearer token."""

    subject_id: Optional[str] = None
    exp: Optional[float] = None
    is_sys_admin: bool = False
    is_account_auth: bool = False
    role: Optional[str] = None
    family_slug: Optional[str] = None
    family_id: Optional[str] = None
    name: Optional[str] = None
    betaparticipant: bool = False
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "TokenClaims":
        # PIN tokens carry the caretaker id, account tokens the account id
        subject = payload.get("id") or payload.get("accountId") or payload.get("sub")
        exp = payload.get("exp")
        return cls(
            subject_id=str(subject) if subject is not None else None,
            exp=float(exp) if isinstance(exp, (int, float)) and not isinstance(exp, bool) else None,
            is_sys_admin=payload.get("isSysAdmin") is True,
            is_account_auth=payload.get("isAccountAuth") is True,
            role=payload.get("role") or payload.get("caretakerRole"),
            family_slug=payload.get("familySlug") or None,
            family_id=payload.get("familyId") or None,
            name=payload.get("name"),
            betaparticipant=bool(payload.get("betaparticipant")),
            raw=dict(payload),
        )

    def expired(self, now_ms: int) -> bool:
        # A token without a numeric exp never counts as live
        if self.exp is None:
            return True
        return self.exp * 1000 <= now_ms


@dataclass
class Family:
    id: str
    slug: str
    name: Optional[str] = None
    is_active: bool = True

    def to_marker(self) -> Dict[str, Any]:
        return {"id": self.id, "slug": self.slug}


@dataclass
class Baby:
    id: str
    family_id: str
    first_name: Optional[str] = None
    inactive: bool = False
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.extra)
        data.update(
            {
                "id": self.id,
                "familyId": self.family_id,
                "firstName": self.first_name,
                "inactive": self.inactive,
            }
        )
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Baby":
        known = {"id", "familyId", "firstName", "inactive"}
        return cls(
            id=str(data["id"]),
            family_id=str(data["familyId"]),
            first_name=data.get("firstName"),
            inactive=bool(data.get("inactive", False)),
            extra={k: v for k, v in data.items() if k not in known},
        )


@dataclass
class AccountUser:
    first_name: Optional[str]
    email: str
    family_slug: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "firstName": self.first_name,
            "email": self.email,
            "familySlug": self.family_slug,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AccountUser":
        return cls(
            first_name=data.get("firstName"),
            email=data.get("email", ""),
            family_slug=data.get("familySlug") or None,
        )


@dataclass
class LockoutState:
    is_locked: bool = False
    unlock_at_epoch_ms: int = 0

    def remaining_ms(self, now_ms: int) -> int:
        if not self.is_locked:
            return 0
        return max(0, self.unlock_at_epoch_ms - now_ms)


@dataclass
class FamilySelection:
    selected_baby: Optional[Baby] = None
    sleeping_baby_ids: Set[str] = field(default_factory=set)

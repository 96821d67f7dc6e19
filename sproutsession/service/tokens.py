"""Read claims out of a bearer token without verifying it.

The signature is never checked here: the server verifies every request, and
anything derived from these claims is a display hint only.
"""

from __future__ import annotations

import base64
import binascii
import json
from typing import Optional, Union

from sproutsession.logging import get_logger
from sproutsession.service.errors import DecodeError
from sproutsession.storage.models import TokenClaims

logger = get_logger(__name__)


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    # validate=True rejects characters outside the urlsafe alphabet
    return base64.b64decode(
        (segment + padding).replace("-", "+").replace("_", "/"), validate=True
    )


def decode_token(token: Optional[str]) -> Union[TokenClaims, DecodeError]:
    """Decode the claim set of ``token``.

    Returns the claims, or a ``DecodeError`` instance describing why the token
    is unreadable. Never raises.
    """
    if not token or not isinstance(token, str):
        return DecodeError("token missing", detail={"reason": "missing"})
    parts = token.split(".")
    if len(parts) != 3:
        return DecodeError(
            "token must have three segments", detail={"reason": "segments", "count": len(parts)}
        )
    try:
        raw = _decode_segment(parts[1])
    except (binascii.Error, ValueError):
        return DecodeError("payload is not base64url", detail={"reason": "base64"})
    try:
        payload = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return DecodeError("payload is not JSON", detail={"reason": "json"})
    if not isinstance(payload, dict):
        return DecodeError("payload is not an object", detail={"reason": "json"})
    try:
        return TokenClaims.from_payload(payload)
    except (TypeError, ValueError) as exc:
        return DecodeError("payload has invalid claim types", detail={"reason": str(exc)})


def read_claims(token: Optional[str], *, context: str = "") -> Optional[TokenClaims]:
    """Decode ``token`` and log failures; ``None`` means unauthenticated."""
    result = decode_token(token)
    if isinstance(result, DecodeError):
        if token:
            logger.warning(
                "token_decode_failed",
                context=context or None,
                reason=result.detail.get("reason"),
            )
        return None
    return result


def is_account_token(token: Optional[str]) -> bool:
    claims = read_claims(token, context="account_check")
    return bool(claims and claims.is_account_auth)

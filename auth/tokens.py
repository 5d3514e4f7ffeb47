from __future__ import annotations

import base64
import binascii
import json
from datetime import datetime, timezone

import httpx

from auth.models import Session
from codeverse.constants import REFRESH_PATH
from codeverse.errors import InvalidResponse, NetworkError
from codeverse.http import decode_json_body, error_from_response


def decode_jwt_claims(token: str) -> dict:
    """Read a JWT's claims without verifying it. Returns ``{}`` for anything else."""
    parts = token.split(".")
    if len(parts) != 3:
        return {}
    try:
        data = base64.urlsafe_b64decode(parts[1] + "==")
        claims = json.loads(data)
    except (binascii.Error, ValueError):
        return {}
    return claims if isinstance(claims, dict) else {}


def parse_expires_at(value) -> float | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        # Millisecond timestamps are what JavaScript backends emit.
        return value / 1000 if value > 1e12 else float(value)
    if isinstance(value, str):
        try:
            return parse_expires_at(float(value))
        except ValueError:
            pass
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.timestamp()
    return None


def _expiry_from(payload: dict, access_token: str) -> float | None:
    expires_at = parse_expires_at(payload.get("expiresAt"))
    if expires_at is not None:
        return expires_at
    return parse_expires_at(decode_jwt_claims(access_token).get("exp"))


def session_from_payload(payload: dict) -> Session:
    access_token = payload.get("accessToken")
    refresh_token = payload.get("refreshToken")

    if not isinstance(access_token, str) or not access_token:
        raise InvalidResponse("Token response missing accessToken.")
    if refresh_token is not None and not isinstance(refresh_token, str):
        raise InvalidResponse("Token response refreshToken must be a string.")

    return Session(
        access_token=access_token,
        refresh_token=refresh_token or None,
        expires_at=_expiry_from(payload, access_token),
    )


def apply_refresh(session: Session, payload: dict) -> None:
    """Update ``session`` in place from a refresh response."""
    access_token = payload.get("accessToken")
    if not isinstance(access_token, str) or not access_token:
        raise InvalidResponse("Refresh response missing accessToken.")

    session.access_token = access_token
    refresh_token = payload.get("refreshToken")
    if isinstance(refresh_token, str) and refresh_token:
        session.refresh_token = refresh_token
    session.expires_at = _expiry_from(payload, access_token)


async def refresh_access_token(refresh_token: str, *, client: httpx.AsyncClient) -> dict:
    try:
        response = await client.post(
            REFRESH_PATH,
            json={"refreshToken": refresh_token},
            headers={"Accept": "application/json"},
        )
    except httpx.TimeoutException as error:
        raise NetworkError("Token refresh timed out.") from error
    except httpx.TransportError as error:
        raise NetworkError(f"Unable to reach CodeVerse for token refresh: {error}") from error

    if not response.is_success:
        raise error_from_response(response)
    return decode_json_body(response)

import httpx
import pytest

from auth.models import Session
from auth.tokens import (
    apply_refresh,
    decode_jwt_claims,
    parse_expires_at,
    refresh_access_token,
    session_from_payload,
)
from codeverse.errors import AuthenticationExpired, ClientError, InvalidResponse, ServerError
from tests.helpers import BASE_URL, make_jwt


def test_decode_jwt_claims() -> None:
    token = make_jwt({"sub": "user-1", "exp": 1_700_000_000})

    assert decode_jwt_claims(token) == {"sub": "user-1", "exp": 1_700_000_000}


@pytest.mark.parametrize("token", ["opaque", "a.b", "a.!!!.c", "a.bnVsbA.c"])
def test_decode_jwt_claims_rejects_non_jwt(token: str) -> None:
    assert decode_jwt_claims(token) == {}


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (None, None),
        ("", None),
        (1_700_000_000, 1_700_000_000.0),
        (1_700_000_000_000, 1_700_000_000.0),
        ("1700000000", 1_700_000_000.0),
        ("2023-11-14T22:13:20Z", 1_700_000_000.0),
        ("2023-11-14T22:13:20+00:00", 1_700_000_000.0),
        ("next tuesday", None),
        (True, None),
    ],
)
def test_parse_expires_at(value, expected) -> None:
    assert parse_expires_at(value) == expected


def test_session_from_payload_uses_expires_at() -> None:
    session = session_from_payload(
        {"accessToken": "access-1", "refreshToken": "refresh-1", "expiresAt": "2023-11-14T22:13:20Z"}
    )

    assert session == Session("access-1", "refresh-1", 1_700_000_000.0)


def test_session_from_payload_falls_back_to_jwt_exp() -> None:
    token = make_jwt({"exp": 1_700_000_000})

    session = session_from_payload({"accessToken": token})

    assert session.expires_at == 1_700_000_000.0
    assert session.refresh_token is None


@pytest.mark.parametrize(
    "payload",
    [{}, {"accessToken": ""}, {"accessToken": 42}, {"accessToken": "a", "refreshToken": 7}],
)
def test_session_from_payload_rejects_bad_payload(payload: dict) -> None:
    with pytest.raises(InvalidResponse):
        session_from_payload(payload)


def test_apply_refresh_keeps_refresh_token_unless_rotated() -> None:
    session = Session("access-1", "refresh-1", 100.0)

    apply_refresh(session, {"accessToken": "access-2", "expiresAt": 200})
    assert session == Session("access-2", "refresh-1", 200.0)

    apply_refresh(session, {"accessToken": "access-3", "refreshToken": "refresh-2"})
    assert session == Session("access-3", "refresh-2", None)


def test_apply_refresh_requires_access_token() -> None:
    session = Session("access-1", "refresh-1")

    with pytest.raises(InvalidResponse):
        apply_refresh(session, {"refreshToken": "refresh-2"})
    assert session == Session("access-1", "refresh-1")


@pytest.mark.asyncio
async def test_refresh_access_token_success(httpx_mock) -> None:
    httpx_mock.add_response(
        url=f"{BASE_URL}/auth/refresh",
        method="POST",
        match_json={"refreshToken": "refresh-1"},
        json={"accessToken": "access-2"},
    )

    async with httpx.AsyncClient(base_url=BASE_URL) as client:
        payload = await refresh_access_token("refresh-1", client=client)

    assert payload == {"accessToken": "access-2"}


@pytest.mark.asyncio
async def test_refresh_access_token_rejected(httpx_mock) -> None:
    httpx_mock.add_response(
        url=f"{BASE_URL}/auth/refresh",
        method="POST",
        status_code=401,
        json={"error": "Invalid refresh token"},
    )

    async with httpx.AsyncClient(base_url=BASE_URL) as client:
        with pytest.raises(ClientError) as excinfo:
            await refresh_access_token("refresh-1", client=client)

    assert not isinstance(excinfo.value, AuthenticationExpired)
    assert excinfo.value.status_code == 401


@pytest.mark.asyncio
async def test_refresh_access_token_server_error(httpx_mock) -> None:
    httpx_mock.add_response(url=f"{BASE_URL}/auth/refresh", method="POST", status_code=502)

    async with httpx.AsyncClient(base_url=BASE_URL) as client:
        with pytest.raises(ServerError):
            await refresh_access_token("refresh-1", client=client)

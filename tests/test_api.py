import httpx
import pytest

from auth.models import Session
from codeverse.api import ChatReply, CodeVerseApi
from codeverse.errors import ClientError, InsufficientBalance, InvalidResponse, ServerError
from codeverse.http import RequestExecutor
from tests.helpers import BASE_URL, SleepRecorder, build_session_store


async def _api(session: Session | None = Session("access-1", "refresh-1")):
    store = await build_session_store(session)
    client = httpx.AsyncClient(base_url=BASE_URL)
    sleep = SleepRecorder()
    api = CodeVerseApi(RequestExecutor(client, store, sleep=sleep), store)
    return api, store, client, sleep


@pytest.mark.asyncio
async def test_login_activates_session(httpx_mock) -> None:
    httpx_mock.add_response(
        url=f"{BASE_URL}/auth/login",
        method="POST",
        match_json={"email": "ada@example.com", "password": "pw", "rememberMe": True},
        json={
            "user": {"id": "user-1"},
            "accessToken": "access-2",
            "refreshToken": "refresh-2",
            "expiresAt": 1_700_000_000_000,
        },
    )
    api, store, client, _sleep = await _api(None)

    async with client:
        result = await api.login("ada@example.com", "pw", remember_me=True)

    assert result.requires_mfa is False
    assert result.user == {"id": "user-1"}
    assert store.get_session() == Session("access-2", "refresh-2", 1_700_000_000.0)


@pytest.mark.asyncio
async def test_login_requiring_mfa_keeps_signed_out(httpx_mock) -> None:
    httpx_mock.add_response(
        url=f"{BASE_URL}/auth/login",
        method="POST",
        json={"requiresMfa": True, "message": "Enter your code"},
    )
    api, store, client, _sleep = await _api(None)

    async with client:
        result = await api.login("ada@example.com", "pw")

    assert result.requires_mfa is True
    assert result.message == "Enter your code"
    assert store.get_session() is None


@pytest.mark.asyncio
async def test_login_retries_server_errors(httpx_mock) -> None:
    httpx_mock.add_response(url=f"{BASE_URL}/auth/login", method="POST", status_code=503)
    httpx_mock.add_response(
        url=f"{BASE_URL}/auth/login",
        method="POST",
        json={"accessToken": "access-2", "refreshToken": "refresh-2"},
    )
    api, store, client, sleep = await _api(None)

    async with client:
        await api.login("ada@example.com", "pw")

    assert sleep.calls == [0.5]
    assert store.signed_in is True


@pytest.mark.asyncio
async def test_register_activates_session(httpx_mock) -> None:
    httpx_mock.add_response(
        url=f"{BASE_URL}/auth/register",
        method="POST",
        match_json={"email": "ada@example.com", "password": "pw", "name": "Ada"},
        json={"user": {"id": "user-1"}, "accessToken": "access-2", "refreshToken": "refresh-2"},
    )
    api, store, client, _sleep = await _api(None)

    async with client:
        result = await api.register("ada@example.com", "pw", "Ada")

    assert result.session == store.get_session()


@pytest.mark.asyncio
async def test_logout_clears_session_even_when_request_fails(httpx_mock) -> None:
    httpx_mock.add_response(
        url=f"{BASE_URL}/auth/logout",
        method="POST",
        match_json={"refreshToken": "refresh-1"},
        status_code=500,
    )
    api, store, client, _sleep = await _api()

    async with client:
        await api.logout()

    assert store.get_session() is None


@pytest.mark.asyncio
async def test_exchange_oauth_code_is_public(httpx_mock) -> None:
    httpx_mock.add_response(
        url=f"{BASE_URL}/auth/exchange",
        method="POST",
        match_json={
            "provider": "google",
            "code": "abc123",
            "codeVerifier": "verifier",
            "redirectUri": "codeverse-ai://auth",
        },
        json={"user": {"id": "user-1"}, "accessToken": "access-2"},
    )
    api, _store, client, _sleep = await _api()

    async with client:
        payload = await api.exchange_oauth_code(
            provider="google",
            code="abc123",
            code_verifier="verifier",
            redirect_uri="codeverse-ai://auth",
        )

    assert payload["accessToken"] == "access-2"
    assert "authorization" not in httpx_mock.get_requests()[0].headers


@pytest.mark.asyncio
async def test_exchange_oauth_code_is_not_retried(httpx_mock) -> None:
    httpx_mock.add_response(url=f"{BASE_URL}/auth/exchange", method="POST", status_code=502)
    api, _store, client, sleep = await _api()

    async with client:
        with pytest.raises(ServerError):
            await api.exchange_oauth_code(
                provider="google", code="abc", code_verifier="v", redirect_uri="codeverse-ai://auth"
            )

    assert sleep.calls == []


@pytest.mark.asyncio
async def test_password_endpoints(httpx_mock) -> None:
    httpx_mock.add_response(
        url=f"{BASE_URL}/auth/password/reset-request",
        method="POST",
        match_json={"email": "ada@example.com"},
        json={"message": "sent"},
    )
    httpx_mock.add_response(
        url=f"{BASE_URL}/auth/password/reset",
        method="POST",
        match_json={"token": "t1", "newPassword": "new-pw"},
        json={"message": "reset"},
    )
    httpx_mock.add_response(
        url=f"{BASE_URL}/auth/password/change",
        method="POST",
        match_headers={"Authorization": "Bearer access-1"},
        status_code=400,
        json={"message": "Current password is incorrect"},
    )
    api, _store, client, _sleep = await _api()

    async with client:
        assert await api.request_password_reset("ada@example.com") == {"message": "sent"}
        assert await api.reset_password("t1", "new-pw") == {"message": "reset"}
        with pytest.raises(ClientError, match="Current password is incorrect"):
            await api.change_password("old-pw", "new-pw")


@pytest.mark.asyncio
async def test_delete_account_signs_out(httpx_mock) -> None:
    httpx_mock.add_response(url=f"{BASE_URL}/auth/account", method="DELETE", json={})
    api, store, client, _sleep = await _api()

    async with client:
        await api.delete_account()

    assert store.signed_in is False


@pytest.mark.asyncio
async def test_send_magic_link(httpx_mock) -> None:
    httpx_mock.add_response(
        url=f"{BASE_URL}/auth/magic-link/send",
        method="POST",
        match_json={"email": "ada@example.com", "redirectUrl": "codeverse-ai://auth"},
        json={"message": "Check your email"},
    )
    api, _store, client, _sleep = await _api(None)

    async with client:
        payload = await api.send_magic_link("ada@example.com", "codeverse-ai://auth")

    assert payload == {"message": "Check your email"}


@pytest.mark.asyncio
async def test_ai_chat_reply(httpx_mock) -> None:
    httpx_mock.add_response(
        url=f"{BASE_URL}/ai/chat",
        method="POST",
        match_json={"message": "What is a closure?", "conversationId": "c1"},
        json={"reply": "A function plus its scope.", "tokensUsed": 42, "conversationId": "c1"},
    )
    api, _store, client, _sleep = await _api()

    async with client:
        reply = await api.ai_chat("What is a closure?", conversation_id="c1")

    assert reply == ChatReply(reply="A function plus its scope.", tokens_used=42, conversation_id="c1")


@pytest.mark.asyncio
async def test_ai_chat_backs_off_on_rate_limit(httpx_mock) -> None:
    httpx_mock.add_response(url=f"{BASE_URL}/ai/chat", method="POST", status_code=429)
    httpx_mock.add_response(url=f"{BASE_URL}/ai/chat", method="POST", status_code=429)
    httpx_mock.add_response(
        url=f"{BASE_URL}/ai/chat", method="POST", json={"reply": "Done", "tokensUsed": 5}
    )
    api, _store, client, sleep = await _api()

    async with client:
        reply = await api.ai_chat("Hello")

    assert reply.reply == "Done"
    assert sleep.calls == [1.0, 2.0]
    assert len(httpx_mock.get_requests()) == 3


@pytest.mark.asyncio
async def test_ai_chat_defaults_tokens_used(httpx_mock) -> None:
    httpx_mock.add_response(url=f"{BASE_URL}/ai/chat", method="POST", json={"reply": "Hi"})
    api, _store, client, _sleep = await _api()

    async with client:
        reply = await api.ai_chat("Hello")

    assert reply.tokens_used == 50
    assert reply.conversation_id is None


@pytest.mark.asyncio
async def test_ai_chat_missing_reply(httpx_mock) -> None:
    httpx_mock.add_response(url=f"{BASE_URL}/ai/chat", method="POST", json={"tokensUsed": 10})
    api, _store, client, _sleep = await _api()

    async with client:
        with pytest.raises(InvalidResponse):
            await api.ai_chat("Hello")


@pytest.mark.asyncio
async def test_ai_chat_insufficient_balance(httpx_mock) -> None:
    httpx_mock.add_response(
        url=f"{BASE_URL}/ai/chat",
        method="POST",
        status_code=402,
        json={"tokensRequired": 50, "tokensAvailable": 0},
    )
    api, _store, client, sleep = await _api()

    async with client:
        with pytest.raises(InsufficientBalance):
            await api.ai_chat("Hello")

    assert sleep.calls == []


@pytest.mark.asyncio
async def test_get_token_balance(httpx_mock) -> None:
    httpx_mock.add_response(
        url=f"{BASE_URL}/tokens/balance",
        method="GET",
        match_headers={"Authorization": "Bearer access-1"},
        json={"freeRemaining": 100, "purchasedRemaining": 0},
    )
    api, _store, client, _sleep = await _api()

    async with client:
        assert await api.get_token_balance() == {"freeRemaining": 100, "purchasedRemaining": 0}

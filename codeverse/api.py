from __future__ import annotations

import logging
from dataclasses import dataclass

from auth.models import Session
from auth.session_store import SessionStore
from auth.tokens import session_from_payload

from .constants import AUTH_LOGGER, DEFAULT_TOKENS_PER_MESSAGE
from .errors import CodeVerseError, InvalidResponse
from .http import BOUNDED_RETRY, RequestExecutor, RetryPolicy


@dataclass
class LoginResult:
    requires_mfa: bool
    user: dict | None = None
    session: Session | None = None
    message: str | None = None


@dataclass
class ChatReply:
    reply: str
    tokens_used: int
    conversation_id: str | None = None


class CodeVerseApi:
    def __init__(
        self,
        executor: RequestExecutor,
        session_store: SessionStore,
        *,
        retry_policy: RetryPolicy = BOUNDED_RETRY,
        logger: logging.Logger | None = None,
    ) -> None:
        self._executor = executor
        self._session_store = session_store
        self._retry_policy = retry_policy
        self._logger = logger or AUTH_LOGGER

    # -- email auth ------------------------------------------------------------

    async def login(
        self,
        email: str,
        password: str,
        *,
        remember_me: bool = False,
        mfa_code: str | None = None,
    ) -> LoginResult:
        body = {"email": email, "password": password, "rememberMe": remember_me}
        if mfa_code:
            body["mfaCode"] = mfa_code
        payload = await self._executor.request(
            "POST",
            "/auth/login",
            json=body,
            auth_required=False,
            retry_policy=self._retry_policy,
        )
        if payload.get("requiresMfa"):
            return LoginResult(requires_mfa=True, message=payload.get("message"))
        return await self._activate(payload)

    async def register(self, email: str, password: str, name: str | None = None) -> LoginResult:
        body = {"email": email, "password": password}
        if name:
            body["name"] = name
        payload = await self._executor.request(
            "POST",
            "/auth/register",
            json=body,
            auth_required=False,
            retry_policy=self._retry_policy,
        )
        return await self._activate(payload)

    async def logout(self) -> None:
        session = self._session_store.get_session()
        body = {"refreshToken": session.refresh_token} if session and session.refresh_token else {}
        try:
            await self._executor.request("POST", "/auth/logout", json=body, auth_required=False)
        except CodeVerseError as error:
            self._logger.warning("Logout request failed (%s); signing out locally.", error.kind.value)
        finally:
            await self._session_store.clear()

    async def send_magic_link(self, email: str, redirect_url: str | None = None) -> dict:
        body = {"email": email}
        if redirect_url:
            body["redirectUrl"] = redirect_url
        return await self._executor.request(
            "POST", "/auth/magic-link/send", json=body, auth_required=False
        )

    # -- oauth -----------------------------------------------------------------

    async def exchange_oauth_code(
        self,
        *,
        provider: str,
        code: str,
        code_verifier: str,
        redirect_uri: str,
    ) -> dict:
        return await self._executor.request(
            "POST",
            "/auth/exchange",
            json={
                "provider": provider,
                "code": code,
                "codeVerifier": code_verifier,
                "redirectUri": redirect_uri,
            },
            auth_required=False,
        )

    # -- account ---------------------------------------------------------------

    async def request_password_reset(self, email: str) -> dict:
        return await self._executor.request(
            "POST", "/auth/password/reset-request", json={"email": email}, auth_required=False
        )

    async def reset_password(self, token: str, new_password: str) -> dict:
        return await self._executor.request(
            "POST",
            "/auth/password/reset",
            json={"token": token, "newPassword": new_password},
            auth_required=False,
        )

    async def change_password(self, current_password: str, new_password: str) -> dict:
        return await self._executor.request(
            "POST",
            "/auth/password/change",
            json={"currentPassword": current_password, "newPassword": new_password},
        )

    async def delete_account(self) -> None:
        await self._executor.request("DELETE", "/auth/account")
        await self._session_store.clear()

    # -- ai mentor -------------------------------------------------------------

    async def ai_chat(
        self,
        message: str,
        *,
        context: str | None = None,
        conversation_id: str | None = None,
    ) -> ChatReply:
        body = {"message": message}
        if context:
            body["context"] = context
        if conversation_id:
            body["conversationId"] = conversation_id
        payload = await self._executor.request(
            "POST", "/ai/chat", json=body, retry_policy=self._retry_policy
        )

        reply = payload.get("reply")
        if not isinstance(reply, str):
            raise InvalidResponse("AI reply missing from response.")
        try:
            tokens_used = max(0, int(payload.get("tokensUsed")))
        except (TypeError, ValueError):
            tokens_used = DEFAULT_TOKENS_PER_MESSAGE
        conversation = payload.get("conversationId")
        return ChatReply(
            reply=reply,
            tokens_used=tokens_used or DEFAULT_TOKENS_PER_MESSAGE,
            conversation_id=conversation if isinstance(conversation, str) else None,
        )

    async def get_token_balance(self) -> dict:
        return await self._executor.request("GET", "/tokens/balance")

    # -- helpers ---------------------------------------------------------------

    async def _activate(self, payload: dict) -> LoginResult:
        session = session_from_payload(payload)
        await self._session_store.set_session(session)
        user = payload.get("user")
        return LoginResult(
            requires_mfa=False,
            user=user if isinstance(user, dict) else None,
            session=session,
        )

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from email.utils import parsedate_to_datetime

import httpx

from .constants import APP_VERSION, LOGGER, REFRESH_PATH
from .errors import (
    AuthenticationExpired,
    ClientError,
    CodeVerseError,
    ErrorKind,
    InsufficientBalance,
    InvalidResponse,
    LimitReached,
    NetworkError,
    RateLimited,
    ServerError,
)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff: ``base * 2**attempt``, capped at ``max_delay``.

    429 responses back off from ``rate_limit_delay`` instead of ``base_delay`` and
    never wait less than the server's ``Retry-After``.
    """

    max_retries: int = 0
    base_delay: float = 0.5
    rate_limit_delay: float = 1.0
    max_delay: float = 30.0

    def delay_for(self, attempt: int, error: CodeVerseError) -> float:
        base = self.rate_limit_delay if error.kind is ErrorKind.RATE_LIMITED else self.base_delay
        delay = base * 2**attempt
        if isinstance(error, RateLimited) and error.retry_after is not None:
            delay = max(delay, error.retry_after)
        return min(delay, self.max_delay)


NO_RETRY = RetryPolicy()
BOUNDED_RETRY = RetryPolicy(max_retries=2)


@dataclass
class RetryableCall:
    method: str
    path: str
    attempt: int = 0
    classification: ErrorKind | None = None


def _seconds_until_retry(retry_after: str | None, *, now: float | None = None) -> float | None:
    if retry_after is None:
        return None
    try:
        return max(0.0, float(retry_after))
    except ValueError:
        pass
    try:
        retry_at = parsedate_to_datetime(retry_after)
    except (TypeError, ValueError):
        return None

    current = time.time() if now is None else now
    return max(0.0, retry_at.timestamp() - current)


def _as_int(value, default: int | None = 0) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _error_payload(response: httpx.Response) -> dict:
    try:
        payload = response.json()
    except ValueError:
        return {"raw": response.text[:1000]}
    return payload if isinstance(payload, dict) else {"raw": payload}


def error_from_response(response: httpx.Response, *, auth_required: bool = False) -> CodeVerseError:
    status = response.status_code
    payload = _error_payload(response)
    message = payload.get("message")
    if not isinstance(message, str) or not message:
        message = response.reason_phrase or f"Request failed with status {status}."

    if status == 401:
        if auth_required:
            return AuthenticationExpired(message, status_code=status, payload=payload)
        return ClientError(message, status_code=status, payload=payload)

    if status == 402:
        return InsufficientBalance(
            message,
            tokens_required=_as_int(payload.get("tokensRequired")),
            tokens_available=_as_int(payload.get("tokensAvailable")),
            free_remaining=_as_int(payload.get("freeRemaining"), None),
            purchased_remaining=_as_int(payload.get("purchasedRemaining"), None),
            status_code=status,
            payload=payload,
        )

    if status == 403 and (
        payload.get("error") == "CONVERSATION_LIMIT_REACHED" or "limit" in payload
    ):
        return LimitReached(
            message,
            limit=_as_int(payload.get("limit")),
            current=_as_int(payload.get("current")),
            plan=str(payload.get("plan") or "free"),
            status_code=status,
            payload=payload,
        )

    if status == 429:
        return RateLimited(
            message,
            retry_after=_seconds_until_retry(response.headers.get("retry-after")),
            status_code=status,
            payload=payload,
        )

    if status >= 500:
        return ServerError(message, status_code=status, payload=payload)

    return ClientError(message, status_code=status, payload=payload)


def decode_json_body(response: httpx.Response) -> dict:
    if not response.content:
        return {}
    try:
        payload = response.json()
    except ValueError as error:
        raise InvalidResponse(
            "CodeVerse returned a non-JSON response.", status_code=response.status_code
        ) from error
    if not isinstance(payload, dict):
        raise InvalidResponse(
            "CodeVerse returned an unexpected response body.",
            status_code=response.status_code,
        )
    return payload


class RequestExecutor:
    def __init__(
        self,
        client: httpx.AsyncClient,
        session_store,
        *,
        sleep=asyncio.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        self._client = client
        self._session_store = session_store
        self._sleep = sleep
        self._logger = logger or LOGGER

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: dict | None = None,
        auth_required: bool = True,
        retry_policy: RetryPolicy = NO_RETRY,
    ) -> dict:
        call = RetryableCall(method=method.upper(), path=path)
        refreshed = False
        previous_delay = 0.0

        while True:
            sent_token = self._current_access_token() if auth_required else None
            try:
                response = await self._send(call, json=json, access_token=sent_token)
            except NetworkError as error:
                failure: CodeVerseError = error
            else:
                if response.status_code == 401 and self._can_refresh(path, auth_required, refreshed):
                    refreshed = True
                    await self._refresh_after_401(sent_token)
                    continue
                if response.is_success:
                    return decode_json_body(response)
                failure = error_from_response(response, auth_required=auth_required)

            call.classification = failure.kind
            if not failure.retryable or call.attempt >= retry_policy.max_retries:
                raise failure

            delay = max(previous_delay, retry_policy.delay_for(call.attempt, failure))
            previous_delay = delay
            self._logger.warning(
                "Retrying %s after %ss (%s %s, retry %s/%s)",
                failure.kind.value,
                delay,
                call.method,
                call.path,
                call.attempt + 1,
                retry_policy.max_retries,
            )
            await self._sleep(delay)
            call.attempt += 1

    async def _send(
        self,
        call: RetryableCall,
        *,
        json: dict | None,
        access_token: str | None,
    ) -> httpx.Response:
        headers = {"Accept": "application/json"}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        try:
            return await self._client.request(call.method, call.path, json=json, headers=headers)
        except httpx.TimeoutException as error:
            raise NetworkError(f"Request timed out ({call.method} {call.path}).") from error
        except httpx.TransportError as error:
            raise NetworkError(
                f"Unable to reach CodeVerse ({call.method} {call.path}): {error}"
            ) from error

    def _current_access_token(self) -> str | None:
        session = self._session_store.get_session()
        return session.access_token if session is not None else None

    def _can_refresh(self, path: str, auth_required: bool, refreshed: bool) -> bool:
        if refreshed or not auth_required or path == REFRESH_PATH:
            return False
        session = self._session_store.get_session()
        return session is not None and bool(session.refresh_token)

    async def _refresh_after_401(self, sent_token: str | None) -> None:
        session = self._session_store.get_session()
        if session is not None and session.access_token != sent_token:
            # Another caller already rotated the token; resend with the new one.
            return
        try:
            await self._session_store.refresh()
        except CodeVerseError as error:
            self._logger.warning("Token refresh after 401 failed: %s", error.kind.value)
            raise AuthenticationExpired(status_code=401) from error


def build_http_client(
    base_url: str,
    *,
    timeout: float,
    transport: httpx.AsyncBaseTransport | None = None,
    debug_enabled: bool = True,
    logger: logging.Logger | None = None,
) -> httpx.AsyncClient:
    log = logger or LOGGER

    async def log_request(request: httpx.Request) -> None:
        if not debug_enabled:
            return
        log.info("CodeVerse request %s %s", request.method, request.url)

    async def log_response(response: httpx.Response) -> None:
        if not debug_enabled:
            return
        log.info(
            "CodeVerse response %s %s -> %s",
            response.request.method,
            response.request.url,
            response.status_code,
        )
        if response.status_code >= 400:
            body = await response.aread()
            text = body.decode("utf-8", errors="replace")
            if len(text) > 1000:
                text = text[:1000] + "...<truncated>"
            log.warning("CodeVerse error body: %s", text)

    return httpx.AsyncClient(
        base_url=base_url,
        headers={"User-Agent": f"codeverse-auth/{APP_VERSION}"},
        timeout=timeout,
        transport=transport,
        event_hooks={"request": [log_request], "response": [log_response]},
    )

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from enum import Enum

from auth import pkce
from auth.browser import BrowserSession
from auth.deep_link import parse_redirect
from auth.models import AuthorizationResult, MagicLinkResult, PendingAuthorization, Session
from auth.providers import ProviderRegistry
from auth.session_store import SessionStore
from auth.storage import KeyValueStore
from auth.tokens import session_from_payload
from auth.urls import backend_callback_uri
from codeverse.constants import AUTH_LOGGER, PENDING_AUTHORIZATION_KEY
from codeverse.errors import (
    ClientError,
    CodeVerseError,
    OAuthExchangeFailure,
    OAuthProviderMismatch,
    OAuthStateMismatch,
)


class FlowState(str, Enum):
    IDLE = "idle"
    AUTHORIZATION_REQUESTED = "authorization_requested"
    CODE_RECEIVED = "code_received"
    VALIDATING = "validating"
    EXCHANGING = "exchanging"
    COMPLETED = "completed"
    FAILED = "failed"


_TRANSITIONS: dict[FlowState, set[FlowState]] = {
    FlowState.IDLE: {FlowState.AUTHORIZATION_REQUESTED},
    FlowState.AUTHORIZATION_REQUESTED: {
        FlowState.AUTHORIZATION_REQUESTED,
        FlowState.CODE_RECEIVED,
        FlowState.FAILED,
    },
    FlowState.CODE_RECEIVED: {FlowState.VALIDATING},
    FlowState.VALIDATING: {FlowState.EXCHANGING, FlowState.FAILED},
    FlowState.EXCHANGING: {FlowState.COMPLETED, FlowState.FAILED},
    FlowState.COMPLETED: {FlowState.IDLE},
    FlowState.FAILED: {FlowState.IDLE},
}


class FlowStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class FlowOutcome:
    status: FlowStatus
    provider: str | None
    session: Session | None = None
    user: dict | None = None
    error: CodeVerseError | None = None


class OAuthFlowController:
    """Drives one authorization-code + PKCE sign-in at a time.

    The pending record lives in durable storage, not memory, so a redirect that
    arrives after the process was suspended or restarted still completes.
    ``handle_result`` is the only way a redirect advances the flow; every
    trigger source calls it, and it runs under one lock.
    """

    def __init__(
        self,
        *,
        storage: KeyValueStore,
        session_store: SessionStore,
        exchange_code_fn,
        browser: BrowserSession,
        providers: ProviderRegistry,
        mode: str,
        api_url: str,
        app_redirect_uri: str,
        pending_ttl_seconds: int | None = 600,
        clock=time.time,
        logger: logging.Logger | None = None,
    ) -> None:
        self._storage = storage
        self._session_store = session_store
        self._exchange_code_fn = exchange_code_fn
        self._browser = browser
        self._providers = providers
        self._mode = mode
        self._api_url = api_url.rstrip("/")
        self._app_redirect_uri = app_redirect_uri
        self._pending_ttl_seconds = pending_ttl_seconds
        self._clock = clock
        self._logger = logger or AUTH_LOGGER

        self._lock = asyncio.Lock()
        self._state = FlowState.IDLE
        self._waiter: asyncio.Future[FlowOutcome] | None = None
        self.last_outcome: FlowOutcome | None = None

    @property
    def state(self) -> FlowState:
        return self._state

    @property
    def provider_names(self) -> set[str]:
        return self._providers.names()

    def redirect_uri_for(self, provider: str) -> str:
        if self._mode == "backend":
            return backend_callback_uri(self._api_url, provider)
        return self._app_redirect_uri

    # -- starting ----------------------------------------------------------------

    async def start(self, provider: str) -> str:
        config = self._providers.get(provider)
        if config is None:
            raise ClientError(f"Unsupported OAuth provider: {provider}")
        client_id = self._providers.client_id(provider)
        if not client_id:
            raise ClientError(f"{provider.title()} sign-in is not configured.")

        code_verifier = pkce.generate_code_verifier()
        redirect_uri = self.redirect_uri_for(provider)
        return_uri = self._app_redirect_uri if self._mode == "backend" else None
        pending = PendingAuthorization(
            provider=provider,
            code_verifier=code_verifier,
            state=pkce.generate_state(return_uri),
            redirect_uri=redirect_uri,
            created_at=self._clock(),
        )

        async with self._lock:
            # Written before the browser opens: the process may not survive the trip.
            await self._storage.set(PENDING_AUTHORIZATION_KEY, asdict(pending))
            if self._state is not FlowState.AUTHORIZATION_REQUESTED:
                self._transition(FlowState.AUTHORIZATION_REQUESTED)
            self._replace_waiter()

        self._logger.info("Starting %s sign-in (%s mode).", provider, self._mode)
        return pkce.build_authorization_url(
            config,
            client_id=client_id,
            redirect_uri=redirect_uri,
            state=pending.state,
            code_challenge=pkce.generate_code_challenge(code_verifier),
        )

    async def sign_in(self, provider: str, *, timeout: float | None = None) -> FlowOutcome:
        url = await self.start(provider)
        return_url = self._app_redirect_uri if self._mode == "backend" else self.redirect_uri_for(provider)
        result = await self._browser.open(url, return_url)

        if result.type in {"dismiss", "cancel"}:
            outcome = await self.cancel()
        else:
            outcome = None
            if result.type == "success" and result.url:
                redirect = parse_redirect(
                    result.url, providers=self.provider_names, default_provider=provider
                )
                if isinstance(redirect, AuthorizationResult):
                    outcome = await self.handle_result(redirect)
            if outcome is None:
                try:
                    outcome = await self.wait_for_completion(timeout)
                except asyncio.TimeoutError:
                    self._logger.info("Timed out waiting for %s redirect.", provider)
                    outcome = await self.cancel()

        if outcome.status is FlowStatus.FAILED and outcome.error is not None:
            raise outcome.error
        return outcome

    async def resume(self) -> PendingAuthorization | None:
        async with self._lock:
            pending = await self._load_pending()
            if pending is not None and self._state is FlowState.IDLE:
                self._transition(FlowState.AUTHORIZATION_REQUESTED)
                self._replace_waiter()
            return pending

    async def wait_for_completion(self, timeout: float | None = None) -> FlowOutcome:
        if self._waiter is None:
            raise RuntimeError("No OAuth sign-in is in progress.")
        return await asyncio.wait_for(asyncio.shield(self._waiter), timeout)

    # -- completing --------------------------------------------------------------

    async def handle_result(self, result: AuthorizationResult) -> FlowOutcome | None:
        async with self._lock:
            pending = await self._load_pending()
            if pending is None:
                self._logger.debug("Ignoring redirect: no sign-in pending.")
                return None

            # A redirect that does not match leaves the flow exactly as it was.
            try:
                self._validate(pending, result)
            except (OAuthProviderMismatch, OAuthStateMismatch) as error:
                self._logger.debug("Ignoring redirect: %s", error)
                return None

            if self._state is FlowState.IDLE:
                self._transition(FlowState.AUTHORIZATION_REQUESTED)
            self._transition(FlowState.CODE_RECEIVED)
            self._transition(FlowState.VALIDATING)

            if result.error or not result.code:
                self._transition(FlowState.FAILED)
                await self._clear_pending()
                failure = OAuthExchangeFailure(
                    f"{pending.provider.title()} authorization failed: {result.error or 'no code'}"
                )
                return self._finish(FlowOutcome(FlowStatus.FAILED, pending.provider, error=failure))

            self._transition(FlowState.EXCHANGING)
            try:
                payload = await self._exchange_code_fn(
                    provider=pending.provider,
                    code=result.code,
                    code_verifier=pending.code_verifier,
                    redirect_uri=pending.redirect_uri,
                )
                session = session_from_payload(payload)
                await self._session_store.set_session(session)
            except CodeVerseError as error:
                self._logger.warning("%s code exchange failed: %s", pending.provider, error)
                failure = OAuthExchangeFailure(
                    f"Failed to exchange {pending.provider} authorization code: {error}",
                    status_code=error.status_code,
                    payload=error.payload,
                )
                failure.__cause__ = error
                outcome = FlowOutcome(FlowStatus.FAILED, pending.provider, error=failure)
                self._transition(FlowState.FAILED)
            except Exception:
                self._transition(FlowState.FAILED)
                self._finish(FlowOutcome(FlowStatus.FAILED, pending.provider))
                raise
            else:
                user = payload.get("user")
                outcome = FlowOutcome(
                    FlowStatus.COMPLETED,
                    pending.provider,
                    session=session,
                    user=user if isinstance(user, dict) else None,
                )
                self._transition(FlowState.COMPLETED)
            finally:
                # The code is single-use either way; replays must find an empty slot.
                await self._clear_pending()

            return self._finish(outcome)

    async def complete_magic_link(self, result: MagicLinkResult) -> FlowOutcome | None:
        async with self._lock:
            current = self._session_store.get_session()
            if current is not None and current.access_token == result.access_token:
                return None
            session = session_from_payload(
                {
                    "accessToken": result.access_token,
                    "refreshToken": result.refresh_token,
                    "expiresAt": result.expires_at,
                }
            )
            await self._session_store.set_session(session)
            self._logger.info("Signed in from magic link.")
            return FlowOutcome(FlowStatus.COMPLETED, "email", session=session)

    async def cancel(self) -> FlowOutcome:
        async with self._lock:
            if self._waiter is not None and self._waiter.done():
                return self._waiter.result()

            pending = await self._load_pending()
            provider = pending.provider if pending is not None else None
            if pending is not None:
                await self._clear_pending()
            if self._state is FlowState.AUTHORIZATION_REQUESTED:
                self._transition(FlowState.FAILED)
            self._logger.info("Sign-in cancelled.")
            return self._finish(FlowOutcome(FlowStatus.CANCELLED, provider))

    # -- helpers -----------------------------------------------------------------

    def _validate(self, pending: PendingAuthorization, result: AuthorizationResult) -> None:
        if result.provider is None:
            # Straight from the identity provider: only the state ties it to us.
            if result.state is None or result.state != pending.state:
                raise OAuthStateMismatch("state mismatch for provider redirect")
            return
        if result.provider != pending.provider:
            raise OAuthProviderMismatch(
                f"redirect for {result.provider} while {pending.provider} is pending"
            )
        # The path form (/auth/<provider>/<code>) may arrive without a state.
        if result.state is not None and result.state != pending.state:
            raise OAuthStateMismatch(f"state mismatch for {result.provider} redirect")

    async def _load_pending(self) -> PendingAuthorization | None:
        payload = await self._storage.get(PENDING_AUTHORIZATION_KEY)
        if payload is None:
            return None
        try:
            pending = PendingAuthorization(**payload)
        except TypeError:
            self._logger.warning("Discarding unreadable pending authorization.")
            await self._clear_pending()
            return None

        if pending.expired(self._pending_ttl_seconds, now=self._clock()):
            self._logger.info("Pending %s authorization expired.", pending.provider)
            await self._clear_pending()
            if self._state is FlowState.AUTHORIZATION_REQUESTED:
                self._transition(FlowState.FAILED)
                self._finish(
                    FlowOutcome(
                        FlowStatus.FAILED,
                        pending.provider,
                        error=OAuthExchangeFailure("Sign-in request expired."),
                    )
                )
            return None
        return pending

    async def _clear_pending(self) -> None:
        await self._storage.delete(PENDING_AUTHORIZATION_KEY)

    def _transition(self, new_state: FlowState) -> None:
        if new_state not in _TRANSITIONS[self._state]:
            raise RuntimeError(f"Invalid OAuth flow transition {self._state.value} -> {new_state.value}")
        self._logger.debug("OAuth flow %s -> %s", self._state.value, new_state.value)
        self._state = new_state

    def _replace_waiter(self) -> None:
        if self._waiter is not None and not self._waiter.done():
            self._waiter.set_result(FlowOutcome(FlowStatus.CANCELLED, None))
        self._waiter = asyncio.get_running_loop().create_future()

    def _finish(self, outcome: FlowOutcome) -> FlowOutcome:
        if self._state in {FlowState.COMPLETED, FlowState.FAILED}:
            self._transition(FlowState.IDLE)
        self.last_outcome = outcome
        if self._waiter is not None and not self._waiter.done():
            self._waiter.set_result(outcome)
        return outcome

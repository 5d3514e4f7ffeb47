from __future__ import annotations

import asyncio
import dataclasses
import functools
import time

import httpx

from auth.browser import BrowserSession, SystemBrowserSession
from auth.deep_link import DeepLinkListener
from auth.lifecycle import AuthLifecycleManager
from auth.oauth_flow import OAuthFlowController
from auth.providers import ProviderRegistry
from auth.session_store import SessionStore
from auth.storage import FileKeyValueStore, KeyValueStore
from auth.tokens import refresh_access_token

from .api import CodeVerseApi
from .constants import AUTH_LOGGER, LOGGER
from .env import Settings
from .http import BOUNDED_RETRY, RequestExecutor, build_http_client


class AuthRuntime:
    """Wires the auth components together around one HTTP client."""

    def __init__(
        self,
        settings: Settings,
        *,
        storage: KeyValueStore | None = None,
        browser: BrowserSession | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        initial_url_fn=None,
        debug_enabled: bool = True,
        sleep=asyncio.sleep,
        clock=time.time,
    ) -> None:
        self.settings = settings
        self.browser = browser or SystemBrowserSession()
        self.storage = storage or FileKeyValueStore(settings.state_path)
        self.http_client = build_http_client(
            settings.api_url,
            timeout=settings.http_timeout,
            transport=transport,
            debug_enabled=debug_enabled,
        )
        # The refresh call bypasses the executor: it is never retried and never
        # triggers another refresh.
        self.session_store = SessionStore(
            self.storage,
            refresh_fn=functools.partial(refresh_access_token, client=self.http_client),
        )
        self.executor = RequestExecutor(
            self.http_client, self.session_store, sleep=sleep, logger=LOGGER
        )
        self.api = CodeVerseApi(
            self.executor,
            self.session_store,
            retry_policy=dataclasses.replace(BOUNDED_RETRY, max_retries=settings.max_retries),
        )
        self.providers = ProviderRegistry(settings.client_ids)
        self.oauth = OAuthFlowController(
            storage=self.storage,
            session_store=self.session_store,
            exchange_code_fn=self.api.exchange_oauth_code,
            browser=self.browser,
            providers=self.providers,
            mode=settings.oauth_mode,
            api_url=settings.api_url,
            app_redirect_uri=settings.app_redirect_uri,
            pending_ttl_seconds=settings.pending_ttl_seconds,
            clock=clock,
        )
        self.deep_links = DeepLinkListener(self.oauth, initial_url_fn=initial_url_fn)
        self.lifecycle = AuthLifecycleManager(
            self.session_store,
            threshold_seconds=settings.refresh_threshold_seconds,
            interval_seconds=settings.refresh_interval_seconds,
            on_session_expired=self._on_session_expired,
            clock=clock,
        )

    async def start(self) -> None:
        session = await self.session_store.load()
        pending = await self.oauth.resume()
        if pending is not None:
            AUTH_LOGGER.info("Resuming pending %s sign-in.", pending.provider)
        await self.deep_links.check_initial_url()
        self.lifecycle.start()
        if session is not None:
            AUTH_LOGGER.info("Restored saved session.")

    async def close(self) -> None:
        await self.lifecycle.stop()
        await self.http_client.aclose()

    async def on_app_state_change(self, state: str) -> None:
        self.lifecycle.on_app_state_change(state)
        await self.deep_links.on_app_state_change(state)

    async def _on_session_expired(self, error) -> None:
        AUTH_LOGGER.warning("Signing out: %s", error)
        await self.session_store.clear()

    async def __aenter__(self) -> "AuthRuntime":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

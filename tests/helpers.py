import base64
import json
from pathlib import Path

import httpx

from auth.browser import BrowserResult, BrowserSession
from auth.models import Session
from auth.oauth_flow import OAuthFlowController
from auth.providers import ProviderRegistry
from auth.session_store import SessionStore
from auth.storage import MemoryKeyValueStore
from codeverse.env import Settings
from codeverse.http import RequestExecutor

BASE_URL = "https://api.codeverse.test"


class SleepRecorder:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeBrowser(BrowserSession):
    def __init__(self, result: BrowserResult | None = None) -> None:
        self.result = result or BrowserResult("opened")
        self.opened: list[tuple[str, str]] = []

    async def open(self, url: str, return_url: str) -> BrowserResult:
        self.opened.append((url, return_url))
        return self.result


def make_jwt(claims: dict) -> str:
    def _segment(data: dict) -> str:
        raw = json.dumps(data).encode("utf-8")
        return base64.urlsafe_b64encode(raw).decode("utf-8").rstrip("=")

    return f"{_segment({'alg': 'HS256', 'typ': 'JWT'})}.{_segment(claims)}.signature"


def make_settings(tmp_path: Path | None = None, **overrides) -> Settings:
    values = {
        "api_url": BASE_URL,
        "google_client_id": "google-client",
        "github_client_id": "github-client",
        "oauth_mode": "backend",
        "app_redirect_uri": "codeverse-ai://auth",
        "http_timeout": 5.0,
        "max_retries": 2,
        "state_path": (tmp_path or Path(".")) / "auth.json",
        "refresh_threshold_seconds": 120,
        "refresh_interval_seconds": 60,
        "pending_ttl_seconds": 600,
        "loopback_port": 8765,
    }
    values.update(overrides)
    return Settings(**values)


def make_handler(routes: dict[tuple[str, str], list[tuple]]):
    """MockTransport handler replaying ``(status, json[, headers])`` per (method, path).

    The last entry of each queue repeats once the others are used up.
    """
    calls: list[httpx.Request] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        queue = routes[(request.method, request.url.path)]
        status, payload, *rest = queue.pop(0) if len(queue) > 1 else queue[0]
        headers = rest[0] if rest else {}
        return httpx.Response(status, request=request, headers=headers, json=payload)

    return handler, calls


async def build_session_store(
    session: Session | None = None,
    *,
    refresh_fn=None,
    storage=None,
) -> SessionStore:
    async def _unused_refresh(refresh_token: str) -> dict:
        raise AssertionError(f"unexpected refresh with {refresh_token}")

    store = SessionStore(storage or MemoryKeyValueStore(), refresh_fn=refresh_fn or _unused_refresh)
    if session is not None:
        await store.set_session(session)
    return store


def build_executor(handler, session_store: SessionStore, *, sleep=None):
    client = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(handler))
    sleep = sleep or SleepRecorder()
    return RequestExecutor(client, session_store, sleep=sleep), client, sleep


def build_controller(
    *,
    session_store: SessionStore,
    exchange_code_fn,
    storage=None,
    browser=None,
    mode: str = "direct",
    clock=None,
    pending_ttl_seconds: int | None = 600,
) -> OAuthFlowController:
    return OAuthFlowController(
        storage=storage or MemoryKeyValueStore(),
        session_store=session_store,
        exchange_code_fn=exchange_code_fn,
        browser=browser or FakeBrowser(),
        providers=ProviderRegistry({"google": "google-client", "github": "github-client"}),
        mode=mode,
        api_url=BASE_URL,
        app_redirect_uri="codeverse-ai://auth",
        pending_ttl_seconds=pending_ttl_seconds,
        clock=clock or FakeClock(),
    )

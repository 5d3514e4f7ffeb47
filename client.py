from __future__ import annotations

import argparse
import asyncio
import contextlib
import sys
import time
import urllib.parse
import webbrowser

import uvicorn

from auth.loopback import LoopbackBrowserSession, build_redirect_app
from auth.urls import is_loopback_uri
from codeverse.constants import AUTH_LOGGER, OAUTH_PROVIDERS
from codeverse.env import Settings, load_env, load_settings, setup_logging, validate_env
from codeverse.errors import CodeVerseError, friendly_error_message
from codeverse.runtime import AuthRuntime


def uses_loopback(settings: Settings) -> bool:
    return settings.oauth_mode == "direct" and is_loopback_uri(settings.app_redirect_uri)


def create_runtime(*, provider: str | None = None, initial_url: str | None = None) -> AuthRuntime:
    load_env()
    debug_enabled = setup_logging()
    settings = load_settings()
    validate_env(settings, provider=provider)

    initial_url_fn = None
    if initial_url:

        async def initial_url_fn() -> str:
            return initial_url

    # Direct mode on a desktop receives the redirect on a local port instead of an app link.
    browser = LoopbackBrowserSession() if uses_loopback(settings) else None
    return AuthRuntime(
        settings,
        browser=browser,
        initial_url_fn=initial_url_fn,
        debug_enabled=debug_enabled,
    )


@contextlib.asynccontextmanager
async def _serve_loopback(runtime: AuthRuntime):
    parsed = urllib.parse.urlparse(runtime.settings.app_redirect_uri)
    config = uvicorn.Config(
        build_redirect_app(runtime.browser.deliver),
        host=parsed.hostname or "127.0.0.1",
        port=parsed.port or runtime.settings.loopback_port,
        log_level="warning",
        access_log=False,
    )
    server = uvicorn.Server(config)
    task = asyncio.create_task(server.serve())
    try:
        while not server.started:
            if task.done():
                task.result()
                raise RuntimeError(f"Failed to start sign-in receiver on {config.host}:{config.port}")
            await asyncio.sleep(0.05)
        yield server
    finally:
        server.should_exit = True
        await task


async def _login(provider: str) -> int:
    async with create_runtime(provider=provider) as runtime:
        if not isinstance(runtime.browser, LoopbackBrowserSession):
            # The redirect comes back as an app link; `handle-url` completes it.
            url = await runtime.oauth.start(provider)
            if not webbrowser.open(url):
                print(f"Open this URL to sign in:\n{url}")
            print(f"Finish signing in with {provider.title()}, then run: client.py handle-url <link>")
            return 0

        async with _serve_loopback(runtime):
            outcome = await runtime.oauth.sign_in(
                provider, timeout=runtime.settings.pending_ttl_seconds
            )
        print(f"{provider.title()} sign-in {outcome.status.value}.")
        return 0 if outcome.session is not None else 1


async def _handle_url(url: str) -> int:
    async with create_runtime(initial_url=url) as runtime:
        outcome = runtime.oauth.last_outcome
        if not runtime.session_store.signed_in:
            print("Link did not complete a sign-in.")
            return 1
        provider = outcome.provider if outcome is not None else "link"
        print(f"Signed in ({provider}).")
        return 0


async def _status() -> int:
    async with create_runtime() as runtime:
        session = runtime.session_store.get_session()
        if session is None:
            print("Not signed in.")
            return 1
        if session.expires_at is None:
            print("Signed in.")
        else:
            remaining = int(session.expires_at - time.time())
            print(f"Signed in; access token expires in {max(remaining, 0)}s.")
        return 0


async def _refresh() -> int:
    async with create_runtime() as runtime:
        if not runtime.session_store.signed_in:
            print("Not signed in.")
            return 1
        await runtime.session_store.refresh()
        print("Access token refreshed.")
        return 0


async def _logout() -> int:
    async with create_runtime() as runtime:
        await runtime.api.logout()
        print("Signed out.")
        return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="codeverse-auth", description="CodeVerse sign-in tools")
    commands = parser.add_subparsers(dest="command", required=True)

    login = commands.add_parser("login", help="Sign in with an OAuth provider")
    login.add_argument("provider", choices=OAUTH_PROVIDERS)

    handle_url = commands.add_parser("handle-url", help="Complete sign-in from an app link")
    handle_url.add_argument("url")

    commands.add_parser("status", help="Show the saved session")
    commands.add_parser("refresh", help="Refresh the access token now")
    commands.add_parser("logout", help="Sign out")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    if args.command == "login":
        command = _login(args.provider)
    elif args.command == "handle-url":
        command = _handle_url(args.url)
    elif args.command == "status":
        command = _status()
    elif args.command == "refresh":
        command = _refresh()
    else:
        command = _logout()

    try:
        return asyncio.run(command)
    except CodeVerseError as error:
        AUTH_LOGGER.debug("Command failed", exc_info=True)
        print(friendly_error_message(error), file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())

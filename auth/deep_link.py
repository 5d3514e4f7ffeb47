from __future__ import annotations

import logging
import urllib.parse

from auth.models import AuthorizationResult, MagicLinkResult
from codeverse.constants import AUTH_LOGGER, OAUTH_PROVIDERS


def _path_segments(parsed: urllib.parse.ParseResult) -> list[str]:
    path = parsed.path
    # codeverse-ai://auth/google/abc parses "auth" as the netloc.
    if parsed.scheme not in {"http", "https"} and parsed.netloc:
        path = f"/{parsed.netloc}{path}"
    return [urllib.parse.unquote(segment) for segment in path.split("/") if segment]


def _from_path(
    segments: list[str], query: dict[str, str], providers
) -> AuthorizationResult | None:
    for index, segment in enumerate(segments[:-2]):
        if segment == "auth" and segments[index + 1] in providers:
            return AuthorizationResult(
                provider=segments[index + 1],
                code=segments[index + 2],
                state=query.get("state"),
            )
    return None


def parse_redirect(
    url: str | None, *, providers=OAUTH_PROVIDERS, default_provider: str | None = None
) -> AuthorizationResult | MagicLinkResult | None:
    """Extract an auth callback from a deep link or redirect URL.

    Accepts ``.../auth/<provider>/<code>[?state=]``,
    ``...?code=&state=&provider=`` (or ``error=`` in place of ``code``) and the
    magic-link form ``...?accessToken=&refreshToken=&provider=email``. Anything
    else, including a bare ``codeverse-ai://auth``, is not a callback.

    Identity providers redirect straight to the app with only ``code`` and
    ``state``. Such a redirect gets ``default_provider`` when one is given and
    otherwise ``provider=None``: it belongs to whichever sign-in issued the state.
    """
    if not url:
        return None

    parsed = urllib.parse.urlparse(url)
    query = {
        key: values[0]
        for key, values in urllib.parse.parse_qs(parsed.query).items()
        if values
    }

    if query.get("provider") == "email" and query.get("accessToken") and query.get("refreshToken"):
        return MagicLinkResult(
            access_token=query["accessToken"],
            refresh_token=query["refreshToken"],
            expires_at=query.get("expiresAt"),
        )

    from_path = _from_path(_path_segments(parsed), query, providers)
    if from_path is not None:
        return from_path

    if not (query.get("code") or query.get("error")):
        return None
    provider = query.get("provider") or default_provider
    if provider is None and not query.get("state"):
        return None
    if provider is not None and provider not in providers:
        return None
    return AuthorizationResult(
        provider=provider,
        code=query.get("code"),
        state=query.get("state"),
        error=query.get("error"),
    )


class DeepLinkListener:
    """Feeds every auth redirect source into the flow controller.

    Sources: explicit URL events (``deliver``), the URL the app was launched
    with (``check_initial_url``) and the foreground re-check. Duplicates are
    harmless; the controller ignores anything once its pending slot is empty.
    """

    def __init__(
        self,
        controller,
        *,
        initial_url_fn=None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._controller = controller
        self._initial_url_fn = initial_url_fn
        self._logger = logger or AUTH_LOGGER

    async def deliver(self, url: str | None):
        result = parse_redirect(url, providers=self._controller.provider_names)
        if result is None:
            self._logger.debug("Ignoring non-auth deep link.")
            return None
        if isinstance(result, MagicLinkResult):
            return await self._controller.complete_magic_link(result)
        return await self._controller.handle_result(result)

    async def check_initial_url(self):
        if self._initial_url_fn is None:
            return None
        url = await self._initial_url_fn()
        if not url:
            return None
        return await self.deliver(url)

    async def on_app_state_change(self, state: str):
        if state != "active":
            return None
        return await self.check_initial_url()

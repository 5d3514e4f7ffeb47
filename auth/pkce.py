from __future__ import annotations

import base64
import hashlib
import secrets
import urllib.parse

from auth.providers import ProviderConfig
from auth.urls import append_query_params


def generate_code_verifier() -> str:
    while True:
        verifier = secrets.token_urlsafe(64)
        if 43 <= len(verifier) <= 128:
            return verifier


def generate_code_challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("utf-8").rstrip("=")


def generate_state(return_uri: str | None = None) -> str:
    """Random state; with ``return_uri`` the backend callback can find its way back to the app.

    The return URI is appended after the last ``.`` (``secrets.token_urlsafe``
    never emits dots), URL-encoded with its own dots escaped too.
    """
    state = secrets.token_urlsafe(24)
    if return_uri:
        encoded = urllib.parse.quote(return_uri, safe="").replace(".", "%2E")
        state = f"{state}.{encoded}"
    return state


def build_authorization_url(
    provider: ProviderConfig,
    *,
    client_id: str,
    redirect_uri: str,
    state: str,
    code_challenge: str,
) -> str:
    query = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
        "state": state,
        "scope": " ".join(provider.scopes),
        **provider.extra_params,
    }
    return append_query_params(provider.authorization_endpoint, query)

from __future__ import annotations

import logging
from pathlib import Path

LOGGER = logging.getLogger("codeverse.http")
AUTH_LOGGER = logging.getLogger("codeverse.auth")
APP_VERSION = "0.1.0"

DEFAULT_API_URL = "https://api.codeverse.app"
DEFAULT_APP_REDIRECT_URI = "codeverse-ai://auth"
DEFAULT_STATE_PATH = Path.home() / ".codeverse" / "auth.json"

SESSION_KEY = "codeverse.session"
PENDING_AUTHORIZATION_KEY = "codeverse.pending_authorization"

REFRESH_PATH = "/auth/refresh"
OAUTH_PROVIDERS = ("google", "github")
OAUTH_MODES = ("direct", "backend")

# Assumed cost when a chat reply omits tokensUsed.
DEFAULT_TOKENS_PER_MESSAGE = 50

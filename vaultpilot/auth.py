"""GitHub Copilot OAuth device-code flow and bearer token management.

Flow: device code -> GitHub token (long-lived, stored locally) -> Copilot API
token (short-lived, cached and refreshed before it expires).
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Awaitable, Callable

import httpx

from vaultpilot.models import CopilotToken, DeviceCode

logger = logging.getLogger(__name__)

GITHUB_CLIENT_ID = "Iv1.b507a08c87ecfe98"
GITHUB_DEVICE_CODE_URL = "https://github.com/login/device/code"
GITHUB_ACCESS_TOKEN_URL = "https://github.com/login/oauth/access_token"
COPILOT_TOKEN_URL = "https://api.github.com/copilot_internal/v2/token"
DEVICE_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:device_code"

TOKEN_EXPIRY_BUFFER = 300  # seconds
DEFAULT_TOKEN_LIFETIME = 1800
SLOW_DOWN_STEP = 5

AUTH_FILE = Path("~/.vaultpilot/auth.json").expanduser()
TOKEN_ENV_VAR = "GITHUB_COPILOT_TOKEN"


class AuthError(Exception):
    """Missing, rejected, or unrefreshable credentials."""


def is_token_expired(
    expires_at: float,
    buffer_seconds: int = TOKEN_EXPIRY_BUFFER,
    now: float | None = None,
) -> bool:
    current = time.time() if now is None else now
    return current >= expires_at - buffer_seconds


# ---------------------------------------------------------------------------
# HTTP helpers
# ---------------------------------------------------------------------------

async def _request_json(
    method: str,
    url: str,
    http: httpx.AsyncClient | None,
    **kwargs: Any,
) -> dict[str, Any]:
    headers = {"Accept": "application/json", **kwargs.pop("headers", {})}
    owned = http is None
    client = http or httpx.AsyncClient(timeout=20)
    try:
        resp = await client.request(method, url, headers=headers, **kwargs)
    except httpx.HTTPError as e:
        raise AuthError(f"Request to {url} failed: {e}") from e
    finally:
        if owned:
            await client.aclose()
    if resp.status_code >= 400:
        raise AuthError(f"{url} returned {resp.status_code}: {resp.text[:200]}")
    try:
        data = resp.json()
    except json.JSONDecodeError as e:
        raise AuthError(f"{url} returned invalid JSON") from e
    if not isinstance(data, dict):
        raise AuthError(f"{url} returned an unexpected payload")
    return data


# ---------------------------------------------------------------------------
# Device-code flow
# ---------------------------------------------------------------------------

async def fetch_device_code(http: httpx.AsyncClient | None = None) -> DeviceCode:
    data = await _request_json(
        "POST",
        GITHUB_DEVICE_CODE_URL,
        http,
        json={"client_id": GITHUB_CLIENT_ID, "scope": "read:user"},
    )
    return DeviceCode.model_validate(data)


async def poll_for_access_token(
    device_code: str,
    interval: int,
    expires_in: int,
    http: httpx.AsyncClient | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> str:
    """Poll until the user approves the device code; return the GitHub token."""
    deadline = clock() + expires_in
    wait = interval

    while clock() < deadline:
        await sleep(wait)
        data = await _request_json(
            "POST",
            GITHUB_ACCESS_TOKEN_URL,
            http,
            json={
                "client_id": GITHUB_CLIENT_ID,
                "device_code": device_code,
                "grant_type": DEVICE_GRANT_TYPE,
            },
        )
        if data.get("access_token"):
            return data["access_token"]

        error = data.get("error")
        if error == "authorization_pending":
            continue
        if error == "slow_down":
            wait += SLOW_DOWN_STEP
            logger.debug("Device flow asked to slow down; polling every %ss", wait)
            continue
        if error == "expired_token":
            raise AuthError("Device code expired")
        raise AuthError(f"Auth error: {error or 'no access token in response'}")

    raise AuthError("Polling timed out")


async def fetch_copilot_token(github_token: str, http: httpx.AsyncClient | None = None) -> CopilotToken:
    """Trade the long-lived GitHub token for a short-lived Copilot API token."""
    data = await _request_json(
        "GET",
        COPILOT_TOKEN_URL,
        http,
        headers={"Authorization": f"token {github_token}"},
    )
    token = data.get("token")
    if not token:
        raise AuthError("Failed to get Copilot token")
    expires_at = data.get("expires_at")
    if not isinstance(expires_at, (int, float)):
        expires_at = time.time() + DEFAULT_TOKEN_LIFETIME
    return CopilotToken(token=token, expires_at=float(expires_at))


# ---------------------------------------------------------------------------
# Token providers
# ---------------------------------------------------------------------------

class TokenProvider(ABC):
    @abstractmethod
    async def get_token(self) -> str:
        """Return a bearer credential valid for the next request."""
        ...


class CopilotTokenProvider(TokenProvider):
    def __init__(self, github_token: str, http: httpx.AsyncClient | None = None) -> None:
        self._github_token = github_token
        self._http = http
        self._cached: CopilotToken | None = None

    @property
    def has_secret(self) -> bool:
        return bool(self._github_token)

    def update_secret(self, github_token: str) -> None:
        self._github_token = github_token
        self._cached = None

    async def get_token(self) -> str:
        if not self._github_token:
            raise AuthError("Not authenticated with GitHub Copilot. Run 'vaultpilot login'.")
        if self._cached is None or is_token_expired(self._cached.expires_at):
            logger.debug("Refreshing Copilot token")
            self._cached = await fetch_copilot_token(self._github_token, self._http)
            logger.info("Copilot token refreshed; expires at %s", int(self._cached.expires_at))
        return self._cached.token


class StaticTokenProvider(TokenProvider):
    """API key for generic OpenAI-compatible endpoints."""

    def __init__(self, api_key: str) -> None:
        self._api_key = api_key

    async def get_token(self) -> str:
        if not self._api_key:
            raise AuthError("No API key configured")
        return self._api_key


# ---------------------------------------------------------------------------
# Local credential storage
# ---------------------------------------------------------------------------

def load_github_token(path: Path = AUTH_FILE) -> str | None:
    env = os.environ.get(TOKEN_ENV_VAR)
    if env:
        return env
    if not path.exists():
        return None
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Could not read %s: %s", path, e)
        return None
    if not isinstance(raw, dict):
        return None
    return raw.get("github_token") or None


def save_github_token(token: str, path: Path = AUTH_FILE) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps({"github_token": token}, indent=2) + "\n", encoding="utf-8")
    path.chmod(0o600)


def clear_github_token(path: Path = AUTH_FILE) -> bool:
    if path.exists():
        path.unlink()
        return True
    return False

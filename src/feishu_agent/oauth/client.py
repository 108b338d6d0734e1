"""OAuth 2.0 client for Feishu user authorization.

Handles the authorization-code grant:
1. Generate a CSRF state and the authorization URL
2. Exchange the code from the callback for a user token pair
"""

from __future__ import annotations

import logging
import secrets
import string
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode

import httpx

from .. import _http
from .._http import FEISHU_BASE_URL
from ..errors import ProtocolError

if TYPE_CHECKING:
    from ..config import FeishuSettings

logger = logging.getLogger(__name__)

AUTHORIZE_PATH = "/open-apis/authen/v1/index"
DEFAULT_EXCHANGE_PATH = "/open-apis/authen/v1/access_token"

STATE_ALPHABET = string.ascii_letters + string.digits + "-._~"
STATE_LENGTH = 32


@dataclass
class OAuthTokens:
    """User tokens returned from the code exchange."""

    access_token: str
    refresh_token: str
    expires_in: int  # seconds
    token_type: str = "Bearer"
    user_id: str | None = None
    union_id: str | None = None
    open_id: str | None = None
    name: str | None = None

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> "OAuthTokens":
        """Build from the ``data`` object of an exchange response.

        Raises:
            ProtocolError: If required fields are missing or malformed
        """
        try:
            return cls(
                access_token=data["access_token"],
                refresh_token=data["refresh_token"],
                expires_in=_http.seconds(data, "expires_in", 7200, "authorization code exchange"),
                token_type=data.get("token_type", "Bearer"),
                user_id=data.get("user_id"),
                union_id=data.get("union_id"),
                open_id=data.get("open_id"),
                name=data.get("name"),
            )
        except KeyError as e:
            raise ProtocolError(
                f"Invalid token response: missing {e}",
                details={"missing_field": str(e), "response_keys": list(data.keys())},
            )


def generate_state(length: int = STATE_LENGTH) -> str:
    """Random state value for CSRF protection."""
    return "".join(secrets.choice(STATE_ALPHABET) for _ in range(length))


class OAuthClient:
    """OAuth 2.0 client for a Feishu app.

    Usage:
        client = OAuthClient(app_id="cli_xxx", app_secret="secret")

        state = client.generate_state()
        auth_url = client.get_authorization_url(redirect_uri, state)

        # User visits auth_url and grants permission
        # Feishu redirects to redirect_uri with ?code=xxx&state=xxx

        tokens = await client.exchange_code(code, redirect_uri)
    """

    def __init__(
        self,
        app_id: str,
        app_secret: str,
        *,
        base_url: str = FEISHU_BASE_URL,
        exchange_path: str = DEFAULT_EXCHANGE_PATH,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ):
        self.app_id = app_id
        self.app_secret = app_secret
        self.base_url = base_url.rstrip("/")
        self.exchange_path = exchange_path
        self.timeout = timeout
        self._http = http_client

    @classmethod
    def from_settings(
        cls,
        settings: "FeishuSettings",
        http_client: httpx.AsyncClient | None = None,
    ) -> "OAuthClient":
        return cls(
            settings.app_id,
            settings.app_secret,
            base_url=settings.base_url,
            exchange_path=settings.exchange_path,
            http_client=http_client,
            timeout=settings.token_timeout,
        )

    def generate_state(self) -> str:
        return generate_state()

    def get_authorization_url(self, redirect_uri: str, state: str) -> str:
        """Authorization URL for user consent.

        Scopes are configured in the Feishu developer console, not in the URL.
        """
        params = {
            "app_id": self.app_id,
            "redirect_uri": redirect_uri,
            "state": state,
        }
        return f"{self.base_url}{AUTHORIZE_PATH}?{urlencode(params)}"

    async def exchange_code(self, code: str, redirect_uri: str | None = None) -> OAuthTokens:
        """Exchange an authorization code for a user token pair.

        Raises:
            ProtocolError: If the response body is empty or not JSON
            PlatformError: If the platform returns a non-zero code
        """
        payload = {
            "grant_type": "authorization_code",
            "code": code,
            "app_id": self.app_id,
            "app_secret": self.app_secret,
        }
        if redirect_uri:
            payload["redirect_uri"] = redirect_uri

        if self._http is not None:
            return await self._exchange(self._http, payload)
        async with httpx.AsyncClient() as client:
            return await self._exchange(client, payload)

    async def _exchange(self, client: httpx.AsyncClient, payload: dict[str, Any]) -> OAuthTokens:
        operation = "authorization code exchange"
        response = await _http.send(
            client,
            "POST",
            f"{self.base_url}{self.exchange_path}",
            timeout=self.timeout,
            operation=operation,
            json=payload,
            headers={"Content-Type": _http.JSON_CONTENT_TYPE},
        )
        logger.debug("Token exchange response status: %s", response.status_code)

        _http.raise_for_status(response, "Authorization code exchange failed")
        data = _http.read_json(response, operation)
        _http.check_code(data, "Feishu API error", response.status_code)

        token_data = data.get("data")
        if not isinstance(token_data, dict):
            # v3 deployments return the token fields at the top level
            token_data = data
        return OAuthTokens.from_response(token_data)

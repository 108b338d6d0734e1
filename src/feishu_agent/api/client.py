"""Feishu API client - authenticated gateway to the open platform REST API.

Every call picks a token kind: the app-level tenant token (default) or the
user OAuth token. The platform's ``{code, msg, data}`` envelope is unwrapped
and ``data`` returned; a non-zero ``code`` is an error even on HTTP 200.
"""

from __future__ import annotations

from typing import Any
from urllib.parse import urlencode

import httpx

from .. import _http
from ..auth.manager import AuthManager, TokenKind, UserIdentity
from ..config import FEISHU_BASE_URL, FeishuSettings
from ..oauth.storage import TokenStore

DEFAULT_TIMEOUT = 30.0


class FeishuClient:
    """Feishu API client.

    Usage:
        async with FeishuClient.from_settings(load_settings(store), store) as feishu:
            calendars = await feishu.get(
                "/open-apis/calendar/v4/calendars", token_kind=TokenKind.USER
            )
            await feishu.post("/open-apis/bitable/v1/apps/xxx/tables/yyy/records", {"fields": {}})
    """

    def __init__(
        self,
        auth: AuthManager,
        *,
        base_url: str = FEISHU_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.auth = auth
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

        self._client = http_client or httpx.AsyncClient()
        self._owns_client = http_client is None

    @classmethod
    def from_settings(
        cls,
        settings: FeishuSettings,
        store: TokenStore | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> "FeishuClient":
        """Create a client (and its auth manager) sharing one HTTP connection pool."""
        owns_client = http_client is None
        http_client = http_client or httpx.AsyncClient()
        auth = AuthManager.from_settings(settings, store=store, http_client=http_client)
        client = cls(
            auth,
            base_url=settings.base_url,
            timeout=settings.api_timeout,
            http_client=http_client,
        )
        client._owns_client = owns_client
        return client

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        await self.close()

    async def close(self):
        """Close the HTTP client."""
        if self._owns_client:
            await self._client.aclose()
        await self.auth.close()

    def _url(self, path: str, query: dict[str, Any] | None = None) -> str:
        url = f"{self.base_url}{path}"
        if query:
            params = {k: v for k, v in query.items() if v is not None}
            if params:
                url = f"{url}?{urlencode(params, doseq=True)}"
        return url

    async def request(
        self,
        path: str,
        method: str = "GET",
        body: Any = None,
        query: dict[str, Any] | None = None,
        token_kind: TokenKind = TokenKind.TENANT,
    ) -> Any:
        """Make one authenticated API call.

        Returns:
            The ``data`` member of the response envelope

        Raises:
            UnauthorizedError: If a user token is requested but not configured
            FeishuTimeoutError: If the call takes longer than ``timeout``
            NetworkError: On transport failures
            PlatformError: On non-2xx status or non-zero ``code``
            ProtocolError: If the body is empty or not JSON
        """
        token = await self.auth.get_token(token_kind)
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": _http.JSON_CONTENT_TYPE,
        }

        kwargs: dict[str, Any] = {"headers": headers}
        if body is not None:
            kwargs["json"] = body

        response = await _http.send(
            self._client,
            method.upper(),
            self._url(path, query),
            timeout=self.timeout,
            operation=path,
            **kwargs,
        )

        _http.raise_for_status(response, "Request failed")
        data = _http.read_json(response, path)
        _http.check_code(data, "Feishu API Error", response.status_code)
        return data.get("data")

    async def get(
        self,
        path: str,
        query: dict[str, Any] | None = None,
        token_kind: TokenKind = TokenKind.TENANT,
    ) -> Any:
        return await self.request(path, "GET", query=query, token_kind=token_kind)

    async def post(
        self,
        path: str,
        body: Any = None,
        query: dict[str, Any] | None = None,
        token_kind: TokenKind = TokenKind.TENANT,
    ) -> Any:
        return await self.request(path, "POST", body=body, query=query, token_kind=token_kind)

    async def delete(
        self,
        path: str,
        query: dict[str, Any] | None = None,
        token_kind: TokenKind = TokenKind.TENANT,
    ) -> Any:
        return await self.request(path, "DELETE", query=query, token_kind=token_kind)

    # User helpers

    def has_user_token(self) -> bool:
        return self.auth.has_user_token()

    async def get_current_user(self) -> UserIdentity | None:
        """Identity of the authorized user, or None if it cannot be determined."""
        return await self.auth.get_current_user_identity()

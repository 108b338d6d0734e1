"""Token manager for Feishu API access.

Owns the app-level tenant token and the user OAuth token, decides when to
reuse or refresh each one, and writes rotated user tokens back to storage.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable

import httpx

from .. import _http
from .._http import FEISHU_BASE_URL
from ..errors import FeishuError, ProtocolError, TokenStoreError, UnauthorizedError
from ..oauth.storage import REFRESH_TOKEN, USER_ACCESS_TOKEN, TokenStore

if TYPE_CHECKING:
    from ..config import FeishuSettings

logger = logging.getLogger(__name__)

TENANT_TOKEN_PATH = "/open-apis/auth/v3/tenant_access_token/internal"
REFRESH_TOKEN_PATH = "/open-apis/authen/v1/refresh_access_token"
USER_INFO_PATH = "/open-apis/authen/v1/user_info"

# Tokens are treated as expired this many seconds early
EXPIRY_BUFFER_SECONDS = 300


class TokenKind(str, enum.Enum):
    TENANT = "tenant"
    USER = "user"


@dataclass
class TenantToken:
    """App-level bearer token. Never persisted."""

    value: str
    expires_at: float  # Unix timestamp, buffer already applied


@dataclass
class UserToken:
    """User OAuth token pair."""

    access_token: str
    refresh_token: str
    expires_at: float = 0.0  # Unix timestamp; 0 forces a refresh on first use


@dataclass
class UserIdentity:
    """Identity of the user behind the current user token."""

    user_id: str | None
    union_id: str | None
    open_id: str | None
    name: str | None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "UserIdentity":
        return cls(
            user_id=data.get("user_id"),
            union_id=data.get("union_id"),
            open_id=data.get("open_id"),
            name=data.get("name"),
        )


def _mask(token: str) -> str:
    return f"{token[:6]}..." if len(token) > 10 else "***"


class AuthManager:
    """Single source of truth for the bearer value attached to a request.

    Handles:
    - Tenant token caching with a 5 minute safety buffer
    - User token refresh via refresh_token, keeping the newest refresh token
    - Best-effort persistence of rotated user tokens
    - Coalescing concurrent refreshes of the same token kind

    Usage:
        auth = AuthManager(app_id, app_secret, store=TokenStore())

        tenant = await auth.get_tenant_token()
        user = await auth.get_user_token()  # refreshes if needed
    """

    def __init__(
        self,
        app_id: str,
        app_secret: str,
        *,
        base_url: str = FEISHU_BASE_URL,
        user_access_token: str | None = None,
        refresh_token: str | None = None,
        store: TokenStore | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
        clock: Callable[[], float] = time.time,
    ):
        self.app_id = app_id
        self.app_secret = app_secret
        self.base_url = base_url.rstrip("/")
        self.store = store
        self.timeout = timeout
        self._clock = clock

        self._http = http_client or httpx.AsyncClient()
        self._owns_http = http_client is None

        self._tenant_token: TenantToken | None = None
        # Loaded tokens start expired so the first use validates them
        self._user_token: UserToken | None = None
        if user_access_token and refresh_token:
            self._user_token = UserToken(user_access_token, refresh_token, expires_at=0.0)

        self._inflight: dict[TokenKind, asyncio.Future] = {}

    @classmethod
    def from_settings(
        cls,
        settings: "FeishuSettings",
        store: TokenStore | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> "AuthManager":
        return cls(
            settings.app_id,
            settings.app_secret,
            base_url=settings.base_url,
            user_access_token=settings.user_access_token,
            refresh_token=settings.refresh_token,
            store=store,
            http_client=http_client,
            timeout=settings.token_timeout,
        )

    async def close(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    @property
    def user_token(self) -> UserToken | None:
        return self._user_token

    def has_user_token(self) -> bool:
        """True if a user token is configured, regardless of expiry."""
        return self._user_token is not None

    async def get_token(self, kind: TokenKind) -> str:
        if kind == TokenKind.USER:
            return await self.get_user_token()
        return await self.get_tenant_token()

    # Tenant token

    async def get_tenant_token(self) -> str:
        """Get a valid tenant access token, fetching a new one if needed."""
        token = self._tenant_token
        if token and self._clock() < token.expires_at:
            return token.value

        token = await self._single_flight(TokenKind.TENANT, self._fetch_tenant_token)
        return token.value

    async def _fetch_tenant_token(self) -> TenantToken:
        operation = "tenant_access_token"
        response = await _http.send(
            self._http,
            "POST",
            f"{self.base_url}{TENANT_TOKEN_PATH}",
            timeout=self.timeout,
            operation=operation,
            json={"app_id": self.app_id, "app_secret": self.app_secret},
            headers={"Content-Type": _http.JSON_CONTENT_TYPE},
        )
        _http.raise_for_status(response, "Auth request failed")
        data = _http.read_json(response, operation)
        _http.check_code(data, "Feishu API Error", response.status_code)

        value = data.get("tenant_access_token")
        if not value:
            raise ProtocolError("Auth response did not include tenant_access_token")

        expire = _http.seconds(data, "expire", 0, operation)
        self._tenant_token = TenantToken(
            value=value,
            expires_at=self._clock() + expire - EXPIRY_BUFFER_SECONDS,
        )
        logger.debug("Fetched tenant access token, expires in %ss", expire)
        return self._tenant_token

    # User token

    async def get_user_token(self) -> str:
        """Get a valid user access token, refreshing it if near expiry.

        Raises:
            UnauthorizedError: If no user token is configured
        """
        token = self._user_token
        if token is None:
            raise UnauthorizedError()

        if self._clock() >= token.expires_at - EXPIRY_BUFFER_SECONDS:
            token = await self.refresh_user_token()
        return token.access_token

    async def refresh_user_token(self) -> UserToken:
        """Exchange the refresh token for a new user token pair.

        Concurrent callers share one in-flight refresh.
        """
        if self._user_token is None:
            raise UnauthorizedError()
        return await self._single_flight(TokenKind.USER, self._refresh_user_token)

    async def _refresh_user_token(self) -> UserToken:
        current = self._user_token
        if current is None:
            raise UnauthorizedError()

        operation = "refresh_access_token"
        response = await _http.send(
            self._http,
            "POST",
            f"{self.base_url}{REFRESH_TOKEN_PATH}",
            timeout=self.timeout,
            operation=operation,
            json={
                "grant_type": "refresh_token",
                "refresh_token": current.refresh_token,
                "app_id": self.app_id,
                "app_secret": self.app_secret,
            },
            headers={"Content-Type": _http.JSON_CONTENT_TYPE},
        )
        _http.raise_for_status(response, "Failed to refresh user token")
        data = _http.read_json(response, operation)
        _http.check_code(data, "Failed to refresh user token", response.status_code)

        payload = data.get("data") or {}
        access_token = payload.get("access_token")
        if not access_token:
            raise ProtocolError("Failed to refresh user token: no access_token in response")

        self._user_token = UserToken(
            access_token=access_token,
            # Rotation may omit the refresh token; keep the previous one then
            refresh_token=payload.get("refresh_token") or current.refresh_token,
            expires_at=self._clock() + _http.seconds(payload, "expires_in", 0, operation),
        )
        logger.info("Refreshed user access token %s", _mask(access_token))
        self._persist_user_token()
        return self._user_token

    def set_user_token(self, access_token: str, refresh_token: str, expires_in: int) -> UserToken:
        """Install a token pair obtained from the OAuth flow and persist it."""
        self._user_token = UserToken(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=self._clock() + expires_in,
        )
        self._persist_user_token()
        return self._user_token

    def _persist_user_token(self) -> None:
        """Write the current user token pair through the store, best effort."""
        if self.store is None or self._user_token is None:
            return
        try:
            self.store.update(
                **{
                    USER_ACCESS_TOKEN: self._user_token.access_token,
                    REFRESH_TOKEN: self._user_token.refresh_token,
                }
            )
        except (TokenStoreError, OSError) as e:
            logger.warning("Failed to persist refreshed user token: %s", e)

    async def get_current_user_identity(self) -> UserIdentity | None:
        """Look up the user behind the current user token.

        Best-effort lookup: returns None on any failure.
        """
        try:
            token = await self.get_user_token()
            operation = "user_info"
            response = await _http.send(
                self._http,
                "GET",
                f"{self.base_url}{USER_INFO_PATH}",
                timeout=self.timeout,
                operation=operation,
                headers={"Authorization": f"Bearer {token}"},
            )
            _http.raise_for_status(response, "User info request failed")
            data = _http.read_json(response, operation)
            _http.check_code(data, "User info request failed", response.status_code)
        except FeishuError as e:
            logger.debug("User identity lookup failed: %s", e)
            return None

        payload = data.get("data")
        if not isinstance(payload, dict):
            logger.debug("User identity lookup returned no data")
            return None
        return UserIdentity.from_dict(payload)

    async def _single_flight(self, kind: TokenKind, factory: Callable[[], Awaitable[Any]]) -> Any:
        """Run ``factory`` unless a call for ``kind`` is already in flight."""
        task = self._inflight.get(kind)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._inflight[kind] = task

            def _done(finished: asyncio.Future) -> None:
                if self._inflight.get(kind) is finished:
                    del self._inflight[kind]

            task.add_done_callback(_done)
        return await asyncio.shield(task)

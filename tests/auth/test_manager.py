"""Tests for AuthManager."""

import asyncio
import logging
from unittest.mock import MagicMock

import httpx
import pytest

from feishu_agent.auth.manager import (
    EXPIRY_BUFFER_SECONDS,
    AuthManager,
    TokenKind,
    UserIdentity,
)
from feishu_agent.errors import (
    FeishuTimeoutError,
    NetworkError,
    PlatformError,
    ProtocolError,
    TokenStoreError,
    UnauthorizedError,
)
from feishu_agent.oauth.storage import REFRESH_TOKEN, USER_ACCESS_TOKEN

from tests.conftest import (
    APP_ID,
    APP_SECRET,
    MOCK_USER_INFO,
    REFRESH_PATH,
    TENANT_PATH,
    USER_INFO_PATH,
    tenant_response,
    user_token_response,
)


def make_manager(http_client, clock, store=None, access="stored-user-token", refresh="stored-refresh"):
    return AuthManager(
        APP_ID,
        APP_SECRET,
        user_access_token=access,
        refresh_token=refresh,
        store=store,
        http_client=http_client,
        clock=clock,
    )


class TestTenantToken:
    """Tests for tenant access token caching."""

    @pytest.mark.asyncio
    async def test_fetches_token_with_app_credentials(self, platform, http_client, clock):
        """Should post app credentials as JSON and return the token."""
        platform.add(TENANT_PATH, tenant_response("T1"))
        auth = make_manager(http_client, clock)

        assert await auth.get_tenant_token() == "T1"

        request = platform.calls_to(TENANT_PATH)[0]
        assert request.method == "POST"
        assert request.headers["Content-Type"] == "application/json; charset=utf-8"
        assert platform.bodies_to(TENANT_PATH) == [{"app_id": APP_ID, "app_secret": APP_SECRET}]

    @pytest.mark.asyncio
    async def test_cached_token_is_reused(self, platform, http_client, clock):
        """Should not hit the network while the cached token is valid."""
        platform.add(TENANT_PATH, tenant_response("T1"))
        auth = make_manager(http_client, clock)

        assert await auth.get_tenant_token() == "T1"
        clock.advance(60)
        assert await auth.get_tenant_token() == "T1"

        assert len(platform.calls_to(TENANT_PATH)) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("expire", [600, 3600, 7200])
    async def test_expires_buffer_seconds_early(self, platform, http_client, clock, expire):
        """Should refetch once now reaches fetch time + expire - 300."""
        platform.add(TENANT_PATH, tenant_response("T1", expire), tenant_response("T2", expire))
        auth = make_manager(http_client, clock)

        await auth.get_tenant_token()
        clock.advance(expire - EXPIRY_BUFFER_SECONDS - 1)
        assert await auth.get_tenant_token() == "T1"

        clock.advance(1)
        assert await auth.get_tenant_token() == "T2"
        assert len(platform.calls_to(TENANT_PATH)) == 2

    @pytest.mark.asyncio
    async def test_rotation_after_expiry(self, platform, http_client, clock):
        """Should serve T1 twice, then T2 after 7000 seconds, in two calls."""
        platform.add(TENANT_PATH, tenant_response("T1", 7200), tenant_response("T2", 7200))
        auth = make_manager(http_client, clock)

        assert await auth.get_tenant_token() == "T1"
        assert await auth.get_tenant_token() == "T1"
        clock.advance(7000)
        assert await auth.get_tenant_token() == "T2"

        assert len(platform.calls_to(TENANT_PATH)) == 2

    @pytest.mark.asyncio
    async def test_non_zero_code_raises_platform_error(self, platform, http_client, clock):
        """Should treat a non-zero code as failure even on HTTP 200."""
        platform.add(TENANT_PATH, {"code": 10003, "msg": "invalid app_id"})
        auth = make_manager(http_client, clock)

        with pytest.raises(PlatformError) as exc_info:
            await auth.get_tenant_token()

        assert exc_info.value.code == 10003
        assert exc_info.value.http_status == 200
        assert "invalid app_id" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_http_error_raises_platform_error(self, platform, http_client, clock):
        """Should report the status and reason phrase for a non-JSON error body."""
        platform.add(TENANT_PATH, httpx.Response(500, text="oops"))
        auth = make_manager(http_client, clock)

        with pytest.raises(PlatformError) as exc_info:
            await auth.get_tenant_token()

        assert exc_info.value.http_status == 500
        assert "Auth request failed: Internal Server Error" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_missing_token_raises_protocol_error(self, platform, http_client, clock):
        """Should reject a success envelope without a token."""
        platform.add(TENANT_PATH, {"code": 0, "msg": "ok", "expire": 7200})
        auth = make_manager(http_client, clock)

        with pytest.raises(ProtocolError):
            await auth.get_tenant_token()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("expire", [None, "soon"])
    async def test_malformed_expire_raises_protocol_error(self, platform, http_client, clock, expire):
        """Should reject a lifetime that is not a number."""
        platform.add(TENANT_PATH, tenant_response("T1", expire))
        auth = make_manager(http_client, clock)

        with pytest.raises(ProtocolError) as exc_info:
            await auth.get_tenant_token()

        assert "expire" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_transport_failure_raises_network_error(self, platform, http_client, clock):
        """Should map connection failures to NetworkError."""
        platform.add(TENANT_PATH, httpx.ConnectError("connection refused"))
        auth = make_manager(http_client, clock)

        with pytest.raises(NetworkError):
            await auth.get_tenant_token()

    @pytest.mark.asyncio
    async def test_slow_response_raises_timeout(self, platform, http_client, clock):
        """Should give up after the token timeout."""

        async def slow(request):
            await asyncio.sleep(5)
            return httpx.Response(200, json=tenant_response())

        platform.add(TENANT_PATH, slow)
        auth = make_manager(http_client, clock)
        auth.timeout = 0.05

        with pytest.raises(FeishuTimeoutError) as exc_info:
            await auth.get_tenant_token()
        assert exc_info.value.operation == "tenant_access_token"

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_fetch(self, platform, http_client, clock):
        """Should coalesce simultaneous fetches into one request."""

        async def delayed(request):
            await asyncio.sleep(0.05)
            return httpx.Response(200, json=tenant_response("T1"))

        platform.add(TENANT_PATH, delayed)
        auth = make_manager(http_client, clock)

        tokens = await asyncio.gather(*(auth.get_tenant_token() for _ in range(5)))

        assert tokens == ["T1"] * 5
        assert len(platform.calls_to(TENANT_PATH)) == 1

    @pytest.mark.asyncio
    async def test_failed_fetch_is_not_cached(self, platform, http_client, clock):
        """Should retry on the next call after a failure."""
        platform.add(TENANT_PATH, {"code": 99991663, "msg": "busy"}, tenant_response("T1"))
        auth = make_manager(http_client, clock)

        with pytest.raises(PlatformError):
            await auth.get_tenant_token()
        assert await auth.get_tenant_token() == "T1"


class TestUserToken:
    """Tests for user token refresh and persistence."""

    @pytest.mark.asyncio
    async def test_not_configured_raises_unauthorized(self, platform, http_client, clock):
        """Should raise without touching the network."""
        auth = make_manager(http_client, clock, access=None, refresh=None)

        assert auth.has_user_token() is False
        with pytest.raises(UnauthorizedError) as exc_info:
            await auth.get_user_token()

        assert "feishu-agent auth" in str(exc_info.value)
        assert platform.calls == []

    def test_access_token_without_refresh_token_is_not_configured(self, http_client, clock):
        """Should require both halves of the token pair."""
        auth = make_manager(http_client, clock, access="u-only", refresh=None)
        assert auth.has_user_token() is False
        assert auth.user_token is None

    @pytest.mark.asyncio
    async def test_loaded_token_refreshes_on_first_use(self, platform, http_client, clock):
        """Should refresh a token loaded from config before first use."""
        platform.add(REFRESH_PATH, user_token_response("U2", "R2"))
        auth = make_manager(http_client, clock)

        assert await auth.get_user_token() == "U2"
        assert platform.bodies_to(REFRESH_PATH) == [
            {
                "grant_type": "refresh_token",
                "refresh_token": "stored-refresh",
                "app_id": APP_ID,
                "app_secret": APP_SECRET,
            }
        ]

    @pytest.mark.asyncio
    async def test_refreshed_token_cached_until_buffer(self, platform, http_client, clock):
        """Should reuse the refreshed token until expires_at - 300."""
        platform.add(
            REFRESH_PATH,
            user_token_response("U2", "R2", expires_in=7200),
            user_token_response("U3", "R3", expires_in=7200),
        )
        auth = make_manager(http_client, clock)

        assert await auth.get_user_token() == "U2"
        clock.advance(7200 - EXPIRY_BUFFER_SECONDS - 1)
        assert await auth.get_user_token() == "U2"
        clock.advance(1)
        assert await auth.get_user_token() == "U3"

        bodies = platform.bodies_to(REFRESH_PATH)
        assert [b["refresh_token"] for b in bodies] == ["stored-refresh", "R2"]

    @pytest.mark.asyncio
    async def test_rotated_tokens_are_persisted(self, platform, http_client, clock, store):
        """Should write the new token pair to the store."""
        store.update(appId=APP_ID)
        platform.add(REFRESH_PATH, user_token_response("U2", "R2"))
        auth = make_manager(http_client, clock, store=store)

        await auth.get_user_token()

        saved = store.load()
        assert saved[USER_ACCESS_TOKEN] == "U2"
        assert saved[REFRESH_TOKEN] == "R2"
        assert saved["appId"] == APP_ID

    @pytest.mark.asyncio
    async def test_missing_refresh_token_keeps_previous(self, platform, http_client, clock, store):
        """Should keep and persist the previous refresh token when none is returned."""
        platform.add(REFRESH_PATH, user_token_response("U2", refresh_token=None))
        auth = make_manager(http_client, clock, store=store)

        await auth.get_user_token()

        assert auth.user_token.refresh_token == "stored-refresh"
        assert store.get(REFRESH_TOKEN) == "stored-refresh"
        assert store.get(USER_ACCESS_TOKEN) == "U2"

    @pytest.mark.asyncio
    async def test_persistence_failure_does_not_fail_refresh(self, platform, http_client, clock, caplog):
        """Should log a warning and still return the refreshed token."""
        store = MagicMock()
        store.update.side_effect = TokenStoreError("Could not write config to any location")
        platform.add(REFRESH_PATH, user_token_response("U2", "R2"))
        auth = make_manager(http_client, clock, store=store)

        with caplog.at_level(logging.WARNING, logger="feishu_agent.auth.manager"):
            assert await auth.get_user_token() == "U2"

        store.update.assert_called_once()
        assert "Failed to persist refreshed user token" in caplog.text

    @pytest.mark.asyncio
    async def test_refresh_error_raises_platform_error(self, platform, http_client, clock):
        """Should surface the platform code and message."""
        platform.add(REFRESH_PATH, {"code": 20026, "msg": "refresh token has expired"})
        auth = make_manager(http_client, clock)

        with pytest.raises(PlatformError) as exc_info:
            await auth.get_user_token()

        assert exc_info.value.code == 20026
        assert str(exc_info.value) == "Failed to refresh user token: refresh token has expired"

    @pytest.mark.asyncio
    async def test_refresh_without_access_token_raises(self, platform, http_client, clock):
        """Should reject a success envelope without an access token."""
        platform.add(REFRESH_PATH, {"code": 0, "msg": "ok", "data": {}})
        auth = make_manager(http_client, clock)

        with pytest.raises(ProtocolError):
            await auth.get_user_token()

    @pytest.mark.asyncio
    async def test_refresh_with_malformed_expires_in_raises(self, platform, http_client, clock, store):
        """Should fail the refresh without caching or persisting the token."""
        platform.add(REFRESH_PATH, user_token_response("U2", "R2", expires_in="soon"))
        auth = make_manager(http_client, clock, store=store)

        with pytest.raises(ProtocolError):
            await auth.get_user_token()

        assert store.get(USER_ACCESS_TOKEN) is None

    @pytest.mark.asyncio
    async def test_concurrent_refreshes_share_one_call(self, platform, http_client, clock):
        """Should send one refresh even with many waiting callers."""

        async def delayed(request):
            await asyncio.sleep(0.05)
            return httpx.Response(200, json=user_token_response("U2", "R2"))

        platform.add(REFRESH_PATH, delayed)
        auth = make_manager(http_client, clock)

        tokens = await asyncio.gather(*(auth.get_user_token() for _ in range(4)))

        assert tokens == ["U2"] * 4
        assert len(platform.calls_to(REFRESH_PATH)) == 1

    @pytest.mark.asyncio
    async def test_get_token_dispatches_on_kind(self, platform, http_client, clock):
        """Should return the tenant or user token as requested."""
        platform.add(TENANT_PATH, tenant_response("T1"))
        platform.add(REFRESH_PATH, user_token_response("U2", "R2"))
        auth = make_manager(http_client, clock)

        assert await auth.get_token(TokenKind.TENANT) == "T1"
        assert await auth.get_token(TokenKind.USER) == "U2"

    def test_set_user_token_persists_and_sets_expiry(self, http_client, clock, store):
        """Should install a fresh pair from the OAuth flow."""
        auth = make_manager(http_client, clock, store=store, access=None, refresh=None)

        token = auth.set_user_token("U1", "R1", 7200)

        assert auth.has_user_token() is True
        assert token.expires_at == clock() + 7200
        assert store.get(USER_ACCESS_TOKEN) == "U1"
        assert store.get(REFRESH_TOKEN) == "R1"


class TestUserIdentity:
    """Tests for the current user lookup."""

    @pytest.mark.asyncio
    async def test_returns_identity(self, platform, http_client, clock):
        """Should call user_info with the user token."""
        platform.add(REFRESH_PATH, user_token_response("U2", "R2"))
        platform.add(USER_INFO_PATH, MOCK_USER_INFO)
        auth = make_manager(http_client, clock)

        identity = await auth.get_current_user_identity()

        assert identity == UserIdentity(
            user_id="test-user-id",
            union_id="test-union-id",
            open_id="test-open-id",
            name="Test User",
        )
        request = platform.calls_to(USER_INFO_PATH)[0]
        assert request.headers["Authorization"] == "Bearer U2"

    @pytest.mark.asyncio
    async def test_none_without_user_token(self, platform, http_client, clock):
        """Should return None instead of raising."""
        auth = make_manager(http_client, clock, access=None, refresh=None)
        assert await auth.get_current_user_identity() is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response",
        [
            {"code": 99991668, "msg": "invalid access token"},
            httpx.Response(401, json={"code": 99991668, "msg": "invalid access token"}),
            httpx.ConnectError("unreachable"),
            {"code": 0, "msg": "ok"},
        ],
    )
    async def test_none_on_failure(self, platform, http_client, clock, response):
        """Should swallow lookup failures."""
        platform.add(REFRESH_PATH, user_token_response("U2", "R2"))
        platform.add(USER_INFO_PATH, response)
        auth = make_manager(http_client, clock)

        assert await auth.get_current_user_identity() is None

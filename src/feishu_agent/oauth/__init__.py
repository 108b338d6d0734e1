"""OAuth module for Feishu user authorization.

Provides the OAuth 2.0 authorization-code flow that bootstraps the user
access token, and the JSON file that persists credentials and tokens.

Usage:
    from feishu_agent.oauth import OAuthClient, TokenStore, run_oauth_flow

    client = OAuthClient(app_id, app_secret)

    # Start local callback server, open the browser, wait for the redirect
    tokens = await run_oauth_flow(client, store=TokenStore())

    access_token = tokens.access_token    # Valid for ~2 hours
    refresh_token = tokens.refresh_token  # Rotated on every refresh
"""

from .client import OAuthClient, OAuthTokens, generate_state
from .storage import TokenStore
from .server import (
    OAuthCallbackServer,
    OAuthFlow,
    OAuthSession,
    OAuthState,
    run_oauth_flow,
)

__all__ = [
    "OAuthClient",
    "OAuthTokens",
    "generate_state",
    "TokenStore",
    "OAuthCallbackServer",
    "OAuthFlow",
    "OAuthSession",
    "OAuthState",
    "run_oauth_flow",
]

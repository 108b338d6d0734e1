"""Authentication module for Feishu Agent.

Manages the tenant token and the user token behind every API call.

Usage:
    from feishu_agent.auth import AuthManager, TokenKind

    auth = AuthManager(app_id, app_secret, store=TokenStore())
    token = await auth.get_token(TokenKind.USER)
"""

from .manager import AuthManager, TenantToken, TokenKind, UserIdentity, UserToken

__all__ = [
    "AuthManager",
    "TenantToken",
    "TokenKind",
    "UserIdentity",
    "UserToken",
]

"""Feishu API client module.

Usage:
    from feishu_agent.api import FeishuClient

    async with FeishuClient.from_settings(settings, store) as feishu:
        data = await feishu.get("/open-apis/contact/v3/users", token_kind=TokenKind.TENANT)
"""

from .client import FeishuClient

__all__ = [
    "FeishuClient",
]

"""Feishu agent configuration via pydantic-settings."""

from __future__ import annotations

from pydantic_settings import BaseSettings

from ._http import FEISHU_BASE_URL
from .oauth.storage import (
    APP_ID,
    APP_SECRET,
    BASE_URL,
    REFRESH_TOKEN,
    USER_ACCESS_TOKEN,
    TokenStore,
)

EXCHANGE_PATH_V1 = "/open-apis/authen/v1/access_token"
EXCHANGE_PATH_V3 = "/open-apis/authen/v3/access_token"


class FeishuSettings(BaseSettings):
    model_config = {"env_prefix": "FEISHU_", "env_file": ".env", "extra": "ignore"}

    app_id: str = ""
    app_secret: str = ""
    base_url: str = FEISHU_BASE_URL

    # Seed values; normally loaded from the config file
    user_access_token: str | None = None
    refresh_token: str | None = None

    # OAuth authorization-code exchange endpoint (v1 or v3 deployments)
    exchange_path: str = EXCHANGE_PATH_V1
    oauth_port: int = 3000
    oauth_timeout: float = 300.0

    api_timeout: float = 30.0
    token_timeout: float = 10.0

    log_level: str = "WARNING"

    @property
    def has_credentials(self) -> bool:
        return bool(self.app_id and self.app_secret)


# settings field -> config file key
_FILE_FIELDS = {
    "app_id": APP_ID,
    "app_secret": APP_SECRET,
    "base_url": BASE_URL,
    "user_access_token": USER_ACCESS_TOKEN,
    "refresh_token": REFRESH_TOKEN,
}


def load_settings(store: TokenStore | None = None) -> FeishuSettings:
    """Load settings from the environment, filling gaps from the config file.

    Environment variables (and .env) take precedence; credentials and tokens
    that are not set there come from the persisted config file.
    """
    settings = FeishuSettings()
    stored = (store or TokenStore()).load()

    updates = {}
    for field_name, key in _FILE_FIELDS.items():
        current = getattr(settings, field_name)
        if current and current != FeishuSettings.model_fields[field_name].default:
            continue
        value = stored.get(key)
        if value:
            updates[field_name] = value

    if updates:
        settings = settings.model_copy(update=updates)
    return settings

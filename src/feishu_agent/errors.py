"""Error types shared by the auth manager, API client and OAuth flow."""

from __future__ import annotations

from typing import Any


class FeishuError(Exception):
    """Base exception for Feishu API errors."""

    kind = "error"

    def __init__(
        self,
        message: str,
        code: int | None = None,
        http_status: int | None = None,
        details: dict | None = None,
    ):
        self.message = message
        self.code = code
        self.http_status = http_status
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "code": self.code,
            "http_status": self.http_status,
        }


class UnauthorizedError(FeishuError):
    """No user access token is configured."""

    kind = "unauthorized"

    def __init__(self, message: str | None = None):
        default_msg = (
            "User access token not configured.\n"
            "Run 'feishu-agent auth' to authorize with your Feishu account."
        )
        super().__init__(message or default_msg)


class PlatformError(FeishuError):
    """The platform answered with a non-zero business code or a non-2xx status."""

    kind = "platform"


class FeishuTimeoutError(FeishuError):
    """An API call, token call or OAuth wait ran past its deadline."""

    kind = "timeout"

    def __init__(self, message: str, operation: str | None = None):
        super().__init__(message)
        self.operation = operation


class NetworkError(FeishuError):
    """Transport-level failure (DNS, refused or reset connection)."""

    kind = "network"


class ProtocolError(FeishuError):
    """Empty or non-JSON body where JSON was expected."""

    kind = "protocol"


class OAuthError(FeishuError):
    """Authorization-code flow failure."""

    kind = "oauth"

    def __init__(self, message: str, error_code: str | None = None, details: dict | None = None):
        super().__init__(message, details=details)
        self.error_code = error_code


class CsrfMismatchError(OAuthError):
    """Callback state did not match the session state."""

    kind = "csrf_mismatch"

    def __init__(self, message: str = "State mismatch - possible CSRF attack"):
        super().__init__(message, error_code="state_mismatch")


class TokenStoreError(FeishuError):
    """No persistence target could be written."""

    kind = "token_store"

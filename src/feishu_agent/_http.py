"""Shared request plumbing for the token endpoints and the API client."""

from __future__ import annotations

import asyncio
import json
from typing import Any

import httpx

from .errors import FeishuTimeoutError, NetworkError, PlatformError, ProtocolError

FEISHU_BASE_URL = "https://open.feishu.cn"
JSON_CONTENT_TYPE = "application/json; charset=utf-8"


async def send(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    timeout: float,
    operation: str,
    **kwargs: Any,
) -> httpx.Response:
    """Send one request, bounded by ``timeout`` seconds end to end.

    The deadline is enforced by cancelling the call, which also closes the
    underlying connection.
    """
    try:
        return await asyncio.wait_for(
            client.request(method, url, timeout=timeout, **kwargs),
            timeout=timeout,
        )
    except (asyncio.TimeoutError, httpx.TimeoutException) as e:
        raise FeishuTimeoutError(
            f"Request timed out after {timeout:g}s: {operation}",
            operation=operation,
        ) from e
    except httpx.TransportError as e:
        raise NetworkError(f"Request failed: {operation}: {e}") from e


def read_json(response: httpx.Response, operation: str) -> dict[str, Any]:
    """Decode a JSON object body.

    Raises:
        ProtocolError: If the body is empty, not JSON, or not an object.
    """
    text = response.text
    if not text or not text.strip():
        raise ProtocolError(
            f"Empty response from {operation}",
            http_status=response.status_code,
        )
    try:
        data = json.loads(text)
    except ValueError as e:
        raise ProtocolError(
            f"Failed to parse JSON response from {operation}: {text[:200]}",
            http_status=response.status_code,
        ) from e
    if not isinstance(data, dict):
        raise ProtocolError(
            f"Unexpected JSON payload from {operation}",
            http_status=response.status_code,
        )
    return data


def raise_for_status(response: httpx.Response, prefix: str) -> None:
    """Raise PlatformError for a non-2xx response.

    The platform's own ``code``/``msg`` are used when the error body is JSON,
    otherwise the HTTP reason phrase.
    """
    if response.is_success:
        return

    code: int | None = None
    message = response.reason_phrase or f"HTTP {response.status_code}"
    details: dict[str, Any] = {}
    try:
        body = response.json() if response.content else None
    except ValueError:
        body = None
        details = {"raw_response": response.text[:500]}

    if isinstance(body, dict):
        details = body
        if isinstance(body.get("code"), int):
            code = body["code"]
        message = body.get("msg") or body.get("message") or message

    raise PlatformError(
        f"{prefix}: {message}",
        code=code if code is not None else response.status_code,
        http_status=response.status_code,
        details=details,
    )


def seconds(data: dict[str, Any], key: str, default: int, operation: str) -> int:
    """Read a lifetime field as whole seconds.

    Raises:
        ProtocolError: If the value is present but not a number.
    """
    value = data.get(key, default)
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ProtocolError(
            f"Invalid {key} in {operation} response: {value!r}",
            details={key: value},
        ) from e


def check_code(data: dict[str, Any], prefix: str, http_status: int | None = None) -> None:
    """Raise PlatformError unless the envelope reports ``code == 0``."""
    code = data.get("code")
    if code == 0:
        return
    message = data.get("msg") or data.get("message") or json.dumps(data)[:200]
    raise PlatformError(
        f"{prefix}: {message}",
        code=code if isinstance(code, int) else None,
        http_status=http_status,
        details=data,
    )

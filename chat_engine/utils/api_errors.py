"""
Provider error classification.

Turns raw failures (HTTP status errors, transport errors, timeouts,
protocol errors) into an ApiError with a category and a retryable flag,
and maps failures to the text that ends up in the conversation.
"""
import asyncio
from typing import Optional

import httpx

from chat_engine.core.exceptions import (
    ApiError,
    ContentError,
    ProtocolError,
    ProviderHTTPError,
    ProviderTimeoutError,
)

DEFAULT_RETRY_AFTER_SECONDS = 60.0

_CODES = {
    "network": "NETWORK_ERROR",
    "timeout": "NETWORK_ERROR",
    "auth": "AUTH_ERROR",
    "rate_limit": "RATE_LIMIT",
    "invalid_response": "INVALID_RESPONSE",
    "server_error": "API_ERROR",
    "unknown": "API_ERROR",
}


def _parse_retry_after(value: Optional[str]) -> float:
    if not value:
        return DEFAULT_RETRY_AFTER_SECONDS
    try:
        return float(int(value.strip()))
    except ValueError:
        return DEFAULT_RETRY_AFTER_SECONDS


def _make(type_: str, message: str, retryable: bool = False, **kwargs) -> ApiError:
    return ApiError(message, type=type_, retryable=retryable, code=_CODES[type_], **kwargs)


def _from_http_error(exc: ProviderHTTPError) -> ApiError:
    status = exc.status_code
    if status in (401, 403):
        return _make("auth", "Invalid or expired API key", status_code=status)
    if status == 429:
        return _make(
            "rate_limit",
            "Too many requests, please retry later",
            retryable=True,
            status_code=status,
            retry_after=_parse_retry_after(exc.headers.get("retry-after")),
        )
    if status >= 500:
        return _make("server_error", "AI service temporarily unavailable", retryable=True, status_code=status)
    if status in (400, 404):
        return _make("invalid_response", exc.body or exc.message, status_code=status)
    return _make("unknown", exc.message, status_code=status)


def classify_error(exc: BaseException) -> ApiError:
    """Classify any failure raised while talking to a provider."""
    if isinstance(exc, ApiError):
        return exc
    if isinstance(exc, ProviderHTTPError):
        return _from_http_error(exc)
    if isinstance(exc, (ProviderTimeoutError, httpx.TimeoutException, asyncio.TimeoutError)):
        return _make("timeout", "Request timed out", retryable=True)
    if isinstance(exc, httpx.TransportError):
        return _make("network", "Network connection failed", retryable=True)
    if isinstance(exc, ProtocolError):
        return _make("invalid_response", str(exc) or "Invalid response from provider")
    return _make("unknown", str(exc) or "Unknown error")


def get_error_message(error: ApiError) -> str:
    """Category message for a classified error."""
    if error.type == "network":
        return "Network connection failed, check your network settings and retry"
    if error.type == "timeout":
        return "Request timed out, please retry later"
    if error.type == "auth":
        return "API key is invalid or expired, check the configuration"
    if error.type == "rate_limit":
        if error.retry_after:
            return f"Too many requests, retry in {int(error.retry_after)} seconds"
        return "Too many requests, please retry later"
    if error.type == "server_error":
        return "AI service temporarily unavailable, please retry later"
    if error.type == "invalid_response":
        return f"Invalid request: {error.message}"
    return error.message or "An unknown error occurred, please retry"


def _contains(text: str, *needles: str) -> bool:
    return any(n in text for n in needles)


def get_friendly_message(exc: BaseException, image_generation: bool = False) -> str:
    """
    Map a streaming failure to the text persisted as the assistant reply.

    Keyword checks run in a fixed priority order against the raw error text;
    unmatched errors keep their original message.
    """
    if isinstance(exc, ContentError):
        return "The current model does not support images, switch to a vision-capable model (e.g. GPT-4o, Claude 3)"

    raw = str(exc) or exc.__class__.__name__
    if isinstance(exc, ProviderHTTPError) and exc.body:
        raw = f"{raw} {exc.body}"
    lower = raw.lower()

    if _contains(lower, "vision", "multimodal", "does not support", "image input", "image_url"):
        return "The current model does not support images, switch to a vision-capable model (e.g. GPT-4o, Claude 3)"
    if _contains(lower, "401", "403", "unauthorized", "invalid api key", "authentication"):
        return "API key is invalid or expired, check the API key in the configuration"
    if _contains(lower, "404", "model not found", "does not exist"):
        return "Model not found, check the model name in the configuration"
    if isinstance(exc, httpx.TransportError) and not isinstance(exc, httpx.TimeoutException):
        return "Network connection failed, check the network or the API URL"
    if _contains(lower, "network", "econnrefused", "enotfound", "dns", "connection"):
        return "Network connection failed, check the network or the API URL"
    if isinstance(exc, (ProviderTimeoutError, httpx.TimeoutException, asyncio.TimeoutError)) or _contains(
        lower, "timeout", "timed out"
    ):
        if image_generation:
            return (
                "Image generation timed out, check:\n"
                "1. The API token is correct\n2. The network is reachable\n3. Retry later"
            )
        return (
            "Connection timed out, check:\n"
            "1. The API key is correct\n2. The API URL is reachable\n3. The network is reachable"
        )
    if _contains(lower, "429", "rate limit", "too many"):
        return "Too many requests, please retry later"
    if _contains(lower, "500", "502", "503", "server error"):
        return "Server temporarily unavailable, please retry later"
    if _contains(lower, "insufficient", "quota", "balance"):
        return "API quota exhausted, check your account balance"
    return str(exc) or "An unknown error occurred, please retry"

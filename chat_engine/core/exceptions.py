"""
Exception hierarchy for the chat engine.

Every error raised by the engine derives from ChatEngineError so API
handlers and callers can catch one base class. Provider failures carry
enough context (status code, headers, body) for the error classifier
to decide whether they are retryable.
"""
from typing import Dict, List, Optional


class ChatEngineError(Exception):
    """Base class for all engine errors."""

    code: str = "UNKNOWN_ERROR"

    def __init__(self, message: str = "", details: Optional[object] = None):
        super().__init__(message)
        self.message = message
        self.details = details


# ------ Not found -----
class NotFoundError(ChatEngineError):
    code = "NOT_FOUND"


class SessionNotFoundError(NotFoundError):
    code = "SESSION_NOT_FOUND"

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class ConfigNotFoundError(NotFoundError):
    code = "CONFIG_NOT_FOUND"

    def __init__(self, config_id: Optional[str] = None):
        message = f"Config not found: {config_id}" if config_id else "No model config available, add one first"
        super().__init__(message)
        self.config_id = config_id


class MessageNotFoundError(NotFoundError):
    code = "MESSAGE_NOT_FOUND"

    def __init__(self, message_id: str):
        super().__init__(f"Message not found: {message_id}")
        self.message_id = message_id


# ------ Validation -----
class ConfigValidationError(ChatEngineError):
    """Raised with every violated field, not just the first one."""

    code = "INVALID_CONFIG"

    def __init__(self, errors: List[Dict[str, str]]):
        self.errors = errors
        joined = ", ".join(e["message"] for e in errors)
        super().__init__(f"Config validation failed: {joined}", details=errors)


class DuplicateConfigNameError(ConfigValidationError):
    code = "DUPLICATE_CONFIG_NAME"

    def __init__(self, name: str):
        super().__init__([{"field": "name", "message": f'Config name "{name}" already exists'}])
        self.name = name


class InvalidOperationError(ChatEngineError):
    """The request is well-formed but not applicable to the current state."""

    code = "INVALID_OPERATION"


# ------ Provider / protocol -----
class ProtocolError(ChatEngineError):
    """An adapter could not parse a response it expected."""

    code = "INVALID_RESPONSE"


class ProviderHTTPError(ChatEngineError):
    """A provider answered with a non-success HTTP status."""

    code = "API_ERROR"

    def __init__(
        self,
        provider: str,
        status_code: int,
        body: str = "",
        headers: Optional[Dict[str, str]] = None,
    ):
        super().__init__(f"{provider} API error: {status_code} - {body}")
        self.provider = provider
        self.status_code = status_code
        self.body = body
        self.headers = {k.lower(): v for k, v in (headers or {}).items()}


class ProviderTimeoutError(ChatEngineError):
    code = "NETWORK_ERROR"


class ContentError(ChatEngineError):
    """The remote model rejected multimodal input."""

    code = "API_ERROR"


class ApiError(ChatEngineError):
    """A classified provider failure."""

    code = "API_ERROR"

    def __init__(
        self,
        message: str,
        type: str = "unknown",
        retryable: bool = False,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.type = type
        self.retryable = retryable
        self.status_code = status_code
        self.retry_after = retry_after
        if code:
            self.code = code


# ------ Storage -----
class StorageError(ChatEngineError):
    code = "STORAGE_ERROR"


class DataCorruptedError(StorageError):
    code = "DATA_CORRUPTED"

from __future__ import annotations
from enum import Enum
from typing import Any, Dict, Optional
import json


class ErrorCode(str, Enum):
    UNKNOWN = "UNKNOWN"
    INVALID_ARGUMENT = "INVALID_ARGUMENT"
    NOT_FOUND = "NOT_FOUND"
    TIMEOUT = "TIMEOUT"
    CANCELLED = "CANCELLED"

    CONFIG_INVALID = "CONFIG_INVALID"

    PROVIDER_NOT_FOUND = "PROVIDER_NOT_FOUND"
    PROVIDER_UNAVAILABLE = "PROVIDER_UNAVAILABLE"
    PROVIDER_AUTH_FAILED = "PROVIDER_AUTH_FAILED"
    PROVIDER_RATE_LIMITED = "PROVIDER_RATE_LIMITED"
    PROVIDER_QUOTA_EXCEEDED = "PROVIDER_QUOTA_EXCEEDED"
    PROVIDER_INVALID_RESPONSE = "PROVIDER_INVALID_RESPONSE"
    MODEL_NOT_SUPPORTED = "MODEL_NOT_SUPPORTED"

    NETWORK_ERROR = "NETWORK_ERROR"
    CONNECTION_FAILED = "CONNECTION_FAILED"


_RETRYABLE = {
    ErrorCode.TIMEOUT,
    ErrorCode.NETWORK_ERROR,
    ErrorCode.CONNECTION_FAILED,
    ErrorCode.PROVIDER_RATE_LIMITED,
}

_USER_FIXABLE = {
    ErrorCode.INVALID_ARGUMENT,
    ErrorCode.CONFIG_INVALID,
    ErrorCode.PROVIDER_AUTH_FAILED,
}


class RelayError(Exception):
    """
    Base class for every failure the core reports.

    Errors are carried inside Err(...) across component boundaries; they are
    exceptions so callers can still `raise result.error` where that is simpler.
    - is_retryable(): a later identical call may succeed (timeouts, network, rate limits).
      The core never retries; that is the caller's decision.
    - is_user_fixable(): the operator must change input/config (auth, config, bad args).
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.UNKNOWN,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.context: Dict[str, Any] = dict(context or {})
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def is_retryable(self) -> bool:
        return self.code in _RETRYABLE

    def is_user_fixable(self) -> bool:
        return self.code in _USER_FIXABLE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": type(self).__name__,
            "message": self.message,
            "code": self.code.value,
            "context": self.context,
            "cause": (
                {"name": type(self.cause).__name__, "message": str(self.cause)}
                if self.cause is not None else None
            ),
        }


class ValidationError(RelayError):
    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None, cause: Optional[BaseException] = None):
        super().__init__(message, ErrorCode.INVALID_ARGUMENT, context, cause)


class NotFoundError(RelayError):
    def __init__(self, resource: str, context: Optional[Dict[str, Any]] = None, cause: Optional[BaseException] = None):
        super().__init__(f"{resource} not found", ErrorCode.NOT_FOUND, {**(context or {}), "resource": resource}, cause)


class RequestTimeoutError(RelayError):
    def __init__(self, message: str, timeout: float, context: Optional[Dict[str, Any]] = None,
                 cause: Optional[BaseException] = None):
        super().__init__(message, ErrorCode.TIMEOUT, {**(context or {}), "timeout": timeout}, cause)
        self.timeout = timeout


class CancellationError(RelayError):
    def __init__(self, message: str = "Operation was cancelled", context: Optional[Dict[str, Any]] = None,
                 cause: Optional[BaseException] = None):
        super().__init__(message, ErrorCode.CANCELLED, context, cause)


class NetworkError(RelayError):
    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None, cause: Optional[BaseException] = None):
        super().__init__(message, ErrorCode.CONNECTION_FAILED, context, cause)


# ----- provider errors -----

class ProviderError(RelayError):
    """Base class for provider-level failures."""

    def __init__(
        self,
        message: str,
        provider: str,
        code: ErrorCode = ErrorCode.PROVIDER_UNAVAILABLE,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message, code, {**(context or {}), "provider": provider}, cause)
        self.provider = provider


class ProviderNotFoundError(ProviderError):
    def __init__(self, provider: str, message: Optional[str] = None, context: Optional[Dict[str, Any]] = None,
                 cause: Optional[BaseException] = None):
        super().__init__(message or f"Provider '{provider}' not found", provider,
                         ErrorCode.PROVIDER_NOT_FOUND, context, cause)


class ProviderUnavailableError(ProviderError):
    def __init__(self, provider: str, reason: Optional[str] = None, context: Optional[Dict[str, Any]] = None,
                 cause: Optional[BaseException] = None):
        message = (f"Provider '{provider}' is unavailable: {reason}" if reason
                   else f"Provider '{provider}' is unavailable")
        super().__init__(message, provider, ErrorCode.PROVIDER_UNAVAILABLE,
                         {**(context or {}), "reason": reason}, cause)
        self.reason = reason


class ProviderAuthError(ProviderError):
    def __init__(self, provider: str, context: Optional[Dict[str, Any]] = None, cause: Optional[BaseException] = None):
        super().__init__(f"Authentication failed for provider '{provider}'", provider,
                         ErrorCode.PROVIDER_AUTH_FAILED, context, cause)


class ProviderRateLimitError(ProviderError):
    def __init__(self, provider: str, retry_after: Optional[int] = None, context: Optional[Dict[str, Any]] = None,
                 cause: Optional[BaseException] = None):
        message = (f"Rate limit exceeded for provider '{provider}'. Retry after {retry_after} seconds"
                   if retry_after else f"Rate limit exceeded for provider '{provider}'")
        super().__init__(message, provider, ErrorCode.PROVIDER_RATE_LIMITED,
                         {**(context or {}), "retry_after": retry_after}, cause)
        self.retry_after = retry_after


class ProviderQuotaError(ProviderError):
    def __init__(self, provider: str, context: Optional[Dict[str, Any]] = None, cause: Optional[BaseException] = None):
        super().__init__(f"Quota exceeded for provider '{provider}'", provider,
                         ErrorCode.PROVIDER_QUOTA_EXCEEDED, context, cause)


class ProviderInvalidResponseError(ProviderError):
    """Carries the raw offending payload in .response."""

    def __init__(self, provider: str, response: Any = None, context: Optional[Dict[str, Any]] = None,
                 cause: Optional[BaseException] = None):
        super().__init__(f"Invalid response from provider '{provider}'", provider,
                         ErrorCode.PROVIDER_INVALID_RESPONSE,
                         {**(context or {}), "response": _preview(response)}, cause)
        self.response = response


class ModelNotSupportedError(ProviderError):
    def __init__(self, provider: str, model: str, context: Optional[Dict[str, Any]] = None,
                 cause: Optional[BaseException] = None):
        super().__init__(f"Model '{model}' is not supported by provider '{provider}'", provider,
                         ErrorCode.MODEL_NOT_SUPPORTED, {**(context or {}), "model": model}, cause)
        self.model = model


class ProviderConfigError(ProviderError):
    def __init__(self, provider: str, reason: str, context: Optional[Dict[str, Any]] = None,
                 cause: Optional[BaseException] = None):
        super().__init__(f"Invalid configuration for provider '{provider}': {reason}", provider,
                         ErrorCode.CONFIG_INVALID, context, cause)
        self.reason = reason


def _preview(payload: Any, limit: int = 500) -> Optional[str]:
    if payload is None:
        return None
    if isinstance(payload, (bytes, bytearray)):
        text = payload.decode("utf-8", errors="replace")
    elif isinstance(payload, str):
        text = payload
    else:
        try:
            text = json.dumps(payload, ensure_ascii=False, default=str)
        except (TypeError, ValueError):
            text = repr(payload)
    return text if len(text) <= limit else text[:limit] + "..."

"""Normalized model invocation errors."""

from __future__ import annotations

from typing import Optional


class ModelInvocationError(RuntimeError):
    """Base error for chat-completion failures.

    ``retryable`` tells the orchestrator whether another attempt may succeed.
    """

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = False,
        provider: str = "",
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.provider = provider
        self.status_code = status_code


class ModelTimeoutError(ModelInvocationError):
    def __init__(self, message: str, *, provider: str = "") -> None:
        super().__init__(message, retryable=True, provider=provider)


class ModelRateLimitError(ModelInvocationError):
    """Provider throttled the request; ``retry_after`` is in seconds when known."""

    def __init__(
        self,
        message: str,
        *,
        provider: str = "",
        retry_after: Optional[float] = None,
    ) -> None:
        super().__init__(message, retryable=True, provider=provider, status_code=429)
        self.retry_after = retry_after


__all__ = ["ModelInvocationError", "ModelRateLimitError", "ModelTimeoutError"]

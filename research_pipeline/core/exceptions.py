"""
Error taxonomy for the research pipeline.

Recoverable problems (classification, plan/blueprint parsing, structuring)
are absorbed inside their component. Everything defined here is either
retried by the completion gateway or turned into the single ``failed``
terminal event by the orchestrator.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

# Statuses that justify one retry against the next completion provider
FALLBACK_STATUSES = frozenset({403, 404})
# Statuses surfaced to the caller as-is (billing / throttling / credentials)
QUOTA_STATUSES = frozenset({401, 402, 429})


class PipelineError(Exception):
    """Base class for pipeline failures with a user-facing message."""

    def __init__(
        self,
        message: str,
        *,
        user_message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.user_message = user_message or message
        self.details: Dict[str, Any] = dict(details or {})

    def to_event_data(self) -> Dict[str, Any]:
        return {"reason": self.user_message, "error_type": type(self).__name__, **self.details}


class ProviderError(PipelineError):
    """A completion or research provider call failed.

    ``status`` is the HTTP status when one is known; ``None`` means a transport
    failure (timeout, connection reset) which is treated like a 5xx.
    """

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        status: Optional[int] = None,
        user_message: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            user_message=user_message,
            details={"provider": provider, "status": status},
        )
        self.provider = provider
        self.status = status

    @property
    def is_quota_error(self) -> bool:
        return self.status in QUOTA_STATUSES

    @property
    def is_retryable_with_fallback(self) -> bool:
        if self.status is None:
            return True
        return self.status in FALLBACK_STATUSES or self.status >= 500

    @property
    def is_rate_limited(self) -> bool:
        return self.status == 429


class MalformedOutputError(PipelineError):
    """Structured output from a provider could not be parsed."""


class NoProvidersConfiguredError(PipelineError):
    """No research provider is configured at all."""

    def __init__(self, message: str = "No research providers configured") -> None:
        super().__init__(message, user_message="Research is unavailable: no research providers are configured")


class ResearchExhaustedError(PipelineError):
    """Every configured research provider failed for every question."""


class InsufficientCreditsError(PipelineError):
    def __init__(self, balance: int, required: int) -> None:
        super().__init__(
            f"Insufficient credits: balance {balance}, required {required}",
            user_message="Insufficient credits for this request. Please top up your balance.",
            details={
                "insufficient_credits": True,
                "current_balance": balance,
                "required_credits": required,
            },
        )
        self.balance = balance
        self.required = required


class RunCancelledError(PipelineError):
    def __init__(self, message: str = "Run cancelled by caller") -> None:
        super().__init__(message, user_message="Research was cancelled", details={"cancelled": True})


__all__ = [
    "FALLBACK_STATUSES",
    "QUOTA_STATUSES",
    "InsufficientCreditsError",
    "MalformedOutputError",
    "NoProvidersConfiguredError",
    "PipelineError",
    "ProviderError",
    "ResearchExhaustedError",
    "RunCancelledError",
]

"""Error taxonomy for the orchestration core."""

from typing import Any


class AICoreError(Exception):
    """Base class for all orchestration core errors."""


# ============================================================================
# LLM client
# ============================================================================


class LLMError(AICoreError):
    """Failure talking to the LLM provider."""


class CircuitOpenError(LLMError):
    """Raised without calling upstream while the circuit breaker is open."""

    def __init__(self, message: str = "Circuit breaker is open. Too many recent failures."):
        super().__init__(message)


class DuplicateRequestError(LLMError):
    """Idempotency key reused inside the dedup window."""

    def __init__(self, idempotency_key: str):
        super().__init__(f"Duplicate request with idempotency key: {idempotency_key}")
        self.idempotency_key = idempotency_key


class StructuredOutputError(LLMError):
    """Model output could not be validated against the requested schema."""

    def __init__(self, message: str, raw_output: str | None = None):
        super().__init__(message)
        self.raw_output = raw_output


class CapabilityError(LLMError):
    """Model lacks a capability the call needs (tools, structured output)."""


class UnknownModelError(LLMError):
    """Model identifier is not in the registry."""


# ============================================================================
# Quotas
# ============================================================================


class QuotaError(AICoreError):
    """
    Quota or per-request cap exceeded.

    Carries the next reset time (ISO 8601, UTC midnight) and a snapshot of
    current usage so the API layer can answer with a retry-after signal.
    """

    def __init__(
        self,
        message: str,
        resets_at_iso: str | None = None,
        current_usage: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.resets_at_iso = resets_at_iso
        self.current_usage = current_usage or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": "quota_exceeded",
            "message": self.message,
            "resetsAt": self.resets_at_iso,
            "currentUsage": self.current_usage,
        }


# ============================================================================
# Retrieval / tools
# ============================================================================


class RetrievalValidationError(AICoreError, ValueError):
    """Retrieval called with invalid arguments (blank tenant, blank query...)."""


class WebSearchError(AICoreError):
    """Web search tool failure."""


class WebSearchDisabledError(WebSearchError):
    """Web search was requested while disabled by configuration."""


class WebSearchRateLimitError(WebSearchError):
    """Tenant exhausted its web search token bucket."""

    def __init__(self, tenant_id: str):
        super().__init__(f"Rate limit exceeded for tenant {tenant_id}. Please try again later.")
        self.tenant_id = tenant_id

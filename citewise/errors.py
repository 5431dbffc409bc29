from __future__ import annotations

from typing import Dict, List, Optional


class CitewiseError(Exception):
    """Base class for all pipeline errors."""

    code = "internal_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__

    def to_job_error(self):
        """Structured ``{code, message}`` attached to a failed job."""

        from .types import JobError

        return JobError(code=self.code, message=self.message)


# --- input validation -------------------------------------------------------


class QueryError(CitewiseError):
    """Raised before a Job exists when the query is unusable."""

    code = "validation_error"


class EmptyQuery(QueryError):
    def __init__(self) -> None:
        super().__init__("query cannot be empty")


class QueryTooLong(QueryError):
    def __init__(self, max_length: int, got: int):
        super().__init__(f"query exceeds maximum length of {max_length} characters (got {got})")
        self.max_length = max_length
        self.got = got


# --- search providers -------------------------------------------------------


class SearchError(CitewiseError):
    code = "search_error"
    retryable = False

    def __init__(self, message: str = "", provider: Optional[str] = None):
        super().__init__(message)
        self.provider = provider


class ProviderUnavailable(SearchError):
    code = "provider_unavailable"
    retryable = True


class SearchRateLimited(SearchError):
    code = "rate_limited"
    retryable = True


class SearchTimeout(SearchError):
    code = "timeout"
    retryable = True


class InvalidQuery(SearchError):
    code = "invalid_query"


class SearchNetworkError(SearchError):
    code = "network_error"
    retryable = True


class SearchProviderError(SearchError):
    code = "provider_error"


# --- LLM providers ----------------------------------------------------------


class LlmError(CitewiseError):
    code = "llm_error"
    retryable = False


class RateLimited(LlmError):
    code = "rate_limited"
    retryable = True


class ModelUnavailable(LlmError):
    code = "model_unavailable"
    retryable = True


class LlmTimeout(LlmError):
    code = "timeout"
    retryable = True


class NetworkError(LlmError):
    code = "network_error"
    retryable = True


class ContentFiltered(LlmError):
    code = "content_filtered"


class ContextLengthExceeded(LlmError):
    code = "context_length_exceeded"


class ProviderError(LlmError):
    code = "provider_error"


# --- registry ---------------------------------------------------------------


class ProviderNotFound(CitewiseError):
    code = "provider_not_found"

    def __init__(self, provider_id: str):
        super().__init__(f"provider not registered: {provider_id}")
        self.provider_id = provider_id


class NoProviderConfigured(CitewiseError):
    code = "no_provider_configured"

    def __init__(self, capability: str):
        super().__init__(f"no provider configured for capability '{capability}'")
        self.capability = capability


# --- store ------------------------------------------------------------------


class StoreError(CitewiseError):
    code = "store_error"


class JobNotFound(StoreError):
    code = "not_found"

    def __init__(self, job_id: str):
        super().__init__(f"job not found: {job_id}")
        self.job_id = job_id


class StoreConflict(StoreError):
    code = "conflict"


# --- pipeline ---------------------------------------------------------------


class InvalidTransition(CitewiseError):
    code = "invalid_transition"


class AllProvidersFailed(CitewiseError):
    code = "all_providers_failed"

    def __init__(self, failures: Dict[str, List[SearchError]]):
        summary = "; ".join(
            f"{provider}: {errors[-1].message}" for provider, errors in failures.items() if errors
        )
        super().__init__(f"every search provider failed ({summary})" if summary else "every search provider failed")
        self.failures = failures


class PipelineTimeout(CitewiseError):
    code = "timeout"

    def __init__(self, timeout_seconds: float):
        super().__init__(f"job exceeded its {timeout_seconds:g}s timeout")
        self.timeout_seconds = timeout_seconds

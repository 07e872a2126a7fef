"""
Exception hierarchy shared by providers, pipeline stages and the recovery layer.

Providers translate transport failures into ProviderError so that the
ErrorRecoveryCoordinator can categorize them from status codes and error codes
instead of provider-specific exception types.
"""

from typing import Dict, List, Optional


class ContextRagError(Exception):
    """Base class for all contextrag errors."""

    code: str = "CONTEXTRAG_ERROR"


class ConfigurationError(ContextRagError):
    """Raised at startup when configuration or credentials are unusable."""

    code = "CONFIGURATION_ERROR"


class ProviderError(ContextRagError):
    """
    Failure reported by an external provider call.

    Args:
        service: Logical service name (e.g. "vector_search", "llm")
        message: Human readable description
        status_code: HTTP status code when the provider speaks HTTP
        code: Provider or OS level error code (e.g. "ECONNRESET")
        retry_after: Seconds the provider asked us to wait (429 responses)
    """

    code = "PROVIDER_ERROR"

    def __init__(
        self,
        service: str,
        message: str,
        *,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message)
        self.service = service
        self.status_code = status_code
        if code is not None:
            self.code = code
        self.retry_after = retry_after

    def __repr__(self) -> str:
        return (
            f"ProviderError(service={self.service!r}, status_code={self.status_code}, "
            f"code={self.code!r}, message={str(self)!r})"
        )


class CircuitOpenError(ContextRagError):
    """Raised when a call is rejected because the service circuit is open."""

    code = "CIRCUIT_OPEN"

    def __init__(self, service: str):
        super().__init__(f"Circuit breaker open for service '{service}'")
        self.service = service


class RetrievalUnavailableError(ContextRagError):
    """Every enabled retrieval source failed for a request."""

    code = "RETRIEVAL_UNAVAILABLE"

    def __init__(self, causes: Dict[str, BaseException]):
        self.causes = dict(causes)
        summary = ", ".join(
            f"{source}: {type(err).__name__}: {err}" for source, err in causes.items()
        )
        super().__init__(f"All retrieval sources failed ({summary})")

    @property
    def failed_sources(self) -> List[str]:
        return list(self.causes.keys())


class QueueFullError(ContextRagError):
    """The worker pool queue is at capacity."""

    code = "QUEUE_FULL"

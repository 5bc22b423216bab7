from __future__ import annotations


class RagScopeError(Exception):
    """Base error for ragscope."""


class FatalConfigurationError(RagScopeError):
    """Configuration that would allow unscoped or unbounded operation."""


class ProviderConfigError(RagScopeError):
    """Missing or invalid provider configuration."""


class ScopeResolutionError(RagScopeError):
    """Scope could not be derived; callers fall back to owner-only scope."""


class LanguageModelError(RagScopeError):
    """Language model invocation failure."""


class LanguageModelTimeoutError(LanguageModelError):
    """Language model call exceeded its timeout."""


class LanguageModelAuthError(LanguageModelError):
    """Language model authentication/authorization failure."""


class AnalysisParseError(RagScopeError):
    """Analyzer output could not be parsed into a structured decision."""


class EmbeddingError(RagScopeError):
    """Embedding generation failure."""


class VectorStoreError(RagScopeError):
    """Vector store search or count failure."""


class RetrievalError(RagScopeError):
    """Retrieval layer failure."""


class TotalRetrievalFailure(RetrievalError):
    """Every similarity search in a retrieval pass failed."""

    def __init__(self, message: str, failed_pairs: tuple[tuple[str, str], ...] = ()) -> None:
        super().__init__(message)
        self.failed_pairs = tuple(failed_pairs)


class AggregateError(RagScopeError):
    """No collection could be counted."""


class IntegrationUnavailableError(RagScopeError):
    """External integration is short-circuited or unreachable."""


class FederatedNodeError(RetrievalError):
    """A federated node returned an error or malformed payload."""

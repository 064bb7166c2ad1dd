"""Exception hierarchy for the ingestion pipeline."""

from typing import Dict, Optional


class TidingsError(Exception):
    """Base class for all pipeline errors."""


class DiscoveryError(TidingsError):
    """A listing or detail page could not be fetched or parsed."""


class ProviderError(TidingsError):
    """A single recognition provider failed (timeout, transport, bad response)."""

    def __init__(self, provider: str, message: str):
        super().__init__(f"{provider}: {message}")
        self.provider = provider


class RecognitionError(TidingsError):
    """Every configured recognition provider failed for one page."""

    def __init__(self, errors: Optional[Dict[str, str]] = None):
        self.errors = errors or {}
        if self.errors:
            detail = "; ".join(f"{name}: {err}" for name, err in self.errors.items())
        else:
            detail = "no recognition provider is configured"
        super().__init__(f"All recognition providers failed ({detail})")


class EmbeddingError(TidingsError):
    """Embedding call failed for a reason other than quota exhaustion."""


class QuotaExhaustedError(EmbeddingError):
    """The embedding provider reported quota or rate-limit exhaustion.

    Fatal for the remainder of a run: no further embedding calls are made and
    the owning issue is left short of completed.
    """


class StoreError(TidingsError):
    """Persistence layer failure."""

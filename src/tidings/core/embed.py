"""OpenAI embedding helpers: one fixed model and dimension for the corpus lifetime."""

import logging
import os
from dataclasses import dataclass
from typing import Any, List, Optional

import openai
from dotenv import load_dotenv
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from .cache import CredentialStore
from .errors import EmbeddingError, QuotaExhaustedError

load_dotenv()

logger = logging.getLogger(__name__)

# Changing either value invalidates every stored vector; there is no fallback model.
EMBEDDING_MODEL = "text-embedding-3-small"
EMBEDDING_DIMENSIONS = 1536

QUOTA_MESSAGE_MARKERS = ("quota", "rate limit", "rate_limit", "insufficient_quota", "billing")
QUOTA_CODES = ("insufficient_quota", "rate_limit_exceeded")


@dataclass
class EmbeddingConfig:
    """Configuration for embedding generation."""
    model: str = EMBEDDING_MODEL
    dimensions: int = EMBEDDING_DIMENSIONS
    batch_size: int = 100
    max_chars: int = 8191 * 4  # ~4 chars per token for text-embedding-3-small
    timeout: float = 30.0


def get_embedding_config() -> EmbeddingConfig:
    """Get embedding configuration from environment.

    Only batching and timeout are tunable; model and dimensions are fixed.
    """
    return EmbeddingConfig(
        batch_size=int(os.getenv("EMBED_BATCH_SIZE", "100")),
        timeout=float(os.getenv("EMBED_TIMEOUT", "30")),
    )


def is_quota_error(error: BaseException) -> bool:
    """True when the provider signals quota or rate-limit exhaustion."""
    if getattr(error, "status_code", None) == 429:
        return True
    if getattr(error, "code", None) in QUOTA_CODES:
        return True
    message = str(error).lower()
    return any(marker in message for marker in QUOTA_MESSAGE_MARKERS)


def is_transient_error(error: BaseException) -> bool:
    if is_quota_error(error):
        return False
    return isinstance(error, (openai.APITimeoutError, openai.APIConnectionError, openai.InternalServerError))


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=4, max=10),
    retry=retry_if_exception(is_transient_error),
    reraise=True,
)
def generate_embeddings_batch(
    texts: List[str],
    config: EmbeddingConfig,
    client: Any,
) -> List[List[float]]:
    """
    Generate embeddings for a batch of texts using OpenAI API.

    Transport timeouts and server errors are retried; quota errors are not.

    Args:
        texts: List of text strings to embed
        config: Embedding configuration
        client: OpenAI client instance

    Returns:
        List of embedding vectors
    """
    truncated_texts = []
    for text in texts:
        if len(text) > config.max_chars:
            logger.warning(f"Truncated text from {len(text)} to {config.max_chars} characters")
            truncated_texts.append(text[:config.max_chars])
        else:
            truncated_texts.append(text)

    response = client.embeddings.create(
        model=config.model,
        input=truncated_texts,
        dimensions=config.dimensions,
    )
    return [item.embedding for item in response.data]


class Embedder:
    """Batch embedder with explicit quota-exhaustion signalling."""

    def __init__(
        self,
        credentials: Optional[CredentialStore] = None,
        config: Optional[EmbeddingConfig] = None,
        client: Any = None,
    ):
        self.credentials = credentials or CredentialStore()
        self.config = config or get_embedding_config()
        self._injected_client = client
        self._client = None
        self._client_key: Optional[str] = None

    @property
    def model(self) -> str:
        return self.config.model

    @property
    def dimensions(self) -> int:
        return self.config.dimensions

    def _get_client(self) -> Any:
        if self._injected_client is not None:
            return self._injected_client

        api_key = self.credentials.get_key("openai")
        if not api_key:
            raise EmbeddingError("OpenAI API key not found")
        # Rebuilt when the credential cache hands out a rotated key.
        if self._client is None or api_key != self._client_key:
            self._client = openai.OpenAI(api_key=api_key, timeout=self.config.timeout, max_retries=0)
            self._client_key = api_key
        return self._client

    def embed(self, texts: List[str]) -> List[List[float]]:
        """
        Embed every text, in order.

        Raises:
            QuotaExhaustedError: quota or rate limit hit; callers must stop the run
            EmbeddingError: any other failure, or a vector of the wrong dimension
        """
        if not texts:
            return []

        client = self._get_client()
        vectors: List[List[float]] = []

        for i in range(0, len(texts), self.config.batch_size):
            batch = texts[i:i + self.config.batch_size]
            try:
                batch_vectors = generate_embeddings_batch(batch, self.config, client)
            except Exception as e:
                if is_quota_error(e):
                    logger.error(f"Embedding quota exhausted: {e}")
                    raise QuotaExhaustedError(str(e)) from e
                logger.error(f"Failed to generate embeddings: {e}")
                raise EmbeddingError(str(e)) from e

            if len(batch_vectors) != len(batch):
                raise EmbeddingError(f"Expected {len(batch)} embeddings, got {len(batch_vectors)}")
            for vector in batch_vectors:
                if len(vector) != self.config.dimensions:
                    raise EmbeddingError(
                        f"Embedding dimension {len(vector)} does not match {self.config.dimensions}"
                    )
            vectors.extend(batch_vectors)

        logger.info(f"Generated {len(vectors)} embeddings using {self.config.model}")
        return vectors

"""
Embedding Service for Evidence RAG

Turns evidence chunks and questions into fixed-dimension vectors with the
OpenAI embeddings API (text-embedding-3-small, 1536 dimensions by default).

Batches for a single document are sent sequentially with a short pause in
between to respect provider rate limits. Output order always matches input
order, even if the provider reorders items within a batch. A failed batch
aborts the whole call; no partial result is ever returned.
"""

import os
import math
import time
import logging
from typing import Optional
from dataclasses import dataclass

from .errors import EmptyInput, DependencyFailure

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4
MAX_INPUT_TOKENS = 8191  # text-embedding-3-* input limit


@dataclass
class EmbeddingConfig:
    """Configuration for embedding service."""
    model: str = "text-embedding-3-small"
    dimensions: int = 1536
    batch_size: int = 100
    max_retries: int = 3
    timeout_seconds: float = 30.0
    batch_delay_seconds: float = 0.1

    @classmethod
    def from_env(cls) -> "EmbeddingConfig":
        return cls(
            model=os.getenv("OPENAI_EMBEDDING_MODEL", "text-embedding-3-small"),
            dimensions=int(os.getenv("OPENAI_EMBEDDING_DIMENSIONS", "1536")),
            batch_size=int(os.getenv("EMBEDDING_BATCH_SIZE", "100")),
            max_retries=int(os.getenv("EMBEDDING_MAX_RETRIES", "3")),
            timeout_seconds=float(os.getenv("EMBEDDING_TIMEOUT_SECONDS", "30")),
        )


@dataclass
class EmbeddingResult:
    """A single embedding and the tokens it consumed."""
    embedding: list[float]
    tokens: int


@dataclass
class BatchEmbeddingResult:
    """Embeddings for a list of texts, in input order."""
    embeddings: list[list[float]]
    total_tokens: int

    def to_dict(self) -> dict:
        return {
            "count": len(self.embeddings),
            "total_tokens": self.total_tokens,
        }


class EmbeddingService:
    """
    Generates embeddings using OpenAI's embeddings endpoint.

    The OpenAI client enforces the per-request timeout and retries up to
    ``max_retries`` times. Anything that still fails is raised as
    DependencyFailure.
    """

    def __init__(self, config: Optional[EmbeddingConfig] = None, client=None):
        """
        Initialize embedding service.

        Args:
            config: Optional configuration. Uses defaults if not provided.
            client: Optional pre-built OpenAI-compatible client (used in tests).
        """
        self.config = config or EmbeddingConfig()
        self._client = client
        if self._client is None:
            self._init_client()

    def _init_client(self):
        """Initialize the OpenAI client."""
        api_key = os.getenv("OPENAI_API_KEY")

        if not api_key:
            logger.warning(
                "OPENAI_API_KEY not found. Embeddings will fail. "
                "Set the environment variable to enable the embedding service."
            )
            return

        from openai import OpenAI
        self._client = OpenAI(
            api_key=api_key,
            timeout=self.config.timeout_seconds,
            max_retries=self.config.max_retries,
        )
        logger.info(f"OpenAI embedding client initialized with model {self.config.model}")

    def _require_client(self):
        if not self._client:
            raise DependencyFailure("OpenAI client not initialized. Check OPENAI_API_KEY.")
        return self._client

    def _check_dimensions(self, embedding: list[float], label: str) -> None:
        if len(embedding) != self.config.dimensions:
            raise DependencyFailure(
                f"{label} has {len(embedding)} dimensions, expected {self.config.dimensions}"
            )

    def embed_one(self, text: str) -> EmbeddingResult:
        """
        Embed a single text (typically a question).

        Raises:
            EmptyInput: text is empty or whitespace-only
            DependencyFailure: the provider call failed
        """
        if not text or not text.strip():
            raise EmptyInput("Cannot embed empty text")

        client = self._require_client()
        try:
            response = client.embeddings.create(
                model=self.config.model,
                input=text,
                dimensions=self.config.dimensions,
            )
        except Exception as e:
            logger.error(f"Embedding request failed: {type(e).__name__}: {e}")
            raise DependencyFailure(f"Embedding request failed: {e}") from e

        if not response.data:
            raise DependencyFailure("Embedding response contained no vectors")

        embedding = list(response.data[0].embedding)
        self._check_dimensions(embedding, "Embedding response")

        tokens = response.usage.total_tokens if response.usage else 0
        return EmbeddingResult(embedding=embedding, tokens=tokens)

    def embed_many(self, texts: list[str], batch_size: Optional[int] = None) -> BatchEmbeddingResult:
        """
        Embed a list of texts in sequential sub-batches.

        Args:
            texts: Texts to embed; none may be empty
            batch_size: Max texts per request (defaults to config.batch_size)

        Returns:
            BatchEmbeddingResult with one vector per input text, in input order

        Raises:
            EmptyInput: the list is empty or any text is empty (all offending
                indices are reported together)
            DependencyFailure: any sub-batch failed; nothing is returned
        """
        if not texts:
            raise EmptyInput("Cannot embed an empty list of texts")

        if batch_size is None:
            batch_size = self.config.batch_size
        if batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {batch_size}")

        empty_indices = [i for i, text in enumerate(texts) if not text or not text.strip()]
        if empty_indices:
            raise EmptyInput(
                f"Cannot embed empty text at indices: {', '.join(str(i) for i in empty_indices)}"
            )

        client = self._require_client()
        batch_count = math.ceil(len(texts) / batch_size)
        logger.info(f"Embedding {len(texts)} texts in {batch_count} batches")

        embeddings: list[list[float]] = []
        total_tokens = 0

        for batch_idx, start in enumerate(range(0, len(texts), batch_size)):
            batch = texts[start:start + batch_size]
            end = start + len(batch) - 1

            try:
                response = client.embeddings.create(
                    model=self.config.model,
                    input=batch,
                    dimensions=self.config.dimensions,
                )
            except Exception as e:
                logger.error(f"Batch embedding failed at index {start}-{end}: {type(e).__name__}: {e}")
                raise DependencyFailure(f"Batch embedding failed at index {start}-{end}") from e

            if len(response.data) != len(batch):
                raise DependencyFailure(
                    f"Batch embedding at index {start}-{end} returned "
                    f"{len(response.data)} vectors for {len(batch)} texts"
                )

            # Provider may reorder items; its index field is relative to the batch
            ordered = sorted(response.data, key=lambda item: item.index)
            for item in ordered:
                vector = list(item.embedding)
                self._check_dimensions(vector, f"Batch embedding at index {start}-{end}")
                embeddings.append(vector)
            total_tokens += response.usage.total_tokens if response.usage else 0

            if (batch_idx + 1) % 10 == 0:
                logger.info(f"Processed batch {batch_idx + 1}/{batch_count}")

            if batch_idx + 1 < batch_count and self.config.batch_delay_seconds > 0:
                time.sleep(self.config.batch_delay_seconds)

        return BatchEmbeddingResult(embeddings=embeddings, total_tokens=total_tokens)

    @property
    def dimensions(self) -> int:
        """Return embedding dimensions."""
        return self.config.dimensions


def estimate_token_count(text: str) -> int:
    """Rough token estimate (~4 characters per token for English)."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def is_within_token_limit(text: str, max_tokens: int = MAX_INPUT_TOKENS) -> bool:
    return estimate_token_count(text) <= max_tokens


def truncate_to_token_limit(text: str, max_tokens: int = MAX_INPUT_TOKENS) -> str:
    """Cut text to roughly max_tokens using the same 4 chars/token estimate."""
    max_chars = max_tokens * CHARS_PER_TOKEN
    if len(text) <= max_chars:
        return text
    return text[:max_chars]


def get_embedding_service(config: Optional[EmbeddingConfig] = None) -> EmbeddingService:
    """
    Factory function to get a configured embedding service.

    Args:
        config: Optional configuration. Read from the environment if omitted.
    """
    return EmbeddingService(config or EmbeddingConfig.from_env())


# CLI for testing
if __name__ == "__main__":
    import sys
    from dotenv import load_dotenv

    load_dotenv()
    logging.basicConfig(level=logging.INFO)

    service = get_embedding_service()

    if len(sys.argv) > 1:
        query = " ".join(sys.argv[1:])
    else:
        query = "What documents mention the incident on July 14th?"

    print(f"Query: {query}")
    result = service.embed_one(query)
    print(f"Embedding dimensions: {len(result.embedding)} (tokens: {result.tokens})")
    print(f"First 10 values: {result.embedding[:10]}")

"""
Chunker for Evidence Text

Splits normalized evidence text into deterministic, overlapping
fixed-width character windows. Windows advance by (chunk_size - overlap), so
stripping the overlapping tail of every non-final chunk and joining the
pieces gives back the original text exactly.
"""

import os
import logging
from typing import Optional
from dataclasses import dataclass

from .embeddings import estimate_token_count

logger = logging.getLogger(__name__)


@dataclass
class ChunkConfig:
    """Configuration for chunking."""
    chunk_size: int = 1000  # characters
    overlap: int = 200  # characters shared with the previous chunk

    def __post_init__(self):
        validate_chunk_params(self.chunk_size, self.overlap)

    @classmethod
    def from_env(cls) -> "ChunkConfig":
        return cls(
            chunk_size=int(os.getenv("CHUNK_SIZE", "1000")),
            overlap=int(os.getenv("CHUNK_OVERLAP", "200")),
        )


@dataclass
class TextChunk:
    """A single ordered window of evidence text."""
    chunk_index: int
    content: str
    token_count: int

    def to_dict(self) -> dict:
        return {
            "chunk_index": self.chunk_index,
            "content": self.content,
            "token_count": self.token_count,
        }


def validate_chunk_params(chunk_size: int, overlap: int) -> None:
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    if overlap < 0 or overlap >= chunk_size:
        raise ValueError(
            f"overlap must be in [0, chunk_size), got overlap={overlap}, chunk_size={chunk_size}"
        )


def chunk_text(text: str, chunk_size: int = 1000, overlap: int = 200) -> list[TextChunk]:
    """
    Split text into overlapping windows.

    Args:
        text: Normalized text
        chunk_size: Window width in characters
        overlap: Characters each window shares with the previous one

    Returns:
        Chunks with contiguous 0-based indices. Empty text yields no chunks;
        text shorter than one window yields exactly one.
    """
    validate_chunk_params(chunk_size, overlap)

    if not text:
        return []

    step = chunk_size - overlap
    chunks = []
    start = 0
    while True:
        end = min(start + chunk_size, len(text))
        content = text[start:end]
        chunks.append(TextChunk(
            chunk_index=len(chunks),
            content=content,
            token_count=estimate_token_count(content),
        ))
        if end >= len(text):
            break
        start += step

    return chunks


def reconstruct_text(chunks: list[TextChunk], chunk_size: int = 1000, overlap: int = 200) -> str:
    """Rejoin chunks produced with the same parameters, dropping overlaps."""
    if not chunks:
        return ""
    step = chunk_size - overlap
    ordered = sorted(chunks, key=lambda c: c.chunk_index)
    parts = [c.content[:step] for c in ordered[:-1]]
    parts.append(ordered[-1].content)
    return "".join(parts)


class EvidenceChunker:
    """
    Chunker bound to a ChunkConfig.

    Usage:
        chunker = EvidenceChunker(ChunkConfig(chunk_size=1000, overlap=200))
        chunks = chunker.chunk(text)
    """

    def __init__(self, config: Optional[ChunkConfig] = None):
        self.config = config or ChunkConfig()

    def chunk(self, text: str) -> list[TextChunk]:
        chunks = chunk_text(text, self.config.chunk_size, self.config.overlap)
        logger.debug(f"Split {len(text)} chars into {len(chunks)} chunks")
        return chunks

    def reconstruct(self, chunks: list[TextChunk]) -> str:
        return reconstruct_text(chunks, self.config.chunk_size, self.config.overlap)

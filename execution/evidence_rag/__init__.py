"""
Evidence RAG - Grounded question answering over a private case workspace

This package provides:
- Offline text extraction from PDF and image evidence (PyMuPDF, Surya OCR)
- Deterministic overlapping chunking
- Batched OpenAI embeddings stored in PostgreSQL + pgvector
- Owner- and case-scoped vector search
- A heuristic guard that refuses legal-advice questions
- A grounded answer synthesizer with a fixed limitation notice
- A fire-and-forget compliance audit sink
"""

__version__ = "0.1.0"

from .errors import (
    EvidenceRAGError,
    InputValidationError,
    EmptyInput,
    FileTooLarge,
    UnsupportedType,
    ExtractionFailed,
    NoTextExtracted,
    DependencyFailure,
    CaseNotFound,
)
from .text_extraction import extract_text
from .chunker import EvidenceChunker, chunk_text
from .embeddings import EmbeddingService
from .vector_store import VectorStore
from .legal_safety import is_advice_like, build_refusal_answer
from .rag import CaseQueryEngine
from .audit import ComplianceAuditSink
from .ingestion import IngestionWorker

__all__ = [
    "EvidenceRAGError",
    "InputValidationError",
    "EmptyInput",
    "FileTooLarge",
    "UnsupportedType",
    "ExtractionFailed",
    "NoTextExtracted",
    "DependencyFailure",
    "CaseNotFound",
    "extract_text",
    "EvidenceChunker",
    "chunk_text",
    "EmbeddingService",
    "VectorStore",
    "is_advice_like",
    "build_refusal_answer",
    "CaseQueryEngine",
    "ComplianceAuditSink",
    "IngestionWorker",
]

"""
Error taxonomy for the Evidence RAG pipeline.

Validation errors surface immediately to the caller. Extraction errors are
raised at ingestion time and absorbed into the evidence row's status. Any
failure of an external collaborator (embedding provider, database,
generation provider) is wrapped in DependencyFailure so callers can tell it
apart from the two valid empty outcomes (refusal, no evidence).
"""


class EvidenceRAGError(Exception):
    """Base class for all pipeline errors."""


class InputValidationError(EvidenceRAGError):
    """Caller supplied an invalid question, file, or parameter."""


class EmptyInput(InputValidationError):
    """Input buffer or text was empty."""


class FileTooLarge(InputValidationError):
    """Evidence file exceeds the configured maximum size."""


class UnsupportedType(EvidenceRAGError):
    """File type is neither a PDF nor a supported image."""


class ExtractionFailed(EvidenceRAGError):
    """PDF parser or OCR engine raised while reading the file."""


class NoTextExtracted(EvidenceRAGError):
    """Parsing succeeded but produced no text (e.g. a blank scan)."""


class DependencyFailure(EvidenceRAGError):
    """An external service call failed after retries or timed out."""


class CaseNotFound(EvidenceRAGError):
    """Case does not exist or is not owned by the requesting user."""

"""
Text Extraction for Evidence Files

Converts uploaded evidence (PDFs and images) into normalized plain text,
entirely offline. PDFs are read with PyMuPDF; images go through a single
shared Surya OCR worker that is created lazily on first use.

The OCR worker is the only shared mutable state in the pipeline. Creation is
single-flight: callers racing before the worker exists all wait on the same
Future instead of each loading the models.
"""

import io
import os
import re
import logging
import threading
from typing import Optional
from dataclasses import dataclass, field
from concurrent.futures import Future

from .errors import EmptyInput, UnsupportedType, ExtractionFailed, NoTextExtracted

logger = logging.getLogger(__name__)

PDF_MIME_TYPE = "application/pdf"
PDF_EXTENSIONS = {".pdf"}
IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg", ".tiff", ".tif", ".bmp", ".webp"}

SUPPORTED_TYPES_DESCRIPTION = "PDF, PNG, JPG, JPEG, TIFF, BMP, WEBP"

_HORIZONTAL_WS = re.compile(r"[ \t]+")
_EXCESS_NEWLINES = re.compile(r"\n{3,}")


@dataclass
class ExtractionConfig:
    """Configuration for text extraction."""
    max_pages: int = 500  # PDF pages read before the rest is ignored
    ocr_languages: list[str] = field(default_factory=lambda: ["en"])

    @classmethod
    def from_env(cls) -> "ExtractionConfig":
        languages = os.getenv("OCR_LANGUAGES", "en")
        return cls(
            max_pages=int(os.getenv("PDF_MAX_PAGES", "500")),
            ocr_languages=[lang.strip() for lang in languages.split(",") if lang.strip()],
        )


# =============================================================================
# Type detection and normalization
# =============================================================================

def detect_file_type(mime_type: Optional[str] = None, filename: Optional[str] = None) -> Optional[str]:
    """
    Resolve the extraction branch for a file.

    The MIME type wins when it is recognized; otherwise the filename
    extension is used.

    Returns:
        "pdf", "image", or None when the type is not supported
    """
    if mime_type:
        mime = mime_type.lower().split(";")[0].strip()
        if mime == PDF_MIME_TYPE:
            return "pdf"
        if mime.startswith("image/"):
            return "image"

    if filename:
        ext = os.path.splitext(filename.lower())[1]
        if ext in PDF_EXTENSIONS:
            return "pdf"
        if ext in IMAGE_EXTENSIONS:
            return "image"

    return None


def normalize_whitespace(text: str) -> str:
    """Collapse runs of spaces/tabs, cap blank lines at one, and trim."""
    text = _HORIZONTAL_WS.sub(" ", text)
    text = _EXCESS_NEWLINES.sub("\n\n", text)
    return text.strip()


# =============================================================================
# Shared OCR worker
# =============================================================================

class OCRWorker:
    """
    Surya OCR wrapper that recognizes one image at a time.

    Model loading is expensive (several hundred MB), so one instance is shared
    process-wide via get_ocr_worker(). Recognition calls are serialized with
    a lock.
    """

    def __init__(self, languages: Optional[list[str]] = None):
        from surya.foundation import FoundationPredictor
        from surya.recognition import RecognitionPredictor
        from surya.detection import DetectionPredictor

        logger.info("Loading Surya OCR models (first time, may take a moment)...")
        self.languages = languages or ["en"]
        self._foundation = FoundationPredictor()
        self._det_predictor = DetectionPredictor()
        self._rec_predictor = RecognitionPredictor(self._foundation)
        self._lock = threading.Lock()
        logger.info("Surya OCR worker ready")

    def recognize(self, image) -> str:
        """Run OCR on a single PIL image and return its text lines joined by newlines."""
        from surya.common.surya.schema import TaskNames

        with self._lock:
            predictions = self._rec_predictor(
                images=[image],
                task_names=[TaskNames.ocr_with_boxes],
                det_predictor=self._det_predictor,
            )

        lines = []
        for prediction in predictions:
            for line in prediction.text_lines:
                line_text = line.text.strip()
                if line_text:
                    lines.append(line_text)
        return "\n".join(lines)


_worker: Optional[OCRWorker] = None
_worker_future: Optional[Future] = None
_worker_lock = threading.Lock()


def get_ocr_worker(languages: Optional[list[str]] = None) -> OCRWorker:
    """
    Return the shared OCR worker, creating it on first use.

    Only the first caller constructs the worker; concurrent callers block on
    the same Future and receive the same instance (or the same exception).
    A failed initialization is not cached, so a later call retries.
    """
    global _worker, _worker_future

    with _worker_lock:
        if _worker is not None:
            return _worker
        future = _worker_future
        is_owner = future is None
        if is_owner:
            future = Future()
            _worker_future = future

    if not is_owner:
        return future.result()

    try:
        worker = OCRWorker(languages)
    except Exception as e:
        logger.error(f"OCR worker initialization failed: {e}")
        with _worker_lock:
            _worker_future = None
        future.set_exception(e)
        raise

    with _worker_lock:
        _worker = worker
        _worker_future = None
    future.set_result(worker)
    return worker


def shutdown_ocr_worker() -> None:
    """Release the shared OCR worker. The next image extraction re-creates it."""
    global _worker
    with _worker_lock:
        if _worker is not None:
            logger.info("Shutting down OCR worker")
        _worker = None


# =============================================================================
# Extraction
# =============================================================================

def _extract_pdf(buffer: bytes, max_pages: int) -> str:
    import fitz  # PyMuPDF

    try:
        with fitz.open(stream=buffer, filetype="pdf") as doc:
            total_pages = len(doc)
            page_count = min(total_pages, max_pages)
            if total_pages > max_pages:
                logger.warning(
                    f"PDF has {total_pages} pages; only the first {max_pages} will be read"
                )
            pages = [doc[page_num].get_text() for page_num in range(page_count)]
    except Exception as e:
        raise ExtractionFailed(f"PDF parsing failed: {e}") from e

    return "\n".join(pages)


def _extract_image(buffer: bytes, languages: list[str]) -> str:
    from PIL import Image

    try:
        image = Image.open(io.BytesIO(buffer)).convert("RGB")
    except Exception as e:
        raise ExtractionFailed(f"Could not decode image: {e}") from e

    try:
        worker = get_ocr_worker(languages)
        return worker.recognize(image)
    except Exception as e:
        raise ExtractionFailed(f"OCR failed: {e}") from e


def extract_text(
    buffer: bytes,
    mime_type: Optional[str] = None,
    filename: Optional[str] = None,
    config: Optional[ExtractionConfig] = None,
) -> str:
    """
    Extract normalized text from an evidence file.

    Args:
        buffer: Raw file bytes
        mime_type: Optional MIME type (takes precedence over filename)
        filename: Optional original filename, used for extension fallback
        config: Optional extraction limits

    Returns:
        Normalized, non-empty text

    Raises:
        EmptyInput: buffer is empty
        UnsupportedType: neither a PDF nor a supported image
        ExtractionFailed: the parser or OCR engine raised
        NoTextExtracted: parsing succeeded but yielded no text
    """
    config = config or ExtractionConfig()

    if not buffer:
        raise EmptyInput("Input buffer is empty")

    file_type = detect_file_type(mime_type, filename)
    if file_type is None:
        raise UnsupportedType(
            f"Unsupported file type (mime_type={mime_type!r}, filename={filename!r}). "
            f"Supported types: {SUPPORTED_TYPES_DESCRIPTION}"
        )

    if file_type == "pdf":
        raw_text = _extract_pdf(buffer, config.max_pages)
    else:
        raw_text = _extract_image(buffer, config.ocr_languages)

    text = normalize_whitespace(raw_text)
    if not text:
        raise NoTextExtracted(f"No text could be extracted from {filename or file_type}")

    logger.info(f"Extracted {len(text)} chars from {file_type} ({len(buffer)} bytes)")
    return text


# CLI for testing
if __name__ == "__main__":
    import sys
    import mimetypes

    logging.basicConfig(level=logging.INFO)

    if len(sys.argv) < 2:
        print("Usage: python -m execution.evidence_rag.text_extraction <file>")
        sys.exit(1)

    path = sys.argv[1]
    with open(path, "rb") as f:
        data = f.read()

    guessed_mime, _ = mimetypes.guess_type(path)
    extracted = extract_text(data, mime_type=guessed_mime, filename=os.path.basename(path))
    print(f"Extracted {len(extracted)} chars")
    print(extracted[:2000])
    shutdown_ocr_worker()

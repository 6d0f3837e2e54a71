"""
Evidence Ingestion Worker

Turns uploaded evidence into searchable chunks:

    claim (PENDING|FAILED -> PROCESSING) -> read bytes -> extract text
        -> chunk -> embed (sequential batches) -> replace chunks + embeddings
        and mark READY in one transaction

Any failure marks the evidence FAILED with a truncated error message and
leaves previously stored chunks untouched. Nothing is raised to the caller.
Independent documents can be processed concurrently; batches within one
document never are.

Usage:
    python -m execution.evidence_rag.ingestion            # poll forever
    python -m execution.evidence_rag.ingestion --once     # one pass
    python -m execution.evidence_rag.ingestion --evidence-id <uuid>
"""

import os
import time
import logging
import threading
from pathlib import Path
from typing import Optional
from dataclasses import dataclass
from concurrent.futures import ThreadPoolExecutor

from .errors import FileTooLarge, NoTextExtracted
from .text_extraction import extract_text, ExtractionConfig
from .chunker import EvidenceChunker, ChunkConfig
from .vector_store import ProcessingStatus
from .audit import ComplianceAuditSink, AuditActions, EntityTypes
from .metrics import get_metrics_collector

logger = logging.getLogger(__name__)

SKIPPED = "SKIPPED"


def _actor_id(row: dict) -> Optional[str]:
    return str(row["user_id"]) if row.get("user_id") else None


@dataclass
class IngestionConfig:
    """Configuration for the ingestion worker."""
    storage_dir: str = "evidence_files"
    max_file_size_mb: int = 50
    poll_interval_seconds: float = 3.0
    batch_size: int = 5  # evidence rows claimed per poll
    max_workers: int = 2  # documents processed in parallel
    max_error_length: int = 500

    @property
    def max_file_size_bytes(self) -> int:
        return self.max_file_size_mb * 1024 * 1024

    @classmethod
    def from_env(cls) -> "IngestionConfig":
        return cls(
            storage_dir=os.getenv("EVIDENCE_STORAGE_DIR", "evidence_files"),
            max_file_size_mb=int(os.getenv("MAX_FILE_SIZE_MB", "50")),
            poll_interval_seconds=float(os.getenv("INGESTION_POLL_SECONDS", "3")),
            batch_size=int(os.getenv("INGESTION_BATCH_SIZE", "5")),
            max_workers=int(os.getenv("INGESTION_MAX_WORKERS", "2")),
        )


@dataclass
class IngestionResult:
    evidence_id: str
    status: str
    chunk_count: int = 0
    total_tokens: int = 0
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "evidence_id": self.evidence_id,
            "status": self.status,
            "chunk_count": self.chunk_count,
            "total_tokens": self.total_tokens,
            "error": self.error,
        }


class FileSystemEvidenceStorage:
    """Reads evidence bytes from a local directory keyed by storage path."""

    def __init__(self, root: str):
        self.root = Path(root).resolve()

    def read(self, storage_path: str) -> bytes:
        path = (self.root / storage_path).resolve()
        if self.root not in path.parents:
            raise ValueError(f"Storage path escapes storage root: {storage_path}")
        return path.read_bytes()


class IngestionWorker:
    """
    Processes evidence rows end to end.

    Usage:
        worker = IngestionWorker(store, embeddings, FileSystemEvidenceStorage("evidence_files"))
        result = worker.process_evidence(evidence_id)
    """

    def __init__(
        self,
        store,
        embeddings,
        storage,
        chunker: Optional[EvidenceChunker] = None,
        config: Optional[IngestionConfig] = None,
        extraction_config: Optional[ExtractionConfig] = None,
        audit=None,
        metrics=None,
    ):
        self.store = store
        self.embeddings = embeddings
        self.storage = storage
        self.chunker = chunker or EvidenceChunker()
        self.config = config or IngestionConfig()
        self.extraction_config = extraction_config or ExtractionConfig()
        self.audit = audit or ComplianceAuditSink(store)
        self.metrics = metrics or get_metrics_collector()

    def process_evidence(self, evidence_id: str) -> IngestionResult:
        """
        Ingest one evidence document.

        Returns SKIPPED if the row could not be claimed. A claim that errors
        leaves the row untouched for the next poll.
        """
        start_time = time.time()

        try:
            row = self.store.claim_evidence(evidence_id)
        except Exception as e:
            message = f"{type(e).__name__}: {e}"[:self.config.max_error_length]
            logger.error(f"Could not claim evidence {evidence_id}: {message}")
            return IngestionResult(evidence_id=evidence_id, status=SKIPPED, error=message)
        if row is None:
            logger.info(f"Evidence {evidence_id} not claimable, skipping")
            return IngestionResult(evidence_id=evidence_id, status=SKIPPED)

        logger.info(f"Processing evidence {evidence_id} ({row.get('original_filename')})")
        try:
            data = self.storage.read(row["storage_path"])
            if len(data) > self.config.max_file_size_bytes:
                raise FileTooLarge(
                    f"File is {len(data)} bytes; limit is {self.config.max_file_size_mb} MB"
                )

            text = extract_text(
                data,
                mime_type=row.get("mime_type"),
                filename=row.get("original_filename"),
                config=self.extraction_config,
            )
            chunks = self.chunker.chunk(text)
            if not chunks:
                raise NoTextExtracted("Text produced no chunks")

            batch = self.embeddings.embed_many([c.content for c in chunks])
            self.store.replace_evidence_chunks(evidence_id, chunks, batch.embeddings)
        except Exception as e:
            return self._fail(evidence_id, row, e)

        duration_ms = (time.time() - start_time) * 1000
        self.metrics.record_ingestion(evidence_id, len(chunks), duration_ms)
        self.audit.record(
            _actor_id(row),
            AuditActions.EVIDENCE_PROCESSED,
            EntityTypes.EVIDENCE,
            evidence_id,
            {
                "case_id": str(row.get("case_id")),
                "chunk_count": len(chunks),
                "total_tokens": batch.total_tokens,
                "text_length": len(text),
            },
        )
        logger.info(
            f"Evidence {evidence_id} READY: {len(chunks)} chunks, "
            f"{batch.total_tokens} tokens in {duration_ms:.0f}ms"
        )
        return IngestionResult(
            evidence_id=evidence_id,
            status=ProcessingStatus.READY,
            chunk_count=len(chunks),
            total_tokens=batch.total_tokens,
        )

    def _fail(self, evidence_id: str, row: dict, error: Exception) -> IngestionResult:
        message = f"{type(error).__name__}: {error}"[:self.config.max_error_length]
        logger.error(f"Evidence {evidence_id} failed: {message}")

        try:
            self.store.mark_evidence_failed(evidence_id, message)
        except Exception as e:
            logger.error(f"Could not mark evidence {evidence_id} as FAILED: {e}")

        self.metrics.record_ingestion_failure(evidence_id, type(error).__name__)
        self.audit.record(
            _actor_id(row),
            AuditActions.EVIDENCE_PROCESSING_FAILED,
            EntityTypes.EVIDENCE,
            evidence_id,
            {"case_id": str(row.get("case_id")), "error": message},
        )
        return IngestionResult(evidence_id=evidence_id, status=ProcessingStatus.FAILED, error=message)

    def process_many(self, evidence_ids: list[str]) -> list[IngestionResult]:
        """Process independent documents concurrently; results keep input order."""
        if not evidence_ids:
            return []
        with ThreadPoolExecutor(max_workers=max(1, self.config.max_workers)) as executor:
            return list(executor.map(self.process_evidence, evidence_ids))

    def run_pending(self) -> list[IngestionResult]:
        """Process one batch of PENDING evidence."""
        evidence_ids = self.store.list_pending_evidence(limit=self.config.batch_size)
        if evidence_ids:
            logger.info(f"Found {len(evidence_ids)} pending evidence documents")
        return self.process_many(evidence_ids)

    def run_forever(self, stop_event: Optional[threading.Event] = None) -> None:
        """Poll for pending evidence until stop_event is set."""
        stop_event = stop_event or threading.Event()
        logger.info(f"Ingestion worker started (poll every {self.config.poll_interval_seconds}s)")
        while not stop_event.is_set():
            try:
                results = self.run_pending()
            except Exception as e:
                logger.error(f"Ingestion poll failed: {e}")
                results = []
            if not results:
                stop_event.wait(self.config.poll_interval_seconds)
        logger.info("Ingestion worker stopped")


def main():
    import argparse
    from dotenv import load_dotenv
    from .vector_store import VectorStore
    from .embeddings import get_embedding_service
    from .text_extraction import shutdown_ocr_worker

    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")

    parser = argparse.ArgumentParser(description="Evidence ingestion worker")
    parser.add_argument("--once", action="store_true", help="Process one batch and exit")
    parser.add_argument("--evidence-id", help="Process a single evidence document and exit")
    args = parser.parse_args()

    config = IngestionConfig.from_env()
    store = VectorStore()
    store.connect()
    store.initialize_schema()

    worker = IngestionWorker(
        store=store,
        embeddings=get_embedding_service(),
        storage=FileSystemEvidenceStorage(config.storage_dir),
        chunker=EvidenceChunker(ChunkConfig.from_env()),
        config=config,
        extraction_config=ExtractionConfig.from_env(),
    )

    try:
        if args.evidence_id:
            print(worker.process_evidence(args.evidence_id).to_dict())
        elif args.once:
            for result in worker.run_pending():
                print(result.to_dict())
        else:
            worker.run_forever()
    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        shutdown_ocr_worker()
        store.close()


if __name__ == "__main__":
    main()

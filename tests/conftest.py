"""
Shared fixtures and test utilities for Evidence RAG tests.

Provides fake OpenAI clients, an in-memory vector store that applies the same
(owner, case, READY) filter as the SQL, and singleton resets, so that all
tests run without API keys, databases, OCR models, or network access.
"""

import os
import sys
import math
import uuid
import hashlib
from pathlib import Path
from types import SimpleNamespace

import pytest
from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Path setup - ensure the execution package is importable
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

load_dotenv(PROJECT_ROOT / ".env")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")

TEST_DIMENSIONS = 8

USER_A = "11111111-1111-1111-1111-111111111111"
USER_B = "22222222-2222-2222-2222-222222222222"
CASE_X = "aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa"
CASE_Y = "bbbbbbbb-bbbb-bbbb-bbbb-bbbbbbbbbbbb"

SAMPLE_EVIDENCE_TEXT = """Incident report filed on July 15th.

On July 14th at approximately 6:30pm the ceiling in the kitchen collapsed after
water had been leaking from the upstairs flat for three weeks. The tenant had
reported the leak to the landlord by email on June 20th and again on July 2nd.

Photographs were taken of the damage the same evening. A plumber attended on
July 16th and confirmed that the source of the leak was a cracked pipe."""


def deterministic_vector(text: str, dimensions: int = TEST_DIMENSIONS) -> list[float]:
    h = hashlib.sha256(text.encode()).hexdigest()
    seed = int(h[:8], 16)
    return [((seed + i * 7919) % 1000) / 1000.0 + 0.001 for i in range(dimensions)]


def cosine_distance(a: list[float], b: list[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    if norm == 0:
        return 1.0
    return 1.0 - dot / norm


# ---------------------------------------------------------------------------
# Fake OpenAI clients
# ---------------------------------------------------------------------------

class FakeEmbeddingsAPI:
    """Mimics client.embeddings.create; returns items in reverse index order."""

    def __init__(self, fail_on_call=None, reverse=True):
        self.calls = []
        self.fail_on_call = fail_on_call  # 1-based call number that raises
        self.reverse = reverse

    def create(self, model, input, dimensions):
        self.calls.append({"model": model, "input": input, "dimensions": dimensions})
        if self.fail_on_call is not None and len(self.calls) == self.fail_on_call:
            raise RuntimeError("provider unavailable")

        texts = [input] if isinstance(input, str) else list(input)
        data = [
            SimpleNamespace(index=i, embedding=deterministic_vector(t, dimensions))
            for i, t in enumerate(texts)
        ]
        if self.reverse:
            data = list(reversed(data))
        tokens = sum(math.ceil(len(t) / 4) for t in texts)
        return SimpleNamespace(data=data, usage=SimpleNamespace(total_tokens=tokens))


class FakeEmbeddingClient:
    def __init__(self, **kwargs):
        self.embeddings = FakeEmbeddingsAPI(**kwargs)


class FixedSizeEmbeddingClient:
    """Returns vectors of one fixed length whatever dimensions are requested."""

    def __init__(self, size=4):
        self.embeddings = self
        self.size = size

    def create(self, model, input, dimensions):
        texts = [input] if isinstance(input, str) else list(input)
        data = [SimpleNamespace(index=i, embedding=[0.5] * self.size) for i in range(len(texts))]
        return SimpleNamespace(data=data, usage=SimpleNamespace(total_tokens=len(texts)))


class FakeChatCompletions:
    def __init__(self, reply="The ceiling collapsed on July 14th (Evidence snippet 1).", error=None):
        self.reply = reply
        self.error = error
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        message = SimpleNamespace(content=self.reply)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


class FakeChatClient:
    def __init__(self, **kwargs):
        self.chat = SimpleNamespace(completions=FakeChatCompletions(**kwargs))


@pytest.fixture
def fake_embedding_client():
    return FakeEmbeddingClient()


@pytest.fixture
def fake_chat_client():
    return FakeChatClient()


# ---------------------------------------------------------------------------
# Mock services used by the orchestrator and worker
# ---------------------------------------------------------------------------

class MockEmbeddingService:
    """Deterministic mock embedding service -- never calls external APIs."""

    def __init__(self, dimensions=TEST_DIMENSIONS, error=None):
        self._dimensions = dimensions
        self.error = error
        self.embed_one_calls = 0
        self.embed_many_calls = 0

    def embed_one(self, text):
        from execution.evidence_rag.embeddings import EmbeddingResult
        self.embed_one_calls += 1
        if self.error is not None:
            raise self.error
        return EmbeddingResult(embedding=deterministic_vector(text, self._dimensions), tokens=5)

    def embed_many(self, texts, batch_size=None):
        from execution.evidence_rag.embeddings import BatchEmbeddingResult
        self.embed_many_calls += 1
        if self.error is not None:
            raise self.error
        return BatchEmbeddingResult(
            embeddings=[deterministic_vector(t, self._dimensions) for t in texts],
            total_tokens=sum(math.ceil(len(t) / 4) for t in texts),
        )

    @property
    def call_count(self):
        return self.embed_one_calls + self.embed_many_calls

    @property
    def dimensions(self):
        return self._dimensions


class MockAnswerGenerator:
    def __init__(self, reply="The ceiling collapsed on July 14th (Evidence snippet 1).", error=None):
        self.reply = reply
        self.error = error
        self.calls = []

    def generate(self, question, context):
        self.calls.append({"question": question, "context": context})
        if self.error is not None:
            raise self.error
        return self.reply


class MockVectorStore:
    """In-memory stand-in for VectorStore with the same ownership semantics."""

    def __init__(self):
        self.cases = {}
        self.evidence = {}
        self.chunks = []  # dicts: evidence_id, chunk_index, content, embedding, distance
        self.ai_queries = []
        self.audit_events = []
        self.search_calls = []
        self.search_error = None
        self.fail_audit = False
        self.fail_query_log = False

    # Seeding helpers
    def add_case(self, case_id, user_id):
        self.cases[case_id] = {"id": case_id, "user_id": user_id}

    def add_evidence(self, case_id, user_id, status="READY", evidence_id=None,
                     storage_path="doc.pdf", mime_type="application/pdf",
                     original_filename="doc.pdf"):
        evidence_id = evidence_id or str(uuid.uuid4())
        self.evidence[evidence_id] = {
            "id": evidence_id,
            "case_id": case_id,
            "user_id": user_id,
            "storage_path": storage_path,
            "mime_type": mime_type,
            "original_filename": original_filename,
            "processing_status": status,
            "last_error": None,
        }
        return evidence_id

    def add_chunk(self, evidence_id, content, distance=None, embedding=None):
        index = len([c for c in self.chunks if c["evidence_id"] == evidence_id])
        self.chunks.append({
            "evidence_id": evidence_id,
            "chunk_index": index,
            "content": content,
            "embedding": embedding,
            "distance": distance,
        })

    def chunks_for(self, evidence_id):
        return [c for c in self.chunks if c["evidence_id"] == evidence_id]

    # VectorStore interface
    def connect(self):
        pass

    def initialize_schema(self):
        pass

    def ping(self):
        return True

    def close(self):
        pass

    def case_belongs_to_user(self, case_id, user_id):
        case = self.cases.get(case_id)
        return case is not None and case["user_id"] == user_id

    def search(self, owner_id, case_id, query_embedding, limit=5):
        from execution.evidence_rag.vector_store import SearchResult
        self.search_calls.append((owner_id, case_id, limit))
        if self.search_error is not None:
            raise self.search_error

        hits = []
        for chunk in self.chunks:
            ev = self.evidence[chunk["evidence_id"]]
            case = self.cases.get(ev["case_id"])
            if not (
                ev["user_id"] == owner_id
                and ev["case_id"] == case_id
                and case is not None
                and case["user_id"] == owner_id
                and ev["processing_status"] == "READY"
            ):
                continue
            distance = chunk["distance"]
            if distance is None:
                distance = cosine_distance(query_embedding, chunk["embedding"])
            hits.append(SearchResult(
                evidence_id=ev["id"], chunk_content=chunk["content"], distance=distance,
            ))
        hits.sort(key=lambda r: r.distance)
        return hits[:limit]

    def get_evidence(self, evidence_id):
        return self.evidence.get(evidence_id)

    def list_pending_evidence(self, limit=5):
        return [e["id"] for e in self.evidence.values() if e["processing_status"] == "PENDING"][:limit]

    def claim_evidence(self, evidence_id):
        ev = self.evidence.get(evidence_id)
        if ev is None or ev["processing_status"] not in ("PENDING", "FAILED"):
            return None
        ev["processing_status"] = "PROCESSING"
        ev["last_error"] = None
        return dict(ev)

    def mark_evidence_failed(self, evidence_id, error):
        ev = self.evidence[evidence_id]
        ev["processing_status"] = "FAILED"
        ev["last_error"] = error[:500]

    def replace_evidence_chunks(self, evidence_id, chunks, embeddings):
        if len(chunks) != len(embeddings):
            raise ValueError("Mismatch")
        self.chunks = [c for c in self.chunks if c["evidence_id"] != evidence_id]
        for chunk, embedding in zip(chunks, embeddings):
            self.chunks.append({
                "evidence_id": evidence_id,
                "chunk_index": chunk.chunk_index,
                "content": chunk.content,
                "embedding": embedding,
                "distance": None,
            })
        self.evidence[evidence_id]["processing_status"] = "READY"

    def insert_ai_query(self, user_id, case_id, question, answer_summary):
        if self.fail_query_log:
            raise RuntimeError("query log unavailable")
        query_id = str(uuid.uuid4())
        self.ai_queries.append({
            "id": query_id, "user_id": user_id, "case_id": case_id,
            "question": question, "answer_summary": answer_summary,
        })
        return query_id

    def insert_audit_event(self, user_id, action, entity_type=None, entity_id=None, metadata=None):
        if self.fail_audit:
            raise RuntimeError("audit log unavailable")
        self.audit_events.append({
            "user_id": user_id, "action": action, "entity_type": entity_type,
            "entity_id": entity_id, "metadata": metadata or {},
        })


@pytest.fixture
def mock_embedding_service():
    return MockEmbeddingService()


@pytest.fixture
def mock_generator():
    return MockAnswerGenerator()


@pytest.fixture
def mock_vector_store():
    store = MockVectorStore()
    store.add_case(CASE_X, USER_A)
    store.add_case(CASE_Y, USER_B)
    return store


@pytest.fixture
def query_engine(mock_vector_store, mock_embedding_service, mock_generator):
    from execution.evidence_rag.rag import CaseQueryEngine
    return CaseQueryEngine(
        store=mock_vector_store,
        embeddings=mock_embedding_service,
        generator=mock_generator,
    )


@pytest.fixture
def sample_evidence_text():
    return SAMPLE_EVIDENCE_TEXT


# ---------------------------------------------------------------------------
# Singleton resets between tests
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def reset_metrics_singleton():
    """Reset the MetricsCollector singleton between tests."""
    import execution.evidence_rag.metrics as metrics_mod
    metrics_mod.MetricsCollector._instance = None
    metrics_mod._collector = None
    yield
    metrics_mod.MetricsCollector._instance = None
    metrics_mod._collector = None


@pytest.fixture(autouse=True)
def reset_ocr_worker():
    """Drop any shared OCR worker created during a test."""
    import execution.evidence_rag.text_extraction as extraction_mod
    extraction_mod._worker = None
    extraction_mod._worker_future = None
    yield
    extraction_mod._worker = None
    extraction_mod._worker_future = None

"""
Case Query Engine (Answer Synthesizer)

Answers a user's question using only the evidence in one of their cases:

    VALIDATE -> GUARD_CHECK -> REFUSE
                            -> EMBED_QUESTION -> VECTOR_SEARCH -> NO_EVIDENCE
                                                               -> BUILD_CONTEXT -> GENERATE

Every path returns the same limitation notice and records exactly one Query
row via the audit sink. A refusal and an empty search are valid outcomes,
not errors. Embedding, search, and generation failures raise
DependencyFailure.
"""

import logging
from enum import Enum
from typing import Optional
from dataclasses import dataclass, field

from .errors import InputValidationError, CaseNotFound, DependencyFailure
from .legal_safety import (
    LIMITATION_NOTICE,
    INSUFFICIENT_EVIDENCE_ANSWER,
    build_refusal_answer,
    find_advice_pattern,
)
from .audit import ComplianceAuditSink, AuditActions, EntityTypes
from .metrics import get_metrics_collector

logger = logging.getLogger(__name__)

DEFAULT_MAX_SOURCES = 5
SNIPPET_MAX_CHARS = 400
REFUSAL_SUMMARY_CHARS = 400
ANSWER_SUMMARY_CHARS = 350


class QueryOutcome(str, Enum):
    REFUSED = "REFUSED"
    NO_EVIDENCE = "NO_EVIDENCE"
    ANSWERED = "ANSWERED"


@dataclass
class RagSource:
    """Provenance shown to the user: evidence id plus a truncated snippet."""
    evidence_id: str
    snippet: str

    def to_dict(self) -> dict:
        return {"evidence_id": self.evidence_id, "snippet": self.snippet}


@dataclass
class RagAnswer:
    answer_text: str
    outcome: QueryOutcome
    sources: list[RagSource] = field(default_factory=list)
    limitation_notice: str = LIMITATION_NOTICE

    def to_dict(self) -> dict:
        return {
            "answer_text": self.answer_text,
            "sources": [s.to_dict() for s in self.sources],
            "limitation_notice": self.limitation_notice,
        }


def make_snippet(content: str, max_chars: int = SNIPPET_MAX_CHARS) -> str:
    """Truncate chunk content for display; the result never exceeds max_chars."""
    content = content.strip()
    if len(content) <= max_chars:
        return content
    return content[:max_chars - 3].rstrip() + "..."


def summarize_answer(answer_text: str, max_chars: int = ANSWER_SUMMARY_CHARS) -> str:
    if len(answer_text) <= max_chars:
        return answer_text
    return answer_text[:max_chars] + "..."


def build_context(results) -> str:
    """Join full chunk contents into the numbered context block sent to the model."""
    parts = [
        f"Evidence snippet {i + 1} (Evidence ID: {r.evidence_id}):\n{r.chunk_content}\n"
        for i, r in enumerate(results)
    ]
    return "\n---\n\n".join(parts)


class CaseQueryEngine:
    """
    Guarded retrieval-augmented answering over a single case.

    Args:
        store: VectorStore (or compatible) providing case_belongs_to_user and search
        embeddings: EmbeddingService providing embed_one
        generator: AnswerGenerator providing generate
        audit: Optional audit sink; defaults to one backed by ``store``
        metrics: Optional MetricsCollector; defaults to the global collector
    """

    def __init__(self, store, embeddings, generator, audit=None, metrics=None):
        self.store = store
        self.embeddings = embeddings
        self.generator = generator
        self.audit = audit or ComplianceAuditSink(store)
        self.metrics = metrics or get_metrics_collector()

    def answer(
        self,
        user_id: str,
        case_id: str,
        question: str,
        max_sources: int = DEFAULT_MAX_SOURCES,
    ) -> RagAnswer:
        """
        Answer a question from the caller's evidence in one case.

        Raises:
            InputValidationError: empty question or non-positive max_sources
            CaseNotFound: case missing or owned by someone else
            DependencyFailure: embedding, search, or generation failed
        """
        question = (question or "").strip()
        if not question:
            raise InputValidationError("Question is required")
        if max_sources < 1:
            raise InputValidationError("max_sources must be at least 1")

        if not self.store.case_belongs_to_user(case_id, user_id):
            raise CaseNotFound("Case does not exist or you do not have access to it")

        with self.metrics.track_query() as tracker:
            pattern = find_advice_pattern(question)
            if pattern is not None:
                result = self._refuse(user_id, case_id, question, pattern)
            else:
                result = self._answer_from_evidence(user_id, case_id, question, max_sources)
            tracker.set_outcome(result.outcome.value, len(result.sources))

        return result

    def _refuse(self, user_id: str, case_id: str, question: str, pattern: str) -> RagAnswer:
        logger.info(f"Refusing advice-seeking question (pattern '{pattern}'): {question[:100]}")
        refusal = build_refusal_answer()
        self.audit.record_query(
            user_id,
            case_id,
            question,
            refusal.answer_text[:REFUSAL_SUMMARY_CHARS],
            action=AuditActions.AI_QUERY_LEGAL_ADVICE_REFUSED,
            metadata={"outcome": QueryOutcome.REFUSED.value, "matched_pattern": pattern, "sources_count": 0},
        )
        return RagAnswer(
            answer_text=refusal.answer_text,
            outcome=QueryOutcome.REFUSED,
            sources=[],
            limitation_notice=refusal.limitation_notice,
        )

    def _answer_from_evidence(
        self,
        user_id: str,
        case_id: str,
        question: str,
        max_sources: int,
    ) -> RagAnswer:
        try:
            query_embedding = self.embeddings.embed_one(question).embedding
            results = self.store.search(user_id, case_id, query_embedding, limit=max_sources)

            if not results:
                logger.info(f"No READY evidence matched in case {case_id}")
                answer = RagAnswer(
                    answer_text=INSUFFICIENT_EVIDENCE_ANSWER,
                    outcome=QueryOutcome.NO_EVIDENCE,
                )
            else:
                context = build_context(results)
                answer_text = self.generator.generate(question, context)
                answer = RagAnswer(
                    answer_text=answer_text,
                    outcome=QueryOutcome.ANSWERED,
                    sources=[
                        RagSource(evidence_id=r.evidence_id, snippet=make_snippet(r.chunk_content))
                        for r in results
                    ],
                )
        except DependencyFailure as e:
            logger.error(f"Query failed for case {case_id}: {e}")
            self.audit.record(
                user_id,
                AuditActions.AI_QUERY_FAILED,
                EntityTypes.CASE,
                case_id,
                {"question_length": len(question), "error_type": type(e.__cause__ or e).__name__},
            )
            raise

        self.audit.record_query(
            user_id,
            case_id,
            question,
            summarize_answer(answer.answer_text),
            metadata={
                "outcome": answer.outcome.value,
                "sources_count": len(answer.sources),
                "answer_length": len(answer.answer_text),
            },
        )
        return answer


def get_query_engine(store, embeddings=None, generator=None) -> CaseQueryEngine:
    """Build a CaseQueryEngine with environment-configured services."""
    from .embeddings import get_embedding_service
    from .generation import get_answer_generator

    return CaseQueryEngine(
        store=store,
        embeddings=embeddings or get_embedding_service(),
        generator=generator or get_answer_generator(),
    )


# CLI for testing
if __name__ == "__main__":
    import argparse
    from dotenv import load_dotenv
    from .vector_store import VectorStore

    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")

    parser = argparse.ArgumentParser(description="Ask a question about a case's evidence")
    parser.add_argument("--user-id", required=True)
    parser.add_argument("--case-id", required=True)
    parser.add_argument("--max-sources", type=int, default=DEFAULT_MAX_SOURCES)
    parser.add_argument("question", nargs="+")
    args = parser.parse_args()

    store = VectorStore()
    store.connect()
    try:
        engine = get_query_engine(store)
        result = engine.answer(args.user_id, args.case_id, " ".join(args.question), args.max_sources)
        print(result.answer_text)
        for source in result.sources:
            print(f"- [{source.evidence_id}] {source.snippet}")
        print(f"\n{result.limitation_notice}")
    finally:
        store.close()

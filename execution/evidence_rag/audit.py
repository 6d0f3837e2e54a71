"""
Compliance Audit Sink

Records every query attempt and ingestion outcome. Writes happen
synchronously before the caller returns. Any persistence error is logged
and swallowed, so auditing can never fail or block the answer.
"""

import logging
from typing import Optional

logger = logging.getLogger(__name__)


class AuditActions:
    AI_QUERY = "AI_QUERY"
    AI_QUERY_LEGAL_ADVICE_REFUSED = "AI_QUERY_LEGAL_ADVICE_REFUSED"
    AI_QUERY_FAILED = "AI_QUERY_FAILED"
    EVIDENCE_PROCESSED = "EVIDENCE_PROCESSED"
    EVIDENCE_PROCESSING_FAILED = "EVIDENCE_PROCESSING_FAILED"


class EntityTypes:
    CASE = "CASE"
    EVIDENCE = "EVIDENCE"
    AI_QUERY = "AI_QUERY"


class ComplianceAuditSink:
    """
    Fire-and-forget recorder backed by the VectorStore's audit tables.

    Usage:
        audit = ComplianceAuditSink(store)
        audit.record_query(user_id, case_id, question, summary)
    """

    def __init__(self, store):
        self.store = store

    def record(
        self,
        actor_id: Optional[str],
        action: str,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> None:
        """Append a generic audit event. Never raises."""
        try:
            self.store.insert_audit_event(
                user_id=actor_id,
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                metadata=metadata or {},
            )
        except Exception as e:
            logger.warning(f"Audit logging failed ({action}): {e}")

    def record_query(
        self,
        actor_id: str,
        case_id: str,
        question: str,
        answer_summary: str,
        action: str = AuditActions.AI_QUERY,
        metadata: Optional[dict] = None,
    ) -> Optional[str]:
        """
        Append a Query row, then an audit event referencing it. Never raises.

        Returns:
            The Query row id, or None if it could not be written
        """
        query_id = None
        try:
            query_id = self.store.insert_ai_query(
                user_id=actor_id,
                case_id=case_id,
                question=question,
                answer_summary=answer_summary,
            )
        except Exception as e:
            logger.warning(f"Query log write failed for case {case_id}: {e}")

        event_metadata = {
            "case_id": case_id,
            "question": question[:200],
            "question_length": len(question),
            "answer_summary_length": len(answer_summary),
            "ai_query_id": query_id,
        }
        event_metadata.update(metadata or {})

        if query_id:
            self.record(actor_id, action, EntityTypes.AI_QUERY, query_id, event_metadata)
        else:
            self.record(actor_id, action, EntityTypes.CASE, case_id, event_metadata)
        return query_id

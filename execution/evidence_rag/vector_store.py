"""
Vector Store with PostgreSQL + pgvector

Persists evidence chunks and their embeddings, and answers nearest-neighbor
queries scoped to one owner and one case. The ownership filter
(owner AND case AND status = READY) is part of the search SQL itself, so no
caller-supplied case id can reach another user's evidence.

Also records the append-only query log and audit events.
"""

import os
import json
import uuid
import logging
import threading
from typing import Optional
from dataclasses import dataclass
from contextlib import contextmanager

import psycopg2
import psycopg2.extras
import psycopg2.pool
import psycopg2.extensions
from psycopg2.extras import RealDictCursor, execute_values

from .errors import DependencyFailure, InputValidationError

logger = logging.getLogger(__name__)


class ProcessingStatus:
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    READY = "READY"
    FAILED = "FAILED"


@dataclass
class VectorStoreConfig:
    """Configuration for vector store."""
    connection_string: Optional[str] = None
    embedding_dimensions: int = 1536
    statement_timeout_ms: int = 30000  # applied to vector search
    max_attempts: int = 3  # attempts on stale connections
    max_error_length: int = 500
    # Connection pooling settings
    pool_min_connections: int = 2
    pool_max_connections: int = 20
    use_pooling: bool = True  # Set to False for simple single-connection mode

    @classmethod
    def from_env(cls) -> "VectorStoreConfig":
        return cls(
            embedding_dimensions=int(os.getenv("OPENAI_EMBEDDING_DIMENSIONS", "1536")),
            statement_timeout_ms=int(float(os.getenv("SEARCH_TIMEOUT_SECONDS", "30")) * 1000),
            max_attempts=int(os.getenv("DB_MAX_RETRIES", "3")),
            pool_min_connections=int(os.getenv("DB_POOL_MIN", "2")),
            pool_max_connections=int(os.getenv("DB_POOL_MAX", "20")),
        )


@dataclass
class SearchResult:
    """A single nearest-neighbor hit."""
    evidence_id: str
    chunk_content: str
    distance: float

    def to_dict(self) -> dict:
        return {
            "evidence_id": self.evidence_id,
            "chunk_content": self.chunk_content,
            "distance": self.distance,
        }


def to_vector_literal(embedding: list[float]) -> str:
    """Format a vector as pgvector text input, e.g. '[0.1,0.2]'."""
    return "[" + ",".join(repr(float(x)) for x in embedding) + "]"


class VectorStore:
    """
    PostgreSQL evidence store with pgvector.

    Features:
    - Cosine distance search scoped to (owner, case, READY)
    - Atomic claim of evidence for ingestion (PENDING/FAILED -> PROCESSING)
    - All-or-nothing replacement of an evidence document's chunks + embeddings
    - Append-only query log and audit events
    """

    def __init__(self, config: Optional[VectorStoreConfig] = None):
        """
        Initialize vector store.

        Args:
            config: Optional configuration. Uses env vars if not provided.
        """
        self.config = config or VectorStoreConfig.from_env()
        self._conn = None
        self._pool = None
        self._pool_lock = threading.Lock()
        self._checked_out: dict[int, object] = {}  # id(conn) -> pool it came from
        self._connection_string = (
            self.config.connection_string or
            os.getenv("POSTGRES_URL") or
            os.getenv("DATABASE_URL") or
            "postgresql://localhost:5432/evidence_rag"
        )

    def connect(self) -> None:
        """
        Establish database connection (with optional pooling).

        Calling this again replaces the pool (or connection). The previous one
        is closed; connections still checked out from it are closed when
        their borrowers release them.
        """
        try:
            if self.config.use_pooling:
                pool = psycopg2.pool.ThreadedConnectionPool(
                    minconn=self.config.pool_min_connections,
                    maxconn=self.config.pool_max_connections,
                    dsn=self._connection_string,
                    cursor_factory=RealDictCursor,
                )
                conn = pool.getconn()
                try:
                    with conn.cursor() as cur:
                        cur.execute("CREATE EXTENSION IF NOT EXISTS vector")
                    conn.commit()
                finally:
                    pool.putconn(conn)

                with self._pool_lock:
                    old_pool, self._pool = self._pool, pool
                if old_pool is not None and not old_pool.closed:
                    old_pool.closeall()
                    logger.info("Previous connection pool closed")

                logger.info(
                    f"Connection pool initialized (min={self.config.pool_min_connections}, "
                    f"max={self.config.pool_max_connections})"
                )
            else:
                conn = psycopg2.connect(
                    self._connection_string,
                    cursor_factory=RealDictCursor
                )
                conn.autocommit = False

                with conn.cursor() as cur:
                    cur.execute("CREATE EXTENSION IF NOT EXISTS vector")
                    conn.commit()

                old_conn, self._conn = self._conn, conn
                if old_conn is not None and not old_conn.closed:
                    old_conn.close()

                logger.info("Connected to PostgreSQL with pgvector (single connection)")

        except psycopg2.Error as e:
            logger.error(f"Database connection failed: {e}")
            raise DependencyFailure(f"Database connection failed: {e}") from e

    def _get_connection(self):
        """Get a database connection (from pool or single connection)."""
        with self._pool_lock:
            pool = self._pool
        if pool:
            conn = pool.getconn()
            with self._pool_lock:
                self._checked_out[id(conn)] = pool
            return conn

        # For single connection mode, only reconnect if connection is closed
        if self._conn and self._conn.closed:
            logger.warning("Connection closed, reconnecting...")
            self.connect()

        return self._conn

    def _release_connection(self, conn, close: bool = False):
        """
        Return a connection to the pool it came from.

        If that pool has since been replaced and closed, the connection is
        closed instead. Never raises.
        """
        if conn is None:
            return
        with self._pool_lock:
            pool = self._checked_out.pop(id(conn), None)
        if pool is None:
            return

        try:
            if pool.closed:
                if not conn.closed:
                    conn.close()
            else:
                pool.putconn(conn, close=close)
        except (psycopg2.pool.PoolError, psycopg2.InterfaceError) as e:
            logger.warning(f"Could not release connection: {e}")

    def _ensure_connection(self):
        """Ensure we have a connection (pool or single) and return it."""
        if not self._conn and not self._pool:
            self.connect()

        try:
            return self._get_connection()
        except (psycopg2.OperationalError, psycopg2.InterfaceError, psycopg2.pool.PoolError):
            logger.warning("Database error in _ensure_connection, retrying after reconnect...")
            self.connect()
            return self._get_connection()

    @contextmanager
    def get_connection(self):
        """
        Context manager for getting a database connection.

        Automatically releases connection back to pool when done.
        """
        conn = self._ensure_connection()
        try:
            yield conn
        finally:
            self._release_connection(conn)

    def _safe_rollback(self, conn) -> None:
        """Rollback a connection, ignoring errors if the connection is dead."""
        try:
            conn.rollback()
        except (psycopg2.InterfaceError, psycopg2.OperationalError):
            pass

    def _execute_with_retry(self, operation, label="db_operation"):
        """Execute a DB operation, reconnecting on stale connections.

        Statement timeouts are not retried. Any database error that survives
        the retry budget is raised as DependencyFailure. The connection is
        released only after ``operation`` has finished, and a release problem
        never discards a committed result.

        Args:
            operation: Callable(conn) that performs the DB work and returns a result.
            label: Human-readable name for logging.

        Returns:
            Whatever ``operation`` returns.
        """
        attempts = max(1, self.config.max_attempts)
        for attempt in range(attempts):
            conn = self._ensure_connection()
            try:
                result = operation(conn)
            except psycopg2.extensions.QueryCanceledError as e:
                self._safe_rollback(conn)
                self._release_connection(conn)
                logger.error(f"{label}: statement timed out: {e}")
                raise DependencyFailure(f"{label} timed out") from e
            except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
                self._safe_rollback(conn)
                self._release_connection(conn, close=True)
                if attempt + 1 < attempts:
                    logger.warning(f"{label}: stale conn, reconnecting: {e}")
                    self.connect()
                    continue
                logger.error(f"{label} failed after {attempts} attempts: {e}")
                raise DependencyFailure(f"{label} failed: {e}") from e
            except psycopg2.Error as e:
                self._safe_rollback(conn)
                self._release_connection(conn)
                logger.error(f"{label} failed: {e}")
                raise DependencyFailure(f"{label} failed: {e}") from e
            except Exception:
                self._safe_rollback(conn)
                self._release_connection(conn)
                raise

            self._release_connection(conn)
            return result

    def close(self) -> None:
        """Close database connection(s)."""
        with self._pool_lock:
            pool, self._pool = self._pool, None
        if pool and not pool.closed:
            pool.closeall()
            logger.info("Connection pool closed")
        if self._conn:
            self._conn.close()
            self._conn = None

    def ping(self) -> bool:
        """Return True when the database answers a trivial query."""
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute("SELECT 1")
                cur.fetchone()
            conn.commit()
            return True

        return self._execute_with_retry(_op, "ping")

    # =========================================================================
    # Schema
    # =========================================================================

    def initialize_schema(self) -> None:
        """Create tables and indexes if they don't exist."""
        schema_sql = f"""
        -- Cases are managed elsewhere; only ownership is needed here
        CREATE TABLE IF NOT EXISTS cases (
            id UUID PRIMARY KEY,
            user_id UUID NOT NULL,
            title TEXT NOT NULL,
            description TEXT,
            status TEXT NOT NULL DEFAULT 'OPEN',
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        );

        CREATE TABLE IF NOT EXISTS evidence (
            id UUID PRIMARY KEY,
            case_id UUID NOT NULL REFERENCES cases(id) ON DELETE CASCADE,
            user_id UUID NOT NULL,
            media_type TEXT NOT NULL CHECK (media_type IN ('DOCUMENT', 'IMAGE')),
            storage_path TEXT NOT NULL,
            original_filename TEXT,
            mime_type TEXT,
            size_bytes BIGINT,
            processing_status TEXT NOT NULL DEFAULT 'PENDING'
                CHECK (processing_status IN ('PENDING', 'PROCESSING', 'READY', 'FAILED')),
            last_error TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        );

        CREATE TABLE IF NOT EXISTS evidence_text_chunks (
            id UUID PRIMARY KEY,
            evidence_id UUID NOT NULL REFERENCES evidence(id) ON DELETE CASCADE,
            chunk_index INT NOT NULL,
            content TEXT NOT NULL CHECK (content <> ''),
            token_count INT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            UNIQUE (evidence_id, chunk_index)
        );

        CREATE TABLE IF NOT EXISTS evidence_embeddings (
            id UUID PRIMARY KEY,
            chunk_id UUID NOT NULL UNIQUE REFERENCES evidence_text_chunks(id) ON DELETE CASCADE,
            embedding VECTOR({self.config.embedding_dimensions}) NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        );

        CREATE TABLE IF NOT EXISTS ai_queries (
            id UUID PRIMARY KEY,
            user_id UUID NOT NULL,
            case_id UUID NOT NULL,
            question TEXT NOT NULL,
            answer_summary TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        );

        CREATE TABLE IF NOT EXISTS audit_log (
            id UUID PRIMARY KEY,
            user_id UUID,
            action TEXT NOT NULL,
            entity_type TEXT,
            entity_id UUID,
            metadata JSONB DEFAULT '{{}}',
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        );

        CREATE INDEX IF NOT EXISTS idx_evidence_owner_case
            ON evidence(user_id, case_id, processing_status);
        CREATE INDEX IF NOT EXISTS idx_evidence_status
            ON evidence(processing_status, created_at);
        CREATE INDEX IF NOT EXISTS idx_chunks_evidence
            ON evidence_text_chunks(evidence_id);
        CREATE INDEX IF NOT EXISTS idx_embeddings_hnsw
            ON evidence_embeddings USING hnsw (embedding vector_cosine_ops);
        CREATE INDEX IF NOT EXISTS idx_ai_queries_case
            ON ai_queries(case_id, created_at);
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(schema_sql)
            conn.commit()
            logger.info("Schema initialized successfully")

        self._execute_with_retry(_op, "initialize_schema")

    # =========================================================================
    # Search
    # =========================================================================

    def search(
        self,
        owner_id: str,
        case_id: str,
        query_embedding: list[float],
        limit: int = 5,
    ) -> list[SearchResult]:
        """
        Nearest-neighbor search over one owner's READY evidence in one case.

        Args:
            owner_id: Requesting user's id
            case_id: Case to search
            query_embedding: Query vector
            limit: Maximum rows to return

        Returns:
            SearchResult list ordered by ascending cosine distance
        """
        if limit < 1:
            raise InputValidationError(f"limit must be at least 1, got {limit}")
        if len(query_embedding) != self.config.embedding_dimensions:
            raise InputValidationError(
                f"Query embedding has {len(query_embedding)} dimensions, "
                f"expected {self.config.embedding_dimensions}"
            )

        sql = """
        SELECT
            e.id AS evidence_id,
            ch.content AS chunk_content,
            emb.embedding <=> %s::vector AS distance
        FROM evidence_embeddings emb
        JOIN evidence_text_chunks ch ON ch.id = emb.chunk_id
        JOIN evidence e ON e.id = ch.evidence_id
        JOIN cases c ON c.id = e.case_id
        WHERE e.user_id = %s::uuid
          AND e.case_id = %s::uuid
          AND c.user_id = %s::uuid
          AND e.processing_status = 'READY'
        ORDER BY distance ASC
        LIMIT %s
        """
        params = (to_vector_literal(query_embedding), owner_id, case_id, owner_id, limit)

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute("SET LOCAL statement_timeout = %s", (self.config.statement_timeout_ms,))
                cur.execute(sql, params)
                rows = cur.fetchall()
            conn.commit()

            return [
                SearchResult(
                    evidence_id=str(row["evidence_id"]),
                    chunk_content=row["chunk_content"],
                    distance=float(row["distance"]),
                )
                for row in rows
            ]

        return self._execute_with_retry(_op, "search")

    # =========================================================================
    # Cases and evidence
    # =========================================================================

    def case_belongs_to_user(self, case_id: str, user_id: str) -> bool:
        """True if the case exists and is owned by user_id."""
        sql = "SELECT 1 FROM cases WHERE id = %s::uuid AND user_id = %s::uuid"

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (case_id, user_id))
                row = cur.fetchone()
            conn.commit()
            return row is not None

        return self._execute_with_retry(_op, "case_belongs_to_user")

    def get_evidence(self, evidence_id: str) -> Optional[dict]:
        sql = """
        SELECT id, case_id, user_id, media_type, storage_path, original_filename,
               mime_type, size_bytes, processing_status, last_error, created_at, updated_at
        FROM evidence WHERE id = %s::uuid
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (evidence_id,))
                row = cur.fetchone()
            conn.commit()
            return dict(row) if row else None

        return self._execute_with_retry(_op, "get_evidence")

    def list_pending_evidence(self, limit: int = 5) -> list[str]:
        """Oldest PENDING evidence ids, up to limit."""
        sql = """
        SELECT id FROM evidence
        WHERE processing_status = 'PENDING'
        ORDER BY created_at ASC
        LIMIT %s
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (limit,))
                rows = cur.fetchall()
            conn.commit()
            return [str(row["id"]) for row in rows]

        return self._execute_with_retry(_op, "list_pending_evidence")

    def claim_evidence(self, evidence_id: str) -> Optional[dict]:
        """
        Atomically move evidence from PENDING or FAILED to PROCESSING.

        Returns:
            The claimed evidence row, or None if another worker holds it or
            it is already READY.
        """
        sql = """
        UPDATE evidence
        SET processing_status = 'PROCESSING', last_error = NULL, updated_at = NOW()
        WHERE id = %s::uuid AND processing_status IN ('PENDING', 'FAILED')
        RETURNING id, case_id, user_id, media_type, storage_path,
                  original_filename, mime_type, size_bytes
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (evidence_id,))
                row = cur.fetchone()
            conn.commit()
            return dict(row) if row else None

        return self._execute_with_retry(_op, "claim_evidence")

    def mark_evidence_failed(self, evidence_id: str, error: str) -> None:
        sql = """
        UPDATE evidence
        SET processing_status = 'FAILED', last_error = %s, updated_at = NOW()
        WHERE id = %s::uuid
        """
        message = (error or "Unknown error")[:self.config.max_error_length]

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (message, evidence_id))
            conn.commit()

        self._execute_with_retry(_op, "mark_evidence_failed")

    def replace_evidence_chunks(
        self,
        evidence_id: str,
        chunks: list,
        embeddings: list[list[float]],
    ) -> None:
        """
        Replace an evidence document's chunks and embeddings, then mark it READY.

        Runs in a single transaction: search never sees a document whose
        embedding count differs from its chunk count.

        Args:
            evidence_id: Evidence being ingested
            chunks: TextChunk objects, in index order
            embeddings: One vector per chunk
        """
        if len(chunks) != len(embeddings):
            raise ValueError(
                f"Mismatch: {len(chunks)} chunks, {len(embeddings)} embeddings"
            )
        if not chunks:
            raise ValueError("Cannot mark evidence READY without chunks")

        chunk_values = []
        embedding_values = []
        for chunk, embedding in zip(chunks, embeddings):
            chunk_id = str(uuid.uuid4())
            chunk_values.append((
                chunk_id, evidence_id, chunk.chunk_index, chunk.content, chunk.token_count,
            ))
            embedding_values.append((
                str(uuid.uuid4()), chunk_id, to_vector_literal(embedding),
            ))

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    "DELETE FROM evidence_text_chunks WHERE evidence_id = %s::uuid",
                    (evidence_id,),
                )
                execute_values(
                    cur,
                    "INSERT INTO evidence_text_chunks (id, evidence_id, chunk_index, content, token_count) VALUES %s",
                    chunk_values,
                    template="(%s::uuid, %s::uuid, %s, %s, %s)",
                    page_size=500,
                )
                execute_values(
                    cur,
                    "INSERT INTO evidence_embeddings (id, chunk_id, embedding) VALUES %s",
                    embedding_values,
                    template="(%s::uuid, %s::uuid, %s::vector)",
                    page_size=500,
                )
                cur.execute(
                    """
                    UPDATE evidence
                    SET processing_status = 'READY', last_error = NULL, updated_at = NOW()
                    WHERE id = %s::uuid
                    """,
                    (evidence_id,),
                )
            conn.commit()
            logger.info(f"Stored {len(chunk_values)} chunks for evidence {evidence_id}")

        self._execute_with_retry(_op, "replace_evidence_chunks")

    # =========================================================================
    # Query log and audit
    # =========================================================================

    def insert_ai_query(
        self,
        user_id: str,
        case_id: str,
        question: str,
        answer_summary: str,
    ) -> str:
        """Append a Query row and return its id."""
        query_id = str(uuid.uuid4())
        sql = """
        INSERT INTO ai_queries (id, user_id, case_id, question, answer_summary)
        VALUES (%s::uuid, %s::uuid, %s::uuid, %s, %s)
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (query_id, user_id, case_id, question, answer_summary))
            conn.commit()
            return query_id

        return self._execute_with_retry(_op, "insert_ai_query")

    def insert_audit_event(
        self,
        user_id: Optional[str],
        action: str,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> None:
        """Append an audit event. Errors propagate; callers decide whether to swallow."""
        sql = """
        INSERT INTO audit_log (id, user_id, action, entity_type, entity_id, metadata)
        VALUES (%s::uuid, %s::uuid, %s, %s, %s::uuid, %s)
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (
                    str(uuid.uuid4()),
                    user_id,
                    action,
                    entity_type,
                    entity_id,
                    json.dumps(metadata or {}, default=str),
                ))
            conn.commit()

        self._execute_with_retry(_op, "insert_audit_event")


# CLI for testing
if __name__ == "__main__":
    import argparse
    from dotenv import load_dotenv

    load_dotenv()
    logging.basicConfig(level=logging.INFO)

    parser = argparse.ArgumentParser(description="Evidence vector store utilities")
    parser.add_argument("--init-schema", action="store_true", help="Create tables and indexes")
    parser.add_argument("--pending", action="store_true", help="List pending evidence ids")
    args = parser.parse_args()

    store = VectorStore()
    store.connect()
    try:
        if args.init_schema:
            store.initialize_schema()
            print("Schema initialized")
        if args.pending:
            for evidence_id in store.list_pending_evidence(limit=50):
                print(evidence_id)
        if not (args.init_schema or args.pending):
            print(f"Database reachable: {store.ping()}")
    finally:
        store.close()

"""
FastAPI Backend for Evidence RAG

Public endpoint for asking questions about the evidence in a case, plus
health and metrics. Authentication is a bearer session JWT issued by the
account service; every error body is {"error": "..."}.

Run with: uvicorn execution.evidence_rag.api:app --host 0.0.0.0 --port 8000
"""

import os
import time
import uuid
import logging
from typing import Optional

from fastapi import FastAPI, HTTPException, Depends, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from dotenv import load_dotenv

from . import __version__
from .api_models import QueryRequest, QueryResponse, SourceInfo, ErrorResponse, HealthResponse
from .auth import verify_session_jwt, parse_bearer_token
from .errors import EvidenceRAGError, InputValidationError, CaseNotFound
from .metrics import get_metrics_collector

# Load environment variables
load_dotenv()
logger = logging.getLogger(__name__)

GENERIC_ERROR_MESSAGE = "Something went wrong while answering your question. Please try again later."

app = FastAPI(
    title="Evidence RAG API",
    description="Ask questions about the evidence uploaded to a private case space",
    version=__version__,
)

# Configure CORS: use CORS_ORIGINS env var (comma-separated) or default to localhost
_cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in _cors_origins],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _is_development() -> bool:
    return os.getenv("APP_ENV", "production").lower() in ("development", "dev")


# =============================================================================
# Rate Limiting
# =============================================================================

class RateLimiter:
    """Simple in-memory rate limiter using sliding window.

    Keys whose window has emptied are swept out at most once per window.
    """

    def __init__(self, max_requests: int = 60, window_seconds: int = 60):
        self._max_requests = max_requests
        self._window = window_seconds
        self._requests: dict[str, list[float]] = {}
        self._last_sweep = time.time()

    def is_allowed(self, key: str) -> bool:
        """Check if request is allowed for the given key."""
        now = time.time()
        window_start = now - self._window

        if now - self._last_sweep >= self._window:
            self._sweep(window_start)
            self._last_sweep = now

        recent = [t for t in self._requests.get(key, ()) if t > window_start]
        allowed = len(recent) < self._max_requests
        if allowed:
            recent.append(now)
        self._requests[key] = recent
        return allowed

    def _sweep(self, window_start: float) -> None:
        stale = [k for k, times in self._requests.items() if not times or times[-1] <= window_start]
        for key in stale:
            del self._requests[key]


_rate_limiter = RateLimiter(
    max_requests=int(os.getenv("RATE_LIMIT_RPM", "60")),
    window_seconds=60,
)


# =============================================================================
# Service Container
# =============================================================================

class ServiceContainer:
    """Lazily builds and caches the store and query engine."""

    def __init__(self):
        self._store = None
        self._engine = None

    def get_store(self):
        if self._store is None:
            from .vector_store import VectorStore
            store = VectorStore()
            store.connect()
            store.initialize_schema()
            self._store = store
        return self._store

    def get_engine(self):
        if self._engine is None:
            from .rag import get_query_engine
            self._engine = get_query_engine(self.get_store())
        return self._engine


_container = ServiceContainer()


# =============================================================================
# Authentication dependency
# =============================================================================

async def get_current_user(authorization: Optional[str] = Header(None)) -> dict:
    """Validate the bearer session token and return the user."""
    token = parse_bearer_token(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Authentication required")
    user = verify_session_jwt(token)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid or expired session")
    return user


async def check_rate_limit(user: dict = Depends(get_current_user)):
    """FastAPI dependency that enforces rate limiting per authenticated user."""
    if not _rate_limiter.is_allowed(user["user_id"]):
        logger.warning(f"Rate limit exceeded for user {user['user_id']}")
        raise HTTPException(status_code=429, detail="Rate limit exceeded. Try again later.")


# =============================================================================
# Error handlers
# =============================================================================

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"error": "Invalid request body"})


@app.exception_handler(InputValidationError)
async def input_validation_handler(request: Request, exc: InputValidationError):
    return JSONResponse(status_code=400, content={"error": str(exc)})


@app.exception_handler(CaseNotFound)
async def case_not_found_handler(request: Request, exc: CaseNotFound):
    return JSONResponse(status_code=404, content={"error": str(exc)})


@app.exception_handler(EvidenceRAGError)
async def pipeline_error_handler(request: Request, exc: EvidenceRAGError):
    logger.error(f"Request failed: {type(exc).__name__}: {exc}")
    message = f"{type(exc).__name__}: {exc}" if _is_development() else GENERIC_ERROR_MESSAGE
    return JSONResponse(status_code=500, content={"error": message})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error: {type(exc).__name__}: {exc}")
    message = f"{type(exc).__name__}: {exc}" if _is_development() else GENERIC_ERROR_MESSAGE
    return JSONResponse(status_code=500, content={"error": message})


# =============================================================================
# Endpoints
# =============================================================================

@app.get("/api/v1/health", response_model=HealthResponse)
def health_check():
    """Health check endpoint."""
    try:
        _container.get_store().ping()
        db_status = "connected"
    except Exception as e:
        logger.warning(f"Health check: database disconnected: {e}")
        db_status = "disconnected"

    return HealthResponse(status="ok", version=__version__, database=db_status)


@app.post(
    "/api/v1/cases/{case_id}/query",
    response_model=QueryResponse,
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
    },
    dependencies=[Depends(check_rate_limit)],
)
def query_case(
    case_id: str,
    request: QueryRequest,
    user: dict = Depends(get_current_user),
):
    """Answer a question using only the caller's evidence in this case."""
    try:
        uuid.UUID(case_id)
    except ValueError:
        raise CaseNotFound("Case does not exist or you do not have access to it")

    engine = _container.get_engine()
    result = engine.answer(
        user["user_id"],
        case_id,
        request.question,
        max_sources=request.max_sources,
    )

    return QueryResponse(
        answer_text=result.answer_text,
        sources=[SourceInfo(evidence_id=s.evidence_id, snippet=s.snippet) for s in result.sources],
        limitation_notice=result.limitation_notice,
    )


@app.get("/api/v1/metrics")
def get_metrics(user: dict = Depends(get_current_user)):
    """Return in-process query and ingestion metrics."""
    collector = get_metrics_collector()
    metrics = collector.get_metrics_dict()
    metrics["uptime_seconds"] = int(collector.get_uptime().total_seconds())
    return metrics

"""
Pydantic models for the Evidence RAG FastAPI backend.
"""

from pydantic import BaseModel, Field


class QueryRequest(BaseModel):
    """Request body for the case query endpoint."""
    question: str = Field(..., max_length=2000)
    max_sources: int = Field(default=5, ge=1, le=20)


class SourceInfo(BaseModel):
    """Evidence provenance shown alongside an answer."""
    evidence_id: str
    snippet: str


class QueryResponse(BaseModel):
    """Response body for the case query endpoint."""
    answer_text: str
    sources: list[SourceInfo]
    limitation_notice: str


class ErrorResponse(BaseModel):
    error: str


class HealthResponse(BaseModel):
    """Response body for health check."""
    status: str
    version: str
    database: str

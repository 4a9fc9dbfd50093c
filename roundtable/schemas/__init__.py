"""Pydantic schemas for API request/response."""
from roundtable.schemas.analysis import (
    LegacyAnalyzeRequest,
    LegacyAnalyzeResponse,
    LiveAnalyzeRequest,
    LiveAnalyzeResponse,
)
from roundtable.schemas.session import (
    BulkImportRequest,
    CorrectionsRequest,
    CreateSessionResponse,
    EntryRequest,
    ImportRequest,
    InsightRequestBody,
    PhaseRequest,
    SessionView,
)

__all__ = [
    "BulkImportRequest",
    "CorrectionsRequest",
    "CreateSessionResponse",
    "EntryRequest",
    "ImportRequest",
    "InsightRequestBody",
    "LegacyAnalyzeRequest",
    "LegacyAnalyzeResponse",
    "LiveAnalyzeRequest",
    "LiveAnalyzeResponse",
    "PhaseRequest",
    "SessionView",
]

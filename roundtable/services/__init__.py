"""Application services: insight orchestration (client) and analysis (server)."""
from roundtable.services.analysis_service import AnalysisService, RateLimiter
from roundtable.services.insight_orchestrator import (
    ERROR_MESSAGE,
    InsightOrchestrator,
    InsightRequest,
    RequestStage,
)
from roundtable.services.auto_trigger import AutoTriggerPolicy

__all__ = [
    "AnalysisService",
    "AutoTriggerPolicy",
    "ERROR_MESSAGE",
    "InsightOrchestrator",
    "InsightRequest",
    "RateLimiter",
    "RequestStage",
]

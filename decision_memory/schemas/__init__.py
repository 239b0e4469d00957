"""Pydantic schemas."""
from decision_memory.schemas.decision import (
    CompleteRequest,
    DecisionCreate,
    DecisionCreated,
    DecisionResponse,
    DecisionSummary,
    MemorySearchRequest,
    PlanRequest,
    PlanStep,
    SimilarityReference,
)

__all__ = [
    "CompleteRequest",
    "DecisionCreate",
    "DecisionCreated",
    "DecisionResponse",
    "DecisionSummary",
    "MemorySearchRequest",
    "PlanRequest",
    "PlanStep",
    "SimilarityReference",
]

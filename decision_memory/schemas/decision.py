"""Decision Pydantic schemas."""
from pydantic import BaseModel, Field, field_validator
from datetime import datetime
from uuid import UUID
from typing import Any, Dict, List, Optional

from decision_memory.models.decision import Decision, Outcome, StepStatus


# Request Schemas
class PlanStep(BaseModel):
    """One step of a decision's execution plan."""
    step_id: Optional[str] = Field(None, description="Kept when given, generated otherwise")
    description: str = Field(..., min_length=1, max_length=1000)
    status: StepStatus = StepStatus.PENDING
    note: Optional[str] = Field(None, max_length=2000)

    @field_validator("description")
    @classmethod
    def description_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("description must not be blank")
        return v


class DecisionCreate(BaseModel):
    """Schema for recording a new decision."""
    subject: str = Field(..., description="What is being decided")
    context: str = Field(..., description="Situation the decision is made in")
    expected_outcome: str = Field(..., description="What success looks like")
    rationale: str = Field(..., description="Why this option was chosen")
    raw_input: Optional[str] = Field(None, description="Original free-form input, if any")


class PlanRequest(BaseModel):
    """Schema for confirming or updating a plan."""
    plan: List[PlanStep]


class CompleteRequest(BaseModel):
    """Schema for closing a decision with its outcome."""
    outcome: Outcome
    reflection: Optional[str] = Field(None, max_length=10000)


class MemorySearchRequest(BaseModel):
    """Schema for free-text search over past decisions."""
    query: str = Field(..., min_length=1, max_length=2000)
    limit: int = Field(5, ge=1, le=20)


# Response Schemas
def _columns(schema, decision: Decision) -> Dict[str, Any]:
    """Stored attributes of a decision for the schema's fields (computed ones excluded)."""
    return {
        name: getattr(decision, name)
        for name in schema.model_fields
        if name != "progress_percentage"
    }


class DecisionCreated(BaseModel):
    """Schema returned when a decision has been accepted."""
    id: UUID


class SimilarityReference(BaseModel):
    """Snapshot of a similar past decision taken when the plan was drafted."""
    referenced_decision_id: UUID
    score: float
    subject: Optional[str] = None
    outcome: Optional[str] = None
    success_driver: Optional[str] = None
    failure_reason: Optional[str] = None


class DecisionResponse(BaseModel):
    """Schema for decision response."""
    id: UUID
    owner_id: str
    status: str
    subject: str
    context: str
    expected_outcome: str
    rationale: str
    raw_input: Optional[str] = None
    plan: List[Dict[str, Any]] = []
    draft_plan: List[Dict[str, Any]] = []
    similarity_references: List[SimilarityReference] = []
    success_driver: Optional[str] = None
    failure_reason: Optional[str] = None
    outcome: Optional[str] = None
    reflection: Optional[str] = None
    progress_percentage: int = 0
    created_at: datetime
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_decision(cls, decision: Decision) -> "DecisionResponse":
        return cls(**_columns(cls, decision), progress_percentage=decision.progress_percentage())


class DecisionSummary(BaseModel):
    """Schema for decision list entries."""
    id: UUID
    status: str
    subject: str
    outcome: Optional[str] = None
    progress_percentage: int = 0
    created_at: datetime
    completed_at: Optional[datetime] = None

    @classmethod
    def from_decision(cls, decision: Decision) -> "DecisionSummary":
        return cls(**_columns(cls, decision), progress_percentage=decision.progress_percentage())

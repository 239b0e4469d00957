"""Decision and decision embedding models."""
from enum import Enum
import uuid

from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey, Text, JSON, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from pgvector.sqlalchemy import Vector

from decision_memory.db import Base, utcnow

EMBEDDING_DIMENSIONS = 1536  # OpenAI text-embedding-3-small dimension

JSONType = JSON().with_variant(JSONB(), "postgresql")


class DecisionStatus(str, Enum):
    """Decision lifecycle."""
    DRAFTING = "DRAFTING"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    ARCHIVED = "ARCHIVED"


class Outcome(str, Enum):
    """How a completed decision turned out."""
    SUCCESS = "SUCCESS"
    PARTIAL = "PARTIAL"
    FAILURE = "FAILURE"


class StepStatus(str, Enum):
    """Plan step state."""
    PENDING = "pending"
    DONE = "done"
    SKIPPED = "skipped"


class Decision(Base):
    """A recorded decision, its execution plan and its eventual outcome."""

    __tablename__ = "decisions"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    owner_id = Column(String(255), nullable=False, index=True)
    status = Column(String(20), nullable=False, default=DecisionStatus.DRAFTING.value)

    # User-supplied text
    subject = Column(Text, nullable=False)
    context = Column(Text, nullable=False)
    expected_outcome = Column(Text, nullable=False)
    rationale = Column(Text, nullable=False)
    raw_input = Column(Text, nullable=True)

    # User-owned working plan: ordered list of {step_id, description, status, note}
    plan = Column(JSONType, nullable=False, default=list)

    # Worker-owned fields (written by background jobs only)
    draft_plan = Column(JSONType, nullable=False, default=list)
    similarity_references = Column(JSONType, nullable=False, default=list)
    success_driver = Column(Text, nullable=True)
    failure_reason = Column(Text, nullable=True)
    search_text = Column(Text, nullable=True)

    # Completion
    outcome = Column(String(20), nullable=True)
    reflection = Column(Text, nullable=True)

    is_deleted = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    def pending_steps(self) -> list:
        """Plan steps still waiting to be done or skipped."""
        return [s for s in (self.plan or []) if s.get("status") == StepStatus.PENDING.value]

    def progress_percentage(self) -> int:
        """Share of plan steps marked done, rounded to a whole percent."""
        steps = self.plan or []
        if not steps:
            return 0
        done = sum(1 for s in steps if s.get("status") == StepStatus.DONE.value)
        return round(done * 100 / len(steps))


class DecisionEmbedding(Base):
    """Vector index entry for a completed decision (one per decision)."""

    __tablename__ = "decision_embeddings"

    decision_id = Column(Uuid(as_uuid=True), ForeignKey("decisions.id", ondelete="CASCADE"), primary_key=True)
    owner_id = Column(String(255), nullable=False, index=True)
    vector = Column(Vector(EMBEDDING_DIMENSIONS), nullable=False)
    content_hash = Column(String(64), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False)

"""Background job queue model."""
from enum import Enum
import uuid

from sqlalchemy import Column, String, Integer, DateTime, Text, Index, Uuid
from sqlalchemy.sql import func

from decision_memory.db import Base, utcnow
from decision_memory.models.decision import JSONType


class JobType(str, Enum):
    """Kinds of background work."""
    DRAFT_AND_SEARCH = "DRAFT_AND_SEARCH"
    EXTRACT_AND_EMBED = "EXTRACT_AND_EMBED"


class JobStatus(str, Enum):
    """Job states. A failed job is retried until it runs out of attempts."""
    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"


class BackgroundJob(Base):
    """Durable work item consumed by worker processes."""

    __tablename__ = "background_jobs"
    __table_args__ = (
        Index("idx_jobs_poll", "status", "next_retry_at"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    type = Column(String(50), nullable=False)
    payload = Column(JSONType, nullable=False)
    status = Column(String(20), nullable=False, default=JobStatus.PENDING.value)
    retry_count = Column(Integer, nullable=False, default=0)
    next_retry_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

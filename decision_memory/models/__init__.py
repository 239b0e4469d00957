"""Database models."""
from decision_memory.models.decision import (
    Decision,
    DecisionEmbedding,
    DecisionStatus,
    Outcome,
    StepStatus,
)
from decision_memory.models.job import BackgroundJob, JobStatus, JobType

__all__ = [
    "Decision",
    "DecisionEmbedding",
    "DecisionStatus",
    "Outcome",
    "StepStatus",
    "BackgroundJob",
    "JobStatus",
    "JobType",
]

from .database import Database, normalize_database_url
from .models import (
    EnrollmentRecord,
    ScoreHistoryRecord,
    ScoringRuleRecord,
    StepExecutionRecord,
    WorkflowRecord,
)

__all__ = [
    "Database",
    "normalize_database_url",
    "WorkflowRecord",
    "EnrollmentRecord",
    "StepExecutionRecord",
    "ScoringRuleRecord",
    "ScoreHistoryRecord",
]

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, Column, DateTime
from sqlmodel import Field, SQLModel


class WorkflowRecord(SQLModel, table=True):
    """Workflow definition; the graph itself is stored as a JSON document."""

    id: str = Field(primary_key=True)
    name: str
    status: str = Field(index=True)
    trigger_type: str = Field(index=True)
    version: int = 0
    definition: dict = Field(default_factory=dict, sa_column=Column(JSON))
    updated_at: datetime = Field(sa_type=DateTime(timezone=True))


class EnrollmentRecord(SQLModel, table=True):
    """Execution cursor of one contact in one workflow."""

    id: str = Field(primary_key=True)
    workflow_id: str = Field(index=True)
    contact_id: str = Field(index=True)
    current_step_id: Optional[str] = None
    status: str = Field(index=True)
    entered_at: datetime = Field(sa_type=DateTime(timezone=True))
    completed_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    exited_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    paused_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    exit_reason: Optional[str] = None
    data: dict = Field(default_factory=dict, sa_column=Column(JSON))
    wake_at: Optional[datetime] = Field(
        default=None, index=True, sa_type=DateTime(timezone=True)
    )
    retry_count: int = 0
    guard_since: int = 0
    updated_at: datetime = Field(sa_type=DateTime(timezone=True))
    # Cross-process tick lease, never part of the Enrollment contract.
    lease_owner: Optional[str] = None
    lease_until: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))


class StepExecutionRecord(SQLModel, table=True):
    """Append-only step execution log."""

    id: Optional[int] = Field(default=None, primary_key=True)
    enrollment_id: str = Field(index=True)
    workflow_id: str
    step_id: str = Field(index=True)
    step_type: str
    cascade_id: Optional[str] = None
    outcome: str
    branch: Optional[str] = None
    output: dict = Field(default_factory=dict, sa_column=Column(JSON))
    error: Optional[str] = None
    attempt: int = 1
    created_at: datetime = Field(sa_type=DateTime(timezone=True))


class ScoringRuleRecord(SQLModel, table=True):
    id: str = Field(primary_key=True)
    name: str
    event_type: str = Field(index=True)
    conditions: Optional[Any] = Field(default=None, sa_column=Column(JSON))
    points: int
    expires_after_days: Optional[int] = None
    max_occurrences: Optional[int] = None
    is_active: bool = True


class ScoreHistoryRecord(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    contact_id: str = Field(index=True)
    rule_id: Optional[str] = Field(default=None, index=True)
    event_type: Optional[str] = None
    points: int
    reason: Optional[str] = None
    created_at: datetime = Field(sa_type=DateTime(timezone=True))
    expires_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))

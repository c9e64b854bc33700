"""Lead scoring data models."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field


class ScoringRule(BaseModel):
    """Points awarded when an event of ``event_type`` matches ``conditions``."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    event_type: str
    conditions: Optional[Any] = None
    points: int
    expires_after_days: Optional[int] = Field(default=None, ge=1)
    max_occurrences: Optional[int] = Field(default=None, ge=1)
    is_active: bool = True


class ScoreHistory(BaseModel):
    """Immutable point grant; expires independently of other grants."""

    id: Optional[int] = None
    contact_id: str
    rule_id: Optional[str] = None
    event_type: Optional[str] = None
    points: int
    reason: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    expires_at: Optional[datetime] = None

    def is_live(self, now: datetime) -> bool:
        return self.expires_at is None or self.expires_at > now


class ScoreChange(BaseModel):
    """Payload of the ``score_changed`` signal."""

    contact_id: str
    score: int
    previous_score: int
    delta: int
    entries: list[ScoreHistory] = Field(default_factory=list)


class ThresholdCrossed(BaseModel):
    """Payload of the ``score_threshold_crossed`` signal."""

    contact_id: str
    threshold: int
    score: int
    direction: Literal["up", "down"]

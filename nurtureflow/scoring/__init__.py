"""Lead scoring: rules, point grants and score signals."""

from .engine import ScoreListener, ScoreSignal, ScoringEngine
from .models import ScoreChange, ScoreHistory, ScoringRule, ThresholdCrossed

__all__ = [
    "ScoringEngine",
    "ScoreListener",
    "ScoreSignal",
    "ScoringRule",
    "ScoreHistory",
    "ScoreChange",
    "ThresholdCrossed",
]

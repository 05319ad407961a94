from __future__ import annotations
import datetime
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class Tier(str, Enum):
    """Ordered training-age tier."""

    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"
    HIGHLY_ADVANCED = "highly_advanced"

    @property
    def rank(self) -> int:
        return _TIER_ORDER.index(self)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Tier):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, Tier):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, Tier):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, Tier):
            return NotImplemented
        return self.rank >= other.rank

    def __str__(self) -> str:
        return self.value


_TIER_ORDER = [
    Tier.BEGINNER,
    Tier.INTERMEDIATE,
    Tier.ADVANCED,
    Tier.HIGHLY_ADVANCED,
]

NEUTRAL = "neutral"


class SignalType(str, Enum):
    EXERCISE_SELECTION = "exercise_selection"
    PROGRESSION_RESPONSE = "progression_response"
    WORKOUT_PERFORMANCE = "workout_performance"
    CONSISTENCY_PATTERN = "consistency_pattern"
    TERMINOLOGY_USAGE = "terminology_usage"


class HistoryTrigger(str, Enum):
    INITIAL_ONBOARDING = "initial_onboarding"
    BEHAVIORAL_SIGNALS = "behavioral_signals"
    PERFORMANCE_DATA = "performance_data"


class AuditTrigger(str, Enum):
    SCHEDULED_INTERVAL = "scheduled_interval"
    WORKOUT_COMPLETED = "workout_completed"
    MANUAL = "manual"


class ExerciseCategory(str, Enum):
    COMPOUND = "compound"
    ISOLATION = "isolation"
    ACCESSORY = "accessory"


def parse_indicator(value: str | None) -> Optional[Tier]:
    """Return the tier for ``value`` or ``None`` for a neutral indicator."""
    if value is None or value == NEUTRAL:
        return None
    return Tier(value)


@dataclass(frozen=True)
class StrengthLevel:
    """Lift-to-bodyweight ratios."""

    bench_ratio: float
    squat_ratio: float
    deadlift_ratio: float

    @property
    def average_ratio(self) -> float:
        return (self.bench_ratio + self.squat_ratio + self.deadlift_ratio) / 3


@dataclass(frozen=True)
class TrainingFactors:
    current_consecutive_months: float = 0.0
    total_detraining_months: float = 0.0
    total_chronological_months: float = 0.0
    technical_proficiency: float = 1.0
    average_sessions_per_week: float = 2.0
    has_used_periodization: bool = False
    understands_rpe: bool = False
    strength_level: Optional[StrengthLevel] = None


@dataclass(frozen=True)
class BehavioralSignal:
    """A single piece of workout-derived evidence about a user's tier."""

    user_id: str
    signal_type: SignalType
    signal_value: str
    tier_indicator: Optional[Tier]
    confidence: float
    timestamp: datetime.datetime
    context: dict = field(default_factory=dict, compare=False)

    @property
    def is_neutral(self) -> bool:
        return self.tier_indicator is None

    @property
    def indicator_label(self) -> str:
        return NEUTRAL if self.is_neutral else self.tier_indicator.value

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "signal_type": self.signal_type.value,
            "signal_value": self.signal_value,
            "tier_indicator": self.indicator_label,
            "confidence": self.confidence,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class LoggedSet:
    reps: int
    weight: float
    rpe: Optional[float] = None


@dataclass(frozen=True)
class LoggedExercise:
    name: str
    category: Optional[str]
    sets: tuple[LoggedSet, ...] = ()
    target_weight: Optional[float] = None

    @property
    def weights(self) -> list[float]:
        return [s.weight for s in self.sets]

    @property
    def rpe(self) -> list[float]:
        return [s.rpe for s in self.sets if s.rpe is not None]

    @property
    def is_compound(self) -> bool:
        return self.category == ExerciseCategory.COMPOUND.value


@dataclass(frozen=True)
class WorkoutLog:
    workout_id: int
    user_id: str
    date: datetime.date
    exercises: tuple[LoggedExercise, ...] = ()


@dataclass
class ClassificationConfidence:
    current_tier: Tier
    confidence_score: float
    supporting_signals: list[BehavioralSignal]
    contradictory_signals: list[BehavioralSignal]
    needs_validation: bool

    def to_dict(self) -> dict:
        return {
            "current_tier": self.current_tier.value,
            "confidence_score": round(self.confidence_score, 4),
            "supporting_signals": [s.to_dict() for s in self.supporting_signals],
            "contradictory_signals": [
                s.to_dict() for s in self.contradictory_signals
            ],
            "needs_validation": self.needs_validation,
        }


@dataclass(frozen=True)
class ClassificationHistoryEntry:
    user_id: str
    timestamp: datetime.datetime
    tier: Tier
    confidence: float
    trigger: HistoryTrigger
    supporting_data: dict = field(default_factory=dict, compare=False)

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "timestamp": self.timestamp.isoformat(),
            "tier": self.tier.value,
            "confidence": self.confidence,
            "trigger": self.trigger.value,
            "supporting_data": self.supporting_data,
        }


@dataclass(frozen=True)
class AuditRecord:
    user_id: str
    timestamp: datetime.datetime
    workouts_analyzed: int
    trigger: AuditTrigger

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "timestamp": self.timestamp.isoformat(),
            "workouts_analyzed": self.workouts_analyzed,
            "trigger": self.trigger.value,
        }


@dataclass(frozen=True)
class TierProposal:
    """A candidate tier change awaiting the confidence gate."""

    tier: Tier
    confidence: float
    source: str
    evidence: tuple[BehavioralSignal, ...] = ()
    adjustment: Optional[float] = None
    adjusted_months: Optional[float] = None


@dataclass
class ProgressiveClassification:
    tier: Tier
    confidence: float
    classification_type: str
    next_validation_trigger: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "tier": self.tier.value,
            "confidence": round(self.confidence, 4),
            "classification_type": self.classification_type,
            "next_validation_trigger": self.next_validation_trigger,
        }

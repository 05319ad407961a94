from __future__ import annotations
import datetime
import logging
from collections import Counter
from typing import Iterable, Optional

from algorithms.math_tools import MathTools
from models import BehavioralSignal, SignalType, Tier, WorkoutLog

logger = logging.getLogger(__name__)


class BehavioralSignalExtractor:
    """Turn a window of logged workouts into confidence-weighted signals.

    Sparse or malformed data never raises; it simply yields fewer signals.
    """

    COMPOUND_HIGH: float = 0.7
    COMPOUND_LOW: float = 0.3
    RPE_HIGH: float = 0.8

    def __init__(self, min_progression_sessions: int = 3) -> None:
        self.min_progression_sessions = min_progression_sessions

    def extract(
        self,
        user_id: str,
        workouts: Iterable[WorkoutLog],
        timestamp: datetime.datetime | None = None,
        lift_name: str | None = None,
    ) -> list[BehavioralSignal]:
        timestamp = timestamp or datetime.datetime.now()
        workouts = sorted(workouts, key=lambda w: w.date)
        candidates = [
            self.exercise_selection(user_id, workouts, timestamp),
            self.rpe_usage(user_id, workouts, timestamp),
            self.progression_pattern(user_id, workouts, timestamp, lift_name),
        ]
        signals = [s for s in candidates if s is not None]
        for s in signals:
            logger.debug(
                "signal %s/%s -> %s (%.2f) for %s",
                s.signal_type.value,
                s.signal_value,
                s.indicator_label,
                s.confidence,
                user_id,
            )
        return signals

    def exercise_selection(
        self,
        user_id: str,
        workouts: list[WorkoutLog],
        timestamp: datetime.datetime,
    ) -> Optional[BehavioralSignal]:
        exercises = [ex for w in workouts for ex in w.exercises]
        if not exercises:
            return None
        compound_ratio = MathTools.ratio(
            sum(1 for ex in exercises if ex.is_compound), len(exercises)
        )
        context = {"compound_ratio": round(compound_ratio, 4), "exercises": len(exercises)}
        if compound_ratio > self.COMPOUND_HIGH:
            return BehavioralSignal(
                user_id,
                SignalType.EXERCISE_SELECTION,
                "compound_focused",
                Tier.INTERMEDIATE,
                0.6,
                timestamp,
                context,
            )
        if compound_ratio < self.COMPOUND_LOW:
            return BehavioralSignal(
                user_id,
                SignalType.EXERCISE_SELECTION,
                "isolation_focused",
                Tier.BEGINNER,
                0.7,
                timestamp,
                context,
            )
        return None

    def rpe_usage(
        self,
        user_id: str,
        workouts: list[WorkoutLog],
        timestamp: datetime.datetime,
    ) -> Optional[BehavioralSignal]:
        exercises = [ex for w in workouts for ex in w.exercises]
        if not exercises:
            return None
        usage = MathTools.ratio(sum(1 for ex in exercises if ex.rpe), len(exercises))
        context = {"rpe_usage": round(usage, 4)}
        if usage > self.RPE_HIGH:
            return BehavioralSignal(
                user_id,
                SignalType.TERMINOLOGY_USAGE,
                "consistent_rpe_usage",
                Tier.ADVANCED,
                0.8,
                timestamp,
                context,
            )
        if usage == 0:
            return BehavioralSignal(
                user_id,
                SignalType.TERMINOLOGY_USAGE,
                "no_rpe_usage",
                Tier.BEGINNER,
                0.6,
                timestamp,
                context,
            )
        return None

    @staticmethod
    def primary_lift(workouts: list[WorkoutLog]) -> Optional[str]:
        """Return the compound lift logged in the most sessions."""
        counts: Counter = Counter()
        for w in workouts:
            names = {ex.name for ex in w.exercises if ex.is_compound and ex.weights}
            counts.update(names)
        if not counts:
            return None
        # ties resolve alphabetically so the choice is deterministic
        return sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))[0][0]

    @staticmethod
    def session_weights(workouts: list[WorkoutLog], lift_name: str) -> list[float]:
        """Top working weight of ``lift_name`` per session, chronologically."""
        history: list[float] = []
        for w in workouts:
            weights = [
                wt for ex in w.exercises if ex.name == lift_name for wt in ex.weights
            ]
            if weights:
                history.append(max(weights))
        return history

    def progression_pattern(
        self,
        user_id: str,
        workouts: list[WorkoutLog],
        timestamp: datetime.datetime,
        lift_name: str | None = None,
    ) -> Optional[BehavioralSignal]:
        lift = lift_name or self.primary_lift(workouts)
        if lift is None:
            return None
        history = self.session_weights(workouts, lift)
        if len(history) < self.min_progression_sessions:
            return None
        context = {"lift": lift, "sessions": len(history)}
        if MathTools.strictly_increasing(history):
            return BehavioralSignal(
                user_id,
                SignalType.PROGRESSION_RESPONSE,
                "consistent_linear_progression",
                Tier.BEGINNER,
                0.8,
                timestamp,
                context,
            )
        if history[-1] <= history[0]:
            return BehavioralSignal(
                user_id,
                SignalType.PROGRESSION_RESPONSE,
                "progression_plateau",
                Tier.INTERMEDIATE,
                0.6,
                timestamp,
                context,
            )
        return None


def performance_metrics(workouts: Iterable[WorkoutLog]) -> dict:
    """Return target achievement and spacing metrics for ``workouts``."""
    workouts = sorted(workouts, key=lambda w: w.date)
    if len(workouts) < 2:
        return {
            "target_achievement_rate": 0.0,
            "workout_postponements": 0,
            "average_days_between_workouts": 0.0,
        }
    hits = 0
    targets = 0
    for w in workouts:
        for ex in w.exercises:
            if ex.target_weight and ex.weights:
                targets += 1
                if ex.weights[0] >= ex.target_weight:
                    hits += 1
    gaps = [(b.date - a.date).days for a, b in zip(workouts, workouts[1:])]
    return {
        "target_achievement_rate": MathTools.ratio(hits, targets),
        # postponements are not tracked by the workout log
        "workout_postponements": 0,
        "average_days_between_workouts": MathTools.mean(gaps),
    }


def performance_feedback(metrics: dict) -> str:
    rate = metrics.get("target_achievement_rate", 0.0)
    if rate > 0.8:
        return f"Great job hitting {round(rate * 100)}% of your target weights!"
    if rate < 0.6:
        return "You're missing target weights frequently - should we adjust the program?"
    if metrics.get("average_days_between_workouts", 0.0) > 4:
        return "You've been spacing workouts further apart - consider adjusting your schedule"
    return "You're staying consistent with your training!"

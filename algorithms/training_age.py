from __future__ import annotations
from typing import Optional

from models import StrengthLevel, Tier, TrainingFactors
from profile_schema import UserProfile
from .math_tools import MathTools


class FactorExtractor:
    """Normalize a validated profile snapshot into ``TrainingFactors``."""

    DEFAULT_SESSIONS_PER_WEEK: float = 2.0
    MIN_PROFICIENCY: float = 1.0
    MAX_PROFICIENCY: float = 5.0

    @classmethod
    def extract(cls, profile: UserProfile) -> TrainingFactors:
        bg = profile.training_background
        levels = [
            float(c.experience_level) for c in profile.movement_competencies.values()
        ]
        proficiency = MathTools.clamp(
            MathTools.mean(levels, default=cls.MIN_PROFICIENCY),
            cls.MIN_PROFICIENCY,
            cls.MAX_PROFICIENCY,
        )
        sessions = bg.average_sessions_per_week or cls.DEFAULT_SESSIONS_PER_WEEK
        return TrainingFactors(
            current_consecutive_months=bg.current_streak_months,
            total_detraining_months=bg.total_break_months,
            total_chronological_months=bg.total_experience_months,
            technical_proficiency=proficiency,
            average_sessions_per_week=sessions,
            has_used_periodization=bg.has_used_programs,
            understands_rpe=bg.understands_rpe,
            strength_level=cls.strength_level(profile),
        )

    @staticmethod
    def strength_level(profile: UserProfile) -> Optional[StrengthLevel]:
        """Return lift ratios when body weight and all three lifts are known."""
        phys = profile.physical_profile
        lifts = (phys.bench_1rm_kg, phys.squat_1rm_kg, phys.deadlift_1rm_kg)
        if not phys.body_weight_kg or any(v is None for v in lifts):
            return None
        bw = phys.body_weight_kg
        return StrengthLevel(
            bench_ratio=phys.bench_1rm_kg / bw,
            squat_ratio=phys.squat_1rm_kg / bw,
            deadlift_ratio=phys.deadlift_1rm_kg / bw,
        )


class EffectiveAgeCalculator:
    """Convert training factors into decay/bonus adjusted "effective months"."""

    REFERENCE_SESSIONS: float = 3.0
    MAX_CONSISTENCY: float = 1.5
    DETRAINING_RATE: float = 0.6
    STREAK_RATE: float = 0.2
    STREAK_CAP: float = 0.3
    NEUTRAL_PROFICIENCY: float = 3.0

    @classmethod
    def effective_months(cls, factors: TrainingFactors) -> float:
        total = factors.total_chronological_months
        consistency = min(
            factors.average_sessions_per_week / cls.REFERENCE_SESSIONS,
            cls.MAX_CONSISTENCY,
        )
        detraining_penalty = factors.total_detraining_months * cls.DETRAINING_RATE
        streak_bonus = min(
            factors.current_consecutive_months * cls.STREAK_RATE,
            total * cls.STREAK_CAP,
        )
        technique = factors.technical_proficiency / cls.NEUTRAL_PROFICIENCY
        months = (total * consistency - detraining_penalty + streak_bonus) * technique
        return max(0.0, months)


class TierClassifier:
    """Map effective months onto a tier; lower bounds inclusive."""

    THRESHOLDS: tuple[tuple[float, Tier], ...] = (
        (60.0, Tier.HIGHLY_ADVANCED),
        (30.0, Tier.ADVANCED),
        (15.0, Tier.INTERMEDIATE),
    )

    # representative month values used when nudging an existing tier
    TIER_MONTHS: dict[Tier, float] = {
        Tier.BEGINNER: 10.0,
        Tier.INTERMEDIATE: 22.0,
        Tier.ADVANCED: 45.0,
        Tier.HIGHLY_ADVANCED: 70.0,
    }

    @classmethod
    def classify(cls, effective_months: float) -> Tier:
        for lower, tier in cls.THRESHOLDS:
            if effective_months >= lower:
                return tier
        return Tier.BEGINNER

    @classmethod
    def representative_months(cls, tier: Tier) -> float:
        return cls.TIER_MONTHS[tier]


class StrengthValidator:
    """Override the formula tier with objective lift-to-bodyweight ratios."""

    FLOOR_RATIO: float = 1.0
    FLOOR_PROFICIENCY: float = 2.5
    CEILING_RATIO: float = 1.5

    @classmethod
    def validate(cls, tier: Tier, factors: TrainingFactors) -> Tier:
        strength = factors.strength_level
        if strength is None:
            return tier
        avg = strength.average_ratio
        if avg < cls.FLOOR_RATIO and factors.technical_proficiency < cls.FLOOR_PROFICIENCY:
            return Tier.BEGINNER
        if avg > cls.CEILING_RATIO and tier == Tier.BEGINNER:
            return Tier.INTERMEDIATE
        return tier


def base_classification(factors: TrainingFactors) -> tuple[Tier, Tier, float]:
    """Run the formula pipeline.

    Returns ``(validated_tier, formula_tier, effective_months)`` so callers can
    tell whether strength data changed the outcome.
    """
    months = EffectiveAgeCalculator.effective_months(factors)
    formula_tier = TierClassifier.classify(months)
    return StrengthValidator.validate(formula_tier, factors), formula_tier, months

from __future__ import annotations
from typing import Iterable, Optional

from algorithms.math_tools import MathTools
from algorithms.training_age import TierClassifier
from models import (
    BehavioralSignal,
    ClassificationConfidence,
    SignalType,
    Tier,
    TierProposal,
)


class ConfidenceEvaluator:
    """Score how well recent signals agree with a tier."""

    MIN_SCORE: float = 0.1
    MAX_SCORE: float = 0.95
    NO_EVIDENCE_SCORE: float = 0.3
    ZERO_WEIGHT_SCORE: float = 0.5
    VALIDATION_THRESHOLD: float = 0.6

    @staticmethod
    def supports(signal: BehavioralSignal, tier: Tier) -> bool:
        indicator = signal.tier_indicator
        if indicator is None:
            return False
        return indicator == tier or (
            tier == Tier.HIGHLY_ADVANCED and indicator == Tier.ADVANCED
        )

    @classmethod
    def contradicts(cls, signal: BehavioralSignal, tier: Tier) -> bool:
        return not signal.is_neutral and not cls.supports(signal, tier)

    @classmethod
    def evaluate(
        cls, signals: Iterable[BehavioralSignal], current_tier: Tier
    ) -> ClassificationConfidence:
        signals = list(signals)
        if not signals:
            return ClassificationConfidence(
                current_tier=Tier.BEGINNER,
                confidence_score=cls.NO_EVIDENCE_SCORE,
                supporting_signals=[],
                contradictory_signals=[],
                needs_validation=True,
            )
        supporting = [s for s in signals if cls.supports(s, current_tier)]
        contradictory = [s for s in signals if cls.contradicts(s, current_tier)]
        supporting_weight = MathTools.total_weight(s.confidence for s in supporting)
        contradictory_weight = MathTools.total_weight(
            s.confidence for s in contradictory
        )
        total = supporting_weight + contradictory_weight
        raw = supporting_weight / total if total > 0 else cls.ZERO_WEIGHT_SCORE
        score = MathTools.clamp(raw, cls.MIN_SCORE, cls.MAX_SCORE)
        return ClassificationConfidence(
            current_tier=current_tier,
            confidence_score=score,
            supporting_signals=supporting,
            contradictory_signals=contradictory,
            needs_validation=(
                score < cls.VALIDATION_THRESHOLD
                or contradictory_weight > supporting_weight
            ),
        )


class ProgressiveUpdater:
    """Nudge the current tier with damped, confidence-weighted evidence."""

    PUSH: dict[Tier, float] = {
        Tier.BEGINNER: -0.5,
        Tier.INTERMEDIATE: 0.2,
        Tier.ADVANCED: 0.8,
        Tier.HIGHLY_ADVANCED: 0.8,
    }
    MAX_PROPOSAL_CONFIDENCE: float = 0.9

    def __init__(
        self,
        min_signals: int = 3,
        min_weight: float = 2.0,
        damping_factor: float = 6.0,
    ) -> None:
        self.min_signals = min_signals
        self.min_weight = min_weight
        self.damping_factor = damping_factor

    @classmethod
    def adjustment(cls, signals: Iterable[BehavioralSignal]) -> float:
        total = 0.0
        for s in signals:
            if not s.is_neutral:
                total += cls.PUSH[s.tier_indicator] * s.confidence
        return total

    def propose(
        self, signals: Iterable[BehavioralSignal], current_tier: Tier
    ) -> Optional[TierProposal]:
        """Return the reclassified tier, or ``None`` when evidence is too thin."""
        signals = list(signals)
        weight = MathTools.total_weight(s.confidence for s in signals)
        if len(signals) < self.min_signals or weight < self.min_weight:
            return None
        adjustment = self.adjustment(signals)
        months = max(
            0.0,
            TierClassifier.representative_months(current_tier)
            + adjustment * self.damping_factor,
        )
        return TierProposal(
            tier=TierClassifier.classify(months),
            confidence=min(self.MAX_PROPOSAL_CONFIDENCE, weight / len(signals)),
            source="progressive_update",
            evidence=tuple(signals),
            adjustment=adjustment,
            adjusted_months=months,
        )


class MisclassificationDetector:
    """Look for known contradictions between behaviour and the claimed tier."""

    MIN_MATCHES: int = 3

    # name, signal type, indicator, claim predicate, proposed tier, confidence
    PATTERNS = (
        (
            "advanced_claiming_beginner_exercises",
            SignalType.EXERCISE_SELECTION,
            Tier.BEGINNER,
            lambda claimed: claimed >= Tier.ADVANCED,
            Tier.INTERMEDIATE,
            0.7,
        ),
        (
            "beginner_claiming_intermediate_progression",
            SignalType.PROGRESSION_RESPONSE,
            Tier.INTERMEDIATE,
            lambda claimed: claimed == Tier.BEGINNER,
            Tier.INTERMEDIATE,
            0.8,
        ),
    )

    @classmethod
    def detect(
        cls, signals: Iterable[BehavioralSignal], claimed_tier: Tier
    ) -> list[TierProposal]:
        signals = list(signals)
        found: list[TierProposal] = []
        for name, s_type, indicator, applies, proposed, confidence in cls.PATTERNS:
            if not applies(claimed_tier):
                continue
            matches = [
                s
                for s in signals
                if s.signal_type == s_type and s.tier_indicator == indicator
            ]
            if len(matches) >= cls.MIN_MATCHES:
                found.append(
                    TierProposal(
                        tier=proposed,
                        confidence=confidence,
                        source=name,
                        evidence=tuple(matches),
                    )
                )
        found.sort(key=lambda p: p.confidence, reverse=True)
        return found

from __future__ import annotations
import datetime
import logging
from typing import Callable, Optional

from algorithms.training_age import FactorExtractor, base_classification
from confidence_service import ConfidenceEvaluator
from db import (
    ClassificationHistoryRepository,
    ProfileRepository,
    SignalRepository,
)
from models import (
    BehavioralSignal,
    ClassificationConfidence,
    ClassificationHistoryEntry,
    HistoryTrigger,
    ProgressiveClassification,
    Tier,
    TierProposal,
    TrainingFactors,
)
from settings_schema import ClassifierSettings

logger = logging.getLogger(__name__)

BLUEPRINTS = {
    Tier.BEGINNER: "BEGINNER_BLUEPRINT",
    Tier.INTERMEDIATE: "INTERMEDIATE_BLUEPRINT",
    Tier.ADVANCED: "ADVANCED_BLUEPRINT",
    Tier.HIGHLY_ADVANCED: "ADVANCED_BLUEPRINT",
}


def blueprint_for_tier(tier: Tier) -> str:
    return BLUEPRINTS.get(tier, BLUEPRINTS[Tier.BEGINNER])


class ClassificationService:
    """Single read path for a user's tier plus the history write path."""

    def __init__(
        self,
        profile_repo: ProfileRepository,
        signal_repo: SignalRepository,
        history_repo: ClassificationHistoryRepository,
        settings: ClassifierSettings | None = None,
        clock: Callable[[], datetime.datetime] = datetime.datetime.now,
    ) -> None:
        self.profiles = profile_repo
        self.signals = signal_repo
        self.history = history_repo
        self.settings = settings or ClassifierSettings()
        self.clock = clock

    def training_factors(self, user_id: str) -> TrainingFactors:
        return FactorExtractor.extract(self.profiles.get_profile(user_id))

    def base_classification(self, user_id: str) -> dict:
        """Run the formula pipeline for ``user_id``.

        Raises ``ProfileNotFound`` when the user has no profile.
        """
        factors = self.training_factors(user_id)
        tier, formula_tier, months = base_classification(factors)
        return {
            "tier": tier,
            "formula_tier": formula_tier,
            "effective_months": months,
            "factors": factors,
        }

    def get_effective_tier(self, user_id: str) -> Tier:
        latest = self.history.latest(user_id)
        if latest is not None:
            return latest.tier
        return self.base_classification(user_id)["tier"]

    def recent_signals(self, user_id: str) -> list[BehavioralSignal]:
        since = self.clock() - datetime.timedelta(
            days=self.settings.confidence_window_days
        )
        return self.signals.query_signals(user_id, since)

    def get_classification_detail(self, user_id: str) -> ClassificationConfidence:
        signals = self.recent_signals(user_id)
        if not signals:
            return ConfidenceEvaluator.evaluate([], Tier.BEGINNER)
        return ConfidenceEvaluator.evaluate(signals, self.get_effective_tier(user_id))

    def get_classification_history(
        self, user_id: str, limit: int = 10
    ) -> list[ClassificationHistoryEntry]:
        return self.history.query_history(user_id, limit)

    def record_classification_change(
        self,
        user_id: str,
        tier: Tier,
        trigger: HistoryTrigger,
        confidence: float,
        supporting_data: dict | None = None,
    ) -> ClassificationHistoryEntry:
        entry = ClassificationHistoryEntry(
            user_id=user_id,
            timestamp=self.clock(),
            tier=tier,
            confidence=confidence,
            trigger=trigger,
            supporting_data=dict(supporting_data or {}),
        )
        self.history.append_history_entry(entry)
        return entry

    def record_initial_classification(self, user_id: str) -> ClassificationHistoryEntry:
        result = self.base_classification(user_id)
        tier = result["tier"]
        overridden = tier != result["formula_tier"]
        trigger = (
            HistoryTrigger.PERFORMANCE_DATA
            if overridden
            else HistoryTrigger.INITIAL_ONBOARDING
        )
        factors: TrainingFactors = result["factors"]
        entry = self.record_classification_change(
            user_id,
            tier,
            trigger,
            0.5,
            {
                "effective_months": round(result["effective_months"], 2),
                "formula_tier": result["formula_tier"].value,
                "technical_proficiency": factors.technical_proficiency,
                "strength_ratio": (
                    round(factors.strength_level.average_ratio, 3)
                    if factors.strength_level
                    else None
                ),
            },
        )
        logger.info("initial classification for %s: %s (%s)", user_id, tier, trigger.value)
        return entry

    def passes_gate(self, proposal: TierProposal) -> bool:
        return proposal.confidence >= self.settings.auto_apply_confidence

    def apply_proposal(
        self,
        user_id: str,
        proposal: TierProposal,
        current_tier: Tier,
        evaluation: ClassificationConfidence,
    ) -> Optional[ClassificationHistoryEntry]:
        """Record ``proposal`` when it clears the gate and changes the tier."""
        if proposal.tier == current_tier:
            return None
        if not self.passes_gate(proposal):
            logger.debug(
                "proposal %s -> %s for %s below gate (%.2f)",
                proposal.source,
                proposal.tier,
                user_id,
                proposal.confidence,
            )
            return None
        entry = self.record_classification_change(
            user_id,
            proposal.tier,
            HistoryTrigger.BEHAVIORAL_SIGNALS,
            proposal.confidence,
            {
                "source": proposal.source,
                "previous_tier": current_tier.value,
                "evaluation_score": round(evaluation.confidence_score, 4),
                "supporting_signals": len(evaluation.supporting_signals),
                "contradictory_signals": len(evaluation.contradictory_signals),
                "evidence": [s.signal_value for s in proposal.evidence],
                "adjustment": proposal.adjustment,
                "adjusted_months": proposal.adjusted_months,
            },
        )
        logger.info(
            "tier change for %s: %s -> %s via %s",
            user_id,
            current_tier,
            proposal.tier,
            proposal.source,
        )
        return entry

    @staticmethod
    def next_validation_trigger(confidence: ClassificationConfidence) -> Optional[str]:
        if confidence.confidence_score < 0.4:
            return "immediately"
        if confidence.confidence_score < 0.6:
            return "after_next_workout"
        if len(confidence.contradictory_signals) > len(confidence.supporting_signals):
            return "conflicting_signals"
        return None

    def get_progressive_classification(self, user_id: str) -> ProgressiveClassification:
        tier = self.get_effective_tier(user_id)
        detail = self.get_classification_detail(user_id)
        latest = self.history.latest(user_id)
        behavioral = (
            latest is not None and latest.trigger == HistoryTrigger.BEHAVIORAL_SIGNALS
        )
        return ProgressiveClassification(
            tier=tier,
            confidence=detail.confidence_score,
            classification_type="behavioral_adjusted" if behavioral else "initial",
            next_validation_trigger=self.next_validation_trigger(detail),
        )

    def load_blueprint_for_user(self, user_id: str) -> str:
        return blueprint_for_tier(self.get_effective_tier(user_id))

import os
import sys
import random
import datetime
import unittest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from confidence_service import (
    ConfidenceEvaluator,
    MisclassificationDetector,
    ProgressiveUpdater,
)
from models import BehavioralSignal, SignalType, Tier

NOW = datetime.datetime(2024, 3, 1, 12, 0)


def signal(indicator, confidence=0.8, signal_type=SignalType.EXERCISE_SELECTION, value="x", minutes=0):
    return BehavioralSignal(
        "u1",
        signal_type,
        value,
        indicator,
        confidence,
        NOW - datetime.timedelta(minutes=minutes),
    )


class EvaluatorTestCase(unittest.TestCase):
    def test_no_signals(self) -> None:
        for tier in Tier:
            result = ConfidenceEvaluator.evaluate([], tier)
            self.assertEqual(result.confidence_score, 0.3)
            self.assertEqual(result.current_tier, Tier.BEGINNER)
            self.assertTrue(result.needs_validation)

    def test_supporting_and_contradictory(self) -> None:
        signals = [
            signal(Tier.INTERMEDIATE, 0.6),
            signal(Tier.INTERMEDIATE, 0.6),
            signal(Tier.BEGINNER, 0.4),
            signal(None, 0.9),
        ]
        result = ConfidenceEvaluator.evaluate(signals, Tier.INTERMEDIATE)
        self.assertEqual(len(result.supporting_signals), 2)
        self.assertEqual(len(result.contradictory_signals), 1)
        self.assertAlmostEqual(result.confidence_score, 0.75)
        self.assertFalse(result.needs_validation)

    def test_clamped_high(self) -> None:
        result = ConfidenceEvaluator.evaluate([signal(Tier.ADVANCED)], Tier.ADVANCED)
        self.assertEqual(result.confidence_score, 0.95)

    def test_clamped_low(self) -> None:
        result = ConfidenceEvaluator.evaluate([signal(Tier.BEGINNER)], Tier.ADVANCED)
        self.assertEqual(result.confidence_score, 0.1)
        self.assertTrue(result.needs_validation)

    def test_advanced_supports_highly_advanced(self) -> None:
        result = ConfidenceEvaluator.evaluate(
            [signal(Tier.ADVANCED)], Tier.HIGHLY_ADVANCED
        )
        self.assertEqual(len(result.supporting_signals), 1)
        result = ConfidenceEvaluator.evaluate(
            [signal(Tier.HIGHLY_ADVANCED)], Tier.ADVANCED
        )
        self.assertEqual(len(result.contradictory_signals), 1)

    def test_only_neutral_signals(self) -> None:
        result = ConfidenceEvaluator.evaluate([signal(None)], Tier.ADVANCED)
        self.assertEqual(result.confidence_score, 0.5)
        self.assertEqual(result.current_tier, Tier.ADVANCED)
        self.assertTrue(result.needs_validation)

    def test_score_always_clamped(self) -> None:
        rng = random.Random(1234)
        indicators = [None] + list(Tier)
        for _ in range(500):
            signals = [
                signal(rng.choice(indicators), rng.random())
                for _ in range(rng.randint(1, 12))
            ]
            result = ConfidenceEvaluator.evaluate(signals, rng.choice(list(Tier)))
            self.assertGreaterEqual(result.confidence_score, 0.1)
            self.assertLessEqual(result.confidence_score, 0.95)


class ProgressiveUpdaterTestCase(unittest.TestCase):
    def test_needs_enough_signals(self) -> None:
        updater = ProgressiveUpdater()
        signals = [signal(Tier.ADVANCED, 0.9), signal(Tier.ADVANCED, 0.9)]
        self.assertIsNone(updater.propose(signals, Tier.BEGINNER))

    def test_needs_enough_weight(self) -> None:
        updater = ProgressiveUpdater()
        signals = [signal(Tier.ADVANCED, 0.6) for _ in range(3)]
        self.assertIsNone(updater.propose(signals, Tier.BEGINNER))

    def test_promotes_with_strong_evidence(self) -> None:
        updater = ProgressiveUpdater()
        signals = [signal(Tier.ADVANCED, 0.8, minutes=i) for i in range(3)]
        proposal = updater.propose(signals, Tier.INTERMEDIATE)
        # 22 + (3 * 0.8 * 0.8) * 6
        self.assertAlmostEqual(proposal.adjustment, 1.92)
        self.assertAlmostEqual(proposal.adjusted_months, 33.52)
        self.assertEqual(proposal.tier, Tier.ADVANCED)
        self.assertAlmostEqual(proposal.confidence, 0.8)
        self.assertEqual(proposal.source, "progressive_update")

    def test_demotes_and_never_negative(self) -> None:
        updater = ProgressiveUpdater()
        signals = [signal(Tier.BEGINNER, 1.0, minutes=i) for i in range(6)]
        proposal = updater.propose(signals, Tier.BEGINNER)
        self.assertEqual(proposal.adjusted_months, 0.0)
        self.assertEqual(proposal.tier, Tier.BEGINNER)
        self.assertEqual(proposal.confidence, 0.9)

    def test_highly_advanced_pushes_like_advanced(self) -> None:
        self.assertEqual(
            ProgressiveUpdater.adjustment([signal(Tier.HIGHLY_ADVANCED, 0.5)]),
            ProgressiveUpdater.adjustment([signal(Tier.ADVANCED, 0.5)]),
        )
        self.assertEqual(ProgressiveUpdater.adjustment([signal(None, 1.0)]), 0.0)


class DetectorTestCase(unittest.TestCase):
    def test_advanced_claiming_beginner_exercises(self) -> None:
        signals = [signal(Tier.BEGINNER, 0.7, minutes=i) for i in range(3)]
        proposals = MisclassificationDetector.detect(signals, Tier.ADVANCED)
        self.assertEqual(len(proposals), 1)
        self.assertEqual(proposals[0].tier, Tier.INTERMEDIATE)
        self.assertEqual(proposals[0].confidence, 0.7)
        self.assertEqual(proposals[0].source, "advanced_claiming_beginner_exercises")
        self.assertEqual(
            MisclassificationDetector.detect(signals, Tier.HIGHLY_ADVANCED)[0].tier,
            Tier.INTERMEDIATE,
        )
        self.assertEqual(MisclassificationDetector.detect(signals, Tier.INTERMEDIATE), [])

    def test_beginner_claiming_intermediate_progression(self) -> None:
        signals = [
            signal(Tier.INTERMEDIATE, 0.6, SignalType.PROGRESSION_RESPONSE, minutes=i)
            for i in range(3)
        ]
        proposals = MisclassificationDetector.detect(signals, Tier.BEGINNER)
        self.assertEqual(proposals[0].tier, Tier.INTERMEDIATE)
        self.assertEqual(proposals[0].confidence, 0.8)

    def test_below_threshold(self) -> None:
        signals = [signal(Tier.BEGINNER, 0.7, minutes=i) for i in range(2)]
        self.assertEqual(MisclassificationDetector.detect(signals, Tier.ADVANCED), [])


if __name__ == "__main__":
    unittest.main()

from .math_tools import MathTools
from .training_age import (
    FactorExtractor,
    EffectiveAgeCalculator,
    TierClassifier,
    StrengthValidator,
    base_classification,
)

__all__ = [
    "MathTools",
    "FactorExtractor",
    "EffectiveAgeCalculator",
    "TierClassifier",
    "StrengthValidator",
    "base_classification",
]

from typing import Iterable
import numpy as np


class MathTools:
    """Provides small numeric helpers shared by the scoring code."""

    @staticmethod
    def clamp(value: float, min_value: float, max_value: float) -> float:
        """Clamp ``value`` to the inclusive range [min_value, max_value]."""
        if min_value > max_value:
            raise ValueError("min_value must not exceed max_value")
        return max(min_value, min(value, max_value))

    @staticmethod
    def mean(values: Iterable[float], default: float = 0.0) -> float:
        """Return the arithmetic mean of ``values`` or ``default`` when empty."""
        data = [float(v) for v in values]
        if not data:
            return default
        return float(np.mean(data))

    @staticmethod
    def ratio(part: float, total: float) -> float:
        """Return ``part / total`` or 0.0 for an empty total."""
        if total <= 0:
            return 0.0
        return part / total

    @staticmethod
    def strictly_increasing(values: Iterable[float]) -> bool:
        """Return True when each value is greater than the one before it."""
        arr = np.asarray(list(values), dtype=float)
        if arr.size < 2:
            return False
        return bool(np.all(np.diff(arr) > 0))

    @staticmethod
    def total_weight(confidences: Iterable[float]) -> float:
        """Sum confidence weights."""
        return float(sum(float(c) for c in confidences))

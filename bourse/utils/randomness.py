"""Injectable random source.

Every random draw in the market engine goes through a RandomSource so that
tests can seed it, or subclass it to return fixed values.
"""
import math
from typing import Optional, Sequence, TypeVar

import numpy as np

T = TypeVar("T")


class RandomSource:
    """Thin wrapper around a numpy Generator."""

    def __init__(self, seed: Optional[int] = None, generator: Optional[np.random.Generator] = None):
        self._rng = generator if generator is not None else np.random.default_rng(seed)

    def random(self) -> float:
        """Uniform draw in [0, 1)."""
        return float(self._rng.random())

    def uniform(self, low: float, high: float) -> float:
        return low + (high - low) * self.random()

    def randbelow(self, n: int) -> int:
        """Uniform integer in [0, n)."""
        if n <= 0:
            raise ValueError("n must be positive")
        return int(self._rng.integers(n))

    def choice(self, items: Sequence[T]) -> T:
        return items[self.randbelow(len(items))]

    def weighted_choice(self, items: Sequence[T], weights: Sequence[float]) -> T:
        """Draw one item with probability proportional to its weight."""
        p = np.asarray(weights, dtype=float)
        return items[int(self._rng.choice(len(items), p=p / p.sum()))]

    def standard_normal(self) -> float:
        """Standard normal draw via the Box-Muller transform."""
        u1 = 1.0 - self.random()  # (0, 1], keeps log finite
        u2 = self.random()
        return math.sqrt(-2.0 * math.log(u1)) * math.cos(2.0 * math.pi * u2)

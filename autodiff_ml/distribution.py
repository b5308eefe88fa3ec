"""Host-side sampling distributions for ``Backend.random``."""

from dataclasses import dataclass
from typing import Tuple

import numpy as np


@dataclass(frozen=True)
class Distribution:
    """A sampling distribution.

    kind is one of "standard", "uniform", "normal", "bernoulli"; a and b are
    its parameters (low/high, mean/std, prob/unused).
    """

    kind: str = "standard"
    a: float = 0.0
    b: float = 1.0

    @classmethod
    def standard(cls) -> "Distribution":
        """Uniform on [0, 1)."""
        return cls("standard")

    @classmethod
    def uniform(cls, low: float, high: float) -> "Distribution":
        if high < low:
            raise ValueError(f"uniform: high ({high}) < low ({low})")
        return cls("uniform", float(low), float(high))

    @classmethod
    def normal(cls, mean: float, std: float) -> "Distribution":
        if std < 0:
            raise ValueError(f"normal: negative std {std}")
        return cls("normal", float(mean), float(std))

    @classmethod
    def bernoulli(cls, prob: float) -> "Distribution":
        if not 0.0 <= prob <= 1.0:
            raise ValueError(f"bernoulli: prob {prob} outside [0, 1]")
        return cls("bernoulli", float(prob), 0.0)

    def sample(self, shape: Tuple[int, ...], rng: np.random.Generator) -> np.ndarray:
        shape = tuple(shape)
        if self.kind == "standard":
            return rng.random(shape)
        if self.kind == "uniform":
            return rng.uniform(self.a, self.b, size=shape)
        if self.kind == "normal":
            return rng.normal(self.a, self.b, size=shape)
        if self.kind == "bernoulli":
            return (rng.random(shape) < self.a).astype(np.float64)
        raise ValueError(f"Unknown distribution kind: {self.kind}")

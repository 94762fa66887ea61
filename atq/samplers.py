"""Injectable random samplers.

Every stochastic step of the engine draws through a ``Sampler`` so the
distribution family can be swapped without touching the simulation code.
All samplers take an explicit ``numpy.random.Generator``; none of them
touch the global numpy random state.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Protocol, runtime_checkable

import numpy as np

from atq.errors import ConfigurationError


@runtime_checkable
class Sampler(Protocol):
    """Anything that can draw values from a generator."""

    def sample(
        self, rng: np.random.Generator, size: int | tuple[int, ...] | None = None
    ) -> Any:
        ...


# ---------------------------------------------------------------------------
# Built-in families
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class GammaSampler:
    """Gamma distribution parameterised by shape and rate."""
    shape: float
    rate: float

    def __post_init__(self):
        if self.shape <= 0:
            raise ConfigurationError("shape", self.shape, "must be positive")
        if self.rate <= 0:
            raise ConfigurationError("rate", self.rate, "must be positive")

    def sample(self, rng, size=None):
        return rng.gamma(self.shape, 1.0 / self.rate, size=size)


@dataclass(frozen=True)
class BinomialSampler:
    n: int
    p: float

    def __post_init__(self):
        if self.n < 0:
            raise ConfigurationError("n", self.n, "must be non-negative")
        if not 0.0 <= self.p <= 1.0:
            raise ConfigurationError("p", self.p, "must be in [0, 1]")

    def sample(self, rng, size=None):
        return rng.binomial(self.n, self.p, size=size)


@dataclass(frozen=True)
class ExponentialSampler:
    """Exponential distribution with mean ``scale``.

    ``scale == 0`` is allowed and always returns zero (no delay).
    """
    scale: float

    def __post_init__(self):
        if self.scale < 0:
            raise ConfigurationError("scale", self.scale, "must be non-negative")

    def sample(self, rng, size=None):
        if self.scale == 0:
            return np.zeros(size) if size is not None else 0.0
        return rng.exponential(self.scale, size=size)


@dataclass(frozen=True)
class PoissonSampler:
    """Poisson jitter added to a fixed floor: ``shift + Poisson(lam)``."""
    lam: float
    shift: int = 0

    def __post_init__(self):
        if self.lam < 0:
            raise ConfigurationError("lam", self.lam, "must be non-negative")

    def sample(self, rng, size=None):
        return self.shift + rng.poisson(self.lam, size=size)


@dataclass(frozen=True)
class GeometricSampler:
    """Number of failures before the first success, plus ``shift``."""
    p: float
    shift: int = 0

    def __post_init__(self):
        if not 0.0 < self.p <= 1.0:
            raise ConfigurationError("p", self.p, "must be in (0, 1]")

    def sample(self, rng, size=None):
        # numpy counts trials, not failures
        return self.shift + rng.geometric(self.p, size=size) - 1


@dataclass(frozen=True, init=False)
class CallableSampler:
    """Wrap an arbitrary ``fn(rng, size=..., **params)`` as a sampler.

    This is the extension point for families the engine does not ship,
    e.g. ``CallableSampler(lambda rng, size, lo, hi: rng.integers(lo, hi, size), lo=10, hi=30)``.
    """
    fn: Callable[..., Any]
    params: dict[str, Any] = field(default_factory=dict)

    def __init__(self, fn: Callable[..., Any], **params: Any) -> None:
        if not callable(fn):
            raise ConfigurationError("fn", fn, "must be callable")
        object.__setattr__(self, "fn", fn)
        object.__setattr__(self, "params", dict(params))

    def sample(self, rng, size=None):
        return self.fn(rng, size=size, **self.params)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def start_day_sampler(avg_start: float, min_start: int) -> PoissonSampler:
    """Default epidemic start-day distribution.

    Centred at ``avg_start`` with a hard floor at ``min_start``.
    """
    if avg_start < min_start:
        raise ConfigurationError(
            "avg_start", avg_start, f"must be >= min_start ({min_start})"
        )
    return PoissonSampler(lam=float(avg_start - min_start), shift=int(min_start))


def ensure_generator(
    rng: np.random.Generator | int | None,
) -> np.random.Generator:
    """Return a Generator from a seed, an existing Generator or ``None``."""
    if isinstance(rng, np.random.Generator):
        return rng
    return np.random.default_rng(rng)

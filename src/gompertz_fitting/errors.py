"""Error and warning taxonomy.

Fatal problems are exceptions raised before any sampling starts. Soft
problems found while sampling are reported with ``warnings.warn`` so that a
fit always returns its draws.
"""

from __future__ import annotations

from typing import Optional

import numpy as np

__all__ = [
    "GompertzError",
    "DomainError",
    "ConfigurationError",
    "NonFiniteDensityError",
    "DivergentTransition",
    "ConvergenceWarning",
]


class GompertzError(Exception):
    """Base class for errors raised by gompertz_fitting."""


class DomainError(GompertzError, ValueError):
    """Age outside the grid, or a malformed observation."""


class ConfigurationError(GompertzError, ValueError):
    """Invalid option values (raised before sampling starts)."""


class NonFiniteDensityError(GompertzError, FloatingPointError):
    """Log density or gradient is NaN/Inf at a finite parameter vector."""

    def __init__(self, message: str, theta: Optional[np.ndarray] = None):
        super().__init__(message)
        self.theta = None if theta is None else np.array(theta, dtype=float)


class DivergentTransition(UserWarning):
    """At least one post-warmup transition diverged."""


class ConvergenceWarning(UserWarning):
    """R-hat / effective sample size / E-BFMI checks failed."""

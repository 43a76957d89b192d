from __future__ import annotations

import math
from typing import Tuple

import numpy as np


def readonly(arr: np.ndarray) -> np.ndarray:
    """Return ``arr`` with its write flag cleared."""
    arr = np.asarray(arr)
    arr.setflags(write=False)
    return arr


def interval_quantiles(prob: float) -> Tuple[float, float]:
    """Quantile levels of a central credible interval (0.95 -> (0.025, 0.975))."""
    prob = float(prob)
    if not (0.0 < prob < 1.0):
        raise ValueError(f"prob must be in (0, 1); got {prob!r}.")
    tail = 0.5 * (1.0 - prob)
    return (tail, 1.0 - tail)


def log1mexp(x: np.ndarray) -> np.ndarray:
    """log(1 - exp(-x)) for x > 0, accurate at both ends."""
    x = np.asarray(x, dtype=float)
    return np.where(
        x < math.log(2.0),
        np.log(-np.expm1(-np.minimum(x, math.log(2.0)))),
        np.log1p(-np.exp(-np.maximum(x, math.log(2.0)))),
    )


def logit(p: np.ndarray) -> np.ndarray:
    p = np.asarray(p, dtype=float)
    return np.log(p) - np.log1p(-p)

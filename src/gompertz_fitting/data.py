from __future__ import annotations

from dataclasses import dataclass
from typing import Hashable, Sequence, Tuple

import numpy as np
from scipy.special import gammaln

from .inputs import CountObservation, Panel, SurvivalObservation
from .util import readonly


@dataclass(frozen=True)
class CountArrays:
    """Count data on a dense (stratum, age) grid.

    Cells without an observation, or with zero exposure, are masked out.
    """

    rows: np.ndarray  # stratum positions in the parameter vector, shape (S,)
    exposure: np.ndarray  # (S, A)
    counts: np.ndarray  # (S, A)
    mask: np.ndarray  # (S, A) bool
    log_exposure: np.ndarray  # (S, A), 0 where masked
    log_norm: float  # sum of -lgamma(count + 1) over unmasked cells

    @property
    def size(self) -> int:
        return int(self.rows.shape[0])


@dataclass(frozen=True)
class SurvivalArrays:
    """One row per survival observation.

    ``window`` marks the grid ages covered by each observation.
    """

    rows: np.ndarray  # stratum position of each observation, shape (K,)
    window: np.ndarray  # (K, A) bool
    observed: np.ndarray  # (K,)
    sample_size: np.ndarray  # (K,), NaN when unknown

    @property
    def size(self) -> int:
        return int(self.rows.shape[0])


def prepare_counts(panel: Panel, keys: Sequence[Hashable]) -> CountArrays:
    """Collect count data for the count-based strata among ``keys``."""
    grid = panel.age_grid
    A = len(grid)
    rows = [i for i, k in enumerate(keys) if not panel.is_survival_only(k)]
    S = len(rows)

    exposure = np.zeros((S, A), dtype=float)
    counts = np.zeros((S, A), dtype=float)
    for s, i in enumerate(rows):
        for obs in panel[keys[i]]:
            if isinstance(obs, CountObservation):
                j = int(grid.index(obs.age))
                exposure[s, j] = obs.exposure
                counts[s, j] = obs.count

    mask = exposure > 0.0
    log_exposure = np.zeros_like(exposure)
    log_exposure[mask] = np.log(exposure[mask])
    log_norm = -float(np.sum(gammaln(counts[mask] + 1.0)))

    return CountArrays(
        rows=readonly(np.asarray(rows, dtype=int)),
        exposure=readonly(exposure),
        counts=readonly(counts),
        mask=readonly(mask),
        log_exposure=readonly(log_exposure),
        log_norm=log_norm,
    )


def prepare_survival(panel: Panel, keys: Sequence[Hashable]) -> SurvivalArrays:
    """Collect survival observations for the survival-only strata among ``keys``."""
    grid = panel.age_grid
    ages = grid.as_array()
    rows, windows, observed, sizes = [], [], [], []
    for i, k in enumerate(keys):
        if not panel.is_survival_only(k):
            continue
        for obs in panel[k]:
            if not isinstance(obs, SurvivalObservation):
                continue
            rows.append(i)
            windows.append((ages >= obs.age_start) & (ages <= obs.age_end))
            observed.append(obs.observed_probability)
            sizes.append(np.nan if obs.sample_size is None else obs.sample_size)

    A = len(grid)
    return SurvivalArrays(
        rows=readonly(np.asarray(rows, dtype=int)),
        window=readonly(np.asarray(windows, dtype=bool).reshape(len(rows), A)),
        observed=readonly(np.asarray(observed, dtype=float)),
        sample_size=readonly(np.asarray(sizes, dtype=float)),
    )


def stratum_labels(keys: Sequence[Hashable]) -> Tuple[str, ...]:
    return tuple(str(k) for k in keys)

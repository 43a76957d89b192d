from __future__ import annotations

from dataclasses import dataclass
from functools import cached_property
from typing import Any, Dict, Hashable, Iterator, List, Optional, Sequence, Tuple

import numpy as np

from .config import SamplerConfig
from .diagnostics import DiagnosticsReport, diagnose
from .inputs import Panel
from .posterior import Posterior
from .summary import PosteriorSummary
from .util import interval_quantiles, readonly


@dataclass(frozen=True)
class Band:
    low: np.ndarray
    high: np.ndarray
    median: Optional[np.ndarray] = None


@dataclass(frozen=True)
class Draw:
    """One post-warmup draw of the constrained parameters."""

    chain: int
    index: int
    names: Tuple[str, ...]
    values: np.ndarray

    def __getitem__(self, name: str) -> float:
        try:
            return float(self.values[self.names.index(name)])
        except ValueError as e:
            raise KeyError(name) from e

    def as_dict(self) -> Dict[str, float]:
        return {n: float(v) for n, v in zip(self.names, self.values)}


@dataclass(frozen=True)
class Draws:
    """Read-only constrained draws, one (N_c, P) array per chain.

    Pooled views skip failed chains unless every chain failed.
    """

    names: Tuple[str, ...]
    chains: Tuple[np.ndarray, ...]
    chain_ids: Tuple[int, ...]
    failed: Tuple[bool, ...] = ()

    def _col(self, name: str) -> int:
        try:
            return self.names.index(name)
        except ValueError as e:
            raise KeyError(f"Unknown parameter {name!r}. Available: {self.names}") from e

    def _usable(self) -> Tuple[np.ndarray, ...]:
        failed = self.failed or (False,) * len(self.chains)
        keep = tuple(c for c, f in zip(self.chains, failed) if not f)
        return keep if keep else self.chains

    @property
    def num_chains(self) -> int:
        return len(self.chains)

    def __len__(self) -> int:
        return int(sum(c.shape[0] for c in self.chains))

    def __getitem__(self, name: str) -> np.ndarray:
        return self.pooled()[:, self._col(name)]

    def __iter__(self) -> Iterator[Draw]:
        for c in range(len(self.chains)):
            for i in range(self.chains[c].shape[0]):
                yield self.draw(c, i)

    def by_chain(self, name: str) -> Tuple[np.ndarray, ...]:
        j = self._col(name)
        return tuple(c[:, j] for c in self.chains)

    def pooled(self) -> np.ndarray:
        """All usable draws stacked along the first axis, shape (N, P)."""
        usable = self._usable()
        if not usable:
            return np.empty((0, len(self.names)))
        return np.concatenate(usable, axis=0)

    def stacked(self) -> np.ndarray:
        """Usable chains trimmed to a common length, shape (C, N, P)."""
        usable = self._usable()
        n = min((c.shape[0] for c in usable), default=0)
        if not usable:
            return np.empty((0, 0, len(self.names)))
        return np.stack([c[:n] for c in usable], axis=0)

    def draw(self, chain: int, index: int) -> Draw:
        return Draw(
            chain=int(self.chain_ids[chain]),
            index=int(index),
            names=self.names,
            values=self.chains[chain][index],
        )


@dataclass(frozen=True)
class Run:
    """Everything a fit produced: inputs, per-chain results and views on them."""

    model: Any
    panel: Panel
    posterior: Posterior
    config: SamplerConfig
    backend: str
    chains: Tuple[Any, ...]

    # ---- draws ----
    @cached_property
    def draws(self) -> Draws:
        constrained = tuple(
            readonly(self.posterior.constrain(c.samples)) for c in self.chains
        )
        return Draws(
            names=tuple(self.posterior.param_names),
            chains=constrained,
            chain_ids=tuple(c.chain_id for c in self.chains),
            failed=tuple(c.failed for c in self.chains),
        )

    def __getitem__(self, name: str) -> np.ndarray:
        """Pooled draws of one parameter or derived column."""
        if name in self.draws.names:
            return self.draws[name]
        cols = self._derived_columns(self.draws.pooled())
        if name in cols:
            return cols[name]
        raise KeyError(f"Unknown name {name!r}.")

    @property
    def stratum_keys(self) -> Tuple[Hashable, ...]:
        return tuple(self.posterior.likelihood.keys)

    @property
    def failed_chains(self) -> Tuple[int, ...]:
        return tuple(c.chain_id for c in self.chains if c.failed)

    @property
    def truncated(self) -> bool:
        return any(c.truncated for c in self.chains)

    def blocks(self, values: Optional[np.ndarray] = None) -> Dict[str, np.ndarray]:
        """Constrained parameter blocks of ``values`` (default: pooled draws)."""
        v = self.draws.pooled() if values is None else np.asarray(values, dtype=float)
        layout = self.posterior.layout
        return {s.name: v[..., layout.slice(s.name)] for s in layout.specs}

    # ---- derived ----
    def derived(self, name: str) -> np.ndarray:
        """Per-draw values of a derived quantity (pooled)."""
        for spec in self.model.derived_specs():
            if spec.name == name:
                return np.asarray(spec.func(self.blocks(), self.model), dtype=float)
        names = tuple(s.name for s in self.model.derived_specs())
        raise KeyError(f"Unknown derived quantity {name!r}. Available: {names}")

    def _derived_columns(self, values: np.ndarray) -> Dict[str, np.ndarray]:
        blocks = self.blocks(values)
        labels = tuple(self.posterior.likelihood.labels)
        out: Dict[str, np.ndarray] = {}
        for spec in self.model.derived_specs():
            arr = np.asarray(spec.func(blocks, self.model), dtype=float)
            if arr.ndim == 1:
                out[spec.name] = arr
                continue
            arr = arr.reshape(arr.shape[0], int(np.prod(arr.shape[1:])))
            if arr.shape[1] == len(labels):
                tags: Sequence[Any] = labels
            else:
                tags = range(arr.shape[1])
            for j, tag in enumerate(tags):
                out[f"{spec.name}[{tag}]"] = arr[:, j]
        return out

    # ---- reports ----
    @cached_property
    def _report(self) -> DiagnosticsReport:
        return diagnose(
            self.chains,
            self.draws.chains,
            self.draws.names,
            max_tree_depth=self.config.max_tree_depth,
            max_rhat=self.config.max_rhat,
            min_ess=self.config.min_ess,
        )

    def diagnostics(self) -> DiagnosticsReport:
        return self._report

    def summary(self, prob: float = 0.95, *, derived: bool = True) -> PosteriorSummary:
        """Median and central credible interval for every parameter.

        With ``derived=True`` the derived quantities are evaluated per draw
        and summarized the same way.
        """
        # chains aborted during warmup hold no draws; rows are NaN if none do
        usable = [v for v in self.draws._usable() if v.shape[0]]
        if not usable:
            usable = [np.empty((0, len(self.draws.names)))]
        names: List[str] = list(self.draws.names)
        per_chain: List[np.ndarray] = list(usable)
        if derived:
            cols = [self._derived_columns(v) for v in usable]
            extra = list(cols[0].keys())
            names += extra
            per_chain = [
                np.column_stack([v] + [c[k] for k in extra]) if extra else v
                for v, c in zip(usable, cols)
            ]
        return PosteriorSummary.from_chains(names, per_chain, prob=prob)

    def band(self, ages: Any = None, prob: float = 0.95) -> Dict[Hashable, Band]:
        """Hazard credible band per stratum over ``ages`` (default: the grid)."""
        lo_q, hi_q = interval_quantiles(prob)
        ages = np.asarray(self.panel.age_grid.ages if ages is None else ages)
        blocks = self.blocks()
        out: Dict[Hashable, Band] = {}
        for s, key in enumerate(self.stratum_keys):
            h = self.model.hazard(blocks["log_alpha"][:, s], blocks["beta"][:, s], ages)
            if h.shape[0] == 0:
                empty = np.full(np.shape(ages), np.nan)
                out[key] = Band(low=empty, high=empty.copy(), median=empty.copy())
                continue
            low, median, high = np.quantile(h, [lo_q, 0.5, hi_q], axis=0)
            out[key] = Band(low=low, high=high, median=median)
        return out

from __future__ import annotations

from dataclasses import dataclass
import math
from typing import Dict, Iterator, Sequence, Tuple

import numpy as np

from .diagnostics import effective_sample_size, split_rhat
from .util import interval_quantiles


@dataclass(frozen=True)
class SummaryRow:
    name: str
    median: float
    lower: float
    upper: float
    mean: float
    sd: float
    rhat: float = float("nan")
    ess: float = float("nan")

    @property
    def width(self) -> float:
        return self.upper - self.lower


@dataclass(frozen=True)
class PosteriorSummary:
    """Posterior table keyed by parameter name.

    Quantiles use NumPy's default linear interpolation (Hyndman & Fan type 7).
    """

    rows: Dict[str, SummaryRow]
    prob: float = 0.95

    @property
    def quantiles(self) -> Tuple[float, float]:
        return interval_quantiles(self.prob)

    def __getitem__(self, name: str) -> SummaryRow:
        try:
            return self.rows[name]
        except KeyError as e:
            raise KeyError(f"{name!r} not in summary. Available: {tuple(self.rows)}") from e

    def __contains__(self, name: object) -> bool:
        return name in self.rows

    def __iter__(self) -> Iterator[str]:
        return iter(self.rows)

    def __len__(self) -> int:
        return len(self.rows)

    def keys(self):
        return self.rows.keys()

    def items(self):
        return self.rows.items()

    def as_dict(self) -> Dict[str, Dict[str, float]]:
        return {
            name: {
                "median": r.median,
                "lower": r.lower,
                "upper": r.upper,
                "mean": r.mean,
                "sd": r.sd,
                "rhat": r.rhat,
                "ess": r.ess,
            }
            for name, r in self.rows.items()
        }

    def to_string(self, digits: int = 4) -> str:
        lo, hi = self.quantiles
        lo_h, hi_h = f"{100 * lo:g}%", f"{100 * hi:g}%"
        lines = [
            f"{'':>22s} {'median':>10s} {lo_h:>10s} {hi_h:>10s} {'sd':>10s} {'rhat':>7s} {'ess':>7s}"
        ]
        for name, r in self.rows.items():
            ess = f"{r.ess:7.0f}" if math.isfinite(r.ess) else f"{'nan':>7s}"
            lines.append(
                f"{name:>22s} {r.median:10.{digits}g} {r.lower:10.{digits}g} "
                f"{r.upper:10.{digits}g} {r.sd:10.{digits}g} {r.rhat:7.3f} {ess}"
            )
        return "\n".join(lines)

    def __str__(self) -> str:
        return self.to_string()

    @staticmethod
    def from_chains(
        names: Sequence[str], chains: Sequence[np.ndarray], *, prob: float = 0.95
    ) -> "PosteriorSummary":
        """Summarize per-chain draws, each shaped (N_c, len(names)).

        Quantiles pool every draw; R-hat and ESS use the chains trimmed to a
        common length.
        """
        lo_q, hi_q = interval_quantiles(prob)
        names = tuple(names)
        chains = [np.asarray(c, dtype=float).reshape(-1, len(names)) for c in chains]
        pooled = np.concatenate(chains, axis=0) if chains else np.empty((0, len(names)))
        n_common = min((c.shape[0] for c in chains), default=0)
        stacked = np.stack([c[:n_common] for c in chains], axis=0) if chains else None

        rows: Dict[str, SummaryRow] = {}
        for j, name in enumerate(names):
            col = pooled[:, j]
            ok = col[np.isfinite(col)]
            if ok.size:
                lower, median, upper = np.quantile(ok, [lo_q, 0.5, hi_q])
                mean = float(np.mean(ok))
                sd = float(np.std(ok, ddof=1)) if ok.size > 1 else float("nan")
            else:
                lower = median = upper = mean = sd = float("nan")
            if stacked is not None and n_common:
                rhat = split_rhat(stacked[:, :, j])
                ess = effective_sample_size(stacked[:, :, j])
            else:
                rhat = ess = float("nan")
            rows[name] = SummaryRow(
                name=name,
                median=float(median),
                lower=float(lower),
                upper=float(upper),
                mean=mean,
                sd=sd,
                rhat=rhat,
                ess=ess,
            )
        return PosteriorSummary(rows=rows, prob=float(prob))

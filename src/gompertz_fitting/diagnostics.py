"""Convergence diagnostics: split R-hat, multi-chain ESS, E-BFMI and sampler flags."""

from __future__ import annotations

from dataclasses import dataclass, field
import math
from typing import Any, Dict, List, Sequence, Tuple
import warnings

import numpy as np
from scipy.fft import irfft, next_fast_len, rfft

from .errors import ConvergenceWarning, DivergentTransition

EBFMI_THRESHOLD = 0.3


def split_rhat(x: np.ndarray) -> float:
    """Split potential scale reduction factor for draws of shape (chains, draws).

    Each chain is split in half (the middle draw is dropped for odd lengths).
    Returns NaN with fewer than 4 draws per chain or zero within-chain variance.
    """
    x = np.asarray(x, dtype=float)
    if x.ndim == 1:
        x = x[None, :]
    n = x.shape[1]
    if n < 4 or not np.all(np.isfinite(x)):
        return float("nan")
    half = n // 2
    halves = np.concatenate([x[:, :half], x[:, -half:]], axis=0)

    chain_mean = halves.mean(axis=1)
    W = float(np.mean(halves.var(axis=1, ddof=1)))
    B = half * float(np.var(chain_mean, ddof=1))
    if not W > 0.0:
        return float("nan")
    var_plus = (half - 1.0) / half * W + B / half
    return math.sqrt(var_plus / W)


def _autocovariance(x: np.ndarray) -> np.ndarray:
    """Biased autocovariance along the last axis, via FFT."""
    n = x.shape[-1]
    m = next_fast_len(2 * n)
    centered = x - x.mean(axis=-1, keepdims=True)
    f = rfft(centered, n=m, axis=-1)
    acov = irfft(f * np.conjugate(f), n=m, axis=-1)[..., :n]
    return acov / n


def effective_sample_size(x: np.ndarray) -> float:
    """Multi-chain ESS with Geyer's initial monotone sequence estimator.

    Computed on the raw draws; no rank normalization or chain splitting.
    """
    x = np.asarray(x, dtype=float)
    if x.ndim == 1:
        x = x[None, :]
    n_chains, n = x.shape
    if n < 4 or not np.all(np.isfinite(x)):
        return float("nan")

    acov = _autocovariance(x)
    chain_mean = x.mean(axis=1)
    mean_var = float(np.mean(acov[:, 0])) * n / (n - 1.0)
    var_plus = mean_var * (n - 1.0) / n
    if n_chains > 1:
        var_plus += float(np.var(chain_mean, ddof=1))
    if not var_plus > 0.0:
        return float("nan")

    rho = np.zeros(n)
    rho[0] = 1.0
    rho_even = 1.0
    rho_odd = 1.0 - (mean_var - float(np.mean(acov[:, 1]))) / var_plus
    rho[1] = rho_odd

    # sum consecutive pairs while they stay positive
    t = 1
    while t < n - 3 and rho_even + rho_odd > 0.0:
        rho_even = 1.0 - (mean_var - float(np.mean(acov[:, t + 1]))) / var_plus
        rho_odd = 1.0 - (mean_var - float(np.mean(acov[:, t + 2]))) / var_plus
        if rho_even + rho_odd >= 0.0:
            rho[t + 1] = rho_even
            rho[t + 2] = rho_odd
        t += 2
    max_t = t - 2
    if rho_even > 0.0:
        rho[max_t + 1] = rho_even

    # monotone
    t = 1
    while t <= max_t - 2:
        if rho[t + 1] + rho[t + 2] > rho[t - 1] + rho[t]:
            rho[t + 1] = 0.5 * (rho[t - 1] + rho[t])
            rho[t + 2] = rho[t + 1]
        t += 2

    total = float(n_chains * n)
    tau = -1.0 + 2.0 * float(np.sum(rho[: max_t + 1])) + float(np.sum(rho[max_t + 1 : max_t + 2]))
    tau = max(tau, 1.0 / math.log10(total))
    return total / tau


def ebfmi(energy: np.ndarray) -> float:
    """Estimated Bayesian fraction of missing information for one chain."""
    e = np.asarray(energy, dtype=float)
    if e.size < 2:
        return float("nan")
    var = float(np.var(e))
    if not var > 0.0:
        return float("nan")
    return float(np.mean(np.square(np.diff(e)))) / var


@dataclass(frozen=True)
class NotConverged:
    """A parameter that failed the R-hat or ESS threshold. A verdict, not an error."""

    name: str
    rhat: float
    ess: float
    reasons: Tuple[str, ...]


@dataclass(frozen=True)
class DiagnosticsReport:
    param_names: Tuple[str, ...]
    rhat: Dict[str, float]
    ess: Dict[str, float]
    divergences: int
    divergences_per_chain: Tuple[int, ...]
    treedepth_hits: int
    ebfmi: Tuple[float, ...]
    not_converged: Tuple[NotConverged, ...]
    failed_chains: Tuple[int, ...] = ()
    truncated_chains: Tuple[int, ...] = ()
    chain_messages: Dict[int, str] = field(default_factory=dict)
    draws_per_chain: int = 0
    max_rhat: float = 1.01
    min_ess: float = 400.0

    @property
    def converged(self) -> bool:
        return not self.not_converged

    @property
    def ok(self) -> bool:
        """Converged, no divergences and every chain ran to completion."""
        return (
            self.converged
            and self.divergences == 0
            and not self.failed_chains
            and not self.truncated_chains
        )

    @property
    def low_ebfmi_chains(self) -> Tuple[int, ...]:
        return tuple(
            i for i, v in enumerate(self.ebfmi) if math.isfinite(v) and v < EBFMI_THRESHOLD
        )

    def messages(self) -> List[Tuple[type, str]]:
        """(warning category, message) pairs for everything worth reporting."""
        out: List[Tuple[type, str]] = []
        if self.divergences:
            out.append(
                (
                    DivergentTransition,
                    f"{self.divergences} divergent transition(s) after warmup "
                    f"(per chain: {list(self.divergences_per_chain)}). "
                    "Consider raising target_accept or reparameterizing.",
                )
            )
        for c in self.failed_chains:
            msg = self.chain_messages.get(c, "")
            out.append((ConvergenceWarning, f"chain {c} failed: {msg}"))
        if self.truncated_chains:
            out.append(
                (ConvergenceWarning, f"chain(s) {list(self.truncated_chains)} were aborted early.")
            )
        if self.treedepth_hits:
            out.append(
                (
                    ConvergenceWarning,
                    f"{self.treedepth_hits} iteration(s) hit the maximum tree depth.",
                )
            )
        if self.low_ebfmi_chains:
            out.append(
                (
                    ConvergenceWarning,
                    f"E-BFMI below {EBFMI_THRESHOLD} in chain(s) {list(self.low_ebfmi_chains)}.",
                )
            )
        if self.not_converged:
            names = ", ".join(nc.name for nc in self.not_converged)
            out.append(
                (
                    ConvergenceWarning,
                    f"{len(self.not_converged)} parameter(s) did not converge "
                    f"(rhat > {self.max_rhat} or ess < {self.min_ess}): {names}",
                )
            )
        return out

    def emit_warnings(self) -> None:
        for category, msg in self.messages():
            warnings.warn(msg, category, stacklevel=3)

    def summary(self, digits: int = 4) -> str:
        lines = [
            f"DiagnosticsReport(ok={self.ok}, divergences={self.divergences}, "
            f"draws_per_chain={self.draws_per_chain})"
        ]
        for name in self.param_names:
            lines.append(
                f"  {name:>20s}: rhat={self.rhat[name]:.{digits}g} ess={self.ess[name]:.{digits}g}"
            )
        for _, msg in self.messages():
            lines.append(f"  ! {msg}")
        return "\n".join(lines)


def diagnose(
    chains: Sequence[Any],
    values: Sequence[np.ndarray],
    names: Sequence[str],
    *,
    max_tree_depth: int = 10,
    max_rhat: float = 1.01,
    min_ess: float = 400.0,
) -> DiagnosticsReport:
    """Build a report from chain results and their constrained draws.

    R-hat and ESS use the chains that did not fail, trimmed to their common
    length; sampler statistics use every chain.
    """
    names = tuple(names)
    usable = [v for c, v in zip(chains, values) if not c.failed and v.shape[0] > 0]
    n_common = min((v.shape[0] for v in usable), default=0)

    rhat: Dict[str, float] = {}
    ess: Dict[str, float] = {}
    not_converged: List[NotConverged] = []
    if usable and n_common > 0:
        stacked = np.stack([v[:n_common] for v in usable], axis=0)
    else:
        stacked = np.empty((0, 0, len(names)))

    for j, name in enumerate(names):
        if stacked.shape[0] and n_common:
            r = split_rhat(stacked[:, :, j])
            e = effective_sample_size(stacked[:, :, j])
        else:
            r = e = float("nan")
        rhat[name] = r
        ess[name] = e

        reasons = []
        if not math.isfinite(r):
            reasons.append("rhat unavailable")
        elif r > max_rhat:
            reasons.append(f"rhat {r:.4g} > {max_rhat}")
        if not math.isfinite(e):
            reasons.append("ess unavailable")
        elif e < min_ess:
            reasons.append(f"ess {e:.4g} < {min_ess}")
        if reasons:
            not_converged.append(NotConverged(name=name, rhat=r, ess=e, reasons=tuple(reasons)))

    per_chain = tuple(int(c.divergences) for c in chains)
    depth_hits = 0
    energies = []
    for c in chains:
        depth = c.stats.get("tree_depth")
        if depth is not None and depth.size:
            depth_hits += int(np.count_nonzero(depth >= int(max_tree_depth)))
        energies.append(ebfmi(c.stats.get("energy", np.empty(0))))

    return DiagnosticsReport(
        param_names=names,
        rhat=rhat,
        ess=ess,
        divergences=int(sum(per_chain)),
        divergences_per_chain=per_chain,
        treedepth_hits=depth_hits,
        ebfmi=tuple(energies),
        not_converged=tuple(not_converged),
        failed_chains=tuple(c.chain_id for c in chains if c.failed),
        truncated_chains=tuple(c.chain_id for c in chains if c.truncated),
        chain_messages={c.chain_id: c.message for c in chains if c.message},
        draws_per_chain=int(n_common),
        max_rhat=float(max_rhat),
        min_ess=float(min_ess),
    )

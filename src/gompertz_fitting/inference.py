"""Observation models: data + Gompertz hazard -> log-likelihood and gradient.

Every likelihood works on the *constrained* parameter blocks and returns
``(log_likelihood, {block_name: gradient})``. The blocks it needs, the
priors that apply to them and a data-driven starting guess are declared by
``parameters()``, ``prior_terms()`` and ``initial_guess()``.
"""

from __future__ import annotations

import math
from typing import Dict, Hashable, Literal, Mapping, Tuple

import numpy as np
from scipy.special import gammaln

from .data import CountArrays, SurvivalArrays, prepare_counts, prepare_survival, stratum_labels
from .errors import ConfigurationError
from .inputs import Panel
from .params import HalfNormal, ParameterSpec, Prior, PriorTerm
from .util import log1mexp, logit

LikelihoodKind = Literal["auto", "count", "random_walk", "mixed"]

# Hazards outside [exp(-50), 1e6] only occur in diverging sampler states.
LOG_HAZARD_MIN = -50.0
LOG_HAZARD_MAX = math.log(1e6)

_LOG_SQRT_2PI = 0.5 * math.log(2.0 * math.pi)
_P_EPS = 1e-12


def clamped_log_hazard(
    log_alpha: np.ndarray, beta: np.ndarray, ages_c: np.ndarray
) -> Tuple[np.ndarray, np.ndarray]:
    """Linear predictor log_alpha + beta * age_c, clamped, plus its active mask.

    Parameters have shape (S,) and ages_c shape (A,); outputs are (S, A).
    Clamped entries have zero derivative.
    """
    raw = np.asarray(log_alpha, dtype=float)[..., None] + np.asarray(beta, dtype=float)[
        ..., None
    ] * np.asarray(ages_c, dtype=float)
    eta = np.clip(raw, LOG_HAZARD_MIN, LOG_HAZARD_MAX)
    active = (raw > LOG_HAZARD_MIN) & (raw < LOG_HAZARD_MAX)
    return eta, active


def poisson_loglike(
    arrays: CountArrays, log_alpha: np.ndarray, beta: np.ndarray, ages_c: np.ndarray
) -> Tuple[float, np.ndarray, np.ndarray]:
    """Poisson(count | exposure * mu) summed over cells with exposure > 0.

    Returns the log-likelihood and its gradient w.r.t. log_alpha and beta of
    the strata in ``arrays.rows`` (same order).
    """
    eta, active = clamped_log_hazard(log_alpha, beta, ages_c)
    mask = arrays.mask
    rate = arrays.exposure * np.exp(eta)
    cell = arrays.counts * (arrays.log_exposure + eta) - rate
    ll = float(np.sum(cell, where=mask)) + arrays.log_norm

    resid = np.where(mask & active, arrays.counts - rate, 0.0)
    return ll, resid.sum(axis=-1), resid @ np.asarray(ages_c, dtype=float)


def survival_loglike(
    arrays: SurvivalArrays,
    log_alpha: np.ndarray,
    beta: np.ndarray,
    ages_c: np.ndarray,
    logit_scale: float,
) -> Tuple[float, np.ndarray, np.ndarray]:
    """Log-likelihood of aggregate death probabilities nqx.

    ``log_alpha``/``beta`` are per observation (K,). The model probability is
    q = 1 - exp(-H), H = sum of hazards over the observation's age window.

    * sample_size known: Binomial with p_obs * n pseudo deaths out of n.
    * otherwise: logit(q) ~ Normal(logit(p_obs), logit_scale).
    """
    eta, active = clamped_log_hazard(log_alpha, beta, ages_c)
    mu = np.where(arrays.window, np.exp(eta), 0.0)
    H = mu.sum(axis=-1)
    mu_active = np.where(active, mu, 0.0)
    dH_da = mu_active.sum(axis=-1)
    dH_db = mu_active @ np.asarray(ages_c, dtype=float)

    log_q = log1mexp(H)
    p_obs = np.clip(arrays.observed, _P_EPS, 1.0 - _P_EPS)
    binomial = np.isfinite(arrays.sample_size)

    ll = np.zeros_like(H)
    dll_dH = np.zeros_like(H)

    gauss = ~binomial
    if np.any(gauss):
        s = float(logit_scale)
        z = (log_q[gauss] + H[gauss] - logit(p_obs[gauss])) / s
        ll[gauss] = -0.5 * z * z - math.log(s) - _LOG_SQRT_2PI
        # d logit(q) / dH = 1 / q
        dll_dH[gauss] = -(z / s) * np.exp(-log_q[gauss])

    if np.any(binomial):
        n = arrays.sample_size[binomial]
        k = arrays.observed[binomial] * n
        logC = gammaln(n + 1.0) - gammaln(k + 1.0) - gammaln((n - k) + 1.0)
        Hb = H[binomial]
        ll[binomial] = logC + k * log_q[binomial] - (n - k) * Hb
        # d log q / dH = exp(-H) / q
        dll_dH[binomial] = k * np.exp(-Hb - log_q[binomial]) - (n - k)

    return float(np.sum(ll)), dll_dH * dH_da, dll_dH * dH_db


def _normal_chain(x: np.ndarray, sigma: float) -> Tuple[float, np.ndarray, float]:
    """Random walk x_t ~ Normal(x_{t-1}, sigma): (logp, dlogp/dx, dlogp/dsigma)."""
    d = np.diff(x)
    z = d / sigma
    lp = float(np.sum(-0.5 * z * z)) - d.size * (math.log(sigma) + _LOG_SQRT_2PI)
    g = np.zeros_like(x)
    g[1:] -= d / (sigma * sigma)
    g[:-1] += d / (sigma * sigma)
    g_sigma = (float(np.sum(z * z)) - d.size) / sigma
    return lp, g, g_sigma


def _normal_group(x: np.ndarray, mu: float, sigma: float) -> Tuple[float, np.ndarray, float, float]:
    """Exchangeable x_s ~ Normal(mu, sigma): (logp, d/dx, d/dmu, d/dsigma)."""
    d = x - mu
    z = d / sigma
    lp = float(np.sum(-0.5 * z * z)) - d.size * (math.log(sigma) + _LOG_SQRT_2PI)
    g = -d / (sigma * sigma)
    return lp, g, -float(np.sum(g)), (float(np.sum(z * z)) - d.size) / sigma


def _regression_guess(arrays: CountArrays, ages_c: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Least-squares line through log(count / exposure) per stratum."""
    S = arrays.size
    a = np.full(S, -6.0)
    b = np.full(S, 0.1)
    for s in range(S):
        ok = arrays.mask[s] & (arrays.counts[s] > 0)
        if np.count_nonzero(ok) >= 2:
            y = np.log(arrays.counts[s, ok] / arrays.exposure[s, ok])
            x = ages_c[ok]
            slope, intercept = np.polyfit(x, y, 1)
            a[s], b[s] = intercept, slope
        elif np.count_nonzero(ok) == 1:
            a[s] = float(np.log(arrays.counts[s, ok] / arrays.exposure[s, ok])[0]) - b[s] * float(
                ages_c[ok][0]
            )
    return a, b


class CountLikelihood:
    """Independent Poisson count likelihood for every stratum."""

    kind = "count"
    default_priors: Mapping[str, Prior] = {}

    def __init__(self, panel: Panel, *, age_reference: int = 40):
        survival_only = panel.survival_only_keys()
        if survival_only:
            raise ConfigurationError(
                f"Strata {list(survival_only)} only have survival observations; "
                "use likelihood='mixed'."
            )
        self.panel = panel
        self.keys: Tuple[Hashable, ...] = panel.keys()
        self.labels = stratum_labels(self.keys)
        self.age_reference = int(age_reference)
        self.ages_c = panel.age_grid.as_array() - self.age_reference
        self.counts = prepare_counts(panel, self.keys)

    @property
    def num_strata(self) -> int:
        return len(self.keys)

    def parameters(self) -> Tuple[ParameterSpec, ...]:
        S = self.num_strata
        return (
            ParameterSpec("log_alpha", S, labels=self.labels),
            ParameterSpec("beta", S, labels=self.labels),
        )

    def prior_terms(self) -> Tuple[PriorTerm, ...]:
        return (PriorTerm("log_alpha", "log_alpha"), PriorTerm("beta", "beta"))

    def initial_guess(self) -> Dict[str, np.ndarray]:
        a, b = _regression_guess(self.counts, self.ages_c)
        return {"log_alpha": a, "beta": b}

    def _counts_part(self, values: Mapping[str, np.ndarray]) -> Tuple[float, Dict[str, np.ndarray]]:
        a = values["log_alpha"]
        b = values["beta"]
        ga = np.zeros_like(a)
        gb = np.zeros_like(b)
        ll = 0.0
        if self.counts.size:
            rows = self.counts.rows
            ll, ga_rows, gb_rows = poisson_loglike(self.counts, a[rows], b[rows], self.ages_c)
            ga[rows] += ga_rows
            gb[rows] += gb_rows
        return ll, {"log_alpha": ga, "beta": gb}

    def log_likelihood(self, values: Mapping[str, np.ndarray]) -> Tuple[float, Dict[str, np.ndarray]]:
        return self._counts_part(values)


class RandomWalkLikelihood(CountLikelihood):
    """Count likelihood over ordered periods with a random walk on (log_alpha, beta).

    For t >= 2: log_alpha_t ~ Normal(log_alpha_{t-1}, sigma_alpha) and
    beta_t ~ Normal(beta_{t-1}, sigma_beta). Period 1 gets the initial priors.
    """

    kind = "random_walk"

    def parameters(self) -> Tuple[ParameterSpec, ...]:
        return super().parameters() + (
            ParameterSpec("sigma_alpha", 1, transform="log"),
            ParameterSpec("sigma_beta", 1, transform="log"),
        )

    def prior_terms(self) -> Tuple[PriorTerm, ...]:
        return (
            PriorTerm("log_alpha", "log_alpha_init", index=0),
            PriorTerm("beta", "beta_init", index=0),
            PriorTerm("sigma_alpha", "sigma_alpha"),
            PriorTerm("sigma_beta", "sigma_beta"),
        )

    def initial_guess(self) -> Dict[str, np.ndarray]:
        guess = super().initial_guess()
        guess["sigma_alpha"] = np.array([_spread(guess["log_alpha"], 0.05)])
        guess["sigma_beta"] = np.array([_spread(guess["beta"], 0.005)])
        return guess

    def log_likelihood(self, values: Mapping[str, np.ndarray]) -> Tuple[float, Dict[str, np.ndarray]]:
        ll, grads = self._counts_part(values)
        sa = float(values["sigma_alpha"][0])
        sb = float(values["sigma_beta"][0])

        lp_a, g_a, g_sa = _normal_chain(values["log_alpha"], sa)
        lp_b, g_b, g_sb = _normal_chain(values["beta"], sb)
        grads["log_alpha"] += g_a
        grads["beta"] += g_b
        grads["sigma_alpha"] = np.array([g_sa])
        grads["sigma_beta"] = np.array([g_sb])
        return ll + lp_a + lp_b, grads


class MixedAreaLikelihood(CountLikelihood):
    """Areas with counts or with only an aggregate nqx, pooled hierarchically.

    log_alpha_a ~ Normal(mu_log_alpha, sigma_alpha) and
    beta_a ~ Normal(mu_beta, sigma_beta) across areas; count areas add the
    Poisson term, survival-only areas the survival term.
    """

    kind = "mixed"
    default_priors: Mapping[str, Prior] = {"sigma_beta": HalfNormal(0.1)}

    def __init__(self, panel: Panel, *, age_reference: int = 40, survival_logit_scale: float = 0.05):
        self.panel = panel
        self.keys = panel.keys()
        self.labels = stratum_labels(self.keys)
        self.age_reference = int(age_reference)
        self.ages_c = panel.age_grid.as_array() - self.age_reference
        self.counts = prepare_counts(panel, self.keys)
        self.survival = prepare_survival(panel, self.keys)
        self.survival_logit_scale = float(survival_logit_scale)

    def parameters(self) -> Tuple[ParameterSpec, ...]:
        return super().parameters() + (
            ParameterSpec("mu_log_alpha", 1),
            ParameterSpec("mu_beta", 1),
            ParameterSpec("sigma_alpha", 1, transform="log"),
            ParameterSpec("sigma_beta", 1, transform="log"),
        )

    def prior_terms(self) -> Tuple[PriorTerm, ...]:
        return (
            PriorTerm("mu_log_alpha", "mu_log_alpha"),
            PriorTerm("mu_beta", "mu_beta"),
            PriorTerm("sigma_alpha", "sigma_alpha"),
            PriorTerm("sigma_beta", "sigma_beta"),
        )

    def initial_guess(self) -> Dict[str, np.ndarray]:
        S = self.num_strata
        a = np.full(S, np.nan)
        b = np.full(S, np.nan)
        if self.counts.size:
            ga, gb = _regression_guess(self.counts, self.ages_c)
            a[self.counts.rows] = ga
            b[self.counts.rows] = gb
        mu_a = float(np.nanmean(a)) if np.any(np.isfinite(a)) else -6.0
        mu_b = float(np.nanmean(b)) if np.any(np.isfinite(b)) else 0.1
        a = np.where(np.isfinite(a), a, mu_a)
        b = np.where(np.isfinite(b), b, mu_b)
        return {
            "log_alpha": a,
            "beta": b,
            "mu_log_alpha": np.array([mu_a]),
            "mu_beta": np.array([mu_b]),
            "sigma_alpha": np.array([max(float(np.std(a)), 0.1)]),
            "sigma_beta": np.array([max(float(np.std(b)), 0.01)]),
        }

    def log_likelihood(self, values: Mapping[str, np.ndarray]) -> Tuple[float, Dict[str, np.ndarray]]:
        ll, grads = self._counts_part(values)
        a = values["log_alpha"]
        b = values["beta"]

        if self.survival.size:
            rows = self.survival.rows
            ll_s, ga_s, gb_s = survival_loglike(
                self.survival, a[rows], b[rows], self.ages_c, self.survival_logit_scale
            )
            ll += ll_s
            np.add.at(grads["log_alpha"], rows, ga_s)
            np.add.at(grads["beta"], rows, gb_s)

        mu_a = float(values["mu_log_alpha"][0])
        mu_b = float(values["mu_beta"][0])
        sa = float(values["sigma_alpha"][0])
        sb = float(values["sigma_beta"][0])
        lp_a, g_a, g_mu_a, g_sa = _normal_group(a, mu_a, sa)
        lp_b, g_b, g_mu_b, g_sb = _normal_group(b, mu_b, sb)
        grads["log_alpha"] += g_a
        grads["beta"] += g_b
        grads["mu_log_alpha"] = np.array([g_mu_a])
        grads["mu_beta"] = np.array([g_mu_b])
        grads["sigma_alpha"] = np.array([g_sa])
        grads["sigma_beta"] = np.array([g_sb])
        return ll + lp_a + lp_b, grads


def _spread(x: np.ndarray, floor: float) -> float:
    x = np.asarray(x, dtype=float)
    if x.size < 2:
        return floor
    d = np.diff(x)
    return max(float(np.std(d)), floor)


def resolve_kind(panel: Panel, kind: str) -> str:
    """Pick a likelihood for likelihood='auto'."""
    if kind != "auto":
        return kind
    if panel.kind == "area" or panel.survival_only_keys():
        return "mixed"
    if panel.kind == "period" and len(panel) > 1:
        return "random_walk"
    return "count"


def build_likelihood(
    panel: Panel,
    kind: str = "auto",
    *,
    age_reference: int = 40,
    survival_logit_scale: float = 0.05,
):
    """Construct the observation model for a panel."""
    kind = resolve_kind(panel, kind)
    if kind == "count":
        return CountLikelihood(panel, age_reference=age_reference)
    if kind == "random_walk":
        return RandomWalkLikelihood(panel, age_reference=age_reference)
    if kind == "mixed":
        return MixedAreaLikelihood(
            panel, age_reference=age_reference, survival_logit_scale=survival_logit_scale
        )
    raise ConfigurationError(
        f"Unknown likelihood {kind!r}. Available: ('auto', 'count', 'random_walk', 'mixed')"
    )

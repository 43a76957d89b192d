from __future__ import annotations

import math
from typing import Any, Dict, Mapping, Optional, Tuple

import numpy as np

from .errors import NonFiniteDensityError
from .params import DEFAULT_PRIORS, ParameterLayout, Prior


class Posterior:
    """Log posterior density over the flat unconstrained vector theta.

    Combines the priors and one observation model. Positive blocks are
    sampled on the log scale and the log-Jacobian is added. Evaluation never
    mutates the instance, so several chains may share one Posterior.
    """

    def __init__(self, likelihood: Any, priors: Optional[Mapping[str, Prior]] = None):
        self.likelihood = likelihood
        self.layout = ParameterLayout(likelihood.parameters())
        merged: Dict[str, Prior] = dict(DEFAULT_PRIORS)
        merged.update(getattr(likelihood, "default_priors", {}) or {})
        merged.update(priors or {})
        self.priors = merged
        self._terms = tuple(likelihood.prior_terms())
        for term in self._terms:
            if term.role not in self.priors:
                raise KeyError(f"No prior for role {term.role!r}.")

    # ---- shape ----
    @property
    def dim(self) -> int:
        return self.layout.dim

    @property
    def param_names(self) -> Tuple[str, ...]:
        return self.layout.names

    @property
    def age_reference(self) -> int:
        return int(self.likelihood.age_reference)

    # ---- transforms ----
    def unpack(self, theta: np.ndarray) -> Dict[str, np.ndarray]:
        return self.layout.unpack(theta)

    def constrain(self, theta: np.ndarray) -> np.ndarray:
        return self.layout.constrain(theta)

    def unconstrain(self, values: np.ndarray) -> np.ndarray:
        return self.layout.unconstrain(values)

    def initial_guess(self) -> np.ndarray:
        """Data-driven starting point (unconstrained)."""
        return self.layout.pack(self.likelihood.initial_guess())

    # ---- density ----
    def log_prior(self, values: Mapping[str, np.ndarray]) -> Tuple[float, Dict[str, np.ndarray]]:
        lp = 0.0
        grads = {name: np.zeros_like(v) for name, v in values.items()}
        for term in self._terms:
            prior = self.priors[term.role]
            x = values[term.block]
            if term.index is None:
                lp += float(np.sum(prior.logpdf(x)))
                grads[term.block] += prior.grad(x)
            else:
                lp += float(prior.logpdf(x[term.index]))
                grads[term.block][term.index] += float(prior.grad(x[term.index]))
        return lp, grads

    def log_density_and_gradient(self, theta: np.ndarray) -> Tuple[float, np.ndarray]:
        theta = np.asarray(theta, dtype=float)
        if theta.shape != (self.dim,):
            raise ValueError(f"theta must have shape ({self.dim},); got {theta.shape}.")

        with np.errstate(over="ignore", invalid="ignore", divide="ignore"):
            values = self.layout.unpack(theta)
            lp, g_prior = self.log_prior(values)
            ll, g_like = self.likelihood.log_likelihood(values)
            grads = {
                name: g_prior[name] + g_like[name] if name in g_like else g_prior[name]
                for name in g_prior
            }
            total = lp + ll + self.layout.log_jacobian(theta)
            grad = self.layout.chain_rule(grads, theta)

        if not math.isfinite(total) or not np.all(np.isfinite(grad)):
            bad = [n for n, g in zip(self.param_names, grad) if not math.isfinite(g)]
            raise NonFiniteDensityError(
                f"log density {total!r} is not finite"
                + (f" (non-finite gradient for {bad})" if bad else "")
                + f" at theta={np.array2string(theta, precision=4)}",
                theta=theta,
            )
        return float(total), grad

    def log_density(self, theta: np.ndarray) -> float:
        return self.log_density_and_gradient(theta)[0]

    def gradient(self, theta: np.ndarray) -> np.ndarray:
        return self.log_density_and_gradient(theta)[1]

    def __repr__(self) -> str:
        return f"Posterior(likelihood={self.likelihood.kind!r}, dim={self.dim})"

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
import numbers
import os
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

import numpy as np

from .backends import get_backend
from .backends.common import ChainResult, initial_points
from .config import SamplerConfig
from .errors import ConfigurationError, DomainError
from .inference import LOG_HAZARD_MAX, LOG_HAZARD_MIN, build_likelihood
from .inputs import AgeGrid, Panel
from .params import DEFAULT_PRIORS, DerivedSpec, Prior, parse_prior
from .posterior import Posterior
from .run import Run


def modal_age(blocks: Mapping[str, np.ndarray], model: "GompertzModel") -> np.ndarray:
    """Age of maximum deaths density, (log(beta) - log_alpha) / beta + age_reference.

    NaN where beta <= 0 (no interior mode).
    """
    a = np.asarray(blocks["log_alpha"], dtype=float)
    b = np.asarray(blocks["beta"], dtype=float)
    with np.errstate(divide="ignore", invalid="ignore"):
        out = (np.log(b) - a) / b + float(model.age_reference)
    return np.where(b > 0.0, out, np.nan)


MODAL_AGE = DerivedSpec(
    name="modal_age",
    func=modal_age,
    doc="Modal age at death implied by the Gompertz hazard.",
)


@dataclass(frozen=True)
class GompertzModel:
    """Gompertz hazard mu(x) = exp(log_alpha + beta * (x - age_reference)).

    Builders (``prior``, ``derive``, ``with_age_reference``) are pure and
    return a new model.
    """

    age_grid: AgeGrid
    age_reference: int = 40
    priors: Tuple[Tuple[str, Prior], ...] = ()
    derived: Tuple[DerivedSpec, ...] = ()
    name: str = "gompertz"

    def __post_init__(self) -> None:
        if not isinstance(self.age_grid, AgeGrid):
            object.__setattr__(self, "age_grid", AgeGrid(tuple(self.age_grid)))
        ref = self.age_reference
        if isinstance(ref, bool) or not isinstance(ref, numbers.Integral):
            raise ConfigurationError(f"age_reference must be an integer; got {ref!r}.")
        object.__setattr__(self, "age_reference", int(ref))

    @staticmethod
    def span(first: int, last: int, *, age_reference: int = 40) -> "GompertzModel":
        """Model on the grid first..last inclusive."""
        return GompertzModel(age_grid=AgeGrid.span(first, last), age_reference=age_reference)

    # ---- hazard ----
    def centered_ages(self) -> np.ndarray:
        return self.age_grid.as_array() - self.age_reference

    def log_hazard(self, log_alpha: Any, beta: Any, age: Any) -> Any:
        """Clamped linear predictor; broadcasts parameters against ages."""
        self.age_grid.index(age)
        ages_c = np.asarray(age, dtype=float) - self.age_reference
        a = np.asarray(log_alpha, dtype=float)
        b = np.asarray(beta, dtype=float)
        if ages_c.ndim:
            a = a[..., None]
            b = b[..., None]
        return np.clip(a + b * ages_c, LOG_HAZARD_MIN, LOG_HAZARD_MAX)

    def hazard(self, log_alpha: Any, beta: Any, age: Any) -> Any:
        """Instantaneous death rate at the given age(s)."""
        return np.exp(self.log_hazard(log_alpha, beta, age))

    def survival_prob(self, log_alpha: Any, beta: Any, age_start: int, age_end: int) -> Any:
        """Probability of dying between age_start and age_end inclusive.

        1 - prod_x exp(-mu(x)), computed as -expm1(-sum_x mu(x)).
        """
        self.age_grid.index([age_start, age_end])
        if int(age_end) < int(age_start):
            raise DomainError(f"age_end ({age_end}) must be >= age_start ({age_start}).")
        ages = np.arange(int(age_start), int(age_end) + 1)
        H = np.sum(self.hazard(log_alpha, beta, ages), axis=-1)
        return -np.expm1(-H)

    # ---- builders (pure; return new model) ----
    def prior(self, **priors: Any) -> "GompertzModel":
        """Return a new model with priors replaced, e.g. beta=('normal', 0.1, 0.05)."""
        current = dict(self.priors)
        for k, spec in priors.items():
            if k not in DEFAULT_PRIORS:
                raise KeyError(k)
            current[k] = parse_prior(k, spec)
        return replace(self, priors=tuple(current.items()))

    def derive(
        self, name: str, func: Callable[[Mapping[str, np.ndarray], "GompertzModel"], Any], *, doc: str = ""
    ) -> "GompertzModel":
        """Return a new model with a per-draw derived quantity."""
        taken = {MODAL_AGE.name} | {d.name for d in self.derived} | set(DEFAULT_PRIORS)
        if name in taken:
            raise ValueError(f"Derived name {name!r} conflicts with an existing name.")
        return replace(self, derived=self.derived + (DerivedSpec(name=name, func=func, doc=doc),))

    def with_age_reference(self, age_reference: int) -> "GompertzModel":
        return replace(self, age_reference=age_reference)

    def prior_map(self) -> Dict[str, Prior]:
        """Effective user overrides keyed by prior role."""
        return dict(self.priors)

    def derived_specs(self) -> Tuple[DerivedSpec, ...]:
        return (MODAL_AGE,) + tuple(self.derived)

    # ---- inference ----
    def posterior(
        self,
        panel: Panel,
        likelihood: str = "auto",
        *,
        survival_logit_scale: float = 0.05,
    ) -> Posterior:
        """Log posterior for ``panel`` under this model."""
        if not isinstance(panel, Panel):
            raise TypeError(f"panel must be a Panel; got {type(panel).__name__}.")
        self.age_grid.index([panel.age_grid.first, panel.age_grid.last])
        lik = build_likelihood(
            panel,
            likelihood,
            age_reference=self.age_reference,
            survival_logit_scale=survival_logit_scale,
        )
        return Posterior(lik, priors=self.prior_map())

    def fit(
        self,
        panel: Panel,
        *,
        likelihood: str = "auto",
        backend: str = "nuts",
        config: Optional[SamplerConfig] = None,
        abort: Any = None,
        emit_warnings: bool = True,
        **options: Any,
    ) -> Run:
        """Sample the posterior and return a Run.

        Options are SamplerConfig fields (num_chains=..., seed=..., ...); they
        override ``config`` when both are given. ``abort`` is any object with
        ``is_set()``, checked between iterations.
        """
        if config is None:
            options.setdefault("age_reference", self.age_reference)
            cfg = SamplerConfig.from_mapping(options)
        else:
            cfg = config.updated(**options) if options else config

        model = self
        if cfg.age_reference != self.age_reference:
            model = self.with_age_reference(cfg.age_reference)

        sampler = get_backend(backend)
        post = model.posterior(panel, likelihood, survival_logit_scale=cfg.survival_logit_scale)
        chains = _run_chains(sampler, post, cfg, abort)

        run = Run(
            model=model,
            panel=panel,
            posterior=post,
            config=cfg,
            backend=backend,
            chains=chains,
        )
        if emit_warnings:
            run.diagnostics().emit_warnings()
        return run


def _run_chains(
    sampler: Any, posterior: Posterior, config: SamplerConfig, abort: Any
) -> Tuple[ChainResult, ...]:
    """Run every chain; each gets its own generator and starting point."""
    rngs = config.chain_rngs()
    inits = initial_points(posterior, config, rngs)
    n = int(config.num_chains)

    def run_one(c: int) -> ChainResult:
        return sampler.sample_chain(
            posterior=posterior,
            chain_id=c,
            init=inits[c],
            rng=rngs[c],
            config=config,
            abort=abort,
        )

    if config.parallel == "auto" and n > 1:
        workers = min(n, os.cpu_count() or 1)
        with ThreadPoolExecutor(max_workers=workers) as ex:
            return tuple(ex.map(run_one, range(n)))
    return tuple(run_one(c) for c in range(n))

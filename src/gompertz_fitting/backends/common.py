from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Literal, Optional, Protocol, Sequence, Tuple

import numpy as np
from scipy.optimize import minimize

from ..errors import ConfigurationError, NonFiniteDensityError

ChainStatus = Literal["done", "truncated", "failed"]


@dataclass(frozen=True)
class ChainResult:
    """Everything one chain produced.

    ``samples`` holds the post-warmup positions in unconstrained space,
    shape (N, dim), read-only. ``stats`` holds one entry per draw.
    """

    chain_id: int
    samples: np.ndarray
    stats: Dict[str, np.ndarray] = field(default_factory=dict)
    status: ChainStatus = "done"
    message: str = ""
    step_size: float = float("nan")
    inverse_metric: Optional[np.ndarray] = None
    warmup_completed: int = 0
    warmup_divergences: int = 0

    @property
    def num_draws(self) -> int:
        return int(self.samples.shape[0])

    @property
    def divergences(self) -> int:
        d = self.stats.get("divergent")
        return 0 if d is None else int(np.count_nonzero(d))

    @property
    def truncated(self) -> bool:
        return self.status == "truncated"

    @property
    def failed(self) -> bool:
        return self.status == "failed"


class Backend(Protocol):
    """Sampler protocol: run one chain on a posterior."""

    name: str

    def sample_chain(
        self,
        *,
        posterior: Any,
        chain_id: int,
        init: np.ndarray,
        rng: np.random.Generator,
        config: Any,
        abort: Any = None,
    ) -> ChainResult: ...


def find_map(posterior: Any, x0: np.ndarray, *, maxiter: int = 500) -> Tuple[np.ndarray, np.ndarray]:
    """Posterior mode via L-BFGS-B on the unconstrained scale.

    Returns the mode and an approximate posterior standard deviation per
    coordinate from the inverse Hessian (1.0 where unavailable).
    """
    x0 = np.asarray(x0, dtype=float)

    def objective(v: np.ndarray) -> Tuple[float, np.ndarray]:
        try:
            lp, g = posterior.log_density_and_gradient(np.asarray(v, dtype=float))
        except NonFiniteDensityError:
            # inf makes the line search backtrack instead of sitting on a plateau
            return np.inf, np.zeros_like(x0)
        return -lp, -g

    res = minimize(objective, x0, jac=True, method="L-BFGS-B", options={"maxiter": int(maxiter)})
    theta = np.asarray(res.x, dtype=float)

    sd = np.ones_like(theta)
    hess_inv = getattr(res, "hess_inv", None)
    if hess_inv is not None:
        try:
            diag = np.diag(np.asarray(hess_inv.todense(), dtype=float))  # type: ignore[attr-defined]
        except AttributeError:
            diag = np.diag(np.asarray(hess_inv, dtype=float))
        ok = np.isfinite(diag) & (diag > 0.0)
        sd[ok] = np.sqrt(diag[ok])
    return theta, np.clip(sd, 1e-6, 10.0)


def initial_points(
    posterior: Any, config: Any, rngs: Sequence[np.random.Generator]
) -> Tuple[np.ndarray, ...]:
    """Starting positions, one per chain (unconstrained)."""
    dim = int(posterior.dim)
    n = len(rngs)
    init = config.init

    if isinstance(init, str) and init == "zero":
        return tuple(np.zeros(dim) for _ in range(n))

    if isinstance(init, str) and init == "map":
        guess = posterior.initial_guess() if hasattr(posterior, "initial_guess") else np.zeros(dim)
        center, sd = find_map(posterior, guess)
        radius = float(config.init_radius)
        return tuple(center + rng.uniform(-radius, radius, size=dim) * sd for rng in rngs)

    arr = np.asarray(init, dtype=float)
    if arr.shape[-1] != dim:
        raise ConfigurationError(f"init has length {arr.shape[-1]} but the posterior has dim={dim}.")
    if arr.ndim == 1:
        return tuple(arr.copy() for _ in range(n))
    return tuple(arr[c].copy() for c in range(n))

"""Shared Hamiltonian machinery: leapfrog, step-size search and the chain loop.

Concrete backends only provide ``transition``; warmup (dual averaging and
windowed metric adaptation), abort handling and bookkeeping live here.
"""

from __future__ import annotations

import math
from typing import Any, Dict, List, NamedTuple, Tuple

import numpy as np

from ..errors import NonFiniteDensityError
from ..util import readonly
from .adaptation import (
    DualAveraging,
    WelfordEstimator,
    identity_metric,
    in_metric_window,
    warmup_windows,
)
from .common import ChainResult

STAT_KEYS = (
    "accept_stat",
    "divergent",
    "tree_depth",
    "n_leapfrog",
    "step_size",
    "energy",
    "log_density",
)

_LOG_TARGET_PROBE = math.log(0.8)
_MIN_STEP = 1e-10
_MAX_STEP = 1e7


class _Point(NamedTuple):
    z: np.ndarray
    r: np.ndarray
    logp: float
    grad: np.ndarray


def _evaluate(posterior: Any, z: np.ndarray) -> Tuple[float, np.ndarray]:
    lp, g = posterior.log_density_and_gradient(z)
    g = np.asarray(g, dtype=float)
    if not math.isfinite(lp) or not np.all(np.isfinite(g)):
        raise NonFiniteDensityError(f"log density {lp!r} is not finite", theta=z)
    return float(lp), g


def leapfrog(posterior: Any, point: _Point, step: float, metric: Any) -> _Point:
    """One velocity-Verlet step; ``step`` may be negative."""
    r = point.r + 0.5 * step * point.grad
    z = point.z + step * metric.velocity(r)
    lp, g = _evaluate(posterior, z)
    r = r + 0.5 * step * g
    return _Point(z, r, lp, g)


def hamiltonian(point: _Point, metric: Any) -> float:
    return -point.logp + metric.kinetic(point.r)


def find_reasonable_step_size(
    posterior: Any,
    point: _Point,
    metric: Any,
    rng: np.random.Generator,
    step: float = 1.0,
) -> float:
    """Double or halve ``step`` until one leapfrog step crosses 80% acceptance.

    Probes that hit a non-finite density count as "step too large".
    """

    def probe(eps: float) -> float:
        start = _Point(point.z, metric.sample_momentum(rng), point.logp, point.grad)
        h0 = hamiltonian(start, metric)
        try:
            new = leapfrog(posterior, start, eps, metric)
        except NonFiniteDensityError:
            return -math.inf
        h = hamiltonian(new, metric)
        return h0 - h if math.isfinite(h) else -math.inf

    step = float(step) if math.isfinite(step) and step > 0 else 1.0
    direction = 1 if probe(step) > _LOG_TARGET_PROBE else -1
    for _ in range(100):
        candidate = step * 2.0 if direction == 1 else step * 0.5
        if not (_MIN_STEP <= candidate <= _MAX_STEP):
            break
        step = candidate
        delta = probe(step)
        if direction == 1 and not delta > _LOG_TARGET_PROBE:
            break
        if direction == -1 and not delta < _LOG_TARGET_PROBE:
            break
    return step


class HamiltonianBackend:
    """Adaptive Hamiltonian chain; subclasses implement ``transition``."""

    name = "hamiltonian"

    def transition(
        self,
        posterior: Any,
        point: _Point,
        step: float,
        metric: Any,
        rng: np.random.Generator,
        config: Any,
    ) -> Tuple[_Point, Dict[str, Any]]:
        """One MCMC iteration from ``point``.

        Returns the next point and a dict with ``accept_stat``, ``divergent``,
        ``tree_depth``, ``n_leapfrog`` and ``energy``.
        """
        raise NotImplementedError

    def sample_chain(
        self,
        *,
        posterior: Any,
        chain_id: int,
        init: np.ndarray,
        rng: np.random.Generator,
        config: Any,
        abort: Any = None,
    ) -> ChainResult:
        dim = int(posterior.dim)
        num_warmup = int(config.num_warmup)
        dense = bool(config.dense_mass)

        samples: List[np.ndarray] = []
        stats: Dict[str, List[Any]] = {k: [] for k in STAT_KEYS}
        status = "done"
        message = ""
        warmup_completed = 0
        warmup_divergences = 0

        metric = identity_metric(dim, dense)
        step = float("nan")

        try:
            z0 = np.asarray(init, dtype=float).copy()
            lp, g = _evaluate(posterior, z0)
            point = _Point(z0, np.zeros(dim), lp, g)

            step = find_reasonable_step_size(posterior, point, metric, rng)
            adapt = DualAveraging(config.target_accept)
            adapt.restart(step)
            init_buffer, ends, _ = warmup_windows(num_warmup)
            estimator = WelfordEstimator(dim, dense)

            for i in range(config.num_iterations):
                if abort is not None and abort.is_set():
                    status = "truncated"
                    message = f"aborted after {i} of {config.num_iterations} iterations"
                    break

                point, info = self.transition(posterior, point, step, metric, rng, config)

                if i < num_warmup:
                    warmup_completed = i + 1
                    warmup_divergences += int(bool(info["divergent"]))
                    step = adapt.update(info["accept_stat"])

                    if in_metric_window(i, init_buffer, ends):
                        estimator.add(point.z)
                        if i + 1 in ends:
                            metric = estimator.metric()
                            estimator.reset()
                            step = find_reasonable_step_size(posterior, point, metric, rng, step)
                            adapt.restart(step)

                    if i + 1 == num_warmup:
                        step = adapt.final()
                    continue

                samples.append(point.z.copy())
                stats["accept_stat"].append(float(info["accept_stat"]))
                stats["divergent"].append(bool(info["divergent"]))
                stats["tree_depth"].append(int(info["tree_depth"]))
                stats["n_leapfrog"].append(int(info["n_leapfrog"]))
                stats["step_size"].append(float(step))
                stats["energy"].append(float(info["energy"]))
                stats["log_density"].append(float(point.logp))

        except NonFiniteDensityError as e:
            status = "failed"
            message = str(e)

        arr = np.asarray(samples, dtype=float).reshape(len(samples), dim)
        stat_arrays = {
            "accept_stat": np.asarray(stats["accept_stat"], dtype=float),
            "divergent": np.asarray(stats["divergent"], dtype=bool),
            "tree_depth": np.asarray(stats["tree_depth"], dtype=int),
            "n_leapfrog": np.asarray(stats["n_leapfrog"], dtype=int),
            "step_size": np.asarray(stats["step_size"], dtype=float),
            "energy": np.asarray(stats["energy"], dtype=float),
            "log_density": np.asarray(stats["log_density"], dtype=float),
        }
        return ChainResult(
            chain_id=int(chain_id),
            samples=readonly(arr),
            stats={k: readonly(v) for k, v in stat_arrays.items()},
            status=status,  # type: ignore[arg-type]
            message=message,
            step_size=float(step),
            inverse_metric=readonly(np.array(metric.inverse, copy=True)),
            warmup_completed=warmup_completed,
            warmup_divergences=warmup_divergences,
        )

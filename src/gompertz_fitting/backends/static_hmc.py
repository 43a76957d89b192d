from __future__ import annotations

import math
from typing import Any, Dict, Tuple

import numpy as np

from .hamiltonian import HamiltonianBackend, _Point, hamiltonian, leapfrog


class StaticHMCBackend(HamiltonianBackend):
    """Hamiltonian Monte Carlo with a fixed number of leapfrog steps.

    Backend options (from SamplerConfig):
    - hmc_num_steps: leapfrog steps per iteration (default: 16)
    - max_energy_error: energy error above which the trajectory is divergent

    The step size is jittered by +-20% per iteration so that a fixed
    trajectory length cannot lock onto a period of the dynamics.
    """

    name = "hmc"
    step_jitter = 0.2

    def transition(
        self,
        posterior: Any,
        point: _Point,
        step: float,
        metric: Any,
        rng: np.random.Generator,
        config: Any,
    ) -> Tuple[_Point, Dict[str, Any]]:
        start = _Point(point.z, metric.sample_momentum(rng), point.logp, point.grad)
        h0 = hamiltonian(start, metric)
        eps = step * rng.uniform(1.0 - self.step_jitter, 1.0 + self.step_jitter)

        new = start
        n_steps = 0
        divergent = False
        delta = 0.0
        for _ in range(int(config.hmc_num_steps)):
            new = leapfrog(posterior, new, eps, metric)
            n_steps += 1
            delta = hamiltonian(new, metric) - h0
            if math.isnan(delta) or delta > float(config.max_energy_error):
                divergent = True
                break

        if divergent:
            accept = 0.0
        else:
            accept = 1.0 if delta <= 0.0 else math.exp(-delta)
        chosen = new if rng.random() < accept else start

        info = {
            "accept_stat": accept,
            "divergent": divergent,
            "tree_depth": 0,
            "n_leapfrog": n_steps,
            "energy": hamiltonian(chosen, metric),
        }
        return chosen, info

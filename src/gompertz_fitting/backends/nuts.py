"""No-U-Turn sampler with multinomial trajectory sampling.

Subtrees are sampled multinomially; the top-level tree is extended with
biased progressive sampling. Trajectories stop on the generalized
(momentum-sum) U-turn criterion, on a divergence or at ``max_tree_depth``.
"""

from __future__ import annotations

import math
from typing import Any, Dict, NamedTuple, Tuple

import numpy as np

from .hamiltonian import HamiltonianBackend, _Point, hamiltonian, leapfrog


class _Tree(NamedTuple):
    left: _Point
    right: _Point
    proposal: _Point
    log_weight: float
    r_sum: np.ndarray
    turning: bool
    diverging: bool
    sum_accept: float
    n_leapfrog: int


def _is_turning(metric: Any, r_left: np.ndarray, r_right: np.ndarray, r_sum: np.ndarray) -> bool:
    rho = r_sum - 0.5 * (r_left + r_right)
    return bool(metric.velocity(r_left) @ rho <= 0.0 or metric.velocity(r_right) @ rho <= 0.0)


def _merge(
    tree: _Tree, sub: _Tree, direction: int, metric: Any, rng: np.random.Generator, biased: bool
) -> _Tree:
    """Join ``sub`` onto the ``direction`` side of ``tree``."""
    log_weight = float(np.logaddexp(tree.log_weight, sub.log_weight))
    if biased:
        p = math.exp(min(0.0, sub.log_weight - tree.log_weight))
    else:
        p = math.exp(sub.log_weight - log_weight) if math.isfinite(log_weight) else 0.0
    proposal = sub.proposal if rng.random() < p else tree.proposal

    if direction == 1:
        left, right = tree.left, sub.right
    else:
        left, right = sub.left, tree.right
    r_sum = tree.r_sum + sub.r_sum
    turning = sub.turning or _is_turning(metric, left.r, right.r, r_sum)
    return _Tree(
        left=left,
        right=right,
        proposal=proposal,
        log_weight=log_weight,
        r_sum=r_sum,
        turning=turning,
        diverging=tree.diverging or sub.diverging,
        sum_accept=tree.sum_accept + sub.sum_accept,
        n_leapfrog=tree.n_leapfrog + sub.n_leapfrog,
    )


class NUTSBackend(HamiltonianBackend):
    name = "nuts"

    def _build_tree(
        self,
        posterior: Any,
        point: _Point,
        step: float,
        depth: int,
        metric: Any,
        h0: float,
        rng: np.random.Generator,
        max_energy_error: float,
    ) -> _Tree:
        if depth == 0:
            new = leapfrog(posterior, point, step, metric)
            delta = hamiltonian(new, metric) - h0
            if math.isnan(delta):
                delta = math.inf
            return _Tree(
                left=new,
                right=new,
                proposal=new,
                log_weight=-delta,
                r_sum=new.r.copy(),
                turning=False,
                diverging=delta > max_energy_error,
                sum_accept=1.0 if delta <= 0.0 else math.exp(-delta),
                n_leapfrog=1,
            )

        first = self._build_tree(posterior, point, step, depth - 1, metric, h0, rng, max_energy_error)
        if first.turning or first.diverging:
            return first
        edge = first.right if step > 0 else first.left
        second = self._build_tree(posterior, edge, step, depth - 1, metric, h0, rng, max_energy_error)
        direction = 1 if step > 0 else -1
        return _merge(first, second, direction, metric, rng, biased=False)

    def transition(
        self,
        posterior: Any,
        point: _Point,
        step: float,
        metric: Any,
        rng: np.random.Generator,
        config: Any,
    ) -> Tuple[_Point, Dict[str, Any]]:
        r0 = metric.sample_momentum(rng)
        start = _Point(point.z, r0, point.logp, point.grad)
        h0 = hamiltonian(start, metric)
        max_energy_error = float(config.max_energy_error)

        tree = _Tree(
            left=start,
            right=start,
            proposal=start,
            log_weight=0.0,
            r_sum=r0.copy(),
            turning=False,
            diverging=False,
            sum_accept=0.0,
            n_leapfrog=0,
        )
        depth = 0
        divergent = False
        sum_accept = 0.0
        n_leapfrog = 0

        while depth < int(config.max_tree_depth):
            direction = 1 if rng.random() < 0.5 else -1
            edge = tree.right if direction == 1 else tree.left
            sub = self._build_tree(
                posterior, edge, direction * step, depth, metric, h0, rng, max_energy_error
            )
            sum_accept += sub.sum_accept
            n_leapfrog += sub.n_leapfrog
            depth += 1

            # a diverging or turning subtree is discarded
            if sub.diverging:
                divergent = True
                break
            if sub.turning:
                break
            tree = _merge(tree, sub, direction, metric, rng, biased=True)
            if tree.turning:
                break

        chosen = tree.proposal
        info = {
            "accept_stat": sum_accept / max(n_leapfrog, 1),
            "divergent": divergent,
            "tree_depth": depth,
            "n_leapfrog": n_leapfrog,
            "energy": hamiltonian(chosen, metric),
        }
        return _Point(chosen.z, chosen.r, chosen.logp, chosen.grad), info

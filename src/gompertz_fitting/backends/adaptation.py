"""Warmup machinery: metrics, Welford estimators, dual averaging, windows."""

from __future__ import annotations

import math
from typing import Tuple

import numpy as np


class DiagonalMetric:
    """Diagonal mass matrix M; stores the inverse metric (posterior variance)."""

    dense = False

    def __init__(self, inverse: np.ndarray):
        self.inverse = np.asarray(inverse, dtype=float).copy()
        self._sqrt_mass = 1.0 / np.sqrt(self.inverse)

    def sample_momentum(self, rng: np.random.Generator) -> np.ndarray:
        return rng.standard_normal(self.inverse.shape[0]) * self._sqrt_mass

    def velocity(self, r: np.ndarray) -> np.ndarray:
        return self.inverse * r

    def kinetic(self, r: np.ndarray) -> float:
        return 0.5 * float(r @ (self.inverse * r))


class DenseMetric:
    """Dense mass matrix M; stores the inverse metric (posterior covariance)."""

    dense = True

    def __init__(self, inverse: np.ndarray):
        self.inverse = np.asarray(inverse, dtype=float).copy()
        self.inverse = 0.5 * (self.inverse + self.inverse.T)
        mass = np.linalg.inv(self.inverse)
        self._chol_mass = np.linalg.cholesky(0.5 * (mass + mass.T))

    def sample_momentum(self, rng: np.random.Generator) -> np.ndarray:
        return self._chol_mass @ rng.standard_normal(self.inverse.shape[0])

    def velocity(self, r: np.ndarray) -> np.ndarray:
        return self.inverse @ r

    def kinetic(self, r: np.ndarray) -> float:
        return 0.5 * float(r @ (self.inverse @ r))


def identity_metric(dim: int, dense: bool):
    if dense:
        return DenseMetric(np.eye(dim))
    return DiagonalMetric(np.ones(dim))


class WelfordEstimator:
    """Running (co)variance of warmup positions, regularized toward 1e-3 * I."""

    def __init__(self, dim: int, dense: bool):
        self.dim = int(dim)
        self.dense = bool(dense)
        self.reset()

    def reset(self) -> None:
        self.n = 0
        self.mean = np.zeros(self.dim)
        self.m2 = np.zeros((self.dim, self.dim)) if self.dense else np.zeros(self.dim)

    def add(self, x: np.ndarray) -> None:
        self.n += 1
        delta = x - self.mean
        self.mean = self.mean + delta / self.n
        if self.dense:
            self.m2 = self.m2 + np.outer(x - self.mean, delta)
        else:
            self.m2 = self.m2 + (x - self.mean) * delta

    def metric(self):
        """Shrunk estimate as a metric; identity if too few samples."""
        n = self.n
        if n < 3:
            return identity_metric(self.dim, self.dense)
        cov = self.m2 / (n - 1.0)
        w = n / (n + 5.0)
        if self.dense:
            cov = w * cov + 1e-3 * (5.0 / (n + 5.0)) * np.eye(self.dim)
            try:
                return DenseMetric(cov)
            except np.linalg.LinAlgError:
                return DiagonalMetric(np.clip(np.diag(cov), 1e-10, None))
        cov = w * cov + 1e-3 * (5.0 / (n + 5.0))
        return DiagonalMetric(cov)


class DualAveraging:
    """Nesterov dual averaging of log step size toward a target acceptance."""

    def __init__(self, target_accept: float, gamma: float = 0.05, t0: float = 10.0, kappa: float = 0.75):
        self.target = float(target_accept)
        self.gamma = float(gamma)
        self.t0 = float(t0)
        self.kappa = float(kappa)
        self.restart(1.0)

    def restart(self, step_size: float) -> None:
        self.mu = math.log(10.0 * float(step_size))
        self.counter = 0
        self.s_bar = 0.0
        self.x_bar = 0.0

    def update(self, accept_stat: float) -> float:
        """Feed one acceptance statistic; returns the next step size."""
        self.counter += 1
        a = min(1.0, float(accept_stat)) if math.isfinite(accept_stat) else 0.0
        eta = 1.0 / (self.counter + self.t0)
        self.s_bar = (1.0 - eta) * self.s_bar + eta * (self.target - a)
        x = self.mu - self.s_bar * math.sqrt(self.counter) / self.gamma
        x_eta = self.counter ** (-self.kappa)
        self.x_bar = (1.0 - x_eta) * self.x_bar + x_eta * x
        return math.exp(x)

    def final(self) -> float:
        return math.exp(self.x_bar)


def warmup_windows(num_warmup: int) -> Tuple[int, Tuple[int, ...], int]:
    """Windowed adaptation schedule: (init_buffer, window ends, term_buffer).

    Metric windows cover [init_buffer, num_warmup - term_buffer) and double
    in length; the last one stretches to the terminal buffer. An empty tuple
    of ends means step-size adaptation only.
    """
    W = int(num_warmup)
    init_buffer, term_buffer, base_window = 75, 50, 25
    if W < 20:
        return W, (), 0
    if init_buffer + base_window + term_buffer > W:
        init_buffer = int(0.15 * W)
        term_buffer = int(0.1 * W)
        base_window = W - (init_buffer + term_buffer)

    ends = []
    start, size = init_buffer, base_window
    stop = W - term_buffer
    while start < stop:
        end = start + size
        if end + 2 * size > stop:
            end = stop
        ends.append(end)
        start, size = end, 2 * size
    return init_buffer, tuple(ends), term_buffer


def in_metric_window(i: int, init_buffer: int, ends: Tuple[int, ...]) -> bool:
    return bool(ends) and init_buffer <= i < ends[-1]

from __future__ import annotations

from dataclasses import dataclass, fields, replace
import math
import numbers
from typing import Any, Mapping, Optional, Tuple, Union

import numpy as np

from .errors import ConfigurationError

SeedLike = Union[None, int, Tuple[int, ...]]


@dataclass(frozen=True)
class SamplerConfig:
    """Options for one sampling run.

    Every field is validated on construction; an invalid value raises
    ConfigurationError so that nothing is sampled with a bad setup.
    """

    target_accept: float = 0.8
    max_tree_depth: int = 10
    num_chains: int = 4
    num_warmup: int = 1000
    num_draws: int = 1000
    # int -> spawned per chain; sequence -> one seed per chain (may repeat)
    seed: SeedLike = None
    age_reference: int = 40
    dense_mass: bool = False
    init: Any = "map"
    init_radius: float = 1.0
    max_energy_error: float = 1000.0
    hmc_num_steps: int = 16
    survival_logit_scale: float = 0.05
    min_ess: float = 400.0
    max_rhat: float = 1.01
    parallel: Optional[str] = None

    def __post_init__(self) -> None:
        ta = _as_float("target_accept", self.target_accept)
        if not (0.0 < ta < 1.0):
            raise ConfigurationError(f"target_accept must be in (0, 1); got {ta!r}.")

        _as_int("max_tree_depth", self.max_tree_depth, minimum=1)
        _as_int("num_chains", self.num_chains, minimum=1)
        _as_int("num_warmup", self.num_warmup, minimum=0)
        _as_int("num_draws", self.num_draws, minimum=1)
        _as_int("age_reference", self.age_reference)
        _as_int("hmc_num_steps", self.hmc_num_steps, minimum=1)

        if not isinstance(self.dense_mass, (bool, np.bool_)):
            raise ConfigurationError("dense_mass must be a bool.")

        if isinstance(self.seed, bool):
            raise ConfigurationError("seed must be an int or one int per chain; got a bool.")
        if self.seed is not None and not isinstance(self.seed, numbers.Integral):
            if not isinstance(self.seed, (tuple, list, np.ndarray)):
                raise ConfigurationError(
                    f"seed must be an int or one int per chain; got {self.seed!r}."
                )
            seeds = tuple(self.seed)
            if len(seeds) != int(self.num_chains):
                raise ConfigurationError(
                    f"seed sequence has {len(seeds)} entries but num_chains={self.num_chains}."
                )
            for s in seeds:
                _as_int("seed", s, minimum=0)
            object.__setattr__(self, "seed", tuple(int(s) for s in seeds))
        elif self.seed is not None and int(self.seed) < 0:
            raise ConfigurationError("seed must be non-negative.")

        if isinstance(self.init, str):
            if self.init not in ("map", "zero"):
                raise ConfigurationError(
                    f"init must be 'map', 'zero' or an array; got {self.init!r}."
                )
        else:
            arr = np.asarray(self.init, dtype=float)
            if arr.ndim not in (1, 2) or not np.all(np.isfinite(arr)):
                raise ConfigurationError("init array must be finite with shape (dim,) or (num_chains, dim).")
            if arr.ndim == 2 and arr.shape[0] != int(self.num_chains):
                raise ConfigurationError(
                    f"init has {arr.shape[0]} rows but num_chains={self.num_chains}."
                )

        if _as_float("init_radius", self.init_radius) < 0.0:
            raise ConfigurationError("init_radius must be >= 0.")
        if _as_float("max_energy_error", self.max_energy_error) <= 0.0:
            raise ConfigurationError("max_energy_error must be > 0.")
        if _as_float("survival_logit_scale", self.survival_logit_scale) <= 0.0:
            raise ConfigurationError("survival_logit_scale must be > 0.")
        if _as_float("min_ess", self.min_ess) < 0.0:
            raise ConfigurationError("min_ess must be >= 0.")
        if _as_float("max_rhat", self.max_rhat) <= 1.0:
            raise ConfigurationError("max_rhat must be > 1.")
        if self.parallel not in (None, "auto"):
            raise ConfigurationError(f"parallel must be None or 'auto'; got {self.parallel!r}.")

    @staticmethod
    def from_mapping(options: Optional[Mapping[str, Any]] = None) -> "SamplerConfig":
        """Build a config from a plain dict, rejecting unknown keys."""
        options = dict(options or {})
        known = {f.name for f in fields(SamplerConfig)}
        unknown = sorted(set(options) - known)
        if unknown:
            raise ConfigurationError(
                f"Unknown option(s) {unknown}. Available: {tuple(sorted(known))}"
            )
        return SamplerConfig(**options)

    def updated(self, **changes: Any) -> "SamplerConfig":
        """Return a validated copy with some options changed."""
        known = {f.name for f in fields(SamplerConfig)}
        unknown = sorted(set(changes) - known)
        if unknown:
            raise ConfigurationError(f"Unknown option(s) {unknown}.")
        return replace(self, **changes)

    @property
    def num_iterations(self) -> int:
        return int(self.num_warmup) + int(self.num_draws)

    def chain_rngs(self) -> Tuple[np.random.Generator, ...]:
        """One independent generator per chain."""
        n = int(self.num_chains)
        if isinstance(self.seed, tuple):
            return tuple(np.random.default_rng(s) for s in self.seed)
        children = np.random.SeedSequence(self.seed).spawn(n)
        return tuple(np.random.default_rng(c) for c in children)


def _as_float(name: str, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, numbers.Real):
        raise ConfigurationError(f"{name} must be a real number; got {value!r}.")
    v = float(value)
    if not math.isfinite(v):
        raise ConfigurationError(f"{name} must be finite; got {value!r}.")
    return v


def _as_int(name: str, value: Any, minimum: Optional[int] = None) -> int:
    if isinstance(value, bool) or not isinstance(value, numbers.Integral):
        raise ConfigurationError(f"{name} must be an integer; got {value!r}.")
    v = int(value)
    if minimum is not None and v < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}; got {v}.")
    return v

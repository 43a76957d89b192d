from __future__ import annotations

from dataclasses import dataclass
import math
from typing import Any, Callable, Dict, Literal, Mapping, Optional, Sequence, Tuple

import numpy as np

from .errors import ConfigurationError

__all__ = [
    "Normal",
    "HalfNormal",
    "Prior",
    "parse_prior",
    "DEFAULT_PRIORS",
    "ParameterSpec",
    "ParameterLayout",
    "DerivedSpec",
]

_LOG_SQRT_2PI = 0.5 * math.log(2.0 * math.pi)


@dataclass(frozen=True)
class Normal:
    loc: float
    scale: float

    def logpdf(self, x: np.ndarray) -> np.ndarray:
        z = (np.asarray(x, dtype=float) - self.loc) / self.scale
        return -0.5 * z * z - math.log(self.scale) - _LOG_SQRT_2PI

    def grad(self, x: np.ndarray) -> np.ndarray:
        return -(np.asarray(x, dtype=float) - self.loc) / (self.scale * self.scale)


@dataclass(frozen=True)
class HalfNormal:
    """Normal(0, scale) folded onto x > 0."""

    scale: float

    def logpdf(self, x: np.ndarray) -> np.ndarray:
        z = np.asarray(x, dtype=float) / self.scale
        return -0.5 * z * z - math.log(self.scale) - _LOG_SQRT_2PI + math.log(2.0)

    def grad(self, x: np.ndarray) -> np.ndarray:
        return -np.asarray(x, dtype=float) / (self.scale * self.scale)


Prior = Any  # Normal | HalfNormal


def parse_prior(name: str, spec: Any) -> Prior:
    """Accept ('normal', loc, scale), ('halfnormal', scale) or a prior object."""
    if isinstance(spec, (Normal, HalfNormal)):
        prior = spec
    else:
        if not isinstance(spec, tuple) or len(spec) < 1:
            raise TypeError("prior must be like ('normal', 0, 1) or ('halfnormal', 1).")
        kind = str(spec[0]).lower().replace("_", "").replace("-", "")
        args = tuple(float(a) for a in spec[1:])
        if kind == "normal":
            if len(args) != 2:
                raise TypeError(f"normal prior for {name!r} expects ('normal', loc, scale).")
            prior = Normal(*args)
        elif kind == "halfnormal":
            if len(args) == 2 and args[0] == 0.0:
                args = args[1:]
            if len(args) != 1:
                raise TypeError(f"halfnormal prior for {name!r} expects ('halfnormal', scale).")
            prior = HalfNormal(*args)
        else:
            raise NotImplementedError(
                f"Unsupported prior kind {kind!r} for {name!r} (supports normal/halfnormal)."
            )
    scale = float(prior.scale)
    if not math.isfinite(scale) or scale <= 0.0:
        raise ConfigurationError(f"prior scale for {name!r} must be > 0; got {scale!r}.")
    if isinstance(prior, Normal) and not math.isfinite(float(prior.loc)):
        raise ConfigurationError(f"prior loc for {name!r} must be finite.")
    return prior


# Keyed by prior role. Likelihoods may override some of these defaults.
DEFAULT_PRIORS: Dict[str, Prior] = {
    "log_alpha": Normal(0.0, 10.0),
    "beta": Normal(0.0, 0.1),
    "log_alpha_init": Normal(-6.0, 1.0),
    "beta_init": Normal(0.1, 0.1),
    "sigma_alpha": HalfNormal(1.0),
    "sigma_beta": HalfNormal(1.0),
    "mu_log_alpha": Normal(0.0, 10.0),
    "mu_beta": Normal(0.0, 0.1),
}


@dataclass(frozen=True)
class ParameterSpec:
    """One block of the parameter vector.

    ``transform="log"`` blocks are positive; the sampler sees their log.
    """

    name: str
    size: int = 1
    transform: Literal["identity", "log"] = "identity"
    labels: Tuple[str, ...] = ()

    def flat_names(self) -> Tuple[str, ...]:
        if self.labels:
            return tuple(f"{self.name}[{lab}]" for lab in self.labels)
        if self.size == 1:
            return (self.name,)
        return tuple(f"{self.name}[{i}]" for i in range(self.size))


@dataclass(frozen=True)
class PriorTerm:
    """Apply prior ``role`` to ``block[index]`` (index None = whole block)."""

    block: str
    role: str
    index: Optional[int] = None


class ParameterLayout:
    """Maps the flat unconstrained vector theta to named blocks and back."""

    def __init__(self, specs: Sequence[ParameterSpec]):
        self.specs: Tuple[ParameterSpec, ...] = tuple(specs)
        names = [s.name for s in self.specs]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate parameter blocks: {names}")
        self._slices: Dict[str, slice] = {}
        offset = 0
        for s in self.specs:
            self._slices[s.name] = slice(offset, offset + int(s.size))
            offset += int(s.size)
        self.dim = offset
        self.names: Tuple[str, ...] = tuple(n for s in self.specs for n in s.flat_names())
        self._log_mask = np.zeros(self.dim, dtype=bool)
        for s in self.specs:
            if s.transform == "log":
                self._log_mask[self._slices[s.name]] = True

    def __contains__(self, name: str) -> bool:
        return name in self._slices

    def slice(self, name: str) -> slice:
        return self._slices[name]

    def spec(self, name: str) -> ParameterSpec:
        for s in self.specs:
            if s.name == name:
                return s
        raise KeyError(name)

    def constrain(self, theta: np.ndarray) -> np.ndarray:
        """Flat constrained values (positive blocks exponentiated)."""
        theta = np.asarray(theta, dtype=float)
        out = theta.copy()
        out[..., self._log_mask] = np.exp(theta[..., self._log_mask])
        return out

    def unconstrain(self, values: np.ndarray) -> np.ndarray:
        values = np.asarray(values, dtype=float)
        if np.any(values[..., self._log_mask] <= 0.0):
            raise ValueError("Positive parameters must be > 0 to unconstrain.")
        out = values.copy()
        out[..., self._log_mask] = np.log(values[..., self._log_mask])
        return out

    def unpack(self, theta: np.ndarray) -> Dict[str, np.ndarray]:
        """Constrained values per block; each block is an array of its size."""
        flat = self.constrain(theta)
        return {s.name: flat[..., self._slices[s.name]] for s in self.specs}

    def pack(self, blocks: Mapping[str, Any]) -> np.ndarray:
        """Inverse of unpack: constrained block values -> theta."""
        out = np.empty(self.dim, dtype=float)
        for s in self.specs:
            v = np.broadcast_to(np.asarray(blocks[s.name], dtype=float), (s.size,))
            out[self._slices[s.name]] = v
        return self.unconstrain(out)

    def log_jacobian(self, theta: np.ndarray) -> float:
        """log |d constrained / d theta| = sum of log-transformed entries."""
        return float(np.sum(np.asarray(theta, dtype=float)[self._log_mask]))

    def chain_rule(self, grads: Mapping[str, np.ndarray], theta: np.ndarray) -> np.ndarray:
        """Gradient w.r.t. theta from gradients w.r.t. constrained blocks.

        Includes the gradient of the log-Jacobian.
        """
        theta = np.asarray(theta, dtype=float)
        g = np.zeros(self.dim, dtype=float)
        for s in self.specs:
            gs = grads.get(s.name)
            if gs is not None:
                g[self._slices[s.name]] = gs
        g[self._log_mask] = g[self._log_mask] * np.exp(theta[self._log_mask]) + 1.0
        return g


@dataclass(frozen=True)
class DerivedSpec:
    """Per-draw derived quantity.

    ``func`` receives the constrained blocks of one or many draws (each block
    with the stratum axis last) and the model, and returns an array with the
    same leading shape.
    """

    name: str
    func: Callable[..., Any]
    doc: str = ""

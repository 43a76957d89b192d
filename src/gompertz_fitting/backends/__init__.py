"""Sampler implementations + registry."""

from __future__ import annotations

from typing import Dict

from ..errors import ConfigurationError
from .common import Backend, ChainResult
from .nuts import NUTSBackend
from .static_hmc import StaticHMCBackend

_BACKENDS: Dict[str, Backend] = {
    "nuts": NUTSBackend(),
    "hmc": StaticHMCBackend(),
}


def get_backend(name: str) -> Backend:
    """Return a sampler implementation by name."""
    try:
        return _BACKENDS[name]
    except KeyError as e:
        raise ConfigurationError(
            f"Unknown backend {name!r}. Available: {tuple(_BACKENDS.keys())}"
        ) from e


AVAILABLE_BACKENDS = tuple(_BACKENDS.keys())

__all__ = ["Backend", "ChainResult", "get_backend", "AVAILABLE_BACKENDS"]

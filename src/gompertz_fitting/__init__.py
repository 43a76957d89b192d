"""gompertz_fitting public API."""
from .config import SamplerConfig
from .diagnostics import DiagnosticsReport, NotConverged
from .errors import (
    ConfigurationError,
    ConvergenceWarning,
    DivergentTransition,
    DomainError,
    GompertzError,
    NonFiniteDensityError,
)
from .inputs import AgeGrid, CountObservation, Panel, SurvivalObservation
from .model import GompertzModel
from .posterior import Posterior
from .run import Band, Draw, Draws, Run
from .summary import PosteriorSummary, SummaryRow

__all__ = [
    "AgeGrid",
    "CountObservation",
    "SurvivalObservation",
    "Panel",
    "GompertzModel",
    "Posterior",
    "SamplerConfig",
    "Run",
    "Draw",
    "Draws",
    "Band",
    "PosteriorSummary",
    "SummaryRow",
    "DiagnosticsReport",
    "NotConverged",
    "GompertzError",
    "DomainError",
    "ConfigurationError",
    "NonFiniteDensityError",
    "DivergentTransition",
    "ConvergenceWarning",
]

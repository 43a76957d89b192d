from __future__ import annotations

from dataclasses import dataclass, field
import math
import numbers
from typing import Any, Dict, Hashable, Iterable, Iterator, Literal, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
from warnings import warn

from .errors import DomainError

PanelKind = Literal["cross_section", "period", "area"]
_KINDS = ("cross_section", "period", "area")


@dataclass(frozen=True)
class AgeGrid:
    """Contiguous run of integer ages (x, x+1, x+2, ...)."""

    ages: Tuple[int, ...]

    def __post_init__(self) -> None:
        ages = tuple(self.ages)
        if not ages:
            raise DomainError("AgeGrid needs at least one age.")
        out = []
        for a in ages:
            if isinstance(a, bool) or not isinstance(a, numbers.Real):
                raise DomainError(f"AgeGrid ages must be integers; got {a!r}.")
            if float(a) != math.floor(float(a)):
                raise DomainError(f"AgeGrid ages must be integers; got {a!r}.")
            out.append(int(a))
        steps = np.diff(np.asarray(out, dtype=int))
        if np.any(steps != 1):
            raise DomainError(
                "AgeGrid ages must be strictly increasing in unit steps; got "
                f"{out[0]}..{out[-1]} with steps {sorted(set(steps.tolist()))}."
            )
        object.__setattr__(self, "ages", tuple(out))

    @staticmethod
    def span(first: int, last: int) -> "AgeGrid":
        """Grid covering first..last inclusive."""
        if int(last) < int(first):
            raise DomainError(f"AgeGrid.span needs first <= last; got {first}, {last}.")
        return AgeGrid(tuple(range(int(first), int(last) + 1)))

    @property
    def first(self) -> int:
        return self.ages[0]

    @property
    def last(self) -> int:
        return self.ages[-1]

    def __len__(self) -> int:
        return len(self.ages)

    def __iter__(self) -> Iterator[int]:
        return iter(self.ages)

    def __contains__(self, age: Any) -> bool:
        try:
            a = float(age)
        except (TypeError, ValueError):
            return False
        return a == math.floor(a) and self.first <= a <= self.last

    def as_array(self) -> np.ndarray:
        return np.arange(self.first, self.last + 1, dtype=float)

    def index(self, age: Any) -> np.ndarray:
        """Grid positions of one or more ages; DomainError if any is off-grid."""
        a = np.asarray(age, dtype=float)
        bad = (a != np.floor(a)) | (a < self.first) | (a > self.last) | ~np.isfinite(a)
        if np.any(bad):
            offending = np.atleast_1d(a)[np.atleast_1d(bad)]
            raise DomainError(
                f"Age(s) {offending.tolist()} outside the grid {self.first}..{self.last}."
            )
        return (a - self.first).astype(int)


@dataclass(frozen=True)
class CountObservation:
    """Deaths at one age given the population at risk."""

    age: int
    exposure: float
    count: int

    def __post_init__(self) -> None:
        exposure = float(self.exposure)
        if not math.isfinite(exposure) or exposure < 0.0:
            raise DomainError(f"exposure must be finite and >= 0; got {self.exposure!r}.")
        c = float(self.count)
        if not math.isfinite(c) or c < 0.0 or c != math.floor(c):
            raise DomainError(f"count must be a non-negative integer; got {self.count!r}.")
        object.__setattr__(self, "exposure", exposure)
        object.__setattr__(self, "count", int(c))
        object.__setattr__(self, "age", _int_age("age", self.age))


@dataclass(frozen=True)
class SurvivalObservation:
    """Observed probability of death between age_start and age_end (inclusive).

    sample_size is the number of people behind the estimate, when known.
    """

    age_start: int
    age_end: int
    observed_probability: float
    sample_size: Optional[float] = None

    def __post_init__(self) -> None:
        start = _int_age("age_start", self.age_start)
        end = _int_age("age_end", self.age_end)
        if end < start:
            raise DomainError(f"age_end ({end}) must be >= age_start ({start}).")
        p = float(self.observed_probability)
        if not (0.0 <= p <= 1.0):
            raise DomainError(f"observed_probability must be in [0, 1]; got {self.observed_probability!r}.")
        n = self.sample_size
        if n is not None:
            n = float(n)
            if not math.isfinite(n) or n <= 0.0:
                raise DomainError(f"sample_size must be positive; got {self.sample_size!r}.")
        object.__setattr__(self, "age_start", start)
        object.__setattr__(self, "age_end", end)
        object.__setattr__(self, "observed_probability", p)
        object.__setattr__(self, "sample_size", n)


Observation = Union[CountObservation, SurvivalObservation]


@dataclass(frozen=True)
class Panel:
    """Observations grouped by stratum, all on one AgeGrid.

    For kind="period" the insertion order of strata is the time order.
    """

    age_grid: AgeGrid
    strata: Mapping[Hashable, Tuple[Observation, ...]]
    kind: PanelKind = "cross_section"
    meta: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.kind not in _KINDS:
            raise DomainError(f"Panel kind must be one of {_KINDS}; got {self.kind!r}.")
        if not self.strata:
            raise DomainError("Panel needs at least one stratum.")
        frozen: Dict[Hashable, Tuple[Observation, ...]] = {}
        for key, obs in self.strata.items():
            obs = tuple(obs)
            if not obs:
                raise DomainError(f"Stratum {key!r} has no observations.")
            seen = set()
            for o in obs:
                if isinstance(o, CountObservation):
                    self.age_grid.index(o.age)
                    if o.age in seen:
                        raise DomainError(f"Stratum {key!r} repeats age {o.age}.")
                    seen.add(o.age)
                elif isinstance(o, SurvivalObservation):
                    self.age_grid.index([o.age_start, o.age_end])
                else:
                    raise DomainError(
                        f"Stratum {key!r} holds {type(o).__name__}; expected "
                        "CountObservation or SurvivalObservation."
                    )
            if seen and any(isinstance(o, SurvivalObservation) for o in obs):
                warn(
                    f"Stratum {key!r} has count data; its survival observations are ignored.",
                    UserWarning,
                    stacklevel=3,
                )
            frozen[key] = obs
        object.__setattr__(self, "strata", frozen)

    # ---- constructors ----
    @staticmethod
    def cross_section(
        age_grid: AgeGrid,
        observations: Sequence[Observation],
        *,
        key: Hashable = "all",
    ) -> "Panel":
        """Single-stratum panel."""
        return Panel(age_grid=age_grid, strata={key: tuple(observations)}, kind="cross_section")

    @staticmethod
    def from_arrays(
        age_grid: AgeGrid,
        exposure: Any,
        counts: Any,
        *,
        keys: Optional[Sequence[Hashable]] = None,
        kind: PanelKind = "cross_section",
    ) -> "Panel":
        """Build a count panel from arrays shaped (len(age_grid),) or (S, len(age_grid))."""
        e = np.atleast_2d(np.asarray(exposure, dtype=float))
        d = np.atleast_2d(np.asarray(counts, dtype=float))
        if e.shape != d.shape or e.shape[-1] != len(age_grid):
            raise DomainError(
                f"exposure {e.shape} and counts {d.shape} must both be (S, {len(age_grid)})."
            )
        if keys is None:
            keys = list(range(e.shape[0])) if e.shape[0] > 1 else ["all"]
        if len(keys) != e.shape[0]:
            raise DomainError(f"Got {len(keys)} keys for {e.shape[0]} strata.")
        strata = {
            k: tuple(
                CountObservation(age=a, exposure=e[i, j], count=d[i, j])
                for j, a in enumerate(age_grid)
            )
            for i, k in enumerate(keys)
        }
        return Panel(age_grid=age_grid, strata=strata, kind=kind)

    @staticmethod
    def from_records(
        records: Iterable[Mapping[str, Any]],
        *,
        kind: PanelKind = "cross_section",
        age_grid: Optional[AgeGrid] = None,
    ) -> "Panel":
        """Build a Panel from tabular rows.

        Count rows carry ``age``, ``deaths`` and ``population``; survival rows
        carry ``age_start``, ``age_end``, ``probability`` and optionally
        ``sample_size``. ``stratum`` (period or area) groups rows and defaults
        to "all". Without an explicit grid, the grid spans every age seen.
        """
        grouped: Dict[Hashable, list] = {}
        lo, hi = math.inf, -math.inf
        for row in records:
            key = row.get("stratum", "all")
            if "probability" in row:
                obs: Observation = SurvivalObservation(
                    age_start=row["age_start"],
                    age_end=row["age_end"],
                    observed_probability=row["probability"],
                    sample_size=row.get("sample_size"),
                )
                lo, hi = min(lo, obs.age_start), max(hi, obs.age_end)
            elif {"age", "deaths", "population"} <= set(row):
                obs = CountObservation(
                    age=row["age"], exposure=row["population"], count=row["deaths"]
                )
                lo, hi = min(lo, obs.age), max(hi, obs.age)
            else:
                raise DomainError(
                    f"Cannot interpret record {dict(row)!r}: need age/deaths/population "
                    "or age_start/age_end/probability."
                )
            grouped.setdefault(key, []).append(obs)
        if not grouped:
            raise DomainError("from_records got no rows.")
        if age_grid is None:
            age_grid = AgeGrid.span(int(lo), int(hi))
        return Panel(
            age_grid=age_grid,
            strata={k: tuple(v) for k, v in grouped.items()},
            kind=kind,
        )

    # ---- mapping sugar ----
    def keys(self) -> Tuple[Hashable, ...]:
        return tuple(self.strata.keys())

    def items(self):
        return self.strata.items()

    def __getitem__(self, key: Hashable) -> Tuple[Observation, ...]:
        return self.strata[key]

    def __len__(self) -> int:
        return len(self.strata)

    def is_survival_only(self, key: Hashable) -> bool:
        return not any(isinstance(o, CountObservation) for o in self.strata[key])

    def survival_only_keys(self) -> Tuple[Hashable, ...]:
        return tuple(k for k in self.strata if self.is_survival_only(k))


def _int_age(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, numbers.Real):
        raise DomainError(f"{name} must be an integer age; got {value!r}.")
    v = float(value)
    if not math.isfinite(v) or v != math.floor(v):
        raise DomainError(f"{name} must be an integer age; got {value!r}.")
    return int(v)

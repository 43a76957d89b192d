import warnings

import numpy as np
import pytest

from gompertz_fitting import (
    AgeGrid,
    CountObservation,
    DomainError,
    Panel,
    SurvivalObservation,
)


def test_age_grid_span_and_index():
    grid = AgeGrid.span(40, 59)
    assert len(grid) == 20
    assert grid.first == 40 and grid.last == 59
    assert 45 in grid and 60 not in grid
    assert grid.index(40) == 0
    np.testing.assert_array_equal(grid.index([41, 59]), [1, 19])
    np.testing.assert_array_equal(grid.as_array(), np.arange(40.0, 60.0))


@pytest.mark.parametrize(
    "ages",
    [(), (40, 42), (40, 40, 41), (41, 40), (40.5, 41.5)],
)
def test_age_grid_rejects_malformed(ages):
    with pytest.raises(DomainError):
        AgeGrid(ages)


def test_age_grid_index_off_grid_raises():
    grid = AgeGrid.span(40, 59)
    with pytest.raises(DomainError, match="outside the grid"):
        grid.index([39, 40])
    with pytest.raises(DomainError):
        grid.index(45.5)


def test_observation_validation():
    with pytest.raises(DomainError):
        CountObservation(age=40, exposure=-1.0, count=3)
    with pytest.raises(DomainError):
        CountObservation(age=40, exposure=10.0, count=2.5)
    with pytest.raises(DomainError):
        SurvivalObservation(age_start=50, age_end=45, observed_probability=0.1)
    with pytest.raises(DomainError):
        SurvivalObservation(age_start=40, age_end=45, observed_probability=1.5)
    with pytest.raises(DomainError):
        SurvivalObservation(age_start=40, age_end=45, observed_probability=0.1, sample_size=0)

    obs = CountObservation(age=40.0, exposure=100, count=3.0)
    assert obs.age == 40 and isinstance(obs.count, int)


def test_panel_rejects_off_grid_and_duplicates():
    grid = AgeGrid.span(40, 44)
    with pytest.raises(DomainError):
        Panel.cross_section(grid, [CountObservation(70, 10.0, 1)])
    with pytest.raises(DomainError, match="repeats age"):
        Panel.cross_section(grid, [CountObservation(40, 10.0, 1), CountObservation(40, 5.0, 0)])
    with pytest.raises(DomainError):
        Panel(age_grid=grid, strata={"a": ()})
    with pytest.raises(DomainError):
        Panel(age_grid=grid, strata={"a": (CountObservation(40, 1.0, 0),)}, kind="cohort")


def test_panel_survival_only_and_ignored_survival_warning():
    grid = AgeGrid.span(40, 44)
    surv = SurvivalObservation(40, 44, 0.02)
    with pytest.warns(UserWarning, match="survival observations are ignored"):
        panel = Panel(
            age_grid=grid,
            strata={"full": (CountObservation(40, 100.0, 1), surv), "nqx": (surv,)},
            kind="area",
        )
    assert panel.survival_only_keys() == ("nqx",)
    assert not panel.is_survival_only("full")


def test_panel_from_arrays_and_records():
    grid = AgeGrid.span(40, 42)
    panel = Panel.from_arrays(
        grid, [[10.0, 10.0, 10.0], [20.0, 20.0, 20.0]], [[1, 2, 3], [2, 3, 4]],
        keys=["2000", "2001"], kind="period",
    )
    assert panel.keys() == ("2000", "2001")
    assert panel["2001"][2].count == 4

    with warnings.catch_warnings():
        warnings.simplefilter("error")
        rec = Panel.from_records(
            [
                {"stratum": "a", "age": 50, "deaths": 3, "population": 1000},
                {"stratum": "a", "age": 51, "deaths": 4, "population": 1000},
                {"stratum": "b", "age_start": 50, "age_end": 51, "probability": 0.01},
            ],
            kind="area",
        )
    assert rec.age_grid == AgeGrid.span(50, 51)
    assert rec.survival_only_keys() == ("b",)

    with pytest.raises(DomainError, match="Cannot interpret"):
        Panel.from_records([{"age": 50}])

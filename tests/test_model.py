import math

import numpy as np
import pytest

from gompertz_fitting import AgeGrid, ConfigurationError, DomainError, GompertzModel
from gompertz_fitting.params import HalfNormal, Normal


def _model() -> GompertzModel:
    return GompertzModel(age_grid=AgeGrid.span(30, 90))


def test_hazard_positive_and_increasing():
    model = _model()
    rng = np.random.default_rng(0)
    ages = np.arange(30, 91)
    for _ in range(20):
        la = rng.uniform(-10.0, -2.0)
        b = rng.uniform(0.01, 0.2)
        h = model.hazard(la, b, ages)
        assert h.shape == ages.shape
        assert np.all(h > 0.0)
        assert np.all(np.diff(h) > 0.0)


def test_hazard_matches_gompertz_form():
    model = _model()
    assert model.hazard(-6.0, 0.1, 40) == pytest.approx(math.exp(-6.0))
    assert model.hazard(-6.0, 0.1, 50) == pytest.approx(math.exp(-5.0))
    assert model.log_hazard(-6.0, 0.1, 60) == pytest.approx(-4.0)


def test_hazard_broadcasts_over_draws():
    model = _model()
    la = np.array([-6.0, -5.0, -4.0])
    b = np.array([0.1, 0.05, 0.0])
    h = model.hazard(la, b, [40, 41])
    assert h.shape == (3, 2)
    assert h[2, 0] == pytest.approx(h[2, 1])


def test_hazard_is_clamped():
    model = _model()
    assert np.isfinite(model.hazard(50.0, 1.0, 90))
    assert model.log_hazard(-100.0, 0.0, 40) == pytest.approx(-50.0)


def test_hazard_off_grid_raises():
    with pytest.raises(DomainError):
        _model().hazard(-6.0, 0.1, 95)


def test_survival_prob_single_age_identity():
    model = _model()
    for age in (30, 55, 90):
        h = model.hazard(-5.0, 0.08, age)
        assert model.survival_prob(-5.0, 0.08, age, age) == pytest.approx(1.0 - math.exp(-h))


def test_survival_prob_multi_age_product():
    model = _model()
    ages = np.arange(40, 50)
    expected = 1.0 - np.prod(np.exp(-model.hazard(-6.0, 0.1, ages)))
    assert model.survival_prob(-6.0, 0.1, 40, 49) == pytest.approx(expected, rel=1e-12)


def test_survival_prob_rejects_bad_window():
    model = _model()
    with pytest.raises(DomainError):
        model.survival_prob(-6.0, 0.1, 50, 45)
    with pytest.raises(DomainError):
        model.survival_prob(-6.0, 0.1, 20, 45)


def test_builders_are_pure():
    base = _model()
    m = base.prior(beta=("normal", 0.1, 0.05), sigma_alpha=("halfnormal", 0.5))
    assert base.prior_map() == {}
    assert m.prior_map()["beta"] == Normal(0.1, 0.05)
    assert m.prior_map()["sigma_alpha"] == HalfNormal(0.5)

    d = m.derive("hazard_at_65", lambda blocks, model: np.exp(blocks["log_alpha"] + 25 * blocks["beta"]))
    assert [s.name for s in d.derived_specs()] == ["modal_age", "hazard_at_65"]
    assert m.derived == ()

    r = d.with_age_reference(50)
    assert r.age_reference == 50 and d.age_reference == 40


def test_builder_errors():
    m = _model()
    with pytest.raises(KeyError):
        m.prior(gamma=("normal", 0.0, 1.0))
    with pytest.raises(TypeError):
        m.prior(beta="normal")
    with pytest.raises(ConfigurationError):
        m.prior(beta=("normal", 0.0, -1.0))
    with pytest.raises(ValueError, match="conflicts"):
        m.derive("modal_age", lambda blocks, model: blocks["beta"])
    with pytest.raises(ConfigurationError):
        GompertzModel(age_grid=AgeGrid.span(40, 50), age_reference=40.5)

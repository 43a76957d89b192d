import math

import numpy as np
import pytest
from scipy.stats import poisson

from gompertz_fitting import (
    AgeGrid,
    ConfigurationError,
    CountObservation,
    GompertzModel,
    NonFiniteDensityError,
    Panel,
    SurvivalObservation,
)
from gompertz_fitting.inference import (
    CountLikelihood,
    MixedAreaLikelihood,
    RandomWalkLikelihood,
    build_likelihood,
    resolve_kind,
)
from gompertz_fitting.params import HalfNormal


GRID = AgeGrid.span(40, 49)


def _counts(log_alpha, beta, exposure=1e4, seed=0):
    rng = np.random.default_rng(seed)
    ages = GRID.as_array()
    mu = np.exp(log_alpha + beta * (ages - 40.0))
    return rng.poisson(exposure * mu)


def _period_panel() -> Panel:
    counts = np.stack([_counts(-6.0, 0.1, seed=s) for s in range(3)])
    return Panel.from_arrays(GRID, np.full_like(counts, 1e4, dtype=float), counts,
                             keys=["2000", "2001", "2002"], kind="period")


def _area_panel() -> Panel:
    strata = {}
    for i in range(3):
        c = _counts(-6.0 + 0.05 * i, 0.1, seed=10 + i)
        strata[f"area{i}"] = tuple(
            CountObservation(age=a, exposure=1e4, count=int(k)) for a, k in zip(GRID, c)
        )
    strata["nqx"] = (SurvivalObservation(40, 49, 0.03),)
    strata["nqx_n"] = (SurvivalObservation(40, 44, 0.012, sample_size=5000),)
    return Panel(age_grid=GRID, strata=strata, kind="area")


def _finite_difference(post, theta, h=1e-6):
    g = np.zeros_like(theta)
    for i in range(theta.size):
        e = np.zeros_like(theta)
        e[i] = h
        g[i] = (post.log_density(theta + e) - post.log_density(theta - e)) / (2 * h)
    return g


@pytest.mark.parametrize(
    "panel_fn,likelihood",
    [
        (lambda: Panel.cross_section(GRID, [CountObservation(a, 1e4, int(k)) for a, k in zip(GRID, _counts(-6.0, 0.1))]), "count"),
        (_period_panel, "random_walk"),
        (_area_panel, "mixed"),
    ],
    ids=["count", "random_walk", "mixed"],
)
def test_gradient_matches_finite_differences(panel_fn, likelihood):
    post = GompertzModel(age_grid=GRID).posterior(panel_fn(), likelihood)
    rng = np.random.default_rng(3)
    theta = post.initial_guess() + rng.normal(0.0, 0.05, size=post.dim)
    _, grad = post.log_density_and_gradient(theta)
    np.testing.assert_allclose(grad, _finite_difference(post, theta), rtol=1e-4, atol=1e-4)


def test_poisson_term_matches_scipy():
    counts = _counts(-6.0, 0.1)
    exposure = np.full(len(GRID), 1e4)
    exposure[3] = 0.0
    counts[3] = 0
    panel = Panel.from_arrays(GRID, exposure, counts)
    lik = CountLikelihood(panel, age_reference=40)

    la, b = -5.9, 0.11
    ll, _ = lik.log_likelihood({"log_alpha": np.array([la]), "beta": np.array([b])})
    rate = exposure * np.exp(la + b * (GRID.as_array() - 40.0))
    keep = exposure > 0
    expected = float(np.sum(poisson.logpmf(counts[keep], rate[keep])))
    assert ll == pytest.approx(expected, rel=1e-10)


def test_survival_term_logit_normal_and_binomial():
    panel = Panel(
        age_grid=GRID,
        strata={"a": (SurvivalObservation(40, 49, 0.03),), "b": (SurvivalObservation(40, 49, 0.03, sample_size=1000),)},
        kind="area",
    )
    lik = MixedAreaLikelihood(panel, age_reference=40, survival_logit_scale=0.05)
    model = GompertzModel(age_grid=GRID)
    q = float(model.survival_prob(-6.0, 0.1, 40, 49))

    values = {
        "log_alpha": np.array([-6.0, -6.0]),
        "beta": np.array([0.1, 0.1]),
        "mu_log_alpha": np.array([-6.0]),
        "mu_beta": np.array([0.1]),
        "sigma_alpha": np.array([1.0]),
        "sigma_beta": np.array([1.0]),
    }
    ll, _ = lik.log_likelihood(values)

    z = (math.log(q / (1 - q)) - math.log(0.03 / 0.97)) / 0.05
    gauss = -0.5 * z * z - math.log(0.05) - 0.5 * math.log(2 * math.pi)
    n, k = 1000.0, 30.0
    binom = (
        math.lgamma(n + 1) - math.lgamma(k + 1) - math.lgamma(n - k + 1)
        + k * math.log(q) + (n - k) * math.log(1 - q)
    )
    # two areas, two exchangeable blocks, all at their means with sigma = 1
    hier = 4 * (-0.5 * math.log(2 * math.pi))
    assert ll == pytest.approx(gauss + binom + hier, rel=1e-9)


def test_count_likelihood_rejects_survival_only_strata():
    with pytest.raises(ConfigurationError, match="likelihood='mixed'"):
        CountLikelihood(_area_panel())


def test_auto_likelihood_selection():
    single = Panel.from_arrays(GRID, np.full(10, 1e4), _counts(-6.0, 0.1))
    assert resolve_kind(single, "auto") == "count"
    assert resolve_kind(_period_panel(), "auto") == "random_walk"
    assert resolve_kind(_area_panel(), "auto") == "mixed"
    assert isinstance(build_likelihood(_period_panel()), RandomWalkLikelihood)
    with pytest.raises(ConfigurationError, match="Unknown likelihood"):
        build_likelihood(single, "weibull")


def test_parameter_layout_and_names():
    post = GompertzModel(age_grid=GRID).posterior(_period_panel())
    assert post.dim == 8
    assert post.param_names[:3] == ("log_alpha[2000]", "log_alpha[2001]", "log_alpha[2002]")
    assert post.param_names[-2:] == ("sigma_alpha", "sigma_beta")

    theta = np.zeros(post.dim)
    values = post.unpack(theta)
    assert values["sigma_alpha"][0] == pytest.approx(1.0)
    np.testing.assert_allclose(post.unconstrain(post.constrain(theta)), theta)


def test_mixed_default_and_user_priors():
    model = GompertzModel(age_grid=GRID)
    post = model.posterior(_area_panel())
    assert post.priors["sigma_beta"] == HalfNormal(0.1)
    assert post.priors["sigma_alpha"] == HalfNormal(1.0)

    post2 = model.prior(sigma_beta=("halfnormal", 0.5)).posterior(_area_panel())
    assert post2.priors["sigma_beta"] == HalfNormal(0.5)


def test_non_finite_density_raises_with_theta():
    post = GompertzModel(age_grid=GRID).posterior(_period_panel())
    theta = np.zeros(post.dim)
    theta[-1] = 1000.0  # sigma_beta = exp(1000)
    with pytest.raises(NonFiniteDensityError) as info:
        post.log_density_and_gradient(theta)
    np.testing.assert_array_equal(info.value.theta, theta)


def test_theta_shape_checked():
    post = GompertzModel(age_grid=GRID).posterior(_period_panel())
    with pytest.raises(ValueError, match="theta must have shape"):
        post.log_density(np.zeros(post.dim + 1))

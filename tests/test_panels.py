import numpy as np
import pytest

from gompertz_fitting import (
    AgeGrid,
    CountObservation,
    GompertzModel,
    Panel,
    SurvivalObservation,
)

GRID = AgeGrid.span(40, 59)


def _mixed_panel(seed: int = 0) -> Panel:
    rng = np.random.default_rng(seed)
    ages = GRID.as_array()
    model = GompertzModel(age_grid=GRID)
    strata = {}
    for i in range(4):
        la = -6.0 + rng.normal(0.0, 0.05)
        b = 0.1 + rng.normal(0.0, 0.005)
        counts = rng.poisson(1e5 * np.exp(la + b * (ages - 40.0)))
        strata[f"area{i}"] = tuple(
            CountObservation(age=int(a), exposure=1e5, count=int(k)) for a, k in zip(ages, counts)
        )
    la = -6.0 + rng.normal(0.0, 0.05)
    b = 0.1 + rng.normal(0.0, 0.005)
    q = float(model.survival_prob(la, b, 40, 59))
    strata["survey"] = (SurvivalObservation(age_start=40, age_end=59, observed_probability=q),)
    return Panel(age_grid=GRID, strata=strata, kind="area")


@pytest.fixture(scope="module")
def mixed_run():
    model = GompertzModel(age_grid=GRID)
    return model.fit(
        _mixed_panel(), num_chains=4, num_warmup=1000, num_draws=1000, seed=99,
        emit_warnings=False,
    )


def test_mixed_auto_selects_hierarchical_model(mixed_run):
    assert mixed_run.posterior.likelihood.kind == "mixed"
    names = mixed_run.draws.names
    assert "log_alpha[survey]" in names and "beta[survey]" in names
    assert names[-4:] == ("mu_log_alpha", "mu_beta", "sigma_alpha", "sigma_beta")


def test_survival_only_area_has_wider_intervals(mixed_run):
    summary = mixed_run.summary()
    for block in ("log_alpha", "beta"):
        survey = summary[f"{block}[survey]"].width
        full = [summary[f"{block}[area{i}]"].width for i in range(4)]
        assert survey > max(full)


def test_mixed_hyperparameters_are_positive_and_sensible(mixed_run):
    draws = mixed_run.draws
    assert np.all(draws["sigma_alpha"] > 0.0)
    assert np.all(draws["sigma_beta"] > 0.0)
    summary = mixed_run.summary()
    assert summary["mu_beta"].median == pytest.approx(0.1, abs=0.02)
    assert summary["mu_log_alpha"].median == pytest.approx(-6.0, abs=0.2)


def test_mixed_survey_area_reproduces_observed_probability(mixed_run):
    blocks = mixed_run.blocks()
    s = mixed_run.stratum_keys.index("survey")
    model = mixed_run.model
    q = model.survival_prob(blocks["log_alpha"][:, s], blocks["beta"][:, s], 40, 59)
    observed = mixed_run.panel["survey"][0].observed_probability
    assert float(np.median(q)) == pytest.approx(observed, rel=0.1)


def _period_panel(seed: int = 4) -> Panel:
    rng = np.random.default_rng(seed)
    ages = GRID.as_array()
    la = -6.0 - 0.03 * np.arange(4)
    b = 0.1 + 0.001 * np.arange(4)
    counts = np.stack([rng.poisson(5e4 * np.exp(la[t] + b[t] * (ages - 40.0))) for t in range(4)])
    return Panel.from_arrays(
        GRID, np.full(counts.shape, 5e4), counts, keys=[2000, 2001, 2002, 2003], kind="period"
    )


def test_random_walk_fit():
    model = GompertzModel(age_grid=GRID)
    run = model.fit(
        _period_panel(), num_chains=2, num_warmup=500, num_draws=500, seed=11,
        emit_warnings=False,
    )
    assert run.posterior.likelihood.kind == "random_walk"
    assert run.draws.names[:4] == (
        "log_alpha[2000]", "log_alpha[2001]", "log_alpha[2002]", "log_alpha[2003]",
    )
    summary = run.summary()
    for t, key in enumerate((2000, 2001, 2002, 2003)):
        assert summary[f"beta[{key}]"].median == pytest.approx(0.1 + 0.001 * t, abs=0.01)
        assert summary[f"log_alpha[{key}]"].median == pytest.approx(-6.0 - 0.03 * t, abs=0.15)
    assert np.all(run.draws["sigma_alpha"] > 0.0)
    assert set(run.band()) == {2000, 2001, 2002, 2003}
    assert "modal_age[2003]" in summary


def test_explicit_count_likelihood_on_period_panel():
    model = GompertzModel(age_grid=GRID)
    run = model.fit(
        _period_panel(), likelihood="count", num_chains=1, num_warmup=200, num_draws=200,
        seed=5, emit_warnings=False,
    )
    assert run.posterior.likelihood.kind == "count"
    assert run.posterior.dim == 8

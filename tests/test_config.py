import numpy as np
import pytest

from gompertz_fitting import AgeGrid, ConfigurationError, GompertzModel, Panel, SamplerConfig


@pytest.mark.parametrize(
    "options",
    [
        {"num_draws": 0},
        {"num_warmup": -1},
        {"num_chains": 0},
        {"target_accept": 1.0},
        {"target_accept": 0.0},
        {"max_tree_depth": 0},
        {"max_energy_error": 0.0},
        {"init": "random"},
        {"init_radius": -1.0},
        {"seed": (1, 2, 3), "num_chains": 2},
        {"seed": -5},
        {"dense_mass": "yes"},
        {"num_draws": 10.5},
        {"parallel": "threads"},
        {"max_rhat": 1.0},
    ],
)
def test_invalid_options_raise(options):
    with pytest.raises(ConfigurationError):
        SamplerConfig(**options)


def test_from_mapping_rejects_unknown_keys():
    with pytest.raises(ConfigurationError, match="Unknown option"):
        SamplerConfig.from_mapping({"num_samples": 100})
    cfg = SamplerConfig.from_mapping({"num_draws": 100, "seed": 3})
    assert cfg.num_draws == 100 and cfg.seed == 3
    assert cfg.num_iterations == 1100


def test_updated_revalidates():
    cfg = SamplerConfig()
    assert cfg.updated(num_chains=2).num_chains == 2
    with pytest.raises(ConfigurationError):
        cfg.updated(num_chains=-2)
    with pytest.raises(ConfigurationError):
        cfg.updated(bogus=1)


def test_chain_rngs_independent_and_reproducible():
    a = SamplerConfig(seed=11, num_chains=3).chain_rngs()
    b = SamplerConfig(seed=11, num_chains=3).chain_rngs()
    draws_a = [r.standard_normal(4) for r in a]
    draws_b = [r.standard_normal(4) for r in b]
    for x, y in zip(draws_a, draws_b):
        np.testing.assert_array_equal(x, y)
    assert not np.allclose(draws_a[0], draws_a[1])

    same = SamplerConfig(seed=(7, 7), num_chains=2).chain_rngs()
    np.testing.assert_array_equal(same[0].standard_normal(3), same[1].standard_normal(3))


def _panel() -> Panel:
    grid = AgeGrid.span(40, 44)
    return Panel.from_arrays(grid, np.full(5, 1e4), [25, 27, 30, 33, 37])


def test_fit_rejects_bad_options_before_sampling():
    model = GompertzModel(age_grid=AgeGrid.span(40, 44))
    with pytest.raises(ConfigurationError, match="Unknown option"):
        model.fit(_panel(), num_samples=10)
    with pytest.raises(ConfigurationError, match="Unknown backend"):
        model.fit(_panel(), backend="metropolis", num_draws=10)
    with pytest.raises(ConfigurationError, match="init has length"):
        model.fit(_panel(), init=np.zeros(5), num_draws=10, num_warmup=0)


@pytest.mark.parametrize("seed", [1.5, 2.0, "7", True])
def test_non_integer_seed_is_a_configuration_error(seed):
    with pytest.raises(ConfigurationError, match="seed"):
        SamplerConfig(seed=seed)

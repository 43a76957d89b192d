import math

import numpy as np
import pytest

from gompertz_fitting import ConvergenceWarning, DivergentTransition
from gompertz_fitting.backends.common import ChainResult
from gompertz_fitting.diagnostics import diagnose, ebfmi, effective_sample_size, split_rhat


def _ar1(rng, phi, n_chains, n):
    x = np.zeros((n_chains, n))
    eps = rng.standard_normal((n_chains, n))
    for t in range(1, n):
        x[:, t] = phi * x[:, t - 1] + eps[:, t]
    return x


def test_rhat_and_ess_on_iid_draws():
    rng = np.random.default_rng(0)
    x = rng.standard_normal((4, 1000))
    assert split_rhat(x) == pytest.approx(1.0, abs=0.01)
    assert 3000.0 < effective_sample_size(x) < 5000.0


def test_ess_drops_with_autocorrelation():
    rng = np.random.default_rng(1)
    x = _ar1(rng, 0.9, 4, 2000)
    # tau = (1 + phi) / (1 - phi) = 19
    ess = effective_sample_size(x)
    assert 200.0 < ess < 800.0


def test_rhat_flags_separated_chains():
    rng = np.random.default_rng(2)
    x = rng.standard_normal((4, 500))
    x[0] += 3.0
    assert split_rhat(x) > 1.1


def test_rhat_flags_drift_within_chain():
    rng = np.random.default_rng(3)
    x = rng.standard_normal((2, 500)) + np.linspace(0.0, 5.0, 500)
    assert split_rhat(x) > 1.1


def test_short_or_constant_chains_are_nan():
    assert math.isnan(split_rhat(np.zeros((2, 3))))
    assert math.isnan(split_rhat(np.ones((2, 100))))
    assert math.isnan(effective_sample_size(np.ones((2, 100))))


def test_ebfmi():
    rng = np.random.default_rng(4)
    assert ebfmi(rng.standard_normal(5000)) == pytest.approx(2.0, rel=0.1)
    slow = np.cumsum(rng.standard_normal(5000))
    assert ebfmi(slow) < 0.3


def _chain(chain_id, values, divergent=None, depth=None, status="done"):
    n = values.shape[0]
    stats = {
        "divergent": np.zeros(n, dtype=bool) if divergent is None else divergent,
        "tree_depth": np.full(n, 2) if depth is None else depth,
        "energy": np.random.default_rng(chain_id).standard_normal(n),
    }
    return ChainResult(chain_id=chain_id, samples=values, stats=stats, status=status)


def test_report_counts_and_warnings():
    rng = np.random.default_rng(5)
    values = [rng.standard_normal((1000, 2)) for _ in range(3)]
    div = np.zeros(1000, dtype=bool)
    div[[3, 50]] = True
    depth = np.full(1000, 2)
    depth[:7] = 10
    chains = [
        _chain(0, values[0], divergent=div),
        _chain(1, values[1], depth=depth),
        _chain(2, values[2][:400], status="truncated"),
    ]
    report = diagnose(chains, [c.samples for c in chains], ("a", "b"), max_tree_depth=10, min_ess=100.0)

    assert report.divergences == 2
    assert report.divergences_per_chain == (2, 0, 0)
    assert report.treedepth_hits == 7
    assert report.truncated_chains == (2,)
    assert report.draws_per_chain == 400
    assert report.converged
    assert not report.ok

    with pytest.warns(DivergentTransition, match="2 divergent"):
        report.emit_warnings()


def test_report_excludes_failed_chains_and_flags_not_converged():
    rng = np.random.default_rng(6)
    good = rng.standard_normal((500, 1))
    failed = rng.standard_normal((20, 1)) + 100.0
    chains = [
        _chain(0, good),
        ChainResult(chain_id=1, samples=failed, stats={}, status="failed", message="boom"),
    ]
    report = diagnose(chains, [c.samples for c in chains], ("a",), min_ess=10_000.0)

    assert report.failed_chains == (1,)
    assert report.draws_per_chain == 500
    assert report.rhat["a"] == pytest.approx(1.0, abs=0.05)
    assert [nc.name for nc in report.not_converged] == ["a"]
    assert "ess" in report.not_converged[0].reasons[0]

    with pytest.warns(ConvergenceWarning, match="chain 1 failed: boom"):
        report.emit_warnings()
    assert "rhat=" in report.summary()

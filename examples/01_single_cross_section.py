import numpy as np

from gompertz_fitting import AgeGrid, GompertzModel, Panel

grid = AgeGrid.span(40, 59)
model = GompertzModel(age_grid=grid, age_reference=40)

# Simulated deaths for one cross-section (large population at every age)
rng = np.random.default_rng(0)
exposure = np.full(len(grid), 1e5)
mu_true = model.hazard(-6.0, 0.1, grid.as_array())
panel = Panel.from_arrays(grid, exposure, rng.poisson(exposure * mu_true))

run = model.fit(panel, num_chains=4, num_warmup=500, num_draws=500, seed=1)

print(run.diagnostics().summary())
print(run.summary().to_string(digits=4))

band = run.band(ages=[40, 50, 59])["all"]
print("hazard at 40/50/59:", band.median, "90% low:", band.low, "high:", band.high)
print("P(death 40..59):", np.median(model.survival_prob(run["log_alpha[all]"], run["beta[all]"], 40, 59)))

import numpy as np

from gompertz_fitting import AgeGrid, GompertzModel, Panel, SamplerConfig

grid = AgeGrid.span(50, 79)
model = GompertzModel(age_grid=grid, age_reference=50).prior(
    sigma_alpha=("halfnormal", 0.2),
    sigma_beta=("halfnormal", 0.02),
)

# Five yearly cross-sections with slowly improving mortality
rng = np.random.default_rng(2)
years = [2015, 2016, 2017, 2018, 2019]
ages = grid.as_array()
exposure = np.full((len(years), len(grid)), 2e4)
log_alpha = -5.0 - 0.02 * np.arange(len(years))
counts = np.stack(
    [rng.poisson(exposure[t] * np.exp(log_alpha[t] + 0.09 * (ages - 50))) for t in range(len(years))]
)
panel = Panel.from_arrays(grid, exposure, counts, keys=years, kind="period")

config = SamplerConfig(num_chains=2, num_warmup=400, num_draws=400, seed=7, age_reference=50)
run = model.fit(panel, config=config)

summary = run.summary()
for year in years:
    row = summary[f"log_alpha[{year}]"]
    print(year, f"log_alpha {row.median:.3f} [{row.lower:.3f}, {row.upper:.3f}]",
          f"modal age {summary[f'modal_age[{year}]'].median:.1f}")
print("sigma_alpha:", summary["sigma_alpha"].median)

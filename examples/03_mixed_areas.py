import threading

import numpy as np

from gompertz_fitting import AgeGrid, GompertzModel, Panel

grid = AgeGrid.span(40, 59)
model = GompertzModel(age_grid=grid)

rng = np.random.default_rng(3)
records = []
for area in ["north", "south", "east", "west"]:
    la = -6.0 + rng.normal(0.0, 0.05)
    b = 0.1 + rng.normal(0.0, 0.005)
    for age in grid:
        records.append(
            {"stratum": area, "age": age, "population": 1e5,
             "deaths": rng.poisson(1e5 * float(model.hazard(la, b, age)))}
        )
# One area only reports the probability of dying between 40 and 59
records.append({"stratum": "island", "age_start": 40, "age_end": 59, "probability": 0.10})

panel = Panel.from_records(records, kind="area", age_grid=grid)
print("survival-only areas:", panel.survival_only_keys())

# A threading.Event can stop a long run from another thread.
stop = threading.Event()
run = model.fit(panel, num_chains=2, num_warmup=500, num_draws=500, seed=4, abort=stop)

summary = run.summary()
for key in panel.keys():
    row = summary[f"beta[{key}]"]
    print(f"{key:>8s}: beta {row.median:.4f}  width {row.width:.4f}")

report = run.diagnostics()
print("divergences:", report.divergences, "converged:", report.converged)
for nc in report.not_converged:
    print("  not converged:", nc.name, nc.reasons)

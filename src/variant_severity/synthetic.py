from __future__ import annotations

"""
Synthetic line list with known variant hazard ratios.

Used for tests and for dry runs of the pipeline outside the secure environment. The
generating process is deliberately confounded the way real surveillance data are:
  - the comparison variant's share rises over calendar time (hence stratify by week)
  - vaccination coverage rises with age and with time
  - age, sex, deprivation and vaccination all act on the outcome hazards

Outcome hazards (per day, constant within the window) for a case with covariates x:

    h_admission(x) = base * exp(lp(x)) * HR_admission ** comparison
    h_attendance_only(x) = base * exp(lp(x)) * HR_attendance ** comparison
    h_death(x) = base * exp(1.3 * lp(x)) * HR_death ** comparison

An attendance is recorded at the earlier of an admission and an attendance-only event, so
the true attendance HR is a hazard-weighted mix of the two ratios.
"""

from pathlib import Path

import numpy as np
import pandas as pd

from variant_severity.config import AnalysisConfig
from variant_severity.derive import assign_vaccination_status, vaccination_labels

REGIONS = ("east", "london", "midlands", "north_east", "north_west", "south_east", "south_west")
ETHNICITIES = ("white", "asian", "black", "mixed", "other", "unknown")
ETHNICITY_P = (0.72, 0.12, 0.05, 0.03, 0.03, 0.05)

BASE_HAZARD = {"attendance": 0.0030, "admission": 0.0025, "death": 0.0004}
DEFAULT_TRUE_HR = {"attendance": 1.5, "admission": 2.0, "death": 2.0}
MAX_RECORDED_DAYS = 60


def _fmt(dates: pd.Series) -> pd.Series:
    return dates.dt.strftime("%Y-%m-%d")


def simulate_cohort(
    n: int = 5000,
    *,
    seed: int = 7,
    config: AnalysisConfig | None = None,
    hazard_ratios: dict[str, float] | None = None,
    start_date: str = "2021-03-29",
    weeks: int = 8,
    censor_date: str | None = None,
) -> pd.DataFrame:
    config = config or AnalysisConfig()
    hrs = {**DEFAULT_TRUE_HR, **(hazard_ratios or {})}
    rng = np.random.default_rng(seed)

    start = pd.Timestamp(start_date)
    span = int(weeks) * 7
    day = rng.integers(0, span, size=n)
    specimen = pd.Series(start + pd.to_timedelta(day, unit="D"))
    censor = pd.Timestamp(censor_date) if censor_date is not None else start + pd.Timedelta(days=span + 14)

    share = 1.0 / (1.0 + np.exp(-(day - span / 2.0) / (span / 8.0)))
    is_cmp = rng.random(n) < share

    age = np.clip(rng.gamma(shape=4.0, scale=9.0, size=n), 0.0, 100.0).round()
    sex = rng.choice(["female", "male"], size=n)
    ethnicity = rng.choice(ETHNICITIES, size=n, p=ETHNICITY_P)
    imd = rng.integers(1, 6, size=n)
    region = rng.choice(REGIONS, size=n)

    # Vaccination: coverage increases with age and calendar time.
    p_vax = np.clip((age - 16.0) / 55.0, 0.0, 0.95) * (0.6 + 0.4 * day / span)
    vaxed = rng.random(n) < p_vax
    d1_before = rng.integers(1, 150, size=n)
    dose1 = specimen - pd.to_timedelta(d1_before, unit="D")
    dose1 = dose1.where(vaxed)
    gap = rng.integers(56, 84, size=n)
    dose2 = dose1 + pd.to_timedelta(gap, unit="D")
    dose2 = dose2.where(vaxed & (rng.random(n) < 0.8))
    # Doses after the extraction date are not in the data yet.
    dose1 = dose1.where(dose1 <= censor)
    dose2 = dose2.where(dose2 <= censor)

    reinf = rng.random(n) < 0.03
    prior = specimen - pd.to_timedelta(rng.integers(100, 400, size=n), unit="D")
    prior = prior.where(reinf)

    status = assign_vaccination_status(specimen, dose1, dose2, config=config)
    unvax, d1_early, d1_late, d2_late = vaccination_labels(config)
    vax_effect = status.map({unvax: 0.0, d1_early: -0.1, d1_late: -0.6, d2_late: -1.3}).to_numpy(float)

    lp = 0.04 * (age - 40.0) + 0.15 * (sex == "male") + 0.25 * (imd == 1) - 0.4 * reinf + vax_effect
    cmp_ = is_cmp.astype(float)

    def draw(base: float, scale: float, hr: float) -> np.ndarray:
        rate = base * np.exp(scale * lp + np.log(hr) * cmp_)
        return rng.exponential(1.0 / rate)

    t_adm = draw(BASE_HAZARD["admission"], 1.0, hrs["admission"])
    t_att_only = draw(BASE_HAZARD["attendance"], 1.0, hrs["attendance"])
    t_att = np.minimum(t_adm, t_att_only)
    t_death = draw(BASE_HAZARD["death"], 1.3, hrs["death"])

    def to_date(t: np.ndarray) -> pd.Series:
        days = np.floor(t)
        d = specimen + pd.to_timedelta(np.where(days < MAX_RECORDED_DAYS, days, 0), unit="D")
        return d.where((days < MAX_RECORDED_DAYS) & (d <= censor))

    out = pd.DataFrame(
        {
            "case_id": [f"C{i:07d}" for i in range(n)],
            "variant": np.where(is_cmp, config.comparison_variant, config.reference_variant),
            "specimen_date": _fmt(specimen),
            "age": age.astype(int),
            "sex": sex,
            "ethnicity": ethnicity,
            "imd_quintile": imd,
            "region": region,
            "vaccine_dose1_date": _fmt(dose1),
            "vaccine_dose2_date": _fmt(dose2),
            "prior_positive_date": _fmt(prior),
            "attendance_date": _fmt(to_date(t_att)),
            "admission_date": _fmt(to_date(t_adm)),
            "death_date": _fmt(to_date(t_death)),
        }
    )
    return out


def write_cohort_csv(*, out_csv: Path, cohort: pd.DataFrame) -> Path:
    out_csv = Path(out_csv)
    out_csv.parent.mkdir(parents=True, exist_ok=True)
    cohort.to_csv(out_csv, index=False)
    return out_csv

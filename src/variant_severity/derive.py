from __future__ import annotations

"""
Derived-variable computation.

Takes the validated line list and adds:
  - the exposure indicator (`comparison_variant`)
  - adjustment covariates (`age_group`, `vaccination_status`, `reinfection`)
  - stratification keys (`specimen_week`)
  - per-outcome survival variables: `<outcome>_eligible`, `<outcome>_event`, `<outcome>_time`

Survival time is measured in days from specimen date. Follow-up for each outcome ends at
the earliest of: end of the outcome window, the administrative censor date, and (for
outcomes other than death) the date of death.
"""

import json
from dataclasses import dataclass
from pathlib import Path

import numpy as np
import pandas as pd

from variant_severity.config import AnalysisConfig, OutcomeSpec
from variant_severity.validate import outcome_date_columns


@dataclass(frozen=True)
class DerivedCohort:
    data: pd.DataFrame
    censor_date: pd.Timestamp
    summary: dict


def age_group_labels(bands: tuple[int, ...]) -> list[str]:
    labels = [f"{lo}-{hi - 1}" for lo, hi in zip(bands[:-1], bands[1:])]
    labels.append(f"{bands[-1]}+")
    return labels


def assign_age_group(age: pd.Series, bands: tuple[int, ...]) -> pd.Series:
    edges = [float(b) for b in bands] + [np.inf]
    cut = pd.cut(age.astype(float), bins=edges, right=False, labels=age_group_labels(bands))
    return pd.Series(cut, index=age.index).astype(object).fillna("unknown").astype(str)


def vaccination_labels(config: AnalysisConfig) -> list[str]:
    return [
        "unvaccinated",
        f"dose1_<{config.dose1_lag_days}d",
        f"dose1_{config.dose1_lag_days}d+",
        f"dose2_{config.dose2_lag_days}d+",
    ]


def assign_vaccination_status(
    specimen: pd.Series,
    dose1: pd.Series,
    dose2: pd.Series,
    *,
    config: AnalysisConfig,
) -> pd.Series:
    """
    Vaccination status on the specimen date. Doses given on or after the specimen date
    do not count.
    """
    unvax, d1_early, d1_late, d2_late = vaccination_labels(config)
    d1_days = (specimen - dose1).dt.days.to_numpy(dtype=float)
    d2_days = (specimen - dose2).dt.days.to_numpy(dtype=float)
    with np.errstate(invalid="ignore"):
        status = np.select(
            [
                d2_days >= config.dose2_lag_days,
                d1_days >= config.dose1_lag_days,
                d1_days > 0,
            ],
            [d2_late, d1_late, d1_early],
            default=unvax,
        )
    return pd.Series(status, index=specimen.index, dtype=object)


def assign_reinfection(specimen: pd.Series, prior_positive: pd.Series, *, gap_days: int) -> pd.Series:
    gap = (specimen - prior_positive).dt.days.to_numpy(dtype=float)
    with np.errstate(invalid="ignore"):
        flag = gap >= int(gap_days)
    return pd.Series(np.where(flag, "yes", "no"), index=specimen.index, dtype=object)


def week_start(dates: pd.Series) -> pd.Series:
    monday = dates - pd.to_timedelta(dates.dt.weekday, unit="D")
    return monday.dt.strftime("%Y-%m-%d")


def resolve_censor_date(cohort: pd.DataFrame, config: AnalysisConfig) -> pd.Timestamp:
    """
    Administrative censor date: the configured one, else the latest specimen or outcome
    date in the line list (a proxy for the data extraction date).
    """
    if config.censor_date is not None:
        return pd.Timestamp(config.censor_date).normalize()
    cols = ["specimen_date", *outcome_date_columns(config)]
    latest = [cohort[c].max() for c in cols if c in cohort.columns]
    latest = [t for t in latest if pd.notna(t)]
    if not latest:
        raise ValueError("Cannot infer censor_date: the cohort has no dates. Set censor_date in the config.")
    return pd.Timestamp(max(latest)).normalize()


def outcome_timing(
    data: pd.DataFrame,
    outcome: OutcomeSpec,
    *,
    censor_date: pd.Timestamp,
    same_day_offset: float,
) -> pd.DataFrame:
    spec = data["specimen_date"]
    cols = list(outcome.event_columns)
    dates = data[cols]
    event_date = dates.where(dates.ge(spec, axis=0)).min(axis=1)

    admin_end = spec + pd.Timedelta(days=int(outcome.window_days))
    admin_end = admin_end.where(admin_end <= censor_date, censor_date)
    end = admin_end
    if outcome.censor_at_death and "death_date" in data.columns:
        death = data["death_date"]
        end = end.where(death.isna() | (death >= end), death)

    eligible = (admin_end > spec).to_numpy()
    event = (event_date.notna() & (event_date <= end)).to_numpy()

    event_days = (event_date - spec).dt.days.to_numpy(dtype=float)
    end_days = (end - spec).dt.days.to_numpy(dtype=float)
    time = np.where(event, event_days, end_days)
    # Same-day events (and same-day deaths for censoring) would otherwise carry zero time.
    time = np.where(time <= 0.0, float(same_day_offset), time)
    time = np.where(eligible, time, np.nan)

    return pd.DataFrame(
        {
            f"{outcome.name}_eligible": eligible,
            f"{outcome.name}_event": (event & eligible).astype(int),
            f"{outcome.name}_time": time,
        },
        index=data.index,
    )


def derive_variables(cohort: pd.DataFrame, config: AnalysisConfig) -> DerivedCohort:
    df = cohort.copy()
    censor_date = resolve_censor_date(df, config)

    df["comparison_variant"] = (df["variant"] == config.comparison_variant).astype(int)
    df["age_group"] = assign_age_group(df["age"], config.age_bands)
    df["specimen_week"] = week_start(df["specimen_date"])
    df["vaccination_status"] = assign_vaccination_status(
        df["specimen_date"], df["vaccine_dose1_date"], df["vaccine_dose2_date"], config=config
    )
    df["reinfection"] = assign_reinfection(
        df["specimen_date"], df["prior_positive_date"], gap_days=config.reinfection_gap_days
    )

    outcome_summary: dict[str, dict] = {}
    for o in config.outcomes:
        timing = outcome_timing(df, o, censor_date=censor_date, same_day_offset=config.same_day_offset)
        for c in timing.columns:
            df[c] = timing[c]
        elig = df[f"{o.name}_eligible"]
        outcome_summary[o.name] = {
            "window_days": int(o.window_days),
            "eligible": int(elig.sum()),
            "events": int(df.loc[elig, f"{o.name}_event"].sum()),
            "events_by_variant": {
                v: int(df.loc[elig & (df["variant"] == v), f"{o.name}_event"].sum()) for v in config.variants
            },
        }

    summary = {
        "censor_date": censor_date.strftime("%Y-%m-%d"),
        "rows": int(len(df)),
        "specimen_weeks": int(df["specimen_week"].nunique()),
        "vaccination_status": {str(k): int(v) for k, v in df["vaccination_status"].value_counts().sort_index().items()},
        "outcomes": outcome_summary,
    }
    return DerivedCohort(data=df, censor_date=censor_date, summary=summary)


def write_derived(*, out_dir: Path, derived: DerivedCohort) -> tuple[Path, Path]:
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    out_csv = out_dir / "derived_cohort.csv"
    out_json = out_dir / "derived_summary.json"
    derived.data.to_csv(out_csv, index=False, date_format="%Y-%m-%d")
    out_json.write_text(json.dumps(derived.summary, indent=2, sort_keys=True) + "\n")
    return out_csv, out_json

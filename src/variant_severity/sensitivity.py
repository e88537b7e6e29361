from __future__ import annotations

"""
Post-hoc bias correction for incidental outcome events.

Some hospital attendances/admissions among cases are unrelated to the infection (injury,
elective care, childbirth...). Assume they occur at a background hazard `b` that does not
depend on the variant. Then the observed hazards are

    h_ref_obs = h_ref + b
    h_cmp_obs = h_cmp + b

and with `f = b / h_ref_obs` (the fraction of reference-variant events that are
incidental) the infection-attributable hazard ratio is

    HR_true = (HR_obs - f) / (1 - f)

Incidental events dilute the contrast, so the correction moves the HR away from 1. The
same transform is applied to both CI limits (the transform is monotone in HR_obs). When
HR_obs <= f the corrected value is not defined and is reported as NaN.

`f` is unknown, so it is swept over a grid; if a background rate is supplied (events per
1000 person-days in a comparable non-infected population) a data-derived `f` is added,
computed against the crude reference-variant rate.
"""

import json
import logging
from pathlib import Path

import numpy as np
import pandas as pd

from variant_severity.config import AnalysisConfig
from variant_severity.describe import crude_rate
from variant_severity.models import ALL

logger = logging.getLogger(__name__)

SENSITIVITY_COLUMNS = [
    "outcome",
    "adjustment",
    "source",
    "incidental_fraction",
    "hr_observed",
    "ci_low_observed",
    "ci_high_observed",
    "hr_corrected",
    "ci_low_corrected",
    "ci_high_corrected",
]


def correct_incidental_hr(hr, fraction):
    """
    Corrected hazard ratio for a given incidental fraction. Accepts scalars or arrays.
    """
    f = np.asarray(fraction, dtype=float)
    if np.any((f < 0.0) | (f >= 1.0)):
        raise ValueError("incidental fraction must be in [0, 1)")
    h = np.asarray(hr, dtype=float)
    with np.errstate(invalid="ignore", divide="ignore"):
        out = (h - f) / (1.0 - f)
    out = np.where(out > 0.0, out, np.nan)
    if out.ndim == 0:
        return float(out)
    return out


def incidental_fraction_from_background(background_rate: float, reference_rate: float) -> float:
    """
    f = background rate / observed reference-variant rate (same units).
    """
    b = float(background_rate)
    r = float(reference_rate)
    if not np.isfinite(r) or r <= 0.0:
        raise ValueError(f"reference rate must be positive, got {reference_rate}")
    if b < 0.0:
        raise ValueError(f"background rate must be non-negative, got {background_rate}")
    f = b / r
    if f >= 1.0:
        raise ValueError(
            f"background rate {b:g} is not below the observed reference-variant rate {r:g}; "
            "every event would be incidental"
        )
    return f


def run_incidental_sensitivity(
    hazard_ratios: pd.DataFrame,
    outcome_table: pd.DataFrame,
    config: AnalysisConfig,
) -> pd.DataFrame:
    hr = hazard_ratios[
        (hazard_ratios["adjustment"] == config.sensitivity_adjustment)
        & (hazard_ratios["subgroup"] == ALL)
        & (hazard_ratios["status"] == "ok")
    ]
    rows: list[dict] = []
    for outcome in config.sensitivity_outcomes:
        match = hr[hr["outcome"] == outcome]
        if match.empty:
            continue
        r = match.iloc[0]
        fractions = [("grid", float(f)) for f in config.incidental_fractions]
        if outcome in config.background_rates:
            ref_rate = crude_rate(outcome_table, outcome=outcome, variant=config.reference_variant)
            try:
                f_bg = incidental_fraction_from_background(config.background_rates[outcome], ref_rate)
            except ValueError as e:
                # Grid rows stay valid without the data-derived fraction.
                logger.warning("no background-derived fraction for %s: %s", outcome, e)
            else:
                fractions.append(("background", f_bg))
        for source, f in fractions:
            rows.append(
                {
                    "outcome": outcome,
                    "adjustment": config.sensitivity_adjustment,
                    "source": source,
                    "incidental_fraction": f,
                    "hr_observed": float(r["hr"]),
                    "ci_low_observed": float(r["ci_low"]),
                    "ci_high_observed": float(r["ci_high"]),
                    "hr_corrected": correct_incidental_hr(float(r["hr"]), f),
                    "ci_low_corrected": correct_incidental_hr(float(r["ci_low"]), f),
                    "ci_high_corrected": correct_incidental_hr(float(r["ci_high"]), f),
                }
            )
    return pd.DataFrame(rows, columns=SENSITIVITY_COLUMNS)


def write_sensitivity(*, out_dir: Path, table: pd.DataFrame) -> tuple[Path, Path]:
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    out_csv = out_dir / "sensitivity_incidental.csv"
    out_json = out_dir / "sensitivity_incidental.json"
    table.to_csv(out_csv, index=False)

    summary: dict = {}
    for outcome, sub in table.groupby("outcome", sort=True):
        grid = sub[sub["source"] == "grid"]
        summary[str(outcome)] = {
            "hr_observed": float(sub["hr_observed"].iloc[0]),
            "hr_corrected_range": [
                float(np.nanmin(grid["hr_corrected"])) if grid["hr_corrected"].notna().any() else None,
                float(np.nanmax(grid["hr_corrected"])) if grid["hr_corrected"].notna().any() else None,
            ],
            "background_fraction": (
                float(sub.loc[sub["source"] == "background", "incidental_fraction"].iloc[0])
                if (sub["source"] == "background").any()
                else None
            ),
        }
    out_json.write_text(json.dumps(summary, indent=2, sort_keys=True) + "\n")
    return out_csv, out_json

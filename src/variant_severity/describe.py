from __future__ import annotations

"""
Descriptive tabulation ("Table 1" and crude outcome rates) by variant.
"""

from dataclasses import dataclass
from pathlib import Path

import numpy as np
import pandas as pd

from variant_severity.config import AnalysisConfig
from variant_severity.derive import DerivedCohort

DESCRIBED_COVARIATES = (
    "age_group",
    "sex",
    "ethnicity",
    "imd_quintile",
    "region",
    "vaccination_status",
    "reinfection",
)


@dataclass(frozen=True)
class DescriptiveTables:
    covariates: pd.DataFrame
    outcomes: pd.DataFrame


def tabulate_covariates(data: pd.DataFrame, config: AnalysisConfig) -> pd.DataFrame:
    """
    Counts and column percentages of each covariate level within each variant.
    """
    rows: list[dict] = []
    totals = {v: int((data["variant"] == v).sum()) for v in config.variants}
    for var in DESCRIBED_COVARIATES:
        if var not in data.columns:
            continue
        counts = pd.crosstab(data[var].astype(str), data["variant"])
        for level in sorted(counts.index):
            row: dict = {"variable": var, "level": str(level)}
            n_total = 0
            for v in config.variants:
                n = int(counts.at[level, v]) if v in counts.columns else 0
                row[f"n_{v}"] = n
                row[f"pct_{v}"] = 100.0 * n / totals[v] if totals[v] else float("nan")
                n_total += n
            row["n_total"] = n_total
            rows.append(row)
    cols = ["variable", "level"]
    for v in config.variants:
        cols += [f"n_{v}", f"pct_{v}"]
    cols.append("n_total")
    return pd.DataFrame(rows, columns=cols)


def tabulate_outcomes(data: pd.DataFrame, config: AnalysisConfig) -> pd.DataFrame:
    """
    Events, person-time and crude rates per outcome and variant (eligible cases only).
    """
    rows: list[dict] = []
    for o in config.outcomes:
        elig = data[f"{o.name}_eligible"].astype(bool)
        for v in config.variants:
            sub = data[elig & (data["variant"] == v)]
            n = int(len(sub))
            events = int(sub[f"{o.name}_event"].sum())
            person_days = float(sub[f"{o.name}_time"].sum())
            rows.append(
                {
                    "outcome": o.name,
                    "variant": v,
                    "n_eligible": n,
                    "events": events,
                    "person_days": person_days,
                    "risk_pct": 100.0 * events / n if n else float("nan"),
                    "rate_per_1000_person_days": 1000.0 * events / person_days if person_days > 0 else float("nan"),
                }
            )
    return pd.DataFrame(rows)


def crude_rate(outcome_table: pd.DataFrame, *, outcome: str, variant: str) -> float:
    row = outcome_table[(outcome_table["outcome"] == outcome) & (outcome_table["variant"] == variant)]
    if row.empty:
        return float("nan")
    return float(row.iloc[0]["rate_per_1000_person_days"])


def describe_cohort(derived: DerivedCohort, config: AnalysisConfig) -> DescriptiveTables:
    data = derived.data
    return DescriptiveTables(
        covariates=tabulate_covariates(data, config),
        outcomes=tabulate_outcomes(data, config),
    )


def write_descriptive_tables(*, out_dir: Path, tables: DescriptiveTables) -> tuple[Path, Path]:
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    cov_csv = out_dir / "descriptive_covariates.csv"
    out_csv = out_dir / "descriptive_outcomes.csv"
    tables.covariates.round(2).to_csv(cov_csv, index=False)
    tables.outcomes.replace([np.inf, -np.inf], np.nan).to_csv(out_csv, index=False)
    return cov_csv, out_csv

from __future__ import annotations

"""
Iterated stratified Cox proportional-hazards models.

One model per (outcome, adjustment strategy), plus one per level of each subgroup
variable. Every model has the same shape:

    h(t | x, stratum) = h0_stratum(t) * exp(beta * comparison_variant + gamma' x)

- strata (default: specimen week x region) get their own baseline hazard, so calendar
  time and geography are controlled without estimating coefficients for them
- covariates are treatment-coded dummies against a fixed reference level
- the hazard ratio of interest is exp(beta)

A model that cannot be estimated (too few events, convergence failure) becomes a row with
`status != "ok"` rather than aborting the whole grid.
"""

import logging
import warnings
from dataclasses import dataclass
from pathlib import Path

import numpy as np
import pandas as pd
from lifelines import CoxPHFitter
from lifelines.exceptions import ConvergenceError
from lifelines.statistics import proportional_hazard_test
from tqdm import tqdm

from variant_severity.config import AnalysisConfig
from variant_severity.derive import DerivedCohort

logger = logging.getLogger(__name__)

EXPOSURE = "comparison_variant"
DURATION = "duration"
EVENT = "event"
ALL = "all"

HR_COLUMNS = [
    "outcome",
    "adjustment",
    "subgroup",
    "subgroup_level",
    "covariates",
    "n",
    "n_excluded",
    "events",
    "events_reference",
    "events_comparison",
    "hr",
    "ci_low",
    "ci_high",
    "p",
    "concordance",
    "log_likelihood",
    "status",
    "message",
]
COEF_COLUMNS = [
    "outcome",
    "adjustment",
    "subgroup",
    "subgroup_level",
    "term",
    "coef",
    "se",
    "hr",
    "ci_low",
    "ci_high",
    "p",
]
PH_COLUMNS = ["outcome", "adjustment", "subgroup", "subgroup_level", "term", "test_statistic", "p"]


@dataclass(frozen=True)
class ModelTask:
    outcome: str
    adjustment: str
    covariates: tuple[str, ...]
    subgroup: str = ALL
    subgroup_level: str = ALL

    def key(self) -> dict:
        return {
            "outcome": self.outcome,
            "adjustment": self.adjustment,
            "subgroup": self.subgroup,
            "subgroup_level": self.subgroup_level,
        }


@dataclass(frozen=True)
class DesignFrame:
    frame: pd.DataFrame
    terms: list[str]
    strata: list[str]
    excluded: dict[str, list[str]]


@dataclass(frozen=True)
class ModelResults:
    hazard_ratios: pd.DataFrame
    coefficients: pd.DataFrame
    ph_tests: pd.DataFrame


def reference_level(values: pd.Series, var: str, config: AnalysisConfig) -> str:
    """
    Configured reference level if present, else the most frequent level (ties by label).
    """
    counts = values.astype(str).value_counts()
    ref = config.reference_levels.get(var)
    if ref is not None and ref in counts.index:
        return str(ref)
    return sorted(counts.index, key=lambda lvl: (-int(counts[lvl]), str(lvl)))[0]


def dummy_code(values: pd.Series, var: str, config: AnalysisConfig) -> pd.DataFrame:
    s = values.astype(str)
    if s.empty:
        return pd.DataFrame(index=s.index)
    ref = reference_level(s, var, config)
    levels = sorted(set(s) - {ref})
    return pd.DataFrame({f"{var}[{lvl}]": (s == lvl).astype(float) for lvl in levels}, index=s.index)


def drop_zero_event_levels(
    sub: pd.DataFrame, *, event_col: str, covariates: tuple[str, ...]
) -> tuple[pd.DataFrame, dict[str, list[str]]]:
    """
    Remove rows whose covariate level has no events.

    Such a level's coefficient diverges to -inf and its rows then carry zero weight in
    every risk set, so removing them gives the limiting estimates of the other terms
    while keeping Newton-Raphson well conditioned.
    """
    excluded: dict[str, list[str]] = {}
    changed = True
    while changed and not sub.empty:
        changed = False
        for var in covariates:
            ev = sub.groupby(sub[var].astype(str))[event_col].sum()
            empty = sorted(str(lvl) for lvl, e in ev.items() if e <= 0)
            if empty and len(empty) < len(ev):
                sub = sub[~sub[var].astype(str).isin(empty)]
                excluded.setdefault(var, []).extend(empty)
                changed = True
    return sub, excluded


def build_design(
    data: pd.DataFrame,
    *,
    outcome: str,
    covariates: tuple[str, ...],
    config: AnalysisConfig,
) -> DesignFrame:
    sub = data[data[f"{outcome}_eligible"].astype(bool)]
    sub, excluded = drop_zero_event_levels(sub, event_col=f"{outcome}_event", covariates=covariates)

    frame = pd.DataFrame(
        {
            DURATION: sub[f"{outcome}_time"].astype(float),
            EVENT: sub[f"{outcome}_event"].astype(int),
            EXPOSURE: sub[EXPOSURE].astype(float),
        },
        index=sub.index,
    )
    terms = [EXPOSURE]
    for var in covariates:
        d = dummy_code(sub[var], var, config)
        keep = [c for c in d.columns if d[c].nunique() > 1]
        for c in keep:
            frame[c] = d[c]
        terms.extend(keep)

    strata = []
    for s in config.strata:
        frame[s] = pd.factorize(sub[s].astype(str), sort=True)[0]
        strata.append(s)

    return DesignFrame(frame=frame.reset_index(drop=True), terms=terms, strata=strata, excluded=excluded)


def fit_cox(design: DesignFrame, *, penalizer: float = 0.0, robust: bool = False) -> CoxPHFitter:
    cols = [DURATION, EVENT, *design.terms, *design.strata]
    cph = CoxPHFitter(penalizer=float(penalizer))
    cph.fit(
        design.frame[cols],
        duration_col=DURATION,
        event_col=EVENT,
        strata=design.strata or None,
        robust=bool(robust),
    )
    return cph


def model_tasks(data: pd.DataFrame, config: AnalysisConfig) -> list[ModelTask]:
    tasks = [
        ModelTask(outcome=o.name, adjustment=a.name, covariates=tuple(a.covariates))
        for o in config.outcomes
        for a in config.adjustments
    ]
    adj = config.adjustment(config.subgroup_adjustment)
    for var in config.subgroups:
        covs = tuple(c for c in adj.covariates if c != var)
        for level in sorted(data[var].astype(str).unique()):
            for o in config.outcomes:
                tasks.append(
                    ModelTask(outcome=o.name, adjustment=adj.name, covariates=covs, subgroup=var, subgroup_level=level)
                )
    return tasks


def _coefficient_rows(task: ModelTask, cph: CoxPHFitter) -> pd.DataFrame:
    s = cph.summary
    out = pd.DataFrame(
        {
            "term": s.index.astype(str),
            "coef": s["coef"].to_numpy(float),
            "se": s["se(coef)"].to_numpy(float),
            "hr": s["exp(coef)"].to_numpy(float),
            "ci_low": s["exp(coef) lower 95%"].to_numpy(float),
            "ci_high": s["exp(coef) upper 95%"].to_numpy(float),
            "p": s["p"].to_numpy(float),
        }
    )
    for k, v in task.key().items():
        out[k] = v
    return out[COEF_COLUMNS]


def _ph_rows(task: ModelTask, cph: CoxPHFitter, design: DesignFrame) -> pd.DataFrame:
    cols = [DURATION, EVENT, *design.terms, *design.strata]
    try:
        res = proportional_hazard_test(cph, design.frame[cols], time_transform="rank")
    except (ValueError, KeyError, np.linalg.LinAlgError) as e:
        logger.warning("PH test failed for %s: %s", task.key(), e)
        return pd.DataFrame(columns=PH_COLUMNS)
    s = res.summary
    out = pd.DataFrame(
        {
            "term": [str(i[-1]) if isinstance(i, tuple) else str(i) for i in s.index],
            "test_statistic": s["test_statistic"].to_numpy(float),
            "p": s["p"].to_numpy(float),
        }
    )
    for k, v in task.key().items():
        out[k] = v
    return out[PH_COLUMNS]


def run_model(
    data: pd.DataFrame, task: ModelTask, config: AnalysisConfig
) -> tuple[dict, pd.DataFrame, pd.DataFrame]:
    """
    Fit one model. Returns (hazard-ratio row, coefficient rows, PH-test rows).
    """
    if task.subgroup != ALL:
        data = data[data[task.subgroup].astype(str) == task.subgroup_level]

    design = build_design(data, outcome=task.outcome, covariates=task.covariates, config=config)
    frame = design.frame
    n_eligible = int(data[f"{task.outcome}_eligible"].astype(bool).sum())
    events_ref = int(frame.loc[frame[EXPOSURE] == 0.0, EVENT].sum())
    events_cmp = int(frame.loc[frame[EXPOSURE] == 1.0, EVENT].sum())

    row = {
        **task.key(),
        "covariates": ";".join(task.covariates),
        "n": int(len(frame)),
        "n_excluded": n_eligible - int(len(frame)),
        "events": events_ref + events_cmp,
        "events_reference": events_ref,
        "events_comparison": events_cmp,
        "hr": float("nan"),
        "ci_low": float("nan"),
        "ci_high": float("nan"),
        "p": float("nan"),
        "concordance": float("nan"),
        "log_likelihood": float("nan"),
        "status": "ok",
        "message": "",
    }
    notes = [f"excluded zero-event levels of {var}: {', '.join(lv)}" for var, lv in design.excluded.items()]

    if row["events"] < config.min_events or events_ref == 0 or events_cmp == 0:
        row["status"] = "skipped"
        row["message"] = (
            f"too few events (total={row['events']}, reference={events_ref}, comparison={events_cmp}, "
            f"min_events={config.min_events})"
        )
        logger.info("skipped %s: %s", task.key(), row["message"])
        return row, pd.DataFrame(columns=COEF_COLUMNS), pd.DataFrame(columns=PH_COLUMNS)

    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        try:
            cph = fit_cox(design, penalizer=config.penalizer, robust=config.robust)
        except (ConvergenceError, np.linalg.LinAlgError, ZeroDivisionError) as e:
            row["status"] = "failed"
            row["message"] = "; ".join([*notes, f"{type(e).__name__}: {e}"])
            logger.warning("model failed %s: %s", task.key(), e)
            return row, pd.DataFrame(columns=COEF_COLUMNS), pd.DataFrame(columns=PH_COLUMNS)
    for w in caught:
        msg = " ".join(str(w.message).split())
        if msg and msg[:160] not in notes:
            notes.append(msg[:160])

    s = cph.summary
    row.update(
        {
            "hr": float(s.loc[EXPOSURE, "exp(coef)"]),
            "ci_low": float(s.loc[EXPOSURE, "exp(coef) lower 95%"]),
            "ci_high": float(s.loc[EXPOSURE, "exp(coef) upper 95%"]),
            "p": float(s.loc[EXPOSURE, "p"]),
            "concordance": float(cph.concordance_index_),
            "log_likelihood": float(cph.log_likelihood_),
            "message": "; ".join(notes),
        }
    )
    ph = _ph_rows(task, cph, design) if config.ph_test else pd.DataFrame(columns=PH_COLUMNS)
    return row, _coefficient_rows(task, cph), ph


def fit_model_grid(derived: DerivedCohort, config: AnalysisConfig, *, progress: bool = False) -> ModelResults:
    data = derived.data
    rows: list[dict] = []
    coefs: list[pd.DataFrame] = []
    phs: list[pd.DataFrame] = []
    for task in tqdm(model_tasks(data, config), desc="cox models", disable=not progress):
        row, coef, ph = run_model(data, task, config)
        rows.append(row)
        if not coef.empty:
            coefs.append(coef)
        if not ph.empty:
            phs.append(ph)
        logger.debug("fitted %s -> %s hr=%.3f", task.key(), row["status"], row["hr"])

    return ModelResults(
        hazard_ratios=pd.DataFrame(rows, columns=HR_COLUMNS),
        coefficients=pd.concat(coefs, ignore_index=True) if coefs else pd.DataFrame(columns=COEF_COLUMNS),
        ph_tests=pd.concat(phs, ignore_index=True) if phs else pd.DataFrame(columns=PH_COLUMNS),
    )


def write_model_results(*, out_dir: Path, results: ModelResults) -> dict[str, Path]:
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    paths = {
        "hazard_ratios.csv": out_dir / "hazard_ratios.csv",
        "model_coefficients.csv": out_dir / "model_coefficients.csv",
        "ph_tests.csv": out_dir / "ph_tests.csv",
    }
    results.hazard_ratios.to_csv(paths["hazard_ratios.csv"], index=False)
    results.coefficients.to_csv(paths["model_coefficients.csv"], index=False)
    results.ph_tests.to_csv(paths["ph_tests.csv"], index=False)
    return paths

from __future__ import annotations

"""
Variable validation for the case line list.

Every downstream step assumes a typed, de-duplicated frame where:
  - `variant` is one of the two configured variants
  - dates are datetime64 (NaT for absent)
  - `sex` is `female`/`male`, categorical blanks are `unknown`

Column-level problems (a required column is absent) are fatal. Row-level problems are
collected into an issues table so they can be reported; with `on_invalid="drop"` the
offending rows are removed, with `on_invalid="raise"` the first problems are raised.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path

import pandas as pd

from variant_severity.config import AnalysisConfig

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ("case_id", "variant", "specimen_date", "age", "sex", "ethnicity", "imd_quintile", "region")
OPTIONAL_DATE_COLUMNS = ("vaccine_dose1_date", "vaccine_dose2_date", "prior_positive_date")
FILL_UNKNOWN_COLUMNS = ("ethnicity", "region")
ISSUE_COLUMNS = ["case_id", "column", "problem", "value"]

SEX_MAP = {"f": "female", "female": "female", "m": "male", "male": "male"}
AGE_MIN, AGE_MAX = 0.0, 115.0


class CohortValidationError(ValueError):
    pass


@dataclass(frozen=True)
class ValidatedCohort:
    data: pd.DataFrame
    issues: pd.DataFrame
    summary: dict


def outcome_date_columns(config: AnalysisConfig) -> list[str]:
    cols: list[str] = []
    for o in config.outcomes:
        for c in o.event_columns:
            if c not in cols:
                cols.append(c)
    return cols


def read_cohort_csv(path: Path) -> pd.DataFrame:
    """
    Read everything as strings; typing happens in `validate_cohort` so that bad values
    become issues instead of pandas parse errors.
    """
    return pd.read_csv(path, dtype=str, keep_default_na=True)


def _blank_to_na(s: pd.Series) -> pd.Series:
    s = s.astype("string").str.strip()
    return s.mask(s == "", pd.NA)


def _parse_dates(s: pd.Series) -> pd.Series:
    return pd.to_datetime(s.fillna("").astype(str), errors="coerce", format="ISO8601").dt.normalize()


def _to_number(s: pd.Series) -> pd.Series:
    return pd.to_numeric(s.fillna("").astype(str), errors="coerce")


class _IssueLog:
    def __init__(self, df: pd.DataFrame) -> None:
        self._df = df
        self._frames: list[pd.DataFrame] = []
        self.bad = pd.Series(False, index=df.index)

    def flag(self, mask: pd.Series, *, column: str, problem: str, values: pd.Series) -> None:
        mask = mask.fillna(False).astype(bool)
        if not mask.any():
            return
        self.bad |= mask
        self._frames.append(
            pd.DataFrame(
                {
                    "case_id": self._df.loc[mask, "case_id"].astype("string").fillna("<missing>"),
                    "column": column,
                    "problem": problem,
                    "value": values[mask].astype("string").fillna(""),
                }
            )
        )

    def table(self) -> pd.DataFrame:
        if not self._frames:
            return pd.DataFrame(columns=ISSUE_COLUMNS)
        return pd.concat(self._frames, ignore_index=True)[ISSUE_COLUMNS]


def validate_cohort(
    raw: pd.DataFrame,
    config: AnalysisConfig,
    *,
    on_invalid: str = "drop",  # drop | raise
) -> ValidatedCohort:
    mode = str(on_invalid or "drop").strip().lower()
    if mode not in {"drop", "raise"}:
        raise ValueError("on_invalid must be one of: drop, raise")

    df = raw.copy()
    df.columns = [str(c).strip() for c in df.columns]

    missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
    missing_outcomes = [c for c in outcome_date_columns(config) if c not in df.columns]
    if missing or missing_outcomes:
        lines = []
        if missing:
            lines.append(f"missing required columns: {missing}")
        if missing_outcomes:
            lines.append(
                f"missing outcome date columns referenced by the config: {missing_outcomes} "
                "(add them as empty columns if no events were recorded)"
            )
        raise CohortValidationError("Cohort line list failed validation:\n  - " + "\n  - ".join(lines))

    for c in OPTIONAL_DATE_COLUMNS:
        if c not in df.columns:
            df[c] = pd.NA

    log = _IssueLog(df)
    rows_in = int(len(df))

    # --- identifiers ---
    df["case_id"] = _blank_to_na(df["case_id"])
    log.flag(df["case_id"].isna(), column="case_id", problem="missing case_id", values=df["case_id"])
    dup = df["case_id"].notna() & df["case_id"].duplicated(keep="first")
    log.flag(dup, column="case_id", problem="duplicate case_id", values=df["case_id"])

    # --- exposure ---
    raw_variant = _blank_to_na(df["variant"])
    df["variant"] = raw_variant.str.lower()
    log.flag(
        ~df["variant"].isin(list(config.variants)),
        column="variant",
        problem="unknown variant",
        values=raw_variant,
    )

    # --- index date ---
    raw_spec = _blank_to_na(df["specimen_date"])
    df["specimen_date"] = _parse_dates(raw_spec)
    log.flag(raw_spec.isna(), column="specimen_date", problem="missing specimen_date", values=raw_spec)
    log.flag(
        raw_spec.notna() & df["specimen_date"].isna(),
        column="specimen_date",
        problem="unparseable date",
        values=raw_spec,
    )

    # --- demographics ---
    raw_age = _blank_to_na(df["age"])
    df["age"] = _to_number(raw_age).astype(float)
    log.flag(df["age"].isna(), column="age", problem="missing or non-numeric age", values=raw_age)
    log.flag(
        df["age"].notna() & ((df["age"] < AGE_MIN) | (df["age"] > AGE_MAX)),
        column="age",
        problem="age out of range",
        values=raw_age,
    )

    raw_sex = _blank_to_na(df["sex"])
    df["sex"] = raw_sex.str.lower().map(SEX_MAP)
    log.flag(df["sex"].isna(), column="sex", problem="unrecognised sex", values=raw_sex)

    raw_imd = _blank_to_na(df["imd_quintile"])
    imd_num = _to_number(raw_imd)
    imd_ok = imd_num.isin([1, 2, 3, 4, 5])
    log.flag(raw_imd.notna() & ~imd_ok, column="imd_quintile", problem="imd_quintile outside 1..5", values=raw_imd)
    df["imd_quintile"] = imd_num.where(imd_ok).map(lambda x: str(int(x)) if pd.notna(x) else "unknown")

    unknown_filled: dict[str, int] = {"imd_quintile": int(raw_imd.isna().sum())}
    for c in FILL_UNKNOWN_COLUMNS:
        s = _blank_to_na(df[c])
        unknown_filled[c] = int(s.isna().sum())
        df[c] = s.fillna("unknown").astype(str)

    # --- optional dates ---
    date_cols = list(OPTIONAL_DATE_COLUMNS) + outcome_date_columns(config)
    for c in date_cols:
        raw_c = _blank_to_na(df[c])
        df[c] = _parse_dates(raw_c)
        log.flag(raw_c.notna() & df[c].isna(), column=c, problem="unparseable date", values=raw_c)

    # Outcomes recorded before the specimen are prevalent, not incident.
    for c in outcome_date_columns(config):
        early = df[c].notna() & df["specimen_date"].notna() & (df[c] < df["specimen_date"])
        log.flag(early, column=c, problem="outcome before specimen date", values=df[c].dt.strftime("%Y-%m-%d"))

    d1, d2 = df["vaccine_dose1_date"], df["vaccine_dose2_date"]
    log.flag(
        d2.notna() & d1.isna(),
        column="vaccine_dose2_date",
        problem="dose 2 without dose 1",
        values=d2.dt.strftime("%Y-%m-%d"),
    )
    log.flag(
        d2.notna() & d1.notna() & (d2 < d1),
        column="vaccine_dose2_date",
        problem="dose 2 before dose 1",
        values=d2.dt.strftime("%Y-%m-%d"),
    )

    issues = log.table()
    bad = log.bad

    if mode == "raise" and bad.any():
        head = issues.head(10)
        detail = "\n  - ".join(f"{r.case_id}: {r.column}: {r.problem} ({r.value})" for r in head.itertuples())
        raise CohortValidationError(
            f"{int(bad.sum())} of {rows_in} rows failed validation ({len(issues)} issues). First issues:\n  - "
            + detail
        )

    out = df[~bad].copy().reset_index(drop=True)
    out["case_id"] = out["case_id"].astype(str)
    out["variant"] = out["variant"].astype(str)
    out["sex"] = out["sex"].astype(str)

    if bad.any():
        logger.warning("dropped %d of %d rows failing validation", int(bad.sum()), rows_in)

    summary = {
        "rows_in": rows_in,
        "rows_out": int(len(out)),
        "rows_dropped": int(bad.sum()),
        "issues_by_problem": {str(k): int(v) for k, v in issues["problem"].value_counts().sort_index().items()},
        "rows_by_variant": {v: int((out["variant"] == v).sum()) for v in config.variants},
        "unknown_filled": unknown_filled,
    }
    return ValidatedCohort(data=out, issues=issues, summary=summary)


def write_validation(*, out_dir: Path, validated: ValidatedCohort) -> tuple[Path, Path]:
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    issues_csv = out_dir / "validation_issues.csv"
    summary_json = out_dir / "validation_summary.json"
    validated.issues.to_csv(issues_csv, index=False)
    summary_json.write_text(json.dumps(validated.summary, indent=2, sort_keys=True) + "\n")
    return issues_csv, summary_json

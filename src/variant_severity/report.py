from __future__ import annotations

"""
Markdown summary of an analysis run, assembled from the files written by the other steps.
"""

import json
from pathlib import Path

import numpy as np
import pandas as pd

from variant_severity.config import AnalysisConfig


def _fmt_num(x: float, digits: int = 2) -> str:
    if x is None or not np.isfinite(float(x)):
        return "–"
    return f"{float(x):.{digits}f}"


def _fmt_hr(hr: float, lo: float, hi: float) -> str:
    return f"{_fmt_num(hr)} ({_fmt_num(lo)}–{_fmt_num(hi)})"


def _fmt_p(p: float) -> str:
    if p is None or not np.isfinite(float(p)):
        return "–"
    return "<0.001" if p < 0.001 else f"{p:.3f}"


def build_report(*, out_root: Path, config: AnalysisConfig) -> str:
    out_root = Path(out_root)
    inputs = {
        "validation": out_root / "validation_summary.json",
        "derived": out_root / "derived_summary.json",
        "outcomes": out_root / "descriptive_outcomes.csv",
        "hazard_ratios": out_root / "hazard_ratios.csv",
        "sensitivity": out_root / "sensitivity_incidental.csv",
    }
    if not any(p.exists() for p in inputs.values()):
        raise FileNotFoundError(f"No analysis outputs under {out_root}. Run `variant-severity all` first.")

    ref, cmp_ = config.reference_variant, config.comparison_variant
    lines: list[str] = []
    lines.append(f"# Severity of {cmp_} compared with {ref}")
    lines.append("")

    if inputs["validation"].exists():
        v = json.loads(inputs["validation"].read_text())
        lines.append("## Cohort")
        lines.append(
            f"- rows read: {v['rows_in']}, analysed: {v['rows_out']}, dropped by validation: {v['rows_dropped']}"
        )
        for variant, n in v.get("rows_by_variant", {}).items():
            lines.append(f"- {variant}: {n} cases")
        for problem, n in v.get("issues_by_problem", {}).items():
            lines.append(f"- issue `{problem}`: {n}")
        lines.append("")

    if inputs["derived"].exists():
        d = json.loads(inputs["derived"].read_text())
        lines.append(f"Administrative censor date: {d['censor_date']} ({d['specimen_weeks']} specimen weeks).")
        lines.append("")

    if inputs["outcomes"].exists():
        o = pd.read_csv(inputs["outcomes"])
        lines.append("## Outcomes (crude)")
        lines.append("| outcome | variant | eligible | events | risk % | rate / 1000 person-days |")
        lines.append("|---|---|---:|---:|---:|---:|")
        for r in o.itertuples():
            lines.append(
                f"| {r.outcome} | {r.variant} | {r.n_eligible} | {r.events} | {_fmt_num(r.risk_pct)} | "
                f"{_fmt_num(r.rate_per_1000_person_days, 3)} |"
            )
        lines.append("")

    if inputs["hazard_ratios"].exists():
        hr = pd.read_csv(inputs["hazard_ratios"])
        overall = hr[hr["subgroup"].astype(str) == "all"]
        lines.append(f"## Hazard ratios ({cmp_} vs {ref}), stratified by {', '.join(config.strata)}")
        lines.append("| outcome | adjustment | n | events | HR (95% CI) | p | status |")
        lines.append("|---|---|---:|---:|---|---:|---|")
        for r in overall.itertuples():
            lines.append(
                f"| {r.outcome} | {r.adjustment} | {r.n} | {r.events} | {_fmt_hr(r.hr, r.ci_low, r.ci_high)} | "
                f"{_fmt_p(r.p)} | {r.status} |"
            )
        lines.append("")

        sub = hr[hr["subgroup"].astype(str) != "all"]
        if not sub.empty:
            lines.append(f"### Subgroups ({config.subgroup_adjustment} adjustment)")
            lines.append("| subgroup | level | outcome | events | HR (95% CI) | status |")
            lines.append("|---|---|---|---:|---|---|")
            for r in sub.itertuples():
                lines.append(
                    f"| {r.subgroup} | {r.subgroup_level} | {r.outcome} | {r.events} | "
                    f"{_fmt_hr(r.hr, r.ci_low, r.ci_high)} | {r.status} |"
                )
            lines.append("")

        problems = hr[hr["status"] != "ok"]
        if not problems.empty:
            lines.append("### Models not estimated")
            for r in problems.itertuples():
                lines.append(f"- {r.outcome} / {r.adjustment} / {r.subgroup}={r.subgroup_level}: {r.message}")
            lines.append("")

    if inputs["sensitivity"].exists():
        s = pd.read_csv(inputs["sensitivity"])
        if not s.empty:
            lines.append("## Sensitivity: incidental events")
            lines.append("Corrected HR = (HR − f) / (1 − f), f = incidental share of reference-variant events.")
            lines.append("")
            lines.append("| outcome | source | f | corrected HR (95% CI) |")
            lines.append("|---|---|---:|---|")
            for r in s.itertuples():
                lines.append(
                    f"| {r.outcome} | {r.source} | {_fmt_num(r.incidental_fraction)} | "
                    f"{_fmt_hr(r.hr_corrected, r.ci_low_corrected, r.ci_high_corrected)} |"
                )
            lines.append("")

    return "\n".join(lines) + "\n"


def write_report(*, out_root: Path, config: AnalysisConfig) -> Path:
    out_root = Path(out_root)
    out_root.mkdir(parents=True, exist_ok=True)
    p = out_root / "report.md"
    p.write_text(build_report(out_root=out_root, config=config))
    return p

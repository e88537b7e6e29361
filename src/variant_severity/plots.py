from __future__ import annotations

"""
Figure generation.

Goal:
- keep plots simple and directly traceable to the CSV outputs
- one function per figure, each reading its own inputs from disk
"""

import logging
from pathlib import Path

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt  # noqa: E402
import pandas as pd  # noqa: E402
from lifelines import KaplanMeierFitter  # noqa: E402

logger = logging.getLogger(__name__)

VARIANT_COLORS = ("#2b6cb0", "#c53030")
ADJUSTMENT_COLORS = ("#718096", "#2b6cb0", "#c53030", "#2f855a", "#6b46c1")


def plot_forest(*, hazard_ratios_csv: Path, out_png: Path, subgroup: str = "all") -> None:
    """
    Hazard ratio (comparison vs reference variant) with 95% CI for every outcome x adjustment.
    """
    df = pd.read_csv(hazard_ratios_csv)
    df = df[(df["subgroup"].astype(str) == subgroup) & (df["status"] == "ok")].copy()
    if df.empty:
        raise ValueError(f"{hazard_ratios_csv} has no successful models for subgroup={subgroup!r}")

    outcomes = list(dict.fromkeys(df["outcome"]))
    if subgroup == "all":
        series = list(dict.fromkeys(df["adjustment"]))
        series_col = "adjustment"
    else:
        series = list(dict.fromkeys(df["subgroup_level"].astype(str)))
        series_col = "subgroup_level"

    fig, ax = plt.subplots(figsize=(7.5, 0.6 + 0.45 * len(outcomes) * len(series)))
    y = 0
    yticks, ylabels = [], []
    for outcome in outcomes:
        for i, s in enumerate(series):
            row = df[(df["outcome"] == outcome) & (df[series_col].astype(str) == s)]
            if row.empty:
                continue
            r = row.iloc[0]
            color = ADJUSTMENT_COLORS[i % len(ADJUSTMENT_COLORS)]
            ax.errorbar(
                [r["hr"]],
                [y],
                xerr=[[r["hr"] - r["ci_low"]], [r["ci_high"] - r["hr"]]],
                fmt="o",
                color=color,
                capsize=3,
            )
            yticks.append(y)
            ylabels.append(f"{outcome} | {s}")
            y -= 1
        y -= 0.5
    ax.axvline(1.0, color="black", lw=1.0, ls="--")
    ax.set_xscale("log")
    ax.set_yticks(yticks)
    ax.set_yticklabels(ylabels, fontsize=9)
    ax.set_xlabel("Hazard ratio (log scale)")
    title = "Variant hazard ratios" if subgroup == "all" else f"Variant hazard ratios by {subgroup}"
    ax.set_title(title)
    ax.grid(True, axis="x", alpha=0.3)
    fig.tight_layout()
    out_png.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(out_png, dpi=200)
    plt.close(fig)


def plot_incidental_sensitivity(*, sensitivity_csv: Path, out_png: Path) -> None:
    df = pd.read_csv(sensitivity_csv)
    df = df[df["source"] == "grid"].sort_values("incidental_fraction")
    if df.empty:
        raise ValueError(f"{sensitivity_csv} has no grid rows")

    fig, ax = plt.subplots(figsize=(7.5, 4.2))
    for i, (outcome, sub) in enumerate(df.groupby("outcome", sort=True)):
        color = ADJUSTMENT_COLORS[(i + 1) % len(ADJUSTMENT_COLORS)]
        x = sub["incidental_fraction"].to_numpy(float) * 100.0
        ax.plot(x, sub["hr_corrected"].to_numpy(float), lw=2.0, color=color, label=str(outcome))
        ax.fill_between(
            x,
            sub["ci_low_corrected"].to_numpy(float),
            sub["ci_high_corrected"].to_numpy(float),
            color=color,
            alpha=0.15,
        )
    ax.axhline(1.0, color="black", lw=1.0, ls="--")
    ax.set_xlabel("Incidental events among reference-variant events (%)")
    ax.set_ylabel("Corrected hazard ratio")
    ax.set_title("Sensitivity of the hazard ratio to incidental events")
    ax.legend(loc="upper left", fontsize=9)
    ax.grid(True, alpha=0.3)
    fig.tight_layout()
    out_png.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(out_png, dpi=200)
    plt.close(fig)


def plot_cumulative_incidence(
    *,
    derived_csv: Path,
    outcome: str,
    variants: tuple[str, str],
    out_png: Path,
) -> None:
    """
    Kaplan-Meier cumulative incidence (1 - S(t)) by variant, unadjusted.
    """
    cols = ["variant", f"{outcome}_eligible", f"{outcome}_event", f"{outcome}_time"]
    df = pd.read_csv(derived_csv, usecols=cols)
    df = df[df[f"{outcome}_eligible"].astype(str).str.lower().isin({"true", "1"})]

    fig, ax = plt.subplots(figsize=(7.5, 4.2))
    for v, color in zip(variants, VARIANT_COLORS, strict=True):
        sub = df[df["variant"] == v]
        if sub.empty:
            continue
        kmf = KaplanMeierFitter(label=v)
        kmf.fit(
            durations=sub[f"{outcome}_time"].to_numpy(float),
            event_observed=sub[f"{outcome}_event"].to_numpy(int),
        )
        sf = kmf.survival_function_
        ax.step(
            sf.index.to_numpy(float),
            100.0 * (1.0 - sf.iloc[:, 0].to_numpy(float)),
            where="post",
            lw=2.0,
            color=color,
            label=f"{v} (n={len(sub)})",
        )
    ax.set_xlabel("Days since specimen")
    ax.set_ylabel("Cumulative incidence (%)")
    ax.set_title(f"Unadjusted cumulative incidence: {outcome}")
    ax.legend(loc="upper left", fontsize=9)
    ax.grid(True, alpha=0.3)
    ax.set_ylim(bottom=0.0)
    fig.tight_layout()
    out_png.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(out_png, dpi=200)
    plt.close(fig)


def generate_all_figures(*, out_root: Path, outcomes: list[str], variants: tuple[str, str]) -> list[Path]:
    """
    Render every figure whose inputs exist under out_root. Returns the written paths.
    """
    out_root = Path(out_root)
    fig_dir = out_root / "figures"
    written: list[Path] = []

    hr_csv = out_root / "hazard_ratios.csv"
    if hr_csv.exists():
        hr = pd.read_csv(hr_csv)
        ok = hr["status"] == "ok"
        for sg in ["all", *sorted(set(hr["subgroup"].astype(str)) - {"all"})]:
            if not ((hr["subgroup"].astype(str) == sg) & ok).any():
                logger.warning("no successful models for subgroup=%s; forest plot not drawn", sg)
                continue
            name = "forest_hazard_ratios.png" if sg == "all" else f"forest_hazard_ratios_by_{sg}.png"
            p = fig_dir / name
            plot_forest(hazard_ratios_csv=hr_csv, out_png=p, subgroup=sg)
            written.append(p)

    sens_csv = out_root / "sensitivity_incidental.csv"
    if sens_csv.exists() and not pd.read_csv(sens_csv).empty:
        p = fig_dir / "sensitivity_incidental.png"
        plot_incidental_sensitivity(sensitivity_csv=sens_csv, out_png=p)
        written.append(p)

    derived_csv = out_root / "derived_cohort.csv"
    if derived_csv.exists():
        for outcome in outcomes:
            p = fig_dir / f"cumulative_incidence_{outcome}.png"
            plot_cumulative_incidence(derived_csv=derived_csv, outcome=outcome, variants=variants, out_png=p)
            written.append(p)

    if not written:
        raise FileNotFoundError(
            f"No figure inputs under {out_root}. Run `variant-severity derive` and `variant-severity fit` first."
        )
    return written

from __future__ import annotations

import argparse
import json
import logging
from dataclasses import replace
from pathlib import Path

import pandas as pd

from variant_severity.config import AnalysisConfig, config_to_dict, load_config
from variant_severity.derive import DerivedCohort, derive_variables, write_derived
from variant_severity.describe import describe_cohort, write_descriptive_tables
from variant_severity.models import fit_model_grid, write_model_results
from variant_severity.paths import resolve_config_path, resolve_input_paths
from variant_severity.plots import generate_all_figures
from variant_severity.report import write_report
from variant_severity.sensitivity import run_incidental_sensitivity, write_sensitivity
from variant_severity.synthetic import simulate_cohort, write_cohort_csv
from variant_severity.validate import ValidatedCohort, read_cohort_csv, validate_cohort, write_validation


def _json_dumps(obj: object) -> str:
    return json.dumps(obj, indent=2, sort_keys=True, default=str) + "\n"


def _config(args: argparse.Namespace) -> AnalysisConfig:
    cfg = resolve_config_path(project_root=Path(args.project_root), config_json=args.config)
    return load_config(cfg)


def _validated(args: argparse.Namespace, config: AnalysisConfig) -> ValidatedCohort:
    rp = resolve_input_paths(project_root=Path(args.project_root), cohort_csv=args.cohort_csv, config_json=args.config)
    raw = read_cohort_csv(rp.cohort_csv)
    return validate_cohort(raw, config, on_invalid=str(getattr(args, "on_invalid", "drop")))


def _derived(args: argparse.Namespace, config: AnalysisConfig) -> DerivedCohort:
    return derive_variables(_validated(args, config).data, config)


def _require(p: Path, *, command: str) -> Path:
    if not p.exists():
        raise FileNotFoundError(f"Missing {p}. Run `variant-severity {command}` first (or `variant-severity all`).")
    return p


def cmd_simulate(args: argparse.Namespace) -> None:
    config = _config(args)
    out_csv = Path(args.cohort_out) if args.cohort_out is not None else Path(args.project_root) / "data" / "cohort.csv"
    cohort = simulate_cohort(
        int(args.n),
        seed=int(args.seed),
        config=config,
        hazard_ratios={
            "attendance": float(args.hr_attendance),
            "admission": float(args.hr_admission),
            "death": float(args.hr_death),
        },
        start_date=str(args.start_date),
        weeks=int(args.weeks),
    )
    print("[info] wrote", write_cohort_csv(out_csv=out_csv.resolve(), cohort=cohort))


def cmd_validate(
    args: argparse.Namespace,
    *,
    config: AnalysisConfig | None = None,
    validated: ValidatedCohort | None = None,
) -> None:
    config = config or _config(args)
    out_root = Path(args.out).resolve()
    validated = validated or _validated(args, config)
    issues_csv, summary_json = write_validation(out_dir=out_root, validated=validated)
    (out_root / "analysis_config.json").write_text(_json_dumps(config_to_dict(config)))
    print("[info] wrote", issues_csv)
    print("[info] wrote", summary_json)


def cmd_derive(
    args: argparse.Namespace,
    *,
    config: AnalysisConfig | None = None,
    derived: DerivedCohort | None = None,
) -> None:
    config = config or _config(args)
    derived = derived or _derived(args, config)
    out_csv, _ = write_derived(out_dir=Path(args.out).resolve(), derived=derived)
    print("[info] wrote", out_csv)


def cmd_describe(
    args: argparse.Namespace,
    *,
    config: AnalysisConfig | None = None,
    derived: DerivedCohort | None = None,
) -> None:
    config = config or _config(args)
    tables = describe_cohort(derived or _derived(args, config), config)
    cov_csv, out_csv = write_descriptive_tables(out_dir=Path(args.out).resolve(), tables=tables)
    print("[info] wrote", cov_csv)
    print("[info] wrote", out_csv)


def cmd_fit(
    args: argparse.Namespace,
    *,
    config: AnalysisConfig | None = None,
    derived: DerivedCohort | None = None,
) -> None:
    config = config or _config(args)
    if getattr(args, "ph_test", False):
        config = replace(config, ph_test=True)
    results = fit_model_grid(derived or _derived(args, config), config, progress=True)
    paths = write_model_results(out_dir=Path(args.out).resolve(), results=results)
    hr = results.hazard_ratios
    print(f"[info] fitted {len(hr)} models: " + ", ".join(f"{k}={v}" for k, v in hr["status"].value_counts().items()))
    print("[info] wrote", paths["hazard_ratios.csv"])


def cmd_sensitivity(args: argparse.Namespace) -> None:
    config = _config(args)
    out_root = Path(args.out).resolve()
    hr = pd.read_csv(_require(out_root / "hazard_ratios.csv", command="fit"))
    outcomes = pd.read_csv(_require(out_root / "descriptive_outcomes.csv", command="describe"))
    table = run_incidental_sensitivity(hr, outcomes, config)
    out_csv, out_json = write_sensitivity(out_dir=out_root, table=table)
    print("[info] wrote", out_csv)
    print(out_json.read_text(), end="")


def cmd_plots(args: argparse.Namespace) -> None:
    config = _config(args)
    out_root = Path(args.out).resolve()
    generate_all_figures(out_root=out_root, outcomes=[o.name for o in config.outcomes], variants=config.variants)
    print("[info] wrote figures under", out_root / "figures")


def cmd_report(args: argparse.Namespace) -> None:
    config = _config(args)
    print("[info] wrote", write_report(out_root=Path(args.out).resolve(), config=config))


def cmd_all(args: argparse.Namespace) -> None:
    # Same order as the methodology: validate -> derive -> describe -> fit -> sensitivity.
    # The line list is read, validated and derived once and shared by the in-memory steps.
    config = _config(args)
    validated = _validated(args, config)
    derived = derive_variables(validated.data, config)
    cmd_validate(args, config=config, validated=validated)
    cmd_derive(args, config=config, derived=derived)
    cmd_describe(args, config=config, derived=derived)
    cmd_fit(args, config=config, derived=derived)
    cmd_sensitivity(args)
    cmd_plots(args)
    cmd_report(args)


def main(argv: list[str] | None = None) -> None:
    project_root_default = Path(__file__).resolve().parents[2]
    out_default = project_root_default / "out"

    p = argparse.ArgumentParser(
        prog="variant-severity",
        description="Stratified Cox comparison of SARS-CoV-2 variant severity + incidental-event sensitivity.",
    )
    p.add_argument(
        "--project-root",
        type=Path,
        default=project_root_default,
        help="Folder holding data/ and config/ (defaults to this checkout).",
    )
    p.add_argument("--cohort-csv", type=Path, default=None, help="Case line list (overrides data/cohort.csv).")
    p.add_argument("--config", type=Path, default=None, help="JSON config overriding the analysis defaults.")
    p.add_argument("--out", type=Path, default=out_default, help="Output directory (defaults to ./out).")
    p.add_argument("-v", "--verbose", action="count", default=0, help="-v for info logging, -vv for debug.")

    sub = p.add_subparsers(dest="cmd", required=True)

    s = sub.add_parser("simulate", help="Write a synthetic line list with known variant hazard ratios.")
    s.add_argument("--n", type=int, default=5000)
    s.add_argument("--seed", type=int, default=7)
    s.add_argument("--weeks", type=int, default=8)
    s.add_argument("--start-date", default="2021-03-29")
    s.add_argument("--hr-attendance", type=float, default=1.5)
    s.add_argument("--hr-admission", type=float, default=2.0)
    s.add_argument("--hr-death", type=float, default=2.0)
    s.add_argument("--cohort-out", type=Path, default=None, help="Defaults to <project-root>/data/cohort.csv.")
    s.set_defaults(func=cmd_simulate)

    def add_on_invalid(sp: argparse.ArgumentParser) -> None:
        sp.add_argument(
            "--on-invalid",
            choices=["drop", "raise"],
            default="drop",
            help="Drop rows failing validation (default) or stop with an error.",
        )

    v = sub.add_parser("validate", help="Check the line list and write validation_issues.csv.")
    add_on_invalid(v)
    v.set_defaults(func=cmd_validate)

    d = sub.add_parser("derive", help="Compute derived variables and survival times; write derived_cohort.csv.")
    add_on_invalid(d)
    d.set_defaults(func=cmd_derive)

    ds = sub.add_parser("describe", help="Tabulate covariates and crude outcome rates by variant.")
    add_on_invalid(ds)
    ds.set_defaults(func=cmd_describe)

    f = sub.add_parser("fit", help="Fit stratified Cox models for every outcome x adjustment (+ subgroups).")
    add_on_invalid(f)
    f.add_argument("--ph-test", action="store_true", help="Also run Schoenfeld-residual PH tests.")
    f.set_defaults(func=cmd_fit)

    se = sub.add_parser("sensitivity", help="Incidental-event bias correction of the fitted hazard ratios.")
    se.set_defaults(func=cmd_sensitivity)

    pl = sub.add_parser("plots", help="Forest plots, sensitivity curve, cumulative incidence.")
    pl.set_defaults(func=cmd_plots)

    r = sub.add_parser("report", help="Write report.md from the outputs.")
    r.set_defaults(func=cmd_report)

    a = sub.add_parser("all", help="validate + derive + describe + fit + sensitivity + plots + report.")
    add_on_invalid(a)
    a.add_argument("--ph-test", action="store_true")
    a.set_defaults(func=cmd_all)

    args = p.parse_args(argv)
    if args.verbose:
        logging.basicConfig(
            level=logging.DEBUG if args.verbose > 1 else logging.INFO,
            format="%(levelname)s %(name)s: %(message)s",
        )
    args.func(args)


if __name__ == "__main__":
    main()

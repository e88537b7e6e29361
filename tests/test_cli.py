"""Tests for CLI commands."""

import json
import os
import subprocess
import sys
from pathlib import Path

import pandas as pd
import pytest

from variant_severity.cli import main
from variant_severity.validate import validate_cohort


def _run_module(project_root: Path, *args: str) -> subprocess.CompletedProcess:
    env = dict(os.environ)
    src = str(project_root / "src")
    env["PYTHONPATH"] = src + os.pathsep + env["PYTHONPATH"] if env.get("PYTHONPATH") else src
    return subprocess.run(
        [sys.executable, "-m", "variant_severity.cli", *args],
        capture_output=True,
        text=True,
        env=env,
    )


def test_cli_help(project_root: Path):
    """Test CLI help command."""
    result = _run_module(project_root, "--help")
    assert result.returncode == 0
    assert "variant-severity" in result.stdout or "usage" in result.stdout.lower()


def test_cli_fit_subcommand(project_root: Path):
    """Test fit subcommand help."""
    result = _run_module(project_root, "fit", "--help")
    assert result.returncode == 0
    assert "--ph-test" in result.stdout


@pytest.fixture
def workspace(tmp_path: Path, monkeypatch) -> Path:
    monkeypatch.delenv("VARIANT_SEVERITY_COHORT", raising=False)
    monkeypatch.delenv("VARIANT_SEVERITY_CONFIG", raising=False)
    return tmp_path


def test_missing_inputs_name_the_next_command(workspace: Path):
    with pytest.raises(FileNotFoundError, match="variant-severity fit"):
        main(["--project-root", str(workspace), "--out", str(workspace / "out"), "sensitivity"])


def test_simulate_then_all(workspace: Path, capsys):
    cfg = workspace / "config" / "analysis.json"
    cfg.parent.mkdir()
    cfg.write_text(json.dumps({"background_rates": {"admission": 0.1}, "subgroups": []}))
    out = workspace / "out"
    common = ["--project-root", str(workspace), "--out", str(out)]

    main([*common, "simulate", "--n", "3000", "--seed", "5"])
    assert (workspace / "data" / "cohort.csv").exists()

    main([*common, "all"])
    stdout = capsys.readouterr().out
    assert "[info] wrote" in stdout

    for name in (
        "validation_issues.csv",
        "validation_summary.json",
        "analysis_config.json",
        "derived_cohort.csv",
        "descriptive_covariates.csv",
        "descriptive_outcomes.csv",
        "hazard_ratios.csv",
        "model_coefficients.csv",
        "sensitivity_incidental.csv",
        "report.md",
        "figures/forest_hazard_ratios.png",
        "figures/cumulative_incidence_death.png",
    ):
        assert (out / name).exists(), name

    hr = pd.read_csv(out / "hazard_ratios.csv")
    assert len(hr) == 9
    assert set(hr["subgroup"]) == {"all"}
    saved = json.loads((out / "analysis_config.json").read_text())
    assert saved["background_rates"] == {"admission": 0.1}
    report = (out / "report.md").read_text()
    assert report.startswith("# Severity of delta compared with alpha")
    assert "## Sensitivity: incidental events" in report


def test_on_invalid_raise(workspace: Path):
    cohort = workspace / "bad.csv"
    cohort.write_text(
        "case_id,variant,specimen_date,age,sex,ethnicity,imd_quintile,region,"
        "attendance_date,admission_date,death_date\n"
        "X1,gamma,2021-05-01,40,female,white,3,london,,,\n"
    )
    with pytest.raises(ValueError, match="unknown variant"):
        main(
            [
                "--project-root",
                str(workspace),
                "--cohort-csv",
                str(cohort),
                "--out",
                str(workspace / "out"),
                "validate",
                "--on-invalid",
                "raise",
            ]
        )


def test_all_on_tiny_cohort_still_writes_report(workspace: Path):
    """With every overall model skipped, figures and report are still produced."""
    out = workspace / "out"
    common = ["--project-root", str(workspace), "--out", str(out)]
    main([*common, "simulate", "--n", "40", "--seed", "1"])
    main([*common, "all"])

    assert (out / "report.md").exists()
    hr = pd.read_csv(out / "hazard_ratios.csv")
    overall_ok = ((hr["subgroup"] == "all") & (hr["status"] == "ok")).any()
    assert (out / "figures" / "forest_hazard_ratios.png").exists() == overall_ok
    assert (out / "figures" / "cumulative_incidence_admission.png").exists()
    if not overall_ok:
        assert "### Models not estimated" in (out / "report.md").read_text()


def test_all_validates_the_line_list_once(workspace: Path, monkeypatch):
    import variant_severity.cli as cli

    calls = []

    def counting_validate(*args, **kwargs):
        calls.append(1)
        return validate_cohort(*args, **kwargs)

    monkeypatch.setattr(cli, "validate_cohort", counting_validate)
    out = workspace / "out"
    common = ["--project-root", str(workspace), "--out", str(out)]
    main([*common, "simulate", "--n", "40", "--seed", "2"])
    main([*common, "all"])
    assert len(calls) == 1
    assert (out / "derived_cohort.csv").exists()

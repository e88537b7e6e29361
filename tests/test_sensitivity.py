import json
from dataclasses import replace

import numpy as np
import pandas as pd
import pytest

from variant_severity.config import AnalysisConfig
from variant_severity.sensitivity import (
    SENSITIVITY_COLUMNS,
    correct_incidental_hr,
    incidental_fraction_from_background,
    run_incidental_sensitivity,
    write_sensitivity,
)


def test_correction_formula():
    assert correct_incidental_hr(2.0, 0.2) == pytest.approx(2.25)
    assert correct_incidental_hr(1.0, 0.3) == pytest.approx(1.0)
    assert correct_incidental_hr(1.7, 0.0) == pytest.approx(1.7)


def test_correction_moves_away_from_one():
    assert correct_incidental_hr(0.8, 0.1) < 0.8
    assert correct_incidental_hr(1.2, 0.1) > 1.2


def test_correction_undefined_below_fraction():
    assert np.isnan(correct_incidental_hr(0.2, 0.2))
    assert np.isnan(correct_incidental_hr(0.1, 0.25))


def test_correction_vectorised():
    out = correct_incidental_hr(np.array([2.0, 1.0, 0.05]), 0.2)
    assert out[0] == pytest.approx(2.25)
    assert out[1] == pytest.approx(1.0)
    assert np.isnan(out[2])


@pytest.mark.parametrize("f", [-0.1, 1.0, 1.5])
def test_invalid_fraction(f):
    with pytest.raises(ValueError, match=r"\[0, 1\)"):
        correct_incidental_hr(2.0, f)


def test_fraction_from_background():
    assert incidental_fraction_from_background(0.5, 2.0) == pytest.approx(0.25)
    with pytest.raises(ValueError, match="positive"):
        incidental_fraction_from_background(0.5, 0.0)
    with pytest.raises(ValueError, match="non-negative"):
        incidental_fraction_from_background(-1.0, 2.0)
    with pytest.raises(ValueError, match="every event would be incidental"):
        incidental_fraction_from_background(3.0, 2.0)


def _hr_table() -> pd.DataFrame:
    base = {"subgroup": "all", "subgroup_level": "all", "status": "ok"}
    return pd.DataFrame(
        [
            {**base, "outcome": "admission", "adjustment": "full", "hr": 2.0, "ci_low": 1.5, "ci_high": 2.6},
            {**base, "outcome": "admission", "adjustment": "stratified", "hr": 2.4, "ci_low": 1.9, "ci_high": 3.0},
            {**base, "outcome": "attendance", "adjustment": "full", "hr": 1.4, "ci_low": 1.2, "ci_high": 1.6},
            {**base, "outcome": "death", "adjustment": "full", "hr": 2.2, "ci_low": 1.1, "ci_high": 4.0},
        ]
    )


def _outcome_table() -> pd.DataFrame:
    return pd.DataFrame(
        [
            {"outcome": "admission", "variant": "alpha", "rate_per_1000_person_days": 4.0},
            {"outcome": "admission", "variant": "delta", "rate_per_1000_person_days": 8.0},
        ]
    )


def test_run_sensitivity_grid_and_background():
    config = replace(AnalysisConfig(), incidental_fractions=(0.0, 0.2), background_rates={"admission": 1.0})
    table = run_incidental_sensitivity(_hr_table(), _outcome_table(), config)
    assert list(table.columns) == SENSITIVITY_COLUMNS
    # attendance: 2 grid rows; admission: 2 grid rows + 1 background row; death is not a sensitivity outcome
    assert len(table) == 5
    assert set(table["adjustment"]) == {"full"}
    adm = table[table["outcome"] == "admission"]
    assert adm["source"].tolist() == ["grid", "grid", "background"]
    bg = adm.iloc[-1]
    assert bg["incidental_fraction"] == pytest.approx(0.25)
    assert bg["hr_corrected"] == pytest.approx((2.0 - 0.25) / 0.75)
    assert bg["ci_low_corrected"] == pytest.approx((1.5 - 0.25) / 0.75)


def test_run_sensitivity_ignores_failed_models():
    hr = _hr_table()
    hr.loc[hr["outcome"] == "attendance", "status"] = "failed"
    table = run_incidental_sensitivity(hr, _outcome_table(), AnalysisConfig())
    assert set(table["outcome"]) == {"admission"}


def test_write_sensitivity(tmp_path):
    config = replace(AnalysisConfig(), background_rates={"admission": 1.0})
    table = run_incidental_sensitivity(_hr_table(), _outcome_table(), config)
    out_csv, out_json = write_sensitivity(out_dir=tmp_path, table=table)
    assert len(pd.read_csv(out_csv)) == len(table)
    summary = json.loads(out_json.read_text())
    assert summary["admission"]["hr_observed"] == 2.0
    assert summary["admission"]["background_fraction"] == pytest.approx(0.25)
    lo, hi = summary["admission"]["hr_corrected_range"]
    assert lo == pytest.approx(2.0)
    assert hi == pytest.approx((2.0 - 0.3) / 0.7)
    assert summary["attendance"]["background_fraction"] is None


def test_sensitivity_on_fitted_grid(analysis_out):
    table = pd.read_csv(analysis_out / "sensitivity_incidental.csv")
    assert set(table["source"]) <= {"grid", "background"}
    above = table[table["hr_observed"] >= 1.0]
    assert (above["hr_corrected"] >= above["hr_observed"] - 1e-12).all()
    assert (table["source"] == "background").sum() == 1


@pytest.mark.parametrize("background", [4.0, 9.0])
def test_unusable_background_rate_keeps_grid_rows(background, caplog):
    # reference crude admission rate is 4.0 per 1000 person-days
    config = replace(AnalysisConfig(), incidental_fractions=(0.0, 0.1), background_rates={"admission": background})
    with caplog.at_level("WARNING", logger="variant_severity.sensitivity"):
        table = run_incidental_sensitivity(_hr_table(), _outcome_table(), config)
    adm = table[table["outcome"] == "admission"]
    assert adm["source"].tolist() == ["grid", "grid"]
    assert "every event would be incidental" in caplog.text


def test_background_rate_without_reference_rate(caplog):
    # no crude rate for the reference variant (e.g. no eligible cases)
    outcomes = _outcome_table()[lambda d: d["variant"] != "alpha"]
    config = replace(AnalysisConfig(), background_rates={"admission": 1.0})
    with caplog.at_level("WARNING", logger="variant_severity.sensitivity"):
        table = run_incidental_sensitivity(_hr_table(), outcomes, config)
    assert set(table.loc[table["outcome"] == "admission", "source"]) == {"grid"}
    assert "reference rate must be positive" in caplog.text

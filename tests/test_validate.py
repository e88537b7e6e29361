import json

import pandas as pd
import pytest
from helpers import make_raw

from variant_severity.config import AnalysisConfig
from variant_severity.validate import CohortValidationError, ISSUE_COLUMNS, validate_cohort, write_validation


def test_missing_required_column_is_fatal():
    raw = make_raw([{}]).drop(columns=["region"])
    with pytest.raises(CohortValidationError, match="region"):
        validate_cohort(raw, AnalysisConfig())


def test_missing_outcome_column_is_fatal():
    raw = make_raw([{}]).drop(columns=["death_date"])
    with pytest.raises(CohortValidationError, match="death_date"):
        validate_cohort(raw, AnalysisConfig())


def test_optional_date_columns_may_be_absent():
    raw = make_raw([{}]).drop(columns=["vaccine_dose1_date", "vaccine_dose2_date", "prior_positive_date"])
    v = validate_cohort(raw, AnalysisConfig())
    assert v.summary["rows_out"] == 1
    assert v.data["vaccine_dose1_date"].isna().all()


def test_clean_rows_are_typed():
    raw = make_raw(
        [
            {"variant": "Alpha", "sex": "F", "admission_date": "2021-05-03"},
            {"variant": "DELTA", "sex": "m", "imd_quintile": "", "ethnicity": " ", "region": ""},
        ]
    )
    v = validate_cohort(raw, AnalysisConfig())
    assert v.issues.empty
    assert list(v.issues.columns) == ISSUE_COLUMNS
    d = v.data
    assert d["variant"].tolist() == ["alpha", "delta"]
    assert d["sex"].tolist() == ["female", "male"]
    assert d["imd_quintile"].tolist() == ["3", "unknown"]
    assert d.loc[1, "ethnicity"] == "unknown"
    assert d.loc[1, "region"] == "unknown"
    assert pd.api.types.is_datetime64_any_dtype(d["specimen_date"])
    assert d.loc[0, "admission_date"] == pd.Timestamp("2021-05-03")
    assert pd.isna(d.loc[1, "admission_date"])
    assert v.summary["unknown_filled"] == {"imd_quintile": 1, "ethnicity": 1, "region": 1}
    assert v.summary["rows_by_variant"] == {"alpha": 1, "delta": 1}


@pytest.mark.parametrize(
    "row, problem",
    [
        ({"case_id": ""}, "missing case_id"),
        ({"variant": "beta"}, "unknown variant"),
        ({"specimen_date": ""}, "missing specimen_date"),
        ({"specimen_date": "2021-13-45"}, "unparseable date"),
        ({"age": "forty"}, "missing or non-numeric age"),
        ({"age": "130"}, "age out of range"),
        ({"sex": "x"}, "unrecognised sex"),
        ({"imd_quintile": "7"}, "imd_quintile outside 1..5"),
        ({"admission_date": "2021-04-20"}, "outcome before specimen date"),
        ({"vaccine_dose2_date": "2021-03-01"}, "dose 2 without dose 1"),
        ({"vaccine_dose1_date": "2021-03-01", "vaccine_dose2_date": "2021-02-01"}, "dose 2 before dose 1"),
    ],
)
def test_row_problems_are_flagged_and_dropped(row, problem):
    raw = make_raw([{}, row])
    v = validate_cohort(raw, AnalysisConfig())
    assert problem in set(v.issues["problem"])
    assert v.summary["rows_in"] == 2
    assert v.summary["rows_out"] == 1
    assert v.summary["rows_dropped"] == 1
    assert v.data["case_id"].tolist() == ["T0000"]


def test_duplicate_case_id_keeps_first():
    raw = make_raw([{"case_id": "A"}, {"case_id": "A", "variant": "delta"}])
    v = validate_cohort(raw, AnalysisConfig())
    assert v.issues["problem"].tolist() == ["duplicate case_id"]
    assert v.data["variant"].tolist() == ["alpha"]


def test_raise_mode_reports_first_issues():
    raw = make_raw([{}, {"case_id": "BAD", "age": "-3"}])
    with pytest.raises(CohortValidationError, match="BAD: age: age out of range"):
        validate_cohort(raw, AnalysisConfig(), on_invalid="raise")


def test_unknown_on_invalid_mode():
    with pytest.raises(ValueError, match="on_invalid"):
        validate_cohort(make_raw([{}]), AnalysisConfig(), on_invalid="ignore")


def test_write_validation(tmp_path):
    v = validate_cohort(make_raw([{}, {"sex": "?"}]), AnalysisConfig())
    issues_csv, summary_json = write_validation(out_dir=tmp_path / "out", validated=v)
    issues = pd.read_csv(issues_csv)
    assert issues["problem"].tolist() == ["unrecognised sex"]
    summary = json.loads(summary_json.read_text())
    assert summary["issues_by_problem"] == {"unrecognised sex": 1}


def test_synthetic_cohort_validates_cleanly(raw_cohort):
    v = validate_cohort(raw_cohort, AnalysisConfig())
    assert v.issues.empty
    assert v.summary["rows_out"] == len(raw_cohort)

from __future__ import annotations

import pandas as pd

RAW_DEFAULTS = {
    "case_id": None,
    "variant": "alpha",
    "specimen_date": "2021-05-01",
    "age": "40",
    "sex": "female",
    "ethnicity": "white",
    "imd_quintile": "3",
    "region": "london",
    "vaccine_dose1_date": "",
    "vaccine_dose2_date": "",
    "prior_positive_date": "",
    "attendance_date": "",
    "admission_date": "",
    "death_date": "",
}


def make_raw(rows: list[dict]) -> pd.DataFrame:
    """Build a string-typed line list, filling unspecified columns with defaults."""
    out = []
    for i, r in enumerate(rows):
        row = {**RAW_DEFAULTS, **r}
        if row["case_id"] is None:
            row["case_id"] = f"T{i:04d}"
        out.append(row)
    return pd.DataFrame(out, columns=list(RAW_DEFAULTS)).astype(str)

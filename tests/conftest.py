"""Shared test fixtures."""

from dataclasses import replace
from pathlib import Path

import pandas as pd
import pytest

from variant_severity.config import AnalysisConfig
from variant_severity.derive import derive_variables, write_derived
from variant_severity.describe import describe_cohort, write_descriptive_tables
from variant_severity.models import fit_model_grid, write_model_results
from variant_severity.sensitivity import run_incidental_sensitivity, write_sensitivity
from variant_severity.synthetic import simulate_cohort
from variant_severity.validate import validate_cohort


@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture(scope="session")
def config() -> AnalysisConfig:
    return AnalysisConfig()


@pytest.fixture(scope="session")
def raw_cohort(config: AnalysisConfig) -> pd.DataFrame:
    return simulate_cohort(6000, seed=11, config=config)


@pytest.fixture(scope="session")
def derived(raw_cohort: pd.DataFrame, config: AnalysisConfig):
    validated = validate_cohort(raw_cohort, config)
    return derive_variables(validated.data, config)


@pytest.fixture(scope="session")
def model_results(derived, config: AnalysisConfig):
    return fit_model_grid(derived, config)


@pytest.fixture(scope="session")
def analysis_out(tmp_path_factory, derived, model_results, config: AnalysisConfig) -> Path:
    """An out/ directory populated the way `variant-severity all` leaves it (minus figures)."""
    out = tmp_path_factory.mktemp("out")
    write_derived(out_dir=out, derived=derived)
    tables = describe_cohort(derived, config)
    write_descriptive_tables(out_dir=out, tables=tables)
    write_model_results(out_dir=out, results=model_results)
    sens_config = replace(config, background_rates={"admission": 0.2})
    table = run_incidental_sensitivity(model_results.hazard_ratios, tables.outcomes, sens_config)
    write_sensitivity(out_dir=out, table=table)
    return out

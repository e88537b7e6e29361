from __future__ import annotations

"""
Analysis configuration.

Everything that changes the numbers lives here: the two variants being compared, the
outcome definitions (event columns + follow-up window), the adjustment strategies, the
stratification, and the sensitivity-analysis grid.

Defaults are in code. A JSON file can override any top-level key, e.g.

    {
      "reference_variant": "delta",
      "comparison_variant": "omicron",
      "censor_date": "2022-01-11",
      "adjustments": [{"name": "full", "covariates": ["age_group", "sex"]}]
    }

Unknown keys are rejected rather than silently ignored.
"""

import json
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path

import pandas as pd


@dataclass(frozen=True)
class OutcomeSpec:
    name: str
    event_columns: tuple[str, ...]
    window_days: int
    censor_at_death: bool = True


@dataclass(frozen=True)
class AdjustmentSpec:
    name: str
    covariates: tuple[str, ...]
    description: str = ""


DEFAULT_OUTCOMES = (
    OutcomeSpec(name="attendance", event_columns=("attendance_date", "admission_date"), window_days=14),
    OutcomeSpec(name="admission", event_columns=("admission_date",), window_days=14),
    OutcomeSpec(name="death", event_columns=("death_date",), window_days=28, censor_at_death=False),
)

DEFAULT_ADJUSTMENTS = (
    AdjustmentSpec(name="stratified", covariates=(), description="variant only, stratified"),
    AdjustmentSpec(name="age_sex", covariates=("age_group", "sex"), description="+ age group, sex"),
    AdjustmentSpec(
        name="full",
        covariates=("age_group", "sex", "ethnicity", "imd_quintile", "vaccination_status", "reinfection"),
        description="+ ethnicity, deprivation, vaccination, reinfection",
    ),
)

DEFAULT_REFERENCE_LEVELS = {
    "sex": "female",
    "vaccination_status": "unvaccinated",
    "reinfection": "no",
    "imd_quintile": "1",
}

# Covariates derived from the line list; anything else in an adjustment set is an error.
KNOWN_COVARIATES = frozenset(
    {"age_group", "sex", "ethnicity", "imd_quintile", "region", "vaccination_status", "reinfection"}
)


@dataclass(frozen=True)
class AnalysisConfig:
    reference_variant: str = "alpha"
    comparison_variant: str = "delta"
    censor_date: str | None = None

    outcomes: tuple[OutcomeSpec, ...] = DEFAULT_OUTCOMES
    adjustments: tuple[AdjustmentSpec, ...] = DEFAULT_ADJUSTMENTS
    strata: tuple[str, ...] = ("specimen_week", "region")
    subgroups: tuple[str, ...] = ("vaccination_status",)
    subgroup_adjustment: str = "full"

    age_bands: tuple[int, ...] = (0, 10, 20, 30, 40, 50, 60, 70, 80)
    dose1_lag_days: int = 21
    dose2_lag_days: int = 14
    reinfection_gap_days: int = 90
    same_day_offset: float = 0.5

    min_events: int = 5
    penalizer: float = 0.0
    robust: bool = False
    ph_test: bool = False
    reference_levels: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_REFERENCE_LEVELS))

    incidental_fractions: tuple[float, ...] = (0.0, 0.05, 0.10, 0.15, 0.20, 0.25, 0.30)
    sensitivity_outcomes: tuple[str, ...] = ("attendance", "admission")
    sensitivity_adjustment: str = "full"
    background_rates: dict[str, float] = field(default_factory=dict)

    @property
    def variants(self) -> tuple[str, str]:
        return (self.reference_variant, self.comparison_variant)

    def outcome(self, name: str) -> OutcomeSpec:
        for o in self.outcomes:
            if o.name == name:
                return o
        raise KeyError(f"unknown outcome {name!r}")

    def adjustment(self, name: str) -> AdjustmentSpec:
        for a in self.adjustments:
            if a.name == name:
                return a
        raise KeyError(f"unknown adjustment {name!r}")


def validate_config(config: AnalysisConfig) -> AnalysisConfig:
    """
    Check cross-field consistency. Returns the config unchanged so it can be chained.
    """
    problems: list[str] = []
    ref = str(config.reference_variant).strip().lower()
    cmp_ = str(config.comparison_variant).strip().lower()
    if not ref or not cmp_:
        problems.append("reference_variant and comparison_variant must be non-empty")
    elif ref == cmp_:
        problems.append(f"reference_variant and comparison_variant are both {ref!r}")

    if config.censor_date is not None and pd.isna(pd.to_datetime(config.censor_date, errors="coerce")):
        problems.append(f"censor_date is not a date: {config.censor_date!r}")

    outcome_names = [o.name for o in config.outcomes]
    if not outcome_names:
        problems.append("at least one outcome is required")
    if len(set(outcome_names)) != len(outcome_names):
        problems.append(f"duplicate outcome names: {outcome_names}")
    for o in config.outcomes:
        if int(o.window_days) <= 0:
            problems.append(f"outcome {o.name!r}: window_days must be positive")
        if not o.event_columns:
            problems.append(f"outcome {o.name!r}: event_columns is empty")

    adjustment_names = [a.name for a in config.adjustments]
    if len(set(adjustment_names)) != len(adjustment_names):
        problems.append(f"duplicate adjustment names: {adjustment_names}")
    for a in config.adjustments:
        unknown = sorted(set(a.covariates) - KNOWN_COVARIATES)
        if unknown:
            problems.append(f"adjustment {a.name!r}: unknown covariates {unknown}")
        clash = sorted(set(a.covariates) & set(config.strata))
        if clash:
            problems.append(f"adjustment {a.name!r}: {clash} already used as strata")

    for name, label in (
        (config.subgroup_adjustment, "subgroup_adjustment"),
        (config.sensitivity_adjustment, "sensitivity_adjustment"),
    ):
        if name not in adjustment_names:
            problems.append(f"{label}={name!r} is not one of {adjustment_names}")
    for s in config.subgroups:
        if s not in KNOWN_COVARIATES:
            problems.append(f"subgroup {s!r} is not a known covariate")
    for o in config.sensitivity_outcomes:
        if o not in outcome_names:
            problems.append(f"sensitivity outcome {o!r} is not one of {outcome_names}")
    for o in config.background_rates:
        if o not in outcome_names:
            problems.append(f"background rate given for unknown outcome {o!r}")

    for f in config.incidental_fractions:
        if not (0.0 <= float(f) < 1.0):
            problems.append(f"incidental fraction {f} outside [0, 1)")
    bands = list(config.age_bands)
    if not bands or bands != sorted(set(bands)) or bands[0] < 0:
        problems.append(f"age_bands must be strictly increasing and non-negative: {bands}")
    if config.same_day_offset <= 0:
        problems.append("same_day_offset must be positive")
    if config.min_events < 1:
        problems.append("min_events must be at least 1")

    if problems:
        raise ValueError("Invalid analysis config:\n  - " + "\n  - ".join(problems))
    return config


def _outcome_from_dict(d: dict) -> OutcomeSpec:
    return OutcomeSpec(
        name=str(d["name"]),
        event_columns=tuple(str(c) for c in d["event_columns"]),
        window_days=int(d["window_days"]),
        censor_at_death=bool(d.get("censor_at_death", True)),
    )


def _adjustment_from_dict(d: dict) -> AdjustmentSpec:
    return AdjustmentSpec(
        name=str(d["name"]),
        covariates=tuple(str(c) for c in d.get("covariates", ())),
        description=str(d.get("description", "")),
    )


def config_from_dict(overrides: dict, *, base: AnalysisConfig | None = None) -> AnalysisConfig:
    base = base or AnalysisConfig()
    allowed = {f.name for f in fields(AnalysisConfig)}
    unknown = sorted(set(overrides) - allowed)
    if unknown:
        raise ValueError(f"Unknown config keys: {unknown}. Allowed: {sorted(allowed)}")

    kw: dict = {}
    for key, value in overrides.items():
        if key == "outcomes":
            kw[key] = tuple(_outcome_from_dict(d) for d in value)
        elif key == "adjustments":
            kw[key] = tuple(_adjustment_from_dict(d) for d in value)
        elif key in {"strata", "subgroups", "sensitivity_outcomes"}:
            kw[key] = tuple(str(x) for x in value)
        elif key == "age_bands":
            kw[key] = tuple(int(x) for x in value)
        elif key == "incidental_fractions":
            kw[key] = tuple(float(x) for x in value)
        elif key == "reference_levels":
            kw[key] = {str(k): str(v) for k, v in value.items()}
        elif key == "background_rates":
            kw[key] = {str(k): float(v) for k, v in value.items()}
        elif key in {"reference_variant", "comparison_variant"}:
            kw[key] = str(value).strip().lower()
        else:
            kw[key] = value
    return validate_config(replace(base, **kw))


def load_config(path: Path | None) -> AnalysisConfig:
    if path is None:
        return validate_config(AnalysisConfig())
    p = Path(path)
    try:
        overrides = json.loads(p.read_text())
    except json.JSONDecodeError as e:
        raise ValueError(f"Config file {p} is not valid JSON: {e}") from e
    if not isinstance(overrides, dict):
        raise ValueError(f"Config file {p} must contain a JSON object")
    return config_from_dict(overrides)


def config_to_dict(config: AnalysisConfig) -> dict:
    return asdict(config)

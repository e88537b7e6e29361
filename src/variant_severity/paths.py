from __future__ import annotations

"""
Path resolution for the analysis inputs.

Design goal:
- Be explicit about which line-list file an analysis run consumes
- Let the secure-environment layout differ from a developer checkout without code changes

Nothing is extracted or downloaded here; the line list is produced upstream (or by
`variant-severity simulate` for a synthetic run).
"""

import os
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path


def _first_existing(paths: Iterable[Path]) -> Path | None:
    for p in paths:
        if p.exists():
            return p
    return None


@dataclass(frozen=True)
class InputPaths:
    """
    Resolved locations for the analysis inputs.

    Environment variable overrides:
      - VARIANT_SEVERITY_COHORT
      - VARIANT_SEVERITY_CONFIG
    """

    project_root: Path
    cohort_csv: Path
    config_json: Path | None


def resolve_input_paths(
    *,
    project_root: Path,
    cohort_csv: Path | None = None,
    config_json: Path | None = None,
) -> InputPaths:
    """
    Resolve the cohort line list + optional config file.

    Precedence: explicit argument > environment variable > conventional location.
    """
    project_root = Path(project_root).resolve()

    if cohort_csv is not None:
        cohort_candidates = [Path(cohort_csv).resolve()]
    elif "VARIANT_SEVERITY_COHORT" in os.environ:
        cohort_candidates = [Path(os.environ["VARIANT_SEVERITY_COHORT"]).resolve()]
    else:
        cohort_candidates = [
            project_root / "data" / "cohort.csv",
            project_root / "data" / "line_list.csv",
        ]

    found = _first_existing(cohort_candidates)
    if found is None:
        raise FileNotFoundError(
            "Cohort line list not found. Tried:\n  - "
            + "\n  - ".join(str(p) for p in cohort_candidates)
            + "\nPass --cohort-csv, set VARIANT_SEVERITY_COHORT, or run `variant-severity simulate` "
            "to write a synthetic cohort."
        )

    cfg = resolve_config_path(project_root=project_root, config_json=config_json)
    return InputPaths(project_root=project_root, cohort_csv=found, config_json=cfg)


def resolve_config_path(*, project_root: Path, config_json: Path | None = None) -> Path | None:
    """
    The config is optional: None means the in-code defaults.
    """
    if config_json is not None:
        cfg = Path(config_json).resolve()
        if not cfg.exists():
            raise FileNotFoundError(f"Config file not found: {cfg}")
        return cfg
    if "VARIANT_SEVERITY_CONFIG" in os.environ:
        cfg = Path(os.environ["VARIANT_SEVERITY_CONFIG"]).resolve()
        if not cfg.exists():
            raise FileNotFoundError(f"VARIANT_SEVERITY_CONFIG points at a missing file: {cfg}")
        return cfg
    return _first_existing([Path(project_root).resolve() / "config" / "analysis.json"])

"""
Variant severity analysis package.

Compares the severity of two SARS-CoV-2 variants in a case line list:
  - validate the line list and derive covariates + survival times
  - tabulate cohort characteristics and crude outcome rates by variant
  - fit stratified Cox models for each outcome x adjustment strategy (and subgroup)
  - correct the hazard ratios for incidental hospital events (sensitivity analysis)

`variant-severity all` runs the whole workflow; see `variant_severity.cli`.
"""

__all__ = []

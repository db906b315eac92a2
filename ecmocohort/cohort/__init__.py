"""VV-ECMO cohort extraction and modified SOFA scoring.

Public API:
    build_ecmo_cohort: Build the per-visit cohort table from OMOP tables
    run_ecmo_cohort: Load sources from a run config, build and write the table
    load_source_tables: Load the OMOP tables a run needs
    CohortConfig: Code sets, label tables and windows driving the pipeline
"""

from ._utils import CohortConfig, LabVariable, RatioVariable
from ._core import build_ecmo_cohort, load_source_tables, run_ecmo_cohort
from ._output import output_columns

__all__ = [
    'build_ecmo_cohort',
    'run_ecmo_cohort',
    'load_source_tables',
    'output_columns',
    'CohortConfig',
    'LabVariable',
    'RatioVariable',
]

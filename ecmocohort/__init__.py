from . import utils
# Re-export the cohort pipeline at package root
from .cohort import (
    build_ecmo_cohort,
    run_ecmo_cohort,
    load_source_tables,
    output_columns,
    CohortConfig,
    LabVariable,
    RatioVariable,
)
from .utils import setup_logging

# Version info
__version__ = "0.1.0"

# Public API
__all__ = [
    "utils",
    "build_ecmo_cohort",
    "run_ecmo_cohort",
    "load_source_tables",
    "output_columns",
    "CohortConfig",
    "LabVariable",
    "RatioVariable",
    "setup_logging",
]

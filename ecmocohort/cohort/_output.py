"""Final cohort table assembly.

Left-joins every per-visit table onto the demographics table, attaches display
labels and emits one row per (person_id, visit_occurrence_id) in a fixed column
order, sorted by that key.
"""

from __future__ import annotations

from typing import Any, List, Mapping, Optional

import pandas as pd

from ._utils import CANNOT_CALCULATE_LABEL, UNKNOWN_LABEL, VISIT_KEY, CohortConfig
from ._exposures import ANY_VASOPRESSOR_COLUMN, FLAG_PREFIX
from ._sofa import SOFA_COLUMNS, score_from_ladder
from ecmocohort.utils.logging_config import get_logger

logger = get_logger('cohort.output')

DEMOGRAPHIC_COLUMNS = [
    'patient_site',
    'site_description',
    'gender_concept_id',
    'gender',
    'race_concept_id',
    'race',
    'ethnicity_concept_id',
    'ethnicity',
    'age_at_admission',
    'age_category',
]

TIMING_COLUMNS = [
    'visit_start_date',
    'visit_ecmo_start_date',
    'visit_ecmo_end_date',
    'visit_ecmo_start_datetime',
    'visit_ecmo_end_datetime',
    'ecmo_duration_days',
    'ecmo_duration_hours',
    'ecmo_duration_category',
]

DERIVED_VITAL_COLUMNS = ['pao2_fio2_ratio', 'map_avg']

MORTALITY_COLUMNS = ['died', 'death_date', 'died_within_30_days_of_ecmo']


def _is_missing(value: Any) -> bool:
    return value is None or pd.isna(value)


def apply_label(
    value: Any,
    mapping: Mapping[Any, str],
    fallback: str = UNKNOWN_LABEL,
    passthrough: bool = False,
) -> str:
    """
    Look ``value`` up in a label table.

    Missing values always get ``fallback``. Unmapped values get ``fallback``,
    or their own string form when ``passthrough`` is set.
    """
    if _is_missing(value):
        return fallback
    if value in mapping:
        return mapping[value]
    return str(value) if passthrough else fallback


def apply_bucket(value: Any, ladder, fallback: str = UNKNOWN_LABEL) -> str:
    """Label from a ``(lower_bound, label)`` ladder; missing values get ``fallback``."""
    label = score_from_ladder(value, ladder)
    return fallback if label is None else label


def severity_category(total_score: Any, components_available: Any, ladder) -> str:
    """SOFA severity label; 'Cannot Calculate' when no component was scored."""
    if _is_missing(components_available) or components_available == 0:
        return CANNOT_CALCULATE_LABEL
    return apply_bucket(total_score, ladder, fallback=CANNOT_CALCULATE_LABEL)


def output_columns(cohort_config: CohortConfig) -> List[str]:
    """Column order of the cohort table for a given configuration."""
    drug_cols: List[str] = []
    for name in cohort_config.drug_classes:
        drug_cols.append(f'{FLAG_PREFIX}{name}')
        if cohort_config.vasopressor_classes and name == _last_vasopressor(cohort_config):
            drug_cols.append(ANY_VASOPRESSOR_COLUMN)
    if not cohort_config.vasopressor_classes:
        drug_cols.append(ANY_VASOPRESSOR_COLUMN)

    procedure_cols = [f'{FLAG_PREFIX}{name}' for name in cohort_config.procedure_classes]
    ratio_cols = [ratio.column for ratio in cohort_config.ratio_variables]

    return (
        VISIT_KEY
        + DEMOGRAPHIC_COLUMNS
        + TIMING_COLUMNS
        + list(cohort_config.lab_columns)
        + ratio_cols
        + DERIVED_VITAL_COLUMNS
        + SOFA_COLUMNS
        + ['sofa_severity_category']
        + drug_cols
        + procedure_cols
        + MORTALITY_COLUMNS
    )


def _last_vasopressor(cohort_config: CohortConfig) -> Optional[str]:
    vaso = set(cohort_config.vasopressor_classes)
    last = None
    for name in cohort_config.drug_classes:
        if name in vaso:
            last = name
    return last


def _flag_columns(frame: pd.DataFrame) -> List[str]:
    return [c for c in frame.columns if c.startswith(FLAG_PREFIX)]


def assemble_output(
    demographics: pd.DataFrame,
    labs: pd.DataFrame,
    sofa: pd.DataFrame,
    drug_flags: pd.DataFrame,
    procedure_flags: pd.DataFrame,
    mortality: pd.DataFrame,
    cohort_config: Optional[CohortConfig] = None,
) -> pd.DataFrame:
    """
    Join all per-visit tables and attach display labels.

    Parameters
    ----------
    demographics : pd.DataFrame
        Output of ``join_demographics``; defines the set of output rows
    labs : pd.DataFrame
        Output of ``compute_derived_vitals``
    sofa : pd.DataFrame
        Output of ``compute_sofa_scores``
    drug_flags, procedure_flags : pd.DataFrame
        Outputs of ``summarize_drug_exposures`` / ``summarize_procedure_exposures``;
        missing visits are flagged 0
    mortality : pd.DataFrame
        Output of ``link_mortality``
    cohort_config : CohortConfig, optional
        Label tables and class lists. Defaults to ``CohortConfig()``.

    Returns
    -------
    pd.DataFrame
        One row per visit, columns in ``output_columns(cohort_config)`` order,
        sorted ascending by (person_id, visit_occurrence_id).

    Raises
    ------
    ValueError
        If the joined table would repeat a visit key.
    """
    cfg = cohort_config or CohortConfig()
    logger.info("Assembling cohort table...")

    out = demographics.copy()
    for frame in (labs, sofa, drug_flags, procedure_flags, mortality):
        out = out.merge(frame, on=VISIT_KEY, how='left')

    for col in _flag_columns(out):
        out[col] = out[col].fillna(0).astype('int64')
    out['died'] = out['died'].fillna(0).astype('int64')

    out['site_description'] = out['patient_site'].map(
        lambda v: apply_label(v, cfg.site_labels, passthrough=True)
    )
    out['gender'] = out['gender_concept_id'].map(
        lambda v: apply_label(v, cfg.gender_labels, fallback=cfg.gender_fallback)
    )
    out['race'] = out['race_concept_id'].map(lambda v: apply_label(v, cfg.race_labels))
    out['ethnicity'] = out['ethnicity_concept_id'].map(lambda v: apply_label(v, cfg.ethnicity_labels))
    out['age_category'] = out['age_at_admission'].map(lambda v: apply_bucket(v, cfg.age_buckets))
    out['ecmo_duration_category'] = out['ecmo_duration_days'].map(
        lambda v: apply_bucket(v, cfg.duration_buckets)
    )
    out['sofa_severity_category'] = [
        severity_category(total, available, cfg.severity_buckets)
        for total, available in zip(out['sofa_total_score'], out['sofa_components_available'])
    ]

    if out.duplicated(VISIT_KEY).any():
        raise ValueError("Cohort table has duplicate (person_id, visit_occurrence_id) keys")

    columns = output_columns(cfg)
    out = out[columns].sort_values(VISIT_KEY, kind='mergesort').reset_index(drop=True)

    logger.info(f"Cohort table assembled: {len(out)} visits, {out['person_id'].nunique()} persons")
    return out

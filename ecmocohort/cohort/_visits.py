"""ECMO visit resolution.

Maps cohort persons to the visits that carry their qualifying ECMO procedure
events and computes the per-visit ECMO episode bounds.

Procedure events without a visit identifier are dropped. A cohort person whose
only qualifying events lack a visit identifier therefore has no visit here and
is absent from the final table, so the person-level cohort count can exceed
the number of persons in the output.
"""

from typing import Iterable

import duckdb
import pandas as pd

from ._utils import _sql_codes
from ecmocohort.utils.logging_config import get_logger

logger = get_logger('cohort.visits')


def resolve_ecmo_visits(
    cohort_persons: pd.DataFrame,
    procedure_occurrence: pd.DataFrame,
    procedure_codes: Iterable[int],
) -> pd.DataFrame:
    """
    Group qualifying ECMO procedures of cohort persons by visit.

    Parameters
    ----------
    cohort_persons : pd.DataFrame
        Column [person_id] from ``select_cohort_persons``
    procedure_occurrence : pd.DataFrame
        Columns [person_id, visit_occurrence_id, procedure_concept_id,
        procedure_date] and optionally [procedure_datetime]
    procedure_codes : iterable of int
        Qualifying ECMO procedure concepts

    Returns
    -------
    pd.DataFrame
        One row per (person_id, visit_occurrence_id) with columns
        visit_ecmo_start_date, visit_ecmo_end_date (DATE min/max) and
        visit_ecmo_start_datetime, visit_ecmo_end_datetime (TIMESTAMP min/max,
        taken from procedure_datetime when present, else midnight of
        procedure_date). Sorted by the visit key.
    """
    logger.info("Resolving ECMO visits for cohort persons...")

    if 'procedure_datetime' in procedure_occurrence.columns:
        event_instant = "COALESCE(CAST(p.procedure_datetime AS TIMESTAMP), CAST(p.procedure_date AS TIMESTAMP))"
    else:
        event_instant = "CAST(p.procedure_date AS TIMESTAMP)"

    q = f"""
    FROM procedure_occurrence p
    INNER JOIN cohort_persons c ON p.person_id = c.person_id
    SELECT
        p.person_id
        , p.visit_occurrence_id
        , MIN(CAST(p.procedure_date AS DATE)) AS visit_ecmo_start_date
        , MAX(CAST(p.procedure_date AS DATE)) AS visit_ecmo_end_date
        , MIN({event_instant}) AS visit_ecmo_start_datetime
        , MAX({event_instant}) AS visit_ecmo_end_datetime
    WHERE p.procedure_concept_id IN ({_sql_codes(procedure_codes)})
        AND p.visit_occurrence_id IS NOT NULL
    GROUP BY p.person_id, p.visit_occurrence_id
    ORDER BY p.person_id, p.visit_occurrence_id
    """
    visits = duckdb.sql(q).df()

    dropped = len(cohort_persons) - visits['person_id'].nunique()
    logger.info(
        f"Resolved {len(visits)} ECMO visits for {visits['person_id'].nunique()} persons"
    )
    if dropped > 0:
        logger.info(f"{dropped} cohort persons have no ECMO procedure with a visit identifier")

    return visits

"""Person-level cohort selection.

A person qualifies when they have at least one qualifying diagnosis event and
at least one qualifying ECMO procedure event. The two are evaluated
independently: they need not share a visit or be close in time, so a
diagnosis recorded years before an unrelated ECMO run still qualifies. This is
a known over-inclusion risk of the cohort definition.
"""

from typing import Iterable

import duckdb
import pandas as pd

from ._utils import _sql_codes
from ecmocohort.utils.logging_config import get_logger

logger = get_logger('cohort.selection')


def select_cohort_persons(
    condition_occurrence: pd.DataFrame,
    procedure_occurrence: pd.DataFrame,
    diagnosis_codes: Iterable[int],
    procedure_codes: Iterable[int],
) -> pd.DataFrame:
    """
    Identify cohort persons from diagnosis and procedure event logs.

    Parameters
    ----------
    condition_occurrence : pd.DataFrame
        Columns [person_id, condition_concept_id]
    procedure_occurrence : pd.DataFrame
        Columns [person_id, procedure_concept_id]
    diagnosis_codes : iterable of int
        Qualifying condition concepts
    procedure_codes : iterable of int
        Qualifying procedure concepts

    Returns
    -------
    pd.DataFrame
        One row per qualifying person, column [person_id], sorted ascending.
    """
    logger.info("Selecting cohort persons from diagnosis and procedure events...")

    q = f"""
    WITH diagnosed AS (
        SELECT DISTINCT person_id
        FROM condition_occurrence
        WHERE condition_concept_id IN ({_sql_codes(diagnosis_codes)})
            AND person_id IS NOT NULL
    ),
    procedured AS (
        SELECT DISTINCT person_id
        FROM procedure_occurrence
        WHERE procedure_concept_id IN ({_sql_codes(procedure_codes)})
            AND person_id IS NOT NULL
    )
    SELECT d.person_id
    FROM diagnosed d
    INNER JOIN procedured p USING (person_id)
    ORDER BY d.person_id
    """
    persons = duckdb.sql(q).df()

    logger.info(f"Found {len(persons)} cohort persons")
    return persons

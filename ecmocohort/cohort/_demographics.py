"""Per-visit demographics and ECMO timing."""

import duckdb
import pandas as pd

from ecmocohort.utils.logging_config import get_logger

logger = get_logger('cohort.demographics')


def join_demographics(
    ecmo_visits: pd.DataFrame,
    person: pd.DataFrame,
    visit_occurrence: pd.DataFrame,
) -> pd.DataFrame:
    """
    Attach patient attributes and admission timing to each ECMO visit.

    Age is calendar-year arithmetic relative to this visit's admission:
    ``year(visit_start_date) - year_of_birth``. Visits without a matching
    person or visit_occurrence row are dropped. A person with several rows
    keeps the first by (year_of_birth, gender, race, ethnicity, src_name).

    Parameters
    ----------
    ecmo_visits : pd.DataFrame
        Output of ``resolve_ecmo_visits``
    person : pd.DataFrame
        Columns [person_id, gender_concept_id, race_concept_id,
        ethnicity_concept_id, year_of_birth, src_name]
    visit_occurrence : pd.DataFrame
        Columns [person_id, visit_occurrence_id, visit_start_date]

    Returns
    -------
    pd.DataFrame
        One row per visit with demographics, visit_start_date,
        age_at_admission, ECMO episode bounds, ecmo_duration_days and
        ecmo_duration_hours.
    """
    logger.info("Joining demographics onto ECMO visits...")

    q = """
    WITH person_once AS (
        SELECT DISTINCT ON (person_id) *
        FROM person
        ORDER BY person_id, year_of_birth, gender_concept_id, race_concept_id,
            ethnicity_concept_id, src_name
    ),
    visit_once AS (
        SELECT person_id, visit_occurrence_id, MIN(CAST(visit_start_date AS DATE)) AS visit_start_date
        FROM visit_occurrence
        GROUP BY person_id, visit_occurrence_id
    )
    SELECT
        ev.person_id
        , ev.visit_occurrence_id
        , p.src_name AS patient_site
        , p.gender_concept_id
        , p.race_concept_id
        , p.ethnicity_concept_id
        , p.year_of_birth
        , v.visit_start_date
        , YEAR(v.visit_start_date) - p.year_of_birth AS age_at_admission
        , ev.visit_ecmo_start_date
        , ev.visit_ecmo_end_date
        , ev.visit_ecmo_start_datetime
        , ev.visit_ecmo_end_datetime
        , DATE_DIFF('day', ev.visit_ecmo_start_date, ev.visit_ecmo_end_date) AS ecmo_duration_days
        , ROUND(
            (EPOCH(ev.visit_ecmo_end_datetime) - EPOCH(ev.visit_ecmo_start_datetime)) / 3600.0, 1
        ) AS ecmo_duration_hours
    FROM ecmo_visits ev
    INNER JOIN person_once p ON ev.person_id = p.person_id
    INNER JOIN visit_once v
        ON ev.person_id = v.person_id AND ev.visit_occurrence_id = v.visit_occurrence_id
    ORDER BY ev.person_id, ev.visit_occurrence_id
    """
    demographics = duckdb.sql(q).df()

    logger.info(f"Demographics attached to {len(demographics)} of {len(ecmo_visits)} visits")
    return demographics

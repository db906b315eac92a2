"""Death outcomes per ECMO visit.

Death is a person-level fact: every visit of a person receives the same death
record. The 30-day flag is evaluated per visit against that visit's ECMO
episode, window [visit_ecmo_start_date, visit_ecmo_end_date + window_days]
inclusive on both ends.
"""

import duckdb
import pandas as pd

from ecmocohort.utils.logging_config import get_logger

logger = get_logger('cohort.mortality')


def link_mortality(
    ecmo_visits: pd.DataFrame,
    death: pd.DataFrame,
    window_days: int = 30,
) -> pd.DataFrame:
    """
    Link death records to ECMO visits.

    Parameters
    ----------
    ecmo_visits : pd.DataFrame
        Columns [person_id, visit_occurrence_id, visit_ecmo_start_date,
        visit_ecmo_end_date]
    death : pd.DataFrame
        Columns [person_id, death_date]. If a person has several records the
        earliest death_date is used.
    window_days : int
        Days after the last ECMO procedure still inside the window (default 30)

    Returns
    -------
    pd.DataFrame
        Columns [person_id, visit_occurrence_id, died, death_date,
        died_within_30_days_of_ecmo]:

        - died: 1 if a death record exists, else 0
        - died_within_30_days_of_ecmo: 1 if death_date falls inside the
          window, 0 if a record exists but does not (including a record
          without a date), NULL if there is no death record
    """
    logger.info("Linking death records to ECMO visits...")

    q = f"""
    WITH death_once AS (
        SELECT person_id, MIN(CAST(death_date AS DATE)) AS death_date
        FROM death
        WHERE person_id IS NOT NULL
        GROUP BY person_id
    )
    SELECT
        ev.person_id
        , ev.visit_occurrence_id
        , CASE WHEN d.person_id IS NOT NULL THEN 1 ELSE 0 END AS died
        , d.death_date
        , CASE
            WHEN d.person_id IS NULL THEN NULL
            WHEN d.death_date BETWEEN CAST(ev.visit_ecmo_start_date AS DATE)
                AND CAST(ev.visit_ecmo_end_date AS DATE) + INTERVAL {int(window_days)} DAY THEN 1
            ELSE 0
        END AS died_within_30_days_of_ecmo
    FROM ecmo_visits ev
    LEFT JOIN death_once d ON ev.person_id = d.person_id
    ORDER BY ev.person_id, ev.visit_occurrence_id
    """
    mortality = duckdb.sql(q).df()
    mortality['died_within_30_days_of_ecmo'] = mortality['died_within_30_days_of_ecmo'].astype('Int64')

    logger.info(
        f"{int(mortality['died'].sum())} of {len(mortality)} visits linked to a death record; "
        f"{int(mortality['died_within_30_days_of_ecmo'].fillna(0).sum())} within {window_days} days of ECMO"
    )
    return mortality

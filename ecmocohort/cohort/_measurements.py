"""Per-visit measurement aggregation.

Each lab variable is the mean of its measurement events anywhere within the
visit, after silently discarding events whose value is NULL or not strictly
positive. Means are published rounded to the variable's precision.

Variables with fallback codes (FiO2) are resolved in two steps: the primary
codes are averaged first, and the fallback codes are averaged only for visits
where the primary codes yielded nothing. Any qualifying primary sample wins,
however few there are.
"""

from __future__ import annotations

from typing import Iterable, Sequence

import duckdb
import pandas as pd

from ._utils import VISIT_KEY, LabVariable, RatioVariable, _sql_codes
from ecmocohort.utils.logging_config import get_logger

logger = get_logger('cohort.measurements')


def _visit_keys(ecmo_visits: pd.DataFrame) -> pd.DataFrame:
    return ecmo_visits[VISIT_KEY].drop_duplicates().reset_index(drop=True)


def _qualifying_measurements(
    visit_keys: pd.DataFrame,
    measurement: pd.DataFrame,
    codes: Iterable[int],
) -> duckdb.DuckDBPyRelation:
    """Measurement events of the given codes on cohort visits with value > 0."""
    return duckdb.sql(f"""
        FROM measurement m
        INNER JOIN visit_keys k
            ON m.person_id = k.person_id AND m.visit_occurrence_id = k.visit_occurrence_id
        SELECT
            m.person_id
            , m.visit_occurrence_id
            , m.measurement_concept_id
            , CAST(m.value_as_number AS DOUBLE) AS value_as_number
        WHERE m.measurement_concept_id IN ({_sql_codes(codes)})
            AND m.value_as_number IS NOT NULL
            AND m.value_as_number > 0
    """)


def _mean_for_codes(
    visit_keys: pd.DataFrame,
    measurement: pd.DataFrame,
    codes: Iterable[int],
) -> pd.DataFrame:
    """Unrounded mean per visit; only visits with qualifying events get a row."""
    events = _qualifying_measurements(visit_keys, measurement, codes)
    return duckdb.sql("""
        FROM events
        SELECT person_id, visit_occurrence_id, AVG(value_as_number) AS mean_value
        GROUP BY person_id, visit_occurrence_id
    """).df()


def aggregate_with_fallback(
    ecmo_visits: pd.DataFrame,
    measurement: pd.DataFrame,
    primary_codes: Iterable[int],
    fallback_codes: Iterable[int],
) -> pd.DataFrame:
    """
    Mean of the primary codes, or of the fallback codes when the primary is missing.

    The fallback codes are only averaged for visits without any qualifying
    primary event; the two are never blended.

    Parameters
    ----------
    ecmo_visits : pd.DataFrame
        Frame containing the visit key [person_id, visit_occurrence_id]
    measurement : pd.DataFrame
        Columns [person_id, visit_occurrence_id, measurement_concept_id, value_as_number]
    primary_codes, fallback_codes : iterable of int
        Measurement concepts

    Returns
    -------
    pd.DataFrame
        One row per visit: [person_id, visit_occurrence_id, mean_value, source]
        where mean_value is the unrounded mean and source is 'primary',
        'fallback' or NULL when neither code set has data.
    """
    visit_keys = _visit_keys(ecmo_visits)
    fallback_codes = list(fallback_codes)

    # Step 1: primary aggregate
    primary_means = _mean_for_codes(visit_keys, measurement, primary_codes)

    # Step 2: fallback aggregate, only for visits the primary left empty
    missing_keys = duckdb.sql("""
        FROM visit_keys k
        ANTI JOIN primary_means p USING (person_id, visit_occurrence_id)
        SELECT k.person_id, k.visit_occurrence_id
    """).df()

    if fallback_codes and len(missing_keys) > 0:
        fallback_means = _mean_for_codes(missing_keys, measurement, fallback_codes)
    else:
        fallback_means = primary_means.iloc[0:0]

    logger.debug(
        f"Fallback resolution: {len(primary_means)} visits from primary codes, "
        f"{len(fallback_means)} visits from fallback codes"
    )

    return duckdb.sql("""
        WITH resolved AS (
            SELECT person_id, visit_occurrence_id, mean_value, 'primary' AS source FROM primary_means
            UNION ALL
            SELECT person_id, visit_occurrence_id, mean_value, 'fallback' AS source FROM fallback_means
        )
        SELECT k.person_id, k.visit_occurrence_id, r.mean_value, r.source
        FROM visit_keys k
        LEFT JOIN resolved r
            ON k.person_id = r.person_id AND k.visit_occurrence_id = r.visit_occurrence_id
        ORDER BY k.person_id, k.visit_occurrence_id
    """).df()


def aggregate_measurements(
    ecmo_visits: pd.DataFrame,
    measurement: pd.DataFrame,
    lab_variables: Sequence[LabVariable],
    ratio_variables: Sequence[RatioVariable] = (),
) -> pd.DataFrame:
    """
    Aggregate lab variables per ECMO visit.

    Parameters
    ----------
    ecmo_visits : pd.DataFrame
        Frame containing the visit key [person_id, visit_occurrence_id]
    measurement : pd.DataFrame
        Columns [person_id, visit_occurrence_id, measurement_concept_id, value_as_number]
    lab_variables : sequence of LabVariable
        Variables to aggregate; each becomes ``<name>_avg`` rounded to its
        ``decimals``.
    ratio_variables : sequence of RatioVariable
        Ratios of two unrounded variable means, NULL when the denominator is
        missing or zero.

    Returns
    -------
    pd.DataFrame
        One row per visit (visits without measurements included, all NULL),
        sorted by the visit key.
    """
    logger.info("Aggregating measurements per visit...")
    visit_keys = _visit_keys(ecmo_visits)

    plain_vars = [v for v in lab_variables if not v.has_fallback]
    fallback_vars = [v for v in lab_variables if v.has_fallback]

    all_codes = set()
    for var in plain_vars:
        all_codes.update(var.codes)
    events = _qualifying_measurements(visit_keys, measurement, all_codes)

    # Unrounded means of every single-code-set variable in one pass
    mean_exprs = ''.join(
        f"\n            , AVG(e.value_as_number) FILTER (WHERE e.measurement_concept_id IN ({_sql_codes(v.codes)})) AS {v.name}"
        for v in plain_vars
    )
    means = duckdb.sql(f"""
        FROM visit_keys k
        LEFT JOIN events e
            ON k.person_id = e.person_id AND k.visit_occurrence_id = e.visit_occurrence_id
        SELECT
            k.person_id
            , k.visit_occurrence_id{mean_exprs}
        GROUP BY k.person_id, k.visit_occurrence_id
    """).df()

    for var in fallback_vars:
        resolved = aggregate_with_fallback(visit_keys, measurement, var.codes, var.fallback_codes)
        resolved = resolved.rename(columns={'mean_value': var.name}).drop(columns=['source'])
        means = means.merge(resolved, on=VISIT_KEY, how='left')

    # Rounded outputs; ratios use the unrounded means
    select_exprs = [f"ROUND({v.name}, {v.decimals}) AS {v.column}" for v in lab_variables]
    for ratio in ratio_variables:
        select_exprs.append(
            f"CASE WHEN {ratio.denominator} IS NOT NULL AND {ratio.denominator} <> 0 "
            f"THEN ROUND({ratio.numerator} / {ratio.denominator}, {ratio.decimals}) END AS {ratio.column}"
        )
    labs = duckdb.sql(f"""
        SELECT person_id, visit_occurrence_id
            , {', '.join(select_exprs)}
        FROM means
        ORDER BY person_id, visit_occurrence_id
    """).df()

    with_any = labs[[v.column for v in lab_variables]].notna().any(axis=1).sum()
    logger.info(f"Aggregated {len(lab_variables)} lab variables; {with_any} of {len(labs)} visits have measurements")
    return labs


def compute_derived_vitals(labs: pd.DataFrame) -> pd.DataFrame:
    """
    Add mean arterial pressure and the PaO2/FiO2 ratio to aggregated labs.

    - ``map_avg = ROUND((2 * diastolic_bp_avg + systolic_bp_avg) / 3, 1)``
    - ``pao2_fio2_ratio = ROUND(pao2_avg / (fio2_avg / 100), 1)`` only when both
      are present and fio2_avg > 0, else NULL

    Both are computed from the published (rounded) averages. The unrounded
    values are kept as ``map_unrounded`` and ``pao2_fio2_ratio_unrounded`` for
    scoring; they are not part of the cohort table.
    """
    return duckdb.sql("""
        WITH derived AS (
            SELECT *
                , (2 * diastolic_bp_avg + systolic_bp_avg) / 3 AS map_unrounded
                , CASE
                    WHEN pao2_avg IS NOT NULL AND fio2_avg IS NOT NULL AND fio2_avg > 0
                    THEN pao2_avg / (fio2_avg / 100)
                    ELSE NULL
                END AS pao2_fio2_ratio_unrounded
            FROM labs
        )
        SELECT *
            , ROUND(map_unrounded, 1) AS map_avg
            , ROUND(pao2_fio2_ratio_unrounded, 1) AS pao2_fio2_ratio
        FROM derived
        ORDER BY person_id, visit_occurrence_id
    """).df()

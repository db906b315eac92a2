"""Binary medication and procedure exposure flags per visit.

An exposure class is an enumerated set of concept codes. A visit is flagged 1
for a class when any event of the visit carries one of those codes, at any
time during the visit (no windowing against the ECMO episode), and 0
otherwise, including visits with no events at all.
"""

from __future__ import annotations

from typing import Iterable, Mapping

import duckdb
import pandas as pd

from ._utils import ANY_VASOPRESSOR_CLASS, VISIT_KEY
from ecmocohort.utils.logging_config import get_logger

logger = get_logger('cohort.exposures')

FLAG_PREFIX = 'received_'
ANY_VASOPRESSOR_COLUMN = f'{FLAG_PREFIX}{ANY_VASOPRESSOR_CLASS}'


def _class_code_table(classes: Mapping[str, Iterable[int]]) -> pd.DataFrame:
    rows = [(name, int(code)) for name, codes in classes.items() for code in codes]
    return pd.DataFrame(rows, columns=['class_name', 'concept_id'])


def flag_exposures(
    ecmo_visits: pd.DataFrame,
    events: pd.DataFrame,
    code_column: str,
    classes: Mapping[str, Iterable[int]],
    prefix: str = FLAG_PREFIX,
) -> pd.DataFrame:
    """
    Existence flags of each code class per visit.

    Parameters
    ----------
    ecmo_visits : pd.DataFrame
        Frame containing the visit key [person_id, visit_occurrence_id]
    events : pd.DataFrame
        Event log with [person_id, visit_occurrence_id, <code_column>]
    code_column : str
        Concept column of ``events``, e.g. 'drug_concept_id'
    classes : mapping
        Class name -> concept codes. Flag columns follow its order.
    prefix : str
        Flag column prefix, default 'received_'

    Returns
    -------
    pd.DataFrame
        One row per visit: the visit key plus one 0/1 column
        ``<prefix><class>`` per class. Sorted by the visit key.
    """
    visit_keys = ecmo_visits[VISIT_KEY].drop_duplicates().reset_index(drop=True)
    if not classes:
        return visit_keys.sort_values(VISIT_KEY).reset_index(drop=True)

    class_codes = _class_code_table(classes)

    flag_exprs = ''.join(
        "\n        , MAX(CASE WHEN h.class_name = '{literal}' THEN 1 ELSE 0 END) AS \"{column}\"".format(
            literal=name.replace("'", "''"),
            column=f'{prefix}{name}',
        )
        for name in classes
    )
    q = f"""
    WITH hits AS (
        SELECT DISTINCT e.person_id, e.visit_occurrence_id, c.class_name
        FROM events e
        INNER JOIN class_codes c ON e.{code_column} = c.concept_id
        INNER JOIN visit_keys k
            ON e.person_id = k.person_id AND e.visit_occurrence_id = k.visit_occurrence_id
    )
    SELECT
        k.person_id
        , k.visit_occurrence_id{flag_exprs}
    FROM visit_keys k
    LEFT JOIN hits h
        ON k.person_id = h.person_id AND k.visit_occurrence_id = h.visit_occurrence_id
    GROUP BY k.person_id, k.visit_occurrence_id
    ORDER BY k.person_id, k.visit_occurrence_id
    """
    return duckdb.sql(q).df()


def summarize_drug_exposures(
    ecmo_visits: pd.DataFrame,
    drug_exposure: pd.DataFrame,
    drug_classes: Mapping[str, Iterable[int]],
    vasopressor_classes: Iterable[str],
) -> pd.DataFrame:
    """
    Drug class flags plus the composite ``received_any_vasopressor``.

    ``received_any_vasopressor`` is the logical OR of the vasopressor class
    flags and sits right after the last of them.
    """
    logger.info("Flagging drug exposures per visit...")
    flags = flag_exposures(ecmo_visits, drug_exposure, 'drug_concept_id', drug_classes)

    vaso_cols = [f'{FLAG_PREFIX}{name}' for name in vasopressor_classes]
    if vaso_cols:
        any_vaso = flags[vaso_cols].max(axis=1).astype('int64')
        position = max(flags.columns.get_loc(col) for col in vaso_cols) + 1
    else:
        any_vaso = pd.Series(0, index=flags.index, dtype='int64')
        position = len(flags.columns)
    flags.insert(position, ANY_VASOPRESSOR_COLUMN, any_vaso)

    logger.info(f"{int(flags[ANY_VASOPRESSOR_COLUMN].sum())} of {len(flags)} visits received a vasopressor")
    return flags


def summarize_procedure_exposures(
    ecmo_visits: pd.DataFrame,
    procedure_occurrence: pd.DataFrame,
    procedure_classes: Mapping[str, Iterable[int]],
) -> pd.DataFrame:
    """Procedure class flags (CRRT) with the same existence semantics as drugs."""
    logger.info("Flagging procedure exposures per visit...")
    return flag_exposures(ecmo_visits, procedure_occurrence, 'procedure_concept_id', procedure_classes)

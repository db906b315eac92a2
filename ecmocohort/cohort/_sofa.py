"""Modified SOFA scoring per visit.

Scoring (per-visit averages):
- Respiratory, PaO2/FiO2: >= 400: 0, >= 300: 1, >= 200: 2, >= 100: 3, else 4
- Coagulation, platelets (x10^3/uL): >= 150: 0, >= 100: 1, >= 50: 2, >= 20: 3, else 4
- Liver, bilirubin (mg/dL): < 1.2: 0, < 2.0: 1, < 6.0: 2, < 12.0: 3, else 4
- Cardiovascular, MAP (mmHg) and any vasopressor:
  MAP >= 70 without vasopressor: 0, MAP < 70 without: 1,
  MAP >= 70 with: 2, MAP < 70 with: 3, vasopressor without MAP: 2,
  neither: NULL
- Neurological: always NULL (no usable GCS data); kept for schema stability

PaO2/FiO2 and MAP are scored before rounding, so a MAP of 69.97 published
as 70.0 still counts as below 70. Platelets and bilirubin are scored on their
published averages.

The total treats a missing component as 0 and is never rescaled by the
number of available components, so totals of visits with different missing
data are not comparable. ``sofa_components_available`` records how many of
the four scored components were present.
"""

from __future__ import annotations

from typing import Any, Optional, Sequence, Tuple

import pandas as pd

from ._utils import VISIT_KEY
from ._exposures import ANY_VASOPRESSOR_COLUMN
from ecmocohort.utils.logging_config import get_logger

logger = get_logger('cohort.sofa')

NEG_INF = float('-inf')

# (inclusive lower bound, score), highest bound first
RESPIRATORY_LADDER: Tuple[Tuple[float, int], ...] = ((400, 0), (300, 1), (200, 2), (100, 3), (NEG_INF, 4))
COAGULATION_LADDER: Tuple[Tuple[float, int], ...] = ((150, 0), (100, 1), (50, 2), (20, 3), (NEG_INF, 4))
LIVER_LADDER: Tuple[Tuple[float, int], ...] = ((12.0, 4), (6.0, 3), (2.0, 2), (1.2, 1), (NEG_INF, 0))

MAP_THRESHOLD = 70

SCORED_COMPONENTS = [
    'sofa_respiratory_score',
    'sofa_coagulation_score',
    'sofa_liver_score',
    'sofa_cardiovascular_score',
]

SOFA_COLUMNS = [
    'sofa_respiratory_score',
    'sofa_coagulation_score',
    'sofa_liver_score',
    'sofa_neurological_score',
    'sofa_cardiovascular_score',
    'sofa_total_score',
    'sofa_components_available',
]


def score_from_ladder(value: Any, ladder: Sequence[Tuple[float, Any]]) -> Optional[Any]:
    """
    Return the outcome of the first ladder step whose lower bound ``value`` reaches.

    ``ladder`` is ordered from the highest lower bound down. NULL/NaN values,
    and values below every bound, give None.

    >>> score_from_ladder(400.0, RESPIRATORY_LADDER)
    0
    >>> score_from_ladder(99.9, COAGULATION_LADDER)
    2
    """
    if value is None or pd.isna(value):
        return None
    for lower_bound, outcome in ladder:
        if value >= lower_bound:
            return outcome
    return None


def score_cardiovascular(map_value: Any, any_vasopressor: Any) -> Optional[int]:
    """Cardiovascular subscore from MAP and the any-vasopressor flag."""
    has_map = map_value is not None and not pd.isna(map_value)
    on_vasopressor = any_vasopressor is not None and not pd.isna(any_vasopressor) and bool(any_vasopressor)

    if has_map:
        if map_value >= MAP_THRESHOLD:
            return 2 if on_vasopressor else 0
        return 3 if on_vasopressor else 1
    if on_vasopressor:
        return 2
    return None


def _ladder_column(series: pd.Series, ladder) -> pd.Series:
    return series.map(lambda v: score_from_ladder(v, ladder)).astype('Int64')


def compute_sofa_scores(labs: pd.DataFrame, drug_flags: pd.DataFrame) -> pd.DataFrame:
    """
    Compute the modified SOFA components, total and availability per visit.

    Parameters
    ----------
    labs : pd.DataFrame
        Output of ``compute_derived_vitals``: visit key plus
        pao2_fio2_ratio_unrounded, platelets_avg, bilirubin_avg and
        map_unrounded. Respiratory and cardiovascular scores use the unrounded
        derived values; platelets and bilirubin use the published averages.
    drug_flags : pd.DataFrame
        Output of ``summarize_drug_exposures``: visit key plus
        received_any_vasopressor. Visits missing here count as no vasopressor.

    Returns
    -------
    pd.DataFrame
        Visit key plus ``SOFA_COLUMNS``. Subscores are nullable Int64;
        sofa_total_score and sofa_components_available are never NULL.
    """
    logger.info("Scoring modified SOFA components...")

    scoring_inputs = ['pao2_fio2_ratio_unrounded', 'platelets_avg', 'bilirubin_avg', 'map_unrounded']
    scored = labs[VISIT_KEY + scoring_inputs].merge(
        drug_flags[VISIT_KEY + [ANY_VASOPRESSOR_COLUMN]], on=VISIT_KEY, how='left'
    )
    scored[ANY_VASOPRESSOR_COLUMN] = scored[ANY_VASOPRESSOR_COLUMN].fillna(0)

    scores = scored[VISIT_KEY].copy()
    scores['sofa_respiratory_score'] = _ladder_column(scored['pao2_fio2_ratio_unrounded'], RESPIRATORY_LADDER)
    scores['sofa_coagulation_score'] = _ladder_column(scored['platelets_avg'], COAGULATION_LADDER)
    scores['sofa_liver_score'] = _ladder_column(scored['bilirubin_avg'], LIVER_LADDER)
    scores['sofa_neurological_score'] = pd.Series(pd.NA, index=scored.index, dtype='Int64')
    scores['sofa_cardiovascular_score'] = pd.Series(
        [
            score_cardiovascular(map_value, vaso)
            for map_value, vaso in zip(scored['map_unrounded'], scored[ANY_VASOPRESSOR_COLUMN])
        ],
        index=scored.index,
        dtype='Int64',
    )

    components = scores[SCORED_COMPONENTS]
    scores['sofa_total_score'] = components.fillna(0).sum(axis=1).astype('int64')
    scores['sofa_components_available'] = components.notna().sum(axis=1).astype('int64')

    complete = int((scores['sofa_components_available'] == len(SCORED_COMPONENTS)).sum())
    logger.info(f"SOFA scored for {len(scores)} visits; {complete} have all {len(SCORED_COMPONENTS)} components")

    return scores.sort_values(VISIT_KEY).reset_index(drop=True)

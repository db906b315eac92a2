"""Shared configuration for the ECMO cohort pipeline.

This module contains:
- LabVariable: one aggregated measurement column and its concept codes
- CohortConfig: every code set, label table and window used by the stages
- Source table schemas and the visit key shared by every stage
"""

from dataclasses import dataclass, field, fields
from typing import Any, Dict, Mapping, Optional, Tuple

VISIT_KEY = ['person_id', 'visit_occurrence_id']

# Lab variables the SOFA components and derived vitals read
SOFA_INPUT_VARIABLES = ('pao2', 'fio2', 'platelets', 'bilirubin', 'systolic_bp', 'diastolic_bp')

# Composite flag name; cannot be used as an exposure class
ANY_VASOPRESSOR_CLASS = 'any_vasopressor'

UNKNOWN_LABEL = 'Other/Unknown'
CANNOT_CALCULATE_LABEL = 'Cannot Calculate'

# Required (and optional) columns per OMOP source table
SOURCE_TABLE_COLUMNS: Dict[str, Dict[str, Tuple[str, ...]]] = {
    'condition_occurrence': {
        'required': ('person_id', 'condition_concept_id'),
        'optional': ('visit_occurrence_id', 'condition_start_date'),
    },
    'procedure_occurrence': {
        'required': ('person_id', 'visit_occurrence_id', 'procedure_concept_id', 'procedure_date'),
        'optional': ('procedure_datetime',),
    },
    'person': {
        'required': ('person_id', 'gender_concept_id', 'race_concept_id',
                     'ethnicity_concept_id', 'year_of_birth', 'src_name'),
        'optional': (),
    },
    'visit_occurrence': {
        'required': ('person_id', 'visit_occurrence_id', 'visit_start_date'),
        'optional': (),
    },
    'measurement': {
        'required': ('person_id', 'visit_occurrence_id', 'measurement_concept_id', 'value_as_number'),
        'optional': ('measurement_date',),
    },
    'drug_exposure': {
        'required': ('person_id', 'visit_occurrence_id', 'drug_concept_id'),
        'optional': ('drug_exposure_start_date',),
    },
    'death': {
        'required': ('person_id', 'death_date'),
        'optional': (),
    },
}


@dataclass(frozen=True)
class LabVariable:
    """
    One aggregated measurement column.

    Attributes
    ----------
    name : str
        Variable name; the output column is ``<name>_avg``.
    codes : tuple of int
        Measurement concept codes averaged together.
    decimals : int
        Rounding precision of the published mean.
    fallback_codes : tuple of int
        Codes averaged only when ``codes`` yield no qualifying value for a visit.
    """

    name: str
    codes: Tuple[int, ...]
    decimals: int
    fallback_codes: Tuple[int, ...] = ()

    @property
    def column(self) -> str:
        return f'{self.name}_avg'

    @property
    def has_fallback(self) -> bool:
        return len(self.fallback_codes) > 0


@dataclass(frozen=True)
class RatioVariable:
    """Ratio of two unrounded variable means, e.g. neutrophil/lymphocyte."""

    column: str
    numerator: str
    denominator: str
    decimals: int


DEFAULT_LAB_VARIABLES: Tuple[LabVariable, ...] = (
    LabVariable('bmi', (3038553,), 1),
    LabVariable('wbc', (3010813,), 1),
    LabVariable('lactate', (3008037,), 2),
    LabVariable('creatinine', (3016723,), 2),
    LabVariable('bilirubin', (3024128,), 2),
    LabVariable('ferritin', (3001122,), 1),
    LabVariable('fibrin', (3051714,), 2),
    LabVariable('neutrophil_count', (3017732,), 1),
    LabVariable('lymphocyte_count', (3019198,), 1),
    LabVariable('crp', (3020460,), 1),
    LabVariable('pao2', (3027801,), 1),
    LabVariable('fio2', (3026238,), 1, fallback_codes=(4353936,)),
    LabVariable('platelets', (3007461,), 0),
    LabVariable('systolic_bp', (3004249,), 1),
    LabVariable('diastolic_bp', (3012888,), 1),
)

DEFAULT_RATIO_VARIABLES: Tuple[RatioVariable, ...] = (
    RatioVariable('neutrophil_lymphocyte_ratio', 'neutrophil_count', 'lymphocyte_count', 2),
)

DEFAULT_DRUG_CLASSES: Dict[str, Tuple[int, ...]] = {
    # Vasopressors
    'norepinephrine': (1321341, 740244, 742155, 1321363, 19040856, 740243),
    'vasopressin': (35202042, 1507835, 1507838, 35202043, 1759255, 44132646, 35201749),
    'epinephrine': (1343916, 19076899, 1344245, 46275916),
    'angiotensin_ii': (963889, 963897),
    # Paralytics
    'succinylcholine': (45776038, 45776042, 836208, 40079815, 779334, 780241, 45776040),
    'rocuronium': (42707627, 42708029, 19003953),
    'vecuronium': (40165389, 40165390, 19012598, 37498072),
    'cisatracurium': (19015726, 19016315, 19016316, 40029077, 19044710, 35605393),
    # Steroids
    'hydrocortisone': (975505, 35604741, 19006967, 975168, 975125),
    'methylprednisolone': (35606533, 1506430, 19080181, 1506270, 42901997,
                           35606542, 35606538, 19034806, 1506426, 1506315),
    'dexamethasone': (40241504, 19076145, 40028260, 1719012, 1518292,
                      1518608, 1518259, 1518293, 1518258, 1518254),
    # Other critical care medications
    'heparin': (43011850,),
    'fentanyl': (1154029,),
    'propofol': (753626,),
    'enoxaparin': (40160973,),
}

DEFAULT_VASOPRESSOR_CLASSES: Tuple[str, ...] = ('norepinephrine', 'vasopressin', 'epinephrine', 'angiotensin_ii')

DEFAULT_PROCEDURE_CLASSES: Dict[str, Tuple[int, ...]] = {
    'crrt': (37018292,),
}

DEFAULT_SITE_LABELS: Dict[str, str] = {
    'SITE-1': 'Site 1 (9 patients)',
    'SITE-2': 'Site 2 (31 patients)',
    'SITE-7': 'Site 7 (131 patients)',
}

DEFAULT_GENDER_LABELS: Dict[int, str] = {
    8507: 'Male',
    8532: 'Female',
}

DEFAULT_RACE_LABELS: Dict[int, str] = {
    8527: 'White',
    8516: 'Black or African American',
    38003599: 'African American',
    8515: 'Asian',
    8657: 'American Indian or Alaska Native',
    0: 'Not Specified',
}

DEFAULT_ETHNICITY_LABELS: Dict[int, str] = {
    38003564: 'Not Hispanic or Latino',
    38003563: 'Hispanic or Latino',
    0: 'Not Specified',
}

# Bucket ladders: (inclusive lower bound, label), highest bound first
DEFAULT_AGE_BUCKETS: Tuple[Tuple[float, str], ...] = (
    (70, '70 and over'),
    (50, '50-69'),
    (30, '30-49'),
    (float('-inf'), 'Under 30'),
)

DEFAULT_DURATION_BUCKETS: Tuple[Tuple[float, str], ...] = (
    (31, 'Long (>30 days)'),
    (8, 'Medium (8-30 days)'),
    (1, 'Short (1-7 days)'),
    (float('-inf'), 'Same day (0 days)'),
)

DEFAULT_SEVERITY_BUCKETS: Tuple[Tuple[float, str], ...] = (
    (13, 'Very High (13-16)'),
    (10, 'High (10-12)'),
    (7, 'Moderate (7-9)'),
    (float('-inf'), 'Low (0-6)'),
)


def _as_codes(values) -> Tuple[int, ...]:
    return tuple(int(v) for v in values)


def _as_concept_labels(mapping: Mapping) -> Dict[int, str]:
    # JSON object keys are always strings
    return {int(k): str(v) for k, v in mapping.items()}


def _as_ladder(pairs) -> Tuple[Tuple[float, str], ...]:
    ladder = []
    for bound, label in pairs:
        bound = float('-inf') if bound is None else float(bound)
        ladder.append((bound, str(label)))
    return tuple(sorted(ladder, key=lambda pair: pair[0], reverse=True))


@dataclass
class CohortConfig:
    """
    Code sets and lookup tables driving the ECMO cohort pipeline.

    Every attribute has a default matching the VV-ECMO acute-on-chronic
    respiratory failure cohort; any of them may be overridden from a config
    file through :meth:`from_dict`.

    Attributes
    ----------
    diagnosis_codes : tuple of int
        Qualifying condition concepts (acute-on-chronic respiratory failure).
    ecmo_procedure_codes : tuple of int
        Qualifying VV-ECMO procedure concepts.
    lab_variables : tuple of LabVariable
        Measurement variables to aggregate per visit.
    ratio_variables : tuple of RatioVariable
        Ratios computed from unrounded variable means.
    drug_classes : dict
        Exposure class name -> drug concept codes, one ``received_<class>`` flag each.
    vasopressor_classes : tuple of str
        Classes OR-ed into ``received_any_vasopressor``.
    procedure_classes : dict
        Procedure class name -> procedure concept codes (CRRT).
    mortality_window_days : int
        Days after the last ECMO procedure still counted as ECMO-related death.
    """

    diagnosis_codes: Tuple[int, ...] = (37016114, 312940, 36716978)
    ecmo_procedure_codes: Tuple[int, ...] = (46257510, 46257543, 1531630)

    lab_variables: Tuple[LabVariable, ...] = DEFAULT_LAB_VARIABLES
    ratio_variables: Tuple[RatioVariable, ...] = DEFAULT_RATIO_VARIABLES

    drug_classes: Dict[str, Tuple[int, ...]] = field(default_factory=lambda: dict(DEFAULT_DRUG_CLASSES))
    vasopressor_classes: Tuple[str, ...] = DEFAULT_VASOPRESSOR_CLASSES
    procedure_classes: Dict[str, Tuple[int, ...]] = field(default_factory=lambda: dict(DEFAULT_PROCEDURE_CLASSES))

    site_labels: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_SITE_LABELS))
    gender_labels: Dict[int, str] = field(default_factory=lambda: dict(DEFAULT_GENDER_LABELS))
    race_labels: Dict[int, str] = field(default_factory=lambda: dict(DEFAULT_RACE_LABELS))
    ethnicity_labels: Dict[int, str] = field(default_factory=lambda: dict(DEFAULT_ETHNICITY_LABELS))
    gender_fallback: str = 'Unknown'

    age_buckets: Tuple[Tuple[float, str], ...] = DEFAULT_AGE_BUCKETS
    duration_buckets: Tuple[Tuple[float, str], ...] = DEFAULT_DURATION_BUCKETS
    severity_buckets: Tuple[Tuple[float, str], ...] = DEFAULT_SEVERITY_BUCKETS

    mortality_window_days: int = 30

    def __post_init__(self):
        unknown = [c for c in self.vasopressor_classes if c not in self.drug_classes]
        if unknown:
            raise ValueError(f"vasopressor_classes not defined in drug_classes: {unknown}")
        shared = sorted(set(self.drug_classes) & set(self.procedure_classes))
        if shared:
            raise ValueError(f"Class names used for both drugs and procedures: {shared}")
        if ANY_VASOPRESSOR_CLASS in self.drug_classes or ANY_VASOPRESSOR_CLASS in self.procedure_classes:
            raise ValueError(f"'{ANY_VASOPRESSOR_CLASS}' is reserved for the composite vasopressor flag")
        if self.mortality_window_days < 0:
            raise ValueError("mortality_window_days must be non-negative")
        fallback_vars = [v.name for v in self.lab_variables if v.has_fallback]
        names = [v.name for v in self.lab_variables]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate lab variable names: {names}")
        missing_inputs = [name for name in SOFA_INPUT_VARIABLES if name not in names]
        if missing_inputs:
            raise ValueError(f"lab_variables must define the SOFA inputs: {missing_inputs}")
        for ratio in self.ratio_variables:
            for part in (ratio.numerator, ratio.denominator):
                if part not in names:
                    raise ValueError(f"Ratio '{ratio.column}' references unknown lab variable '{part}'")
                if part in fallback_vars:
                    raise ValueError(f"Ratio '{ratio.column}' cannot use fallback variable '{part}'")

    @property
    def lab_columns(self) -> Tuple[str, ...]:
        return tuple(v.column for v in self.lab_variables)

    @classmethod
    def from_dict(cls, overrides: Optional[Mapping[str, Any]] = None) -> 'CohortConfig':
        """
        Build a config from a (JSON/YAML-parsed) mapping of overrides.

        Keys not given keep their defaults. Unknown keys raise ValueError.
        """
        overrides = dict(overrides or {})
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(overrides) - known)
        if unknown:
            raise ValueError(f"Unknown cohort config keys: {unknown}")

        kwargs: Dict[str, Any] = {}
        for key, value in overrides.items():
            if key in ('diagnosis_codes', 'ecmo_procedure_codes'):
                kwargs[key] = _as_codes(value)
            elif key == 'lab_variables':
                kwargs[key] = tuple(
                    LabVariable(
                        name=item['name'],
                        codes=_as_codes(item['codes']),
                        decimals=int(item['decimals']),
                        fallback_codes=_as_codes(item.get('fallback_codes', ())),
                    )
                    for item in value
                )
            elif key == 'ratio_variables':
                kwargs[key] = tuple(
                    RatioVariable(item['column'], item['numerator'], item['denominator'], int(item['decimals']))
                    for item in value
                )
            elif key in ('drug_classes', 'procedure_classes'):
                kwargs[key] = {str(name): _as_codes(codes) for name, codes in value.items()}
            elif key == 'vasopressor_classes':
                kwargs[key] = tuple(str(name) for name in value)
            elif key == 'site_labels':
                kwargs[key] = {str(k): str(v) for k, v in value.items()}
            elif key in ('gender_labels', 'race_labels', 'ethnicity_labels'):
                kwargs[key] = _as_concept_labels(value)
            elif key in ('age_buckets', 'duration_buckets', 'severity_buckets'):
                kwargs[key] = _as_ladder(value)
            elif key == 'mortality_window_days':
                kwargs[key] = int(value)
            else:
                kwargs[key] = value

        return cls(**kwargs)


def _sql_codes(codes) -> str:
    """Render concept codes for a SQL ``IN (...)`` list; empty sets match nothing."""
    codes = sorted({int(c) for c in codes})
    if not codes:
        return 'NULL'
    return ', '.join(str(c) for c in codes)

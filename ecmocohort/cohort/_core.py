"""Core orchestration for the ECMO cohort pipeline.

This module contains the main public functions:
- build_ecmo_cohort: run every stage over in-memory OMOP tables
- load_source_tables: read the OMOP tables a run needs from disk
- run_ecmo_cohort: load, build and write the cohort table from a run config
"""

from __future__ import annotations

import os
from typing import Dict, Optional, Tuple, Union

import pandas as pd

from ._utils import SOURCE_TABLE_COLUMNS, CohortConfig
from ._selection import select_cohort_persons
from ._visits import resolve_ecmo_visits
from ._demographics import join_demographics
from ._measurements import aggregate_measurements, compute_derived_vitals
from ._exposures import summarize_drug_exposures, summarize_procedure_exposures
from ._sofa import compute_sofa_scores
from ._mortality import link_mortality
from ._output import assemble_output
from ecmocohort.utils.config import get_config_or_params
from ecmocohort.utils.io import check_required_columns, load_data, write_output
from ecmocohort.utils.logging_config import get_logger

logger = get_logger('cohort.core')

DEFAULT_OUTPUT_NAME = 'ecmo_cohort.csv'


def _concept_filters(cfg: CohortConfig) -> Dict[str, Dict[str, list]]:
    """Concept-code filters pushed down when loading each source table."""
    procedure_codes = set(cfg.ecmo_procedure_codes)
    for codes in cfg.procedure_classes.values():
        procedure_codes.update(codes)

    measurement_codes = set()
    for var in cfg.lab_variables:
        measurement_codes.update(var.codes)
        measurement_codes.update(var.fallback_codes)

    drug_codes = set()
    for codes in cfg.drug_classes.values():
        drug_codes.update(codes)

    return {
        'condition_occurrence': {'condition_concept_id': sorted(cfg.diagnosis_codes)},
        'procedure_occurrence': {'procedure_concept_id': sorted(procedure_codes)},
        'measurement': {'measurement_concept_id': sorted(measurement_codes)},
        'drug_exposure': {'drug_concept_id': sorted(drug_codes)},
    }


def load_source_tables(
    data_directory: str,
    filetype: str,
    cohort_config: Optional[CohortConfig] = None,
) -> Dict[str, pd.DataFrame]:
    """
    Load the seven OMOP source tables, filtered to the configured concepts.

    Parameters
    ----------
    data_directory : str
        Directory holding ``<table>.<filetype>`` files
    filetype : str
        'csv' or 'parquet'
    cohort_config : CohortConfig, optional
        Code sets used to filter the event tables

    Returns
    -------
    dict
        Table name -> DataFrame
    """
    cfg = cohort_config or CohortConfig()
    filters = _concept_filters(cfg)

    logger.info(f"Loading OMOP source tables from {data_directory} ({filetype})...")
    tables = {}
    for table_name, table_columns in SOURCE_TABLE_COLUMNS.items():
        tables[table_name] = load_data(
            table_name,
            data_directory,
            filetype,
            columns=list(table_columns['required']),
            optional_columns=list(table_columns['optional']),
            filters=filters.get(table_name),
        )
        logger.info(f"{table_name}: {len(tables[table_name])} rows")
    return tables


def build_ecmo_cohort(
    condition_occurrence: pd.DataFrame,
    procedure_occurrence: pd.DataFrame,
    person: pd.DataFrame,
    visit_occurrence: pd.DataFrame,
    measurement: pd.DataFrame,
    drug_exposure: pd.DataFrame,
    death: pd.DataFrame,
    cohort_config: Optional[CohortConfig] = None,
    dev: bool = False,
) -> Union[pd.DataFrame, Tuple[pd.DataFrame, Dict[str, pd.DataFrame]]]:
    """
    Build the ECMO cohort table, one row per patient-visit.

    Stages, in order: cohort persons, ECMO visits, demographics, measurement
    aggregation and derived vitals, exposure flags, SOFA scoring, mortality,
    final assembly. Every stage is a pure function of the source tables, so
    re-running on unchanged inputs gives an identical table.

    Parameters
    ----------
    condition_occurrence, procedure_occurrence, person, visit_occurrence,
    measurement, drug_exposure, death : pd.DataFrame
        OMOP source tables (see ``SOURCE_TABLE_COLUMNS`` for the columns used)
    cohort_config : CohortConfig, optional
        Code sets and label tables. Defaults to ``CohortConfig()``.
    dev : bool, default False
        If True, return (result, intermediates) where intermediates holds
        every stage output keyed by stage name.

    Returns
    -------
    pd.DataFrame | tuple
        The cohort table sorted by (person_id, visit_occurrence_id), or
        (table, intermediates) when dev=True.

    Raises
    ------
    ValueError
        If a source table lacks a required column.
    """
    cfg = cohort_config or CohortConfig()
    sources = {
        'condition_occurrence': condition_occurrence,
        'procedure_occurrence': procedure_occurrence,
        'person': person,
        'visit_occurrence': visit_occurrence,
        'measurement': measurement,
        'drug_exposure': drug_exposure,
        'death': death,
    }
    for table_name, df in sources.items():
        check_required_columns(df, SOURCE_TABLE_COLUMNS[table_name]['required'], table_name)

    logger.info("Starting ECMO cohort build...")

    cohort_persons = select_cohort_persons(
        condition_occurrence, procedure_occurrence, cfg.diagnosis_codes, cfg.ecmo_procedure_codes
    )
    if len(cohort_persons) == 0:
        logger.warning("No persons matched both the diagnosis and ECMO procedure criteria")

    ecmo_visits = resolve_ecmo_visits(cohort_persons, procedure_occurrence, cfg.ecmo_procedure_codes)
    demographics = join_demographics(ecmo_visits, person, visit_occurrence)

    labs = aggregate_measurements(ecmo_visits, measurement, cfg.lab_variables, cfg.ratio_variables)
    labs = compute_derived_vitals(labs)

    drug_flags = summarize_drug_exposures(
        ecmo_visits, drug_exposure, cfg.drug_classes, cfg.vasopressor_classes
    )
    procedure_flags = summarize_procedure_exposures(ecmo_visits, procedure_occurrence, cfg.procedure_classes)

    sofa = compute_sofa_scores(labs, drug_flags)
    mortality = link_mortality(ecmo_visits, death, window_days=cfg.mortality_window_days)

    result = assemble_output(demographics, labs, sofa, drug_flags, procedure_flags, mortality, cfg)
    logger.info(
        f"ECMO cohort complete: {len(cohort_persons)} cohort persons, "
        f"{result['person_id'].nunique()} persons with {len(result)} ECMO visits in output"
    )

    if dev:
        return result, {
            'cohort_persons': cohort_persons,
            'ecmo_visits': ecmo_visits,
            'demographics': demographics,
            'labs': labs,
            'drug_flags': drug_flags,
            'procedure_flags': procedure_flags,
            'sofa': sofa,
            'mortality': mortality,
        }
    return result


def run_ecmo_cohort(
    config_path: Optional[str] = None,
    data_directory: Optional[str] = None,
    filetype: Optional[str] = None,
    output_directory: Optional[str] = None,
    output_path: Optional[str] = None,
) -> pd.DataFrame:
    """
    Load sources, build the cohort table and write it out.

    Parameters follow ``get_config_or_params``: direct parameters override
    the config file. The optional ``cohort`` block of the config file
    overrides ``CohortConfig`` defaults.

    The table is written to ``output_path`` when given, else to
    ``<output_directory>/ecmo_cohort.csv`` when an output directory is
    configured; otherwise it is only returned.
    """
    run_config = get_config_or_params(
        config_path=config_path,
        data_directory=data_directory,
        filetype=filetype,
        output_directory=output_directory,
    )
    cfg = CohortConfig.from_dict(run_config.get('cohort'))

    tables = load_source_tables(run_config['data_directory'], run_config['filetype'], cfg)
    result = build_ecmo_cohort(cohort_config=cfg, **tables)

    if output_path is None and run_config.get('output_directory'):
        output_path = os.path.join(run_config['output_directory'], DEFAULT_OUTPUT_NAME)
    if output_path is not None:
        write_output(result, output_path)

    return result

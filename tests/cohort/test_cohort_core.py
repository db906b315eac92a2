"""
End-to-end tests of the ECMO cohort pipeline on the CSV dataset in fixtures/omop.

Dataset:
- Person 1: qualifying diagnosis, ECMO on visits 101 (4 days, full labs) and
  102 (same day, FiO2 from the fallback code, propofol); dies 30 days after
  the end of the visit 101 episode
- Person 2: qualifying diagnosis, ECMO event without a visit id
- Person 3: diagnosis only
- Person 4: ECMO only
- Person 5: diagnosis years before ECMO on visit 501 (19 days), no labs,
  norepinephrine and CRRT, unmapped site and race, no death record
"""

import os

import pytest
import pandas as pd
import yaml

from ecmocohort.cohort import (
    CohortConfig,
    build_ecmo_cohort,
    load_source_tables,
    output_columns,
    run_ecmo_cohort,
)


@pytest.fixture
def tables(omop_dir):
    return load_source_tables(omop_dir, 'csv')


@pytest.fixture
def built(tables):
    return build_ecmo_cohort(**tables, dev=True)


@pytest.fixture
def result(built):
    return built[0].set_index(['person_id', 'visit_occurrence_id'])


class TestLoadSourceTables:

    def test_all_tables_loaded(self, tables):
        assert set(tables) == {
            'condition_occurrence', 'procedure_occurrence', 'person', 'visit_occurrence',
            'measurement', 'drug_exposure', 'death',
        }

    def test_event_tables_filtered_to_configured_codes(self, tables):
        assert 4000000 not in set(tables['procedure_occurrence']['procedure_concept_id'])
        assert 3000000 not in set(tables['measurement']['measurement_concept_id'])
        assert 1111111 not in set(tables['drug_exposure']['drug_concept_id'])
        assert 4000001 not in set(tables['condition_occurrence']['condition_concept_id'])

    def test_id_columns_are_nullable_integers(self, tables):
        visit_ids = tables['procedure_occurrence']['visit_occurrence_id']
        assert str(visit_ids.dtype) == 'Int64'
        assert visit_ids.isna().sum() == 1


class TestBuildEcmoCohort:

    def test_rows_and_key(self, result):
        assert list(result.index) == [(1, 101), (1, 102), (5, 501)]

    def test_column_order(self, built):
        assert list(built[0].columns) == output_columns(CohortConfig())

    def test_person_count_exceeds_output_persons(self, built):
        result, intermediates = built
        assert intermediates['cohort_persons']['person_id'].tolist() == [1, 2, 5]
        assert result['person_id'].nunique() == 2

    def test_intermediates_returned_in_dev_mode(self, built):
        _, intermediates = built
        assert set(intermediates) == {
            'cohort_persons', 'ecmo_visits', 'demographics', 'labs',
            'drug_flags', 'procedure_flags', 'sofa', 'mortality',
        }

    def test_demographics_and_timing(self, result):
        row = result.loc[(1, 101)]
        assert row['site_description'] == 'Site 7 (131 patients)'
        assert row['gender'] == 'Male'
        assert row['race'] == 'White'
        assert row['ethnicity'] == 'Not Hispanic or Latino'
        assert row['age_at_admission'] == 52
        assert row['age_category'] == '50-69'
        assert row['visit_ecmo_start_date'] == pd.Timestamp('2023-01-01')
        assert row['visit_ecmo_end_date'] == pd.Timestamp('2023-01-05')
        assert row['ecmo_duration_days'] == 4
        assert row['ecmo_duration_hours'] == pytest.approx(108.0)
        assert row['ecmo_duration_category'] == 'Short (1-7 days)'

        assert result.loc[(1, 102), 'age_at_admission'] == 53

    def test_labs_and_derived_vitals(self, result):
        row = result.loc[(1, 101)]
        assert row['creatinine_avg'] == pytest.approx(1.5)
        assert row['bilirubin_avg'] == pytest.approx(2.0)
        assert row['fio2_avg'] == pytest.approx(75.0)
        assert row['neutrophil_lymphocyte_ratio'] == pytest.approx(2.5)
        assert pd.isna(row['lactate_avg'])
        assert row['map_avg'] == pytest.approx(80.0)
        assert row['pao2_fio2_ratio'] == pytest.approx(400.0)

        assert result.loc[(1, 102), 'fio2_avg'] == pytest.approx(50.0)
        assert result.loc[(1, 102), 'pao2_fio2_ratio'] == pytest.approx(200.0)

    def test_sofa(self, result):
        full = result.loc[(1, 101)]
        assert full['sofa_respiratory_score'] == 0
        assert full['sofa_coagulation_score'] == 1
        assert full['sofa_liver_score'] == 2
        assert full['sofa_cardiovascular_score'] == 0
        assert full['sofa_total_score'] == 3
        assert full['sofa_components_available'] == 4
        assert full['sofa_severity_category'] == 'Low (0-6)'

        vaso_only = result.loc[(5, 501)]
        assert vaso_only['sofa_cardiovascular_score'] == 2
        assert vaso_only['sofa_total_score'] == 2
        assert vaso_only['sofa_components_available'] == 1

    def test_exposures(self, result):
        assert result.loc[(1, 101), 'received_propofol'] == 0
        assert result.loc[(1, 102), 'received_propofol'] == 1
        assert result.loc[(5, 501), 'received_norepinephrine'] == 1
        assert result.loc[(5, 501), 'received_any_vasopressor'] == 1
        # Heparin event has no visit id
        assert result.loc[(5, 501), 'received_heparin'] == 0
        assert result.loc[(5, 501), 'received_crrt'] == 1
        assert result.loc[(1, 101), 'received_crrt'] == 0

    def test_unmapped_labels(self, result):
        row = result.loc[(5, 501)]
        assert row['site_description'] == 'SITE-9'
        assert row['race'] == 'Other/Unknown'
        assert row['ethnicity'] == 'Not Specified'
        assert row['age_category'] == 'Under 30'
        assert row['ecmo_duration_days'] == 19
        assert row['ecmo_duration_hours'] == pytest.approx(456.0)

    def test_mortality(self, result):
        assert result.loc[(1, 101), 'died'] == 1
        assert result.loc[(1, 101), 'died_within_30_days_of_ecmo'] == 1
        assert result.loc[(1, 102), 'died'] == 1
        assert result.loc[(1, 102), 'died_within_30_days_of_ecmo'] == 0
        assert result.loc[(5, 501), 'died'] == 0
        assert pd.isna(result.loc[(5, 501), 'died_within_30_days_of_ecmo'])

    def test_missing_required_column(self, tables):
        tables['person'] = tables['person'].drop(columns=['year_of_birth'])
        with pytest.raises(ValueError, match='year_of_birth'):
            build_ecmo_cohort(**tables)


class TestRunEcmoCohort:

    def test_rerun_is_identical(self, omop_dir, tmp_path):
        first = tmp_path / 'first.csv'
        second = tmp_path / 'second.csv'
        run_ecmo_cohort(data_directory=omop_dir, filetype='csv', output_path=str(first))
        run_ecmo_cohort(data_directory=omop_dir, filetype='csv', output_path=str(second))
        assert first.read_bytes() == second.read_bytes()

    def test_config_file_with_cohort_overrides(self, omop_dir, tmp_path):
        config_path = tmp_path / 'ecmocohort_config.yaml'
        config_path.write_text(yaml.safe_dump({
            'data_directory': omop_dir,
            'filetype': 'csv',
            'output_directory': str(tmp_path / 'out'),
            'cohort': {'mortality_window_days': 0},
        }))

        result = run_ecmo_cohort(config_path=str(config_path))

        assert os.path.exists(tmp_path / 'out' / 'ecmo_cohort.csv')
        row = result.set_index(['person_id', 'visit_occurrence_id']).loc[(1, 101)]
        assert row['died_within_30_days_of_ecmo'] == 0

    def test_no_output_location_only_returns(self, omop_dir, tmp_path):
        result = run_ecmo_cohort(data_directory=omop_dir, filetype='csv')
        assert len(result) == 3

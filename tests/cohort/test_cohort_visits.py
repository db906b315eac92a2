"""
Tests for cohort selection, ECMO visit resolution and demographics.

Covers:
- Person-level selection: diagnosis and ECMO procedure need not share a visit
- Procedure events without a visit identifier are dropped
- Episode bounds from the earliest/latest qualifying procedure of a visit
- Calendar-year age and ECMO duration at the visit level
"""

import pytest
import pandas as pd

from ecmocohort.cohort._selection import select_cohort_persons
from ecmocohort.cohort._visits import resolve_ecmo_visits
from ecmocohort.cohort._demographics import join_demographics

DIAGNOSIS_CODES = (37016114, 312940, 36716978)
ECMO_CODES = (46257510, 46257543, 1531630)


@pytest.fixture
def condition_occurrence():
    return pd.DataFrame({
        'person_id': [1, 2, 3, 4, 6],
        'condition_concept_id': [37016114, 312940, 999, 36716978, 36716978],
    })


@pytest.fixture
def procedure_occurrence():
    """
    Person 1: two ECMO events on visit 10, a non-ECMO event on visit 11
    Person 2: ECMO event without a visit identifier
    Person 3: ECMO but non-qualifying diagnosis
    Person 5: ECMO but no diagnosis
    Person 6: ECMO on two visits, one with a timestamp
    """
    return pd.DataFrame({
        'person_id': pd.array([1, 1, 1, 2, 3, 5, 6, 6, 6], dtype='Int64'),
        'visit_occurrence_id': pd.array([10, 10, 11, None, 30, 50, 60, 60, 61], dtype='Int64'),
        'procedure_concept_id': [46257510, 46257543, 999, 46257543, 46257510, 1531630,
                                 1531630, 1531630, 46257510],
        'procedure_date': pd.to_datetime([
            '2023-01-04', '2023-01-01', '2023-01-02', '2023-02-01', '2023-03-01', '2023-04-01',
            '2023-05-01', '2023-05-03', '2023-07-01',
        ]),
        'procedure_datetime': pd.to_datetime([
            None, None, None, None, None, None,
            '2023-05-01 06:00:00', '2023-05-03 18:30:00', None,
        ]),
    })


class TestSelectCohortPersons:
    """Person-level inclusion from the two event logs."""

    def test_requires_both_diagnosis_and_procedure(self, condition_occurrence, procedure_occurrence):
        persons = select_cohort_persons(condition_occurrence, procedure_occurrence, DIAGNOSIS_CODES, ECMO_CODES)
        assert persons['person_id'].tolist() == [1, 2, 6]

    def test_diagnosis_and_procedure_need_not_share_visit(self):
        conditions = pd.DataFrame({
            'person_id': [7],
            'visit_occurrence_id': [700],
            'condition_concept_id': [312940],
        })
        procedures = pd.DataFrame({
            'person_id': [7],
            'visit_occurrence_id': [799],
            'procedure_concept_id': [46257510],
            'procedure_date': pd.to_datetime(['2030-01-01']),
        })
        persons = select_cohort_persons(conditions, procedures, DIAGNOSIS_CODES, ECMO_CODES)
        assert persons['person_id'].tolist() == [7]

    def test_empty_code_set_selects_nobody(self, condition_occurrence, procedure_occurrence):
        persons = select_cohort_persons(condition_occurrence, procedure_occurrence, (), ECMO_CODES)
        assert len(persons) == 0
        assert list(persons.columns) == ['person_id']


class TestResolveEcmoVisits:
    """Visit grouping and episode bounds."""

    @pytest.fixture
    def visits(self, condition_occurrence, procedure_occurrence):
        persons = select_cohort_persons(condition_occurrence, procedure_occurrence, DIAGNOSIS_CODES, ECMO_CODES)
        return resolve_ecmo_visits(persons, procedure_occurrence, ECMO_CODES)

    def test_one_row_per_ecmo_visit(self, visits):
        keys = list(zip(visits['person_id'], visits['visit_occurrence_id']))
        assert keys == [(1, 10), (6, 60), (6, 61)]

    def test_null_visit_person_drops_out(self, visits):
        # Person 2 qualifies at person level but has no ECMO visit
        assert 2 not in set(visits['person_id'])

    def test_non_ecmo_procedure_visit_excluded(self, visits):
        assert 11 not in set(visits['visit_occurrence_id'])

    def test_episode_bounds_are_min_and_max_dates(self, visits):
        row = visits[visits['visit_occurrence_id'] == 10].iloc[0]
        assert row['visit_ecmo_start_date'] == pd.Timestamp('2023-01-01')
        assert row['visit_ecmo_end_date'] == pd.Timestamp('2023-01-04')

    def test_datetime_bounds_fall_back_to_date(self, visits):
        timed = visits[visits['visit_occurrence_id'] == 60].iloc[0]
        assert timed['visit_ecmo_start_datetime'] == pd.Timestamp('2023-05-01 06:00:00')
        assert timed['visit_ecmo_end_datetime'] == pd.Timestamp('2023-05-03 18:30:00')

        untimed = visits[visits['visit_occurrence_id'] == 61].iloc[0]
        assert untimed['visit_ecmo_start_datetime'] == pd.Timestamp('2023-07-01')
        assert untimed['visit_ecmo_end_datetime'] == pd.Timestamp('2023-07-01')

    def test_without_datetime_column(self, condition_occurrence, procedure_occurrence):
        procedures = procedure_occurrence.drop(columns=['procedure_datetime'])
        persons = select_cohort_persons(condition_occurrence, procedures, DIAGNOSIS_CODES, ECMO_CODES)
        visits = resolve_ecmo_visits(persons, procedures, ECMO_CODES)
        row = visits[visits['visit_occurrence_id'] == 60].iloc[0]
        assert row['visit_ecmo_start_datetime'] == pd.Timestamp('2023-05-01')
        assert row['visit_ecmo_end_datetime'] == pd.Timestamp('2023-05-03')


class TestJoinDemographics:
    """Per-visit demographics, age and durations."""

    @pytest.fixture
    def ecmo_visits(self):
        return pd.DataFrame({
            'person_id': [1, 1, 9],
            'visit_occurrence_id': [10, 12, 90],
            'visit_ecmo_start_date': pd.to_datetime(['2023-01-01', '2024-02-01', '2023-01-01']),
            'visit_ecmo_end_date': pd.to_datetime(['2023-01-04', '2024-02-01', '2023-01-02']),
            'visit_ecmo_start_datetime': pd.to_datetime(['2023-01-01 06:00', '2024-02-01', '2023-01-01'], format='ISO8601'),
            'visit_ecmo_end_datetime': pd.to_datetime(['2023-01-04 18:00', '2024-02-01', '2023-01-02'], format='ISO8601'),
        })

    @pytest.fixture
    def person(self):
        return pd.DataFrame({
            'person_id': [1],
            'gender_concept_id': [8507],
            'race_concept_id': [8527],
            'ethnicity_concept_id': [38003564],
            'year_of_birth': [1970],
            'src_name': ['SITE-7'],
        })

    @pytest.fixture
    def visit_occurrence(self):
        return pd.DataFrame({
            'person_id': [1, 1, 9],
            'visit_occurrence_id': [10, 12, 90],
            'visit_start_date': pd.to_datetime(['2022-12-30', '2024-01-30', '2023-01-01']),
        })

    @pytest.fixture
    def demographics(self, ecmo_visits, person, visit_occurrence):
        return join_demographics(ecmo_visits, person, visit_occurrence)

    def test_visit_without_person_row_dropped(self, demographics):
        assert demographics['visit_occurrence_id'].tolist() == [10, 12]

    def test_age_is_calendar_year_difference_per_visit(self, demographics):
        ages = dict(zip(demographics['visit_occurrence_id'], demographics['age_at_admission']))
        assert ages == {10: 52, 12: 54}

    def test_ecmo_durations(self, demographics):
        first = demographics.iloc[0]
        assert first['ecmo_duration_days'] == 3
        assert first['ecmo_duration_hours'] == pytest.approx(84.0)

        same_day = demographics.iloc[1]
        assert same_day['ecmo_duration_days'] == 0
        assert same_day['ecmo_duration_hours'] == pytest.approx(0.0)

    def test_site_and_concepts_carried(self, demographics):
        row = demographics.iloc[0]
        assert row['patient_site'] == 'SITE-7'
        assert row['gender_concept_id'] == 8507
        assert row['visit_start_date'] == pd.Timestamp('2022-12-30')

    def test_duplicate_person_rows_resolve_the_same_way(self, ecmo_visits, person, visit_occurrence):
        duplicate = person.assign(year_of_birth=1969, src_name='SITE-1')
        forward = join_demographics(ecmo_visits, pd.concat([person, duplicate], ignore_index=True), visit_occurrence)
        backward = join_demographics(ecmo_visits, pd.concat([duplicate, person], ignore_index=True), visit_occurrence)

        pd.testing.assert_frame_equal(forward, backward)
        assert forward['year_of_birth'].tolist() == [1969, 1969]
        assert forward['patient_site'].tolist() == ['SITE-1', 'SITE-1']

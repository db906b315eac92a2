"""
Configuration file for pytest.
This file contains fixtures and configuration settings for pytest.
"""
import pytest
import os
import sys

import pandas as pd

# Add the project root to the path so that imports work without installing
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))


# Define fixtures that can be used across all tests
@pytest.fixture
def omop_dir():
    """Return the path to the small OMOP CSV dataset used by end-to-end tests."""
    return os.path.join(os.path.dirname(__file__), 'cohort', 'fixtures', 'omop')


@pytest.fixture
def make_visits():
    """Factory for ECMO visit frames: make_visits([(person, visit, start, end), ...])."""
    def _make(rows):
        return pd.DataFrame({
            'person_id': [r[0] for r in rows],
            'visit_occurrence_id': [r[1] for r in rows],
            'visit_ecmo_start_date': pd.to_datetime([r[2] for r in rows]),
            'visit_ecmo_end_date': pd.to_datetime([r[3] for r in rows]),
        })
    return _make


@pytest.fixture
def make_measurements():
    """Factory for measurement frames: make_measurements([(person, visit, concept, value), ...])."""
    def _make(rows):
        return pd.DataFrame({
            'person_id': pd.array([r[0] for r in rows], dtype='Int64'),
            'visit_occurrence_id': pd.array([r[1] for r in rows], dtype='Int64'),
            'measurement_concept_id': pd.array([r[2] for r in rows], dtype='Int64'),
            'value_as_number': pd.Series([r[3] for r in rows], dtype='float64'),
        })
    return _make

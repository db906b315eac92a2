"""
Source table loading for ecmocohort.

OMOP tables are read through DuckDB's relational API so that column selection
and concept-code filters are pushed down to the file scan before anything is
materialized into pandas.
"""

import os
from typing import Any, Dict, Iterable, List, Optional

import duckdb
import pandas as pd

from .logging_config import get_logger

logger = get_logger('utils.io')

SUPPORTED_FILETYPES = ('csv', 'parquet')


def _cast_id_cols_to_int(df: pd.DataFrame) -> pd.DataFrame:
    """Cast OMOP ``*_id`` columns to nullable Int64 so missing ids stay NULL."""
    id_cols = [c for c in df.columns if c.endswith("_id")]
    if id_cols:
        df[id_cols] = df[id_cols].astype("Int64")
    return df


def _format_sql_value(value: Any) -> str:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return "'" + str(value).replace("'", "''") + "'"
    return str(value)


def check_required_columns(df: pd.DataFrame, required: Iterable[str], table_name: str) -> None:
    """
    Raise if ``df`` lacks any of the ``required`` columns.

    Raises
    ------
    ValueError
        Listing the missing columns for ``table_name``.
    """
    missing = [col for col in required if col not in df.columns]
    if missing:
        raise ValueError(f"Table '{table_name}' is missing required columns: {missing}")


def load_data(
    table_name: str,
    table_path: str,
    table_format_type: str,
    columns: Optional[List[str]] = None,
    optional_columns: Optional[List[str]] = None,
    filters: Optional[Dict[str, Any]] = None,
    verbose: bool = False,
) -> pd.DataFrame:
    """
    Load an OMOP table from ``<table_path>/<table_name>.<table_format_type>``.

    Parameters
    ----------
    table_name : str
        OMOP table name, e.g. 'measurement'.
    table_path : str
        Directory containing the data file.
    table_format_type : str
        'csv' or 'parquet'.
    columns : list of str, optional
        Columns to load. All must exist in the file.
    optional_columns : list of str, optional
        Extra columns loaded only when the file has them.
    filters : dict, optional
        ``{column: value}`` or ``{column: [values]}`` equality / IN filters.
    verbose : bool, optional
        If True, log loading messages at INFO.

    Returns
    -------
    pd.DataFrame
        Loaded table with ``*_id`` columns cast to Int64.

    Raises
    ------
    FileNotFoundError
        If the data file does not exist.
    ValueError
        If the filetype is unsupported or requested columns are missing.
    """
    if table_format_type not in SUPPORTED_FILETYPES:
        raise ValueError(
            f"Unsupported filetype '{table_format_type}'. Only 'csv' and 'parquet' are supported."
        )

    file_path = os.path.join(table_path, f"{table_name}.{table_format_type}")
    if not os.path.exists(file_path):
        raise FileNotFoundError(f"The file {file_path} does not exist in the specified directory.")

    if verbose:
        logger.info(f"Loading {os.path.basename(file_path)}")

    con = duckdb.connect()
    try:
        if table_format_type == 'csv':
            rel = con.read_csv(file_path)
        else:
            rel = con.read_parquet(file_path)

        available = set(rel.columns)
        if columns:
            missing = [c for c in columns if c not in available]
            if missing:
                raise ValueError(f"Table '{table_name}' is missing required columns: {missing}")
            selected = list(columns) + [c for c in (optional_columns or []) if c in available]
            rel = rel.select(*selected)

        if filters:
            for column, values in filters.items():
                if isinstance(values, (list, tuple, set, frozenset)):
                    values_list = ', '.join(_format_sql_value(v) for v in sorted(values))
                    rel = rel.filter(f"{column} IN ({values_list})")
                else:
                    rel = rel.filter(f"{column} = {_format_sql_value(values)}")

        df = rel.df()
    finally:
        con.close()

    if verbose:
        logger.info(f"Loaded {len(df)} rows from {os.path.basename(file_path)}")

    return _cast_id_cols_to_int(df)


def write_output(df: pd.DataFrame, output_path: str) -> str:
    """
    Write the cohort table to CSV or parquet, chosen by file extension.

    Returns
    -------
    str
        The path written.
    """
    directory = os.path.dirname(output_path)
    if directory:
        os.makedirs(directory, exist_ok=True)

    if output_path.endswith('.parquet'):
        df.to_parquet(output_path, index=False)
    elif output_path.endswith('.csv'):
        df.to_csv(output_path, index=False)
    else:
        raise ValueError(f"Unsupported output format for {output_path}. Use .csv or .parquet.")

    logger.info(f"Wrote {len(df)} rows to {output_path}")
    return output_path

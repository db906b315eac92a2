"""
Configuration loading utilities for ecmocohort runs.

A run configuration tells the pipeline where the OMOP source tables live and
how they are stored. It may also carry a ``cohort`` block that overrides the
default code sets and label tables (see ``ecmocohort.cohort.CohortConfig``).
Both JSON and YAML files are accepted.
"""

import os
import json
from typing import Dict, Any, Optional

import yaml

from .logging_config import get_logger

logger = get_logger('utils.config')

DEFAULT_CONFIG_NAMES = ('ecmocohort_config.json', 'ecmocohort_config.yaml', 'ecmocohort_config.yml')
REQUIRED_FIELDS = ['data_directory', 'filetype']
SUPPORTED_FILETYPES = ['csv', 'parquet']


def _read_config_file(config_path: str) -> Dict[str, Any]:
    """Parse a JSON or YAML config file into a dict."""
    with open(config_path, 'r') as f:
        if config_path.endswith(('.yaml', '.yml')):
            config = yaml.safe_load(f)
        else:
            config = json.load(f)

    if not isinstance(config, dict):
        raise ValueError(f"Configuration file {config_path} must contain a mapping at the top level")
    return config


def _find_default_config() -> str:
    for name in DEFAULT_CONFIG_NAMES:
        candidate = os.path.join(os.getcwd(), name)
        if os.path.exists(candidate):
            return candidate
    return os.path.join(os.getcwd(), DEFAULT_CONFIG_NAMES[0])


def _validate_run_config(config: Dict[str, Any], source: str) -> None:
    """Check required fields, the data directory and the file type of a run config."""
    missing = [name for name in REQUIRED_FIELDS if config.get(name) is None]
    if missing:
        raise ValueError(f"Missing required fields in {source}: {missing} (required: {REQUIRED_FIELDS})")

    if not os.path.isdir(config['data_directory']):
        raise ValueError(f"Data directory from {source} does not exist: {config['data_directory']}")

    if config['filetype'] not in SUPPORTED_FILETYPES:
        raise ValueError(
            f"Unsupported filetype '{config['filetype']}' in {source}; expected one of {SUPPORTED_FILETYPES}"
        )


def load_run_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load an ecmocohort run configuration from a JSON or YAML file.

    Parameters
    ----------
    config_path : str, optional
        Path to the configuration file. If None, the first of
        ``DEFAULT_CONFIG_NAMES`` found in the current directory is used.

    Returns
    -------
    dict
        Validated configuration with at least 'data_directory' and 'filetype'

    Raises
    ------
    FileNotFoundError
        If the config file doesn't exist
    ValueError
        If required fields are missing, the data directory doesn't exist or
        the filetype is unsupported
    """
    if config_path is None:
        config_path = _find_default_config()

    if not os.path.exists(config_path):
        raise FileNotFoundError(
            f"Configuration file not found: {config_path}. "
            "Pass config_path, or data_directory and filetype directly."
        )

    config = _read_config_file(config_path)
    _validate_run_config(config, config_path)

    logger.info(f"Configuration loaded from {config_path}")
    return config


def get_config_or_params(
    config_path: Optional[str] = None,
    data_directory: Optional[str] = None,
    filetype: Optional[str] = None,
    output_directory: Optional[str] = None
) -> Dict[str, Any]:
    """
    Resolve the run configuration from a config file and/or direct parameters.

    When both ``data_directory`` and ``filetype`` are given no file is read.
    Otherwise the config file (explicit or auto-detected) is loaded and any
    parameter that is not None overrides the file's value.

    Raises
    ------
    FileNotFoundError
        If no parameters are given and no config file is found
    ValueError
        If only some required parameters are given and no config file is
        found, or the resolved configuration is invalid
    """
    params = {
        'data_directory': data_directory,
        'filetype': filetype,
        'output_directory': output_directory,
    }

    if data_directory is not None and filetype is not None:
        config = {key: value for key, value in params.items() if value is not None}
        _validate_run_config(config, 'parameters')
        logger.info("Using directly provided parameters")
        return config

    try:
        config = load_run_config(config_path)
    except FileNotFoundError:
        given = [key for key in REQUIRED_FIELDS if params[key] is not None]
        if given:
            missing = [key for key in REQUIRED_FIELDS if params[key] is None]
            raise ValueError(
                f"Incomplete parameters provided. Missing: {missing}. "
                "Provide both data_directory and filetype, or a config file."
            )
        raise

    for key, value in params.items():
        if value is not None:
            logger.info(f"Overriding {key} from config with: {value}")
            config[key] = value
    _validate_run_config(config, 'parameters')

    return config


def create_example_config(
    data_directory: str = "./data",
    filetype: str = "parquet",
    output_directory: str = "./output",
    config_path: str = "./ecmocohort_config.yaml"
) -> None:
    """
    Write a starter run configuration.

    The file is written as YAML unless ``config_path`` ends in ``.json``. An
    empty ``cohort`` block is included as the place for CohortConfig overrides.
    """
    config = {
        "data_directory": data_directory,
        "filetype": filetype,
        "output_directory": output_directory,
        "cohort": {},
    }

    with open(config_path, 'w') as f:
        if config_path.endswith('.json'):
            json.dump(config, f, indent=2)
        else:
            yaml.safe_dump(config, f, sort_keys=False)

    logger.info(f"Example configuration file created at: {config_path}")

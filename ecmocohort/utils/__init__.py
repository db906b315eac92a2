from .config import load_run_config, get_config_or_params, create_example_config
from .io import load_data, check_required_columns, write_output
from .logging_config import get_logger, setup_logging

__all__ = [
      # config
      'load_run_config',
      'get_config_or_params',
      'create_example_config',
      # io
      'load_data',
      'check_required_columns',
      'write_output',
      # logging
      'get_logger',
      'setup_logging',
  ]

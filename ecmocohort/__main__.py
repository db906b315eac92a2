"""
Command line entry point.

Usage:
    python -m ecmocohort --config ecmocohort_config.yaml
    python -m ecmocohort --data-directory ./data --filetype csv --output out/ecmo_cohort.csv
"""

import argparse
import sys

from .cohort import run_ecmo_cohort
from .utils.logging_config import setup_logging


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='ecmocohort',
        description='Build the VV-ECMO cohort table with modified SOFA scores from OMOP tables.',
    )
    parser.add_argument('--config', dest='config_path', default=None,
                        help='Run config file (JSON or YAML)')
    parser.add_argument('--data-directory', default=None,
                        help='Directory holding the OMOP tables (overrides config)')
    parser.add_argument('--filetype', choices=['csv', 'parquet'], default=None,
                        help='Source file type (overrides config)')
    parser.add_argument('--output-directory', default=None,
                        help='Directory for ecmo_cohort.csv (overrides config)')
    parser.add_argument('--output', dest='output_path', default=None,
                        help='Exact output path, .csv or .parquet')
    parser.add_argument('--log-level', default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'])
    parser.add_argument('--log-dir', default=None,
                        help='Also write a timestamped log file here')
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level, args.log_dir)

    result = run_ecmo_cohort(
        config_path=args.config_path,
        data_directory=args.data_directory,
        filetype=args.filetype,
        output_directory=args.output_directory,
        output_path=args.output_path,
    )
    print(f"ECMO cohort: {len(result)} visits, {result['person_id'].nunique()} persons")
    return 0


if __name__ == '__main__':
    sys.exit(main())

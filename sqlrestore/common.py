import argparse
import logging
import sys
from pathlib import Path
from typing import Optional

from .config import ImportOptions, load_config, options_from_config
from .errors import ConfigError

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


def setup_logging(log_file: Optional[str] = 'sqlrestore_import.log', verbose: bool = False, stream=None) -> None:
    """Log to a file and stdout; safe to call more than once."""
    handlers = [logging.StreamHandler(stream or sys.stdout)]
    if log_file:
        handlers.insert(0, logging.FileHandler(log_file))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )


def add_source_arguments(parser: argparse.ArgumentParser, config_default: Optional[str] = None) -> None:
    parser.add_argument('-c', '--config', default=config_default, help='Configuration file path (YAML or JSON)')
    parser.add_argument('--import-dir', help='Export directory to import from (overrides config)')
    parser.add_argument('--verbose', action='store_true', help='Enable debug logging')


def resolve_options(args) -> ImportOptions:
    """ImportOptions from the config file (if any) with --import-dir applied."""
    options = options_from_config(load_config(args.config)) if args.config else ImportOptions()
    if args.import_dir:
        options = options.with_overrides(import_directory=Path(args.import_dir))
    if options.import_directory is None:
        raise ConfigError("No import directory given (use --import-dir or import_directory in the config)")
    return options

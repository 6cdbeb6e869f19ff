#!/usr/bin/env python3
"""
SQL Server export import tool

Restores an export tree (one folder per object tier, one script per object)
into a target database.

Features:
- Stage ordered execution with dependency retry passes
- Encryption secret discovery and binding
- Per script transactions with rollback on failure
- Persisted error log and run summary
"""

import argparse
import logging
import sys
from typing import Optional

from .binding import bind_secrets, tag_scripts
from .common import add_source_arguments, resolve_options, setup_logging
from .config import ImportOptions, coerce_int
from .encryption import discover_requirements
from .errors import ConfigError, ConnectionLostError, PlanningError
from .executor import RetryPolicy, RunContext, ScriptExecutor
from .models import RunResult, Stage
from .planner import build_plan
from .report import ErrorLog, format_summary

logger = logging.getLogger(__name__)


class SqlRestoreImporter:
    """Runs a complete import of one export tree."""

    def __init__(self, options: ImportOptions, engine=None):
        self.options = options
        self.engine = engine
        self._owns_engine = engine is None

    def connect(self):
        if self.engine is None:
            from .connection import open_engine
            self.engine = open_engine(self.options)
        return self.engine

    def disconnect(self):
        if self._owns_engine and self.engine is not None:
            self.engine.close()
            self.engine = None

    def run_import(self) -> RunResult:
        """Plan, bind secrets, execute and report.

        PlanningError and ConfigError propagate; a lost connection ends the
        run with an ABORTED result instead.
        """
        root = self.options.import_directory
        if root is None:
            raise ConfigError("No import directory configured")
        logger.info(f"Starting import from {root}...")

        plan = build_plan(root, self.options.exclude_stages)
        catalog = discover_requirements(root)
        scripts = list(plan.scripts())
        bindings = bind_secrets(catalog, self.options, scripts)
        tags = tag_scripts(scripts)

        error_log = ErrorLog(self.options.error_log_path)
        context = RunContext(plan)
        fatal_error: Optional[str] = None
        try:
            executor = ScriptExecutor(
                self.connect(),
                error_log,
                policy=RetryPolicy.from_options(self.options),
                bindings=bindings,
                tags=tags,
                variables=self.options.sqlcmd_variables,
                max_retry_passes=self.options.max_retry_passes,
                fail_fast=self.options.fail_fast,
            )
            executor.run(context)
        except ConnectionLostError as e:
            fatal_error = f"Connection lost: {e}"
            logger.error(f"Import aborted: {fatal_error}")
        finally:
            self.disconnect()

        result = error_log.finish(context, fatal_error, export_root=root)
        logger.info(f"Import finished with status {result.status.value}: "
                    f"{result.succeeded} succeeded, {result.failed} failed, {result.passes} pass(es)")
        return result


def _parse_stage_list(values) -> frozenset:
    stages = set()
    for value in values or []:
        for item in value.split(','):
            if item.strip():
                try:
                    stages.add(Stage.from_label(item.strip()))
                except ValueError as e:
                    raise ConfigError(str(e))
    return frozenset(stages)


def build_options(args) -> ImportOptions:
    options = resolve_options(args)
    excluded = _parse_stage_list(args.exclude_stage)
    return options.with_overrides(
        max_retry_passes=coerce_int(args.max_passes, '--max-passes') if args.max_passes is not None else None,
        script_timeout=coerce_int(args.timeout, '--timeout') if args.timeout is not None else None,
        fail_fast=True if args.fail_fast else None,
        exclude_stages=options.exclude_stages | excluded if excluded else None,
    )


def main(argv=None) -> int:
    """Main function."""
    parser = argparse.ArgumentParser(description='Import a SQL Server export tree into a target database')
    add_source_arguments(parser, config_default='config.yaml')
    parser.add_argument('--max-passes', type=int, help='Maximum number of retry passes (overrides config)')
    parser.add_argument('--timeout', type=int, help='Per-script timeout in seconds, 0 for none (overrides config)')
    parser.add_argument('--fail-fast', action='store_true', help='Stop after the first stage with failures')
    parser.add_argument('--exclude-stage', action='append', metavar='STAGE',
                        help='Stage to skip, e.g. FileGroups (repeatable, comma separated)')

    args = parser.parse_args(argv)

    try:
        options = build_options(args)
    except ConfigError as e:
        setup_logging(None, args.verbose)
        logger.error(f"Configuration error: {e}")
        print("Import FAILED: invalid configuration")
        return 1

    setup_logging(options.log_file, args.verbose)

    try:
        result = SqlRestoreImporter(options).run_import()
    except (PlanningError, ConfigError) as e:
        logger.error(f"Import cannot start: {e}")
        print("Import FAILED: nothing was executed")
        return 1
    except KeyboardInterrupt:
        logger.info("Import cancelled by user")
        return 1

    print()
    print(format_summary(result))
    return 0 if result.ok else 1


if __name__ == "__main__":
    sys.exit(main())

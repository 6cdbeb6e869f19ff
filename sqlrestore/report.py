import logging
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from .models import ErrorRecord, RunResult, RunStatus

logger = logging.getLogger(__name__)


DEFAULT_ERROR_LOG = 'import_errors.log'


class ErrorLog:
    """Collects terminal failures as they happen and persists them at the end."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else None
        self.records: List[ErrorRecord] = []
        self.started = datetime.now()

    def record(self, record: ErrorRecord):
        self.records.append(record)
        logger.error(f"FAILED {record.stage.label}/{record.script} after {record.attempts} attempt(s) "
                     f"[{record.kind.value}]: {record.error}")

    def __len__(self) -> int:
        return len(self.records)

    def write(self, export_root: Optional[Path] = None) -> Path:
        """Append all records to the error log file."""
        path = self.path or Path(export_root or '.') / DEFAULT_ERROR_LOG
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'a', encoding='utf-8') as f:
            f.write(f"=== Import run started {self.started:%Y-%m-%d %H:%M:%S}"
                    f"{f' (export: {export_root})' if export_root else ''}: "
                    f"{len(self.records)} failed script(s) ===\n")
            for record in self.records:
                f.write(format_error_record(record))
            f.write('\n')
        logger.info(f"Error log written to {path}")
        return path

    def finish(self, context, fatal_error: Optional[str] = None, export_root: Optional[Path] = None) -> RunResult:
        """Build the final run result from the executor's run context."""
        log_path = self.write(export_root) if self.records else None
        if fatal_error is not None:
            status = RunStatus.ABORTED
        elif self.records:
            status = RunStatus.FAILURE
        else:
            status = RunStatus.SUCCESS
        return RunResult(
            status=status,
            total_scripts=context.plan.script_count,
            attempted=context.attempted_count,
            succeeded=context.succeeded_count,
            failed=context.failed_count,
            passes=context.pass_number,
            errors=list(self.records),
            fatal_error=fatal_error,
            error_log_path=log_path,
        )


def format_error_record(record: ErrorRecord) -> str:
    error = '\n            '.join(record.error.splitlines()) or '(no error text)'
    return (
        f"[{record.timestamp:%Y-%m-%d %H:%M:%S}] FAILED {record.script}\n"
        f"  Stage:    {record.stage.label}\n"
        f"  Path:     {record.path}\n"
        f"  Attempts: {record.attempts}\n"
        f"  Kind:     {record.kind.value}\n"
        f"  Error:    {error}\n"
    )


def format_summary(result: RunResult) -> str:
    lines = [
        "=== Import Summary ===",
        f"Scripts:   {result.total_scripts}",
        f"Attempted: {result.attempted}",
        f"Succeeded: {result.succeeded}",
        f"Failed:    {result.failed}",
        f"Passes:    {result.passes}",
    ]
    if result.status is RunStatus.ABORTED:
        lines.append(f"Import ABORTED: {result.fatal_error}")
        lines.append(f"{result.total_scripts - result.succeeded - result.failed} script(s) were not accounted for")
    elif result.status is RunStatus.FAILURE:
        lines.append(f"Import FAILED: {result.failed} script(s) could not be applied")
    else:
        lines.append("Import completed successfully!")

    if result.errors:
        lines.append("")
        lines.append("Failed scripts:")
        for record in result.errors:
            first_line = record.error.splitlines()[0] if record.error else ''
            lines.append(f"  - {record.stage.label}/{record.script} [{record.kind.value}, "
                         f"{record.attempts} attempt(s)]: {first_line}")
    if result.error_log_path:
        lines.append(f"Error log: {result.error_log_path}")
    return '\n'.join(lines)

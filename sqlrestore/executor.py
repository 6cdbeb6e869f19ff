"""
Script executor and dependency retry scheduler.

Exported scripts carry no dependency graph. Instead of sorting them, every
stage is executed in order once, scripts that fail because something they
reference does not exist yet are deferred, and the deferred set is retried in
full passes until it is empty or a pass makes no progress.
"""

import logging
import re
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Deque, Dict, Iterable, List, Mapping, Optional, Pattern

from .errors import EngineError, EngineTimeoutError
from .models import (
    ErrorKind, ErrorRecord, ExecutionAttempt, ExecutionPlan, ExportedScript,
    RequirementKey, RetryQueueEntry, ScriptState, Stage,
)
from .sqltext import split_batches, substitute_variables

logger = logging.getLogger(__name__)


# SQL Server errors raised when a script references an object that a later
# script creates. Anything not listed here is terminal.
DEFAULT_RETRYABLE_ERRORS = {
    207: "Invalid column name",
    208: "Invalid object name",
    1088: "Cannot find the object because it does not exist or you do not have permissions",
    1767: "Foreign key references invalid table",
    1776: "No primary or candidate keys in the referenced table",
    2715: "Cannot find data type",
    2760: "The specified schema name does not exist or you do not have permission to use it",
    2812: "Could not find stored procedure",
    4104: "The multi-part identifier could not be bound",
    4121: "Cannot find either column or the user-defined function or aggregate",
    4512: "Cannot schema bind view/function: invalid name for schema binding",
    4513: "Cannot schema bind: invalid name",
    4902: "Cannot find the object because it does not exist or you do not have permissions",
    8197: "The object does not exist or is invalid for this operation",
    15151: "Cannot find the object because it does not exist or you do not have permission",
    15225: "No item by the name could be found in the current database",
}

# Matched against the message whether or not the error carries a number
DEFAULT_RETRYABLE_PATTERNS = (
    r"invalid object name",
    r"invalid column name",
    r"could not be bound",
    r"cannot find the object",
    r"could not find stored procedure",
    r"cannot find data type",
)


class RetryPolicy:
    """Classifies engine errors as retryable dependency failures or terminal."""

    def __init__(self, retryable_numbers: Iterable[int] = DEFAULT_RETRYABLE_ERRORS,
                 retryable_patterns: Iterable[str] = DEFAULT_RETRYABLE_PATTERNS):
        self.retryable_numbers = frozenset(retryable_numbers)
        self.retryable_patterns: List[Pattern] = [re.compile(p, re.IGNORECASE) for p in retryable_patterns]

    @classmethod
    def from_options(cls, options) -> 'RetryPolicy':
        if options.replace_default_retry_policy:
            numbers = set(options.retryable_error_numbers)
            patterns = list(options.retryable_message_patterns)
        else:
            numbers = set(DEFAULT_RETRYABLE_ERRORS) | set(options.retryable_error_numbers)
            patterns = list(DEFAULT_RETRYABLE_PATTERNS) + list(options.retryable_message_patterns)
        return cls(numbers, patterns)

    def is_retryable(self, error: EngineError) -> bool:
        if isinstance(error, EngineTimeoutError):
            return False
        if error.number is not None and error.number in self.retryable_numbers:
            return True
        return any(p.search(error.message or '') for p in self.retryable_patterns)

    def classify(self, error: EngineError) -> ErrorKind:
        if isinstance(error, EngineTimeoutError):
            return ErrorKind.TIMEOUT
        if self.is_retryable(error):
            return ErrorKind.DEPENDENCY_UNRESOLVED
        return ErrorKind.EXECUTION_FATAL


@dataclass
class RunContext:
    """All mutable state of one import run."""
    plan: ExecutionPlan
    states: Dict[str, ScriptState] = field(default_factory=dict)
    attempts: Dict[str, List[ExecutionAttempt]] = field(default_factory=dict)
    retry_queue: Deque[RetryQueueEntry] = field(default_factory=deque)
    pass_number: int = 0

    def __post_init__(self):
        for script in self.plan.scripts():
            self.states.setdefault(script.relative_path, ScriptState.PENDING)
            self.attempts.setdefault(script.relative_path, [])

    def state(self, script: ExportedScript) -> ScriptState:
        return self.states[script.relative_path]

    def attempt_count(self, script: ExportedScript) -> int:
        return len(self.attempts[script.relative_path])

    def record_attempt(self, script: ExportedScript, outcome: ScriptState, error: Optional[str] = None):
        self.attempts[script.relative_path].append(ExecutionAttempt(
            script=script.name,
            attempt=self.attempt_count(script) + 1,
            pass_number=self.pass_number,
            outcome=outcome,
            error=error,
            timestamp=datetime.now(),
        ))

    def unfinished(self) -> List[ExportedScript]:
        return [s for s in self.plan.scripts()
                if self.states[s.relative_path] not in (ScriptState.SUCCEEDED, ScriptState.FAILED)]

    @property
    def attempted_count(self) -> int:
        return sum(1 for a in self.attempts.values() if a)

    @property
    def succeeded_count(self) -> int:
        return sum(1 for s in self.states.values() if s is ScriptState.SUCCEEDED)

    @property
    def failed_count(self) -> int:
        return sum(1 for s in self.states.values() if s is ScriptState.FAILED)


class ScriptExecutor:
    """Runs an execution plan against an engine until it converges."""

    def __init__(self, engine, error_log, policy: Optional[RetryPolicy] = None,
                 bindings=None, tags: Optional[Mapping[str, List[RequirementKey]]] = None,
                 variables: Optional[Mapping[str, str]] = None,
                 max_retry_passes: int = 10, fail_fast: bool = False):
        self.engine = engine
        self.error_log = error_log
        self.policy = policy or RetryPolicy()
        self.bindings = bindings
        self.tags = dict(tags or {})
        self.variables = dict(variables or {})
        self.max_retry_passes = max_retry_passes
        self.fail_fast = fail_fast

    def run(self, context: RunContext) -> RunContext:
        """Execute every stage once, then retry deferred scripts until convergence.

        ConnectionLostError raised by the engine propagates unchanged; the
        context then reflects how far the run got.
        """
        context.pass_number = 1
        logger.info(f"Pass 1: executing {context.plan.script_count} scripts")
        for stage, scripts in context.plan.stages:
            logger.info(f"--- Stage {stage.label} ({len(scripts)} scripts) ---")
            stage_failures = 0
            for script in scripts:
                if self._process(context, script) is ScriptState.FAILED:
                    stage_failures += 1
            if self.fail_fast and stage_failures:
                self._abandon(context, stage)
                return context

        while context.retry_queue:
            if context.pass_number - 1 >= self.max_retry_passes:
                self._promote_deferred(context, f"still unresolved after {self.max_retry_passes} retry pass(es)")
                break
            context.pass_number += 1
            entries = list(context.retry_queue)
            context.retry_queue.clear()
            logger.info(f"Pass {context.pass_number}: retrying {len(entries)} deferred scripts")

            resolved = 0
            for entry in entries:
                if self._process(context, entry.script, entry) is ScriptState.SUCCEEDED:
                    resolved += 1

            logger.info(f"Pass {context.pass_number}: {resolved} resolved, {len(context.retry_queue)} still deferred")
            if resolved == 0 and context.retry_queue:
                self._promote_deferred(context, f"no progress in pass {context.pass_number}")
                break

        return context

    def _process(self, context: RunContext, script: ExportedScript,
                 entry: Optional[RetryQueueEntry] = None) -> ScriptState:
        if script.read_error:
            self._fail(context, script, ErrorKind.EXECUTION_FATAL, script.read_error)
            return ScriptState.FAILED

        missing = self._missing_secrets(script)
        if missing:
            self._fail(context, script, ErrorKind.MISSING_SECRET,
                       f"Missing secret for {', '.join(missing)}; not executed")
            return ScriptState.FAILED

        context.states[script.relative_path] = ScriptState.EXECUTING
        try:
            self.engine.run_batches(split_batches(self.render(script)))
        except EngineError as e:
            kind = self.policy.classify(e)
            if kind is ErrorKind.DEPENDENCY_UNRESOLVED:
                context.record_attempt(script, ScriptState.DEFERRED, str(e))
                context.states[script.relative_path] = ScriptState.DEFERRED
                context.retry_queue.append(RetryQueueEntry(script, context.attempt_count(script), str(e)))
                logger.info(f"Deferred {script} (attempt {context.attempt_count(script)}): {e}")
                return ScriptState.DEFERRED
            context.record_attempt(script, ScriptState.FAILED, str(e))
            self._fail(context, script, kind, str(e))
            return ScriptState.FAILED

        context.record_attempt(script, ScriptState.SUCCEEDED)
        context.states[script.relative_path] = ScriptState.SUCCEEDED
        if entry is not None:
            logger.info(f"Successfully imported {script} on attempt {context.attempt_count(script)}")
        else:
            logger.info(f"Successfully imported {script}")
        return ScriptState.SUCCEEDED

    def _missing_secrets(self, script: ExportedScript) -> List[str]:
        if self.bindings is None:
            return []
        missing = []
        for key in self.tags.get(script.relative_path, []):
            if not self.bindings.is_bound(key):
                missing.append(self.bindings.label(key))
        return missing

    def render(self, script: ExportedScript) -> str:
        """Script text with SQLCMD variables and bound secrets substituted."""
        variables = dict(self.variables)
        if self.bindings is not None:
            variables.update(self.bindings.variables(self.tags.get(script.relative_path, [])))
        return substitute_variables(script.sql, variables)

    def _fail(self, context: RunContext, script: ExportedScript, kind: ErrorKind, error: str):
        context.states[script.relative_path] = ScriptState.FAILED
        self.error_log.record(ErrorRecord(
            script=script.name,
            path=script.relative_path,
            stage=script.stage,
            attempts=context.attempt_count(script),
            kind=kind,
            error=error,
            timestamp=datetime.now(),
        ))

    def _promote_deferred(self, context: RunContext, reason: str):
        """Turn every deferred script into a terminal dependency failure."""
        logger.warning(f"{len(context.retry_queue)} deferred scripts cannot be resolved: {reason}")
        while context.retry_queue:
            entry = context.retry_queue.popleft()
            self._fail(context, entry.script, ErrorKind.DEPENDENCY_UNRESOLVED, entry.last_error)

    def _abandon(self, context: RunContext, stage: Stage):
        logger.error(f"Stopping import: stage {stage.label} had failures and fail-fast is enabled")
        last_errors = {e.script.relative_path: e.last_error for e in context.retry_queue}
        context.retry_queue.clear()
        for script in context.unfinished():
            error = f"Not executed: import stopped after failures in stage {stage.label}"
            if script.relative_path in last_errors:
                error = f"{error}; last error: {last_errors[script.relative_path]}"
            self._fail(context, script, ErrorKind.SKIPPED, error)

import tempfile
import unittest
from datetime import datetime
from pathlib import Path

from fakes import make_plan, make_script

from sqlrestore.executor import RunContext
from sqlrestore.models import ErrorKind, ErrorRecord, RunStatus, ScriptState, Stage
from sqlrestore.report import DEFAULT_ERROR_LOG, ErrorLog, format_error_record, format_summary


def record_for(script, kind=ErrorKind.EXECUTION_FATAL, error="Msg 102: Incorrect syntax near 'x'.", attempts=1):
    return ErrorRecord(script=script.name, path=script.relative_path, stage=script.stage, attempts=attempts,
                       kind=kind, error=error, timestamp=datetime(2026, 1, 20, 10, 30, 0))


class ErrorLogTestCase(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name)
        self.ok = make_script('dbo.Ok', "CREATE TABLE dbo.Ok (Id INT)", Stage.TABLES, 0)
        self.bad = make_script('dbo.Bad', "CREATE VIEW dbo.Bad AS SELECT * FROM dbo.Nope", Stage.VIEWS, 1)
        self.context = RunContext(make_plan(self.ok, self.bad))
        self.context.pass_number = 1

    def tearDown(self):
        self.tmp.cleanup()

    def test_success_writes_nothing(self):
        self.context.states[self.ok.relative_path] = ScriptState.SUCCEEDED
        self.context.states[self.bad.relative_path] = ScriptState.SUCCEEDED
        result = ErrorLog().finish(self.context, export_root=self.root)
        self.assertIs(result.status, RunStatus.SUCCESS)
        self.assertTrue(result.ok)
        self.assertIsNone(result.error_log_path)
        self.assertFalse((self.root / DEFAULT_ERROR_LOG).exists())

    def test_failure_persists_records(self):
        self.context.states[self.ok.relative_path] = ScriptState.SUCCEEDED
        self.context.states[self.bad.relative_path] = ScriptState.FAILED
        log = ErrorLog()
        with self.assertLogs('sqlrestore.report', level='ERROR'):
            log.record(record_for(self.bad, ErrorKind.DEPENDENCY_UNRESOLVED,
                                  "Msg 208: Invalid object name 'dbo.Nope'.", attempts=3))
        result = log.finish(self.context, export_root=self.root)

        self.assertIs(result.status, RunStatus.FAILURE)
        self.assertEqual(result.failed, 1)
        self.assertEqual(result.succeeded, 1)
        self.assertEqual(result.error_log_path, self.root / DEFAULT_ERROR_LOG)
        content = result.error_log_path.read_text(encoding='utf-8')
        self.assertIn('FAILED dbo.Bad', content)
        self.assertIn('Stage:    Views', content)
        self.assertIn('Path:     Views/dbo.Bad.sql', content)
        self.assertIn('Attempts: 3', content)
        self.assertIn('Kind:     DependencyUnresolved', content)
        self.assertIn("Invalid object name 'dbo.Nope'.", content)
        self.assertIn('2026-01-20 10:30:00', content)

    def test_log_is_appended(self):
        path = self.root / 'logs' / 'errors.log'
        for _ in range(2):
            log = ErrorLog(path)
            log.record(record_for(self.bad))
            log.finish(self.context)
        content = path.read_text(encoding='utf-8')
        self.assertEqual(content.count('=== Import run started'), 2)
        self.assertEqual(content.count('FAILED dbo.Bad'), 2)

    def test_aborted(self):
        result = ErrorLog(self.root / 'e.log').finish(self.context, fatal_error="Connection lost: gone")
        self.assertIs(result.status, RunStatus.ABORTED)
        self.assertEqual(result.fatal_error, "Connection lost: gone")
        self.assertFalse(result.ok)

    def test_multiline_error_indented(self):
        text = format_error_record(record_for(self.bad, error="first line\nsecond line"))
        self.assertIn("Error:    first line\n            second line\n", text)


class SummaryTestCase(unittest.TestCase):
    def test_summary_lists_failures(self):
        script = make_script('dbo.Bad', "x", Stage.VIEWS)
        context = RunContext(make_plan(script))
        context.pass_number = 2
        context.states[script.relative_path] = ScriptState.FAILED
        log = ErrorLog(Path(tempfile.gettempdir()) / 'sqlrestore-summary-test.log')
        log.records.append(record_for(script, ErrorKind.TIMEOUT, "Query timeout expired"))
        result = log.finish(context)
        try:
            summary = format_summary(result)
        finally:
            result.error_log_path.unlink()
        self.assertIn('Import FAILED: 1 script(s) could not be applied', summary)
        self.assertIn('Views/dbo.Bad [Timeout, 1 attempt(s)]: Query timeout expired', summary)
        self.assertIn('Passes:    2', summary)

    def test_summary_success(self):
        script = make_script('dbo.Ok', "x", Stage.TABLES)
        context = RunContext(make_plan(script))
        context.pass_number = 1
        context.states[script.relative_path] = ScriptState.SUCCEEDED
        summary = format_summary(ErrorLog().finish(context))
        self.assertIn('Import completed successfully!', summary)
        self.assertIn('Succeeded: 1', summary)


if __name__ == '__main__':
    unittest.main()
